import pytest

from app.qrms.db import session_scope
from app.qrms.exceptions import Forbidden, NotFound, ValidationError
from app.qrms.models import AuditEvent, User
from app.qrms.modules.change_requests.models import ChangeRequest
from app.qrms.modules.items.models import ItemHistory
from app.qrms.modules.notifications.models import Notification
from app.qrms.modules.quality_approval.models import QCDocumentApproval
from app.qrms.modules.quality_approval.service import approval_for_history, approve_as_qc
from app.qrms.users import delete_user


def test_delete_user_keeps_history_readable(app, users, approved_item):
    with session_scope(app) as s:
        approval_id = approval_for_history(s, approved_item["history_id"]).id
        approve_as_qc(s, actor=users["qc"], approval_id=approval_id)

    with session_scope(app) as s:
        touched = delete_user(s, actor=users["admin"], user_id=users["editor"].id)
        assert touched["item_histories.submitted_by_id"] == 1
        assert touched["change_requests.submitted_by_id"] == 1
        assert touched["qc_document_approvals.submitted_by_id"] == 1

    with session_scope(app) as s:
        assert s.get(User, users["editor"].id) is None
        h = s.get(ItemHistory, approved_item["history_id"])
        assert h.submitted_by_id is None
        assert h.submitted_by_name == "Eli Editor"
        cr = s.get(ChangeRequest, approved_item["change_request_id"])
        assert (cr.submitted_by_id, cr.submitter_name) == (None, "Eli Editor")
        a = s.get(QCDocumentApproval, approval_id)
        assert (a.submitted_by_id, a.submitter_name) == (None, "Eli Editor")
        assert s.query(Notification).filter_by(user_id=users["editor"].id).count() == 0
        assert s.query(AuditEvent).filter_by(action="user.delete").one().entity_id == str(users["editor"].id)


def test_delete_user_fills_missing_names(app, users):
    with session_scope(app) as s:
        s.add(AuditEvent(actor_user_id=users["viewer"].id, actor_name=None, action="legacy.import"))

    with session_scope(app) as s:
        delete_user(s, actor=users["admin"], user_id=users["viewer"].id)

    with session_scope(app) as s:
        ev = s.query(AuditEvent).filter_by(action="legacy.import").one()
        assert ev.actor_user_id is None
        assert ev.actor_name == "Val Viewer"


def test_delete_user_guards(app, users):
    with session_scope(app) as s:
        with pytest.raises(Forbidden):
            delete_user(s, actor=users["inspector"], user_id=users["viewer"].id)
        with pytest.raises(ValidationError):
            delete_user(s, actor=users["admin"], user_id=users["admin"].id)
        with pytest.raises(NotFound):
            delete_user(s, actor=users["admin"], user_id=9999)
