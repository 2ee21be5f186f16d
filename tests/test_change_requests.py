import pytest

from app.qrms.collaborators import DeferredDocumentGenerator
from app.qrms.db import session_scope
from app.qrms.exceptions import ConflictError, Forbidden, NotFound, ValidationError
from app.qrms.models import AuditEvent
from app.qrms.modules.change_requests.models import ChangeRequest
from app.qrms.modules.change_requests.service import (
    cancel,
    list_awaiting_revision,
    list_pending,
    resubmit,
    review,
    submit,
)
from app.qrms.modules.items.models import Item, ItemHistory, Project
from app.qrms.modules.notifications.models import Notification
from app.qrms.modules.quality_approval.models import QCDocumentApproval


def _submit_create(app, users, project, code="WQ-30", title="Pump Check", actor="editor"):
    with session_scope(app) as s:
        return submit(
            s,
            actor=users[actor],
            kind="CREATE",
            project_id=project.id,
            payload={"code": code, "title": title},
            reason="new procedure",
        )


def test_scenario_a_create_approve(app, users, project, approved_item):
    with session_scope(app) as s:
        cr = s.get(ChangeRequest, approved_item["change_request_id"])
        assert cr.status == "APPROVED"
        assert cr.reviewer_name == "Ivo Inspector"
        assert cr.review_note == "ok"
        assert cr.item_id == approved_item["item_id"]

        item = s.get(Item, approved_item["item_id"])
        assert item.code == "WQ-9"
        assert item.current_version == 1

        h = s.get(ItemHistory, approved_item["history_id"])
        assert (h.version, h.change_type) == (1, "CREATE")
        assert h.document_path == f"quality-docs/QC-WQ-{h.id}.pdf"

        approval = s.query(QCDocumentApproval).filter_by(item_history_id=h.id).one()
        assert approval.status == "PENDING_QC"
        assert approval.submitted_by_id == users["editor"].id

        notes = s.query(Notification).filter_by(user_id=users["editor"].id).all()
        assert [n.type for n in notes] == ["APPROVAL"]


def test_submit_starts_pending_and_is_audited(app, users, project):
    cr = _submit_create(app, users, project)
    assert cr.status == "PENDING"
    assert cr.target_label == "WQ-30"
    with session_scope(app) as s:
        assert [c.id for c in list_pending(s)] == [cr.id]
        ev = s.query(AuditEvent).filter_by(action="change_request.submit").one()
        assert ev.entity_id == str(cr.id)
        assert ev.reason == "new procedure"
        # Nothing is applied before review
        assert s.query(Item).count() == 0


def test_submit_validation(app, users, project):
    with session_scope(app) as s:
        with pytest.raises(ValidationError):
            submit(s, actor=users["editor"], kind="MERGE", project_id=project.id, payload={"title": "x"})
        with pytest.raises(ValidationError):
            submit(s, actor=users["editor"], kind="CREATE", project_id=project.id, payload={"title": ""})
        with pytest.raises(ValidationError):
            submit(s, actor=users["editor"], kind="CREATE", project_id=project.id, payload={"code": "ZZ-1", "title": "x"})
        with pytest.raises(NotFound):
            submit(s, actor=users["editor"], kind="CREATE", project_id=9999, payload={"title": "x"})
        with pytest.raises(NotFound):
            submit(s, actor=users["editor"], kind="UPDATE", item_id=9999, payload={"title": "x"})
        with pytest.raises(Forbidden):
            submit(s, actor=users["viewer"], kind="CREATE", project_id=project.id, payload={"title": "x"})


def test_reject_requires_note(app, users, project):
    cr = _submit_create(app, users, project)
    with session_scope(app) as s:
        with pytest.raises(ValidationError):
            review(s, actor=users["inspector"], request_id=cr.id, decision="REJECT", note="   ")
        with pytest.raises(ValidationError):
            review(s, actor=users["inspector"], request_id=cr.id, decision="MAYBE")
    with session_scope(app) as s:
        assert s.get(ChangeRequest, cr.id).status == "PENDING"


def test_review_authorization(app, users, project):
    own = _submit_create(app, users, project, code="WQ-31", actor="inspector")
    with session_scope(app) as s:
        with pytest.raises(Forbidden):
            review(s, actor=users["inspector"], request_id=own.id, decision="APPROVE")
        with pytest.raises(Forbidden):
            review(s, actor=users["editor"], request_id=own.id, decision="APPROVE")

    admin_own = _submit_create(app, users, project, code="WQ-32", actor="admin")
    with session_scope(app) as s:
        review(s, actor=users["admin"], request_id=admin_own.id, decision="APPROVE")
    with session_scope(app) as s:
        assert s.get(ChangeRequest, admin_own.id).status == "APPROVED"


def test_concurrent_reviews_apply_once(app, users, project):
    cr = _submit_create(app, users, project)
    sm = app.extensions["sqlalchemy_sessionmaker"]
    s1, s2 = sm(), sm()
    try:
        # Both reviewers have the request open as PENDING.
        assert s1.get(ChangeRequest, cr.id).status == "PENDING"
        assert s2.get(ChangeRequest, cr.id).status == "PENDING"

        review(s1, actor=users["inspector"], request_id=cr.id, decision="APPROVE", note="first")
        s1.commit()

        with pytest.raises(ConflictError) as exc:
            review(s2, actor=users["admin"], request_id=cr.id, decision="REJECT", note="second")
        assert exc.value.actual == "APPROVED"
        s2.rollback()
    finally:
        s1.close()
        s2.close()

    with session_scope(app) as s:
        assert s.query(Item).filter_by(code="WQ-30").count() == 1
        assert s.query(ItemHistory).count() == 1
        assert s.get(ChangeRequest, cr.id).review_note == "first"


def test_second_review_is_a_conflict(app, users, project, approved_item):
    with session_scope(app) as s:
        with pytest.raises(ConflictError):
            review(s, actor=users["admin"], request_id=approved_item["change_request_id"], decision="APPROVE")


def test_scenario_d_reject_and_resubmit(app, users, project):
    cr = _submit_create(app, users, project, code="WQ-40")
    with session_scope(app) as s:
        review(s, actor=users["inspector"], request_id=cr.id, decision="REJECT", note="wrong code prefix")
    with session_scope(app) as s:
        old = s.get(ChangeRequest, cr.id)
        assert old.status == "REJECTED"
        assert [c.id for c in list_awaiting_revision(s, users["editor"])] == [cr.id]
        rejection = s.query(Notification).filter_by(change_request_id=cr.id).one()
        assert rejection.type == "REJECTION"
        assert rejection.is_read is False

    with session_scope(app) as s:
        new = resubmit(
            s,
            actor=users["editor"],
            request_id=cr.id,
            payload={"code": "WQ-41", "title": "Pump Check"},
        )
    with session_scope(app) as s:
        assert s.get(ChangeRequest, cr.id).status == "RESUBMITTED"
        successor = s.get(ChangeRequest, new.id)
        assert successor.status == "PENDING"
        assert successor.previous_request_id == cr.id
        assert successor.target_label == "WQ-41"
        assert successor.submit_reason == "new procedure"
        assert list_awaiting_revision(s, users["editor"]) == []
        assert s.query(Notification).filter_by(change_request_id=cr.id).one().is_read is True

    with session_scope(app) as s:
        # A request can be superseded only once.
        with pytest.raises(ConflictError):
            resubmit(s, actor=users["editor"], request_id=cr.id)


def test_resubmit_only_by_owner_or_admin(app, users, project):
    cr = _submit_create(app, users, project)
    with session_scope(app) as s:
        review(s, actor=users["inspector"], request_id=cr.id, decision="REJECT", note="no")
    with session_scope(app) as s:
        with pytest.raises(Forbidden):
            resubmit(s, actor=users["editor2"], request_id=cr.id)
    with session_scope(app) as s:
        new = resubmit(s, actor=users["admin"], request_id=cr.id)
    assert new.submitted_by_id == users["admin"].id


def test_cancel_policy(app, users, project):
    cr = _submit_create(app, users, project)
    with session_scope(app) as s:
        with pytest.raises(ConflictError):
            # still PENDING
            cancel(s, actor=users["editor"], request_id=cr.id)
        review(s, actor=users["inspector"], request_id=cr.id, decision="REJECT", note="no")
    with session_scope(app) as s:
        with pytest.raises(Forbidden):
            cancel(s, actor=users["inspector"], request_id=cr.id)
    with session_scope(app) as s:
        cancel(s, actor=users["editor"], request_id=cr.id, reason="dropping it")
    with session_scope(app) as s:
        assert s.get(ChangeRequest, cr.id).status == "CANCELLED"
        assert s.query(Notification).filter_by(change_request_id=cr.id).one().is_read is True
        with pytest.raises(ConflictError):
            resubmit(s, actor=users["editor"], request_id=cr.id)


def test_admin_may_cancel_someone_elses_rejected_request(app, users, project):
    cr = _submit_create(app, users, project)
    with session_scope(app) as s:
        review(s, actor=users["inspector"], request_id=cr.id, decision="REJECT", note="no")
    with session_scope(app) as s:
        cancel(s, actor=users["admin"], request_id=cr.id)
    with session_scope(app) as s:
        assert s.get(ChangeRequest, cr.id).status == "CANCELLED"


def test_project_without_quality_review_gets_no_approval(app, users, plain_project):
    with session_scope(app) as s:
        cr = submit(s, actor=users["editor"], kind="CREATE", project_id=plain_project.id, payload={"title": "Minutes"})
    with session_scope(app) as s:
        review(
            s,
            actor=users["inspector"],
            request_id=cr.id,
            decision="APPROVE",
            document_generator=DeferredDocumentGenerator(root="quality-docs"),
        )
    with session_scope(app) as s:
        h = s.query(ItemHistory).one()
        assert h.item_code == "NOTE-1"
        assert h.document_path == f"quality-docs/QC-NOTE-{h.id}.pdf"
        assert s.query(QCDocumentApproval).count() == 0


def test_project_update_and_delete(app, users, plain_project):
    with session_scope(app) as s:
        with pytest.raises(Forbidden):
            submit(s, actor=users["editor"], kind="PROJECT_DELETE", project_id=plain_project.id)
        cr = submit(
            s,
            actor=users["editor"],
            kind="PROJECT_UPDATE",
            project_id=plain_project.id,
            payload={"title": "Meeting Notes", "requires_quality_review": True},
        )
    with session_scope(app) as s:
        review(s, actor=users["inspector"], request_id=cr.id, decision="APPROVE")
    with session_scope(app) as s:
        p = s.get(Project, plain_project.id)
        assert p.title == "Meeting Notes"
        assert p.requires_quality_review is True
        assert s.query(ItemHistory).count() == 0

    with session_scope(app) as s:
        cr = submit(s, actor=users["admin"], kind="PROJECT_DELETE", project_id=plain_project.id)
    with session_scope(app) as s:
        review(s, actor=users["admin"], request_id=cr.id, decision="APPROVE")
    with session_scope(app) as s:
        assert s.get(Project, plain_project.id) is None
        assert s.get(ChangeRequest, cr.id).target_label == "NOTE"


def test_project_delete_with_live_items_is_rejected(app, users, project, approved_item):
    with session_scope(app) as s:
        with pytest.raises(ValidationError):
            submit(s, actor=users["admin"], kind="PROJECT_DELETE", project_id=project.id)


def test_project_delete_purges_soft_deleted_items_but_keeps_history(app, users, plain_project):
    with session_scope(app) as s:
        cr = submit(s, actor=users["editor"], kind="CREATE", project_id=plain_project.id, payload={"title": "Minutes"})
    with session_scope(app) as s:
        review(s, actor=users["inspector"], request_id=cr.id, decision="APPROVE")
    with session_scope(app) as s:
        item_id = s.query(Item).one().id
        cr = submit(s, actor=users["editor"], kind="DELETE", item_id=item_id)
    with session_scope(app) as s:
        review(s, actor=users["inspector"], request_id=cr.id, decision="APPROVE")

    with session_scope(app) as s:
        cr = submit(s, actor=users["admin"], kind="PROJECT_DELETE", project_id=plain_project.id)
    with session_scope(app) as s:
        review(s, actor=users["inspector"], request_id=cr.id, decision="APPROVE")

    with session_scope(app) as s:
        assert s.get(Item, item_id) is None
        rows = s.query(ItemHistory).order_by(ItemHistory.version.asc()).all()
        assert [(h.version, h.change_type) for h in rows] == [(1, "CREATE"), (2, "DELETE")]
        assert {(h.item_id, h.project_id, h.item_code) for h in rows} == {(None, None, "NOTE-1")}
        assert rows[1].snapshot["title"] == "Minutes"
