import pytest

from app.qrms.collaborators import SignatureEmbedder
from app.qrms.db import session_scope
from app.qrms.exceptions import ConflictError, Forbidden, ValidationError
from app.qrms.models import AuditEvent
from app.qrms.modules.notifications.models import Notification
from app.qrms.modules.quality_approval.models import QCDocumentApproval
from app.qrms.modules.quality_approval.service import (
    STAGE_QC,
    approval_for_history,
    approve_as_pm,
    approve_as_qc,
    list_for_actor,
    reject,
    request_revision,
    resolve_revision,
    stamp_signature,
)


class RecordingEmbedder(SignatureEmbedder):
    def __init__(self):
        self.calls = []

    def embed(self, document_path, signer, *, stage):
        self.calls.append((document_path, signer.username, stage))


class BrokenEmbedder(SignatureEmbedder):
    def embed(self, document_path, signer, *, stage):
        raise OSError("document store unavailable")


@pytest.fixture()
def approval_id(app, approved_item):
    with session_scope(app) as s:
        return approval_for_history(s, approved_item["history_id"]).id


def _status(app, approval_id):
    with session_scope(app) as s:
        return s.get(QCDocumentApproval, approval_id).status


def test_scenario_b_revision_loop(app, users, approval_id):
    with session_scope(app) as s:
        request_revision(s, actor=users["qc"], approval_id=approval_id, note="missing signature")
    with session_scope(app) as s:
        a = s.get(QCDocumentApproval, approval_id)
        assert a.status == "REVISION_REQUIRED"
        assert a.revision_count == 1
        assert [(r.revision_number, r.stage, r.request_note) for r in a.revisions] == [
            (1, STAGE_QC, "missing signature")
        ]
        assert a.revisions[0].resolved_at is None
        n = s.query(Notification).filter_by(qc_approval_id=approval_id).one()
        assert n.type == "REVISION_REQUEST"
        assert n.user_id == users["editor"].id

    with session_scope(app) as s:
        with pytest.raises(Forbidden):
            resolve_revision(s, actor=users["qc"], approval_id=approval_id)
    with session_scope(app) as s:
        resolve_revision(s, actor=users["editor"], approval_id=approval_id)
    with session_scope(app) as s:
        a = s.get(QCDocumentApproval, approval_id)
        assert a.status == "PENDING_QC"
        assert a.revisions[0].resolved_at is not None
        assert a.revisions[0].resolved_by_name == "Eli Editor"


def test_revision_at_pm_stage_clears_signatures(app, users, approval_id):
    with session_scope(app) as s:
        approve_as_qc(s, actor=users["qc"], approval_id=approval_id)
    with session_scope(app) as s:
        request_revision(s, actor=users["pm"], approval_id=approval_id, note="wrong revision table")
    with session_scope(app) as s:
        resolve_revision(s, actor=users["admin"], approval_id=approval_id)
    with session_scope(app) as s:
        request_revision(s, actor=users["qc"], approval_id=approval_id, note="typo")

    with session_scope(app) as s:
        a = s.get(QCDocumentApproval, approval_id)
        assert a.status == "REVISION_REQUIRED"
        assert a.revision_count == len(a.revisions) == 2
        assert [r.stage for r in a.revisions] == ["PM", "QC"]
        assert a.qc_approver_id is None
        assert a.qc_note is None


def test_scenario_c_two_stage_sign_off(app, users, approval_id):
    with session_scope(app) as s:
        a = approve_as_qc(s, actor=users["qc"], approval_id=approval_id)
        assert a.qc_note == "Approved"
    assert _status(app, approval_id) == "PENDING_PM"

    with session_scope(app) as s:
        approve_as_pm(s, actor=users["pm"], approval_id=approval_id, note="released")

    with session_scope(app) as s:
        a = s.get(QCDocumentApproval, approval_id)
        assert a.status == "COMPLETED"
        assert a.qc_approver_name == "Quinn Qc"
        assert a.pm_approver_name == "Pat Pm"
        assert a.pm_note == "released"
        completed = (
            s.query(Notification)
            .filter_by(user_id=users["editor"].id, type="COMPLETED")
            .all()
        )
        assert len(completed) == 1
        actions = [e.action for e in s.query(AuditEvent).filter_by(entity_type="QCDocumentApproval")]
        assert actions == ["qc_approval.approve_qc", "qc_approval.approve_pm"]


def test_pm_cannot_sign_before_qc_even_with_both_qualifications(app, users, approval_id):
    with session_scope(app) as s:
        with pytest.raises(ConflictError):
            approve_as_pm(s, actor=users["dual"], approval_id=approval_id)
    assert _status(app, approval_id) == "PENDING_QC"


def test_stage_qualifications_are_enforced(app, users, approval_id):
    with session_scope(app) as s:
        with pytest.raises(Forbidden):
            approve_as_qc(s, actor=users["pm"], approval_id=approval_id)
        with pytest.raises(Forbidden):
            approve_as_qc(s, actor=users["admin"], approval_id=approval_id)
    with session_scope(app) as s:
        approve_as_qc(s, actor=users["qc"], approval_id=approval_id)
    with session_scope(app) as s:
        with pytest.raises(Forbidden):
            approve_as_pm(s, actor=users["qc"], approval_id=approval_id)
        with pytest.raises(Forbidden):
            reject(s, actor=users["qc"], approval_id=approval_id, note="late objection")


def test_self_certification_flag(app, users, approval_id):
    with session_scope(app) as s:
        approve_as_qc(s, actor=users["dual"], approval_id=approval_id)
    with session_scope(app) as s:
        with pytest.raises(Forbidden):
            approve_as_pm(s, actor=users["dual"], approval_id=approval_id, allow_self_certification=False)
    with session_scope(app) as s:
        approve_as_pm(s, actor=users["dual"], approval_id=approval_id)
    assert _status(app, approval_id) == "COMPLETED"


def test_concurrent_qc_sign_off(app, users, approval_id):
    sm = app.extensions["sqlalchemy_sessionmaker"]
    s1, s2 = sm(), sm()
    try:
        s1.get(QCDocumentApproval, approval_id)
        s2.get(QCDocumentApproval, approval_id)
        approve_as_qc(s1, actor=users["qc"], approval_id=approval_id)
        s1.commit()
        with pytest.raises(ConflictError):
            approve_as_qc(s2, actor=users["dual"], approval_id=approval_id)
        s2.rollback()
    finally:
        s1.close()
        s2.close()

    with session_scope(app) as s:
        a = s.get(QCDocumentApproval, approval_id)
        assert a.qc_approver_name == "Quinn Qc"
        assert s.query(Notification).filter_by(qc_approval_id=approval_id).count() == 1


def test_reject_requires_note_and_is_terminal(app, users, approval_id):
    with session_scope(app) as s:
        with pytest.raises(ValidationError):
            reject(s, actor=users["qc"], approval_id=approval_id, note="")
    with session_scope(app) as s:
        approve_as_qc(s, actor=users["qc"], approval_id=approval_id)
    with session_scope(app) as s:
        reject(s, actor=users["pm"], approval_id=approval_id, note="wrong template")

    with session_scope(app) as s:
        a = s.get(QCDocumentApproval, approval_id)
        assert a.status == "REJECTED"
        assert a.rejected_by_name == "Pat Pm"
        assert a.rejection_note == "wrong template"
        ev = s.query(AuditEvent).filter_by(action="qc_approval.reject").one()
        assert '"stage": "PM"' in ev.metadata_json

    with session_scope(app) as s:
        with pytest.raises(ConflictError):
            reject(s, actor=users["pm"], approval_id=approval_id, note="again")
        with pytest.raises(ConflictError):
            request_revision(s, actor=users["qc"], approval_id=approval_id, note="again")
        with pytest.raises(ConflictError):
            approve_as_qc(s, actor=users["qc"], approval_id=approval_id)


def test_list_for_actor_by_qualification(app, users, approval_id):
    with session_scope(app) as s:
        assert [a.id for a in list_for_actor(s, users["qc"])] == [approval_id]
        assert list_for_actor(s, users["pm"]) == []
        assert list_for_actor(s, users["inspector"]) == []
        approve_as_qc(s, actor=users["qc"], approval_id=approval_id)
    with session_scope(app) as s:
        assert list_for_actor(s, users["qc"]) == []
        assert [a.id for a in list_for_actor(s, users["dual"])] == [approval_id]


def test_stamp_signature_is_best_effort(app, users, approval_id):
    with session_scope(app) as s:
        a = approve_as_qc(s, actor=users["qc"], approval_id=approval_id)

    with session_scope(app) as s:
        a = s.get(QCDocumentApproval, approval_id)
        good = RecordingEmbedder()
        assert stamp_signature(good, a, users["qc"], stage=STAGE_QC) is True
        assert good.calls == [(a.item_history.document_path, "qc", STAGE_QC)]

        assert stamp_signature(BrokenEmbedder(), a, users["qc"], stage=STAGE_QC) is False
        assert a.status == "PENDING_PM"

        a.item_history.document_path = None
        assert stamp_signature(good, a, users["qc"], stage=STAGE_QC) is False
        s.rollback()
