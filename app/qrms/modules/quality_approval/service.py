from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.qrms.audit import record_event
from app.qrms.collaborators import SignatureEmbedder
from app.qrms.constants import (
    DEFAULT_SIGNOFF_NOTE,
    MACHINE_QC_APPROVAL,
    NOTIFY_APPROVAL,
    NOTIFY_COMPLETED,
    NOTIFY_REJECTION,
    NOTIFY_REVISION_REQUEST,
    QC_COMPLETED,
    QC_PENDING_PM,
    QC_PENDING_QC,
    QC_PENDING_STAGES,
    QC_REJECTED,
    QC_REVISION_REQUIRED,
)
from app.qrms.db import compare_and_set, flush_checked
from app.qrms.exceptions import ConflictError, Forbidden, IntegrityError, NotFound, ValidationError
from app.qrms.models import User
from app.qrms.modules.notifications.service import dispatch
from app.qrms.rbac import ensure_can_transition

from .models import QCDocumentApproval, RevisionItem

if TYPE_CHECKING:
    from app.qrms.modules.change_requests.models import ChangeRequest
    from app.qrms.modules.items.models import ItemHistory

logger = logging.getLogger(__name__)

STAGE_QC = "QC"
STAGE_PM = "PM"


def _link(approval: QCDocumentApproval) -> str:
    return f"/quality/approvals/{approval.id}"


def _label(approval: QCDocumentApproval) -> str:
    h = approval.item_history
    return f"{h.item_code} v{h.version}" if h else f"approval #{approval.id}"


def _require_note(note: str | None, what: str) -> str:
    note = (note or "").strip()
    if not note:
        raise ValidationError(f"A note is required to {what}.", details={"note": "required"})
    return note


def get_approval(s: Session, approval_id: int) -> QCDocumentApproval:
    approval = s.get(QCDocumentApproval, approval_id)
    if not approval:
        raise NotFound("QCDocumentApproval", approval_id)
    return approval


def approval_for_history(s: Session, history_id: int) -> QCDocumentApproval | None:
    return s.execute(
        select(QCDocumentApproval).where(QCDocumentApproval.item_history_id == history_id)
    ).scalar_one_or_none()


def open_approval(s: Session, *, history: ItemHistory, change_request: ChangeRequest) -> QCDocumentApproval:
    """Open the PENDING_QC sign-off for a freshly written history snapshot. One per snapshot."""
    if approval_for_history(s, history.id) is not None:
        raise IntegrityError(
            f"ItemHistory id={history.id} already has a QC document approval.",
            details={"item_history_id": history.id},
        )
    approval = QCDocumentApproval(
        item_history_id=history.id,
        status=QC_PENDING_QC,
        submitted_by_id=change_request.submitted_by_id,
        submitter_name=change_request.submitter_name,
        revision_count=0,
    )
    approval.item_history = history
    s.add(approval)
    flush_checked(s, context="qc_approval.open")
    logger.info("QC approval %s opened for %s", approval.id, _label(approval))
    return approval


def approve_as_qc(s: Session, *, actor: User, approval_id: int, note: str | None = None) -> QCDocumentApproval:
    approval = get_approval(s, approval_id)
    ensure_can_transition(actor, MACHINE_QC_APPROVAL, QC_PENDING_QC, QC_PENDING_PM, owner_id=approval.submitted_by_id)

    now = datetime.utcnow()
    compare_and_set(
        s,
        approval,
        expected=QC_PENDING_QC,
        values={
            "status": QC_PENDING_PM,
            "qc_approver_id": actor.id,
            "qc_approver_name": actor.display_name,
            "qc_approved_at": now,
            "qc_note": (note or "").strip() or DEFAULT_SIGNOFF_NOTE,
            "updated_at": now,
        },
    )
    dispatch(
        s,
        user_id=approval.submitted_by_id,
        type=NOTIFY_APPROVAL,
        title=f"QC approved: {_label(approval)}",
        message=f"{actor.display_name} signed the QC stage. Awaiting PM sign-off.",
        link=_link(approval),
        qc_approval_id=approval.id,
        item_history_id=approval.item_history_id,
    )
    record_event(
        s,
        actor=actor,
        action="qc_approval.approve_qc",
        entity_type="QCDocumentApproval",
        entity_id=str(approval.id),
        reason=approval.qc_note,
        metadata={"from": QC_PENDING_QC, "to": QC_PENDING_PM},
    )
    logger.info("QC approval %s: QC signed by %s", approval.id, actor.username)
    return approval


def approve_as_pm(
    s: Session,
    *,
    actor: User,
    approval_id: int,
    note: str | None = None,
    allow_self_certification: bool = True,
) -> QCDocumentApproval:
    """
    Final sign-off. Only legal in PENDING_PM: a call while the record is still
    PENDING_QC fails the status guard even for a user holding both qualifications.
    """
    approval = get_approval(s, approval_id)
    ensure_can_transition(actor, MACHINE_QC_APPROVAL, QC_PENDING_PM, QC_COMPLETED, owner_id=approval.submitted_by_id)
    if not allow_self_certification and approval.qc_approver_id is not None and approval.qc_approver_id == actor.id:
        raise Forbidden(
            "The PM sign-off must come from someone other than the QC approver.",
            details={"qc_approver_id": approval.qc_approver_id},
        )

    now = datetime.utcnow()
    compare_and_set(
        s,
        approval,
        expected=QC_PENDING_PM,
        values={
            "status": QC_COMPLETED,
            "pm_approver_id": actor.id,
            "pm_approver_name": actor.display_name,
            "pm_approved_at": now,
            "pm_note": (note or "").strip() or DEFAULT_SIGNOFF_NOTE,
            "updated_at": now,
        },
    )
    dispatch(
        s,
        user_id=approval.submitted_by_id,
        type=NOTIFY_COMPLETED,
        title=f"Quality sign-off completed: {_label(approval)}",
        message=f"QC ({approval.qc_approver_name}) and PM ({actor.display_name}) have both signed.",
        link=_link(approval),
        qc_approval_id=approval.id,
        item_history_id=approval.item_history_id,
    )
    record_event(
        s,
        actor=actor,
        action="qc_approval.approve_pm",
        entity_type="QCDocumentApproval",
        entity_id=str(approval.id),
        reason=approval.pm_note,
        metadata={"from": QC_PENDING_PM, "to": QC_COMPLETED},
    )
    logger.info("QC approval %s: completed by PM %s", approval.id, actor.username)
    return approval


def _current_stage(approval: QCDocumentApproval) -> str:
    if approval.status not in QC_PENDING_STAGES:
        raise ConflictError(
            "QCDocumentApproval",
            approval.id,
            expected=QC_PENDING_STAGES,
            actual=approval.status,
            message=f"Approval is {approval.status}; only pending approvals can be acted on.",
        )
    return approval.status


def reject(s: Session, *, actor: User, approval_id: int, note: str | None) -> QCDocumentApproval:
    approval = get_approval(s, approval_id)
    from_state = _current_stage(approval)
    ensure_can_transition(actor, MACHINE_QC_APPROVAL, from_state, QC_REJECTED, owner_id=approval.submitted_by_id)
    note = _require_note(note, "reject")

    now = datetime.utcnow()
    compare_and_set(
        s,
        approval,
        expected=from_state,
        values={
            "status": QC_REJECTED,
            "rejected_by_id": actor.id,
            "rejected_by_name": actor.display_name,
            "rejected_at": now,
            "rejection_note": note,
            "updated_at": now,
        },
    )
    stage = STAGE_QC if from_state == QC_PENDING_QC else STAGE_PM
    dispatch(
        s,
        user_id=approval.submitted_by_id,
        type=NOTIFY_REJECTION,
        title=f"Quality document rejected at {stage}: {_label(approval)}",
        message=f"{actor.display_name}: {note}",
        link=_link(approval),
        qc_approval_id=approval.id,
        item_history_id=approval.item_history_id,
    )
    record_event(
        s,
        actor=actor,
        action="qc_approval.reject",
        entity_type="QCDocumentApproval",
        entity_id=str(approval.id),
        reason=note,
        metadata={"from": from_state, "to": QC_REJECTED, "stage": stage},
    )
    logger.info("QC approval %s rejected at %s by %s", approval.id, stage, actor.username)
    return approval


def request_revision(s: Session, *, actor: User, approval_id: int, note: str | None) -> QCDocumentApproval:
    approval = get_approval(s, approval_id)
    from_state = _current_stage(approval)
    ensure_can_transition(
        actor, MACHINE_QC_APPROVAL, from_state, QC_REVISION_REQUIRED, owner_id=approval.submitted_by_id
    )
    note = _require_note(note, "request a revision")

    revision_number = approval.revision_count + 1
    now = datetime.utcnow()
    compare_and_set(
        s,
        approval,
        expected=from_state,
        values={"status": QC_REVISION_REQUIRED, "revision_count": revision_number, "updated_at": now},
    )
    stage = STAGE_QC if from_state == QC_PENDING_QC else STAGE_PM
    approval.revisions.append(
        RevisionItem(
            revision_number=revision_number,
            stage=stage,
            requested_by_id=actor.id,
            requested_by_name=actor.display_name,
            request_note=note,
            requested_at=now,
        )
    )
    flush_checked(s, context="qc_approval.request_revision")

    dispatch(
        s,
        user_id=approval.submitted_by_id,
        type=NOTIFY_REVISION_REQUEST,
        title=f"Revision requested ({stage}): {_label(approval)}",
        message=f"{actor.display_name}: {note}",
        link=_link(approval),
        qc_approval_id=approval.id,
        item_history_id=approval.item_history_id,
    )
    record_event(
        s,
        actor=actor,
        action="qc_approval.request_revision",
        entity_type="QCDocumentApproval",
        entity_id=str(approval.id),
        reason=note,
        metadata={"from": from_state, "to": QC_REVISION_REQUIRED, "revision_number": revision_number},
    )
    logger.info("QC approval %s: revision %s requested at %s", approval.id, revision_number, stage)
    return approval


def resolve_revision(s: Session, *, actor: User, approval_id: int) -> QCDocumentApproval:
    """Submitter has corrected the document: close the open revision and restart at QC."""
    approval = get_approval(s, approval_id)
    ensure_can_transition(
        actor, MACHINE_QC_APPROVAL, QC_REVISION_REQUIRED, QC_PENDING_QC, owner_id=approval.submitted_by_id
    )
    now = datetime.utcnow()
    compare_and_set(
        s,
        approval,
        expected=QC_REVISION_REQUIRED,
        values={
            "status": QC_PENDING_QC,
            "qc_approver_id": None,
            "qc_approver_name": None,
            "qc_approved_at": None,
            "qc_note": None,
            "pm_approver_id": None,
            "pm_approver_name": None,
            "pm_approved_at": None,
            "pm_note": None,
            "updated_at": now,
        },
    )
    open_items = [r for r in approval.revisions if r.resolved_at is None]
    if len(open_items) != 1:
        raise IntegrityError(
            f"QCDocumentApproval id={approval.id} has {len(open_items)} open revisions (expected 1).",
            details={"approval_id": approval.id},
        )
    rev = open_items[0]
    rev.resolved_at = now
    rev.resolved_by_id = actor.id
    rev.resolved_by_name = actor.display_name
    flush_checked(s, context="qc_approval.resolve_revision")

    record_event(
        s,
        actor=actor,
        action="qc_approval.resolve_revision",
        entity_type="QCDocumentApproval",
        entity_id=str(approval.id),
        metadata={"from": QC_REVISION_REQUIRED, "to": QC_PENDING_QC, "revision_number": rev.revision_number},
    )
    logger.info("QC approval %s: revision %s resolved, back to QC", approval.id, rev.revision_number)
    return approval


def stamp_signature(embedder: SignatureEmbedder, approval: QCDocumentApproval, signer: User, *, stage: str) -> bool:
    """
    Best-effort signature stamp, called after the approval has committed.
    A failure is logged and reported as False; the approval stands.
    """
    path = approval.item_history.document_path if approval.item_history else None
    if not path:
        logger.info("QC approval %s has no document path; signature stamp skipped", approval.id)
        return False
    try:
        embedder.embed(path, signer, stage=stage)
    except Exception:
        logger.warning("Signature stamp failed for approval %s (stage=%s)", approval.id, stage, exc_info=True)
        return False
    return True


def list_for_actor(s: Session, actor: User) -> list[QCDocumentApproval]:
    """Approvals awaiting a stage the actor is qualified for."""
    statuses = []
    if actor.is_qc:
        statuses.append(QC_PENDING_QC)
    if actor.is_pm:
        statuses.append(QC_PENDING_PM)
    if not statuses:
        return []
    return list(
        s.execute(
            select(QCDocumentApproval)
            .where(QCDocumentApproval.status.in_(statuses))
            .order_by(QCDocumentApproval.created_at.asc(), QCDocumentApproval.id.asc())
        ).scalars()
    )


def list_for_submitter(s: Session, user: User, *, status: str | None = None) -> list[QCDocumentApproval]:
    q = select(QCDocumentApproval).where(QCDocumentApproval.submitted_by_id == user.id)
    if status:
        q = q.where(QCDocumentApproval.status == status)
    return list(s.execute(q.order_by(QCDocumentApproval.updated_at.desc())).scalars())
