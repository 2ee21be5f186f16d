"""
Read-only projections over change requests, approvals and the audit trail.
Nothing in this module writes.
"""
from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.qrms.constants import (
    CR_APPROVED,
    CR_PENDING,
    CR_REJECTED,
    QC_PENDING_PM,
    QC_PENDING_QC,
    QC_REVISION_REQUIRED,
    ROLE_ADMIN,
)
from app.qrms.exceptions import IntegrityError
from app.qrms.models import AuditEvent, User
from app.qrms.modules.change_requests.models import ChangeRequest
from app.qrms.modules.change_requests.service import get_change_request
from app.qrms.modules.items.service import get_history
from app.qrms.modules.notifications.service import unread_count
from app.qrms.modules.quality_approval.models import QCDocumentApproval, RevisionItem
from app.qrms.modules.quality_approval.service import approval_for_history, get_approval
from app.qrms.rbac import user_has_permission


def request_chain(s: Session, request_id: int) -> list[ChangeRequest]:
    """
    Follow previous_request_id back to the root. Returned oldest first.
    A revisited id means the lineage is corrupt.
    """
    cr: ChangeRequest | None = get_change_request(s, request_id)
    chain: list[ChangeRequest] = []
    visited: set[int] = set()
    while cr is not None:
        if cr.id in visited:
            raise IntegrityError(
                f"Change request lineage loops back to id={cr.id}.",
                details={"start": request_id, "visited": sorted(visited)},
            )
        visited.add(cr.id)
        chain.append(cr)
        prev_id = cr.previous_request_id
        cr = s.get(ChangeRequest, prev_id) if prev_id is not None else None
    chain.reverse()
    return chain


def full_lineage(s: Session, request_id: int) -> list[ChangeRequest]:
    """The whole reject/resubmit chain containing request_id, root to newest successor."""
    chain = request_chain(s, request_id)
    visited = {cr.id for cr in chain}
    current = chain[-1]
    while True:
        nxt = s.execute(
            select(ChangeRequest).where(ChangeRequest.previous_request_id == current.id)
        ).scalar_one_or_none()
        if nxt is None:
            break
        if nxt.id in visited:
            raise IntegrityError(
                f"Change request lineage loops back to id={nxt.id}.",
                details={"start": request_id},
            )
        visited.add(nxt.id)
        chain.append(nxt)
        current = nxt
    return chain


def revision_timeline(s: Session, approval_id: int) -> list[RevisionItem]:
    get_approval(s, approval_id)
    return list(
        s.execute(
            select(RevisionItem)
            .where(RevisionItem.approval_id == approval_id)
            .order_by(RevisionItem.requested_at.asc(), RevisionItem.revision_number.asc())
        ).scalars()
    )


_APPROVAL_EVENTS = {
    "qc_approval.approve_qc": "QC_APPROVED",
    "qc_approval.approve_pm": "PM_APPROVED",
    "qc_approval.reject": "QC_REJECTED",
    "qc_approval.request_revision": "REVISION_REQUESTED",
    "qc_approval.resolve_revision": "REVISION_RESOLVED",
}


def review_timeline(s: Session, history_id: int) -> list[dict[str, Any]]:
    """
    Everything that happened to one snapshot, oldest first: each submission in
    its change-request lineage, each review, and every sign-off event.
    """
    history = get_history(s, history_id)
    events: list[dict[str, Any]] = []

    if history.change_request_id is not None:
        for cr in request_chain(s, history.change_request_id):
            events.append(
                {
                    "at": cr.submitted_at,
                    "event": "SUBMITTED" if cr.previous_request_id is None else "RESUBMITTED",
                    "actor": cr.submitter_name,
                    "note": cr.submit_reason,
                    "change_request_id": cr.id,
                }
            )
            if cr.reviewed_at is not None:
                events.append(
                    {
                        "at": cr.reviewed_at,
                        "event": "REVIEW_APPROVED" if cr.status == CR_APPROVED else "REVIEW_REJECTED",
                        "actor": cr.reviewer_name,
                        "note": cr.review_note,
                        "change_request_id": cr.id,
                    }
                )

    approval = approval_for_history(s, history.id)
    if approval is not None:
        events.append(
            {"at": approval.created_at, "event": "QC_OPENED", "actor": None, "note": None, "approval_id": approval.id}
        )
        rows = s.execute(
            select(AuditEvent)
            .where(AuditEvent.entity_type == "QCDocumentApproval", AuditEvent.entity_id == str(approval.id))
            .order_by(AuditEvent.created_at.asc(), AuditEvent.id.asc())
        ).scalars()
        for ev in rows:
            label = _APPROVAL_EVENTS.get(ev.action)
            if label is None:
                continue
            meta = json.loads(ev.metadata_json) if ev.metadata_json else {}
            if label == "QC_REJECTED" and meta.get("stage") == "PM":
                label = "PM_REJECTED"
            events.append(
                {"at": ev.created_at, "event": label, "actor": ev.actor_name, "note": ev.reason, "approval_id": approval.id}
            )

    # Stable sort keeps insertion order for identical timestamps.
    events.sort(key=lambda e: e["at"] or datetime.min)
    return events


def pending_counts(s: Session, actor: User) -> dict[str, int]:
    """Dashboard badge counts for one actor."""

    def _count(q) -> int:
        return s.execute(q).scalar_one()

    counts = {
        "change_requests_to_review": 0,
        "qc_to_sign": 0,
        "pm_to_sign": 0,
        "my_rejected_requests": _count(
            select(func.count(ChangeRequest.id)).where(
                ChangeRequest.submitted_by_id == actor.id, ChangeRequest.status == CR_REJECTED
            )
        ),
        "my_revisions_required": _count(
            select(func.count(QCDocumentApproval.id)).where(
                QCDocumentApproval.submitted_by_id == actor.id, QCDocumentApproval.status == QC_REVISION_REQUIRED
            )
        ),
        "unread_notifications": unread_count(s, actor),
    }
    if user_has_permission(actor, "changes.review"):
        q = select(func.count(ChangeRequest.id)).where(ChangeRequest.status == CR_PENDING)
        if actor.role != ROLE_ADMIN:
            # Reviewers never review their own requests.
            q = q.where(ChangeRequest.submitted_by_id.is_distinct_from(actor.id))
        counts["change_requests_to_review"] = _count(q)
    if actor.is_active and actor.is_qc:
        counts["qc_to_sign"] = _count(
            select(func.count(QCDocumentApproval.id)).where(QCDocumentApproval.status == QC_PENDING_QC)
        )
    if actor.is_active and actor.is_pm:
        counts["pm_to_sign"] = _count(
            select(func.count(QCDocumentApproval.id)).where(QCDocumentApproval.status == QC_PENDING_PM)
        )
    return counts

