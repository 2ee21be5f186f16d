"""
User deletion with history compensation.

Historical rows keep plain-text names next to their user FKs. Before a user is
deleted, their display name is copied into any name column that is still
empty and the FK is nulled, all in the deleting transaction.
"""
from __future__ import annotations

import logging

from sqlalchemy import delete, func, update
from sqlalchemy.orm import Session

from app.qrms.audit import record_event
from app.qrms.db import flush_checked
from app.qrms.exceptions import Forbidden, NotFound, ValidationError
from app.qrms.models import AuditEvent, User
from app.qrms.modules.change_requests.models import ChangeRequest
from app.qrms.modules.data_files.models import DataFileHistory
from app.qrms.modules.items.models import ItemHistory
from app.qrms.modules.notifications.models import Notification
from app.qrms.modules.quality_approval.models import QCDocumentApproval, RevisionItem
from app.qrms.rbac import user_has_permission

logger = logging.getLogger(__name__)

# (model, fk column, name column)
USER_REFERENCES = (
    (ItemHistory, "submitted_by_id", "submitted_by_name"),
    (ItemHistory, "reviewed_by_id", "reviewed_by_name"),
    (DataFileHistory, "submitted_by_id", "submitted_by_name"),
    (DataFileHistory, "reviewed_by_id", "reviewed_by_name"),
    (ChangeRequest, "submitted_by_id", "submitter_name"),
    (ChangeRequest, "reviewed_by_id", "reviewer_name"),
    (QCDocumentApproval, "submitted_by_id", "submitter_name"),
    (QCDocumentApproval, "qc_approver_id", "qc_approver_name"),
    (QCDocumentApproval, "pm_approver_id", "pm_approver_name"),
    (QCDocumentApproval, "rejected_by_id", "rejected_by_name"),
    (RevisionItem, "requested_by_id", "requested_by_name"),
    (RevisionItem, "resolved_by_id", "resolved_by_name"),
    (AuditEvent, "actor_user_id", "actor_name"),
)


def delete_user(s: Session, *, actor: User, user_id: int) -> dict[str, int]:
    if not user_has_permission(actor, "users.delete"):
        raise Forbidden("Only administrators can delete users.")
    if actor.id == user_id:
        raise ValidationError("You cannot delete your own account.")
    target = s.get(User, user_id)
    if not target:
        raise NotFound("User", user_id)

    name = target.display_name
    username = target.username
    touched: dict[str, int] = {}
    for model, fk, name_col in USER_REFERENCES:
        fk_attr = getattr(model, fk)
        name_attr = getattr(model, name_col)
        res = s.execute(
            update(model)
            .where(fk_attr == user_id)
            .values({fk: None, name_col: func.coalesce(name_attr, name)})
            .execution_options(synchronize_session=False)
        )
        if res.rowcount:
            touched[f"{model.__tablename__}.{fk}"] = res.rowcount

    s.execute(
        delete(Notification).where(Notification.user_id == user_id).execution_options(synchronize_session=False)
    )
    record_event(
        s,
        actor=actor,
        action="user.delete",
        entity_type="User",
        entity_id=str(user_id),
        metadata={"username": username, "display_name": name, "references": touched},
    )
    s.delete(target)
    flush_checked(s, context="user.delete")
    # Bulk updates bypassed the identity map; reload anything still cached.
    s.expire_all()
    logger.info(
        "User %s deleted by %s (%s historical references compensated)", username, actor.username, sum(touched.values())
    )
    return touched
