from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from app.qrms.constants import NOTIFICATION_TYPES
from app.qrms.exceptions import NotFound, ValidationError
from app.qrms.models import User

from .models import Notification

logger = logging.getLogger(__name__)


def dispatch(
    s: Session,
    *,
    user_id: int | None,
    type: str,
    title: str,
    message: str,
    link: str | None = None,
    change_request_id: int | None = None,
    qc_approval_id: int | None = None,
    item_history_id: int | None = None,
) -> Notification | None:
    """
    Insert exactly one notification row in the caller's session.
    Never commits; the row lands or vanishes with the transition that produced it.
    """
    if type not in NOTIFICATION_TYPES:
        raise ValidationError(f"Unknown notification type: {type}")
    if user_id is None:
        # Recipient account was deleted; nothing to deliver.
        logger.info("Notification %s skipped: recipient no longer exists", type)
        return None
    n = Notification(
        user_id=user_id,
        type=type,
        title=title[:255],
        message=message,
        link=link,
        change_request_id=change_request_id,
        qc_approval_id=qc_approval_id,
        item_history_id=item_history_id,
    )
    s.add(n)
    return n


def list_for_user(s: Session, user: User, *, limit: int = 50, unread_only: bool = False) -> list[Notification]:
    q = select(Notification).where(Notification.user_id == user.id)
    if unread_only:
        q = q.where(Notification.is_read.is_(False))
    q = q.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(max(1, min(limit, 200)))
    return list(s.execute(q).scalars())


def unread_count(s: Session, user: User) -> int:
    return s.execute(
        select(func.count(Notification.id)).where(Notification.user_id == user.id, Notification.is_read.is_(False))
    ).scalar_one()


def _get_own(s: Session, user: User, notification_id: int) -> Notification:
    n = s.get(Notification, notification_id)
    # Other users' notifications are indistinguishable from missing ones.
    if not n or n.user_id != user.id:
        raise NotFound("Notification", notification_id)
    return n


def mark_read(s: Session, user: User, notification_id: int) -> Notification:
    n = _get_own(s, user, notification_id)
    if not n.is_read:
        n.is_read = True
        n.read_at = datetime.utcnow()
    return n


def mark_all_read(s: Session, user: User) -> int:
    res = s.execute(
        update(Notification)
        .where(Notification.user_id == user.id, Notification.is_read.is_(False))
        .values(is_read=True, read_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    return res.rowcount or 0


def mark_read_for_change_request(s: Session, change_request_id: int) -> int:
    """Mark every unread notification tied to a (superseded) change request as read."""
    res = s.execute(
        update(Notification)
        .where(Notification.change_request_id == change_request_id, Notification.is_read.is_(False))
        .values(is_read=True, read_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    return res.rowcount or 0


def delete_notification(s: Session, user: User, notification_id: int) -> None:
    s.delete(_get_own(s, user, notification_id))


def purge_read(s: Session, *, retention_days: int, now: datetime | None = None) -> int:
    """Delete read notifications older than the retention window. Unread rows are kept."""
    if retention_days < 0:
        raise ValidationError("retention_days must be >= 0.")
    cutoff = (now or datetime.utcnow()) - timedelta(days=retention_days)
    res = s.execute(
        delete(Notification)
        .where(Notification.is_read.is_(True), Notification.created_at < cutoff)
        .execution_options(synchronize_session=False)
    )
    purged = res.rowcount or 0
    if purged:
        logger.info("Purged %s read notifications older than %s days", purged, retention_days)
    return purged
