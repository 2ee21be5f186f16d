from __future__ import annotations

from typing import Any

from flask import Blueprint, current_app, request

from app.qrms.auth import current_user
from app.qrms.db import db_session
from app.qrms.modules.notifications.models import Notification
from app.qrms.modules.notifications.service import (
    delete_notification,
    list_for_user,
    mark_all_read,
    mark_read,
    purge_read,
    unread_count,
)
from app.qrms.rbac import require_permission
from app.qrms.utils import iso

bp = Blueprint("notifications", __name__)


def serialize_notification(n: Notification) -> dict[str, Any]:
    return {
        "id": n.id,
        "type": n.type,
        "title": n.title,
        "message": n.message,
        "link": n.link,
        "is_read": n.is_read,
        "read_at": iso(n.read_at),
        "change_request_id": n.change_request_id,
        "qc_approval_id": n.qc_approval_id,
        "item_history_id": n.item_history_id,
        "created_at": iso(n.created_at),
    }


@bp.get("/notifications")
@require_permission("notifications.view")
def notifications_list():
    s = db_session()
    try:
        limit = int(request.args.get("limit") or 50)
    except ValueError:
        limit = 50
    rows = list_for_user(s, current_user(), limit=limit, unread_only=request.args.get("unread") == "1")
    return {"notifications": [serialize_notification(n) for n in rows]}


@bp.get("/notifications/unread-count")
@require_permission("notifications.view")
def notifications_unread_count():
    s = db_session()
    return {"unread": unread_count(s, current_user())}


@bp.post("/notifications/<int:notification_id>/read")
@require_permission("notifications.view")
def notification_mark_read(notification_id: int):
    s = db_session()
    n = mark_read(s, current_user(), notification_id)
    s.commit()
    return {"notification": serialize_notification(n)}


@bp.post("/notifications/read-all")
@require_permission("notifications.view")
def notifications_mark_all_read():
    s = db_session()
    count = mark_all_read(s, current_user())
    s.commit()
    return {"marked": count}


@bp.post("/notifications/<int:notification_id>/delete")
@require_permission("notifications.view")
def notification_delete(notification_id: int):
    s = db_session()
    delete_notification(s, current_user(), notification_id)
    s.commit()
    return {"deleted": notification_id}


@bp.post("/notifications/purge")
@require_permission("admin.view")
def notifications_purge():
    s = db_session()
    purged = purge_read(s, retention_days=int(current_app.config.get("NOTIFICATION_RETENTION_DAYS", 30)))
    s.commit()
    return {"purged": purged}
