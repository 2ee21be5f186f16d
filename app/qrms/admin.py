import json
from datetime import datetime, timedelta

from flask import Blueprint, current_app, request
from sqlalchemy import func, select, text

from app.qrms.auth import current_user
from app.qrms.db import db_session
from app.qrms.models import AuditEvent, User
from app.qrms.modules.change_requests.models import ChangeRequest
from app.qrms.modules.quality_approval.models import QCDocumentApproval
from app.qrms.rbac import ROLE_PERMISSIONS, require_permission
from app.qrms.users import delete_user
from app.qrms.utils import iso, parse_date_arg

bp = Blueprint("admin", __name__)


@bp.get("/")
@require_permission("admin.view")
def index():
    s = db_session()
    status = {
        "env": current_app.config.get("ENV"),
        "db_connected": False,
        "db_error": None,
        "allow_self_certification": bool(current_app.config.get("ALLOW_SELF_CERTIFICATION")),
        "quality_doc_root": current_app.config.get("QUALITY_DOC_ROOT"),
    }

    # DB connectivity (lightweight)
    try:
        s.execute(text("SELECT 1"))
        status["db_connected"] = True
    except Exception as e:
        status["db_error"] = str(e)
        return {"status": status}, 503

    status["change_requests_by_status"] = dict(
        s.execute(select(ChangeRequest.status, func.count(ChangeRequest.id)).group_by(ChangeRequest.status)).all()
    )
    status["approvals_by_status"] = dict(
        s.execute(
            select(QCDocumentApproval.status, func.count(QCDocumentApproval.id)).group_by(QCDocumentApproval.status)
        ).all()
    )
    return {"status": status}


@bp.get("/me")
@require_permission("items.view")
def me():
    """Current user's role, qualifications and permissions (handy when a 403 is surprising)."""
    u = current_user()
    return {
        "id": u.id,
        "username": u.username,
        "display_name": u.display_name,
        "role": u.role,
        "is_qc": u.is_qc,
        "is_pm": u.is_pm,
        "permissions": sorted(ROLE_PERMISSIONS.get(u.role, frozenset())),
    }


@bp.get("/users")
@require_permission("admin.view")
def users_list():
    s = db_session()
    users = s.execute(select(User).order_by(User.username.asc())).scalars()
    return {
        "users": [
            {
                "id": u.id,
                "username": u.username,
                "display_name": u.display_name,
                "role": u.role,
                "is_qc": u.is_qc,
                "is_pm": u.is_pm,
                "is_active": u.is_active,
            }
            for u in users
        ]
    }


@bp.post("/users/<int:user_id>/delete")
@require_permission("users.delete")
def users_delete(user_id: int):
    s = db_session()
    touched = delete_user(s, actor=current_user(), user_id=user_id)
    s.commit()
    return {"deleted": user_id, "compensated": touched}


@bp.get("/audit")
@require_permission("admin.view")
def audit_list():
    """
    Last 200 audit events with simple filters:
    - action (contains)
    - entity_type / entity_id (exact)
    - date range (YYYY-MM-DD, inclusive)
    """
    s = db_session()
    action = (request.args.get("action") or "").strip()
    entity_type = (request.args.get("entity_type") or "").strip()
    entity_id = (request.args.get("entity_id") or "").strip()
    date_from = parse_date_arg(request.args.get("date_from"))
    date_to = parse_date_arg(request.args.get("date_to"))

    q = select(AuditEvent)
    if action:
        q = q.where(AuditEvent.action.like(f"%{action}%"))
    if entity_type:
        q = q.where(AuditEvent.entity_type == entity_type)
    if entity_id:
        q = q.where(AuditEvent.entity_id == entity_id)
    if date_from:
        q = q.where(AuditEvent.created_at >= date_from)
    if date_to:
        # inclusive end-date (treat as whole day)
        q = q.where(AuditEvent.created_at < date_to + timedelta(days=1))

    events = s.execute(q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(200)).scalars()
    return {
        "events": [
            {
                "id": ev.id,
                "created_at": iso(ev.created_at),
                "request_id": ev.request_id,
                "actor": ev.actor_name,
                "action": ev.action,
                "entity_type": ev.entity_type,
                "entity_id": ev.entity_id,
                "reason": ev.reason,
                "metadata": json.loads(ev.metadata_json) if ev.metadata_json else None,
            }
            for ev in events
        ],
        "generated_at": iso(datetime.utcnow()),
    }
