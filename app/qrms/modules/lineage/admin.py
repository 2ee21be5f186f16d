from __future__ import annotations

from flask import Blueprint

from app.qrms.auth import current_user
from app.qrms.db import db_session
from app.qrms.modules.change_requests.admin import serialize_change_request
from app.qrms.modules.lineage.service import (
    full_lineage,
    pending_counts,
    request_chain,
    review_timeline,
    revision_timeline,
)
from app.qrms.modules.quality_approval.admin import serialize_revision
from app.qrms.rbac import require_permission
from app.qrms.utils import iso

bp = Blueprint("lineage", __name__)


@bp.get("/change-requests/<int:request_id>/chain")
@require_permission("items.view")
def change_request_chain(request_id: int):
    s = db_session()
    return {"chain": [serialize_change_request(cr) for cr in request_chain(s, request_id)]}


@bp.get("/change-requests/<int:request_id>/lineage")
@require_permission("items.view")
def change_request_lineage(request_id: int):
    s = db_session()
    return {"lineage": [serialize_change_request(cr) for cr in full_lineage(s, request_id)]}


@bp.get("/quality/approvals/<int:approval_id>/revisions")
@require_permission("quality.view")
def approval_revisions(approval_id: int):
    s = db_session()
    return {"revisions": [serialize_revision(r) for r in revision_timeline(s, approval_id)]}


@bp.get("/history/<int:history_id>/timeline")
@require_permission("items.view")
def history_timeline(history_id: int):
    s = db_session()
    events = review_timeline(s, history_id)
    return {"timeline": [{**e, "at": iso(e["at"])} for e in events]}


@bp.get("/dashboard/counts")
@require_permission("items.view")
def dashboard_counts():
    s = db_session()
    return {"counts": pending_counts(s, current_user())}
