from __future__ import annotations

from typing import Any

from flask import Blueprint, current_app, request
from sqlalchemy import select

from app.qrms.auth import current_user
from app.qrms.db import db_session
from app.qrms.modules.change_requests.models import ChangeRequest
from app.qrms.modules.change_requests.service import (
    cancel,
    get_change_request,
    list_awaiting_revision,
    list_pending,
    resubmit,
    review,
    submit,
)
from app.qrms.rbac import require_permission
from app.qrms.utils import iso, json_body, optional_int

bp = Blueprint("change_requests", __name__)


def serialize_change_request(cr: ChangeRequest) -> dict[str, Any]:
    return {
        "id": cr.id,
        "kind": cr.kind,
        "status": cr.status,
        "project_id": cr.project_id,
        "item_id": cr.item_id,
        "parent_item_id": cr.parent_item_id,
        "data_file_id": cr.data_file_id,
        "target": cr.target_label,
        "payload": cr.payload,
        "submit_reason": cr.submit_reason,
        "submitted_by": cr.submitter_name,
        "submitted_by_id": cr.submitted_by_id,
        "submitted_at": iso(cr.submitted_at),
        "reviewed_by": cr.reviewer_name,
        "reviewed_at": iso(cr.reviewed_at),
        "review_note": cr.review_note,
        "previous_request_id": cr.previous_request_id,
    }


@bp.get("/change-requests")
@require_permission("items.view")
def change_requests_list():
    s = db_session()
    q = select(ChangeRequest)
    status = (request.args.get("status") or "").strip().upper()
    if status:
        q = q.where(ChangeRequest.status == status)
    if request.args.get("mine") == "1":
        q = q.where(ChangeRequest.submitted_by_id == current_user().id)
    rows = s.execute(q.order_by(ChangeRequest.submitted_at.desc(), ChangeRequest.id.desc())).scalars()
    return {"change_requests": [serialize_change_request(cr) for cr in rows]}


@bp.get("/change-requests/pending")
@require_permission("changes.review")
def change_requests_pending():
    s = db_session()
    return {"change_requests": [serialize_change_request(cr) for cr in list_pending(s)]}


@bp.get("/change-requests/rejected")
@require_permission("changes.submit")
def change_requests_rejected():
    s = db_session()
    return {"change_requests": [serialize_change_request(cr) for cr in list_awaiting_revision(s, current_user())]}


@bp.get("/change-requests/<int:request_id>")
@require_permission("items.view")
def change_request_detail(request_id: int):
    s = db_session()
    return {"change_request": serialize_change_request(get_change_request(s, request_id))}


@bp.post("/change-requests")
@require_permission("changes.submit")
def change_requests_submit():
    s = db_session()
    data = json_body(request)
    cr = submit(
        s,
        actor=current_user(),
        kind=data.get("kind") or "",
        payload=data.get("payload") or {},
        reason=data.get("reason"),
        project_id=optional_int(data.get("project_id"), field="project_id"),
        item_id=optional_int(data.get("item_id"), field="item_id"),
        parent_item_id=optional_int(data.get("parent_item_id"), field="parent_item_id"),
        data_file_id=optional_int(data.get("data_file_id"), field="data_file_id"),
    )
    s.commit()
    return {"change_request": serialize_change_request(cr)}, 201


@bp.post("/change-requests/<int:request_id>/review")
@require_permission("changes.review")
def change_request_review(request_id: int):
    s = db_session()
    data = json_body(request)
    cr = review(
        s,
        actor=current_user(),
        request_id=request_id,
        decision=data.get("decision") or "",
        note=data.get("note"),
        document_generator=current_app.extensions.get("qrms_document_generator"),
    )
    s.commit()
    return {"change_request": serialize_change_request(cr)}


@bp.post("/change-requests/<int:request_id>/resubmit")
@require_permission("changes.submit")
def change_request_resubmit(request_id: int):
    s = db_session()
    data = json_body(request)
    cr = resubmit(
        s,
        actor=current_user(),
        request_id=request_id,
        payload=data.get("payload"),
        reason=data.get("reason"),
    )
    s.commit()
    return {"change_request": serialize_change_request(cr)}, 201


@bp.post("/change-requests/<int:request_id>/cancel")
@require_permission("changes.submit")
def change_request_cancel(request_id: int):
    s = db_session()
    data = json_body(request)
    cr = cancel(s, actor=current_user(), request_id=request_id, reason=data.get("reason"))
    s.commit()
    return {"change_request": serialize_change_request(cr)}
