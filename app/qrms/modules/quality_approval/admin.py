from __future__ import annotations

from typing import Any

from flask import Blueprint, current_app, request

from app.qrms.auth import current_user
from app.qrms.db import db_session
from app.qrms.exceptions import NotFound
from app.qrms.modules.quality_approval.models import QCDocumentApproval, RevisionItem
from app.qrms.modules.quality_approval.service import (
    STAGE_PM,
    STAGE_QC,
    approval_for_history,
    approve_as_pm,
    approve_as_qc,
    get_approval,
    list_for_actor,
    list_for_submitter,
    reject,
    request_revision,
    resolve_revision,
    stamp_signature,
)
from app.qrms.rbac import require_permission
from app.qrms.utils import iso, json_body

bp = Blueprint("quality_approval", __name__)


def serialize_revision(r: RevisionItem) -> dict[str, Any]:
    return {
        "revision_number": r.revision_number,
        "stage": r.stage,
        "requested_by": r.requested_by_name,
        "request_note": r.request_note,
        "requested_at": iso(r.requested_at),
        "resolved_at": iso(r.resolved_at),
        "resolved_by": r.resolved_by_name,
    }


def serialize_approval(a: QCDocumentApproval, *, with_revisions: bool = False) -> dict[str, Any]:
    h = a.item_history
    out: dict[str, Any] = {
        "id": a.id,
        "item_history_id": a.item_history_id,
        "item_code": h.item_code if h else None,
        "version": h.version if h else None,
        "document_path": h.document_path if h else None,
        "status": a.status,
        "submitted_by": a.submitter_name,
        "qc": {"by": a.qc_approver_name, "at": iso(a.qc_approved_at), "note": a.qc_note},
        "pm": {"by": a.pm_approver_name, "at": iso(a.pm_approved_at), "note": a.pm_note},
        "rejection": {"by": a.rejected_by_name, "at": iso(a.rejected_at), "note": a.rejection_note},
        "revision_count": a.revision_count,
        "created_at": iso(a.created_at),
        "updated_at": iso(a.updated_at),
    }
    if with_revisions:
        out["revisions"] = [serialize_revision(r) for r in a.revisions]
    return out


def _stamp_after_commit(approval: QCDocumentApproval, stage: str) -> bool:
    embedder = current_app.extensions.get("qrms_signature_embedder")
    if embedder is None:
        return False
    return stamp_signature(embedder, approval, current_user(), stage=stage)


@bp.get("/quality/approvals")
@require_permission("quality.view")
def approvals_list():
    s = db_session()
    u = current_user()
    if request.args.get("scope") == "mine":
        status = (request.args.get("status") or "").strip().upper() or None
        rows = list_for_submitter(s, u, status=status)
    else:
        rows = list_for_actor(s, u)
    return {"approvals": [serialize_approval(a) for a in rows]}


@bp.get("/quality/approvals/<int:approval_id>")
@require_permission("quality.view")
def approval_detail(approval_id: int):
    s = db_session()
    return {"approval": serialize_approval(get_approval(s, approval_id), with_revisions=True)}


@bp.get("/history/<int:history_id>/approval")
@require_permission("quality.view")
def approval_for_history_detail(history_id: int):
    s = db_session()
    approval = approval_for_history(s, history_id)
    if approval is None:
        raise NotFound("QCDocumentApproval", f"history:{history_id}")
    return {"approval": serialize_approval(approval, with_revisions=True)}


@bp.post("/quality/approvals/<int:approval_id>/approve-qc")
@require_permission("quality.view")
def approval_approve_qc(approval_id: int):
    s = db_session()
    data = json_body(request)
    approval = approve_as_qc(s, actor=current_user(), approval_id=approval_id, note=data.get("note"))
    s.commit()
    stamped = _stamp_after_commit(approval, STAGE_QC)
    return {"approval": serialize_approval(approval), "signature_stamped": stamped}


@bp.post("/quality/approvals/<int:approval_id>/approve-pm")
@require_permission("quality.view")
def approval_approve_pm(approval_id: int):
    s = db_session()
    data = json_body(request)
    approval = approve_as_pm(
        s,
        actor=current_user(),
        approval_id=approval_id,
        note=data.get("note"),
        allow_self_certification=bool(current_app.config.get("ALLOW_SELF_CERTIFICATION", True)),
    )
    s.commit()
    stamped = _stamp_after_commit(approval, STAGE_PM)
    return {"approval": serialize_approval(approval), "signature_stamped": stamped}


@bp.post("/quality/approvals/<int:approval_id>/reject")
@require_permission("quality.view")
def approval_reject(approval_id: int):
    s = db_session()
    data = json_body(request)
    approval = reject(s, actor=current_user(), approval_id=approval_id, note=data.get("note"))
    s.commit()
    return {"approval": serialize_approval(approval)}


@bp.post("/quality/approvals/<int:approval_id>/request-revision")
@require_permission("quality.view")
def approval_request_revision(approval_id: int):
    s = db_session()
    data = json_body(request)
    approval = request_revision(s, actor=current_user(), approval_id=approval_id, note=data.get("note"))
    s.commit()
    return {"approval": serialize_approval(approval, with_revisions=True)}


@bp.post("/quality/approvals/<int:approval_id>/resolve-revision")
@require_permission("quality.view")
def approval_resolve_revision(approval_id: int):
    s = db_session()
    approval = resolve_revision(s, actor=current_user(), approval_id=approval_id)
    s.commit()
    return {"approval": serialize_approval(approval, with_revisions=True)}
