"""
Change Request Engine service layer.

Every status change is a compare-and-set on the expected prior status. On
APPROVE the item mutation, the history append, the QC approval, the
notification and the audit event all land in the reviewer's session and
commit together (the caller commits once).
"""
from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from app.qrms.audit import record_event
from app.qrms.collaborators import DocumentGenerator
from app.qrms.constants import (
    CHANGE_KINDS,
    CR_APPROVED,
    CR_CANCELLED,
    CR_CREATE,
    CR_DELETE,
    CR_FILE_CREATE,
    CR_FILE_DELETE,
    CR_FILE_UPDATE,
    CR_PENDING,
    CR_PROJECT_COPY,
    CR_PROJECT_DELETE,
    CR_PROJECT_UPDATE,
    CR_REJECTED,
    CR_RESTORE,
    CR_RESUBMITTED,
    CR_UPDATE,
    FILE_CHANGE_TYPES,
    FILE_KINDS,
    MACHINE_CHANGE_REQUEST,
    NOTIFY_APPROVAL,
    NOTIFY_REJECTION,
)
from app.qrms.db import compare_and_set, flush_checked
from app.qrms.exceptions import Forbidden, NotFound, ValidationError
from app.qrms.models import User
from app.qrms.modules.data_files import service as data_files
from app.qrms.modules.items import service as items
from app.qrms.modules.items.models import Item, ItemHistory, Project
from app.qrms.modules.notifications.service import dispatch, mark_read_for_change_request
from app.qrms.modules.quality_approval.service import open_approval
from app.qrms.rbac import can_submit, ensure_can_transition

from .models import ChangeRequest

logger = logging.getLogger(__name__)

DECISIONS = {"APPROVE": CR_APPROVED, "APPROVED": CR_APPROVED, "REJECT": CR_REJECTED, "REJECTED": CR_REJECTED}


def _link(cr: ChangeRequest) -> str:
    return f"/change-requests/{cr.id}"


def get_change_request(s: Session, request_id: int) -> ChangeRequest:
    cr = s.get(ChangeRequest, request_id)
    if not cr:
        raise NotFound("ChangeRequest", request_id)
    return cr


# ---------------------------------------------------------------------------
# Domain validation of a proposal
# ---------------------------------------------------------------------------


def _validate_project_payload(s: Session, payload: dict[str, Any]) -> None:
    title = payload.get("title")
    if not isinstance(title, str) or not title.strip():
        raise ValidationError("Title is required.", details={"title": "required"})
    flag = payload.get("requires_quality_review")
    if flag is not None and not isinstance(flag, bool):
        raise ValidationError("requires_quality_review must be true or false.")
    if "category_id" in payload:
        items.resolve_category_id(s, payload["category_id"])


def _prepare_file(s: Session, *, kind: str, payload: dict[str, Any], data_file_id: int | None) -> dict[str, Any]:
    if kind == CR_FILE_CREATE:
        data = data_files.normalize_data_file_payload(payload, kind=kind)
        data_files.check_data_code_free(s, data["data_code"])
        data_files.check_no_pending_create(s, data["data_code"])
        return {"data_file_id": None, "target_label": data["data_code"]}

    f = data_files.get_data_file(s, data_file_id)
    if kind == CR_FILE_UPDATE:
        data = data_files.normalize_data_file_payload(payload, kind=kind)
        if data.get("data_code") and data["data_code"] != f.data_code:
            data_files.check_data_code_free(s, data["data_code"], exclude_id=f.id)
    return {"data_file_id": f.id, "target_label": f.data_code}


def _prepare(
    s: Session,
    *,
    kind: str,
    payload: dict[str, Any],
    project_id: int | None,
    item_id: int | None,
    parent_item_id: int | None,
    data_file_id: int | None = None,
) -> dict[str, Any]:
    """
    Check a proposal against the current store and resolve its targets.
    Returns the column values for the ChangeRequest row.
    """
    if kind not in CHANGE_KINDS:
        raise ValidationError(f"Unknown change kind: {kind}", details={"kind": kind})
    if not isinstance(payload, dict):
        raise ValidationError("Payload must be a JSON object.")

    if kind in FILE_KINDS:
        targets = _prepare_file(s, kind=kind, payload=payload, data_file_id=data_file_id)
        return {"project_id": None, "item_id": None, "parent_item_id": None, **targets}

    if kind == CR_CREATE:
        project = items.get_project(s, project_id)
        parent = items.get_item(s, parent_item_id) if parent_item_id is not None else None
        data = items.normalize_item_payload(payload, kind=CR_CREATE)
        code, parent = items.resolve_new_code(s, project, parent, data["code"])
        items.validate_related_targets(s, data["related_items"])
        return {
            "project_id": project.id,
            "item_id": None,
            "parent_item_id": parent.id if parent else None,
            "data_file_id": None,
            "target_label": code if data["code"] else f"{parent.code if parent else project.code_prefix}-*",
        }

    if kind in (CR_UPDATE, CR_DELETE, CR_RESTORE):
        item = items.get_item(s, item_id, include_deleted=(kind == CR_RESTORE))
        if kind == CR_UPDATE:
            data = items.normalize_item_payload(payload, kind=CR_UPDATE)
            if "related_items" in data:
                items.validate_related_targets(s, data["related_items"], self_id=item.id)
        elif kind == CR_DELETE:
            if items.live_children_count(s, item.id) > 0:
                raise ValidationError(
                    "Cannot delete an item with existing children. Delete the children first.",
                    details={"code": item.code},
                )
        elif not item.is_deleted:
            raise ValidationError("Item is not deleted.", details={"code": item.code})
        return {
            "project_id": item.project_id,
            "item_id": item.id,
            "parent_item_id": item.parent_id,
            "data_file_id": None,
            "target_label": item.code,
        }

    project = items.get_project(s, project_id)
    target_label = project.code_prefix
    if kind == CR_PROJECT_UPDATE:
        _validate_project_payload(s, payload)
    elif kind == CR_PROJECT_COPY:
        data = items.normalize_copy_payload(s, project, payload)
        target_label = data["code_prefix"]
        pending = s.execute(
            select(ChangeRequest.id).where(
                ChangeRequest.kind == CR_PROJECT_COPY,
                ChangeRequest.status == CR_PENDING,
                ChangeRequest.target_label == target_label,
            )
        ).first()
        if pending:
            raise ValidationError(
                f"A copy into prefix {target_label} is already awaiting review.",
                details={"code_prefix": target_label, "change_request_id": pending[0]},
            )
    else:
        live = s.execute(
            select(func.count(Item.id)).where(Item.project_id == project.id, Item.is_deleted.is_(False))
        ).scalar_one()
        if live:
            raise ValidationError(
                "Cannot delete a project that still has items.",
                details={"code_prefix": project.code_prefix, "live_items": live},
            )
    return {
        "project_id": project.id,
        "item_id": None,
        "parent_item_id": None,
        "data_file_id": None,
        "target_label": target_label,
    }


# ---------------------------------------------------------------------------
# Submit / review / resubmit / cancel
# ---------------------------------------------------------------------------


def submit(
    s: Session,
    *,
    actor: User,
    kind: str,
    payload: dict[str, Any] | None = None,
    reason: str | None = None,
    project_id: int | None = None,
    item_id: int | None = None,
    parent_item_id: int | None = None,
    data_file_id: int | None = None,
) -> ChangeRequest:
    kind = (kind or "").strip().upper()
    if not can_submit(actor, kind):
        raise Forbidden(
            "You don't have permission to submit this kind of change.",
            details={"kind": kind},
        )
    payload = payload or {}
    targets = _prepare(
        s,
        kind=kind,
        payload=payload,
        project_id=project_id,
        item_id=item_id,
        parent_item_id=parent_item_id,
        data_file_id=data_file_id,
    )

    cr = ChangeRequest(
        kind=kind,
        status=CR_PENDING,
        payload_json=json.dumps(payload, sort_keys=True),
        submit_reason=(reason or "").strip() or None,
        submitted_by_id=actor.id,
        submitter_name=actor.display_name,
        submitted_at=datetime.utcnow(),
        **targets,
    )
    s.add(cr)
    flush_checked(s, context="change_request.submit")

    record_event(
        s,
        actor=actor,
        action="change_request.submit",
        entity_type="ChangeRequest",
        entity_id=str(cr.id),
        reason=cr.submit_reason,
        metadata={"kind": kind, "target": cr.target_label},
    )
    logger.info("Change request %s submitted: %s %s by %s", cr.id, kind, cr.target_label, actor.username)
    return cr


def review(
    s: Session,
    *,
    actor: User,
    request_id: int,
    decision: str,
    note: str | None = None,
    document_generator: DocumentGenerator | None = None,
) -> ChangeRequest:
    """
    Approve or reject a PENDING request.

    A concurrent reviewer that loses the status guard gets ConflictError; the
    change is never applied twice.
    """
    target = DECISIONS.get((decision or "").strip().upper())
    if target is None:
        raise ValidationError("Decision must be APPROVE or REJECT.", details={"decision": decision})

    cr = get_change_request(s, request_id)
    ensure_can_transition(actor, MACHINE_CHANGE_REQUEST, CR_PENDING, target, owner_id=cr.submitted_by_id)
    note = (note or "").strip() or None
    if target == CR_REJECTED and not note:
        raise ValidationError("A note is required to reject a change request.", details={"note": "required"})

    now = datetime.utcnow()
    compare_and_set(
        s,
        cr,
        expected=CR_PENDING,
        values={
            "status": target,
            "reviewed_by_id": actor.id,
            "reviewer_name": actor.display_name,
            "reviewed_at": now,
            "review_note": note,
        },
    )

    if target == CR_APPROVED:
        history = _apply(s, cr, actor)
        if history is not None:
            _open_quality_review(s, cr, history, document_generator)
        dispatch(
            s,
            user_id=cr.submitted_by_id,
            type=NOTIFY_APPROVAL,
            title=f"Change approved: {cr.kind} {cr.target_label}",
            message=f"{actor.display_name} approved your change." + (f" Note: {note}" if note else ""),
            link=_link(cr),
            change_request_id=cr.id,
            item_history_id=history.id if history else None,
        )
    else:
        dispatch(
            s,
            user_id=cr.submitted_by_id,
            type=NOTIFY_REJECTION,
            title=f"Change rejected: {cr.kind} {cr.target_label}",
            message=f"{actor.display_name}: {note}",
            link=_link(cr),
            change_request_id=cr.id,
        )

    record_event(
        s,
        actor=actor,
        action="change_request.approve" if target == CR_APPROVED else "change_request.reject",
        entity_type="ChangeRequest",
        entity_id=str(cr.id),
        reason=note,
        metadata={"kind": cr.kind, "target": cr.target_label, "from": CR_PENDING, "to": target},
    )
    logger.info("Change request %s %s by %s", cr.id, target, actor.username)
    return cr


def resubmit(
    s: Session,
    *,
    actor: User,
    request_id: int,
    payload: dict[str, Any] | None = None,
    reason: str | None = None,
) -> ChangeRequest:
    """
    Replace a REJECTED request with a corrected PENDING successor.
    The old row becomes RESUBMITTED and stays in the lineage chain.
    """
    old = get_change_request(s, request_id)
    ensure_can_transition(actor, MACHINE_CHANGE_REQUEST, CR_REJECTED, CR_RESUBMITTED, owner_id=old.submitted_by_id)
    if not can_submit(actor, old.kind):
        raise Forbidden("You don't have permission to submit this kind of change.", details={"kind": old.kind})

    new_payload = old.payload if payload is None else payload
    targets = _prepare(
        s,
        kind=old.kind,
        payload=new_payload,
        project_id=old.project_id,
        item_id=old.item_id,
        parent_item_id=old.parent_item_id,
        data_file_id=old.data_file_id,
    )

    compare_and_set(s, old, expected=CR_REJECTED, values={"status": CR_RESUBMITTED})

    new = ChangeRequest(
        kind=old.kind,
        status=CR_PENDING,
        payload_json=json.dumps(new_payload, sort_keys=True),
        submit_reason=(reason or "").strip() or old.submit_reason,
        submitted_by_id=actor.id,
        submitter_name=actor.display_name,
        submitted_at=datetime.utcnow(),
        previous_request_id=old.id,
        **targets,
    )
    s.add(new)
    flush_checked(s, context="change_request.resubmit")
    mark_read_for_change_request(s, old.id)

    record_event(
        s,
        actor=actor,
        action="change_request.resubmit",
        entity_type="ChangeRequest",
        entity_id=str(new.id),
        reason=new.submit_reason,
        metadata={"previous_request_id": old.id, "kind": new.kind, "target": new.target_label},
    )
    logger.info("Change request %s resubmitted as %s by %s", old.id, new.id, actor.username)
    return new


def cancel(s: Session, *, actor: User, request_id: int, reason: str | None = None) -> ChangeRequest:
    cr = get_change_request(s, request_id)
    ensure_can_transition(actor, MACHINE_CHANGE_REQUEST, CR_REJECTED, CR_CANCELLED, owner_id=cr.submitted_by_id)
    compare_and_set(s, cr, expected=CR_REJECTED, values={"status": CR_CANCELLED})
    mark_read_for_change_request(s, cr.id)
    record_event(
        s,
        actor=actor,
        action="change_request.cancel",
        entity_type="ChangeRequest",
        entity_id=str(cr.id),
        reason=reason,
        metadata={"from": CR_REJECTED, "to": CR_CANCELLED},
    )
    logger.info("Change request %s cancelled by %s", cr.id, actor.username)
    return cr


# ---------------------------------------------------------------------------
# Applying an approved request
# ---------------------------------------------------------------------------


def _apply(s: Session, cr: ChangeRequest, reviewer: User) -> ItemHistory | None:
    """Materialize the approved change. Item kinds return the appended history row; others return None."""
    payload = cr.payload

    if cr.kind == CR_CREATE:
        project = items.get_project(s, cr.project_id)
        parent = items.get_item(s, cr.parent_item_id) if cr.parent_item_id is not None else None
        item = items.apply_create(s, project=project, parent=parent, payload=payload)
        cr.item_id = item.id
        cr.target_label = item.code
        return items.append_history(
            s,
            item=item,
            change_type=CR_CREATE,
            snapshot=items.build_snapshot(s, item),
            change_request=cr,
            reviewer=reviewer,
        )

    if cr.kind == CR_UPDATE:
        item = items.get_item(s, cr.item_id)
        old_snapshot, new_snapshot = items.apply_update(s, item, payload)
        return items.append_history(
            s,
            item=item,
            change_type=CR_UPDATE,
            snapshot=new_snapshot,
            diff=items.compute_diff(old_snapshot, new_snapshot),
            change_request=cr,
            reviewer=reviewer,
        )

    if cr.kind == CR_DELETE:
        item = items.get_item(s, cr.item_id)
        snapshot = items.apply_delete(s, item)
        return items.append_history(
            s, item=item, change_type=CR_DELETE, snapshot=snapshot, change_request=cr, reviewer=reviewer
        )

    if cr.kind == CR_RESTORE:
        item = items.get_item(s, cr.item_id, include_deleted=True)
        snapshot = items.apply_restore(s, item)
        return items.append_history(
            s, item=item, change_type=CR_RESTORE, snapshot=snapshot, change_request=cr, reviewer=reviewer
        )

    if cr.kind == CR_PROJECT_UPDATE:
        project = items.get_project(s, cr.project_id)
        _validate_project_payload(s, payload)
        project.title = payload["title"].strip()
        if "description" in payload:
            project.description = (payload.get("description") or "").strip() or None
        if payload.get("requires_quality_review") is not None:
            project.requires_quality_review = payload["requires_quality_review"]
        if "category_id" in payload:
            project.category_id = items.resolve_category_id(s, payload["category_id"])
        project.updated_at = datetime.utcnow()
        flush_checked(s, context="project.update")
        return None

    if cr.kind == CR_PROJECT_COPY:
        source = items.get_project(s, cr.project_id)
        copy = items.apply_project_copy(s, source=source, payload=payload, change_request=cr, reviewer=reviewer)
        logger.info("Project %s copied to %s (project %s)", source.code_prefix, copy.code_prefix, copy.id)
        return None

    if cr.kind == CR_PROJECT_DELETE:
        _delete_project(s, items.get_project(s, cr.project_id))
        return None

    if cr.kind in FILE_KINDS:
        _apply_file(s, cr, reviewer)
        return None

    raise ValidationError(f"Unknown change kind: {cr.kind}")


def _apply_file(s: Session, cr: ChangeRequest, reviewer: User) -> None:
    payload = cr.payload
    change_type = FILE_CHANGE_TYPES[cr.kind]
    diff = None
    if cr.kind == CR_FILE_CREATE:
        f = data_files.apply_file_create(s, payload)
        cr.data_file_id = f.id
        cr.target_label = f.data_code
        snapshot = data_files.build_file_snapshot(f)
    elif cr.kind == CR_FILE_UPDATE:
        f = data_files.get_data_file(s, cr.data_file_id)
        old_snapshot, snapshot = data_files.apply_file_update(s, f, payload)
        diff = data_files.compute_file_diff(old_snapshot, snapshot)
    else:
        f = data_files.get_data_file(s, cr.data_file_id)
        snapshot = data_files.apply_file_delete(s, f)
    data_files.append_file_history(
        s, f=f, change_type=change_type, snapshot=snapshot, change_request=cr, reviewer=reviewer, diff=diff
    )


def _delete_project(s: Session, project: Project) -> None:
    live = s.execute(
        select(func.count(Item.id)).where(Item.project_id == project.id, Item.is_deleted.is_(False))
    ).scalar_one()
    if live:
        raise ValidationError("Cannot delete a project that still has items.", details={"live_items": live})
    # Soft-deleted leftovers go deepest-first (parent_id is RESTRICT). History rows keep their text copy.
    leftovers = s.execute(select(Item.id, Item.code).where(Item.project_id == project.id)).all()
    for item_id, _code in sorted(leftovers, key=lambda r: r.code.count("-"), reverse=True):
        s.execute(delete(Item).where(Item.id == item_id).execution_options(synchronize_session=False))
    s.execute(delete(Project).where(Project.id == project.id).execution_options(synchronize_session=False))
    s.expunge(project)


def _open_quality_review(
    s: Session,
    cr: ChangeRequest,
    history: ItemHistory,
    document_generator: DocumentGenerator | None,
) -> None:
    if document_generator is not None:
        history.document_path = document_generator.generate(history)
        flush_checked(s, context="item_history.document_path")
    project = history.project
    if project is not None and project.requires_quality_review:
        open_approval(s, history=history, change_request=cr)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def list_pending(s: Session) -> list[ChangeRequest]:
    return list(
        s.execute(
            select(ChangeRequest)
            .where(ChangeRequest.status == CR_PENDING)
            .order_by(ChangeRequest.submitted_at.asc(), ChangeRequest.id.asc())
        ).scalars()
    )


def list_for_submitter(s: Session, user: User, *, status: str | None = None) -> list[ChangeRequest]:
    q = select(ChangeRequest).where(ChangeRequest.submitted_by_id == user.id)
    if status:
        q = q.where(ChangeRequest.status == status)
    return list(s.execute(q.order_by(ChangeRequest.submitted_at.desc(), ChangeRequest.id.desc())).scalars())


def list_awaiting_revision(s: Session, user: User) -> list[ChangeRequest]:
    """REJECTED requests the user still has to resubmit or cancel (RESUBMITTED ones drop out)."""
    return list_for_submitter(s, user, status=CR_REJECTED)
