from __future__ import annotations

from typing import Any

from flask import Blueprint, Response, request
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.qrms.auth import current_user
from app.qrms.db import db_session
from app.qrms.modules.items.models import Item, ItemHistory, Project, ProjectCategory
from app.qrms.modules.items.service import (
    create_category,
    create_project,
    delete_category,
    get_history,
    get_item,
    get_project,
    global_history,
    history_to_csv,
    item_history,
    list_categories,
    list_projects,
    related_item_refs,
    reorder_categories,
    update_category,
)
from app.qrms.rbac import require_permission
from app.qrms.utils import iso, json_body, optional_int, parse_date_arg

bp = Blueprint("items", __name__)


def serialize_project(p: Project) -> dict[str, Any]:
    return {
        "id": p.id,
        "code_prefix": p.code_prefix,
        "title": p.title,
        "description": p.description,
        "requires_quality_review": p.requires_quality_review,
        "category_id": p.category_id,
        "created_at": iso(p.created_at),
        "updated_at": iso(p.updated_at),
    }


def serialize_category(c: ProjectCategory, *, project_count: int | None = None) -> dict[str, Any]:
    out: dict[str, Any] = {
        "id": c.id,
        "name": c.name,
        "description": c.description,
        "sort_order": c.sort_order,
        "created_at": iso(c.created_at),
        "updated_at": iso(c.updated_at),
    }
    if project_count is not None:
        out["project_count"] = project_count
    return out


def serialize_item(s: Session, item: Item) -> dict[str, Any]:
    return {
        "id": item.id,
        "project_id": item.project_id,
        "parent_id": item.parent_id,
        "code": item.code,
        "title": item.title,
        "content": item.content,
        "attachments": item.attachments,
        "related_items": related_item_refs(s, item.id),
        "current_version": item.current_version,
        "is_deleted": item.is_deleted,
        "deleted_at": iso(item.deleted_at),
        "published_at": iso(item.published_at),
        "updated_at": iso(item.updated_at),
    }


def serialize_history(h: ItemHistory, *, full: bool = False) -> dict[str, Any]:
    out: dict[str, Any] = {
        "id": h.id,
        "item_id": h.item_id,
        "project_id": h.project_id,
        "item_code": h.item_code,
        "item_title": h.item_title,
        "version": h.version,
        "change_type": h.change_type,
        "submitted_by": h.submitted_by_name,
        "reviewed_by": h.reviewed_by_name,
        "change_request_id": h.change_request_id,
        "document_path": h.document_path,
        "created_at": iso(h.created_at),
    }
    if full:
        out["snapshot"] = h.snapshot
        out["diff"] = h.diff
    return out


def _history_filters() -> dict[str, Any]:
    return {
        "project_id": optional_int(request.args.get("project_id"), field="project_id"),
        "change_type": (request.args.get("change_type") or "").strip().upper() or None,
        "date_from": parse_date_arg(request.args.get("date_from")),
        "date_to": parse_date_arg(request.args.get("date_to"), end_of_day=True),
    }


# ---------- Projects ----------
@bp.get("/projects")
@require_permission("items.view")
def projects_list():
    s = db_session()
    category_id = optional_int(request.args.get("category_id"), field="category_id")
    return {"projects": [serialize_project(p) for p in list_projects(s, category_id=category_id)]}


@bp.post("/projects")
@require_permission("projects.create")
def projects_create():
    s = db_session()
    data = json_body(request)
    project = create_project(
        s,
        actor=current_user(),
        code_prefix=data.get("code_prefix") or "",
        title=data.get("title") or "",
        description=data.get("description"),
        requires_quality_review=data.get("requires_quality_review", True),
        category_id=data.get("category_id"),
    )
    s.commit()
    return {"project": serialize_project(project)}, 201


@bp.get("/projects/<int:project_id>/items")
@require_permission("items.view")
def project_items(project_id: int):
    s = db_session()
    project = get_project(s, project_id)
    include_deleted = request.args.get("include_deleted") == "1"
    q = select(Item).where(Item.project_id == project.id)
    if not include_deleted:
        q = q.where(Item.is_deleted.is_(False))
    items = s.execute(q.order_by(Item.code.asc())).scalars().all()
    return {"project": serialize_project(project), "items": [serialize_item(s, i) for i in items]}


# ---------- Project categories ----------
@bp.get("/project-categories")
@require_permission("items.view")
def categories_list():
    s = db_session()
    return {"categories": [serialize_category(c, project_count=n) for c, n in list_categories(s)]}


@bp.post("/project-categories")
@require_permission("items.view")
def categories_create():
    s = db_session()
    data = json_body(request)
    category = create_category(
        s,
        actor=current_user(),
        name=data.get("name") or "",
        description=data.get("description"),
    )
    s.commit()
    return {"category": serialize_category(category)}, 201


@bp.post("/project-categories/<int:category_id>")
@require_permission("items.view")
def categories_update(category_id: int):
    s = db_session()
    data = json_body(request)
    category = update_category(
        s,
        actor=current_user(),
        category_id=category_id,
        name=data.get("name") or "",
        description=data.get("description"),
    )
    s.commit()
    return {"category": serialize_category(category)}


@bp.post("/project-categories/<int:category_id>/delete")
@require_permission("categories.delete")
def categories_delete(category_id: int):
    s = db_session()
    unlinked = delete_category(s, actor=current_user(), category_id=category_id)
    s.commit()
    return {"deleted": category_id, "unlinked_projects": unlinked}


@bp.post("/project-categories/reorder")
@require_permission("items.view")
def categories_reorder():
    s = db_session()
    data = json_body(request)
    ordered_ids = data.get("ordered_ids")
    if not isinstance(ordered_ids, list):
        ordered_ids = [ordered_ids]
    categories = reorder_categories(s, actor=current_user(), ordered_ids=ordered_ids)
    s.commit()
    return {"categories": [serialize_category(c) for c in categories]}

# ---------- Items ----------
@bp.get("/items/<int:item_id>")
@require_permission("items.view")
def item_detail(item_id: int):
    s = db_session()
    item = get_item(s, item_id, include_deleted=True)
    return {"item": serialize_item(s, item)}


@bp.get("/items/<int:item_id>/history")
@require_permission("items.view")
def item_history_list(item_id: int):
    s = db_session()
    item = get_item(s, item_id, include_deleted=True)
    return {"item_id": item.id, "history": [serialize_history(h, full=True) for h in item_history(s, item.id)]}


# ---------- History ----------
@bp.get("/history")
@require_permission("items.view")
def history_list():
    s = db_session()
    entries = global_history(s, **_history_filters())
    return {"history": [serialize_history(h) for h in entries]}


@bp.get("/history/<int:history_id>")
@require_permission("items.view")
def history_detail(history_id: int):
    s = db_session()
    return {"history": serialize_history(get_history(s, history_id), full=True)}


@bp.get("/history/export.csv")
@require_permission("history.export")
def history_export():
    s = db_session()
    entries = global_history(s, **_history_filters())
    body = history_to_csv(s, entries, actor=current_user())
    s.commit()
    return Response(
        body,
        mimetype="text/csv",
        headers={"Content-Disposition": "attachment; filename=item_history.csv"},
    )
