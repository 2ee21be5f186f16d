"""
Item & Version Store service layer.

Owns projects, the current-state item tree, symmetric item relations and the
append-only ItemHistory ledger. Item rows are only mutated through the
`apply_*` helpers, which the change-request engine calls while applying an
approved request; nothing here commits.
"""
from __future__ import annotations

import csv
import io
import json
import re
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from app.qrms.audit import record_event
from app.qrms.constants import CR_CREATE, CR_DELETE, CR_RESTORE, CR_UPDATE
from app.qrms.db import compare_and_set, flush_checked
from app.qrms.exceptions import ConflictError, Forbidden, NotFound, ValidationError
from app.qrms.rbac import can_manage_categories, user_has_permission

from .models import Item, ItemHistory, ItemRelation, Project, ProjectCategory

if TYPE_CHECKING:
    from app.qrms.models import User
    from app.qrms.modules.change_requests.models import ChangeRequest


CODE_RE = re.compile(r"^[A-Z0-9]+(-[A-Z0-9]+)*$")
HISTORY_CHANGE_TYPES = (CR_CREATE, CR_UPDATE, CR_DELETE, CR_RESTORE)
_DIFF_FIELDS = ("title", "content", "attachments")


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


def normalize_code_prefix(code_prefix: str) -> str:
    return (code_prefix or "").strip().upper()


def _check_new_prefix(s: Session, prefix: str) -> None:
    if not CODE_RE.fullmatch(prefix):
        raise ValidationError(
            "Code prefix may only contain uppercase letters, digits and single hyphens.",
            details={"code_prefix": prefix},
        )
    exists = s.execute(select(Project.id).where(Project.code_prefix == prefix)).first()
    if exists:
        raise ValidationError("Code prefix already exists.", details={"code_prefix": prefix})
    # Item codes are global, so the new prefix must not already head any code.
    if s.execute(select(Item.id).where(Item.code.like(f"{prefix}-%"))).first():
        raise ValidationError("Code prefix overlaps existing item codes.", details={"code_prefix": prefix})


def resolve_category_id(s: Session, category_id: Any) -> int | None:
    if category_id is None or category_id == "":
        return None
    try:
        category_id = int(category_id)
    except (TypeError, ValueError) as e:
        raise ValidationError("category_id must be an integer.", details={"category_id": category_id}) from e
    if s.get(ProjectCategory, category_id) is None:
        raise NotFound("ProjectCategory", category_id)
    return category_id


def create_project(
    s: Session,
    *,
    actor: User,
    code_prefix: str,
    title: str,
    description: str | None = None,
    requires_quality_review: bool = True,
    category_id: int | None = None,
) -> Project:
    """Create a project directly (projects are containers; their items go through change control)."""
    if not user_has_permission(actor, "projects.create"):
        raise Forbidden("You don't have permission to create projects.")

    prefix = normalize_code_prefix(code_prefix)
    title = (title or "").strip()
    if not prefix or not title:
        raise ValidationError("Title and code prefix are required.")
    _check_new_prefix(s, prefix)

    project = Project(
        code_prefix=prefix,
        title=title,
        description=(description or "").strip() or None,
        requires_quality_review=bool(requires_quality_review),
        category_id=resolve_category_id(s, category_id),
    )
    s.add(project)
    flush_checked(s, context="project.create")

    record_event(
        s,
        actor=actor,
        action="project.create",
        entity_type="Project",
        entity_id=str(project.id),
        metadata={"code_prefix": prefix, "requires_quality_review": project.requires_quality_review},
    )
    return project


def get_project(s: Session, project_id: int | None) -> Project:
    project = s.get(Project, project_id) if project_id is not None else None
    if not project:
        raise NotFound("Project", project_id)
    return project


def list_projects(s: Session, *, category_id: int | None = None) -> list[Project]:
    q = select(Project)
    if category_id is not None:
        q = q.where(Project.category_id == category_id)
    return list(s.execute(q.order_by(Project.code_prefix.asc())).scalars())


# ---------------------------------------------------------------------------
# Project categories
# ---------------------------------------------------------------------------


def _ensure_category_manager(actor: User) -> None:
    if not can_manage_categories(actor):
        raise Forbidden("Only administrators and project managers can manage project categories.")


def _clean_category_name(s: Session, name: str, *, exclude_id: int | None = None) -> str:
    name = (name or "").strip()
    if not name:
        raise ValidationError("Category name is required.", details={"name": "required"})
    q = select(ProjectCategory.id).where(ProjectCategory.name == name)
    if exclude_id is not None:
        q = q.where(ProjectCategory.id != exclude_id)
    if s.execute(q).first():
        raise ValidationError("Category name already exists.", details={"name": name})
    return name


def get_category(s: Session, category_id: int) -> ProjectCategory:
    category = s.get(ProjectCategory, category_id)
    if not category:
        raise NotFound("ProjectCategory", category_id)
    return category


def list_categories(s: Session) -> list[tuple[ProjectCategory, int]]:
    """Categories in display order, each with its project count."""
    rows = s.execute(
        select(ProjectCategory, func.count(Project.id))
        .outerjoin(Project, Project.category_id == ProjectCategory.id)
        .group_by(ProjectCategory.id)
        .order_by(ProjectCategory.sort_order.asc(), ProjectCategory.id.asc())
    ).all()
    return [(category, count) for category, count in rows]


def create_category(s: Session, *, actor: User, name: str, description: str | None = None) -> ProjectCategory:
    _ensure_category_manager(actor)
    name = _clean_category_name(s, name)
    highest = s.execute(select(func.max(ProjectCategory.sort_order))).scalar_one()
    category = ProjectCategory(
        name=name,
        description=(description or "").strip() or None,
        sort_order=(highest or 0) + 1,
    )
    s.add(category)
    flush_checked(s, context="project_category.create")
    record_event(
        s,
        actor=actor,
        action="project_category.create",
        entity_type="ProjectCategory",
        entity_id=str(category.id),
        metadata={"name": name},
    )
    return category


def update_category(
    s: Session,
    *,
    actor: User,
    category_id: int,
    name: str,
    description: str | None = None,
) -> ProjectCategory:
    _ensure_category_manager(actor)
    category = get_category(s, category_id)
    before = {"name": category.name, "description": category.description}
    category.name = _clean_category_name(s, name, exclude_id=category.id)
    category.description = (description or "").strip() or None
    category.updated_at = datetime.utcnow()
    flush_checked(s, context="project_category.update")
    record_event(
        s,
        actor=actor,
        action="project_category.update",
        entity_type="ProjectCategory",
        entity_id=str(category.id),
        metadata={"before": before, "after": {"name": category.name, "description": category.description}},
    )
    return category


def delete_category(s: Session, *, actor: User, category_id: int) -> int:
    """Delete a category and unlink its projects. Returns the number of projects unlinked."""
    if not user_has_permission(actor, "categories.delete"):
        raise Forbidden("Only administrators can delete project categories.")
    category = get_category(s, category_id)
    res = s.execute(
        update(Project)
        .where(Project.category_id == category.id)
        .values(category_id=None)
        .execution_options(synchronize_session=False)
    )
    record_event(
        s,
        actor=actor,
        action="project_category.delete",
        entity_type="ProjectCategory",
        entity_id=str(category.id),
        metadata={"name": category.name, "unlinked_projects": res.rowcount},
    )
    s.delete(category)
    flush_checked(s, context="project_category.delete")
    return res.rowcount


def reorder_categories(s: Session, *, actor: User, ordered_ids: list[int]) -> list[ProjectCategory]:
    _ensure_category_manager(actor)
    try:
        ordered_ids = [int(category_id) for category_id in ordered_ids]
    except (TypeError, ValueError) as e:
        raise ValidationError("ordered_ids must be a list of category ids.") from e
    if len(set(ordered_ids)) != len(ordered_ids):
        raise ValidationError("ordered_ids must not repeat a category.")
    categories = [get_category(s, category_id) for category_id in ordered_ids]
    for position, category in enumerate(categories):
        category.sort_order = position
    flush_checked(s, context="project_category.reorder")
    record_event(
        s,
        actor=actor,
        action="project_category.reorder",
        entity_type="ProjectCategory",
        entity_id="reorder",
        metadata={"ordered_ids": ordered_ids},
    )
    return categories


# ---------------------------------------------------------------------------
# Items: lookup, codes, payloads
# ---------------------------------------------------------------------------


def get_item(s: Session, item_id: int | None, *, include_deleted: bool = False) -> Item:
    item = s.get(Item, item_id) if item_id is not None else None
    if not item or (item.is_deleted and not include_deleted):
        raise NotFound("Item", item_id)
    return item


def live_children_count(s: Session, item_id: int) -> int:
    return s.execute(
        select(func.count(Item.id)).where(Item.parent_id == item_id, Item.is_deleted.is_(False))
    ).scalar_one()


def _code_segments(project: Project, code: str) -> list[str]:
    prefix = project.code_prefix + "-"
    if not code.startswith(prefix) or not CODE_RE.fullmatch(code):
        raise ValidationError(
            f"Item code must look like {project.code_prefix}-<n>[-<n>...].",
            details={"code": code, "code_prefix": project.code_prefix},
        )
    return code[len(prefix):].split("-")


def next_child_code(s: Session, project: Project, parent: Item | None) -> str:
    """Next free numeric code under `parent` (or at the project root). Deleted siblings keep their numbers."""
    base = parent.code if parent else project.code_prefix
    q = select(Item.code).where(Item.project_id == project.id)
    q = q.where(Item.parent_id == parent.id) if parent else q.where(Item.parent_id.is_(None))
    highest = 0
    for code in s.execute(q).scalars():
        last = code.rsplit("-", 1)[-1]
        if last.isdigit():
            highest = max(highest, int(last))
    candidate = f"{base}-{highest + 1}"
    while s.execute(select(Item.id).where(Item.code == candidate)).first():
        highest += 1
        candidate = f"{base}-{highest + 1}"
    return candidate


def resolve_new_code(
    s: Session,
    project: Project,
    parent: Item | None,
    requested_code: str | None,
) -> tuple[str, Item | None]:
    """
    Validate (or generate) the code of a new item.

    The code encodes the hierarchy: the parent of "WQ-9-2" is "WQ-9". When no
    parent is given for a nested code, the parent is looked up from the code.
    """
    if parent is not None and parent.project_id != project.id:
        raise ValidationError("Parent item belongs to a different project.")
    if parent is not None and parent.is_deleted:
        raise ValidationError("Parent item is deleted.", details={"parent_code": parent.code})

    code = (requested_code or "").strip()
    if not code:
        return next_child_code(s, project, parent), parent

    segments = _code_segments(project, code)
    parent_code = "-".join([project.code_prefix] + segments[:-1]) if len(segments) > 1 else None

    if parent is not None and parent.code != parent_code:
        raise ValidationError(
            f"Code {code} does not sit directly under parent {parent.code}.",
            details={"code": code, "parent_code": parent.code},
        )
    if parent is None and parent_code is not None:
        parent = s.execute(
            select(Item).where(Item.code == parent_code, Item.is_deleted.is_(False))
        ).scalar_one_or_none()
        if parent is None:
            raise ValidationError(f"Parent item {parent_code} does not exist.", details={"code": code})

    if s.execute(select(Item.id).where(Item.code == code)).first():
        raise ValidationError(f"Item code {code} is already in use.", details={"code": code})
    return code, parent


def _normalize_related(raw: Any) -> dict[int, str | None] | None:
    if raw is None:
        return None
    if not isinstance(raw, list):
        raise ValidationError("related_items must be a list.")
    out: dict[int, str | None] = {}
    for entry in raw:
        if isinstance(entry, dict):
            rid, desc = entry.get("id"), entry.get("description")
        else:
            rid, desc = entry, None
        try:
            rid = int(rid)
        except (TypeError, ValueError) as e:
            raise ValidationError("related_items entries need an integer id.", details={"entry": entry}) from e
        out[rid] = (str(desc).strip() or None) if desc is not None else None
    return out


def normalize_item_payload(payload: dict[str, Any], *, kind: str) -> dict[str, Any]:
    """
    Validate a CREATE/UPDATE payload and return its canonical form.

    CREATE output always carries every field. UPDATE output only carries the
    fields present in the payload; an absent field means "leave unchanged".
    `content: null` clears the content, while a null `attachments` or
    `related_items` counts as absent.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Payload must be a JSON object.")
    out: dict[str, Any] = {}

    if kind == CR_CREATE or "title" in payload:
        title = payload.get("title")
        if not isinstance(title, str) or not title.strip():
            raise ValidationError("Title is required.", details={"title": "required"})
        out["title"] = title.strip()
    if kind == CR_CREATE or "content" in payload:
        content = payload.get("content")
        if content is not None and not isinstance(content, str):
            raise ValidationError("Content must be text.")
        out["content"] = content
    attachments = payload.get("attachments")
    if attachments is not None:
        if not isinstance(attachments, list):
            raise ValidationError("Attachments must be a list.")
        out["attachments"] = attachments
    related = _normalize_related(payload.get("related_items"))
    if related is not None:
        out["related_items"] = related

    if kind == CR_CREATE:
        code = payload.get("code")
        if code is not None and not isinstance(code, str):
            raise ValidationError("Code must be text.")
        out["code"] = code
        out.setdefault("attachments", [])
        out.setdefault("related_items", {})
    elif not out:
        raise ValidationError("An update must change at least one field.")
    return out


def validate_related_targets(s: Session, related: dict[int, str | None], *, self_id: int | None = None) -> None:
    for rid in related:
        if self_id is not None and rid == self_id:
            raise ValidationError("An item cannot be related to itself.")
        target = s.get(Item, rid)
        if not target or target.is_deleted:
            raise ValidationError(f"Related item {rid} does not exist.", details={"related_item": rid})


# ---------------------------------------------------------------------------
# Symmetric relations
# ---------------------------------------------------------------------------


def related_item_refs(s: Session, item_id: int) -> list[dict[str, Any]]:
    rows = s.execute(
        select(ItemRelation).where(ItemRelation.source_id == item_id).order_by(ItemRelation.target_id.asc())
    ).scalars()
    return [{"id": r.target_id, "code": r.target.code, "description": r.description} for r in rows]


def set_related_items(s: Session, item: Item, related: dict[int, str | None]) -> None:
    """
    Make item's related set equal `related` ({target_id: description}).
    Every add, remove and description change touches both directions.
    """
    current = {
        r.target_id: r
        for r in s.execute(select(ItemRelation).where(ItemRelation.source_id == item.id)).scalars()
    }
    for target_id in set(current) - set(related):
        for a, b in ((item.id, target_id), (target_id, item.id)):
            row = s.get(ItemRelation, (a, b))
            if row is not None:
                s.delete(row)

    for target_id, description in related.items():
        for a, b in ((item.id, target_id), (target_id, item.id)):
            row = s.get(ItemRelation, (a, b))
            if row is None:
                s.add(ItemRelation(source_id=a, target_id=b, description=description))
            elif row.description != description:
                row.description = description
    flush_checked(s, context="item.relations")


# ---------------------------------------------------------------------------
# Snapshots, diff, history ledger
# ---------------------------------------------------------------------------


def build_snapshot(s: Session, item: Item) -> dict[str, Any]:
    return {
        "code": item.code,
        "title": item.title,
        "content": item.content,
        "attachments": item.attachments,
        "related_items": [{"id": r["id"], "code": r["code"]} for r in related_item_refs(s, item.id)],
        "is_deleted": item.is_deleted,
    }


def compute_diff(old: dict[str, Any], new: dict[str, Any]) -> dict[str, Any] | None:
    diff: dict[str, Any] = {}
    for key in _DIFF_FIELDS:
        if old.get(key) != new.get(key):
            diff[key] = {"old": old.get(key), "new": new.get(key)}
    old_rel = sorted(old.get("related_items") or [], key=lambda r: r["id"])
    new_rel = sorted(new.get("related_items") or [], key=lambda r: r["id"])
    if old_rel != new_rel:
        diff["related_items"] = {"old": old_rel, "new": new_rel}
    return diff or None


def append_history(
    s: Session,
    *,
    item: Item,
    change_type: str,
    snapshot: dict[str, Any],
    change_request: ChangeRequest,
    reviewer: User,
    diff: dict[str, Any] | None = None,
    link_request: bool = True,
) -> ItemHistory:
    """
    Append the next ItemHistory row and advance item.current_version with it.

    CREATE is version 1. Every later change CAS-bumps current_version from the
    value read, so two writers can never both claim the same version.
    `link_request=False` leaves change_request_id empty for rows that share one
    request (a project copy writes one CREATE row per copied item).
    """
    if change_type not in HISTORY_CHANGE_TYPES:
        raise ValidationError(f"Unsupported change type: {change_type}")

    if change_type == CR_CREATE:
        version = item.current_version
    else:
        version = item.current_version + 1
        compare_and_set(
            s,
            item,
            column="current_version",
            expected=item.current_version,
            values={"current_version": version},
        )

    history = ItemHistory(
        item_id=item.id,
        project_id=item.project_id,
        version=version,
        change_type=change_type,
        snapshot_json=json.dumps(snapshot, sort_keys=True),
        diff_json=json.dumps(diff, sort_keys=True) if diff else None,
        item_code=item.code,
        item_title=item.title,
        submitted_by_id=change_request.submitted_by_id,
        submitted_by_name=change_request.submitter_name,
        reviewed_by_id=reviewer.id,
        reviewed_by_name=reviewer.display_name,
        change_request_id=change_request.id if link_request else None,
    )
    s.add(history)
    flush_checked(s, context="item_history.append")
    return history


# ---------------------------------------------------------------------------
# Apply helpers (called by the change-request engine on APPROVE)
# ---------------------------------------------------------------------------


def apply_create(
    s: Session,
    *,
    project: Project,
    parent: Item | None,
    payload: dict[str, Any],
) -> Item:
    data = normalize_item_payload(payload, kind=CR_CREATE)
    code, parent = resolve_new_code(s, project, parent, data["code"])
    validate_related_targets(s, data["related_items"])

    now = datetime.utcnow()
    item = Item(
        project_id=project.id,
        parent_id=parent.id if parent else None,
        code=code,
        title=data["title"],
        content=data["content"],
        attachments_json=json.dumps(data["attachments"]) if data["attachments"] else None,
        current_version=1,
        published_at=now,
        created_at=now,
        updated_at=now,
    )
    s.add(item)
    # Another reviewer may have committed an item with the same (generated) code since we checked.
    flush_checked(
        s,
        context="item.create",
        conflict_on={
            ("items", "code"): ConflictError(
                "Item",
                code,
                message=f"Item code {code} was taken by a concurrent change. Re-read and retry.",
            )
        },
    )
    set_related_items(s, item, data["related_items"])
    return item


def apply_update(s: Session, item: Item, payload: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    """Apply only the fields present in the payload; returns (old, new) snapshots."""
    data = normalize_item_payload(payload, kind=CR_UPDATE)
    if "related_items" in data:
        validate_related_targets(s, data["related_items"], self_id=item.id)

    old_snapshot = build_snapshot(s, item)
    if "title" in data:
        item.title = data["title"]
    if "content" in data:
        item.content = data["content"]
    if "attachments" in data:
        item.attachments_json = json.dumps(data["attachments"]) if data["attachments"] else None
    item.updated_at = datetime.utcnow()
    flush_checked(s, context="item.update")
    if "related_items" in data:
        set_related_items(s, item, data["related_items"])
    return old_snapshot, build_snapshot(s, item)


def apply_delete(s: Session, item: Item) -> dict[str, Any]:
    if live_children_count(s, item.id) > 0:
        raise ValidationError("Cannot delete an item with existing children. Delete the children first.")
    # The DELETE snapshot records the last live state.
    snapshot = build_snapshot(s, item)
    now = datetime.utcnow()
    item.is_deleted = True
    item.deleted_at = now
    item.updated_at = now
    flush_checked(s, context="item.delete")
    return snapshot


def apply_restore(s: Session, item: Item) -> dict[str, Any]:
    if not item.is_deleted:
        raise ValidationError("Item is not deleted.", details={"code": item.code})
    if item.parent is not None and item.parent.is_deleted:
        raise ValidationError("Restore the parent item first.", details={"parent_code": item.parent.code})
    item.is_deleted = False
    item.deleted_at = None
    item.updated_at = datetime.utcnow()
    flush_checked(s, context="item.restore")
    return build_snapshot(s, item)


# ---------------------------------------------------------------------------
# Project copy (PROJECT_COPY requests)
# ---------------------------------------------------------------------------


def normalize_copy_payload(s: Session, source: Project, payload: dict[str, Any]) -> dict[str, Any]:
    """Validate the target of a project copy against the current store."""
    if not isinstance(payload, dict):
        raise ValidationError("Payload must be a JSON object.")
    raw_prefix, raw_title = payload.get("code_prefix"), payload.get("title")
    prefix = normalize_code_prefix(raw_prefix if isinstance(raw_prefix, str) else "")
    title = raw_title.strip() if isinstance(raw_title, str) else ""
    if not prefix or not title:
        raise ValidationError("Title and code prefix are required.")
    _check_new_prefix(s, prefix)
    if s.execute(select(Project.id).where(Project.title == title)).first():
        raise ValidationError("Project title already exists.", details={"title": title})

    description = payload.get("description")
    if description is not None and not isinstance(description, str):
        raise ValidationError("Description must be text.")
    if "category_id" in payload:
        category_id = resolve_category_id(s, payload["category_id"])
    else:
        category_id = source.category_id
    return {
        "code_prefix": prefix,
        "title": title,
        "description": (description or "").strip() or source.description,
        "category_id": category_id,
    }


def apply_project_copy(
    s: Session,
    *,
    source: Project,
    payload: dict[str, Any],
    change_request: ChangeRequest,
    reviewer: User,
) -> Project:
    """
    Create the target project and copy the source's live item tree under the
    new prefix, parents first. Each copy starts at version 1 with its own
    CREATE history row. Relations and deleted items are not copied.
    """
    data = normalize_copy_payload(s, source, payload)
    prefix = data["code_prefix"]
    project = Project(
        code_prefix=prefix,
        title=data["title"],
        description=data["description"],
        requires_quality_review=source.requires_quality_review,
        category_id=data["category_id"],
    )
    s.add(project)
    flush_checked(
        s,
        context="project.copy",
        conflict_on={
            ("projects", "code_prefix"): ConflictError(
                "Project", prefix, message=f"Code prefix {prefix} was taken by a concurrent change. Re-read and retry."
            )
        },
    )

    originals = s.execute(
        select(Item).where(Item.project_id == source.id, Item.is_deleted.is_(False))
    ).scalars().all()
    id_map: dict[int, int] = {}
    now = datetime.utcnow()
    for original in sorted(originals, key=lambda i: (i.code.count("-"), i.code)):
        code = prefix + original.code[len(source.code_prefix):]
        item = Item(
            project_id=project.id,
            parent_id=id_map.get(original.parent_id) if original.parent_id else None,
            code=code,
            title=original.title,
            content=original.content,
            attachments_json=original.attachments_json,
            current_version=1,
            published_at=now,
            created_at=now,
            updated_at=now,
        )
        s.add(item)
        flush_checked(s, context="project.copy.item")
        id_map[original.id] = item.id

        snapshot = build_snapshot(s, item)
        snapshot["copied_from"] = original.code
        append_history(
            s,
            item=item,
            change_type=CR_CREATE,
            snapshot=snapshot,
            change_request=change_request,
            reviewer=reviewer,
            link_request=False,
        )
    return project


# ---------------------------------------------------------------------------
# History reads
# ---------------------------------------------------------------------------


def item_history(s: Session, item_id: int) -> list[ItemHistory]:
    return list(
        s.execute(
            select(ItemHistory).where(ItemHistory.item_id == item_id).order_by(ItemHistory.version.asc())
        ).scalars()
    )


def get_history(s: Session, history_id: int) -> ItemHistory:
    h = s.get(ItemHistory, history_id)
    if not h:
        raise NotFound("ItemHistory", history_id)
    return h


def global_history(
    s: Session,
    *,
    project_id: int | None = None,
    change_type: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
) -> list[ItemHistory]:
    q = select(ItemHistory)
    if project_id:
        q = q.where(ItemHistory.project_id == project_id)
    if change_type and change_type != "ALL":
        if change_type not in HISTORY_CHANGE_TYPES:
            raise ValidationError(f"Unknown change type: {change_type}")
        q = q.where(ItemHistory.change_type == change_type)
    if date_from:
        q = q.where(ItemHistory.created_at >= date_from)
    if date_to:
        q = q.where(ItemHistory.created_at <= date_to)
    return list(s.execute(q.order_by(ItemHistory.created_at.desc(), ItemHistory.id.desc())).scalars())


def history_to_csv(s: Session, entries: list[ItemHistory], *, actor: User) -> str:
    out = io.StringIO()
    w = csv.writer(out)
    w.writerow(["History ID", "Date", "Item Code", "Title", "Version", "Change", "Submitted By", "Reviewed By", "Document"])
    for h in entries:
        w.writerow(
            [
                h.id,
                h.created_at.isoformat(timespec="seconds"),
                h.item_code,
                h.item_title,
                h.version,
                h.change_type,
                h.submitted_by_name or "",
                h.reviewed_by_name or "",
                h.document_path or "",
            ]
        )
    record_event(
        s,
        actor=actor,
        action="item_history.export",
        entity_type="ItemHistory",
        entity_id="export",
        metadata={"row_count": len(entries)},
    )
    return out.getvalue()
