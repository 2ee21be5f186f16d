from __future__ import annotations

from typing import Any

from flask import Blueprint, request

from app.qrms.db import db_session
from app.qrms.modules.data_files.models import DataFile, DataFileHistory
from app.qrms.modules.data_files.service import (
    data_file_years,
    file_history,
    get_data_file,
    list_data_files,
    pending_request_kinds,
)
from app.qrms.rbac import require_permission
from app.qrms.utils import iso, optional_int

bp = Blueprint("data_files", __name__)


def serialize_data_file(f: DataFile, *, pending_kind: str | None = None) -> dict[str, Any]:
    return {
        "id": f.id,
        "data_year": f.data_year,
        "data_name": f.data_name,
        "data_code": f.data_code,
        "author": f.author,
        "description": f.description,
        "file_name": f.file_name,
        "file_path": f.file_path,
        "file_size": f.file_size,
        "mime_type": f.mime_type,
        "current_version": f.current_version,
        "is_deleted": f.is_deleted,
        "deleted_at": iso(f.deleted_at),
        "pending_request": pending_kind,
        "created_at": iso(f.created_at),
        "updated_at": iso(f.updated_at),
    }


def serialize_file_history(h: DataFileHistory) -> dict[str, Any]:
    return {
        "id": h.id,
        "file_id": h.file_id,
        "data_code": h.data_code,
        "version": h.version,
        "change_type": h.change_type,
        "snapshot": h.snapshot,
        "diff": h.diff,
        "submitted_by": h.submitted_by_name,
        "reviewed_by": h.reviewed_by_name,
        "change_request_id": h.change_request_id,
        "created_at": iso(h.created_at),
    }


@bp.get("/data-files")
@require_permission("items.view")
def data_files_list():
    s = db_session()
    files = list_data_files(
        s,
        year=optional_int(request.args.get("year"), field="year"),
        query=request.args.get("q"),
    )
    pending = pending_request_kinds(s, [f.id for f in files])
    return {"data_files": [serialize_data_file(f, pending_kind=pending.get(f.id)) for f in files]}


@bp.get("/data-files/years")
@require_permission("items.view")
def data_files_years():
    s = db_session()
    return {"years": data_file_years(s)}


@bp.get("/data-files/<int:file_id>")
@require_permission("items.view")
def data_file_detail(file_id: int):
    s = db_session()
    f = get_data_file(s, file_id, include_deleted=True)
    pending = pending_request_kinds(s, [f.id])
    return {
        "data_file": serialize_data_file(f, pending_kind=pending.get(f.id)),
        "history": [serialize_file_history(h) for h in file_history(s, f.id)],
    }


@bp.get("/data-files/<int:file_id>/history")
@require_permission("items.view")
def data_file_history_list(file_id: int):
    s = db_session()
    f = get_data_file(s, file_id, include_deleted=True)
    return {"file_id": f.id, "history": [serialize_file_history(h) for h in file_history(s, f.id)]}
