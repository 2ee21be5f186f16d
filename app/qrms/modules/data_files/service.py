"""
Data File Register service layer.

Data files are a second change-controlled record type. FILE_CREATE,
FILE_UPDATE and FILE_DELETE requests go through the same change-request
engine as items; the `apply_*` helpers here run when one is approved. The
stored bytes are handled elsewhere: a request carries the file's path and
metadata only. No QC/PM sign-off is opened for data files.
"""
from __future__ import annotations

import json
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from app.qrms.constants import CR_FILE_CREATE, CR_FILE_UPDATE, CR_PENDING
from app.qrms.db import compare_and_set, flush_checked
from app.qrms.exceptions import ConflictError, NotFound, ValidationError
from app.qrms.modules.change_requests.models import ChangeRequest

from .models import DataFile, DataFileHistory

if TYPE_CHECKING:
    from app.qrms.models import User


METADATA_FIELDS = ("data_year", "data_name", "data_code", "author", "description")
FILE_FIELDS = ("file_name", "file_path", "file_size", "mime_type")
_REQUIRED_ON_CREATE = ("data_year", "data_name", "data_code", "file_name", "file_path")
_TEXT_LIMITS = {"data_code": 128, "mime_type": 128, "file_path": 512, "description": None}


def get_data_file(s: Session, file_id: int | None, *, include_deleted: bool = False) -> DataFile:
    f = s.get(DataFile, file_id) if file_id is not None else None
    if not f or (f.is_deleted and not include_deleted):
        raise NotFound("DataFile", file_id)
    return f


def _clean_text(payload: dict[str, Any], key: str, *, limit: int | None = None) -> str | None:
    raw = payload.get(key)
    if raw is None:
        return None
    if not isinstance(raw, str):
        raise ValidationError(f"{key} must be text.", details={key: raw})
    value = raw.strip()
    if limit and len(value) > limit:
        raise ValidationError(f"{key} is too long.", details={key: f"max {limit} characters"})
    return value or None


def _clean_int(payload: dict[str, Any], key: str) -> int | None:
    raw = payload.get(key)
    if raw is None or raw == "":
        return None
    if isinstance(raw, bool):
        raise ValidationError(f"{key} must be an integer.", details={key: raw})
    try:
        value = int(raw)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{key} must be an integer.", details={key: raw}) from e
    if value < 0:
        raise ValidationError(f"{key} must not be negative.", details={key: raw})
    return value


def normalize_data_file_payload(payload: dict[str, Any], *, kind: str) -> dict[str, Any]:
    """
    FILE_CREATE needs the metadata plus the stored file's name and path.
    FILE_UPDATE may only change metadata; absent fields stay unchanged.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Payload must be a JSON object.")

    allowed = METADATA_FIELDS + FILE_FIELDS if kind == CR_FILE_CREATE else METADATA_FIELDS
    unknown = sorted(set(payload) - set(allowed))
    if unknown:
        raise ValidationError("Unsupported data file fields.", details={"fields": unknown})

    out: dict[str, Any] = {}
    for key in allowed:
        if key not in payload:
            continue
        if key in ("data_year", "file_size"):
            out[key] = _clean_int(payload, key)
        else:
            out[key] = _clean_text(payload, key, limit=_TEXT_LIMITS.get(key, 255))

    if out.get("data_code"):
        out["data_code"] = out["data_code"].upper()
    required = _REQUIRED_ON_CREATE if kind == CR_FILE_CREATE else tuple(k for k in _REQUIRED_ON_CREATE if k in out)
    missing = [key for key in required if out.get(key) is None]
    if missing:
        raise ValidationError("Missing required data file fields.", details={"missing": missing})
    if kind != CR_FILE_CREATE and not out:
        raise ValidationError("An update must change at least one field.")
    return out


def check_data_code_free(s: Session, data_code: str, *, exclude_id: int | None = None) -> None:
    q = select(DataFile.id).where(DataFile.data_code == data_code)
    if exclude_id is not None:
        q = q.where(DataFile.id != exclude_id)
    if s.execute(q).first():
        raise ValidationError(f"Data code {data_code} is already in use.", details={"data_code": data_code})


def check_no_pending_create(s: Session, data_code: str) -> None:
    pending = s.execute(
        select(ChangeRequest.id).where(
            ChangeRequest.kind == CR_FILE_CREATE,
            ChangeRequest.status == CR_PENDING,
            ChangeRequest.target_label == data_code,
        )
    ).first()
    if pending:
        raise ValidationError(
            f"A request to register data code {data_code} is already awaiting review.",
            details={"data_code": data_code, "change_request_id": pending[0]},
        )


# ---------------------------------------------------------------------------
# Snapshots and history
# ---------------------------------------------------------------------------


def build_file_snapshot(f: DataFile) -> dict[str, Any]:
    return {
        "data_year": f.data_year,
        "data_name": f.data_name,
        "data_code": f.data_code,
        "author": f.author,
        "description": f.description,
        "file_name": f.file_name,
        "file_path": f.file_path,
        "file_size": f.file_size,
        "mime_type": f.mime_type,
        "is_deleted": f.is_deleted,
    }


def append_file_history(
    s: Session,
    *,
    f: DataFile,
    change_type: str,
    snapshot: dict[str, Any],
    change_request: ChangeRequest,
    reviewer: User,
    diff: dict[str, Any] | None = None,
) -> DataFileHistory:
    """Same versioning rule as item history: CREATE is 1, later changes CAS-bump current_version."""
    if change_type == "CREATE":
        version = f.current_version
    else:
        version = f.current_version + 1
        compare_and_set(
            s,
            f,
            column="current_version",
            expected=f.current_version,
            values={"current_version": version},
        )

    history = DataFileHistory(
        file_id=f.id,
        version=version,
        change_type=change_type,
        snapshot_json=json.dumps(snapshot, sort_keys=True),
        diff_json=json.dumps(diff, sort_keys=True) if diff else None,
        data_code=f.data_code,
        data_name=f.data_name,
        data_year=f.data_year,
        submitted_by_id=change_request.submitted_by_id,
        submitted_by_name=change_request.submitter_name,
        reviewed_by_id=reviewer.id,
        reviewed_by_name=reviewer.display_name,
        change_request_id=change_request.id,
    )
    s.add(history)
    flush_checked(s, context="data_file_history.append")
    return history


# ---------------------------------------------------------------------------
# Apply helpers (called by the change-request engine on APPROVE)
# ---------------------------------------------------------------------------


def apply_file_create(s: Session, payload: dict[str, Any]) -> DataFile:
    data = normalize_data_file_payload(payload, kind=CR_FILE_CREATE)
    check_data_code_free(s, data["data_code"])
    now = datetime.utcnow()
    f = DataFile(current_version=1, created_at=now, updated_at=now, **data)
    s.add(f)
    flush_checked(
        s,
        context="data_file.create",
        conflict_on={
            ("data_files", "data_code"): ConflictError(
                "DataFile",
                data["data_code"],
                message=f"Data code {data['data_code']} was taken by a concurrent change. Re-read and retry.",
            )
        },
    )
    return f


def apply_file_update(s: Session, f: DataFile, payload: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    data = normalize_data_file_payload(payload, kind=CR_FILE_UPDATE)
    if "data_code" in data and data["data_code"] != f.data_code:
        check_data_code_free(s, data["data_code"], exclude_id=f.id)

    old_snapshot = build_file_snapshot(f)
    for key, value in data.items():
        setattr(f, key, value)
    f.updated_at = datetime.utcnow()
    flush_checked(s, context="data_file.update")
    return old_snapshot, build_file_snapshot(f)


def apply_file_delete(s: Session, f: DataFile) -> dict[str, Any]:
    snapshot = build_file_snapshot(f)
    now = datetime.utcnow()
    f.is_deleted = True
    f.deleted_at = now
    f.updated_at = now
    flush_checked(s, context="data_file.delete")
    return snapshot


def compute_file_diff(old: dict[str, Any], new: dict[str, Any]) -> dict[str, Any] | None:
    diff = {
        key: {"old": old.get(key), "new": new.get(key)}
        for key in METADATA_FIELDS
        if old.get(key) != new.get(key)
    }
    return diff or None


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


def list_data_files(s: Session, *, year: int | None = None, query: str | None = None) -> list[DataFile]:
    q = select(DataFile).where(DataFile.is_deleted.is_(False))
    if year:
        q = q.where(DataFile.data_year == year)
    query = (query or "").strip()
    if query:
        like = f"%{query}%"
        q = q.where(
            or_(
                DataFile.data_name.ilike(like),
                DataFile.data_code.ilike(like),
                DataFile.author.ilike(like),
                DataFile.description.ilike(like),
            )
        )
    return list(s.execute(q.order_by(DataFile.data_year.desc(), DataFile.created_at.desc(), DataFile.id.desc())).scalars())


def data_file_years(s: Session) -> list[int]:
    rows = s.execute(
        select(DataFile.data_year).where(DataFile.is_deleted.is_(False)).distinct().order_by(DataFile.data_year.desc())
    ).scalars()
    return list(rows)


def pending_request_kinds(s: Session, file_ids: list[int]) -> dict[int, str]:
    """file id -> kind of its PENDING change request, for files that have one."""
    if not file_ids:
        return {}
    rows = s.execute(
        select(ChangeRequest.data_file_id, ChangeRequest.kind).where(
            ChangeRequest.data_file_id.in_(file_ids),
            ChangeRequest.status == CR_PENDING,
        )
    ).all()
    return {file_id: kind for file_id, kind in rows}


def file_history(s: Session, file_id: int) -> list[DataFileHistory]:
    return list(
        s.execute(
            select(DataFileHistory)
            .where(DataFileHistory.file_id == file_id)
            .order_by(DataFileHistory.version.asc())
        ).scalars()
    )
