from __future__ import annotations

from datetime import date, datetime, time
from typing import Any

from flask import Request

from app.qrms.exceptions import ValidationError


def json_body(req: Request) -> dict[str, Any]:
    """Parse the request's JSON object body (an empty body reads as {})."""
    if not req.data:
        return {}
    data = req.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.")
    data.pop("csrf_token", None)
    return data


def optional_int(value: Any, *, field: str) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{field} must be an integer.", details={field: value}) from e


def parse_date_arg(raw: str | None, *, end_of_day: bool = False) -> datetime | None:
    raw = (raw or "").strip()
    if not raw:
        return None
    try:
        d = date.fromisoformat(raw)
    except ValueError as e:
        raise ValidationError(f"Invalid date: {raw!r} (expected YYYY-MM-DD).") from e
    return datetime.combine(d, time.max if end_of_day else time.min)


def iso(dt: datetime | None) -> str | None:
    return dt.isoformat(timespec="seconds") if dt else None
