"""
Error taxonomy for the workflow engines.

Services raise these; they never catch them. `create_app` registers a single
handler on `QRMSError` so every blueprint answers with the same JSON shape:

    {"error": "<message>", "code": "ERR_...", "details": {...}}

Usage:
    from app.qrms.exceptions import ConflictError, NotFound

    raise NotFound("ChangeRequest", 42)
    raise ConflictError("ChangeRequest", 42, expected="PENDING", actual="APPROVED")
"""

from __future__ import annotations


class QRMSError(Exception):
    code = "ERR_INTERNAL"
    http_status = 500

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(QRMSError):
    """Malformed input or a broken domain rule. The caller fixes the input; never retried."""

    code = "ERR_VALIDATION"
    http_status = 400


class Forbidden(QRMSError):
    """The actor's role or qualification does not allow the requested transition."""

    code = "ERR_FORBIDDEN"
    http_status = 403


class NotFound(QRMSError):
    """Referenced entity is missing (or soft-deleted where a live one is required)."""

    code = "ERR_NOT_FOUND"
    http_status = 404

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg, details={"resource": resource, "id": resource_id})


class ConflictError(QRMSError):
    """
    The record is no longer in the state the caller expected.

    Raised when the compare-and-set guard matched zero rows (another actor
    already transitioned it) or the current state does not admit the action.
    Retryable only after re-reading the record.
    """

    code = "ERR_CONFLICT_STATE"
    http_status = 409

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        *,
        expected: str | tuple[str, ...] | None = None,
        actual: str | None = None,
        message: str | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.expected = expected
        self.actual = actual
        if message is None:
            message = f"{resource} id={resource_id} was already acted on by someone else"
            if actual is not None:
                message += f" (current status: {actual})"
        super().__init__(
            message,
            details={"resource": resource, "id": resource_id, "expected": expected, "actual": actual},
        )


class IntegrityError(QRMSError):
    """A uniqueness or lineage invariant would be violated. Signals a latent bug."""

    code = "ERR_INTEGRITY"
    http_status = 500
