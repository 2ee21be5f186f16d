from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import g

from app.qrms.constants import (
    CR_APPROVED,
    CR_CANCELLED,
    CR_PENDING,
    CR_PROJECT_DELETE,
    CR_REJECTED,
    CR_RESUBMITTED,
    CR_TRANSITIONS,
    MACHINE_CHANGE_REQUEST,
    MACHINE_QC_APPROVAL,
    QC_COMPLETED,
    QC_PENDING_PM,
    QC_PENDING_QC,
    QC_REJECTED,
    QC_REVISION_REQUIRED,
    QC_TRANSITIONS,
    ROLE_ADMIN,
    ROLE_EDITOR,
    ROLE_INSPECTOR,
    ROLE_VIEWER,
)
from app.qrms.exceptions import Forbidden
from app.qrms.models import User

_VIEWER_PERMISSIONS = frozenset({"items.view", "quality.view", "notifications.view"})
_EDITOR_PERMISSIONS = _VIEWER_PERMISSIONS | {"projects.create", "items.relate", "changes.submit"}
_INSPECTOR_PERMISSIONS = _EDITOR_PERMISSIONS | {"changes.review", "history.export"}
_ADMIN_PERMISSIONS = _INSPECTOR_PERMISSIONS | {
    "changes.submit_project_delete",
    "categories.delete",
    "admin.view",
    "users.delete",
}

ROLE_PERMISSIONS: dict[str, frozenset[str]] = {
    ROLE_VIEWER: _VIEWER_PERMISSIONS,
    ROLE_EDITOR: frozenset(_EDITOR_PERMISSIONS),
    ROLE_INSPECTOR: frozenset(_INSPECTOR_PERMISSIONS),
    ROLE_ADMIN: frozenset(_ADMIN_PERMISSIONS),
}


def user_has_permission(user: User | None, permission_key: str) -> bool:
    if not user or not user.is_active:
        return False
    return permission_key in ROLE_PERMISSIONS.get(user.role, frozenset())


def can_submit(actor: User | None, kind: str) -> bool:
    if kind == CR_PROJECT_DELETE:
        return user_has_permission(actor, "changes.submit_project_delete")
    return user_has_permission(actor, "changes.submit")


def can_manage_categories(actor: User | None) -> bool:
    """Project categories are arranged by administrators and project managers."""
    if not actor or not actor.is_active:
        return False
    return actor.role == ROLE_ADMIN or bool(actor.is_pm)


def _is_owner_or_admin(actor: User, owner_id: int | None) -> bool:
    return actor.role == ROLE_ADMIN or (owner_id is not None and actor.id == owner_id)


def can_transition(
    actor: User | None,
    machine: str,
    from_state: str,
    to_state: str,
    *,
    owner_id: int | None = None,
) -> bool:
    """
    Single authorization predicate for every workflow transition.

    `owner_id` is the submitter of the record being transitioned (the change
    request's submitter, or the submitter of the snapshot under sign-off).
    Transitions outside the state graph are never allowed.
    """
    if not actor or not actor.is_active:
        return False

    if machine == MACHINE_CHANGE_REQUEST:
        if to_state not in CR_TRANSITIONS.get(from_state, set()):
            return False
        if from_state == CR_PENDING and to_state in (CR_APPROVED, CR_REJECTED):
            if not user_has_permission(actor, "changes.review"):
                return False
            # Reviewers cannot sign their own request; administrators may.
            return actor.role == ROLE_ADMIN or actor.id != owner_id
        if from_state == CR_REJECTED and to_state in (CR_RESUBMITTED, CR_CANCELLED):
            return _is_owner_or_admin(actor, owner_id)
        return False

    if machine == MACHINE_QC_APPROVAL:
        if to_state not in QC_TRANSITIONS.get(from_state, set()):
            return False
        if from_state == QC_PENDING_QC:
            return bool(actor.is_qc)
        if from_state == QC_PENDING_PM:
            return bool(actor.is_pm)
        if from_state == QC_REVISION_REQUIRED and to_state == QC_PENDING_QC:
            return _is_owner_or_admin(actor, owner_id)
        return False

    raise ValueError(f"Unknown state machine: {machine!r}")


_DENIED_MESSAGES = {
    (MACHINE_CHANGE_REQUEST, CR_APPROVED): "You don't have permission to review this change request.",
    (MACHINE_CHANGE_REQUEST, CR_REJECTED): "You don't have permission to review this change request.",
    (MACHINE_CHANGE_REQUEST, CR_RESUBMITTED): "Only the original submitter or an administrator can resubmit.",
    (MACHINE_CHANGE_REQUEST, CR_CANCELLED): "Only the original submitter or an administrator can cancel.",
    (MACHINE_QC_APPROVAL, QC_PENDING_PM): "QC qualification is required for this action.",
    (MACHINE_QC_APPROVAL, QC_COMPLETED): "PM qualification is required for this action.",
}


def ensure_can_transition(
    actor: User | None,
    machine: str,
    from_state: str,
    to_state: str,
    *,
    owner_id: int | None = None,
) -> None:
    if can_transition(actor, machine, from_state, to_state, owner_id=owner_id):
        return
    msg = _DENIED_MESSAGES.get((machine, to_state))
    if machine == MACHINE_QC_APPROVAL and to_state in (QC_REJECTED, QC_REVISION_REQUIRED):
        stage = "QC" if from_state == QC_PENDING_QC else "PM"
        msg = f"{stage} qualification is required to act at the {stage} stage."
    elif machine == MACHINE_QC_APPROVAL and from_state == QC_REVISION_REQUIRED:
        msg = "Only the original submitter or an administrator can resolve a revision."
    raise Forbidden(
        msg or "You don't have permission to perform this transition.",
        details={"machine": machine, "from": from_state, "to": to_state},
    )


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            # Unauthenticated → 401 (the login flow lives with the identity provider).
            if not user or not user.is_active:
                return {"error": "Authentication required.", "code": "ERR_UNAUTHENTICATED"}, 401
            # Authenticated but unauthorized → 403
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                raise Forbidden(
                    "You don't have permission to do this.",
                    details={"missing_permission": permission_key},
                )
            return fn(*args, **kwargs)

        return wrapped

    return decorator
