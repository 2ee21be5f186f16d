from flask import Blueprint

from app.qrms.security import ensure_csrf_token

bp = Blueprint("routes", __name__)


@bp.get("/")
def index():
    return {"service": "qrms", "ok": True}


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON."""
    return {"ok": True}


@bp.get("/healthz")
def healthz():
    """
    Fast liveness check for the platform load balancer. No DB access, minimal overhead.
    """
    return "ok", 200


@bp.get("/csrf-token")
def csrf_token():
    """Hands the session's CSRF token to API clients (send it back as X-CSRF-Token)."""
    return {"csrf_token": ensure_csrf_token()}
