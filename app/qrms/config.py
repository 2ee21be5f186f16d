import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    log_level: str

    quality_doc_root: str
    allow_self_certification: bool
    notification_retention_days: int

    port: int
    web_concurrency: int
    worker_timeout: int

    @property
    def is_production(self) -> bool:
        return is_production_env(self.env)


def is_production_env(env: str | None) -> bool:
    return (env or "").strip().lower() in ("prod", "production")


def ensure_production_ready(*, env: str | None, database_url: str | None, secret_key: str | None) -> None:
    """Fail fast on settings that must never reach production. No-op outside production."""
    if not is_production_env(env):
        return
    if not (database_url or "").strip():
        raise RuntimeError("DATABASE_URL is required in production.")
    if str(database_url).startswith("sqlite"):
        raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
    if not secret_key or str(secret_key) in ("", "change-me"):
        raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_bool(name: str, default: bool) -> bool:
    raw = _getenv(name)
    if not raw:
        return default
    return raw.lower() in ("1", "true", "yes", "on")


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise RuntimeError(f"{name} must be an integer (got {raw!r}).") from e


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///qrms.db"),
        log_level=_getenv("LOG_LEVEL", "INFO").upper(),
        quality_doc_root=_getenv("QUALITY_DOC_ROOT", "quality-docs"),
        allow_self_certification=_getenv_bool("ALLOW_SELF_CERTIFICATION", True),
        notification_retention_days=_getenv_int("NOTIFICATION_RETENTION_DAYS", 30),
        port=_getenv_int("PORT", 8080),
        web_concurrency=_getenv_int("WEB_CONCURRENCY", 2),
        worker_timeout=_getenv_int("GUNICORN_TIMEOUT", 60),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.is_production
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "LOG_LEVEL": s.log_level,
        "QUALITY_DOC_ROOT": s.quality_doc_root,
        "ALLOW_SELF_CERTIFICATION": s.allow_self_certification,
        "NOTIFICATION_RETENTION_DAYS": s.notification_retention_days,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
    }
