"""
Release phase for a QRMS deploy.

Runs once per deploy, before any web worker starts:
- refuses production settings that would lose data (sqlite, default secret)
- upgrades the schema to the newest alembic revision
- makes sure the bootstrap administrator exists
- purges read notifications past their retention window

Usage:
  python scripts/release.py
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from alembic import command  # noqa: E402
from alembic.config import Config  # noqa: E402

from app.qrms.config import Settings, ensure_production_ready, load_settings  # noqa: E402
from app.qrms.modules.notifications.service import purge_read  # noqa: E402
from scripts import init_db  # noqa: E402
from scripts._db_utils import script_session  # noqa: E402

logger = logging.getLogger("qrms.release")


def alembic_config(database_url: str) -> Config:
    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", database_url)
    return cfg


def run_release(settings: Settings | None = None) -> dict[str, int | str]:
    settings = settings or load_settings()
    ensure_production_ready(env=settings.env, database_url=settings.database_url, secret_key=settings.secret_key)
    logger.info("Release start (env=%s)", settings.env)

    command.upgrade(alembic_config(settings.database_url), "head")
    logger.info("Schema upgraded to head")

    init_db.seed_only(database_url=settings.database_url)

    with script_session(settings.database_url) as s:
        purged = purge_read(s, retention_days=settings.notification_retention_days)
    logger.info("Purged %s read notifications older than %s days", purged, settings.notification_retention_days)
    return {"env": settings.env, "purged_notifications": purged}


def main() -> None:
    settings = load_settings()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    run_release(settings)


if __name__ == "__main__":
    main()
