"""
Delete read notifications older than NOTIFICATION_RETENTION_DAYS (default 30).
Unread notifications are never purged.

Usage:
  python scripts/purge_notifications.py
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.qrms.config import load_settings  # noqa: E402
from app.qrms.modules.notifications.service import purge_read  # noqa: E402
from scripts._db_utils import script_session  # noqa: E402


def main() -> None:
    settings = load_settings()
    db_url = (os.environ.get("DATABASE_URL") or settings.database_url).strip()
    with script_session(db_url) as s:
        purged = purge_read(s, retention_days=settings.notification_retention_days)
    print(f"Purged {purged} read notifications (retention={settings.notification_retention_days} days).")


if __name__ == "__main__":
    main()
