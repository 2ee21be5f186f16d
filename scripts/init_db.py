import os
import sys
from pathlib import Path

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sqlalchemy import select  # noqa: E402

from app.qrms.constants import ROLE_ADMIN  # noqa: E402
from app.qrms.models import User  # noqa: E402
from scripts._db_utils import script_session  # noqa: E402


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed the bootstrap administrator in an idempotent way.
    An existing account keeps its role and qualifications; it is only re-activated.
    """
    admin_username = (os.environ.get("ADMIN_USERNAME") or "admin").strip().lower()
    admin_name = (os.environ.get("ADMIN_DISPLAY_NAME") or "Administrator").strip()

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///qrms.db").strip()

    # Direct engine/session so this can run in release without importing app.wsgi (avoids recursion).
    with script_session(db_url) as s:
        user = s.execute(select(User).where(User.username == admin_username)).scalar_one_or_none()
        if not user:
            user = User(username=admin_username, display_name=admin_name, role=ROLE_ADMIN, is_active=True)
            s.add(user)
            print(f"Created admin user: {admin_username}")
        elif not user.is_active:
            user.is_active = True
            print(f"Re-activated admin user: {admin_username}")

    print("Initialized database (seed_only).")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
