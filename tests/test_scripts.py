from dataclasses import replace

import pytest
from sqlalchemy import create_engine, select

from app.qrms.config import load_settings
from app.qrms.models import Base, User
from scripts import release
from scripts._db_utils import script_session
from scripts.start import gunicorn_argv


@pytest.fixture()
def settings(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'release.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("PORT", "9090")
    monkeypatch.setenv("WEB_CONCURRENCY", "3")
    monkeypatch.delenv("GUNICORN_TIMEOUT", raising=False)
    monkeypatch.delenv("ADMIN_USERNAME", raising=False)
    monkeypatch.delenv("SECRET_KEY", raising=False)
    return load_settings()


def test_gunicorn_argv_comes_from_settings(settings):
    argv = gunicorn_argv(settings)
    assert argv[:2] == ["gunicorn", "app.wsgi:app"]
    assert argv[argv.index("--bind") + 1] == "0.0.0.0:9090"
    assert argv[argv.index("--workers") + 1] == "3"
    assert argv[argv.index("--timeout") + 1] == "60"

    with pytest.raises(RuntimeError):
        gunicorn_argv(replace(settings, port=70000))
    with pytest.raises(RuntimeError):
        gunicorn_argv(replace(settings, web_concurrency=0))


def test_non_integer_port_is_rejected(monkeypatch):
    monkeypatch.setenv("PORT", "eighty")
    with pytest.raises(RuntimeError):
        load_settings()


def test_release_migrates_and_seeds_admin(settings, monkeypatch):
    Base.metadata.create_all(bind=create_engine(settings.database_url))
    upgrades = []
    monkeypatch.setattr(release.command, "upgrade", lambda cfg, rev: upgrades.append((cfg, rev)))

    result = release.run_release(settings)
    release.run_release(settings)

    [(cfg, rev), _] = upgrades
    assert rev == "head"
    assert cfg.get_main_option("sqlalchemy.url") == settings.database_url
    assert cfg.get_main_option("script_location").endswith("migrations")
    assert result == {"env": "test", "purged_notifications": 0}
    with script_session(settings.database_url) as s:
        admins = s.execute(select(User).where(User.username == "admin")).scalars().all()
        assert [(u.role, u.is_active) for u in admins] == [("ADMIN", True)]


def test_release_refuses_sqlite_in_production(settings, monkeypatch):
    monkeypatch.setattr(release.command, "upgrade", lambda cfg, rev: pytest.fail("must not migrate"))
    with pytest.raises(RuntimeError, match="Postgres"):
        release.run_release(replace(settings, env="production", secret_key="s3cret"))
    with pytest.raises(RuntimeError, match="SECRET_KEY"):
        release.run_release(replace(settings, env="production", database_url="postgresql://db/qrms"))
