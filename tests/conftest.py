import pytest

from app.qrms import create_app
from app.qrms.collaborators import DeferredDocumentGenerator
from app.qrms.db import session_scope
from app.qrms.models import Base, User
from app.qrms.modules.change_requests.service import review, submit
from app.qrms.modules.items.models import ItemHistory
from app.qrms.modules.items.service import create_project


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("QUALITY_DOC_ROOT", "quality-docs")
    monkeypatch.delenv("ALLOW_SELF_CERTIFICATION", raising=False)

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)
    return app


@pytest.fixture()
def users(app):
    with session_scope(app) as s:
        out = {
            "admin": User(username="admin", display_name="Ada Admin", role="ADMIN"),
            "editor": User(username="editor", display_name="Eli Editor", role="EDITOR"),
            "editor2": User(username="editor2", display_name="Emma Editor", role="EDITOR"),
            "inspector": User(username="inspector", display_name="Ivo Inspector", role="INSPECTOR"),
            "viewer": User(username="viewer", display_name="Val Viewer", role="VIEWER"),
            "qc": User(username="qc", display_name="Quinn Qc", role="INSPECTOR", is_qc=True),
            "pm": User(username="pm", display_name="Pat Pm", role="INSPECTOR", is_pm=True),
            "dual": User(username="dual", display_name="Dana Dual", role="INSPECTOR", is_qc=True, is_pm=True),
        }
        s.add_all(out.values())
    return out


@pytest.fixture()
def project(app, users):
    with session_scope(app) as s:
        p = create_project(s, actor=users["admin"], code_prefix="WQ", title="Water Quality")
    return p


@pytest.fixture()
def plain_project(app, users):
    with session_scope(app) as s:
        p = create_project(
            s, actor=users["admin"], code_prefix="NOTE", title="Notes", requires_quality_review=False
        )
    return p


@pytest.fixture()
def approved_item(app, users, project):
    """Scenario A setup: WQ-9 created by the editor and approved by the inspector."""
    with session_scope(app) as s:
        cr = submit(
            s,
            actor=users["editor"],
            kind="CREATE",
            project_id=project.id,
            payload={"code": "WQ-9", "title": "Valve Inspection", "content": "Check seals."},
        )
    with session_scope(app) as s:
        review(
            s,
            actor=users["inspector"],
            request_id=cr.id,
            decision="APPROVE",
            note="ok",
            document_generator=DeferredDocumentGenerator(root="quality-docs"),
        )
    with session_scope(app) as s:
        h = s.query(ItemHistory).filter(ItemHistory.change_request_id == cr.id).one()
        return {"change_request_id": cr.id, "item_id": h.item_id, "history_id": h.id}
