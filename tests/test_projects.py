import pytest

from app.qrms.db import session_scope
from app.qrms.exceptions import Forbidden, NotFound, ValidationError
from app.qrms.models import AuditEvent
from app.qrms.modules.change_requests.service import review, submit
from app.qrms.modules.items.models import Item, ItemHistory, Project, ProjectCategory
from app.qrms.modules.items.service import (
    create_category,
    delete_category,
    list_categories,
    list_projects,
    reorder_categories,
    update_category,
)
from app.qrms.modules.quality_approval.models import QCDocumentApproval


def _apply(app, users, *, kind, payload=None, **targets):
    with session_scope(app) as s:
        cr = submit(s, actor=users["editor"], kind=kind, payload=payload or {}, **targets)
    with session_scope(app) as s:
        review(s, actor=users["inspector"], request_id=cr.id, decision="APPROVE", note="ok")
    return cr.id


def test_categories_are_managed_by_admins_and_project_managers(app, users, project):
    with session_scope(app) as s:
        audits = create_category(s, actor=users["pm"], name="  Audits ", description="Internal audits")
        plants = create_category(s, actor=users["admin"], name="Plants")
        assert (audits.name, audits.sort_order) == ("Audits", 1)
        assert plants.sort_order == 2
        with pytest.raises(Forbidden):
            create_category(s, actor=users["editor"], name="Editors")
        with pytest.raises(ValidationError):
            create_category(s, actor=users["admin"], name="Audits")
        with pytest.raises(ValidationError):
            create_category(s, actor=users["admin"], name="  ")

    with session_scope(app) as s:
        update_category(s, actor=users["pm"], category_id=audits.id, name="Audit Programme")
        with pytest.raises(ValidationError):
            update_category(s, actor=users["pm"], category_id=audits.id, name="Plants")
        with pytest.raises(NotFound):
            update_category(s, actor=users["pm"], category_id=999, name="Ghost")
        reorder_categories(s, actor=users["pm"], ordered_ids=[plants.id, str(audits.id)])
        with pytest.raises(ValidationError):
            reorder_categories(s, actor=users["pm"], ordered_ids=[plants.id, plants.id])

    with session_scope(app) as s:
        assert [(c.name, c.sort_order, n) for c, n in list_categories(s)] == [
            ("Plants", 0, 0),
            ("Audit Programme", 1, 0),
        ]
        actions = [e.action for e in s.query(AuditEvent).filter(AuditEvent.action.like("project_category.%"))]
        assert actions.count("project_category.create") == 2
        assert "project_category.reorder" in actions


def test_project_category_assignment_and_delete_unlinks(app, users, project):
    with session_scope(app) as s:
        category = create_category(s, actor=users["admin"], name="Plants")

    _apply(
        app,
        users,
        kind="PROJECT_UPDATE",
        project_id=project.id,
        payload={"title": "Water Quality", "category_id": category.id},
    )
    with session_scope(app) as s:
        assert s.get(Project, project.id).category_id == category.id
        assert [p.code_prefix for p in list_projects(s, category_id=category.id)] == ["WQ"]
        assert [(c.name, n) for c, n in list_categories(s)] == [("Plants", 1)]
        with pytest.raises(NotFound):
            submit(
                s,
                actor=users["editor"],
                kind="PROJECT_UPDATE",
                project_id=project.id,
                payload={"title": "Water Quality", "category_id": 999},
            )

    with session_scope(app) as s:
        with pytest.raises(Forbidden):
            delete_category(s, actor=users["pm"], category_id=category.id)
    with session_scope(app) as s:
        assert delete_category(s, actor=users["admin"], category_id=category.id) == 1
    with session_scope(app) as s:
        assert s.get(Project, project.id).category_id is None
        assert s.query(ProjectCategory).count() == 0


def test_copy_project_duplicates_the_live_item_tree(app, users, project, approved_item):
    _apply(app, users, kind="CREATE", project_id=project.id, payload={"code": "WQ-9-1", "title": "Seal Check"})
    _apply(app, users, kind="CREATE", project_id=project.id, payload={"code": "WQ-10", "title": "Retired"})
    with session_scope(app) as s:
        retired = s.query(Item).filter(Item.code == "WQ-10").one().id
    _apply(app, users, kind="DELETE", item_id=retired)

    with session_scope(app) as s:
        approvals_before = s.query(QCDocumentApproval).count()
        cr = submit(
            s,
            actor=users["editor"],
            kind="PROJECT_COPY",
            project_id=project.id,
            payload={"code_prefix": "qa", "title": "Quality Audit"},
        )
        assert cr.target_label == "QA"
    with session_scope(app) as s:
        review(s, actor=users["inspector"], request_id=cr.id, decision="APPROVE")

    with session_scope(app) as s:
        copy = s.query(Project).filter(Project.code_prefix == "QA").one()
        assert copy.title == "Quality Audit"
        assert copy.requires_quality_review is True
        copied = {i.code: i for i in s.query(Item).filter(Item.project_id == copy.id)}
        assert sorted(copied) == ["QA-9", "QA-9-1"]
        assert copied["QA-9-1"].parent_id == copied["QA-9"].id
        assert copied["QA-9"].content == "Check seals."
        assert copied["QA-9"].current_version == 1

        [h] = s.query(ItemHistory).filter(ItemHistory.item_id == copied["QA-9"].id).all()
        assert (h.version, h.change_type, h.change_request_id) == (1, "CREATE", None)
        assert h.snapshot["copied_from"] == "WQ-9"
        assert h.submitted_by_name == "Eli Editor"
        assert s.query(QCDocumentApproval).count() == approvals_before
        # The source is untouched
        assert s.query(Item).filter(Item.project_id == project.id).count() == 3


def test_copy_project_target_must_be_new(app, users, project, plain_project):
    with session_scope(app) as s:
        for payload in (
            {"code_prefix": "NOTE", "title": "Another"},
            {"code_prefix": "NEW", "title": "Notes"},
            {"code_prefix": "bad prefix", "title": "Spaces"},
            {"code_prefix": "NEW"},
        ):
            with pytest.raises(ValidationError):
                submit(s, actor=users["editor"], kind="PROJECT_COPY", project_id=project.id, payload=payload)
        with pytest.raises(Forbidden):
            submit(
                s,
                actor=users["viewer"],
                kind="PROJECT_COPY",
                project_id=project.id,
                payload={"code_prefix": "NEW", "title": "New"},
            )

    with session_scope(app) as s:
        submit(
            s,
            actor=users["editor"],
            kind="PROJECT_COPY",
            project_id=project.id,
            payload={"code_prefix": "NEW", "title": "New"},
        )
    with session_scope(app) as s:
        with pytest.raises(ValidationError):
            submit(
                s,
                actor=users["editor2"],
                kind="PROJECT_COPY",
                project_id=plain_project.id,
                payload={"code_prefix": "NEW", "title": "Newer"},
            )
