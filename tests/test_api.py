import pytest


def _client_for(app, user, token="test-csrf"):
    client = app.test_client()
    with client.session_transaction() as sess:
        sess["user_id"] = user.id
        sess["csrf_token"] = token
    client.environ_base["HTTP_X_CSRF_TOKEN"] = token
    return client


@pytest.fixture()
def clients(app, users):
    return {name: _client_for(app, u) for name, u in users.items()}


def test_post_without_csrf_token_is_rejected(app, users, project):
    client = app.test_client()
    with client.session_transaction() as sess:
        sess["user_id"] = users["editor"].id
    r = client.post("/change-requests", json={"kind": "CREATE", "project_id": project.id, "payload": {"title": "x"}})
    assert r.status_code == 400
    assert r.json["code"] == "ERR_CSRF"


def test_csrf_token_in_json_body_is_accepted(app, users, project):
    client = app.test_client()
    with client.session_transaction() as sess:
        sess["user_id"] = users["editor"].id
        sess["csrf_token"] = "body-token"
    r = client.post(
        "/change-requests",
        json={"kind": "CREATE", "project_id": project.id, "payload": {"title": "x"}, "csrf_token": "body-token"},
    )
    assert r.status_code == 201


def test_change_request_flow_over_http(app, clients, project):
    r = clients["editor"].post(
        "/change-requests",
        json={"kind": "CREATE", "project_id": project.id, "payload": {"code": "WQ-9", "title": "Valve Inspection"}},
    )
    assert r.status_code == 201
    cr = r.json["change_request"]
    assert cr["status"] == "PENDING"
    assert cr["target"] == "WQ-9"

    r = clients["editor"].post(f"/change-requests/{cr['id']}/review", json={"decision": "APPROVE"})
    assert r.status_code == 403
    assert r.json["code"] == "ERR_FORBIDDEN"

    r = clients["inspector"].get("/change-requests/pending")
    assert [c["id"] for c in r.json["change_requests"]] == [cr["id"]]

    r = clients["inspector"].post(f"/change-requests/{cr['id']}/review", json={"decision": "APPROVE", "note": "ok"})
    assert r.status_code == 200
    assert r.json["change_request"]["status"] == "APPROVED"

    r = clients["admin"].post(f"/change-requests/{cr['id']}/review", json={"decision": "REJECT", "note": "late"})
    assert r.status_code == 409
    assert r.json["code"] == "ERR_CONFLICT_STATE"
    assert r.json["details"]["actual"] == "APPROVED"

    r = clients["viewer"].get(f"/projects/{project.id}/items")
    assert [i["code"] for i in r.json["items"]] == ["WQ-9"]

    r = clients["editor"].get("/notifications/unread-count")
    assert r.json["unread"] == 1


def test_validation_errors_are_json_400(app, clients, project):
    r = clients["editor"].post(
        "/change-requests", json={"kind": "CREATE", "project_id": project.id, "payload": {"title": ""}}
    )
    assert r.status_code == 400
    assert r.json["code"] == "ERR_VALIDATION"

    r = clients["editor"].post("/change-requests", json={"kind": "CREATE", "project_id": "abc", "payload": {}})
    assert r.status_code == 400

    r = clients["editor"].get("/change-requests/9999")
    assert r.status_code == 404
    assert r.json["code"] == "ERR_NOT_FOUND"


def test_quality_sign_off_over_http(app, clients, approved_item):
    r = clients["qc"].get("/quality/approvals")
    [approval] = r.json["approvals"]
    assert approval["status"] == "PENDING_QC"
    assert approval["document_path"] == f"quality-docs/QC-WQ-{approved_item['history_id']}.pdf"

    r = clients["pm"].post(f"/quality/approvals/{approval['id']}/approve-pm", json={})
    assert r.status_code == 409

    r = clients["qc"].post(f"/quality/approvals/{approval['id']}/approve-qc", json={"note": "looks right"})
    assert r.status_code == 200
    assert r.json["approval"]["status"] == "PENDING_PM"
    assert r.json["signature_stamped"] is True

    r = clients["pm"].post(f"/quality/approvals/{approval['id']}/approve-pm", json={})
    assert r.json["approval"]["status"] == "COMPLETED"
    assert r.json["approval"]["pm"]["note"] == "Approved"

    r = clients["editor"].get(f"/history/{approved_item['history_id']}/timeline")
    events = [e["event"] for e in r.json["timeline"]]
    assert events[-2:] == ["QC_APPROVED", "PM_APPROVED"]


def test_self_certification_can_be_disabled(app, clients, approved_item):
    app.config["ALLOW_SELF_CERTIFICATION"] = False
    r = clients["dual"].get(f"/history/{approved_item['history_id']}/approval")
    approval_id = r.json["approval"]["id"]

    assert clients["dual"].post(f"/quality/approvals/{approval_id}/approve-qc", json={}).status_code == 200
    r = clients["dual"].post(f"/quality/approvals/{approval_id}/approve-pm", json={})
    assert r.status_code == 403
    assert clients["pm"].post(f"/quality/approvals/{approval_id}/approve-pm", json={}).status_code == 200


def test_history_export_requires_permission(app, clients, approved_item):
    assert clients["editor"].get("/history/export.csv").status_code == 403
    r = clients["inspector"].get("/history/export.csv")
    assert r.status_code == 200
    assert r.mimetype == "text/csv"
    assert b"WQ-9" in r.data


def test_admin_user_deletion_over_http(app, clients, users, approved_item):
    assert clients["inspector"].post(f"/admin/users/{users['viewer'].id}/delete", json={}).status_code == 403
    r = clients["admin"].post(f"/admin/users/{users['editor'].id}/delete", json={})
    assert r.status_code == 200
    assert r.json["compensated"]["change_requests.submitted_by_id"] == 1

    r = clients["admin"].get(f"/history/{approved_item['history_id']}")
    assert r.json["history"]["submitted_by"] == "Eli Editor"

    r = clients["admin"].get("/admin/")
    assert r.status_code == 200


def test_data_file_register_over_http(app, clients):
    payload = {
        "data_year": 2025,
        "data_name": "River Survey",
        "data_code": "RS-1",
        "file_name": "survey.csv",
        "file_path": "data/2025/survey.csv",
    }
    r = clients["editor"].post("/change-requests", json={"kind": "FILE_CREATE", "payload": payload})
    assert r.status_code == 201
    cr = r.json["change_request"]
    assert (cr["target"], cr["data_file_id"]) == ("RS-1", None)

    r = clients["inspector"].post(f"/change-requests/{cr['id']}/review", json={"decision": "APPROVE"})
    file_id = r.json["change_request"]["data_file_id"]
    assert file_id is not None

    r = clients["editor"].post(
        "/change-requests",
        json={"kind": "FILE_UPDATE", "data_file_id": file_id, "payload": {"description": "Spring run"}},
    )
    assert r.status_code == 201

    r = clients["viewer"].get("/data-files?year=2025&q=river")
    [entry] = r.json["data_files"]
    assert entry["pending_request"] == "FILE_UPDATE"
    assert clients["viewer"].get("/data-files/years").json["years"] == [2025]

    r = clients["viewer"].get(f"/data-files/{file_id}")
    assert [h["change_type"] for h in r.json["history"]] == ["CREATE"]
    assert clients["viewer"].get("/data-files/9999").status_code == 404


def test_project_categories_over_http(app, clients, project):
    r = clients["editor"].post("/project-categories", json={"name": "Plants"})
    assert r.status_code == 403

    r = clients["pm"].post("/project-categories", json={"name": "Plants"})
    assert r.status_code == 201
    category_id = r.json["category"]["id"]

    r = clients["pm"].post(f"/project-categories/{category_id}", json={"name": "Treatment Plants"})
    assert r.json["category"]["name"] == "Treatment Plants"

    r = clients["admin"].post("/projects", json={"code_prefix": "TP", "title": "Plant A", "category_id": category_id})
    assert r.json["project"]["category_id"] == category_id
    r = clients["viewer"].get(f"/projects?category_id={category_id}")
    assert [p["code_prefix"] for p in r.json["projects"]] == ["TP"]

    r = clients["viewer"].get("/project-categories")
    assert r.json["categories"][0]["project_count"] == 1

    assert clients["pm"].post(f"/project-categories/{category_id}/delete", json={}).status_code == 403
    r = clients["admin"].post(f"/project-categories/{category_id}/delete", json={})
    assert r.json == {"deleted": category_id, "unlinked_projects": 1}
