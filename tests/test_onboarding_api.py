import uuid
from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

from corpwell.database import get_db
from corpwell.models.audit_log import AuditLog
from corpwell.models.employee import Employee
from corpwell.services.batch_queue import InlineQueue
from corpwell.services.bulk_onboarding import build_onboarding_service
from corpwell.services.job_store import InMemoryJobStore
from main import create_app


@pytest.fixture()
def client(settings, session_factory):
    service = build_onboarding_service(
        replace(settings, max_upload_bytes=4096),
        session_factory,
        job_store=InMemoryJobStore(),
        batch_queue=InlineQueue(),
        notification_queue=InlineQueue(),
    )
    app = create_app(service)

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture()
def headers(tenant_id):
    return {"X-Tenant-Id": str(tenant_id), "X-User-Id": str(uuid.uuid4()), "X-User-Role": "hr_admin"}


def _upload(client, headers, content, **form):
    return client.post(
        "/api/v1/onboarding/upload",
        headers=headers,
        files={"file": ("roster.csv", content, "text/csv")},
        data=form,
    )


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_upload_then_poll_status(client, headers, roster_csv, session_factory):
    content = roster_csv([
        {"email": "a@x.com", "first_name": "A", "last_name": "One"},
        {"email": "a@x.com", "first_name": "A", "last_name": "Again"},
    ])
    resp = _upload(client, headers, content)

    assert resp.status_code == 202
    body = resp.json()
    assert body["total_employees"] == 1
    assert body["total_batches"] == 1
    assert body["invalid_records"] == 1

    status = client.get(f"/api/v1/onboarding/status/{body['job_id']}", headers=headers)
    assert status.status_code == 200
    report = status.json()
    assert report["status"] == "completed"
    assert report["progress"]["percentage"] == 100
    assert report["progress"]["total_successful"] == 1

    with session_factory() as db:
        entry = db.query(AuditLog).one()
        assert entry.action == "bulk_onboarding_upload"
        assert entry.resource_id == body["job_id"]


def test_dry_run_form_flag(client, headers, roster_csv):
    resp = _upload(
        client, headers,
        roster_csv([{"email": "a@x.com", "first_name": "A", "last_name": "B"}]),
        dryRun="true",
    )
    assert resp.status_code == 200
    assert resp.json()["dry_run"] is True
    assert resp.json()["job_id"] is None


def test_upload_errors(client, headers, roster_csv):
    assert _upload(client, headers, b"name\nBob\n").status_code == 400
    assert _upload(client, headers, b"email\n" + b"x" * 5000).status_code == 413

    failed = _upload(client, headers, roster_csv([{"email": "bad", "first_name": "A", "last_name": "B"}]))
    assert failed.status_code == 422
    assert failed.json()["status"] == "failed"

    unknown = dict(headers, **{"X-Tenant-Id": str(uuid.uuid4())})
    assert _upload(client, unknown, roster_csv([{"email": "a@x.com"}])).status_code == 404


def test_upload_requires_admin_and_tenant(client, headers, roster_csv):
    content = roster_csv([{"email": "a@x.com", "first_name": "A", "last_name": "B"}])
    assert _upload(client, dict(headers, **{"X-User-Role": "employee"}), content).status_code == 403

    no_tenant = {k: v for k, v in headers.items() if k != "X-Tenant-Id"}
    assert _upload(client, no_tenant, content).status_code == 400


def test_validate_endpoint(client, headers, roster_csv):
    content = roster_csv([
        {"email": "a@x.com", "first_name": "A", "last_name": "B"},
        {"email": "", "first_name": "C", "last_name": "D"},
    ])
    resp = client.post(
        "/api/v1/onboarding/validate",
        headers=headers,
        files={"file": ("roster.csv", content, "text/csv")},
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["valid"] is False
    assert (body["total_records"], body["valid_records"], body["invalid_records"]) == (2, 1, 1)
    assert body["errors"] == ["Row 3: Email is required"]


def test_cancel_and_history(client, headers, roster_csv):
    job_id = _upload(
        client, headers, roster_csv([{"email": "a@x.com", "first_name": "A", "last_name": "B"}])
    ).json()["job_id"]

    resp = client.delete(f"/api/v1/onboarding/{job_id}", headers=headers)
    assert resp.status_code == 200
    # the inline queue already finished the job, so cancel leaves it alone
    assert resp.json()["status"] == "completed"

    history = client.get("/api/v1/onboarding/history", headers=headers).json()
    assert [h["job_id"] for h in history] == [job_id]

    assert client.delete("/api/v1/onboarding/onboarding_nope", headers=headers).status_code == 404
    assert client.get("/api/v1/onboarding/status/onboarding_nope", headers=headers).status_code == 404


def test_template_download(client):
    resp = client.get("/api/v1/onboarding/template")

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/csv")
    assert "employee_bulk_upload_template.csv" in resp.headers["content-disposition"]
    assert resp.text.splitlines()[0].startswith("email,first_name,last_name")


def test_employee_recommendations(client, headers, roster_csv, session_factory):
    content = roster_csv(
        [{"email": "a@x.com", "first_name": "A", "last_name": "B", "department": "Sales"}],
        headers=["email", "first_name", "last_name", "department"],
    )
    _upload(client, headers, content)
    with session_factory() as db:
        employee_id = db.query(Employee.id).scalar()

    resp = client.get(f"/api/v1/onboarding/apps/recommendations/{employee_id}", headers=headers)
    assert resp.status_code == 200
    assert resp.json() == [
        {"app": "innerarchitect", "reason": "High-stress department - personal development",
         "priority": "medium", "includeSpouse": False},
    ]

    missing = client.get(f"/api/v1/onboarding/apps/recommendations/{uuid.uuid4()}", headers=headers)
    assert missing.status_code == 404
