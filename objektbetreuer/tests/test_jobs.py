from datetime import datetime, timezone

import pytest

from objektbetreuer.crud import JobRepository, PropertyRepository, Scope
from objektbetreuer.errors import InvalidTransitionError, ValidationError
from objektbetreuer.models import JobStatus


@pytest.fixture
def tenant_property(client, signup):
    _, headers = signup()
    r = client.post("/api/properties", json={"name": "Bürohaus Mitte", "city": "Berlin"}, headers=headers)
    return r.json()["id"], headers


def _job(client, headers, property_id, **extra):
    payload = {"property_id": property_id, "title": "Heizung prüfen", "priority": "high", **extra}
    r = client.post("/api/jobs", json=payload, headers=headers)
    assert r.status_code == 200, r.text
    return r.json()


def test_create_job_defaults(client, tenant_property):
    pid, headers = tenant_property
    job = _job(client, headers, pid)
    assert job["status"] == "pending"
    assert job["notes"] == []
    assert job["created_by"] is not None
    assert job["completed_at"] is None


def test_status_change_appends_audit_note(client, tenant_property):
    pid, headers = tenant_property
    job = _job(client, headers, pid)
    r = client.post(f"/api/jobs/{job['id']}/status", json={"status": "in_progress"}, headers=headers)
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "in_progress"
    assert body["notes"][-1]["text"] == 'Status von "Offen" auf "In Bearbeitung" geändert am 01.03.2024 um 09:00'


def test_same_status_is_a_no_op(client, tenant_property):
    pid, headers = tenant_property
    job = _job(client, headers, pid)
    r = client.post(f"/api/jobs/{job['id']}/status", json={"status": "pending"}, headers=headers)
    assert r.status_code == 200
    assert r.json()["notes"] == []


def test_terminal_status_cannot_be_left(client, clock, tenant_property):
    pid, headers = tenant_property
    job = _job(client, headers, pid)
    clock.advance(hours=2)
    r = client.post(f"/api/jobs/{job['id']}/status", json={"status": "completed"}, headers=headers)
    assert r.json()["completed_at"] == "2024-03-01T11:00:00Z"

    r = client.post(f"/api/jobs/{job['id']}/status", json={"status": "in_progress"}, headers=headers)
    assert r.status_code == 409
    assert r.json()["code"] == "invalid-transition"


def test_update_rejects_status_and_unknown_fields(client, tenant_property):
    pid, headers = tenant_property
    job = _job(client, headers, pid)
    r = client.patch(f"/api/jobs/{job['id']}", json={"title": "Heizung warten", "status": "completed"}, headers=headers)
    assert r.status_code == 422
    assert r.json()["code"] == "invalid-argument"
    assert "/status" in r.json()["detail"]

    r = client.patch(f"/api/jobs/{job['id']}", json={"titel": "Tippfehler"}, headers=headers)
    assert r.status_code == 422
    assert "titel" in r.json()["detail"]

    r = client.get(f"/api/jobs/{job['id']}", headers=headers)
    assert r.json()["title"] == "Heizung prüfen"
    assert r.json()["status"] == "pending"


def test_timestamps_are_utc(ctx, company):
    scope = Scope.for_user(company)
    pid = PropertyRepository(ctx, scope).create({"name": "Haus"})
    repo = JobRepository(ctx, scope)
    naive = repo.create({"property_id": pid, "title": "Dach", "due_date": "2024-04-01T08:00:00"})
    offset = repo.create({"property_id": pid, "title": "Keller", "due_date": "2024-04-01T10:00:00+02:00"})

    due = datetime(2024, 4, 1, 8, 0, tzinfo=timezone.utc)
    assert repo.get(naive).due_date == due
    assert repo.get(offset).due_date == due
    assert repo.get(naive).created_at == ctx.clock()
    assert repo.get(naive).created_at.tzinfo is not None


def test_add_note(client, tenant_property):
    pid, headers = tenant_property
    job = _job(client, headers, pid)
    r = client.post(f"/api/jobs/{job['id']}/notes", json={"text": "Ersatzteil bestellt"}, headers=headers)
    assert r.status_code == 200
    assert r.json()["notes"][0]["text"] == "Ersatzteil bestellt"


def test_job_is_hard_deleted(client, tenant_property):
    pid, headers = tenant_property
    job = _job(client, headers, pid)
    assert client.delete(f"/api/jobs/{job['id']}", headers=headers).status_code == 200
    assert client.get(f"/api/jobs/{job['id']}", headers=headers).status_code == 404
    assert client.delete(f"/api/jobs/{job['id']}", headers=headers).status_code == 404


def test_filters(client, tenant_property):
    pid, headers = tenant_property
    other = client.post("/api/properties", json={"name": "Lager"}, headers=headers).json()["id"]
    _job(client, headers, pid)
    _job(client, headers, other, title="Tor reparieren")

    r = client.get("/api/jobs", params={"property_id": other}, headers=headers)
    assert [j["title"] for j in r.json()] == ["Tor reparieren"]
    r = client.get("/api/jobs", params={"status": "completed"}, headers=headers)
    assert r.json() == []


def test_job_needs_property_of_same_company(client, signup, tenant_property):
    pid, _ = tenant_property
    _, other_headers = signup(email="b@firma-b.de", company_name="Firma B")
    r = client.post("/api/jobs", json={"property_id": pid, "title": "Fremd"}, headers=other_headers)
    assert r.status_code == 422


def test_assignee_must_be_member(client, signup, hire, tenant_property):
    pid, headers = tenant_property
    _, other_headers = signup(email="b@firma-b.de", company_name="Firma B")
    outsider, _ = hire(other_headers, "fremd@example.com")
    r = client.post("/api/jobs", json={"property_id": pid, "title": "X", "assigned_to": outsider["id"]}, headers=headers)
    assert r.status_code == 422


def test_assigned_employee_can_work_on_own_job(client, hire, tenant_property):
    pid, headers = tenant_property
    worker, worker_headers = hire(headers, "worker@example.com", can_view_jobs=True)
    mine = _job(client, headers, pid, assigned_to=worker["id"])
    theirs = _job(client, headers, pid, title="Fremder Auftrag")

    r = client.get("/api/jobs", params={"mine": True}, headers=worker_headers)
    assert [j["id"] for j in r.json()] == [mine["id"]]

    r = client.post(f"/api/jobs/{mine['id']}/status", json={"status": "in_progress"}, headers=worker_headers)
    assert r.status_code == 200
    assert r.json()["notes"][-1]["user"] == worker["id"]

    r = client.post(f"/api/jobs/{theirs['id']}/status", json={"status": "in_progress"}, headers=worker_headers)
    assert r.status_code == 403
    assert client.post("/api/jobs", json={"property_id": pid, "title": "Neu"}, headers=worker_headers).status_code == 403


def test_employee_without_view_flag_sees_no_jobs(client, hire, tenant_property):
    pid, headers = tenant_property
    _job(client, headers, pid)
    _, blind = hire(headers, "blind@example.com", can_view_properties=True)
    assert client.get("/api/jobs", headers=blind).status_code == 403


def test_change_status_service_level(ctx, company):
    scope = Scope.for_user(company)
    pid = PropertyRepository(ctx, scope).create({"name": "Haus"})
    repo = JobRepository(ctx, scope)
    job_id = repo.create({"property_id": pid, "title": "Fenster"})

    with pytest.raises(ValidationError):
        repo.change_status(job_id, "open")
    repo.change_status(job_id, JobStatus.cancelled)
    with pytest.raises(InvalidTransitionError):
        repo.change_status(job_id, JobStatus.completed)
    assert repo.get(job_id).notes[-1]["text"].startswith('Status von "Offen" auf "Storniert"')


@pytest.mark.parametrize("legacy,expected", [
    ("open", JobStatus.pending),
    ("in-progress", JobStatus.in_progress),
    ("closed", JobStatus.completed),
    ("canceled", JobStatus.cancelled),
    ("Completed", JobStatus.completed),
])
def test_legacy_status_mapping(legacy, expected):
    assert JobStatus.from_legacy(legacy) is expected


def test_unknown_legacy_status():
    with pytest.raises(ValueError):
        JobStatus.from_legacy("archived")
