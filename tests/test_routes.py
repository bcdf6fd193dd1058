import pytest
from fastapi.testclient import TestClient

from intake_api.app import create_app
from intake_api.config import Settings
from intake_api.runtime import build_runtime, get_runtime, set_runtime
from intake_api.time_utils import _utc_now


@pytest.fixture
def client():
    runtime = build_runtime(Settings(storage_backend="memory"))
    set_runtime(runtime)
    with TestClient(create_app()) as test_client:
        yield test_client
    set_runtime(None)


def _create(client, **fields):
    resp = client.post("/task-cards", json={"title": "Яма на дороге", **fields})
    assert resp.status_code == 201
    return resp.json()["task_card"]


def test_health_endpoints(client):
    assert client.get("/healthz").json() == {"status": "ok"}
    assert client.get("/readyz").json() == {"status": "ready", "db": "memory"}


def test_card_lifecycle_over_http(client):
    card = _create(client, department_id="roads")
    assert card["status"] == "new"

    resp = client.put(f"/task-cards/{card['id']}/assign", json={"assignee": "U1", "actor_id": "boss"})
    assert resp.status_code == 200
    assert resp.json()["task_card"]["status"] == "in_progress"

    resp = client.put(f"/task-cards/{card['id']}/status", json={"status": "awaiting_confirmation"})
    assert resp.json()["task_card"]["completed_at"] is not None

    resp = client.put(f"/task-cards/{card['id']}/confirm", json={"actor_id": "citizen"})
    assert resp.json()["task_card"]["status"] == "done"

    detail = client.get(f"/task-cards/{card['id']}").json()
    assert [h["new_status"] for h in detail["history"]] == ["new", "in_progress", "awaiting_confirmation", "done"]

    stats = client.get("/task-cards/stats").json()
    assert stats["by_status"]["done"] == 1

    listed = client.get("/task-cards", params={"department_id": "roads", "status": "done"}).json()
    assert listed["total"] == 1


def test_error_mapping(client):
    card = _create(client)

    assert client.get("/task-cards/not-a-uuid").status_code == 400
    assert client.get("/task-cards/00000000-0000-0000-0000-000000000000").status_code == 404

    resp = client.put(f"/task-cards/{card['id']}/status", json={"status": "archived"})
    assert resp.status_code == 400
    resp = client.put(f"/task-cards/{card['id']}/status", json={"status": "done"})
    assert resp.status_code == 400
    assert resp.json()["detail"]["current"] == "new"

    assert client.get("/task-cards", params={"status": "bogus"}).status_code == 400


def test_patch_updates_fields(client):
    card = _create(client)
    resp = client.patch(f"/task-cards/{card['id']}", json={"priority": "urgent", "summary": "кратко"})
    assert resp.status_code == 200
    body = resp.json()["task_card"]
    assert body["priority"] == "urgent"
    assert body["summary"] == "кратко"
    assert body["status"] == "new"


def test_patch_rejects_nulls_for_required_fields(client):
    card = _create(client, summary="кратко")

    resp = client.patch(f"/task-cards/{card['id']}", json={"title": None})
    assert resp.status_code == 400
    assert "title" in resp.json()["detail"]
    assert client.get(f"/task-cards/{card['id']}").json()["task_card"]["title"] == "Яма на дороге"

    resp = client.patch(f"/task-cards/{card['id']}", json={"summary": None, "deadline": None})
    assert resp.status_code == 200
    assert resp.json()["task_card"]["summary"] is None


def test_offset_less_deadline_is_accepted(client):
    card = _create(client, deadline="2020-01-01T00:00:00")
    assert card["deadline"].startswith("2020-01-01T00:00:00")
    assert card["overdue"] is True

    resp = client.patch(f"/task-cards/{card['id']}", json={"deadline": "2999-01-01T12:00:00"})
    assert resp.status_code == 200
    assert resp.json()["task_card"]["overdue"] is False


def test_sync_without_upstream_reports_failure(client):
    resp = client.post("/sync/run")
    assert resp.status_code == 502
    assert resp.json()["sync"]["status"] == "upstream_unavailable"

    state = client.get("/sync/state").json()["sync_state"]
    assert state["last_outcome"]["status"] == "upstream_unavailable"


def test_promote_and_raw_record_listing(client):
    get_runtime().storage.raw_records.upsert("EXT-1", {"obr_id": "EXT-1", "text": "Проблема"}, now=_utc_now())
    assert client.get("/raw-records/unprocessed").json()["count"] == 1

    resp = client.post("/sync/promote")
    assert resp.json()["promotion"]["created"] == 1

    raw = client.get("/raw-records", params={"processed": True}).json()
    assert raw["total"] == 1
    assert raw["raw_records"][0]["task_card_id"] is not None
