import pytest
from fastapi.testclient import TestClient

import server
from circle_checkin import config
from circle_checkin.errors import StoreConflictError

HEADERS = {"x-api-key": "test-key"}


@pytest.fixture
def client(service, monkeypatch):
    monkeypatch.setattr(config, "API_KEY", "test-key")
    monkeypatch.setattr(config, "CRON_SECRET", None)
    monkeypatch.setattr(config, "ALLOW_TEST_ENDPOINTS", False)
    server.app.state.service = service
    # no context manager: startup hooks (store, transports, scheduler) stay off
    yield TestClient(server.app)
    server.app.state.service = None


def test_rejects_missing_api_key(client):
    assert client.post("/checkin", json={"user_id": "ann"}).status_code == 401


def test_check_in_flow(client):
    resp = client.put("/users/ann", json={"display_name": "Ann", "cadence": "daily"}, headers=HEADERS)
    assert resp.status_code == 200
    assert resp.json()["display_name"] == "Ann"

    resp = client.post("/checkin", json={"user_id": "ann"}, headers=HEADERS)
    assert resp.status_code == 200
    assert resp.json()["success"] is True
    assert resp.json()["streak"] == 1

    resp = client.post("/checkin", json={"user_id": "ann"}, headers=HEADERS)
    assert resp.json()["success"] is False
    assert resp.json()["wait_reason"]

    status = client.get("/status/ann", headers=HEADERS).json()
    assert status["can_check_in"] is False
    assert client.get("/stats/ann", headers=HEADERS).json()["total_check_ins"] == 1


def test_unknown_user_is_404(client):
    resp = client.post("/checkin", json={"user_id": "ghost"}, headers=HEADERS)
    assert resp.status_code == 404
    assert resp.json() == {"success": False, "message": "User not found."}


def test_blank_user_id_is_rejected(client):
    assert client.post("/checkin", json={"user_id": ""}, headers=HEADERS).status_code == 422


def test_register_and_unregister_device(client, add_user):
    add_user("ann")
    resp = client.post("/register_device", json={"user_id": "ann", "token": "t1", "channel": "native-push"},
                       headers=HEADERS)
    assert resp.json() == {"ok": True}
    assert client.delete("/unregister_device/t1", headers=HEADERS).json() == {"ok": True}
    assert client.delete("/unregister_device/t1", headers=HEADERS).json() == {"ok": False}


def test_not_okay_message_cap(client, add_user):
    add_user("ann")
    resp = client.post("/not_okay", json={"actor_id": "ann", "actor_name": "Ann", "message": "x" * 201},
                       headers=HEADERS)
    assert resp.status_code == 422


def test_not_okay_to_unknown_circle(client, add_user):
    add_user("ann")
    resp = client.post("/not_okay", json={"actor_id": "ann", "actor_name": "Ann", "circle_id": "nope"},
                       headers=HEADERS)
    assert resp.status_code == 404
    assert resp.json()["message"] == "Circle not found."


def test_emergency_disabled(client, add_user):
    add_user("ann")
    resp = client.post("/emergency", json={"user_id": "ann", "user_name": "Ann", "days_since_last_check_in": 3},
                       headers=HEADERS)
    assert resp.status_code == 200
    assert resp.json()["success"] is False


def test_test_notification_is_gated(client, monkeypatch, add_user):
    add_user("ann")
    assert client.post("/test_notification", json={"user_id": "ann"}, headers=HEADERS).status_code == 403
    monkeypatch.setattr(config, "ALLOW_TEST_ENDPOINTS", True)
    resp = client.post("/test_notification", json={"user_id": "ann"}, headers=HEADERS)
    assert resp.status_code == 200
    assert resp.json()["success"] is False


def test_cron_routes_check_bearer_secret(client, monkeypatch):
    assert client.get("/cron/scan").status_code == 200

    monkeypatch.setattr(config, "CRON_SECRET", "s3cret")
    assert client.get("/cron/reminders").status_code == 401
    resp = client.get("/cron/emergency-alerts", headers={"Authorization": "Bearer s3cret"})
    assert resp.status_code == 200
    assert resp.json()["processed"] == 0


def test_store_contention_is_503(client, add_user, service, monkeypatch):
    add_user("ann")

    def busy(user_id):
        raise StoreConflictError("The store is busy, please try again.")

    monkeypatch.setattr(service.coordinator, "_record", busy)

    resp = client.post("/checkin", json={"user_id": "ann"}, headers=HEADERS)
    assert resp.status_code == 503
    assert resp.json() == {"success": False, "message": "The store is busy, please try again."}


def test_refused_check_in_is_a_result_not_an_error(client, add_user, service):
    add_user("ann")
    service.check_in("ann")

    resp = client.post("/checkin", json={"user_id": "ann"}, headers=HEADERS)

    assert resp.status_code == 200
    assert resp.json()["success"] is False
    assert resp.json()["message"] == resp.json()["wait_reason"]
