# tests/test_health.py
from http import HTTPStatus

from app.api.dependencies.ingestion import get_backpressure_guard
from app.services.backpressure import BackpressureGuard


def test_health_endpoint_ok(client):
    """
    Basic sanity test to verify that /health responds with 200 OK
    and has the expected JSON shape and types.
    """
    response = client.get("/health")

    assert response.status_code == HTTPStatus.OK
    data = response.json()

    assert data["status"] == "ok"
    assert isinstance(data["app_name"], str)
    assert data["environment"] == "test"
    assert "timestamp_utc" in data
    assert data["uptime_seconds"] >= 0
    assert data["memory"]["rss_mb"] == 120.0
    assert data["tracked_meetings"] == 0
    assert data["backpressure_limit_mb"] == 1800.0
    assert data["backpressure_active"] is False


def test_health_reports_backpressure_when_memory_is_high(client, memory_sampler):
    memory_sampler.heap_mb = 2048.0

    response = client.get("/health")

    assert response.status_code == HTTPStatus.OK
    data = response.json()
    assert data["backpressure_active"] is True
    assert data["memory"]["rss_mb"] == 2048.0


def test_health_counts_meetings_with_ingestion_state(client):
    meeting = client.post("/meetings", json={"room_id": "health-room"}).json()
    client.post(f"/meetings/{meeting['id']}/attention", json={"signals": {"u1": "attentive"}})

    data = client.get("/health").json()

    assert data["tracked_meetings"] == 1


def test_health_reports_the_guard_limit(client, memory_sampler):
    client.app.dependency_overrides[get_backpressure_guard] = lambda: BackpressureGuard(
        memory_sampler, limit_mb=100
    )

    data = client.get("/health").json()

    assert data["backpressure_limit_mb"] == 100.0
    assert data["backpressure_active"] is True
