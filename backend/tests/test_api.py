"""HTTP surface, driven through FastAPI's TestClient.

Jobs collected by the recording queue are delivered back through the
internal task endpoints, the way Cloud Tasks would deliver them.
"""

import base64

import pytest
from fastapi.testclient import TestClient

from conftest import FAKE_JPEG, MENU_URL
from menusee.main import create_app

TOKEN = "internal-test-token"


@pytest.fixture
def client(config, service):
    object.__setattr__(config, "internal_api_token", TOKEN)
    object.__setattr__(config, "sse_poll_interval_seconds", 0.01)
    with TestClient(create_app(service=service)) as c:
        yield c


def _deliver(client, queue):
    """Post queued jobs to the internal endpoints until none are left."""
    while queue.jobs:
        for job in queue.take():
            path = "/internal/tasks/process-scan" if job.kind == "process_scan" else "/internal/tasks/generate-dish-image"
            response = client.post(path, json=job.model_dump(mode="json"), headers={"x-internal-token": TOKEN})
            assert response.status_code == 200, response.text


def _new_scan(client, device_id="device-1"):
    assert client.post(f"/api/v1/devices/{device_id}/session").status_code == 200
    response = client.post("/api/v1/scans", json={"device_id": device_id})
    assert response.status_code == 200
    return response.json()["id"]


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_full_scan_lifecycle(client, queue):
    scan_id = _new_scan(client)

    attached = client.post(f"/api/v1/scans/{scan_id}/image", json={"image_url": MENU_URL})
    assert attached.status_code == 200
    assert attached.json()["status"] == "uploading"

    started = client.post(f"/api/v1/scans/{scan_id}/process", json={"image_provider": "openai"})
    assert started.json()["success"] is True
    _deliver(client, queue)

    scan = client.get(f"/api/v1/scans/{scan_id}").json()
    assert scan["status"] == "completed"
    assert scan["progress"] == 100.0
    assert scan["images_generated"] == scan["images_requested"] == 2

    dishes = client.get(f"/api/v1/scans/{scan_id}/dishes").json()
    assert list(dishes["sections"]) == ["Starters", "Mains"]
    assert len(dishes["no_section"]) == 1
    first = dishes["dishes"][0]
    assert first["image_status"] == "completed"

    asset = client.get(first["image_url"].replace("http://testserver", ""))
    assert asset.status_code == 200
    assert asset.content == FAKE_JPEG
    assert asset.headers["content-type"] == "image/jpeg"

    remaining = client.post(f"/api/v1/scans/{scan_id}/images/remaining")
    assert remaining.json()["data"]["queued"] == 3
    _deliver(client, queue)
    assert client.get(f"/api/v1/scans/{scan_id}").json()["images_generated"] == 5

    stats = client.get("/api/v1/devices/device-1/stats").json()
    assert stats["total_scans"] == 1
    assert stats["total_images"] == 5


def test_single_dish_endpoint(client, queue):
    scan_id = _new_scan(client)
    client.post(f"/api/v1/scans/{scan_id}/image", json={"image_url": MENU_URL})
    client.post(f"/api/v1/scans/{scan_id}/process")
    _deliver(client, queue)
    pending = client.get(f"/api/v1/scans/{scan_id}/dishes").json()["dishes"][4]

    response = client.post(f"/api/v1/dishes/{pending['id']}/image", json={"image_provider": "nano_banana"})

    assert response.json()["success"] is True
    assert queue.jobs[0].provider.value == "nano_banana"


def test_event_stream_ends_with_done(client, queue):
    scan_id = _new_scan(client)
    client.post(f"/api/v1/scans/{scan_id}/image", json={"image_url": MENU_URL})
    client.post(f"/api/v1/scans/{scan_id}/process")
    _deliver(client, queue)

    response = client.get(f"/api/v1/scans/{scan_id}/events")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    body = response.text
    assert body.startswith("id: 1\nevent: scan\n")
    assert body.count("event: dish_update") == 5
    assert body.rstrip().splitlines()[-2] == "event: done"
    assert '"status": "completed"' in body.rsplit("event: done", 1)[1]


def test_event_stream_times_out(client, config):
    object.__setattr__(config, "sse_max_duration_seconds", 0)
    scan_id = _new_scan(client)

    body = client.get(f"/api/v1/scans/{scan_id}/events").text

    assert "event: scan" in body
    assert "event: timeout" in body
    assert "event: done" not in body


def test_event_stream_unknown_scan_is_404(client):
    response = client.get("/api/v1/scans/missing/events")
    assert response.status_code == 404
    assert response.json()["error_code"] == "SCAN_NOT_FOUND"


def test_error_mapping(client):
    response = client.post("/api/v1/scans", json={"device_id": "ghost"})
    assert response.status_code == 404
    assert response.json()["error_code"] == "DEVICE_NOT_FOUND"

    scan_id = _new_scan(client)
    bad = client.post(f"/api/v1/scans/{scan_id}/image", json={"image_base64": "%%%"})
    assert bad.status_code == 400
    assert bad.json()["error_code"] == "INVALID_IMAGE"
    no_comma = client.post(f"/api/v1/scans/{scan_id}/image", json={"image_base64": "data:image/png;base64"})
    assert no_comma.status_code == 400
    assert no_comma.json()["error_code"] == "INVALID_IMAGE"

    encoded = base64.b64encode(FAKE_JPEG).decode()
    assert client.post(f"/api/v1/scans/{scan_id}/image", json={"image_base64": encoded}).status_code == 200
    again = client.post(f"/api/v1/scans/{scan_id}/image", json={"image_base64": encoded})
    assert again.status_code == 409
    assert again.json()["error_code"] == "INVALID_TRANSITION"


def test_rpc_failures_are_reported_in_body(client):
    response = client.post("/api/v1/scans/missing/stop")
    assert response.status_code == 200
    assert response.json() == {
        "success": False,
        "message": "Scan not found: missing",
        "data": {"error_code": "SCAN_NOT_FOUND"},
    }


def test_rename_and_delete(client):
    scan_id = _new_scan(client)

    renamed = client.patch(f"/api/v1/scans/{scan_id}", json={"restaurant_name": "Blue Door"})
    assert renamed.json()["restaurant_name"] == "Blue Door"
    assert [s["id"] for s in client.get("/api/v1/devices/device-1/scans").json()] == [scan_id]

    deleted = client.delete(f"/api/v1/scans/{scan_id}")
    assert deleted.json()["success"] is True
    assert client.get(f"/api/v1/scans/{scan_id}").status_code == 404
    assert client.get("/api/v1/devices/device-1/scans").json() == []


def test_internal_endpoints_require_token(client, queue):
    scan_id = _new_scan(client)
    job = {"kind": "process_scan", "scan_id": scan_id, "provider": "openai"}

    assert client.post("/internal/tasks/process-scan", json=job).status_code == 403
    assert client.post("/internal/tasks/process-scan", json=job, headers={"x-internal-token": "nope"}).status_code == 403
    ok = client.post("/internal/tasks/process-scan", json=job, headers={"x-internal-token": TOKEN})
    assert ok.status_code == 200
    # Not uploading yet, so the job is a no-op.
    assert client.get(f"/api/v1/scans/{scan_id}").json()["status"] == "pending"
