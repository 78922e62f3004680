from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Dict, Generator, List

import pytest
from fastapi.testclient import TestClient

from droidops.constants import MAX_BODY_BYTES
from droidops.main import app
from droidops.routes.api import _event_stream, format_sse
from droidops.services.events import QueueSubscriber
from droidops.services.orchestrator import Orchestrator, get_orchestrator

pytestmark = pytest.mark.integration

TERMINAL = {"completed", "failed", "cancelled"}


def _wait_for_job(api: TestClient, job_id: int, timeout: float = 5.0) -> Dict[str, Any]:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        job = api.get(f"/api/jobs/{job_id}").json()["job"]
        if job["status"] in TERMINAL:
            return job
        time.sleep(0.01)
    raise AssertionError(f"job {job_id} did not finish")


@pytest.fixture
def paused_client(storage, backend) -> Generator[TestClient, None, None]:
    """TestClient whose job runner never starts on its own."""
    orchestrator = Orchestrator(storage, backend, auto_start=False)
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_health_and_state(client: TestClient) -> None:
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json()["service"] == "droidops"

    state = client.get("/api/state").json()
    assert state["connected_device_count"] == 2
    assert state["workflow_count"] == 2
    assert state["snapshot_kinds"] == ["radio", "display", "location", "power-idle", "package-inventory"]

    devices = client.get("/api/devices").json()
    assert [device["id"] for device in devices["devices"]] == ["emulator-5554", "R58M123"]


def test_job_lifecycle_over_http(client: TestClient, backend) -> None:
    resp = client.post("/api/jobs", json={"kind": "open_url", "input": {"url": "https://example.com"}})
    assert resp.status_code == 202
    job_id = resp.json()["job"]["id"]

    job = _wait_for_job(client, job_id)
    assert job["status"] == "completed"
    assert job["result"]["strategy"] == "chrome"
    assert job["input"]["wait_for_ready_ms"] == 1000
    assert backend.count("open_url") == 1

    listed = client.get("/api/jobs").json()
    assert [item["id"] for item in listed["jobs"]] == [job_id]

    resp = client.post(f"/api/jobs/{job_id}/cancel")
    assert resp.status_code == 400
    assert resp.json()["reason"] == "job_not_cancellable"

    resp = client.post(f"/api/jobs/{job_id}/retry")
    assert resp.status_code == 202
    retried = _wait_for_job(client, resp.json()["job"]["id"])
    assert retried["status"] == "completed"


def test_failed_job_keeps_provider_message(client: TestClient, backend) -> None:
    backend.fail_urls.add("https://down.example.com")
    resp = client.post("/api/jobs", json={"kind": "open_url", "input": {"url": "https://down.example.com"}})
    job = _wait_for_job(client, resp.json()["job"]["id"])
    assert job["status"] == "failed"
    assert job["error"] == "Error: Activity not started, unable to resolve Intent"

    entries = {entry["name"]: entry for entry in client.get("/api/metrics").json()["entries"]}
    assert entries["device.open_url"]["errors"] == 1
    assert entries["jobs-create"]["success"] == 1


def test_job_errors_render_as_json(client: TestClient) -> None:
    resp = client.get("/api/jobs/404")
    assert resp.status_code == 404
    assert resp.json() == {"error": "Job 404 not found", "reason": "job_not_found"}

    resp = client.post("/api/jobs", json={"kind": "factory_reset", "input": {}})
    assert resp.status_code == 400
    assert resp.json()["reason"] == "invalid_job_kind"

    resp = client.post("/api/jobs", json={"input": {}})
    assert resp.status_code == 400
    assert resp.json()["reason"] == "validation_error"

    resp = client.post("/api/jobs", json={"kind": "workflow_run", "input": {"name": "missing"}})
    assert resp.status_code == 404
    assert resp.json()["reason"] == "workflow_not_found"


def test_cancel_and_bulk_on_paused_queue(paused_client: TestClient) -> None:
    resp = paused_client.post(
        "/api/jobs/bulk",
        json={
            "jobs": [
                {"kind": "open_url", "input": {"url": "https://example.com"}},
                {"kind": "snapshot_suite", "input": {}},
                {"kind": "stress_run", "input": {"loops": 2}},
                {"kind": "open_url", "input": {"url": "mailto:nobody"}},
            ]
        },
    )
    assert resp.status_code == 202
    body = resp.json()
    assert body["created_count"] == 3
    assert body["rejected"][0]["index"] == 3
    assert body["queue_depth"] == 3

    second = body["created"][1]["id"]
    resp = paused_client.post(f"/api/jobs/{second}/cancel")
    assert resp.status_code == 200
    assert resp.json()["job"]["status"] == "cancelled"

    listed = paused_client.get("/api/jobs").json()
    assert listed["queue_depth"] == 2
    assert [job["status"] for job in listed["jobs"]] == ["queued", "cancelled", "queued"]

    resp = paused_client.post("/api/jobs/bulk", json={"jobs": []})
    assert resp.status_code == 400


def test_workflow_endpoints(client: TestClient, backend) -> None:
    resp = client.post(
        "/api/workflows",
        json={
            "name": "nightly",
            "description": "Nightly sanity check",
            "steps": [
                {"type": "open_url", "url": "https://example.com"},
                {"type": "snapshot", "snapshot": "radio"},
                {"type": "sleep_ms", "duration_ms": 50},
            ],
        },
    )
    assert resp.status_code == 201
    assert [step["type"] for step in resp.json()["workflow"]["steps"]] == ["open_url", "snapshot", "sleep_ms"]

    resp = client.post("/api/workflows", json={"name": "broken", "steps": [{"type": "teleport"}]})
    assert resp.status_code == 400
    assert resp.json()["reason"] == "invalid_workflow_step"

    names = [item["name"] for item in client.get("/api/workflows").json()["workflows"]]
    assert names == ["diagnostic-suite", "nightly", "smoke-web-flow"]

    run = client.post("/api/workflows/run", json={"name": "nightly", "device_id": "R58M123"}).json()
    assert [output["step"] for output in run["outputs"]] == ["open_url", "snapshot", "sleep_ms"]
    assert backend.calls[0][2] == "R58M123"

    exported = client.get("/api/workflows/export").json()
    assert sorted(exported["workflows"]) == ["diagnostic-suite", "nightly", "smoke-web-flow"]

    resp = client.post(
        "/api/workflows/import",
        json={"workflows": list(exported["workflows"].values()) + [{"name": "junk"}], "replace": True},
    )
    assert resp.json()["imported"] == 3
    assert resp.json()["skipped"] == 1

    resp = client.delete("/api/workflows/nightly")
    assert resp.json() == {"deleted": "nightly", "count": 2}
    assert client.delete("/api/workflows/nightly").status_code == 404

    types = [event["type"] for event in client.get("/api/history").json()["events"]]
    assert types.count("workflow-step") == 3
    assert "workflow-run" in types
    assert "workflow-import" in types
    assert types[-1] == "workflow-deleted"


def test_direct_device_routes(client: TestClient) -> None:
    resp = client.post("/api/open-url", json={"url": "https://example.com", "wait_for_ready_ms": 90000})
    assert resp.status_code == 200
    assert resp.json()["strategy"] == "chrome"

    resp = client.post("/api/open-url", json={"url": "example.com"})
    assert resp.status_code == 400
    assert resp.json()["reason"] == "invalid_job_input"

    snap = client.post("/api/snapshot/display", json={"include_raw": True}).json()
    assert snap["raw"]["wm_size"] == "1080x2400"
    assert client.post("/api/snapshot/camera").status_code == 400

    first = client.post("/api/snapshot/diff", json={"kind": "location"}).json()
    second = client.post("/api/snapshot/diff", json={"kind": "location"}).json()
    assert first["had_previous"] is False
    assert second["diff"]["changed_count"] == 0

    suite = client.post("/api/snapshot-suite", json={"package_name": "com.android.chrome"}).json()
    assert len(suite["snapshots"]) == 5

    stress = client.post("/api/stress-run", json={"loops": 1, "urls": ["https://example.com"]}).json()
    assert stress["total_steps"] == 1

    profile = client.post("/api/device/profile", json={"device_id": "R58M123"}).json()
    assert profile["health_score"] == 100

    profiles = client.post("/api/device/profiles", json={"device_ids": ["emulator-5554", " "]}).json()
    assert profiles["count"] == 1

    types = [event["type"] for event in client.get("/api/history?limit=600").json()["events"]]
    assert types == ["open-url", "snapshot", "snapshot-diff", "snapshot-diff", "snapshot-suite", "stress-run",
                     "device-profile", "device-profiles"]


def test_provider_failure_maps_to_bad_gateway(client: TestClient, backend) -> None:
    backend.fail_devices.add("ghost")
    resp = client.post("/api/snapshot/radio", json={"device_id": "ghost"})
    assert resp.status_code == 502
    assert resp.json() == {"error": "device 'ghost' offline", "reason": "provider_error"}


def test_history_limit_is_clamped(client: TestClient, orchestrator: Orchestrator) -> None:
    for index in range(5):
        orchestrator.events.publish("open-url", f"event {index}")
    assert client.get("/api/history?limit=0").json()["count"] == 1
    assert client.get("/api/history?limit=2.9").json()["count"] == 2
    assert client.get("/api/history?limit=lots").json()["count"] == 5


def test_config_updates_apply_to_running_components(client: TestClient, orchestrator: Orchestrator) -> None:
    config = client.get("/api/config").json()["config"]
    assert config["event_history_limit"] == 600

    resp = client.patch("/api/config", json={"event_history_limit": 20, "heartbeat_seconds": 5})
    assert resp.status_code == 200
    assert resp.json()["config"]["event_history_limit"] == 20
    assert orchestrator.events.history_limit == 20
    assert orchestrator.heartbeat_seconds == 5

    resp = client.patch("/api/config", json={"display_timezone": "mars"})
    assert resp.status_code == 400
    assert resp.json()["reason"] == "validation_error"


def test_session_export_and_reset(client: TestClient, orchestrator: Orchestrator) -> None:
    client.post("/api/workflows", json={"name": "temp", "steps": [{"type": "sleep_ms"}]})
    job_id = client.post("/api/jobs", json={"kind": "device_profile", "input": {}}).json()["job"]["id"]
    _wait_for_job(client, job_id)

    exported = client.get("/api/session/export").json()
    assert exported["state"]["job_count"] == 1
    assert "temp" in exported["workflows"]
    assert exported["metrics"]["total_actions"] > 0

    resp = client.post("/api/session/reset", json={"keep_workflows": False})
    assert resp.json()["keep_workflows"] is False
    assert [event.type for event in orchestrator.events.history()] == ["session-reset"]
    assert orchestrator.list_jobs() == []
    assert "temp" not in [item["name"] for item in client.get("/api/workflows").json()["workflows"]]

    assert client.post("/api/session/reset").json()["keep_workflows"] is True


def test_oversized_body_is_rejected(client: TestClient) -> None:
    resp = client.post(
        "/api/open-url",
        content=b"x" * (MAX_BODY_BYTES + 1),
        headers={"content-type": "application/json"},
    )
    assert resp.status_code == 413
    assert resp.json()["reason"] == "capacity_exceeded"


def test_oversized_chunked_body_is_rejected(client: TestClient, backend) -> None:
    def _chunks():
        chunk = b" " * 65536
        for _ in range(MAX_BODY_BYTES // len(chunk) + 2):
            yield chunk

    resp = client.post("/api/open-url", content=_chunks(), headers={"content-type": "application/json"})
    assert resp.status_code == 413
    assert resp.json()["reason"] == "capacity_exceeded"
    assert backend.count("open_url") == 0


def test_small_chunked_body_reaches_the_route(client: TestClient) -> None:
    def _chunks():
        yield b'{"url": "https://exa'
        yield b'mple.com"}'

    resp = client.post("/api/open-url", content=_chunks(), headers={"content-type": "application/json"})
    assert resp.status_code == 200
    assert resp.json()["url"] == "https://example.com"


class _FakeRequest:
    def __init__(self) -> None:
        self.disconnected = False

    async def is_disconnected(self) -> bool:
        return self.disconnected


def test_event_stream_sends_hello_events_then_heartbeat(orchestrator: Orchestrator) -> None:
    async def scenario() -> List[str]:
        orchestrator.heartbeat_seconds = 0.05
        request = _FakeRequest()
        subscriber = orchestrator.events.subscribe(QueueSubscriber())
        stream = _event_stream(request, orchestrator, subscriber)

        frames = [await stream.__anext__()]
        orchestrator.events.publish("job-queued", "Job 1 queued", {"id": 1})
        orchestrator.events.publish("job-running", "Job 1 running", {"id": 1})
        for _ in range(3):
            frames.append(await stream.__anext__())

        request.disconnected = True
        with pytest.raises(StopAsyncIteration):
            await stream.__anext__()
        return frames

    frames = asyncio.run(scenario())
    payloads = [json.loads(frame.split("data: ", 1)[1]) for frame in frames]
    assert [payload["type"] for payload in payloads] == ["hello", "job-queued", "job-running", "heartbeat"]
    assert frames[1].startswith("id: 1\n")
    assert frames[2].startswith("id: 2\n")
    assert not frames[3].startswith("id:")

    assert [event.type for event in orchestrator.events.history()] == ["job-queued", "job-running"]
    assert orchestrator.events.subscriber_count == 0


def test_dashboard_renders(client: TestClient) -> None:
    client.post("/api/jobs", json={"kind": "open_url", "input": {"url": "https://example.com"}})
    resp = client.get("/")
    assert resp.status_code == 200
    assert "smoke-web-flow" in resp.text
    assert "open_url" in resp.text


def test_sse_frames() -> None:
    frame = format_sse({"type": "job-queued", "id": 3}, 3)
    assert frame.startswith("id: 3\ndata: ")
    assert frame.endswith("\n\n")
    assert json.loads(frame.split("data: ", 1)[1]) == {"type": "job-queued", "id": 3}
