from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import APIRouter, Body, Request
from fastapi.responses import StreamingResponse

from droidops.constants import DEFAULT_HISTORY_QUERY, MAX_HISTORY_QUERY, SERVICE_NAME, SERVICE_VERSION
from droidops.errors import ValidationError
from droidops.schemas import (
    ConfigUpdate,
    DeviceProfilesRequest,
    JobBulkCreate,
    JobCreate,
    JobKind,
    PackageTarget,
    SessionReset,
    SnapshotDiffRequest,
    SnapshotRequest,
    WorkflowImport,
    WorkflowSave,
    clamp_int,
    parse_job_input,
)
from droidops.services.events import QueueSubscriber
from droidops.services.orchestrator import Orchestrator, OrchestratorDep

router = APIRouter(prefix="/api", tags=["api"])


def _utcnow() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def format_sse(payload: Dict[str, Any], event_id: Optional[int] = None) -> str:
    """Encode one server-sent event frame."""
    lines = []
    if event_id is not None:
        lines.append(f"id: {event_id}")
    lines.append(f"data: {json.dumps(payload, default=str)}")
    return "\n".join(lines) + "\n\n"


# Service --------------------------------------------------------------------------
@router.get("/health")
async def health(orch: Orchestrator = OrchestratorDep) -> Dict[str, Any]:
    with orch.metrics.measure("health"):
        return {"ok": True, "service": SERVICE_NAME, "version": SERVICE_VERSION, "at": _utcnow()}


@router.get("/state")
async def state(orch: Orchestrator = OrchestratorDep) -> Dict[str, Any]:
    with orch.metrics.measure("state"):
        return await orch.state()


@router.get("/devices")
async def list_devices(orch: Orchestrator = OrchestratorDep) -> Dict[str, Any]:
    with orch.metrics.measure("devices"):
        devices = await orch.list_devices()
        return {"devices": devices, "count": len(devices)}


# Jobs -----------------------------------------------------------------------------
@router.get("/jobs")
async def list_jobs(orch: Orchestrator = OrchestratorDep) -> Dict[str, Any]:
    with orch.metrics.measure("jobs-list"):
        running = orch.jobs.running_job
        return {
            "jobs": [job.as_dict() for job in orch.list_jobs()],
            "queue_depth": orch.jobs.queue_depth,
            "running_job": running.id if running else None,
        }


@router.post("/jobs", status_code=202)
async def create_job(payload: JobCreate, orch: Orchestrator = OrchestratorDep) -> Dict[str, Any]:
    with orch.metrics.measure("jobs-create"):
        job = orch.submit_job(payload.kind, payload.input)
        return {"job": job.as_dict(), "queue_depth": orch.jobs.queue_depth}


@router.post("/jobs/bulk", status_code=202)
async def create_jobs(payload: JobBulkCreate, orch: Orchestrator = OrchestratorDep) -> Dict[str, Any]:
    with orch.metrics.measure("jobs-bulk"):
        created, rejected = orch.submit_jobs(payload.jobs)
        return {
            "created": [job.as_dict() for job in created],
            "created_count": len(created),
            "rejected": rejected,
            "rejected_count": len(rejected),
            "queue_depth": orch.jobs.queue_depth,
        }


@router.get("/jobs/{job_id}")
async def get_job(job_id: int, orch: Orchestrator = OrchestratorDep) -> Dict[str, Any]:
    with orch.metrics.measure("jobs-get"):
        return {"job": orch.get_job(job_id).as_dict()}


@router.post("/jobs/{job_id}/cancel")
async def cancel_job(job_id: int, orch: Orchestrator = OrchestratorDep) -> Dict[str, Any]:
    with orch.metrics.measure("jobs-cancel"):
        if not orch.cancel_job(job_id):
            status = orch.get_job(job_id).status.value
            raise ValidationError(f"Job {job_id} is {status}; only queued jobs can be cancelled",
                                  reason="job_not_cancellable")
        return {"cancelled": True, "job": orch.get_job(job_id).as_dict()}


@router.post("/jobs/{job_id}/retry", status_code=202)
async def retry_job(job_id: int, orch: Orchestrator = OrchestratorDep) -> Dict[str, Any]:
    with orch.metrics.measure("jobs-retry"):
        job = orch.retry_job(job_id)
        return {"job": job.as_dict(), "retried_from": job_id}


# Workflows ------------------------------------------------------------------------
@router.get("/workflows")
async def list_workflows(orch: Orchestrator = OrchestratorDep) -> Dict[str, Any]:
    with orch.metrics.measure("workflows-list"):
        workflows = [definition.model_dump() for definition in orch.workflows.list()]
        return {"workflows": workflows, "count": len(workflows)}


@router.post("/workflows", status_code=201)
async def save_workflow(payload: WorkflowSave, orch: Orchestrator = OrchestratorDep) -> Dict[str, Any]:
    with orch.metrics.measure("workflows-save"):
        definition = orch.save_workflow(payload.model_dump())
        return {"workflow": definition.model_dump()}


@router.get("/workflows/export")
async def export_workflows(orch: Orchestrator = OrchestratorDep) -> Dict[str, Any]:
    with orch.metrics.measure("workflows-export"):
        return orch.export_workflows()


@router.post("/workflows/import")
async def import_workflows(payload: WorkflowImport, orch: Orchestrator = OrchestratorDep) -> Dict[str, Any]:
    with orch.metrics.measure("workflows-import"):
        result = orch.import_workflows(payload.workflows, replace=payload.replace)
        return {**result.as_dict(), "count": len(orch.workflows)}


@router.post("/workflows/run")
async def run_workflow(
    payload: Optional[Dict[str, Any]] = Body(default=None),
    orch: Orchestrator = OrchestratorDep,
) -> Dict[str, Any]:
    with orch.metrics.measure("workflows-run"):
        return await orch.run_workflow(payload or {})


@router.delete("/workflows/{name}")
async def delete_workflow(name: str, orch: Orchestrator = OrchestratorDep) -> Dict[str, Any]:
    with orch.metrics.measure("workflows-delete"):
        definition = orch.delete_workflow(name)
        return {"deleted": definition.name, "count": len(orch.workflows)}


# Device actions -------------------------------------------------------------------
@router.post("/open-url")
async def open_url(
    payload: Optional[Dict[str, Any]] = Body(default=None),
    orch: Orchestrator = OrchestratorDep,
) -> Dict[str, Any]:
    with orch.metrics.measure("open-url"):
        params = parse_job_input(JobKind.open_url, payload or {})
        return await orch.open_url(params)


@router.post("/snapshot/diff")
async def snapshot_diff(payload: SnapshotDiffRequest, orch: Orchestrator = OrchestratorDep) -> Dict[str, Any]:
    with orch.metrics.measure("snapshot-diff"):
        return await orch.capture_snapshot_diff(
            payload.kind, device_id=payload.device_id, package_name=payload.package_name
        )


@router.post("/snapshot/{kind}")
async def snapshot(
    kind: str,
    payload: Optional[SnapshotRequest] = None,
    orch: Orchestrator = OrchestratorDep,
) -> Dict[str, Any]:
    payload = payload or SnapshotRequest()
    with orch.metrics.measure("snapshot"):
        return await orch.capture_snapshot(
            kind,
            device_id=payload.device_id,
            package_name=payload.package_name,
            include_raw=payload.include_raw,
        )


@router.post("/snapshot-suite")
async def snapshot_suite(
    payload: Optional[PackageTarget] = None,
    orch: Orchestrator = OrchestratorDep,
) -> Dict[str, Any]:
    payload = payload or PackageTarget()
    with orch.metrics.measure("snapshot-suite"):
        return await orch.snapshot_suite(device_id=payload.device_id, package_name=payload.package_name)


@router.post("/stress-run")
async def stress_run(
    payload: Optional[Dict[str, Any]] = Body(default=None),
    orch: Orchestrator = OrchestratorDep,
) -> Dict[str, Any]:
    with orch.metrics.measure("stress-run"):
        params = parse_job_input(JobKind.stress_run, payload or {})
        return await orch.stress_run(params)


@router.post("/device/profile")
async def device_profile(
    payload: Optional[PackageTarget] = None,
    orch: Orchestrator = OrchestratorDep,
) -> Dict[str, Any]:
    payload = payload or PackageTarget()
    with orch.metrics.measure("device-profile"):
        return await orch.device_profile(payload.device_id, payload.package_name)


@router.post("/device/profiles")
async def device_profiles(
    payload: Optional[DeviceProfilesRequest] = None,
    orch: Orchestrator = OrchestratorDep,
) -> Dict[str, Any]:
    payload = payload or DeviceProfilesRequest()
    with orch.metrics.measure("device-profiles"):
        return await orch.device_profiles(payload.device_ids, payload.package_name)


# Events and metrics ---------------------------------------------------------------
@router.get("/history")
async def history(limit: Optional[str] = None, orch: Orchestrator = OrchestratorDep) -> Dict[str, Any]:
    with orch.metrics.measure("history"):
        try:
            requested = float(limit) if limit is not None else DEFAULT_HISTORY_QUERY
        except (TypeError, ValueError):
            requested = DEFAULT_HISTORY_QUERY
        bounded = clamp_int(requested, DEFAULT_HISTORY_QUERY, 1, MAX_HISTORY_QUERY)
        events = orch.events.history(bounded)
        return {"count": len(events), "events": [event.model_dump() for event in events]}


async def _event_stream(request: Request, orch: Orchestrator, subscriber: QueueSubscriber) -> AsyncIterator[str]:
    try:
        yield format_sse({"type": "hello", "at": _utcnow(), "service": SERVICE_NAME, "version": SERVICE_VERSION})
        while True:
            if await request.is_disconnected():
                break
            event = await subscriber.get(timeout=orch.heartbeat_seconds)
            if event is None:
                if subscriber.closed:
                    break
                yield format_sse({"type": "heartbeat", "at": _utcnow()})
                continue
            yield format_sse(event.model_dump(), event.id)
    finally:
        orch.events.unsubscribe(subscriber)


@router.get("/events")
async def stream_events(request: Request, orch: Orchestrator = OrchestratorDep) -> StreamingResponse:
    with orch.metrics.measure("events"):
        subscriber = orch.events.subscribe(QueueSubscriber())
        return StreamingResponse(
            _event_stream(request, orch, subscriber),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )


@router.get("/metrics")
async def metrics(orch: Orchestrator = OrchestratorDep) -> Dict[str, Any]:
    with orch.metrics.measure("metrics"):
        return orch.metrics.summary()


# Config and session ---------------------------------------------------------------
@router.get("/config")
async def get_config(orch: Orchestrator = OrchestratorDep) -> Dict[str, Any]:
    with orch.metrics.measure("config-get"):
        return {"config": orch.storage.get_config()}


@router.patch("/config")
async def update_config(payload: ConfigUpdate, orch: Orchestrator = OrchestratorDep) -> Dict[str, Any]:
    with orch.metrics.measure("config-update"):
        orch.storage.update_config(**payload.model_dump(exclude_none=True))
        return {"config": orch.apply_config()}


@router.get("/session/export")
async def session_export(orch: Orchestrator = OrchestratorDep) -> Dict[str, Any]:
    with orch.metrics.measure("session-export"):
        return orch.session_export()


@router.post("/session/reset")
async def session_reset(
    payload: Optional[SessionReset] = None,
    orch: Orchestrator = OrchestratorDep,
) -> Dict[str, Any]:
    payload = payload or SessionReset()
    with orch.metrics.measure("session-reset"):
        return {"ok": True, **orch.reset_session(keep_workflows=payload.keep_workflows)}
