from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from fastapi import Depends

from droidops.constants import SERVICE_NAME, SERVICE_VERSION
from droidops.errors import DroidOpsError
from droidops.schemas import (
    SNAPSHOT_KINDS,
    JobInput,
    JobKind,
    OpenUrlInput,
    StressRunInput,
    WorkflowDefinition,
    WorkflowRunInput,
    parse_job_input,
)
from droidops.services.adb import AdbDeviceBackend, DeviceBackend
from droidops.services.devices import DeviceGateway
from droidops.services.events import EventBus
from droidops.services.jobs import Job, JobQueue
from droidops.services.metrics import MetricsRecorder
from droidops.services.scenarios import ScenarioRunner
from droidops.services.snapshots import SnapshotService
from droidops.services.storage import LocalJsonStorage, get_storage
from droidops.services.workflows import ImportResult, RunContext, WorkflowInterpreter, WorkflowStore

LOGGER = logging.getLogger("droidops.orchestrator")


def _utcnow() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


class Orchestrator:
    """Owns every piece of mutable session state and wires the components together."""

    def __init__(
        self,
        storage: Optional[LocalJsonStorage] = None,
        backend: Optional[DeviceBackend] = None,
        *,
        auto_start: bool = True,
        sleep=asyncio.sleep,
    ) -> None:
        self.storage = storage or get_storage()
        config = self.storage.get_config()
        self.started_at = _utcnow()
        self._started = time.monotonic()
        self.metrics = MetricsRecorder()
        self.events = EventBus(history_limit=int(config["event_history_limit"]))
        self.backend = backend or AdbDeviceBackend(
            adb_path=config["adb_path"], timeout=int(config["adb_timeout_seconds"])
        )
        self.devices = DeviceGateway(self.backend, self.metrics)
        self.snapshots = SnapshotService(self.devices)
        self.scenarios = ScenarioRunner(self.devices)
        self.workflows = WorkflowStore(self.storage)
        self.interpreter = WorkflowInterpreter(
            self.workflows, self.devices, self.snapshots, self.events, sleep=sleep
        )
        self.jobs = JobQueue(
            self.events,
            {
                JobKind.open_url: self._run_open_url_job,
                JobKind.snapshot_suite: self._run_snapshot_suite_job,
                JobKind.stress_run: self._run_stress_job,
                JobKind.workflow_run: self._run_workflow_job,
                JobKind.device_profile: self._run_device_profile_job,
            },
            history_limit=int(config["job_history_limit"]),
            auto_start=auto_start,
            precheck=self._precheck_job,
        )
        self.heartbeat_seconds = int(config["heartbeat_seconds"])

    @property
    def uptime_ms(self) -> int:
        return int((time.monotonic() - self._started) * 1000)

    # -- Job executors ----------------------------------------------------------------
    def _precheck_job(self, kind: JobKind, params: JobInput) -> None:
        if kind is JobKind.workflow_run:
            self.workflows.require(params.name)

    async def _run_open_url_job(self, job: Job) -> Dict[str, Any]:
        params = job.input
        return await self.devices.open_url(
            params.url, params.device_id, wait_for_ready_ms=params.wait_for_ready_ms, fallback_to_default=True
        )

    async def _run_snapshot_suite_job(self, job: Job) -> Dict[str, Any]:
        return await self.snapshots.capture_suite(
            device_id=job.input.device_id, package_name=job.input.package_name
        )

    async def _run_stress_job(self, job: Job) -> Dict[str, Any]:
        return await self.scenarios.run_stress(job.input)

    async def _run_workflow_job(self, job: Job) -> Dict[str, Any]:
        params: WorkflowRunInput = job.input
        return await self.interpreter.run(
            params.name,
            RunContext(device_id=params.device_id, package_name=params.package_name, include_raw=params.include_raw),
        )

    async def _run_device_profile_job(self, job: Job) -> Dict[str, Any]:
        return await self.scenarios.build_profile(job.input.device_id, job.input.package_name)

    # -- Jobs -------------------------------------------------------------------------
    def submit_job(self, kind: Any, payload: Any) -> Job:
        return self.jobs.submit(kind, payload)

    def submit_jobs(self, items: Any):
        return self.jobs.submit_bulk(items)

    def cancel_job(self, job_id: int) -> bool:
        return self.jobs.cancel(job_id)

    def retry_job(self, job_id: int) -> Job:
        job = self.jobs.retry(job_id)
        LOGGER.info("Retried job %s as job %s", job_id, job.id)
        return job

    def get_job(self, job_id: int) -> Job:
        return self.jobs.get(job_id)

    def list_jobs(self) -> List[Job]:
        return self.jobs.list()

    # -- Workflows --------------------------------------------------------------------
    def save_workflow(self, payload: Dict[str, Any]) -> WorkflowDefinition:
        definition = self.workflows.save(payload)
        self.events.publish(
            "workflow-saved",
            f"Workflow {definition.name} saved",
            {"name": definition.name, "step_count": len(definition.steps)},
        )
        return definition

    def delete_workflow(self, name: str) -> WorkflowDefinition:
        definition = self.workflows.delete(name)
        self.events.publish("workflow-deleted", f"Workflow {definition.name} deleted", {"name": definition.name})
        return definition

    def import_workflows(self, payload: Any, *, replace: bool = False) -> ImportResult:
        result = self.workflows.import_batch(payload, replace=replace)
        self.events.publish(
            "workflow-import",
            f"Imported {result.imported} workflows",
            {"imported": result.imported, "skipped": result.skipped, "replace": replace},
        )
        return result

    def export_workflows(self) -> Dict[str, Any]:
        return self.workflows.export()

    async def run_workflow(self, payload: Any) -> Dict[str, Any]:
        params = payload if isinstance(payload, WorkflowRunInput) else parse_job_input(JobKind.workflow_run, payload)
        result = await self.interpreter.run(
            params.name,
            RunContext(device_id=params.device_id, package_name=params.package_name, include_raw=params.include_raw),
        )
        self.events.publish(
            "workflow-run",
            f"Workflow {params.name} completed",
            {"name": params.name, "step_count": len(result["outputs"]), "duration_ms": result["duration_ms"]},
        )
        return result

    # -- Direct device actions --------------------------------------------------------
    async def list_devices(self) -> List[Dict[str, Any]]:
        return await self.devices.list_devices()

    async def open_url(self, params: OpenUrlInput) -> Dict[str, Any]:
        result = await self.devices.open_url(
            params.url, params.device_id, wait_for_ready_ms=params.wait_for_ready_ms, fallback_to_default=True
        )
        self.events.publish("open-url", f"Opened {params.url}", result)
        return result

    async def capture_snapshot(
        self,
        kind: str,
        *,
        device_id: Optional[str] = None,
        package_name: Optional[str] = None,
        include_raw: bool = False,
    ) -> Dict[str, Any]:
        result = await self.snapshots.capture(
            kind, device_id=device_id, package_name=package_name, include_raw=include_raw
        )
        self.events.publish(
            "snapshot", f"Captured {kind} snapshot", {"kind": kind, "device_id": result.get("device_id")}
        )
        return result

    async def capture_snapshot_diff(
        self,
        kind: str,
        *,
        device_id: Optional[str] = None,
        package_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        result = await self.snapshots.capture_diff(kind, device_id=device_id, package_name=package_name)
        self.events.publish(
            "snapshot-diff",
            f"Diffed {kind} snapshot: {result['diff']['changed_count']} changed",
            {"kind": kind, "had_previous": result["had_previous"], "changed_count": result["diff"]["changed_count"]},
        )
        return result

    async def snapshot_suite(self, *, device_id: Optional[str] = None, package_name: Optional[str] = None):
        result = await self.snapshots.capture_suite(device_id=device_id, package_name=package_name)
        self.events.publish("snapshot-suite", "Captured snapshot suite", {"duration_ms": result["duration_ms"]})
        return result

    async def stress_run(self, params: StressRunInput) -> Dict[str, Any]:
        result = await self.scenarios.run_stress(params)
        self.events.publish(
            "stress-run",
            f"Stress run completed ({result['total_steps']} steps)",
            {"loops": result["loops"], "total_steps": result["total_steps"], "duration_ms": result["duration_ms"]},
        )
        return result

    async def device_profile(self, device_id: Optional[str] = None, package_name: Optional[str] = None):
        profile = await self.scenarios.build_profile(device_id, package_name)
        self.events.publish(
            "device-profile",
            f"Profiled {profile['device_id']}",
            {"device_id": profile["device_id"], "health_score": profile["health_score"]},
        )
        return profile

    async def device_profiles(self, device_ids: Sequence[str] = (), package_name: Optional[str] = None):
        result = await self.scenarios.build_profiles(device_ids, package_name)
        self.events.publish(
            "device-profiles",
            f"Profiled {result['count']} devices",
            {
                "count": result["count"],
                "failed": sum(1 for item in result["profiles"] if not item["ok"]),
            },
        )
        return result

    # -- Session ----------------------------------------------------------------------
    async def state(self) -> Dict[str, Any]:
        devices: List[Dict[str, Any]] = []
        devices_error: Optional[str] = None
        try:
            devices = await self.devices.list_devices()
        except DroidOpsError as exc:
            devices_error = exc.message
        running = self.jobs.running_job
        return {
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "started_at": self.started_at,
            "uptime_ms": self.uptime_ms,
            "connected_devices": devices,
            "connected_device_count": len(devices),
            "devices_error": devices_error,
            "event_count": len(self.events),
            "subscriber_count": self.events.subscriber_count,
            "workflow_count": len(self.workflows),
            "queue_depth": self.jobs.queue_depth,
            "running_job": running.id if running else None,
            "job_count": len(self.jobs.list()),
            "job_counts": self.jobs.counts(),
            "snapshot_kinds": list(SNAPSHOT_KINDS),
            "cached_snapshots": self.snapshots.cache.kinds(),
        }

    def session_export(self) -> Dict[str, Any]:
        jobs = [job.as_dict() for job in self.jobs.list()]
        return {
            "exported_at": _utcnow(),
            "state": {
                "uptime_ms": self.uptime_ms,
                "workflow_count": len(self.workflows),
                "job_count": len(jobs),
                "event_count": len(self.events),
            },
            "config": self.storage.get_config(),
            "workflows": self.workflows.export()["workflows"],
            "jobs": jobs,
            "metrics": self.metrics.summary(),
            "events": [event.model_dump() for event in self.events.history()],
        }

    def reset_session(self, *, keep_workflows: bool = True) -> Dict[str, Any]:
        self.events.clear()
        self.metrics.clear()
        self.snapshots.cache.clear()
        cleared = self.jobs.clear_history()
        if not keep_workflows:
            self.workflows.reset()
        LOGGER.info("Session reset (keep_workflows=%s, cleared %d jobs)", keep_workflows, cleared)
        self.events.publish("session-reset", "Session state reset", {"keep_workflows": keep_workflows})
        return {"keep_workflows": keep_workflows, "cleared_jobs": cleared}

    def apply_config(self) -> Dict[str, Any]:
        config = self.storage.get_config()
        event_limit = int(config["event_history_limit"])
        if event_limit != self.events.history_limit:
            self.events.resize(event_limit)
            LOGGER.info("Updated event history limit to %s", event_limit)
        job_limit = int(config["job_history_limit"])
        if job_limit != self.jobs.history_limit:
            self.jobs.resize(job_limit)
            LOGGER.info("Updated job history limit to %s", job_limit)
        heartbeat = int(config["heartbeat_seconds"])
        if heartbeat != self.heartbeat_seconds:
            self.heartbeat_seconds = heartbeat
            LOGGER.info("Updated SSE heartbeat to %ss", heartbeat)
        if isinstance(self.backend, AdbDeviceBackend):
            timeout = int(config["adb_timeout_seconds"])
            if (config["adb_path"], timeout) != (self.backend.adb_path, self.backend.timeout):
                self.backend.configure(adb_path=config["adb_path"], timeout=timeout)
                LOGGER.info("Updated adb bridge to %s (timeout %ss)", config["adb_path"], timeout)
        return config

    async def shutdown(self) -> None:
        await self.jobs.shutdown()


_orchestrator: Optional[Orchestrator] = None


def get_orchestrator() -> Orchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = Orchestrator()
    return _orchestrator


async def shutdown_orchestrator() -> None:
    global _orchestrator
    if _orchestrator is not None:
        await _orchestrator.shutdown()
        _orchestrator = None


OrchestratorDep = Depends(get_orchestrator)
