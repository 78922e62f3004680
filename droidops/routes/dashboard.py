from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse

from droidops.constants import SERVICE_VERSION
from droidops.schemas import SNAPSHOT_KINDS, JobKind
from droidops.services.orchestrator import Orchestrator, OrchestratorDep
from droidops.templating import templates

router = APIRouter(tags=["dashboard"])

RECENT_JOBS = 25
RECENT_EVENTS = 50


@router.get("/", response_class=HTMLResponse)
async def dashboard(request: Request, orch: Orchestrator = OrchestratorDep) -> HTMLResponse:
    with orch.metrics.measure("dashboard"):
        config = orch.storage.get_config()
        running = orch.jobs.running_job
        context = {
            "version": SERVICE_VERSION,
            "display_timezone": config.get("display_timezone", "utc"),
            "jobs": orch.list_jobs()[:RECENT_JOBS],
            "job_counts": orch.jobs.counts(),
            "queue_depth": orch.jobs.queue_depth,
            "running_job": running,
            "workflows": orch.workflows.list(),
            "metrics": orch.metrics.summary(),
            "events": list(reversed(orch.events.history(RECENT_EVENTS))),
            "job_kinds": [kind.value for kind in JobKind],
            "snapshot_kinds": SNAPSHOT_KINDS,
        }
        return templates.TemplateResponse(request, "dashboard.html", context)
