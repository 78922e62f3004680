from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from droidops.errors import DroidOpsError, NotFoundError, ValidationError
from droidops.schemas import (
    OpenUrlStep,
    SleepStep,
    SnapshotStep,
    SnapshotSuiteStep,
    WorkflowDefinition,
    parse_step,
    parse_workflow,
)
from droidops.services.devices import DeviceGateway
from droidops.services.events import EventBus
from droidops.services.snapshots import SnapshotService
from droidops.services.storage import LocalJsonStorage

LOGGER = logging.getLogger("droidops.workflows")

COLLECTION = "workflows"


def _utcnow() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def default_workflows(updated_at: Optional[str] = None) -> Dict[str, WorkflowDefinition]:
    stamp = updated_at or _utcnow()
    smoke = parse_workflow(
        {
            "name": "smoke-web-flow",
            "description": "Open URLs and collect lightweight snapshots.",
            "steps": [
                {"type": "open_url", "url": "https://www.wikipedia.org", "wait_for_ready_ms": 900},
                {"type": "snapshot", "snapshot": "radio"},
                {"type": "open_url", "url": "https://news.ycombinator.com", "wait_for_ready_ms": 900},
                {"type": "snapshot", "snapshot": "display"},
            ],
        },
        updated_at=stamp,
    )
    diagnostic = parse_workflow(
        {
            "name": "diagnostic-suite",
            "description": "Run the complete snapshot suite.",
            "steps": [{"type": "snapshot_suite", "package_name": "com.android.chrome"}],
        },
        updated_at=stamp,
    )
    return {smoke.name: smoke, diagnostic.name: diagnostic}


@dataclass
class ImportResult:
    imported: int
    skipped: int
    total: int
    replace: bool
    names: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _load_entry(key: str, entry: Any) -> Optional[WorkflowDefinition]:
    """Rebuild a stored definition, dropping steps that no longer validate."""
    if not isinstance(entry, dict):
        return None
    steps: List[Any] = []
    for raw_step in entry.get("steps") or []:
        try:
            steps.append(parse_step(raw_step))
        except ValidationError:
            LOGGER.warning("Dropping invalid step from stored workflow %s", key)
    if not steps:
        return None
    name = entry.get("name") if isinstance(entry.get("name"), str) and entry.get("name").strip() else key
    description = entry.get("description") if isinstance(entry.get("description"), str) else None
    updated_at = entry.get("updated_at") if isinstance(entry.get("updated_at"), str) else _utcnow()
    return WorkflowDefinition(name=name.strip(), description=description, updated_at=updated_at, steps=steps)


class WorkflowStore:
    """Named workflow definitions persisted in the ``workflows`` collection."""

    def __init__(self, storage: LocalJsonStorage) -> None:
        self._storage = storage
        self._workflows: Dict[str, WorkflowDefinition] = {}
        self._load()

    def _load(self) -> None:
        loaded: Dict[str, WorkflowDefinition] = {}
        for key, entry in self._storage.load_collection(COLLECTION).items():
            definition = _load_entry(key, entry)
            if definition is None:
                LOGGER.warning("Dropping stored workflow %s with no valid steps", key)
                continue
            loaded[definition.name] = definition
        if not loaded:
            loaded = default_workflows()
            self._workflows = loaded
            self._persist()
            LOGGER.info("Seeded default workflows: %s", ", ".join(sorted(loaded)))
            return
        self._workflows = loaded

    def _persist(self) -> None:
        payload = {name: definition.model_dump() for name, definition in self._workflows.items()}
        self._storage.replace_collection(COLLECTION, payload)

    def get(self, name: str) -> Optional[WorkflowDefinition]:
        return self._workflows.get(name.strip()) if isinstance(name, str) else None

    def require(self, name: str) -> WorkflowDefinition:
        definition = self.get(name)
        if definition is None:
            raise NotFoundError(f"Workflow '{name}' not found", reason="workflow_not_found")
        return definition

    def list(self) -> List[WorkflowDefinition]:
        return [self._workflows[name] for name in sorted(self._workflows)]

    def __len__(self) -> int:
        return len(self._workflows)

    def save(self, payload: Any) -> WorkflowDefinition:
        if isinstance(payload, WorkflowDefinition):
            payload = payload.model_dump()
        definition = parse_workflow(payload, updated_at=_utcnow())
        self._workflows[definition.name] = definition
        self._persist()
        LOGGER.info("Saved workflow %s (%d steps)", definition.name, len(definition.steps))
        return definition

    def delete(self, name: str) -> WorkflowDefinition:
        definition = self.require(name)
        del self._workflows[definition.name]
        self._persist()
        LOGGER.info("Deleted workflow %s", definition.name)
        return definition

    def import_batch(self, payload: Any, *, replace: bool = False) -> ImportResult:
        if isinstance(payload, list):
            entries = payload
        elif isinstance(payload, dict):
            entries = [
                {**value, "name": value.get("name") or key} if isinstance(value, dict) else value
                for key, value in payload.items()
            ]
        else:
            raise ValidationError("workflows must be an array or an object", reason="invalid_workflow")

        stamp = _utcnow()
        incoming: Dict[str, WorkflowDefinition] = {}
        skipped = 0
        for entry in entries:
            try:
                definition = parse_workflow(entry, updated_at=stamp)
            except ValidationError as exc:
                skipped += 1
                LOGGER.warning("Skipping workflow during import: %s", exc.message)
                continue
            incoming[definition.name] = definition

        merged = dict(incoming) if replace else {**self._workflows, **incoming}
        self._workflows = merged
        self._persist()
        LOGGER.info("Imported %d workflows (%d skipped, replace=%s)", len(incoming), skipped, replace)
        return ImportResult(
            imported=len(incoming),
            skipped=skipped,
            total=len(entries),
            replace=replace,
            names=sorted(incoming),
        )

    def export(self) -> Dict[str, Any]:
        return {
            "exported_at": _utcnow(),
            "workflows": {definition.name: definition.model_dump() for definition in self.list()},
        }

    def reset(self) -> None:
        self._workflows = default_workflows()
        self._persist()
        LOGGER.info("Restored default workflows")


@dataclass
class RunContext:
    device_id: Optional[str] = None
    package_name: Optional[str] = None
    include_raw: bool = False


SleepFunc = Callable[[float], Awaitable[Any]]


class WorkflowInterpreter:
    """Execute a stored workflow one step at a time against the device gateway."""

    def __init__(
        self,
        store: WorkflowStore,
        devices: DeviceGateway,
        snapshots: SnapshotService,
        events: EventBus,
        *,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self._store = store
        self._devices = devices
        self._snapshots = snapshots
        self._events = events
        self._sleep = sleep

    async def run(self, name: str, context: Optional[RunContext] = None) -> Dict[str, Any]:
        context = context or RunContext()
        definition = self._store.require(name)
        started = time.monotonic()
        outputs: List[Dict[str, Any]] = []
        for index, step in enumerate(definition.steps):
            step_started = time.monotonic()
            try:
                record = await self._execute(step, context)
            except DroidOpsError as exc:
                self._events.publish(
                    "workflow-failed",
                    f"Workflow {definition.name} failed at step {index + 1}",
                    {
                        "name": definition.name,
                        "index": index,
                        "completed_steps": len(outputs),
                        "error": exc.message,
                    },
                )
                LOGGER.warning("Workflow %s failed at step %d: %s", definition.name, index + 1, exc.message)
                raise
            duration_ms = int((time.monotonic() - step_started) * 1000)
            if step.type != "sleep_ms":
                record["duration_ms"] = duration_ms
            outputs.append(record)
            self._events.publish(
                "workflow-step",
                f"Workflow {definition.name} step {index + 1} {step.type}",
                {"name": definition.name, "index": index, "step": step.type, "duration_ms": record["duration_ms"]},
            )
        return {
            "workflow": {
                "name": definition.name,
                "description": definition.description,
                "updated_at": definition.updated_at,
                "step_count": len(definition.steps),
            },
            "outputs": outputs,
            "duration_ms": int((time.monotonic() - started) * 1000),
        }

    async def _execute(self, step: Any, context: RunContext) -> Dict[str, Any]:
        if isinstance(step, OpenUrlStep):
            opened = await self._devices.open_url(
                step.url,
                context.device_id,
                wait_for_ready_ms=step.wait_for_ready_ms,
                fallback_to_default=True,
            )
            return {"step": "open_url", "url": step.url, "strategy": opened.get("strategy")}
        if isinstance(step, SnapshotStep):
            snapshot = await self._snapshots.capture(
                step.snapshot,
                device_id=context.device_id,
                package_name=step.package_name or context.package_name,
                include_raw=step.include_raw or context.include_raw,
            )
            return {"step": "snapshot", "snapshot_kind": step.snapshot, "snapshot": snapshot}
        if isinstance(step, SnapshotSuiteStep):
            suite = await self._snapshots.capture_suite(
                device_id=context.device_id,
                package_name=step.package_name or context.package_name,
            )
            return {"step": "snapshot_suite", "suite": suite}
        if isinstance(step, SleepStep):
            await self._sleep(step.duration_ms / 1000.0)
            return {"step": "sleep_ms", "duration_ms": step.duration_ms}
        raise ValidationError(f"Unsupported workflow step {step!r}", reason="invalid_workflow_step")
