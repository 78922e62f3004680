from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections import OrderedDict, deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Deque, Dict, List, Mapping, Optional, Tuple

from droidops.constants import MAX_BULK_JOBS
from droidops.errors import (
    CapacityError,
    DroidOpsError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from droidops.schemas import TERMINAL_JOB_STATUSES, JobInput, JobKind, JobStatus, parse_job_input, parse_job_kind
from droidops.services.events import EventBus

LOGGER = logging.getLogger("droidops.jobs")

ALLOWED_TRANSITIONS: Dict[JobStatus, frozenset] = {
    JobStatus.queued: frozenset({JobStatus.running, JobStatus.cancelled}),
    JobStatus.running: frozenset({JobStatus.completed, JobStatus.failed}),
}


def _utcnow() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


@dataclass
class Job:
    id: int
    kind: JobKind
    input: JobInput
    created_at: str
    status: JobStatus = JobStatus.queued
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    duration_ms: Optional[int] = None
    result: Optional[Any] = None
    error: Optional[str] = None

    @property
    def device_id(self) -> Optional[str]:
        return getattr(self.input, "device_id", None)

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    def transition(self, target: JobStatus) -> None:
        if target not in ALLOWED_TRANSITIONS.get(self.status, frozenset()):
            raise InvalidTransitionError(self.id, self.status.value, target.value)
        self.status = target

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "status": self.status.value,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_ms": self.duration_ms,
            "device_id": self.device_id,
            "input": self.input.model_dump(),
            "result": self.result,
            "error": self.error,
        }


Executor = Callable[[Job], Awaitable[Any]]
Precheck = Callable[[JobKind, JobInput], None]


class JobQueue:
    """FIFO wait list drained by a single runner task.

    The runner is an ``asyncio.Task`` started on demand by :meth:`submit`; it
    executes one job at a time and exits once the wait list is empty. With
    ``auto_start=False`` nothing runs until :meth:`drain` is awaited.
    """

    def __init__(
        self,
        events: EventBus,
        executors: Mapping[JobKind, Executor],
        *,
        history_limit: int = 300,
        auto_start: bool = True,
        precheck: Optional[Precheck] = None,
    ) -> None:
        self._events = events
        self._executors = dict(executors)
        self._history_limit = history_limit
        self._auto_start = auto_start
        self._precheck = precheck
        self._jobs: "OrderedDict[int, Job]" = OrderedDict()
        self._waiting: Deque[int] = deque()
        self._ids = itertools.count(1)
        self._running: Optional[Job] = None
        self._runner: Optional[asyncio.Task] = None

    # -- Introspection ----------------------------------------------------------------
    @property
    def queue_depth(self) -> int:
        return len(self._waiting)

    @property
    def running_job(self) -> Optional[Job]:
        return self._running

    @property
    def history_limit(self) -> int:
        return self._history_limit

    @property
    def idle(self) -> bool:
        return self._runner is None or self._runner.done()

    def get(self, job_id: int) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found", reason="job_not_found")
        return job

    def list(self) -> List[Job]:
        return list(reversed(self._jobs.values()))

    def counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        for job in self._jobs.values():
            counts[job.status.value] += 1
        return counts

    # -- Submission -------------------------------------------------------------------
    def submit(self, kind: Any, payload: Any) -> Job:
        job_kind = parse_job_kind(kind)
        params = parse_job_input(job_kind, payload)
        if self._precheck is not None:
            self._precheck(job_kind, params)
        return self._enqueue(job_kind, params)

    def submit_bulk(self, items: Any) -> Tuple[List[Job], List[Dict[str, Any]]]:
        if not isinstance(items, list) or not items:
            raise ValidationError("jobs must be a non-empty array")
        if len(items) > MAX_BULK_JOBS:
            raise CapacityError(f"At most {MAX_BULK_JOBS} jobs can be submitted at once")
        created: List[Job] = []
        rejected: List[Dict[str, Any]] = []
        for index, item in enumerate(items):
            if not isinstance(item, dict):
                rejected.append({"index": index, "error": "job must be an object", "reason": "invalid_job_input"})
                continue
            try:
                created.append(self.submit(item.get("kind"), item.get("input")))
            except DroidOpsError as exc:
                rejected.append({"index": index, "error": exc.message, "reason": exc.reason})
        if rejected:
            LOGGER.warning("Bulk submission rejected %d of %d jobs", len(rejected), len(items))
        return created, rejected

    def retry(self, job_id: int) -> Job:
        job = self.get(job_id)
        if not job.terminal:
            raise ValidationError(f"Job {job_id} is {job.status.value}; only finished jobs can be retried",
                                  reason="job_not_retryable")
        if self._precheck is not None:
            self._precheck(job.kind, job.input)
        return self._enqueue(job.kind, job.input.model_copy(deep=True))

    def cancel(self, job_id: int) -> bool:
        job = self.get(job_id)
        if job.status is not JobStatus.queued:
            return False
        job.transition(JobStatus.cancelled)
        job.finished_at = _utcnow()
        try:
            self._waiting.remove(job.id)
        except ValueError:
            pass
        self._events.publish("job-cancelled", f"Job {job.id} cancelled", {"id": job.id, "kind": job.kind.value})
        LOGGER.info("Cancelled job %s (%s)", job.id, job.kind.value)
        self._trim()
        return True

    def _enqueue(self, kind: JobKind, params: JobInput) -> Job:
        if self.queue_depth >= self._history_limit:
            raise CapacityError(f"Job queue is full ({self._history_limit} queued)")
        # Must fail before the job is recorded or announced.
        loop = asyncio.get_running_loop() if self._auto_start else None
        job = Job(id=next(self._ids), kind=kind, input=params, created_at=_utcnow())
        self._jobs[job.id] = job
        self._waiting.append(job.id)
        self._trim()
        self._events.publish(
            "job-queued",
            f"Job {job.id} queued ({kind.value})",
            {"id": job.id, "kind": kind.value, "queue_depth": self.queue_depth},
        )
        if loop is not None:
            self._ensure_runner(loop)
        return job

    def _trim(self) -> None:
        """Evict the oldest finished jobs beyond the history limit."""
        overflow = len(self._jobs) - self._history_limit
        if overflow <= 0:
            return
        evictable = [job_id for job_id, job in self._jobs.items() if job.terminal][:overflow]
        for job_id in evictable:
            del self._jobs[job_id]

    def resize(self, history_limit: int) -> None:
        self._history_limit = history_limit
        self._trim()

    def clear_history(self) -> int:
        """Forget finished jobs; queued and running jobs stay."""
        finished = [job_id for job_id, job in self._jobs.items() if job.terminal]
        for job_id in finished:
            del self._jobs[job_id]
        return len(finished)

    # -- Runner -----------------------------------------------------------------------
    def _ensure_runner(self, loop: asyncio.AbstractEventLoop) -> None:
        if self.idle:
            self._runner = loop.create_task(self._run_loop())

    async def _run_loop(self) -> None:
        while self._waiting:
            job_id = self._waiting.popleft()
            job = self._jobs.get(job_id)
            if job is None or job.status is not JobStatus.queued:
                continue
            await self._execute(job)

    async def _execute(self, job: Job) -> None:
        job.transition(JobStatus.running)
        job.started_at = _utcnow()
        self._running = job
        self._events.publish("job-running", f"Job {job.id} running ({job.kind.value})",
                             {"id": job.id, "kind": job.kind.value})
        started = time.monotonic()
        try:
            result = await self._executors[job.kind](job)
        except asyncio.CancelledError:
            self._finish(job, started, error="Runner shut down before the job finished")
            raise
        except DroidOpsError as exc:
            self._finish(job, started, error=exc.message)
        except Exception as exc:
            LOGGER.exception("Unhandled error while running job %s", job.id)
            self._finish(job, started, error=str(exc) or exc.__class__.__name__)
        else:
            self._finish(job, started, result=result)
        finally:
            self._running = None
            self._trim()

    def _finish(self, job: Job, started: float, *, result: Any = None, error: Optional[str] = None) -> None:
        job.duration_ms = int((time.monotonic() - started) * 1000)
        job.finished_at = _utcnow()
        if error is None:
            job.transition(JobStatus.completed)
            job.result = result
            self._events.publish(
                "job-completed",
                f"Job {job.id} completed in {job.duration_ms}ms",
                {"id": job.id, "kind": job.kind.value, "duration_ms": job.duration_ms},
            )
            LOGGER.info("Job %s (%s) completed in %sms", job.id, job.kind.value, job.duration_ms)
            return
        job.transition(JobStatus.failed)
        job.error = error
        self._events.publish(
            "job-failed",
            f"Job {job.id} failed: {error}",
            {"id": job.id, "kind": job.kind.value, "error": error},
        )
        LOGGER.warning("Job %s (%s) failed: %s", job.id, job.kind.value, error)

    async def drain(self) -> None:
        """Run every waiting job inline; used when ``auto_start`` is off."""
        if not self.idle:
            await self.join()
            return
        await self._run_loop()

    async def join(self) -> None:
        while self._runner is not None and not self._runner.done():
            await asyncio.shield(self._runner)

    async def shutdown(self) -> None:
        runner = self._runner
        if runner is None or runner.done():
            return
        runner.cancel()
        try:
            await runner
        except asyncio.CancelledError:
            pass
        LOGGER.info("Job runner stopped with %d jobs waiting", self.queue_depth)
