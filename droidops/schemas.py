from __future__ import annotations

import math
import re
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union, get_args

from pydantic import BaseModel, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError

from droidops.constants import DEFAULT_STRESS_URLS
from droidops.errors import ValidationError

SnapshotKind = Literal["radio", "display", "location", "power-idle", "package-inventory"]
SNAPSHOT_KINDS: List[str] = list(get_args(SnapshotKind))

_HTTP_URL = re.compile(r"^https?://", re.IGNORECASE)


def clamp_int(value: Any, fallback: int, minimum: int, maximum: int) -> int:
    """Truncate a numeric value into ``[minimum, maximum]``; anything else yields ``fallback``."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return fallback
    if isinstance(value, float) and not math.isfinite(value):
        return fallback
    return max(minimum, min(maximum, int(value)))


def _optional_text(value: Any) -> Optional[str]:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None


def _require_http_url(value: Any) -> str:
    if not isinstance(value, str) or not _HTTP_URL.match(value.strip()):
        raise ValueError("url must be a valid http/https URL")
    return value.strip()


def is_snapshot_kind(value: Any) -> bool:
    return isinstance(value, str) and value in SNAPSHOT_KINDS


def _first_error(exc: PydanticValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return str(exc)
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", "invalid value")
    return f"{location}: {message}" if location else message


# -- Jobs -------------------------------------------------------------------------
class JobKind(str, Enum):
    open_url = "open_url"
    snapshot_suite = "snapshot_suite"
    stress_run = "stress_run"
    workflow_run = "workflow_run"
    device_profile = "device_profile"


class JobStatus(str, Enum):
    queued = "queued"
    running = "running"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


TERMINAL_JOB_STATUSES = frozenset({JobStatus.completed, JobStatus.failed, JobStatus.cancelled})


class DeviceTarget(BaseModel):
    device_id: Optional[str] = None

    @field_validator("device_id", mode="before")
    @classmethod
    def normalize_device_id(cls, value: Any) -> Optional[str]:
        return _optional_text(value)


class OpenUrlInput(DeviceTarget):
    url: str
    wait_for_ready_ms: int = 1000

    @field_validator("url", mode="before")
    @classmethod
    def validate_url(cls, value: Any) -> str:
        return _require_http_url(value)

    @field_validator("wait_for_ready_ms", mode="before")
    @classmethod
    def clamp_wait(cls, value: Any) -> int:
        return clamp_int(value, 1000, 200, 10000)


class PackageTarget(DeviceTarget):
    package_name: Optional[str] = None

    @field_validator("package_name", mode="before")
    @classmethod
    def normalize_package(cls, value: Any) -> Optional[str]:
        return _optional_text(value)


class SnapshotSuiteInput(PackageTarget):
    pass


class DeviceProfileInput(PackageTarget):
    pass


class StressRunInput(DeviceTarget):
    urls: List[str] = Field(default_factory=lambda: list(DEFAULT_STRESS_URLS))
    loops: int = 1
    wait_for_ready_ms: int = 1000
    include_snapshot_after_each: bool = True

    @field_validator("urls", mode="before")
    @classmethod
    def filter_urls(cls, value: Any) -> List[str]:
        if not isinstance(value, list):
            return list(DEFAULT_STRESS_URLS)
        urls = [item.strip() for item in value if isinstance(item, str) and _HTTP_URL.match(item.strip())]
        return urls or list(DEFAULT_STRESS_URLS)

    @field_validator("loops", mode="before")
    @classmethod
    def clamp_loops(cls, value: Any) -> int:
        return clamp_int(value, 1, 1, 6)

    @field_validator("wait_for_ready_ms", mode="before")
    @classmethod
    def clamp_wait(cls, value: Any) -> int:
        return clamp_int(value, 1000, 200, 7000)

    @field_validator("include_snapshot_after_each", mode="before")
    @classmethod
    def only_false_disables(cls, value: Any) -> bool:
        return value is not False


class WorkflowRunInput(PackageTarget):
    name: str
    include_raw: bool = False

    @field_validator("name", mode="before")
    @classmethod
    def require_name(cls, value: Any) -> str:
        name = _optional_text(value)
        if not name:
            raise ValueError("name is required")
        return name

    @field_validator("include_raw", mode="before")
    @classmethod
    def only_true_enables(cls, value: Any) -> bool:
        return value is True


JobInput = Union[OpenUrlInput, SnapshotSuiteInput, StressRunInput, WorkflowRunInput, DeviceProfileInput]

JOB_INPUT_MODELS: Dict[JobKind, type] = {
    JobKind.open_url: OpenUrlInput,
    JobKind.snapshot_suite: SnapshotSuiteInput,
    JobKind.stress_run: StressRunInput,
    JobKind.workflow_run: WorkflowRunInput,
    JobKind.device_profile: DeviceProfileInput,
}


def parse_job_kind(value: Any) -> JobKind:
    try:
        return JobKind(value)
    except ValueError as exc:
        allowed = ", ".join(kind.value for kind in JobKind)
        raise ValidationError(f"kind must be one of {allowed}", reason="invalid_job_kind") from exc


def parse_job_input(kind: Any, payload: Any) -> JobInput:
    """Validate a job payload into the input model for its kind."""
    job_kind = parse_job_kind(kind)
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("job input must be an object", reason="invalid_job_input")
    model = JOB_INPUT_MODELS[job_kind]
    try:
        return model.model_validate(payload)
    except PydanticValidationError as exc:
        raise ValidationError(
            f"Invalid {job_kind.value} input: {_first_error(exc)}", reason="invalid_job_input"
        ) from exc


# -- Workflows --------------------------------------------------------------------
class OpenUrlStep(BaseModel):
    type: Literal["open_url"]
    url: str
    wait_for_ready_ms: int = 1000

    @field_validator("url", mode="before")
    @classmethod
    def validate_url(cls, value: Any) -> str:
        return _require_http_url(value)

    @field_validator("wait_for_ready_ms", mode="before")
    @classmethod
    def clamp_wait(cls, value: Any) -> int:
        return clamp_int(value, 1000, 200, 10000)


class SnapshotStep(BaseModel):
    type: Literal["snapshot"]
    snapshot: SnapshotKind
    package_name: Optional[str] = None
    include_raw: bool = False

    @field_validator("package_name", mode="before")
    @classmethod
    def normalize_package(cls, value: Any) -> Optional[str]:
        return _optional_text(value)

    @field_validator("include_raw", mode="before")
    @classmethod
    def only_true_enables(cls, value: Any) -> bool:
        return value is True


class SnapshotSuiteStep(BaseModel):
    type: Literal["snapshot_suite"]
    package_name: Optional[str] = None

    @field_validator("package_name", mode="before")
    @classmethod
    def normalize_package(cls, value: Any) -> Optional[str]:
        return _optional_text(value)


class SleepStep(BaseModel):
    type: Literal["sleep_ms"]
    duration_ms: int = 500

    @field_validator("duration_ms", mode="before")
    @classmethod
    def clamp_duration(cls, value: Any) -> int:
        return clamp_int(value, 500, 50, 30000)


WorkflowStep = Annotated[
    Union[OpenUrlStep, SnapshotStep, SnapshotSuiteStep, SleepStep],
    Field(discriminator="type"),
]

_STEP_ADAPTER: TypeAdapter = TypeAdapter(WorkflowStep)


def parse_step(value: Any) -> Union[OpenUrlStep, SnapshotStep, SnapshotSuiteStep, SleepStep]:
    """Normalize one workflow step; unknown or malformed steps are rejected."""
    if isinstance(value, BaseModel):
        value = value.model_dump()
    if not isinstance(value, dict):
        raise ValidationError("Workflow step must be an object", reason="invalid_workflow_step")
    try:
        return _STEP_ADAPTER.validate_python(value)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid workflow step: {_first_error(exc)}", reason="invalid_workflow_step") from exc


class WorkflowDefinition(BaseModel):
    name: str
    description: Optional[str] = None
    updated_at: str
    steps: List[WorkflowStep]


def parse_workflow(payload: Any, *, updated_at: str) -> WorkflowDefinition:
    """Build a definition from a raw payload, validating every step."""
    if not isinstance(payload, dict):
        raise ValidationError("Workflow must be an object", reason="invalid_workflow")
    name = _optional_text(payload.get("name"))
    if not name:
        raise ValidationError("name is required", reason="invalid_workflow")
    steps_raw = payload.get("steps")
    if not isinstance(steps_raw, list) or not steps_raw:
        raise ValidationError("steps must be a non-empty array", reason="invalid_workflow")
    steps = [parse_step(step) for step in steps_raw]
    return WorkflowDefinition(
        name=name,
        description=_optional_text(payload.get("description")),
        updated_at=updated_at,
        steps=steps,
    )


# -- Events -----------------------------------------------------------------------
class Event(BaseModel):
    id: int
    at: str
    type: str
    message: str
    data: Optional[Any] = None


# -- Requests ---------------------------------------------------------------------
class JobCreate(BaseModel):
    kind: str
    input: Dict[str, Any] = Field(default_factory=dict)


class JobBulkCreate(BaseModel):
    jobs: List[Any] = Field(default_factory=list)


class WorkflowSave(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    steps: List[Any] = Field(default_factory=list)


class WorkflowImport(BaseModel):
    workflows: Any = None
    replace: bool = False


class SnapshotRequest(PackageTarget):
    include_raw: bool = False


class SnapshotDiffRequest(PackageTarget):
    kind: str


class DeviceProfilesRequest(BaseModel):
    device_ids: List[str] = Field(default_factory=list)
    package_name: Optional[str] = None

    @field_validator("device_ids", mode="before")
    @classmethod
    def drop_blank_ids(cls, value: Any) -> List[str]:
        if not isinstance(value, list):
            return []
        return [item.strip() for item in value if isinstance(item, str) and item.strip()]


class SessionReset(BaseModel):
    keep_workflows: bool = True


class ConfigUpdate(BaseModel):
    adb_path: Optional[str] = None
    adb_timeout_seconds: Optional[int] = Field(default=None, ge=1, le=600)
    event_history_limit: Optional[int] = Field(default=None, ge=10, le=10000)
    job_history_limit: Optional[int] = Field(default=None, ge=10, le=10000)
    heartbeat_seconds: Optional[int] = Field(default=None, ge=1, le=300)
    display_timezone: Optional[Literal["utc", "local"]] = None

    @field_validator("adb_path")
    @classmethod
    def validate_adb_path(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            raise ValueError("adb path cannot be blank.")
        return value.strip() if value is not None else None
