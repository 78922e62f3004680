"""Per-action counters for API routes and device calls."""

from __future__ import annotations

import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional


def _utcnow() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


@dataclass
class MetricEntry:
    name: str
    count: int = 0
    success: int = 0
    errors: int = 0
    total_duration_ms: float = 0.0
    last_duration_ms: float = 0.0
    last_error: Optional[str] = None
    last_at: Optional[str] = None

    @property
    def avg_duration_ms(self) -> float:
        if self.count == 0:
            return 0.0
        return round(self.total_duration_ms / self.count, 2)

    @property
    def success_rate(self) -> float:
        if self.count == 0:
            return 0.0
        return round(self.success / self.count * 100.0, 2)

    def as_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["avg_duration_ms"] = self.avg_duration_ms
        payload["success_rate"] = self.success_rate
        return payload


class MetricsRecorder:
    def __init__(self) -> None:
        self._entries: Dict[str, MetricEntry] = {}
        self._started = time.monotonic()

    def record(self, name: str, duration_ms: float, ok: bool, error: Optional[str] = None) -> MetricEntry:
        entry = self._entries.get(name)
        if entry is None:
            entry = MetricEntry(name=name)
            self._entries[name] = entry
        entry.count += 1
        entry.total_duration_ms += duration_ms
        entry.last_duration_ms = duration_ms
        entry.last_at = _utcnow()
        if ok:
            entry.success += 1
        else:
            entry.errors += 1
            entry.last_error = error
        return entry

    @contextmanager
    def measure(self, name: str) -> Iterator[None]:
        """Time the enclosed block and record it once; exceptions still propagate."""
        started = time.monotonic()
        try:
            yield
        except Exception as exc:
            self.record(name, (time.monotonic() - started) * 1000.0, False, str(exc))
            raise
        self.record(name, (time.monotonic() - started) * 1000.0, True)

    def get(self, name: str) -> Optional[MetricEntry]:
        return self._entries.get(name)

    def snapshot(self) -> List[Dict[str, Any]]:
        ordered = sorted(self._entries.values(), key=lambda entry: (-entry.count, entry.name))
        return [entry.as_dict() for entry in ordered]

    def summary(self) -> Dict[str, Any]:
        entries = self.snapshot()
        return {
            "generated_at": _utcnow(),
            "uptime_ms": int((time.monotonic() - self._started) * 1000),
            "total_actions": sum(item["count"] for item in entries),
            "errors": sum(item["errors"] for item in entries),
            "entries": entries,
        }

    def clear(self) -> None:
        self._entries.clear()
