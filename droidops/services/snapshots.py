from __future__ import annotations

import json
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from droidops.errors import ValidationError
from droidops.schemas import SNAPSHOT_KINDS, is_snapshot_kind
from droidops.services.devices import DeviceGateway

NO_PREVIOUS_NOTE = "no previous snapshot"
NOT_COMPARABLE_NOTE = "no comparable snapshots"
PREVIEW_CHARS = 220

_MISSING = object()


def _utcnow() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def _type_name(value: Any) -> str:
    if value is _MISSING:
        return "undefined"
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str, separators=(",", ":"))


def compact_string_summary(value: Any) -> Dict[str, Any]:
    if not isinstance(value, str):
        return {"type": _type_name(value)}
    return {
        "length": len(value),
        "lines": len(value.split("\n")),
        "preview": value[:PREVIEW_CHARS],
    }


def summarize_shape(payload: Any) -> Dict[str, Any]:
    """Describe each field of a payload without carrying its full content."""
    if not isinstance(payload, dict):
        return {"type": _type_name(payload)}
    summary: Dict[str, Any] = {}
    for key, value in payload.items():
        if isinstance(value, str):
            summary[key] = {"length": len(value), "lines": len(value.split("\n"))}
        elif value is None or isinstance(value, (bool, int, float)):
            summary[key] = value
        elif isinstance(value, (list, tuple)):
            summary[key] = {"type": "array", "length": len(value)}
        elif isinstance(value, dict):
            summary[key] = {"type": "object", "keys": len(value)}
        else:
            summary[key] = {"type": _type_name(value)}
    return summary


def summarize_snapshot(kind: str, raw: Dict[str, Any]) -> Dict[str, Any]:
    if kind == "package-inventory":
        return {
            "package_count": raw.get("package_count"),
            "third_party_count": raw.get("third_party_count"),
            "system_count": raw.get("system_count"),
            "disabled_count": raw.get("disabled_count"),
            "features": compact_string_summary(raw.get("features")),
        }
    return summarize_shape(raw)


def diff_snapshots(previous: Any, current: Any) -> Dict[str, Any]:
    """Field-level diff of two snapshot payloads.

    Strings compare by length only, so volatile text of a stable size (such as
    capture timestamps) does not register as a change. Every other value
    compares by canonical JSON. A key present on one side only is a change.
    """
    if previous is None:
        return {"changed_count": 0, "changed": [], "had_previous": False, "note": NO_PREVIOUS_NOTE}
    if not isinstance(previous, dict) or not isinstance(current, dict):
        return {"changed_count": 0, "changed": [], "had_previous": True, "note": NOT_COMPARABLE_NOTE}

    changed: List[Dict[str, Any]] = []
    for key in dict.fromkeys([*previous.keys(), *current.keys()]):
        before = previous.get(key, _MISSING)
        after = current.get(key, _MISSING)
        record: Dict[str, Any] = {
            "key": key,
            "before_type": _type_name(before),
            "after_type": _type_name(after),
        }
        if before is _MISSING or after is _MISSING:
            record["change"] = "added" if before is _MISSING else "removed"
        elif isinstance(before, str) and isinstance(after, str):
            if len(before) == len(after):
                continue
            record["change"] = "modified"
            record["before_length"] = len(before)
            record["after_length"] = len(after)
            record["length_delta"] = len(after) - len(before)
        else:
            before_json = _canonical(before)
            after_json = _canonical(after)
            if before_json == after_json:
                continue
            record["change"] = "modified"
            record["before_size"] = len(before_json)
            record["after_size"] = len(after_json)
        changed.append(record)

    return {"changed_count": len(changed), "changed": changed, "had_previous": True}


class SnapshotCache:
    """Most recent raw payload per snapshot kind."""

    def __init__(self) -> None:
        self._items: Dict[str, Dict[str, Any]] = {}

    def get(self, kind: str) -> Optional[Dict[str, Any]]:
        return self._items.get(kind)

    def store(self, kind: str, raw: Dict[str, Any]) -> None:
        self._items[kind] = raw

    def kinds(self) -> List[str]:
        return sorted(self._items)

    def clear(self) -> None:
        self._items.clear()


def _require_kind(kind: str) -> str:
    if not is_snapshot_kind(kind):
        allowed = ", ".join(SNAPSHOT_KINDS)
        raise ValidationError(f"kind must be one of {allowed}", reason="invalid_snapshot_kind")
    return kind


class SnapshotService:
    def __init__(self, devices: DeviceGateway, cache: Optional[SnapshotCache] = None) -> None:
        self._devices = devices
        self.cache = cache or SnapshotCache()

    async def _capture_raw(
        self,
        kind: str,
        *,
        device_id: Optional[str],
        package_name: Optional[str],
    ) -> Dict[str, Any]:
        raw = await self._devices.capture_snapshot(kind, device_id, package_name=package_name)
        self.cache.store(kind, raw)
        return raw

    async def capture(
        self,
        kind: str,
        *,
        device_id: Optional[str] = None,
        package_name: Optional[str] = None,
        include_raw: bool = False,
    ) -> Dict[str, Any]:
        _require_kind(kind)
        raw = await self._capture_raw(kind, device_id=device_id, package_name=package_name)
        result: Dict[str, Any] = {
            "kind": kind,
            "device_id": raw.get("device_id"),
            "captured_at": raw.get("captured_at"),
            "summary": summarize_snapshot(kind, raw),
        }
        if include_raw:
            result["raw"] = raw
        return result

    def diff(self, kind: str, snapshot: Dict[str, Any]) -> Dict[str, Any]:
        """Compare ``snapshot`` against the cached value without storing it."""
        _require_kind(kind)
        return diff_snapshots(self.cache.get(kind), snapshot)

    async def capture_diff(
        self,
        kind: str,
        *,
        device_id: Optional[str] = None,
        package_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        _require_kind(kind)
        previous = self.cache.get(kind)
        raw = await self._capture_raw(kind, device_id=device_id, package_name=package_name)
        diff = diff_snapshots(previous, raw)
        return {
            "kind": kind,
            "had_previous": previous is not None,
            "diff": diff,
            "current_summary": summarize_snapshot(kind, raw),
        }

    async def capture_suite(
        self,
        *,
        device_id: Optional[str] = None,
        package_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        started = time.monotonic()
        snapshots: Dict[str, Any] = {}
        for kind in SNAPSHOT_KINDS:
            snapshots[kind.replace("-", "_")] = await self.capture(
                kind, device_id=device_id, package_name=package_name, include_raw=True
            )
        return {
            "captured_at": _utcnow(),
            "duration_ms": int((time.monotonic() - started) * 1000),
            "snapshots": snapshots,
        }
