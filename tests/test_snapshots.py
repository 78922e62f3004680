from __future__ import annotations

import asyncio

import pytest

from droidops.errors import ValidationError
from droidops.services.devices import DeviceGateway
from droidops.services.metrics import MetricsRecorder
from droidops.services.snapshots import SnapshotService, diff_snapshots, summarize_shape, summarize_snapshot


@pytest.fixture
def service(backend) -> SnapshotService:
    return SnapshotService(DeviceGateway(backend, MetricsRecorder()))


@pytest.mark.unit
def test_diff_without_previous_reports_nothing_changed() -> None:
    result = diff_snapshots(None, {"wifi_enabled": "1"})
    assert result == {"changed_count": 0, "changed": [], "had_previous": False, "note": "no previous snapshot"}


@pytest.mark.unit
def test_diff_compares_strings_by_length_and_other_values_canonically() -> None:
    previous = {
        "captured_at": "2024-05-01T12:00:00+00:00",
        "wm_size": "1080x2400",
        "package_count": 150,
        "flags": {"b": 1, "a": 2},
        "mock_location": None,
        "removed": "x",
    }
    current = {
        "captured_at": "2024-05-01T12:00:59+00:00",
        "wm_size": "720x1280",
        "package_count": 151,
        "flags": {"a": 2, "b": 1},
        "mock_location": None,
        "added": True,
    }
    result = diff_snapshots(previous, current)

    assert result["had_previous"] is True
    changed = {record["key"]: record for record in result["changed"]}
    assert set(changed) == {"wm_size", "package_count", "removed", "added"}
    assert result["changed_count"] == 4
    assert changed["wm_size"]["length_delta"] == -1
    assert changed["package_count"]["change"] == "modified"
    assert changed["removed"]["change"] == "removed"
    assert changed["removed"]["after_type"] == "undefined"
    assert changed["added"]["change"] == "added"
    assert changed["added"]["after_type"] == "boolean"


@pytest.mark.unit
def test_summaries_describe_shape_without_content() -> None:
    shape = summarize_shape({"battery": "a\nb\nc", "level": 87, "ok": True, "items": [1, 2], "meta": {"k": 1}})
    assert shape == {
        "battery": {"length": 5, "lines": 3},
        "level": 87,
        "ok": True,
        "items": {"type": "array", "length": 2},
        "meta": {"type": "object", "keys": 1},
    }

    inventory = summarize_snapshot(
        "package-inventory",
        {"package_count": 3, "third_party_count": 1, "system_count": 2, "disabled_count": 0, "features": "x" * 500},
    )
    assert inventory["package_count"] == 3
    assert inventory["features"]["length"] == 500
    assert len(inventory["features"]["preview"]) == 220


@pytest.mark.unit
def test_repeated_capture_of_unchanged_state_diffs_clean(service: SnapshotService, backend) -> None:
    async def scenario():
        first = await service.capture_diff("radio")
        second = await service.capture_diff("radio")
        return first, second

    first, second = asyncio.run(scenario())
    assert first["had_previous"] is False
    assert first["diff"]["note"] == "no previous snapshot"
    assert second["had_previous"] is True
    assert second["diff"]["changed_count"] == 0
    assert second["current_summary"]["wifi_enabled"] == {"length": 1, "lines": 1}

    backend.overrides["radio"] = {"airplane_mode": "1", "ip_state": "1: lo"}
    third = asyncio.run(service.capture_diff("radio"))
    assert {record["key"] for record in third["diff"]["changed"]} == {"ip_state"}


@pytest.mark.unit
def test_diff_against_cache_does_not_store(service: SnapshotService) -> None:
    assert service.diff("display", {"wm_size": "1"})["had_previous"] is False
    asyncio.run(service.capture("display"))
    cached = service.cache.get("display")
    result = service.diff("display", {**cached, "wm_density": 480})
    assert result["changed_count"] == 1
    assert service.cache.get("display") is cached


@pytest.mark.unit
def test_capture_includes_raw_only_on_request(service: SnapshotService) -> None:
    plain = asyncio.run(service.capture("power-idle"))
    assert "raw" not in plain
    assert plain["summary"]["battery"]["lines"] == 3
    raw = asyncio.run(service.capture("power-idle", include_raw=True))
    assert raw["raw"]["battery"].startswith("Current Battery")

    with pytest.raises(ValidationError) as excinfo:
        asyncio.run(service.capture("camera"))
    assert excinfo.value.reason == "invalid_snapshot_kind"


@pytest.mark.unit
def test_suite_captures_every_kind_with_raw(service: SnapshotService, backend) -> None:
    suite = asyncio.run(service.capture_suite(device_id="R58M123", package_name="com.android.chrome"))
    assert list(suite["snapshots"]) == ["radio", "display", "location", "power_idle", "package_inventory"]
    assert all("raw" in item for item in suite["snapshots"].values())
    assert suite["snapshots"]["location"]["raw"]["location_app_ops"].startswith("com.android.chrome")
    assert sorted(service.cache.kinds()) == sorted(["radio", "display", "location", "power-idle", "package-inventory"])
    assert backend.count("snapshot") == 5
