from __future__ import annotations

import asyncio

import pytest

from droidops.schemas import parse_job_input
from droidops.services.devices import DeviceGateway
from droidops.services.metrics import MetricsRecorder
from droidops.services.scenarios import ScenarioRunner, compute_health_score


@pytest.fixture
def metrics() -> MetricsRecorder:
    return MetricsRecorder()


@pytest.fixture
def runner(backend, metrics: MetricsRecorder) -> ScenarioRunner:
    return ScenarioRunner(DeviceGateway(backend, metrics))


@pytest.mark.unit
def test_stress_run_walks_loops_times_urls(runner: ScenarioRunner, backend, metrics: MetricsRecorder) -> None:
    params = parse_job_input(
        "stress_run",
        {"urls": ["https://a.example.com", "https://b.example.com"], "loops": 2, "wait_for_ready_ms": 300},
    )
    result = asyncio.run(runner.run_stress(params))

    assert result["total_steps"] == 4
    assert [(step["loop"], step["url"]) for step in result["steps"]] == [
        (1, "https://a.example.com"),
        (1, "https://b.example.com"),
        (2, "https://a.example.com"),
        (2, "https://b.example.com"),
    ]
    assert result["steps"][0]["snapshot"]["display"]["wm_size"] == "1080x2400"
    light = [call for call in backend.calls if call[0] == "snapshot"]
    assert {call[1] for call in light} == {"radio", "display"}
    assert all(call[4] is False for call in light)
    assert metrics.get("device.open_url").count == 4
    assert metrics.get("device.snapshot.radio").count == 4


@pytest.mark.unit
def test_stress_run_can_skip_snapshots(runner: ScenarioRunner, backend) -> None:
    params = parse_job_input("stress_run", {"include_snapshot_after_each": False})
    result = asyncio.run(runner.run_stress(params))
    assert result["total_steps"] == 3
    assert "snapshot" not in result["steps"][0]
    assert backend.count("snapshot") == 0


@pytest.mark.unit
@pytest.mark.parametrize(
    "profile,expected",
    [
        ({}, 100),
        ({"radio": {"airplane_mode": "1"}}, 75),
        ({"radio": {"airplane_mode": "1"}, "location": {"mode": "0"}}, 55),
        ({"radio": {"airplane_mode": "1"}, "location": {"mode": "0"}, "packages": {"disabled": 21}}, 45),
        ({"packages": {"disabled": 20}}, 100),
    ],
)
def test_health_score(profile, expected) -> None:
    assert compute_health_score(profile) == expected


@pytest.mark.unit
def test_profile_condenses_light_snapshots(runner: ScenarioRunner, backend) -> None:
    backend.overrides["package-inventory"] = {"disabled_count": 42}
    profile = asyncio.run(runner.build_profile("emulator-5554", "com.android.chrome"))

    assert profile["device_id"] == "emulator-5554"
    assert profile["packages"] == {"total": 150, "third_party": 40, "system": 110, "disabled": 42}
    assert profile["display"]["rotation"] == "0"
    assert profile["location"]["app_ops"]["preview"].startswith("com.android.chrome")
    assert profile["health_score"] == 90


@pytest.mark.unit
def test_profiles_keep_going_when_one_device_fails(runner: ScenarioRunner, backend) -> None:
    backend.fail_devices.add("R58M123")
    result = asyncio.run(runner.build_profiles())

    assert result["count"] == 2
    first, second = result["profiles"]
    assert first["ok"] is True and first["device_id"] == "emulator-5554"
    assert second == {"ok": False, "device_id": "R58M123", "error": "device 'R58M123' offline"}
