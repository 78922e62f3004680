from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from droidops.errors import DroidOpsError
from droidops.schemas import StressRunInput
from droidops.services.devices import DeviceGateway
from droidops.services.snapshots import compact_string_summary

LOGGER = logging.getLogger("droidops.scenarios")


def _utcnow() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def compute_health_score(profile: Dict[str, Any]) -> int:
    score = 100
    radio = profile.get("radio") or {}
    location = profile.get("location") or {}
    packages = profile.get("packages") or {}
    if radio.get("airplane_mode") == "1":
        score -= 25
    if location.get("mode") == "0":
        score -= 20
    disabled = packages.get("disabled")
    if isinstance(disabled, int) and not isinstance(disabled, bool) and disabled > 20:
        score -= 10
    return max(0, min(100, score))


class ScenarioRunner:
    """Multi-step device scenarios built on light snapshots.

    Light captures skip the heavy ``dumpsys`` sections and never touch the
    snapshot cache used for diffs.
    """

    def __init__(self, devices: DeviceGateway) -> None:
        self._devices = devices

    async def _light(self, kind: str, device_id: Optional[str], package_name: Optional[str] = None) -> Dict[str, Any]:
        return await self._devices.capture_snapshot(
            kind, device_id, package_name=package_name, include_dumps=False
        )

    async def run_stress(self, params: StressRunInput) -> Dict[str, Any]:
        started = time.monotonic()
        steps: List[Dict[str, Any]] = []
        for loop in range(1, params.loops + 1):
            for url in params.urls:
                open_started = time.monotonic()
                opened = await self._devices.open_url(
                    url,
                    params.device_id,
                    wait_for_ready_ms=params.wait_for_ready_ms,
                    fallback_to_default=True,
                )
                step: Dict[str, Any] = {
                    "kind": "open_url",
                    "loop": loop,
                    "url": url,
                    "strategy": opened.get("strategy"),
                    "device_id": opened.get("device_id"),
                    "duration_ms": _elapsed_ms(open_started),
                }
                if params.include_snapshot_after_each:
                    snap_started = time.monotonic()
                    target = opened.get("device_id") or params.device_id
                    radio = await self._light("radio", target)
                    display = await self._light("display", target)
                    step["snapshot"] = {
                        "duration_ms": _elapsed_ms(snap_started),
                        "radio": {
                            "wifi_enabled": radio.get("wifi_enabled"),
                            "mobile_data_enabled": radio.get("mobile_data_enabled"),
                            "airplane_mode": radio.get("airplane_mode"),
                        },
                        "display": {
                            "wm_size": display.get("wm_size"),
                            "wm_density": display.get("wm_density"),
                            "brightness": display.get("screen_brightness"),
                        },
                    }
                steps.append(step)
        return {
            "scenario": "stress-run",
            "loops": params.loops,
            "wait_for_ready_ms": params.wait_for_ready_ms,
            "include_snapshot_after_each": params.include_snapshot_after_each,
            "urls": list(params.urls),
            "total_steps": len(steps),
            "duration_ms": _elapsed_ms(started),
            "steps": steps,
        }

    async def build_profile(
        self,
        device_id: Optional[str] = None,
        package_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        started = time.monotonic()
        radio = await self._light("radio", device_id)
        target = radio.get("device_id") or device_id
        display = await self._light("display", target)
        location = await self._light("location", target, package_name)
        power = await self._light("power-idle", target)
        packages = await self._light("package-inventory", target)
        profile: Dict[str, Any] = {
            "captured_at": _utcnow(),
            "duration_ms": _elapsed_ms(started),
            "device_id": target,
            "radio": {
                "wifi_enabled": radio.get("wifi_enabled"),
                "mobile_data_enabled": radio.get("mobile_data_enabled"),
                "airplane_mode": radio.get("airplane_mode"),
                "bluetooth_enabled": radio.get("bluetooth_enabled"),
            },
            "display": {
                "wm_size": display.get("wm_size"),
                "wm_density": display.get("wm_density"),
                "brightness": display.get("screen_brightness"),
                "rotation": display.get("user_rotation"),
            },
            "location": {
                "mode": location.get("location_mode"),
                "mock_location": location.get("mock_location"),
                "app_ops": compact_string_summary(location.get("location_app_ops")),
            },
            "power": {"battery": compact_string_summary(power.get("battery"))},
            "packages": {
                "total": packages.get("package_count"),
                "third_party": packages.get("third_party_count"),
                "system": packages.get("system_count"),
                "disabled": packages.get("disabled_count"),
            },
        }
        profile["health_score"] = compute_health_score(profile)
        return profile

    async def build_profiles(
        self,
        device_ids: Sequence[str] = (),
        package_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        started = time.monotonic()
        targets = list(device_ids)
        if not targets:
            devices = await self._devices.list_devices()
            targets = [item["id"] for item in devices if item.get("status") == "device"]
        profiles: List[Dict[str, Any]] = []
        for device_id in targets:
            try:
                profile = await self.build_profile(device_id, package_name)
            except DroidOpsError as exc:
                LOGGER.warning("Profile for %s failed: %s", device_id, exc.message)
                profiles.append({"ok": False, "device_id": device_id, "error": exc.message})
                continue
            profiles.append({"ok": True, "device_id": device_id, "profile": profile})
        return {
            "captured_at": _utcnow(),
            "duration_ms": _elapsed_ms(started),
            "count": len(profiles),
            "profiles": profiles,
        }
