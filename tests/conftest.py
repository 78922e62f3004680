from __future__ import annotations

import itertools
from typing import Any, Dict, Generator, List, Optional, Set, Tuple

import pytest
from fastapi.testclient import TestClient

from droidops.errors import ProviderError
from droidops.main import app
from droidops.services.adb import DeviceBackend
from droidops.services.orchestrator import Orchestrator, get_orchestrator
from droidops.services.storage import LocalJsonStorage


class StubDeviceBackend(DeviceBackend):
    """Records every call and answers with canned adb-shaped payloads."""

    def __init__(self, devices: Optional[List[Dict[str, Any]]] = None) -> None:
        self.devices = devices or [
            {"id": "emulator-5554", "status": "device", "model": "Pixel_7"},
            {"id": "R58M123", "status": "device", "model": "SM_G991B"},
        ]
        self.calls: List[Tuple[Any, ...]] = []
        self.fail_urls: Set[str] = set()
        self.fail_devices: Set[str] = set()
        self.overrides: Dict[str, Dict[str, Any]] = {}
        self._clock = itertools.count()

    def _resolve(self, device_id: Optional[str]) -> str:
        if device_id in self.fail_devices:
            raise RuntimeError(f"device '{device_id}' offline")
        return device_id or self.devices[0]["id"]

    def list_devices(self) -> List[Dict[str, Any]]:
        self.calls.append(("list_devices",))
        return [dict(item) for item in self.devices]

    def open_url(
        self,
        url: str,
        device_id: Optional[str] = None,
        *,
        wait_for_ready_ms: int = 1000,
        fallback_to_default: bool = True,
    ) -> Dict[str, Any]:
        self.calls.append(("open_url", url, device_id, wait_for_ready_ms))
        target = self._resolve(device_id)
        if url in self.fail_urls:
            raise ProviderError("Error: Activity not started, unable to resolve Intent")
        return {"device_id": target, "url": url, "strategy": "chrome"}

    def capture_snapshot(
        self,
        kind: str,
        device_id: Optional[str] = None,
        *,
        package_name: Optional[str] = None,
        include_dumps: bool = True,
    ) -> Dict[str, Any]:
        self.calls.append(("snapshot", kind, device_id, package_name, include_dumps))
        target = self._resolve(device_id)
        tick = next(self._clock) % 60
        payload: Dict[str, Any] = {
            "kind": kind,
            "device_id": target,
            "captured_at": f"2024-05-01T12:00:{tick:02d}+00:00",
        }
        payload.update(self._canned(kind, package_name, include_dumps))
        payload.update(self.overrides.get(kind, {}))
        return payload

    @staticmethod
    def _canned(kind: str, package_name: Optional[str], include_dumps: bool) -> Dict[str, Any]:
        if kind == "radio":
            data = {
                "wifi_enabled": "1",
                "mobile_data_enabled": "1",
                "airplane_mode": "0",
                "bluetooth_enabled": "0",
                "ip_state": "1: lo: <LOOPBACK,UP>\n2: wlan0: <BROADCAST,UP>",
            }
            if include_dumps:
                data["wifi_dump"] = "Wi-Fi is enabled"
            return data
        if kind == "display":
            return {"wm_size": "1080x2400", "wm_density": "420", "screen_brightness": "128", "user_rotation": "0"}
        if kind == "location":
            return {
                "location_mode": "3",
                "mock_location": None,
                "location_app_ops": f"{package_name}: COARSE_LOCATION: allow" if package_name else None,
            }
        if kind == "power-idle":
            return {"battery": "Current Battery Service state:\n  level: 87\n  status: 2"}
        if kind == "package-inventory":
            return {
                "package_count": 150,
                "third_party_count": 40,
                "system_count": 110,
                "disabled_count": 3,
                "packages": "com.android.chrome\ncom.android.settings",
                "features": "feature:android.hardware.wifi\nfeature:android.hardware.camera" if include_dumps else None,
            }
        raise ProviderError(f"unsupported kind {kind}")

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)


async def _no_sleep(_: float) -> None:
    return None


@pytest.fixture
def backend() -> StubDeviceBackend:
    return StubDeviceBackend()


@pytest.fixture
def storage(tmp_path) -> LocalJsonStorage:
    return LocalJsonStorage(tmp_path / "state.json")


@pytest.fixture
def orchestrator(storage: LocalJsonStorage, backend: StubDeviceBackend) -> Orchestrator:
    return Orchestrator(storage, backend, auto_start=True, sleep=_no_sleep)


@pytest.fixture
def client(orchestrator: Orchestrator) -> Generator[TestClient, None, None]:
    """Provide an isolated TestClient bound to a stubbed orchestrator."""
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
