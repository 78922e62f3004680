from __future__ import annotations

import logging
import shlex
import subprocess
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from droidops.errors import ProviderError, ValidationError

LOGGER = logging.getLogger("droidops.adb")

CHROME_COMPONENT = "com.android.chrome/com.google.android.apps.chrome.Main"
VIEW_ACTION = "android.intent.action.VIEW"
DUMP_LINE_LIMIT = 200
BATTERY_STATS_LINES = 450
PACKAGE_LIST_LINES = 1200


def _utcnow() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def _head(text: str, lines: int) -> str:
    return "\n".join(text.splitlines()[:lines])


def _after_colon(text: str) -> Optional[str]:
    line = text.strip().splitlines()[-1] if text.strip() else ""
    if ":" in line:
        return line.split(":", 1)[1].strip() or None
    return line.strip() or None


def parse_device_list(output: str) -> List[Dict[str, Any]]:
    """Parse ``adb devices -l`` output, skipping the header line."""
    devices: List[Dict[str, Any]] = []
    prefixes = {
        "model:": "model",
        "product:": "product",
        "device:": "device",
        "transport_id:": "transport_id",
        "usb:": "usb",
    }
    for line in output.strip().splitlines()[1:]:
        parts = line.split()
        if len(parts) < 2:
            continue
        device: Dict[str, Any] = {"id": parts[0], "status": parts[1]}
        for part in parts[2:]:
            for prefix, key in prefixes.items():
                if part.startswith(prefix):
                    device[key] = part[len(prefix):]
                    break
        devices.append(device)
    return devices


class DeviceBackend:
    """Device operations the orchestration core depends on."""

    def list_devices(self) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def open_url(
        self,
        url: str,
        device_id: Optional[str] = None,
        *,
        wait_for_ready_ms: int = 1000,
        fallback_to_default: bool = True,
    ) -> Dict[str, Any]:
        raise NotImplementedError

    def capture_snapshot(
        self,
        kind: str,
        device_id: Optional[str] = None,
        *,
        package_name: Optional[str] = None,
        include_dumps: bool = True,
    ) -> Dict[str, Any]:
        raise NotImplementedError


class AdbDeviceBackend(DeviceBackend):
    """Drive devices through the ``adb`` command-line bridge."""

    def __init__(
        self,
        adb_path: str = "adb",
        timeout: int = 20,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._adb_path = adb_path
        self._timeout = timeout
        self._sleep = sleep
        self._capturers: Dict[str, Callable[..., Dict[str, Any]]] = {
            "radio": self._capture_radio,
            "display": self._capture_display,
            "location": self._capture_location,
            "power-idle": self._capture_power_idle,
            "package-inventory": self._capture_package_inventory,
        }

    @property
    def timeout(self) -> int:
        return self._timeout

    @property
    def adb_path(self) -> str:
        return self._adb_path

    def configure(self, *, adb_path: Optional[str] = None, timeout: Optional[int] = None) -> None:
        if adb_path is not None:
            self._adb_path = adb_path
        if timeout is not None:
            self._timeout = timeout

    def _run(self, args: List[str], *, device_id: Optional[str] = None) -> str:
        command = [self._adb_path]
        if device_id:
            command.extend(["-s", device_id])
        command.extend(args)
        LOGGER.debug("Running %s", " ".join(command))
        try:
            proc = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=self._timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            raise ProviderError(f"adb executable not found: {self._adb_path}", reason="adb_not_found") from exc
        except subprocess.TimeoutExpired as exc:
            raise ProviderError(
                f"adb command timed out after {self._timeout}s: {' '.join(args)}", reason="adb_timeout"
            ) from exc
        if proc.returncode != 0:
            # Some adb subcommands exit 1 while still printing usable output.
            if proc.returncode == 1 and proc.stdout:
                return proc.stdout
            raise ProviderError(
                (proc.stderr or "").strip() or (proc.stdout or "").strip() or f"adb exited with {proc.returncode}"
            )
        return proc.stdout or ""

    def _shell(self, device_id: str, *args: str) -> str:
        return self._run(["shell", *args], device_id=device_id)

    def _setting(self, device_id: str, namespace: str, key: str) -> Optional[str]:
        value = self._shell(device_id, "settings", "get", namespace, key).strip()
        return None if value in ("", "null") else value

    def _count_packages(self, device_id: str, *flags: str) -> int:
        output = self._shell(device_id, "pm", "list", "packages", *flags)
        return sum(1 for line in output.splitlines() if line.startswith("package:"))

    def list_devices(self) -> List[Dict[str, Any]]:
        return parse_device_list(self._run(["devices", "-l"]))

    def resolve_device_id(self, device_id: Optional[str] = None) -> str:
        devices = self.list_devices()
        if device_id:
            match = next((item for item in devices if item["id"] == device_id), None)
            if match is None:
                raise ProviderError(f"Device '{device_id}' not found", reason="device_not_found")
            if match["status"] != "device":
                raise ProviderError(
                    f"Device '{device_id}' is not available (status: {match['status']})",
                    reason="device_not_available",
                )
            return device_id
        available = next((item for item in devices if item["status"] == "device"), None)
        if available is None:
            raise ProviderError("No available devices found", reason="no_devices")
        return available["id"]

    def open_url(
        self,
        url: str,
        device_id: Optional[str] = None,
        *,
        wait_for_ready_ms: int = 1000,
        fallback_to_default: bool = True,
    ) -> Dict[str, Any]:
        target = self.resolve_device_id(device_id)
        quoted = shlex.quote(url)
        strategy = "chrome"
        output = self._shell(target, "am", "start", "-a", VIEW_ACTION, "-d", quoted, "-n", CHROME_COMPONENT)
        if "Error" in output:
            if not fallback_to_default:
                raise ProviderError(output.strip())
            LOGGER.info("Chrome unavailable on %s, falling back to default browser", target)
            strategy = "default"
            output = self._shell(target, "am", "start", "-a", VIEW_ACTION, "-d", quoted)
            if "Error" in output:
                raise ProviderError(output.strip())
        if wait_for_ready_ms > 0:
            self._sleep(wait_for_ready_ms / 1000.0)
        return {"device_id": target, "url": url, "strategy": strategy}

    def capture_snapshot(
        self,
        kind: str,
        device_id: Optional[str] = None,
        *,
        package_name: Optional[str] = None,
        include_dumps: bool = True,
    ) -> Dict[str, Any]:
        capturer = self._capturers.get(kind)
        if capturer is None:
            raise ValidationError(f"Unknown snapshot kind '{kind}'", reason="invalid_snapshot_kind")
        target = self.resolve_device_id(device_id)
        payload: Dict[str, Any] = {"kind": kind, "device_id": target, "captured_at": _utcnow()}
        payload.update(capturer(target, package_name=package_name, include_dumps=include_dumps))
        return payload

    def _capture_radio(self, device_id: str, *, package_name: Optional[str], include_dumps: bool) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "wifi_enabled": self._setting(device_id, "global", "wifi_on"),
            "mobile_data_enabled": self._setting(device_id, "global", "mobile_data"),
            "airplane_mode": self._setting(device_id, "global", "airplane_mode_on"),
            "bluetooth_enabled": self._setting(device_id, "global", "bluetooth_on"),
            "ip_state": self._shell(device_id, "ip", "addr"),
        }
        if include_dumps:
            data["wifi_dump"] = _head(self._shell(device_id, "dumpsys", "wifi"), DUMP_LINE_LIMIT)
            data["connectivity_dump"] = _head(self._shell(device_id, "dumpsys", "connectivity"), DUMP_LINE_LIMIT)
        return data

    def _capture_display(self, device_id: str, *, package_name: Optional[str], include_dumps: bool) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "wm_size": _after_colon(self._shell(device_id, "wm", "size")),
            "wm_density": _after_colon(self._shell(device_id, "wm", "density")),
            "screen_brightness": self._setting(device_id, "system", "screen_brightness"),
            "user_rotation": self._setting(device_id, "system", "user_rotation"),
        }
        if include_dumps:
            data["display_dump"] = _head(self._shell(device_id, "dumpsys", "display"), DUMP_LINE_LIMIT)
            data["window_dump"] = _head(self._shell(device_id, "dumpsys", "window", "displays"), DUMP_LINE_LIMIT)
        return data

    def _capture_location(self, device_id: str, *, package_name: Optional[str], include_dumps: bool) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "location_mode": self._setting(device_id, "secure", "location_mode"),
            "mock_location": self._setting(device_id, "secure", "mock_location"),
            "location_app_ops": None,
        }
        if package_name:
            data["location_app_ops"] = self._shell(device_id, "appops", "get", package_name)
        if include_dumps:
            data["location_dump"] = _head(self._shell(device_id, "dumpsys", "location"), DUMP_LINE_LIMIT)
        return data

    def _capture_power_idle(self, device_id: str, *, package_name: Optional[str], include_dumps: bool) -> Dict[str, Any]:
        data: Dict[str, Any] = {"battery": self._shell(device_id, "dumpsys", "battery")}
        if include_dumps:
            data["device_idle"] = _head(self._shell(device_id, "dumpsys", "deviceidle"), DUMP_LINE_LIMIT)
            data["battery_stats"] = _head(self._shell(device_id, "dumpsys", "batterystats"), BATTERY_STATS_LINES)
            data["thermal"] = _head(self._shell(device_id, "dumpsys", "thermalservice"), DUMP_LINE_LIMIT)
        return data

    def _capture_package_inventory(
        self, device_id: str, *, package_name: Optional[str], include_dumps: bool
    ) -> Dict[str, Any]:
        listing = self._shell(device_id, "pm", "list", "packages")
        packages = [line[len("package:"):] for line in listing.splitlines() if line.startswith("package:")]
        data: Dict[str, Any] = {
            "package_count": len(packages),
            "third_party_count": self._count_packages(device_id, "-3"),
            "system_count": self._count_packages(device_id, "-s"),
            "disabled_count": self._count_packages(device_id, "-d"),
            "packages": "\n".join(packages[:PACKAGE_LIST_LINES]),
            "features": None,
        }
        if include_dumps:
            data["features"] = self._shell(device_id, "pm", "list", "features")
        return data
