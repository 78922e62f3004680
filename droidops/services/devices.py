from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional, TypeVar

from fastapi.concurrency import run_in_threadpool

from droidops.errors import DroidOpsError, ProviderError
from droidops.services.adb import DeviceBackend
from droidops.services.metrics import MetricsRecorder

LOGGER = logging.getLogger("droidops.devices")

T = TypeVar("T")


class DeviceGateway:
    """Async front for a blocking :class:`DeviceBackend`.

    Calls run in a worker thread so the event loop keeps serving requests, but
    a single lock guarantees two device actions never overlap. Each call is
    recorded as a ``device.*`` metric and any backend failure surfaces as a
    :class:`ProviderError` carrying the backend's message.
    """

    def __init__(self, backend: DeviceBackend, metrics: MetricsRecorder) -> None:
        self._backend = backend
        self._metrics = metrics
        self._lock = asyncio.Lock()

    @property
    def backend(self) -> DeviceBackend:
        return self._backend

    async def _call(self, action: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        async with self._lock:
            started = time.monotonic()
            try:
                result = await run_in_threadpool(func, *args, **kwargs)
            except DroidOpsError as exc:
                self._metrics.record(action, (time.monotonic() - started) * 1000.0, False, exc.message)
                raise
            except Exception as exc:  # noqa: BLE001 - every backend failure is a provider failure
                message = str(exc) or exc.__class__.__name__
                LOGGER.debug("%s failed in backend: %s", action, message)
                self._metrics.record(action, (time.monotonic() - started) * 1000.0, False, message)
                raise ProviderError(message) from exc
            self._metrics.record(action, (time.monotonic() - started) * 1000.0, True)
            return result

    async def list_devices(self) -> List[Dict[str, Any]]:
        return await self._call("device.list_devices", self._backend.list_devices)

    async def open_url(
        self,
        url: str,
        device_id: Optional[str] = None,
        *,
        wait_for_ready_ms: int = 1000,
        fallback_to_default: bool = True,
    ) -> Dict[str, Any]:
        return await self._call(
            "device.open_url",
            self._backend.open_url,
            url,
            device_id,
            wait_for_ready_ms=wait_for_ready_ms,
            fallback_to_default=fallback_to_default,
        )

    async def capture_snapshot(
        self,
        kind: str,
        device_id: Optional[str] = None,
        *,
        package_name: Optional[str] = None,
        include_dumps: bool = True,
    ) -> Dict[str, Any]:
        return await self._call(
            f"device.snapshot.{kind}",
            self._backend.capture_snapshot,
            kind,
            device_id,
            package_name=package_name,
            include_dumps=include_dumps,
        )
