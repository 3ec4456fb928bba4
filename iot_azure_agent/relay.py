"""Bridges cloud commands and twin properties to the device, and back."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

from .adapters import (
    MethodHandler,
    MethodRequest,
    MethodResponse,
    MQTTConnectionError,
    TwinRequestError,
)
from .core import CleanupStack, MethodResult, Subscription, changes_only
from .device import DeviceInterface

LOGGER = logging.getLogger(__name__)

METHOD_EMERGENCY_STOP = "EmergencyStop"
METHOD_RESET_ERROR_STATUS = "ResetErrorStatus"
METHOD_MAINTENANCE_DONE = "MaintenanceDone"


class CloudClient(Protocol):
    def send_message(self, message: Dict[str, Any]) -> None: ...

    async def get_twin(self) -> Dict[str, Any]: ...

    async def patch_reported(self, patch: Dict[str, Any]) -> None: ...

    def add_desired_handler(self, handler: Callable[[Dict[str, Any]], Any]) -> None: ...

    def remove_desired_handler(self, handler: Callable[[Dict[str, Any]], Any]) -> None: ...

    def register_method(self, name: str, handler: MethodHandler) -> None: ...

    def unregister_method(self, name: str) -> None: ...


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def isoformat_utc(moment: datetime) -> str:
    """Render ``moment`` as ISO-8601 UTC with millisecond precision and a ``Z``."""

    return (
        moment.astimezone(timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


def method_response(result: MethodResult) -> MethodResponse:
    if result.ok:
        return MethodResponse.success({"status": 0})
    return MethodResponse.failure({"status": result.status_code, "message": result.text})


class CloudCommandRelay:
    """Routes direct methods and desired properties to the device.

    In the other direction it reports DeviceError and ProductionRate changes
    as reported twin properties, and DeviceError changes as events.
    """

    def __init__(
        self,
        client: CloudClient,
        device: DeviceInterface,
        *,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._client = client
        self._device = device
        self._clock = clock
        self._subscriptions: list[Subscription] = []
        self._tasks: set[asyncio.Task[None]] = set()
        self._methods: Dict[str, MethodHandler] = {
            METHOD_EMERGENCY_STOP: self._handle_emergency_stop,
            METHOD_RESET_ERROR_STATUS: self._handle_reset_error_status,
            METHOD_MAINTENANCE_DONE: self._handle_maintenance_done,
        }
        self._started = False

    async def start(
        self,
        cleanup: Optional[CleanupStack] = None,
        *,
        apply_initial_twin: bool = True,
    ) -> None:
        if self._started:
            return
        self._started = True
        if cleanup is not None:
            cleanup.register(self.stop, name="cloud command relay")

        for name, handler in self._methods.items():
            self._client.register_method(name, handler)
        self._client.add_desired_handler(self._on_desired)

        if apply_initial_twin:
            await self._apply_initial_twin()

        state = self._device.state
        self._subscriptions.append(
            changes_only(state.map(lambda s: s["DeviceError"]), name="DeviceError").subscribe(
                self._on_device_error
            )
        )
        self._subscriptions.append(
            changes_only(
                state.map(lambda s: s["ProductionRate"]), name="ProductionRate"
            ).subscribe(self._on_production_rate)
        )
        LOGGER.info("Cloud command relay active for %s", self._device.name)

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions.clear()

        for name in self._methods:
            self._client.unregister_method(name)
        self._client.remove_desired_handler(self._on_desired)

        tasks = list(self._tasks)
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def wait_idle(self) -> None:
        """Wait until every reported-property update started so far is done."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Twin driven
    # ------------------------------------------------------------------
    async def _apply_initial_twin(self) -> None:
        try:
            twin = await self._client.get_twin()
        except TwinRequestError as exc:
            LOGGER.warning("Could not read the device twin: %s", exc)
            return
        desired = twin.get("desired") or {}
        if "ProductionRate" in desired:
            await self._apply_production_rate(desired["ProductionRate"])

    async def _on_desired(self, patch: Dict[str, Any]) -> None:
        if "ProductionRate" in patch:
            await self._apply_production_rate(patch["ProductionRate"])

    async def _apply_production_rate(self, rate: Any) -> None:
        if rate is None:
            return
        LOGGER.info("Applying desired ProductionRate %s", rate)
        result = await self._device.set_production_rate(rate)
        if not result.ok:
            LOGGER.error("Setting ProductionRate to %s failed: %s", rate, result.text)

    # ------------------------------------------------------------------
    # Device driven
    # ------------------------------------------------------------------
    def _on_device_error(self, error: Any) -> None:
        LOGGER.info("DeviceError of %s is now %s", self._device.name, error)
        try:
            self._client.send_message({"type": "error", "DeviceError": error})
        except Exception as exc:
            LOGGER.error("Sending DeviceError event failed: %s", exc)
        self._spawn(
            self._report({"Error": error, "LastErrorDate": isoformat_utc(self._clock())})
        )

    def _on_production_rate(self, rate: Any) -> None:
        self._spawn(self._report({"ProductionRate": rate}))

    async def _report(self, patch: Dict[str, Any]) -> None:
        try:
            await self._client.patch_reported(patch)
        except (TwinRequestError, MQTTConnectionError) as exc:
            LOGGER.error("Updating reported properties %s failed: %s", list(patch), exc)

    def _spawn(self, coroutine: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coroutine)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ------------------------------------------------------------------
    # Direct methods
    # ------------------------------------------------------------------
    async def _handle_emergency_stop(self, request: MethodRequest) -> MethodResponse:
        return method_response(await self._device.emergency_stop())

    async def _handle_reset_error_status(self, request: MethodRequest) -> MethodResponse:
        return method_response(await self._device.reset_error_status())

    async def _handle_maintenance_done(self, request: MethodRequest) -> MethodResponse:
        # Acknowledged even when the report cannot be written.
        await self._report({"LastMaintenanceDate": isoformat_utc(self._clock())})
        return MethodResponse.success({"status": 0})
