"""Periodic telemetry forwarding from the device state to IoT Hub."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Callable, Dict, Optional, Protocol

from .core import CleanupStack, LiveStream, Subscription, TelemetrySnapshot

LOGGER = logging.getLogger(__name__)


class MessageSink(Protocol):
    def send_message(self, message: Dict[str, Any]) -> None: ...


class TelemetryForwarder:
    """Samples the latest device state and publishes it on a fixed cadence.

    Incoming states overwrite a single slot; nothing is queued between ticks,
    so a slow link only ever sends the most recent reading.
    """

    def __init__(
        self,
        client: MessageSink,
        device_name: str,
        state: LiveStream[Dict[str, Any]],
        *,
        send_interval: float,
        on_publish: Optional[Callable[[bool, Optional[str]], None]] = None,
    ) -> None:
        if send_interval <= 0:
            raise ValueError("send_interval must be positive")
        self._client = client
        self._device_name = device_name
        self._state = state
        self.send_interval = send_interval
        self._on_publish = on_publish

        self._latest: Optional[Dict[str, Any]] = None
        self._subscription: Optional[Subscription] = None
        self._stop_event = asyncio.Event()
        self._worker: Optional[asyncio.Task[None]] = None
        self.sent_count = 0

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def start(self, cleanup: Optional[CleanupStack] = None) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._subscription = self._state.subscribe(self._store)
        self._worker = asyncio.create_task(self._run())
        if cleanup is not None:
            cleanup.register(self.stop, name="telemetry forwarder")
        LOGGER.info(
            "Forwarding telemetry for %s every %.3gs", self._device_name, self.send_interval
        )

    async def stop(self) -> None:
        self._stop_event.set()
        subscription = self._subscription
        self._subscription = None
        if subscription is not None:
            subscription.unsubscribe()

        worker = self._worker
        self._worker = None
        if worker is not None and not worker.done():
            worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await worker

    def _store(self, state: Dict[str, Any]) -> None:
        self._latest = state

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self.send_interval
                )
                break
            except asyncio.TimeoutError:
                pass
            self.send_once()

    def send_once(self) -> bool:
        """Publish the current slot; return whether a message was handed off."""

        latest = self._latest
        if latest is None:
            LOGGER.warning("No device state received yet; skipping telemetry cycle")
            return False

        message = TelemetrySnapshot.from_state(latest, name=self._device_name).as_message()
        try:
            self._client.send_message(message)
        except Exception as exc:
            LOGGER.error("Publishing telemetry failed: %s", exc)
            self._report(False, str(exc))
            return False

        self.sent_count += 1
        LOGGER.debug("Telemetry sent: %s", message)
        self._report(True, None)
        return True

    def _report(self, healthy: bool, detail: Optional[str]) -> None:
        if self._on_publish is not None:
            self._on_publish(healthy, detail)
