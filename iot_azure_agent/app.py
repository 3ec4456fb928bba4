"""Main application entry-point for iot-azure-agent."""

from __future__ import annotations

import asyncio
import logging
import signal
from enum import Enum
from typing import Any, Callable, Optional, Protocol

from . import constants
from .adapters import (
    ConnectionString,
    ConnectionStringError,
    DeviceConnectionError,
    IoTHubDeviceClient,
    MQTTConnectionError,
    OPCUASession,
)
from .config import AgentConfig
from .core import CleanupStack, DeviceSession, Subscription
from .device import DeviceInterface, DeviceInterfaceError
from .health import (
    COMPONENT_IOTHUB,
    COMPONENT_OPCUA,
    COMPONENT_RELAY,
    COMPONENT_TELEMETRY,
    HealthReporter,
    HealthServer,
)
from .logging import configure_logging
from .relay import CloudClient, CloudCommandRelay
from .telemetry import TelemetryForwarder

LOGGER = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1

_STARTUP_ERRORS = (
    DeviceConnectionError,
    DeviceInterfaceError,
    ConnectionStringError,
    MQTTConnectionError,
    OSError,
)


class AgentState(str, Enum):
    STARTING = "starting"
    ACTIVE = "active"
    STOPPING = "stopping"
    FAILED = "failed"


class ConnectableSession(DeviceSession, Protocol):
    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...


class ConnectableCloud(CloudClient, Protocol):
    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    def add_connection_lost_handler(
        self, handler: Callable[[BaseException], None]
    ) -> None: ...

    def add_link_handler(self, handler: Callable[[bool, str], None]) -> None: ...


SessionFactory = Callable[[AgentConfig], ConnectableSession]
CloudFactory = Callable[[AgentConfig], ConnectableCloud]


def default_session_factory(config: AgentConfig) -> OPCUASession:
    return OPCUASession(
        config.opcua.endpoint,
        timeout=config.opcua.request_timeout_seconds,
        initial_delay=config.opcua.connect_initial_delay_seconds,
        max_retry=config.opcua.connect_max_retry,
    )


def default_cloud_factory(config: AgentConfig) -> IoTHubDeviceClient:
    return IoTHubDeviceClient(
        ConnectionString.parse(config.iothub.connection_string),
        sas_ttl_seconds=config.iothub.sas_ttl_seconds,
        request_timeout=config.iothub.twin_timeout_seconds,
    )


class AgentApp:
    """Wires the device, the cloud client and the bridge components together.

    Every resource registers its teardown on a single :class:`CleanupStack`
    as soon as it is acquired. The agent runs until an interrupt arrives or
    the live device state stream ends, then drains the stack and reports an
    exit code.
    """

    def __init__(
        self,
        config: AgentConfig,
        *,
        session_factory: SessionFactory = default_session_factory,
        cloud_factory: CloudFactory = default_cloud_factory,
        install_signal_handlers: bool = True,
    ) -> None:
        self._config = config
        self._session_factory = session_factory
        self._cloud_factory = cloud_factory
        self._install_signals = install_signal_handlers

        self.cleanup = CleanupStack()
        self.health = HealthReporter()
        self.state = AgentState.STARTING
        self.device: Optional[DeviceInterface] = None
        self.forwarder: Optional[TelemetryForwarder] = None
        self.relay: Optional[CloudCommandRelay] = None

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._shutdown_event: Optional[asyncio.Event] = None
        self._startup_task: Optional[asyncio.Task[None]] = None
        self._signals: list[signal.Signals] = []
        self._exit_code = EXIT_OK
        self._stopping = False

    async def run(self) -> int:
        """Run until shutdown and return the process exit code."""

        self._loop = asyncio.get_running_loop()
        self._shutdown_event = asyncio.Event()
        if self._install_signals:
            self._add_signal_handlers()

        LOGGER.info("%s starting (config %s)", constants.APP_NAME, self._config.path)
        try:
            self._startup_task = asyncio.create_task(self._start_services())
            try:
                await self._startup_task
            except asyncio.CancelledError:
                if not self._stopping:
                    raise
                LOGGER.info("Startup interrupted")
            except _STARTUP_ERRORS as exc:
                LOGGER.error("Startup failed: %s", exc)
                self.request_shutdown(EXIT_FAILURE, reason=str(exc), failed=True)
            finally:
                self._startup_task = None

            if not self._stopping:
                self._transition(AgentState.ACTIVE)
                LOGGER.info("Bridge active; awaiting shutdown")
            await self._shutdown_event.wait()
        finally:
            await self.cleanup.run_all()
            self._remove_signal_handlers()

        LOGGER.info("%s stopped with exit code %d", constants.APP_NAME, self._exit_code)
        return self._exit_code

    def request_shutdown(
        self, exit_code: int = EXIT_OK, *, reason: str = "", failed: bool = False
    ) -> None:
        """Start shutting down; only the first request decides the exit code."""

        if self._stopping:
            LOGGER.info("Shutdown already in progress; ignoring %s", reason or "request")
            return
        self._stopping = True
        self._exit_code = exit_code
        self._transition(AgentState.FAILED if failed else AgentState.STOPPING)
        LOGGER.info("Shutting down: %s", reason or "requested")

        startup = self._startup_task
        if startup is not None and not startup.done():
            startup.cancel()
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    @classmethod
    def start(cls, config: AgentConfig) -> int:
        configure_logging(
            config.logging.effective_level,
            log_path=config.logging.path,
            log_network=config.logging.log_network,
        )
        instance = cls(config)
        try:
            return asyncio.run(instance.run())
        except KeyboardInterrupt:
            LOGGER.info("iot-azure-agent interrupted")
            return EXIT_FAILURE

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------
    async def _start_services(self) -> None:
        config = self._config
        cleanup = self.cleanup

        if config.health.enabled:
            server = HealthServer(self.health, config.health.host, config.health.port)
            await server.start()
            cleanup.register(server.stop, name="health server")

        session = self._session_factory(config)
        await session.connect()
        cleanup.register(session.disconnect, name="OPC UA session")
        self.health.update(COMPONENT_OPCUA, True, config.opcua.endpoint)

        device = await DeviceInterface.create(
            session,
            config.opcua.device,
            read_interval_ms=config.opcua.read_interval_ms,
            queue_size=config.opcua.queue_size,
            cleanup=cleanup,
        )
        self.device = device
        watcher = device.state.subscribe(
            _ignore, self._on_state_error, self._on_state_complete
        )
        cleanup.register(_unsubscriber(watcher), name="state watcher")

        # Connection string errors surface from the factory, before any I/O.
        cloud = self._cloud_factory(config)
        await cloud.connect()
        cleanup.register(cloud.disconnect, name="IoT Hub client")
        cloud.add_connection_lost_handler(self._on_cloud_lost)
        cloud.add_link_handler(self._on_cloud_link)
        self.health.update(COMPONENT_IOTHUB, True, "connected")

        forwarder = TelemetryForwarder(
            cloud,
            device.name,
            device.state,
            send_interval=config.send_interval_seconds,
            on_publish=self._on_telemetry_publish,
        )
        await forwarder.start(cleanup)
        self.forwarder = forwarder

        relay = CloudCommandRelay(cloud, device)
        await relay.start(cleanup)
        self.relay = relay
        self.health.update(COMPONENT_RELAY, True, "listening")

    # ------------------------------------------------------------------
    # Runtime callbacks
    # ------------------------------------------------------------------
    def _on_state_error(self, exc: BaseException) -> None:
        self.health.update(COMPONENT_OPCUA, False, str(exc))
        if self._stopping:
            return
        LOGGER.error("Device state stream failed: %s", exc)
        self.request_shutdown(
            EXIT_FAILURE, reason="device state stream failed", failed=True
        )

    def _on_state_complete(self) -> None:
        if self._stopping:
            return
        LOGGER.error("Device state stream completed unexpectedly")
        self.request_shutdown(
            EXIT_FAILURE, reason="device state stream completed", failed=True
        )

    def _on_cloud_lost(self, exc: BaseException) -> None:
        self.health.update(COMPONENT_IOTHUB, False, str(exc))
        self.request_shutdown(
            EXIT_FAILURE, reason="IoT Hub connection lost", failed=True
        )

    def _on_cloud_link(self, up: bool, detail: str) -> None:
        self.health.update(COMPONENT_IOTHUB, up, detail)

    def _on_telemetry_publish(self, healthy: bool, detail: Optional[str]) -> None:
        self.health.update(COMPONENT_TELEMETRY, healthy, detail)

    def _transition(self, state: AgentState) -> None:
        if state == self.state:
            return
        LOGGER.info("Agent state transition %s -> %s", self.state.value, state.value)
        self.state = state
        self.health.set_agent_state(state.value, healthy=state == AgentState.ACTIVE)

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------
    def _add_signal_handlers(self) -> None:
        assert self._loop is not None
        for signum, exit_code in _SIGNAL_EXIT_CODES.items():
            try:
                self._loop.add_signal_handler(signum, self._on_signal, signum, exit_code)
            except (NotImplementedError, RuntimeError):
                LOGGER.debug("Cannot install a handler for %s", signum.name)
                continue
            self._signals.append(signum)

    def _remove_signal_handlers(self) -> None:
        loop = self._loop
        for signum in self._signals:
            if loop is not None and not loop.is_closed():
                loop.remove_signal_handler(signum)
        self._signals.clear()

    def _on_signal(self, signum: signal.Signals, exit_code: int) -> None:
        LOGGER.info("Received %s", signum.name)
        self.request_shutdown(exit_code, reason=signum.name)


# An interactive interrupt ends the agent with a failure status; a service
# manager stop is an orderly exit.
_SIGNAL_EXIT_CODES = {
    signal.SIGINT: EXIT_FAILURE,
    signal.SIGTERM: EXIT_OK,
}


def _ignore(_: Any) -> None:
    pass


def _unsubscriber(subscription: Subscription) -> Callable[[], Any]:
    async def _unsubscribe() -> None:
        subscription.unsubscribe()

    return _unsubscribe
