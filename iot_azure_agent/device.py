"""Device side of the bridge: capability probe, state assembly and commands."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Dict, Iterable, Iterator, Optional, Sequence

from . import constants
from .core import (
    CleanupStack,
    DeviceSession,
    LiveStream,
    MethodResult,
    SubscriptionHandle,
    SubscriptionParameters,
)

LOGGER = logging.getLogger(__name__)

_IDENTIFIER_TAGS = ("s=", "i=", "g=", "b=")


class DeviceInterfaceError(RuntimeError):
    """Raised when a device cannot be bridged."""


class MissingFieldsError(DeviceInterfaceError):
    """Raised when the capability probe finds fields the device lacks."""

    def __init__(self, device_id: str, missing: Iterable[str]) -> None:
        self.device_id = device_id
        self.missing = tuple(missing)
        super().__init__(
            f"Device {device_id} is missing required fields: {', '.join(self.missing)}"
        )


class SubscriptionLostError(DeviceInterfaceError):
    """Raised into the state stream when the device subscription goes bad."""

    def __init__(self, status_code: int, detail: str) -> None:
        self.status_code = status_code
        super().__init__(f"Subscription lost (0x{status_code:08X}): {detail}")


def normalize_device_id(device_id: str) -> str:
    """Strip surrounding whitespace and any trailing path separators."""

    return device_id.strip().rstrip("/")


def device_display_name(device_id: str) -> str:
    """Derive a human readable name from a node id like ``ns=2;s=Device 1``."""

    normalized = normalize_device_id(device_id)
    _, separator, path = normalized.partition(";")
    if not separator:
        path = normalized
    if path[:2] in _IDENTIFIER_TAGS:
        path = path[2:]
    return path


def field_node_id(device_id: str, field: str) -> str:
    return f"{normalize_device_id(device_id)}/{field}"


async def find_missing_fields(
    session: DeviceSession,
    device_id: str,
    fields: Sequence[str] = constants.REQUIRED_FIELDS,
) -> list[str]:
    """Return the required fields whose DisplayName probe did not succeed."""

    node_ids = [field_node_id(device_id, field) for field in fields]
    statuses = await session.read_display_names(node_ids)
    return [field for field, status in zip(fields, statuses) if status != 0]


class DeviceState(Mapping):
    """Current device values keyed by field name.

    The position of each required field is frozen at construction in a
    separate index table; values are only ever addressed by name.
    """

    def __init__(
        self,
        fields: Sequence[str] = constants.REQUIRED_FIELDS,
        value_fields: Sequence[str] = constants.TELEMETRY_FIELDS,
    ) -> None:
        unknown = [name for name in value_fields if name not in fields]
        if unknown:
            raise ValueError(f"Value fields not in field set: {unknown}")
        self._index: Dict[str, int] = {name: idx for idx, name in enumerate(fields)}
        self._fields = tuple(fields)
        self._values: Dict[str, Any] = {name: None for name in value_fields}

    def __getitem__(self, name: str) -> Any:
        return self._values[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    @property
    def fields(self) -> tuple[str, ...]:
        return self._fields

    def index_of(self, name: str) -> int:
        return self._index[name]

    def field_at(self, index: int) -> str:
        return self._fields[index]

    def update(self, name: str, value: Any) -> None:
        if name not in self._values:
            raise KeyError(name)
        self._values[name] = value

    def snapshot(self) -> Dict[str, Any]:
        return dict(self._values)


class DeviceInterface:
    """Live view of one device plus the commands it accepts.

    Use :meth:`create` to obtain an instance; it probes the device, seeds the
    state with an initial read and subscribes to data changes.
    """

    def __init__(
        self,
        session: DeviceSession,
        device_id: str,
        *,
        read_interval_ms: float = constants.DEFAULT_READ_INTERVAL_MS,
        queue_size: int = constants.DEFAULT_QUEUE_SIZE,
    ) -> None:
        self._session = session
        self.device_id = normalize_device_id(device_id)
        self.name = device_display_name(self.device_id)
        self.read_interval_ms = read_interval_ms
        self.queue_size = queue_size
        self.node_ids: Dict[str, str] = {
            field: field_node_id(self.device_id, field)
            for field in constants.REQUIRED_FIELDS
        }
        self._fields_by_node = {node_id: field for field, node_id in self.node_ids.items()}
        self._state = DeviceState()
        self._subscription: Optional[SubscriptionHandle] = None
        self._closed = False
        self.state: LiveStream[Dict[str, Any]] = LiveStream(
            remember=True, name=f"{self.name}.state"
        )

    @classmethod
    async def create(
        cls,
        session: DeviceSession,
        device_id: str,
        *,
        read_interval_ms: float = constants.DEFAULT_READ_INTERVAL_MS,
        queue_size: int = constants.DEFAULT_QUEUE_SIZE,
        cleanup: Optional[CleanupStack] = None,
    ) -> "DeviceInterface":
        interface = cls(
            session,
            device_id,
            read_interval_ms=read_interval_ms,
            queue_size=queue_size,
        )

        missing = await find_missing_fields(session, interface.device_id)
        if missing:
            raise MissingFieldsError(interface.device_id, missing)
        LOGGER.info("Device %s exposes all required fields", interface.device_id)

        await interface._read_initial_state()
        await interface._subscribe()
        if cleanup is not None:
            cleanup.register(interface.close, name=f"device {interface.name}")
        return interface

    @property
    def subscription_parameters(self) -> SubscriptionParameters:
        return SubscriptionParameters(
            publishing_interval=self.read_interval_ms,
            sampling_interval=self.read_interval_ms,
            lifetime_count=constants.SUBSCRIPTION_LIFETIME_COUNT,
            keepalive_count=constants.SUBSCRIPTION_KEEPALIVE_COUNT,
            queue_size=self.queue_size,
            discard_oldest=True,
        )

    @property
    def current(self) -> Dict[str, Any]:
        return self._state.snapshot()

    async def _read_initial_state(self) -> None:
        fields = constants.TELEMETRY_FIELDS
        values = await self._session.read_values([self.node_ids[f] for f in fields])
        for field, value in zip(fields, values):
            self._state.update(field, value)
        LOGGER.debug("Initial state of %s: %s", self.name, self._state.snapshot())
        self.state.next(self._state.snapshot())

    async def _subscribe(self) -> None:
        node_ids = [self.node_ids[f] for f in constants.TELEMETRY_FIELDS]
        self._subscription = await self._session.subscribe(
            node_ids,
            self.subscription_parameters,
            self._on_change,
            self._on_status,
        )
        LOGGER.info(
            "Subscribed to %d fields of %s every %sms",
            len(node_ids),
            self.name,
            self.read_interval_ms,
        )

    def _on_change(self, node_id: str, value: Any) -> None:
        if self._closed:
            return
        field = self._fields_by_node.get(node_id)
        if field is None or field not in self._state:
            LOGGER.debug("Ignoring change for unexpected node %s", node_id)
            return
        self._state.update(field, value)
        self.state.next(self._state.snapshot())

    def _on_status(self, status_code: int, detail: str) -> None:
        if status_code == 0 or self._closed:
            return
        LOGGER.error("Subscription of %s reported %s", self.name, detail)
        self.state.error(SubscriptionLostError(status_code, detail))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        subscription = self._subscription
        self._subscription = None
        try:
            if subscription is not None:
                await subscription.delete()
                LOGGER.info("Subscription of %s deleted", self.name)
        finally:
            self.state.complete()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    async def set_production_rate(self, rate: Any) -> MethodResult:
        result = await self._session.write_value(self.node_ids["ProductionRate"], rate)
        _log_result("set_production_rate", self.name, result)
        return result

    async def emergency_stop(self) -> MethodResult:
        result = await self._session.call_method(
            self.device_id, self.node_ids["EmergencyStop"]
        )
        _log_result("emergency_stop", self.name, result)
        return result

    async def reset_error_status(self) -> MethodResult:
        result = await self._session.call_method(
            self.device_id, self.node_ids["ResetErrorStatus"]
        )
        _log_result("reset_error_status", self.name, result)
        return result


def _log_result(operation: str, device: str, result: MethodResult) -> None:
    if result.ok:
        LOGGER.info("%s on %s succeeded", operation, device)
    else:
        LOGGER.warning("%s on %s failed: %s", operation, device, result.text)
