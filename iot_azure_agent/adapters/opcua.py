"""OPC UA adapter built on asyncua."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Sequence

from asyncua import Client, Node, ua
from asyncua.ua import status_codes

from .. import constants
from ..core import ChangeCallback, MethodResult, StatusCallback, SubscriptionParameters

LOGGER = logging.getLogger(__name__)

_INTEGER_TYPES = {
    ua.VariantType.SByte,
    ua.VariantType.Byte,
    ua.VariantType.Int16,
    ua.VariantType.UInt16,
    ua.VariantType.Int32,
    ua.VariantType.UInt32,
    ua.VariantType.Int64,
    ua.VariantType.UInt64,
}
_FLOAT_TYPES = {ua.VariantType.Float, ua.VariantType.Double}


class DeviceConnectionError(RuntimeError):
    """Raised when the OPC UA server cannot be reached."""


def result_from_status(code: int) -> MethodResult:
    name, doc = status_codes.get_name_and_doc(code)
    return MethodResult(status_code=code, name=name, description=doc)


def _coerce(value: Any, variant_type: ua.VariantType) -> Any:
    if variant_type in _INTEGER_TYPES:
        return int(value)
    if variant_type in _FLOAT_TYPES:
        return float(value)
    if variant_type == ua.VariantType.Boolean:
        return bool(value)
    if variant_type == ua.VariantType.String:
        return str(value)
    return value


class _SubscriptionHandler:
    """Bridges asyncua notifications to node-id keyed callbacks."""

    def __init__(
        self,
        node_ids: Dict[ua.NodeId, str],
        on_change: ChangeCallback,
        on_status: StatusCallback,
    ) -> None:
        self._node_ids = node_ids
        self._on_change = on_change
        self._on_status = on_status

    def datachange_notification(self, node: Node, val: Any, data: Any) -> None:
        node_id = self._node_ids.get(node.nodeid)
        if node_id is None:
            LOGGER.debug("Notification for unmonitored node %s", node.nodeid)
            return
        self._on_change(node_id, val)

    def event_notification(self, event: Any) -> None:
        pass

    def status_change_notification(self, status: Any) -> None:
        # Newer asyncua versions hand over the full StatusChangeNotification.
        code = getattr(status, "Status", status)
        value = getattr(code, "value", 0)
        name, _ = status_codes.get_name_and_doc(value)
        self._on_status(value, name)


class OPCUASubscription:
    """Owned handle over an asyncua subscription."""

    def __init__(self, subscription: Any, handles: Sequence[Any]) -> None:
        self._subscription = subscription
        self.handles = list(handles)

    async def delete(self) -> None:
        subscription = self._subscription
        if subscription is None:
            return
        self._subscription = None
        await subscription.delete()


class OPCUASession:
    """Async session against an OPC UA server implementing ``DeviceSession``."""

    def __init__(
        self,
        endpoint: str,
        *,
        timeout: float = 4.0,
        initial_delay: float = constants.OPCUA_CONNECT_INITIAL_DELAY,
        max_retry: int = constants.OPCUA_CONNECT_MAX_RETRY,
    ) -> None:
        self.endpoint = endpoint
        self.timeout = timeout
        self.initial_delay = initial_delay
        self.max_retry = max_retry
        self._client: Optional[Client] = None
        self._variant_types: Dict[str, ua.VariantType] = {}

    @property
    def client(self) -> Client:
        if self._client is None:
            raise RuntimeError("OPC UA session not connected")
        return self._client

    async def connect(self) -> None:
        """Open the secure channel and session, retrying a bounded number of times."""

        attempts = self.max_retry + 1
        last_error: Optional[BaseException] = None
        for attempt in range(1, attempts + 1):
            client = Client(url=self.endpoint, timeout=self.timeout)
            client.name = constants.APP_NAME
            LOGGER.info(
                "Connecting to OPC UA server %s (attempt %d/%d)",
                self.endpoint,
                attempt,
                attempts,
            )
            try:
                await client.connect()
            except (OSError, asyncio.TimeoutError, ua.UaError) as exc:
                last_error = exc
                LOGGER.warning("OPC UA connection attempt %d failed: %s", attempt, exc)
                if attempt < attempts:
                    await asyncio.sleep(self.initial_delay)
                continue

            self._client = client
            LOGGER.info("Connected to OPC UA server and created a session")
            return

        raise DeviceConnectionError(
            f"Could not connect to {self.endpoint} after {attempts} attempts: {last_error}"
        ) from last_error

    async def disconnect(self) -> None:
        client = self._client
        if client is None:
            return
        self._client = None
        await client.disconnect()
        LOGGER.info("Disconnected from OPC UA server")

    # ------------------------------------------------------------------
    # DeviceSession
    # ------------------------------------------------------------------
    async def read_display_names(self, node_ids: Sequence[str]) -> list[int]:
        statuses: list[int] = [ua.StatusCodes.BadNodeIdInvalid] * len(node_ids)
        nodes: list[Node] = []
        positions: list[int] = []
        for position, node_id in enumerate(node_ids):
            try:
                nodes.append(self.client.get_node(node_id))
            except ua.UaError:
                LOGGER.debug("Unparseable node id %s", node_id)
                continue
            positions.append(position)

        if nodes:
            results = await self.client.read_attributes(nodes, ua.AttributeIds.DisplayName)
            for position, result in zip(positions, results):
                statuses[position] = result.StatusCode.value
        return statuses

    async def read_values(self, node_ids: Sequence[str]) -> list[Any]:
        nodes = [self.client.get_node(node_id) for node_id in node_ids]
        return await self.client.read_values(nodes)

    async def write_value(self, node_id: str, value: Any) -> MethodResult:
        node = self.client.get_node(node_id)
        try:
            variant_type = self._variant_types.get(node_id)
            if variant_type is None:
                variant_type = await node.read_data_type_as_variant_type()
                self._variant_types[node_id] = variant_type
            data_value = ua.DataValue(ua.Variant(_coerce(value, variant_type), variant_type))
            await node.write_value(data_value)
        except ua.UaStatusCodeError as exc:
            return result_from_status(exc.code)
        except (TypeError, ValueError) as exc:
            LOGGER.warning("Cannot write %r to %s: %s", value, node_id, exc)
            return MethodResult(
                status_code=ua.StatusCodes.BadTypeMismatch,
                name="BadTypeMismatch",
                description=str(exc),
            )
        return MethodResult()

    async def call_method(self, object_id: str, method_id: str) -> MethodResult:
        parent = self.client.get_node(object_id)
        method = self.client.get_node(method_id)
        try:
            await parent.call_method(method)
        except ua.UaStatusCodeError as exc:
            return result_from_status(exc.code)
        return MethodResult()

    async def subscribe(
        self,
        node_ids: Sequence[str],
        parameters: SubscriptionParameters,
        on_change: ChangeCallback,
        on_status: StatusCallback,
    ) -> OPCUASubscription:
        nodes = [self.client.get_node(node_id) for node_id in node_ids]
        handler = _SubscriptionHandler(
            {node.nodeid: node_id for node, node_id in zip(nodes, node_ids)},
            on_change,
            on_status,
        )
        request = ua.CreateSubscriptionParameters(
            RequestedPublishingInterval=parameters.publishing_interval,
            RequestedLifetimeCount=parameters.lifetime_count,
            RequestedMaxKeepAliveCount=parameters.keepalive_count,
            MaxNotificationsPerPublish=0,
            PublishingEnabled=True,
            Priority=0,
        )
        subscription = await self.client.create_subscription(request, handler)
        # asyncua requests DiscardOldest on every monitored item.
        handles = await subscription.subscribe_data_change(
            nodes,
            queuesize=parameters.queue_size,
            sampling_interval=parameters.sampling_interval,
        )
        for node_id, handle in zip(node_ids, handles):
            if isinstance(handle, ua.StatusCode):
                LOGGER.warning("Monitoring %s failed: %s", node_id, handle)
        return OPCUASubscription(subscription, handles)

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------
    async def browse_devices(self) -> list[tuple[str, str]]:
        """List ``(node id, display name)`` for objects outside namespace 0."""

        devices: list[tuple[str, str]] = []
        for child in await self.client.nodes.objects.get_children():
            if child.nodeid.NamespaceIndex == 0:
                continue
            display_name = await child.read_display_name()
            devices.append((child.nodeid.to_string(), display_name.Text))
        return devices
