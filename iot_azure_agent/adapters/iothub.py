"""Azure IoT Hub device client speaking the hub's MQTT topic conventions.

The hub exposes telemetry, device twin and direct methods over plain MQTT:

* telemetry is published to ``devices/<id>/messages/events/``;
* twin reads and reported-property patches are request/response exchanges
  correlated by a ``$rid`` query parameter;
* desired-property patches and direct-method invocations arrive on
  subscribed ``$iothub/...`` topics.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import contextlib
import inspect
import itertools
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol
from urllib.parse import parse_qs, quote

from cryptography.hazmat.primitives import hashes, hmac

from .. import constants
from .mqtt import MQTTClient, MQTTConnectionError, MQTTSettings

LOGGER = logging.getLogger(__name__)

METHODS_SUBSCRIPTION = "$iothub/methods/POST/#"
TWIN_RESPONSE_SUBSCRIPTION = "$iothub/twin/res/#"
DESIRED_SUBSCRIPTION = "$iothub/twin/PATCH/properties/desired/#"

# Fraction of the SAS token lifetime after which the connection is renewed.
SAS_RENEWAL_RATIO = 0.85

_METHOD_PREFIX = "$iothub/methods/POST/"
_TWIN_RESPONSE_PREFIX = "$iothub/twin/res/"
_DESIRED_PREFIX = "$iothub/twin/PATCH/properties/desired/"

DesiredHandler = Callable[[Dict[str, Any]], Awaitable[None] | None]
LinkHandler = Callable[[bool, str], None]


class ConnectionStringError(ValueError):
    """Raised when an IoT Hub device connection string cannot be parsed."""


class TwinRequestError(RuntimeError):
    """Raised when a twin request fails or is not answered in time."""

    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


@dataclass(frozen=True, slots=True)
class ConnectionString:
    host_name: str
    device_id: str
    shared_access_key: str
    gateway_host_name: Optional[str] = None

    @classmethod
    def parse(cls, value: str) -> "ConnectionString":
        parts: Dict[str, str] = {}
        for segment in value.strip().split(";"):
            if not segment:
                continue
            key, separator, item = segment.partition("=")
            if not separator or not key:
                raise ConnectionStringError(f"Malformed connection string segment {segment!r}")
            parts[key.strip()] = item.strip()

        missing = [
            key for key in ("HostName", "DeviceId", "SharedAccessKey") if not parts.get(key)
        ]
        if missing:
            raise ConnectionStringError(
                f"Connection string is missing {', '.join(missing)}"
            )
        try:
            base64.b64decode(parts["SharedAccessKey"], validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ConnectionStringError("SharedAccessKey is not valid base64") from exc

        return cls(
            host_name=parts["HostName"],
            device_id=parts["DeviceId"],
            shared_access_key=parts["SharedAccessKey"],
            gateway_host_name=parts.get("GatewayHostName"),
        )

    @property
    def broker_host(self) -> str:
        return self.gateway_host_name or self.host_name

    @property
    def resource_uri(self) -> str:
        return f"{self.host_name}/devices/{self.device_id}"

    def redacted(self) -> str:
        return (
            f"HostName={self.host_name};DeviceId={self.device_id};SharedAccessKey=***"
        )


def generate_sas_token(resource_uri: str, key: str, expiry: int) -> str:
    """Build a ``SharedAccessSignature`` for the resource, valid until ``expiry``."""

    encoded_uri = quote(resource_uri, safe="")
    signer = hmac.HMAC(base64.b64decode(key), hashes.SHA256())
    signer.update(f"{encoded_uri}\n{expiry}".encode("utf-8"))
    signature = base64.b64encode(signer.finalize()).decode("ascii")
    return (
        f"SharedAccessSignature sr={encoded_uri}"
        f"&sig={quote(signature, safe='')}&se={expiry}"
    )


@dataclass(frozen=True, slots=True)
class MethodRequest:
    name: str
    request_id: str
    payload: Any


@dataclass(frozen=True, slots=True)
class MethodResponse:
    status: int
    payload: Any = None

    @classmethod
    def success(cls, payload: Any = None) -> "MethodResponse":
        return cls(200, payload)

    @classmethod
    def failure(cls, payload: Any = None, *, status: int = 500) -> "MethodResponse":
        return cls(status, payload)


MethodHandler = Callable[[MethodRequest], Awaitable[MethodResponse]]


class MQTTLike(Protocol):
    async def connect(self, timeout: float = 30.0) -> None: ...

    async def disconnect(self, timeout: float = 5.0) -> None: ...

    def publish(
        self, topic: str, payload: bytes, qos: int = 1, retain: bool = False
    ) -> None: ...

    def subscribe(self, topic: str, qos: int = 1) -> None: ...

    def set_message_handler(self, handler) -> None: ...

    def register_disconnect_handler(self, handler: Callable[[int], None]) -> None: ...

    def register_connect_handler(self, handler: Callable[[int], None]) -> None: ...


def _split_topic(topic: str) -> tuple[str, Dict[str, str]]:
    path, _, query = topic.partition("?")
    params = {key: values[0] for key, values in parse_qs(query).items() if values}
    return path, params


def _decode_json(payload: bytes) -> Any:
    if not payload:
        return None
    return json.loads(payload.decode("utf-8"))


class IoTHubDeviceClient:
    """Device-side IoT Hub client: telemetry, twin and direct methods."""

    def __init__(
        self,
        connection_string: ConnectionString,
        *,
        mqtt_client: Optional[MQTTLike] = None,
        sas_ttl_seconds: int = 3600,
        request_timeout: float = 10.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.connection_string = connection_string
        self.device_id = connection_string.device_id
        self.sas_ttl_seconds = sas_ttl_seconds
        self.request_timeout = request_timeout
        self._clock = clock
        self._mqtt = mqtt_client
        self._owns_mqtt = mqtt_client is None
        self._renewal_task: Optional[asyncio.Task[None]] = None
        self._telemetry_topic = (
            f"devices/{self.device_id}/messages/events/"
            "$.ct=application%2Fjson&$.ce=utf-8"
        )
        self._request_ids = itertools.count(1)
        self._pending: Dict[str, asyncio.Future[tuple[int, Any]]] = {}
        self._methods: Dict[str, MethodHandler] = {}
        self._desired_handlers: list[DesiredHandler] = []
        self._connected = False
        self._connection_lost_handlers: list[Callable[[BaseException], None]] = []
        self._link_handlers: list[LinkHandler] = []
        self._renewing = False

    @property
    def username(self) -> str:
        return (
            f"{self.connection_string.host_name}/{self.device_id}"
            f"/?api-version={constants.IOTHUB_API_VERSION}"
        )

    def _build_mqtt_client(self) -> MQTTClient:
        expiry = int(self._clock()) + self.sas_ttl_seconds
        password = generate_sas_token(
            self.connection_string.resource_uri,
            self.connection_string.shared_access_key,
            expiry,
        )
        settings = MQTTSettings(
            host=self.connection_string.broker_host,
            port=constants.IOTHUB_MQTT_PORT,
            username=self.username,
            password=password,
            use_tls=True,
        )
        return MQTTClient(settings, client_id=self.device_id)

    async def connect(self) -> None:
        LOGGER.info(
            "Connecting to IoT Hub %s as %s",
            self.connection_string.host_name,
            self.device_id,
        )
        await self._open()
        self._connected = True
        LOGGER.info("Connected to IoT Hub")
        if self._owns_mqtt:
            self._renewal_task = asyncio.create_task(self._renewal_loop())

    async def disconnect(self) -> None:
        if self._mqtt is None or not self._connected:
            return
        self._connected = False
        renewal = self._renewal_task
        self._renewal_task = None
        if renewal is not None:
            renewal.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await renewal
        for future in self._pending.values():
            if not future.done():
                future.cancel()
        self._pending.clear()
        self._mqtt.set_message_handler(None)
        await self._mqtt.disconnect()
        LOGGER.info("Disconnected from IoT Hub")

    def add_connection_lost_handler(self, handler: Callable[[BaseException], None]) -> None:
        self._connection_lost_handlers.append(handler)

    def add_link_handler(self, handler: LinkHandler) -> None:
        """Be told ``(up, detail)`` whenever the transport drops or comes back."""
        self._link_handlers.append(handler)

    async def _open(self) -> None:
        if self._owns_mqtt:
            self._mqtt = self._build_mqtt_client()
        mqtt = self._mqtt
        assert mqtt is not None
        await mqtt.connect()
        mqtt.set_message_handler(self._handle_message)
        self._subscribe(mqtt)
        # The transport reconnects on its own with a clean session.
        mqtt.register_disconnect_handler(lambda rc: self._on_link_down(mqtt, rc))
        mqtt.register_connect_handler(lambda rc: self._on_link_up(mqtt))

    def _subscribe(self, mqtt: MQTTLike) -> None:
        mqtt.subscribe(METHODS_SUBSCRIPTION, qos=0)
        mqtt.subscribe(TWIN_RESPONSE_SUBSCRIPTION, qos=0)
        mqtt.subscribe(DESIRED_SUBSCRIPTION, qos=0)

    def _is_live(self, mqtt: MQTTLike) -> bool:
        return mqtt is self._mqtt and self._connected and not self._renewing

    def _on_link_down(self, mqtt: MQTTLike, rc: int) -> None:
        if not self._is_live(mqtt):
            return
        LOGGER.warning("IoT Hub connection dropped (rc=%s); waiting for reconnect", rc)
        self._notify_link(False, f"disconnected (rc={rc})")

    def _on_link_up(self, mqtt: MQTTLike) -> None:
        if not self._is_live(mqtt):
            return
        try:
            self._subscribe(mqtt)
        except MQTTConnectionError as exc:
            LOGGER.error("Resubscribing after reconnect failed: %s", exc)
            self._notify_link(False, str(exc))
            return
        LOGGER.info("IoT Hub connection restored")
        self._notify_link(True, "reconnected")

    def _notify_link(self, up: bool, detail: str) -> None:
        for handler in list(self._link_handlers):
            try:
                handler(up, detail)
            except Exception:
                LOGGER.exception("Link state handler failed")

    async def _renewal_loop(self) -> None:
        """Reconnect with a fresh SAS token before the current one expires."""

        delay = max(1.0, self.sas_ttl_seconds * SAS_RENEWAL_RATIO)
        while self._connected:
            await asyncio.sleep(delay)
            if not self._connected or self._mqtt is None:
                return
            LOGGER.info("Renewing IoT Hub SAS token")
            previous = self._mqtt
            previous.set_message_handler(None)
            self._renewing = True
            try:
                await previous.disconnect()
                await self._open()
            except MQTTConnectionError as exc:
                LOGGER.error("Reconnecting to IoT Hub with a renewed token failed: %s", exc)
                self._connected = False
                for handler in list(self._connection_lost_handlers):
                    handler(exc)
                return
            finally:
                self._renewing = False

    # ------------------------------------------------------------------
    # Telemetry
    # ------------------------------------------------------------------
    def send_message(self, message: Dict[str, Any]) -> None:
        """Publish a device-to-cloud message without waiting for the broker."""

        self._require_mqtt().publish(
            self._telemetry_topic,
            json.dumps(message).encode("utf-8"),
            qos=1,
        )

    # ------------------------------------------------------------------
    # Twin
    # ------------------------------------------------------------------
    async def get_twin(self) -> Dict[str, Any]:
        status, body = await self._request("$iothub/twin/GET/", b"")
        if not 200 <= status < 300:
            raise TwinRequestError(f"Twin GET failed with status {status}", status=status)
        return body or {}

    async def patch_reported(self, patch: Dict[str, Any]) -> None:
        status, _ = await self._request(
            "$iothub/twin/PATCH/properties/reported/",
            json.dumps(patch).encode("utf-8"),
        )
        if not 200 <= status < 300:
            raise TwinRequestError(
                f"Reported properties patch failed with status {status}", status=status
            )
        LOGGER.debug("Reported properties updated: %s", patch)

    def add_desired_handler(self, handler: DesiredHandler) -> None:
        self._desired_handlers.append(handler)

    def remove_desired_handler(self, handler: DesiredHandler) -> None:
        if handler in self._desired_handlers:
            self._desired_handlers.remove(handler)

    # ------------------------------------------------------------------
    # Direct methods
    # ------------------------------------------------------------------
    def register_method(self, name: str, handler: MethodHandler) -> None:
        if name in self._methods:
            raise ValueError(f"Method {name!r} already registered")
        self._methods[name] = handler

    def unregister_method(self, name: str) -> None:
        self._methods.pop(name, None)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _require_mqtt(self) -> MQTTLike:
        if self._mqtt is None or not self._connected:
            raise MQTTConnectionError("IoT Hub client not connected")
        return self._mqtt

    async def _request(self, topic_base: str, body: bytes) -> tuple[int, Any]:
        mqtt = self._require_mqtt()
        request_id = str(next(self._request_ids))
        future: asyncio.Future[tuple[int, Any]] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            mqtt.publish(f"{topic_base}?$rid={request_id}", body, qos=0)
            return await asyncio.wait_for(future, timeout=self.request_timeout)
        except asyncio.TimeoutError as exc:
            raise TwinRequestError(
                f"No response to {topic_base} within {self.request_timeout}s"
            ) from exc
        finally:
            self._pending.pop(request_id, None)

    async def _handle_message(self, topic: str, payload: bytes) -> None:
        if topic.startswith(_TWIN_RESPONSE_PREFIX):
            self._handle_twin_response(topic, payload)
        elif topic.startswith(_DESIRED_PREFIX):
            await self._handle_desired_patch(payload)
        elif topic.startswith(_METHOD_PREFIX):
            await self._handle_method(topic, payload)
        else:
            LOGGER.debug("Ignoring message on unexpected topic %s", topic)

    def _handle_twin_response(self, topic: str, payload: bytes) -> None:
        path, params = _split_topic(topic)
        status_text = path[len(_TWIN_RESPONSE_PREFIX):].strip("/")
        future = self._pending.get(params.get("$rid", ""))
        if future is None or future.done():
            return
        try:
            status = int(status_text)
            body = _decode_json(payload)
        except ValueError as exc:
            future.set_exception(TwinRequestError(f"Malformed twin response: {exc}"))
            return
        future.set_result((status, body))

    async def _handle_desired_patch(self, payload: bytes) -> None:
        try:
            patch = _decode_json(payload) or {}
        except ValueError:
            LOGGER.warning("Ignoring malformed desired properties patch")
            return
        LOGGER.info("Desired properties patch received: %s", patch)
        for handler in list(self._desired_handlers):
            try:
                result = handler(patch)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                LOGGER.exception("Desired properties handler failed")

    async def _handle_method(self, topic: str, payload: bytes) -> None:
        path, params = _split_topic(topic)
        name = path[len(_METHOD_PREFIX):].strip("/")
        request_id = params.get("$rid")
        if not request_id:
            LOGGER.warning("Direct method %s arrived without a request id", name)
            return

        try:
            request_payload = _decode_json(payload)
        except ValueError:
            request_payload = None

        handler = self._methods.get(name)
        LOGGER.info("Direct method %s invoked (rid=%s)", name, request_id)
        if handler is None:
            response = MethodResponse(404, {"message": f"Unknown method {name}"})
        else:
            try:
                response = await handler(MethodRequest(name, request_id, request_payload))
            except Exception as exc:
                LOGGER.exception("Direct method %s failed", name)
                response = MethodResponse.failure({"message": str(exc)})

        self._respond(request_id, response)

    def _respond(self, request_id: str, response: MethodResponse) -> None:
        try:
            self._require_mqtt().publish(
                f"$iothub/methods/res/{response.status}/?$rid={request_id}",
                json.dumps(response.payload).encode("utf-8"),
                qos=0,
            )
        except RuntimeError as exc:
            LOGGER.warning("Could not answer direct method %s: %s", request_id, exc)
