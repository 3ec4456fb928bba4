import asyncio
import inspect
from pathlib import Path
from typing import Any, Callable, Optional

import pytest

from iot_azure_agent.adapters import MethodRequest, MethodResponse
from iot_azure_agent.config import load_config
from iot_azure_agent.core import MethodResult, SubscriptionParameters

DEVICE_ID = "ns=2;s=Device 1"

CONNECTION_STRING = (
    "HostName=hub.azure-devices.net;DeviceId=line-1;"
    "SharedAccessKey=c2VjcmV0LWtleS1mb3ItdGVzdHM="
)

BAD_NODE_ID_UNKNOWN = 0x80340000


def initial_values(**overrides: Any) -> dict[str, Any]:
    values = {
        "ProductionStatus": 1,
        "WorkorderId": "wo-1",
        "ProductionRate": 80,
        "GoodCount": 10,
        "BadCount": 1,
        "Temperature": 61.5,
        "DeviceError": 0,
    }
    values.update(overrides)
    return values


class FakeHandle:
    def __init__(self) -> None:
        self.deleted = 0

    async def delete(self) -> None:
        self.deleted += 1


class FakeSession:
    """In-memory device session keyed by ``<device>/<field>`` node ids."""

    def __init__(self, device_id: str = DEVICE_ID) -> None:
        self.device_id = device_id
        self.values: dict[str, Any] = {
            f"{device_id}/{field}": value for field, value in initial_values().items()
        }
        self.missing: set[str] = set()
        self.display_name_calls: list[list[str]] = []
        self.writes: list[tuple[str, Any]] = []
        self.write_result = MethodResult()
        self.calls: list[tuple[str, str]] = []
        self.call_results: dict[str, MethodResult] = {}
        self.handle = FakeHandle()
        self.subscribed: list[str] = []
        self.parameters: Optional[SubscriptionParameters] = None
        self.on_change: Optional[Callable[[str, Any], None]] = None
        self.on_status: Optional[Callable[[int, str], None]] = None
        self.connected = False
        self.disconnects = 0
        self.connect_error: Optional[BaseException] = None

    async def connect(self) -> None:
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False
        self.disconnects += 1

    async def read_display_names(self, node_ids):
        self.display_name_calls.append(list(node_ids))
        return [
            BAD_NODE_ID_UNKNOWN if node_id.rsplit("/", 1)[-1] in self.missing else 0
            for node_id in node_ids
        ]

    async def read_values(self, node_ids):
        return [self.values.get(node_id) for node_id in node_ids]

    async def write_value(self, node_id, value):
        self.writes.append((node_id, value))
        return self.write_result

    async def call_method(self, object_id, method_id):
        self.calls.append((object_id, method_id))
        return self.call_results.get(method_id, MethodResult())

    async def subscribe(self, node_ids, parameters, on_change, on_status):
        self.subscribed = list(node_ids)
        self.parameters = parameters
        self.on_change = on_change
        self.on_status = on_status
        return self.handle

    def emit(self, field: str, value: Any) -> None:
        assert self.on_change is not None
        self.on_change(f"{self.device_id}/{field}", value)


class FakeCloud:
    """Records everything the bridge sends to the cloud."""

    def __init__(self) -> None:
        self.messages: list[dict[str, Any]] = []
        self.patches: list[dict[str, Any]] = []
        self.twin: dict[str, Any] = {"desired": {}, "reported": {}}
        self.desired_handlers: list[Callable[[dict[str, Any]], Any]] = []
        self.methods: dict[str, Callable[[MethodRequest], Any]] = {}
        self.lost_handlers: list[Callable[[BaseException], None]] = []
        self.link_handlers: list[Callable[[bool, str], None]] = []
        self.send_error: Optional[BaseException] = None
        self.patch_error: Optional[BaseException] = None
        self.twin_error: Optional[BaseException] = None
        self.connected = False
        self.disconnects = 0

    async def connect(self) -> None:
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False
        self.disconnects += 1

    def add_connection_lost_handler(self, handler) -> None:
        self.lost_handlers.append(handler)

    def add_link_handler(self, handler) -> None:
        self.link_handlers.append(handler)

    def send_message(self, message: dict[str, Any]) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.messages.append(message)

    async def get_twin(self) -> dict[str, Any]:
        if self.twin_error is not None:
            raise self.twin_error
        return self.twin

    async def patch_reported(self, patch: dict[str, Any]) -> None:
        if self.patch_error is not None:
            raise self.patch_error
        self.patches.append(patch)

    def add_desired_handler(self, handler) -> None:
        self.desired_handlers.append(handler)

    def remove_desired_handler(self, handler) -> None:
        if handler in self.desired_handlers:
            self.desired_handlers.remove(handler)

    def register_method(self, name, handler) -> None:
        if name in self.methods:
            raise ValueError(name)
        self.methods[name] = handler

    def unregister_method(self, name) -> None:
        self.methods.pop(name, None)

    async def invoke(self, name: str, payload: Any = None) -> MethodResponse:
        handler = self.methods.get(name)
        if handler is None:
            return MethodResponse(404, {"message": f"Unknown method {name}"})
        return await handler(MethodRequest(name, "1", payload))

    async def push_desired(self, patch: dict[str, Any]) -> None:
        for handler in list(self.desired_handlers):
            result = handler(patch)
            if inspect.isawaitable(result):
                await result


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def cloud() -> FakeCloud:
    return FakeCloud()


@pytest.fixture
def agent_config(tmp_path: Path):
    return load_config(
        tmp_path / "iot-azure-agent.cfg",
        environ={},
        overrides={
            "endpoint": "opc.tcp://localhost:4840",
            "device": DEVICE_ID,
            "connection_string": CONNECTION_STRING,
            "read_interval": 100,
            "send_interval": 50,
        },
    )


async def settle(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)
