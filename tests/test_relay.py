"""Tests for the cloud command relay."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest
import pytest_asyncio

from conftest import BAD_NODE_ID_UNKNOWN, DEVICE_ID, FakeCloud, FakeSession, settle

from iot_azure_agent.adapters import MQTTConnectionError, TwinRequestError
from iot_azure_agent.core import CleanupStack, MethodResult
from iot_azure_agent.device import DeviceInterface
from iot_azure_agent.relay import CloudCommandRelay, isoformat_utc, method_response

NOW = datetime(2024, 5, 17, 8, 30, 15, 123000, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def device(session: FakeSession) -> DeviceInterface:
    return await DeviceInterface.create(session, DEVICE_ID)


@pytest_asyncio.fixture
async def relay(cloud: FakeCloud, device: DeviceInterface):
    relay = CloudCommandRelay(cloud, device, clock=lambda: NOW)
    await relay.start()
    await relay.wait_idle()
    yield relay
    await relay.stop()


def test_isoformat_utc() -> None:
    assert isoformat_utc(NOW) == "2024-05-17T08:30:15.123Z"


def test_method_response_maps_results() -> None:
    ok = method_response(MethodResult())
    failed = method_response(
        MethodResult(status_code=BAD_NODE_ID_UNKNOWN, name="BadNodeIdUnknown")
    )

    assert (ok.status, ok.payload) == (200, {"status": 0})
    assert failed.status == 500
    assert failed.payload == {
        "status": BAD_NODE_ID_UNKNOWN,
        "message": "BadNodeIdUnknown (0x80340000)",
    }


@pytest.mark.asyncio
async def test_start_reports_current_error_and_rate(relay, cloud: FakeCloud) -> None:
    assert cloud.messages == [{"type": "error", "DeviceError": 0}]
    assert {"Error": 0, "LastErrorDate": "2024-05-17T08:30:15.123Z"} in cloud.patches
    assert {"ProductionRate": 80} in cloud.patches


@pytest.mark.asyncio
async def test_device_error_changes_are_sent_once(
    relay, cloud: FakeCloud, session: FakeSession
) -> None:
    cloud.messages.clear()
    cloud.patches.clear()

    session.emit("DeviceError", 2)
    session.emit("Temperature", 80.0)
    session.emit("DeviceError", 2)
    session.emit("DeviceError", 6)
    await relay.wait_idle()

    assert cloud.messages == [
        {"type": "error", "DeviceError": 2},
        {"type": "error", "DeviceError": 6},
    ]
    assert [patch["Error"] for patch in cloud.patches] == [2, 6]


@pytest.mark.asyncio
async def test_production_rate_changes_update_reported(
    relay, cloud: FakeCloud, session: FakeSession
) -> None:
    cloud.patches.clear()

    session.emit("ProductionRate", 80)
    session.emit("ProductionRate", 90)
    await relay.wait_idle()

    assert cloud.patches == [{"ProductionRate": 90}]
    assert cloud.messages == [{"type": "error", "DeviceError": 0}]


@pytest.mark.asyncio
async def test_desired_production_rate_is_written(
    relay, cloud: FakeCloud, session: FakeSession
) -> None:
    await cloud.push_desired({"ProductionRate": 50, "$version": 3})
    await cloud.push_desired({"Other": True})

    assert session.writes == [(f"{DEVICE_ID}/ProductionRate", 50)]


@pytest.mark.asyncio
async def test_initial_twin_rate_is_applied(
    cloud: FakeCloud, device: DeviceInterface, session: FakeSession
) -> None:
    cloud.twin = {"desired": {"ProductionRate": 70}, "reported": {}}
    relay = CloudCommandRelay(cloud, device)

    await relay.start()
    await relay.stop()

    assert session.writes == [(f"{DEVICE_ID}/ProductionRate", 70)]


@pytest.mark.asyncio
async def test_twin_failure_does_not_block_start(
    cloud: FakeCloud, device: DeviceInterface, caplog
) -> None:
    cloud.twin_error = TwinRequestError("No response", status=None)
    relay = CloudCommandRelay(cloud, device)

    await relay.start()
    await relay.stop()

    assert "Could not read the device twin" in caplog.text


@pytest.mark.asyncio
async def test_reported_patch_failure_is_logged(
    cloud: FakeCloud, device: DeviceInterface, caplog
) -> None:
    cloud.patch_error = TwinRequestError("Reported properties patch failed", status=400)
    relay = CloudCommandRelay(cloud, device)

    await relay.start()
    await relay.wait_idle()
    await relay.stop()

    assert "Updating reported properties" in caplog.text
    assert cloud.messages == [{"type": "error", "DeviceError": 0}]


@pytest.mark.asyncio
async def test_emergency_stop_method(relay, cloud: FakeCloud, session: FakeSession) -> None:
    response = await cloud.invoke("EmergencyStop")

    assert (response.status, response.payload) == (200, {"status": 0})
    assert session.calls == [(DEVICE_ID, f"{DEVICE_ID}/EmergencyStop")]


@pytest.mark.asyncio
async def test_reset_error_status_failure(relay, cloud: FakeCloud, session: FakeSession) -> None:
    session.call_results[f"{DEVICE_ID}/ResetErrorStatus"] = MethodResult(
        status_code=BAD_NODE_ID_UNKNOWN, name="BadNodeIdUnknown"
    )

    response = await cloud.invoke("ResetErrorStatus")

    assert response.status == 500
    assert response.payload["status"] == BAD_NODE_ID_UNKNOWN


@pytest.mark.asyncio
async def test_maintenance_done_reports_date(relay, cloud: FakeCloud, session: FakeSession) -> None:
    response = await cloud.invoke("MaintenanceDone")

    assert response.status == 200
    assert cloud.patches[-1] == {"LastMaintenanceDate": "2024-05-17T08:30:15.123Z"}
    assert session.calls == []


@pytest.mark.asyncio
async def test_registers_the_three_direct_methods(relay, cloud: FakeCloud) -> None:
    assert set(cloud.methods) == {"EmergencyStop", "ResetErrorStatus", "MaintenanceDone"}


@pytest.mark.asyncio
async def test_stop_releases_everything(
    cloud: FakeCloud, device: DeviceInterface, session: FakeSession
) -> None:
    cleanup = CleanupStack()
    relay = CloudCommandRelay(cloud, device)
    await relay.start(cleanup)
    await relay.wait_idle()
    cloud.messages.clear()

    await cleanup.run_all()
    session.emit("DeviceError", 9)
    await settle()

    assert cloud.methods == {}
    assert cloud.desired_handlers == []
    assert cloud.messages == []


@pytest.mark.asyncio
async def test_maintenance_done_succeeds_when_report_fails(
    relay, cloud: FakeCloud, caplog
) -> None:
    cloud.patch_error = TwinRequestError("No response to twin PATCH within 10.0s")

    response = await cloud.invoke("MaintenanceDone")

    assert (response.status, response.payload) == (200, {"status": 0})
    assert "LastMaintenanceDate" in caplog.text


@pytest.mark.asyncio
async def test_reports_during_reconnect_gap_do_not_fail(
    cloud: FakeCloud, device: DeviceInterface, caplog
) -> None:
    cloud.patch_error = MQTTConnectionError("MQTT client not connected")
    relay = CloudCommandRelay(cloud, device)

    await relay.start()
    tasks = list(relay._tasks)
    results = await asyncio.gather(*tasks, return_exceptions=True)
    await relay.stop()

    assert len(tasks) == 2
    assert results == [None, None]
    assert "Updating reported properties" in caplog.text
