"""Tests for the agent lifecycle: startup, shutdown and failure handling."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import signal

import pytest

from conftest import FakeCloud, FakeSession

from iot_azure_agent.adapters import MQTTConnectionError
from iot_azure_agent.app import EXIT_FAILURE, EXIT_OK, AgentApp, AgentState


def _app(agent_config, session: FakeSession, cloud: FakeCloud, **kwargs) -> AgentApp:
    return AgentApp(
        agent_config,
        session_factory=lambda config: session,
        cloud_factory=lambda config: cloud,
        install_signal_handlers=False,
        **kwargs,
    )


async def _wait_for(predicate, timeout: float = 1.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


@pytest.mark.asyncio
async def test_run_bridges_and_shuts_down_cleanly(agent_config, session, cloud) -> None:
    app = _app(agent_config, session, cloud)
    runner = asyncio.create_task(app.run())

    await _wait_for(lambda: app.state == AgentState.ACTIVE)
    await _wait_for(lambda: any(m["type"] == "telemetry" for m in cloud.messages))
    assert app.health.component("telemetry").healthy
    assert set(cloud.methods) == {"EmergencyStop", "ResetErrorStatus", "MaintenanceDone"}

    app.request_shutdown(EXIT_OK, reason="test")
    exit_code = await asyncio.wait_for(runner, timeout=1.0)

    assert exit_code == EXIT_OK
    assert session.handle.deleted == 1
    assert session.disconnects == 1
    assert cloud.disconnects == 1
    assert cloud.methods == {}
    assert app.forwarder is not None and not app.forwarder.running
    assert app.device is not None and app.device.state.terminated


@pytest.mark.asyncio
async def test_telemetry_message_carries_device_name(agent_config, session, cloud) -> None:
    app = _app(agent_config, session, cloud)
    runner = asyncio.create_task(app.run())

    await _wait_for(lambda: any(m["type"] == "telemetry" for m in cloud.messages))
    app.request_shutdown()
    await runner

    telemetry = next(m for m in cloud.messages if m["type"] == "telemetry")
    assert telemetry["Name"] == "Device 1"
    assert "DeviceError" not in telemetry


@pytest.mark.asyncio
async def test_missing_fields_abort_startup(agent_config, session, cloud) -> None:
    session.missing = {"EmergencyStop"}
    app = _app(agent_config, session, cloud)

    exit_code = await asyncio.wait_for(app.run(), timeout=1.0)

    assert exit_code == EXIT_FAILURE
    assert app.state == AgentState.FAILED
    assert session.disconnects == 1
    assert cloud.connected is False
    assert cloud.disconnects == 0


@pytest.mark.asyncio
async def test_invalid_connection_string_aborts_startup(agent_config, session) -> None:
    config = dataclasses.replace(
        agent_config,
        iothub=dataclasses.replace(agent_config.iothub, connection_string="HostName=x"),
    )
    app = AgentApp(
        config, session_factory=lambda config: session, install_signal_handlers=False
    )

    exit_code = await asyncio.wait_for(app.run(), timeout=1.0)

    assert exit_code == EXIT_FAILURE
    assert session.handle.deleted == 1
    assert session.disconnects == 1


@pytest.mark.asyncio
async def test_subscription_loss_triggers_cleanup(agent_config, session, cloud) -> None:
    app = _app(agent_config, session, cloud)
    runner = asyncio.create_task(app.run())
    await _wait_for(lambda: app.state == AgentState.ACTIVE)

    assert session.on_status is not None
    session.on_status(0x80AC0000, "BadConnectionClosed")
    exit_code = await asyncio.wait_for(runner, timeout=1.0)

    assert exit_code == EXIT_FAILURE
    assert app.state == AgentState.FAILED
    assert session.disconnects == 1
    assert cloud.disconnects == 1
    assert app.health.component("opcua").healthy is False


@pytest.mark.asyncio
async def test_lost_cloud_connection_triggers_cleanup(agent_config, session, cloud) -> None:
    app = _app(agent_config, session, cloud)
    runner = asyncio.create_task(app.run())
    await _wait_for(lambda: app.state == AgentState.ACTIVE)

    cloud.lost_handlers[0](MQTTConnectionError("renewal failed"))
    exit_code = await asyncio.wait_for(runner, timeout=1.0)

    assert exit_code == EXIT_FAILURE
    assert session.disconnects == 1


@pytest.mark.asyncio
async def test_interrupt_exits_with_failure_and_second_is_ignored(
    agent_config, session, cloud, caplog
) -> None:
    caplog.set_level(logging.INFO)
    app = _app(agent_config, session, cloud)
    runner = asyncio.create_task(app.run())
    await _wait_for(lambda: app.state == AgentState.ACTIVE)

    app._on_signal(signal.SIGINT, EXIT_FAILURE)
    app._on_signal(signal.SIGTERM, EXIT_OK)
    exit_code = await asyncio.wait_for(runner, timeout=1.0)

    assert exit_code == EXIT_FAILURE
    assert app.state == AgentState.STOPPING
    assert session.disconnects == 1
    assert "Shutdown already in progress" in caplog.text


@pytest.mark.asyncio
async def test_interrupt_during_startup_cancels_it(agent_config, session, cloud) -> None:
    gate = asyncio.Event()

    async def slow_connect() -> None:
        await gate.wait()

    session.connect = slow_connect  # type: ignore[method-assign]
    app = _app(agent_config, session, cloud)
    runner = asyncio.create_task(app.run())
    await asyncio.sleep(0.01)

    app.request_shutdown(EXIT_FAILURE, reason="interrupt")
    exit_code = await asyncio.wait_for(runner, timeout=1.0)

    assert exit_code == EXIT_FAILURE
    assert session.on_change is None
    assert session.disconnects == 0


@pytest.mark.asyncio
async def test_cloud_link_state_drives_health(agent_config, session, cloud) -> None:
    app = _app(agent_config, session, cloud)
    runner = asyncio.create_task(app.run())
    await _wait_for(lambda: app.state == AgentState.ACTIVE)

    cloud.link_handlers[0](False, "disconnected (rc=7)")
    dropped = app.health.component("iothub")
    cloud.link_handlers[0](True, "reconnected")
    restored = app.health.component("iothub")

    app.request_shutdown()
    exit_code = await asyncio.wait_for(runner, timeout=1.0)

    assert (dropped.healthy, dropped.detail) == (False, "disconnected (rc=7)")
    assert restored.healthy is True
    assert exit_code == EXIT_OK
