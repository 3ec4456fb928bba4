from __future__ import annotations

from pathlib import Path

import pytest

from conftest import CONNECTION_STRING, DEVICE_ID, FakeSession

from iot_azure_agent import cli


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for name in (
        "ENDPOINT",
        "DEVICE",
        "CONNECTION_STRING",
        "READ_INTERVAL",
        "SEND_INTERVAL",
        "VERBOSE",
    ):
        monkeypatch.delenv(f"IOTCONFIG_{name}", raising=False)
    monkeypatch.setattr(cli, "configure_logging", lambda *args, **kwargs: None)


def _config_file(tmp_path: Path) -> Path:
    path = tmp_path / "iot-azure-agent.cfg"
    path.write_text(
        "[opcua]\n"
        "endpoint = opc.tcp://plc.local:4840\n"
        f"device = {DEVICE_ID}\n"
        "\n[iothub]\n"
        f"connection_string = {CONNECTION_STRING}\n",
        encoding="utf-8",
    )
    return path


def test_start_passes_flags_as_overrides(tmp_path: Path, monkeypatch) -> None:
    captured = {}

    def fake_start(config):
        captured["config"] = config
        return 1

    monkeypatch.setattr(cli.AgentApp, "start", staticmethod(fake_start))

    exit_code = cli.main(
        [
            "-c",
            str(_config_file(tmp_path)),
            "start",
            "-e",
            "opc.tcp://other:4840",
            "-r",
            "250",
            "-i",
            "1000",
            "-v",
        ]
    )

    config = captured["config"]
    assert exit_code == 1
    assert config.opcua.endpoint == "opc.tcp://other:4840"
    assert config.opcua.device == DEVICE_ID
    assert config.opcua.read_interval_ms == 250
    assert config.iothub.send_interval_ms == 1000
    assert config.logging.effective_level == "DEBUG"


def test_start_without_required_settings_exits_2(tmp_path: Path, capsys) -> None:
    exit_code = cli.main(["-c", str(tmp_path / "none.cfg"), "start", "-d", DEVICE_ID])

    assert exit_code == cli.EXIT_CONFIGURATION
    err = capsys.readouterr().err
    assert "endpoint" in err
    assert "IOTCONFIG_CONNECTION_STRING" in err


def test_show_config_redacts_the_access_key(tmp_path: Path, capsys) -> None:
    exit_code = cli.main(["-c", str(_config_file(tmp_path)), "show-config"])

    out = capsys.readouterr().out
    assert exit_code == 0
    assert "[opcua]" in out
    assert "SharedAccessKey=***" in out
    assert "c2VjcmV0" not in out


def test_discover_requires_an_endpoint(tmp_path: Path, capsys) -> None:
    exit_code = cli.main(["-c", str(tmp_path / "none.cfg"), "discover"])

    assert exit_code == cli.EXIT_CONFIGURATION
    assert "endpoint" in capsys.readouterr().err


class _BrowsingSession(FakeSession):
    async def browse_devices(self):
        return [(DEVICE_ID, "Device 1"), ("ns=2;s=Robot", "Robot")]

    async def read_display_names(self, node_ids):
        statuses = await super().read_display_names(node_ids)
        if node_ids and node_ids[0].startswith("ns=2;s=Robot"):
            return [0x80340000 if node_id.endswith("ProductionRate") else 0 for node_id in node_ids]
        return statuses


def test_discover_lists_devices_with_verdict(tmp_path: Path, monkeypatch, capsys) -> None:
    session = _BrowsingSession()
    monkeypatch.setattr(cli, "default_session_factory", lambda config: session)

    exit_code = cli.main(
        ["-c", str(tmp_path / "none.cfg"), "discover", "-e", "opc.tcp://plc.local:4840"]
    )

    lines = capsys.readouterr().out.strip().splitlines()
    assert exit_code == 0
    assert lines == [
        f"{DEVICE_ID}\tDevice 1\tsupported",
        "ns=2;s=Robot\tRobot\tmissing ProductionRate",
    ]
    assert session.disconnects == 1


def test_bad_health_port_exits_2(tmp_path: Path, capsys) -> None:
    path = _config_file(tmp_path)
    path.write_text(path.read_text(encoding="utf-8") + "\n[health]\nport = http\n", encoding="utf-8")

    exit_code = cli.main(["-c", str(path), "show-config"])

    assert exit_code == cli.EXIT_CONFIGURATION
    assert "[health] port" in capsys.readouterr().err
