"""Command-line interface for iot-azure-agent."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Optional, TextIO

from . import constants
from .adapters import ConnectionString, ConnectionStringError, DeviceConnectionError
from .app import AgentApp, default_session_factory
from .config import AgentConfig, ConfigurationError, load_config
from .device import find_missing_fields
from .logging import configure_logging

LOGGER = logging.getLogger(__name__)

EXIT_CONFIGURATION = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=constants.APP_NAME,
        description="Bridge an OPC UA production device to an Azure IoT Hub device twin",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=constants.DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {constants.DEFAULT_CONFIG_PATH})",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    start_parser = subparsers.add_parser("start", help="Run the bridge")
    _add_endpoint_option(start_parser)
    start_parser.add_argument("-d", "--device", help="Device node id, e.g. ns=2;s=Device 1")
    start_parser.add_argument(
        "-s", "--connection-string", dest="connection_string",
        help="IoT Hub device connection string",
    )
    start_parser.add_argument(
        "-r", "--read-interval", dest="read_interval", type=int,
        help="OPC UA sampling and publishing interval in milliseconds",
    )
    start_parser.add_argument(
        "-i", "--send-interval", dest="send_interval", type=int,
        help="Telemetry send interval in milliseconds",
    )
    start_parser.add_argument(
        "-v", "--verbose", action="store_true", default=None,
        help="Enable debug logging",
    )

    subparsers.add_parser(
        "show-config", help="Print the resolved configuration and exit"
    )

    discover_parser = subparsers.add_parser(
        "discover", help="List the devices an OPC UA server exposes"
    )
    _add_endpoint_option(discover_parser)

    return parser


def _add_endpoint_option(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-e", "--endpoint", help="OPC UA endpoint, e.g. opc.tcp://host:4840")


def _overrides(args: argparse.Namespace) -> dict[str, Any]:
    names = ("endpoint", "device", "connection_string", "read_interval", "send_interval", "verbose")
    return {name: getattr(args, name, None) for name in names}


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        if args.command == "start":
            config = load_config(args.config, overrides=_overrides(args))
            return AgentApp.start(config)

        if args.command == "show-config":
            config = load_config(args.config, validate=False)
            print_config(config)
            return 0

        if args.command == "discover":
            config = load_config(args.config, overrides=_overrides(args), validate=False)
            if not config.opcua.endpoint:
                raise ConfigurationError(
                    f"Missing required settings: endpoint (--endpoint or {constants.ENV_PREFIX}_ENDPOINT)"
                )
            configure_logging(
                config.logging.effective_level, log_network=config.logging.log_network
            )
            return asyncio.run(discover(config))
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIGURATION

    LOGGER.error("Unknown command: %s", args.command)
    return 1


def print_config(config: AgentConfig, stream: Optional[TextIO] = None) -> None:
    stream = stream or sys.stdout
    print(f"Configuration loaded from {config.path!s}\n", file=stream)
    for section in config.raw.sections():
        print(f"[{section}]", file=stream)
        for key, value in config.raw[section].items():
            if section == "iothub" and key == "connection_string" and value:
                value = _redact_connection_string(value)
            print(f"{key} = {value}", file=stream)
        print(file=stream)


def _redact_connection_string(value: str) -> str:
    try:
        return ConnectionString.parse(value).redacted()
    except ConnectionStringError:
        return "***"


async def discover(config: AgentConfig, stream: Optional[TextIO] = None) -> int:
    """Browse the server's Objects folder and probe every candidate device."""

    stream = stream or sys.stdout
    session = default_session_factory(config)
    try:
        await session.connect()
    except DeviceConnectionError as exc:
        LOGGER.error("%s", exc)
        return 1

    try:
        devices = await session.browse_devices()
        if not devices:
            print("No devices found", file=stream)
        for node_id, display_name in devices:
            missing = await find_missing_fields(session, node_id)
            verdict = "supported" if not missing else f"missing {', '.join(missing)}"
            print(f"{node_id}\t{display_name}\t{verdict}", file=stream)
    finally:
        await session.disconnect()
    return 0


if __name__ == "__main__":
    sys.exit(main())
