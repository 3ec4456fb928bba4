"""Configuration loader for iot-azure-agent."""

from __future__ import annotations

import os
from configparser import ConfigParser
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

from . import constants

# Short option names shared by the environment namespace and CLI flags.
_OPTION_LOCATIONS = {
    "endpoint": ("opcua", "endpoint"),
    "device": ("opcua", "device"),
    "connection_string": ("iothub", "connection_string"),
    "read_interval": ("opcua", "read_interval_ms"),
    "send_interval": ("iothub", "send_interval_ms"),
    "verbose": ("logging", "verbose"),
}

_MANDATORY_OPTIONS = ("endpoint", "device", "connection_string")


class ConfigurationError(RuntimeError):
    """Raised when the configuration is incomplete or invalid."""


@dataclass(slots=True)
class OPCUAConfig:
    endpoint: str = ""
    device: str = ""
    read_interval_ms: int = constants.DEFAULT_READ_INTERVAL_MS
    queue_size: int = constants.DEFAULT_QUEUE_SIZE
    connect_initial_delay_seconds: float = constants.OPCUA_CONNECT_INITIAL_DELAY
    connect_max_retry: int = constants.OPCUA_CONNECT_MAX_RETRY
    request_timeout_seconds: float = 4.0


@dataclass(slots=True)
class IoTHubConfig:
    connection_string: str = ""
    send_interval_ms: int = constants.DEFAULT_SEND_INTERVAL_MS
    twin_timeout_seconds: float = 10.0
    sas_ttl_seconds: int = 3600


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = None
    verbose: bool = False
    log_network: bool = False

    @property
    def effective_level(self) -> str:
        return "DEBUG" if self.verbose else self.level


@dataclass(slots=True)
class HealthConfig:
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 0


@dataclass(slots=True)
class AgentConfig:
    opcua: OPCUAConfig
    iothub: IoTHubConfig
    logging: LoggingConfig
    health: HealthConfig
    raw: ConfigParser
    path: Path

    @property
    def read_interval_seconds(self) -> float:
        return self.opcua.read_interval_ms / 1000.0

    @property
    def send_interval_seconds(self) -> float:
        return self.iothub.send_interval_ms / 1000.0


def _apply_options(parser: ConfigParser, options: Mapping[str, Any]) -> None:
    for name, value in options.items():
        if value is None or name not in _OPTION_LOCATIONS:
            continue
        section, key = _OPTION_LOCATIONS[name]
        if isinstance(value, bool):
            value = "true" if value else "false"
        parser.set(section, key, str(value))


def _environment_options(environ: Mapping[str, str]) -> dict[str, str]:
    prefix = f"{constants.ENV_PREFIX}_"
    options: dict[str, str] = {}
    for name in _OPTION_LOCATIONS:
        value = environ.get(prefix + name.upper())
        if value is not None:
            options[name] = value
    return options


def _positive_int(parser: ConfigParser, section: str, key: str, default: int) -> int:
    return _integer(parser, section, key, default, low=1)


def _integer(
    parser: ConfigParser,
    section: str,
    key: str,
    default: int,
    *,
    low: int,
    high: Optional[int] = None,
) -> int:
    try:
        value = parser.getint(section, key, fallback=default)
    except ValueError as exc:
        raise ConfigurationError(f"[{section}] {key} must be an integer") from exc
    if value < low or (high is not None and value > high):
        upper = "" if high is None else f" and at most {high}"
        raise ConfigurationError(f"[{section}] {key} must be at least {low}{upper}")
    return value


def _seconds(
    parser: ConfigParser, section: str, key: str, default: float, *, allow_zero: bool = False
) -> float:
    try:
        value = parser.getfloat(section, key, fallback=default)
    except ValueError as exc:
        raise ConfigurationError(f"[{section}] {key} must be a number of seconds") from exc
    if value < 0 or (value == 0 and not allow_zero):
        requirement = "must not be negative" if allow_zero else "must be positive"
        raise ConfigurationError(f"[{section}] {key} {requirement}")
    return value


def _boolean(parser: ConfigParser, section: str, key: str, default: bool) -> bool:
    try:
        return parser.getboolean(section, key, fallback=default)
    except ValueError as exc:
        raise ConfigurationError(f"[{section}] {key} must be a boolean") from exc


def load_config(
    path: Optional[Path] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    validate: bool = True,
) -> AgentConfig:
    """Load configuration, layering flags over environment over file over defaults."""

    config_path = path or constants.DEFAULT_CONFIG_PATH
    parser = ConfigParser(interpolation=None)
    parser.read_dict(
        {
            "opcua": {
                "endpoint": "",
                "device": "",
                "read_interval_ms": str(constants.DEFAULT_READ_INTERVAL_MS),
                "queue_size": str(constants.DEFAULT_QUEUE_SIZE),
                "connect_initial_delay_seconds": str(
                    constants.OPCUA_CONNECT_INITIAL_DELAY
                ),
                "connect_max_retry": str(constants.OPCUA_CONNECT_MAX_RETRY),
                "request_timeout_seconds": "4.0",
            },
            "iothub": {
                "connection_string": "",
                "send_interval_ms": str(constants.DEFAULT_SEND_INTERVAL_MS),
                "twin_timeout_seconds": "10.0",
                "sas_ttl_seconds": "3600",
            },
            "logging": {
                "level": "INFO",
                "path": "",
                "verbose": "false",
                "log_network": "false",
            },
            "health": {
                "enabled": "false",
                "host": "127.0.0.1",
                "port": "0",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    _apply_options(parser, _environment_options(os.environ if environ is None else environ))
    _apply_options(parser, overrides or {})

    opcua = OPCUAConfig(
        endpoint=parser.get("opcua", "endpoint").strip(),
        device=parser.get("opcua", "device").strip(),
        read_interval_ms=_positive_int(
            parser, "opcua", "read_interval_ms", constants.DEFAULT_READ_INTERVAL_MS
        ),
        queue_size=_positive_int(
            parser, "opcua", "queue_size", constants.DEFAULT_QUEUE_SIZE
        ),
        connect_initial_delay_seconds=_seconds(
            parser,
            "opcua",
            "connect_initial_delay_seconds",
            constants.OPCUA_CONNECT_INITIAL_DELAY,
            allow_zero=True,
        ),
        connect_max_retry=_integer(
            parser, "opcua", "connect_max_retry", constants.OPCUA_CONNECT_MAX_RETRY, low=0
        ),
        request_timeout_seconds=_seconds(parser, "opcua", "request_timeout_seconds", 4.0),
    )

    iothub = IoTHubConfig(
        connection_string=parser.get("iothub", "connection_string").strip(),
        send_interval_ms=_positive_int(
            parser, "iothub", "send_interval_ms", constants.DEFAULT_SEND_INTERVAL_MS
        ),
        twin_timeout_seconds=_seconds(parser, "iothub", "twin_timeout_seconds", 10.0),
        sas_ttl_seconds=_positive_int(parser, "iothub", "sas_ttl_seconds", 3600),
    )

    log_path_value = parser.get("logging", "path", fallback="").strip()
    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(log_path_value).expanduser() if log_path_value else None,
        verbose=_boolean(parser, "logging", "verbose", False),
        log_network=_boolean(parser, "logging", "log_network", False),
    )

    health = HealthConfig(
        enabled=_boolean(parser, "health", "enabled", False),
        host=parser.get("health", "host", fallback="127.0.0.1"),
        port=_integer(parser, "health", "port", 0, low=0, high=65535),
    )

    config = AgentConfig(
        opcua=opcua,
        iothub=iothub,
        logging=logging_config,
        health=health,
        raw=parser,
        path=config_path,
    )
    if validate:
        validate_config(config)
    return config


def validate_config(config: AgentConfig) -> None:
    """Ensure the settings the agent cannot run without are present."""

    values = {
        "endpoint": config.opcua.endpoint,
        "device": config.opcua.device,
        "connection_string": config.iothub.connection_string,
    }
    missing = [name for name in _MANDATORY_OPTIONS if not values[name]]
    if missing:
        hints = ", ".join(
            f"{name} (--{name.replace('_', '-')} or {constants.ENV_PREFIX}_{name.upper()})"
            for name in missing
        )
        raise ConfigurationError(f"Missing required settings: {hints}")

    if not config.opcua.endpoint.startswith("opc.tcp://"):
        raise ConfigurationError(
            f"Invalid OPC UA endpoint {config.opcua.endpoint!r}; expected opc.tcp://host:port"
        )

