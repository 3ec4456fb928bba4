"""Constants used across the iot-azure-agent package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "iot-azure-agent"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.home() / ".config" / APP_NAME / DEFAULT_CONFIG_FILENAME

ENV_PREFIX = "IOTCONFIG"

# Order matters: the position of a field is its stable index.
REQUIRED_FIELDS = (
    "ProductionStatus",
    "WorkorderId",
    "ProductionRate",
    "GoodCount",
    "BadCount",
    "Temperature",
    "DeviceError",
    "EmergencyStop",
    "ResetErrorStatus",
)

COMMAND_FIELDS = ("EmergencyStop", "ResetErrorStatus")

TELEMETRY_FIELDS = tuple(name for name in REQUIRED_FIELDS if name not in COMMAND_FIELDS)

DEFAULT_READ_INTERVAL_MS = 1000
DEFAULT_SEND_INTERVAL_MS = 5000
DEFAULT_QUEUE_SIZE = 10

SUBSCRIPTION_LIFETIME_COUNT = 100
SUBSCRIPTION_KEEPALIVE_COUNT = 10

OPCUA_CONNECT_INITIAL_DELAY = 1.0
OPCUA_CONNECT_MAX_RETRY = 3

IOTHUB_MQTT_PORT = 8883
IOTHUB_API_VERSION = "2021-04-12"
