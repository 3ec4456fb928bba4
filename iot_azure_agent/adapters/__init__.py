"""Adapter modules for external integrations."""

from .iothub import (
    ConnectionString,
    ConnectionStringError,
    DesiredHandler,
    IoTHubDeviceClient,
    MethodHandler,
    MethodRequest,
    MethodResponse,
    TwinRequestError,
    generate_sas_token,
)
from .mqtt import MQTTClient, MQTTConnectionError, MQTTSettings
from .opcua import DeviceConnectionError, OPCUASession, OPCUASubscription

__all__ = [
    "ConnectionString",
    "ConnectionStringError",
    "DesiredHandler",
    "DeviceConnectionError",
    "IoTHubDeviceClient",
    "MQTTClient",
    "MQTTConnectionError",
    "MQTTSettings",
    "MethodHandler",
    "MethodRequest",
    "MethodResponse",
    "OPCUASession",
    "OPCUASubscription",
    "TwinRequestError",
    "generate_sas_token",
]
