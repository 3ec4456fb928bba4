"""Core primitives for iot-azure-agent."""

from .cleanup import CleanupAction, CleanupStack
from .models import MethodResult, TelemetrySnapshot, numeric_reading
from .protocols import (
    ChangeCallback,
    DeviceSession,
    StatusCallback,
    SubscriptionHandle,
    SubscriptionParameters,
)
from .streams import ChangeFilter, LiveStream, Subscription, changes_only

__all__ = [
    "ChangeCallback",
    "ChangeFilter",
    "CleanupAction",
    "CleanupStack",
    "DeviceSession",
    "LiveStream",
    "MethodResult",
    "StatusCallback",
    "Subscription",
    "SubscriptionHandle",
    "SubscriptionParameters",
    "TelemetrySnapshot",
    "changes_only",
    "numeric_reading",
]
