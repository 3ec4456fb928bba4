"""Protocol definitions for the device session the bridge talks to."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Protocol, Sequence

from .models import MethodResult

ChangeCallback = Callable[[str, Any], None]
StatusCallback = Callable[[int, str], None]


@dataclass(frozen=True, slots=True)
class SubscriptionParameters:
    """Monitored item subscription settings, in milliseconds."""

    publishing_interval: float
    sampling_interval: float
    lifetime_count: int
    keepalive_count: int
    queue_size: int
    discard_oldest: bool = True


class SubscriptionHandle(Protocol):
    async def delete(self) -> None:
        """Remove the monitored items and the subscription itself."""
        ...


class DeviceSession(Protocol):
    """Minimal contract for an open session against the device server."""

    async def read_display_names(self, node_ids: Sequence[str]) -> list[int]:
        """Read the DisplayName attribute of every node.

        Returns one status code per node, in request order (0 = good).
        """
        ...

    async def read_values(self, node_ids: Sequence[str]) -> list[Any]:
        """Read the current value of every node, in request order."""
        ...

    async def write_value(self, node_id: str, value: Any) -> MethodResult:
        """Write a new value to a variable node."""
        ...

    async def call_method(self, object_id: str, method_id: str) -> MethodResult:
        """Invoke a method without input arguments on an object node."""
        ...

    async def subscribe(
        self,
        node_ids: Sequence[str],
        parameters: SubscriptionParameters,
        on_change: ChangeCallback,
        on_status: StatusCallback,
    ) -> SubscriptionHandle:
        """Create a subscription delivering data changes keyed by node id."""
        ...
