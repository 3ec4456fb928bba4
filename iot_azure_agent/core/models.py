"""Domain models shared by the device and cloud sides of the bridge."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Sequence


@dataclass(frozen=True, slots=True)
class MethodResult:
    """Outcome of a device write or method call.

    ``status_code`` follows the protocol convention where 0 means success.
    """

    status_code: int = 0
    name: str = "Good"
    description: str = ""

    @property
    def ok(self) -> bool:
        return self.status_code == 0

    @property
    def text(self) -> str:
        label = f"{self.name} (0x{self.status_code:08X})"
        if self.description:
            return f"{label}: {self.description}"
        return label

    def __str__(self) -> str:
        return self.text


def numeric_reading(value: Any) -> Any:
    """Flatten a counter reading into a plain number.

    64-bit counters may arrive split into ``[high, low]`` 32-bit words.
    """

    if isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
        if len(value) == 2 and all(isinstance(part, int) for part in value):
            high, low = value
            return (high << 32) + low
        if len(value) == 1:
            return value[0]
    return value


@dataclass(frozen=True, slots=True)
class TelemetrySnapshot:
    """Periodic telemetry record derived from the device state."""

    name: str
    production_status: Optional[int]
    workorder_id: Optional[str]
    good_count: Optional[int]
    bad_count: Optional[int]
    temperature: Optional[float]

    @classmethod
    def from_state(cls, state: Mapping[str, Any], *, name: str) -> "TelemetrySnapshot":
        return cls(
            name=name,
            production_status=state.get("ProductionStatus"),
            workorder_id=state.get("WorkorderId"),
            good_count=numeric_reading(state.get("GoodCount")),
            bad_count=numeric_reading(state.get("BadCount")),
            temperature=state.get("Temperature"),
        )

    def as_message(self) -> Dict[str, Any]:
        return {
            "type": "telemetry",
            "ProductionStatus": self.production_status,
            "WorkorderId": self.workorder_id,
            "GoodCount": self.good_count,
            "BadCount": self.bad_count,
            "Temperature": self.temperature,
            "Name": self.name,
        }
