"""Health reporting for iot-azure-agent."""

from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional

from aiohttp import web

LOGGER = logging.getLogger(__name__)

COMPONENT_OPCUA = "opcua"
COMPONENT_IOTHUB = "iothub"
COMPONENT_TELEMETRY = "telemetry"
COMPONENT_RELAY = "relay"

COMPONENTS = (COMPONENT_OPCUA, COMPONENT_IOTHUB, COMPONENT_TELEMETRY, COMPONENT_RELAY)


@dataclass(slots=True)
class ComponentStatus:
    name: str
    healthy: bool
    detail: Optional[str] = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "healthy": self.healthy,
            "detail": self.detail,
            "updatedAt": self.updated_at.isoformat(timespec="seconds"),
        }


class HealthReporter:
    """Tracks the bridge components and the agent lifecycle state.

    Every known component starts out unhealthy with a ``pending`` detail, so
    the endpoint reports 503 until the bridge is fully up.
    """

    def __init__(self, components: tuple[str, ...] = COMPONENTS) -> None:
        self._status: Dict[str, ComponentStatus] = {
            name: ComponentStatus(name=name, healthy=False, detail="pending")
            for name in components
        }
        self._agent_state = ComponentStatus(name="agent", healthy=False, detail="starting")

    def update(self, name: str, healthy: bool, detail: Optional[str] = None) -> None:
        previous = self._status.get(name)
        if previous is None or previous.healthy != healthy:
            LOGGER.debug(
                "Component %s is now %s%s",
                name,
                "healthy" if healthy else "unhealthy",
                f" ({detail})" if detail else "",
            )
        self._status[name] = ComponentStatus(name=name, healthy=healthy, detail=detail)

    def set_agent_state(self, state: str, *, healthy: bool) -> None:
        self._agent_state = ComponentStatus(name="agent", healthy=healthy, detail=state)

    def component(self, name: str) -> Optional[ComponentStatus]:
        return self._status.get(name)

    @property
    def healthy(self) -> bool:
        return self._agent_state.healthy and all(
            status.healthy for status in self._status.values()
        )

    def snapshot(self) -> Dict[str, object]:
        return {
            "status": "ok" if self.healthy else "degraded",
            "components": [status.as_dict() for status in self._status.values()],
            "agentState": {
                "state": self._agent_state.detail,
                "healthy": self._agent_state.healthy,
                "updatedAt": self._agent_state.updated_at.isoformat(timespec="seconds"),
            },
        }


class HealthServer:
    """Minimal HTTP server exposing `/healthz` for status checks."""

    def __init__(self, reporter: HealthReporter, host: str, port: int) -> None:
        self._reporter = reporter
        self._host = host
        self._port = port
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    async def start(self) -> None:
        app = web.Application()
        app.router.add_get("/healthz", self._handle_health)

        self._runner = web.AppRunner(app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._host, self._port)
        await self._site.start()
        LOGGER.info(
            "Health endpoint listening on http://%s:%s/healthz", self._host, self._port
        )

    async def stop(self) -> None:
        with contextlib.suppress(Exception):
            if self._site is not None:
                await self._site.stop()
        if self._runner is not None:
            await self._runner.cleanup()
        self._site = None
        self._runner = None

    async def _handle_health(self, request: web.Request) -> web.Response:
        snapshot = self._reporter.snapshot()
        status = 200 if snapshot["status"] == "ok" else 503
        return web.json_response(snapshot, status=status)
