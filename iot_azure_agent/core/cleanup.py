"""Ordered teardown of resources acquired while the agent starts."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

LOGGER = logging.getLogger(__name__)

CleanupAction = Callable[[], Awaitable[None]]


class CleanupStack:
    """Runs registered async teardown actions in reverse order, once.

    Every component registers the close coroutine of a resource right after
    acquiring it. :meth:`run_all` may be triggered from several places (signal
    handlers, stream failure, normal exit); all callers share a single drain.
    """

    def __init__(self) -> None:
        self._actions: list[tuple[str, CleanupAction]] = []
        self._drain: Optional[asyncio.Task[None]] = None

    def __len__(self) -> int:
        return len(self._actions)

    @property
    def started(self) -> bool:
        return self._drain is not None

    @property
    def finished(self) -> bool:
        return self._drain is not None and self._drain.done()

    def register(self, action: CleanupAction, *, name: Optional[str] = None) -> None:
        if self._drain is not None:
            raise RuntimeError("Cleanup already started; cannot register new actions")
        label = name or getattr(action, "__qualname__", repr(action))
        self._actions.append((label, action))

    async def run_all(self) -> None:
        if self._drain is None:
            self._drain = asyncio.ensure_future(self._run())
        else:
            LOGGER.info("Cleanup already in progress; waiting for it to finish")
        # Shield so a cancelled caller does not abort the teardown for others.
        await asyncio.shield(self._drain)

    async def _run(self) -> None:
        actions = list(reversed(self._actions))
        LOGGER.debug("Running %d cleanup actions", len(actions))
        for label, action in actions:
            LOGGER.debug("Cleanup: %s", label)
            try:
                await action()
            except Exception:
                LOGGER.exception("Cleanup action %s failed", label)
        LOGGER.info("Cleanup finished")
