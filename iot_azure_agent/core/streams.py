"""Minimal push streams shared between the bridge components.

A :class:`LiveStream` delivers values to its listeners synchronously, in the
same event-loop turn in which :meth:`LiveStream.next` is called. Derived
streams (:meth:`LiveStream.map`, :func:`changes_only`) subscribe to their
upstream lazily, when the first listener arrives, and release it when the last
listener leaves.
"""

from __future__ import annotations

import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Generic, Optional, TypeVar

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")
U = TypeVar("U")

NextHandler = Callable[[Any], None]
ErrorHandler = Callable[[BaseException], None]
CompleteHandler = Callable[[], None]


@dataclass(slots=True, eq=False)
class _Listener:
    on_next: NextHandler
    on_error: Optional[ErrorHandler] = None
    on_complete: Optional[CompleteHandler] = None


class Subscription:
    """Handle returned by :meth:`LiveStream.subscribe`."""

    def __init__(self, stream: Optional["LiveStream[Any]"], listener: _Listener) -> None:
        self._stream = stream
        self._listener = listener

    @property
    def closed(self) -> bool:
        return self._stream is None

    def unsubscribe(self) -> None:
        stream = self._stream
        if stream is None:
            return
        self._stream = None
        stream._remove(self._listener)


class LiveStream(Generic[T]):
    """Synchronous multicast stream with optional replay of the latest value.

    When ``remember`` is true a late subscriber immediately receives the most
    recent value, which makes the stream behave like a piece of live state
    rather than a bare event feed.
    """

    def __init__(self, *, remember: bool = False, name: Optional[str] = None) -> None:
        self.remember = remember
        self.name = name or type(self).__name__
        self._listeners: list[_Listener] = []
        self._has_value = False
        self._last: Any = None
        self._error: Optional[BaseException] = None
        self._completed = False
        self._active = False

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------
    @property
    def terminated(self) -> bool:
        return self._completed or self._error is not None

    @property
    def last(self) -> Optional[T]:
        return self._last if self._has_value else None

    def subscribe(
        self,
        on_next: NextHandler,
        on_error: Optional[ErrorHandler] = None,
        on_complete: Optional[CompleteHandler] = None,
    ) -> Subscription:
        listener = _Listener(on_next, on_error, on_complete)

        if self.terminated:
            if self._error is not None:
                if on_error is not None:
                    on_error(self._error)
            elif on_complete is not None:
                on_complete()
            return Subscription(None, listener)

        replay = self.remember and self._has_value
        self._listeners.append(listener)
        if not self._active:
            self._active = True
            self._start()
        if replay:
            self._deliver(listener, self._last)
        return Subscription(self, listener)

    def map(self, transform: Callable[[T], U], *, name: Optional[str] = None) -> "LiveStream[U]":
        return _MappedStream(self, transform, name=name)

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------
    def next(self, value: T) -> None:
        if self.terminated:
            return
        if self.remember:
            self._last = value
            self._has_value = True
        for listener in list(self._listeners):
            self._deliver(listener, value)

    def error(self, exc: BaseException) -> None:
        if self.terminated:
            return
        self._error = exc
        listeners = self._drain()
        for listener in listeners:
            if listener.on_error is None:
                continue
            try:
                listener.on_error(exc)
            except Exception:
                LOGGER.exception("Error handler of stream %s raised", self.name)

    def complete(self) -> None:
        if self.terminated:
            return
        self._completed = True
        listeners = self._drain()
        for listener in listeners:
            if listener.on_complete is None:
                continue
            try:
                listener.on_complete()
            except Exception:
                LOGGER.exception("Completion handler of stream %s raised", self.name)

    # ------------------------------------------------------------------
    # Hooks for derived streams
    # ------------------------------------------------------------------
    def _start(self) -> None:
        """Called when the first listener subscribes."""

    def _stop(self) -> None:
        """Called when the last listener leaves or the stream terminates."""

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _deliver(self, listener: _Listener, value: Any) -> None:
        try:
            listener.on_next(value)
        except Exception:
            LOGGER.exception("Listener of stream %s raised", self.name)

    def _remove(self, listener: _Listener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            return
        if not self._listeners and self._active:
            self._active = False
            self._stop()

    def _drain(self) -> list[_Listener]:
        listeners = list(self._listeners)
        self._listeners.clear()
        if self._active:
            self._active = False
            self._stop()
        return listeners


class _OperatorStream(LiveStream[T], ABC):
    """Stream backed by a single subscription to an upstream stream.

    Subclasses implement :meth:`_on_upstream` to turn upstream values into
    emissions of their own.
    """

    def __init__(self, upstream: LiveStream[Any], *, name: Optional[str] = None) -> None:
        super().__init__(remember=False, name=name)
        self._upstream = upstream
        self._upstream_subscription: Optional[Subscription] = None

    def _start(self) -> None:
        self._reset()
        self._upstream_subscription = self._upstream.subscribe(
            self._on_upstream, self.error, self.complete
        )

    def _stop(self) -> None:
        subscription = self._upstream_subscription
        self._upstream_subscription = None
        if subscription is not None:
            subscription.unsubscribe()
        self._reset()

    def _reset(self) -> None:
        pass

    @abstractmethod
    def _on_upstream(self, value: Any) -> None:
        """Handle one upstream value."""


class _MappedStream(_OperatorStream[U]):
    def __init__(
        self,
        upstream: LiveStream[Any],
        transform: Callable[[Any], U],
        *,
        name: Optional[str] = None,
    ) -> None:
        super().__init__(upstream, name=name)
        self._transform = transform

    def _on_upstream(self, value: Any) -> None:
        self.next(self._transform(value))


class ChangeFilter(_OperatorStream[T]):
    """Suppresses consecutive values that are deep-equal to the last emission."""

    _UNSET = object()

    def __init__(self, upstream: LiveStream[T], *, name: Optional[str] = None) -> None:
        super().__init__(upstream, name=name)
        self._last_emitted: Any = self._UNSET

    def _reset(self) -> None:
        self._last_emitted = self._UNSET

    def _on_upstream(self, value: T) -> None:
        if self._last_emitted is not self._UNSET and self._last_emitted == value:
            return
        # Upstream may mutate the object it handed us; keep our own copy.
        self._last_emitted = copy.deepcopy(value)
        self.next(value)


def changes_only(stream: LiveStream[T], *, name: Optional[str] = None) -> LiveStream[T]:
    """Return a stream that only emits when the value actually changed."""

    return ChangeFilter(stream, name=name or f"changes_only({stream.name})")
