"""Dispatch of asynchronous device alerts to registered observers.

Alerts are delivered synchronously from the thread that is waiting for a
response, while that thread holds the exclusive channel section. Handlers
must not issue commands themselves; they should hand work off (for example
through :meth:`AlertDispatcher.subscribe_queue`).
"""

from __future__ import annotations

import queue
import threading
from collections.abc import Callable
from enum import StrEnum

from pydantic import BaseModel, ConfigDict

from spdtool.protocol.types import AlertCode
from spdtool.utils.logging import get_logger

logger = get_logger(__name__)


class AlertKind(StrEnum):
    READY = "ready"
    SLAVE_COUNT_INCREASED = "slave_count_increased"
    SLAVE_COUNT_DECREASED = "slave_count_decreased"
    CLOCK_INCREASED = "clock_increased"
    CLOCK_DECREASED = "clock_decreased"
    UNKNOWN = "unknown"


_ALERT_MEANINGS: dict[int, tuple[AlertKind, str]] = {
    AlertCode.READY: (AlertKind.READY, "Ready"),
    AlertCode.SLAVE_COUNT_INCREASED: (AlertKind.SLAVE_COUNT_INCREASED, "Slave Count Increased"),
    AlertCode.SLAVE_COUNT_DECREASED: (AlertKind.SLAVE_COUNT_DECREASED, "Slave Count Decreased"),
    AlertCode.CLOCK_INCREASED: (AlertKind.CLOCK_INCREASED, "Clock Speed Increased"),
    AlertCode.CLOCK_DECREASED: (AlertKind.CLOCK_DECREASED, "Clock Speed Decreased"),
}


class AlertEvent(BaseModel):
    """An alert code paired with its interpreted meaning."""

    model_config = ConfigDict(frozen=True)

    code: int
    kind: AlertKind
    description: str

    @property
    def is_bus_change(self) -> bool:
        return self.kind in (AlertKind.SLAVE_COUNT_INCREASED, AlertKind.SLAVE_COUNT_DECREASED)

    def __str__(self) -> str:
        return f"Alert: {self.description} (0x{self.code:02X})"


def interpret_alert(code: int) -> AlertEvent:
    """Map a raw alert code onto the closed set of meanings."""
    kind, description = _ALERT_MEANINGS.get(
        code, (AlertKind.UNKNOWN, f"Unknown (0x{code:02X})")
    )
    return AlertEvent(code=code, kind=kind, description=description)


AlertHandler = Callable[[AlertEvent], None]


class AlertDispatcher:
    """Fan-out of alert events to subscribed handlers."""

    def __init__(self) -> None:
        self._handlers: list[AlertHandler] = []
        self._queue_handlers: dict[int, AlertHandler] = {}
        self._lock = threading.Lock()
        self._local = threading.local()

    @property
    def handler_count(self) -> int:
        with self._lock:
            return len(self._handlers)

    @property
    def dispatching(self) -> bool:
        """True if the calling thread is currently running alert handlers."""
        return getattr(self._local, "depth", 0) > 0

    def subscribe(self, handler: AlertHandler) -> Callable[[], None]:
        """Register *handler*; returns a callable that unsubscribes it."""
        with self._lock:
            self._handlers.append(handler)
        return lambda: self.unsubscribe(handler)

    def unsubscribe(self, handler: AlertHandler) -> None:
        with self._lock:
            if handler in self._handlers:
                self._handlers.remove(handler)

    def subscribe_queue(self, maxsize: int = 0) -> queue.Queue[AlertEvent]:
        """Subscribe a queue that receives every event for later processing.

        Events are dropped with a warning when a bounded queue is full.
        """
        q: queue.Queue[AlertEvent] = queue.Queue(maxsize=maxsize)

        def _enqueue(event: AlertEvent) -> None:
            try:
                q.put_nowait(event)
            except queue.Full:
                logger.warning("alert_queue_full", code=f"0x{event.code:02X}")

        with self._lock:
            self._queue_handlers[id(q)] = _enqueue
        self.subscribe(_enqueue)
        return q

    def unsubscribe_queue(self, q: queue.Queue[AlertEvent]) -> None:
        """Stop feeding a queue returned by :meth:`subscribe_queue`."""
        with self._lock:
            handler = self._queue_handlers.pop(id(q), None)
        if handler is not None:
            self.unsubscribe(handler)

    def dispatch(self, code: int) -> AlertEvent:
        """Interpret *code* and deliver it once to every handler.

        A failing handler is logged and does not stop delivery to the
        remaining handlers or the caller's pending request.
        """
        event = interpret_alert(code)
        logger.info("alert_received", code=f"0x{code:02X}", kind=event.kind.value)

        with self._lock:
            handlers = list(self._handlers)

        self._local.depth = getattr(self._local, "depth", 0) + 1
        try:
            for handler in handlers:
                try:
                    handler(event)
                except Exception:
                    logger.exception("alert_handler_failed", code=f"0x{code:02X}")
        finally:
            self._local.depth -= 1
        return event
