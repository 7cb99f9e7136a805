"""Tracking of which SPD addresses are populated while the programmer is idle.

The bus is rescanned on a fixed interval, and immediately when the
programmer raises a slave-count alert. Alerts arrive through a queue
subscribed on the client's dispatcher, so nothing is sent to the device
from inside an alert handler.
"""

from __future__ import annotations

import queue
import time

from spdtool.device.client import SpdToolClient
from spdtool.device.models import BusChange
from spdtool.exceptions import SpdToolError
from spdtool.protocol.alerts import AlertEvent
from spdtool.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_INTERVAL_S = 2.0

# Longest single listen between checks of the alert queue
_LISTEN_SLICE_S = 0.1


class BusMonitor:
    """Rescans the SPD bus on a timer and on slave-count alerts."""

    def __init__(self, client: SpdToolClient, interval_s: float = DEFAULT_INTERVAL_S) -> None:
        self._client = client
        self._interval_s = interval_s
        self._events: queue.Queue[AlertEvent] | None = None
        self._present: list[int] = []

    @property
    def present(self) -> list[int]:
        return list(self._present)

    def start(self) -> list[int]:
        """Subscribe to alerts and take the initial population."""
        if self._events is None:
            self._events = self._client.alerts.subscribe_queue()
        self._present = self._client.scan_bus()
        logger.info(
            "bus_monitor_started",
            interval_s=self._interval_s,
            present=[f"0x{a:02X}" for a in self._present],
        )
        return self.present

    def stop(self) -> None:
        if self._events is not None:
            self._client.alerts.unsubscribe_queue(self._events)
            self._events = None
        logger.info("bus_monitor_stopped")

    def poll(self) -> BusChange:
        """Wait out one interval, or less if the bus changes, then rescan."""
        if self._events is None:
            self.start()

        deadline = time.monotonic() + self._interval_s
        trigger = "interval"
        while True:
            if self._bus_change_pending():
                trigger = "alert"
                break
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            self._client.wait_for_alerts(min(remaining, _LISTEN_SLICE_S))
        return self._rescan(trigger)

    def _bus_change_pending(self) -> bool:
        seen = False
        while True:
            try:
                event = self._events.get_nowait()
            except queue.Empty:
                return seen
            if event.is_bus_change:
                logger.debug("bus_change_alert", code=f"0x{event.code:02X}")
                seen = True

    def _rescan(self, trigger: str) -> BusChange:
        try:
            present = self._client.scan_bus()
        except SpdToolError as exc:
            if not exc.retryable:
                raise
            # Keep the last known population until a scan succeeds
            logger.warning("bus_scan_failed", error=str(exc), kind=exc.kind.value)
            return BusChange(present=self.present, trigger=trigger)

        before, after = set(self._present), set(present)
        change = BusChange(
            present=present,
            added=sorted(after - before),
            removed=sorted(before - after),
            trigger=trigger,
        )
        self._present = present
        if change.changed:
            logger.info(
                "bus_population_changed",
                trigger=trigger,
                added=[f"0x{a:02X}" for a in change.added],
                removed=[f"0x{a:02X}" for a in change.removed],
            )
        return change

    def __enter__(self) -> BusMonitor:
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        self.stop()
