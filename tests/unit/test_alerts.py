"""Unit tests for alert interpretation and dispatch."""

from __future__ import annotations

import pytest

from spdtool.protocol.alerts import AlertDispatcher, AlertKind, interpret_alert


class TestInterpretAlert:
    """Test the alert code table."""

    @pytest.mark.parametrize(
        "code, kind, description",
        [
            (0x21, AlertKind.READY, "Ready"),
            (0x2B, AlertKind.SLAVE_COUNT_INCREASED, "Slave Count Increased"),
            (0x2D, AlertKind.SLAVE_COUNT_DECREASED, "Slave Count Decreased"),
            (0x2F, AlertKind.CLOCK_INCREASED, "Clock Speed Increased"),
            (0x5C, AlertKind.CLOCK_DECREASED, "Clock Speed Decreased"),
        ],
    )
    def test_known_codes(self, code, kind, description):
        event = interpret_alert(code)
        assert event.kind == kind
        assert event.description == description

    def test_unknown_code_keeps_value(self):
        event = interpret_alert(0x99)
        assert event.kind == AlertKind.UNKNOWN
        assert event.code == 0x99
        assert "0x99" in event.description

    def test_bus_change_flag(self):
        assert interpret_alert(0x2B).is_bus_change
        assert not interpret_alert(0x2F).is_bus_change

    def test_str(self):
        assert str(interpret_alert(0x2D)) == "Alert: Slave Count Decreased (0x2D)"


class TestAlertDispatcher:
    """Test subscription and fan-out."""

    def test_every_handler_called_once(self):
        dispatcher = AlertDispatcher()
        a, b = [], []
        dispatcher.subscribe(a.append)
        dispatcher.subscribe(b.append)

        dispatcher.dispatch(0x2B)

        assert len(a) == 1 and len(b) == 1

    def test_unsubscribe(self):
        dispatcher = AlertDispatcher()
        seen = []
        unsubscribe = dispatcher.subscribe(seen.append)
        unsubscribe()

        dispatcher.dispatch(0x2B)

        assert seen == []
        assert dispatcher.handler_count == 0

    def test_failing_handler_does_not_stop_others(self):
        dispatcher = AlertDispatcher()
        seen = []

        def broken(event):
            raise RuntimeError("boom")

        dispatcher.subscribe(broken)
        dispatcher.subscribe(seen.append)

        event = dispatcher.dispatch(0x2F)

        assert seen == [event]

    def test_queue_subscription(self):
        dispatcher = AlertDispatcher()
        q = dispatcher.subscribe_queue()

        dispatcher.dispatch(0x2B)
        dispatcher.dispatch(0x2D)

        assert q.get_nowait().kind == AlertKind.SLAVE_COUNT_INCREASED
        assert q.get_nowait().kind == AlertKind.SLAVE_COUNT_DECREASED

    def test_bounded_queue_drops_when_full(self):
        dispatcher = AlertDispatcher()
        q = dispatcher.subscribe_queue(maxsize=1)

        dispatcher.dispatch(0x2B)
        dispatcher.dispatch(0x2D)

        assert q.qsize() == 1
        assert q.get_nowait().code == 0x2B

    def test_unsubscribe_queue(self):
        dispatcher = AlertDispatcher()
        q = dispatcher.subscribe_queue()
        dispatcher.unsubscribe_queue(q)

        dispatcher.dispatch(0x2B)

        assert q.empty()
        assert dispatcher.handler_count == 0
        # Releasing twice is harmless
        dispatcher.unsubscribe_queue(q)

    def test_dispatching_flag_only_inside_handlers(self):
        dispatcher = AlertDispatcher()
        observed = []
        dispatcher.subscribe(lambda event: observed.append(dispatcher.dispatching))

        assert not dispatcher.dispatching
        dispatcher.dispatch(0x21)
        assert observed == [True]
        assert not dispatcher.dispatching
