"""Tests for vmbuilder.monitor module."""

from __future__ import annotations

import threading
from unittest.mock import MagicMock

import pytest

from vmbuilder.monitor import AnyEvent, Deadline, DomainMonitor, DomainState


def _states(*states):
    """get_state callable returning ``states`` in order, then repeating the last."""
    remaining = list(states)

    def _next():
        if len(remaining) > 1:
            return remaining.pop(0)
        return remaining[0]

    return _next


class TestDomainMonitor:
    def test_signals_when_domain_stops(self):
        on_end = MagicMock()
        monitor = DomainMonitor(
            _states(DomainState.RUNNING, DomainState.RUNNING, DomainState.SHUTOFF),
            on_end=on_end,
            poll_interval=0.01,
        )
        monitor.start()
        assert monitor.ended.wait(2)
        monitor.join(2)
        assert monitor.final_state is DomainState.SHUTOFF
        on_end.assert_called_once_with(DomainState.SHUTOFF)

    def test_unreachable_ends_monitor(self):
        monitor = DomainMonitor(_states(DomainState.UNREACHABLE), poll_interval=0.01)
        monitor.start()
        assert monitor.wait(threading.Event(), interval=0.01) is True
        assert monitor.final_state is DomainState.UNREACHABLE

    def test_exactly_one_signal(self):
        get_state = MagicMock(side_effect=[DomainState.RUNNING, DomainState.CRASHED, DomainState.SHUTOFF])
        on_end = MagicMock()
        monitor = DomainMonitor(get_state, on_end=on_end, poll_interval=0.01)
        monitor.start()
        monitor.join(2)
        assert get_state.call_count == 2
        on_end.assert_called_once_with(DomainState.CRASHED)

    def test_cannot_start_twice(self):
        monitor = DomainMonitor(_states(DomainState.SHUTOFF), poll_interval=0.01)
        monitor.start()
        with pytest.raises(RuntimeError):
            monitor.start()

    def test_cancel_wins_while_running(self):
        monitor = DomainMonitor(_states(DomainState.RUNNING), poll_interval=0.01)
        monitor.start()
        cancel = threading.Event()
        threading.Timer(0.05, cancel.set).start()
        assert monitor.wait(cancel, interval=0.01) is False
        assert not monitor.ended.is_set()

    def test_signal_wins_over_cancel_when_both_set(self):
        monitor = DomainMonitor(_states(DomainState.SHUTOFF), poll_interval=0.01)
        monitor.ended.set()
        cancel = threading.Event()
        cancel.set()
        assert monitor.wait(cancel) is True


class TestEventHelpers:
    def test_any_event(self):
        first, second = threading.Event(), threading.Event()
        combined = AnyEvent(first, second)
        assert combined.is_set() is False
        second.set()
        assert combined.is_set() is True

    def test_deadline(self):
        now = [100.0]
        deadline = Deadline(5, clock=lambda: now[0])
        assert deadline.is_set() is False
        now[0] = 104.9
        assert deadline.is_set() is False
        now[0] = 105.0
        assert deadline.is_set() is True
