"""Background polling of a running domain's state."""

from __future__ import annotations

import enum
import threading
import time
from typing import Callable, Optional

from vmbuilder.constants import DOMAIN_POLL_INTERVAL, SHUTDOWN_WAIT_INTERVAL
from vmbuilder.utils import log


class DomainState(enum.Enum):
    NOSTATE = "NOSTATE"
    RUNNING = "RUNNING"
    BLOCKED = "BLOCKED"
    SUSPENDED = "SUSPENDED"
    SHUTDOWN = "SHUTDOWN"
    SHUTOFF = "SHUTOFF"
    CRASHED = "CRASHED"
    PMSUSPENDED = "PMSUSPENDED"
    # The state query itself failed, e.g. the domain vanished.
    UNREACHABLE = "UNREACHABLE"


class AnyEvent:
    """Read-only view that is set as soon as any of its members is."""

    def __init__(self, *events) -> None:
        self.events = events

    def is_set(self) -> bool:
        return any(event.is_set() for event in self.events)


class Deadline:
    """Event-like object that becomes set once ``timeout`` seconds have elapsed."""

    def __init__(self, timeout: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self.expires_at = clock() + timeout

    def is_set(self) -> bool:
        return self._clock() >= self.expires_at


class DomainMonitor:
    """Polls a domain until it leaves the running state, then signals once.

    ``get_state`` is called every ``poll_interval`` seconds. Any state other
    than ``RUNNING`` ends the monitor: the observed state is stored in
    ``final_state``, ``on_end`` is invoked with it and ``ended`` is set. The
    monitor cannot be cancelled; waiters give up through ``wait`` instead.
    """

    def __init__(
        self,
        get_state: Callable[[], DomainState],
        on_end: Optional[Callable[[DomainState], None]] = None,
        poll_interval: float = DOMAIN_POLL_INTERVAL,
        name: str = "domain",
    ) -> None:
        self._get_state = get_state
        self._on_end = on_end
        self.poll_interval = poll_interval
        self.name = name
        self.ended = threading.Event()
        self.final_state: Optional[DomainState] = None
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("monitor already started")
        self._thread = threading.Thread(target=self._run, name=f"monitor-{self.name}", daemon=True)
        self._thread.start()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def _run(self) -> None:
        while True:
            time.sleep(self.poll_interval)
            state = self._get_state()
            if state is DomainState.RUNNING:
                continue
            log("DEBUG", f"Domain {self.name} state is {state.value}")
            self.final_state = state
            if self._on_end is not None:
                self._on_end(state)
            self.ended.set()
            return

    def wait(self, cancel, interval: float = SHUTDOWN_WAIT_INTERVAL) -> bool:
        """Block until the monitor signals (True) or ``cancel`` is set (False)."""
        while True:
            if self.ended.is_set():
                return True
            if cancel.is_set():
                return False
            self.ended.wait(interval)
