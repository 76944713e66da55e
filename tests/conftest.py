"""Shared fixtures: an in-process Transport stub that records concurrency."""

import threading
import time
from typing import Callable

import pytest

from modbus_collector.errors import TransportIOError
from modbus_collector.types import ConnectionState

Responder = Callable[[int, int, int], list[int]]


class StubTransport:
    """
    Transport stand-in. Each read asks `responder(unit_id, address, count)`; the default
    returns `address + i` for each word. Tracks opens, closes and the peak number of
    reads in flight at once.
    """

    endpoint = "stub://bus"

    def __init__(self, responder: Responder | None = None, delay: float = 0.0) -> None:
        self.responder = responder or (lambda unit, addr, count: [(addr + i) & 0xFFFF for i in range(count)])
        self.delay = delay
        self.open_failures = 0
        self.opens = 0
        self.closes = 0
        self.calls: list[tuple[int, int, int]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.released = threading.Event()
        self._lock = threading.Lock()

    def open(self) -> None:
        with self._lock:
            if self.open_failures > 0:
                self.open_failures -= 1
                raise TransportIOError("stub: connection refused")
            self.opens += 1
            self.released.clear()

    def close(self) -> None:
        with self._lock:
            self.closes += 1
        # unblocks any read hanging on the old session
        self.released.set()

    def read(self, unit_id: int, address: int, count: int) -> list[int]:
        with self._lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            self.calls.append((unit_id, address, count))
        try:
            if self.delay:
                time.sleep(self.delay)
            return self.responder(unit_id, address, count)
        finally:
            with self._lock:
                self.in_flight -= 1

    def hang(self) -> list[int]:
        """For responders: block until the session is closed, like a dead TCP peer."""
        self.released.wait(5.0)
        raise TransportIOError("stub: connection closed while waiting")


class StateRecorder:
    def __init__(self) -> None:
        self.transitions: list[tuple[ConnectionState, ConnectionState]] = []
        self._lock = threading.Lock()

    def __call__(self, old: ConnectionState, new: ConnectionState) -> None:
        with self._lock:
            self.transitions.append((old, new))

    @property
    def states(self) -> list[ConnectionState]:
        with self._lock:
            return [new for _old, new in self.transitions]


def contains_sequence(states: list[ConnectionState], expected: list[ConnectionState]) -> bool:
    """True if expected appears as a contiguous run in states."""
    n = len(expected)
    return any(states[i : i + n] == expected for i in range(len(states) - n + 1))


@pytest.fixture
def stub_transport() -> StubTransport:
    return StubTransport()


@pytest.fixture
def recorder() -> StateRecorder:
    return StateRecorder()
