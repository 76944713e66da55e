"""
TransportSupervisor: owns the single bus connection and its health state machine.

All reads go through one single-worker executor, so exactly one request is on the wire.
A request that times out (or hits an I/O error) moves the connection CONNECTED ->
UNRESPONSIVE -> DISCONNECTED; a background thread then reopens it after a backoff.
"""

import logging
import threading
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Callable

from .errors import (
    InvalidTransition,
    NotConnected,
    ProtocolError,
    TransportError,
    TransportIOError,
    TransportTimeout,
)
from .transport import Transport
from .types import ConnectionState

logger = logging.getLogger(__name__)

_ALLOWED: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.DISCONNECTED: frozenset({ConnectionState.CONNECTING}),
    ConnectionState.CONNECTING: frozenset({ConnectionState.CONNECTED, ConnectionState.DISCONNECTED}),
    # CONNECTED -> DISCONNECTED only on stop()
    ConnectionState.CONNECTED: frozenset({ConnectionState.UNRESPONSIVE, ConnectionState.DISCONNECTED}),
    ConnectionState.UNRESPONSIVE: frozenset({ConnectionState.DISCONNECTED}),
}

StateListener = Callable[[ConnectionState, ConnectionState], None]


@dataclass
class SupervisorStats:
    """Counters since start; updated under the supervisor's lock, read without it."""

    requests: int = 0
    failures: int = 0
    timeouts: int = 0
    connects: int = 0
    failed_connects: int = 0


class TransportSupervisor:
    """
    Serializes reads from all device schedulers onto one Transport and keeps it connected.

    read() is safe to call from any thread. Outside CONNECTED it fails at once with
    NotConnected; nothing is queued for later.
    """

    def __init__(
        self,
        transport: Transport,
        timeout: float = 3.0,
        backoff: float | None = None,
    ) -> None:
        if timeout <= 0:
            raise ValueError(f"timeout must be positive, got {timeout}")
        self._transport = transport
        self._timeout = timeout
        self._backoff = timeout if backoff is None else backoff
        self._cond = threading.Condition()
        self._state = ConnectionState.DISCONNECTED
        self._generation = 0
        self._stopping = False
        # set when a live session was torn down; the next connect waits out the backoff
        self._torn_down = False
        self._executor = self._new_executor()
        self._thread: threading.Thread | None = None
        self._listeners: list[StateListener] = []
        self.stats = SupervisorStats()

    @staticmethod
    def _new_executor() -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=1, thread_name_prefix="bus-io")

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def timeout(self) -> float:
        return self._timeout

    @property
    def backoff(self) -> float:
        return self._backoff

    @property
    def endpoint(self) -> str:
        return getattr(self._transport, "endpoint", type(self._transport).__name__)

    def add_listener(self, listener: StateListener) -> None:
        """Call listener(old, new) after every state change, outside the supervisor's lock."""
        self._listeners.append(listener)

    def wait_for_state(self, state: ConnectionState, timeout: float | None = None) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: self._state == state, timeout)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _set_state(self, target: ConnectionState) -> ConnectionState:
        """Apply a guarded transition; caller holds self._cond. Returns the previous state."""
        current = self._state
        if target not in _ALLOWED[current]:
            raise InvalidTransition(current.value, target.value)
        self._state = target
        self._cond.notify_all()
        return current

    def _transition(self, target: ConnectionState) -> None:
        with self._cond:
            previous = self._set_state(target)
        self._notify(previous, target)

    def _notify(self, old: ConnectionState, new: ConnectionState) -> None:
        logger.info("Connection %s: %s -> %s", self.endpoint, old.value, new.value)
        for listener in self._listeners:
            try:
                listener(old, new)
            except Exception:
                logger.exception("State listener failed")

    def _connect_once(self) -> None:
        """DISCONNECTED -> CONNECTING -> CONNECTED, or back to DISCONNECTED and re-raise."""
        self._transition(ConnectionState.CONNECTING)
        try:
            self._transport.open()
        except (TransportError, OSError) as e:
            self._transition(ConnectionState.DISCONNECTED)
            with self._cond:
                self.stats.failed_connects += 1
            if isinstance(e, TransportError):
                raise
            raise TransportIOError(f"Failed to open {self.endpoint}: {e}", cause=e) from e
        with self._cond:
            self._generation += 1
            self.stats.connects += 1
            previous = self._set_state(ConnectionState.CONNECTED)
        self._notify(previous, ConnectionState.CONNECTED)

    def _mark_failed(self, generation: int, error: TransportError) -> None:
        """CONNECTED -> UNRESPONSIVE -> DISCONNECTED for the session that produced error."""
        with self._cond:
            if generation != self._generation or self._state != ConnectionState.CONNECTED:
                return  # another caller already tore this session down
            previous = self._set_state(ConnectionState.UNRESPONSIVE)
            self._torn_down = True
            stale = self._executor
            self._executor = self._new_executor()
        logger.warning("Connection %s unresponsive: %s", self.endpoint, error)
        self._notify(previous, ConnectionState.UNRESPONSIVE)
        # Requests queued behind the failed one are cancelled; their callers see NotConnected
        stale.shutdown(wait=False, cancel_futures=True)
        self._transport.close()
        with self._cond:
            if self._state != ConnectionState.UNRESPONSIVE:
                return  # stop() got there first
            self._set_state(ConnectionState.DISCONNECTED)
        self._notify(ConnectionState.UNRESPONSIVE, ConnectionState.DISCONNECTED)

    def _reconnect_loop(self) -> None:
        while True:
            with self._cond:
                self._cond.wait_for(lambda: self._stopping or self._state == ConnectionState.DISCONNECTED)
                if self._stopping:
                    return
                if self._torn_down:
                    self._torn_down = False
                    logger.info("Reconnecting to %s in %.1fs", self.endpoint, self._backoff)
                    if self._cond.wait_for(lambda: self._stopping, self._backoff):
                        return
            try:
                self._connect_once()
                continue
            except TransportError as e:
                logger.warning("Reconnect to %s failed: %s; retrying in %.1fs", self.endpoint, e, self._backoff)
            with self._cond:
                if self._cond.wait_for(lambda: self._stopping, self._backoff):
                    return

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, wait: bool = True) -> None:
        """
        Start supervising the connection.

        With wait=True the first connect happens in the calling thread and a failure raises
        TransportIOError (nothing is started). With wait=False the background thread connects.
        """
        if self._thread is not None:
            raise RuntimeError("Supervisor already started")
        with self._cond:
            self._stopping = False
            self._torn_down = False
        if wait:
            self._connect_once()
        self._thread = threading.Thread(target=self._reconnect_loop, name="bus-reconnect", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop reconnecting, cancel queued reads and close the connection."""
        with self._cond:
            self._stopping = True
            self._cond.notify_all()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        with self._cond:
            stale = self._executor
            self._executor = self._new_executor()
            self._generation += 1
        stale.shutdown(wait=False, cancel_futures=True)
        self._transport.close()
        with self._cond:
            if self._state == ConnectionState.DISCONNECTED:
                return
            previous = self._set_state(ConnectionState.DISCONNECTED)
        self._notify(previous, ConnectionState.DISCONNECTED)

    def __enter__(self) -> "TransportSupervisor":
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        self.stop()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _dispatch(
        self, started: threading.Event, generation: int, unit_id: int, address: int, count: int
    ) -> list[int]:
        # Runs on the bus-io worker: the only place the transport is used for reads
        started.set()
        with self._cond:
            live = generation == self._generation and self._state == ConnectionState.CONNECTED
        if not live:
            raise NotConnected(
                f"Connection {self.endpoint} was reset",
                unit_id=unit_id,
                address=address,
                count=count,
            )
        return self._transport.read(unit_id, address, count)

    def read(self, unit_id: int, address: int, count: int) -> list[int]:
        """
        Read count input registers from unit_id starting at address.

        Blocks while earlier requests are served, then at most `timeout` seconds for this one.
        Raises NotConnected, TransportTimeout, TransportIOError or ProtocolError.
        """
        ctx = {"unit_id": unit_id, "address": address, "count": count}
        with self._cond:
            if self._state != ConnectionState.CONNECTED:
                raise NotConnected(f"Connection {self.endpoint} is {self._state.value}", **ctx)
            generation = self._generation
            executor = self._executor
            self.stats.requests += 1

        started = threading.Event()
        try:
            future: Future[list[int]] = executor.submit(
                self._dispatch, started, generation, unit_id, address, count
            )
        except RuntimeError as e:
            # executor was shut down between the state check and submit
            raise NotConnected(f"Connection {self.endpoint} was reset", cause=e, **ctx) from e
        # A cancelled request never starts; the callback releases its caller
        future.add_done_callback(lambda _f: started.set())
        started.wait()

        # The timeout covers this request only, not the wait behind earlier ones
        try:
            return future.result(timeout=self._timeout)
        except CancelledError as e:
            raise NotConnected(f"Connection {self.endpoint} was reset", cause=e, **ctx) from e
        except FutureTimeout as e:
            self._count_failure(timeout=True)
            error = TransportTimeout(
                f"No response from unit {unit_id} within {self._timeout:.1f}s", cause=e, **ctx
            )
            self._mark_failed(generation, error)
            raise error from e
        except TransportTimeout as e:
            self._count_failure(timeout=True)
            self._mark_failed(generation, e)
            raise
        except TransportIOError as e:
            self._count_failure()
            self._mark_failed(generation, e)
            raise
        except (ProtocolError, NotConnected):
            self._count_failure()
            raise

    def _count_failure(self, timeout: bool = False) -> None:
        with self._cond:
            self.stats.failures += 1
            if timeout:
                self.stats.timeouts += 1
