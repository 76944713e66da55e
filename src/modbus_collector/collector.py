"""Collector: wires the transport supervisor, one scheduler per device, and the sink."""

import logging
import threading

from .config import CollectorConfig
from .scheduler import DeviceScheduler, TickResult
from .sink import Sink
from .supervisor import TransportSupervisor
from .transport import ModbusTransport, Transport

logger = logging.getLogger(__name__)


def build_transport(config: CollectorConfig) -> ModbusTransport:
    m = config.modbus
    return ModbusTransport(host=m.hostname, port=m.port, protocol=m.protocol, timeout=m.timeout)


class Collector:
    """
    Polls every configured device on its own timer over one shared connection.

    Use start()/stop(), or run() to block until stop() is called from another thread
    (or the sink reports a fatal error, which run() re-raises).
    """

    def __init__(
        self,
        config: CollectorConfig,
        sink: Sink,
        transport: Transport | None = None,
    ) -> None:
        self._config = config
        self._sink = sink
        self._transport = transport if transport is not None else build_transport(config)
        self.supervisor = TransportSupervisor(
            self._transport,
            timeout=config.modbus.timeout,
            backoff=config.modbus.effective_backoff,
        )
        self.schedulers = [
            DeviceScheduler(
                device,
                self.supervisor,
                sink,
                coalesce=config.modbus.coalesce,
                round_timestamps=config.modbus.round_timestamps,
                on_fatal=self._fatal,
            )
            for device in config.devices
        ]
        self._done = threading.Event()
        self._lock = threading.Lock()
        self._fatal_error: BaseException | None = None
        self._started = False

    @property
    def config(self) -> CollectorConfig:
        return self._config

    def _fatal(self, error: BaseException) -> None:
        if self._fatal_error is None:
            self._fatal_error = error
        self._done.set()

    def scheduler(self, unit_id: int) -> DeviceScheduler:
        for s in self.schedulers:
            if s.device.unit_id == unit_id:
                return s
        raise KeyError(unit_id)

    def start(self, wait: bool = True) -> None:
        """
        Open the connection and start every device timer.

        With wait=True a failure to open the connection raises TransportIOError and
        nothing is started.
        """
        if self._started:
            raise RuntimeError("Collector already started")
        self._done.clear()
        self.supervisor.start(wait=wait)
        for s in self.schedulers:
            s.start()
        self._started = True
        logger.info(
            "Collector started: %d device(s) on %s",
            len(self.schedulers),
            self.supervisor.endpoint,
        )

    def stop(self) -> None:
        """Stop every device timer, then close the connection. Safe to call twice."""
        self._done.set()
        with self._lock:
            if not self._started:
                return
            for s in self.schedulers:
                s.stop()
            self.supervisor.stop()
            self._started = False
        logger.info("Collector stopped")

    def run(self) -> None:
        """Start, block until stop() or a fatal sink error, then shut down."""
        self.start()
        try:
            self._done.wait()
        finally:
            self.stop()
        if self._fatal_error is not None:
            raise self._fatal_error

    def poll_once(self, unit_id: int | None = None) -> list[TickResult]:
        """
        Run a single tick for one device (or all) without starting the timers.

        The connection must already be open (start the supervisor first).
        """
        schedulers = self.schedulers if unit_id is None else [self.scheduler(unit_id)]
        results: list[TickResult] = []
        for s in schedulers:
            result = s.tick()
            if result is not None:
                results.append(result)
        return results

    def __enter__(self) -> "Collector":
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        self.stop()
