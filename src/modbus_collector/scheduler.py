"""DeviceScheduler: one timer thread per device, all-or-nothing ticks, skip-on-overrun."""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Protocol

from .codec import ReadSpan, decode, plan_reads, slice_words
from .errors import DecodeError, NotConnected, SinkConfigError, SinkError, TransportError
from .sink import Sink
from .types import Device, InputRegister, Measurement

logger = logging.getLogger(__name__)


class RegisterReader(Protocol):
    """Anything that serves serialized register reads; normally the TransportSupervisor."""

    def read(self, unit_id: int, address: int, count: int) -> list[int]: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TickResult:
    """Outcome of one tick; measurements is empty whenever reading failed."""

    unit_id: int
    measurements: list[Measurement] = field(default_factory=list)
    error: Exception | None = None
    forwarded: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


class DeviceScheduler:
    """
    Fires a tick for one device every scan_interval, measured from the previous
    scheduled time. A tick that overruns causes the missed slots to be skipped, never queued.
    """

    def __init__(
        self,
        device: Device,
        reader: RegisterReader,
        sink: Sink,
        coalesce: bool = True,
        round_timestamps: bool = False,
        on_fatal: Callable[[BaseException], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
        wallclock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.device = device
        self._reader = reader
        self._sink = sink
        self._round = round_timestamps
        self._on_fatal = on_fatal
        self._clock = clock
        self._wallclock = wallclock
        self._spans: list[ReadSpan] = plan_reads(device.registers, coalesce=coalesce)
        self._tick_guard = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.ticks = 0
        self.failed_ticks = 0
        self.missed_ticks = 0

    @property
    def spans(self) -> list[ReadSpan]:
        return list(self._spans)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _timestamp(self) -> datetime:
        now = self._wallclock()
        if not self._round:
            return now
        interval = self.device.scan_interval
        return datetime.fromtimestamp((now.timestamp() // interval) * interval, tz=timezone.utc)

    def _measure(self, register: InputRegister, words: list[int], timestamp: datetime) -> Measurement:
        value = decode(register.data_type, words)
        if register.scaling != 1.0:
            value = value * register.scaling
        return Measurement(
            name=register.name,
            value=value,
            tags=self.device.merged_tags(register),
            timestamp=timestamp,
        )

    def collect(self) -> list[Measurement]:
        """
        Read every span, then decode all registers with one shared timestamp.

        Raises on the first failed read; nothing is decoded until all reads succeeded.
        """
        words_by_register: dict[str, list[int]] = {}
        for span in self._spans:
            words = self._reader.read(self.device.unit_id, span.start, span.count)
            for reg in span.registers:
                words_by_register[reg.name] = slice_words(span, words, reg)
        timestamp = self._timestamp()
        return [self._measure(reg, words_by_register[reg.name], timestamp) for reg in self.device.registers]

    def tick(self) -> TickResult | None:
        """
        Run one read-and-forward cycle. Returns None without doing anything if a tick for
        this device is already in progress. SinkConfigError propagates.
        """
        if not self._tick_guard.acquire(blocking=False):
            self.missed_ticks += 1
            logger.warning("%s: previous tick still running, skipping", self.device.label)
            return None
        try:
            return self._run_tick()
        finally:
            self._tick_guard.release()

    def _run_tick(self) -> TickResult:
        self.ticks += 1
        result = TickResult(unit_id=self.device.unit_id)
        try:
            measurements = self.collect()
        except NotConnected as e:
            self.failed_ticks += 1
            logger.info("%s: not connected, tick skipped: %s", self.device.label, e)
            result.error = e
            return result
        except TransportError as e:
            self.failed_ticks += 1
            logger.warning("%s: read failed, tick discarded: %s", self.device.label, e)
            result.error = e
            return result
        except DecodeError as e:
            self.failed_ticks += 1
            logger.error("%s: decode failed, tick discarded: %s", self.device.label, e)
            result.error = e
            return result

        result.measurements = measurements
        if not measurements:
            return result
        try:
            self._sink.write(measurements)
            result.forwarded = True
        except SinkConfigError:
            raise
        except SinkError as e:
            logger.warning("%s: sink unavailable, dropped %d measurement(s): %s", self.device.label, len(measurements), e)
            result.error = e
        logger.debug("%s: tick done, %d measurement(s)", self.device.label, len(measurements))
        return result

    def _run(self) -> None:
        interval = self.device.scan_interval
        next_due = self._clock()
        while not self._stop.is_set():
            delay = next_due - self._clock()
            if delay > 0 and self._stop.wait(delay):
                break
            try:
                self.tick()
            except SinkConfigError as e:
                logger.error("%s: sink misconfigured, stopping: %s", self.device.label, e)
                if self._on_fatal is not None:
                    self._on_fatal(e)
                break
            except Exception:
                self.failed_ticks += 1
                logger.exception("%s: unexpected error during tick", self.device.label)

            next_due += interval
            now = self._clock()
            if now > next_due:
                skipped = int((now - next_due) // interval) + 1
                next_due += skipped * interval
                self.missed_ticks += skipped
                logger.warning("%s: tick overran its %.3fs interval, skipped %d tick(s)", self.device.label, interval, skipped)

    def start(self) -> None:
        if self.running:
            raise RuntimeError(f"{self.device.label}: scheduler already running")
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=f"device-{self.device.unit_id}", daemon=True)
        self._thread.start()
        logger.debug("%s: scheduled every %.3fs, %d read(s) per tick", self.device.label, self.device.scan_interval, len(self._spans))

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
