"""Sink interface plus console and in-memory sinks for measurement batches."""

import json
import math
import logging
import threading
from typing import Protocol, Sequence, TextIO

import typer

from .errors import SinkConfigError, SinkUnavailable
from .types import Measurement

logger = logging.getLogger(__name__)

FORMATS = ("text", "json", "csv")


class Sink(Protocol):
    """
    Persists measurement batches.

    write() receives a non-empty batch and raises SinkUnavailable for transient failures
    (the batch is dropped) or SinkConfigError when the sink can never succeed.
    """

    def write(self, batch: Sequence[Measurement]) -> None: ...


def format_value(value: int | float) -> str:
    """Integers as-is, floats with up to 6 significant decimals."""
    if isinstance(value, float):
        return f"{value:.6g}"
    return str(value)


def format_tags(tags: dict[str, str], sep: str = ",") -> str:
    return sep.join(f"{k}={v}" for k, v in sorted(tags.items()))


def json_record(m: Measurement) -> dict:
    """as_dict() with NaN and infinities as null, which JSON can represent."""
    record = m.as_dict()
    if isinstance(m.value, float) and not math.isfinite(m.value):
        record["value"] = None
    return record


class ConsoleSink:
    """
    Writes measurements to a stream, one line each:
    - text: timestamp name=value tag=value,...
    - json: NDJSON objects (name, value, tags, timestamp)
    - csv: timestamp,name,value,tags with a header before the first row
    """

    def __init__(self, format: str = "text", stream: TextIO | None = None) -> None:
        if format not in FORMATS:
            raise SinkConfigError(f"Invalid format {format!r}. Must be text, json, or csv.")
        self._format = format
        self._stream = stream
        self._lock = threading.Lock()
        self._header_written = False

    @property
    def format(self) -> str:
        return self._format

    def _lines(self, batch: Sequence[Measurement]) -> list[str]:
        lines: list[str] = []
        if self._format == "csv" and not self._header_written:
            lines.append("timestamp,name,value,tags")
            self._header_written = True
        for m in batch:
            ts = m.timestamp.isoformat()
            if self._format == "text":
                lines.append(f"{ts} {m.name}={format_value(m.value)} {format_tags(m.tags)}".rstrip())
            elif self._format == "json":
                lines.append(json.dumps(json_record(m)))
            else:
                lines.append(f"{ts},{m.name},{format_value(m.value)},{format_tags(m.tags, ';')}")
        return lines

    def write(self, batch: Sequence[Measurement]) -> None:
        with self._lock:
            try:
                for line in self._lines(batch):
                    typer.echo(line, file=self._stream)
            except OSError as e:
                raise SinkUnavailable(f"Console write failed: {e}", cause=e) from e


class MemorySink:
    """Keeps every batch in memory; for embedding the collector and for tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._batches: list[list[Measurement]] = []

    def write(self, batch: Sequence[Measurement]) -> None:
        with self._lock:
            self._batches.append(list(batch))
        logger.debug("Stored batch of %d measurement(s)", len(batch))

    @property
    def batches(self) -> list[list[Measurement]]:
        with self._lock:
            return [list(b) for b in self._batches]

    @property
    def measurements(self) -> list[Measurement]:
        with self._lock:
            return [m for b in self._batches for m in b]

    def clear(self) -> None:
        with self._lock:
            self._batches.clear()
