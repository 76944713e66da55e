"""Register codec: words <-> typed values, and grouping registers into read requests."""

import struct
from dataclasses import dataclass
from typing import Iterable, Sequence

from .errors import DecodeError
from .types import DataType, InputRegister

# Largest register count a single read input registers request may ask for
MAX_READ_COUNT = 125

# Big-endian struct formats; words are assembled most-significant first
_FORMATS: dict[DataType, str] = {
    DataType.U16: ">H",
    DataType.I16: ">h",
    DataType.U32: ">I",
    DataType.I32: ">i",
    DataType.F32: ">f",
    DataType.U64: ">Q",
    DataType.I64: ">q",
    DataType.F64: ">d",
}


def _words_to_bytes(data_type: DataType, words: Sequence[int]) -> bytes:
    if len(words) != data_type.words:
        raise DecodeError(data_type.value, data_type.words, len(words))
    for w in words:
        if not 0 <= w <= 0xFFFF:
            raise DecodeError(
                data_type.value,
                data_type.words,
                len(words),
                f"{data_type.value}: word out of range 0..65535: {w!r}",
            )
    return struct.pack(f">{len(words)}H", *words)


def decode(data_type: DataType, words: Sequence[int]) -> int | float:
    """
    Decode big-endian register words into a value of data_type.

    Integers come back as int, f32/f64 as float (IEEE-754 reinterpretation of the
    assembled bytes). Raises DecodeError if the word count does not match the type's width.
    """
    raw = _words_to_bytes(data_type, words)
    (value,) = struct.unpack(_FORMATS[data_type], raw)
    return value


def encode(data_type: DataType, value: int | float) -> list[int]:
    """Inverse of decode: pack value into the big-endian word sequence for data_type."""
    try:
        raw = struct.pack(_FORMATS[data_type], value)
    except struct.error as e:
        raise ValueError(f"{value!r} does not fit {data_type.value}: {e}") from e
    return list(struct.unpack(f">{data_type.words}H", raw))


@dataclass(frozen=True)
class ReadSpan:
    """One read request: start address, word count, and the registers it covers."""

    start: int
    count: int
    registers: tuple[InputRegister, ...]

    @property
    def end(self) -> int:
        return self.start + self.count


def plan_reads(
    registers: Iterable[InputRegister],
    coalesce: bool = True,
    max_count: int = MAX_READ_COUNT,
) -> list[ReadSpan]:
    """
    Group registers into read requests, keeping declaration order.

    With coalesce, each register joins the current request when it is adjacent to or overlaps
    it (up to max_count words); otherwise it starts a new one. Without it, one request per register.
    """
    regs = list(registers)
    if not coalesce:
        return [ReadSpan(r.address, r.words, (r,)) for r in regs]
    if not regs:
        return []

    spans: list[ReadSpan] = []
    start = regs[0].address
    end = regs[0].end
    group: list[InputRegister] = [regs[0]]
    for reg in regs[1:]:
        lo = min(start, reg.address)
        hi = max(end, reg.end)
        if reg.address <= end and reg.end >= start and hi - lo <= max_count:
            start, end = lo, hi
            group.append(reg)
        else:
            spans.append(ReadSpan(start, end - start, tuple(group)))
            start = reg.address
            end = reg.end
            group = [reg]
    spans.append(ReadSpan(start, end - start, tuple(group)))
    return spans


def slice_words(span: ReadSpan, words: Sequence[int], register: InputRegister) -> list[int]:
    """Return exactly the words of register out of a span response."""
    offset = register.address - span.start
    return list(words[offset : offset + register.words])
