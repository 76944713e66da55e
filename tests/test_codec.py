"""Tests for register decoding/encoding and read planning."""

import math
import random
import struct

import pytest

from modbus_collector.codec import MAX_READ_COUNT, ReadSpan, decode, encode, plan_reads, slice_words
from modbus_collector.errors import DecodeError
from modbus_collector.types import DataType, InputRegister

_DATA = [0x2468, 0xACF0, 0x0002, 0x0004]


@pytest.mark.parametrize(
    ("data_type", "words", "expected"),
    [
        (DataType.U16, _DATA[:1], 0x2468),
        (DataType.I16, _DATA[:1], 0x2468),
        (DataType.U32, _DATA[:2], 0x2468ACF0),
        (DataType.I32, _DATA[:2], 0x2468ACF0),
        (DataType.U64, _DATA, 0x2468ACF000020004),
        (DataType.I64, _DATA, 0x2468ACF000020004),
        (DataType.I16, [0xFFFF], -1),
        (DataType.I16, [0x8000], -32768),
        (DataType.I32, [0xFFFF, 0xFFFE], -2),
        (DataType.U32, [0xFFFF, 0xFFFF], 0xFFFFFFFF),
        (DataType.I64, [0x8000, 0, 0, 0], -(2**63)),
        (DataType.F32, [0x4148, 0x0000], 12.5),
        (DataType.F32, [0xC2C8, 0x0000], -100.0),
        (DataType.F64, [0x3FF0, 0, 0, 0], 1.0),
        (DataType.F64, [0x4029, 0, 0, 0], 12.5),
    ],
)
def test_decode_known_values(data_type: DataType, words: list[int], expected: float) -> None:
    assert decode(data_type, words) == expected


def test_decode_most_significant_word_first() -> None:
    assert decode(DataType.U32, [0x0001, 0x0000]) == 0x10000
    assert decode(DataType.U32, [0x0000, 0x0001]) == 1


def test_decode_float_types_return_float_and_ints_return_int() -> None:
    assert isinstance(decode(DataType.F32, [0, 0]), float)
    assert isinstance(decode(DataType.U16, [7]), int)


def test_decode_special_floats() -> None:
    assert decode(DataType.F32, [0x7F80, 0x0000]) == math.inf
    assert decode(DataType.F32, [0xFF80, 0x0000]) == -math.inf
    assert math.isnan(decode(DataType.F32, [0x7FC0, 0x0000]))
    assert math.isnan(decode(DataType.F64, [0x7FF8, 0, 0, 0]))


@pytest.mark.parametrize("data_type", list(DataType))
def test_decode_wrong_word_count_raises(data_type: DataType) -> None:
    with pytest.raises(DecodeError) as exc_info:
        decode(data_type, [0] * (data_type.words + 1))
    assert exc_info.value.expected == data_type.words
    assert exc_info.value.got == data_type.words + 1
    with pytest.raises(DecodeError):
        decode(data_type, [0] * (data_type.words - 1))


def test_decode_rejects_out_of_range_words() -> None:
    with pytest.raises(DecodeError, match="out of range"):
        decode(DataType.U16, [0x10000])
    with pytest.raises(DecodeError):
        decode(DataType.U32, [0, -1])


_BOUNDS = {
    DataType.U16: (0, 2**16 - 1),
    DataType.I16: (-(2**15), 2**15 - 1),
    DataType.U32: (0, 2**32 - 1),
    DataType.I32: (-(2**31), 2**31 - 1),
    DataType.U64: (0, 2**64 - 1),
    DataType.I64: (-(2**63), 2**63 - 1),
}


@pytest.mark.parametrize("data_type", list(_BOUNDS))
def test_integer_round_trip(data_type: DataType) -> None:
    lo, hi = _BOUNDS[data_type]
    rng = random.Random(data_type.value)
    values = [lo, hi, 0, 1, lo + 1, hi - 1] + [rng.randint(lo, hi) for _ in range(50)]
    for v in values:
        words = encode(data_type, v)
        assert len(words) == data_type.words
        assert decode(data_type, words) == v


@pytest.mark.parametrize("data_type", [DataType.F32, DataType.F64])
def test_float_round_trip_is_bit_exact(data_type: DataType) -> None:
    rng = random.Random(data_type.value)
    fmt = ">f" if data_type == DataType.F32 else ">d"
    for _ in range(50):
        # any non-NaN bit pattern must survive decode -> encode unchanged
        words = [rng.randint(0, 0xFFFF) for _ in range(data_type.words)]
        value = decode(data_type, words)
        if math.isnan(value):
            continue
        assert encode(data_type, value) == words
        assert struct.pack(fmt, value) == struct.pack(f">{data_type.words}H", *words)


def test_encode_out_of_range_raises() -> None:
    with pytest.raises(ValueError):
        encode(DataType.U16, 70000)
    with pytest.raises(ValueError):
        encode(DataType.I16, -40000)


def _reg(addr: int, data_type: DataType = DataType.U16, name: str | None = None) -> InputRegister:
    return InputRegister(address=addr, name=name or f"r{addr}", data_type=data_type)


def test_plan_reads_consecutive_registers_share_a_request() -> None:
    spans = plan_reads([_reg(1, DataType.F32), _reg(3)])
    assert [(s.start, s.count) for s in spans] == [(1, 3)]


def test_plan_reads_gap_splits_requests() -> None:
    spans = plan_reads([_reg(1, DataType.F32), _reg(8)])
    assert [(s.start, s.count) for s in spans] == [(1, 2), (8, 1)]


def test_plan_reads_overlapping_registers_merge() -> None:
    spans = plan_reads([_reg(1, DataType.F64), _reg(3)])
    assert [(s.start, s.count) for s in spans] == [(1, 4)]


def test_plan_reads_keeps_declaration_order_when_coalescing() -> None:
    spans = plan_reads([_reg(20), _reg(0), _reg(10), _reg(11), _reg(9)])
    assert [(s.start, s.count) for s in spans] == [(20, 1), (0, 1), (9, 3)]
    assert [r.address for r in spans[2].registers] == [10, 11, 9]


def test_plan_reads_only_merges_with_the_current_request() -> None:
    # 4 and 5 are contiguous but separated by a declared register elsewhere
    spans = plan_reads([_reg(4), _reg(10), _reg(5)])
    assert [(s.start, s.count) for s in spans] == [(4, 1), (10, 1), (5, 1)]


def test_plan_reads_without_coalescing_keeps_declaration_order() -> None:
    regs = [_reg(10), _reg(0, DataType.F32), _reg(2)]
    spans = plan_reads(regs, coalesce=False)
    assert [(s.start, s.count) for s in spans] == [(10, 1), (0, 2), (2, 1)]
    assert all(len(s.registers) == 1 for s in spans)


def test_plan_reads_respects_max_count() -> None:
    regs = [_reg(i, name=f"r{i}") for i in range(MAX_READ_COUNT + 5)]
    spans = plan_reads(regs)
    assert [(s.start, s.count) for s in spans] == [(0, MAX_READ_COUNT), (MAX_READ_COUNT, 5)]


def test_plan_reads_empty() -> None:
    assert plan_reads([]) == []


def test_slice_words_extracts_register_words() -> None:
    temp = _reg(1, DataType.F32, "temp")
    hum = _reg(3, name="hum")
    span = ReadSpan(1, 3, (temp, hum))
    words = [0x4148, 0x0000, 0x0032]
    assert slice_words(span, words, temp) == [0x4148, 0x0000]
    assert slice_words(span, words, hum) == [0x0032]
    assert decode(temp.data_type, slice_words(span, words, temp)) == 12.5
