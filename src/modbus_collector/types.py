"""Core data model: register data types, devices, measurements and connection state."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class DataType(str, Enum):
    """Register data types; values are the names used in configuration files."""

    U16 = "u16"
    U32 = "u32"
    U64 = "u64"
    I16 = "i16"
    I32 = "i32"
    I64 = "i64"
    F32 = "f32"
    F64 = "f64"

    @property
    def words(self) -> int:
        """Width in 16-bit registers."""
        return _WORDS[self]

    @property
    def is_float(self) -> bool:
        return self in (DataType.F32, DataType.F64)

    @property
    def is_signed(self) -> bool:
        return self in (DataType.I16, DataType.I32, DataType.I64)


_WORDS: dict[DataType, int] = {
    DataType.U16: 1,
    DataType.I16: 1,
    DataType.U32: 2,
    DataType.I32: 2,
    DataType.F32: 2,
    DataType.U64: 4,
    DataType.I64: 4,
    DataType.F64: 4,
}


class ConnectionState(str, Enum):
    """States of the shared bus connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    UNRESPONSIVE = "unresponsive"


@dataclass(frozen=True)
class InputRegister:
    """One named, typed input register: 0-based address, no Modbus reference numbers."""

    address: int
    name: str
    data_type: DataType = DataType.U16
    scaling: float = 1.0
    tags: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not 0 <= self.address <= 0xFFFF:
            raise ValueError(f"address must be 0..65535, got {self.address}")
        if self.address + self.data_type.words > 0x10000:
            raise ValueError(f"{self.name}: {self.data_type.value} at {self.address} runs past address 65535")

    @property
    def words(self) -> int:
        return self.data_type.words

    @property
    def end(self) -> int:
        """First address after this register."""
        return self.address + self.data_type.words


@dataclass(frozen=True)
class Device:
    """A polled bus device: unit id, scan interval, ordered registers and tags."""

    unit_id: int
    scan_interval: float
    registers: tuple[InputRegister, ...]
    tags: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not 0 <= self.unit_id <= 247:
            raise ValueError(f"unit_id must be 0..247, got {self.unit_id}")
        if self.scan_interval <= 0:
            raise ValueError(f"scan_interval must be > 0, got {self.scan_interval}")
        names = [r.name for r in self.registers]
        if len(names) != len(set(names)):
            raise ValueError(f"register names must be unique per device: {names}")

    @property
    def label(self) -> str:
        return f"device {self.unit_id}"

    def merged_tags(self, register: InputRegister) -> dict[str, str]:
        """Device tags overlaid with the register's tags, plus modbus_id unless configured."""
        tags = {"modbus_id": str(self.unit_id)}
        tags.update(self.tags)
        tags.update(register.tags)
        return tags


@dataclass(frozen=True)
class Measurement:
    """A decoded, tagged, timestamped value ready for the sink."""

    name: str
    value: int | float
    tags: dict[str, str]
    timestamp: datetime

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "value": self.value,
            "tags": dict(self.tags),
            "timestamp": self.timestamp.isoformat(),
        }
