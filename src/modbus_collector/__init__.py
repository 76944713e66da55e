"""modbus-collector: scheduled Modbus input register polling over one supervised connection."""

__version__ = "0.1.0"

from .codec import ReadSpan, decode, encode, plan_reads
from .collector import Collector
from .config import CollectorConfig, ModbusSettings, load_config, parse_config
from .errors import (
    CollectorError,
    ConfigError,
    DecodeError,
    InvalidTransition,
    NotConnected,
    ProtocolError,
    SinkConfigError,
    SinkError,
    SinkUnavailable,
    TransportError,
    TransportIOError,
    TransportTimeout,
)
from .scheduler import DeviceScheduler, TickResult
from .sink import ConsoleSink, MemorySink, Sink
from .supervisor import TransportSupervisor
from .transport import ModbusTransport, Transport
from .types import ConnectionState, DataType, Device, InputRegister, Measurement

__all__ = [
    "__version__",
    "Collector",
    "CollectorConfig",
    "ModbusSettings",
    "load_config",
    "parse_config",
    "ReadSpan",
    "decode",
    "encode",
    "plan_reads",
    "CollectorError",
    "ConfigError",
    "DecodeError",
    "InvalidTransition",
    "NotConnected",
    "ProtocolError",
    "SinkConfigError",
    "SinkError",
    "SinkUnavailable",
    "TransportError",
    "TransportIOError",
    "TransportTimeout",
    "DeviceScheduler",
    "TickResult",
    "ConsoleSink",
    "MemorySink",
    "Sink",
    "TransportSupervisor",
    "ModbusTransport",
    "Transport",
    "ConnectionState",
    "DataType",
    "Device",
    "InputRegister",
    "Measurement",
]
