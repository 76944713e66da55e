"""Load and validate the TOML configuration into the collector's data model."""

import logging
import re
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from .errors import ConfigError
from .sink import FORMATS
from .types import DataType, Device, InputRegister

logger = logging.getLogger(__name__)

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)\s*(msec|ms|secs|sec|s|mins|min|m|hrs|hr|h|days|day|d)?", re.IGNORECASE)

_UNIT_SECONDS: dict[str, float] = {
    "ms": 0.001,
    "msec": 0.001,
    "": 1.0,
    "s": 1.0,
    "sec": 1.0,
    "secs": 1.0,
    "m": 60.0,
    "min": 60.0,
    "mins": 60.0,
    "h": 3600.0,
    "hr": 3600.0,
    "hrs": 3600.0,
    "d": 86400.0,
    "day": 86400.0,
    "days": 86400.0,
}

_DEVICE_KEYS = frozenset({"id", "scan_interval", "tags", "input_registers"})
_REGISTER_KEYS = frozenset({"addr", "name", "data_type", "scaling", "tags"})
_MODBUS_KEYS = frozenset({"hostname", "port", "protocol", "timeout", "backoff", "coalesce", "round_timestamps"})


def parse_duration(value: Any, field: str = "duration") -> float:
    """
    Parse a duration into seconds.

    Accepts numbers (seconds) and strings such as "1s", "500ms", "2m", "1m30s", "1h 5m".
    """
    if isinstance(value, bool):
        raise ConfigError(f"Invalid duration: {value!r}", field=field)
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            raise ConfigError("Duration cannot be empty", field=field)
        seconds = 0.0
        pos = 0
        for m in _DURATION_PART.finditer(text):
            if text[pos : m.start()].strip():
                raise ConfigError(f"Invalid duration: {value!r}", field=field)
            seconds += float(m.group(1)) * _UNIT_SECONDS[(m.group(2) or "").lower()]
            pos = m.end()
        if pos == 0 or text[pos:].strip():
            raise ConfigError(f"Invalid duration: {value!r}", field=field)
    else:
        raise ConfigError(f"Invalid duration: {value!r}", field=field)
    if seconds <= 0:
        raise ConfigError(f"Duration must be positive, got {value!r}", field=field)
    return seconds


@dataclass(frozen=True)
class ModbusSettings:
    """Where the bus is and how to talk to it."""

    hostname: str
    port: int = 502
    protocol: str = "tcp"
    timeout: float = 3.0
    backoff: float | None = None
    coalesce: bool = True
    round_timestamps: bool = False

    @property
    def effective_backoff(self) -> float:
        return self.timeout if self.backoff is None else self.backoff


@dataclass(frozen=True)
class SinkSettings:
    format: str = "text"


@dataclass(frozen=True)
class CollectorConfig:
    modbus: ModbusSettings
    devices: tuple[Device, ...]
    sink: SinkSettings = field(default_factory=SinkSettings)

    def device(self, unit_id: int) -> Device:
        for d in self.devices:
            if d.unit_id == unit_id:
                return d
        raise KeyError(unit_id)


def _tags(raw: Any, field: str) -> dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError("Tags must be a table of strings", field=field)
    tags: dict[str, str] = {}
    for k, v in raw.items():
        if not isinstance(v, (str, int, float)) or isinstance(v, bool):
            raise ConfigError(f"Tag {k!r} must be a string, got {type(v).__name__}", field=field)
        tags[str(k)] = str(v)
    return tags


def _check_keys(raw: dict[str, Any], allowed: frozenset[str], field: str) -> None:
    unknown = sorted(set(raw) - allowed)
    if unknown:
        raise ConfigError(f"Unknown key(s): {', '.join(unknown)}", field=field)


def _int(raw: Any, field: str, lo: int, hi: int) -> int:
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise ConfigError(f"Expected an integer, got {raw!r}", field=field)
    if not lo <= raw <= hi:
        raise ConfigError(f"Out of range {lo}..{hi}: {raw}", field=field)
    return raw


def _bool(raw: Any, field: str) -> bool:
    if not isinstance(raw, bool):
        raise ConfigError(f"Expected true or false, got {raw!r}", field=field)
    return raw


def _parse_register(raw: Any, field: str) -> InputRegister:
    """A bare address means a u16 named input_register_<addr>; a table gives the full definition."""
    if isinstance(raw, int) and not isinstance(raw, bool):
        addr = _int(raw, field, 0, 0xFFFF)
        return InputRegister(address=addr, name=f"input_register_{addr}")
    if not isinstance(raw, dict):
        raise ConfigError(f"Expected an address or a table, got {raw!r}", field=field)
    _check_keys(raw, _REGISTER_KEYS, field)
    if "addr" not in raw:
        raise ConfigError("Missing 'addr'", field=field)
    addr = _int(raw["addr"], f"{field}.addr", 0, 0xFFFF)
    name = raw.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ConfigError("Missing or empty 'name'", field=field)
    type_str = str(raw.get("data_type", "u16")).lower()
    try:
        data_type = DataType(type_str)
    except ValueError:
        raise ConfigError(
            f"{name!r}: Invalid register type {type_str!r} (expected one of {', '.join(t.value for t in DataType)})",
            field=f"{field}.data_type",
        ) from None
    scaling = raw.get("scaling", 1.0)
    if isinstance(scaling, bool) or not isinstance(scaling, (int, float)):
        raise ConfigError(f"{name!r}: scaling must be a number", field=f"{field}.scaling")
    try:
        return InputRegister(
            address=addr,
            name=name,
            data_type=data_type,
            scaling=float(scaling),
            tags=_tags(raw.get("tags"), f"{field}.tags"),
        )
    except ValueError as e:
        raise ConfigError(str(e), field=field) from e


def _parse_device(raw: Any, index: int) -> Device:
    field = f"devices[{index}]"
    if not isinstance(raw, dict):
        raise ConfigError("Expected a table", field=field)
    _check_keys(raw, _DEVICE_KEYS, field)
    if "id" not in raw:
        raise ConfigError("Missing 'id'", field=field)
    unit_id = _int(raw["id"], f"{field}.id", 0, 247)
    if "scan_interval" not in raw:
        raise ConfigError("Missing 'scan_interval'", field=field)
    interval = parse_duration(raw["scan_interval"], f"{field}.scan_interval")

    raw_regs = raw.get("input_registers", [])
    if not isinstance(raw_regs, list) or not raw_regs:
        raise ConfigError("At least one input register is required", field=f"{field}.input_registers")
    registers = [_parse_register(r, f"{field}.input_registers[{i}]") for i, r in enumerate(raw_regs)]
    seen: set[str] = set()
    for r in registers:
        if r.name in seen:
            raise ConfigError(f"Duplicate register name {r.name!r}", field=f"{field}.input_registers")
        seen.add(r.name)
    return Device(
        unit_id=unit_id,
        scan_interval=interval,
        registers=tuple(registers),
        tags=_tags(raw.get("tags"), f"{field}.tags"),
    )


def _parse_modbus(raw: Any) -> ModbusSettings:
    if not isinstance(raw, dict):
        raise ConfigError("Missing [modbus] table", field="modbus")
    _check_keys(raw, _MODBUS_KEYS, "modbus")
    hostname = raw.get("hostname")
    if not isinstance(hostname, str) or not hostname.strip():
        raise ConfigError("Missing 'hostname'", field="modbus.hostname")
    protocol = str(raw.get("protocol", "tcp")).lower()
    if protocol not in ("tcp", "udp"):
        raise ConfigError(f"Unknown protocol {protocol!r} (expected tcp or udp)", field="modbus.protocol")
    timeout = parse_duration(raw.get("timeout", 3.0), "modbus.timeout")
    backoff = raw.get("backoff")
    return ModbusSettings(
        hostname=hostname.strip(),
        port=_int(raw.get("port", 502), "modbus.port", 1, 65535),
        protocol=protocol,
        timeout=timeout,
        backoff=None if backoff is None else parse_duration(backoff, "modbus.backoff"),
        coalesce=_bool(raw.get("coalesce", True), "modbus.coalesce"),
        round_timestamps=_bool(raw.get("round_timestamps", False), "modbus.round_timestamps"),
    )


def parse_config(data: dict[str, Any]) -> CollectorConfig:
    """Validate a decoded TOML document and build the CollectorConfig."""
    modbus = _parse_modbus(data.get("modbus"))

    raw_sink = data.get("sink", {})
    if not isinstance(raw_sink, dict):
        raise ConfigError("Expected a table", field="sink")
    fmt = str(raw_sink.get("format", "text")).lower()
    if fmt not in FORMATS:
        raise ConfigError(f"Invalid format {fmt!r}. Must be text, json, or csv.", field="sink.format")

    raw_devices = data.get("devices")
    if not isinstance(raw_devices, list) or not raw_devices:
        raise ConfigError("At least one [[devices]] entry is required", field="devices")
    devices = tuple(_parse_device(d, i) for i, d in enumerate(raw_devices))

    return CollectorConfig(modbus=modbus, devices=devices, sink=SinkSettings(format=fmt))


def load_config(path: str | Path) -> CollectorConfig:
    """Read and validate a TOML configuration file."""
    p = Path(path)
    try:
        with p.open("rb") as f:
            data = tomllib.load(f)
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {p}") from None
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {p}: {e}") from e
    config = parse_config(data)
    logger.info("Configuration loaded from %s with %d device(s)", p, len(config.devices))
    return config


def with_overrides(
    config: CollectorConfig,
    host: str | None = None,
    port: int | None = None,
    timeout: float | None = None,
    format: str | None = None,
) -> CollectorConfig:
    """Return a copy with command-line values replacing file values where given."""
    modbus = config.modbus
    if host:
        modbus = replace(modbus, hostname=host)
    if port is not None:
        modbus = replace(modbus, port=port)
    if timeout is not None:
        modbus = replace(modbus, timeout=timeout)
    sink = config.sink if format is None else SinkSettings(format=format)
    return replace(config, modbus=modbus, sink=sink)
