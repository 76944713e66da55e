#!/usr/bin/env python3
"""Example: poll two devices over one connection and print each batch; graceful shutdown on Ctrl+C."""

import sys
from typing import Sequence

from modbus_collector import Collector, CollectorConfig, DataType, Device, InputRegister, Measurement, ModbusSettings
from modbus_collector.errors import SinkError, TransportError


class PrintSink:
    def write(self, batch: Sequence[Measurement]) -> None:
        print(", ".join(f"{m.name}={m.value}" for m in batch), dict(batch[0].tags))


def main() -> None:
    config = CollectorConfig(
        modbus=ModbusSettings(hostname="192.168.1.10", timeout=1.0),  # change to your gateway IP
        devices=(
            Device(unit_id=1, scan_interval=1.0, registers=(InputRegister(address=0, name="counter"),)),
            Device(
                unit_id=2,
                scan_interval=5.0,
                registers=(
                    InputRegister(address=0, name="temp", data_type=DataType.F32),
                    InputRegister(address=2, name="hum", scaling=0.1),
                ),
                tags={"site": "lab"},
            ),
        ),
    )

    try:
        print("Polling (Ctrl+C to stop)...")
        Collector(config, PrintSink()).run()
    except KeyboardInterrupt:
        print("\nStopped.")
    except TransportError as e:
        print(f"Modbus/connection error: {e}", file=sys.stderr)
        sys.exit(1)
    except SinkError as e:
        print(f"Sink error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
