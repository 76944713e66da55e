"""Connection handle: the Transport protocol and its pymodbus TCP/UDP implementation."""

import logging
from typing import Protocol

from pymodbus.client import ModbusTcpClient, ModbusUdpClient
from pymodbus.exceptions import ConnectionException, ModbusException, ModbusIOException

from .errors import ProtocolError, TransportIOError, TransportTimeout

logger = logging.getLogger(__name__)

_CLIENTS = {
    "tcp": ModbusTcpClient,
    "udp": ModbusUdpClient,
}


class Transport(Protocol):
    """
    One session to the device bus. Not thread-safe: the supervisor serializes all calls.

    read() raises TransportTimeout, TransportIOError or ProtocolError.
    """

    def open(self) -> None: ...

    def read(self, unit_id: int, address: int, count: int) -> list[int]: ...

    def close(self) -> None: ...

    @property
    def endpoint(self) -> str: ...


class ModbusTransport:
    """
    Reads input registers (function 0x04) through a pymodbus sync client.

    protocol "tcp" is stream-oriented, "udp" packet-oriented. Retries are left to the
    supervisor, so the pymodbus client is created with retries=0 by default.
    """

    def __init__(
        self,
        host: str,
        port: int = 502,
        protocol: str = "tcp",
        timeout: float = 3.0,
        retries: int = 0,
    ) -> None:
        if protocol not in _CLIENTS:
            raise ValueError(f"Unknown protocol: {protocol!r} (expected one of {', '.join(_CLIENTS)})")
        self._host = host
        self._port = port
        self._protocol = protocol
        self._timeout = timeout
        self._retries = retries
        self._client: ModbusTcpClient | ModbusUdpClient | None = None

    @property
    def endpoint(self) -> str:
        return f"{self._protocol}://{self._host}:{self._port}"

    def open(self) -> None:
        """Create the pymodbus client and connect; raises TransportIOError on failure."""
        self.close()
        client = _CLIENTS[self._protocol](
            host=self._host,
            port=self._port,
            timeout=self._timeout,
            retries=self._retries,
        )
        try:
            connected = client.connect()
        except (ModbusException, OSError) as e:
            raise TransportIOError(f"Failed to connect to {self.endpoint}: {e}", cause=e) from e
        if not connected:
            client.close()
            raise TransportIOError(f"Failed to connect to {self.endpoint}")
        self._client = client
        logger.debug("Opened %s", self.endpoint)

    def read(self, unit_id: int, address: int, count: int) -> list[int]:
        if self._client is None:
            raise TransportIOError(
                f"Session to {self.endpoint} is closed",
                unit_id=unit_id,
                address=address,
                count=count,
            )
        ctx = {"unit_id": unit_id, "address": address, "count": count}
        try:
            rr = self._client.read_input_registers(address, count=count, device_id=unit_id)
        except ModbusIOException as e:
            # pymodbus reports a missing response as ModbusIOException
            raise TransportTimeout(f"No response from unit {unit_id} at {address}: {e}", cause=e, **ctx) from e
        except TimeoutError as e:
            raise TransportTimeout(f"Timeout reading unit {unit_id} at {address}", cause=e, **ctx) from e
        except (ConnectionException, OSError) as e:
            raise TransportIOError(f"Connection error reading unit {unit_id}: {e}", cause=e, **ctx) from e
        except ModbusException as e:
            raise TransportIOError(f"Modbus error reading unit {unit_id}: {e}", cause=e, **ctx) from e

        if rr.isError():
            code = getattr(rr, "exception_code", None)
            raise ProtocolError(f"Unit {unit_id} returned exception {code} for {address}+{count}: {rr}", **ctx)
        registers = getattr(rr, "registers", None)
        if registers is None or len(registers) < count:
            got = 0 if registers is None else len(registers)
            raise ProtocolError(f"Short register response from unit {unit_id}: {got}/{count}", **ctx)
        return [int(v) for v in registers[:count]]

    def close(self) -> None:
        """Close the connection; safe to call when already closed."""
        if self._client is not None:
            try:
                self._client.close()
            except Exception as e:
                logger.warning("Error closing Modbus client: %s", e)
            self._client = None
