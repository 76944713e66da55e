"""Exceptions for modbus-collector: configuration, decoding, transport and sink failures."""


class CollectorError(Exception):
    """Base exception for modbus-collector."""

    pass


class ConfigError(CollectorError):
    """Raised when the configuration file is missing, malformed or fails validation."""

    def __init__(self, message: str, *, field: str | None = None) -> None:
        self.field = field
        super().__init__(f"{field}: {message}" if field else message)


class DecodeError(CollectorError):
    """Raised when a word sequence does not match the width of its data type."""

    def __init__(self, data_type: str, expected: int, got: int, message: str | None = None) -> None:
        self.data_type = data_type
        self.expected = expected
        self.got = got
        super().__init__(message or f"{data_type} needs {expected} word(s), got {got}")


class InvalidTransition(CollectorError):
    """Raised when the connection state machine is asked for a transition it does not allow."""

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Illegal connection state transition {current} -> {target}")


class TransportError(CollectorError):
    """Base class for failures talking to the device bus."""

    def __init__(
        self,
        message: str,
        *,
        unit_id: int | None = None,
        address: int | None = None,
        count: int | None = None,
        cause: BaseException | None = None,
    ) -> None:
        self.unit_id = unit_id
        self.address = address
        self.count = count
        self.cause = cause
        super().__init__(message)


class NotConnected(TransportError):
    """Raised when a read is requested while the connection is not usable. Retried next tick."""


class TransportTimeout(TransportError):
    """Raised when no response arrives within the request timeout. Triggers a reconnect."""


class TransportIOError(TransportError):
    """Raised when the underlying connection fails (connect, send or receive). Triggers a reconnect."""


class ProtocolError(TransportError):
    """Raised when the device answers with a Modbus exception response."""


class SinkError(CollectorError):
    """Base class for failures forwarding measurements."""

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        self.cause = cause
        super().__init__(message)


class SinkUnavailable(SinkError):
    """Raised when the sink cannot accept a batch right now; the batch is dropped."""


class SinkConfigError(SinkError):
    """Raised when the sink is misconfigured; fatal for the collector."""
