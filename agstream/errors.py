class AgStreamError(Exception):
    """Base exception class for agstream errors."""

    code: str = "AGSTREAM_ERROR"


class ConfigurationError(AgStreamError):
    """Raised when a connection or encoder is misconfigured."""

    code = "CONFIGURATION_ERROR"


class InvalidStateError(AgStreamError):
    """Raised when an operation is invalid for the connection's current state."""

    code = "INVALID_STATE"


class DecodeError(AgStreamError):
    """Raised when a frame is malformed or does not describe a known event."""

    code = "DECODE_ERROR"


class TransportError(AgStreamError):
    """Raised when the underlying stream fails or ends prematurely."""

    code = "TRANSPORT_ERROR"


class ProtocolViolationError(AgStreamError):
    """Raised when an event breaks the run's sequence invariants."""

    code = "PROTOCOL_VIOLATION"


class HandlerError(AgStreamError):
    """Wraps an exception raised by a subscriber handler."""

    code = "HANDLER_ERROR"

    def __init__(self, *, handler: str, event_type: str, error: Exception):
        super().__init__(f"Subscriber handler {handler} failed on {event_type}: {error}")
        self.handler = handler
        self.event_type = event_type
        self.original_error = error


__all__ = [
    "AgStreamError",
    "ConfigurationError",
    "InvalidStateError",
    "DecodeError",
    "TransportError",
    "ProtocolViolationError",
    "HandlerError",
]
