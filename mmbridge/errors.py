"""Error taxonomy for the bridge.

Every error carries a machine-readable code (``NOT_FOUND``, ``TIMEOUT``, ...)
that log lines and thread error replies key on:
  ConfigError        fatal, raised before anything connects
  TransportError     socket/HTTP failure, retried by the transport
  NotFound           team/channel resolution failure, fatal at startup
  ValidationError    malformed frame/post, the single item is dropped
  ProcessTerminated  assistant died while a turn was in flight
  ResponseTimeout    assistant did not answer within the deadline
  Unavailable        supervisor exhausted its restarts or is stopped
  PublishError       reply delivery failed
"""

from __future__ import annotations

import secrets


class BridgeError(Exception):
    """Base class for all bridge errors."""

    code = "BRIDGE_ERROR"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class ConfigError(BridgeError):
    code = "CONFIG_ERROR"


class TransportError(BridgeError):
    code = "TRANSPORT_ERROR"

    def __init__(self, message: str = "", status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class NotFound(BridgeError):
    code = "NOT_FOUND"


class ValidationError(BridgeError):
    code = "VALIDATION_ERROR"


class ProcessTerminated(BridgeError):
    code = "PROCESS_TERMINATED"


class ResponseTimeout(BridgeError):
    code = "TIMEOUT"


class Unavailable(BridgeError):
    code = "UNAVAILABLE"


class PublishError(BridgeError):
    code = "PUBLISH_ERROR"

    def __init__(self, message: str = "", status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


def new_error_id() -> str:
    """Short random id used to correlate an error across log lines."""
    return secrets.token_hex(6)
