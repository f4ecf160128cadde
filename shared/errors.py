"""
Driver error taxonomy.

Connection-wide failures (DriverConnectionError and its ConnectionLostError
subclass) end the current connection epoch. ProtocolAnomaly covers problems
local to a single frame; the driver logs and drops those instead of raising.
"""

from __future__ import annotations
from typing import Any, Dict, Optional


class DriverError(Exception):
    """Base class for every error raised by the driver."""


class DriverConnectionError(DriverError, ConnectionError):
    """Transport failure or DDP handshake mismatch."""


class ConnectionLostError(DriverConnectionError):
    """The connection epoch ended while the operation was outstanding."""


class AuthenticationError(DriverError):
    """Credentials were rejected by the service."""


class CallTimeoutError(DriverError, TimeoutError):
    """No reply arrived before the caller's deadline."""


class ProtocolAnomaly(DriverError):
    """Malformed frame, unmatched id or duplicate resolution."""


class DecodeError(ProtocolAnomaly):
    """A single frame could not be decoded."""


class RemoteError(DriverError):
    """The service answered a method or subscription with an explicit error."""

    def __init__(self, error: Any = None, reason: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None) -> None:
        self.error = error
        self.reason = reason or ""
        self.details = details or {}
        super().__init__(f"[{error}] {self.reason}" if error is not None else self.reason)

    @classmethod
    def from_payload(cls, payload: Any) -> "RemoteError":
        """Build from a DDP error object, e.g. {"error": 403, "reason": "..."}"""
        if not isinstance(payload, dict):
            return cls(reason=str(payload))
        reason = payload.get("reason") or payload.get("message") or ""
        details = payload.get("details")
        return cls(
            error=payload.get("error"),
            reason=str(reason),
            details=details if isinstance(details, dict) else None,
        )
