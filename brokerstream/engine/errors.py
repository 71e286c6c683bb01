"""Error taxonomy for the streaming session.

Transport-level failures become ``ConnectionLost`` and drive the reconnect loop.
Protocol-level rejections become ``ProtocolError`` and end one request only.
Caller misuse raises ``MisuseError`` (or ``NotReady``) synchronously before any
wire traffic.

Asynchronous failures are never raised into the event loop; the session emits
them on ``errorEvent`` instead.
"""
from __future__ import annotations

import enum


class ErrorKind(enum.Enum):
    TRANSPORT = "transport"
    PROTOCOL = "protocol"
    TIMEOUT = "timeout"
    MISUSE = "misuse"


class SessionError(Exception):
    """Base for every error a session reports."""

    kind: ErrorKind = ErrorKind.PROTOCOL

    def __init__(
        self, message: str, code: str | None = None, reqId: int | None = None
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.reqId = reqId

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, code={self.code!r}, reqId={self.reqId!r})"


class ConnectionLost(SessionError):
    kind = ErrorKind.TRANSPORT


class ProtocolError(SessionError):
    """The provider rejected a request (bad token, stale quote, bad symbol, ...)."""

    kind = ErrorKind.PROTOCOL

    @classmethod
    def fromWire(cls, error: dict | None, reqId: int | None = None) -> ProtocolError:
        error = error or {}
        return cls(
            error.get("message") or "Unknown error", code=error.get("code"), reqId=reqId
        )


class MissingScopes(ProtocolError):
    def __init__(self, missing: list[str]) -> None:
        super().__init__(
            f"Missing required scopes: {', '.join(missing)}", code="MissingScopes"
        )
        self.missing = missing


class RequestTimeout(SessionError):
    kind = ErrorKind.TIMEOUT


class MisuseError(SessionError, ValueError):
    """Invalid call made by the caller; raised before anything reaches the wire."""

    kind = ErrorKind.MISUSE


class NotReady(MisuseError):
    """Operation requires an authorized session."""
