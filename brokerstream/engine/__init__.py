"""brokerstream engine layer: the shared streaming session and its wire types.

Everything here runs without a UI. Consumers (see ``brokerstream.consumers``)
attach to a Session's events and never touch the socket directly.

Modules
-------
primitives
    Pure types, constants, and the JSON codec.
    - Enums: ``ConnectionState``, ``StreamKind``, ``Direction``, ``ContractStatus``
    - Dataclasses: ``Tick``, ``Balance``, ``AccountInfo``, ``ProposalRequest``, ``Proposal``,
      ``BuyReceipt``, ``SellReceipt``, ``Contract``, ``PendingRequest``
    - ``encode``/``decode``: orjson on CPython, json elsewhere

errors
    ``SessionError`` and its kinds: ``ConnectionLost``, ``ProtocolError``, ``MissingScopes``,
    ``RequestTimeout``, ``MisuseError``, ``NotReady``

config
    ``StreamConfig`` (endpoint, reconnect policy, request timeout; BROKERSTREAM_* env defaults)
    and ``setupLogging`` (loguru console + TRACE file sinks)

clock
    ``SessionClock``: wall time and timers, replaceable in tests

protocols
    ``TransportLike``: the socket seam a Session depends on

transport
    ``Transport``: websockets client with an ordered writer task and a reader task

registry
    ``SubscriptionRegistry``: which streams should be live, for dedupe and replay

session
    ``Session``: authorization, reconnect with replay, request correlation, event fan-out

pool
    ``SessionPool``: one shared Session per credential

validate
    ``validateToken``: one-shot authorize on a throwaway connection

defaults
    ``ASSETS``, ``DURATIONS``, ``DEFAULT_SYMBOL``, ``parseDuration``
"""

# Convenience re-exports for common usage:
# from brokerstream.engine import Session, StreamConfig, ProposalRequest
from brokerstream.engine.config import StreamConfig, setupLogging
from brokerstream.engine.errors import (
    ConnectionLost,
    MisuseError,
    NotReady,
    ProtocolError,
    RequestTimeout,
    SessionError,
)
from brokerstream.engine.primitives import (
    ConnectionState,
    ContractStatus,
    Direction,
    ProposalRequest,
)
from brokerstream.engine.pool import SessionPool
from brokerstream.engine.session import Session
from brokerstream.engine.validate import validateToken

__all__ = [
    "StreamConfig",
    "setupLogging",
    "SessionError",
    "ConnectionLost",
    "ProtocolError",
    "RequestTimeout",
    "MisuseError",
    "NotReady",
    "ConnectionState",
    "ContractStatus",
    "Direction",
    "ProposalRequest",
    "Session",
    "SessionPool",
    "validateToken",
]
