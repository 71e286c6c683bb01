"""One-shot credential validation against the streaming endpoint."""
from __future__ import annotations

import asyncio
from collections.abc import Iterable
from typing import Any, Final

from loguru import logger

from brokerstream.engine.config import StreamConfig
from brokerstream.engine.errors import (
    ConnectionLost,
    MisuseError,
    MissingScopes,
    ProtocolError,
    RequestTimeout,
)
from brokerstream.engine.primitives import AccountInfo, decode, encode
from brokerstream.engine.protocols import TransportLike
from brokerstream.engine.transport import Transport

# scopes a token needs before a trading site can be attached to it
REQUIRED_SCOPES: Final = ("read", "trading_information")


async def validateToken(
    credential: str,
    config: StreamConfig | None = None,
    requiredScopes: Iterable[str] = REQUIRED_SCOPES,
    timeout: float = 10.0,
    transport: TransportLike | None = None,
) -> AccountInfo:
    """Authorize once on a throwaway connection and return the account details.

    Raises ProtocolError if the provider rejects the token, MissingScopes if
    the token lacks any of ``requiredScopes``, RequestTimeout if no reply
    arrives in time, and ConnectionLost if the socket closes first. The
    connection is always closed before returning.
    """
    if not credential:
        raise MisuseError("Token is required")

    transport = transport or Transport.fromConfig(config or StreamConfig())
    reply: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()

    def onOpen() -> None:
        transport.send(encode({"authorize": credential}))

    def onMessage(text: str) -> None:
        if reply.done():
            return

        try:
            msg = decode(text)
        except ValueError:
            reply.set_exception(ProtocolError("Invalid token response"))
            return

        if msg.get("msg_type") in {"authorize", "error"}:
            reply.set_result(msg)

    def onClose() -> None:
        if not reply.done():
            reply.set_exception(ConnectionLost("Connection closed before authorize reply"))

    def onError(message: str) -> None:
        logger.error("[validate] {}", message)

    transport.onOpen = onOpen
    transport.onMessage = onMessage
    transport.onClose = onClose
    transport.onError = onError

    try:
        async with asyncio.timeout(timeout):
            await transport.open()
            msg = await reply
    except TimeoutError:
        raise RequestTimeout(f"No authorize reply within {timeout:.1f}s") from None
    finally:
        if not reply.done():
            reply.cancel()

        await transport.close()

    if err := msg.get("error"):
        raise ProtocolError.fromWire(err)

    if not (auth := msg.get("authorize")):
        raise ProtocolError("Invalid token response")

    info = AccountInfo.fromWire(auth)
    if missing := [scope for scope in requiredScopes if scope not in info.scopes]:
        raise MissingScopes(missing)

    logger.info("[validate :: {}] Token valid ({})", info.loginid, info.balance.currency)
    return info
