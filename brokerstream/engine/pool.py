"""One shared Session per credential within a client context."""
from __future__ import annotations

import hashlib
from collections.abc import Callable
from dataclasses import dataclass, field

from loguru import logger

from brokerstream.engine.config import StreamConfig
from brokerstream.engine.protocols import TransportLike
from brokerstream.engine.session import Session


def credentialTag(credential: str) -> str:
    """Short stable fingerprint of a credential, safe to log."""
    return hashlib.sha256(credential.encode()).hexdigest()[:10]


@dataclass(slots=True)
class SessionPool:
    """Hands every consumer of one credential the same live Session.

    Sessions constructed outside the pool are not deduplicated against it.
    """

    config: StreamConfig = field(default_factory=StreamConfig)

    # builds the transport for each new session (None uses the websocket default)
    transportFactory: Callable[[StreamConfig], TransportLike] | None = None

    sessions: dict[str, Session] = field(default_factory=dict, repr=False)

    def __len__(self) -> int:
        return len(self.sessions)

    async def sessionFor(self, credential: str) -> Session:
        if (session := self.sessions.get(credential)) is not None:
            return session

        transport = self.transportFactory(self.config) if self.transportFactory else None
        session = Session(credential, config=self.config, transport=transport)

        # registered before start() so concurrent callers share this instance
        self.sessions[credential] = session

        logger.info("[pool :: {}] Starting session", credentialTag(credential))
        await session.start()
        return session

    async def release(self, credential: str) -> bool:
        if (session := self.sessions.pop(credential, None)) is None:
            return False

        logger.info("[pool :: {}] Stopping session", credentialTag(credential))
        await session.stop()
        return True

    async def close(self) -> None:
        for credential in list(self.sessions):
            await self.release(credential)
