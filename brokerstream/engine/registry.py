"""Bookkeeping of which streams should be live, for dedupe and reconnect replay."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any, TypeAlias

from loguru import logger

from brokerstream.engine.primitives import StreamKind

StreamKey: TypeAlias = tuple[StreamKind, str]


@dataclass(slots=True)
class SubscriptionEntry:
    kind: StreamKind
    key: str

    # the exact subscribe frame we sent, resent verbatim on replay
    request: dict[str, Any]

    # provider subscription id, learned from the first streamed frame
    subscriptionId: str | None = None

    # consumers holding the stream; the upstream forget waits for the last one
    refs: int = 1

    @property
    def ident(self) -> StreamKey:
        return (self.kind, self.key)


@dataclass(slots=True)
class SubscriptionRegistry:
    """Active stream subscriptions keyed by (kind, key).

    Only stateless-parameter streams live here (raw ticks and contract status).
    Entries survive disconnects so ``replay()`` can re-establish them.
    """

    entries: dict[StreamKey, SubscriptionEntry] = field(default_factory=dict)

    # subscription ids seen on the wire for streams we no longer want
    # (unsubscribed before the provider told us the id)
    forgetOnSight: set[StreamKey] = field(default_factory=set)

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, ident: StreamKey) -> bool:
        return ident in self.entries

    def __iter__(self) -> Iterator[SubscriptionEntry]:
        return iter(list(self.entries.values()))

    def get(self, kind: StreamKind, key: str) -> SubscriptionEntry | None:
        return self.entries.get((kind, str(key)))

    def record(self, kind: StreamKind, key: str, request: dict[str, Any]) -> bool:
        """Insert an entry if absent. Returns True only when newly added.

        Recording an existing entry adds one more holder instead.
        """
        ident = (kind, str(key))
        if entry := self.entries.get(ident):
            entry.refs += 1
            return False

        # resubscribing cancels any pending forget for the same stream
        self.forgetOnSight.discard(ident)
        self.entries[ident] = SubscriptionEntry(kind, str(key), dict(request))
        return True

    def forget(self, kind: StreamKind, key: str) -> SubscriptionEntry | None:
        """Remove an entry, returning it (or None if it wasn't recorded)."""
        return self.entries.pop((kind, str(key)), None)

    def release(self, kind: StreamKind, key: str) -> SubscriptionEntry | None:
        """Drop one holder. The entry is removed once nobody holds it.

        Returns the entry (check ``refs`` to see whether it is gone), or None
        if it wasn't recorded.
        """
        ident = (kind, str(key))
        if (entry := self.entries.get(ident)) is None:
            return None

        entry.refs -= 1
        if entry.refs <= 0:
            del self.entries[ident]

        return entry

    def bind(self, kind: StreamKind, key: str, subscriptionId: str | None) -> None:
        """Attach the provider subscription id to an entry the first time we see it."""
        if not subscriptionId:
            return

        if entry := self.entries.get((kind, str(key))):
            entry.subscriptionId = subscriptionId

    def replay(self) -> list[dict[str, Any]]:
        """Original subscribe frames for every entry, one each.

        Subscription ids are reset because they belong to the previous connection.
        """
        frames = []
        for entry in self.entries.values():
            entry.subscriptionId = None
            frames.append(dict(entry.request))

        if frames:
            logger.info("[registry] Replaying {} subscription(s)", len(frames))

        return frames

    def clear(self) -> None:
        self.entries.clear()
        self.forgetOnSight.clear()
