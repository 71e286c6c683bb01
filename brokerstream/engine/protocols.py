"""Narrow protocols for the seams between session and transport.

These protocols define the minimal interface a Session needs from the socket
beneath it, so tests can hand it a fake transport without a network.
"""
from __future__ import annotations

from collections.abc import Callable
from typing import Protocol, runtime_checkable


@runtime_checkable
class TransportLike(Protocol):
    """One bidirectional text socket plus its lifecycle callbacks."""

    onOpen: Callable[[], None] | None
    onMessage: Callable[[str], None] | None
    onClose: Callable[[], None] | None
    onError: Callable[[str], None] | None

    @property
    def isOpen(self) -> bool: ...

    async def open(self) -> None: ...
    async def close(self) -> None: ...
    def send(self, text: str) -> bool: ...
