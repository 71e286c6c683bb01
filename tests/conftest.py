"""Shared test fixtures for the brokerstream test suite.

FakeTransport stands in for the websocket transport so sessions can be driven
frame by frame without a network, and FakeClock replaces the event loop timers
so reconnect delays and request timeouts can be advanced by hand.
"""

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Callable

import pytest
import pytest_asyncio
import whenever

from brokerstream.engine.config import StreamConfig
from brokerstream.engine.session import Session


# ── Test doubles ──


@dataclass
class FakeTransport:
    """Records sent frames and lets tests push inbound frames or drop the socket."""

    onOpen: Callable[[], None] | None = None
    onMessage: Callable[[str], None] | None = None
    onClose: Callable[[], None] | None = None
    onError: Callable[[str], None] | None = None

    # decoded outbound frames, in send order
    sent: list[dict[str, Any]] = field(default_factory=list)

    opens: int = 0
    connected: bool = False

    # open() succeeds immediately unless told otherwise
    autoOpen: bool = True
    failOpen: bool = False

    @property
    def isOpen(self) -> bool:
        return self.connected

    async def open(self) -> None:
        self.opens += 1
        if self.failOpen:
            if self.onError:
                self.onError("Connection error: refused")

            self.drop()
            return

        if self.autoOpen:
            self.fireOpen()

    async def close(self) -> None:
        if self.connected:
            self.drop()

    def send(self, text: str) -> bool:
        if not self.connected:
            return False

        self.sent.append(json.loads(text))
        return True

    # ── Test helpers ──

    def fireOpen(self) -> None:
        self.connected = True
        if self.onOpen:
            self.onOpen()

    def deliver(self, msg: dict[str, Any] | str) -> None:
        """Push one inbound frame as if the provider had sent it."""
        assert self.onMessage
        self.onMessage(msg if isinstance(msg, str) else json.dumps(msg))

    def drop(self) -> None:
        self.connected = False
        if self.onClose:
            self.onClose()

    def framesWith(self, key: str) -> list[dict[str, Any]]:
        return [f for f in self.sent if key in f]


@dataclass
class FakeTimer:
    due: float
    callback: Callable[[], None]
    cancelled: bool = False

    def cancel(self) -> None:
        self.cancelled = True


@dataclass
class FakeClock:
    """Manual clock: timers only fire when a test calls ``advance()``."""

    elapsed: float = 0.0
    timers: list[FakeTimer] = field(default_factory=list)
    sleeps: list[float] = field(default_factory=list)

    def now(self) -> whenever.Instant:
        return whenever.Instant.from_timestamp(1_700_000_000 + int(self.elapsed))

    def later(self, delay: float, callback: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(self.elapsed + delay, callback)
        self.timers.append(timer)
        return timer

    def pending(self) -> list[FakeTimer]:
        return [t for t in self.timers if not t.cancelled]

    def advance(self, seconds: float) -> None:
        self.elapsed += seconds
        due = [t for t in self.pending() if t.due <= self.elapsed]
        for timer in due:
            self.timers.remove(timer)
            timer.callback()

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.advance(delay)
        await asyncio.sleep(0)


async def settle() -> None:
    """Let tasks created by timer callbacks run."""
    for _ in range(3):
        await asyncio.sleep(0)


# ── Canned provider frames ──


def authorizeReply(
    loginid: str = "VRTC1234",
    balance: float = 10000.0,
    currency: str = "USD",
    scopes: tuple[str, ...] = ("read", "trade", "trading_information"),
) -> dict[str, Any]:
    return {
        "msg_type": "authorize",
        "echo_req": {"authorize": "<not shown>"},
        "authorize": {
            "loginid": loginid,
            "balance": balance,
            "currency": currency,
            "email": "demo@example.com",
            "fullname": "Demo Trader",
            "scopes": list(scopes),
            "account_list": [{"loginid": loginid}],
            "is_virtual": 1,
        },
    }


def errorReply(msgType: str, code: str, message: str, reqId: int | None = None, **echo) -> dict[str, Any]:
    msg: dict[str, Any] = {
        "msg_type": msgType,
        "echo_req": echo,
        "error": {"code": code, "message": message},
    }
    if reqId is not None:
        msg["req_id"] = reqId

    return msg


def tickFrame(symbol: str, quote: float, epoch: int = 1_700_000_000, subId: str | None = None) -> dict[str, Any]:
    return {
        "msg_type": "tick",
        "echo_req": {"ticks": symbol, "subscribe": 1},
        "tick": {"symbol": symbol, "quote": quote, "epoch": epoch, "id": subId or f"sub-{symbol}"},
        "subscription": {"id": subId or f"sub-{symbol}"},
    }


def proposalFrame(reqId: int, pid: str = "prop-1", ask: float = 1.0, payout: float = 1.95, subId: str | None = None) -> dict[str, Any]:
    msg: dict[str, Any] = {
        "msg_type": "proposal",
        "req_id": reqId,
        "proposal": {
            "id": pid,
            "ask_price": ask,
            "payout": payout,
            "spot": 1234.56,
            "spot_time": 1_700_000_000,
        },
    }
    if subId:
        msg["subscription"] = {"id": subId}

    return msg


def buyFrame(reqId: int, contractId: int = 555, price: float = 1.0) -> dict[str, Any]:
    return {
        "msg_type": "buy",
        "req_id": reqId,
        "buy": {
            "contract_id": contractId,
            "buy_price": price,
            "transaction_id": 9001,
            "balance_after": 9999.0,
            "longcode": "Win payout if Volatility 100 Index is strictly higher...",
        },
    }


def contractFrame(contractId: int = 555, status: str = "open", profit: float = 0.0, **extra) -> dict[str, Any]:
    return {
        "msg_type": "proposal_open_contract",
        "proposal_open_contract": {
            "contract_id": contractId,
            "status": status,
            "profit": profit,
            "buy_price": 1.0,
            **extra,
        },
        "subscription": {"id": f"poc-{contractId}"},
    }


# ── Fixtures ──


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> StreamConfig:
    return StreamConfig(
        url="wss://example.test/websockets/v3",
        appId="1089",
        reconnectDelay=3.0,
        requestTimeout=None,
    )


@pytest_asyncio.fixture
async def session(transport, clock, config) -> Session:
    """Started session, connected and waiting on its authorize reply."""
    s = Session("demo-token", config=config, transport=transport, clock=clock)
    await s.start()
    return s


@pytest_asyncio.fixture
async def authed(session, transport) -> Session:
    """Started session that has completed authorization."""
    transport.deliver(authorizeReply())
    transport.sent.clear()
    return session
