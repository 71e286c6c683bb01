"""Authenticated, reconnecting session over one brokerage streaming socket.

A Session owns one transport and multiplexes every consumer (price ticker,
quote desk, strategy runner, ...) over it. Consumers attach to the public
``*Event`` attributes with ``+=`` and issue requests through the methods below.
Requests return immediately; replies arrive later as events.
"""
from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Final

from eventkit import Event
from loguru import logger

from brokerstream.engine.clock import SessionClock
from brokerstream.engine.config import StreamConfig
from brokerstream.engine.errors import (
    ConnectionLost,
    MisuseError,
    NotReady,
    ProtocolError,
    RequestTimeout,
    SessionError,
)
from brokerstream.engine.primitives import (
    CORRELATED_REQUESTS,
    SINGLE_REPLY_REQUESTS,
    AccountInfo,
    Balance,
    BuyReceipt,
    ConnectionState,
    Contract,
    ContractId,
    PendingRequest,
    Proposal,
    ProposalRequest,
    ReqId,
    SellReceipt,
    StreamKind,
    Tick,
    decode,
    encode,
)
from brokerstream.engine.protocols import TransportLike
from brokerstream.engine.registry import SubscriptionEntry, SubscriptionRegistry
from brokerstream.engine.transport import Transport

# inbound msg_type -> handler method name
DISPATCH: Final = {
    "authorize": "_onAuthorize",
    "balance": "_onBalance",
    "tick": "_onTick",
    "proposal": "_onProposal",
    "buy": "_onBuy",
    "sell": "_onSell",
    "proposal_open_contract": "_onContract",
    "error": "_onProtocolError",
}

# provider error code for a stream that is already live on this connection
ALREADY_SUBSCRIBED: Final = "AlreadySubscribed"


def _event(name: str) -> Callable[[], Event]:
    return lambda: Event(name)


def contractRequest(contractId: ContractId) -> dict[str, Any]:
    return {"proposal_open_contract": 1, "contract_id": contractId, "subscribe": 1}


@dataclass(slots=True)
class ProposalStream:
    """A proposal request still expecting quotes, keyed by its req_id."""

    reqId: ReqId
    message: dict[str, Any]
    subscriptionId: str | None = None
    latest: Proposal | None = None

    @property
    def streaming(self) -> bool:
        return bool(self.message.get("subscribe"))


@dataclass(slots=True, weakref_slot=True)
class Session:
    # opaque bearer token, reused for every re-authorization
    credential: str = field(repr=False)

    config: StreamConfig = field(default_factory=StreamConfig)

    # built from config on start() when not injected
    transport: TransportLike | None = None

    clock: SessionClock = field(default_factory=SessionClock)

    state: ConnectionState = ConnectionState.DISCONNECTED

    # last authorize reply for the current connection
    account: AccountInfo | None = None

    # last balance message wins, never merged
    balance: Balance | None = None

    registry: SubscriptionRegistry = field(default_factory=SubscriptionRegistry)
    pendingRequests: dict[ReqId, PendingRequest] = field(default_factory=dict)
    proposalStreams: dict[ReqId, ProposalStream] = field(default_factory=dict)
    contracts: dict[ContractId, Contract] = field(default_factory=dict)

    connectEvent: Event = field(default_factory=_event("connectEvent"))
    disconnectEvent: Event = field(default_factory=_event("disconnectEvent"))
    authorizedEvent: Event = field(default_factory=_event("authorizedEvent"))
    balanceEvent: Event = field(default_factory=_event("balanceEvent"))
    tickEvent: Event = field(default_factory=_event("tickEvent"))
    proposalEvent: Event = field(default_factory=_event("proposalEvent"))
    buyEvent: Event = field(default_factory=_event("buyEvent"))
    sellEvent: Event = field(default_factory=_event("sellEvent"))
    contractEvent: Event = field(default_factory=_event("contractEvent"))
    errorEvent: Event = field(default_factory=_event("errorEvent"))

    # number of connection drops since the last successful authorization
    reconnectAttempts: int = 0

    _reqIdSeq: int = field(default=0, init=False)
    _stopping: bool = field(default=False, init=False)
    _reconnectTimer: Any | None = field(default=None, init=False)
    _tasks: set[asyncio.Task] = field(default_factory=set, init=False)
    _handlers: dict[str, Callable[[dict[str, Any]], None]] = field(
        default_factory=dict, init=False
    )

    def __post_init__(self) -> None:
        if not self.credential:
            raise MisuseError("Session requires a credential")

        self._handlers = {kind: getattr(self, name) for kind, name in DISPATCH.items()}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def isConnected(self) -> bool:
        return self.state in {
            ConnectionState.CONNECTED,
            ConnectionState.AUTHORIZING,
            ConnectionState.AUTHORIZED,
        }

    @property
    def isAuthorized(self) -> bool:
        return self.state is ConnectionState.AUTHORIZED

    @property
    def activeSubscriptions(self) -> list[SubscriptionEntry]:
        return list(self.registry)

    async def start(self) -> None:
        """Open the connection; authorization and replay follow automatically."""
        if self.transport is None:
            self.transport = Transport.fromConfig(self.config)

        self.transport.onOpen = self._onOpen
        self.transport.onMessage = self._onMessage
        self.transport.onClose = self._onClose
        self.transport.onError = self._onTransportError

        self._stopping = False
        await self._connect()

    async def stop(self) -> None:
        """Tear down for good: no reconnect, pending requests fail."""
        self._stopping = True

        if self._reconnectTimer:
            self._reconnectTimer.cancel()
            self._reconnectTimer = None

        for task in list(self._tasks):
            if task is not asyncio.current_task():
                task.cancel()

        if self.transport and self.transport.isOpen:
            await self.transport.close()
        elif self.state is not ConnectionState.DISCONNECTED:
            self._onClose()

        logger.info("[session] Stopped")

    async def _connect(self) -> None:
        self._reconnectTimer = None
        if self._stopping:
            return

        assert self.transport
        self.state = ConnectionState.CONNECTING
        await self.transport.open()

    def _reconnect(self) -> None:
        task = asyncio.create_task(self._connect())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _scheduleReconnect(self) -> None:
        self.reconnectAttempts += 1

        if (
            self.config.reconnectAttemptsMax is not None
            and self.reconnectAttempts > self.config.reconnectAttemptsMax
        ):
            self._fail(
                ConnectionLost(
                    f"Giving up after {self.config.reconnectAttemptsMax} reconnect attempts"
                )
            )
            return

        delay = self.config.delayForAttempt(self.reconnectAttempts)
        logger.warning(
            "[session] Connection lost, reconnecting in {:.2f}s (attempt {})",
            delay,
            self.reconnectAttempts,
        )
        self._reconnectTimer = self.clock.later(delay, self._reconnect)

    # ------------------------------------------------------------------
    # Transport callbacks
    # ------------------------------------------------------------------

    def _onOpen(self) -> None:
        self.state = ConnectionState.CONNECTED
        self.connectEvent.emit()
        self._authorize()

    def _authorize(self) -> None:
        self.state = ConnectionState.AUTHORIZING
        self._sendFrame({"authorize": self.credential})

    def _onClose(self) -> None:
        self.state = ConnectionState.DISCONNECTED
        self.account = None

        reason = "Session stopped" if self._stopping else "Connection lost"

        # nothing sent on the old socket can be answered on the next one
        pending = list(self.pendingRequests.values())
        self.pendingRequests.clear()
        for p in pending:
            if p.timer:
                p.timer.cancel()

            self._fail(ConnectionLost(f"{reason} before {p.kind} reply", reqId=p.reqId))

        # quote ids die with the connection: proposals are failed, not replayed
        streams = list(self.proposalStreams.values())
        self.proposalStreams.clear()
        for stream in streams:
            self._fail(ConnectionLost(f"{reason} before proposal reply", reqId=stream.reqId))

        self.disconnectEvent.emit()

        if not self._stopping:
            self._scheduleReconnect()

    def _onTransportError(self, message: str) -> None:
        self._fail(ConnectionLost(message))

    def _onMessage(self, text: str) -> None:
        try:
            msg = decode(text)
        except ValueError:
            logger.error("[session] Undecodable frame: {}", text[:200])
            return

        if not isinstance(msg, dict):
            logger.warning("[session] Ignoring non-object frame: {}", text[:200])
            return

        kind = msg.get("msg_type")
        handler = self._handlers.get(kind)  # type: ignore[arg-type]
        if handler is None:
            # unknown kinds are expected as the provider grows new messages
            logger.trace("[session] Ignoring message kind: {}", kind)
            return

        handler(msg)

    # ------------------------------------------------------------------
    # Message handlers
    # ------------------------------------------------------------------

    def _onAuthorize(self, msg: dict[str, Any]) -> None:
        if err := msg.get("error"):
            # stay connected but unauthorized until the caller intervenes
            # or the next transport close starts a full cycle
            self.state = ConnectionState.CONNECTED
            self.account = None
            self._fail(ProtocolError.fromWire(err))
            return

        info = AccountInfo.fromWire(msg["authorize"])
        self.account = info
        self.balance = info.balance
        self.state = ConnectionState.AUTHORIZED
        self.reconnectAttempts = 0

        logger.info(
            "[session :: {}] Authorized with balance {:,.2f} {}",
            info.loginid,
            info.balance.amount,
            info.balance.currency,
        )

        # private balance stream, managed by the session itself
        self._sendFrame({"balance": 1, "subscribe": 1})

        for frame in self.registry.replay():
            self._sendFrame(frame)

        self.authorizedEvent.emit(info)
        self.balanceEvent.emit(info.balance)

    def _onBalance(self, msg: dict[str, Any]) -> None:
        if err := msg.get("error"):
            self._fail(ProtocolError.fromWire(err))
            return

        if not (bal := msg.get("balance")):
            return

        self.balance = Balance(float(bal["balance"]), bal.get("currency", ""))
        self.balanceEvent.emit(self.balance)

    def _onTick(self, msg: dict[str, Any]) -> None:
        if err := msg.get("error"):
            symbol = (msg.get("echo_req") or {}).get("ticks")
            if err.get("code") == ALREADY_SUBSCRIBED:
                logger.warning("[session :: {}] Tick stream already live", symbol)
                return

            # a rejected subscribe is terminal for that stream
            if symbol:
                self.registry.forget(StreamKind.TICK, symbol)

            self._fail(ProtocolError.fromWire(err))
            return

        if not (raw := msg.get("tick")):
            return

        tick = Tick.fromWire(raw)
        subscriptionId = (msg.get("subscription") or {}).get("id") or raw.get("id")
        ident = (StreamKind.TICK, tick.symbol)

        if ident in self.registry.forgetOnSight:
            # unsubscribed before we learned the id; forget it now
            self.registry.forgetOnSight.discard(ident)
            if subscriptionId:
                self._sendFrame({"forget": subscriptionId})

            return

        if ident not in self.registry:
            logger.trace("[session :: {}] Dropping tick for unsubscribed symbol", tick.symbol)
            return

        self.registry.bind(StreamKind.TICK, tick.symbol, subscriptionId)
        self.tickEvent.emit(tick)

    def _onProposal(self, msg: dict[str, Any]) -> None:
        reqId = msg.get("req_id")
        subscriptionId = (msg.get("subscription") or {}).get("id")

        if err := msg.get("error"):
            self.proposalStreams.pop(reqId, None)  # type: ignore[arg-type]
            self._fail(ProtocolError.fromWire(err, reqId))
            return

        stream = self.proposalStreams.get(reqId) if reqId is not None else None
        if reqId is not None and stream is None:
            # stream was replaced or forgotten before its first quote arrived
            logger.debug("[session] Dropping quote for stale proposal req_id {}", reqId)
            if subscriptionId:
                self._sendFrame({"forget": subscriptionId})

            return

        proposal = Proposal.fromWire(msg["proposal"], reqId)
        if stream:
            stream.latest = proposal
            stream.subscriptionId = subscriptionId or stream.subscriptionId
            if not stream.streaming:
                del self.proposalStreams[stream.reqId]

        self.proposalEvent.emit(proposal)

    def _onBuy(self, msg: dict[str, Any]) -> None:
        reqId = msg.get("req_id")
        if self._resolve(reqId) is None:
            logger.warning("[session] Dropping stale buy reply for req_id {}", reqId)
            return

        if err := msg.get("error"):
            self._fail(ProtocolError.fromWire(err, reqId))
            return

        buy = msg["buy"]
        receipt = BuyReceipt(
            reqId=reqId,  # type: ignore[arg-type]
            contractId=int(buy["contract_id"]),
            buyPrice=float(buy["buy_price"]),
            transactionId=int(buy.get("transaction_id", 0)),
            balanceAfter=buy.get("balance_after"),
            longcode=buy.get("longcode", ""),
        )

        logger.info(
            "[session :: contract {}] Bought for {:,.2f}", receipt.contractId, receipt.buyPrice
        )

        # the buy request subscribed the status stream already; record it for replay only
        self.contracts.setdefault(
            receipt.contractId, Contract(receipt.contractId, buyPrice=receipt.buyPrice)
        )
        self.registry.record(
            StreamKind.CONTRACT, str(receipt.contractId), contractRequest(receipt.contractId)
        )

        self.buyEvent.emit(receipt)

    def _onSell(self, msg: dict[str, Any]) -> None:
        reqId = msg.get("req_id")
        if self._resolve(reqId) is None:
            logger.warning("[session] Dropping stale sell reply for req_id {}", reqId)
            return

        if err := msg.get("error"):
            self._fail(ProtocolError.fromWire(err, reqId))
            return

        sell = msg["sell"]
        receipt = SellReceipt(
            reqId=reqId,  # type: ignore[arg-type]
            contractId=int(sell["contract_id"]),
            soldFor=float(sell["sold_for"]),
            transactionId=int(sell.get("transaction_id", 0)),
            balanceAfter=sell.get("balance_after"),
        )

        logger.info(
            "[session :: contract {}] Sold for {:,.2f}", receipt.contractId, receipt.soldFor
        )
        self.sellEvent.emit(receipt)

    def _onContract(self, msg: dict[str, Any]) -> None:
        if err := msg.get("error"):
            self._fail(ProtocolError.fromWire(err))
            return

        poc = msg.get("proposal_open_contract") or {}
        if (cid := poc.get("contract_id")) is None:
            return

        contractId = int(cid)
        contract = self.contracts.setdefault(contractId, Contract(contractId))
        self.registry.bind(
            StreamKind.CONTRACT, str(contractId), (msg.get("subscription") or {}).get("id")
        )

        if not contract.update(poc):
            logger.trace("[session :: contract {}] Ignoring update after close", contractId)
            return

        if contract.closed:
            self.registry.forget(StreamKind.CONTRACT, str(contractId))
            logger.info(
                "[session :: contract {}] Closed {} with profit {:,.2f}",
                contractId,
                contract.status.value,
                contract.profit,
            )

        # consumers get a snapshot; the live record keeps mutating until closed
        self.contractEvent.emit(dataclasses.replace(contract))

    def _onProtocolError(self, msg: dict[str, Any]) -> None:
        reqId = msg.get("req_id")
        self._resolve(reqId)
        self._fail(ProtocolError.fromWire(msg.get("error"), reqId))

    # ------------------------------------------------------------------
    # Correlation
    # ------------------------------------------------------------------

    def nextReqId(self) -> ReqId:
        self._reqIdSeq += 1
        return self._reqIdSeq

    def _track(self, pending: PendingRequest) -> None:
        self.pendingRequests[pending.reqId] = pending

        if (timeout := self.config.requestTimeout) is not None:
            reqId = pending.reqId
            pending.timer = self.clock.later(timeout, lambda: self._expire(reqId, timeout))

    def _resolve(self, reqId: ReqId | None) -> PendingRequest | None:
        if reqId is None:
            return None

        pending = self.pendingRequests.pop(reqId, None)
        if pending and pending.timer:
            pending.timer.cancel()

        return pending

    def _expire(self, reqId: ReqId, timeout: float) -> None:
        if pending := self.pendingRequests.pop(reqId, None):
            self._fail(
                RequestTimeout(
                    f"No {pending.kind} reply within {timeout:.1f}s", reqId=reqId
                )
            )

    def _fail(self, err: SessionError) -> None:
        logger.error("[session :: {}] {}", err.kind.value, err.message)
        self.errorEvent.emit(err)

    def _sendFrame(self, message: dict[str, Any]) -> bool:
        if self.transport is None:
            return False

        return self.transport.send(encode(message))

    def _requireAuthorized(self, what: str) -> None:
        if self.state is not ConnectionState.AUTHORIZED:
            raise NotReady(f"Cannot {what}: session is {self.state.value}")

    # ------------------------------------------------------------------
    # Public requests
    # ------------------------------------------------------------------

    def send(self, message: dict[str, Any]) -> ReqId | None:
        """Send a raw request frame.

        Proposal, buy, and sell requests get a req_id (unless one was given)
        so their replies route back through the session; the req_id is
        returned. Frames sent while the socket is down are dropped and
        return None.
        """
        if not message:
            raise MisuseError("Cannot send an empty message")

        if not (self.transport and self.transport.isOpen):
            logger.debug("[session] Not connected, dropping request: {}", list(message))
            return None

        msg = dict(message)
        kind = next((k for k in msg if k in CORRELATED_REQUESTS), None)

        reqId: ReqId | None = None
        if kind:
            reqId = msg.setdefault("req_id", self.nextReqId())
            if kind in SINGLE_REPLY_REQUESTS:
                self._track(PendingRequest(reqId, kind, msg))  # type: ignore[arg-type]
            else:
                self.proposalStreams[reqId] = ProposalStream(reqId, msg)  # type: ignore[index,arg-type]

        self._sendFrame(msg)
        return reqId

    def subscribeTicks(self, symbol: str) -> bool:
        """Start the tick stream for ``symbol``. Returns False if it was already live.

        There is only ever one upstream stream per symbol no matter how many
        consumers listen on ``tickEvent``. Each call holds the stream until a
        matching ``unsubscribeTicks``.
        """
        if not symbol or not isinstance(symbol, str):
            raise MisuseError("Tick subscription requires a symbol")

        request = {"ticks": symbol, "subscribe": 1}
        if not self.registry.record(StreamKind.TICK, symbol, request):
            logger.debug("[session :: {}] Already subscribed, sharing stream", symbol)
            return False

        # before authorization the replay sends it
        if self.isAuthorized:
            self._sendFrame(request)

        logger.info("[session :: {}] Subscribed to ticks", symbol)
        return True

    def unsubscribeTicks(self, symbol: str) -> bool:
        """Release one hold on the ``symbol`` tick stream.

        The stream ends upstream only when its last holder lets go; other
        symbols keep streaming either way.
        """
        if (entry := self.registry.release(StreamKind.TICK, symbol)) is None:
            return False

        if entry.refs > 0:
            logger.debug("[session :: {}] Tick stream still held by {} other(s)", symbol, entry.refs)
            return True

        if entry.subscriptionId:
            self._sendFrame({"forget": entry.subscriptionId})
        elif self.isAuthorized:
            self.registry.forgetOnSight.add(entry.ident)

        logger.info("[session :: {}] Unsubscribed from ticks", symbol)
        return True

    def forgetAll(self, stream: str) -> None:
        """Ask the provider to end every stream of one type (e.g. "ticks")."""
        self._sendFrame({"forget_all": stream})

        kind = {"ticks": StreamKind.TICK, "proposal_open_contract": StreamKind.CONTRACT}.get(
            stream
        )
        for entry in self.registry:
            if entry.kind is kind:
                self.registry.forget(entry.kind, entry.key)

        if stream == "proposal":
            self.proposalStreams.clear()

    def subscribeContract(self, contractId: ContractId) -> bool:
        """Stream status updates for an existing contract."""
        if not contractId:
            raise MisuseError("Contract subscription requires a contract id")

        request = contractRequest(contractId)
        if not self.registry.record(StreamKind.CONTRACT, str(contractId), request):
            return False

        self.contracts.setdefault(contractId, Contract(contractId))
        if self.isAuthorized:
            self._sendFrame(request)

        return True

    def getProposal(
        self,
        request: ProposalRequest,
        subscribe: bool = True,
        replaces: ReqId | None = None,
    ) -> ReqId | None:
        """Request quotes for ``request``; each quote arrives on ``proposalEvent``.

        With ``subscribe`` the provider keeps re-quoting until the stream is
        forgotten. ``replaces`` forgets an earlier stream first.
        """
        self._requireAuthorized("request a proposal")
        assert self.balance

        if replaces is not None:
            self.forgetProposal(replaces)

        return self.send(request.wire(self.balance.currency, subscribe=subscribe))

    def forgetProposal(self, reqId: ReqId) -> bool:
        if (stream := self.proposalStreams.pop(reqId, None)) is None:
            return False

        if stream.subscriptionId:
            self._sendFrame({"forget": stream.subscriptionId})

        return True

    def buyContract(self, proposalId: str, price: float) -> ReqId | None:
        """Buy a quoted proposal at up to ``price``.

        Success arrives on ``buyEvent`` and starts the contract status stream;
        rejection (stale quote, insufficient balance, ...) arrives on ``errorEvent``.
        """
        if not proposalId:
            raise MisuseError("Cannot buy without a proposal id")

        if price is None or price < 0:
            raise MisuseError(f"Invalid buy price: {price}")

        self._requireAuthorized("buy a contract")
        return self.send({"buy": proposalId, "price": price, "subscribe": 1})

    def sellContract(self, contractId: ContractId, price: float = 0) -> ReqId | None:
        """Close a contract early for at least ``price`` (0 sells at market)."""
        if not contractId:
            raise MisuseError("Cannot sell without a contract id")

        if price is None or price < 0:
            raise MisuseError(f"Invalid sell price: {price}")

        self._requireAuthorized("sell a contract")
        return self.send({"sell": contractId, "price": price})
