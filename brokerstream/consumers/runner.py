"""Automated order submission and tracking for a pluggable direction chooser.

The runner owns the mechanics only: limits, quote-then-buy sequencing, and
following each purchased contract to its close. Which direction to trade
comes from the caller's ``chooser``.
"""
from __future__ import annotations

import random
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Literal, TypeAlias

import whenever
from loguru import logger

from brokerstream.engine.defaults import DEFAULT_SYMBOL
from brokerstream.engine.errors import NotReady, SessionError
from brokerstream.engine.primitives import (
    BuyReceipt,
    Contract,
    ContractId,
    ContractStatus,
    Direction,
    DurationUnit,
    Proposal,
    ProposalRequest,
    ReqId,
    Tick,
)
from brokerstream.engine.session import Session

DirectionChooser: TypeAlias = Callable[[], Direction]
TradeResult: TypeAlias = Literal["pending", "win", "loss", "failed"]


def coinflip() -> Direction:
    """Demo chooser: pick a side at random."""
    return random.choice((Direction.CALL, Direction.PUT))


@dataclass(slots=True)
class RunnerConfig:
    name: str = "Demo Bot"
    asset: str = DEFAULT_SYMBOL
    stake: float = 1.0

    # trades allowed per run
    maxTrades: int = 50

    # percent of account balance
    stopLossPct: float = 10.0
    takeProfitPct: float = 20.0

    duration: int = 1
    durationUnit: DurationUnit = "m"

    # seconds between trades
    interval: float = 60.0


@dataclass(slots=True)
class TradeLog:
    reqId: ReqId
    direction: Direction
    asset: str
    stake: float
    time: whenever.Instant = field(default_factory=whenever.Instant.now)
    result: TradeResult = "pending"
    buyReqId: ReqId | None = None
    contractId: ContractId | None = None
    profit: float | None = None
    reason: str = ""


@dataclass(slots=True)
class RunnerStats:
    totalTrades: int = 0
    wins: int = 0
    losses: int = 0
    totalProfit: float = 0.0

    @property
    def winRate(self) -> float:
        settled = self.wins + self.losses
        return self.wins / settled if settled else 0.0


@dataclass(slots=True, weakref_slot=True)
class StrategyRunner:
    session: Session
    chooser: DirectionChooser = coinflip
    config: RunnerConfig = field(default_factory=RunnerConfig)

    stats: RunnerStats = field(default_factory=RunnerStats)
    logs: deque[TradeLog] = field(default_factory=lambda: deque(maxlen=100))

    running: bool = False
    stopReason: str | None = None
    lastPrice: float | None = None
    attached: bool = False

    # in-flight trades by the id that will identify their next event
    _byProposal: dict[ReqId, TradeLog] = field(default_factory=dict, init=False)
    _byBuy: dict[ReqId, TradeLog] = field(default_factory=dict, init=False)
    _byContract: dict[ContractId, TradeLog] = field(default_factory=dict, init=False)

    def attach(self) -> None:
        if self.attached:
            return

        s = self.session
        s.tickEvent += self.onTick
        s.proposalEvent += self.onProposal
        s.buyEvent += self.onBuy
        s.contractEvent += self.onContract
        s.errorEvent += self.onError
        self.attached = True

        s.subscribeTicks(self.config.asset)

    def detach(self) -> None:
        if not self.attached:
            return

        s = self.session
        s.tickEvent -= self.onTick
        s.proposalEvent -= self.onProposal
        s.buyEvent -= self.onBuy
        s.contractEvent -= self.onContract
        s.errorEvent -= self.onError
        self.attached = False

        s.unsubscribeTicks(self.config.asset)

    def limitReached(self) -> str | None:
        """Reason the runner must stop, or None to keep trading."""
        cfg = self.config
        if self.stats.totalTrades >= cfg.maxTrades:
            return "Daily trade limit reached"

        balance = self.session.balance.amount if self.session.balance else 0.0
        profit = self.stats.totalProfit

        if profit < 0 and profit <= -(balance * cfg.stopLossPct / 100):
            return "Stop loss triggered"

        if profit > 0 and profit >= balance * cfg.takeProfitPct / 100:
            return "Take profit reached"

        return None

    def step(self) -> ReqId | None:
        """Place one trade unless a limit stops the run. Returns the quote req_id."""
        if reason := self.limitReached():
            self.halt(reason)
            return None

        cfg = self.config
        direction = self.chooser()
        request = ProposalRequest(
            symbol=cfg.asset,
            direction=direction,
            amount=cfg.stake,
            duration=cfg.duration,
            durationUnit=cfg.durationUnit,
        )

        try:
            reqId = self.session.getProposal(request, subscribe=False)
        except NotReady as e:
            logger.warning("[{}] Skipping trade: {}", cfg.name, e)
            return None

        if reqId is None:
            return None

        log = TradeLog(reqId, direction, cfg.asset, cfg.stake)
        self.logs.appendleft(log)
        self._byProposal[reqId] = log
        self.stats.totalTrades += 1

        logger.info(
            "[{}] Trade {} :: {} {} @ {}", cfg.name, self.stats.totalTrades, direction.value, cfg.asset, cfg.stake
        )
        return reqId

    def halt(self, reason: str) -> None:
        self.running = False
        self.stopReason = reason
        logger.warning("[{}] Stopped: {}", self.config.name, reason)

    async def run(self) -> None:
        """Trade every ``interval`` seconds until halted or a limit is hit."""
        self.attach()
        self.running = True
        self.stopReason = None

        logger.info("[{}] Started", self.config.name)
        while self.running:
            self.step()
            if not self.running:
                break

            await self.session.clock.sleep(self.config.interval)

    # ------------------------------------------------------------------
    # Session events
    # ------------------------------------------------------------------

    def onTick(self, tick: Tick) -> None:
        if tick.symbol == self.config.asset:
            self.lastPrice = tick.price

    def onProposal(self, proposal: Proposal) -> None:
        if (log := self._byProposal.pop(proposal.reqId, None)) is None:  # type: ignore[arg-type]
            return

        try:
            buyReqId = self.session.buyContract(proposal.id, proposal.askPrice)
        except NotReady as e:
            self._settleFailed(log, str(e))
            return

        if buyReqId is None:
            self._settleFailed(log, "Not connected")
            return

        log.buyReqId = buyReqId
        self._byBuy[buyReqId] = log

    def onBuy(self, receipt: BuyReceipt) -> None:
        if (log := self._byBuy.pop(receipt.reqId, None)) is None:
            return

        log.contractId = receipt.contractId
        self._byContract[receipt.contractId] = log

    def onContract(self, contract: Contract) -> None:
        if (log := self._byContract.get(contract.contractId)) is None:
            return

        log.profit = contract.profit
        if not contract.closed:
            return

        del self._byContract[contract.contractId]
        log.result = "win" if contract.status is ContractStatus.WON else "loss"

        if log.result == "win":
            self.stats.wins += 1
        else:
            self.stats.losses += 1

        self.stats.totalProfit += contract.profit

    def onError(self, err: SessionError) -> None:
        if err.reqId is None:
            return

        log = self._byProposal.pop(err.reqId, None) or self._byBuy.pop(err.reqId, None)
        if log:
            self._settleFailed(log, err.message)

    def _settleFailed(self, log: TradeLog, reason: str) -> None:
        log.result = "failed"
        log.reason = reason
        logger.warning("[{}] Trade {} failed: {}", self.config.name, log.reqId, reason)
