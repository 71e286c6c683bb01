"""CALL/PUT quote pair for a symbol, with one-click purchase of the latest quote."""
from __future__ import annotations

from dataclasses import dataclass, field

from loguru import logger

from brokerstream.engine.defaults import DEFAULT_SYMBOL
from brokerstream.engine.errors import MisuseError
from brokerstream.engine.primitives import (
    AccountInfo,
    Direction,
    DurationUnit,
    Proposal,
    ProposalRequest,
    ReqId,
)
from brokerstream.engine.session import Session


@dataclass(slots=True, weakref_slot=True)
class ProposalDesk:
    """Keeps the latest CALL and PUT quote for one set of contract parameters.

    Changing any parameter through ``refresh()`` forgets the old quote streams
    before requesting new ones, so a stale quote is never bought. Quote
    streams die with the connection, so the desk re-requests them after every
    authorization.
    """

    session: Session
    symbol: str = DEFAULT_SYMBOL
    stake: float = 1.0
    duration: int = 5
    durationUnit: DurationUnit = "m"

    quotes: dict[Direction, Proposal] = field(default_factory=dict)
    reqIds: dict[Direction, ReqId] = field(default_factory=dict)
    attached: bool = False

    def start(self) -> None:
        if not self.attached:
            self.session.proposalEvent += self.onProposal
            self.session.authorizedEvent += self.onAuthorized
            self.attached = True

        if self.session.isAuthorized:
            self.refresh()

    def stop(self) -> None:
        for reqId in self.reqIds.values():
            self.session.forgetProposal(reqId)

        self.reqIds.clear()
        self.quotes.clear()

        if self.attached:
            self.session.proposalEvent -= self.onProposal
            self.session.authorizedEvent -= self.onAuthorized
            self.attached = False

    def refresh(
        self,
        symbol: str | None = None,
        stake: float | None = None,
        duration: int | None = None,
        durationUnit: DurationUnit | None = None,
    ) -> None:
        """Re-quote both sides, optionally with new parameters."""
        requests = {
            d: ProposalRequest(
                symbol=symbol or self.symbol,
                direction=d,
                amount=self.stake if stake is None else stake,
                duration=duration or self.duration,
                durationUnit=durationUnit or self.durationUnit,
            )
            for d in Direction
        }

        # parameters validated above, so only commit them now
        first = requests[Direction.CALL]
        self.symbol = first.symbol
        self.stake = first.amount
        self.duration = first.duration
        self.durationUnit = first.durationUnit

        self.quotes.clear()
        for direction, request in requests.items():
            reqId = self.session.getProposal(
                request, replaces=self.reqIds.pop(direction, None)
            )
            if reqId is not None:
                self.reqIds[direction] = reqId

        logger.info(
            "[quotes :: {}] Requested CALL/PUT for {} {}{}",
            self.symbol,
            self.stake,
            self.duration,
            self.durationUnit,
        )

    def onProposal(self, proposal: Proposal) -> None:
        for direction, reqId in self.reqIds.items():
            if reqId == proposal.reqId:
                self.quotes[direction] = proposal
                return

    def onAuthorized(self, _info: AccountInfo) -> None:
        # the previous streams were dropped with the old connection
        self.reqIds.clear()
        self.refresh()

    def buy(self, direction: Direction) -> ReqId | None:
        """Buy the latest quote for ``direction`` at its ask price."""
        if (quote := self.quotes.get(direction)) is None:
            raise MisuseError(f"No {direction.value} quote to buy yet")

        return self.session.buyContract(quote.id, quote.askPrice)
