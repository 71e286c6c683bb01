"""Pure types, constants, and the wire codec for the streaming session."""

from __future__ import annotations

import enum
import json
import platform
import types
from dataclasses import dataclass, field
from typing import Any, Final, Literal, TypeAlias

import whenever

from brokerstream.engine.errors import MisuseError

# Use orjson for CPython (faster), stdlib json for PyPy
ourjson: types.ModuleType
if platform.python_implementation() == "CPython":
    import orjson

    ourjson = orjson
else:
    ourjson = json

ReqId: TypeAlias = int
ContractId: TypeAlias = int
Symbol: TypeAlias = str
DurationUnit: TypeAlias = Literal["s", "m", "h", "d"]
Basis: TypeAlias = Literal["stake", "payout"]

# request keys whose replies are matched back to the sender by req_id
CORRELATED_REQUESTS: Final = frozenset({"proposal", "buy", "sell"})

# request keys whose reply is exactly one frame (tracked in pendingRequests)
SINGLE_REPLY_REQUESTS: Final = frozenset({"buy", "sell"})


class ConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    AUTHORIZING = "authorizing"
    AUTHORIZED = "authorized"


class StreamKind(enum.Enum):
    TICK = "tick"
    CONTRACT = "contract"


class Direction(enum.Enum):
    CALL = "CALL"
    PUT = "PUT"


class ContractStatus(enum.Enum):
    OPEN = "open"
    WON = "won"
    LOST = "lost"

    @property
    def closed(self) -> bool:
        return self is not ContractStatus.OPEN

    @classmethod
    def fromWire(cls, status: str | None, profit: float) -> ContractStatus:
        """Map a provider status string to our three-state status.

        The provider also reports "sold" for early-closed contracts, which we
        resolve to won/lost by the sign of the final profit.
        """
        match status:
            case "won":
                return cls.WON
            case "lost":
                return cls.LOST
            case "sold":
                return cls.WON if profit >= 0 else cls.LOST

        return cls.OPEN


def encode(message: dict[str, Any]) -> str:
    """Serialize an outbound frame as text (orjson produces bytes)."""
    out = ourjson.dumps(message)
    if isinstance(out, bytes):
        return out.decode()

    return out


def decode(frame: str | bytes) -> dict[str, Any]:
    return ourjson.loads(frame)


@dataclass(slots=True, frozen=True)
class Tick:
    """A single price quote for a symbol."""

    symbol: Symbol
    price: float
    epoch: int

    @property
    def time(self) -> whenever.Instant:
        return whenever.Instant.from_timestamp(self.epoch)

    @classmethod
    def fromWire(cls, tick: dict[str, Any]) -> Tick:
        return cls(
            symbol=tick["symbol"], price=float(tick["quote"]), epoch=int(tick["epoch"])
        )


@dataclass(slots=True, frozen=True)
class Balance:
    amount: float
    currency: str


@dataclass(slots=True, frozen=True)
class AccountInfo:
    """Account details returned by a successful authorize reply."""

    loginid: str
    balance: Balance
    email: str = ""
    fullname: str = ""
    scopes: tuple[str, ...] = ()
    accounts: tuple[str, ...] = ()
    isVirtual: bool = False

    @classmethod
    def fromWire(cls, auth: dict[str, Any]) -> AccountInfo:
        return cls(
            loginid=auth.get("loginid", ""),
            balance=Balance(float(auth.get("balance", 0)), auth.get("currency", "")),
            email=auth.get("email", ""),
            fullname=auth.get("fullname", ""),
            scopes=tuple(auth.get("scopes") or ()),
            accounts=tuple(a["loginid"] for a in auth.get("account_list") or ()),
            isVirtual=bool(auth.get("is_virtual", 0)),
        )


@dataclass(slots=True, frozen=True)
class ProposalRequest:
    """Parameters for pricing one contract.

    Proposal streams are never replayed after a reconnect because their
    quote ids die with the connection.
    """

    symbol: Symbol
    direction: Direction
    amount: float
    duration: int
    durationUnit: DurationUnit = "m"
    basis: Basis = "stake"

    def __post_init__(self) -> None:
        if not self.symbol:
            raise MisuseError("Proposal requires a symbol")

        if self.amount <= 0:
            raise MisuseError(f"Proposal amount must be positive, got {self.amount}")

        if self.duration <= 0:
            raise MisuseError(f"Proposal duration must be positive, got {self.duration}")

    def wire(self, currency: str, subscribe: bool = True) -> dict[str, Any]:
        msg: dict[str, Any] = dict(
            proposal=1,
            amount=self.amount,
            basis=self.basis,
            contract_type=self.direction.value,
            currency=currency,
            duration=self.duration,
            duration_unit=self.durationUnit,
            symbol=self.symbol,
        )

        if subscribe:
            msg["subscribe"] = 1

        return msg


@dataclass(slots=True, frozen=True)
class Proposal:
    """A priced, purchasable quote. Superseded by the next quote for the same request."""

    id: str
    askPrice: float
    payout: float
    spot: float
    spotTime: int
    reqId: ReqId | None = None

    @classmethod
    def fromWire(cls, proposal: dict[str, Any], reqId: ReqId | None) -> Proposal:
        return cls(
            id=proposal["id"],
            askPrice=float(proposal["ask_price"]),
            payout=float(proposal["payout"]),
            spot=float(proposal.get("spot", 0)),
            spotTime=int(proposal.get("spot_time", 0)),
            reqId=reqId,
        )


@dataclass(slots=True, frozen=True)
class BuyReceipt:
    reqId: ReqId
    contractId: ContractId
    buyPrice: float
    transactionId: int = 0
    balanceAfter: float | None = None
    longcode: str = ""


@dataclass(slots=True, frozen=True)
class SellReceipt:
    reqId: ReqId
    contractId: ContractId
    soldFor: float
    transactionId: int = 0
    balanceAfter: float | None = None


@dataclass(slots=True)
class Contract:
    """An open or closed position, updated in place by status pushes until closed."""

    contractId: ContractId
    status: ContractStatus = ContractStatus.OPEN
    profit: float = 0.0
    buyPrice: float = 0.0
    currentSpot: float | None = None
    updates: int = 0

    @property
    def closed(self) -> bool:
        return self.status.closed

    def update(self, poc: dict[str, Any]) -> bool:
        """Apply one status push. Returns False if the contract was already closed."""
        if self.closed:
            return False

        self.profit = float(poc.get("profit", self.profit))
        self.buyPrice = float(poc.get("buy_price", self.buyPrice))
        if (spot := poc.get("current_spot")) is not None:
            self.currentSpot = float(spot)

        self.status = ContractStatus.fromWire(poc.get("status"), self.profit)

        # is_sold without a final status still closes the position
        if poc.get("is_sold") and not self.closed:
            self.status = ContractStatus.fromWire("sold", self.profit)

        self.updates += 1
        return True


@dataclass(slots=True)
class PendingRequest:
    """A sent request waiting for exactly one matching reply."""

    reqId: ReqId
    kind: str
    message: dict[str, Any] = field(default_factory=dict)

    # optional timeout handle (anything with .cancel())
    timer: Any | None = None
