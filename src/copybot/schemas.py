from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderType(str, Enum):
    # Fill-or-kill: the whole order fills immediately or is cancelled.
    FOK = "FOK"
    # Fill-and-kill: partial fills allowed, the remainder is cancelled.
    FAK = "FAK"


TICK_SIZES: frozenset[str] = frozenset({"0.1", "0.01", "0.001", "0.0001"})


@dataclass(frozen=True)
class TradeEvent:
    wallet: str
    market_id: str
    token_id: str
    side: Side
    price: Decimal
    size: Decimal
    outcome: str
    timestamp: datetime
    tx_hash: str
    outcome_index: int | None = None
    title: str | None = None
    slug: str | None = None

    @property
    def notional_usd(self) -> Decimal:
        return self.price * self.size

    @property
    def label(self) -> str:
        return self.title or self.slug or self.market_id


@dataclass(frozen=True)
class MarketOrderIntent:
    token_id: str
    side: Side
    amount: Decimal
    order_type: OrderType = OrderType.FAK
    price: Decimal | None = None
    tick_size: str = "0.01"
    neg_risk: bool = False


@dataclass(frozen=True)
class OrderResult:
    success: bool
    order_id: str = ""
    transaction_hashes: tuple[str, ...] = ()
    intent: MarketOrderIntent | None = None
    status: str = ""
    filled_amount: Decimal | None = None
    error: str = ""
    error_code: str = ""

    @classmethod
    def failed(cls, error_code: str, error: str, intent: MarketOrderIntent | None = None) -> OrderResult:
        return cls(success=False, error=error, error_code=error_code, intent=intent)


@dataclass(frozen=True)
class Holding:
    market_id: str
    token_id: str
    quantity: Decimal


@dataclass
class RedemptionOutcome:
    total: int = 0
    resolved: int = 0
    redeemed: int = 0
    failed: int = 0
    failed_markets: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "resolved": self.resolved,
            "redeemed": self.redeemed,
            "failed": self.failed,
        }


@dataclass(frozen=True)
class SideEffectResult:
    """Outcome of a best-effort call whose failure must never fail the caller."""

    name: str
    ok: bool
    error: str = ""


@dataclass(frozen=True)
class MarketResolution:
    market_id: str
    resolved: bool
    token_ids: tuple[str, ...] = ()
    winning_token_ids: frozenset[str] = frozenset()
    neg_risk: bool = False

    def outcome_index(self, token_id: str) -> int | None:
        try:
            return self.token_ids.index(token_id)
        except ValueError:
            return None
