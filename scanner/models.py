"""
Data models for screening, execution and risk. Pure data, minimal behavior.

All odds/prices are normalized probabilities in [0, 1] and all money is in
dollars. Conversion from exchange cents happens once, in client/normalize.py.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Side(str, Enum):
    YES = "YES"
    NO = "NO"

    @property
    def opposite(self) -> Side:
        return Side.NO if self is Side.YES else Side.YES

    @property
    def api_value(self) -> str:
        """Lowercase form used by the exchange API."""
        return self.value.lower()


class TradeStatus(str, Enum):
    OPEN = "open"
    WON = "won"
    LOST = "lost"
    STOPPED = "stopped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not TradeStatus.OPEN


class OrderStatus(str, Enum):
    PENDING = "pending"
    RESTING = "resting"
    EXECUTED = "executed"
    CANCELED = "canceled"


@dataclass(frozen=True)
class PriceLevel:
    price: float
    size: float


@dataclass(frozen=True)
class OrderBook:
    """
    Kalshi-style book: only bids are published for each side.

    A YES ask at price P is implied by a NO bid at (1 - P), and vice versa.
    Levels are sorted best-first (highest bid first).
    """
    market_id: str
    yes_bids: tuple[PriceLevel, ...]
    no_bids: tuple[PriceLevel, ...]

    def bids(self, side: Side) -> tuple[PriceLevel, ...]:
        return self.yes_bids if side is Side.YES else self.no_bids

    def best_bid(self, side: Side) -> PriceLevel | None:
        levels = self.bids(side)
        return levels[0] if levels else None

    def best_ask(self, side: Side) -> PriceLevel | None:
        """Implied best ask for `side`, derived from the opposite side's best bid."""
        opposite = self.best_bid(side.opposite)
        if opposite is None:
            return None
        return PriceLevel(price=round(1.0 - opposite.price, 4), size=opposite.size)

    def spread(self, side: Side = Side.YES) -> float | None:
        bid = self.best_bid(side)
        ask = self.best_ask(side)
        if bid and ask:
            return ask.price - bid.price
        return None


@dataclass(frozen=True)
class Market:
    market_id: str
    question: str
    end_date: datetime | None
    yes_odds: float
    no_odds: float
    liquidity: float = 0.0
    volume_24h: float = 0.0
    open_interest: float = 0.0
    yes_ask: float = 0.0
    no_ask: float = 0.0
    category: str = ""
    event_ticker: str = ""
    status: str = ""
    resolved: bool = False
    outcome: Side | None = None
    final_odds: float | None = None
    resolved_at: datetime | None = None

    def odds_for(self, side: Side) -> float:
        return self.yes_odds if side is Side.YES else self.no_odds

    def ask_for(self, side: Side) -> float:
        return self.yes_ask if side is Side.YES else self.no_ask

    def days_to_resolution(self, now: datetime | None = None) -> float | None:
        if self.end_date is None:
            return None
        now = now or utcnow()
        return (self.end_date - now).total_seconds() / 86400.0


@dataclass(frozen=True)
class ScreenedMarket:
    """A market that survived the basic filter, annotated through ranking and depth check."""
    market: Market
    liquidity_score: float
    spread_cents: float
    orderbook_liquidity: float | None = None
    execution_slippage: float | None = None
    screening_rank: int = 0

    @property
    def market_id(self) -> str:
        return self.market.market_id


@dataclass(frozen=True)
class Contract:
    """A market promoted to trade candidacy. `liquidity` comes from live book depth."""
    market_id: str
    question: str
    end_date: datetime | None
    yes_odds: float
    no_odds: float
    liquidity: float
    volume_24h: float
    discovered_at: datetime
    category: str = ""
    id: int | None = None

    @classmethod
    def from_market(
        cls, market: Market, liquidity: float, discovered_at: datetime | None = None,
    ) -> Contract:
        return cls(
            market_id=market.market_id,
            question=market.question,
            end_date=market.end_date,
            yes_odds=market.yes_odds,
            no_odds=market.no_odds,
            liquidity=liquidity,
            volume_24h=market.volume_24h,
            discovered_at=discovered_at or utcnow(),
            category=market.category,
        )


@dataclass(frozen=True)
class Selection:
    """One oracle pick: what to buy and how much to spend."""
    contract: Contract
    allocation: float
    confidence: float
    reasoning: str = ""
    risk_factors: tuple[str, ...] = ()


@dataclass(frozen=True)
class Order:
    order_id: str
    market_id: str
    side: Side
    action: str
    status: OrderStatus
    count: int
    fill_count: int = 0
    price: float = 0.0
    created_time: datetime | None = None
    client_order_id: str = ""

    @property
    def is_filled(self) -> bool:
        return self.status is OrderStatus.EXECUTED or (
            self.count > 0 and self.fill_count >= self.count
        )


@dataclass(frozen=True)
class Settlement:
    market_id: str
    result: Side | None
    settled_time: datetime | None
    yes_count: int = 0
    no_count: int = 0
    revenue: float = 0.0


@dataclass(frozen=True)
class Trade:
    """
    A position. `pnl` is set if and only if the status is terminal;
    construction fails otherwise.
    """
    id: int | None
    market_id: str
    question: str
    side: Side
    entry_odds: float
    position_size: float
    contracts_purchased: int
    status: TradeStatus
    executed_at: datetime
    order_id: str = ""
    confidence: float = 0.0
    reasoning: str = ""
    risk_factors: tuple[str, ...] = ()
    exit_odds: float | None = None
    pnl: float | None = None
    resolved_at: datetime | None = None
    needs_reconciliation: bool = False

    def __post_init__(self) -> None:
        if self.status is TradeStatus.OPEN and self.pnl is not None:
            raise ValueError(f"Open trade {self.id} cannot carry pnl={self.pnl}")
        if self.status.is_terminal and self.pnl is None:
            raise ValueError(f"Terminal trade {self.id} ({self.status.value}) requires pnl")

    @property
    def is_open(self) -> bool:
        return self.status is TradeStatus.OPEN

    def hold_time_hours(self, now: datetime | None = None) -> float:
        now = now or utcnow()
        return (now - self.executed_at).total_seconds() / 3600.0


@dataclass(frozen=True)
class TradeResult:
    success: bool
    trade: Trade | None = None
    error: str | None = None
    contract: Contract | None = None


@dataclass(frozen=True)
class StopLossConfig:
    enabled: bool
    trigger_threshold: float
    min_hold_time_hours: float
    max_slippage_pct: float


@dataclass(frozen=True)
class StopLossEvent:
    trade_id: int
    trigger_odds: float
    exit_odds: float
    position_size: float
    realized_loss: float
    reason: str
    executed_at: datetime = field(default_factory=utcnow)
    id: int | None = None
