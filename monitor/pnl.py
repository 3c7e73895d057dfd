"""
P&L summary computed from persisted trades.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from scanner.models import Trade, TradeStatus
from state.store import TradeStore

logger = logging.getLogger(__name__)


@dataclass
class PnLSummary:
    """Aggregate P&L over a set of trades."""

    realized_pnl: float = 0.0
    total_trades: int = 0
    open_trades: int = 0
    won: int = 0
    lost: int = 0
    stopped: int = 0
    cancelled: int = 0
    open_exposure: float = 0.0
    total_volume: float = 0.0

    @classmethod
    def from_trades(cls, trades: list[Trade]) -> PnLSummary:
        summary = cls()
        for t in trades:
            summary.total_trades += 1
            if t.status is TradeStatus.CANCELLED:
                summary.cancelled += 1
                continue
            summary.total_volume += t.position_size
            if t.status is TradeStatus.OPEN:
                summary.open_trades += 1
                summary.open_exposure += t.position_size
                continue
            summary.realized_pnl += t.pnl or 0.0
            if t.status is TradeStatus.WON:
                summary.won += 1
            elif t.status is TradeStatus.LOST:
                summary.lost += 1
            elif t.status is TradeStatus.STOPPED:
                summary.stopped += 1
        return summary

    @property
    def closed_trades(self) -> int:
        return self.won + self.lost + self.stopped

    @property
    def win_rate(self) -> float:
        if self.closed_trades == 0:
            return 0.0
        return (self.won / self.closed_trades) * 100.0

    def summary(self) -> dict:
        return {
            "realized_pnl": round(self.realized_pnl, 2),
            "total_trades": self.total_trades,
            "open_trades": self.open_trades,
            "won": self.won,
            "lost": self.lost,
            "stopped": self.stopped,
            "cancelled": self.cancelled,
            "win_rate_pct": round(self.win_rate, 1),
            "open_exposure": round(self.open_exposure, 2),
            "total_volume": round(self.total_volume, 2),
        }


def current_bankroll(store: TradeStore, initial_bankroll: float) -> float:
    """Latest recorded balance, else the starting bankroll plus realized P&L."""
    latest = store.latest_bankroll()
    if latest is not None:
        return latest
    realized = PnLSummary.from_trades(store.get_all_trades()).realized_pnl
    return round(initial_bankroll + realized, 2)
