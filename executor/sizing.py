"""
Position sizing and side selection.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from scanner.models import Side

logger = logging.getLogger(__name__)

MIN_ORDER_PRICE = 0.01
MAX_ORDER_PRICE = 0.99


@dataclass(frozen=True)
class SidePolicy:
    """Buy the higher-probability leg; `tie_side` breaks exact ties."""
    tie_side: Side = Side.YES

    def choose(self, yes_odds: float, no_odds: float) -> Side:
        if yes_odds > no_odds:
            return Side.YES
        if no_odds > yes_odds:
            return Side.NO
        return self.tie_side


def clamp_order_price(price: float) -> float:
    """Keep a price inside the exchange's tradeable 1-99 cent range."""
    return min(MAX_ORDER_PRICE, max(MIN_ORDER_PRICE, price))


def contracts_for_allocation(allocation: float, price: float) -> int:
    """
    Whole contracts affordable with `allocation` dollars at `price`.
    Raises ValueError when not even one contract fits.
    """
    if price <= 0:
        raise ValueError(f"Cannot size at non-positive price {price}")
    # Tolerate float noise such as 30 / 0.3 = 99.99999999999999
    contracts = math.floor(allocation / price + 1e-9)
    if contracts < 1:
        raise ValueError(
            f"Allocation ${allocation:.2f} buys no contracts at ${price:.2f}"
        )
    return contracts


def realized_pnl(won: bool, contracts: int, position_size: float) -> float:
    """Settlement P&L: each winning contract pays $1."""
    if won:
        return round(contracts * 1.0 - position_size, 4)
    return round(-position_size, 4)
