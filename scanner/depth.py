"""
Order-book depth analysis for the screener depth check, the scanner's live
liquidity gate and stop-loss exit pricing.
"""

from __future__ import annotations

import logging

from scanner.models import OrderBook, Side

logger = logging.getLogger(__name__)

BASE_SLIPPAGE = 0.05


def favoured_side(yes_odds: float, no_odds: float) -> Side:
    """The higher-probability leg; YES on ties."""
    return Side.NO if no_odds > yes_odds else Side.YES


def best_bid_depth(book: OrderBook, side: Side) -> float:
    """Contracts resting at the best bid for `side`; 0 when that side is empty."""
    level = book.best_bid(side)
    return level.size if level else 0.0


def estimate_slippage(order_size: float, liquidity: float, base: float = BASE_SLIPPAGE) -> float:
    """
    Linear slippage model: the fraction of visible depth an order consumes,
    scaled by `base`. No depth at all is treated as total slippage (1.0).
    """
    if liquidity <= 0:
        return 1.0
    return min(1.0, order_size / liquidity) * base


def price_slippage(fill_price: float | None, reference: float) -> float:
    """Relative distance of an achievable price from a reference price."""
    if fill_price is None or reference <= 0:
        return 1.0
    return abs(fill_price - reference) / reference


def effective_price(book: OrderBook, side: Side, size: float) -> float | None:
    """
    VWAP of selling `size` contracts of `side` into its bids.
    Returns None if the bids cannot absorb the full size.
    """
    levels = book.bids(side)
    if not levels or size <= 0:
        return None

    remaining = size
    total = 0.0
    for level in levels:
        fill = min(remaining, level.size)
        total += fill * level.price
        remaining -= fill
        if remaining <= 0:
            break

    if remaining > 0:
        return None
    return total / size
