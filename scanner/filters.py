"""
Cheap, network-free market filters shared by the screener and the scanner.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Iterable

from scanner.models import Market, utcnow

logger = logging.getLogger(__name__)

_YES_CLAUSE = re.compile(r"\byes\s+[^,]+", re.IGNORECASE)
_NO_CLAUSE = re.compile(r"\bno\s+[^,]+", re.IGNORECASE)

DEGENERATE_BID = 0.999


def has_pricing(market: Market) -> bool:
    return market.yes_odds > 0 or market.no_odds > 0


def is_degenerate(market: Market) -> bool:
    """A bid this close to 1.0 leaves nothing to earn."""
    return market.yes_odds >= DEGENERATE_BID or market.no_odds >= DEGENERATE_BID


def is_high_conviction(market: Market, min_odds: float, max_odds: float) -> bool:
    """The favoured leg is priced inside [min_odds, max_odds]."""
    favoured = max(market.yes_odds, market.no_odds)
    return min_odds <= favoured <= max_odds


def is_simple_yes_no(question: str) -> bool:
    """
    Reject multi-leg parlay titles such as "yes A, yes B". More than one
    "yes ..." or "no ..." clause disqualifies; so does an empty title.
    """
    if not question or not question.strip():
        return False
    if len(_YES_CLAUSE.findall(question)) > 1:
        return False
    if len(_NO_CLAUSE.findall(question)) > 1:
        return False
    return True


def spread_cents(market: Market) -> float:
    """
    YES ask minus YES bid, in cents. A missing side is estimated one cent
    away from the other.
    """
    bid = round(market.yes_odds * 100)
    ask = round(market.yes_ask * 100)
    if ask <= 0 and bid > 0:
        ask = bid + 1
    if bid <= 0 and ask > 0:
        bid = max(0, ask - 1)
    return float(max(0, ask - bid))


def within_horizon(market: Market, max_days: float, now: datetime | None = None) -> bool:
    """Resolution date known and in [0, max_days] days from now."""
    days = market.days_to_resolution(now or utcnow())
    return days is not None and 0 <= days <= max_days


def is_excluded_category(category: str, excluded: Iterable[str]) -> bool:
    category = (category or "").strip().lower()
    return bool(category) and any(category == c.strip().lower() for c in excluded)


def contains_excluded_keyword(text: str, keywords: Iterable[str]) -> bool:
    """Case-insensitive whole-word match of any keyword in `text`."""
    if not text:
        return False
    for kw in keywords:
        kw = kw.strip()
        if kw and re.search(rf"\b{re.escape(kw)}\b", text, re.IGNORECASE):
            return True
    return False


def is_excluded(market: Market, categories: Iterable[str], keywords: Iterable[str]) -> bool:
    if is_excluded_category(market.category, categories):
        return True
    text = f"{market.question} {market.market_id.replace('-', ' ')}"
    return contains_excluded_keyword(text, keywords)
