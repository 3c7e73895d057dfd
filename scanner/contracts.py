"""
Contract scanner: promotes cached markets to trade candidates.

Reads only the market cache (no listing calls). Cheap filters run first;
the live order-book liquidity gate runs last, one book per survivor.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from client.kalshi import KalshiClient
from client.market_cache import MarketCache
from client.retry import AuthError, ExchangeError
from scanner import filters
from scanner.depth import best_bid_depth, favoured_side
from scanner.models import Contract, Market, utcnow
from scanner.validation import InvalidMarketData

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScanCriteria:
    min_odds: float = 0.85
    max_odds: float = 0.98
    max_days: float = 2.0
    min_liquidity: float = 2000.0
    excluded_categories: tuple[str, ...] = ()
    excluded_keywords: tuple[str, ...] = ()
    book_delay_sec: float = 0.05

    @classmethod
    def from_config(cls, cfg) -> ScanCriteria:
        return cls(
            min_odds=cfg.min_odds,
            max_odds=cfg.max_odds,
            max_days=cfg.max_days_to_resolution,
            min_liquidity=cfg.min_liquidity,
            excluded_categories=cfg.excluded_category_list,
            excluded_keywords=cfg.excluded_keyword_list,
            book_delay_sec=cfg.screen_depth_delay_sec,
        )


def passes_cheap_filters(market: Market, criteria: ScanCriteria, now: datetime) -> bool:
    if market.resolved:
        return False
    if not filters.within_horizon(market, criteria.max_days, now):
        return False
    if not filters.is_high_conviction(market, criteria.min_odds, criteria.max_odds):
        return False
    if filters.is_excluded(market, criteria.excluded_categories, criteria.excluded_keywords):
        return False
    return True


def scan_contracts(
    cache: MarketCache,
    client: KalshiClient,
    criteria: ScanCriteria,
    now: datetime | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> list[Contract]:
    """
    Cached markets that pass every filter and have at least
    `min_liquidity` contracts at the best bid of the favoured side, sorted
    by that liquidity descending (stable). An empty cache yields [].
    """
    now = now or utcnow()
    markets = cache.snapshot()
    if not markets:
        logger.info("Market cache is empty, nothing to scan")
        return []

    candidates = [m for m in markets if passes_cheap_filters(m, criteria, now)]
    logger.info("Scanner: %d/%d cached markets passed cheap filters", len(candidates), len(markets))

    contracts: list[Contract] = []
    for i, market in enumerate(candidates):
        if i > 0:
            sleep(criteria.book_delay_sec)
        try:
            book = client.get_orderbook(market.market_id)
        except AuthError:
            raise
        except (ExchangeError, InvalidMarketData) as e:
            logger.warning("Liquidity check failed for %s: %s", market.market_id, e)
            continue

        liquidity = best_bid_depth(book, favoured_side(market.yes_odds, market.no_odds))
        if liquidity < criteria.min_liquidity:
            logger.debug("Scanner reject %s: liquidity %.0f < %.0f", market.market_id, liquidity, criteria.min_liquidity)
            continue
        contracts.append(Contract.from_market(market, liquidity=liquidity, discovered_at=now))

    contracts.sort(key=lambda c: c.liquidity, reverse=True)
    logger.info("Scanner: %d contracts promoted", len(contracts))
    return contracts
