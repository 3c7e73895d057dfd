"""
Four-phase market screener.

1. Bulk load the open listing under a page budget.
2. Basic filter with no network calls, counting every rejection reason.
3. Rank by a liquidity score built from volume, open interest and spread.
4. Depth check only the top N against live order books.

Expensive per-market calls are spent only on candidates that survived the
cheap phases.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, replace
from datetime import datetime
from typing import Callable

from client.kalshi import KalshiClient
from client.retry import AuthError, ExchangeError, RateLimitError
from scanner import filters
from scanner.depth import best_bid_depth, estimate_slippage, favoured_side
from scanner.models import Market, ScreenedMarket, utcnow
from scanner.validation import InvalidMarketData

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScreenCriteria:
    min_odds: float = 0.85
    max_odds: float = 0.98
    max_days: float = 3.0
    min_volume_24h: float = 2000.0
    min_open_interest: float = 2000.0
    # None disables the spread filter and the spread component of the score
    max_spread_cents: float | None = None
    top_n: int = 40
    order_size: float = 100.0
    # Defaults to min_open_interest when None
    min_book_liquidity: float | None = None
    max_execution_slippage: float = 0.10
    max_pages: int = 200
    page_delay_sec: float = 0.5
    depth_delay_sec: float = 0.05
    rate_limit_wait_sec: float = 5.0
    depth_rate_limit_wait_sec: float = 2.0

    @classmethod
    def from_config(cls, cfg) -> ScreenCriteria:
        return cls(
            min_odds=cfg.min_odds,
            max_odds=cfg.max_odds,
            max_days=cfg.screen_max_days,
            min_volume_24h=cfg.screen_min_volume_24h,
            min_open_interest=cfg.screen_min_open_interest,
            max_spread_cents=cfg.screen_max_spread_cents or None,
            top_n=cfg.screen_top_n,
            order_size=cfg.screen_order_size,
            max_execution_slippage=cfg.screen_max_execution_slippage,
            max_pages=cfg.screen_max_pages,
            page_delay_sec=cfg.screen_page_delay_sec,
            depth_delay_sec=cfg.screen_depth_delay_sec,
            rate_limit_wait_sec=cfg.screen_rate_limit_wait_sec,
            depth_rate_limit_wait_sec=cfg.screen_depth_rate_limit_wait_sec,
        )

    @property
    def book_liquidity_floor(self) -> float:
        if self.min_book_liquidity is not None:
            return self.min_book_liquidity
        return self.min_open_interest


@dataclass
class FilterStats:
    total_processed: int = 0
    skipped_no_pricing: int = 0
    skipped_degenerate: int = 0
    skipped_low_conviction: int = 0
    skipped_complex: int = 0
    skipped_low_volume: int = 0
    skipped_low_open_interest: int = 0
    skipped_spread: int = 0
    skipped_invalid_date: int = 0
    skipped_days_to_resolution: int = 0
    passed_basic: int = 0
    depth_checked: int = 0
    depth_rejected: int = 0
    depth_errors: int = 0
    passed_depth: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


def liquidity_score(market: Market, spread: float, criteria: ScreenCriteria) -> float:
    """
    Volume and open-interest points scale linearly up to their cap; with a
    spread cap configured, tighter spreads earn up to 20 more points.
    """
    capped = criteria.max_spread_cents is not None
    volume_points = 40.0 if capped else 50.0
    oi_points = 30.0 if capped else 50.0

    def _scaled(value: float, minimum: float, points: float) -> float:
        if minimum <= 0:
            return points
        return min(points, value / minimum * points)

    score = _scaled(market.volume_24h, criteria.min_volume_24h, volume_points)
    score += _scaled(market.open_interest, criteria.min_open_interest, oi_points)
    if capped and criteria.max_spread_cents:
        score += (1.0 - min(1.0, spread / criteria.max_spread_cents)) * 20.0
    return score


class MarketScreener:
    """Runs the screening phases. `last_stats` holds the counters of the latest run."""

    def __init__(
        self,
        client: KalshiClient,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._client = client
        self._sleep = sleep
        self._clock = clock
        self.last_stats = FilterStats()

    def screen_markets(self, criteria: ScreenCriteria) -> list[ScreenedMarket]:
        stats = FilterStats()
        self.last_stats = stats

        markets = self.bulk_load(criteria)
        candidates = self.basic_filter(markets, criteria, stats)
        ranked = self.rank(candidates)
        screened = self.depth_check(ranked, criteria, stats)

        logger.info(
            "Screened %d markets -> %d passed basic filter -> %d passed depth check",
            stats.total_processed, stats.passed_basic, stats.passed_depth,
        )
        return screened

    def bulk_load(self, criteria: ScreenCriteria) -> list[Market]:
        markets = self._client.get_all_markets(
            status="open",
            max_pages=criteria.max_pages,
            page_delay_sec=criteria.page_delay_sec,
            rate_limit_wait_sec=criteria.rate_limit_wait_sec,
        )
        logger.info("Bulk load: %d open markets", len(markets))
        return markets

    def basic_filter(
        self,
        markets: list[Market],
        criteria: ScreenCriteria,
        stats: FilterStats | None = None,
    ) -> list[ScreenedMarket]:
        """Apply the cheap filters in order; the first failing check is counted."""
        stats = stats if stats is not None else FilterStats()
        now = self._clock()
        passed: list[ScreenedMarket] = []

        for market in markets:
            stats.total_processed += 1
            if not filters.has_pricing(market):
                stats.skipped_no_pricing += 1
                continue
            if filters.is_degenerate(market):
                stats.skipped_degenerate += 1
                continue
            if not filters.is_high_conviction(market, criteria.min_odds, criteria.max_odds):
                stats.skipped_low_conviction += 1
                continue
            if not filters.is_simple_yes_no(market.question):
                stats.skipped_complex += 1
                continue
            if market.volume_24h < criteria.min_volume_24h:
                stats.skipped_low_volume += 1
                continue
            if market.open_interest < criteria.min_open_interest:
                stats.skipped_low_open_interest += 1
                continue
            spread = filters.spread_cents(market)
            if criteria.max_spread_cents is not None and spread > criteria.max_spread_cents:
                stats.skipped_spread += 1
                continue
            days = market.days_to_resolution(now)
            if days is None:
                stats.skipped_invalid_date += 1
                continue
            if days < 0 or days > criteria.max_days:
                stats.skipped_days_to_resolution += 1
                continue

            passed.append(ScreenedMarket(
                market=market,
                liquidity_score=liquidity_score(market, spread, criteria),
                spread_cents=spread,
            ))

        stats.passed_basic = len(passed)
        logger.info("Basic filter: %d/%d passed (%s)", len(passed), stats.total_processed, stats.as_dict())
        return passed

    @staticmethod
    def rank(candidates: list[ScreenedMarket]) -> list[ScreenedMarket]:
        """Stable sort by liquidity score descending, ranks 1..N."""
        ordered = sorted(candidates, key=lambda s: s.liquidity_score, reverse=True)
        return [replace(s, screening_rank=i + 1) for i, s in enumerate(ordered)]

    def depth_check(
        self,
        ranked: list[ScreenedMarket],
        criteria: ScreenCriteria,
        stats: FilterStats | None = None,
    ) -> list[ScreenedMarket]:
        """Live order-book check of the top N; failures are logged and skipped."""
        stats = stats if stats is not None else FilterStats()
        floor = criteria.book_liquidity_floor
        kept: list[ScreenedMarket] = []

        for i, candidate in enumerate(ranked[: criteria.top_n]):
            if i > 0:
                self._sleep(criteria.depth_delay_sec)
            stats.depth_checked += 1
            try:
                liquidity = self._book_liquidity(candidate.market, criteria)
            except AuthError:
                raise
            except (ExchangeError, InvalidMarketData) as e:
                stats.depth_errors += 1
                logger.warning("Depth check failed for %s: %s", candidate.market_id, e)
                continue

            slippage = estimate_slippage(criteria.order_size, liquidity)
            if liquidity < floor or slippage >= criteria.max_execution_slippage:
                stats.depth_rejected += 1
                logger.debug(
                    "Depth reject %s: liquidity=%.0f slippage=%.3f",
                    candidate.market_id, liquidity, slippage,
                )
                continue

            kept.append(replace(
                candidate, orderbook_liquidity=liquidity, execution_slippage=slippage,
            ))

        stats.passed_depth = len(kept)
        return kept

    def _book_liquidity(self, market: Market, criteria: ScreenCriteria) -> float:
        """Best-bid depth on the favoured side. A rate limit is retried once."""
        try:
            book = self._client.get_orderbook(market.market_id)
        except RateLimitError as e:
            wait = e.retry_after if e.retry_after is not None else criteria.depth_rate_limit_wait_sec
            logger.warning("Depth check rate limited on %s, retrying in %.1fs", market.market_id, wait)
            self._sleep(wait)
            book = self._client.get_orderbook(market.market_id)
        return best_bid_depth(book, favoured_side(market.yes_odds, market.no_odds))
