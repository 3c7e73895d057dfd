"""
Persistent market snapshot cache for Kalshi, backed by the SQLite store.

The scanner reads only from here, so trading runs never pay for the
paginated listing. Refreshes write through to the store; a failed refresh
leaves the previous rows in place (stale-while-error) and readers keep
getting the last good snapshot until it ages out of the TTL.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable

from client.kalshi import KalshiClient
from scanner.models import Market, ScreenedMarket
from state.store import TradeStore

logger = logging.getLogger(__name__)

_CURSOR_KEY = "market_cache.cursor"
_DEFAULT_TTL_HOURS = 2.0


@dataclass(frozen=True)
class RefreshResult:
    markets_cached: int
    pages: int
    next_cursor: str | None

    @property
    def complete(self) -> bool:
        """True once the listing cursor wrapped around to the start."""
        return self.next_cursor is None


class MarketCache:
    """Write-through market cache with a freshness TTL."""

    def __init__(
        self,
        client: KalshiClient,
        store: TradeStore,
        ttl_hours: float = _DEFAULT_TTL_HOURS,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self._store = store
        self._ttl_sec = ttl_hours * 3600.0
        self._clock = clock
        self._sleep = sleep

    def snapshot(self) -> list[Market]:
        """Unresolved markets cached within the TTL, freshest first."""
        markets = self._store.get_cached_markets(max_age_sec=self._ttl_sec, now=self._clock())
        logger.debug("Market cache snapshot: %d fresh markets", len(markets))
        return markets

    def store_screened(self, screened: Iterable[ScreenedMarket]) -> int:
        """Cache screener output; book depth goes to orderbook_liquidity, listing liquidity is kept."""
        items = list(screened)
        count = self._store.upsert_markets(items, cached_at=self._clock())
        logger.info("Cached %d screened markets", count)
        return count

    def refresh_pages(self, pages: int = 1, page_delay_sec: float = 0.5) -> RefreshResult:
        """
        Gradual refresh: fetch up to `pages` listing pages starting from the
        persisted cursor, then persist the cursor for the next run. Wraps to
        the start once the listing is exhausted.
        """
        cursor = self._store.get_state(_CURSOR_KEY)
        cached = 0
        fetched = 0
        for _ in range(pages):
            markets, cursor = self._client.get_markets(cursor=cursor)
            fetched += 1
            cached += self._store.upsert_markets(markets, cached_at=self._clock())
            # Persist progress per page so a later failure doesn't redo work
            self._store.set_state(_CURSOR_KEY, cursor)
            if not cursor:
                break
            self._sleep(page_delay_sec)

        logger.info(
            "Market cache refresh: %d markets from %d pages (%s)",
            cached, fetched, "listing complete" if not cursor else "more pages pending",
        )
        return RefreshResult(markets_cached=cached, pages=fetched, next_cursor=cursor)

    def refresh_all(self, max_pages: int = 200, page_delay_sec: float = 0.5) -> int:
        """Full refresh of the open listing, then drop rows older than the TTL."""
        markets = self._client.get_all_markets(max_pages=max_pages, page_delay_sec=page_delay_sec)
        count = self._store.upsert_markets(markets, cached_at=self._clock())
        purged = self._store.purge_stale_markets(self._ttl_sec, now=self._clock())
        logger.info("Market cache full refresh: %d cached, %d stale purged", count, purged)
        return count
