"""
Kalshi REST API v2 client. Market discovery, orderbook fetching, order placement,
portfolio reads.

Kalshi API docs: https://trading-api.readme.io/reference
All prices are in cents (1-99) on the wire; payloads are converted to
probabilities/dollars by client/normalize.py before they leave this module.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Callable
from urllib.parse import urlparse

import httpx

from client.kalshi_auth import KalshiAuth
from client.normalize import (
    normalize_market,
    normalize_order,
    normalize_orderbook,
    normalize_settlement,
)
from client.retry import (
    AuthError,
    ExchangeError,
    RateLimitError,
    RetryPolicy,
    parse_retry_after,
)
from scanner.models import Market, Order, OrderBook, OrderStatus, Settlement, Side
from scanner.validation import InvalidMarketData

logger = logging.getLogger(__name__)

DEFAULT_HOST = "https://api.elections.kalshi.com/trade-api/v2"
DEMO_HOST = "https://demo-api.kalshi.co/trade-api/v2"
DEFAULT_TIMEOUT = 10.0
_PAGE_LIMIT = 100
_DEFAULT_RATE_LIMIT_WAIT_SEC = 5.0


def dollars_to_cents(price: float) -> int:
    """
    Convert dollar price (0.01-0.99) to Kalshi cents (1-99).
    Fail-fast on out-of-range prices.
    """
    cents = round(price * 100)
    if cents < 1 or cents > 99:
        raise ValueError(
            f"Kalshi price out of range: ${price:.4f} -> {cents} cents (must be 1-99)"
        )
    return cents


class KalshiClient:
    """
    Kalshi REST API v2 client.

    Every request goes through _request(), which signs it, applies the
    retry policy to 429s and transport errors, and maps failures onto the
    ExchangeError hierarchy. With `dry_run` set, order placement and
    cancellation are logged and answered locally instead of hitting the API.
    """

    def __init__(
        self,
        auth: KalshiAuth | None,
        host: str = DEFAULT_HOST,
        demo: bool = False,
        timeout: float = DEFAULT_TIMEOUT,
        retry_policy: RetryPolicy | None = None,
        dry_run: bool = False,
        sleep: Callable[[float], None] = time.sleep,
        http: httpx.Client | None = None,
    ) -> None:
        self._auth = auth
        self._host = (DEMO_HOST if demo else host).rstrip("/")
        self._http = http or httpx.Client(timeout=timeout)
        self._retry = retry_policy or RetryPolicy()
        self._sleep = sleep
        self.dry_run = dry_run

    def __enter__(self) -> KalshiClient:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict | None = None,
        json: dict | None = None,
        signed: bool = True,
    ) -> dict:
        """Make a (signed) request to the Kalshi API. Retries on 429 and transport errors."""
        url = f"{self._host}{path}"
        # Sign with the full URL path (e.g. /trade-api/v2/markets), not the relative path.
        full_path = urlparse(url).path

        for attempt in range(self._retry.max_attempts):
            headers = {"Accept": "application/json"}
            if json is not None:
                headers["Content-Type"] = "application/json"
            if signed:
                if self._auth is None:
                    raise AuthError(f"Kalshi credentials required for {method} {path}")
                headers.update(self._auth.sign_request(method, full_path))

            try:
                resp = self._http.request(method, url, headers=headers, params=params, json=json)
            except httpx.TransportError as e:
                if not self._retry.should_retry(attempt):
                    raise ExchangeError(f"Kalshi {method} {path} failed: {e}") from e
                wait = self._retry.delay(attempt)
                logger.warning(
                    "Kalshi transport error on %s %s (attempt %d/%d, waiting %.1fs): %s",
                    method, path, attempt + 1, self._retry.max_attempts, wait, e,
                )
                self._sleep(wait)
                continue

            if resp.status_code == 429:
                retry_after = parse_retry_after(resp.headers)
                if not self._retry.should_retry(attempt):
                    raise RateLimitError(
                        f"Kalshi rate limit on {method} {path} after {attempt + 1} attempts",
                        retry_after=retry_after,
                    )
                wait = self._retry.delay(attempt, retry_after)
                logger.warning(
                    "Kalshi 429 rate limited on %s %s (attempt %d/%d, waiting %.1fs)",
                    method, path, attempt + 1, self._retry.max_attempts, wait,
                )
                self._sleep(wait)
                continue

            if resp.status_code in (401, 403):
                raise AuthError(
                    f"Kalshi rejected credentials on {method} {path}: {resp.status_code}",
                    status_code=resp.status_code,
                )
            try:
                resp.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise ExchangeError(
                    f"Kalshi {method} {path} -> {resp.status_code}: {resp.text[:200]}",
                    status_code=resp.status_code,
                ) from e
            return resp.json()

        raise ExchangeError(f"Kalshi {method} {path}: retries exhausted")

    # -- Market Discovery --

    def get_markets(
        self,
        status: str = "open",
        limit: int = _PAGE_LIMIT,
        cursor: str | None = None,
        mve_filter: str | None = "exclude",
    ) -> tuple[list[Market], str | None]:
        """
        Fetch one page of markets. Returns (markets, next_cursor).
        Payloads that fail normalisation are logged and skipped.
        """
        params: dict = {"limit": limit, "status": status}
        if mve_filter:
            params["mve_filter"] = mve_filter
        if cursor:
            params["cursor"] = cursor

        data = self._request("GET", "/markets", params=params, signed=False)
        markets: list[Market] = []
        for raw in data.get("markets", []):
            try:
                markets.append(normalize_market(raw))
            except InvalidMarketData as e:
                logger.warning("Skipping market %s: %s", raw.get("ticker", "?"), e)
        next_cursor = data.get("cursor") or None
        return markets, next_cursor

    def get_all_markets(
        self,
        status: str = "open",
        max_pages: int = 200,
        page_delay_sec: float = 0.5,
        rate_limit_wait_sec: float = _DEFAULT_RATE_LIMIT_WAIT_SEC,
        mve_filter: str | None = "exclude",
    ) -> list[Market]:
        """
        Walk the market listing until the cursor is exhausted or `max_pages`
        requests have been spent. A rate-limited page is retried with the same
        cursor after the server-advised wait; the retry counts against the budget.
        """
        all_markets: list[Market] = []
        cursor = None
        pages = 0
        while pages < max_pages:
            pages += 1
            try:
                markets, next_cursor = self.get_markets(
                    status=status, cursor=cursor, mve_filter=mve_filter,
                )
            except RateLimitError as e:
                wait = e.retry_after if e.retry_after is not None else rate_limit_wait_sec
                logger.warning(
                    "Market listing rate limited on page %d, retrying same cursor in %.1fs",
                    pages, wait,
                )
                self._sleep(wait)
                continue

            all_markets.extend(markets)
            cursor = next_cursor
            if not cursor:
                break
            self._sleep(page_delay_sec)
        else:
            logger.info("Market listing stopped at page ceiling (%d pages)", max_pages)

        logger.debug("Fetched %d Kalshi markets in %d pages", len(all_markets), pages)
        return all_markets

    def get_market(self, ticker: str) -> Market:
        data = self._request("GET", f"/markets/{ticker}", signed=False)
        return normalize_market(data.get("market", data))

    # -- Orderbook --

    def get_orderbook(self, ticker: str) -> OrderBook:
        """Fetch the bid ladders for both sides of a market, in probability units."""
        data = self._request("GET", f"/markets/{ticker}/orderbook", signed=False)
        return normalize_orderbook(ticker, data)

    # -- Orders --

    def place_order(
        self,
        ticker: str,
        side: Side,
        count: int,
        price: float,
        action: str = "buy",
        type: str = "limit",
        client_order_id: str | None = None,
    ) -> Order:
        """
        Place an order on Kalshi.

        Args:
            ticker: Market ticker
            side: Side.YES or Side.NO
            count: Number of contracts (>= 1)
            price: Price in probability units for `side`; sent as cents
            action: "buy" or "sell"
            type: "limit" or "market"
            client_order_id: Idempotency key (generated if None)
        """
        if count < 1:
            raise ValueError(f"Order count must be >= 1, got {count}")
        cents = dollars_to_cents(price)
        client_order_id = client_order_id or str(uuid.uuid4())

        if self.dry_run:
            logger.info(
                "DRY RUN: %s %d %s %s @ %dc (%s)",
                action, count, side.value, ticker, cents, type,
            )
            return Order(
                order_id=f"dry-run-{client_order_id[:8]}",
                market_id=ticker,
                side=side,
                action=action,
                status=OrderStatus.RESTING,
                count=count,
                price=cents / 100.0,
                client_order_id=client_order_id,
            )

        body: dict = {
            "ticker": ticker,
            "side": side.api_value,
            "action": action,
            "count": count,
            "type": type,
            "client_order_id": client_order_id,
        }
        if side is Side.YES:
            body["yes_price"] = cents
        else:
            body["no_price"] = cents
        if type == "market" and action == "buy":
            body["buy_max_cost"] = cents * count

        try:
            data = self._request("POST", "/portfolio/orders", json=body)
        except ExchangeError as e:
            # A retried POST whose first attempt landed comes back as a duplicate.
            if e.status_code != 409:
                raise
            existing = self.find_order(ticker, client_order_id)
            if existing is None:
                raise
            logger.warning(
                "Order %s for %s was already accepted, using existing order %s",
                client_order_id, ticker, existing.order_id,
            )
            return existing
        order = normalize_order(data)
        logger.info(
            "Placed order %s: %s %d %s %s @ %dc -> %s",
            order.order_id, action, count, side.value, ticker, cents, order.status.value,
        )
        return order

    def cancel_order(self, order_id: str) -> Order | None:
        """Cancel a single order by ID. Returns the cancelled order (None in dry-run)."""
        if self.dry_run:
            logger.info("DRY RUN: cancel order %s", order_id)
            return None
        data = self._request("DELETE", f"/portfolio/orders/{order_id}")
        return normalize_order(data)

    def get_order(self, order_id: str) -> Order:
        data = self._request("GET", f"/portfolio/orders/{order_id}")
        return normalize_order(data)

    def find_order(self, ticker: str, client_order_id: str) -> Order | None:
        """Look up an order on `ticker` by the idempotency key it was placed with."""
        for order in self.get_orders(ticker=ticker):
            if order.client_order_id == client_order_id:
                return order
        return None

    def get_orders(
        self,
        ticker: str | None = None,
        status: str | None = None,
        max_pages: int = 10,
    ) -> list[Order]:
        """List orders, optionally filtered by ticker and status."""
        params: dict = {"limit": 200}
        if ticker:
            params["ticker"] = ticker
        if status:
            params["status"] = status
        orders: list[Order] = []
        for _ in range(max_pages):
            data = self._request("GET", "/portfolio/orders", params=params)
            for raw in data.get("orders", []):
                try:
                    orders.append(normalize_order(raw))
                except InvalidMarketData as e:
                    logger.warning("Skipping order %s: %s", raw.get("order_id", "?"), e)
            cursor = data.get("cursor")
            if not cursor:
                break
            params["cursor"] = cursor
        return orders

    # -- Account --

    def get_settlements(self, max_pages: int = 10) -> list[Settlement]:
        """List settled positions for this account."""
        params: dict = {"limit": 200}
        settlements: list[Settlement] = []
        for _ in range(max_pages):
            data = self._request("GET", "/portfolio/settlements", params=params)
            for raw in data.get("settlements", []):
                try:
                    settlements.append(normalize_settlement(raw))
                except InvalidMarketData as e:
                    logger.warning("Skipping settlement: %s", e)
            cursor = data.get("cursor")
            if not cursor:
                break
            params["cursor"] = cursor
        return settlements

    def get_balance(self) -> float:
        """Get available cash in dollars."""
        data = self._request("GET", "/portfolio/balance")
        return data.get("balance", 0) / 100.0  # cents -> dollars

    def close(self) -> None:
        """Close the underlying HTTP client."""
        self._http.close()
