"""
Unit tests for client/kalshi.py -- Kalshi REST API v2 client.
"""

import json
from unittest.mock import MagicMock

import httpx
import pytest
import respx

from client.kalshi import KalshiClient, dollars_to_cents
from client.kalshi_auth import KalshiAuth
from client.retry import AuthError, ExchangeError, RateLimitError, RetryPolicy
from scanner.models import OrderStatus, Side

HOST = "https://test.kalshi.com/trade-api/v2"


def _mock_auth() -> KalshiAuth:
    """Create a mock KalshiAuth that returns fixed headers."""
    auth = MagicMock(spec=KalshiAuth)
    auth.sign_request.return_value = {
        "KALSHI-ACCESS-KEY": "test-key",
        "KALSHI-ACCESS-SIGNATURE": "test-sig",
        "KALSHI-ACCESS-TIMESTAMP": "1700000000000",
    }
    return auth


def _client(auth=None, sleeps=None, **kwargs) -> KalshiClient:
    recorded = sleeps if sleeps is not None else []
    return KalshiClient(
        auth if auth is not None else _mock_auth(),
        host=HOST,
        retry_policy=RetryPolicy(max_attempts=3, backoff_sec=1.0, jitter_frac=0.0),
        sleep=recorded.append,
        **kwargs,
    )


def _market(ticker: str, **overrides) -> dict:
    payload = {
        "ticker": ticker,
        "event_ticker": "EVT",
        "title": f"Will {ticker} happen?",
        "status": "active",
        "yes_bid": 93,
        "yes_ask": 94,
        "no_bid": 6,
        "no_ask": 7,
        "volume_24h": 5000,
        "open_interest": 8000,
        "close_time": "2026-10-20T12:00:00Z",
    }
    payload.update(overrides)
    return payload


class TestDollarsToCents:
    def test_converts(self):
        assert dollars_to_cents(0.93) == 93
        assert dollars_to_cents(0.01) == 1

    @pytest.mark.parametrize("price", [0.0, 1.0, 0.004, 1.2])
    def test_rejects_out_of_range(self, price):
        with pytest.raises(ValueError):
            dollars_to_cents(price)


class TestGetMarkets:
    @respx.mock
    def test_fetches_and_normalizes(self):
        route = respx.get(f"{HOST}/markets").mock(
            return_value=httpx.Response(200, json={"markets": [_market("PRES-2028-GOP")], "cursor": ""}),
        )
        markets, cursor = _client().get_markets()
        assert cursor is None
        assert len(markets) == 1
        m = markets[0]
        assert m.market_id == "PRES-2028-GOP"
        assert m.yes_odds == pytest.approx(0.93)
        assert m.no_odds == pytest.approx(0.06)
        assert m.event_ticker == "EVT"
        assert route.calls[0].request.url.params["mve_filter"] == "exclude"

    @respx.mock
    def test_listing_is_unsigned(self):
        auth = _mock_auth()
        respx.get(f"{HOST}/markets").mock(
            return_value=httpx.Response(200, json={"markets": [], "cursor": ""}),
        )
        _client(auth=auth).get_markets()
        auth.sign_request.assert_not_called()

    @respx.mock
    def test_skips_invalid_payloads(self):
        respx.get(f"{HOST}/markets").mock(
            return_value=httpx.Response(200, json={
                "markets": [_market("GOOD"), _market("BAD", yes_bid="abc")],
                "cursor": "",
            }),
        )
        markets, _ = _client().get_markets()
        assert [m.market_id for m in markets] == ["GOOD"]


class TestGetAllMarkets:
    @respx.mock
    def test_pagination(self):
        respx.get(f"{HOST}/markets").mock(side_effect=[
            httpx.Response(200, json={"markets": [_market(f"M{i}") for i in range(3)], "cursor": "page2"}),
            httpx.Response(200, json={"markets": [_market("M3")], "cursor": ""}),
        ])
        sleeps: list[float] = []
        markets = _client(sleeps=sleeps).get_all_markets(page_delay_sec=0.5)
        assert len(markets) == 4
        assert sleeps == [0.5]

    @respx.mock
    def test_stops_at_page_ceiling(self):
        route = respx.get(f"{HOST}/markets").mock(
            return_value=httpx.Response(200, json={"markets": [_market("M")], "cursor": "more"}),
        )
        markets = _client().get_all_markets(max_pages=3, page_delay_sec=0)
        assert route.call_count == 3
        assert len(markets) == 3

    @respx.mock
    def test_rate_limited_page_retries_same_cursor(self):
        route = respx.get(f"{HOST}/markets").mock(side_effect=[
            httpx.Response(200, json={"markets": [_market("A")], "cursor": "c2"}),
            # Three 429s exhaust the per-request retry policy
            httpx.Response(429, headers={"Retry-After": "2"}),
            httpx.Response(429, headers={"Retry-After": "2"}),
            httpx.Response(429, headers={"Retry-After": "2"}),
            httpx.Response(200, json={"markets": [_market("B")], "cursor": ""}),
        ])
        markets = _client().get_all_markets(page_delay_sec=0)
        assert [m.market_id for m in markets] == ["A", "B"]
        assert route.calls[-1].request.url.params["cursor"] == "c2"
        assert route.calls[1].request.url.params["cursor"] == "c2"


class TestRequestErrors:
    @respx.mock
    def test_429_then_success_honours_retry_after(self):
        respx.get(f"{HOST}/markets/T1").mock(side_effect=[
            httpx.Response(429, headers={"Retry-After": "7"}),
            httpx.Response(200, json={"market": _market("T1")}),
        ])
        sleeps: list[float] = []
        market = _client(sleeps=sleeps).get_market("T1")
        assert market.market_id == "T1"
        assert sleeps == [7.0]

    @respx.mock
    def test_429_exhausted_raises_rate_limit_error(self):
        respx.get(f"{HOST}/markets/T1").mock(return_value=httpx.Response(429))
        sleeps: list[float] = []
        with pytest.raises(RateLimitError):
            _client(sleeps=sleeps).get_market("T1")
        # Exponential backoff without jitter: 1s, 2s
        assert sleeps == [1.0, 2.0]

    @respx.mock
    def test_401_raises_auth_error(self):
        respx.get(f"{HOST}/portfolio/balance").mock(return_value=httpx.Response(401))
        with pytest.raises(AuthError) as exc:
            _client().get_balance()
        assert exc.value.status_code == 401

    @respx.mock
    def test_500_raises_exchange_error(self):
        respx.get(f"{HOST}/markets/T1").mock(return_value=httpx.Response(500, text="boom"))
        with pytest.raises(ExchangeError) as exc:
            _client().get_market("T1")
        assert exc.value.status_code == 500
        assert not isinstance(exc.value, AuthError)

    @respx.mock
    def test_transport_error_retried_then_raised(self):
        route = respx.get(f"{HOST}/markets/T1").mock(side_effect=httpx.ConnectError("refused"))
        with pytest.raises(ExchangeError):
            _client().get_market("T1")
        assert route.call_count == 3

    def test_signed_call_without_credentials(self):
        client = KalshiClient(None, host=HOST)
        with pytest.raises(AuthError):
            client.get_balance()


class TestGetOrderbook:
    @respx.mock
    def test_cents_ladders(self):
        respx.get(f"{HOST}/markets/T1/orderbook").mock(
            return_value=httpx.Response(200, json={"orderbook": {
                "yes": [[92, 100], [93, 250]],
                "no": [[5, 40]],
            }}),
        )
        book = _client().get_orderbook("T1")
        assert book.best_bid(Side.YES).price == pytest.approx(0.93)
        assert book.best_bid(Side.YES).size == 250
        assert book.best_ask(Side.YES).price == pytest.approx(0.95)


class TestOrders:
    @respx.mock
    def test_place_limit_buy(self):
        route = respx.post(f"{HOST}/portfolio/orders").mock(
            return_value=httpx.Response(201, json={"order": {
                "order_id": "ord-1", "ticker": "T1", "side": "no", "action": "buy",
                "status": "resting", "initial_count": 10, "fill_count": 0, "no_price": 94,
            }}),
        )
        order = _client().place_order("T1", Side.NO, 10, 0.94)
        assert order.order_id == "ord-1"
        assert order.status is OrderStatus.RESTING
        assert order.side is Side.NO
        body = json.loads(route.calls[0].request.content)
        assert body["side"] == "no"
        assert body["no_price"] == 94
        assert "yes_price" not in body
        assert "buy_max_cost" not in body

    @respx.mock
    def test_market_buy_carries_max_cost(self):
        route = respx.post(f"{HOST}/portfolio/orders").mock(
            return_value=httpx.Response(201, json={"order": {
                "order_id": "ord-2", "ticker": "T1", "side": "yes", "status": "executed", "count": 5,
            }}),
        )
        order = _client().place_order("T1", Side.YES, 5, 0.90, type="market")
        body = json.loads(route.calls[0].request.content)
        assert body["buy_max_cost"] == 450
        assert order.is_filled
        assert order.fill_count == 5

    @respx.mock
    def test_timeout_then_duplicate_resolves_existing_order(self):
        sleeps: list[float] = []
        post = respx.post(f"{HOST}/portfolio/orders").mock(side_effect=[
            httpx.ReadTimeout("read timed out"),
            httpx.Response(409, json={"error": {"code": "order_already_exists"}}),
        ])

        def listing(request):
            key = json.loads(post.calls[0].request.content)["client_order_id"]
            return httpx.Response(200, json={"orders": [
                {"order_id": "other", "ticker": "T1", "side": "yes", "status": "resting",
                 "count": 2, "client_order_id": "someone-else"},
                {"order_id": "ord-9", "ticker": "T1", "side": "yes", "status": "executed",
                 "initial_count": 4, "fill_count": 4, "yes_price": 93, "client_order_id": key},
            ]})

        orders = respx.get(f"{HOST}/portfolio/orders").mock(side_effect=listing)

        order = _client(sleeps=sleeps).place_order("T1", Side.YES, 4, 0.93)

        assert order.order_id == "ord-9"
        assert order.is_filled
        assert post.call_count == 2
        assert sleeps == [1.0]
        first = json.loads(post.calls[0].request.content)["client_order_id"]
        second = json.loads(post.calls[1].request.content)["client_order_id"]
        assert first == second == order.client_order_id
        assert orders.calls[0].request.url.params["ticker"] == "T1"

    @respx.mock
    def test_conflict_without_matching_order_raises(self):
        respx.post(f"{HOST}/portfolio/orders").mock(
            return_value=httpx.Response(409, json={"error": {"code": "order_already_exists"}}),
        )
        respx.get(f"{HOST}/portfolio/orders").mock(
            return_value=httpx.Response(200, json={"orders": [], "cursor": ""}),
        )
        with pytest.raises(ExchangeError) as exc:
            _client().place_order("T1", Side.YES, 4, 0.93, client_order_id="abc")
        assert exc.value.status_code == 409

    def test_dry_run_never_calls_api(self):
        http = MagicMock(spec=httpx.Client)
        client = KalshiClient(_mock_auth(), host=HOST, dry_run=True, http=http)
        order = client.place_order("T1", Side.YES, 3, 0.93)
        assert order.order_id.startswith("dry-run-")
        assert order.count == 3
        assert client.cancel_order(order.order_id) is None
        http.request.assert_not_called()

    def test_rejects_zero_count(self):
        with pytest.raises(ValueError):
            _client().place_order("T1", Side.YES, 0, 0.93)

    @respx.mock
    def test_get_orders_follows_cursor(self):
        order = {"order_id": "o", "ticker": "T1", "side": "yes", "status": "resting", "count": 1}
        respx.get(f"{HOST}/portfolio/orders").mock(side_effect=[
            httpx.Response(200, json={"orders": [order], "cursor": "next"}),
            httpx.Response(200, json={"orders": [order], "cursor": ""}),
        ])
        assert len(_client().get_orders(ticker="T1")) == 2


class TestAccount:
    @respx.mock
    def test_balance_in_dollars(self):
        respx.get(f"{HOST}/portfolio/balance").mock(
            return_value=httpx.Response(200, json={"balance": 12345}),
        )
        assert _client().get_balance() == pytest.approx(123.45)

    @respx.mock
    def test_settlements(self):
        respx.get(f"{HOST}/portfolio/settlements").mock(
            return_value=httpx.Response(200, json={"settlements": [{
                "ticker": "T1", "market_result": "yes", "settled_time": "2026-10-19T00:00:00Z",
                "yes_count": 10, "no_count": 0, "revenue": 1000,
            }], "cursor": ""}),
        )
        settlements = _client().get_settlements()
        assert settlements[0].result is Side.YES
        assert settlements[0].revenue == pytest.approx(10.0)

    def test_demo_host(self):
        client = KalshiClient(None, demo=True)
        assert client._host.startswith("https://demo-api.kalshi.co")
