"""
Tests for scanner/contracts.py -- cache-backed contract scanner.
"""

from unittest.mock import MagicMock

import pytest

from client.kalshi import KalshiClient
from client.market_cache import MarketCache
from client.retry import AuthError, ExchangeError
from conftest import NOW, make_market
from scanner.contracts import ScanCriteria, passes_cheap_filters, scan_contracts
from scanner.models import OrderBook, PriceLevel, Side


def _book(ticker, yes_size=3000.0, no_size=3000.0) -> OrderBook:
    return OrderBook(
        market_id=ticker,
        yes_bids=(PriceLevel(0.93, yes_size),),
        no_bids=(PriceLevel(0.06, no_size),),
    )


def _deps(markets):
    cache = MagicMock(spec=MarketCache)
    cache.snapshot.return_value = markets
    client = MagicMock(spec=KalshiClient)
    client.get_orderbook.side_effect = lambda t: _book(t)
    return cache, client


CRITERIA = ScanCriteria(excluded_categories=("Sports",), excluded_keywords=("NFL", "BTC"))


class TestCheapFilters:
    def test_high_conviction_inside_horizon(self):
        assert passes_cheap_filters(make_market(yes=0.93, days=1), CRITERIA, NOW)

    def test_mid_market_rejected(self):
        assert not passes_cheap_filters(make_market(yes=0.50, no=0.48), CRITERIA, NOW)

    def test_low_yes_leg_accepted(self):
        assert passes_cheap_filters(make_market(yes=0.02, no=0.97), CRITERIA, NOW)

    def test_horizon(self):
        assert not passes_cheap_filters(make_market(days=3), CRITERIA, NOW)
        assert not passes_cheap_filters(make_market(days=None), CRITERIA, NOW)

    def test_resolved(self):
        assert not passes_cheap_filters(make_market(resolved=True, outcome=Side.YES), CRITERIA, NOW)

    def test_exclusions(self):
        assert not passes_cheap_filters(make_market(category="Sports"), CRITERIA, NOW)
        assert not passes_cheap_filters(make_market(question="Will the NFL opener go to overtime?"), CRITERIA, NOW)


class TestScanContracts:
    def test_worked_example(self):
        markets = [
            make_market("KXHIGHNY-26OCT20", yes=0.93, no=0.06, days=1),
            make_market("KXCOIN-26OCT20", yes=0.50, no=0.49, days=1),
        ]
        cache, client = _deps(markets)
        contracts = scan_contracts(cache, client, CRITERIA, now=NOW, sleep=lambda s: None)
        assert [c.market_id for c in contracts] == ["KXHIGHNY-26OCT20"]
        assert contracts[0].liquidity == 3000
        assert contracts[0].discovered_at == NOW
        client.get_orderbook.assert_called_once_with("KXHIGHNY-26OCT20")

    def test_empty_cache_makes_no_calls(self):
        cache, client = _deps([])
        assert scan_contracts(cache, client, CRITERIA, now=NOW) == []
        client.get_orderbook.assert_not_called()

    def test_liquidity_gate_and_sort(self):
        sizes = {"A": 2500.0, "B": 9000.0, "C": 100.0}
        cache, client = _deps([make_market(t) for t in sizes])
        client.get_orderbook.side_effect = lambda t: _book(t, yes_size=sizes[t])
        contracts = scan_contracts(cache, client, CRITERIA, now=NOW, sleep=lambda s: None)
        assert [c.market_id for c in contracts] == ["B", "A"]

    def test_liquidity_on_favoured_no_side(self):
        cache, client = _deps([make_market("N", yes=0.04, no=0.95)])
        client.get_orderbook.side_effect = lambda t: _book(t, yes_size=10, no_size=4000)
        contracts = scan_contracts(cache, client, CRITERIA, now=NOW, sleep=lambda s: None)
        assert contracts[0].liquidity == 4000

    def test_book_errors_skipped_auth_propagates(self):
        cache, client = _deps([make_market("BAD"), make_market("GOOD")])

        def book(ticker):
            if ticker == "BAD":
                raise ExchangeError("boom", status_code=500)
            return _book(ticker)

        client.get_orderbook.side_effect = book
        contracts = scan_contracts(cache, client, CRITERIA, now=NOW, sleep=lambda s: None)
        assert [c.market_id for c in contracts] == ["GOOD"]

        client.get_orderbook.side_effect = AuthError("401", status_code=401)
        with pytest.raises(AuthError):
            scan_contracts(cache, client, CRITERIA, now=NOW, sleep=lambda s: None)

    def test_only_survivors_hit_the_network(self):
        markets = [make_market("A"), make_market("MID", yes=0.5, no=0.48), make_market("FAR", days=5)]
        cache, client = _deps(markets)
        sleeps: list[float] = []
        scan_contracts(cache, client, ScanCriteria(book_delay_sec=0.1), now=NOW, sleep=sleeps.append)
        assert client.get_orderbook.call_count == 1
        assert sleeps == []
