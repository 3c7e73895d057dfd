"""
Unit tests for scanner/depth.py -- orderbook depth and slippage helpers.
"""

import pytest

from scanner.depth import (
    best_bid_depth,
    effective_price,
    estimate_slippage,
    favoured_side,
    price_slippage,
)
from scanner.models import OrderBook, PriceLevel, Side


def _book(yes=((0.93, 100), (0.92, 200)), no=((0.05, 50),)) -> OrderBook:
    return OrderBook(
        market_id="T1",
        yes_bids=tuple(PriceLevel(p, s) for p, s in yes),
        no_bids=tuple(PriceLevel(p, s) for p, s in no),
    )


class TestFavouredSide:
    def test_higher_leg(self):
        assert favoured_side(0.93, 0.06) is Side.YES
        assert favoured_side(0.06, 0.93) is Side.NO

    def test_tie_is_yes(self):
        assert favoured_side(0.5, 0.5) is Side.YES


class TestBestBidDepth:
    def test_size_at_best_level_only(self):
        assert best_bid_depth(_book(), Side.YES) == 100

    def test_empty_side(self):
        assert best_bid_depth(_book(no=()), Side.NO) == 0.0


class TestEstimateSlippage:
    def test_linear_in_consumed_fraction(self):
        assert estimate_slippage(100, 1000) == pytest.approx(0.005)

    def test_capped_at_base(self):
        assert estimate_slippage(5000, 1000) == pytest.approx(0.05)

    def test_no_depth_is_total(self):
        assert estimate_slippage(100, 0) == 1.0


class TestPriceSlippage:
    def test_relative(self):
        assert price_slippage(0.76, 0.80) == pytest.approx(0.05)

    def test_missing_price(self):
        assert price_slippage(None, 0.80) == 1.0
        assert price_slippage(0.5, 0.0) == 1.0


class TestEffectivePrice:
    def test_single_level(self):
        assert effective_price(_book(), Side.YES, 50) == pytest.approx(0.93)

    def test_walks_levels(self):
        # 100 @ 0.93 + 100 @ 0.92
        assert effective_price(_book(), Side.YES, 200) == pytest.approx(0.925)

    def test_insufficient_depth(self):
        assert effective_price(_book(), Side.YES, 500) is None

    def test_empty_or_zero_size(self):
        assert effective_price(_book(no=()), Side.NO, 10) is None
        assert effective_price(_book(), Side.YES, 0) is None
