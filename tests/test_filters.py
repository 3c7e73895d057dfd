"""
Unit tests for scanner/filters.py -- network-free market filters.
"""

from datetime import datetime, timedelta, timezone

import pytest

from scanner.filters import (
    contains_excluded_keyword,
    has_pricing,
    is_degenerate,
    is_excluded,
    is_high_conviction,
    is_simple_yes_no,
    spread_cents,
    within_horizon,
)
from scanner.models import Market

NOW = datetime(2026, 10, 19, 12, tzinfo=timezone.utc)


def _market(yes=0.93, no=0.06, yes_ask=0.94, question="Will it rain in Denver?", **kwargs) -> Market:
    return Market(
        market_id=kwargs.pop("market_id", "KXRAIN-26OCT20"),
        question=question,
        end_date=kwargs.pop("end_date", NOW + timedelta(days=1)),
        yes_odds=yes,
        no_odds=no,
        yes_ask=yes_ask,
        **kwargs,
    )


class TestConvictionBand:
    @pytest.mark.parametrize("yes,no,expected", [
        (0.85, 0.14, True),
        (0.93, 0.06, True),
        (0.98, 0.01, True),
        (0.99, 0.01, False),
        (0.84, 0.15, False),
        (0.50, 0.48, False),
        (0.15, 0.84, False),
        (0.10, 0.89, True),
        (0.04, 0.95, True),
        (0.02, 0.97, True),
        (0.01, 0.99, False),
    ])
    def test_band_on_favoured_leg(self, yes, no, expected):
        assert is_high_conviction(_market(yes=yes, no=no), 0.85, 0.98) is expected

    @pytest.mark.parametrize("yes", [0.01, 0.02, 0.10, 0.50, 0.85, 0.90, 0.97, 0.99])
    def test_high_conviction_symmetric_in_legs(self, yes):
        a = _market(yes=yes, no=round(1 - yes, 2))
        b = _market(yes=round(1 - yes, 2), no=yes)
        assert is_high_conviction(a, 0.85, 0.98) == is_high_conviction(b, 0.85, 0.98)

    def test_no_leg_qualifies(self):
        assert is_high_conviction(_market(yes=0.07, no=0.92), 0.85, 0.98)


class TestPricing:
    def test_has_pricing(self):
        assert has_pricing(_market())
        assert not has_pricing(_market(yes=0.0, no=0.0))

    def test_degenerate(self):
        assert is_degenerate(_market(yes=0.999, no=0.0))
        assert not is_degenerate(_market(yes=0.99, no=0.01))

    def test_spread_cents(self):
        assert spread_cents(_market(yes=0.93, yes_ask=0.95)) == 2.0

    def test_spread_missing_ask_estimated(self):
        assert spread_cents(_market(yes=0.93, yes_ask=0.0)) == 1.0

    def test_spread_missing_bid_estimated(self):
        assert spread_cents(_market(yes=0.0, yes_ask=0.40)) == 1.0


class TestSimpleYesNo:
    @pytest.mark.parametrize("question", [
        "Will the Fed cut rates in November?",
        "Will Denver get snow, yes or not?",
        "Highest temperature in NYC above 70F?",
    ])
    def test_simple(self, question):
        assert is_simple_yes_no(question)

    @pytest.mark.parametrize("question", [
        "yes Chiefs, yes Eagles, yes Bills",
        "no Lakers, no Celtics",
        "",
        "   ",
    ])
    def test_parlay_or_empty(self, question):
        assert not is_simple_yes_no(question)


class TestHorizon:
    def test_within(self):
        assert within_horizon(_market(end_date=NOW + timedelta(days=1)), 2, now=NOW)

    def test_too_far(self):
        assert not within_horizon(_market(end_date=NOW + timedelta(days=3)), 2, now=NOW)

    def test_already_past(self):
        assert not within_horizon(_market(end_date=NOW - timedelta(hours=1)), 2, now=NOW)

    def test_unknown_date(self):
        assert not within_horizon(_market(end_date=None), 2, now=NOW)


class TestExclusions:
    def test_category(self):
        assert is_excluded(_market(category="Sports"), ["sports"], [])
        assert not is_excluded(_market(category="Climate"), ["sports"], [])

    def test_keyword_whole_word(self):
        assert contains_excluded_keyword("Will the NFL season start?", ["NFL"])
        assert not contains_excluded_keyword("Will the settlement close?", ["SET"])

    def test_keyword_matches_ticker(self):
        m = _market(market_id="NBA-26OCT20-LAL", question="Who wins tonight?")
        assert is_excluded(m, [], ["NBA"])

    def test_nothing_excluded(self):
        assert not is_excluded(_market(), ["Sports"], ["NFL", "BTC"])
