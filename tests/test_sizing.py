"""
Tests for executor/sizing.py -- side choice, contract counts and settlement P&L.
"""

import pytest

from executor.sizing import (
    SidePolicy,
    clamp_order_price,
    contracts_for_allocation,
    realized_pnl,
)
from scanner.models import Side


class TestSidePolicy:
    def test_higher_leg_wins(self):
        policy = SidePolicy()
        assert policy.choose(0.93, 0.06) is Side.YES
        assert policy.choose(0.06, 0.93) is Side.NO

    def test_tie_uses_configured_side(self):
        assert SidePolicy().choose(0.5, 0.5) is Side.YES
        assert SidePolicy(tie_side=Side.NO).choose(0.5, 0.5) is Side.NO


class TestContractsForAllocation:
    def test_floor(self):
        assert contracts_for_allocation(20.0, 0.93) == 21

    def test_exact_division_with_float_noise(self):
        assert contracts_for_allocation(30.0, 0.3) == 100

    def test_cost_never_exceeds_allocation(self):
        for allocation in (20.0, 33.33, 50.0):
            for price in (0.85, 0.91, 0.97, 0.99):
                n = contracts_for_allocation(allocation, price)
                assert n * price <= allocation + 1e-9
                assert (n + 1) * price > allocation

    def test_too_small(self):
        with pytest.raises(ValueError):
            contracts_for_allocation(0.5, 0.93)

    def test_non_positive_price(self):
        with pytest.raises(ValueError):
            contracts_for_allocation(20.0, 0.0)


class TestClamp:
    @pytest.mark.parametrize("price,expected", [(0.0, 0.01), (0.5, 0.5), (1.0, 0.99)])
    def test_clamp(self, price, expected):
        assert clamp_order_price(price) == expected


class TestRealizedPnl:
    def test_win_pays_a_dollar_per_contract(self):
        assert realized_pnl(True, 21, 19.53) == pytest.approx(1.47)

    def test_loss_forfeits_cost(self):
        assert realized_pnl(False, 21, 19.53) == pytest.approx(-19.53)
