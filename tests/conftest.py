"""
Shared fixtures and builders for the test suite.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from scanner.models import Contract, Market, Side, Trade, TradeStatus
from state.store import TradeStore

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store(tmp_path: Path) -> TradeStore:
    s = TradeStore(tmp_path / "trader.db")
    yield s
    s.close()


def make_market(
    market_id: str = "KXHIGHNY-26OCT20-T70",
    yes: float = 0.93,
    no: float = 0.06,
    days: float | None = 1.0,
    now: datetime = NOW,
    **kwargs,
) -> Market:
    defaults = dict(
        question=f"Will {market_id} settle yes?",
        yes_ask=min(0.99, round(yes + 0.01, 2)),
        no_ask=min(0.99, round(no + 0.01, 2)),
        volume_24h=5000.0,
        open_interest=5000.0,
        liquidity=5000.0,
    )
    defaults.update(kwargs)
    return Market(
        market_id=market_id,
        end_date=now + timedelta(days=days) if days is not None else None,
        yes_odds=yes,
        no_odds=no,
        **defaults,
    )


def make_contract(market_id: str = "KXHIGHNY-26OCT20-T70", yes: float = 0.93, no: float = 0.06,
                  liquidity: float = 3000.0) -> Contract:
    return Contract.from_market(make_market(market_id, yes=yes, no=no), liquidity=liquidity, discovered_at=NOW)


def make_trade(
    market_id: str = "KXHIGHNY-26OCT20-T70",
    side: Side = Side.YES,
    entry_odds: float = 0.93,
    contracts: int = 20,
    position_size: float | None = None,
    executed_at: datetime = NOW,
    status: TradeStatus = TradeStatus.OPEN,
    pnl: float | None = None,
    **kwargs,
) -> Trade:
    return Trade(
        id=None,
        market_id=market_id,
        question=f"Will {market_id} settle yes?",
        side=side,
        entry_odds=entry_odds,
        position_size=position_size if position_size is not None else round(contracts * entry_odds, 2),
        contracts_purchased=contracts,
        status=status,
        executed_at=executed_at,
        pnl=pnl,
        **kwargs,
    )
