"""
Order execution: turns oracle selections into persisted positions.

Each selection is re-validated against the live market before an order is
sent, because cached odds can be hours old. Per-selection failures become
failed TradeResults; the batch carries on.
"""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from datetime import datetime
from typing import Callable

from client.kalshi import KalshiClient
from client.retry import AuthError, ExchangeError
from executor.sizing import SidePolicy, clamp_order_price, contracts_for_allocation
from scanner.models import (
    Order,
    OrderStatus,
    Selection,
    Trade,
    TradeResult,
    TradeStatus,
    utcnow,
)
from scanner.validation import InvalidMarketData, validate_odds
from state.store import TradeStore

logger = logging.getLogger(__name__)


class DuplicatePosition(Exception):
    """An open trade already exists for this market."""


class Executor:
    def __init__(
        self,
        client: KalshiClient,
        store: TradeStore,
        side_policy: SidePolicy | None = None,
        fill_timeout_sec: float = 30.0,
        poll_interval_sec: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._store = store
        self._side_policy = side_policy or SidePolicy()
        self._fill_timeout_sec = fill_timeout_sec
        self._poll_interval_sec = poll_interval_sec
        self._sleep = sleep
        self._clock = clock
        self._monotonic = monotonic

    def execute_trades(self, selections: list[Selection], forced: bool = False) -> list[TradeResult]:
        """
        Execute selections in the order given. With `forced`, stop after the
        first success. AuthError aborts the batch; anything else fails only
        its own selection.
        """
        results: list[TradeResult] = []
        for selection in selections:
            market_id = selection.contract.market_id
            try:
                trade = self.execute_one(selection)
            except AuthError:
                raise
            except DuplicatePosition as e:
                logger.info("Skipping %s: %s", market_id, e)
                results.append(TradeResult(success=False, error=str(e), contract=selection.contract))
                continue
            except Exception as e:
                logger.error("Trade failed for %s: %s", market_id, e, exc_info=True)
                results.append(TradeResult(success=False, error=str(e), contract=selection.contract))
                continue

            results.append(TradeResult(success=True, trade=trade, contract=selection.contract))
            if forced:
                logger.info("Forced trade placed on %s, stopping", market_id)
                break

        ok = sum(1 for r in results if r.success)
        logger.info("Executed %d/%d selections", ok, len(results))
        return results

    def execute_one(self, selection: Selection) -> Trade:
        contract = selection.contract
        market_id = contract.market_id
        if self._store.has_open_trade(market_id):
            raise DuplicatePosition(f"open position already exists for {market_id}")

        market = self._client.get_market(market_id)
        if market.resolved:
            raise InvalidMarketData(f"{market_id} already resolved")
        side = self._side_policy.choose(market.yes_odds, market.no_odds)
        live_odds = validate_odds(market.odds_for(side), context=f"{market_id} live {side.value} odds")

        self._store.upsert_contract(replace(
            contract, yes_odds=market.yes_odds, no_odds=market.no_odds,
        ))

        ask = market.ask_for(side)
        price = clamp_order_price(ask if 0 < ask < 1 else live_odds)
        count = contracts_for_allocation(selection.allocation, price)

        logger.info(
            "Buying %d %s %s @ %.2f (live %.2f, allocation $%.2f)",
            count, side.value, market_id, price, live_odds, selection.allocation,
        )
        order = self._client.place_order(market_id, side, count, price)
        contracts, needs_reconciliation = self._confirm_fill(order)

        trade = Trade(
            id=None,
            market_id=market_id,
            question=contract.question or market.question,
            side=side,
            entry_odds=live_odds,
            position_size=round(contracts * price, 2),
            contracts_purchased=contracts,
            status=TradeStatus.OPEN,
            executed_at=self._clock(),
            order_id=order.order_id,
            confidence=selection.confidence,
            reasoning=selection.reasoning,
            risk_factors=selection.risk_factors,
            needs_reconciliation=needs_reconciliation,
        )
        return self._store.insert_trade(trade)

    def _confirm_fill(self, order: Order) -> tuple[int, bool]:
        """
        Poll until the order fills or the timeout passes. Returns
        (contracts, needs_reconciliation). On timeout the requested count is
        assumed and the trade is flagged for reconciliation.
        """
        if self._client.dry_run:
            return order.count, False
        if order.is_filled:
            return order.fill_count or order.count, False

        deadline = self._monotonic() + self._fill_timeout_sec
        while self._monotonic() < deadline:
            self._sleep(self._poll_interval_sec)
            try:
                current = self._client.get_order(order.order_id)
            except AuthError:
                raise
            except ExchangeError as e:
                logger.warning("Fill poll failed for order %s: %s", order.order_id, e)
                continue
            if current.is_filled:
                return current.fill_count or current.count, False
            if current.status is OrderStatus.CANCELED:
                if current.fill_count > 0:
                    return current.fill_count, False
                raise ExchangeError(f"Order {order.order_id} was cancelled before filling")

        logger.warning(
            "Order %s not confirmed filled within %.0fs, flagging for reconciliation",
            order.order_id, self._fill_timeout_sec,
        )
        return order.count, True
