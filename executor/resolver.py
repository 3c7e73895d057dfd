"""
Settlement of open positions and reconciliation against exchange orders.

Only trades with status 'open' are ever touched, and the store refuses to
rewrite a terminal trade, so every sweep here is safe to re-run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from client.kalshi import KalshiClient
from client.retry import AuthError
from executor.sizing import realized_pnl
from scanner.models import Market, Order, OrderStatus, Settlement, Side, Trade, TradeStatus, utcnow
from state.store import TradeStore

logger = logging.getLogger(__name__)

DRY_RUN_ORDER_PREFIX = "dry-run-"


@dataclass
class ResolutionResult:
    checked: int = 0
    resolved: int = 0
    won: int = 0
    lost: int = 0
    available_cash: float | None = None
    should_trigger_trade: bool = False
    errors: list[str] = field(default_factory=list)


@dataclass
class ReconcileResult:
    checked: int = 0
    filled: int = 0
    cancelled: int = 0
    still_open: int = 0
    unmatched: int = 0
    settled: int = 0
    errors: list[str] = field(default_factory=list)


def held_side_exit_odds(market: Market, side: Side) -> float:
    """Settlement price of the held leg, falling back to its last odds."""
    if market.final_odds is not None:
        return market.final_odds if side is Side.YES else round(1.0 - market.final_odds, 4)
    return market.odds_for(side)


class Resolver:
    def __init__(
        self,
        client: KalshiClient,
        store: TradeStore,
        reinvest_threshold: float = 20.0,
        stale_order_hours: float = 6.0,
        order_match_window_sec: float = 60.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._client = client
        self._store = store
        self._reinvest_threshold = reinvest_threshold
        self._stale_order_hours = stale_order_hours
        self._match_window_sec = order_match_window_sec
        self._clock = clock

    # -- Resolution --

    def settle(self, trade: Trade, outcome: Side, exit_odds: float | None, resolved_at: datetime) -> bool:
        """Apply a binary outcome to an open trade. False if it was already terminal."""
        won = outcome is trade.side
        pnl = realized_pnl(won, trade.contracts_purchased, trade.position_size)
        status = TradeStatus.WON if won else TradeStatus.LOST
        updated = self._store.resolve_trade(trade.id, status, pnl, exit_odds, resolved_at)
        if updated:
            logger.info(
                "Resolved trade #%d %s: %s %s, pnl $%+.2f",
                trade.id, trade.market_id, trade.side.value, status.value, pnl,
            )
        return updated

    def check_and_resolve_open_trades(self) -> ResolutionResult:
        """
        Resolve every open trade whose market has settled, then read the
        balance to signal whether freed cash should fund a new cycle.
        """
        result = ResolutionResult()
        for trade in self._store.get_open_trades():
            result.checked += 1
            try:
                market = self._client.get_market(trade.market_id)
                if not market.resolved or market.outcome is None:
                    continue
                resolved_at = market.resolved_at or self._clock()
                if self.settle(trade, market.outcome, held_side_exit_odds(market, trade.side), resolved_at):
                    result.resolved += 1
                    if market.outcome is trade.side:
                        result.won += 1
                    else:
                        result.lost += 1
            except AuthError:
                raise
            except Exception as e:
                result.errors.append(f"{trade.market_id}: {e}")
                logger.error("Resolution check failed for trade #%s: %s", trade.id, e, exc_info=True)

        result.available_cash = self._client.get_balance()
        self._store.record_bankroll(result.available_cash, self._clock())
        result.should_trigger_trade = result.available_cash >= self._reinvest_threshold
        logger.info(
            "Resolution sweep: %d/%d resolved (%d won, %d lost), cash $%.2f%s",
            result.resolved, result.checked, result.won, result.lost, result.available_cash,
            " -> reinvest" if result.should_trigger_trade else "",
        )
        return result

    # -- Order reconciliation --

    def find_order(self, trade: Trade, orders_by_ticker: dict[str, list[Order]]) -> Order | None:
        """The trade's order: by stored id, else by ticker and creation time near execution."""
        if trade.order_id:
            return self._client.get_order(trade.order_id)
        candidates = orders_by_ticker.get(trade.market_id)
        if candidates is None:
            candidates = self._client.get_orders(ticker=trade.market_id)
            orders_by_ticker[trade.market_id] = candidates
        window = timedelta(seconds=self._match_window_sec)
        for order in candidates:
            if order.action != "buy" or order.created_time is None:
                continue
            if abs(order.created_time - trade.executed_at) <= window:
                return order
        return None

    def _cancel(self, trade: Trade, reason: str, now: datetime) -> bool:
        updated = self._store.resolve_trade(trade.id, TradeStatus.CANCELLED, 0.0, None, now)
        if updated:
            logger.info("Cancelled trade #%d %s: %s", trade.id, trade.market_id, reason)
        return updated

    def reconcile_orders(self) -> ReconcileResult:
        """
        Sync open trades with their exchange orders: cancelled orders cancel
        the trade, orders resting past the stale limit are cancelled on the
        exchange, and filled orders clear the reconciliation flag.
        """
        result = ReconcileResult()
        now = self._clock()
        stale_after = timedelta(hours=self._stale_order_hours)
        orders_by_ticker: dict[str, list[Order]] = {}

        for trade in self._store.get_open_trades():
            if trade.order_id.startswith(DRY_RUN_ORDER_PREFIX):
                continue
            result.checked += 1
            try:
                order = self.find_order(trade, orders_by_ticker)
                if order is None:
                    result.unmatched += 1
                    continue

                if order.is_filled:
                    if trade.needs_reconciliation or order.fill_count != trade.contracts_purchased:
                        self._store.mark_reconciled(trade.id, order.fill_count or order.count)
                    result.filled += 1
                elif order.status is OrderStatus.CANCELED:
                    if order.fill_count > 0:
                        self._store.mark_reconciled(trade.id, order.fill_count)
                        result.filled += 1
                    elif self._cancel(trade, "order cancelled on exchange", now):
                        result.cancelled += 1
                elif now - trade.executed_at > stale_after:
                    self._client.cancel_order(order.order_id)
                    if order.fill_count > 0:
                        self._store.mark_reconciled(trade.id, order.fill_count)
                        result.filled += 1
                    elif self._cancel(trade, f"order resting over {self._stale_order_hours:.0f}h", now):
                        result.cancelled += 1
                else:
                    result.still_open += 1
            except AuthError:
                raise
            except Exception as e:
                result.errors.append(f"{trade.market_id}: {e}")
                logger.error("Order reconciliation failed for trade #%s: %s", trade.id, e, exc_info=True)

        logger.info(
            "Order reconciliation: checked=%d filled=%d cancelled=%d open=%d unmatched=%d",
            result.checked, result.filled, result.cancelled, result.still_open, result.unmatched,
        )
        return result

    def reconcile_settlements(self, result: ReconcileResult | None = None) -> ReconcileResult:
        """Resolve open trades from the account's settlement history."""
        result = result if result is not None else ReconcileResult()
        open_trades = self._store.get_open_trades()
        if not open_trades:
            return result

        by_ticker: dict[str, Settlement] = {}
        for s in self._client.get_settlements():
            if s.result is not None:
                by_ticker.setdefault(s.market_id, s)

        for trade in open_trades:
            settlement = by_ticker.get(trade.market_id)
            if settlement is None:
                continue
            self._check_holdings(trade, settlement)
            exit_odds = 1.0 if settlement.result is trade.side else 0.0
            resolved_at = settlement.settled_time or self._clock()
            if self.settle(trade, settlement.result, exit_odds, resolved_at):
                result.settled += 1
        return result

    @staticmethod
    def _check_holdings(trade: Trade, settlement: Settlement) -> None:
        held = {Side.YES: settlement.yes_count, Side.NO: settlement.no_count}
        if held[trade.side] == 0 and held[trade.side.opposite] > 0:
            logger.warning(
                "Settlement for %s shows %s holdings but trade #%d recorded %s; using recorded side",
                trade.market_id, trade.side.opposite.value, trade.id, trade.side.value,
            )
