"""
Stop-loss sweeps and the circuit breaker that latches them off.

The stop-loss config is a persisted singleton re-read on every sweep. The
only code path that writes enabled=false is trip_circuit_breaker(); turning
it back on is an operator action (`run.py stop-loss --enable`).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from client.kalshi import KalshiClient
from client.retry import AuthError
from monitor.alerts import (
    AlertLevel,
    AlertSink,
    format_circuit_breaker_alert,
    format_stop_loss_alert,
)
from scanner.depth import effective_price, price_slippage
from scanner.models import Market, StopLossConfig, StopLossEvent, Trade, utcnow
from state.store import TradeStore

logger = logging.getLogger(__name__)

MIN_SELL_PRICE = 0.01


class CircuitBreakerTripped(Exception):
    """Raised when new entries are attempted while the breaker is latched."""


class SlippageExceeded(Exception):
    """The achievable exit price is too far from the observed odds to sell."""


@dataclass(frozen=True)
class StopLossCandidate:
    trade: Trade
    current_odds: float
    hold_hours: float
    should_trigger: bool
    reason: str


@dataclass
class StopLossResult:
    enabled: bool
    checked: int = 0
    skipped: int = 0
    aborted: int = 0
    events: list[StopLossEvent] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    breaker_tripped: bool = False

    @property
    def triggered(self) -> int:
        return len(self.events)


class StopLossEngine:
    def __init__(
        self,
        client: KalshiClient,
        store: TradeStore,
        alerts: AlertSink,
        defaults: StopLossConfig,
        max_events_per_window: int = 3,
        window_hours: float = 24.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._client = client
        self._store = store
        self._alerts = alerts
        self._defaults = defaults
        self._max_events = max_events_per_window
        self._window_hours = window_hours
        self._clock = clock

    def load_config(self) -> StopLossConfig:
        return self._store.get_stop_loss_config(self._defaults)

    def ensure_entries_allowed(self) -> None:
        """Raise CircuitBreakerTripped while the latch is off."""
        if not self.load_config().enabled:
            raise CircuitBreakerTripped("Stop-loss circuit breaker is tripped; new entries blocked")

    def evaluate(
        self, trade: Trade, market: Market, config: StopLossConfig, now: datetime,
    ) -> StopLossCandidate | None:
        """None when the trade can't be judged (market resolved, no price)."""
        if market.resolved:
            return None
        current = market.odds_for(trade.side)
        if current <= 0:
            return None

        hold_hours = trade.hold_time_hours(now)
        below = current < config.trigger_threshold
        held = hold_hours >= config.min_hold_time_hours
        if below and held:
            reason = (
                f"{trade.side.value} odds {current:.2f} below {config.trigger_threshold:.2f} "
                f"after {hold_hours:.1f}h (entry {trade.entry_odds:.2f})"
            )
        elif below:
            reason = f"below threshold but held only {hold_hours:.1f}h"
        else:
            reason = "above threshold"
        return StopLossCandidate(
            trade=trade,
            current_odds=current,
            hold_hours=hold_hours,
            should_trigger=below and held,
            reason=reason,
        )

    def liquidate(self, candidate: StopLossCandidate, config: StopLossConfig) -> StopLossEvent:
        """Sell the full position at the best bid, unless slippage is too high."""
        trade = candidate.trade
        book = self._client.get_orderbook(trade.market_id)
        level = book.best_bid(trade.side)
        bid = level.price if level else None
        slippage = price_slippage(bid, candidate.current_odds)
        if bid is None or slippage > config.max_slippage_pct:
            raise SlippageExceeded(
                f"{trade.market_id}: bid {bid} vs odds {candidate.current_odds:.2f} "
                f"slippage {slippage:.1%} > {config.max_slippage_pct:.1%}"
            )

        vwap = effective_price(book, trade.side, trade.contracts_purchased)
        if vwap is None:
            logger.warning(
                "Bids on %s cannot absorb %d contracts at best price, selling anyway",
                trade.market_id, trade.contracts_purchased,
            )
        self._client.place_order(
            trade.market_id,
            trade.side,
            trade.contracts_purchased,
            max(MIN_SELL_PRICE, bid),
            action="sell",
            type="market",
        )

        event = StopLossEvent(
            trade_id=trade.id,
            trigger_odds=config.trigger_threshold,
            exit_odds=bid,
            position_size=trade.position_size,
            realized_loss=round(trade.contracts_purchased * bid - trade.position_size, 4),
            reason=candidate.reason,
            executed_at=self._clock(),
        )
        if not self._store.record_stop_loss(event):
            logger.warning("Trade %d was no longer open when its stop-loss was recorded", trade.id)
        logger.warning(
            "STOP-LOSS trade #%d %s: sold %d %s @ %.2f, realized $%+.2f",
            trade.id, trade.market_id, trade.contracts_purchased, trade.side.value,
            bid, event.realized_loss,
        )
        return event

    def run_sweep(self) -> StopLossResult:
        config = self.load_config()
        if not config.enabled:
            logger.info("Stop-loss disabled, skipping sweep")
            return StopLossResult(enabled=False)

        result = StopLossResult(enabled=True)
        now = self._clock()
        questions: dict[int, str] = {}
        for trade in self._store.get_open_trades():
            result.checked += 1
            try:
                market = self._client.get_market(trade.market_id)
                candidate = self.evaluate(trade, market, config, now)
                if candidate is None:
                    result.skipped += 1
                    continue
                if not candidate.should_trigger:
                    continue
                result.events.append(self.liquidate(candidate, config))
                questions[trade.id] = trade.question
            except AuthError:
                raise
            except SlippageExceeded as e:
                result.aborted += 1
                logger.warning("Stop-loss aborted: %s", e)
            except Exception as e:
                result.errors.append(f"{trade.market_id}: {e}")
                logger.error("Stop-loss check failed for trade #%s: %s", trade.id, e, exc_info=True)

        if result.events:
            self._alerts.send(
                f"Stop-loss triggered on {len(result.events)} position(s)",
                format_stop_loss_alert(result.events, questions),
                AlertLevel.WARNING,
            )
            result.breaker_tripped = self.check_circuit_breaker()

        logger.info(
            "Stop-loss sweep: checked=%d triggered=%d aborted=%d skipped=%d errors=%d",
            result.checked, result.triggered, result.aborted, result.skipped, len(result.errors),
        )
        return result

    def check_circuit_breaker(self) -> bool:
        """Trip the breaker if the trailing window holds too many stop-losses."""
        since = self._clock() - timedelta(hours=self._window_hours)
        count = self._store.count_stop_losses_since(since)
        if count >= self._max_events:
            self.trip_circuit_breaker(count)
            return True
        return False

    def trip_circuit_breaker(self, event_count: int) -> None:
        self.load_config()
        self._store.set_stop_loss_enabled(False)
        logger.critical(
            "Circuit breaker tripped: %d stop-losses in %.0fh (limit %d)",
            event_count, self._window_hours, self._max_events,
        )
        self._alerts.send(
            "Circuit breaker tripped",
            format_circuit_breaker_alert(event_count, self._window_hours, self._max_events),
            AlertLevel.CRITICAL,
        )

    def enable(self) -> None:
        """Operator re-enable after a breaker trip."""
        self.load_config()
        self._store.set_stop_loss_enabled(True)
        logger.warning("Stop-loss engine re-enabled by operator")
