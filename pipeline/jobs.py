"""
Scheduled jobs. Each job is one sequential run that re-reads all state from
the store, and returns a JobResult that tells success, failure and
"nothing to do" apart. run_job() adds the lease, logging context and error
boundary shared by the CLI and the HTTP surface.
"""

from __future__ import annotations

import logging
import os
import socket
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from client.kalshi import KalshiClient
from client.kalshi_auth import KalshiAuth
from client.market_cache import MarketCache
from client.retry import AuthError, RateLimitError, RetryPolicy
from config import Config
from executor.oracle import (
    DecisionOracle,
    HttpDecisionOracle,
    OracleRequest,
    forced_selections,
)
from executor.resolver import Resolver
from executor.sizing import SidePolicy
from executor.stop_loss import CircuitBreakerTripped, StopLossEngine
from executor.trader import Executor
from monitor.alerts import AlertLevel, AlertSink, build_alert_sink, format_trade_alert
from monitor.logger import job_context
from monitor.pnl import current_bankroll
from scanner.contracts import ScanCriteria, scan_contracts
from scanner.models import Side, StopLossConfig, utcnow
from scanner.screener import MarketScreener, ScreenCriteria
from state.store import TradeStore

logger = logging.getLogger(__name__)


@dataclass
class JobResult:
    job: str
    success: bool
    skipped: bool = False
    reason: str = ""
    counts: dict[str, Any] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    duration_sec: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class JobContext:
    """Everything a job needs, built once per invocation."""

    def __init__(
        self,
        config: Config,
        client: KalshiClient,
        store: TradeStore,
        alerts: AlertSink,
        oracle: DecisionOracle | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.client = client
        self.store = store
        self.alerts = alerts
        self.oracle = oracle
        self.clock = clock
        self.sleep = sleep

    @classmethod
    def from_config(cls, cfg: Config) -> JobContext:
        auth = None
        if cfg.has_kalshi_credentials:
            auth = KalshiAuth(
                cfg.kalshi_api_key_id,
                private_key_path=cfg.kalshi_private_key_path,
                private_key_pem=cfg.kalshi_private_key,
            )
        client = KalshiClient(
            auth,
            host=cfg.kalshi_host,
            demo=cfg.kalshi_demo,
            timeout=cfg.http_timeout_sec,
            retry_policy=RetryPolicy(
                max_attempts=cfg.retry_max_attempts,
                backoff_sec=cfg.retry_backoff_sec,
                max_backoff_sec=cfg.retry_max_backoff_sec,
            ),
            dry_run=cfg.dry_run,
        )
        oracle = None
        if cfg.oracle_url:
            oracle = HttpDecisionOracle(cfg.oracle_url, cfg.oracle_api_key, timeout=cfg.oracle_timeout_sec)
        return cls(
            config=cfg,
            client=client,
            store=TradeStore(cfg.db_path),
            alerts=build_alert_sink(cfg.alert_webhook_url, timeout=cfg.alert_timeout_sec),
            oracle=oracle,
        )

    @property
    def cache(self) -> MarketCache:
        return MarketCache(
            self.client, self.store,
            ttl_hours=self.config.cache_ttl_hours,
            clock=lambda: self.clock().timestamp(),
            sleep=self.sleep,
        )

    @property
    def stop_loss_engine(self) -> StopLossEngine:
        cfg = self.config
        return StopLossEngine(
            self.client, self.store, self.alerts,
            defaults=StopLossConfig(
                enabled=cfg.stop_loss_enabled,
                trigger_threshold=cfg.stop_loss_threshold,
                min_hold_time_hours=cfg.stop_loss_min_hold_hours,
                max_slippage_pct=cfg.stop_loss_max_slippage,
            ),
            max_events_per_window=cfg.max_stop_losses_24h,
            clock=self.clock,
        )

    @property
    def executor(self) -> Executor:
        return Executor(
            self.client, self.store,
            side_policy=SidePolicy(tie_side=Side(self.config.tie_side)),
            fill_timeout_sec=self.config.fill_timeout_sec,
            poll_interval_sec=self.config.fill_poll_interval_sec,
            sleep=self.sleep,
            clock=self.clock,
        )

    @property
    def resolver(self) -> Resolver:
        return Resolver(
            self.client, self.store,
            reinvest_threshold=self.config.reinvest_threshold,
            stale_order_hours=self.config.stale_order_hours,
            order_match_window_sec=self.config.order_match_window_sec,
            clock=self.clock,
        )

    def close(self) -> None:
        self.client.close()
        self.store.close()


# -- Jobs --

def screen_markets(ctx: JobContext) -> JobResult:
    screener = MarketScreener(ctx.client, sleep=ctx.sleep, clock=ctx.clock)
    screened = screener.screen_markets(ScreenCriteria.from_config(ctx.config))
    cached = ctx.cache.store_screened(screened)
    counts = {"markets_screened": screener.last_stats.total_processed, "markets_cached": cached}
    counts.update(screener.last_stats.as_dict())
    if not screened:
        return JobResult("screen-markets", success=True, skipped=True,
                         reason="no markets passed screening", counts=counts)
    return JobResult("screen-markets", success=True, counts=counts)


def refresh_markets(ctx: JobContext, full: bool = False) -> JobResult:
    cfg = ctx.config
    try:
        if full:
            cached = ctx.cache.refresh_all(max_pages=cfg.screen_max_pages, page_delay_sec=cfg.screen_page_delay_sec)
            return JobResult("refresh-markets", success=True, counts={"markets_cached": cached, "full": True})
        refreshed = ctx.cache.refresh_pages(pages=cfg.cache_refresh_pages, page_delay_sec=cfg.screen_page_delay_sec)
    except RateLimitError as e:
        logger.warning("Market refresh rate limited, will retry next run: %s", e)
        return JobResult("refresh-markets", success=True, skipped=True, reason="rate limited")
    return JobResult("refresh-markets", success=True, counts={
        "markets_cached": refreshed.markets_cached,
        "pages": refreshed.pages,
        "listing_complete": refreshed.complete,
    })


def _start_of_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def trading(ctx: JobContext, budget_override: float | None = None) -> JobResult:
    """Scan, ask the oracle, execute. Refuses new entries while the breaker is tripped."""
    cfg = ctx.config
    try:
        ctx.stop_loss_engine.ensure_entries_allowed()
    except CircuitBreakerTripped as e:
        logger.warning("%s", e)
        return JobResult("trading", success=True, skipped=True, reason="circuit breaker tripped")
    if ctx.oracle is None:
        return JobResult("trading", success=True, skipped=True, reason="decision oracle not configured")

    contracts = scan_contracts(
        ctx.cache, ctx.client, ScanCriteria.from_config(cfg), now=ctx.clock(), sleep=ctx.sleep,
    )
    counts: dict[str, Any] = {"contracts_found": len(contracts)}
    if not contracts:
        return JobResult("trading", success=True, skipped=True, reason="no qualifying contracts", counts=counts)

    cash = ctx.client.get_balance()
    now = ctx.clock()
    ctx.store.record_bankroll(cash, now)
    budget = round(min(budget_override if budget_override is not None else cfg.daily_budget, cash), 2)
    counts.update({"available_cash": cash, "budget": budget})
    if budget < cfg.min_position_size:
        return JobResult("trading", success=True, skipped=True, reason="insufficient funds", counts=counts)

    decision = ctx.oracle.decide(OracleRequest(
        contracts=contracts,
        history=ctx.store.get_recent_trades(cfg.history_window),
        bankroll=current_bankroll(ctx.store, cfg.initial_bankroll),
        budget=budget,
        min_allocation=cfg.min_position_size,
        max_allocation=cfg.max_position_size,
        max_selections=cfg.max_selections,
    ))
    selections = decision.selections
    forced = False
    if not selections and cfg.forced_trade_enabled:
        traded_today = ctx.store.get_trades_between(
            _start_of_day(now), now + timedelta(seconds=1), include_cancelled=False,
        )
        if not traded_today:
            logger.info("No trade yet today and oracle selected nothing, forcing a trade")
            selections = forced_selections(
                contracts, min(budget, cfg.max_position_size),
                cfg.forced_trade_candidates, cfg.forced_trade_confidence,
            )
            forced = True
    counts.update({"selected": len(selections), "forced": forced, "rejected": len(decision.rejections)})
    if not selections:
        return JobResult("trading", success=True, skipped=True, reason="oracle selected nothing", counts=counts)

    results = ctx.executor.execute_trades(selections, forced=forced)
    executed = [r for r in results if r.success]
    errors = [f"{r.contract.market_id if r.contract else '?'}: {r.error}" for r in results if not r.success]
    counts.update({"trades_executed": len(executed), "trades_failed": len(errors)})
    ctx.alerts.send(
        f"Trading: {len(executed)}/{len(results)} orders placed" + (" (forced)" if forced else ""),
        format_trade_alert(results),
        AlertLevel.INFO if executed else AlertLevel.WARNING,
    )
    return JobResult("trading", success=bool(executed), counts=counts, errors=errors,
                     reason="" if executed else "every selection failed")


def stop_loss(ctx: JobContext) -> JobResult:
    result = ctx.stop_loss_engine.run_sweep()
    if not result.enabled:
        return JobResult("stop-loss", success=True, skipped=True, reason="stop-loss disabled")
    return JobResult("stop-loss", success=True, errors=result.errors, counts={
        "positions_checked": result.checked,
        "positions_stopped": result.triggered,
        "aborted_slippage": result.aborted,
        "skipped": result.skipped,
        "breaker_tripped": result.breaker_tripped,
    })


def check_resolutions(ctx: JobContext) -> JobResult:
    result = ctx.resolver.check_and_resolve_open_trades()
    counts: dict[str, Any] = {
        "positions_checked": result.checked,
        "positions_resolved": result.resolved,
        "won": result.won,
        "lost": result.lost,
        "available_cash": result.available_cash,
        "should_trigger_trade": result.should_trigger_trade,
    }
    if result.should_trigger_trade and ctx.config.reinvest_enabled:
        logger.info("Freed cash $%.2f, starting reinvestment cycle", result.available_cash)
        reinvest = run_job("trading", ctx, budget_override=result.available_cash)
        counts["reinvestment"] = reinvest.to_dict()
    return JobResult("check-resolutions", success=True, errors=result.errors, counts=counts)


def sync_orders(ctx: JobContext) -> JobResult:
    resolver = ctx.resolver
    result = resolver.reconcile_orders()
    resolver.reconcile_settlements(result)
    return JobResult("sync-orders", success=True, errors=result.errors, counts={
        "orders_checked": result.checked,
        "filled": result.filled,
        "cancelled": result.cancelled,
        "still_open": result.still_open,
        "unmatched": result.unmatched,
        "settled": result.settled,
    })


JOBS: dict[str, Callable[..., JobResult]] = {
    "screen-markets": screen_markets,
    "refresh-markets": refresh_markets,
    "trading": trading,
    "stop-loss": stop_loss,
    "check-resolutions": check_resolutions,
    "sync-orders": sync_orders,
}


def _lease_holder() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def run_job(name: str, ctx: JobContext, **kwargs: Any) -> JobResult:
    """
    Run one job under a lease. Any exception becomes success=False with the
    error recorded; auth failures are reported as such.
    """
    job = JOBS.get(name)
    if job is None:
        raise KeyError(f"Unknown job {name!r}; expected one of {sorted(JOBS)}")

    with job_context(name):
        holder = _lease_holder()
        if not ctx.store.acquire_lease(name, holder, ctx.config.job_lease_ttl_sec):
            logger.warning("Job %s is already running elsewhere, skipping", name)
            return JobResult(name, success=True, skipped=True, reason="already running")

        start = time.monotonic()
        try:
            result = job(ctx, **kwargs)
        except AuthError as e:
            logger.critical("Authentication failed: %s", e)
            result = JobResult(name, success=False, reason="auth error", errors=[str(e)])
        except Exception as e:
            logger.exception("Job %s failed", name)
            result = JobResult(name, success=False, reason=type(e).__name__, errors=[str(e)])
        finally:
            ctx.store.release_lease(name, holder)

        result.duration_sec = round(time.monotonic() - start, 3)
        logger.info(
            "Job %s finished: success=%s skipped=%s %s",
            name, result.success, result.skipped, result.reason or "",
        )
        return result
