"""
FastAPI surface for the scheduler. One endpoint per job; the scheduler calls
them on its own cadence with a bearer secret.

Handlers are plain functions so FastAPI runs them in its threadpool; every
request builds its own JobContext and closes it afterwards.
"""

from __future__ import annotations

import hmac
import logging
import threading
from typing import Any, Callable

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from monitor.pnl import PnLSummary, current_bankroll
from pipeline.jobs import JOBS, JobContext, run_job

logger = logging.getLogger(__name__)


def _authorized(header: str | None, secret: str) -> bool:
    """Bearer check. An unset secret locks every protected route."""
    if not secret:
        return False
    if not header or not header.startswith("Bearer "):
        return False
    return hmac.compare_digest(header[len("Bearer "):], secret)


def status_snapshot(ctx: JobContext) -> dict[str, Any]:
    """P&L, open positions and stop-loss latch state, read from the store only."""
    store = ctx.store
    summary = PnLSummary.from_trades(store.get_all_trades())
    sl_config = ctx.stop_loss_engine.load_config()
    return {
        "pnl": summary.summary(),
        "bankroll": current_bankroll(store, ctx.config.initial_bankroll),
        "open_positions": [
            {
                "id": t.id,
                "market_id": t.market_id,
                "side": t.side.value,
                "entry_odds": t.entry_odds,
                "position_size": t.position_size,
                "contracts": t.contracts_purchased,
                "needs_reconciliation": t.needs_reconciliation,
            }
            for t in store.get_open_trades()
        ],
        "stop_loss": {
            "enabled": sl_config.enabled,
            "trigger_threshold": sl_config.trigger_threshold,
            "min_hold_time_hours": sl_config.min_hold_time_hours,
            "max_slippage_pct": sl_config.max_slippage_pct,
        },
        "dry_run": ctx.config.dry_run,
    }


def create_app(ctx_factory: Callable[[], JobContext], cron_secret: str = "") -> FastAPI:
    """Build and return the FastAPI application."""
    if not cron_secret:
        logger.warning("CRON_SECRET is not set; job and status endpoints will reject every call")

    app = FastAPI(title="Kalshi Conviction Trader", docs_url="/docs")

    def _dispatch(job: str, request: Request):
        if not _authorized(request.headers.get("authorization"), cron_secret):
            logger.warning("Rejected unauthorized call to %s", job)
            return JSONResponse({"error": "Unauthorized"}, status_code=401)
        if job not in JOBS:
            return JSONResponse({"error": f"Unknown job {job}"}, status_code=404)
        ctx = ctx_factory()
        try:
            result = run_job(job, ctx)
        finally:
            ctx.close()
        return JSONResponse(result.to_dict(), status_code=200 if result.success else 500)

    @app.get("/api/cron/{job}")
    def cron_get(job: str, request: Request):
        return _dispatch(job, request)

    @app.post("/api/cron/{job}")
    def cron_post(job: str, request: Request):
        return _dispatch(job, request)

    @app.get("/api/status")
    def status(request: Request):
        if not _authorized(request.headers.get("authorization"), cron_secret):
            return JSONResponse({"error": "Unauthorized"}, status_code=401)
        ctx = ctx_factory()
        try:
            return status_snapshot(ctx)
        finally:
            ctx.close()

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app


def start_server(
    ctx_factory: Callable[[], JobContext],
    cron_secret: str = "",
    host: str = "0.0.0.0",
    port: int = 8787,
    background: bool = False,
) -> threading.Thread | None:
    """Serve the job endpoints. Blocks unless background=True, which returns the daemon thread."""
    import uvicorn

    app = create_app(ctx_factory, cron_secret)

    def _run():
        uvicorn.run(app, host=host, port=port, log_level="warning", access_log=False)

    if not background:
        logger.info("Job server listening on http://%s:%d", host, port)
        _run()
        return None

    thread = threading.Thread(target=_run, daemon=True, name="job-server")
    thread.start()
    logger.info("Job server started at http://%s:%d", host, port)
    return thread
