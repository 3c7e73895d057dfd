#!/usr/bin/env python3
"""
Kalshi Conviction Trader -- job runner.

Each subcommand runs one scheduled job once and prints its JSON result:
  screen-markets     full-universe screen into the market cache
  refresh-markets    gradual (or --full) refresh of the cached listing
  trading            scan cache, ask the decision oracle, execute
  stop-loss          sweep open positions against the stop-loss threshold
  check-resolutions  settle resolved positions, signal reinvestment
  sync-orders        reconcile trades with exchange orders and settlements
  status             print P&L and open positions from the store
  serve              expose the jobs over HTTP for an external scheduler

Usage:
  python run.py screen-markets
  python run.py --live trading          # place real orders
  python run.py stop-loss --enable      # re-arm after a circuit breaker trip
  python run.py serve --port 8787
"""

from __future__ import annotations

import argparse
import json
import logging
import sys

from pydantic import ValidationError

from client.retry import AuthError
from config import Config, load_config
from monitor.logger import setup_logging
from pipeline.jobs import JobContext, JobResult, run_job
from pipeline.server import start_server, status_snapshot

logger = logging.getLogger(__name__)


_BANNER = r"""
 _  __     _     _     _
| |/ /__ _| |___| |__ (_)
| ' // _` | / __| '_ \| |
| . \ (_| | \__ \ | | | |
|_|\_\__,_|_|___/_| |_|_|   Conviction Trader v0.1
"""


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Kalshi high-conviction trading jobs")
    parser.add_argument("--json-log", type=str, default=None, help="Path to JSON log file for machine-readable output")
    parser.add_argument("--log-level", type=str, default=None, help="Console log level (default: LOG_LEVEL or INFO)")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--live", action="store_true", help="Place real orders (overrides DRY_RUN)")
    mode.add_argument("--dry-run", action="store_true", help="Never place real orders")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("screen-markets", help="Screen the full market universe into the cache")
    refresh = sub.add_parser("refresh-markets", help="Refresh the cached market listing")
    refresh.add_argument("--full", action="store_true", help="Walk every page instead of a gradual slice")
    sub.add_parser("trading", aliases=["trade"], help="Run one trading cycle")
    stop = sub.add_parser("stop-loss", help="Run the stop-loss sweep")
    stop.add_argument("--enable", action="store_true", help="Re-enable stop-loss and new entries, then exit")
    resolve = sub.add_parser("check-resolutions", help="Settle resolved positions")
    resolve.add_argument("--reinvest", action="store_true", help="Trade freed cash when above the reinvest threshold")
    sub.add_parser("sync-orders", help="Reconcile trades with exchange orders and settlements")
    sub.add_parser("status", help="Print P&L and open positions")
    serve = sub.add_parser("serve", help="Serve job endpoints over HTTP")
    serve.add_argument("--host", type=str, default=None, help="Bind address (default: SERVER_HOST)")
    serve.add_argument("--port", type=int, default=None, help="Port (default: SERVER_PORT)")
    return parser.parse_args(argv)


def _apply_overrides(cfg: Config, args: argparse.Namespace) -> Config:
    updates: dict = {}
    if args.live:
        updates["dry_run"] = False
    elif args.dry_run:
        updates["dry_run"] = True
    if getattr(args, "reinvest", False):
        updates["reinvest_enabled"] = True
    return cfg.model_copy(update=updates) if updates else cfg


def _emit(payload: dict) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _job_name(command: str) -> str:
    return "trading" if command == "trade" else command


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        cfg = _apply_overrides(load_config(), args)
    except ValidationError as e:
        print(f"Invalid configuration:\n{e}", file=sys.stderr)
        return 2

    log_path = setup_logging(
        args.log_level or cfg.log_level,
        json_log_file=args.json_log or cfg.json_log_file or None,
        run_name=args.command,
    )
    logger.debug(_BANNER.strip())
    logger.info("Log file: %s | mode: %s", log_path, "DRY-RUN" if cfg.dry_run else "LIVE")

    if args.command == "serve":
        start_server(
            lambda: JobContext.from_config(cfg),
            cron_secret=cfg.cron_secret,
            host=args.host or cfg.server_host,
            port=args.port or cfg.server_port,
        )
        return 0

    try:
        ctx = JobContext.from_config(cfg)
    except AuthError as e:
        logger.critical("Cannot load Kalshi credentials: %s", e)
        return 1

    try:
        if args.command == "status":
            _emit(status_snapshot(ctx))
            return 0
        if args.command == "stop-loss" and args.enable:
            ctx.stop_loss_engine.enable()
            _emit({"stop_loss_enabled": True})
            return 0

        kwargs = {"full": True} if args.command == "refresh-markets" and args.full else {}
        result: JobResult = run_job(_job_name(args.command), ctx, **kwargs)
        _emit(result.to_dict())
        return 0 if result.success else 1
    finally:
        ctx.close()


if __name__ == "__main__":
    sys.exit(main())
