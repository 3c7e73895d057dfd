"""
SQLite persistence for markets, contracts, trades and risk state. WAL mode for
concurrent read/write.

All timestamps are stored as unix seconds (REAL) and surfaced as aware UTC
datetimes. The trades table enforces "pnl is set iff status != open" with a
CHECK constraint; terminal trades are never rewritten.
"""

from __future__ import annotations

import json
import sqlite3
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from scanner.models import (
    Contract,
    Market,
    ScreenedMarket,
    Side,
    StopLossConfig,
    StopLossEvent,
    Trade,
    TradeStatus,
)


def _dict_factory(cursor: sqlite3.Cursor, row: tuple) -> dict[str, Any]:
    return {col[0]: row[i] for i, col in enumerate(cursor.description)}


def _ts(dt: datetime | None) -> float | None:
    return dt.timestamp() if dt is not None else None


def _dt(ts: float | None) -> datetime | None:
    return datetime.fromtimestamp(ts, tz=timezone.utc) if ts is not None else None


def _row_to_market(row: dict[str, Any]) -> Market:
    return Market(
        market_id=row["market_id"],
        question=row["question"],
        end_date=_dt(row["end_ts"]),
        yes_odds=row["yes_odds"],
        no_odds=row["no_odds"],
        liquidity=row["liquidity"],
        volume_24h=row["volume_24h"],
        open_interest=row["open_interest"],
        yes_ask=row["yes_ask"],
        no_ask=row["no_ask"],
        category=row["category"],
        event_ticker=row["event_ticker"],
        status=row["status"],
        resolved=bool(row["resolved"]),
        outcome=Side(row["outcome"]) if row["outcome"] else None,
        final_odds=row["final_odds"],
        resolved_at=_dt(row["resolved_ts"]),
    )


def _row_to_contract(row: dict[str, Any]) -> Contract:
    return Contract(
        id=row["id"],
        market_id=row["market_id"],
        question=row["question"],
        end_date=_dt(row["end_ts"]),
        yes_odds=row["yes_odds"],
        no_odds=row["no_odds"],
        liquidity=row["liquidity"],
        volume_24h=row["volume_24h"],
        category=row["category"],
        discovered_at=_dt(row["discovered_at"]),
    )


def _row_to_trade(row: dict[str, Any]) -> Trade:
    return Trade(
        id=row["id"],
        market_id=row["market_id"],
        question=row["question"],
        side=Side(row["side"]),
        entry_odds=row["entry_odds"],
        position_size=row["position_size"],
        contracts_purchased=row["contracts_purchased"],
        status=TradeStatus(row["status"]),
        executed_at=_dt(row["executed_at"]),
        order_id=row["order_id"],
        confidence=row["confidence"],
        reasoning=row["reasoning"],
        risk_factors=tuple(json.loads(row["risk_factors_json"] or "[]")),
        exit_odds=row["exit_odds"],
        pnl=row["pnl"],
        resolved_at=_dt(row["resolved_at"]),
        needs_reconciliation=bool(row["needs_reconciliation"]),
    )


def _row_to_event(row: dict[str, Any]) -> StopLossEvent:
    return StopLossEvent(
        id=row["id"],
        trade_id=row["trade_id"],
        trigger_odds=row["trigger_odds"],
        exit_odds=row["exit_odds"],
        position_size=row["position_size"],
        realized_loss=row["realized_loss"],
        reason=row["reason"],
        executed_at=_dt(row["executed_at"]),
    )


class TradeStore:
    """Thread-safe SQLite store shared by every job."""

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = str(db_path)
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self._init_schema()

    @property
    def _conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(self._db_path, check_same_thread=False)
            conn.row_factory = _dict_factory
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA busy_timeout=5000")
            conn.execute("PRAGMA foreign_keys=ON")
            self._local.conn = conn
        return conn

    def _init_schema(self) -> None:
        conn = self._conn
        conn.executescript(_SCHEMA)
        conn.commit()

    def begin_transaction(self) -> None:
        """Begin a write transaction if one is not already active."""
        if not self._conn.in_transaction:
            self._conn.execute("BEGIN")

    def commit(self) -> None:
        if self._conn.in_transaction:
            self._conn.commit()

    def rollback(self) -> None:
        if self._conn.in_transaction:
            self._conn.rollback()

    def close(self) -> None:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    # ── Market cache ──

    def upsert_markets(
        self,
        markets: Iterable[Market | ScreenedMarket],
        cached_at: float | None = None,
        *,
        commit: bool = True,
    ) -> int:
        """Insert or refresh cached markets. Screening annotations are kept when given."""
        now = cached_at if cached_at is not None else time.time()
        count = 0
        for item in markets:
            screened = item if isinstance(item, ScreenedMarket) else None
            m = screened.market if screened else item
            self._conn.execute(
                """INSERT INTO markets
                   (market_id, question, end_ts, yes_odds, no_odds, liquidity,
                    volume_24h, open_interest, yes_ask, no_ask, category,
                    event_ticker, status, resolved, outcome, final_odds,
                    resolved_ts, liquidity_score, spread_cents,
                    orderbook_liquidity, execution_slippage, screening_rank,
                    cached_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(market_id) DO UPDATE SET
                    question=excluded.question, end_ts=excluded.end_ts,
                    yes_odds=excluded.yes_odds, no_odds=excluded.no_odds,
                    liquidity=excluded.liquidity, volume_24h=excluded.volume_24h,
                    open_interest=excluded.open_interest, yes_ask=excluded.yes_ask,
                    no_ask=excluded.no_ask, category=excluded.category,
                    event_ticker=excluded.event_ticker, status=excluded.status,
                    resolved=excluded.resolved, outcome=excluded.outcome,
                    final_odds=excluded.final_odds, resolved_ts=excluded.resolved_ts,
                    liquidity_score=COALESCE(excluded.liquidity_score, markets.liquidity_score),
                    spread_cents=COALESCE(excluded.spread_cents, markets.spread_cents),
                    orderbook_liquidity=COALESCE(excluded.orderbook_liquidity, markets.orderbook_liquidity),
                    execution_slippage=COALESCE(excluded.execution_slippage, markets.execution_slippage),
                    screening_rank=COALESCE(excluded.screening_rank, markets.screening_rank),
                    cached_at=excluded.cached_at""",
                (
                    m.market_id, m.question, _ts(m.end_date), m.yes_odds, m.no_odds,
                    m.liquidity, m.volume_24h, m.open_interest, m.yes_ask, m.no_ask,
                    m.category, m.event_ticker, m.status, int(m.resolved),
                    m.outcome.value if m.outcome else None, m.final_odds,
                    _ts(m.resolved_at),
                    screened.liquidity_score if screened else None,
                    screened.spread_cents if screened else None,
                    screened.orderbook_liquidity if screened else None,
                    screened.execution_slippage if screened else None,
                    screened.screening_rank if screened else None,
                    now,
                ),
            )
            count += 1
        if commit:
            self._conn.commit()
        return count

    def get_cached_markets(self, max_age_sec: float | None = None, now: float | None = None) -> list[Market]:
        """Cached unresolved markets, freshest first; ties keep screening rank order."""
        sql = "SELECT * FROM markets WHERE resolved = 0"
        params: list[Any] = []
        if max_age_sec is not None:
            sql += " AND cached_at >= ?"
            params.append((now if now is not None else time.time()) - max_age_sec)
        sql += " ORDER BY cached_at DESC, COALESCE(screening_rank, 1000000000) ASC, market_id ASC"
        return [_row_to_market(r) for r in self._conn.execute(sql, params).fetchall()]

    def get_cached_market(self, market_id: str) -> Market | None:
        row = self._conn.execute(
            "SELECT * FROM markets WHERE market_id = ?", (market_id,),
        ).fetchone()
        return _row_to_market(row) if row else None

    def purge_stale_markets(self, max_age_sec: float, now: float | None = None, *, commit: bool = True) -> int:
        cutoff = (now if now is not None else time.time()) - max_age_sec
        cur = self._conn.execute("DELETE FROM markets WHERE cached_at < ?", (cutoff,))
        if commit:
            self._conn.commit()
        return cur.rowcount

    def get_state(self, key: str) -> str | None:
        row = self._conn.execute("SELECT value FROM kv_state WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_state(self, key: str, value: str | None, *, commit: bool = True) -> None:
        if value is None:
            self._conn.execute("DELETE FROM kv_state WHERE key = ?", (key,))
        else:
            self._conn.execute(
                "INSERT OR REPLACE INTO kv_state (key, value, updated_at) VALUES (?, ?, ?)",
                (key, value, time.time()),
            )
        if commit:
            self._conn.commit()

    # ── Contracts ──

    def upsert_contract(self, contract: Contract, *, commit: bool = True) -> Contract:
        self._conn.execute(
            """INSERT INTO contracts
               (market_id, question, end_ts, yes_odds, no_odds, liquidity,
                volume_24h, category, discovered_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(market_id) DO UPDATE SET
                question=excluded.question, end_ts=excluded.end_ts,
                yes_odds=excluded.yes_odds, no_odds=excluded.no_odds,
                liquidity=excluded.liquidity, volume_24h=excluded.volume_24h,
                category=excluded.category""",
            (
                contract.market_id, contract.question, _ts(contract.end_date),
                contract.yes_odds, contract.no_odds, contract.liquidity,
                contract.volume_24h, contract.category, _ts(contract.discovered_at),
            ),
        )
        if commit:
            self._conn.commit()
        row = self._conn.execute(
            "SELECT * FROM contracts WHERE market_id = ?", (contract.market_id,),
        ).fetchone()
        return _row_to_contract(row)

    def get_contract(self, market_id: str) -> Contract | None:
        row = self._conn.execute(
            "SELECT * FROM contracts WHERE market_id = ?", (market_id,),
        ).fetchone()
        return _row_to_contract(row) if row else None

    # ── Trades ──

    def insert_trade(self, trade: Trade, *, commit: bool = True) -> Trade:
        """Persist a new trade and return it with its assigned id."""
        cur = self._conn.execute(
            """INSERT INTO trades
               (market_id, question, side, entry_odds, position_size,
                contracts_purchased, status, executed_at, order_id, confidence,
                reasoning, risk_factors_json, exit_odds, pnl, resolved_at,
                needs_reconciliation)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                trade.market_id, trade.question, trade.side.value, trade.entry_odds,
                trade.position_size, trade.contracts_purchased, trade.status.value,
                _ts(trade.executed_at), trade.order_id, trade.confidence,
                trade.reasoning, json.dumps(list(trade.risk_factors)),
                trade.exit_odds, trade.pnl, _ts(trade.resolved_at),
                int(trade.needs_reconciliation),
            ),
        )
        if commit:
            self._conn.commit()
        return self.get_trade(cur.lastrowid)  # type: ignore[return-value]

    def get_trade(self, trade_id: int) -> Trade | None:
        row = self._conn.execute("SELECT * FROM trades WHERE id = ?", (trade_id,)).fetchone()
        return _row_to_trade(row) if row else None

    def get_open_trades(self) -> list[Trade]:
        rows = self._conn.execute(
            "SELECT * FROM trades WHERE status = 'open' ORDER BY executed_at ASC, id ASC",
        ).fetchall()
        return [_row_to_trade(r) for r in rows]

    def has_open_trade(self, market_id: str) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM trades WHERE market_id = ? AND status = 'open' LIMIT 1", (market_id,),
        ).fetchone()
        return row is not None

    def get_trades_between(
        self, start: datetime, end: datetime, include_cancelled: bool = True,
    ) -> list[Trade]:
        """Trades executed in [start, end)."""
        sql = "SELECT * FROM trades WHERE executed_at >= ? AND executed_at < ?"
        if not include_cancelled:
            sql += " AND status != 'cancelled'"
        sql += " ORDER BY executed_at ASC, id ASC"
        rows = self._conn.execute(sql, (_ts(start), _ts(end))).fetchall()
        return [_row_to_trade(r) for r in rows]

    def get_recent_trades(self, limit: int = 50) -> list[Trade]:
        rows = self._conn.execute(
            "SELECT * FROM trades ORDER BY executed_at DESC, id DESC LIMIT ?", (limit,),
        ).fetchall()
        return [_row_to_trade(r) for r in rows]

    def get_all_trades(self) -> list[Trade]:
        rows = self._conn.execute("SELECT * FROM trades ORDER BY id ASC").fetchall()
        return [_row_to_trade(r) for r in rows]

    def resolve_trade(
        self,
        trade_id: int,
        status: TradeStatus,
        pnl: float,
        exit_odds: float | None,
        resolved_at: datetime,
        *,
        commit: bool = True,
    ) -> bool:
        """
        Move an open trade to a terminal status. Returns False (and writes
        nothing) if the trade is already terminal.
        """
        if not status.is_terminal:
            raise ValueError(f"resolve_trade requires a terminal status, got {status.value}")
        if pnl is None:
            raise ValueError(f"Terminal trade {trade_id} requires pnl")
        cur = self._conn.execute(
            """UPDATE trades
               SET status = ?, pnl = ?, exit_odds = ?, resolved_at = ?, needs_reconciliation = 0
               WHERE id = ? AND status = 'open'""",
            (status.value, round(pnl, 4), exit_odds, _ts(resolved_at), trade_id),
        )
        if commit:
            self._conn.commit()
        return cur.rowcount == 1

    def mark_reconciled(
        self, trade_id: int, contracts_purchased: int | None = None, *, commit: bool = True,
    ) -> None:
        """Clear the reconciliation flag, optionally recording the observed fill count."""
        if contracts_purchased is None:
            self._conn.execute(
                "UPDATE trades SET needs_reconciliation = 0 WHERE id = ? AND status = 'open'",
                (trade_id,),
            )
        else:
            self._conn.execute(
                """UPDATE trades SET needs_reconciliation = 0, contracts_purchased = ?
                   WHERE id = ? AND status = 'open'""",
                (contracts_purchased, trade_id),
            )
        if commit:
            self._conn.commit()

    # ── Stop-loss ──

    def get_stop_loss_config(self, defaults: StopLossConfig) -> StopLossConfig:
        """Read the singleton config row, seeding it from `defaults` on first use."""
        self._conn.execute(
            """INSERT OR IGNORE INTO stop_loss_config
               (id, enabled, trigger_threshold, min_hold_time_hours, max_slippage_pct, updated_at)
               VALUES (1, ?, ?, ?, ?, ?)""",
            (
                int(defaults.enabled), defaults.trigger_threshold,
                defaults.min_hold_time_hours, defaults.max_slippage_pct, time.time(),
            ),
        )
        self._conn.commit()
        row = self._conn.execute("SELECT * FROM stop_loss_config WHERE id = 1").fetchone()
        return StopLossConfig(
            enabled=bool(row["enabled"]),
            trigger_threshold=row["trigger_threshold"],
            min_hold_time_hours=row["min_hold_time_hours"],
            max_slippage_pct=row["max_slippage_pct"],
        )

    def set_stop_loss_enabled(self, enabled: bool, *, commit: bool = True) -> bool:
        """Flip the singleton's enabled flag. Returns True if the row existed."""
        cur = self._conn.execute(
            "UPDATE stop_loss_config SET enabled = ?, updated_at = ? WHERE id = 1",
            (int(enabled), time.time()),
        )
        if commit:
            self._conn.commit()
        return cur.rowcount == 1

    def record_stop_loss(self, event: StopLossEvent) -> bool:
        """
        Atomically mark the trade stopped and append its event. Returns False
        if the trade was no longer open (nothing is written).
        """
        self.begin_transaction()
        try:
            updated = self.resolve_trade(
                event.trade_id,
                TradeStatus.STOPPED,
                pnl=event.realized_loss,
                exit_odds=event.exit_odds,
                resolved_at=event.executed_at,
                commit=False,
            )
            if not updated:
                self.rollback()
                return False
            self._conn.execute(
                """INSERT INTO stop_loss_events
                   (trade_id, trigger_odds, exit_odds, position_size, realized_loss, reason, executed_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    event.trade_id, event.trigger_odds, event.exit_odds,
                    event.position_size, round(event.realized_loss, 4), event.reason,
                    _ts(event.executed_at),
                ),
            )
            self.commit()
        except Exception:
            self.rollback()
            raise
        return True

    def get_stop_loss_events_since(self, since: datetime) -> list[StopLossEvent]:
        rows = self._conn.execute(
            "SELECT * FROM stop_loss_events WHERE executed_at >= ? ORDER BY executed_at ASC",
            (_ts(since),),
        ).fetchall()
        return [_row_to_event(r) for r in rows]

    def count_stop_losses_since(self, since: datetime) -> int:
        row = self._conn.execute(
            "SELECT COUNT(*) AS n FROM stop_loss_events WHERE executed_at >= ?", (_ts(since),),
        ).fetchone()
        return row["n"]

    # ── Bankroll ──

    def record_bankroll(self, balance: float, recorded_at: datetime | None = None, *, commit: bool = True) -> None:
        self._conn.execute(
            "INSERT INTO bankroll_snapshots (balance, recorded_at) VALUES (?, ?)",
            (balance, _ts(recorded_at) if recorded_at else time.time()),
        )
        if commit:
            self._conn.commit()

    def latest_bankroll(self) -> float | None:
        row = self._conn.execute(
            "SELECT balance FROM bankroll_snapshots ORDER BY recorded_at DESC, id DESC LIMIT 1",
        ).fetchone()
        return row["balance"] if row else None

    # ── Job leases ──

    def acquire_lease(self, job: str, holder: str, ttl_sec: float, now: float | None = None) -> bool:
        """Take the lease for `job` unless another holder has an unexpired one."""
        now = now if now is not None else time.time()
        self.begin_transaction()
        try:
            row = self._conn.execute(
                "SELECT holder, expires_at FROM job_leases WHERE job = ?", (job,),
            ).fetchone()
            if row and row["holder"] != holder and row["expires_at"] > now:
                self.rollback()
                return False
            self._conn.execute(
                "INSERT OR REPLACE INTO job_leases (job, holder, expires_at) VALUES (?, ?, ?)",
                (job, holder, now + ttl_sec),
            )
            self.commit()
        except Exception:
            self.rollback()
            raise
        return True

    def release_lease(self, job: str, holder: str, *, commit: bool = True) -> None:
        self._conn.execute("DELETE FROM job_leases WHERE job = ? AND holder = ?", (job, holder))
        if commit:
            self._conn.commit()


_SCHEMA = """
CREATE TABLE IF NOT EXISTS markets (
    market_id TEXT PRIMARY KEY,
    question TEXT NOT NULL DEFAULT '',
    end_ts REAL,
    yes_odds REAL NOT NULL,
    no_odds REAL NOT NULL,
    liquidity REAL NOT NULL DEFAULT 0,
    volume_24h REAL NOT NULL DEFAULT 0,
    open_interest REAL NOT NULL DEFAULT 0,
    yes_ask REAL NOT NULL DEFAULT 0,
    no_ask REAL NOT NULL DEFAULT 0,
    category TEXT NOT NULL DEFAULT '',
    event_ticker TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT '',
    resolved INTEGER NOT NULL DEFAULT 0,
    outcome TEXT,
    final_odds REAL,
    resolved_ts REAL,
    liquidity_score REAL,
    spread_cents REAL,
    orderbook_liquidity REAL,
    execution_slippage REAL,
    screening_rank INTEGER,
    cached_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_markets_cached_at ON markets(cached_at);

CREATE TABLE IF NOT EXISTS kv_state (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS contracts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    market_id TEXT NOT NULL UNIQUE,
    question TEXT NOT NULL DEFAULT '',
    end_ts REAL,
    yes_odds REAL NOT NULL,
    no_odds REAL NOT NULL,
    liquidity REAL NOT NULL DEFAULT 0,
    volume_24h REAL NOT NULL DEFAULT 0,
    category TEXT NOT NULL DEFAULT '',
    discovered_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS trades (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    market_id TEXT NOT NULL,
    question TEXT NOT NULL DEFAULT '',
    side TEXT NOT NULL CHECK (side IN ('YES', 'NO')),
    entry_odds REAL NOT NULL,
    position_size REAL NOT NULL,
    contracts_purchased INTEGER NOT NULL,
    status TEXT NOT NULL CHECK (status IN ('open', 'won', 'lost', 'stopped', 'cancelled')),
    executed_at REAL NOT NULL,
    order_id TEXT NOT NULL DEFAULT '',
    confidence REAL NOT NULL DEFAULT 0,
    reasoning TEXT NOT NULL DEFAULT '',
    risk_factors_json TEXT NOT NULL DEFAULT '[]',
    exit_odds REAL,
    pnl REAL,
    resolved_at REAL,
    needs_reconciliation INTEGER NOT NULL DEFAULT 0,
    CHECK ((status = 'open') = (pnl IS NULL))
);

CREATE INDEX IF NOT EXISTS idx_trades_status ON trades(status);
CREATE INDEX IF NOT EXISTS idx_trades_executed_at ON trades(executed_at);
CREATE INDEX IF NOT EXISTS idx_trades_market ON trades(market_id);

CREATE TABLE IF NOT EXISTS stop_loss_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    trade_id INTEGER NOT NULL UNIQUE REFERENCES trades(id),
    trigger_odds REAL NOT NULL,
    exit_odds REAL NOT NULL,
    position_size REAL NOT NULL,
    realized_loss REAL NOT NULL,
    reason TEXT NOT NULL DEFAULT '',
    executed_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_stop_loss_events_ts ON stop_loss_events(executed_at);

CREATE TABLE IF NOT EXISTS stop_loss_config (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    enabled INTEGER NOT NULL,
    trigger_threshold REAL NOT NULL,
    min_hold_time_hours REAL NOT NULL,
    max_slippage_pct REAL NOT NULL,
    updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS bankroll_snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    balance REAL NOT NULL,
    recorded_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS job_leases (
    job TEXT PRIMARY KEY,
    holder TEXT NOT NULL,
    expires_at REAL NOT NULL
);
"""
