"""
trade_store.py
===============
SQLite sink for detected opportunities, trade results and strategy events.

The engine only writes here; nothing is read back to make trading decisions.
Read helpers exist for the dashboard and reporting.  Any sqlite3 error is
logged and swallowed so a broken database never stops the trading cycle.

Tables:
  opportunities    upsert keyed by (pair, buy source, sell source, detected_at)
  trades           upsert keyed by trade id / transaction reference
  strategy_events  append-only log, JSON payload
"""

from __future__ import annotations

import json
import sqlite3
import threading
from typing import Any, Dict, Iterable, List, Optional

from config import DB_PATH, get_logger
from models import Opportunity, TradeResult, utc_now

logger = get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS opportunities (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    pair_symbol      TEXT NOT NULL,
    buy_source       TEXT NOT NULL,
    sell_source      TEXT NOT NULL,
    buy_price        REAL,
    sell_price       REAL,
    spread_pct       REAL,
    expected_profit  REAL,
    confidence_score REAL,
    required_capital REAL,
    strategy_name    TEXT,
    opportunity_type TEXT,
    detected_at      TEXT NOT NULL,
    expires_at       TEXT NOT NULL,
    metadata         TEXT,
    UNIQUE (pair_symbol, buy_source, sell_source, detected_at)
);

CREATE TABLE IF NOT EXISTS trades (
    trade_id          TEXT PRIMARY KEY,
    transaction_ref   TEXT UNIQUE,
    success           INTEGER NOT NULL,
    strategy_name     TEXT,
    pair_symbol       TEXT,
    opportunity_type  TEXT,
    executed_amount   REAL,
    actual_profit     REAL,
    slippage          REAL,
    gas_cost          REAL,
    execution_time_ms INTEGER,
    error_reason      TEXT,
    error_message     TEXT,
    executed_at       TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS strategy_events (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    strategy_name TEXT NOT NULL,
    event_type    TEXT NOT NULL,
    event_data    TEXT,
    created_at    TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_trades_executed_at ON trades (executed_at);
CREATE INDEX IF NOT EXISTS idx_events_strategy ON strategy_events (strategy_name, created_at);
"""


class TradeStore:

    def __init__(self, db_path: str = DB_PATH) -> None:
        self.db_path = db_path
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        with self._lock:
            self._conn.executescript(SCHEMA)
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ── Writes ───────────────────────────────────────────────────────────────

    def save_opportunities(self, opportunities: Iterable[Opportunity]) -> int:
        rows = [
            (
                op.pair_symbol, op.buy_source, op.sell_source, op.buy_price, op.sell_price,
                op.spread_pct, op.expected_profit, op.confidence_score, op.required_capital,
                op.strategy_name, op.opportunity_type, op.detected_at.isoformat(),
                op.expires_at.isoformat(), json.dumps(op.metadata, default=str),
            )
            for op in opportunities
        ]
        if not rows:
            return 0
        try:
            with self._lock:
                self._conn.executemany(
                    """
                    INSERT INTO opportunities (
                        pair_symbol, buy_source, sell_source, buy_price, sell_price,
                        spread_pct, expected_profit, confidence_score, required_capital,
                        strategy_name, opportunity_type, detected_at, expires_at, metadata
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT (pair_symbol, buy_source, sell_source, detected_at) DO UPDATE SET
                        buy_price = excluded.buy_price,
                        sell_price = excluded.sell_price,
                        spread_pct = excluded.spread_pct,
                        expected_profit = excluded.expected_profit,
                        confidence_score = excluded.confidence_score,
                        required_capital = excluded.required_capital,
                        expires_at = excluded.expires_at,
                        metadata = excluded.metadata
                    """,
                    rows,
                )
                self._conn.commit()
        except sqlite3.Error as exc:
            logger.error("Failed to save %d opportunities: %s", len(rows), exc)
            return 0
        return len(rows)

    def save_trade(self, result: TradeResult) -> bool:
        try:
            with self._lock:
                self._conn.execute(
                    """
                    INSERT OR REPLACE INTO trades (
                        trade_id, transaction_ref, success, strategy_name, pair_symbol,
                        opportunity_type, executed_amount, actual_profit, slippage, gas_cost,
                        execution_time_ms, error_reason, error_message, executed_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        result.trade_id, result.transaction_ref, int(result.success),
                        result.strategy_name, result.pair_symbol, result.opportunity_type,
                        result.executed_amount, result.actual_profit, result.slippage,
                        result.gas_cost, result.execution_time_ms, result.error_reason,
                        result.error_message, result.executed_at.isoformat(),
                    ),
                )
                self._conn.commit()
        except sqlite3.Error as exc:
            logger.error("Failed to save trade %s: %s", result.trade_id, exc)
            return False
        return True

    def log_event(self, strategy_name: str, event_type: str, data: Dict[str, Any]) -> bool:
        try:
            with self._lock:
                self._conn.execute(
                    "INSERT INTO strategy_events (strategy_name, event_type, event_data, created_at) "
                    "VALUES (?, ?, ?, ?)",
                    (strategy_name, event_type, json.dumps(data, default=str), utc_now().isoformat()),
                )
                self._conn.commit()
        except sqlite3.Error as exc:
            logger.error("Failed to log strategy event %s/%s: %s", strategy_name, event_type, exc)
            return False
        return True

    # ── Reads (reporting only) ───────────────────────────────────────────────

    def _query(self, sql: str, params: tuple = ()) -> List[Dict[str, Any]]:
        try:
            with self._lock:
                rows = self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            logger.error("Query failed: %s", exc)
            return []
        return [dict(row) for row in rows]

    def recent_trades(self, limit: int = 50, strategy_name: Optional[str] = None) -> List[Dict[str, Any]]:
        if strategy_name is None:
            return self._query(
                "SELECT * FROM trades ORDER BY executed_at DESC LIMIT ?", (limit,)
            )
        return self._query(
            "SELECT * FROM trades WHERE strategy_name = ? ORDER BY executed_at DESC LIMIT ?",
            (strategy_name, limit),
        )

    def recent_opportunities(self, limit: int = 50) -> List[Dict[str, Any]]:
        rows = self._query(
            "SELECT * FROM opportunities ORDER BY detected_at DESC, id DESC LIMIT ?", (limit,)
        )
        for row in rows:
            row["metadata"] = json.loads(row["metadata"] or "{}")
        return rows

    def events(self, strategy_name: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        if strategy_name is None:
            rows = self._query(
                "SELECT * FROM strategy_events ORDER BY id DESC LIMIT ?", (limit,)
            )
        else:
            rows = self._query(
                "SELECT * FROM strategy_events WHERE strategy_name = ? ORDER BY id DESC LIMIT ?",
                (strategy_name, limit),
            )
        for row in rows:
            row["event_data"] = json.loads(row["event_data"] or "{}")
        return rows
