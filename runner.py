"""
runner.py
=========
Continuous paper-trading runner for the Algorand DEX strategy engine.

Builds the engine from config.py, registers DEFAULT_STRATEGIES and runs
orchestrator cycles back-to-back with a minimum gap between cycle starts.

Designed to be launched once and left running:
    nohup python3 runner.py &

After every cycle it writes data/dashboard_snapshot.json (served by web.py)
and appends a one-line summary to data/cycle_log.csv.  Trades, opportunities
and strategy events go to the SQLite store at DB_PATH.

Set POLL_SOURCES=true to also run one background polling worker per DEX
between cycles.

Ctrl+C to stop gracefully.
"""

from __future__ import annotations

import csv
import json
import os
import sys
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

# ── Project imports ──────────────────────────────────────────────────────────
from config import (
    DATA_DIR, DB_PATH, DEFAULT_STRATEGIES, ORCHESTRATOR, PAPER_TRADING,
    SNAPSHOT_FILE, TOTAL_CAPITAL, get_logger,
)
from dex_sources import DexSource, build_sources
from fallback_manager import FallbackManager
from models import ConfigurationError
from opportunity_scanner import print_opportunity_table
from orchestrator import StrategyOrchestrator
from price_cache import PriceCache
from price_feed import PriceFeed
from price_validator import PriceValidator
from trade_store import TradeStore

logger = get_logger("runner")

os.makedirs(DATA_DIR, exist_ok=True)
CYCLE_LOG = os.path.join(DATA_DIR, "cycle_log.csv")
PID_FILE = os.path.join(DATA_DIR, "runner.pid")

# Minimum seconds between cycle starts
MIN_CYCLE_GAP = ORCHESTRATOR["scan_interval_seconds"]
POLL_SOURCES = os.environ.get("POLL_SOURCES", "false").lower() == "true"
BAR = "=" * 60


# ── Engine assembly ──────────────────────────────────────────────────────────

def build_orchestrator(
    total_capital: float = TOTAL_CAPITAL,
    sources: Optional[List[DexSource]] = None,
    store: Optional[TradeStore] = None,
    strategies: Optional[List[Dict[str, Any]]] = None,
) -> StrategyOrchestrator:
    """Wire sources, cache, validator, fallback, store and strategies together."""
    feed = PriceFeed(
        sources=sources if sources is not None else build_sources(),
        cache=PriceCache(),
        validator=PriceValidator(),
        fallback=FallbackManager(),
    )
    orchestrator = StrategyOrchestrator(
        total_capital=total_capital,
        feed=feed,
        store=store if store is not None else TradeStore(DB_PATH),
    )
    for entry in (strategies if strategies is not None else DEFAULT_STRATEGIES):
        try:
            orchestrator.register_strategy(dict(entry, settings=dict(entry.get("settings") or {})))
        except ConfigurationError as exc:
            logger.error("Strategy %s not registered: %s", entry.get("name"), exc)
            print(f"  [WARNING] Strategy {entry.get('name')} not registered: {exc}")
    return orchestrator


# ── Snapshot save ────────────────────────────────────────────────────────────

def save_snapshot(
    orchestrator: StrategyOrchestrator,
    cycle_summary: Dict[str, Any],
    path: str = SNAPSHOT_FILE,
) -> None:
    snapshot = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "paper_trading": PAPER_TRADING,
        "status": orchestrator.get_status(),
        "cycle": cycle_summary,
        "performance": {
            name: orchestrator.get_strategy_performance(name)
            for name in orchestrator.strategies
        },
        "opportunities": [op.to_dict() for op in orchestrator.active_opportunities[:25]],
        "trades": [r.to_dict() for r in reversed(orchestrator.get_execution_history(limit=50))],
    }
    tmp = path + ".tmp"
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(snapshot, f, indent=2, default=str)
    os.replace(tmp, path)


def append_cycle_log(summary: Dict[str, Any], path: str = CYCLE_LOG) -> None:
    """Append one row to the CSV cycle log for historical tracking."""
    file_exists = os.path.exists(path)
    with open(path, "a", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        if not file_exists:
            writer.writerow([
                "timestamp", "cycle", "elapsed_ms", "records_cached", "opportunities",
                "attempted", "executed", "cycle_profit", "daily_trades", "daily_pnl",
                "top_pair", "top_spread_pct",
            ])
        writer.writerow([
            datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S"),
            summary.get("cycle", 0),
            summary.get("elapsed_ms", 0.0),
            summary.get("records_cached", 0),
            summary.get("opportunities", 0),
            summary.get("attempted", 0),
            summary.get("executed", 0),
            f"{summary.get('cycle_profit', 0.0):.6f}",
            summary.get("daily_trades", 0),
            f"{summary.get('daily_pnl', 0.0):.6f}",
            summary.get("top_pair", "N/A"),
            summary.get("top_spread_pct", 0.0),
        ])


# ── Main loop ────────────────────────────────────────────────────────────────

def _runner_already_active() -> Optional[int]:
    if not os.path.exists(PID_FILE):
        return None
    try:
        with open(PID_FILE) as f:
            old_pid = int(f.read().strip())
        os.kill(old_pid, 0)
        return old_pid
    except (OSError, ValueError):
        return None


def main() -> None:
    old_pid = _runner_already_active()
    if old_pid is not None:
        print(f"[ERROR] Runner already active (PID {old_pid}). Exiting.")
        sys.exit(1)

    with open(PID_FILE, "w") as f:
        f.write(str(os.getpid()))

    orchestrator = build_orchestrator()
    if not orchestrator.strategies:
        print("[ERROR] No strategies registered. Exiting.")
        os.remove(PID_FILE)
        sys.exit(1)

    names = ", ".join(orchestrator.strategies)
    print(f"\n{BAR}")
    print("  ALGORAND DEX STRATEGY ENGINE - CONTINUOUS RUNNER")
    print(f"  Mode       : {'PAPER TRADING' if PAPER_TRADING else 'LIVE'}")
    print(f"  Capital    : ${orchestrator.total_capital:,.2f}")
    print(f"  Strategies : {names}")
    print(f"  Pairs      : {', '.join(orchestrator.pair_symbols())}")
    print(f"  Min gap    : {MIN_CYCLE_GAP}s between cycles")
    print(f"  Polling    : {'on' if POLL_SOURCES else 'off'}")
    print(f"  PID        : {os.getpid()}")
    print(f"{BAR}\n")

    if POLL_SOURCES and orchestrator.feed is not None:
        orchestrator.feed.start_polling(orchestrator.pair_symbols())

    summary: Dict[str, Any] = {}
    try:
        while True:
            cycle_start = time.perf_counter()
            now_str = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
            print(f"[Cycle {orchestrator.cycle_count + 1}] {now_str}")

            try:
                summary = orchestrator.run_cycle()
            except Exception as exc:
                logger.error("Cycle crashed: %s", exc, exc_info=True)
                print(f"  [CYCLE ERROR] {exc}")
                time.sleep(MIN_CYCLE_GAP)
                continue

            try:
                save_snapshot(orchestrator, summary)
            except (OSError, TypeError, ValueError) as exc:
                logger.error("Snapshot save failed: %s", exc)

            try:
                append_cycle_log(summary)
            except OSError as exc:
                logger.warning("Cycle log append failed: %s", exc)

            print_opportunity_table(orchestrator.active_opportunities, top_n=10)
            elapsed = time.perf_counter() - cycle_start
            print(
                f"  Done in {elapsed:.1f}s | Opps: {summary['opportunities']} "
                f"| Executed: {summary['executed']}/{summary['attempted']} "
                f"| Cycle P&L: ${summary['cycle_profit']:+.4f} "
                f"| Today: {summary['daily_trades']} trades ${summary['daily_pnl']:+.4f}"
            )

            remaining = MIN_CYCLE_GAP - elapsed
            if remaining > 0:
                print(f"  Cooling down {remaining:.0f}s...\n")
                time.sleep(remaining)
            else:
                print()

    except KeyboardInterrupt:
        print("\n[Interrupted] Saving final state...")
        if orchestrator.feed is not None:
            orchestrator.feed.stop_polling()
        save_snapshot(orchestrator, summary)
        print("[OK] Stopped. State saved.")
    finally:
        if orchestrator.store is not None:
            orchestrator.store.close()
        if os.path.exists(PID_FILE):
            os.remove(PID_FILE)


if __name__ == "__main__":
    main()
