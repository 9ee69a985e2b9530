"""
web.py
======
Flask status API for the Algorand DEX strategy engine.

Serves the snapshot runner.py writes after every cycle:
  - /                   -> service info and route list
  - /api/data           -> full JSON snapshot
  - /api/health         -> liveness (runner PID, snapshot age)
  - /api/trades         -> recent trade results (?limit=N)
  - /api/opportunities  -> opportunities ranked in the last cycle
  - /api/sources        -> per-source health from the fallback manager

Runs as a separate process next to runner.py; both share DATA_DIR.
"""

import json
import os
from datetime import datetime, timezone

from flask import Flask, jsonify, request

from config import DATA_DIR, SNAPSHOT_FILE

app = Flask(__name__)

PID_FILE = os.path.join(DATA_DIR, "runner.pid")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _load_snapshot():
    """Return (snapshot, error_response)."""
    if not os.path.exists(SNAPSHOT_FILE):
        return None, (jsonify({
            "error": "No data available yet - runner may not be started",
            "timestamp": _now(),
        }), 503)
    try:
        with open(SNAPSHOT_FILE, "r", encoding="utf-8") as f:
            return json.load(f), None
    except (json.JSONDecodeError, OSError) as exc:
        return None, (jsonify({
            "error": f"Failed to read snapshot: {exc}",
            "timestamp": _now(),
        }), 500)


def _no_cache(resp):
    resp.headers["Cache-Control"] = "no-cache, no-store, must-revalidate"
    resp.headers["Access-Control-Allow-Origin"] = "*"
    return resp


@app.route("/")
def index():
    return jsonify({
        "service": "algofi-strategy-engine",
        "paper_trading": True,
        "routes": ["/api/data", "/api/health", "/api/trades",
                   "/api/opportunities", "/api/sources"],
    })


@app.route("/api/data")
def api_data():
    data, error = _load_snapshot()
    if error:
        return error
    return _no_cache(jsonify(data))


@app.route("/api/health")
def health():
    runner_alive = False
    if os.path.exists(PID_FILE):
        try:
            with open(PID_FILE) as f:
                pid = int(f.read().strip())
            os.kill(pid, 0)
            runner_alive = True
        except (OSError, ValueError):
            pass

    snapshot_age = None
    data, error = _load_snapshot()
    if data is not None:
        ts = data.get("timestamp", "")
        if ts:
            try:
                snap_time = datetime.fromisoformat(ts.replace("Z", "+00:00"))
                snapshot_age = round((datetime.now(timezone.utc) - snap_time).total_seconds(), 1)
            except ValueError:
                pass

    return jsonify({
        "status": "healthy",
        "runner_alive": runner_alive,
        "snapshot_age_seconds": snapshot_age,
        "timestamp": _now(),
    })


@app.route("/api/trades")
def api_trades():
    data, error = _load_snapshot()
    if error:
        return jsonify([]), error[1]
    trades = data.get("trades", [])
    limit = request.args.get("limit", type=int)
    if limit is not None and limit >= 0:
        trades = trades[:limit]
    return _no_cache(jsonify(trades))


@app.route("/api/opportunities")
def api_opportunities():
    data, error = _load_snapshot()
    if error:
        return jsonify([]), error[1]
    return _no_cache(jsonify(data.get("opportunities", [])))


@app.route("/api/sources")
def api_sources():
    data, error = _load_snapshot()
    if error:
        return error
    status = data.get("status", {})
    return _no_cache(jsonify({
        "sources": status.get("sources", {}),
        "cache": status.get("cache", {}),
        "timestamp": data.get("timestamp"),
    }))


if __name__ == "__main__":
    host = os.environ.get("HOST", "0.0.0.0")
    port = int(os.environ.get("PORT", 10000))
    debug = os.environ.get("FLASK_DEBUG", "false").lower() == "true"
    print(f"Starting AlgoFi strategy engine API on {host}:{port}")
    print(f"  Data dir: {DATA_DIR}")
    print(f"  Snapshot file: {SNAPSHOT_FILE}")
    app.run(host=host, port=port, debug=debug)
