"""
config.py
==========
Central configuration for the AlgoFi strategy engine (paper trading).
All monetary values in USD. All rates as decimals (0.003 = 0.3%) unless the
key says otherwise (``*_pct`` settings exposed to strategy users are percents).
"""

from __future__ import annotations
import logging
import logging.config
import os
from typing import Dict, Any, List


# ─────────────────────────────────────────────────────────────────────────────
# PAPER TRADING MODE
# ─────────────────────────────────────────────────────────────────────────────

PAPER_TRADING: bool = True          # ALWAYS True: executions are simulated
DATA_DIR: str = os.environ.get("DATA_DIR", os.path.join(os.path.dirname(__file__), "data"))
LOG_FILE: str = os.path.join(DATA_DIR, "engine.log")
DB_PATH: str = os.environ.get("DB_PATH", os.path.join(DATA_DIR, "algofi.db"))
SNAPSHOT_FILE: str = os.path.join(DATA_DIR, "dashboard_snapshot.json")

# ─────────────────────────────────────────────────────────────────────────────
# CAPITAL
# ─────────────────────────────────────────────────────────────────────────────

TOTAL_CAPITAL: float = float(os.environ.get("TOTAL_CAPITAL", "10000"))

# ─────────────────────────────────────────────────────────────────────────────
# DEX FEES  (protocol swap fee, charged per leg)
# ─────────────────────────────────────────────────────────────────────────────

DEX_FEES: Dict[str, float] = {
    "tinyman": 0.003,    # 0.30%
    "pact":    0.0025,   # 0.25%
    "algofi":  0.002,    # 0.20%
    "vestige": 0.005,    # 0.50% (aggregator average)
    "defily":  0.004,    # 0.40%
    "default": 0.003,
}

# ─────────────────────────────────────────────────────────────────────────────
# FALLBACK DATA GENERATION
# ─────────────────────────────────────────────────────────────────────────────

# Reference prices the fallback generator randomises around.
BASE_PRICES: Dict[str, float] = {
    "ALGO/USDC": 0.125,
    "ALGO/STBL": 0.123,
    "USDC/STBL": 0.998,
}

# Full width of the random band, as a fraction of the base price (0.01 = ±0.5%).
BASE_PRICE_BANDS: Dict[str, float] = {
    "ALGO/USDC": 0.01,
    "ALGO/STBL": 0.008,
    "USDC/STBL": 0.004,
    "default":   0.01,
}

FALLBACK_PROFILES: Dict[str, Dict[str, float]] = {
    "tinyman": {"volume_multiplier": 2.0, "liquidity_multiplier": 1.5},
    "pact":    {"volume_multiplier": 1.5, "liquidity_multiplier": 1.2},
    "algofi":  {"volume_multiplier": 1.0, "liquidity_multiplier": 1.0},
    "vestige": {"volume_multiplier": 0.8, "liquidity_multiplier": 0.9},
    "defily":  {"volume_multiplier": 0.6, "liquidity_multiplier": 0.7},
    "default": {"volume_multiplier": 1.0, "liquidity_multiplier": 1.0},
}

# UTC hours with above / below average DEX activity
PEAK_HOURS: List[int] = [14, 15, 16, 17, 18]
QUIET_HOURS: List[int] = [2, 3, 4, 5, 6]

# Algorand Standard Asset ids
ASSET_IDS: Dict[str, str] = {
    "ALGO":   "0",
    "USDC":   "31566704",
    "STBL":   "465865291",
    "OPUL":   "287867876",
    "PLANET": "27165954",
    "CHOICE": "297995609",
}

# ─────────────────────────────────────────────────────────────────────────────
# SLIPPAGE / EXECUTION SIMULATION
# ─────────────────────────────────────────────────────────────────────────────

SLIPPAGE: Dict[str, float] = {
    "min": 0.001,        # 0.10%
    "max": 0.005,        # 0.50%
    "liquidity_provision": 0.001,
}

EXECUTION: Dict[str, float] = {
    "swap_latency_s": 0.1,
    "lp_latency_s": 0.2,
    "algo_network_fee": 0.001,   # ALGO per swap
    "lp_network_fee": 0.002,     # ALGO per add-liquidity
}

# Opportunity confidence heuristic: min(cap, base + spread * spread_weight).
# Uncalibrated; recalibrate against historical fills before trusting.
CONFIDENCE: Dict[str, float] = {
    "base": 0.7,
    "spread_weight": 10.0,
    "cap": 0.95,
}

# ─────────────────────────────────────────────────────────────────────────────
# PRICE VALIDATION / CACHE / FALLBACK
# ─────────────────────────────────────────────────────────────────────────────

VALIDATOR: Dict[str, float] = {
    "max_price_change_pct": 10.0,   # percent per minute
    "min_volume": 1000.0,           # below this only logged
    "max_age_seconds": 300,
    "outlier_threshold": 3.0,       # z-score
    "min_outlier_deviation_pct": 5.0,  # distance from median of the others
}

CACHE: Dict[str, float] = {
    "max_size": 10000,
    "cleanup_threshold": 0.8,
    "purge_age_seconds": 3600,
    "read_max_age_seconds": 300,
}

FALLBACK: Dict[str, Any] = {
    "max_retries": 3,
    "backoff_cap_seconds": 10,
    "cooldown_seconds": 600,        # 10 minutes
    "enabled": True,
}

# ─────────────────────────────────────────────────────────────────────────────
# SCANNER / RISK / ORCHESTRATION
# ─────────────────────────────────────────────────────────────────────────────

SCANNER: Dict[str, float] = {
    "capital_fraction": 0.10,       # of allocated capital per trade
    "liquidity_fraction": 0.05,     # of buy-side liquidity per trade
    "round_trip_fee": 0.006,        # 0.3% per leg
    "opportunity_ttl_seconds": 300,
}

RISK: Dict[str, Any] = {
    "max_daily_loss_pct": 0.02,     # of total capital
    "max_position_size_pct": 0.10,  # of total capital
    "max_daily_trades": 50,
    "max_risk_score": 0.5,
    "min_confidence": 0.7,
    "max_pool_risk_score": 0.8,
}

ORCHESTRATOR: Dict[str, Any] = {
    "max_executions_per_cycle": 5,
    "scan_interval_seconds": 30,
    "poll_interval_seconds": 30,
    "performance_window_days": 30,
}

# ─────────────────────────────────────────────────────────────────────────────
# STRATEGY DEFAULTS  (merged with caller overrides at initialisation)
# ─────────────────────────────────────────────────────────────────────────────

STRATEGY_DEFAULTS: Dict[str, Dict[str, Any]] = {
    "arbitrage": {
        "min_spread_pct": 0.5,              # percent
        "max_execution_time": 30000,        # ms
        "supported_pairs": ["ALGO/USDC", "ALGO/STBL", "USDC/STBL"],
        "dex_priorities": ["tinyman", "algofi", "pact"],
    },
    "yield_farming": {
        "target_apy": 15.0,                 # percent
        "max_pools": 5,
        "rebalance_frequency_hours": 24,
        "min_pool_tvl": 100000.0,
        "max_pool_allocation_pct": 30.0,    # percent of allocated capital
        "supported_protocols": ["tinyman", "algofi", "folks"],
        "preferred_assets": ["ALGO", "USDC", "STBL"],
    },
}

DEFAULT_STRATEGIES: List[Dict[str, Any]] = [
    {
        "name": "DEX Arbitrage",
        "strategy_type": "arbitrage",
        "is_active": True,
        "allocated_capital": 5000.0,
        "max_position_size": 1000.0,
        "min_profit_threshold": 0.001,
        "settings": {},
    },
    {
        "name": "Yield Farming",
        "strategy_type": "yield_farming",
        "is_active": True,
        "allocated_capital": 3000.0,
        "max_position_size": 3000.0,
        "min_profit_threshold": 0.001,
        "settings": {},
    },
]

# ─────────────────────────────────────────────────────────────────────────────
# PUBLIC API ENDPOINTS
# ─────────────────────────────────────────────────────────────────────────────

API: Dict[str, str] = {
    "tinyman":  "https://mainnet-api.tinyman.org/v1",
    "pact":     "https://api.pact.fi/api/v1",
    "algofi":   "https://api.algofi.org/v1",
    "vestige":  "https://free-api.vestige.fi/asset",
    "defily":   "https://api.defily.io/v1",
}

POOL_API: Dict[str, str] = {
    "tinyman": "https://mainnet.analytics.tinyman.org/api/v1/pools/",
    "pact":    "https://api.pact.fi/api/pools",
    "algofi":  "https://api.algofi.org/assets",
    "folks":   "https://xapi.folksfinance.com/api/v1/pools",
}

# ─────────────────────────────────────────────────────────────────────────────
# HTTP SETTINGS
# ─────────────────────────────────────────────────────────────────────────────

HTTP: Dict[str, Any] = {
    "timeout":           10,
    "rate_limit_delay":  0.35,
    "user_agent":        "AlgoFiEngine/1.0 (paper-trading research)",
}

# ─────────────────────────────────────────────────────────────────────────────
# LOGGING CONFIGURATION
# ─────────────────────────────────────────────────────────────────────────────

os.makedirs(DATA_DIR, exist_ok=True)

LOGGING_CONFIG: Dict[str, Any] = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "detailed": {
            "format": "%(asctime)s [%(levelname)-8s] %(name)s | %(message)s",
            "datefmt": "%Y-%m-%d %H:%M:%S",
        },
        "brief": {
            "format": "[%(levelname)s] %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "brief",
            "level": "WARNING",
        },
        "file": {
            "class": "logging.FileHandler",
            "filename": LOG_FILE,
            "formatter": "detailed",
            "level": "DEBUG",
        },
    },
    "root": {
        "handlers": ["console", "file"],
        "level": "DEBUG",
    },
}

_logging_configured = False


def get_logger(name: str) -> logging.Logger:
    """Return a configured logger for a given module name."""
    global _logging_configured
    if not _logging_configured:
        logging.config.dictConfig(LOGGING_CONFIG)
        _logging_configured = True
    return logging.getLogger(name)
