from datetime import timedelta

import pytest

from models import RiskLimits, TradeResult
from risk_manager import RiskManager


@pytest.fixture
def risk(clock):
    return RiskManager(total_capital=10000.0, clock=clock)


def test_limits_derived_from_total_capital(risk):
    assert risk.limits == RiskLimits(max_daily_loss=200.0, max_position_size=1000.0, max_daily_trades=50)


def test_allows_normal_trade(risk, arb_config, make_opportunity):
    assert risk.check(make_opportunity(), arb_config) is None


def test_daily_trade_cap(risk, arb_config, make_opportunity):
    for _ in range(49):
        risk.record(TradeResult(success=True, actual_profit=0.1))
    assert risk.check(make_opportunity(), arb_config) is None
    risk.record(TradeResult(success=True, actual_profit=0.1))
    assert "trade limit" in risk.check(make_opportunity(), arb_config)


def test_failed_trades_do_not_count(risk):
    risk.record(TradeResult(success=False, actual_profit=-50.0))
    assert risk.daily_trade_count == 0
    assert risk.daily_pnl == 0.0


def test_daily_loss_limit(risk, arb_config, make_opportunity):
    risk.record(TradeResult(success=True, actual_profit=-199.0))
    assert risk.check(make_opportunity(), arb_config) is None
    risk.record(TradeResult(success=True, actual_profit=-1.0))
    assert "loss limit" in risk.check(make_opportunity(), arb_config)


def test_position_size_limit(risk, arb_config, make_opportunity):
    arb_config.allocated_capital = 5000.0
    assert risk.check(make_opportunity(capital=1000.0), arb_config) is None
    assert "exceeds limit" in risk.check(make_opportunity(capital=1000.01), arb_config)


def test_strategy_allocation_limit(risk, arb_config, make_opportunity):
    arb_config.allocated_capital = 300.0
    assert "allocation" in risk.check(make_opportunity(capital=500.0), arb_config)


def test_total_allocation_limit(risk, arb_config, make_opportunity):
    risk.set_allocation(12000.0)
    assert "total" in risk.check(make_opportunity(), arb_config)


def test_check_order_trade_count_first(risk, arb_config, make_opportunity):
    risk.daily_trade_count = 50
    risk.daily_pnl = -500.0
    assert "trade limit" in risk.check(make_opportunity(capital=99999.0), arb_config)


def test_reset_once_per_day(risk, clock):
    yesterday_trade = TradeResult(success=True, actual_profit=3.0, executed_at=clock())
    failed = TradeResult(success=False, actual_profit=0.0, executed_at=clock())
    risk.record(yesterday_trade)

    assert risk.reset_daily_counters([yesterday_trade, failed]) is False

    clock.advance(hours=13)
    assert risk.reset_daily_counters([yesterday_trade, failed]) is True
    assert risk.daily_trade_count == 0
    assert risk.daily_pnl == 0.0
    assert risk.previous_day_pnl == pytest.approx(3.0)
    assert risk.previous_day_trades == 1

    assert risk.reset_daily_counters([yesterday_trade]) is False
    assert risk.previous_day_pnl == pytest.approx(3.0)


def test_reset_ignores_trades_from_other_days(risk, clock):
    old = TradeResult(success=True, actual_profit=7.0, executed_at=clock() - timedelta(days=3))
    clock.advance(days=1)
    risk.reset_daily_counters([old])
    assert risk.previous_day_pnl == 0.0


def test_status(risk):
    risk.set_allocation(8000.0)
    status = risk.status()
    assert status["available_capital"] == 2000.0
    assert status["max_daily_trades"] == 50
    assert status["last_reset_date"] == "2025-01-15"
