from dataclasses import replace

from models import OPPORTUNITY_EXPIRED, TradeResult


def test_opportunities_upsert(tmp_store, make_opportunity):
    opp = make_opportunity(profit=5.0, metadata={"buy_fee": 0.003})
    assert tmp_store.save_opportunities([opp]) == 1
    assert tmp_store.save_opportunities([replace(opp, expected_profit=6.0)]) == 1

    rows = tmp_store.recent_opportunities()
    assert len(rows) == 1
    assert rows[0]["expected_profit"] == 6.0
    assert rows[0]["metadata"] == {"buy_fee": 0.003}


def test_empty_opportunity_batch(tmp_store):
    assert tmp_store.save_opportunities([]) == 0


def test_trade_upsert_by_id(tmp_store, clock):
    trade = TradeResult(success=True, actual_profit=1.5, transaction_ref="0xabc",
                        strategy_name="DEX Arbitrage", executed_at=clock())
    assert tmp_store.save_trade(trade) is True
    assert tmp_store.save_trade(replace(trade, actual_profit=2.0)) is True

    [row] = tmp_store.recent_trades()
    assert row["actual_profit"] == 2.0
    assert row["success"] == 1


def test_rejected_trades_have_no_reference(tmp_store, clock):
    for _ in range(2):
        tmp_store.save_trade(TradeResult(success=False, error_reason=OPPORTUNITY_EXPIRED,
                                         strategy_name="Yield Farming", executed_at=clock()))
    rows = tmp_store.recent_trades(strategy_name="Yield Farming")
    assert len(rows) == 2
    assert all(r["transaction_ref"] is None for r in rows)
    assert tmp_store.recent_trades(strategy_name="DEX Arbitrage") == []


def test_events_round_trip_json(tmp_store):
    assert tmp_store.log_event("DEX Arbitrage", "initialized", {"type": "arbitrage"}) is True
    tmp_store.log_event("Yield Farming", "cleanup", {})
    [event] = tmp_store.events("DEX Arbitrage")
    assert event["event_type"] == "initialized"
    assert event["event_data"] == {"type": "arbitrage"}
    assert len(tmp_store.events()) == 2


def test_errors_are_logged_not_raised(tmp_path, make_opportunity):
    from trade_store import TradeStore

    store = TradeStore(str(tmp_path / "closed.db"))
    store.close()
    assert store.save_trade(TradeResult(success=True)) is False
    assert store.save_opportunities([make_opportunity()]) == 0
    assert store.log_event("x", "y", {}) is False
    assert store.recent_trades() == []
