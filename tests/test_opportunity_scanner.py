from datetime import timedelta

import pytest

from models import ARBITRAGE
from opportunity_scanner import (
    OpportunityScanner, calculate_spread, print_opportunity_table, rank_opportunities,
)


@pytest.fixture
def scanner(clock):
    return OpportunityScanner(allocated_capital=5000.0, strategy_name="DEX Arbitrage", clock=clock)


def snapshot_of(*records):
    return {r.key: r for r in records}


def test_calculate_spread():
    assert calculate_spread(0.1234, 0.1267) == pytest.approx(0.026742, abs=1e-4)
    with pytest.raises(ValueError):
        calculate_spread(0.0, 1.0)


def test_detects_cross_dex_spread(scanner, make_record, clock):
    snap = snapshot_of(
        make_record(source="tinyman", price=0.1234),
        make_record(source="pact", price=0.1267),
    )
    [opp] = scanner.scan(["ALGO/USDC"], snap)

    assert opp.buy_source == "tinyman"
    assert opp.sell_source == "pact"
    assert opp.spread_pct == pytest.approx(0.026742, abs=1e-4)
    assert opp.required_capital == pytest.approx(500.0)
    assert opp.expected_profit == pytest.approx(10.37, abs=0.01)
    assert opp.confidence_score == pytest.approx(0.95)
    assert opp.expires_at - opp.detected_at == timedelta(seconds=300)
    assert opp.detected_at == clock()
    assert opp.opportunity_type == ARBITRAGE
    assert opp.strategy_name == "DEX Arbitrage"
    assert opp.metadata["synthetic"] is False


def test_size_limited_by_buy_side_liquidity(scanner, make_record):
    snap = snapshot_of(
        make_record(source="tinyman", price=0.1234, liquidity=4000.0),
        make_record(source="pact", price=0.1267),
    )
    [opp] = scanner.scan(["ALGO/USDC"], snap)
    assert opp.required_capital == pytest.approx(200.0)


def test_single_source_pair_skipped(scanner, make_record):
    snap = snapshot_of(make_record(source="tinyman", price=0.1234))
    assert scanner.scan(["ALGO/USDC"], snap) == []


def test_spread_below_minimum_ignored(scanner, make_record):
    snap = snapshot_of(
        make_record(source="tinyman", price=0.1250),
        make_record(source="pact", price=0.1255),   # 0.4%
    )
    assert scanner.scan(["ALGO/USDC"], snap) == []


def test_spread_that_does_not_cover_fees_ignored(scanner, make_record):
    snap = snapshot_of(
        make_record(source="tinyman", price=0.1250),
        make_record(source="pact", price=0.12570),  # 0.56% < 0.6% round-trip fee
    )
    assert scanner.scan(["ALGO/USDC"], snap) == []


def test_zero_liquidity_produces_nothing(scanner, make_record):
    snap = snapshot_of(
        make_record(source="tinyman", price=0.1234, liquidity=0.0),
        make_record(source="pact", price=0.1267),
    )
    assert scanner.scan(["ALGO/USDC"], snap) == []


def test_only_requested_pairs_scanned(scanner, make_record):
    snap = snapshot_of(
        make_record(source="tinyman", pair="ALGO/STBL", price=0.120),
        make_record(source="pact", pair="ALGO/STBL", price=0.125),
    )
    assert scanner.scan(["ALGO/USDC"], snap) == []
    assert len(scanner.scan(["ALGO/STBL"], snap)) == 1


def test_equal_quotes_resolved_by_priority(clock, make_record):
    scanner = OpportunityScanner(
        allocated_capital=5000.0, source_priority=["pact", "tinyman"], clock=clock
    )
    snap = snapshot_of(
        make_record(source="tinyman", price=0.1200),
        make_record(source="pact", price=0.1200),
        make_record(source="algofi", price=0.1260),
    )
    [opp] = scanner.scan(["ALGO/USDC"], snap)
    assert opp.buy_source == "pact"
    assert opp.sell_source == "algofi"


def test_scan_is_deterministic_and_leaves_snapshot_untouched(scanner, make_record):
    snap = snapshot_of(
        make_record(source="tinyman", price=0.1234),
        make_record(source="pact", price=0.1267),
        make_record(source="tinyman", pair="ALGO/STBL", price=0.118),
        make_record(source="pact", pair="ALGO/STBL", price=0.123),
    )
    before = dict(snap)
    first = scanner.scan(["ALGO/USDC", "ALGO/STBL"], snap)
    second = scanner.scan(["ALGO/USDC", "ALGO/STBL"], snap)
    assert first == second
    assert snap == before
    assert [o.pair_symbol for o in first] == ["ALGO/STBL", "ALGO/USDC"]


def test_rank_is_stable_for_equal_scores(make_opportunity):
    a = make_opportunity(pair="A/B", profit=2.0, confidence=0.5)
    b = make_opportunity(pair="C/D", profit=1.0, confidence=1.0)
    c = make_opportunity(pair="E/F", profit=4.0, confidence=0.9)
    ranked = rank_opportunities([a, b, c])
    assert [o.pair_symbol for o in ranked] == ["E/F", "A/B", "C/D"]


def test_print_table(capsys, make_opportunity):
    print_opportunity_table([make_opportunity()])
    out = capsys.readouterr().out
    assert "ALGORAND DEX OPPORTUNITIES" in out
    assert "ALGO/USDC" in out
    assert "tinyman@0.1234" in out


def test_print_empty_table(capsys):
    print_opportunity_table([])
    assert "No opportunities this cycle." in capsys.readouterr().out
