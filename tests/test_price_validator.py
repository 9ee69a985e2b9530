from datetime import timedelta

import pytest

from price_validator import PriceValidator


@pytest.fixture
def validator(clock):
    return PriceValidator(clock=clock)


class TestValidate:
    def test_accepts_sane_record(self, validator, make_record):
        assert validator.validate(make_record()) is True

    @pytest.mark.parametrize("kwargs", [
        {"price": 0.0},
        {"price": -1.0},
        {"volume": -5.0},
        {"liquidity": -1.0},
    ])
    def test_rejects_invalid_values(self, validator, make_record, kwargs):
        assert validator.validate(make_record(**kwargs)) is False

    def test_low_volume_is_not_rejected(self, validator, make_record):
        assert validator.validate(make_record(volume=10.0)) is True

    def test_stale_record_rejected(self, validator, make_record):
        assert validator.validate(make_record(age=300)) is True
        assert validator.validate(make_record(age=301)) is False

    def test_change_within_allowance_per_minute(self, validator, make_record):
        previous = make_record(price=0.125, age=60)
        assert validator.validate(make_record(price=0.13), previous) is True   # 4%
        assert validator.validate(make_record(price=0.14), previous) is False  # 12% > 10%

    def test_allowance_scales_with_elapsed_minutes(self, validator, make_record):
        previous = make_record(price=0.100, age=120)
        assert validator.validate(make_record(price=0.115), previous) is True  # 15% <= 20%
        assert validator.validate(make_record(price=0.125), previous) is False  # 25% > 20%

    def test_sub_minute_gap_gets_one_minute_allowance(self, validator, make_record):
        previous = make_record(price=0.100, age=10)
        assert validator.validate(make_record(price=0.105), previous) is True
        assert validator.validate(make_record(price=0.111), previous) is False

    def test_explicit_now_overrides_clock(self, validator, make_record, clock):
        record = make_record()
        later = clock() + timedelta(seconds=400)
        assert validator.validate(record, now=later) is False


class TestCrossSource:
    def _records(self, make_record, prices):
        return [make_record(source=f"dex{i}", price=p) for i, p in enumerate(prices)]

    def test_outlier_rejected(self, validator, make_record):
        records = self._records(make_record, [100, 101, 99, 1000])
        accepted = validator.validate_cross_source("ALGO/USDC", records)
        assert sorted(r.price for r in accepted) == [99, 100, 101]

    def test_identical_prices_all_accepted(self, validator, make_record):
        records = self._records(make_record, [0.125] * 4)
        assert len(validator.validate_cross_source("ALGO/USDC", records)) == 4

    def test_two_sources_always_accepted(self, validator, make_record):
        records = self._records(make_record, [0.125, 0.5])
        assert len(validator.validate_cross_source("ALGO/USDC", records)) == 2

    def test_normal_dispersion_kept(self, validator, make_record):
        records = self._records(make_record, [0.1234, 0.1250, 0.1267, 0.1241, 0.1255])
        assert len(validator.validate_cross_source("ALGO/USDC", records)) == 5

    def test_tradeable_deviation_in_tight_cluster_kept(self, validator, make_record):
        records = self._records(make_record, [0.1250, 0.1251, 0.1249, 0.1263])
        accepted = validator.validate_cross_source("ALGO/USDC", records)
        assert len(accepted) == 4

    def test_deviation_floor_is_configurable(self, clock, make_record):
        records = self._records(make_record, [100, 101, 99, 104])
        assert len(PriceValidator(clock=clock).validate_cross_source("ALGO/USDC", records)) == 4
        strict = PriceValidator(min_outlier_deviation_pct=0.0, clock=clock)
        accepted = strict.validate_cross_source("ALGO/USDC", records)
        assert 104 not in [r.price for r in accepted]

    def test_threshold_is_configurable(self, clock, make_record):
        records = self._records(make_record, [100, 101, 99, 110])
        assert len(PriceValidator(clock=clock).validate_cross_source("ALGO/USDC", records)) == 3
        lenient = PriceValidator(outlier_threshold=20.0, clock=clock)
        assert len(lenient.validate_cross_source("ALGO/USDC", records)) == 4


class TestCollection:
    def test_groups_by_pair_and_applies_both_stages(self, validator, make_record):
        records = [
            make_record(source="a", price=100),
            make_record(source="b", price=101),
            make_record(source="c", price=99),
            make_record(source="d", price=1000),
            make_record(source="a", pair="USDC/STBL", price=0.998),
            make_record(source="b", pair="USDC/STBL", price=0.997, age=900),
        ]
        valid = validator.validate_collection(records)
        keys = {(r.source, r.pair_symbol) for r in valid}
        assert keys == {("a", "ALGO/USDC"), ("b", "ALGO/USDC"), ("c", "ALGO/USDC"),
                        ("a", "USDC/STBL")}

    def test_uses_previous_records(self, validator, make_record):
        previous = make_record(price=0.100, age=60)
        spike = make_record(price=0.200)
        assert validator.validate_collection([spike], {previous.key: previous}) == []

    def test_reference_records_vote_but_are_not_returned(self, validator, make_record):
        reference = [
            make_record(source="tinyman", price=0.1250),
            make_record(source="pact", price=0.1251),
            make_record(source="folks", price=0.1249),
        ]
        assert validator.validate_collection([make_record(source="vestige", price=1.25)],
                                             reference=reference) == []
        [kept] = validator.validate_collection([make_record(source="vestige", price=0.1252)],
                                               reference=reference)
        assert kept.source == "vestige"

    def test_reference_with_incoming_key_is_ignored(self, validator, make_record):
        cached_a = make_record(source="a", price=100)
        cached_c = make_record(source="c", price=99)
        incoming = [make_record(source="c", price=1000)]
        # only a votes against c, and two quotes make no majority
        assert validator.validate_collection(incoming, reference=[cached_a, cached_c]) == incoming
        cached_b = make_record(source="b", price=101)
        assert validator.validate_collection(incoming, reference=[cached_a, cached_b, cached_c]) == []
