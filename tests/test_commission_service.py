"""Tests for CommissionEngine: integer basis-point splits."""

import pytest

from app.errors import ValidationError
from app.services.commission_service import CommissionEngine, CommissionSplit


class TestComputeSplit:
    def test_ten_percent_of_2500(self):
        split = CommissionEngine(1000).compute_split(2500)
        assert split == CommissionSplit(
            gross_amount=2500, admin_fee=250, seller_amount=2250,
            rate_bps=1000)

    def test_fee_is_floored_and_remainder_goes_to_seller(self):
        split = CommissionEngine(200).compute_split(999)
        assert split.admin_fee == 19
        assert split.seller_amount == 980

    def test_split_always_sums_to_gross(self):
        engine = CommissionEngine(275)
        for gross in (1, 7, 99, 100, 101, 12345, 999999):
            split = engine.compute_split(gross)
            assert split.admin_fee + split.seller_amount == gross
            assert split.admin_fee >= 0
            assert split.seller_amount >= 0

    def test_zero_rate_leaves_everything_to_seller(self):
        split = CommissionEngine(0).compute_split(500)
        assert split.admin_fee == 0
        assert split.seller_amount == 500

    def test_full_rate_takes_everything(self):
        split = CommissionEngine(10000).compute_split(500)
        assert split.admin_fee == 500
        assert split.seller_amount == 0

    @pytest.mark.parametrize("gross", [0, -100, 12.5, True, "2500", None])
    def test_rejects_bad_gross(self, gross):
        with pytest.raises(ValidationError):
            CommissionEngine(1000).compute_split(gross)

    def test_to_dict(self):
        payload = CommissionEngine(1000).compute_split(2500).to_dict()
        assert payload == {
            'gross_amount': 2500,
            'admin_fee': 250,
            'seller_amount': 2250,
            'commission_rate_bps': 1000,
        }


class TestEngineConfig:
    @pytest.mark.parametrize("rate", [-1, 10001, 2.5, "200", False])
    def test_rejects_bad_rate(self, rate):
        with pytest.raises(ValidationError):
            CommissionEngine(rate)

    def test_from_config(self):
        engine = CommissionEngine.from_config({'COMMISSION_RATE_BPS': 200})
        assert engine.rate_bps == 200
