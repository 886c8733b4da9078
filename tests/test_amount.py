"""Tests for amount and fee-rate arithmetic."""

from decimal import Decimal

import pytest

from pjflow.amount import (
    MAX_MONEY,
    FeeRate,
    btc_to_sat,
    coerce_fee_rate,
    format_btc,
    sat_to_btc,
    weight_to_vsize,
)
from pjflow.errors import InvalidInput


def test_btc_to_sat_is_exact():
    assert btc_to_sat("0.0015") == 150_000
    assert btc_to_sat(Decimal("0.00000001")) == 1
    assert btc_to_sat("21000000") == MAX_MONEY


@pytest.mark.parametrize("value", ["0.000000001", "-1", "nan", "abc", "21000000.00000001"])
def test_btc_to_sat_rejects(value):
    with pytest.raises(InvalidInput):
        btc_to_sat(value)


@pytest.mark.parametrize("value", [0.1, 1.0, float("nan")])
def test_floats_are_rejected(value):
    with pytest.raises(InvalidInput, match="float"):
        btc_to_sat(value)
    with pytest.raises(InvalidInput, match="float"):
        FeeRate.from_sat_per_vb(value)
    with pytest.raises(InvalidInput):
        coerce_fee_rate(value)


def test_format_btc():
    assert format_btc(150_000) == "0.0015"
    assert format_btc(100_000_000) == "1"
    assert format_btc(1) == "0.00000001"
    assert sat_to_btc(50_000) == Decimal("0.0005")


def test_fee_rate_units():
    rate = FeeRate.from_sat_per_vb(1)
    assert rate.sat_per_kwu == 250
    assert rate.fee_for_weight(272) == 68
    assert FeeRate.from_sat_per_vb("2.5").sat_per_kwu == 625
    assert str(FeeRate(625)) == "2.5 sat/vB"


def test_fee_for_weight_rounds_up():
    assert FeeRate(250).fee_for_weight(3) == 1
    assert FeeRate(0).fee_for_weight(1000) == 0


def test_from_fee_and_weight_floors():
    assert FeeRate.from_fee_and_weight(1_068, 834) == FeeRate(1280)
    with pytest.raises(InvalidInput):
        FeeRate.from_fee_and_weight(100, 0)


def test_coerce_fee_rate():
    assert coerce_fee_rate(None) == FeeRate.ZERO
    assert coerce_fee_rate(FeeRate(10)) == FeeRate(10)
    assert coerce_fee_rate("10") == FeeRate(2500)
    with pytest.raises(InvalidInput):
        coerce_fee_rate(-1)


def test_fee_rates_order():
    assert FeeRate(250) < FeeRate(251)
    assert max(FeeRate(10), FeeRate(20)) == FeeRate(20)


def test_weight_to_vsize():
    assert weight_to_vsize(561) == 141
    assert weight_to_vsize(564) == 141
