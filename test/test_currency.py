from decimal import Decimal

import pytest

from tableorder.currency import (
    format_payment_amount,
    format_usd,
    format_vnd,
    usd_to_vnd,
    vnd_to_usd,
)
from tableorder.pricing import round_money


def test_usd_to_vnd_uses_configured_rate():
    assert usd_to_vnd(Decimal("37.84")) == 946000


def test_usd_to_vnd_rounds_to_whole_dong():
    assert usd_to_vnd(Decimal("0.00002")) == 1
    assert usd_to_vnd(Decimal("0.00001")) == 0


def test_vnd_to_usd_is_unrounded():
    assert vnd_to_usd(946001) == Decimal("37.84004")


@pytest.mark.parametrize("amount", ["0.01", "1.99", "37.84", "1234.56"])
def test_usd_round_trip_stays_within_a_cent(amount):
    amount = Decimal(amount)
    assert abs(round_money(vnd_to_usd(usd_to_vnd(amount))) - amount) <= Decimal("0.01")


@pytest.mark.parametrize("vnd", [1, 999, 25000, 946001])
def test_vnd_round_trip_stays_within_a_dong(vnd):
    assert abs(usd_to_vnd(vnd_to_usd(vnd)) - vnd) <= 1


def test_explicit_rate():
    assert usd_to_vnd(Decimal("2"), rate=Decimal("24000")) == 48000
    assert vnd_to_usd(48000, rate=24000) == Decimal("2")


@pytest.mark.parametrize("rate", [0, -1])
def test_rate_must_be_positive(rate):
    with pytest.raises(ValueError):
        usd_to_vnd(Decimal("1"), rate=rate)


def test_formatting():
    assert format_usd(Decimal("1234.5")) == "$1,234.50"
    assert format_vnd(946000) == "946,000 VND"


def test_format_payment_amount():
    amount = format_payment_amount(Decimal("37.84"))
    assert amount["usd"] == "$37.84"
    assert amount["vnd_amount"] == 946000
    assert amount["display"] == "$37.84 (≈ 946,000 VND)"
    assert amount["exchange_rate"] == Decimal("25000")


def test_format_payment_amount_keeps_a_quoted_vnd_amount():
    amount = format_payment_amount(Decimal("37.84"), vnd=950000)
    assert amount["display"] == "$37.84 (≈ 950,000 VND)"
