"""Tests for the platform fee quote."""

import pytest

from reconciler.services.escrow_service import quote

pytestmark = pytest.mark.unit


def test_quote_reference_amount():
    fees = quote(10000, "usd")

    assert fees.fee == 320
    assert fees.net == 9680


@pytest.mark.parametrize("amount", [0, 1, 29, 30, 31, 99, 1000, 12345, 999999])
def test_quote_fee_plus_net_equals_amount(amount):
    fees = quote(amount, "usd")

    assert fees.fee + fees.net == amount
    assert 0 <= fees.fee <= amount
    assert fees.net >= 0


def test_quote_is_deterministic_and_rounds_half_up():
    # 2.9% of 50 = 1.45 -> 31.45 -> 31; 2.9% of 1950 = 56.55 -> 86.55 -> 87
    assert quote(50).fee == 31
    assert quote(1950).fee == 87
    assert quote(1950) == quote(1950)


def test_quote_uses_per_currency_fixed_fee():
    assert quote(10000, "EUR").fee == 315
    assert quote(10000, "xyz").fee == 320


def test_quote_rejects_negative_amount():
    with pytest.raises(ValueError):
        quote(-1)
