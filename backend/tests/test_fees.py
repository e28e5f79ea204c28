from decimal import Decimal

import pytest

from taskhub.domain.errors import ValidationError
from taskhub.domain.escrow.fees import compute_fees


def test_default_rates_on_round_amount():
    fees = compute_fees(10000, 0.15, 0.08)

    assert fees.platform_fee_cents == 1500
    assert fees.tax_cents == 800
    assert fees.total_amount_cents == 12300
    assert fees.payout_amount_cents == 8500


def test_half_cent_rounds_up():
    # 15% of 1003 is 150.45 and 8% is 80.24.
    fees = compute_fees(1003, "0.15", "0.08")
    assert fees.platform_fee_cents == 150
    assert fees.tax_cents == 80

    # 15% of 1010 is exactly 151.5.
    assert compute_fees(1010, Decimal("0.15"), 0).platform_fee_cents == 152


def test_totals_are_consistent():
    for amount in (1, 99, 12345, 999999):
        fees = compute_fees(amount, 0.15, 0.08)
        assert fees.total_amount_cents == amount + fees.platform_fee_cents + fees.tax_cents
        assert fees.payout_amount_cents == amount - fees.platform_fee_cents
        assert fees.payout_amount_cents >= 0


def test_zero_rates_pass_amount_through():
    fees = compute_fees(5000, 0, 0)
    assert fees.total_amount_cents == 5000
    assert fees.payout_amount_cents == 5000


@pytest.mark.parametrize("amount", [0, -1, 10.5, True])
def test_rejects_invalid_amounts(amount):
    with pytest.raises(ValidationError):
        compute_fees(amount, 0.15, 0.08)


@pytest.mark.parametrize("rate", [-0.01, 1, 1.5, "abc"])
def test_rejects_invalid_rates(rate):
    with pytest.raises(ValidationError):
        compute_fees(1000, rate, 0.08)
