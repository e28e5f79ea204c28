from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from taskhub.domain.errors import ValidationError


@dataclass(frozen=True)
class FeeBreakdown:
    amount_cents: int
    platform_fee_cents: int
    tax_cents: int
    total_amount_cents: int
    payout_amount_cents: int


def _rate_decimal(rate: Decimal | float | str, field: str) -> Decimal:
    try:
        value = Decimal(str(rate))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValidationError(detail=f"Invalid {field}") from exc
    if value < 0 or value >= 1:
        raise ValidationError(detail=f"{field} must be within [0, 1)")
    return value


def _apply_rate(amount_cents: int, rate: Decimal) -> int:
    return int((Decimal(amount_cents) * rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_fees(
    amount_cents: int,
    platform_fee_rate: Decimal | float | str,
    tax_rate: Decimal | float | str,
) -> FeeBreakdown:
    """Derive every escrow amount from the base price; half-up to the cent."""
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
        raise ValidationError(detail="amount_cents must be a positive integer")
    platform_fee = _apply_rate(amount_cents, _rate_decimal(platform_fee_rate, "platform_fee_rate"))
    tax = _apply_rate(amount_cents, _rate_decimal(tax_rate, "tax_rate"))
    return FeeBreakdown(
        amount_cents=amount_cents,
        platform_fee_cents=platform_fee,
        tax_cents=tax,
        total_amount_cents=amount_cents + platform_fee + tax,
        payout_amount_cents=amount_cents - platform_fee,
    )
