from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

DEFAULT_PLATFORM_FEE_BPS = 500


def _clamp_minor(value: int | float | Decimal | None) -> int:
    try:
        parsed = int(value or 0)
    except (TypeError, ValueError):
        parsed = 0
    return parsed if parsed > 0 else 0


def to_decimal(amount) -> Decimal:
    """Parse a major-unit amount; raises ValueError on garbage."""
    if isinstance(amount, bool):
        raise ValueError("invalid_amount")
    try:
        parsed = Decimal(str(amount).strip())
    except (InvalidOperation, TypeError):
        raise ValueError("invalid_amount")
    if not parsed.is_finite():
        raise ValueError("invalid_amount")
    return parsed.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def money_major_to_minor(amount: float | Decimal | int | None) -> int:
    try:
        parsed = Decimal(str(amount or 0))
    except InvalidOperation:
        parsed = Decimal("0")
    minor = (parsed * Decimal("100")).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return _clamp_minor(int(minor))


def money_minor_to_major(minor: int | float | Decimal | None) -> Decimal:
    parsed = Decimal(_clamp_minor(minor))
    return (parsed / Decimal("100")).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def _bps_minor_half_up(amount_minor: int, bps: int) -> int:
    amt = Decimal(_clamp_minor(amount_minor))
    rate = Decimal(int(max(0, bps)))
    raw = (amt * rate) / Decimal("10000")
    return _clamp_minor(int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP)))


def bps_fee_policy(bps: int = DEFAULT_PLATFORM_FEE_BPS):
    """Build a fee(total_amount, currency) -> Decimal callable charging `bps`."""

    def _fee(total_amount, currency: str) -> Decimal:
        return money_minor_to_major(_bps_minor_half_up(money_major_to_minor(total_amount), bps))

    _fee.bps = int(bps)
    return _fee


def compute_payout_split(total_amount, currency: str, fee_func) -> dict:
    """Split a gross order amount into platform fee and seller payout.

    The fee is clamped to [0, gross] so a misbehaving policy can never
    produce a negative payout.
    """
    gross_minor = money_major_to_minor(total_amount)
    fee_minor = money_major_to_minor(fee_func(money_minor_to_major(gross_minor), currency))
    if fee_minor > gross_minor:
        fee_minor = gross_minor
    return {
        "gross_amount": money_minor_to_major(gross_minor),
        "platform_fee": money_minor_to_major(fee_minor),
        "payout_amount": money_minor_to_major(gross_minor - fee_minor),
    }
