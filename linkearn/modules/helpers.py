"""
Small shared helpers: UTC clock, money rounding, e-mail masking
"""

from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP

# Calculation precision for money (sub-cent per-visit amounts)
MONEY_PLACES = Decimal('0.000001')
# Precision shown to users
DISPLAY_PLACES = Decimal('0.01')

ZERO = Decimal('0')


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from drivers that drop tzinfo"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_decimal(value) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    # str() first so floats keep their shortest repr instead of binary noise
    return Decimal(str(value))


def quantize_money(value) -> Decimal:
    """Round half away from zero to 6 decimal places"""
    return to_decimal(value).quantize(MONEY_PLACES, rounding=ROUND_HALF_UP)


def display_money(value) -> Decimal:
    """Round half away from zero to 2 decimal places"""
    return to_decimal(value).quantize(DISPLAY_PLACES, rounding=ROUND_HALF_UP)


def mask_email(email: str | None) -> str:
    if not email or '@' not in email:
        return ''
    local, domain = email.split('@', 1)
    if len(local) <= 2:
        return f"{local[0]}***@{domain}"
    return f"{local[:2]}***@{domain}"
