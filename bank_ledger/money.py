"""
Money Handling Utilities

All monetary values are Decimal, never float. Amounts are compared exactly
and carry at most two fractional digits.
"""

from decimal import Decimal, InvalidOperation, getcontext

from .errors import ValidationError

# High precision for financial calculations
getcontext().prec = 28

ZERO = Decimal('0.00')
CENT = Decimal('0.01')


def to_decimal(value) -> Decimal:
    """
    Convert an amount to Decimal without rounding.

    Floats go through str() so 0.1 stays 0.1. Anything that is not a finite
    number with at most two decimal places is a ValidationError.
    """
    if value is None:
        raise ValidationError("Amount is required")
    if isinstance(value, bool):
        raise ValidationError(f"Invalid amount: {value!r}")
    if not isinstance(value, Decimal):
        try:
            value = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValidationError(f"Invalid amount: {value!r}")

    if not value.is_finite():
        raise ValidationError(f"Invalid amount: {value}")
    try:
        cents = value.quantize(CENT)
    except InvalidOperation:
        raise ValidationError(f"Amount out of range: {value}")
    if value != cents:
        raise ValidationError(f"Amount cannot have more than 2 decimal places: {value}")
    # -0.00 is stored and shown as 0.00
    if value.is_zero():
        value = value.copy_abs()
    return value


def require_positive(value, label: str = "Amount") -> Decimal:
    """Convert and require a strictly positive amount"""
    amount = to_decimal(value)
    if amount <= 0:
        raise ValidationError(f"{label} must be positive")
    return amount


def require_non_negative(value, label: str = "Amount") -> Decimal:
    """Convert and require an amount >= 0"""
    amount = to_decimal(value)
    if amount < 0:
        raise ValidationError(f"{label} must be non-negative")
    return amount


def format_amount(value: Decimal, symbol: str = "$") -> str:
    """Format for display, e.g. $1,250.50"""
    return f"{symbol}{Decimal(value):,.2f}"
