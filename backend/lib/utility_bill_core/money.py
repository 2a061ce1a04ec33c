# backend/lib/utility_bill_core/money.py
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional

from .errors import ValidationError

PENNY = Decimal("0.01")
ZERO = Decimal("0")
PENCE_PER_POUND = Decimal("100")


def to_decimal(value, field: Optional[str] = None) -> Decimal:
    """
    Convert user input to Decimal.

    Floats go through str() so 19.349 stays 19.349 rather than its binary
    approximation.
    """
    if isinstance(value, Decimal):
        return value
    if value is None or isinstance(value, bool):
        raise ValidationError(field, f"{field or 'value'} is required")
    try:
        result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(field, f"{field or 'value'} must be a number, got {value!r}")
    if not result.is_finite():
        raise ValidationError(field, f"{field or 'value'} must be a finite number")
    return result


def round_money(amount: Decimal) -> Decimal:
    """Round to 2 decimal places using ROUND_HALF_UP (banker's rounding avoided)."""
    return amount.quantize(PENNY, rounding=ROUND_HALF_UP)


def pence_to_pounds(pence: Decimal) -> Decimal:
    """The single rounding point for anything priced in pence."""
    return round_money(pence / PENCE_PER_POUND)


def format_money(amount: Optional[Decimal]) -> Optional[str]:
    if amount is None:
        return None
    return str(round_money(amount))
