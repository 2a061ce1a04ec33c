# backend/lib/utility_bill_core/validation.py
"""
Guards shared by tariffs, consumption, invoices and the payment ledger.

Every external value passes through one of these before it reaches a
calculation. Each guard returns the normalised Decimal/date so callers can
write ``units = require_non_negative(raw, "units")``.
"""
from datetime import date
from decimal import Decimal
from typing import Optional

from .errors import ValidationError
from .money import ZERO, to_decimal

ONE = Decimal("1")


def require_field(value, field: str):
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(field, f"{field} is required")
    return value


def require_non_negative(value, field: str, error_code: Optional[str] = None) -> Decimal:
    number = to_decimal(value, field)
    if number < ZERO:
        raise ValidationError(field, f"{field} cannot be negative: {number}", error_code)
    return number


def require_positive(value, field: str, error_code: Optional[str] = None) -> Decimal:
    number = to_decimal(value, field)
    if number <= ZERO:
        raise ValidationError(field, f"{field} must be greater than zero: {number}", error_code)
    return number


def validate_reading(value, meter_id: str, max_reading: Optional[Decimal] = None,
                     field: str = "reading") -> Decimal:
    """A single register value: non-negative and within the meter's dial."""
    number = to_decimal(value, field)
    if number < ZERO:
        raise ValidationError(
            field, f"Meter reading cannot be negative: {number} for meter: {meter_id}", "MTR002"
        )
    if max_reading is not None and number > max_reading:
        raise ValidationError(
            field,
            f"Meter reading {number} exceeds maximum allowed {max_reading} for meter: {meter_id}",
            "MTR003",
        )
    return number


def validate_reading_pair(opening: Decimal, closing: Decimal, meter_id: str,
                          rollover_allowed: bool = False, field: str = "closing") -> None:
    """closing >= opening unless the meter is allowed to wrap past its maximum."""
    if closing < opening and not rollover_allowed:
        raise ValidationError(
            field,
            f"Invalid meter reading: {closing} is less than previous reading: {opening} "
            f"for meter: {meter_id}",
            "MTR001",
        )


def validate_period(period_start: Optional[date], period_end: Optional[date]) -> None:
    if period_start is None or period_end is None:
        raise ValidationError("period", "Billing period dates cannot be null")
    if period_start > period_end:
        raise ValidationError("period", "Period start date must be before or equal to end date")


def validate_payment_amount(amount) -> Decimal:
    return require_positive(amount, "amount", "PAY003")


def validate_vat_rate(rate) -> Decimal:
    number = require_non_negative(rate, "vat_rate")
    if number >= ONE:
        raise ValidationError("vat_rate", f"vat_rate is a fraction and must be below 1: {number}")
    return number
