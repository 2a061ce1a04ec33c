# tests/test_validation.py
from datetime import date
from decimal import Decimal

import pytest

from backend.lib.utility_bill_core.errors import StateError, ValidationError
from backend.lib.utility_bill_core.money import format_money, pence_to_pounds, to_decimal
from backend.lib.utility_bill_core.validation import (validate_payment_amount, validate_period,
                                                       validate_reading, validate_reading_pair,
                                                       validate_vat_rate)


def test_to_decimal_goes_through_str():
    assert to_decimal(19.349) == Decimal("19.349")
    assert to_decimal(" 12.5 ") == Decimal("12.5")
    for bad in (None, True, "abc", "NaN", float("inf")):
        with pytest.raises(ValidationError):
            to_decimal(bad, "rate")


def test_pence_to_pounds_rounds_half_up():
    assert pence_to_pounds(Decimal("746.79")) == Decimal("7.47")
    assert pence_to_pounds(Decimal("0.5")) == Decimal("0.01")
    assert pence_to_pounds(Decimal("12.5")) == Decimal("0.13")
    assert format_money(Decimal("3.1")) == "3.10"
    assert format_money(None) is None


def test_reading_guards():
    assert validate_reading("0", "M1") == Decimal("0")
    with pytest.raises(ValidationError) as exc:
        validate_reading("-0.01", "M1")
    assert exc.value.error_code == "MTR002"
    assert "M1" in exc.value.message

    validate_reading_pair(Decimal("5"), Decimal("5"), "M1")
    validate_reading_pair(Decimal("9"), Decimal("1"), "M1", rollover_allowed=True)
    with pytest.raises(ValidationError) as exc:
        validate_reading_pair(Decimal("9"), Decimal("1"), "M1")
    assert exc.value.error_code == "MTR001"


def test_period_ordering():
    validate_period(date(2025, 1, 1), date(2025, 1, 1))
    with pytest.raises(ValidationError):
        validate_period(date(2025, 1, 2), date(2025, 1, 1))
    with pytest.raises(ValidationError):
        validate_period(None, date(2025, 1, 1))


def test_payment_and_vat_guards():
    assert validate_payment_amount("0.01") == Decimal("0.01")
    with pytest.raises(ValidationError):
        validate_payment_amount(0)
    assert validate_vat_rate("0.2") == Decimal("0.2")
    with pytest.raises(ValidationError):
        validate_vat_rate("-0.05")
    with pytest.raises(ValidationError):
        validate_vat_rate(1)


def test_error_payloads():
    error = ValidationError("amount", "amount must be greater than zero", "PAY003")
    assert error.to_dict() == {"error": "amount must be greater than zero", "code": "PAY003",
                               "field": "amount"}
    assert str(error) == "[PAY003] amount must be greater than zero"
    assert isinstance(error, ValueError)
    assert StateError("nope").error_code == "STA001"
