# tests/test_estimator.py
from datetime import date
from decimal import Decimal

from backend.lib.utility_bill_core.estimator import (BillingEstimator, average_daily_usage,
                                                      estimate_consumption, estimate_reading)
from backend.lib.utility_bill_core.invoice import VatMode
from backend.lib.utility_bill_core.models import Meter, MeterReading, MeterType, ReadingType
from backend.lib.utility_bill_core.tariffs import Tariff


def test_estimator():
    tariff = Tariff.flat("Standard", "0", "25", vat_rate="0")
    usage = {"2025-11-01": 2.5, "2025-11-02": 7.0}
    quote = BillingEstimator(tariff).estimate_cost(usage)
    # total kwh = 9.5 * 25p = 237.5p -> rounds to 2.38
    assert quote.unit_cost == Decimal("2.38")
    assert quote.billing_days == 2
    assert quote.total == Decimal("2.38")


def test_quote_matches_invoice_rounding():
    tariff = Tariff.flat("Economy", "22.63", "19.349")
    quote = BillingEstimator(tariff).quote("282.262", 33)
    assert quote.unit_cost == Decimal("54.61")
    assert quote.standing_charge == Decimal("7.47")
    assert quote.subtotal == Decimal("62.08")
    assert quote.vat_amount == Decimal("3.10")
    assert quote.total == Decimal("65.18")


def test_inclusive_quote():
    tariff = Tariff.flat("Economy", "0", "10")
    quote = BillingEstimator(tariff, VatMode.INCLUSIVE).quote(100, 0)
    assert quote.total == Decimal("10.00")
    assert quote.vat_amount == Decimal("0.48")


def test_average_daily_usage():
    assert average_daily_usage(300, 30) == Decimal("10")
    assert average_daily_usage(300, 0) == Decimal("0")
    assert average_daily_usage(100, 3) == Decimal("33.333")


def test_estimate_consumption():
    assert estimate_consumption(10, 30) == Decimal("300")
    assert estimate_consumption(10, -1) == Decimal("0")


def test_estimate_reading_carries_previous_average_forward():
    meter = Meter("E-1", MeterType.ELECTRICITY)
    previous = MeterReading("E-1", value="1300", previous_value="1000",
                            period_start=date(2025, 1, 1), period_end=date(2025, 1, 30))
    estimate = estimate_reading(meter, previous, date(2025, 1, 31), date(2025, 3, 1))
    assert estimate.reading_type is ReadingType.ESTIMATED
    assert estimate.is_estimated
    assert estimate.previous_value == Decimal("1300")
    assert estimate.value == Decimal("1600")


def test_estimate_reading_keeps_day_night_split():
    meter = Meter("E-1", MeterType.ELECTRICITY, day_night=True)
    previous = MeterReading("E-1", day_value="160", previous_day_value="100",
                            night_value="140", previous_night_value="100",
                            period_start=date(2025, 1, 1), period_end=date(2025, 1, 10))
    # 100 kWh over 10 days, 60% day
    estimate = estimate_reading(meter, previous, date(2025, 1, 11), date(2025, 1, 20))
    assert estimate.day_value == Decimal("220")
    assert estimate.night_value == Decimal("180")
    assert estimate.consumption == Decimal("100")
