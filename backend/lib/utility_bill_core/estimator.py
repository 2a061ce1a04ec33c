# backend/lib/utility_bill_core/estimator.py
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Optional

from .invoice import VatMode, parse_vat_mode
from .models import Meter, MeterReading, ReadingType
from .money import ZERO, round_money, to_decimal
from .tariffs import FALLBACK_DAY_SHARE, Tariff
from .validation import require_non_negative, validate_period

USAGE_PLACES = Decimal("0.001")


@dataclass(frozen=True)
class BillBreakdown:
    units: Decimal
    billing_days: int
    unit_rate: Decimal
    unit_cost: Decimal
    standing_charge: Decimal
    subtotal: Decimal
    vat_rate: Decimal
    vat_amount: Decimal
    total: Decimal
    vat_mode: VatMode = VatMode.EXCLUSIVE


class BillingEstimator:
    def __init__(self, tariff: Tariff, vat_mode=VatMode.EXCLUSIVE):
        """
        tariff: prices the quote; vat_mode follows the same rules as an invoice
        """
        self.tariff = tariff
        self.vat_mode = parse_vat_mode(vat_mode)

    def quote(self, units, billing_days: int) -> BillBreakdown:
        """What an invoice for `units` kWh over `billing_days` would come to."""
        units = require_non_negative(units, "units")
        if billing_days < 0:
            billing_days = 0
        unit_cost = self.tariff.calculate_unit_cost(units)
        standing = self.tariff.standing_charge_for(billing_days)
        subtotal = unit_cost + standing
        rate = self.tariff.vat_rate
        if self.vat_mode is VatMode.INCLUSIVE:
            vat = subtotal - round_money(subtotal / (1 + rate))
            total = subtotal
        else:
            vat = round_money(subtotal * rate)
            total = subtotal + vat
        return BillBreakdown(units, billing_days, self.tariff.unit_rate, unit_cost, standing,
                             subtotal, rate, vat, total, self.vat_mode)

    def estimate_cost(self, usage_by_period: Dict[str, float],
                      billing_days: Optional[int] = None) -> BillBreakdown:
        """
        usage_by_period: dict like {'2025-11-01': 3.4, ...}
        billing_days defaults to one day per entry
        """
        total_kwh = sum((to_decimal(v, k) for k, v in usage_by_period.items()), ZERO)
        days = len(usage_by_period) if billing_days is None else billing_days
        return self.quote(total_kwh, days)


def average_daily_usage(units, days: int) -> Decimal:
    if days <= 0:
        return ZERO
    return (to_decimal(units, "units") / days).quantize(USAGE_PLACES, rounding=ROUND_HALF_UP)


def estimate_consumption(average_daily, days: int) -> Decimal:
    if days <= 0:
        return ZERO
    return to_decimal(average_daily, "average_daily") * days


def estimate_reading(meter: Meter, previous: MeterReading, period_start: date, period_end: date,
                     average_daily=None) -> MeterReading:
    """
    An ESTIMATED reading that carries the previous reading forward by the
    expected usage. Without an explicit daily average, the previous
    period's own average is used.
    """
    validate_period(period_start, period_end)
    days = (period_end - period_start).days + 1
    if average_daily is None:
        average_daily = _previous_average(previous)

    if previous.has_day_night:
        # split the estimate the way the previous period split
        day_used = _register_used(previous.day_value, previous.previous_day_value)
        night_used = _register_used(previous.night_value, previous.previous_night_value)
        used = day_used + night_used
        expected = estimate_consumption(average_daily, days)
        day_share = day_used / used if used > ZERO else FALLBACK_DAY_SHARE
        day_extra = (expected * day_share).quantize(USAGE_PLACES, rounding=ROUND_HALF_UP)
        return MeterReading(
            meter_id=meter.meter_id,
            period_start=period_start,
            period_end=period_end,
            reading_type=ReadingType.ESTIMATED,
            day_value=previous.day_value + day_extra,
            night_value=previous.night_value + (expected - day_extra),
            previous_day_value=previous.day_value,
            previous_night_value=previous.night_value,
            customer_id=previous.customer_id,
        )

    expected = estimate_consumption(average_daily, days)
    value = previous.value + expected
    if value > meter.max_reading and meter.rolls_over:
        value -= meter.max_reading
    return MeterReading(
        meter_id=meter.meter_id,
        value=value,
        previous_value=previous.value,
        period_start=period_start,
        period_end=period_end,
        reading_type=ReadingType.ESTIMATED,
        customer_id=previous.customer_id,
    )


def _register_used(closing: Decimal, opening: Optional[Decimal]) -> Decimal:
    if opening is None:
        return ZERO
    return max(closing - opening, ZERO)


def _previous_average(previous: MeterReading) -> Decimal:
    used = previous.consumption
    if used is None or previous.period_start is None or previous.period_end is None:
        return ZERO
    days = (previous.period_end - previous.period_start).days + 1
    return average_daily_usage(max(used, ZERO), days)
