# backend/lib/utility_bill_core/io.py
"""
Plain-dict views of the core types for JSON request/response bodies.

Money goes out as strings with 2 decimal places, quantities as strings at
full precision, dates as ISO-8601. Incoming dicts are validated before any
core object is built.
"""
from dataclasses import asdict
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from .errors import ValidationError
from .estimator import BillBreakdown
from .invoice import Invoice, InvoiceStatus, parse_vat_mode
from .ledger import Payment, PaymentMethod
from .models import ConsumptionResult, GasConversion, Meter, MeterType, ReadingType
from .money import format_money, to_decimal
from .tariffs import (DayNightRate, FlatRate, GasRate, Tariff, TieredRate,
                      DEFAULT_CALORIFIC_VALUE, DEFAULT_CORRECTION_FACTOR, DEFAULT_VAT_RATE)


def parse_date(value, field: str) -> Optional[date]:
    """Accepts YYYY-MM-DD or a full ISO8601 timestamp, e.g. 2025-11-01T00:00:00Z"""
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value
    text = str(value).replace("Z", "+00:00")
    try:
        if "T" in text:
            return datetime.fromisoformat(text).date()
        return date.fromisoformat(text)
    except ValueError:
        raise ValidationError(field, f"{field} must be an ISO date, got {value!r}")


def _required(body: Dict[str, Any], field: str):
    value = body.get(field)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(field, f"Missing field: {field}")
    return value


def _enum(enum_cls, value, field: str):
    try:
        return enum_cls(str(value).upper())
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(field, f"{field} must be one of {allowed}, got {value!r}")


def _quantity(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


def _iso(value) -> Optional[str]:
    return None if value is None else value.isoformat()


# ---- tariffs ----------------------------------------------------------------

def tariff_from_dict(body: Dict[str, Any]) -> Tariff:
    """
    {"name": ..., "standing_charge": 22.63, "pricing": "DAY_NIGHT",
     "day_rate": 19.349, "night_rate": 19.349}

    pricing is one of FLAT, DAY_NIGHT, TIERED, GAS.
    """
    mode = str(_required(body, "pricing")).upper()
    if mode == "FLAT":
        pricing = FlatRate(_required(body, "unit_rate"))
    elif mode == "DAY_NIGHT":
        pricing = DayNightRate(_required(body, "day_rate"), _required(body, "night_rate"))
    elif mode == "TIERED":
        pricing = TieredRate(_required(body, "threshold"), _required(body, "tier1_rate"),
                             _required(body, "tier2_rate"))
    elif mode == "GAS":
        pricing = GasRate(_required(body, "unit_rate"),
                          body.get("calorific_value", DEFAULT_CALORIFIC_VALUE),
                          body.get("correction_factor", DEFAULT_CORRECTION_FACTOR))
    else:
        raise ValidationError("pricing", f"pricing must be FLAT, DAY_NIGHT, TIERED or GAS, got {mode!r}")

    extra = {}
    if body.get("start_date"):
        extra["start_date"] = parse_date(body["start_date"], "start_date")
    if body.get("tariff_id"):
        extra["tariff_id"] = body["tariff_id"]
    return Tariff(
        name=_required(body, "name"),
        standing_charge=_required(body, "standing_charge"),
        pricing=pricing,
        vat_rate=body.get("vat_rate", DEFAULT_VAT_RATE),
        description=body.get("description"),
        end_date=parse_date(body.get("end_date"), "end_date"),
        **extra,
    )


def tariff_to_dict(tariff: Tariff) -> Dict[str, Any]:
    pricing = {k: _quantity(v) for k, v in asdict(tariff.pricing).items()}
    return {
        "tariff_id": tariff.tariff_id,
        "name": tariff.name,
        "description": tariff.description,
        "meter_type": tariff.meter_type.value,
        "pricing_mode": type(tariff.pricing).__name__,
        "pricing": pricing,
        "pricing_description": tariff.pricing_description(),
        "unit_rate": _quantity(tariff.unit_rate),
        "standing_charge": _quantity(tariff.standing_charge),
        "vat_rate": _quantity(tariff.vat_rate),
        "active": tariff.active,
        "start_date": _iso(tariff.start_date),
        "end_date": _iso(tariff.end_date),
    }


# ---- meters and consumption -------------------------------------------------

def meter_from_dict(body: Dict[str, Any]) -> Meter:
    return Meter(
        meter_id=_required(body, "meter_id"),
        meter_type=_enum(MeterType, _required(body, "meter_type"), "meter_type"),
        serial_number=body.get("serial_number"),
        current_reading=body.get("current_reading", 0),
        max_reading=body.get("max_reading", "99999.99"),
        rolls_over=bool(body.get("rolls_over", False)),
        day_night=bool(body.get("day_night", False)),
        current_day_reading=body.get("current_day_reading", 0),
        current_night_reading=body.get("current_night_reading", 0),
        imperial=bool(body.get("imperial", False)),
    )


def meter_to_dict(meter: Meter) -> Dict[str, Any]:
    return {
        "meter_id": meter.meter_id,
        "meter_type": meter.meter_type.value,
        "serial_number": meter.serial_number,
        "current_reading": _quantity(meter.current_reading),
        "max_reading": _quantity(meter.max_reading),
        "rolls_over": meter.rolls_over,
        "day_night": meter.day_night,
        "current_day_reading": _quantity(meter.current_day_reading) if meter.day_night else None,
        "current_night_reading": _quantity(meter.current_night_reading) if meter.day_night else None,
        "imperial": meter.imperial,
        "active": meter.active,
    }


def parse_reading_type(value) -> ReadingType:
    if value is None:
        return ReadingType.ACTUAL
    return _enum(ReadingType, value, "reading_type")


def consumption_to_dict(consumption: Optional[ConsumptionResult]) -> Optional[Dict[str, Any]]:
    if consumption is None:
        return None
    body = {
        "meter_id": consumption.meter_id,
        "meter_type": consumption.meter_type.value,
        "units": _quantity(consumption.units),
        "opening": _quantity(consumption.opening),
        "closing": _quantity(consumption.closing),
        "rolled_over": consumption.rolled_over,
        "reading_type": consumption.reading_type.value,
        "period_start": _iso(consumption.period_start),
        "period_end": _iso(consumption.period_end),
        "reading_id": consumption.reading_id,
    }
    if consumption.has_day_night:
        body.update({
            "day_units": _quantity(consumption.day_units),
            "night_units": _quantity(consumption.night_units),
            "day_opening": _quantity(consumption.day_opening),
            "day_closing": _quantity(consumption.day_closing),
            "night_opening": _quantity(consumption.night_opening),
            "night_closing": _quantity(consumption.night_closing),
        })
    if consumption.gas is not None:
        body["gas"] = {k: v if isinstance(v, bool) else _quantity(v)
                       for k, v in asdict(consumption.gas).items()}
    return body


def consumption_from_dict(body: Dict[str, Any]) -> ConsumptionResult:
    """Rebuilds a result previously produced by consumption_to_dict()."""
    def dec(name):
        value = body.get(name)
        return None if value is None else to_decimal(value, name)

    return ConsumptionResult(
        meter_id=_required(body, "meter_id"),
        meter_type=_enum(MeterType, _required(body, "meter_type"), "meter_type"),
        units=to_decimal(_required(body, "units"), "units"),
        opening=dec("opening"),
        closing=dec("closing"),
        day_units=dec("day_units"),
        night_units=dec("night_units"),
        day_opening=dec("day_opening"),
        day_closing=dec("day_closing"),
        night_opening=dec("night_opening"),
        night_closing=dec("night_closing"),
        gas=_gas_from_dict(body.get("gas")),
        rolled_over=bool(body.get("rolled_over", False)),
        reading_type=parse_reading_type(body.get("reading_type")),
        period_start=parse_date(body.get("period_start"), "period_start"),
        period_end=parse_date(body.get("period_end"), "period_end"),
        reading_id=body.get("reading_id"),
    )


def _gas_from_dict(body: Optional[Dict[str, Any]]) -> Optional[GasConversion]:
    if not body:
        return None

    def dec(name):
        return to_decimal(_required(body, name), name)

    return GasConversion(
        meter_units=dec("meter_units"),
        cubic_meters=dec("cubic_meters"),
        corrected_volume=dec("corrected_volume"),
        kwh=dec("kwh"),
        imperial=bool(body.get("imperial", False)),
        calorific_value=dec("calorific_value"),
        correction_factor=dec("correction_factor"),
    )


# ---- invoices and payments --------------------------------------------------

def invoice_to_dict(invoice: Invoice) -> Dict[str, Any]:
    return {
        "invoice_id": invoice.invoice_id,
        "invoice_number": invoice.invoice_number,
        "customer_id": invoice.customer_id,
        "meter_type": invoice.meter_type.value,
        "status": invoice.status.value,
        "period_start": _iso(invoice.period_start),
        "period_end": _iso(invoice.period_end),
        "billing_days": invoice.billing_days,
        "issue_date": _iso(invoice.issue_date),
        "due_date": _iso(invoice.due_date),
        "tariff_id": invoice.tariff_id,
        "tariff_name": invoice.tariff_name,
        "consumption": consumption_to_dict(invoice.consumption),
        "units_consumed": _quantity(invoice.units_consumed),
        "unit_rate": _quantity(invoice.unit_rate),
        "unit_cost": format_money(invoice.unit_cost),
        "standing_charge_total": format_money(invoice.standing_charge_total),
        "subtotal": format_money(invoice.subtotal),
        "vat_mode": invoice.vat_mode.value,
        "vat_rate": _quantity(invoice.vat_rate),
        "net_amount": format_money(invoice.net_amount),
        "vat_amount": format_money(invoice.vat_amount),
        "total_amount": format_money(invoice.total_amount),
        "amount_paid": format_money(invoice.amount_paid),
        "balance_due": format_money(invoice.balance_due),
        "overpayment": format_money(invoice.overpayment),
        "line_items": [
            {
                "description": item.description,
                "quantity": _quantity(item.quantity),
                "unit": item.unit,
                "unit_price": _quantity(item.unit_price),
                "amount": format_money(item.amount),
            }
            for item in invoice.line_items
        ],
        "notes": list(invoice.notes),
    }


def invoice_from_dict(body: Dict[str, Any]) -> Invoice:
    """
    Rebuilds an invoice produced by invoice_to_dict(). Stored amounts are
    taken as they are; nothing is recalculated.
    """
    def money(name):
        value = body.get(name)
        return None if value is None else to_decimal(value, name)

    consumption = body.get("consumption")
    return Invoice(
        customer_id=_required(body, "customer_id"),
        period_start=parse_date(_required(body, "period_start"), "period_start"),
        period_end=parse_date(_required(body, "period_end"), "period_end"),
        meter_type=_enum(MeterType, _required(body, "meter_type"), "meter_type"),
        vat_rate=body.get("vat_rate", DEFAULT_VAT_RATE),
        vat_mode=parse_vat_mode(body.get("vat_mode")),
        issue_date=parse_date(_required(body, "issue_date"), "issue_date"),
        due_date=parse_date(body.get("due_date"), "due_date"),
        tariff_id=body.get("tariff_id"),
        tariff_name=body.get("tariff_name"),
        consumption=consumption_from_dict(consumption) if consumption else None,
        units_consumed=money("units_consumed") or Decimal("0"),
        unit_rate=money("unit_rate"),
        unit_cost=money("unit_cost"),
        standing_charge_total=money("standing_charge_total") or Decimal("0"),
        subtotal=money("subtotal"),
        net_amount=money("net_amount"),
        vat_amount=money("vat_amount"),
        total_amount=money("total_amount"),
        amount_paid=money("amount_paid") or Decimal("0"),
        balance_due=money("balance_due"),
        status=_enum(InvoiceStatus, body.get("status", "PENDING"), "status"),
        notes=list(body.get("notes") or []),
        invoice_id=_required(body, "invoice_id"),
        invoice_number=_required(body, "invoice_number"),
    )


def parse_payment_method(value) -> PaymentMethod:
    if value is None:
        return PaymentMethod.BANK_TRANSFER
    return _enum(PaymentMethod, value, "method")


def payment_to_dict(payment: Payment) -> Dict[str, Any]:
    return {
        "payment_id": payment.payment_id,
        "reference_number": payment.reference_number,
        "customer_id": payment.customer_id,
        "invoice_id": payment.invoice_id,
        "amount": format_money(payment.amount),
        "method": payment.method.value,
        "status": payment.status.value,
        "payment_date": _iso(payment.payment_date),
        "transaction_id": payment.transaction_id,
        "notes": payment.notes,
        "reversed": payment.reversed,
    }


def breakdown_to_dict(breakdown: BillBreakdown) -> Dict[str, Any]:
    return {
        "units": _quantity(breakdown.units),
        "billing_days": breakdown.billing_days,
        "unit_rate": _quantity(breakdown.unit_rate),
        "unit_cost": format_money(breakdown.unit_cost),
        "standing_charge": format_money(breakdown.standing_charge),
        "subtotal": format_money(breakdown.subtotal),
        "vat_mode": breakdown.vat_mode.value,
        "vat_rate": _quantity(breakdown.vat_rate),
        "vat_amount": format_money(breakdown.vat_amount),
        "total": format_money(breakdown.total),
    }
