# tests/test_invoice.py
import re
import threading
from datetime import date
from decimal import Decimal

import pytest

from backend.lib.utility_bill_core.errors import StateError, ValidationError
from backend.lib.utility_bill_core.invoice import Invoice, InvoiceStatus, VatMode
from backend.lib.utility_bill_core.models import MeterType
from backend.lib.utility_bill_core.tariffs import Tariff

ISSUED = date(2025, 2, 1)


def make_invoice(units="100", rate="20", vat_mode=VatMode.EXCLUSIVE, standing="0"):
    """100 kWh at 20p, no standing charge: subtotal 20.00, VAT 1.00, total 21.00"""
    invoice = Invoice(
        customer_id="C1",
        period_start=date(2025, 1, 1),
        period_end=date(2025, 1, 31),
        meter_type=MeterType.ELECTRICITY,
        vat_mode=vat_mode,
        issue_date=ISSUED,
        units_consumed=Decimal(units),
    )
    invoice.set_standing_charge_total(standing)
    return invoice.calculate_totals(Tariff.flat("Standard", 0, rate))


def test_new_invoice_defaults():
    invoice = make_invoice()
    assert invoice.status is InvoiceStatus.PENDING
    assert invoice.billing_days == 31
    assert invoice.due_date == date(2025, 2, 15)
    assert re.match(r"^INV-\d{6}$", invoice.invoice_number)
    assert make_invoice().invoice_number != invoice.invoice_number


def test_vat_exclusive_totals():
    invoice = make_invoice(standing="7.47")
    assert invoice.unit_cost == Decimal("20.00")
    assert invoice.subtotal == Decimal("27.47")
    assert invoice.vat_amount == Decimal("1.37")
    assert invoice.total_amount == Decimal("28.84")
    assert invoice.total_amount - invoice.vat_amount == invoice.subtotal
    assert invoice.balance_due == invoice.total_amount


def test_vat_inclusive_extracts_tax_from_subtotal():
    invoice = make_invoice(rate="10", vat_mode=VatMode.INCLUSIVE)
    # subtotal 10.00 contains VAT: net = 10 / 1.05 = 9.5238 -> 9.52
    assert invoice.subtotal == Decimal("10.00")
    assert invoice.net_amount == Decimal("9.52")
    assert invoice.vat_amount == Decimal("0.48")
    assert invoice.total_amount == invoice.subtotal
    assert invoice.net_amount + invoice.vat_amount == invoice.subtotal


def test_unit_cost_override_wins_over_tariff():
    invoice = make_invoice()
    invoice.set_unit_cost("50")
    invoice.calculate_totals(Tariff.flat("Standard", 0, "20"))
    assert invoice.unit_cost == Decimal("50.00")
    assert invoice.total_amount == Decimal("52.50")


def test_totals_need_a_price():
    invoice = Invoice("C1", date(2025, 1, 1), date(2025, 1, 31), MeterType.ELECTRICITY)
    with pytest.raises(ValidationError):
        invoice.calculate_totals()


def test_partial_then_full_payment():
    invoice = make_invoice()
    invoice.apply_payment("10")
    assert invoice.status is InvoiceStatus.PARTIAL
    assert invoice.balance_due == Decimal("11.00")

    invoice.apply_payment("11")
    assert invoice.status is InvoiceStatus.PAID
    assert invoice.balance_due == Decimal("0")


@pytest.mark.parametrize("payments", [["21.00"], ["7", "7", "7"], ["20.99", "0.01"]])
def test_payments_summing_to_total_always_pay_in_full(payments):
    invoice = make_invoice()
    for amount in payments:
        invoice.apply_payment(amount)
    assert invoice.status is InvoiceStatus.PAID
    assert invoice.balance_due == Decimal("0")


def test_overpayment_clamps_balance():
    invoice = make_invoice()
    invoice.apply_payment("25")
    assert invoice.status is InvoiceStatus.PAID
    assert invoice.balance_due == Decimal("0")
    assert invoice.overpayment == Decimal("4.00")


def test_invalid_payments():
    invoice = make_invoice()
    with pytest.raises(ValidationError) as exc:
        invoice.apply_payment("0")
    assert exc.value.error_code == "PAY003"
    with pytest.raises(ValidationError):
        invoice.apply_payment("-5")

    invoice.apply_payment("21")
    with pytest.raises(StateError):
        invoice.apply_payment("1")


def test_payment_before_totals_is_rejected():
    invoice = Invoice("C1", date(2025, 1, 1), date(2025, 1, 31), MeterType.ELECTRICITY)
    with pytest.raises(StateError):
        invoice.apply_payment("5")


def test_update_status_marks_overdue_and_is_idempotent():
    invoice = make_invoice()
    assert invoice.update_status(date(2025, 2, 15)).status is InvoiceStatus.PENDING
    assert invoice.update_status(date(2025, 2, 16)).status is InvoiceStatus.OVERDUE
    assert invoice.update_status(date(2025, 2, 16)).status is InvoiceStatus.OVERDUE
    assert invoice.is_overdue(date(2025, 2, 16))
    assert invoice.days_until_due(date(2025, 2, 10)) == 5


def test_partial_payment_before_due_date_is_partial():
    invoice = make_invoice()
    invoice.apply_payment("5")
    assert invoice.update_status(date(2025, 2, 10)).status is InvoiceStatus.PARTIAL
    assert invoice.update_status(date(2025, 3, 1)).status is InvoiceStatus.OVERDUE

    invoice.apply_payment("16")
    assert invoice.status is InvoiceStatus.PAID
    assert invoice.update_status(date(2025, 3, 1)).status is InvoiceStatus.PAID


def test_cancelled_is_sticky():
    invoice = make_invoice()
    invoice.cancel("Meter misread")
    assert invoice.status is InvoiceStatus.CANCELLED
    assert invoice.update_status(date(2026, 1, 1)).status is InvoiceStatus.CANCELLED
    assert "Cancelled: Meter misread" in invoice.notes
    with pytest.raises(StateError):
        invoice.apply_payment("1")
    with pytest.raises(StateError):
        invoice.calculate_totals()


def test_paid_invoice_cannot_be_cancelled_or_disputed():
    invoice = make_invoice()
    invoice.apply_payment("21")
    with pytest.raises(StateError):
        invoice.cancel()
    with pytest.raises(StateError):
        invoice.dispute()


def test_disputed_is_absorbing():
    invoice = make_invoice()
    invoice.update_status(date(2025, 3, 1))
    invoice.dispute("Estimated reading too high")
    assert invoice.status is InvoiceStatus.DISPUTED
    assert invoice.update_status(date(2025, 3, 2)).status is InvoiceStatus.DISPUTED
    with pytest.raises(StateError):
        invoice.cancel()
    with pytest.raises(StateError):
        invoice.apply_payment("1")


def test_remove_payment_reopens_invoice():
    invoice = make_invoice()
    invoice.apply_payment("21")
    invoice.remove_payment("5", today=date(2025, 2, 10))
    assert invoice.status is InvoiceStatus.PARTIAL
    assert invoice.balance_due == Decimal("5.00")

    invoice.remove_payment("16", today=date(2025, 2, 10))
    assert invoice.status is InvoiceStatus.PENDING
    with pytest.raises(ValidationError):
        invoice.remove_payment("1")


def test_concurrent_payments_on_one_invoice_are_serialised():
    invoice = make_invoice(units="500")  # total 105.00
    threads = [threading.Thread(target=invoice.apply_payment, args=("1.00",)) for _ in range(50)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert invoice.amount_paid == Decimal("50.00")
    assert invoice.balance_due == Decimal("55.00")
    assert invoice.status is InvoiceStatus.PARTIAL


def test_repricing_a_paid_invoice_reopens_it():
    invoice = make_invoice()
    invoice.apply_payment("21")
    assert invoice.status is InvoiceStatus.PAID

    invoice.set_unit_cost("50")
    invoice.calculate_totals()
    assert invoice.total_amount == Decimal("52.50")
    assert invoice.balance_due == Decimal("31.50")
    assert invoice.status is InvoiceStatus.PARTIAL
