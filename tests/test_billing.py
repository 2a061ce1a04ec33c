# tests/test_billing.py
import logging
from datetime import date
from decimal import Decimal

import pytest
from botocore.exceptions import EndpointConnectionError

from backend.lib.repositories import InMemoryRepository
from backend.lib.utility_bill_core.billing import BillingService
from backend.lib.utility_bill_core.errors import RecordNotFoundError, StateError, ValidationError
from backend.lib.utility_bill_core.invoice import InvoiceStatus, VatMode
from backend.lib.utility_bill_core.ledger import PaymentMethod
from backend.lib.utility_bill_core.models import Meter, MeterType
from backend.lib.utility_bill_core.tariffs import Tariff

PERIOD = (date(2025, 1, 1), date(2025, 2, 2))  # 33 billing days
TODAY = date(2025, 2, 3)


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def send_invoice_issued(self, invoice):
        self.sent.append(("issued", invoice.invoice_number))
        return True

    def send_payment_receipt(self, payment, invoice):
        self.sent.append(("payment", payment.reference_number))
        return True

    def send_overdue_alert(self, invoice):
        self.sent.append(("overdue", invoice.invoice_number))
        return True


def make_service():
    repo = InMemoryRepository()
    notifier = RecordingNotifier()
    repo.save_tariff(Tariff.day_night("Economy 7", "22.63", "19.349", "19.349", tariff_id="E7"))
    repo.save_tariff(Tariff.gas("Gas Standard", "24.87", "3.797", calorific_value="39.3",
                                tariff_id="GAS"))
    repo.save_tariff(Tariff.flat("Standard", "0", "20", tariff_id="FLAT"))
    repo.save_meter(Meter("E-1", MeterType.ELECTRICITY, day_night=True))
    repo.save_meter(Meter("G-1", MeterType.GAS, imperial=True))
    repo.save_meter(Meter("E-2", MeterType.ELECTRICITY))
    return BillingService(repo, repo, repo, notifier=notifier), repo, notifier


def bill_day_night(service, customer_id="C1", vat_mode=VatMode.EXCLUSIVE):
    consumption = service.record_day_night_reading(
        "E-1", "37623.210", "40516.687",
        day_opening="37386.998", night_opening="40470.637",
        period_start=PERIOD[0], period_end=PERIOD[1], today=TODAY,
    )
    return service.generate_invoice(customer_id, "E7", consumption, *PERIOD,
                                    vat_mode=vat_mode, issue_date=TODAY)


def test_day_night_bill_end_to_end():
    service, repo, notifier = make_service()
    invoice = bill_day_night(service)

    assert invoice.billing_days == 33
    assert invoice.day_units == Decimal("236.212")
    assert invoice.night_units == Decimal("46.050")
    assert invoice.unit_cost == Decimal("54.61")
    assert invoice.standing_charge_total == Decimal("7.47")
    assert invoice.subtotal == Decimal("62.08")
    assert invoice.vat_amount == Decimal("3.10")
    assert invoice.total_amount == Decimal("65.18")
    assert invoice.status is InvoiceStatus.PENDING
    assert invoice.due_date == date(2025, 2, 17)
    assert invoice.tariff_name == "Economy 7"

    assert [item.description for item in invoice.line_items] == \
        ["Day units", "Night units", "Standing charge"]
    assert repo.find_invoice(invoice.invoice_id) is invoice
    assert service.ledger.get_debt_amount("C1") == Decimal("65.18")
    assert notifier.sent == [("issued", invoice.invoice_number)]

    meter = repo.find_meter("E-1")
    assert meter.current_day_reading == Decimal("37623.210")
    assert meter.current_night_reading == Decimal("40516.687")


def test_gas_bill_end_to_end():
    service, _, _ = make_service()
    consumption = service.record_meter_reading(
        "G-1", "10127.6", "10091.5", period_start=PERIOD[0], period_end=PERIOD[1],
        tariff="GAS", today=TODAY,
    )
    invoice = service.generate_invoice("C2", "GAS", consumption, *PERIOD, issue_date=TODAY)

    assert invoice.gas_conversion.meter_units == Decimal("36.1")
    assert invoice.gas_conversion.calorific_value == Decimal("39.3")
    assert invoice.units_consumed.quantize(Decimal("0.01")) == Decimal("1140.53")
    assert invoice.unit_cost == Decimal("43.31")
    assert invoice.standing_charge_total == Decimal("8.21")
    assert invoice.subtotal == Decimal("51.52")
    assert invoice.vat_amount == Decimal("2.58")
    assert invoice.total_amount == Decimal("54.10")


def test_vat_inclusive_invoice():
    service, _, _ = make_service()
    invoice = bill_day_night(service, vat_mode="INCLUSIVE")
    assert invoice.total_amount == invoice.subtotal == Decimal("62.08")
    # 62.08 / 1.05 = 59.1238 -> 59.12
    assert invoice.net_amount == Decimal("59.12")
    assert invoice.vat_amount == Decimal("2.96")


def test_opening_defaults_to_latest_reading():
    service, _, _ = make_service()
    service.record_meter_reading("E-2", "1000", "900", *PERIOD, today=TODAY)
    consumption = service.record_meter_reading("E-2", "1200", period_start=date(2025, 2, 3),
                                               period_end=date(2025, 3, 2), today=date(2025, 3, 3))
    assert consumption.opening == Decimal("1000")
    assert consumption.units == Decimal("200")


def test_first_reading_opens_from_meter_dial():
    service, repo, _ = make_service()
    repo.find_meter("E-2").current_reading = Decimal("500")
    consumption = service.record_meter_reading("E-2", "650", period_start=PERIOD[0],
                                               period_end=PERIOD[1], today=TODAY)
    assert consumption.units == Decimal("150")


def test_future_period_end_is_logged(caplog):
    service, _, _ = make_service()
    with caplog.at_level(logging.WARNING):
        service.record_meter_reading("E-2", "10", "0", period_start=date(2025, 1, 1),
                                     period_end=date(2025, 3, 1), today=date(2025, 2, 1))
    assert "future" in caplog.text


def test_lookup_failures_propagate():
    service, _, _ = make_service()
    with pytest.raises(RecordNotFoundError):
        service.record_meter_reading("nope", "10", "0", *PERIOD)
    with pytest.raises(LookupError):
        service.get_invoice("nope")

    consumption = service.record_meter_reading("E-2", "10", "0", *PERIOD, today=TODAY)
    with pytest.raises(RecordNotFoundError):
        service.generate_invoice("C1", "missing-tariff", consumption, *PERIOD)


def test_invoice_validation():
    service, repo, _ = make_service()
    consumption = service.record_meter_reading("E-2", "10", "0", *PERIOD, today=TODAY)

    with pytest.raises(ValidationError):
        service.generate_invoice("C1", "GAS", consumption, *PERIOD)
    with pytest.raises(ValidationError):
        service.generate_invoice("C1", "FLAT", consumption, PERIOD[1], PERIOD[0])

    repo.find_tariff("FLAT").deactivate()
    with pytest.raises(ValidationError):
        service.generate_invoice("C1", "FLAT", consumption, *PERIOD)


def test_payments_update_invoice_and_account():
    service, _, notifier = make_service()
    invoice = bill_day_night(service)

    service.apply_payment(invoice, "30.00", PaymentMethod.DEBIT_CARD)
    assert invoice.status is InvoiceStatus.PARTIAL
    assert invoice.balance_due == Decimal("35.18")

    payment = service.record_payment("C1", "35.18", invoice_id=invoice.invoice_id)
    assert invoice.status is InvoiceStatus.PAID
    assert service.ledger.balance("C1") == Decimal("0")
    assert ("payment", payment.reference_number) in notifier.sent
    assert service.unpaid_invoices("C1") == []


def test_cancel_invoice_releases_the_charge():
    service, _, _ = make_service()
    invoice = bill_day_night(service)
    service.cancel_invoice(invoice.invoice_id, "Wrong meter")
    assert invoice.status is InvoiceStatus.CANCELLED
    assert service.ledger.balance("C1") == Decimal("0")
    with pytest.raises(StateError):
        service.apply_payment(invoice.invoice_id, "10")


def test_refresh_statuses_alerts_once():
    service, _, notifier = make_service()
    invoice = bill_day_night(service)

    assert service.refresh_statuses(date(2025, 2, 17)) == []
    assert service.refresh_statuses(date(2025, 3, 1)) == [invoice]
    assert service.refresh_statuses(date(2025, 3, 2)) == []
    assert service.overdue_invoices(date(2025, 3, 2)) == [invoice]
    assert notifier.sent.count(("overdue", invoice.invoice_number)) == 1


def test_dispute_and_refund_through_service():
    service, _, _ = make_service()
    invoice = bill_day_night(service)
    payment = service.pay_invoice(invoice, "65.18")
    assert invoice.status is InvoiceStatus.PAID

    service.refund_payment(payment.payment_id, "Overcharged", reverse=True, today=date(2025, 2, 5))
    assert invoice.status is InvoiceStatus.PENDING
    service.dispute_invoice(invoice, "Reading disputed")
    assert invoice.status is InvoiceStatus.DISPUTED
    assert service.total_outstanding("C1") == Decimal("0")


class UnreachableNotifier:
    def _fail(self, *args):
        raise EndpointConnectionError(endpoint_url="https://sns.eu-west-2.amazonaws.com")

    send_invoice_issued = send_payment_receipt = send_overdue_alert = _fail


def test_notifier_failure_does_not_undo_billing(caplog):
    service, repo, _ = make_service()
    service.notifier = UnreachableNotifier()

    with caplog.at_level(logging.WARNING):
        invoice = bill_day_night(service)
        service.apply_payment(invoice, "30.00")
        assert service.refresh_statuses(date(2025, 3, 1)) == [invoice]

    assert repo.find_invoice(invoice.invoice_id) is invoice
    assert invoice.amount_paid == Decimal("30.00")
    assert invoice.status is InvoiceStatus.OVERDUE
    assert "Notification send_invoice_issued failed" in caplog.text


def test_invoice_from_recorded_reading():
    service, _, _ = make_service()
    consumption = service.record_day_night_reading(
        "E-1", "37623.210", "40516.687",
        day_opening="37386.998", night_opening="40470.637",
        period_start=PERIOD[0], period_end=PERIOD[1], customer_id="C1", today=TODAY,
    )
    invoice = service.generate_invoice_for_reading("C1", "E7", consumption.reading_id,
                                                   issue_date=TODAY)
    assert invoice.total_amount == Decimal("65.18")
    assert (invoice.period_start, invoice.period_end) == PERIOD

    with pytest.raises(ValidationError) as exc:
        service.generate_invoice_for_reading("C9", "E7", consumption.reading_id)
    assert exc.value.field == "customer_id"
    with pytest.raises(RecordNotFoundError):
        service.generate_invoice_for_reading("C1", "E7", "no-such-reading")
    with pytest.raises(ValidationError):
        service.generate_invoice_for_reading("C1", "E7", None)


def test_unknown_payment_method_leaves_invoice_untouched():
    service, _, _ = make_service()
    invoice = bill_day_night(service)
    with pytest.raises(ValidationError) as exc:
        service.apply_payment(invoice, "10", method="BOGUS")
    assert exc.value.field == "method"
    assert invoice.amount_paid == Decimal("0")
    assert invoice.status is InvoiceStatus.PENDING
    assert service.ledger.payments_for_invoice(invoice.invoice_id) == []
    assert service.ledger.balance("C1") == Decimal("-65.18")
