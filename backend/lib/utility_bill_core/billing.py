# backend/lib/utility_bill_core/billing.py
"""
BillingService: the operations a service layer calls.

    record_meter_reading / record_day_night_reading -> ConsumptionResult
    generate_invoice(customer, tariff, consumption, period, vat_mode) -> Invoice
    generate_invoice_for_reading(customer, tariff, reading_id) -> Invoice
    apply_payment(invoice, amount) -> Invoice

Lookups and storage are injected (see the Protocols below); the service
keeps no records of its own apart from what the PaymentLedger holds.
"""
import logging
from datetime import date, timedelta
from decimal import Decimal
from typing import Iterable, List, Optional, Protocol, Union

from .consumption import ConsumptionCalculator
from .errors import RecordNotFoundError, ValidationError
from .invoice import PAYMENT_TERMS_DAYS, Invoice, InvoiceStatus, LineItem, VatMode, parse_vat_mode
from .ledger import Payment, PaymentLedger, PaymentMethod
from .models import ConsumptionResult, Meter, MeterReading, ReadingType
from .money import PENCE_PER_POUND, pence_to_pounds
from .tariffs import DayNightRate, Tariff
from .validation import require_field, validate_period

logger = logging.getLogger(__name__)


class TariffLookup(Protocol):
    def find_tariff(self, tariff_id: str) -> Optional[Tariff]:
        ...


class MeterLookup(Protocol):
    def find_meter(self, meter_id: str) -> Optional[Meter]:
        ...

    def latest_reading(self, meter_id: str) -> Optional[MeterReading]:
        ...

    def find_reading(self, reading_id: str) -> Optional[MeterReading]:
        ...

    def save_reading(self, reading: MeterReading) -> None:
        ...


class InvoiceStore(Protocol):
    def find_invoice(self, invoice_id: str) -> Optional[Invoice]:
        ...

    def save_invoice(self, invoice: Invoice) -> None:
        ...

    def list_invoices(self, customer_id: Optional[str] = None) -> Iterable[Invoice]:
        ...


class BillingNotifier(Protocol):
    def send_invoice_issued(self, invoice: Invoice) -> bool:
        ...

    def send_payment_receipt(self, payment: Payment, invoice: Optional[Invoice]) -> bool:
        ...

    def send_overdue_alert(self, invoice: Invoice) -> bool:
        ...


class BillingService:
    def __init__(self, tariffs: TariffLookup, meters: MeterLookup, invoices: InvoiceStore,
                 ledger: Optional[PaymentLedger] = None,
                 calculator: Optional[ConsumptionCalculator] = None,
                 notifier: Optional[BillingNotifier] = None,
                 payment_terms_days: int = PAYMENT_TERMS_DAYS):
        self.tariffs = tariffs
        self.meters = meters
        self.invoices = invoices
        self.ledger = ledger if ledger is not None else PaymentLedger(invoices)
        self.calculator = calculator or ConsumptionCalculator()
        self.notifier = notifier
        self.payment_terms_days = payment_terms_days

    def _notify(self, hook: str, *args) -> bool:
        """A failed notification is logged; the billing operation still stands."""
        if self.notifier is None:
            return False
        try:
            return getattr(self.notifier, hook)(*args)
        except Exception as e:
            logger.warning("Notification %s failed: %s", hook, e)
            return False

    # ---- lookups --------------------------------------------------------

    def get_tariff(self, tariff_id: str) -> Tariff:
        tariff = self.tariffs.find_tariff(tariff_id)
        if tariff is None:
            raise RecordNotFoundError("Tariff", tariff_id)
        return tariff

    def get_meter(self, meter_id: str) -> Meter:
        meter = self.meters.find_meter(meter_id)
        if meter is None:
            raise RecordNotFoundError("Meter", meter_id)
        return meter

    def get_reading(self, reading_id: str) -> MeterReading:
        reading = self.meters.find_reading(reading_id)
        if reading is None:
            raise RecordNotFoundError("Reading", reading_id)
        return reading

    def get_invoice(self, invoice_id: str) -> Invoice:
        invoice = self.invoices.find_invoice(invoice_id)
        if invoice is None:
            raise RecordNotFoundError("Invoice", invoice_id)
        return invoice

    def _resolve_tariff(self, tariff: Union[Tariff, str]) -> Tariff:
        return tariff if isinstance(tariff, Tariff) else self.get_tariff(require_field(tariff, "tariff"))

    def _resolve_invoice(self, invoice: Union[Invoice, str]) -> Invoice:
        return invoice if isinstance(invoice, Invoice) else self.get_invoice(invoice)

    # ---- readings -------------------------------------------------------

    def record_meter_reading(self, meter_id: str, closing, opening=None,
                             period_start: Optional[date] = None,
                             period_end: Optional[date] = None,
                             reading_type: ReadingType = ReadingType.ACTUAL,
                             customer_id: Optional[str] = None,
                             tariff: Optional[Union[Tariff, str]] = None,
                             today: Optional[date] = None) -> ConsumptionResult:
        """
        Record a single-register reading and return the consumption it implies.

        opening defaults to the meter's latest stored reading, then to its
        current dial value. Gas meters use the tariff's calorific value when a
        tariff is given.
        """
        meter = self.get_meter(meter_id)
        self._check_period(period_start, period_end, today)
        if opening is None:
            previous = self.meters.latest_reading(meter_id)
            opening = previous.value if previous is not None and previous.value is not None \
                else meter.current_reading

        reading = MeterReading(
            meter_id=meter_id,
            value=closing,
            previous_value=opening,
            period_start=period_start,
            period_end=period_end,
            reading_type=ReadingType(reading_type),
            customer_id=customer_id,
        )
        resolved = self._resolve_tariff(tariff) if tariff is not None else None
        consumption = self.calculator.derive_consumption(reading, meter, resolved)

        meter.current_reading = consumption.closing
        self.meters.save_reading(reading)
        logger.info("Recorded %s reading for meter %s: %s -> %s (%s kWh)",
                    reading.reading_type.value, meter_id, consumption.opening,
                    consumption.closing, consumption.units)
        return consumption

    def record_day_night_reading(self, meter_id: str, day_closing, night_closing,
                                 day_opening=None, night_opening=None,
                                 period_start: Optional[date] = None,
                                 period_end: Optional[date] = None,
                                 reading_type: ReadingType = ReadingType.ACTUAL,
                                 customer_id: Optional[str] = None,
                                 today: Optional[date] = None) -> ConsumptionResult:
        meter = self.get_meter(meter_id)
        if not meter.day_night:
            raise ValidationError("meter_id", f"Meter {meter_id} has no day/night registers")
        self._check_period(period_start, period_end, today)
        if day_opening is None or night_opening is None:
            previous = self.meters.latest_reading(meter_id)
            if previous is not None and previous.has_day_night:
                day_opening = previous.day_value if day_opening is None else day_opening
                night_opening = previous.night_value if night_opening is None else night_opening
            else:
                day_opening = meter.current_day_reading if day_opening is None else day_opening
                night_opening = meter.current_night_reading if night_opening is None else night_opening

        reading = MeterReading(
            meter_id=meter_id,
            period_start=period_start,
            period_end=period_end,
            reading_type=ReadingType(reading_type),
            day_value=day_closing,
            night_value=night_closing,
            previous_day_value=day_opening,
            previous_night_value=night_opening,
            customer_id=customer_id,
        )
        consumption = self.calculator.derive_consumption(reading, meter)

        meter.update_day_night_reading(consumption.day_closing, consumption.night_closing)
        self.meters.save_reading(reading)
        logger.info("Recorded day/night reading for meter %s: day %s kWh, night %s kWh",
                    meter_id, consumption.day_units, consumption.night_units)
        return consumption

    @staticmethod
    def _check_period(period_start: Optional[date], period_end: Optional[date],
                      today: Optional[date] = None) -> None:
        validate_period(period_start, period_end)
        if period_end > (today or date.today()):
            logger.warning("Billing period ends in the future: %s", period_end)

    def consumption_for_reading(self, reading_id: str,
                                tariff: Optional[Union[Tariff, str]] = None) -> ConsumptionResult:
        """Consumption of a stored reading, derived again against its meter."""
        reading = self.get_reading(reading_id)
        meter = self.get_meter(reading.meter_id)
        resolved = self._resolve_tariff(tariff) if tariff is not None else None
        return self.calculator.derive_consumption(reading, meter, resolved)

    # ---- invoices -------------------------------------------------------

    def generate_invoice(self, customer_id: str, tariff: Union[Tariff, str],
                         consumption: ConsumptionResult,
                         period_start: date, period_end: date,
                         vat_mode: Union[VatMode, str] = VatMode.EXCLUSIVE,
                         issue_date: Optional[date] = None,
                         unit_cost_override=None) -> Invoice:
        require_field(customer_id, "customer_id")
        tariff = self._resolve_tariff(tariff)
        if not tariff.active:
            raise ValidationError("tariff", f"Tariff {tariff.name} is not active")
        if consumption is None:
            raise ValidationError("consumption", "Consumption is required")
        validate_period(period_start, period_end)
        if consumption.meter_type is not tariff.meter_type:
            raise ValidationError(
                "tariff",
                f"{tariff.meter_type.value} tariff cannot bill {consumption.meter_type.value} consumption",
            )

        issue_date = issue_date or date.today()
        invoice = Invoice(
            customer_id=customer_id,
            period_start=period_start,
            period_end=period_end,
            meter_type=tariff.meter_type,
            vat_rate=tariff.vat_rate,
            vat_mode=parse_vat_mode(vat_mode),
            issue_date=issue_date,
            due_date=issue_date + timedelta(days=self.payment_terms_days),
            tariff_id=tariff.tariff_id,
            tariff_name=tariff.name,
            consumption=consumption,
            units_consumed=consumption.units,
            unit_rate=tariff.unit_rate,
        )
        invoice.set_standing_charge_total(tariff.standing_charge_for(invoice.billing_days))
        if unit_cost_override is not None:
            invoice.set_unit_cost(unit_cost_override)
        invoice.calculate_totals(tariff)
        for item in build_line_items(invoice, tariff):
            invoice.add_line_item(item)

        self.ledger.charge_invoice(invoice)
        self.invoices.save_invoice(invoice)
        logger.info("Generated invoice %s for customer %s: %s kWh, total %s (%s)",
                    invoice.invoice_number, customer_id, invoice.units_consumed,
                    invoice.total_amount, invoice.vat_mode.value)
        self._notify("send_invoice_issued", invoice)
        return invoice

    def generate_invoice_for_reading(self, customer_id: str, tariff: Union[Tariff, str],
                                     reading_id: str, period_start: Optional[date] = None,
                                     period_end: Optional[date] = None, **options) -> Invoice:
        """
        Bill a reading recorded earlier. The period defaults to the reading's;
        options are passed on to generate_invoice().
        """
        tariff = self._resolve_tariff(tariff)
        reading = self.get_reading(require_field(reading_id, "reading_id"))
        if reading.customer_id is not None and reading.customer_id != customer_id:
            raise ValidationError(
                "customer_id", f"Reading {reading_id} was recorded for customer {reading.customer_id}"
            )
        consumption = self.consumption_for_reading(reading_id, tariff)
        return self.generate_invoice(customer_id, tariff, consumption,
                                     period_start or consumption.period_start,
                                     period_end or consumption.period_end, **options)

    def apply_payment(self, invoice: Union[Invoice, str], amount,
                      method: PaymentMethod = PaymentMethod.BANK_TRANSFER, **details) -> Invoice:
        invoice = self._resolve_invoice(invoice)
        self.pay_invoice(invoice, amount, method, **details)
        return invoice

    def pay_invoice(self, invoice: Union[Invoice, str], amount,
                    method: PaymentMethod = PaymentMethod.BANK_TRANSFER, **details) -> Payment:
        """Like apply_payment() but returns the Payment record."""
        invoice = self._resolve_invoice(invoice)
        payment = self.ledger.pay_invoice(invoice, amount, method, **details)
        self.invoices.save_invoice(invoice)
        self._notify("send_payment_receipt", payment, invoice)
        return payment

    def record_payment(self, customer_id: str, amount,
                       method: PaymentMethod = PaymentMethod.BANK_TRANSFER,
                       invoice_id: Optional[str] = None, **details) -> Payment:
        """Routes to the invoice when invoice_id is given, otherwise credits the account."""
        payment = self.ledger.record_payment(customer_id, amount, method, invoice_id, **details)
        invoice = self.get_invoice(invoice_id) if invoice_id is not None else None
        if invoice is not None:
            self.invoices.save_invoice(invoice)
        self._notify("send_payment_receipt", payment, invoice)
        return payment

    def cancel_invoice(self, invoice: Union[Invoice, str], reason: Optional[str] = None) -> Invoice:
        invoice = self._resolve_invoice(invoice)
        invoice.cancel(reason)
        self.ledger.release_invoice(invoice)
        self.invoices.save_invoice(invoice)
        return invoice

    def dispute_invoice(self, invoice: Union[Invoice, str], reason: Optional[str] = None) -> Invoice:
        invoice = self._resolve_invoice(invoice)
        invoice.dispute(reason)
        self.invoices.save_invoice(invoice)
        return invoice

    def refund_payment(self, payment_id: str, reason: Optional[str] = None,
                       reverse: bool = False, today: Optional[date] = None) -> Payment:
        payment = self.ledger.mark_refunded(payment_id, reason)
        if reverse:
            self.ledger.reverse_payment(payment_id, today)
        return payment

    def fail_payment(self, payment_id: str, reason: Optional[str] = None,
                     reverse: bool = False, today: Optional[date] = None) -> Payment:
        payment = self.ledger.mark_failed(payment_id, reason)
        if reverse:
            self.ledger.reverse_payment(payment_id, today)
        return payment

    # ---- queries --------------------------------------------------------

    def invoices_for_customer(self, customer_id: str) -> List[Invoice]:
        return sorted(self.invoices.list_invoices(customer_id), key=lambda i: i.issue_date)

    def unpaid_invoices(self, customer_id: Optional[str] = None) -> List[Invoice]:
        open_statuses = (InvoiceStatus.PENDING, InvoiceStatus.PARTIAL, InvoiceStatus.OVERDUE)
        return [i for i in self.invoices.list_invoices(customer_id) if i.status in open_statuses]

    def refresh_statuses(self, today: Optional[date] = None) -> List[Invoice]:
        """Re-evaluate every open invoice; returns the ones that became OVERDUE."""
        newly_overdue = []
        for invoice in self.unpaid_invoices():
            before = invoice.status
            invoice.update_status(today)
            if invoice.status is InvoiceStatus.OVERDUE and before is not InvoiceStatus.OVERDUE:
                newly_overdue.append(invoice)
                self.invoices.save_invoice(invoice)
                logger.info("Invoice %s is now overdue (due %s)", invoice.invoice_number, invoice.due_date)
                self._notify("send_overdue_alert", invoice)
        return newly_overdue

    def overdue_invoices(self, today: Optional[date] = None) -> List[Invoice]:
        self.refresh_statuses(today)
        return [i for i in self.invoices.list_invoices() if i.status is InvoiceStatus.OVERDUE]

    def total_outstanding(self, customer_id: Optional[str] = None) -> Decimal:
        return sum((i.balance_due for i in self.unpaid_invoices(customer_id)), Decimal("0"))


def build_line_items(invoice: Invoice, tariff: Tariff) -> List[LineItem]:
    """Usage lines (one per register on day/night) followed by the standing charge."""
    items = []
    consumption = invoice.consumption
    pricing = tariff.pricing
    if (invoice.unit_cost_override is None and isinstance(pricing, DayNightRate)
            and consumption is not None and consumption.has_day_night):
        for label, units, rate in (("Day units", consumption.day_units, pricing.day_rate),
                                   ("Night units", consumption.night_units, pricing.night_rate)):
            items.append(LineItem(label, units, "kWh", rate / PENCE_PER_POUND,
                                  pence_to_pounds(units * rate)))
    else:
        items.append(LineItem(
            f"{invoice.meter_type.value.title()} usage ({tariff.pricing_description()})",
            invoice.units_consumed, invoice.meter_type.unit,
            tariff.unit_rate / PENCE_PER_POUND, invoice.unit_cost,
        ))
    items.append(LineItem("Standing charge", Decimal(invoice.billing_days), "days",
                          tariff.standing_charge / PENCE_PER_POUND, invoice.standing_charge_total))
    return items
