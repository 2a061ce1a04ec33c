# backend/lib/utility_bill_core/invoice.py
"""
Invoice totals and the invoice status state machine.

    PENDING --> PARTIAL --> PAID
       |  \         |
       |   +--> OVERDUE --> PAID
       |
       +--> CANCELLED / DISPUTED   (from any state except PAID; absorbing)

An Invoice is mutated in place by calculate_totals(), apply_payment() and
the status transitions. Each of those holds the invoice's own lock, so two
threads touching the same invoice are serialised; separate invoices share
nothing.
"""
import itertools
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from .errors import StateError, ValidationError
from .models import ConsumptionResult, MeterType
from .money import ZERO, round_money
from .tariffs import DEFAULT_VAT_RATE, Tariff
from .validation import require_non_negative, validate_payment_amount, validate_vat_rate

logger = logging.getLogger(__name__)

PAYMENT_TERMS_DAYS = 14

_invoice_numbers = itertools.count(1000)


def next_invoice_number() -> str:
    return f"INV-{next(_invoice_numbers):06d}"


class InvoiceStatus(str, Enum):
    PENDING = "PENDING"
    PARTIAL = "PARTIAL"
    PAID = "PAID"
    OVERDUE = "OVERDUE"
    CANCELLED = "CANCELLED"
    DISPUTED = "DISPUTED"

    @property
    def is_absorbing(self) -> bool:
        return self in (InvoiceStatus.CANCELLED, InvoiceStatus.DISPUTED)


class VatMode(str, Enum):
    EXCLUSIVE = "EXCLUSIVE"  # VAT added on top of the subtotal
    INCLUSIVE = "INCLUSIVE"  # subtotal already contains VAT


@dataclass(frozen=True)
class LineItem:
    description: str
    quantity: Decimal
    unit: str
    unit_price: Decimal  # pounds per unit
    amount: Decimal

    def __str__(self):
        return f"{self.description}: {self.quantity} {self.unit} @ £{self.unit_price} = £{self.amount}"


@dataclass(eq=False)
class Invoice:
    customer_id: str
    period_start: date
    period_end: date
    meter_type: MeterType
    vat_rate: Decimal = DEFAULT_VAT_RATE
    vat_mode: VatMode = VatMode.EXCLUSIVE
    issue_date: date = field(default_factory=date.today)
    due_date: Optional[date] = None
    tariff_id: Optional[str] = None
    tariff_name: Optional[str] = None
    consumption: Optional[ConsumptionResult] = None
    units_consumed: Decimal = ZERO
    unit_rate: Optional[Decimal] = None  # pence, for display
    unit_cost: Optional[Decimal] = None
    unit_cost_override: Optional[Decimal] = None
    standing_charge_total: Decimal = ZERO
    subtotal: Optional[Decimal] = None
    net_amount: Optional[Decimal] = None
    vat_amount: Optional[Decimal] = None
    total_amount: Optional[Decimal] = None
    amount_paid: Decimal = ZERO
    balance_due: Optional[Decimal] = None
    status: InvoiceStatus = InvoiceStatus.PENDING
    line_items: List[LineItem] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    invoice_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    invoice_number: str = field(default_factory=next_invoice_number)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False)

    def __post_init__(self):
        self.vat_rate = validate_vat_rate(self.vat_rate)
        self.vat_mode = VatMode(self.vat_mode)
        self.meter_type = MeterType(self.meter_type)
        if self.due_date is None:
            self.due_date = self.issue_date + timedelta(days=PAYMENT_TERMS_DAYS)

    # ---- consumption breakdown -----------------------------------------

    @property
    def billing_days(self) -> int:
        """Inclusive day count: a period from the 1st to the 31st is 31 days."""
        if self.period_start is None or self.period_end is None:
            return 0
        return (self.period_end - self.period_start).days + 1

    @property
    def opening_reading(self) -> Optional[Decimal]:
        return self.consumption.opening if self.consumption else None

    @property
    def closing_reading(self) -> Optional[Decimal]:
        return self.consumption.closing if self.consumption else None

    @property
    def day_units(self) -> Optional[Decimal]:
        return self.consumption.day_units if self.consumption else None

    @property
    def night_units(self) -> Optional[Decimal]:
        return self.consumption.night_units if self.consumption else None

    @property
    def gas_conversion(self):
        return self.consumption.gas if self.consumption else None

    @property
    def overpayment(self) -> Decimal:
        if self.total_amount is None:
            return ZERO
        return max(self.amount_paid - self.total_amount, ZERO)

    def add_line_item(self, item: LineItem) -> None:
        self.line_items.append(item)
        self._touch()

    def add_note(self, note: str) -> None:
        self.notes.append(note)
        self._touch()

    def _touch(self) -> None:
        self.updated_at = datetime.now()

    # ---- totals ---------------------------------------------------------

    def set_unit_cost(self, unit_cost) -> None:
        """Manual override: calculate_totals() will use this instead of the tariff."""
        with self._lock:
            self.unit_cost_override = round_money(require_non_negative(unit_cost, "unit_cost"))
            self._touch()

    def set_standing_charge_total(self, amount) -> None:
        with self._lock:
            self.standing_charge_total = round_money(require_non_negative(amount, "standing_charge_total"))
            self._touch()

    def calculate_totals(self, tariff: Optional[Tariff] = None) -> "Invoice":
        """
        Derive unit cost (unless overridden), subtotal, VAT, total and balance.

        EXCLUSIVE: vat = round(subtotal * rate), total = subtotal + vat
        INCLUSIVE: net = round(subtotal / (1 + rate)), vat = subtotal - net,
                   total = subtotal
        """
        with self._lock:
            if self.status is InvoiceStatus.CANCELLED:
                raise StateError(f"Invoice {self.invoice_number} is cancelled", self.status)

            if self.unit_cost_override is not None:
                unit_cost = self.unit_cost_override
            elif tariff is not None:
                if self.consumption is not None:
                    unit_cost = tariff.price_consumption(self.consumption)
                else:
                    unit_cost = tariff.calculate_unit_cost(self.units_consumed)
            elif self.unit_cost is not None:
                unit_cost = self.unit_cost
            else:
                raise ValidationError("tariff", "A tariff is required to price this invoice")

            self.unit_cost = unit_cost
            self.subtotal = unit_cost + self.standing_charge_total
            if self.vat_mode is VatMode.INCLUSIVE:
                self.net_amount = round_money(self.subtotal / (1 + self.vat_rate))
                self.vat_amount = self.subtotal - self.net_amount
                self.total_amount = self.subtotal
            else:
                self.net_amount = self.subtotal
                self.vat_amount = round_money(self.subtotal * self.vat_rate)
                self.total_amount = self.subtotal + self.vat_amount
            self.balance_due = max(self.total_amount - self.amount_paid, ZERO)
            self._settle_status()
            self._touch()
            return self

    def _settle_status(self) -> None:
        """Keep PAID in step with the balance after totals change."""
        if self.status.is_absorbing:
            return
        if self.balance_due <= ZERO and self.amount_paid > ZERO:
            self.status = InvoiceStatus.PAID
        elif self.status is InvoiceStatus.PAID:
            self.status = InvoiceStatus.PARTIAL if self.amount_paid > ZERO else InvoiceStatus.PENDING

    # ---- state machine --------------------------------------------------

    def apply_payment(self, amount) -> "Invoice":
        amount = validate_payment_amount(amount)
        with self._lock:
            if self.status.is_absorbing:
                raise StateError(
                    f"Cannot pay a {self.status.value.lower()} invoice: {self.invoice_number}", self.status
                )
            if self.status is InvoiceStatus.PAID:
                raise StateError(f"Invoice {self.invoice_number} is already fully paid", self.status)
            if self.total_amount is None:
                raise StateError(f"Invoice {self.invoice_number} has no totals yet", self.status)

            self.amount_paid += amount
            self.balance_due = self.total_amount - self.amount_paid
            if self.balance_due <= ZERO:
                self.status = InvoiceStatus.PAID
                self.balance_due = ZERO
            elif self.amount_paid > ZERO:
                self.status = InvoiceStatus.PARTIAL
            self._touch()
            logger.info("Payment of %s applied to %s: paid=%s balance=%s status=%s",
                        amount, self.invoice_number, self.amount_paid, self.balance_due,
                        self.status.value)
            return self

    def remove_payment(self, amount, today: Optional[date] = None) -> "Invoice":
        """Take back a previously applied amount (explicit reversal of a refunded payment)."""
        amount = validate_payment_amount(amount)
        with self._lock:
            if self.status is InvoiceStatus.CANCELLED:
                raise StateError(f"Invoice {self.invoice_number} is cancelled", self.status)
            if amount > self.amount_paid:
                raise ValidationError(
                    "amount", f"Cannot reverse {amount}: only {self.amount_paid} was paid"
                )
            self.amount_paid -= amount
            self.balance_due = max(self.total_amount - self.amount_paid, ZERO)
            if self.status is InvoiceStatus.PAID:
                self.status = InvoiceStatus.PENDING
            self._touch()
        return self.update_status(today)

    def is_overdue(self, today: Optional[date] = None) -> bool:
        if self.status in (InvoiceStatus.PAID, InvoiceStatus.CANCELLED):
            return False
        today = today or date.today()
        return self.due_date is not None and self.due_date < today

    def days_until_due(self, today: Optional[date] = None) -> int:
        if self.due_date is None:
            return 0
        return (self.due_date - (today or date.today())).days

    def update_status(self, today: Optional[date] = None) -> "Invoice":
        with self._lock:
            if self.status.is_absorbing:
                return self
            balance = self.balance_due if self.balance_due is not None else self.total_amount
            if balance is not None and balance <= ZERO:
                self.status = InvoiceStatus.PAID
            elif self.is_overdue(today):
                self.status = InvoiceStatus.OVERDUE
            elif self.amount_paid > ZERO:
                self.status = InvoiceStatus.PARTIAL
            else:
                self.status = InvoiceStatus.PENDING
            return self

    def cancel(self, reason: Optional[str] = None) -> "Invoice":
        with self._lock:
            self._leave_open_state(InvoiceStatus.CANCELLED)
            if reason:
                self.add_note(f"Cancelled: {reason}")
            logger.info("Invoice %s cancelled", self.invoice_number)
            return self

    def dispute(self, reason: Optional[str] = None) -> "Invoice":
        with self._lock:
            self._leave_open_state(InvoiceStatus.DISPUTED)
            if reason:
                self.add_note(f"Disputed: {reason}")
            logger.info("Invoice %s disputed", self.invoice_number)
            return self

    def _leave_open_state(self, target: InvoiceStatus) -> None:
        if self.status is InvoiceStatus.PAID:
            raise StateError(
                f"Invoice {self.invoice_number} is paid and cannot be {target.value.lower()}", self.status
            )
        if self.status.is_absorbing:
            raise StateError(
                f"Invoice {self.invoice_number} is already {self.status.value.lower()}", self.status
            )
        self.status = target
        self._touch()

    def __str__(self):
        return (f"Invoice({self.invoice_number}, customer={self.customer_id}, "
                f"total=£{self.total_amount}, status={self.status.value})")


def parse_vat_mode(value) -> VatMode:
    if isinstance(value, VatMode):
        return value
    try:
        return VatMode(str(value or VatMode.EXCLUSIVE.value).upper())
    except ValueError:
        raise ValidationError("vat_mode", f"vat_mode must be EXCLUSIVE or INCLUSIVE, got {value!r}")
