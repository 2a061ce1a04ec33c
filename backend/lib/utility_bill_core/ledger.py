# backend/lib/utility_bill_core/ledger.py
"""
Payments and customer account balances.

A customer's running balance is debited with each invoice total when the
invoice is issued and credited with every payment. A negative balance is
debt. Refunding or failing a payment only changes its status and notes;
undoing its effect on the invoice and the balance is the separate
reverse_payment() call.
"""
import itertools
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Protocol

from .errors import RecordNotFoundError, StateError, ValidationError
from .invoice import Invoice
from .money import ZERO, to_decimal
from .validation import validate_payment_amount

logger = logging.getLogger(__name__)

_payment_references = itertools.count(100000)


def next_payment_reference() -> str:
    return f"PAY-{next(_payment_references):06d}"


class PaymentMethod(str, Enum):
    CASH = "CASH"
    CHEQUE = "CHEQUE"
    BANK_TRANSFER = "BANK_TRANSFER"
    DEBIT_CARD = "DEBIT_CARD"
    CREDIT_CARD = "CREDIT_CARD"
    DIRECT_DEBIT = "DIRECT_DEBIT"
    STANDING_ORDER = "STANDING_ORDER"
    ONLINE = "ONLINE"
    PAYMENT_POINT = "PAYMENT_POINT"
    OTHER = "OTHER"


class PaymentStatus(str, Enum):
    COMPLETED = "COMPLETED"
    PENDING = "PENDING"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    CANCELLED = "CANCELLED"


def _coerce(enum_cls, value, field_name: str):
    try:
        return enum_cls(str(getattr(value, "value", value)).upper())
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(field_name, f"{field_name} must be one of {allowed}, got {value!r}")


@dataclass(eq=False)
class Payment:
    customer_id: str
    amount: Decimal
    method: PaymentMethod = PaymentMethod.BANK_TRANSFER
    invoice_id: Optional[str] = None
    payment_date: date = field(default_factory=date.today)
    status: PaymentStatus = PaymentStatus.COMPLETED
    transaction_id: Optional[str] = None
    notes: Optional[str] = None
    reversed: bool = False
    payment_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    reference_number: str = field(default_factory=next_payment_reference)
    created_at: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        self.amount = validate_payment_amount(self.amount)
        self.method = _coerce(PaymentMethod, self.method, "method")
        self.status = _coerce(PaymentStatus, self.status, "status")

    @property
    def is_invoice_payment(self) -> bool:
        return self.invoice_id is not None

    def _append_note(self, note: str) -> None:
        self.notes = f"{self.notes} | {note}" if self.notes else note

    def mark_refunded(self, reason: Optional[str] = None) -> None:
        if self.status is not PaymentStatus.COMPLETED:
            raise StateError(
                f"Only completed payments can be refunded: {self.reference_number} is {self.status.value}",
                self.status,
            )
        self.status = PaymentStatus.REFUNDED
        if reason:
            self._append_note(f"Refund: {reason}")

    def mark_failed(self, reason: Optional[str] = None) -> None:
        if self.status not in (PaymentStatus.COMPLETED, PaymentStatus.PENDING):
            raise StateError(
                f"Payment {self.reference_number} is already {self.status.value}", self.status
            )
        self.status = PaymentStatus.FAILED
        if reason:
            self._append_note(f"Failed: {reason}")

    def __str__(self):
        return f"Payment({self.reference_number}, £{self.amount}, {self.method.value}, {self.status.value})"


@dataclass(eq=False)
class CustomerAccount:
    customer_id: str
    balance: Decimal = ZERO
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False)

    def credit(self, amount) -> None:
        if amount is None:
            return
        amount = to_decimal(amount, "amount")
        if amount <= ZERO:
            return
        with self._lock:
            self.balance += amount

    def debit(self, amount) -> None:
        if amount is None:
            return
        amount = to_decimal(amount, "amount")
        if amount <= ZERO:
            return
        with self._lock:
            self.balance -= amount

    def has_debt(self) -> bool:
        return self.balance < ZERO

    def get_debt_amount(self) -> Decimal:
        return -self.balance if self.has_debt() else ZERO


class InvoiceLookup(Protocol):
    def find_invoice(self, invoice_id: str) -> Optional[Invoice]:
        ...


class PaymentLedger:
    def __init__(self, invoices: Optional[InvoiceLookup] = None):
        self._invoices = invoices
        self._accounts: Dict[str, CustomerAccount] = {}
        self._payments: Dict[str, Payment] = {}
        self._lock = threading.Lock()

    # ---- accounts -------------------------------------------------------

    def account(self, customer_id: str) -> CustomerAccount:
        with self._lock:
            account = self._accounts.get(customer_id)
            if account is None:
                account = CustomerAccount(customer_id)
                self._accounts[customer_id] = account
            return account

    def balance(self, customer_id: str) -> Decimal:
        return self.account(customer_id).balance

    def has_debt(self, customer_id: str) -> bool:
        return self.account(customer_id).has_debt()

    def get_debt_amount(self, customer_id: str) -> Decimal:
        return self.account(customer_id).get_debt_amount()

    def charge_invoice(self, invoice: Invoice) -> None:
        """Debit the customer with a newly issued invoice."""
        self.account(invoice.customer_id).debit(invoice.total_amount)

    def release_invoice(self, invoice: Invoice) -> None:
        """Undo charge_invoice() for a cancelled invoice."""
        self.account(invoice.customer_id).credit(invoice.total_amount)

    # ---- payments -------------------------------------------------------

    def record_payment(self, customer_id: str, amount, method=PaymentMethod.BANK_TRANSFER,
                       invoice_id: Optional[str] = None, **details) -> Payment:
        """
        With an invoice_id the payment is applied to that invoice; without
        one it is an account-level credit.
        """
        if invoice_id is None:
            return self.credit_account(customer_id, amount, method, **details)
        if self._invoices is None:
            raise RecordNotFoundError("Invoice", invoice_id)
        invoice = self._invoices.find_invoice(invoice_id)
        if invoice is None:
            raise RecordNotFoundError("Invoice", invoice_id)
        if invoice.customer_id != customer_id:
            raise ValidationError(
                "invoice_id", f"Invoice {invoice.invoice_number} does not belong to customer {customer_id}"
            )
        return self.pay_invoice(invoice, amount, method, **details)

    def pay_invoice(self, invoice: Invoice, amount, method=PaymentMethod.BANK_TRANSFER,
                    **details) -> Payment:
        # the payment record is validated before the invoice changes
        payment = Payment(invoice.customer_id, amount, method, invoice_id=invoice.invoice_id, **details)
        invoice.apply_payment(payment.amount)
        return self._store(payment)

    def credit_account(self, customer_id: str, amount, method=PaymentMethod.BANK_TRANSFER,
                       **details) -> Payment:
        payment = Payment(customer_id, amount, method, **details)
        return self._store(payment)

    def _store(self, payment: Payment) -> Payment:
        self.account(payment.customer_id).credit(payment.amount)
        with self._lock:
            self._payments[payment.payment_id] = payment
        logger.info("Recorded payment %s of %s from customer %s%s", payment.reference_number,
                    payment.amount, payment.customer_id,
                    f" against invoice {payment.invoice_id}" if payment.invoice_id else "")
        return payment

    def find_payment(self, payment_id: str) -> Payment:
        payment = self._payments.get(payment_id)
        if payment is None:
            raise RecordNotFoundError("Payment", payment_id)
        return payment

    def mark_refunded(self, payment_id: str, reason: Optional[str] = None) -> Payment:
        payment = self.find_payment(payment_id)
        payment.mark_refunded(reason)
        logger.info("Payment %s marked refunded", payment.reference_number)
        return payment

    def mark_failed(self, payment_id: str, reason: Optional[str] = None) -> Payment:
        payment = self.find_payment(payment_id)
        payment.mark_failed(reason)
        logger.info("Payment %s marked failed", payment.reference_number)
        return payment

    def reverse_payment(self, payment_id: str, today: Optional[date] = None) -> Payment:
        """Take a refunded or failed payment back off its invoice and the account."""
        payment = self.find_payment(payment_id)
        if payment.status not in (PaymentStatus.REFUNDED, PaymentStatus.FAILED):
            raise StateError(
                f"Only refunded or failed payments can be reversed: {payment.reference_number}",
                payment.status,
            )
        if payment.reversed:
            raise StateError(f"Payment {payment.reference_number} has already been reversed",
                             payment.status)
        if payment.invoice_id is not None:
            invoice = self._invoices.find_invoice(payment.invoice_id) if self._invoices else None
            if invoice is None:
                raise RecordNotFoundError("Invoice", payment.invoice_id)
            invoice.remove_payment(payment.amount, today)
        self.account(payment.customer_id).debit(payment.amount)
        payment.reversed = True
        logger.info("Reversed payment %s", payment.reference_number)
        return payment

    # ---- queries --------------------------------------------------------

    def payments_for_customer(self, customer_id: str) -> List[Payment]:
        return sorted((p for p in self._payments.values() if p.customer_id == customer_id),
                      key=lambda p: p.created_at)

    def payments_for_invoice(self, invoice_id: str) -> List[Payment]:
        return sorted((p for p in self._payments.values() if p.invoice_id == invoice_id),
                      key=lambda p: p.created_at)

    def total_paid(self, customer_id: str) -> Decimal:
        return sum((p.amount for p in self.payments_for_customer(customer_id)
                    if p.status is PaymentStatus.COMPLETED), ZERO)
