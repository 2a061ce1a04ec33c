# backend/lib/utility_bill_core/errors.py
from typing import Optional


class BillingError(Exception):
    """Base class for every error raised by the billing core."""

    default_code = "UB000"

    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.error_code}

    def __str__(self):
        return f"[{self.error_code}] {self.message}"


class ValidationError(BillingError, ValueError):
    """
    Malformed or out-of-range input: negative reading, closing below opening
    without rollover, non-positive payment, missing tariff field.
    """

    default_code = "VAL001"

    def __init__(self, field: Optional[str], message: str, error_code: Optional[str] = None):
        super().__init__(message, error_code)
        self.field = field

    def to_dict(self) -> dict:
        body = super().to_dict()
        if self.field:
            body["field"] = self.field
        return body


class RecordNotFoundError(BillingError, LookupError):
    """A referenced tariff, meter, invoice, payment or customer does not exist."""

    default_code = "NF001"

    def __init__(self, kind: str, key: str):
        super().__init__(f"{kind} not found: {key}")
        self.kind = kind
        self.key = key


class StateError(BillingError):
    """Operation is not allowed for the record's current status."""

    default_code = "STA001"

    def __init__(self, message: str, status=None):
        super().__init__(message)
        self.status = status
