"""
=============================================================================
IN-MEMORY REPOSITORY - Lookups the billing core depends on
=============================================================================

The billing core never stores anything itself. It asks a collaborator for:

- find_tariff(tariff_id)      -> Tariff or None
- find_meter(meter_id)        -> Meter or None
- latest_reading(meter_id)    -> MeterReading or None
- find_reading(reading_id)    -> MeterReading or None
- find_invoice(invoice_id)    -> Invoice or None

and hands back new readings/invoices through save_reading / save_invoice.

This module keeps those records in dictionaries guarded by a lock. It is
what the Flask app and the Lambda handlers use; swapping it for a real
data store means writing another class with the same methods.
=============================================================================
"""

import threading
from collections import defaultdict
from typing import Dict, Iterable, List, Optional

from backend.lib.utility_bill_core.invoice import Invoice
from backend.lib.utility_bill_core.models import Meter, MeterReading
from backend.lib.utility_bill_core.tariffs import Tariff


class InMemoryRepository:
    """
    Usage:
        repo = InMemoryRepository()
        repo.save_tariff(tariff)
        service = BillingService(repo, repo, repo)
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._tariffs: Dict[str, Tariff] = {}
        self._meters: Dict[str, Meter] = {}
        self._readings: Dict[str, List[MeterReading]] = defaultdict(list)
        self._readings_by_id: Dict[str, MeterReading] = {}
        self._invoices: Dict[str, Invoice] = {}

    # ---- tariffs -----------------------------------------------------------

    def save_tariff(self, tariff: Tariff) -> Tariff:
        with self._lock:
            self._tariffs[tariff.tariff_id] = tariff
        return tariff

    def find_tariff(self, tariff_id: str) -> Optional[Tariff]:
        return self._tariffs.get(tariff_id)

    def list_tariffs(self, active_only: bool = False) -> List[Tariff]:
        return [t for t in self._tariffs.values() if t.active or not active_only]

    # ---- meters and readings ----------------------------------------------

    def save_meter(self, meter: Meter) -> Meter:
        with self._lock:
            self._meters[meter.meter_id] = meter
        return meter

    def find_meter(self, meter_id: str) -> Optional[Meter]:
        return self._meters.get(meter_id)

    def save_reading(self, reading: MeterReading) -> None:
        with self._lock:
            self._readings[reading.meter_id].append(reading)
            self._readings_by_id[reading.reading_id] = reading

    def find_reading(self, reading_id: str) -> Optional[MeterReading]:
        return self._readings_by_id.get(reading_id)

    def latest_reading(self, meter_id: str) -> Optional[MeterReading]:
        """Most recently saved reading for the meter (readings arrive in order)."""
        with self._lock:
            readings = self._readings.get(meter_id)
            return readings[-1] if readings else None

    def readings_for_meter(self, meter_id: str) -> List[MeterReading]:
        with self._lock:
            return list(self._readings.get(meter_id, []))

    # ---- invoices ----------------------------------------------------------

    def save_invoice(self, invoice: Invoice) -> None:
        with self._lock:
            self._invoices[invoice.invoice_id] = invoice

    def find_invoice(self, invoice_id: str) -> Optional[Invoice]:
        return self._invoices.get(invoice_id)

    def list_invoices(self, customer_id: Optional[str] = None) -> Iterable[Invoice]:
        with self._lock:
            invoices = list(self._invoices.values())
        if customer_id is None:
            return invoices
        return [i for i in invoices if i.customer_id == customer_id]
