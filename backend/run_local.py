# backend/run_local.py
"""
Generate one bill from a JSON payload and print it, without AWS.

    python -m backend.run_local tests/sample_bill.json

The payload has the same shape the generate_bill Lambda accepts.
"""
import json
import sys
from pathlib import Path

from backend.lambda_handlers.generate_bill import generate


def main(payload_path):
    body = json.loads(Path(payload_path).read_text())
    invoice = generate(body)
    print(f"{invoice.invoice_number} for {invoice.customer_id} "
          f"({invoice.period_start} to {invoice.period_end}, {invoice.billing_days} days)")
    for item in invoice.line_items:
        print(f" - {item}")
    print(f"Subtotal: £{invoice.subtotal}")
    print(f"VAT ({invoice.vat_mode.value.lower()}): £{invoice.vat_amount}")
    print(f"Total: £{invoice.total_amount}  due {invoice.due_date}")
    return invoice


if __name__ == "__main__":
    path = sys.argv[1] if len(sys.argv) > 1 else "tests/sample_bill.json"
    main(path)
