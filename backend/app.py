"""
=============================================================================
UTILITY BILLING - MAIN FLASK APPLICATION
=============================================================================

REST API over the billing core:
- Tariffs: flat, tiered, day/night electricity and gas
- Meters and meter readings (consumption with rollover / gas conversion)
- Invoices: generate, pay, cancel, dispute, refresh overdue status
- Payments and customer account balances
- Bill quotes without issuing an invoice

AWS Services Used:
- SNS: email notifications (invoice issued, payment received, overdue)

Records live in an in-memory repository for the lifetime of the process.

How to run:
    python -m backend.app

Then visit: http://127.0.0.1:5000/health
=============================================================================
"""

import logging
import os

from flask import Flask, jsonify, request
from dotenv import load_dotenv

# Must run before any environment variable is read
load_dotenv()

from backend.lib.repositories import InMemoryRepository
from backend.lib.utility_bill_core.billing import BillingService
from backend.lib.utility_bill_core.errors import (BillingError, RecordNotFoundError,
                                                  StateError, ValidationError)
from backend.lib.utility_bill_core.estimator import BillingEstimator
from backend.lib.utility_bill_core.invoice import PAYMENT_TERMS_DAYS
from backend.lib.utility_bill_core.io import (breakdown_to_dict, consumption_to_dict,
                                              invoice_to_dict, meter_from_dict,
                                              meter_to_dict, parse_date,
                                              parse_payment_method, parse_reading_type,
                                              payment_to_dict, tariff_from_dict, tariff_to_dict)
from backend.lib.utility_bill_core.money import format_money

logging.basicConfig(
    level=os.getenv('LOG_LEVEL', 'INFO'),
    format='%(asctime)s %(levelname)s %(name)s: %(message)s',
)
logger = logging.getLogger(__name__)

# =============================================================================
# CONFIGURATION
# =============================================================================

# Tariffs posted without a vat_rate get this one
DEFAULT_VAT_RATE = os.getenv('DEFAULT_VAT_RATE')
PAYMENT_TERMS = int(os.getenv('PAYMENT_TERMS_DAYS', str(PAYMENT_TERMS_DAYS)))

# -----------------------------------------------------------------------------
# SNS SERVICE - Amazon Simple Notification Service
# -----------------------------------------------------------------------------
USE_SNS = os.getenv('USE_SNS', 'false').lower() == 'true'
sns_service = None

if USE_SNS:
    try:
        from backend.lib.sns_service import SNSService
        sns_service = SNSService()
        if not sns_service.topic_arn:
            sns_service.create_topic_if_not_exists()
        logger.info("SNS notifications enabled")
    except Exception as e:
        logger.warning("SNS initialization failed: %s. Notifications disabled.", e)
        USE_SNS = False
        sns_service = None

# =============================================================================
# FLASK APPLICATION AND BILLING SERVICE
# =============================================================================

app = Flask(__name__)

repository = InMemoryRepository()
billing = BillingService(repository, repository, repository,
                         notifier=sns_service, payment_terms_days=PAYMENT_TERMS)


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.errorhandler(ValidationError)
def handle_validation_error(e):
    return jsonify(e.to_dict()), 400


@app.errorhandler(RecordNotFoundError)
def handle_not_found(e):
    return jsonify(e.to_dict()), 404


@app.errorhandler(StateError)
def handle_state_error(e):
    body = e.to_dict()
    if e.status is not None:
        body["status"] = getattr(e.status, "value", str(e.status))
    return jsonify(body), 409


@app.errorhandler(BillingError)
def handle_billing_error(e):
    return jsonify(e.to_dict()), 400


def json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("body", "Request body must be a JSON object")
    return data


def flag(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).lower() in ("1", "true", "yes")


# =============================================================================
# API ROUTES - TARIFFS AND METERS
# =============================================================================

@app.route("/health", methods=["GET"])
def health():
    return jsonify({"status": "ok", "sns_enabled": USE_SNS})


@app.route("/tariffs", methods=["POST"])
def create_tariff():
    """
    Create a tariff.

    Request Body (JSON):
        {
            "name": "Economy 7",
            "pricing": "DAY_NIGHT",
            "standing_charge": 22.63,
            "day_rate": 19.349,
            "night_rate": 19.349,
            "vat_rate": 0.05
        }

    Rates and standing charge are in pence.
    """
    data = json_body()
    if DEFAULT_VAT_RATE and "vat_rate" not in data:
        data["vat_rate"] = DEFAULT_VAT_RATE
    tariff = repository.save_tariff(tariff_from_dict(data))
    logger.info("Created tariff %s (%s)", tariff.name, tariff.tariff_id)
    return jsonify(tariff_to_dict(tariff)), 201


@app.route("/tariffs/<tariff_id>", methods=["GET"])
def get_tariff(tariff_id):
    return jsonify(tariff_to_dict(billing.get_tariff(tariff_id)))


@app.route("/meters", methods=["POST"])
def create_meter():
    """
    Register a meter.

    Request Body (JSON):
        {"meter_id": "E-1", "meter_type": "ELECTRICITY", "day_night": true,
         "rolls_over": false, "max_reading": "99999.99"}
    """
    meter = repository.save_meter(meter_from_dict(json_body()))
    return jsonify(meter_to_dict(meter)), 201


@app.route("/readings", methods=["POST"])
def record_reading():
    """
    Record a meter reading and return the consumption it implies.

    Single register:
        {"meter_id": "G-1", "closing": 10127.6, "opening": 10091.5,
         "period_start": "2025-01-01", "period_end": "2025-02-02", "tariff_id": "..."}

    Day/night:
        {"meter_id": "E-1", "day_closing": 37623.210, "night_closing": 40516.687,
         "day_opening": 37386.998, "night_opening": 40470.637, ...}

    Openings default to the meter's last reading.
    """
    data = json_body()
    meter_id = data.get("meter_id")
    if not meter_id:
        raise ValidationError("meter_id", "meter_id required")
    period_start = parse_date(data.get("period_start"), "period_start")
    period_end = parse_date(data.get("period_end"), "period_end")
    reading_type = parse_reading_type(data.get("reading_type"))

    if "day_closing" in data or "night_closing" in data:
        consumption = billing.record_day_night_reading(
            meter_id, data.get("day_closing"), data.get("night_closing"),
            day_opening=data.get("day_opening"), night_opening=data.get("night_opening"),
            period_start=period_start, period_end=period_end,
            reading_type=reading_type, customer_id=data.get("customer_id"),
        )
    else:
        consumption = billing.record_meter_reading(
            meter_id, data.get("closing"), data.get("opening"),
            period_start=period_start, period_end=period_end,
            reading_type=reading_type, customer_id=data.get("customer_id"),
            tariff=data.get("tariff_id"),
        )
    return jsonify(consumption_to_dict(consumption)), 201


# =============================================================================
# API ROUTES - INVOICES
# =============================================================================

@app.route("/invoices", methods=["POST"])
def create_invoice():
    """
    Generate an invoice for a reading recorded with POST /readings. The
    consumption is derived again from the stored reading and its meter.

    Request Body (JSON):
        {
            "customer_id": "CUST-001",
            "tariff_id": "...",
            "reading_id": "...",             from the POST /readings response
            "period_start": "2025-01-01",     optional, defaults to the reading's
            "period_end": "2025-02-02",       optional, defaults to the reading's
            "vat_mode": "EXCLUSIVE",          or INCLUSIVE
            "issue_date": "2025-02-03"        optional
        }
    """
    data = json_body()
    invoice = billing.generate_invoice_for_reading(
        data.get("customer_id"), data.get("tariff_id"), data.get("reading_id"),
        period_start=parse_date(data.get("period_start"), "period_start"),
        period_end=parse_date(data.get("period_end"), "period_end"),
        vat_mode=data.get("vat_mode") or "EXCLUSIVE",
        issue_date=parse_date(data.get("issue_date"), "issue_date"),
        unit_cost_override=data.get("unit_cost_override"),
    )
    return jsonify(invoice_to_dict(invoice)), 201


@app.route("/invoices/<invoice_id>", methods=["GET"])
def get_invoice(invoice_id):
    return jsonify(invoice_to_dict(billing.get_invoice(invoice_id)))


@app.route("/invoices/<invoice_id>/payments", methods=["POST"])
def pay_invoice(invoice_id):
    """
    Apply a payment to an invoice.

    Request Body (JSON):
        {"amount": "30.00", "method": "DEBIT_CARD", "transaction_id": "tx-1"}
    """
    data = json_body()
    payment = billing.pay_invoice(
        invoice_id, data.get("amount"), parse_payment_method(data.get("method")),
        transaction_id=data.get("transaction_id"),
        notes=data.get("notes"),
        **_payment_date(data),
    )
    return jsonify({
        "payment": payment_to_dict(payment),
        "invoice": invoice_to_dict(billing.get_invoice(invoice_id)),
    }), 201


@app.route("/invoices/<invoice_id>/cancel", methods=["POST"])
def cancel_invoice(invoice_id):
    invoice = billing.cancel_invoice(invoice_id, json_body().get("reason"))
    return jsonify(invoice_to_dict(invoice))


@app.route("/invoices/<invoice_id>/dispute", methods=["POST"])
def dispute_invoice(invoice_id):
    invoice = billing.dispute_invoice(invoice_id, json_body().get("reason"))
    return jsonify(invoice_to_dict(invoice))


@app.route("/invoices/refresh-status", methods=["POST"])
def refresh_invoice_status():
    """
    Re-evaluate every open invoice against `today` (defaults to the current
    date) and report the ones that became overdue.
    """
    today = parse_date(json_body().get("today"), "today")
    newly_overdue = billing.refresh_statuses(today)
    return jsonify({
        "newly_overdue": [i.invoice_number for i in newly_overdue],
        "overdue_count": len(billing.overdue_invoices(today)),
    })


# =============================================================================
# API ROUTES - PAYMENTS AND ACCOUNTS
# =============================================================================

def _payment_date(data: dict) -> dict:
    payment_date = parse_date(data.get("payment_date"), "payment_date")
    return {"payment_date": payment_date} if payment_date else {}


@app.route("/customers/<customer_id>/payments", methods=["POST"])
def record_customer_payment(customer_id):
    """
    Record a payment for a customer. With "invoice_id" it is applied to that
    invoice; without one it is credited to the account balance.
    """
    data = json_body()
    payment = billing.record_payment(
        customer_id, data.get("amount"), parse_payment_method(data.get("method")),
        invoice_id=data.get("invoice_id"),
        transaction_id=data.get("transaction_id"),
        notes=data.get("notes"),
        **_payment_date(data),
    )
    return jsonify(payment_to_dict(payment)), 201


@app.route("/customers/<customer_id>/balance", methods=["GET"])
def customer_balance(customer_id):
    """
    Example Response:
        {"customer_id": "CUST-001", "balance": "-65.18", "has_debt": true,
         "debt_amount": "65.18", "unpaid_invoices": ["INV-001000"], ...}
    """
    account = billing.ledger.account(customer_id)
    unpaid = billing.unpaid_invoices(customer_id)
    return jsonify({
        "customer_id": customer_id,
        "balance": format_money(account.balance),
        "has_debt": account.has_debt(),
        "debt_amount": format_money(account.get_debt_amount()),
        "total_paid": format_money(billing.ledger.total_paid(customer_id)),
        "outstanding": format_money(billing.total_outstanding(customer_id)),
        "unpaid_invoices": [i.invoice_number for i in unpaid],
    })


@app.route("/payments/<payment_id>/refund", methods=["POST"])
def refund_payment(payment_id):
    """Body: {"reason": "...", "reverse": true} - reverse also takes the money back off the invoice."""
    data = json_body()
    payment = billing.refund_payment(payment_id, data.get("reason"),
                                     reverse=flag(data.get("reverse", False)),
                                     today=parse_date(data.get("today"), "today"))
    return jsonify(payment_to_dict(payment))


@app.route("/payments/<payment_id>/fail", methods=["POST"])
def fail_payment(payment_id):
    data = json_body()
    payment = billing.fail_payment(payment_id, data.get("reason"),
                                   reverse=flag(data.get("reverse", False)),
                                   today=parse_date(data.get("today"), "today"))
    return jsonify(payment_to_dict(payment))


# =============================================================================
# API ROUTES - ESTIMATES
# =============================================================================

@app.route("/estimate", methods=["GET"])
def estimate():
    """
    Quote a bill without issuing an invoice.

    Query Parameters:
        tariff_id (required)
        units (required): kWh
        days (required): billing days
        vat_mode (optional): EXCLUSIVE (default) or INCLUSIVE

    Example:
        GET /estimate?tariff_id=...&units=282.262&days=33
    """
    tariff_id = request.args.get("tariff_id")
    if not tariff_id:
        raise ValidationError("tariff_id", "tariff_id required")
    try:
        days = int(request.args.get("days", ""))
    except ValueError:
        raise ValidationError("days", "days must be a whole number")

    estimator = BillingEstimator(billing.get_tariff(tariff_id),
                                 request.args.get("vat_mode", "EXCLUSIVE"))
    breakdown = estimator.quote(request.args.get("units"), days)
    return jsonify(breakdown_to_dict(breakdown))


# =============================================================================
# RUN THE SERVER
# =============================================================================

if __name__ == "__main__":
    app.run(debug=os.getenv('FLASK_DEBUG', 'false').lower() == 'true')
