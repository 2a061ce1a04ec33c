# backend/lambda_handlers/generate_bill.py
"""
Lambda function to generate a utility bill from one reading pair
Triggered by API Gateway (POST) or invoked directly with the same payload

Payload:
{
    "customer_id": "CUST-001",
    "tariff": {"name": "Economy 7", "pricing": "DAY_NIGHT", "standing_charge": 22.63,
               "day_rate": 19.349, "night_rate": 19.349},
    "meter": {"meter_id": "E-1", "meter_type": "ELECTRICITY", "day_night": true},
    "reading": {"day_opening": 37386.998, "day_closing": 37623.210,
                "night_opening": 40470.637, "night_closing": 40516.687},
    "period_start": "2025-01-01",
    "period_end": "2025-02-02",
    "vat_mode": "EXCLUSIVE"
}
"""
import json
import logging
import os

from backend.lib.repositories import InMemoryRepository
from backend.lib.utility_bill_core.billing import BillingService
from backend.lib.utility_bill_core.errors import (BillingError, RecordNotFoundError,
                                                  StateError, ValidationError)
from backend.lib.utility_bill_core.io import (invoice_to_dict, meter_from_dict,
                                              parse_date, parse_reading_type, tariff_from_dict)

logger = logging.getLogger()
logger.setLevel(os.getenv('LOG_LEVEL', 'INFO'))

SNS_TOPIC_ARN = os.getenv('SNS_TOPIC_ARN')
PAYMENT_TERMS_DAYS = int(os.getenv('PAYMENT_TERMS_DAYS', '14'))


def lambda_handler(event, context):
    """Build tariff and meter from the payload, derive consumption, issue the invoice."""
    logger.info("Received event: %s", json.dumps(event, default=str))

    try:
        body = parse_body(event)
        invoice = generate(body, notifier=make_notifier())
        return response(200, invoice_to_dict(invoice))

    except ValidationError as e:
        return response(400, e.to_dict())
    except RecordNotFoundError as e:
        return response(404, e.to_dict())
    except StateError as e:
        return response(409, e.to_dict())
    except BillingError as e:
        return response(400, e.to_dict())
    except Exception as e:
        logger.exception("Bill generation failed")
        return response(500, {'error': str(e)})


def parse_body(event) -> dict:
    if 'body' in event:
        raw = event.get('body') or '{}'
        try:
            return json.loads(raw) if isinstance(raw, str) else raw
        except json.JSONDecodeError:
            raise ValidationError('body', 'Request body must be JSON')
    return event


def make_notifier():
    if not SNS_TOPIC_ARN:
        return None
    from backend.lib.sns_service import SNSService
    return SNSService(topic_arn=SNS_TOPIC_ARN)


def generate(body: dict, notifier=None):
    repo = InMemoryRepository()
    tariff = repo.save_tariff(tariff_from_dict(body.get('tariff') or {}))
    meter = repo.save_meter(meter_from_dict(body.get('meter') or {}))
    service = BillingService(repo, repo, repo, notifier=notifier,
                             payment_terms_days=PAYMENT_TERMS_DAYS)

    period_start = parse_date(body.get('period_start'), 'period_start')
    period_end = parse_date(body.get('period_end'), 'period_end')
    reading = body.get('reading') or {}
    reading_type = parse_reading_type(reading.get('reading_type'))

    if 'day_closing' in reading or 'night_closing' in reading:
        consumption = service.record_day_night_reading(
            meter.meter_id,
            reading.get('day_closing'), reading.get('night_closing'),
            day_opening=reading.get('day_opening'),
            night_opening=reading.get('night_opening'),
            period_start=period_start, period_end=period_end,
            reading_type=reading_type,
            customer_id=body.get('customer_id'),
        )
    else:
        consumption = service.record_meter_reading(
            meter.meter_id, reading.get('closing'), reading.get('opening'),
            period_start=period_start, period_end=period_end,
            reading_type=reading_type,
            customer_id=body.get('customer_id'),
            tariff=tariff,
        )

    return service.generate_invoice(
        body.get('customer_id'), tariff, consumption, period_start, period_end,
        vat_mode=body.get('vat_mode') or 'EXCLUSIVE',
        issue_date=parse_date(body.get('issue_date'), 'issue_date'),
        unit_cost_override=body.get('unit_cost_override'),
    )


def response(status_code: int, body: dict) -> dict:
    """Create API Gateway response."""
    return {
        'statusCode': status_code,
        'headers': {
            'Content-Type': 'application/json',
            'Access-Control-Allow-Origin': '*',
            'Access-Control-Allow-Methods': 'POST,OPTIONS',
            'Access-Control-Allow-Headers': 'Content-Type'
        },
        'body': json.dumps(body)
    }
