# backend/lambda_handlers/send_alert.py
"""
Lambda function to send overdue-invoice reminders via SNS
Can be triggered by EventBridge (scheduled) or API Gateway

The caller passes the open invoices (as produced by invoice_to_dict):
{
    "today": "2025-03-01",            optional, defaults to the current date
    "invoices": [{...}, {...}]
}
Each invoice's status is refreshed against `today`; every one that is
overdue gets a reminder.
"""
import json
import logging
import os
from datetime import date

from backend.lib.utility_bill_core.errors import ValidationError
from backend.lib.utility_bill_core.invoice import InvoiceStatus
from backend.lib.utility_bill_core.io import invoice_from_dict, parse_date

logger = logging.getLogger()
logger.setLevel(os.getenv('LOG_LEVEL', 'INFO'))

SNS_TOPIC_ARN = os.getenv('SNS_TOPIC_ARN')

_sns = None


def get_sns():
    global _sns
    if _sns is None:
        from backend.lib.sns_service import SNSService
        _sns = SNSService(topic_arn=SNS_TOPIC_ARN)
    return _sns


def lambda_handler(event, context):
    """
    Check the given invoices and send a reminder for each overdue one.

    Can be triggered by:
    - EventBridge schedule (event is the payload itself)
    - API Gateway (payload in event['body'])
    """
    logger.info("Received event: %s", json.dumps(event, default=str))

    try:
        payload = event
        if 'body' in event:
            payload = json.loads(event['body'] or '{}')
        today = parse_date(payload.get('today'), 'today') or date.today()
        return response(200, check_overdue(payload.get('invoices') or [], today))

    except ValidationError as e:
        return response(400, e.to_dict())
    except json.JSONDecodeError:
        return response(400, {'error': 'Request body must be JSON'})
    except Exception as e:
        logger.exception("Overdue check failed")
        return response(500, {'error': str(e)})


def check_overdue(invoice_bodies, today: date) -> dict:
    overdue = []
    alerts_sent = 0
    for body in invoice_bodies:
        invoice = invoice_from_dict(body)
        invoice.update_status(today)
        if invoice.status is not InvoiceStatus.OVERDUE:
            continue
        overdue.append(invoice.invoice_number)
        if not SNS_TOPIC_ARN:
            logger.warning("SNS_TOPIC_ARN not configured; no reminder for %s", invoice.invoice_number)
            continue
        if get_sns().send_overdue_alert(invoice):
            alerts_sent += 1

    return {
        'checked': len(invoice_bodies),
        'overdue': overdue,
        'alerts_sent': alerts_sent,
        'today': today.isoformat(),
    }


def response(status_code: int, body: dict) -> dict:
    """Create API Gateway response."""
    return {
        'statusCode': status_code,
        'headers': {
            'Content-Type': 'application/json',
            'Access-Control-Allow-Origin': '*'
        },
        'body': json.dumps(body)
    }
