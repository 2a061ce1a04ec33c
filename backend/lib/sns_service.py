"""
=============================================================================
SNS SERVICE - Billing notifications over Amazon SNS
=============================================================================

Customers (or the billing team) subscribe to one SNS topic by email. The
billing core calls three hooks on this class:

- send_invoice_issued(invoice)            a new invoice was generated
- send_payment_receipt(payment, invoice)  a payment was recorded
- send_overdue_alert(invoice)             an invoice passed its due date

Flow:
-----
[BillingService] --> [SNSService.publish] --> [SNS Topic] --> [Email subscribers]

A failed publish, including missing credentials or an unreachable endpoint,
is logged and reported as False. It never fails the billing operation that
triggered it.

Environment Variables:
- SNS_TOPIC_ARN: ARN of an existing topic
- SNS_TOPIC_NAME: topic to create when no ARN is given (default: UtilityBilling)
- AWS_REGION: region for the client (default: eu-west-2)
=============================================================================
"""

import logging
import os
from typing import Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from backend.lib.utility_bill_core.invoice import Invoice
from backend.lib.utility_bill_core.ledger import Payment
from backend.lib.utility_bill_core.money import format_money

logger = logging.getLogger(__name__)

# SNS rejects subjects longer than 100 characters
MAX_SUBJECT_LENGTH = 100


class SNSService:
    """
    Usage:
        sns = SNSService()
        sns.create_topic_if_not_exists()
        sns.subscribe_email("billing@example.com")
        BillingService(repo, repo, repo, notifier=sns)
    """

    def __init__(self, topic_arn: str = None, sns_client=None):
        """
        Args:
            topic_arn: pre-existing topic ARN; falls back to SNS_TOPIC_ARN
            sns_client: an existing boto3 SNS client (tests pass a stub)
        """
        self.topic_arn = topic_arn or os.getenv('SNS_TOPIC_ARN')
        self.topic_name = os.getenv('SNS_TOPIC_NAME', 'UtilityBilling')
        self.region = os.getenv('AWS_REGION', 'eu-west-2')

        if sns_client is None:
            session_token = os.getenv('AWS_SESSION_TOKEN')
            sns_client = boto3.client(
                'sns',
                region_name=self.region,
                aws_access_key_id=os.getenv('AWS_ACCESS_KEY_ID'),
                aws_secret_access_key=os.getenv('AWS_SECRET_ACCESS_KEY'),
                aws_session_token=session_token if session_token else None
            )
        self.sns_client = sns_client

    def create_topic_if_not_exists(self) -> Optional[str]:
        """create_topic is idempotent: an existing topic's ARN is returned."""
        try:
            response = self.sns_client.create_topic(Name=self.topic_name)
            self.topic_arn = response['TopicArn']
            logger.info("SNS topic ready: %s", self.topic_arn)
            return self.topic_arn
        except (ClientError, BotoCoreError) as e:
            logger.error("Failed to create SNS topic %s: %s", self.topic_name, e)
            return None

    def subscribe_email(self, email: str) -> Optional[str]:
        """
        Subscribe an address to the topic. AWS sends a confirmation email and
        the subscription stays "PendingConfirmation" until it is clicked.
        """
        if not self.topic_arn:
            logger.warning("No topic ARN configured; cannot subscribe %s", email)
            return None
        try:
            response = self.sns_client.subscribe(
                TopicArn=self.topic_arn,
                Protocol='email',
                Endpoint=email
            )
            return response['SubscriptionArn']
        except (ClientError, BotoCoreError) as e:
            logger.error("Failed to subscribe %s: %s", email, e)
            return None

    def list_subscriptions(self) -> List[Dict]:
        if not self.topic_arn:
            return []
        try:
            response = self.sns_client.list_subscriptions_by_topic(TopicArn=self.topic_arn)
            return response.get('Subscriptions', [])
        except (ClientError, BotoCoreError) as e:
            logger.error("Failed to list subscriptions: %s", e)
            return []

    def send_alert(self, subject: str, message: str) -> bool:
        """Publish one message to every confirmed subscriber."""
        if not self.topic_arn:
            logger.warning("No topic ARN configured; dropping notification %r", subject)
            return False
        try:
            self.sns_client.publish(
                TopicArn=self.topic_arn,
                Subject=subject[:MAX_SUBJECT_LENGTH],
                Message=message
            )
            return True
        except (ClientError, BotoCoreError) as e:
            logger.error("Failed to send notification %r: %s", subject, e)
            return False

    # ---- billing hooks -----------------------------------------------------

    def send_invoice_issued(self, invoice: Invoice) -> bool:
        subject = f"Your {invoice.meter_type.value.lower()} bill {invoice.invoice_number}"
        message = f"""
Invoice: {invoice.invoice_number}
Customer: {invoice.customer_id}
Period: {invoice.period_start.isoformat()} to {invoice.period_end.isoformat()} ({invoice.billing_days} days)

Usage: {invoice.units_consumed} {invoice.meter_type.unit}
Energy charge: £{format_money(invoice.unit_cost)}
Standing charge: £{format_money(invoice.standing_charge_total)}
VAT ({invoice.vat_rate * 100}%): £{format_money(invoice.vat_amount)}
Total: £{format_money(invoice.total_amount)}

Please pay by {invoice.due_date.isoformat()}.

---
Utility Billing
        """.strip()
        return self.send_alert(subject, message)

    def send_payment_receipt(self, payment: Payment, invoice: Optional[Invoice] = None) -> bool:
        subject = f"Payment received {payment.reference_number}"
        lines = [
            f"Reference: {payment.reference_number}",
            f"Customer: {payment.customer_id}",
            f"Amount: £{format_money(payment.amount)}",
            f"Method: {payment.method.value.replace('_', ' ').title()}",
            f"Date: {payment.payment_date.isoformat()}",
        ]
        if invoice is not None:
            lines.append("")
            lines.append(f"Applied to invoice {invoice.invoice_number} ({invoice.status.value})")
            lines.append(f"Balance remaining: £{format_money(invoice.balance_due)}")
        else:
            lines.append("")
            lines.append("Credited to your account balance.")
        lines.extend(["", "---", "Utility Billing"])
        return self.send_alert(subject, "\n".join(lines))

    def send_overdue_alert(self, invoice: Invoice) -> bool:
        subject = f"Invoice {invoice.invoice_number} is overdue"
        message = f"""
Invoice: {invoice.invoice_number}
Customer: {invoice.customer_id}
Due date: {invoice.due_date.isoformat()}
Amount outstanding: £{format_money(invoice.balance_due)}

This invoice has passed its due date. Please arrange payment as soon as possible.

---
Utility Billing
        """.strip()
        return self.send_alert(subject, message)
