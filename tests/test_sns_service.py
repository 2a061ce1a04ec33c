# tests/test_sns_service.py
from datetime import date
from decimal import Decimal
from unittest.mock import MagicMock

from botocore.exceptions import ClientError, EndpointConnectionError

from backend.lib.sns_service import SNSService
from backend.lib.utility_bill_core.invoice import Invoice
from backend.lib.utility_bill_core.ledger import Payment, PaymentMethod
from backend.lib.utility_bill_core.models import MeterType

TOPIC = "arn:aws:sns:eu-west-2:123456789012:UtilityBilling"


def make_invoice():
    invoice = Invoice("CUST-001", date(2025, 1, 1), date(2025, 2, 2), MeterType.ELECTRICITY,
                      issue_date=date(2025, 2, 3), unit_cost=Decimal("54.61"),
                      standing_charge_total=Decimal("7.47"))
    return invoice.calculate_totals()


def test_invoice_issued_message():
    client = MagicMock()
    sns = SNSService(topic_arn=TOPIC, sns_client=client)
    invoice = make_invoice()
    assert sns.send_invoice_issued(invoice)

    kwargs = client.publish.call_args.kwargs
    assert kwargs["TopicArn"] == TOPIC
    assert invoice.invoice_number in kwargs["Subject"]
    assert "Total: £65.18" in kwargs["Message"]
    assert "Please pay by 2025-02-17" in kwargs["Message"]


def test_payment_receipt_mentions_invoice_or_account():
    client = MagicMock()
    sns = SNSService(topic_arn=TOPIC, sns_client=client)
    invoice = make_invoice()
    invoice.apply_payment("30")
    payment = Payment("CUST-001", "30", PaymentMethod.DEBIT_CARD, invoice_id=invoice.invoice_id)

    sns.send_payment_receipt(payment, invoice)
    message = client.publish.call_args.kwargs["Message"]
    assert "Amount: £30.00" in message
    assert "Method: Debit Card" in message
    assert "Balance remaining: £35.18" in message

    sns.send_payment_receipt(Payment("CUST-001", "5"))
    assert "Credited to your account balance." in client.publish.call_args.kwargs["Message"]


def test_subject_is_truncated():
    client = MagicMock()
    sns = SNSService(topic_arn=TOPIC, sns_client=client)
    sns.send_alert("x" * 150, "body")
    assert len(client.publish.call_args.kwargs["Subject"]) == 100


def test_publish_failure_is_reported_not_raised():
    client = MagicMock()
    client.publish.side_effect = ClientError(
        {"Error": {"Code": "AuthorizationError", "Message": "denied"}}, "Publish")
    sns = SNSService(topic_arn=TOPIC, sns_client=client)
    assert sns.send_overdue_alert(make_invoice()) is False


def test_no_topic_means_no_publish(monkeypatch):
    monkeypatch.delenv("SNS_TOPIC_ARN", raising=False)
    client = MagicMock()
    sns = SNSService(sns_client=client)
    assert sns.send_alert("Hello", "body") is False
    assert sns.subscribe_email("billing@example.com") is None
    assert sns.list_subscriptions() == []
    client.publish.assert_not_called()


def test_create_topic_sets_arn(monkeypatch):
    monkeypatch.delenv("SNS_TOPIC_ARN", raising=False)
    monkeypatch.setenv("SNS_TOPIC_NAME", "BillingTest")
    client = MagicMock()
    client.create_topic.return_value = {"TopicArn": TOPIC}
    sns = SNSService(sns_client=client)

    assert sns.create_topic_if_not_exists() == TOPIC
    assert sns.topic_arn == TOPIC
    client.create_topic.assert_called_once_with(Name="BillingTest")


def test_unreachable_endpoint_is_reported_not_raised():
    client = MagicMock()
    client.publish.side_effect = EndpointConnectionError(endpoint_url="https://sns.eu-west-2.amazonaws.com")
    sns = SNSService(topic_arn=TOPIC, sns_client=client)
    assert sns.send_invoice_issued(make_invoice()) is False
    assert sns.send_alert("Subject", "body") is False
