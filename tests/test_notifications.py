"""Tests for order email rendering and delivery."""

import smtplib

import pytest

from linkist.config import AppConfig
from linkist.errors import InvalidEmailTypeError
from linkist.models import EmailType
from linkist.notifications import (
    LogEmailSender,
    OrderMailer,
    SmtpEmailSender,
    build_sender,
    parse_email_type,
    render_email,
)

from .conftest import FakeEmailSender, make_order


@pytest.fixture
def order(payload):
    return make_order(payload, payment_ref="pi_1")


def make_mailer(sender, **kwargs):
    delays = []
    mailer = OrderMailer(sender, sleep=delays.append, **kwargs)
    return mailer, delays


class TestRenderEmail:
    @pytest.mark.parametrize(
        "email_type,subject",
        [
            (EmailType.CONFIRMATION, "Order Confirmed - {n} | Linkist"),
            (EmailType.RECEIPT, "Receipt for Order {n} | Linkist"),
            (EmailType.PRODUCTION, "Your Card is in Production - {n} | Linkist"),
            (EmailType.SHIPPED, "Package Shipped - {n} | Linkist"),
            (EmailType.DELIVERED, "Your Linkist Card Has Arrived! - {n}"),
        ],
    )
    def test_subjects(self, order, email_type, subject):
        assert render_email(email_type, order)[0] == subject.format(n=order.order_number)

    def test_receipt_lists_amounts(self, order):
        _, body = render_email(EmailType.RECEIPT, order)
        assert "Subtotal: 198.00" in body
        assert "VAT (5%): 9.90" in body
        assert "Total paid: 207.90 (card)" in body

    def test_shipped_includes_tracking(self, order):
        order.tracking_number = "1Z999"
        _, body = render_email(EmailType.SHIPPED, order)
        assert "Tracking number: 1Z999" in body


class TestParseEmailType:
    def test_known(self):
        assert parse_email_type("Shipped") == EmailType.SHIPPED

    def test_unknown(self):
        with pytest.raises(InvalidEmailTypeError):
            parse_email_type("newsletter")


class TestOrderMailer:
    def test_success(self, order):
        sender = FakeEmailSender()
        mailer, delays = make_mailer(sender)

        result = mailer.send_order_email(EmailType.CONFIRMATION, order)

        assert result.success is True
        assert result.message_id == "msg-1"
        assert result.attempts == 1
        assert sender.sent[0]["to"] == "ada@example.com"
        assert delays == []

    def test_retries_transient_failures(self, order):
        sender = FakeEmailSender(
            failures=[smtplib.SMTPServerDisconnected("gone"), smtplib.SMTPResponseException(421, b"busy")]
        )
        mailer, delays = make_mailer(sender)

        result = mailer.send_order_email(EmailType.SHIPPED, order)

        assert result.success is True
        assert result.attempts == 3
        assert delays == [1.0, 2.0]

    def test_gives_up_after_max_retries(self, order):
        sender = FakeEmailSender(failures=[ConnectionRefusedError("refused")] * 5)
        mailer, delays = make_mailer(sender)

        result = mailer.send_order_email(EmailType.SHIPPED, order)

        assert result.success is False
        assert result.attempts == 3
        assert "refused" in result.error
        assert len(delays) == 2

    def test_permanent_failure_not_retried(self, order):
        sender = FakeEmailSender(failures=[smtplib.SMTPAuthenticationError(535, b"bad credentials")])
        mailer, delays = make_mailer(sender)

        result = mailer.send_order_email(EmailType.CONFIRMATION, order)

        assert result.success is False
        assert result.attempts == 1
        assert delays == []

    def test_refused_recipient_not_retried(self, order):
        sender = FakeEmailSender(
            failures=[smtplib.SMTPRecipientsRefused({"ada@example.com": (550, b"no such user")})]
        )
        mailer, _ = make_mailer(sender)
        assert mailer.send_order_email(EmailType.CONFIRMATION, order).attempts == 1

    def test_invalid_recipient_not_sent(self, order):
        order.email = "not-an-email"
        sender = FakeEmailSender()
        mailer, _ = make_mailer(sender)

        result = mailer.send_order_email(EmailType.CONFIRMATION, order)

        assert result.success is False
        assert result.error == "Invalid email format"
        assert sender.sent == []

    def test_lifecycle_emails(self, order):
        sender = FakeEmailSender()
        mailer, _ = make_mailer(sender)

        results = mailer.send_lifecycle_emails(order)

        assert set(results) == {EmailType.CONFIRMATION, EmailType.RECEIPT}
        assert all(r.success for r in results.values())
        assert [m["subject"].split(" ")[0] for m in sender.sent] == ["Order", "Receipt"]


class TestBuildSender:
    def test_log_sender_without_smtp(self):
        sender = build_sender(AppConfig())
        assert isinstance(sender, LogEmailSender)
        assert sender.send("ada@example.com", "Hi", "Body").startswith("mock-")

    def test_smtp_sender_when_configured(self):
        sender = build_sender(AppConfig(smtp_host="smtp.example.com", smtp_user="u", smtp_password="p"))
        assert isinstance(sender, SmtpEmailSender)
        assert sender.host == "smtp.example.com"
        assert sender.port == 587
