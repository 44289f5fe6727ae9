"""Order emails: templates, senders and a retrying mailer.

Emails are triggered explicitly. Order creation sends the confirmation and
receipt pair (when enabled in settings); every later email is an admin
"resend" of one EmailType.
"""

import logging
import smtplib
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Callable

from .config import AppConfig
from .errors import InvalidEmailTypeError
from .models import EmailType, Order
from .utils import is_valid_email, money_str

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
RETRY_DELAY = 1.0  # seconds, multiplied by the attempt number

SUBJECTS: dict[EmailType, str] = {
    EmailType.CONFIRMATION: "Order Confirmed - {order_number} | Linkist",
    EmailType.RECEIPT: "Receipt for Order {order_number} | Linkist",
    EmailType.PRODUCTION: "Your Card is in Production - {order_number} | Linkist",
    EmailType.SHIPPED: "Package Shipped - {order_number} | Linkist",
    EmailType.DELIVERED: "Your Linkist Card Has Arrived! - {order_number}",
}

_INTROS: dict[EmailType, str] = {
    EmailType.CONFIRMATION: "Thank you for your order! We've received it and will start on your cards shortly.",
    EmailType.RECEIPT: "Here is the receipt for your Linkist order.",
    EmailType.PRODUCTION: "Good news: your NFC cards are now in production.",
    EmailType.SHIPPED: "Your Linkist cards are on their way.",
    EmailType.DELIVERED: "Your Linkist cards have been delivered. Tap away!",
}


def parse_email_type(value: str | EmailType) -> EmailType:
    """
    Raises:
        InvalidEmailTypeError: If the value is not a known email type.
    """
    if isinstance(value, EmailType):
        return value
    try:
        return EmailType(str(value).strip().lower())
    except ValueError:
        raise InvalidEmailTypeError(str(value)) from None


def render_email(email_type: EmailType, order: Order) -> tuple[str, str]:
    """Return (subject, plain-text body) for an order email."""
    subject = SUBJECTS[email_type].format(order_number=order.order_number)

    lines = [
        f"Hi {order.customer_name},",
        "",
        _INTROS[email_type],
        "",
        f"Order number: {order.order_number}",
        f"Card: {order.card_config.full_name} ({order.card_config.base_material.value}) x{order.card_config.quantity}",
    ]

    if email_type == EmailType.RECEIPT:
        pricing = order.pricing
        lines += [
            "",
            f"Subtotal: {money_str(pricing.subtotal)}",
            f"{pricing.tax_label}: {money_str(pricing.tax_amount)}",
            f"Shipping: {money_str(pricing.shipping_cost)}",
        ]
        if order.founder_discount:
            lines.append(f"Founder member discount: -{money_str(order.founder_discount)}")
        if order.voucher_code:
            lines.append(f"Voucher {order.voucher_code}: -{order.voucher_discount_percent}%")
        paid = order.final_amount if order.final_amount is not None else pricing.total
        lines.append(f"Total paid: {money_str(paid)} ({order.payment_method or 'n/a'})")

    if email_type in (EmailType.CONFIRMATION, EmailType.PRODUCTION) and order.estimated_delivery:
        lines.append(f"Estimated delivery: {order.estimated_delivery}")

    if email_type == EmailType.SHIPPED:
        if order.tracking_number:
            lines.append(f"Tracking number: {order.tracking_number}")
        if order.tracking_url:
            lines.append(f"Track your package: {order.tracking_url}")

    lines += ["", f"Shipping to: {order.shipping.one_line()}", "", "The Linkist team"]
    return subject, "\n".join(lines)


@dataclass
class EmailResult:
    success: bool
    message_id: str | None = None
    error: str | None = None
    attempts: int = 0


class EmailSender:
    """Delivers one message. Raises on failure."""

    def send(self, to: str, subject: str, body: str) -> str:
        raise NotImplementedError


class LogEmailSender(EmailSender):
    """Sender used when no SMTP server is configured. Logs and reports success."""

    def send(self, to: str, subject: str, body: str) -> str:
        stamp = int(datetime.now(timezone.utc).timestamp() * 1000)
        logger.warning("SMTP not configured; email to %s not delivered: %s", to, subject)
        return f"mock-{stamp}"


class SmtpEmailSender(EmailSender):
    def __init__(
        self,
        host: str,
        port: int = 587,
        user: str | None = None,
        password: str | None = None,
        sender: str = "Linkist <noreply@linkist.ai>",
        reply_to: str | None = None,
        timeout: float = 10.0,
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender
        self.reply_to = reply_to
        self.timeout = timeout

    def send(self, to: str, subject: str, body: str) -> str:
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = to
        msg["Subject"] = subject
        if self.reply_to:
            msg["Reply-To"] = self.reply_to
        message_id = make_msgid(domain="linkist.ai")
        msg["Message-ID"] = message_id
        msg.set_content(body)

        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            smtp.starttls()
            if self.user and self.password:
                smtp.login(self.user, self.password)
            smtp.send_message(msg)
        return message_id


def build_sender(config: AppConfig) -> EmailSender:
    if not config.smtp_host:
        return LogEmailSender()
    return SmtpEmailSender(
        host=config.smtp_host,
        port=config.smtp_port,
        user=config.smtp_user,
        password=config.smtp_password,
        sender=config.email_from,
        reply_to=config.email_reply_to,
    )


def _is_retryable(exc: Exception) -> bool:
    # 4xx replies are temporary per RFC 5321; connection-level problems are too
    if isinstance(exc, smtplib.SMTPResponseException):
        return 400 <= exc.smtp_code < 500
    if isinstance(exc, smtplib.SMTPRecipientsRefused):
        return False
    return isinstance(exc, OSError)


class OrderMailer:
    """Renders order emails and sends them with bounded retries."""

    def __init__(
        self,
        sender: EmailSender,
        max_retries: int = MAX_RETRIES,
        retry_delay: float = RETRY_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.sender = sender
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._sleep = sleep

    def send_order_email(self, email_type: EmailType, order: Order) -> EmailResult:
        """
        Send one order email.

        Never raises for delivery problems; the result says whether the email
        went out. Callers decide whether a failure is an error.
        """
        if not order.email or not order.order_number:
            return EmailResult(success=False, error="Email and order number are required")
        if not is_valid_email(order.email):
            logger.error("[%s] Invalid recipient for order %s", email_type.value, order.order_number)
            return EmailResult(success=False, error="Invalid email format")

        subject, body = render_email(email_type, order)

        attempt = 0
        while True:
            attempt += 1
            logger.info(
                "[%s] Sending email to %s (attempt %d/%d)",
                email_type.value, order.email, attempt, self.max_retries,
            )
            try:
                message_id = self.sender.send(order.email, subject, body)
            except (smtplib.SMTPException, OSError) as e:
                if attempt < self.max_retries and _is_retryable(e):
                    logger.warning("[%s] Send failed (%s), retrying", email_type.value, e)
                    self._sleep(self.retry_delay * attempt)
                    continue
                logger.error("[%s] Send failed after %d attempt(s): %s", email_type.value, attempt, e)
                return EmailResult(success=False, error=str(e), attempts=attempt)
            return EmailResult(success=True, message_id=message_id, attempts=attempt)

    def send_lifecycle_emails(self, order: Order) -> dict[EmailType, EmailResult]:
        """Send the confirmation and receipt emails that follow order creation."""
        results = {
            email_type: self.send_order_email(email_type, order)
            for email_type in (EmailType.CONFIRMATION, EmailType.RECEIPT)
        }
        ok = sum(1 for r in results.values() if r.success)
        logger.info("Order emails for %s: %d/%d sent", order.order_number, ok, len(results))
        return results
