"""Pytest fixtures for linkist tests."""

import json
import tempfile
from pathlib import Path

import pytest

from linkist.errors import PaymentFailedError, WebhookSignatureError
from linkist.checkout import build_order_payload, validate_checkout_fields
from linkist.models import CardConfig, Order, OrderPayload, OrderStatus, Payment, PaymentMethod, PaymentStatus
from linkist.notifications import EmailSender
from linkist.payments import CardGateway, ChargeResult, PaymentIntent, build_confirmation, quote_payment

ENV_VARS = [
    "STRIPE_SECRET_KEY",
    "STRIPE_WEBHOOK_SECRET",
    "SMTP_HOST",
    "LINKIST_ADMIN_TOKEN",
    "UPI_CALLBACK_SECRET",
    "LINKIST_STRICT_TRANSITIONS",
    "LINKIST_CURRENCY",
]


@pytest.fixture
def temp_dir():
    """Create a temporary directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def data_dir(temp_dir, monkeypatch):
    """Point the service at an empty data directory with no providers configured."""
    path = temp_dir / "data"
    monkeypatch.setenv("LINKIST_DATA_DIR", str(path))
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return path


@pytest.fixture
def card_config():
    return CardConfig.create(first_name="Ada", last_name="Lovelace", base_material="metal", quantity=2)


@pytest.fixture
def checkout_fields():
    return {
        "email": "ada@example.com",
        "first_name": "Ada",
        "last_name": "Lovelace",
        "phone": "+1 555 010 0199",
        "address_line1": "1 Main St",
        "city": "Springfield",
        "postal_code": "12345",
        "country": "us",
        "quantity": 2,
        "is_founder_member": False,
    }


def make_payload(card_config: CardConfig, fields: dict, **overrides) -> OrderPayload:
    """Build an order payload from form fields, as checkout submission does."""
    form = validate_checkout_fields({**fields, **overrides})
    return build_order_payload(form, card_config)


def make_order(
    payload: OrderPayload,
    status: OrderStatus = OrderStatus.CONFIRMED,
    payment_ref: str | None = None,
    payment_status: PaymentStatus = PaymentStatus.SUCCEEDED,
) -> Order:
    """Build an order as the payment stage would for a card payment."""
    quote = quote_payment(payload)
    payment = None
    if payment_ref:
        payment = Payment.create(
            provider="stripe",
            provider_ref=payment_ref,
            amount=quote.final_amount,
            currency="usd",
            status=payment_status,
            method=PaymentMethod.CARD,
        )
    confirmation = build_confirmation(payload, PaymentMethod.CARD, payment_ref or "pi_manual", quote)
    return Order.from_confirmation(confirmation, status, payment=payment)


@pytest.fixture
def payload(card_config, checkout_fields):
    return make_payload(card_config, checkout_fields)


class FakeCardGateway(CardGateway):
    """Card gateway that records charges instead of calling a provider."""

    name = "stripe"

    def __init__(self, status: str = "succeeded", decline: str | None = None, reference: str | None = None):
        self.status = status
        self.decline = decline
        self.reference = reference
        self.charges: list[dict] = []
        self.intents: list[dict] = []
        self._counter = 0

    def create_intent(self, amount, currency, metadata=None):
        self._counter += 1
        self.intents.append({"amount": amount, "currency": currency, "metadata": metadata})
        return PaymentIntent(
            id=f"pi_test_{self._counter}",
            client_secret=f"pi_test_{self._counter}_secret",
            amount=amount,
            currency=currency,
            status="requires_payment_method",
        )

    def charge(self, amount, currency, card, metadata=None, idempotency_key=None):
        if self.decline:
            raise PaymentFailedError(self.decline)
        self._counter += 1
        self.charges.append(
            {"amount": amount, "currency": currency, "metadata": metadata, "idempotency_key": idempotency_key}
        )
        return ChargeResult(
            reference=self.reference or f"pi_test_{self._counter}", status=self.status, amount=amount
        )

    def parse_webhook(self, payload, signature):
        if signature != "valid":
            raise WebhookSignatureError("invalid signature")
        return json.loads(payload)


class FakeEmailSender(EmailSender):
    """Records sent emails; raises `failures` errors before succeeding."""

    def __init__(self, failures: list[Exception] | None = None):
        self.sent: list[dict] = []
        self.failures = list(failures or [])

    def send(self, to, subject, body):
        if self.failures:
            raise self.failures.pop(0)
        self.sent.append({"to": to, "subject": subject, "body": body})
        return f"msg-{len(self.sent)}"


@pytest.fixture
def card_gateway():
    return FakeCardGateway()


@pytest.fixture
def email_sender():
    return FakeEmailSender()

