"""Tests for the payment stage and provider gateways."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest
import stripe

from linkist.draft_store import DraftStore
from linkist.errors import (
    DraftNotFoundError,
    DuplicateOrderError,
    IncompletePaymentError,
    InvalidVoucherError,
    MissingCardConfigError,
    MissingOrderPayloadError,
    MissingPaymentDetailsError,
    PaymentFailedError,
    PaymentProviderNotConfiguredError,
    WebhookSignatureError,
)
from linkist.models import OrderStatus, PaymentMethod, PaymentStatus
from linkist.notifications import OrderMailer
from linkist.order_store import OrderStore
from linkist.payments import (
    CardDetails,
    PaymentRequest,
    PaymentStage,
    StripeGateway,
    UpiGateway,
    quote_payment,
)

from .conftest import make_payload

CARD = CardDetails(number="4242424242424242", expiry="12/30", cvv="123", payment_method="pm_card_visa")
IPHONE = "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15"
DESKTOP = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 Chrome/120.0"


@pytest.fixture
def stage(temp_dir, card_gateway, email_sender):
    return PaymentStage(
        orders=OrderStore(temp_dir),
        drafts=DraftStore(temp_dir),
        card_gateway=lambda: card_gateway,
        upi_gateway=UpiGateway("linkist@paytm", "Linkist NFC"),
        mailer=OrderMailer(email_sender, sleep=lambda s: None),
    )


@pytest.fixture
def draft(stage, card_config, payload):
    """A draft that has been through configuration and checkout."""
    d = stage.drafts.create(card_config)
    d.order_payload = payload
    stage.drafts.save(d)
    return d


def card_request(voucher_code=None, card=CARD):
    return PaymentRequest(method=PaymentMethod.CARD, card=card, voucher_code=voucher_code)


class TestQuotePayment:
    def test_no_voucher(self, payload):
        quote = quote_payment(payload)
        assert quote.final_amount == Decimal("207.90")
        assert quote.voucher is None

    def test_founder_discount_before_voucher(self, card_config, checkout_fields):
        payload = make_payload(card_config, checkout_fields, is_founder_member=True)
        quote = quote_payment(payload, "WELCOME20")

        assert quote.founder_discount == Decimal("19.80")
        assert quote.amount_due == Decimal("188.10")
        assert quote.final_amount == Decimal("150.48")

    def test_invalid_voucher_reported(self, payload):
        quote = quote_payment(payload, "NOPE")
        assert quote.final_amount == Decimal("207.90")
        assert quote.voucher_error == "Invalid voucher code"
        assert quote.to_dict()["voucher_code"] is None


class TestVoucherPayment:
    def test_full_voucher_creates_order_without_charge(self, stage, draft, card_gateway, email_sender):
        outcome = stage.submit(draft.id, PaymentRequest(method=PaymentMethod.VOUCHER, voucher_code="FOUNDERFREE"))

        assert outcome.status == "succeeded"
        order = outcome.order
        assert order.status == OrderStatus.CONFIRMED
        assert order.final_amount == Decimal("0.00")
        assert order.voucher_code == "FOUNDERFREE"
        assert order.payment.provider == "voucher"
        assert order.payment.provider_ref == "voucher_FOUNDERFREE"
        assert card_gateway.charges == []
        assert stage.drafts.get(draft.id).step == "complete"
        assert set(order.emails_sent) == {"confirmation", "receipt"}
        assert len(email_sender.sent) == 2

    def test_partial_voucher_rejected(self, stage, draft):
        with pytest.raises(IncompletePaymentError) as exc_info:
            stage.submit(draft.id, PaymentRequest(method=PaymentMethod.VOUCHER, voucher_code="FOUNDER50"))
        assert exc_info.value.discount_percent == 50
        assert stage.orders.list_orders() == []
        assert stage.drafts.get(draft.id).step == "payment"

    def test_invalid_voucher_rejected(self, stage, draft):
        with pytest.raises(InvalidVoucherError):
            stage.submit(draft.id, PaymentRequest(method=PaymentMethod.VOUCHER, voucher_code="NOPE"))
        assert stage.orders.list_orders() == []

    def test_voucher_code_required(self, stage, draft):
        with pytest.raises(MissingPaymentDetailsError) as exc_info:
            stage.submit(draft.id, PaymentRequest(method=PaymentMethod.VOUCHER))
        assert exc_info.value.fields == ["voucher_code"]


class TestCardPayment:
    def test_charge_with_voucher(self, stage, draft, payload, card_gateway):
        outcome = stage.submit(draft.id, card_request("WELCOME20"))

        assert outcome.status == "succeeded"
        charge = card_gateway.charges[0]
        assert charge["amount"] == Decimal("166.32")
        assert charge["currency"] == "usd"
        assert charge["idempotency_key"] == payload.idempotency_key
        assert charge["metadata"]["draft_id"] == draft.id

        order = outcome.order
        assert order.status == OrderStatus.CONFIRMED
        assert order.final_amount == Decimal("166.32")
        assert order.voucher_discount_percent == 20
        assert order.payment.provider_ref == "pi_test_1"
        assert order.payment.status == PaymentStatus.SUCCEEDED
        assert order.estimated_delivery

    def test_missing_card_fields(self, stage, draft, card_gateway):
        with pytest.raises(MissingPaymentDetailsError) as exc_info:
            stage.submit(draft.id, card_request(card=CardDetails(number="4242424242424242")))
        assert exc_info.value.fields == ["expiry", "cvv"]
        assert card_gateway.charges == []

    def test_no_card_at_all(self, stage, draft):
        with pytest.raises(MissingPaymentDetailsError) as exc_info:
            stage.submit(draft.id, PaymentRequest(method=PaymentMethod.CARD))
        assert exc_info.value.fields == ["number", "expiry", "cvv"]

    def test_invalid_voucher_charges_full_amount(self, stage, draft, card_gateway):
        outcome = stage.submit(draft.id, card_request("NOPE"))

        assert outcome.status == "succeeded"
        assert outcome.voucher_error == "Invalid voucher code"
        assert card_gateway.charges[0]["amount"] == Decimal("207.90")
        assert outcome.order.voucher_code is None

    def test_full_voucher_with_card_skips_charge(self, stage, draft, card_gateway):
        outcome = stage.submit(draft.id, card_request("FOUNDERFREE"))

        assert outcome.status == "succeeded"
        assert card_gateway.charges == []
        assert outcome.order.payment_method == "card"
        assert outcome.order.final_amount == Decimal("0.00")

    def test_processing_charge_creates_pending_order(self, stage, draft, card_gateway):
        card_gateway.status = "processing"
        outcome = stage.submit(draft.id, card_request())

        assert outcome.status == "pending"
        assert outcome.order.status == OrderStatus.PENDING
        assert outcome.order.payment.status == PaymentStatus.PENDING

    def test_decline_leaves_draft_retryable(self, stage, draft, card_gateway):
        card_gateway.decline = "Your card was declined."
        with pytest.raises(PaymentFailedError):
            stage.submit(draft.id, card_request())

        assert stage.orders.list_orders() == []
        assert stage.payment_status(draft.id) == {"status": "failed", "error": "Your card was declined."}

        card_gateway.decline = None
        outcome = stage.submit(draft.id, card_request())
        assert outcome.status == "succeeded"
        assert stage.payment_status(draft.id)["status"] == "succeeded"

    def test_unexpected_provider_status_fails(self, stage, draft, card_gateway):
        card_gateway.status = "requires_action"
        with pytest.raises(PaymentFailedError) as exc_info:
            stage.submit(draft.id, card_request())
        assert exc_info.value.reason == "payment requires action"
        assert stage.orders.list_orders() == []

    def test_second_submit_rejected(self, stage, draft, card_gateway):
        first = stage.submit(draft.id, card_request())
        with pytest.raises(DuplicateOrderError) as exc_info:
            stage.submit(draft.id, card_request())
        assert exc_info.value.order_id == first.order.id
        assert len(card_gateway.charges) == 1
        assert len(stage.orders.list_orders()) == 1

    def test_payment_reused_for_another_draft_rejected(self, stage, draft, card_config, checkout_fields, card_gateway):
        card_gateway.reference = "pi_paid_once"
        first = stage.submit(draft.id, card_request())

        other = stage.drafts.create(card_config)
        other.order_payload = make_payload(card_config, checkout_fields)
        stage.drafts.save(other)

        with pytest.raises(DuplicateOrderError) as exc_info:
            stage.submit(other.id, card_request())

        assert exc_info.value.order_id == first.order.id
        assert [o.id for o in stage.orders.list_orders()] == [first.order.id]
        assert stage.drafts.get(other.id).order_id is None


class TestPreconditions:
    def test_unknown_draft(self, stage):
        with pytest.raises(DraftNotFoundError):
            stage.submit("missing", card_request())

    def test_no_card_config(self, stage):
        draft = stage.drafts.create()
        with pytest.raises(MissingCardConfigError) as exc_info:
            stage.submit(draft.id, card_request())
        assert exc_info.value.redirect_to == "/nfc/configure"

    def test_no_order_payload(self, stage, card_config):
        draft = stage.drafts.create(card_config)
        with pytest.raises(MissingOrderPayloadError) as exc_info:
            stage.submit(draft.id, card_request())
        assert exc_info.value.redirect_to == "/nfc/checkout"


class TestUpiPayment:
    def test_mobile_gets_redirect(self, stage, draft):
        outcome = stage.submit(
            draft.id, PaymentRequest(method=PaymentMethod.UPI, upi_id="ada@okbank", user_agent=IPHONE)
        )

        assert outcome.status == "awaiting_confirmation"
        assert outcome.order is None
        assert outcome.redirect_url.startswith("upi://pay?pa=linkist@paytm&")
        assert "am=207.90" in outcome.redirect_url
        assert outcome.qr_data is None
        assert stage.orders.list_orders() == []

    def test_desktop_gets_qr(self, stage, draft):
        outcome = stage.submit(
            draft.id, PaymentRequest(method=PaymentMethod.UPI, upi_id="ada@okbank", user_agent=DESKTOP)
        )
        assert outcome.redirect_url is None
        assert outcome.qr_data.startswith("upi://pay?")
        assert f"tr={outcome.reference}" in outcome.qr_data

    def test_upi_id_required(self, stage, draft):
        with pytest.raises(MissingPaymentDetailsError) as exc_info:
            stage.submit(draft.id, PaymentRequest(method=PaymentMethod.UPI, upi_id="  "))
        assert exc_info.value.fields == ["upi_id"]

    def test_confirmation_creates_order_once(self, stage, draft, email_sender):
        outcome = stage.submit(draft.id, PaymentRequest(method=PaymentMethod.UPI, upi_id="ada@okbank"))
        assert stage.payment_status(draft.id)["status"] == "awaiting_confirmation"

        order = stage.confirm_upi(outcome.reference, succeeded=True, transaction_id="UTR123")
        assert order.status == OrderStatus.CONFIRMED
        assert order.payment.provider == "upi"
        assert order.payment.currency == "inr"
        assert order.payment.amount == Decimal("207.90")

        again = stage.confirm_upi(outcome.reference, succeeded=True)
        assert again.id == order.id
        assert len(stage.orders.list_orders()) == 1
        assert len(email_sender.sent) == 2

        status = stage.payment_status(draft.id)
        assert status["status"] == "succeeded"
        assert status["order"].id == order.id

    def test_voucher_carried_to_confirmation(self, stage, draft):
        outcome = stage.submit(
            draft.id, PaymentRequest(method=PaymentMethod.UPI, upi_id="ada@okbank", voucher_code="FOUNDER50")
        )
        assert outcome.quote.final_amount == Decimal("103.95")

        order = stage.confirm_upi(outcome.reference, succeeded=True)
        assert order.voucher_code == "FOUNDER50"
        assert order.final_amount == Decimal("103.95")

    def test_failed_confirmation(self, stage, draft):
        outcome = stage.submit(draft.id, PaymentRequest(method=PaymentMethod.UPI, upi_id="ada@okbank"))

        assert stage.confirm_upi(outcome.reference, succeeded=False) is None
        assert stage.payment_status(draft.id) == {"status": "failed", "error": "UPI payment failed"}
        assert stage.orders.list_orders() == []

    def test_unknown_reference(self, stage):
        with pytest.raises(DraftNotFoundError):
            stage.confirm_upi("upi_unknown", succeeded=True)

    def test_timeout_reported(self, stage, draft):
        outcome = stage.submit(draft.id, PaymentRequest(method=PaymentMethod.UPI, upi_id="ada@okbank"))
        later = datetime.now(timezone.utc) + timedelta(seconds=301)

        status = stage.payment_status(draft.id, now=later)
        assert status["status"] == "pending_timeout"
        assert status["reference"] == outcome.reference
        assert status["elapsed_seconds"] >= 300

    def test_not_started(self, stage, draft):
        assert stage.payment_status(draft.id) == {"status": "not_started"}


class TestStripeEvents:
    @pytest.fixture
    def pending_order(self, stage, draft, card_gateway):
        card_gateway.status = "processing"
        return stage.submit(draft.id, card_request()).order

    def test_intent_succeeded_confirms_order(self, stage, pending_order):
        event = {"type": "payment_intent.succeeded", "data": {"object": {"id": pending_order.payment.provider_ref}}}
        order = stage.handle_stripe_event(event)

        assert order.status == OrderStatus.CONFIRMED
        assert order.payment.status == PaymentStatus.SUCCEEDED

    def test_intent_failed_cancels_order(self, stage, pending_order):
        event = {
            "type": "payment_intent.payment_failed",
            "data": {
                "object": {
                    "id": pending_order.payment.provider_ref,
                    "last_payment_error": {"message": "Insufficient funds"},
                }
            },
        }
        order = stage.handle_stripe_event(event)
        assert order.status == OrderStatus.CANCELLED
        assert order.payment.failure_reason == "Insufficient funds"

    def test_refund_uses_charge_payment_intent(self, stage, pending_order):
        event = {
            "type": "charge.refunded",
            "data": {"object": {"id": "ch_1", "payment_intent": pending_order.payment.provider_ref}},
        }
        order = stage.handle_stripe_event(event)
        assert order.payment.status == PaymentStatus.REFUNDED

    def test_unhandled_event_ignored(self, stage):
        assert stage.handle_stripe_event({"type": "customer.created", "data": {"object": {}}}) is None

    def test_unknown_payment(self, stage):
        event = {"type": "payment_intent.succeeded", "data": {"object": {"id": "pi_unknown"}}}
        assert stage.handle_stripe_event(event) is None


class TestOrderEmails:
    def test_emails_disabled(self, stage, draft, email_sender):
        stage.send_order_emails = False
        order = stage.submit(draft.id, card_request()).order

        assert email_sender.sent == []
        assert order.emails_sent == {}

    def test_email_failure_does_not_block_order(self, stage, draft, email_sender):
        email_sender.failures = [ConnectionRefusedError("refused")] * 6
        outcome = stage.submit(draft.id, card_request())

        assert outcome.status == "succeeded"
        assert outcome.order.emails_sent == {}
        assert len(stage.orders.list_orders()) == 1


class TestUpiGateway:
    def test_intent_uri(self):
        gateway = UpiGateway("linkist@paytm", "Linkist NFC")
        assert gateway.intent_uri(Decimal("207.9"), "upi_1") == (
            "upi://pay?pa=linkist@paytm&pn=Linkist%20NFC&am=207.90&cu=INR"
            "&tn=NFC%20Card%20Purchase&tr=upi_1"
        )

    def test_start_generates_reference(self):
        intent = UpiGateway("linkist@paytm", "Linkist NFC").start(Decimal("10"))
        assert intent.reference.startswith("upi_")
        assert intent.uri.endswith(f"tr={intent.reference}")
        assert intent.amount == Decimal("10.00")


class TestStripeGateway:
    def test_requires_secret_key(self):
        with pytest.raises(PaymentProviderNotConfiguredError):
            StripeGateway("")

    def test_charge_with_payment_method(self, monkeypatch):
        calls = []

        def fake_create(**params):
            calls.append(params)
            return SimpleNamespace(id="pi_123", status="succeeded", amount=params["amount"])

        monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create)
        gateway = StripeGateway("sk_test_123")

        result = gateway.charge(Decimal("166.32"), "USD", CARD, idempotency_key="key-1")

        assert result.reference == "pi_123"
        assert result.amount == Decimal("166.32")
        assert calls[0]["amount"] == 16632
        assert calls[0]["currency"] == "usd"
        assert calls[0]["confirm"] is True
        assert calls[0]["idempotency_key"] == "key-1"
        assert calls[0]["api_key"] == "sk_test_123"

    def test_confirmed_intent_amount_checked(self, monkeypatch):
        monkeypatch.setattr(
            stripe.PaymentIntent,
            "retrieve",
            lambda intent_id, **kwargs: SimpleNamespace(id=intent_id, status="succeeded", amount=100, metadata={}),
        )
        gateway = StripeGateway("sk_test_123")
        card = CardDetails(number="4242", expiry="12/30", cvv="123", payment_intent_id="pi_9")

        with pytest.raises(PaymentFailedError):
            gateway.charge(Decimal("166.32"), "usd", card)

        assert gateway.charge(Decimal("1.00"), "usd", card).reference == "pi_9"

    def test_confirmed_intent_must_belong_to_draft(self, monkeypatch):
        monkeypatch.setattr(
            stripe.PaymentIntent,
            "retrieve",
            lambda intent_id, **kwargs: SimpleNamespace(
                id=intent_id, status="succeeded", amount=100, metadata={"draft_id": "draft-a"}
            ),
        )
        gateway = StripeGateway("sk_test_123")
        card = CardDetails(number="4242", expiry="12/30", cvv="123", payment_intent_id="pi_9")

        with pytest.raises(PaymentFailedError) as exc_info:
            gateway.charge(Decimal("1.00"), "usd", card, metadata={"draft_id": "draft-b"})
        assert exc_info.value.reason == "payment intent was created for another checkout"

        result = gateway.charge(Decimal("1.00"), "usd", card, metadata={"draft_id": "draft-a"})
        assert result.reference == "pi_9"

    def test_card_error_becomes_payment_failure(self, monkeypatch):
        def decline(**params):
            raise stripe.CardError("Your card was declined.", None, "card_declined")

        monkeypatch.setattr(stripe.PaymentIntent, "create", decline)
        with pytest.raises(PaymentFailedError):
            StripeGateway("sk_test_123").charge(Decimal("10"), "usd", CARD)

    def test_charge_needs_token_or_intent(self):
        card = CardDetails(number="4242", expiry="12/30", cvv="123")
        with pytest.raises(MissingPaymentDetailsError):
            StripeGateway("sk_test_123").charge(Decimal("10"), "usd", card)

    def test_webhook_requires_secret(self):
        with pytest.raises(WebhookSignatureError):
            StripeGateway("sk_test_123").parse_webhook(b"{}", "t=1,v1=abc")

    def test_webhook_requires_signature(self):
        with pytest.raises(WebhookSignatureError):
            StripeGateway("sk_test_123", webhook_secret="whsec_1").parse_webhook(b"{}", None)

    def test_card_details_repr_hides_number(self):
        assert "4242" not in repr(CARD)
