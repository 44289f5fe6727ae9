"""Payment stage: method rules, provider gateways and order creation.

An order is only written once its payment succeeded, is settling with the
provider, or a voucher covers the whole amount. A rejected charge leaves the
draft as it was so the customer can try again.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable
from urllib.parse import quote, urlencode

import stripe

from .draft_store import DraftStore
from .errors import (
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
from .models import (
    CheckoutDraft,
    Order,
    OrderConfirmation,
    OrderPayload,
    OrderStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    PendingPayment,
    _parse_time,
)
from .notifications import OrderMailer
from .order_store import OrderStore
from .pricing import amount_due, compute_final_amount, founder_discount
from .utils import estimated_delivery, from_minor_units, is_mobile_user_agent, money_str, to_minor_units, to_money
from .vouchers import VoucherResult, validate_voucher

logger = logging.getLogger(__name__)

# Stripe event type -> payment status it settles to
STRIPE_EVENTS: dict[str, PaymentStatus] = {
    "payment_intent.succeeded": PaymentStatus.SUCCEEDED,
    "payment_intent.payment_failed": PaymentStatus.FAILED,
    "charge.refunded": PaymentStatus.REFUNDED,
    "charge.dispute.created": PaymentStatus.DISPUTED,
}


# --- Request types ---


@dataclass
class CardDetails:
    """
    Card form fields.

    The raw number, expiry and CVV are only checked for presence; the charge
    itself goes through a provider token (payment_method) or an intent the
    client already confirmed (payment_intent_id).
    """

    number: str = ""
    expiry: str = ""
    cvv: str = ""
    payment_intent_id: str | None = None
    payment_method: str | None = None

    def missing_fields(self) -> list[str]:
        return [
            name for name in ("number", "expiry", "cvv")
            if not str(getattr(self, name) or "").strip()
        ]

    def __repr__(self) -> str:
        # Never let card data reach a log line
        return f"CardDetails(payment_intent_id={self.payment_intent_id!r})"


@dataclass
class PaymentRequest:
    method: PaymentMethod
    card: CardDetails | None = None
    upi_id: str | None = None
    voucher_code: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class PaymentQuote:
    """What the customer owes for an order payload."""

    total: Decimal
    founder_discount: Decimal
    amount_due: Decimal
    voucher: VoucherResult | None
    final_amount: Decimal

    @property
    def voucher_percent(self) -> int:
        return self.voucher.discount_percent if self.voucher and self.voucher.valid else 0

    @property
    def voucher_error(self) -> str | None:
        if self.voucher is None or self.voucher.valid:
            return None
        return self.voucher.message

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": money_str(self.total),
            "founder_discount": money_str(self.founder_discount),
            "amount_due": money_str(self.amount_due),
            "voucher_code": self.voucher.code if self.voucher and self.voucher.valid else None,
            "voucher_discount_percent": self.voucher_percent,
            "voucher_error": self.voucher_error,
            "final_amount": money_str(self.final_amount),
        }


@dataclass
class PaymentOutcome:
    """
    Result of a payment submission.

    status is "succeeded" (order confirmed), "pending" (order created, the
    provider is still settling) or "awaiting_confirmation" (UPI, no order yet).
    """

    status: str
    quote: PaymentQuote
    order: Order | None = None
    reference: str | None = None
    redirect_url: str | None = None
    qr_data: str | None = None
    voucher_error: str | None = None


@dataclass(frozen=True)
class ChargeResult:
    reference: str
    status: str  # provider status, e.g. "succeeded", "processing"
    amount: Decimal | None = None


@dataclass(frozen=True)
class PaymentIntent:
    id: str
    client_secret: str | None
    amount: Decimal
    currency: str
    status: str


@dataclass(frozen=True)
class UpiIntent:
    reference: str
    uri: str
    amount: Decimal


# --- Gateways ---


class CardGateway:
    """Provider interface for card payments."""

    name = "card"

    def create_intent(
        self, amount: Decimal, currency: str, metadata: dict[str, str] | None = None
    ) -> PaymentIntent:
        raise NotImplementedError

    def charge(
        self,
        amount: Decimal,
        currency: str,
        card: CardDetails,
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> ChargeResult:
        raise NotImplementedError

    def parse_webhook(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        raise NotImplementedError


class StripeGateway(CardGateway):
    """Card payments through Stripe PaymentIntents."""

    name = "stripe"

    def __init__(self, secret_key: str, webhook_secret: str | None = None):
        if not secret_key:
            raise PaymentProviderNotConfiguredError("stripe")
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret

    def create_intent(
        self, amount: Decimal, currency: str, metadata: dict[str, str] | None = None
    ) -> PaymentIntent:
        try:
            intent = stripe.PaymentIntent.create(
                amount=to_minor_units(amount),
                currency=currency.lower(),
                automatic_payment_methods={"enabled": True},
                metadata=metadata or {},
                api_key=self.secret_key,
            )
        except stripe.StripeError as e:
            logger.error("Stripe rejected intent creation: %s", e)
            raise PaymentFailedError(e.user_message or "could not create payment intent") from e

        return PaymentIntent(
            id=intent.id,
            client_secret=intent.client_secret,
            amount=from_minor_units(intent.amount),
            currency=intent.currency,
            status=intent.status,
        )

    def charge(
        self,
        amount: Decimal,
        currency: str,
        card: CardDetails,
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> ChargeResult:
        """
        Verify an already-confirmed intent, or create and confirm one.

        Raises:
            MissingPaymentDetailsError: If there is neither an intent nor a payment method.
            PaymentFailedError: If Stripe rejects the charge or the intent amount is wrong.
        """
        expected = to_minor_units(amount)
        try:
            if card.payment_intent_id:
                intent = stripe.PaymentIntent.retrieve(card.payment_intent_id, api_key=self.secret_key)
                if intent.amount != expected:
                    raise PaymentFailedError(
                        f"payment intent amount {intent.amount} does not match {expected}"
                    )
                intent_draft = (intent.metadata or {}).get("draft_id")
                expected_draft = (metadata or {}).get("draft_id")
                if intent_draft and expected_draft and intent_draft != expected_draft:
                    raise PaymentFailedError("payment intent was created for another checkout")
            elif card.payment_method:
                params: dict[str, Any] = {
                    "amount": expected,
                    "currency": currency.lower(),
                    "payment_method": card.payment_method,
                    "confirm": True,
                    "automatic_payment_methods": {"enabled": True, "allow_redirects": "never"},
                    "metadata": metadata or {},
                    "api_key": self.secret_key,
                }
                if idempotency_key:
                    params["idempotency_key"] = idempotency_key
                intent = stripe.PaymentIntent.create(**params)
            else:
                raise MissingPaymentDetailsError("card", ["payment_method"])
        except stripe.CardError as e:
            logger.info("Card declined: %s", e.code)
            raise PaymentFailedError(e.user_message or "card declined") from e
        except stripe.StripeError as e:
            logger.error("Stripe error while charging: %s", e)
            raise PaymentFailedError(e.user_message or "payment provider error") from e

        return ChargeResult(reference=intent.id, status=intent.status, amount=from_minor_units(intent.amount))

    def parse_webhook(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        """
        Raises:
            WebhookSignatureError: If the secret is missing or the signature doesn't verify.
        """
        if not self.webhook_secret:
            raise WebhookSignatureError("webhook secret not configured")
        if not signature:
            raise WebhookSignatureError("missing Stripe-Signature header")
        try:
            event = stripe.Webhook.construct_event(
                payload=payload, sig_header=signature, secret=self.webhook_secret
            )
        except ValueError as e:
            raise WebhookSignatureError(f"invalid payload: {e}") from e
        except stripe.SignatureVerificationError as e:
            raise WebhookSignatureError("invalid signature") from e
        return event


class UpiGateway:
    """Builds UPI collect intents. Settlement arrives through a callback."""

    def __init__(self, payee_vpa: str, payee_name: str, note: str = "NFC Card Purchase"):
        self.payee_vpa = payee_vpa
        self.payee_name = payee_name
        self.note = note

    def intent_uri(self, amount: Decimal, reference: str | None = None) -> str:
        params = {
            "pa": self.payee_vpa,
            "pn": self.payee_name,
            "am": money_str(amount),
            "cu": "INR",
            "tn": self.note,
        }
        if reference:
            params["tr"] = reference
        return "upi://pay?" + urlencode(params, safe="@", quote_via=quote)

    def start(self, amount: Decimal) -> UpiIntent:
        reference = f"upi_{secrets.token_hex(8)}"
        return UpiIntent(reference=reference, uri=self.intent_uri(amount, reference), amount=to_money(amount))


# --- Payment stage ---


def quote_payment(payload: OrderPayload, voucher_code: str | None = None) -> PaymentQuote:
    """Founder discount first, then the voucher percentage on what is left."""
    discount = founder_discount(payload.pricing, payload.is_founder_member)
    due = amount_due(payload.pricing, payload.is_founder_member)
    voucher = validate_voucher(voucher_code) if voucher_code and voucher_code.strip() else None
    percent = voucher.discount_percent if voucher and voucher.valid else 0
    return PaymentQuote(
        total=payload.pricing.total,
        founder_discount=discount,
        amount_due=due,
        voucher=voucher,
        final_amount=compute_final_amount(due, percent),
    )


def build_confirmation(
    payload: OrderPayload,
    method: PaymentMethod,
    payment_id: str,
    quote: PaymentQuote,
) -> OrderConfirmation:
    voucher = quote.voucher if quote.voucher and quote.voucher.valid else None
    return OrderConfirmation(
        payload=payload,
        payment_method=method,
        payment_id=payment_id,
        final_amount=quote.final_amount,
        voucher_code=voucher.code if voucher else None,
        voucher_discount_percent=quote.voucher_percent,
        founder_discount=quote.founder_discount,
    )


def _utc_datetime() -> datetime:
    return datetime.now(timezone.utc)


class PaymentStage:
    """Runs payments for checkout drafts and turns successful ones into orders."""

    def __init__(
        self,
        orders: OrderStore,
        drafts: DraftStore,
        card_gateway: Callable[[], CardGateway],
        upi_gateway: UpiGateway,
        mailer: OrderMailer | None = None,
        currency: str = "usd",
        upi_timeout: int = 300,
        send_order_emails: bool = True,
    ):
        self.orders = orders
        self.drafts = drafts
        # Built on first card use so UPI and vouchers work without Stripe keys
        self._card_gateway = card_gateway
        self.upi = upi_gateway
        self.mailer = mailer
        self.currency = currency
        self.upi_timeout = upi_timeout
        self.send_order_emails = send_order_emails

    def _ready_draft(self, draft_id: str) -> tuple[CheckoutDraft, OrderPayload]:
        draft = self.drafts.get(draft_id)
        if draft.order_id:
            raise DuplicateOrderError(draft.order_id, "draft already completed")
        if draft.card_config is None:
            raise MissingCardConfigError(draft_id)
        if draft.order_payload is None:
            raise MissingOrderPayloadError(draft_id)
        return draft, draft.order_payload

    def submit(self, draft_id: str, request: PaymentRequest) -> PaymentOutcome:
        """
        Pay for a draft's order payload.

        Raises:
            DraftNotFoundError, MissingCardConfigError, MissingOrderPayloadError:
                If the draft isn't ready for payment.
            DuplicateOrderError: If the draft already produced an order, or the
                card payment already paid for another order.
            MissingPaymentDetailsError: If the method's required fields are empty.
            InvalidVoucherError: If a voucher-only payment has an invalid code.
            IncompletePaymentError: If a voucher-only payment covers less than 100%.
            PaymentFailedError: If the provider rejects the charge.
            PaymentProviderNotConfiguredError: If card payments have no provider.
        """
        with self.drafts.lock():
            draft, payload = self._ready_draft(draft_id)
            quote = quote_payment(payload, request.voucher_code)

            if request.method == PaymentMethod.VOUCHER:
                return self._pay_with_voucher(draft, payload, request, quote)
            if request.method == PaymentMethod.CARD:
                return self._pay_with_card(draft, payload, request, quote)
            return self._pay_with_upi(draft, payload, request, quote)

    def _pay_with_voucher(
        self, draft: CheckoutDraft, payload: OrderPayload, request: PaymentRequest, quote: PaymentQuote
    ) -> PaymentOutcome:
        if quote.voucher is None:
            raise MissingPaymentDetailsError("voucher", ["voucher_code"])
        if not quote.voucher.valid:
            raise InvalidVoucherError(quote.voucher.code or str(request.voucher_code))
        if quote.voucher.discount_percent < 100:
            raise IncompletePaymentError(quote.voucher.discount_percent)
        return self._complete_without_charge(draft, payload, quote, PaymentMethod.VOUCHER)

    def _complete_without_charge(
        self, draft: CheckoutDraft, payload: OrderPayload, quote: PaymentQuote, method: PaymentMethod
    ) -> PaymentOutcome:
        code = quote.voucher.code if quote.voucher else "NONE"
        payment_id = f"voucher_{code}"
        payment = Payment.create(
            provider="voucher",
            provider_ref=payment_id,
            amount=Decimal("0"),
            currency=self.currency,
            status=PaymentStatus.SUCCEEDED,
            method=method,
        )
        confirmation = build_confirmation(payload, method, payment_id, quote)
        order = self._create_order(draft, confirmation, OrderStatus.CONFIRMED, payment)
        logger.info("Order %s fully covered by voucher %s", order.order_number, code)
        return PaymentOutcome(status="succeeded", quote=quote, order=order)

    def _pay_with_card(
        self, draft: CheckoutDraft, payload: OrderPayload, request: PaymentRequest, quote: PaymentQuote
    ) -> PaymentOutcome:
        card = request.card or CardDetails()
        missing = card.missing_fields()
        if missing:
            raise MissingPaymentDetailsError("card", missing)

        if quote.final_amount == 0:
            return self._complete_without_charge(draft, payload, quote, PaymentMethod.CARD)

        gateway = self._card_gateway()
        metadata = {
            "draft_id": draft.id,
            "customer_name": payload.customer_name,
            "email": payload.email,
            "order_type": "NFC Card",
        }
        try:
            result = gateway.charge(
                quote.final_amount, self.currency, card,
                metadata=metadata, idempotency_key=payload.idempotency_key,
            )
            if result.status == "succeeded":
                order_status, payment_status = OrderStatus.CONFIRMED, PaymentStatus.SUCCEEDED
            elif result.status == "processing":
                order_status, payment_status = OrderStatus.PENDING, PaymentStatus.PENDING
            else:
                raise PaymentFailedError(f"payment {result.status.replace('_', ' ')}")
        except PaymentFailedError as e:
            draft.last_payment_error = e.reason
            self.drafts.save(draft)
            raise

        # A provider payment pays for exactly one order
        existing = self.orders.find_by_payment_ref(result.reference)
        if existing is not None:
            logger.warning(
                "Payment %s already used by order %s; rejecting draft %s",
                result.reference, existing.order_number, draft.id,
            )
            raise DuplicateOrderError(existing.id, "payment already used")

        payment = Payment.create(
            provider=gateway.name,
            provider_ref=result.reference,
            amount=quote.final_amount,
            currency=self.currency,
            status=payment_status,
            method=PaymentMethod.CARD,
        )
        confirmation = build_confirmation(payload, PaymentMethod.CARD, result.reference, quote)
        order = self._create_order(draft, confirmation, order_status, payment)
        return PaymentOutcome(
            status="succeeded" if payment_status == PaymentStatus.SUCCEEDED else "pending",
            quote=quote,
            order=order,
            reference=result.reference,
            voucher_error=quote.voucher_error,
        )

    def _pay_with_upi(
        self, draft: CheckoutDraft, payload: OrderPayload, request: PaymentRequest, quote: PaymentQuote
    ) -> PaymentOutcome:
        if not (request.upi_id or "").strip():
            raise MissingPaymentDetailsError("upi", ["upi_id"])

        if quote.final_amount == 0:
            return self._complete_without_charge(draft, payload, quote, PaymentMethod.UPI)

        intent = self.upi.start(quote.final_amount)
        voucher = quote.voucher if quote.voucher and quote.voucher.valid else None
        draft.pending_payment = PendingPayment(
            reference=intent.reference,
            method=PaymentMethod.UPI,
            amount=quote.final_amount,
            voucher_code=voucher.code if voucher else None,
            voucher_discount_percent=quote.voucher_percent,
            founder_discount=quote.founder_discount,
        )
        draft.last_payment_error = None
        self.drafts.save(draft)
        logger.info("UPI payment %s started for draft %s", intent.reference, draft.id)

        mobile = is_mobile_user_agent(request.user_agent)
        return PaymentOutcome(
            status="awaiting_confirmation",
            quote=quote,
            reference=intent.reference,
            redirect_url=intent.uri if mobile else None,
            qr_data=None if mobile else intent.uri,
            voucher_error=quote.voucher_error,
        )

    def _create_order(
        self,
        draft: CheckoutDraft,
        confirmation: OrderConfirmation,
        status: OrderStatus,
        payment: Payment | None,
    ) -> Order:
        order = Order.from_confirmation(
            confirmation, status, payment=payment, estimated_delivery=estimated_delivery()
        )
        self.orders.create_order(order)

        draft.order_id = order.id
        draft.pending_payment = None
        draft.last_payment_error = None
        self.drafts.save(draft)

        if self.mailer is not None and self.send_order_emails:
            for email_type, result in self.mailer.send_lifecycle_emails(order).items():
                if result.success:
                    order = self.orders.record_email(order.id, email_type, result.message_id)
        return order

    def confirm_upi(self, reference: str, succeeded: bool, transaction_id: str | None = None) -> Order | None:
        """
        Settle a UPI payment reported by the provider callback.

        Creates the order on success. A repeated success callback returns the
        order created the first time. Returns None on failure.

        Raises:
            DraftNotFoundError: If no draft or order is waiting on this reference.
        """
        with self.drafts.lock():
            draft = self.drafts.find_by_payment_reference(reference)
            if draft is None:
                existing = self.orders.find_by_payment_ref(reference)
                if existing is not None:
                    return existing
                raise DraftNotFoundError(reference)

            pending = draft.pending_payment
            if not succeeded:
                draft.pending_payment = None
                draft.last_payment_error = "UPI payment failed"
                self.drafts.save(draft)
                logger.info("UPI payment %s failed for draft %s", reference, draft.id)
                return None

            _, payload = self._ready_draft(draft.id)
            quote = quote_payment(payload, pending.voucher_code)
            payment = Payment.create(
                provider="upi",
                provider_ref=reference,
                amount=pending.amount,
                currency="inr",
                status=PaymentStatus.SUCCEEDED,
                method=PaymentMethod.UPI,
            )
            confirmation = build_confirmation(
                payload, PaymentMethod.UPI, transaction_id or reference, quote
            )
            order = self._create_order(draft, confirmation, OrderStatus.CONFIRMED, payment)
            logger.info("UPI payment %s confirmed, order %s", reference, order.order_number)
            return order

    def payment_status(self, draft_id: str, now: datetime | None = None) -> dict[str, Any]:
        """
        Poll a draft's payment.

        Returns a dict with "status" in succeeded, awaiting_confirmation,
        pending_timeout, failed or not_started, plus "order" once one exists.
        """
        draft = self.drafts.get(draft_id)
        if draft.order_id:
            return {"status": "succeeded", "order": self.orders.get_order(draft.order_id)}

        pending = draft.pending_payment
        if pending is not None:
            elapsed = ((now or _utc_datetime()) - _parse_time(pending.started_at)).total_seconds()
            status = "pending_timeout" if elapsed > self.upi_timeout else "awaiting_confirmation"
            return {"status": status, "reference": pending.reference, "elapsed_seconds": int(elapsed)}

        if draft.last_payment_error:
            return {"status": "failed", "error": draft.last_payment_error}
        return {"status": "not_started"}

    def handle_stripe_event(self, event: dict[str, Any]) -> Order | None:
        """Apply a verified Stripe event to the matching order, if any."""
        event_type = event.get("type", "")
        status = STRIPE_EVENTS.get(event_type)
        if status is None:
            logger.info("Ignoring Stripe event %s", event_type)
            return None

        obj = event.get("data", {}).get("object", {})
        ref = obj.get("id") if event_type.startswith("payment_intent.") else obj.get("payment_intent")
        if not ref:
            logger.warning("Stripe event %s has no payment intent", event_type)
            return None

        failure = (obj.get("last_payment_error") or {}).get("message")
        order = self.orders.update_payment_status(ref, status, failure_reason=failure)
        if order is None:
            logger.warning("Stripe event %s for unknown payment %s", event_type, ref)
        return order
