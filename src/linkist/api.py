"""FastAPI REST API for Linkist ordering and order administration."""

import hmac
import logging
from decimal import Decimal
from typing import Any, Literal, Optional

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .checkout import DEFAULT_FOUNDER_MEMBER, build_order_payload, prefill_checkout, validate_checkout_fields
from .config import AppConfig, load_config
from .draft_store import DraftStore
from .errors import (
    CheckoutValidationError,
    DraftNotFoundError,
    DuplicateOrderError,
    EmailDeliveryError,
    IllegalTransitionError,
    IncompletePaymentError,
    InvalidCardConfigError,
    InvalidEmailTypeError,
    InvalidSchemaVersionError,
    InvalidSettingsError,
    InvalidStatusError,
    InvalidVoucherError,
    LinkistError,
    MissingCardConfigError,
    MissingOrderPayloadError,
    MissingPaymentDetailsError,
    NotAuthenticatedError,
    NotAuthorizedError,
    OrderNotFoundError,
    PaymentFailedError,
    PaymentProviderNotConfiguredError,
    PricingMismatchError,
    WebhookSignatureError,
)
from .lifecycle import allowed_next
from .models import (
    CardConfig,
    CheckoutDraft,
    Order,
    OrderPayload,
    OrderStatus,
    PaymentMethod,
    ShippingAddress,
)
from .notifications import OrderMailer, build_sender, parse_email_type
from .order_store import OrderStore, order_totals
from .payments import (
    CardDetails,
    CardGateway,
    PaymentRequest,
    PaymentStage,
    StripeGateway,
    UpiGateway,
    build_confirmation,
    quote_payment,
)
from .pricing import amount_due, compute_pricing, founder_discount
from .settings_store import SettingsStore, mask_secrets
from .utils import estimated_delivery, money_str
from .vouchers import quote_voucher

logger = logging.getLogger(__name__)


# --- Pydantic Schemas ---


class CardConfigSchema(BaseModel):
    first_name: str
    last_name: str
    base_material: str
    texture: Optional[str] = None
    pattern: Optional[int] = None
    color: Optional[str] = None
    quantity: int = 1


class ShippingSchema(BaseModel):
    full_name: str
    address_line1: str
    address_line2: Optional[str] = None
    city: str
    state_province: Optional[str] = None
    postal_code: str
    country: str
    phone_number: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    area: Optional[str] = None


class PricingSchema(BaseModel):
    """Money fields are decimal strings with two places."""

    base_price: str
    quantity: int
    subtotal: str
    tax_rate: str
    tax_label: str
    tax_amount: str
    shipping_cost: str
    total: str


class PaymentSchema(BaseModel):
    id: str
    provider: str
    provider_ref: str
    amount: str
    currency: str
    status: str
    method: str
    failure_reason: Optional[str] = None
    created_at: str
    updated_at: str


class StatusChangeSchema(BaseModel):
    status: str
    previous: Optional[str] = None
    changed_at: str
    note: Optional[str] = None


class EmailRecordSchema(BaseModel):
    sent_at: str
    message_id: Optional[str] = None


class OrderSchema(BaseModel):
    id: str
    order_number: str
    status: str
    customer_name: str
    email: str
    phone_number: str
    card_config: CardConfigSchema
    shipping: ShippingSchema
    pricing: PricingSchema
    is_founder_member: bool = False
    payment_method: Optional[str] = None
    final_amount: Optional[str] = None
    founder_discount: Optional[str] = None
    voucher_code: Optional[str] = None
    voucher_discount_percent: int = 0
    idempotency_key: Optional[str] = None
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    estimated_delivery: Optional[str] = None
    notes: Optional[str] = None
    emails_sent: dict[str, EmailRecordSchema] = {}
    payment: Optional[PaymentSchema] = None
    status_history: list[StatusChangeSchema] = []
    created_at: str
    updated_at: str


class AdminOrderSchema(OrderSchema):
    allowed_statuses: list[str] = []


class OrderTotalsSchema(BaseModel):
    total_orders: int
    total_revenue: str
    average_order_value: str


class OrderListResponse(BaseModel):
    orders: list[OrderSchema]
    count: int
    totals: OrderTotalsSchema


class OrderPayloadSchema(BaseModel):
    customer_name: str
    email: str
    phone_number: str
    card_config: CardConfigSchema
    shipping: ShippingSchema
    pricing: PricingSchema
    is_founder_member: bool = False
    idempotency_key: str
    created_at: str


class PendingPaymentSchema(BaseModel):
    reference: str
    method: str
    amount: str
    voucher_code: Optional[str] = None
    voucher_discount_percent: int = 0
    founder_discount: str = "0.00"
    started_at: str


class DraftSchema(BaseModel):
    id: str
    step: str
    card_config: Optional[CardConfigSchema] = None
    order_payload: Optional[OrderPayloadSchema] = None
    pending_payment: Optional[PendingPaymentSchema] = None
    order_id: Optional[str] = None
    last_payment_error: Optional[str] = None
    created_at: str
    updated_at: str


class PaymentQuoteSchema(BaseModel):
    total: str
    founder_discount: str
    amount_due: str
    voucher_code: Optional[str] = None
    voucher_discount_percent: int = 0
    voucher_error: Optional[str] = None
    final_amount: str


class DraftSubmitResponse(BaseModel):
    draft: DraftSchema
    payment_quote: PaymentQuoteSchema


class PrefillRequest(BaseModel):
    profile: Optional[dict[str, Any]] = None


class PrefillResponse(BaseModel):
    values: dict[str, Any]


class CheckoutSubmitRequest(BaseModel):
    """Raw form fields. Field rules are checked by the checkout validator."""

    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    address_line1: Optional[str] = None
    address_line2: Optional[str] = None
    city: Optional[str] = None
    state_province: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    quantity: Any = None
    is_founder_member: bool = DEFAULT_FOUNDER_MEMBER
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    area: Optional[str] = None
    pricing_total: Optional[Decimal] = Field(
        None, description="Total shown to the customer; rejected if it differs from the server total"
    )
    idempotency_key: Optional[str] = None


class CardDetailsSchema(BaseModel):
    number: str = ""
    expiry: str = ""
    cvv: str = ""
    payment_intent_id: Optional[str] = None
    payment_method: Optional[str] = Field(None, description="Provider payment-method token")


class PaymentSubmitRequest(BaseModel):
    method: Literal["card", "upi", "voucher"]
    card: Optional[CardDetailsSchema] = None
    upi_id: Optional[str] = None
    voucher_code: Optional[str] = None


class PaymentResponse(BaseModel):
    status: str
    quote: PaymentQuoteSchema
    order: Optional[OrderSchema] = None
    reference: Optional[str] = None
    redirect_url: Optional[str] = None
    qr_data: Optional[str] = None
    voucher_error: Optional[str] = None


class PaymentStatusResponse(BaseModel):
    status: str
    order: Optional[OrderSchema] = None
    reference: Optional[str] = None
    elapsed_seconds: Optional[int] = None
    error: Optional[str] = None


class CreateIntentRequest(BaseModel):
    amount: Optional[Decimal] = Field(None, gt=0)
    currency: Optional[str] = None
    draft_id: Optional[str] = Field(None, description="Price the intent from this draft instead of amount")
    voucher_code: Optional[str] = None
    order_data: Optional[dict[str, Any]] = None


class CreateIntentResponse(BaseModel):
    client_secret: Optional[str]
    payment_intent_id: str
    amount: str
    currency: str


class UpiCallbackRequest(BaseModel):
    reference: str
    status: Literal["succeeded", "failed"]
    transaction_id: Optional[str] = None


class OrderCreateRequest(BaseModel):
    customer_name: str
    email: str
    phone_number: str = ""
    card_config: CardConfigSchema
    shipping: ShippingSchema
    pricing_total: Optional[Decimal] = None
    is_founder_member: bool = False
    payment_method: Literal["card", "upi", "voucher"]
    payment_id: str
    voucher_code: Optional[str] = None
    idempotency_key: Optional[str] = None


class OrderCreateResponse(BaseModel):
    order_id: str
    order_number: str
    status: str


class StatusUpdateRequest(BaseModel):
    status: str
    note: Optional[str] = None


class TrackingUpdateRequest(BaseModel):
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    estimated_delivery: Optional[str] = None


class ResendEmailRequest(BaseModel):
    email_type: str = Field(..., description="confirmation|receipt|production|shipped|delivered")


class ResendEmailResponse(BaseModel):
    success: bool
    email_type: str
    message_id: Optional[str] = None


class TestEmailRequest(BaseModel):
    to: Optional[str] = None


class PricingQuoteRequest(BaseModel):
    material: str = "pvc"
    quantity: int = Field(1, ge=1, le=10)
    country: str = "US"
    is_founder_member: bool = False


class PricingQuoteResponse(BaseModel):
    pricing: PricingSchema
    founder_discount: str
    amount_due: str


class VoucherValidateRequest(BaseModel):
    code: str
    order_amount: Optional[Decimal] = Field(None, ge=0)


class VoucherValidateResponse(BaseModel):
    valid: bool
    code: str
    discount_percent: int
    message: str
    discount_amount: Optional[str] = None
    final_amount: Optional[str] = None


# --- Helper Functions ---


def get_config() -> AppConfig:
    return load_config()


def get_order_store() -> OrderStore:
    return OrderStore(get_config().data_dir)


def get_draft_store() -> DraftStore:
    return DraftStore(get_config().data_dir)


def get_settings_store() -> SettingsStore:
    return SettingsStore(get_config().data_dir)


def get_card_gateway() -> CardGateway:
    """
    Raises:
        PaymentProviderNotConfiguredError: If STRIPE_SECRET_KEY is not set.
    """
    config = get_config()
    return StripeGateway(config.stripe_secret_key or "", config.stripe_webhook_secret)


def get_upi_gateway() -> UpiGateway:
    config = get_config()
    return UpiGateway(config.upi_payee_vpa, config.upi_payee_name)


def get_mailer() -> OrderMailer:
    return OrderMailer(build_sender(get_config()))


def order_emails_enabled() -> bool:
    settings = get_settings_store().load()
    return bool(settings["email"]["templates"].get("order_confirmation", True))


def get_payment_stage() -> PaymentStage:
    config = get_config()
    return PaymentStage(
        orders=get_order_store(),
        drafts=get_draft_store(),
        card_gateway=get_card_gateway,
        upi_gateway=get_upi_gateway(),
        mailer=get_mailer(),
        currency=config.currency,
        upi_timeout=config.upi_confirmation_timeout,
        send_order_emails=order_emails_enabled(),
    )


def order_to_schema(order: Order) -> OrderSchema:
    return OrderSchema(**order.to_dict())


def draft_to_schema(draft: CheckoutDraft) -> DraftSchema:
    return DraftSchema(step=draft.step, **draft.to_dict())


def _card_config_from_schema(schema: CardConfigSchema) -> CardConfig:
    return CardConfig.create(**schema.model_dump())


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def require_admin(authorization: Optional[str] = Header(None)) -> dict[str, Any]:
    """
    Gate admin endpoints on LINKIST_ADMIN_TOKEN.

    Raises:
        NotAuthenticatedError: If no bearer token was sent.
        NotAuthorizedError: If the token isn't the admin token.
    """
    config = get_config()
    if not config.admin_token:
        logger.warning("LINKIST_ADMIN_TOKEN not set; admin API is open")
        return {"role": "admin", "authenticated": False}

    token = _bearer_token(authorization)
    if token is None:
        raise NotAuthenticatedError()
    if not hmac.compare_digest(token, config.admin_token):
        raise NotAuthorizedError("guest")
    return {"role": "admin", "authenticated": True}


# --- FastAPI App ---


app = FastAPI(
    title="Linkist API",
    description="Ordering, checkout and order administration for Linkist NFC cards",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=load_config().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Global Exception Handler ---


# Map exception types to HTTP status codes
ERROR_STATUS_CODES: dict[type, int] = {
    CheckoutValidationError: 422,
    InvalidCardConfigError: 422,
    InvalidSettingsError: 422,
    MissingPaymentDetailsError: 422,
    MissingCardConfigError: 409,
    MissingOrderPayloadError: 409,
    PricingMismatchError: 409,
    DuplicateOrderError: 409,
    IllegalTransitionError: 409,
    IncompletePaymentError: 402,
    PaymentFailedError: 402,
    PaymentProviderNotConfiguredError: 503,
    InvalidVoucherError: 400,
    InvalidStatusError: 400,
    InvalidEmailTypeError: 400,
    WebhookSignatureError: 400,
    OrderNotFoundError: 404,
    DraftNotFoundError: 404,
    EmailDeliveryError: 502,
    NotAuthenticatedError: 401,
    NotAuthorizedError: 403,
    InvalidSchemaVersionError: 500,
}


@app.exception_handler(LinkistError)
async def linkist_error_handler(request: Request, exc: LinkistError) -> JSONResponse:
    """Map LinkistError subclasses to appropriate HTTP responses."""
    status_code = ERROR_STATUS_CODES.get(type(exc), 500)
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error_type": type(exc).__name__, **exc.extra()},
    )


# --- Endpoints ---


@app.get("/api/health")
def health_check():
    """Health check endpoint."""
    try:
        orders = get_order_store().list_orders()
        return {"status": "ok", "order_count": len(orders)}
    except LinkistError as e:
        return {"status": "error", "detail": str(e)}


@app.post("/api/pricing/quote", response_model=PricingQuoteResponse)
def pricing_quote(request: PricingQuoteRequest):
    """Price breakdown for a material, quantity and country."""
    pricing = compute_pricing(
        request.material, request.quantity, request.country, request.is_founder_member
    )
    return PricingQuoteResponse(
        pricing=PricingSchema(**pricing.to_dict()),
        founder_discount=money_str(founder_discount(pricing, request.is_founder_member)),
        amount_due=money_str(amount_due(pricing, request.is_founder_member)),
    )


@app.post("/api/vouchers/validate", response_model=VoucherValidateResponse)
def validate_voucher_code(request: VoucherValidateRequest):
    """Check a voucher code. An invalid code is a normal response, not an error."""
    if request.order_amount is None:
        quote = quote_voucher(request.code, Decimal("0"))
        result = quote.result
        return VoucherValidateResponse(
            valid=result.valid,
            code=result.code,
            discount_percent=result.discount_percent,
            message=result.message,
        )

    quote = quote_voucher(request.code, request.order_amount)
    return VoucherValidateResponse(
        valid=quote.result.valid,
        code=quote.result.code,
        discount_percent=quote.result.discount_percent,
        message=quote.result.message,
        discount_amount=money_str(quote.discount_amount),
        final_amount=money_str(quote.final_amount),
    )


# --- Checkout Draft Endpoints ---


@app.post("/api/checkout/drafts", response_model=DraftSchema, status_code=201)
def create_draft(request: CardConfigSchema):
    """Save a card configuration and start a checkout draft."""
    card_config = _card_config_from_schema(request)
    draft = get_draft_store().create(card_config)
    logger.info("Started checkout draft %s", draft.id)
    return draft_to_schema(draft)


@app.get("/api/checkout/drafts/{draft_id}", response_model=DraftSchema)
def get_draft(draft_id: str):
    return draft_to_schema(get_draft_store().get(draft_id))


@app.put("/api/checkout/drafts/{draft_id}/card-config", response_model=DraftSchema)
def replace_card_config(draft_id: str, request: CardConfigSchema):
    """Restart configuration. Any submitted checkout on the draft is discarded."""
    card_config = _card_config_from_schema(request)
    draft = get_draft_store().set_card_config(draft_id, card_config)
    return draft_to_schema(draft)


@app.post("/api/checkout/drafts/{draft_id}/prefill", response_model=PrefillResponse)
def prefill_draft(draft_id: str, request: PrefillRequest):
    """Checkout form defaults from the saved card configuration and user profile."""
    draft = get_draft_store().get(draft_id)
    if draft.card_config is None:
        raise MissingCardConfigError(draft_id)
    return PrefillResponse(values=prefill_checkout(draft.card_config, request.profile))


@app.post("/api/checkout/drafts/{draft_id}/submit", response_model=DraftSubmitResponse)
def submit_checkout(draft_id: str, request: CheckoutSubmitRequest):
    """Validate the checkout form and build the order payload for payment."""
    store = get_draft_store()
    with store.lock():
        draft = store.get(draft_id)
        if draft.order_id:
            raise DuplicateOrderError(draft.order_id, "draft already completed")
        if draft.card_config is None:
            raise MissingCardConfigError(draft_id)

        form = validate_checkout_fields(request.model_dump())
        payload = build_order_payload(
            form,
            draft.card_config,
            client_total=request.pricing_total,
            idempotency_key=request.idempotency_key,
        )
        draft.order_payload = payload
        draft.pending_payment = None
        draft.last_payment_error = None
        store.save(draft)

    return DraftSubmitResponse(
        draft=draft_to_schema(draft),
        payment_quote=PaymentQuoteSchema(**quote_payment(payload).to_dict()),
    )


@app.post("/api/checkout/drafts/{draft_id}/payment", response_model=PaymentResponse)
def submit_payment(draft_id: str, request: PaymentSubmitRequest, http_request: Request):
    """Pay for a submitted checkout with card, UPI or voucher."""
    card = CardDetails(**request.card.model_dump()) if request.card else None
    outcome = get_payment_stage().submit(
        draft_id,
        PaymentRequest(
            method=PaymentMethod(request.method),
            card=card,
            upi_id=request.upi_id,
            voucher_code=request.voucher_code,
            user_agent=http_request.headers.get("user-agent"),
        ),
    )
    return PaymentResponse(
        status=outcome.status,
        quote=PaymentQuoteSchema(**outcome.quote.to_dict()),
        order=order_to_schema(outcome.order) if outcome.order else None,
        reference=outcome.reference,
        redirect_url=outcome.redirect_url,
        qr_data=outcome.qr_data,
        voucher_error=outcome.voucher_error,
    )


@app.get("/api/checkout/drafts/{draft_id}/payment-status", response_model=PaymentStatusResponse)
def get_payment_status(draft_id: str):
    """Poll an asynchronous payment until it succeeds, fails or times out."""
    result = get_payment_stage().payment_status(draft_id)
    order = result.pop("order", None)
    return PaymentStatusResponse(order=order_to_schema(order) if order else None, **result)


# --- Payment Provider Endpoints ---


@app.post("/api/payment/create-intent", response_model=CreateIntentResponse)
def create_payment_intent(request: CreateIntentRequest):
    """Create a card PaymentIntent; the client confirms it with the provider."""
    config = get_config()
    currency = (request.currency or config.currency).lower()
    metadata = {"order_type": "NFC Card"}

    if request.draft_id:
        draft = get_draft_store().get(request.draft_id)
        if draft.order_payload is None:
            raise MissingOrderPayloadError(request.draft_id)
        amount = quote_payment(draft.order_payload, request.voucher_code).final_amount
        metadata.update(
            draft_id=draft.id,
            customer_name=draft.order_payload.customer_name,
            email=draft.order_payload.email,
        )
    elif request.amount is not None:
        amount = request.amount
        data = request.order_data or {}
        metadata.update(
            customer_name=str(data.get("customer_name", "")),
            email=str(data.get("email", "")),
        )
    else:
        raise MissingPaymentDetailsError("card", ["amount"])

    intent = get_card_gateway().create_intent(amount, currency, metadata)
    return CreateIntentResponse(
        client_secret=intent.client_secret,
        payment_intent_id=intent.id,
        amount=money_str(intent.amount),
        currency=intent.currency,
    )


@app.post("/api/payment/upi/callback")
def upi_callback(request: UpiCallbackRequest, x_upi_secret: Optional[str] = Header(None)):
    """Settlement notice for a UPI payment started on a draft."""
    secret = get_config().upi_callback_secret
    if secret and not hmac.compare_digest(x_upi_secret or "", secret):
        raise WebhookSignatureError("invalid UPI callback secret")

    order = get_payment_stage().confirm_upi(
        request.reference, request.status == "succeeded", request.transaction_id
    )
    return {
        "received": True,
        "order_id": order.id if order else None,
        "order_number": order.order_number if order else None,
    }


@app.post("/api/stripe/webhook")
async def stripe_webhook(request: Request):
    """Apply Stripe payment events to the linked orders."""
    payload = await request.body()
    event = get_card_gateway().parse_webhook(payload, request.headers.get("stripe-signature"))
    order = get_payment_stage().handle_stripe_event(event)
    return {"received": True, "order_id": order.id if order else None}


# --- Order Endpoints ---


@app.post("/api/orders", response_model=OrderCreateResponse, status_code=201)
def create_order(request: OrderCreateRequest, admin: dict = Depends(require_admin)):
    """
    Record an order paid outside the checkout flow.

    Pricing and the voucher discount are recomputed; the client total is only
    checked against them.
    """
    card_config = _card_config_from_schema(request.card_config)
    shipping = ShippingAddress(**request.shipping.model_dump())
    pricing = compute_pricing(
        card_config.base_material, card_config.quantity, shipping.country, request.is_founder_member
    )
    if request.pricing_total is not None and money_str(request.pricing_total) != money_str(pricing.total):
        raise PricingMismatchError(money_str(pricing.total), money_str(request.pricing_total))

    payload = OrderPayload(
        customer_name=request.customer_name,
        email=request.email,
        phone_number=request.phone_number,
        card_config=card_config,
        shipping=shipping,
        pricing=pricing,
        is_founder_member=request.is_founder_member,
    )
    if request.idempotency_key:
        payload.idempotency_key = request.idempotency_key

    quote = quote_payment(payload, request.voucher_code)
    if quote.voucher is not None and not quote.voucher.valid:
        raise InvalidVoucherError(quote.voucher.code)

    confirmation = build_confirmation(
        payload, PaymentMethod(request.payment_method), request.payment_id, quote
    )
    order = Order.from_confirmation(
        confirmation, OrderStatus.CONFIRMED, estimated_delivery=estimated_delivery()
    )
    store = get_order_store()
    store.create_order(order)

    if order_emails_enabled():
        for email_type, result in get_mailer().send_lifecycle_emails(order).items():
            if result.success:
                store.record_email(order.id, email_type, result.message_id)

    return OrderCreateResponse(order_id=order.id, order_number=order.order_number, status=order.status.value)


@app.get("/api/orders/{order_id}", response_model=OrderSchema)
def get_order(order_id: str):
    """Order lookup for the success page."""
    return order_to_schema(get_order_store().get_order(order_id))


# --- Admin Endpoints ---


@app.get("/api/admin/orders", response_model=OrderListResponse)
def list_orders(
    search: Optional[str] = Query(default=None),
    status: Optional[str] = Query(default=None),
    admin: dict = Depends(require_admin),
):
    """List orders, optionally filtered by text and status (combined with AND)."""
    orders = get_order_store().list_orders(search=search, status=status)
    totals = order_totals(orders)
    return OrderListResponse(
        orders=[order_to_schema(o) for o in orders],
        count=len(orders),
        totals=OrderTotalsSchema(
            total_orders=totals["total_orders"],
            total_revenue=money_str(totals["total_revenue"]),
            average_order_value=money_str(totals["average_order_value"]),
        ),
    )


@app.get("/api/admin/orders/{order_id}", response_model=AdminOrderSchema)
def get_admin_order(order_id: str, admin: dict = Depends(require_admin)):
    order = get_order_store().get_order(order_id)
    strict = get_config().strict_transitions
    return AdminOrderSchema(
        allowed_statuses=[s.value for s in allowed_next(order.status, strict=strict)],
        **order.to_dict(),
    )


@app.patch("/api/admin/orders/{order_id}/status", response_model=OrderSchema)
def update_order_status(
    order_id: str, request: StatusUpdateRequest, admin: dict = Depends(require_admin)
):
    """Move an order along its lifecycle."""
    strict = get_config().strict_transitions
    order = get_order_store().set_status(order_id, request.status, strict=strict, note=request.note)
    return order_to_schema(order)


@app.patch("/api/admin/orders/{order_id}/tracking", response_model=OrderSchema)
def update_order_tracking(
    order_id: str, request: TrackingUpdateRequest, admin: dict = Depends(require_admin)
):
    """Set tracking number, tracking URL and estimated delivery."""
    order = get_order_store().update_tracking(
        order_id,
        tracking_number=request.tracking_number,
        tracking_url=request.tracking_url,
        estimated_delivery=request.estimated_delivery,
    )
    return order_to_schema(order)


@app.post("/api/admin/orders/{order_id}/resend-email", response_model=ResendEmailResponse)
def resend_order_email(
    order_id: str, request: ResendEmailRequest, admin: dict = Depends(require_admin)
):
    """Send one order email again."""
    email_type = parse_email_type(request.email_type)
    store = get_order_store()
    order = store.get_order(order_id)

    result = get_mailer().send_order_email(email_type, order)
    if not result.success:
        raise EmailDeliveryError(email_type.value, result.error or "unknown error")

    store.record_email(order.id, email_type, result.message_id)
    return ResendEmailResponse(success=True, email_type=email_type.value, message_id=result.message_id)


@app.get("/api/admin/settings")
def get_settings(admin: dict = Depends(require_admin)):
    """System settings with secrets masked."""
    return {"settings": mask_secrets(get_settings_store().load())}


@app.put("/api/admin/settings")
def update_settings(payload: dict[str, Any], admin: dict = Depends(require_admin)):
    """Save settings. Accepts a partial or full settings object."""
    changes = payload.get("settings", payload)
    settings = get_settings_store().update(changes)
    logger.info("System settings updated: %s", ", ".join(sorted(changes)))
    return {"settings": mask_secrets(settings)}


@app.post("/api/admin/settings/test-email")
def send_test_email(request: TestEmailRequest, admin: dict = Depends(require_admin)):
    """Send a test message to check the email configuration."""
    settings = get_settings_store().load()
    to = request.to or settings["general"]["admin_email"]
    try:
        message_id = get_mailer().sender.send(
            to,
            f"Test email | {settings['general']['site_name']}",
            "This is a test email from your Linkist settings panel.",
        )
    except OSError as e:
        raise EmailDeliveryError("test", str(e)) from e
    return {"success": True, "to": to, "message_id": message_id}


# --- Auth ---


ADMIN_PERMISSIONS = ["orders:read", "orders:write", "settings:read", "settings:write"]


@app.get("/api/auth/me")
def auth_me(authorization: Optional[str] = Header(None)):
    """Current user and permissions. Only the admin token is recognised."""
    user = require_admin(authorization)
    return {
        "user": {"role": user["role"]},
        "authenticated": user["authenticated"],
        "permissions": ADMIN_PERMISSIONS,
    }
