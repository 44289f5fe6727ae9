"""Data models for linkist."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
import secrets
import uuid

from .errors import InvalidCardConfigError
from .utils import money_str, to_money

MIN_QUANTITY = 1
MAX_QUANTITY = 10


def _utc_now() -> str:
    """Return current UTC time as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_time(value: str) -> datetime:
    """Parse a timestamp written by _utc_now."""
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _generate_id() -> str:
    """Generate a new record ID."""
    return str(uuid.uuid4())


def generate_order_number() -> str:
    """Generate a human-facing order number, e.g. LNK-20251018-3FA92C."""
    today = datetime.now(timezone.utc).strftime("%Y%m%d")
    return f"LNK-{today}-{secrets.token_hex(3).upper()}"


def _opt_money(value: Any) -> Decimal | None:
    return None if value is None else to_money(value)


def _opt_money_str(value: Decimal | None) -> str | None:
    return None if value is None else money_str(value)


class BaseMaterial(str, Enum):
    PVC = "pvc"
    WOOD = "wood"
    METAL = "metal"
    STAINLESS_STEEL = "stainless_steel"


class OrderStatus(str, Enum):
    """Fulfillment states of an order."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    PRODUCTION = "production"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentMethod(str, Enum):
    CARD = "card"
    UPI = "upi"
    VOUCHER = "voucher"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"
    DISPUTED = "disputed"


class EmailType(str, Enum):
    CONFIRMATION = "confirmation"
    RECEIPT = "receipt"
    PRODUCTION = "production"
    SHIPPED = "shipped"
    DELIVERED = "delivered"


@dataclass
class CardConfig:
    """Card personalization chosen by the customer in the configurator."""

    first_name: str
    last_name: str
    base_material: BaseMaterial
    texture: str | None = None
    pattern: int | None = None
    color: str | None = None
    quantity: int = 1

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def to_dict(self) -> dict[str, Any]:
        return {
            "first_name": self.first_name,
            "last_name": self.last_name,
            "base_material": self.base_material.value,
            "texture": self.texture,
            "pattern": self.pattern,
            "color": self.color,
            "quantity": self.quantity,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CardConfig":
        return cls.create(
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            base_material=data.get("base_material", ""),
            texture=data.get("texture"),
            pattern=data.get("pattern"),
            # Older configurator builds saved the British spelling
            color=data.get("color") or data.get("colour"),
            quantity=data.get("quantity", 1),
        )

    @classmethod
    def create(
        cls,
        first_name: str,
        last_name: str,
        base_material: str,
        texture: str | None = None,
        pattern: int | None = None,
        color: str | None = None,
        quantity: int = 1,
    ) -> "CardConfig":
        """
        Create a validated card configuration.

        Raises:
            InvalidCardConfigError: If the material is not a priced material,
                the quantity is outside 1-10, or the name is empty.
        """
        try:
            material = BaseMaterial(str(base_material).strip().lower())
        except ValueError:
            valid = ", ".join(m.value for m in BaseMaterial)
            raise InvalidCardConfigError(
                f"base material '{base_material}' must be one of: {valid}"
            ) from None

        if not isinstance(quantity, int) or isinstance(quantity, bool):
            raise InvalidCardConfigError(f"quantity must be an integer, got {quantity!r}")
        if not MIN_QUANTITY <= quantity <= MAX_QUANTITY:
            raise InvalidCardConfigError(
                f"quantity {quantity} must be between {MIN_QUANTITY} and {MAX_QUANTITY}"
            )
        if not first_name.strip() or not last_name.strip():
            raise InvalidCardConfigError("first and last name are required")

        return cls(
            first_name=first_name.strip(),
            last_name=last_name.strip(),
            base_material=material,
            texture=texture,
            pattern=pattern,
            color=color,
            quantity=quantity,
        )


@dataclass
class ShippingAddress:
    """Where the cards are delivered."""

    full_name: str
    address_line1: str
    city: str
    postal_code: str
    country: str
    address_line2: str | None = None
    state_province: str | None = None
    phone_number: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    area: str | None = None

    def one_line(self) -> str:
        parts = [
            self.address_line1,
            self.address_line2,
            self.city,
            self.state_province,
            self.postal_code,
            self.country,
        ]
        return ", ".join(p for p in parts if p)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "full_name": self.full_name,
            "address_line1": self.address_line1,
            "address_line2": self.address_line2,
            "city": self.city,
            "state_province": self.state_province,
            "postal_code": self.postal_code,
            "country": self.country,
            "phone_number": self.phone_number,
        }
        if self.latitude is not None and self.longitude is not None:
            result["latitude"] = self.latitude
            result["longitude"] = self.longitude
        if self.area is not None:
            result["area"] = self.area
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ShippingAddress":
        return cls(
            full_name=data.get("full_name", ""),
            address_line1=data.get("address_line1", ""),
            address_line2=data.get("address_line2"),
            city=data.get("city", ""),
            state_province=data.get("state_province"),
            postal_code=data.get("postal_code", ""),
            country=data.get("country", ""),
            phone_number=data.get("phone_number"),
            latitude=data.get("latitude"),
            longitude=data.get("longitude"),
            area=data.get("area"),
        )


@dataclass(frozen=True)
class Pricing:
    """Itemized price breakdown for a card order."""

    base_price: Decimal
    quantity: int
    subtotal: Decimal
    tax_rate: Decimal
    tax_label: str
    tax_amount: Decimal
    shipping_cost: Decimal
    total: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "base_price": money_str(self.base_price),
            "quantity": self.quantity,
            "subtotal": money_str(self.subtotal),
            "tax_rate": str(self.tax_rate),
            "tax_label": self.tax_label,
            "tax_amount": money_str(self.tax_amount),
            "shipping_cost": money_str(self.shipping_cost),
            "total": money_str(self.total),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Pricing":
        return cls(
            base_price=to_money(data["base_price"]),
            quantity=int(data["quantity"]),
            subtotal=to_money(data["subtotal"]),
            tax_rate=Decimal(str(data["tax_rate"])),
            tax_label=data["tax_label"],
            tax_amount=to_money(data["tax_amount"]),
            shipping_cost=to_money(data.get("shipping_cost", "0")),
            total=to_money(data["total"]),
        )


@dataclass
class OrderPayload:
    """Pre-payment representation of an order, built at checkout."""

    customer_name: str
    email: str
    phone_number: str
    card_config: CardConfig
    shipping: ShippingAddress
    pricing: Pricing
    is_founder_member: bool = False
    idempotency_key: str = field(default_factory=_generate_id)
    created_at: str = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "customer_name": self.customer_name,
            "email": self.email,
            "phone_number": self.phone_number,
            "card_config": self.card_config.to_dict(),
            "shipping": self.shipping.to_dict(),
            "pricing": self.pricing.to_dict(),
            "is_founder_member": self.is_founder_member,
            "idempotency_key": self.idempotency_key,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OrderPayload":
        return cls(
            customer_name=data["customer_name"],
            email=data["email"],
            phone_number=data.get("phone_number", ""),
            card_config=CardConfig.from_dict(data["card_config"]),
            shipping=ShippingAddress.from_dict(data["shipping"]),
            pricing=Pricing.from_dict(data["pricing"]),
            is_founder_member=data.get("is_founder_member", False),
            idempotency_key=data.get("idempotency_key") or _generate_id(),
            created_at=data.get("created_at", ""),
        )


@dataclass
class OrderConfirmation:
    """Result of a successful (or voucher-satisfied) payment."""

    payload: OrderPayload
    payment_method: PaymentMethod
    payment_id: str
    final_amount: Decimal
    voucher_code: str | None = None
    voucher_discount_percent: int = 0
    founder_discount: Decimal = Decimal("0.00")
    timestamp: str = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        result = self.payload.to_dict()
        result.update(
            {
                "payment_method": self.payment_method.value,
                "payment_id": self.payment_id,
                "final_amount": money_str(self.final_amount),
                "voucher_code": self.voucher_code,
                "voucher_discount_percent": self.voucher_discount_percent,
                "founder_discount": money_str(self.founder_discount),
                "timestamp": self.timestamp,
            }
        )
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OrderConfirmation":
        return cls(
            payload=OrderPayload.from_dict(data),
            payment_method=PaymentMethod(data["payment_method"]),
            payment_id=data["payment_id"],
            final_amount=to_money(data["final_amount"]),
            voucher_code=data.get("voucher_code"),
            voucher_discount_percent=int(data.get("voucher_discount_percent", 0)),
            founder_discount=to_money(data.get("founder_discount", "0")),
            timestamp=data.get("timestamp", ""),
        )


@dataclass
class Payment:
    """Payment record linked to an order."""

    id: str
    provider: str  # "stripe" | "upi" | "voucher"
    provider_ref: str
    amount: Decimal
    currency: str
    status: PaymentStatus
    method: PaymentMethod
    failure_reason: str | None = None
    created_at: str = field(default_factory=_utc_now)
    updated_at: str = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "provider": self.provider,
            "provider_ref": self.provider_ref,
            "amount": money_str(self.amount),
            "currency": self.currency,
            "status": self.status.value,
            "method": self.method.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        if self.failure_reason is not None:
            result["failure_reason"] = self.failure_reason
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Payment":
        return cls(
            id=data["id"],
            provider=data["provider"],
            provider_ref=data["provider_ref"],
            amount=to_money(data["amount"]),
            currency=data.get("currency", "usd"),
            status=PaymentStatus(data["status"]),
            method=PaymentMethod(data["method"]),
            failure_reason=data.get("failure_reason"),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )

    @classmethod
    def create(
        cls,
        provider: str,
        provider_ref: str,
        amount: Decimal,
        currency: str,
        status: PaymentStatus,
        method: PaymentMethod,
    ) -> "Payment":
        now = _utc_now()
        return cls(
            id=_generate_id(),
            provider=provider,
            provider_ref=provider_ref,
            amount=to_money(amount),
            currency=currency,
            status=status,
            method=method,
            created_at=now,
            updated_at=now,
        )


@dataclass
class EmailRecord:
    """A sent order email."""

    sent_at: str
    message_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"sent_at": self.sent_at, "message_id": self.message_id}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EmailRecord":
        return cls(sent_at=data.get("sent_at", ""), message_id=data.get("message_id"))


@dataclass
class StatusChange:
    """One entry of an order's status history."""

    status: OrderStatus
    previous: OrderStatus | None
    changed_at: str
    note: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "previous": self.previous.value if self.previous else None,
            "changed_at": self.changed_at,
            "note": self.note,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StatusChange":
        previous = data.get("previous")
        return cls(
            status=OrderStatus(data["status"]),
            previous=OrderStatus(previous) if previous else None,
            changed_at=data.get("changed_at", ""),
            note=data.get("note"),
        )


@dataclass
class Order:
    """The durable order record administrators manage."""

    id: str
    order_number: str
    status: OrderStatus
    customer_name: str
    email: str
    phone_number: str
    card_config: CardConfig
    shipping: ShippingAddress
    pricing: Pricing
    is_founder_member: bool = False
    payment_method: str | None = None
    final_amount: Decimal | None = None
    founder_discount: Decimal | None = None
    voucher_code: str | None = None
    voucher_discount_percent: int = 0
    idempotency_key: str | None = None
    tracking_number: str | None = None
    tracking_url: str | None = None
    estimated_delivery: str | None = None
    notes: str | None = None
    emails_sent: dict[str, EmailRecord] = field(default_factory=dict)
    payment: Payment | None = None
    status_history: list[StatusChange] = field(default_factory=list)
    created_at: str = field(default_factory=_utc_now)
    updated_at: str = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "order_number": self.order_number,
            "status": self.status.value,
            "customer_name": self.customer_name,
            "email": self.email,
            "phone_number": self.phone_number,
            "card_config": self.card_config.to_dict(),
            "shipping": self.shipping.to_dict(),
            "pricing": self.pricing.to_dict(),
            "is_founder_member": self.is_founder_member,
            "payment_method": self.payment_method,
            "final_amount": _opt_money_str(self.final_amount),
            "founder_discount": _opt_money_str(self.founder_discount),
            "voucher_code": self.voucher_code,
            "voucher_discount_percent": self.voucher_discount_percent,
            "idempotency_key": self.idempotency_key,
            "tracking_number": self.tracking_number,
            "tracking_url": self.tracking_url,
            "estimated_delivery": self.estimated_delivery,
            "notes": self.notes,
            "emails_sent": {k: v.to_dict() for k, v in self.emails_sent.items()},
            "payment": self.payment.to_dict() if self.payment else None,
            "status_history": [h.to_dict() for h in self.status_history],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Order":
        payment = data.get("payment")
        return cls(
            id=data["id"],
            order_number=data["order_number"],
            status=OrderStatus(data["status"]),
            customer_name=data.get("customer_name", ""),
            email=data.get("email", ""),
            phone_number=data.get("phone_number", ""),
            card_config=CardConfig.from_dict(data["card_config"]),
            shipping=ShippingAddress.from_dict(data.get("shipping", {})),
            pricing=Pricing.from_dict(data["pricing"]),
            is_founder_member=data.get("is_founder_member", False),
            payment_method=data.get("payment_method"),
            final_amount=_opt_money(data.get("final_amount")),
            founder_discount=_opt_money(data.get("founder_discount")),
            voucher_code=data.get("voucher_code"),
            voucher_discount_percent=int(data.get("voucher_discount_percent", 0)),
            idempotency_key=data.get("idempotency_key"),
            tracking_number=data.get("tracking_number"),
            tracking_url=data.get("tracking_url"),
            estimated_delivery=data.get("estimated_delivery"),
            notes=data.get("notes"),
            emails_sent={
                k: EmailRecord.from_dict(v) for k, v in data.get("emails_sent", {}).items()
            },
            payment=Payment.from_dict(payment) if payment else None,
            status_history=[StatusChange.from_dict(h) for h in data.get("status_history", [])],
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )

    @classmethod
    def from_confirmation(
        cls,
        confirmation: OrderConfirmation,
        status: OrderStatus,
        payment: Payment | None = None,
        estimated_delivery: str | None = None,
    ) -> "Order":
        """Create a new order with generated ID, order number and timestamps."""
        payload = confirmation.payload
        now = _utc_now()
        return cls(
            id=_generate_id(),
            order_number=generate_order_number(),
            status=status,
            customer_name=payload.customer_name,
            email=payload.email,
            phone_number=payload.phone_number,
            card_config=payload.card_config,
            shipping=payload.shipping,
            pricing=payload.pricing,
            is_founder_member=payload.is_founder_member,
            payment_method=confirmation.payment_method.value,
            final_amount=confirmation.final_amount,
            founder_discount=confirmation.founder_discount,
            voucher_code=confirmation.voucher_code,
            voucher_discount_percent=confirmation.voucher_discount_percent,
            idempotency_key=payload.idempotency_key,
            estimated_delivery=estimated_delivery,
            payment=payment,
            status_history=[StatusChange(status=status, previous=None, changed_at=now, note="Order created")],
            created_at=now,
            updated_at=now,
        )


@dataclass
class PendingPayment:
    """A payment started on a draft and awaiting provider confirmation."""

    reference: str
    method: PaymentMethod
    amount: Decimal
    voucher_code: str | None = None
    voucher_discount_percent: int = 0
    founder_discount: Decimal = Decimal("0.00")
    started_at: str = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "reference": self.reference,
            "method": self.method.value,
            "amount": money_str(self.amount),
            "voucher_code": self.voucher_code,
            "voucher_discount_percent": self.voucher_discount_percent,
            "founder_discount": money_str(self.founder_discount),
            "started_at": self.started_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PendingPayment":
        return cls(
            reference=data["reference"],
            method=PaymentMethod(data["method"]),
            amount=to_money(data["amount"]),
            voucher_code=data.get("voucher_code"),
            voucher_discount_percent=int(data.get("voucher_discount_percent", 0)),
            founder_discount=to_money(data.get("founder_discount", "0")),
            started_at=data.get("started_at", ""),
        )


@dataclass
class CheckoutDraft:
    """Server-side wizard state threaded through configure, checkout and payment."""

    id: str
    card_config: CardConfig | None = None
    order_payload: OrderPayload | None = None
    pending_payment: PendingPayment | None = None
    order_id: str | None = None
    last_payment_error: str | None = None
    created_at: str = field(default_factory=_utc_now)
    updated_at: str = field(default_factory=_utc_now)

    @property
    def step(self) -> str:
        """The next step the customer should be on."""
        if self.order_id:
            return "complete"
        if self.order_payload is not None:
            return "payment"
        if self.card_config is not None:
            return "checkout"
        return "configure"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "card_config": self.card_config.to_dict() if self.card_config else None,
            "order_payload": self.order_payload.to_dict() if self.order_payload else None,
            "pending_payment": self.pending_payment.to_dict() if self.pending_payment else None,
            "order_id": self.order_id,
            "last_payment_error": self.last_payment_error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CheckoutDraft":
        card_config = data.get("card_config")
        payload = data.get("order_payload")
        pending = data.get("pending_payment")
        return cls(
            id=data["id"],
            card_config=CardConfig.from_dict(card_config) if card_config else None,
            order_payload=OrderPayload.from_dict(payload) if payload else None,
            pending_payment=PendingPayment.from_dict(pending) if pending else None,
            order_id=data.get("order_id"),
            last_payment_error=data.get("last_payment_error"),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )

    @classmethod
    def create(cls, card_config: CardConfig | None = None) -> "CheckoutDraft":
        """Create a new draft with generated ID and timestamps."""
        now = _utc_now()
        return cls(id=_generate_id(), card_config=card_config, created_at=now, updated_at=now)
