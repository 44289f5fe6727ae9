"""Checkout form validation, auto-fill and order payload building."""

import dataclasses
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from .errors import CheckoutValidationError, PricingMismatchError
from .models import MAX_QUANTITY, MIN_QUANTITY, CardConfig, OrderPayload, ShippingAddress
from .pricing import compute_pricing
from .utils import count_digits, is_valid_email, money_str, to_money

logger = logging.getLogger(__name__)

MIN_PHONE_DIGITS = 10

DEFAULT_COUNTRY = "US"

# Checkout opens with the founder-member offer selected
DEFAULT_FOUNDER_MEMBER = True

# Saved profiles store country names; the form uses ISO codes
COUNTRY_CODES = {
    "United States": "US",
    "United Arab Emirates": "AE",
    "India": "IN",
    "Canada": "CA",
    "United Kingdom": "GB",
    "Australia": "AU",
    "Germany": "DE",
    "France": "FR",
    "Singapore": "SG",
}

# Form field -> keys a saved profile may use for it
_PROFILE_FIELDS: dict[str, tuple[str, ...]] = {
    "email": ("email",),
    "first_name": ("first_name",),
    "last_name": ("last_name",),
    "phone": ("phone", "mobile", "phone_number"),
    "address_line1": ("address_line1",),
    "address_line2": ("address_line2",),
    "city": ("city",),
    "state_province": ("state_province", "state"),
    "postal_code": ("postal_code",),
    "country": ("country",),
}


@dataclass
class CheckoutForm:
    """Validated contact and shipping fields."""

    email: str
    first_name: str
    last_name: str
    phone: str
    address_line1: str
    city: str
    postal_code: str
    country: str
    quantity: int | None
    is_founder_member: bool = False
    address_line2: str | None = None
    state_province: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    area: str | None = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


def _text(fields: dict[str, Any], name: str) -> str:
    value = fields.get(name)
    return str(value).strip() if value is not None else ""


def _country_code(country: str) -> str:
    return COUNTRY_CODES.get(country.title(), country).upper()


def validate_checkout_fields(fields: dict[str, Any]) -> CheckoutForm:
    """
    Validate raw checkout fields.

    Collects every problem before failing so the form can show all messages
    at once.

    Raises:
        CheckoutValidationError: With a field -> message map.
    """
    errors: dict[str, str] = {}

    email = _text(fields, "email")
    if not is_valid_email(email):
        errors["email"] = "Invalid email address"

    required = {
        "first_name": "First name is required",
        "last_name": "Last name is required",
        "address_line1": "Address is required",
        "city": "City is required",
        "postal_code": "Postal code is required",
        "country": "Country is required",
    }
    for name, message in required.items():
        if not _text(fields, name):
            errors[name] = message

    phone = _text(fields, "phone")
    if count_digits(phone) < MIN_PHONE_DIGITS:
        errors["phone"] = "Valid phone number required"

    # Absent quantity keeps the one chosen in the card configuration
    quantity = fields.get("quantity")
    if quantity is not None:
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            errors["quantity"] = "Quantity must be a whole number"
        elif not MIN_QUANTITY <= quantity <= MAX_QUANTITY:
            errors["quantity"] = f"Quantity must be between {MIN_QUANTITY} and {MAX_QUANTITY}"

    if errors:
        logger.debug("Checkout validation failed for fields: %s", sorted(errors))
        raise CheckoutValidationError(errors)

    return CheckoutForm(
        email=email,
        first_name=_text(fields, "first_name"),
        last_name=_text(fields, "last_name"),
        phone=phone,
        address_line1=_text(fields, "address_line1"),
        address_line2=_text(fields, "address_line2") or None,
        city=_text(fields, "city"),
        state_province=_text(fields, "state_province") or None,
        postal_code=_text(fields, "postal_code"),
        country=_country_code(_text(fields, "country")),
        quantity=quantity,
        is_founder_member=bool(fields.get("is_founder_member", DEFAULT_FOUNDER_MEMBER)),
        latitude=fields.get("latitude"),
        longitude=fields.get("longitude"),
        area=fields.get("area"),
    )


def prefill_checkout(card_config: CardConfig, profile: dict[str, Any] | None = None) -> dict[str, Any]:
    """
    Build checkout form defaults.

    Values from the saved card configuration win; a saved user profile only
    fills fields the configuration left empty.
    """
    values: dict[str, Any] = {
        "first_name": card_config.first_name,
        "last_name": card_config.last_name,
        "quantity": card_config.quantity,
    }

    for name, keys in _PROFILE_FIELDS.items():
        if values.get(name):
            continue
        for key in keys:
            value = (profile or {}).get(key)
            if value:
                values[name] = value
                break

    country = values.get("country")
    values["country"] = COUNTRY_CODES.get(country, country) if country else DEFAULT_COUNTRY
    values.setdefault("is_founder_member", DEFAULT_FOUNDER_MEMBER)
    return values


def build_order_payload(
    form: CheckoutForm,
    card_config: CardConfig,
    client_total: Decimal | None = None,
    idempotency_key: str | None = None,
) -> OrderPayload:
    """
    Merge validated form fields and the card configuration into an order payload.

    Pricing is always recomputed from the material, quantity and country. A
    total the client computed is only checked against it.

    Raises:
        PricingMismatchError: If the supplied total differs from the server total.
    """
    quantity = form.quantity if form.quantity is not None else card_config.quantity
    config = dataclasses.replace(card_config, quantity=quantity)
    server_pricing = compute_pricing(
        config.base_material, config.quantity, form.country, form.is_founder_member
    )
    if client_total is not None and to_money(client_total) != server_pricing.total:
        raise PricingMismatchError(money_str(server_pricing.total), money_str(client_total))

    shipping = ShippingAddress(
        full_name=form.full_name,
        address_line1=form.address_line1,
        address_line2=form.address_line2,
        city=form.city,
        state_province=form.state_province,
        postal_code=form.postal_code,
        country=form.country,
        phone_number=form.phone,
        latitude=form.latitude,
        longitude=form.longitude,
        area=form.area,
    )

    payload = OrderPayload(
        customer_name=form.full_name,
        email=form.email,
        phone_number=form.phone,
        card_config=config,
        shipping=shipping,
        pricing=server_pricing,
        is_founder_member=form.is_founder_member,
    )
    if idempotency_key:
        payload.idempotency_key = idempotency_key
    return payload
