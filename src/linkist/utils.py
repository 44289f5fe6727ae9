"""Utility functions for linkist."""

import re
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, TYPE_CHECKING

if TYPE_CHECKING:
    from .models import Order

CENT = Decimal("0.01")

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_MOBILE_UA_RE = re.compile(r"Android|webOS|iPhone|iPad|iPod|BlackBerry|IEMobile|Opera Mini", re.I)


def to_money(value: Any) -> Decimal:
    """Convert a number or numeric string to a Decimal rounded to cents (half up)."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def money_str(value: Decimal) -> str:
    """Format a money amount with two decimals."""
    return f"{to_money(value):.2f}"


def to_minor_units(value: Decimal) -> int:
    """Convert an amount to integer cents for payment providers."""
    return int((to_money(value) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> Decimal:
    return to_money(Decimal(amount) / 100)


def is_valid_email(value: str | None) -> bool:
    return bool(value) and _EMAIL_RE.match(value.strip()) is not None


def count_digits(value: str | None) -> int:
    return sum(1 for ch in value or "" if ch.isdigit())


def is_mobile_user_agent(user_agent: str | None) -> bool:
    """Check whether a User-Agent header belongs to a phone or tablet browser."""
    return bool(user_agent) and _MOBILE_UA_RE.search(user_agent) is not None


def estimated_delivery(days: int = 7, now: datetime | None = None) -> str:
    """Return a display date `days` from now, e.g. 'Sat, Sep 06, 2025'."""
    now = now or datetime.now(timezone.utc)
    return (now + timedelta(days=days)).strftime("%a, %b %d, %Y")


def truncate_id(value: str) -> str:
    """Truncate an ID for display."""
    return value[:8]


def format_order(order: "Order", verbose: bool = False) -> str:
    """Format an order for display."""
    total = money_str(order.pricing.total)
    result = (
        f"{truncate_id(order.id)}  {order.order_number}  {order.status.value:<10} "
        f"{total:>9}  {order.customer_name} <{order.email}>"
    )

    if verbose:
        cfg = order.card_config
        result += f"\n         Card: {cfg.first_name} {cfg.last_name}, {cfg.base_material.value} x{cfg.quantity}"
        result += f"\n         Ship to: {order.shipping.one_line()}"
        if order.final_amount is not None:
            result += f"\n         Paid: {money_str(order.final_amount)} via {order.payment_method or 'n/a'}"
        if order.tracking_number:
            result += f"\n         Tracking: {order.tracking_number}"
        if order.emails_sent:
            result += f"\n         Emails: {', '.join(sorted(order.emails_sent))}"

    return result
