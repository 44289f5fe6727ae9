"""Voucher codes and validation."""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal

from .pricing import compute_final_amount
from .utils import to_money

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Voucher:
    code: str
    discount_percent: int
    active: bool = True
    valid_until: date | None = None  # inclusive

    def is_expired(self, today: date) -> bool:
        return self.valid_until is not None and today > self.valid_until


@dataclass(frozen=True)
class VoucherResult:
    """Outcome of a voucher lookup. Invalid codes are a normal result, not an error."""

    valid: bool
    discount_percent: int
    code: str = ""
    message: str = ""


@dataclass(frozen=True)
class VoucherQuote:
    result: VoucherResult
    order_amount: Decimal
    discount_amount: Decimal
    final_amount: Decimal


VOUCHERS: dict[str, Voucher] = {
    v.code: v
    for v in [
        Voucher("FOUNDER50", 50),
        Voucher("WELCOME20", 20),
        Voucher("FOUNDERFREE", 100),
        Voucher("LAUNCH15", 15, valid_until=date(2024, 12, 31)),
    ]
}


def _today() -> date:
    return datetime.now(timezone.utc).date()


def validate_voucher(code: str | None, today: date | None = None) -> VoucherResult:
    """Look up a voucher code, case-insensitively."""
    normalized = (code or "").strip().upper()
    if not normalized:
        return VoucherResult(valid=False, discount_percent=0, message="Enter a voucher code")

    voucher = VOUCHERS.get(normalized)
    if voucher is None:
        logger.info("Unknown voucher code %s", normalized)
        return VoucherResult(
            valid=False, discount_percent=0, code=normalized, message="Invalid voucher code"
        )
    if not voucher.active:
        return VoucherResult(
            valid=False, discount_percent=0, code=normalized,
            message="This voucher is no longer active",
        )
    if voucher.is_expired(today or _today()):
        return VoucherResult(
            valid=False, discount_percent=0, code=normalized, message="This voucher has expired"
        )

    return VoucherResult(
        valid=True,
        discount_percent=voucher.discount_percent,
        code=normalized,
        message=f"{voucher.discount_percent}% discount applied successfully!",
    )


def quote_voucher(code: str | None, order_amount: Decimal, today: date | None = None) -> VoucherQuote:
    """Validate a code and work out what it takes off an order amount."""
    amount = to_money(order_amount)
    result = validate_voucher(code, today=today)
    final_amount = compute_final_amount(amount, result.discount_percent)
    return VoucherQuote(
        result=result,
        order_amount=amount,
        discount_amount=amount - final_amount,
        final_amount=final_amount,
    )
