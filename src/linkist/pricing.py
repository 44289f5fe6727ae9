"""Order pricing for Linkist NFC cards.

Prices are in the store currency. All arithmetic uses Decimal and rounds
money to cents half-up.
"""

from decimal import Decimal

from .models import BaseMaterial, Pricing
from .utils import to_money

MATERIAL_PRICES: dict[str, Decimal] = {
    BaseMaterial.PVC.value: Decimal("29"),
    BaseMaterial.WOOD.value: Decimal("49"),
    BaseMaterial.METAL.value: Decimal("99"),
    BaseMaterial.STAINLESS_STEEL.value: Decimal("99"),
}
DEFAULT_MATERIAL = BaseMaterial.PVC.value

GST_RATE = Decimal("0.18")
VAT_RATE = Decimal("0.05")
GST_LABEL = "GST (18%)"
VAT_LABEL = "VAT (5%)"

# Shipping is bundled into the base price
SHIPPING_COST = Decimal("0.00")

FOUNDER_DISCOUNT_PERCENT = 10

INDIA_CODE = "IN"


def base_price_for(material: str | BaseMaterial | None) -> Decimal:
    """Look up the unit price of a material, falling back to the PVC price."""
    key = material.value if isinstance(material, BaseMaterial) else str(material or "").strip().lower()
    return MATERIAL_PRICES.get(key, MATERIAL_PRICES[DEFAULT_MATERIAL])


def is_india(country: str | None) -> bool:
    """Exact ISO code match. Callers normalize user input before pricing."""
    return country == INDIA_CODE


def tax_for_country(country: str | None) -> tuple[Decimal, str]:
    """Return (rate, label): 18% GST for India, 5% VAT everywhere else."""
    if is_india(country):
        return GST_RATE, GST_LABEL
    return VAT_RATE, VAT_LABEL


def compute_pricing(
    material: str | BaseMaterial | None,
    quantity: int,
    country: str | None,
    is_founder_member: bool = False,
) -> Pricing:
    """
    Compute the price breakdown for an order.

    The founder-member discount is not part of the total; it is a separate
    line applied at the payment stage (see founder_discount). The flag is
    accepted so callers can pass checkout state through unchanged.
    """
    base_price = to_money(base_price_for(material))
    subtotal = to_money(base_price * quantity)
    tax_rate, tax_label = tax_for_country(country)
    tax_amount = to_money(subtotal * tax_rate)
    shipping_cost = to_money(SHIPPING_COST)

    return Pricing(
        base_price=base_price,
        quantity=quantity,
        subtotal=subtotal,
        tax_rate=tax_rate,
        tax_label=tax_label,
        tax_amount=tax_amount,
        shipping_cost=shipping_cost,
        total=subtotal + tax_amount + shipping_cost,
    )


def founder_discount(pricing: Pricing, is_founder_member: bool) -> Decimal:
    """Founder members get 10% of the subtotal off, shown as its own line."""
    if not is_founder_member:
        return to_money(0)
    return to_money(pricing.subtotal * FOUNDER_DISCOUNT_PERCENT / 100)


def compute_final_amount(total: Decimal, discount_percent: int | Decimal) -> Decimal:
    """Apply a percentage voucher: max(0, total - total * percent / 100)."""
    percent = min(max(Decimal(str(discount_percent)), Decimal(0)), Decimal(100))
    discount = to_money(total * percent / 100)
    return max(to_money(0), to_money(total - discount))


def amount_due(pricing: Pricing, is_founder_member: bool) -> Decimal:
    """What the customer owes before any voucher: total less the founder discount."""
    return max(to_money(0), to_money(pricing.total - founder_discount(pricing, is_founder_member)))
