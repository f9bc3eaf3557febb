"""Pricing engine.

Pure functions turning a cart snapshot plus checkout selections into a
`PricingBreakdown`. Nothing here performs I/O or caches results: callers
recompute whenever the coupon, shipping method, region or wallet opt-in
changes.

All money is integer cents. Percentages and tax rates are applied with
half-up rounding to the cent.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import NamedTuple

from cartpay.common.config import settings
from cartpay.checkout.schemas import (
    CartSnapshot,
    CouponDescriptor,
    CouponType,
    PricingBreakdown,
    ShippingMethod,
)


class TaxRule(NamedTuple):
    rate: Decimal
    name: str
    label: str


# Regional exceptions to the mainland VAT rate. Keys are casefolded provinces.
EXEMPT_REGIONS: dict[str, TaxRule] = {
    "las palmas": TaxRule(Decimal("0"), "IGIC", "IGIC (Exento)"),
    "santa cruz de tenerife": TaxRule(Decimal("0"), "IGIC", "IGIC (Exento)"),
    "ceuta": TaxRule(Decimal("0"), "IPSI", "IPSI (Exento)"),
    "melilla": TaxRule(Decimal("0"), "IPSI", "IPSI (Exento)"),
}


def round_cents(amount: Decimal) -> int:
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def default_tax_rule() -> TaxRule:
    rate = Decimal(str(settings.default_tax_rate))
    percent = (rate * 100).normalize()
    return TaxRule(rate, "IVA", f"IVA ({percent:f}%)")


def tax_rule_for_region(region: str | None) -> TaxRule:
    """Return the single tax rule that applies to a shipping region."""

    key = (region or "").strip().casefold()
    return EXEMPT_REGIONS.get(key) or default_tax_rule()


def shipping_tier_table() -> dict[ShippingMethod, int]:
    return {
        ShippingMethod.STANDARD: 0,
        ShippingMethod.EXPRESS: settings.shipping_express_cents,
        ShippingMethod.URGENT: settings.shipping_urgent_cents,
    }


def shipping_cost(method: ShippingMethod, subtotal_cents: int, free_shipping: bool = False) -> int:
    """Tier price, waived by a free-shipping coupon or the subtotal threshold."""

    if free_shipping or subtotal_cents >= settings.free_shipping_threshold_cents:
        return 0
    return shipping_tier_table()[method]


def coupon_discount(coupon: CouponDescriptor | None, subtotal_cents: int) -> int:
    """Discount a coupon grants on `subtotal_cents`, never exceeding it."""

    if coupon is None:
        return 0
    if coupon.type is CouponType.PERCENTAGE:
        discount = round_cents(Decimal(subtotal_cents) * Decimal(str(coupon.value)) / 100)
        if coupon.max_discount_cents:
            discount = min(discount, coupon.max_discount_cents)
    elif coupon.type is CouponType.FIXED:
        discount = round_cents(Decimal(str(coupon.value)) * 100)
    else:
        discount = 0
    return max(0, min(discount, subtotal_cents))


def compute_breakdown(
    cart: CartSnapshot,
    *,
    region: str | None,
    shipping_method: ShippingMethod = ShippingMethod.STANDARD,
    coupon: CouponDescriptor | None = None,
    use_wallet: bool = False,
    wallet_balance_cents: int = 0,
) -> PricingBreakdown:
    """Price one checkout.

    Tax applies to the discounted subtotal only, never to shipping. The wallet
    offset is capped by both the available balance and the amount due, so the
    total can reach zero but not go below it.
    """

    subtotal = cart.subtotal_cents
    discount = coupon_discount(coupon, subtotal)
    free_shipping = bool(coupon and (coupon.free_shipping or coupon.type is CouponType.FREE_SHIPPING))
    shipping = shipping_cost(shipping_method, subtotal, free_shipping)

    rule = tax_rule_for_region(region)
    taxable = subtotal - discount
    tax = round_cents(Decimal(taxable) * rule.rate)

    due = taxable + shipping + tax
    wallet = min(max(wallet_balance_cents, 0), due) if use_wallet else 0

    return PricingBreakdown(
        subtotal_cents=subtotal,
        coupon_code=coupon.code if coupon else None,
        coupon_discount_cents=discount,
        free_shipping=free_shipping,
        shipping_method=shipping_method,
        shipping_cost_cents=shipping,
        tax_rate=float(rule.rate),
        tax_name=rule.name,
        tax_label=rule.label,
        tax_amount_cents=tax,
        wallet_discount_cents=wallet,
        total_cents=due - wallet,
    )
