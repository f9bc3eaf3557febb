"""Pricing engine: discounts, shipping tiers, regional tax and wallet offset."""

import pytest

from cartpay.checkout.pricing import compute_breakdown, coupon_discount, shipping_cost, tax_rule_for_region
from cartpay.checkout.schemas import CartLine, CartSnapshot, CouponDescriptor, CouponType, ShippingMethod


def _cart(subtotal_cents: int) -> CartSnapshot:
    return CartSnapshot(
        cart_id="c",
        lines=(CartLine(product_id="p", name="Item", unit_price_cents=subtotal_cents, quantity=1),),
    )


def _coupon(type_: CouponType, value: float, **extra) -> CouponDescriptor:
    return CouponDescriptor(id="cp", code="SAVE", type=type_, value=value, **extra)


def test_percentage_coupon_mainland():
    """10000 subtotal, 10% off, Madrid: 1000 off, free shipping, 21% of 9000."""

    breakdown = compute_breakdown(
        _cart(10000), region="Madrid", coupon=_coupon(CouponType.PERCENTAGE, 10)
    )

    assert breakdown.coupon_discount_cents == 1000
    assert breakdown.shipping_cost_cents == 0
    assert breakdown.tax_amount_cents == 1890
    assert breakdown.tax_label == "IVA (21%)"
    assert breakdown.total_cents == 10890


def test_canary_islands_express():
    breakdown = compute_breakdown(_cart(3000), region="Las Palmas", shipping_method=ShippingMethod.EXPRESS)

    assert breakdown.shipping_cost_cents == 495
    assert breakdown.tax_name == "IGIC"
    assert breakdown.tax_amount_cents == 0
    assert breakdown.total_cents == 3495


@pytest.mark.parametrize(
    "region,name",
    [("santa cruz de tenerife", "IGIC"), (" Ceuta ", "IPSI"), ("MELILLA", "IPSI"), ("Sevilla", "IVA"), (None, "IVA")],
)
def test_tax_rule_by_region(region, name):
    assert tax_rule_for_region(region).name == name


def test_free_shipping_threshold_is_inclusive():
    assert shipping_cost(ShippingMethod.URGENT, 5000) == 0
    assert shipping_cost(ShippingMethod.URGENT, 4999) == 995
    assert shipping_cost(ShippingMethod.EXPRESS, 1000, free_shipping=True) == 0


def test_free_shipping_coupon_type_waives_shipping():
    breakdown = compute_breakdown(
        _cart(2000),
        region="Madrid",
        shipping_method=ShippingMethod.EXPRESS,
        coupon=_coupon(CouponType.FREE_SHIPPING, 0),
    )

    assert breakdown.free_shipping
    assert breakdown.shipping_cost_cents == 0
    assert breakdown.coupon_discount_cents == 0


def test_percentage_discount_respects_cap():
    coupon = _coupon(CouponType.PERCENTAGE, 50, max_discount_cents=2000)

    assert coupon_discount(coupon, 10000) == 2000


def test_fixed_discount_never_exceeds_subtotal():
    assert coupon_discount(_coupon(CouponType.FIXED, 15), 10000) == 1500
    assert coupon_discount(_coupon(CouponType.FIXED, 80), 3000) == 3000


def test_tax_rounds_half_up():
    assert compute_breakdown(_cart(3333), region="Madrid").tax_amount_cents == 700


def test_wallet_offset_capped_by_amount_due():
    breakdown = compute_breakdown(_cart(10000), region="Madrid", use_wallet=True, wallet_balance_cents=50000)

    assert breakdown.wallet_discount_cents == 12100
    assert breakdown.total_cents == 0


def test_wallet_ignored_without_opt_in():
    breakdown = compute_breakdown(_cart(10000), region="Madrid", use_wallet=False, wallet_balance_cents=500)

    assert breakdown.wallet_discount_cents == 0
    assert breakdown.total_cents == 12100


def test_total_identity_holds():
    breakdown = compute_breakdown(
        _cart(4321),
        region="Valencia",
        shipping_method=ShippingMethod.URGENT,
        coupon=_coupon(CouponType.PERCENTAGE, 15),
        use_wallet=True,
        wallet_balance_cents=250,
    )

    expected = (
        breakdown.subtotal_cents
        - breakdown.coupon_discount_cents
        + breakdown.shipping_cost_cents
        + breakdown.tax_amount_cents
        - breakdown.wallet_discount_cents
    )
    assert breakdown.total_cents == expected >= 0
