"""Checkout data model: cart snapshot, form input, coupons, pricing and outcomes."""

import re
from datetime import date
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from cartpay.common.errors import ValidationError
from cartpay.common.state_machine import CheckoutState


LETTERS = r"^[a-zA-ZáéíóúÁÉÍÓÚñÑüÜ\s]+$"
SPANISH_PHONE = r"^(\+34|0034|34)?[\s-]?[6-9]\d{2}[\s-]?\d{2}[\s-]?\d{2}[\s-]?\d{2}$"
EMAIL = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class ShippingMethod(str, Enum):
    STANDARD = "standard"
    EXPRESS = "express"
    URGENT = "urgent"


class PaymentMethod(str, Enum):
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"
    CASH_ON_DELIVERY = "cash_on_delivery"


class CouponType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"
    FREE_SHIPPING = "free_shipping"


class CartLine(BaseModel):
    """One cart line as seen at checkout time."""

    model_config = ConfigDict(frozen=True)

    product_id: str = Field(min_length=1)
    name: str
    unit_price_cents: int = Field(ge=0)
    quantity: int = Field(ge=1)

    @property
    def line_total_cents(self) -> int:
        return self.unit_price_cents * self.quantity


class CartSnapshot(BaseModel):
    """Immutable view of the cart, read once at the start of an attempt."""

    model_config = ConfigDict(frozen=True)

    cart_id: str = Field(min_length=1)
    user_id: str = "guest"
    lines: tuple[CartLine, ...] = ()

    @property
    def subtotal_cents(self) -> int:
        return sum(line.line_total_cents for line in self.lines)

    @property
    def is_empty(self) -> bool:
        return not self.lines


class ShippingInfo(BaseModel):
    """Delivery contact and address. `state` is the province used for tax."""

    first_name: str = Field(min_length=2, max_length=50, pattern=LETTERS)
    last_name: str = Field(min_length=2, max_length=100, pattern=LETTERS)
    email: str = Field(min_length=5, max_length=100, pattern=EMAIL)
    phone: str = Field(min_length=9, max_length=15, pattern=SPANISH_PHONE)
    address: str = Field(min_length=5, max_length=200)
    city: str = Field(min_length=2, max_length=100, pattern=LETTERS)
    state: str = Field(min_length=2, max_length=100)
    zip_code: str = Field(pattern=r"^\d{5}$")
    country: str = "España"
    notes: str | None = Field(default=None, max_length=500)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return value.strip().lower()


class BillingInfo(BaseModel):
    full_name: str = Field(min_length=3, max_length=150)
    tax_id: str | None = Field(default=None, max_length=20)
    address: str = Field(min_length=5, max_length=200)
    city: str = Field(min_length=2, max_length=100)
    state: str = Field(min_length=2, max_length=100)
    zip_code: str = Field(pattern=r"^\d{5}$")
    country: str = "España"

    @classmethod
    def from_shipping(cls, shipping: ShippingInfo) -> "BillingInfo":
        return cls(
            full_name=f"{shipping.first_name} {shipping.last_name}",
            address=shipping.address,
            city=shipping.city,
            state=shipping.state,
            zip_code=shipping.zip_code,
            country=shipping.country,
        )


def luhn_valid(number: str) -> bool:
    total = 0
    for index, char in enumerate(reversed(number)):
        digit = int(char)
        if index % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


class CardInput(BaseModel):
    """Raw card entry.

    Only ever handed to the gateway's tokenizer; never persisted, logged or
    included in an order draft.
    """

    number: SecretStr
    holder_name: str = Field(min_length=3, max_length=100, pattern=r"^[a-zA-Z\s]+$")
    expiry: str = Field(pattern=r"^\d{2}/\d{2}$")
    cvc: SecretStr

    @field_validator("number")
    @classmethod
    def _check_number(cls, value: SecretStr) -> SecretStr:
        digits = re.sub(r"\s", "", value.get_secret_value())
        if not digits.isdigit() or not 13 <= len(digits) <= 19:
            raise ValueError("card number must have 13-19 digits")
        if not luhn_valid(digits):
            raise ValueError("card number fails Luhn check")
        return SecretStr(digits)

    @field_validator("expiry")
    @classmethod
    def _check_expiry(cls, value: str) -> str:
        month, year = (int(part) for part in value.split("/"))
        if not 1 <= month <= 12:
            raise ValueError("expiry month must be 01-12")
        today = date.today()
        if (2000 + year, month) < (today.year, today.month):
            raise ValueError("card has expired")
        return value

    @field_validator("cvc")
    @classmethod
    def _check_cvc(cls, value: SecretStr) -> SecretStr:
        if not re.fullmatch(r"\d{3,4}", value.get_secret_value()):
            raise ValueError("cvc must be 3 or 4 digits")
        return value


class CheckoutInput(BaseModel):
    """Everything the UI collected for one `placeOrder` call."""

    shipping: ShippingInfo
    billing: BillingInfo | None = None
    shipping_method: ShippingMethod = ShippingMethod.STANDARD
    payment_method: PaymentMethod
    card: CardInput | None = None
    coupon_code: str | None = Field(default=None, max_length=50)
    use_wallet: bool = False
    accept_terms: bool = False

    @model_validator(mode="after")
    def _check_consistency(self) -> "CheckoutInput":
        if not self.accept_terms:
            raise ValueError("terms must be accepted")
        if self.payment_method is PaymentMethod.CARD and self.card is None:
            raise ValueError("card details are required for card payments")
        return self

    @property
    def billing_or_shipping(self) -> BillingInfo:
        return self.billing or BillingInfo.from_shipping(self.shipping)


def parse_checkout_input(raw) -> CheckoutInput:
    """Validate UI input, surfacing only the first failing field."""

    if isinstance(raw, CheckoutInput):
        return raw
    try:
        return CheckoutInput.model_validate(raw)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first["loc"]) or "checkout"
        raise ValidationError(field, first["msg"]) from exc


class CouponDescriptor(BaseModel):
    """Verdict returned by the coupon service for one code."""

    model_config = ConfigDict(frozen=True)

    id: str
    code: str
    type: CouponType
    value: float = Field(ge=0)
    discount_amount_cents: int = Field(default=0, ge=0)
    free_shipping: bool = False
    max_discount_cents: int | None = None


class PricingBreakdown(BaseModel):
    """Computed, never persisted by the engine; the order store keeps a copy."""

    model_config = ConfigDict(frozen=True)

    subtotal_cents: int
    coupon_code: str | None = None
    coupon_discount_cents: int = 0
    free_shipping: bool = False
    shipping_method: ShippingMethod = ShippingMethod.STANDARD
    shipping_cost_cents: int = 0
    tax_rate: float
    tax_name: str
    tax_label: str
    tax_amount_cents: int = 0
    wallet_discount_cents: int = 0
    total_cents: int


class OrderDraft(BaseModel):
    """What gets persisted as a pending order. Never contains card data."""

    user_id: str
    cart_id: str
    items: list[CartLine]
    shipping_info: ShippingInfo
    billing_info: BillingInfo
    pricing: PricingBreakdown
    payment_method: PaymentMethod
    currency: str = Field(min_length=3, max_length=3)


class OrderOutcome(BaseModel):
    """The single terminal result of one checkout attempt."""

    state: CheckoutState
    idempotency_key: str
    order_id: str | None = None
    pricing: PricingBreakdown | None = None
    payment_status: str | None = None
    error_code: str | None = None
    message: str = ""
    field: str | None = None
    clear_cart: bool = False
    redirect_to: str | None = None
    support_required: bool = False
    warnings: list[str] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state is CheckoutState.COMPLETED
