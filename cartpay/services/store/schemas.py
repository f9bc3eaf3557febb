"""API request/response schemas for store endpoints."""

from datetime import datetime

from pydantic import BaseModel, Field

from cartpay.checkout.schemas import CouponDescriptor, OrderDraft


class OrderCreateRequest(OrderDraft):
    """Pending order payload; `idempotency_key` identifies the checkout attempt."""

    idempotency_key: str = Field(min_length=5)


class OrderResponse(BaseModel):
    order_id: str
    idempotency_key: str
    status: str
    payment_method: str
    total_cents: int
    currency: str
    pricing: dict
    payment_ref: str | None = None
    created_at: datetime | None = None


class OrderCancelRequest(BaseModel):
    idempotency_key: str = Field(min_length=5)
    reason: str = Field(default="payment_failed", max_length=200)


class OrderFinalizeRequest(BaseModel):
    payment_ref: str = Field(min_length=1, max_length=255)
    idempotency_key: str | None = None


class CouponValidateRequest(BaseModel):
    code: str = Field(min_length=1, max_length=50)
    user_id: str = "guest"
    cart_total_cents: int = Field(ge=0)


class CouponValidateResponse(BaseModel):
    valid: bool
    coupon: CouponDescriptor | None = None
    reason: str | None = None
    error: str | None = None


class WalletBalanceResponse(BaseModel):
    user_id: str
    balance_cents: int


class ExpiryReport(BaseModel):
    cutoff: datetime
    expired_order_ids: list[str]
