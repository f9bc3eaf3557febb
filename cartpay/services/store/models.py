"""Store database models.

This DB is the source of truth for orders and their timeline, coupons and
their usage, and wallet balances. The unique `orders.idempotency_key` index is
what collapses retried order creations.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from cartpay.common.db import Base


class Order(Base):
    """Current state of an order aggregate."""

    __tablename__ = "orders"

    order_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    idempotency_key: Mapped[str] = mapped_column(String, unique=True, index=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    cart_id: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, index=True)
    state_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    payment_method: Mapped[str] = mapped_column(String)
    currency: Mapped[str] = mapped_column(String(3))
    total_cents: Mapped[int] = mapped_column(Integer)
    coupon_code: Mapped[str | None] = mapped_column(String, nullable=True)
    items: Mapped[list] = mapped_column(JSON)
    shipping_info: Mapped[dict] = mapped_column(JSON)
    billing_info: Mapped[dict] = mapped_column(JSON)
    pricing: Mapped[dict] = mapped_column(JSON)
    payment_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    wallet_reserved_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    wallet_reservation_status: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class OrderTimeline(Base):
    """Immutable audit trail of every order status change."""

    __tablename__ = "order_timeline"

    timeline_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.order_id"), index=True)
    from_status: Mapped[str | None] = mapped_column(String, nullable=True)
    to_status: Mapped[str] = mapped_column(String)
    reason: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class OrderFinalization(Base):
    """One row per finalized order; the primary key makes finalize idempotent."""

    __tablename__ = "order_finalizations"

    order_id: Mapped[str] = mapped_column(ForeignKey("orders.order_id"), primary_key=True)
    payment_ref: Mapped[str] = mapped_column(String)
    wallet_debit_cents: Mapped[int] = mapped_column(Integer, default=0)
    coupon_code: Mapped[str | None] = mapped_column(String, nullable=True)
    finalized_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Coupon(Base):
    __tablename__ = "coupons"

    coupon_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    code: Mapped[str] = mapped_column(String, unique=True, index=True)
    type: Mapped[str] = mapped_column(String)
    value: Mapped[float] = mapped_column(Float)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    min_purchase_cents: Mapped[int] = mapped_column(Integer, default=0)
    max_discount_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_uses: Mapped[int] = mapped_column(Integer, default=0)
    max_uses_per_user: Mapped[int] = mapped_column(Integer, default=0)
    current_uses: Mapped[int] = mapped_column(Integer, default=0)
    allowed_users: Mapped[list] = mapped_column(JSON, default=list)
    starts_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class CouponUsage(Base):
    __tablename__ = "coupon_usage"
    __table_args__ = (UniqueConstraint("coupon_id", "order_id", name="uq_coupon_usage_order"),)

    usage_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    coupon_id: Mapped[str] = mapped_column(ForeignKey("coupons.coupon_id"), index=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    order_id: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Wallet(Base):
    __tablename__ = "wallets"
    __table_args__ = (
        CheckConstraint("balance_cents >= 0", name="ck_wallet_non_negative"),
        CheckConstraint("reserved_cents >= 0", name="ck_wallet_reserved_non_negative"),
    )

    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    balance_cents: Mapped[int] = mapped_column(Integer, default=0)
    # Held for pending orders; moved out on finalize, back to balance on cancel or expiry.
    reserved_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class WalletTransaction(Base):
    """Append-only wallet movements; one debit per order at most."""

    __tablename__ = "wallet_transactions"
    __table_args__ = (UniqueConstraint("order_id", "kind", name="uq_wallet_tx_order_kind"),)

    transaction_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    user_id: Mapped[str] = mapped_column(ForeignKey("wallets.user_id"), index=True)
    order_id: Mapped[str] = mapped_column(String)
    kind: Mapped[str] = mapped_column(String)
    amount_cents: Mapped[int] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
