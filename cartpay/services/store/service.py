"""Store backend logic: idempotent orders, coupon verdicts, wallet balances.

Order writes follow two rules. Creation is keyed by the checkout attempt's
idempotency key, so a retried POST returns the existing row. Status changes
are guarded by `(order_id, status, state_version)` so concurrent callers (the
client finalize and the gateway webhook, say) cannot both win.

Wallet credit priced into an order is reserved when the order is created,
captured on finalize and released on cancel or expiry, so a pending order
always holds the credit it was priced with.
"""

from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from cartpay.common.config import settings
from cartpay.common.logging import logger
from cartpay.common.metrics import order_transitions_total
from cartpay.common.state_machine import ORDER_TRANSITIONS, OrderStatus, validate_transition
from cartpay.checkout.pricing import coupon_discount
from cartpay.checkout.schemas import CouponDescriptor, PaymentMethod
from cartpay.services.store.models import (
    Coupon,
    CouponUsage,
    Order,
    OrderFinalization,
    OrderTimeline,
    Wallet,
    WalletTransaction,
)
from cartpay.services.store.schemas import CouponValidateResponse, OrderCreateRequest


class OrderNotFoundError(LookupError):
    pass


class IdempotencyMismatchError(PermissionError):
    pass


class OrderConflictError(RuntimeError):
    pass


class InsufficientWalletFundsError(RuntimeError):
    pass


def _aware(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _rejected(reason: str, error: str) -> CouponValidateResponse:
    return CouponValidateResponse(valid=False, reason=reason, error=error)


class StoreService:
    """Owns order, coupon and wallet persistence."""

    def __init__(self, session_factory, service_name: str = "store") -> None:
        self.session_factory = session_factory
        self.service_name = service_name

    def create_order(self, req: OrderCreateRequest) -> tuple[Order, bool]:
        """Create a pending order once per idempotency key.

        Returns `(order, created)`; `created` is False when the key was
        already known, including when a concurrent request won the insert.
        """

        with self.session_factory() as db:
            existing = self._by_key(db, req.idempotency_key)
            if existing:
                return existing, False

            pricing = req.pricing.model_dump(mode="json")
            order = Order(
                idempotency_key=req.idempotency_key,
                user_id=req.user_id,
                cart_id=req.cart_id,
                status=OrderStatus.PENDING.value,
                payment_method=req.payment_method.value,
                currency=req.currency.upper(),
                total_cents=req.pricing.total_cents,
                coupon_code=req.pricing.coupon_code,
                items=[line.model_dump(mode="json") for line in req.items],
                shipping_info=req.shipping_info.model_dump(mode="json"),
                billing_info=req.billing_info.model_dump(mode="json"),
                pricing=pricing,
            )
            db.add(order)
            try:
                db.flush()
                self._reserve_wallet(db, order)
                db.add(
                    OrderTimeline(
                        order_id=order.order_id,
                        from_status=None,
                        to_status=OrderStatus.PENDING.value,
                        reason="order_created",
                    )
                )
                db.commit()
                db.refresh(order)
            except IntegrityError:
                db.rollback()
                existing = self._by_key(db, req.idempotency_key)
                if existing is None:
                    raise
                logger.info("concurrent order creation collapsed order_id=%s", existing.order_id)
                return existing, False
            logger.info("order created order_id=%s total_cents=%s", order.order_id, order.total_cents)
            return order, True

    def _by_key(self, db, idempotency_key: str) -> Order | None:
        return db.execute(select(Order).where(Order.idempotency_key == idempotency_key)).scalar_one_or_none()

    def get_order(self, order_id: str) -> Order:
        with self.session_factory() as db:
            order = db.get(Order, order_id)
            if not order:
                raise OrderNotFoundError(order_id)
            return order

    def timeline(self, order_id: str) -> list[OrderTimeline]:
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(OrderTimeline)
                    .where(OrderTimeline.order_id == order_id)
                    .order_by(OrderTimeline.created_at)
                ).scalars()
            )

    def _transition(self, db, order: Order, new_status: OrderStatus, reason: str) -> None:
        """Apply one validated status change with optimistic concurrency."""

        current = OrderStatus(order.status)
        validate_transition(ORDER_TRANSITIONS, current, new_status)
        version = order.state_version
        result = db.execute(
            update(Order)
            .where(
                Order.order_id == order.order_id,
                Order.status == current.value,
                Order.state_version == version,
            )
            .values(status=new_status.value, state_version=version + 1, updated_at=datetime.now(timezone.utc))
        )
        if result.rowcount != 1:
            raise OrderConflictError(
                f"optimistic concurrency conflict for order {order.order_id} (expected version {version})"
            )
        order.status = new_status.value
        order.state_version = version + 1
        db.add(
            OrderTimeline(
                order_id=order.order_id,
                from_status=current.value,
                to_status=new_status.value,
                reason=reason,
            )
        )
        order_transitions_total.labels(
            service=self.service_name, from_status=current.value, to_status=new_status.value
        ).inc()

    def cancel_order(self, order_id: str, idempotency_key: str, reason: str) -> Order:
        """Cancel an unpaid order owned by the given checkout attempt.

        Cancelling an already-cancelled order is a no-op. Paid or finalized
        orders are never cancelled automatically.
        """

        with self.session_factory() as db:
            order = db.get(Order, order_id)
            if not order:
                raise OrderNotFoundError(order_id)
            if order.idempotency_key != idempotency_key:
                logger.warning("cancel rejected, idempotency key mismatch order_id=%s", order_id)
                raise IdempotencyMismatchError("idempotency key does not match order")
            if order.status == OrderStatus.CANCELLED.value:
                return order
            if order.status == OrderStatus.PAID.value or db.get(OrderFinalization, order_id):
                raise OrderConflictError("order is already paid and cannot be cancelled automatically")
            self._transition(db, order, OrderStatus.CANCELLED, reason=reason)
            self._release_wallet(db, order)
            db.commit()
            return order

    def finalize_order(self, order_id: str, payment_ref: str) -> tuple[Order, bool]:
        """Mark paid and apply wallet debit + coupon usage exactly once per order.

        A repeat with the same `payment_ref` (client and webhook both calling)
        is a no-op; a different `payment_ref` is a conflict.
        """

        with self.session_factory() as db:
            order = db.get(Order, order_id)
            if not order:
                raise OrderNotFoundError(order_id)
            done = db.get(OrderFinalization, order_id)
            if done:
                if done.payment_ref != payment_ref:
                    raise OrderConflictError("order already finalized with a different payment reference")
                return order, False
            if order.status == OrderStatus.CANCELLED.value:
                raise OrderConflictError("order was cancelled before finalization; manual refund required")

            self._transition(db, order, OrderStatus.PAID, reason="payment_confirmed")
            order.payment_ref = payment_ref
            debit = self._settle_wallet(db, order)
            self._record_coupon_usage(db, order)
            db.add(
                OrderFinalization(
                    order_id=order_id,
                    payment_ref=payment_ref,
                    wallet_debit_cents=debit,
                    coupon_code=order.coupon_code,
                )
            )
            try:
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise OrderConflictError("concurrent finalization in progress") from exc
            logger.info("order finalized order_id=%s payment_ref=%s wallet_debit=%s", order_id, payment_ref, debit)
            return order, True

    def _reserve_wallet(self, db, order: Order) -> None:
        """Hold the priced wallet credit for a new order, or refuse the order.

        The guarded UPDATE makes two orders racing for the same balance
        unable to both reserve it.
        """

        amount = int(order.pricing.get("wallet_discount_cents", 0))
        if amount <= 0:
            return
        result = db.execute(
            update(Wallet)
            .where(Wallet.user_id == order.user_id, Wallet.balance_cents >= amount)
            .values(
                balance_cents=Wallet.balance_cents - amount,
                reserved_cents=Wallet.reserved_cents + amount,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.info("wallet reservation refused user_id=%s amount=%s", order.user_id, amount)
            raise InsufficientWalletFundsError(f"wallet balance is below the {amount} cents applied to this order")
        order.wallet_reserved_cents = amount
        order.wallet_reservation_status = "reserved"

    def _release_wallet(self, db, order: Order) -> int:
        """Return a held reservation to the spendable balance."""

        if order.wallet_reservation_status != "reserved":
            return 0
        amount = order.wallet_reserved_cents
        result = db.execute(
            update(Wallet)
            .where(Wallet.user_id == order.user_id, Wallet.reserved_cents >= amount)
            .values(
                balance_cents=Wallet.balance_cents + amount,
                reserved_cents=Wallet.reserved_cents - amount,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.error("wallet reservation missing on release order_id=%s amount=%s", order.order_id, amount)
            return 0
        order.wallet_reservation_status = "released"
        db.add(WalletTransaction(user_id=order.user_id, order_id=order.order_id, kind="release", amount_cents=amount))
        return amount

    def _settle_wallet(self, db, order: Order) -> int:
        """Take the wallet credit for a paid order.

        A live reservation is captured as is. An order whose reservation was
        released by the expiry sweep and paid late is debited from whatever
        balance is left.
        """

        if order.wallet_reservation_status == "reserved":
            amount = order.wallet_reserved_cents
            db.execute(
                update(Wallet)
                .where(Wallet.user_id == order.user_id)
                .values(reserved_cents=Wallet.reserved_cents - amount)
                .execution_options(synchronize_session=False)
            )
            order.wallet_reservation_status = "captured"
            db.add(WalletTransaction(user_id=order.user_id, order_id=order.order_id, kind="debit", amount_cents=amount))
            return amount

        requested = int(order.pricing.get("wallet_discount_cents", 0))
        if requested <= 0:
            return 0
        wallet = db.get(Wallet, order.user_id)
        available = wallet.balance_cents if wallet else 0
        debit = min(requested, available)
        if debit < requested:
            logger.warning(
                "wallet shortfall order_id=%s requested=%s available=%s", order.order_id, requested, available
            )
        if debit:
            wallet.balance_cents -= debit
            order.wallet_reservation_status = "captured"
            db.add(WalletTransaction(user_id=order.user_id, order_id=order.order_id, kind="debit", amount_cents=debit))
        return debit

    def _record_coupon_usage(self, db, order: Order) -> None:
        if not order.coupon_code:
            return
        coupon = db.execute(select(Coupon).where(Coupon.code == order.coupon_code)).scalar_one_or_none()
        if coupon is None:
            logger.warning("coupon vanished before finalization code=%s", order.coupon_code)
            return
        coupon.current_uses += 1
        db.add(CouponUsage(coupon_id=coupon.coupon_id, user_id=order.user_id, order_id=order.order_id))

    def expire_pending_orders(self, now: datetime | None = None) -> tuple[datetime, list[str]]:
        """Expire card orders left pending longer than the configured TTL.

        Bank transfer and cash-on-delivery orders legitimately stay pending
        until paid out of band and are not touched.
        """

        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(seconds=settings.pending_order_ttl_seconds)
        expired: list[str] = []
        with self.session_factory() as db:
            stale = db.execute(
                select(Order).where(
                    Order.status == OrderStatus.PENDING.value,
                    Order.payment_method == PaymentMethod.CARD.value,
                    Order.created_at < cutoff,
                )
            ).scalars().all()
            for order in stale:
                try:
                    self._transition(db, order, OrderStatus.EXPIRED, reason="pending_ttl_exceeded")
                except OrderConflictError as exc:
                    # Lost the race to a finalize or cancel; that writer owns the order now.
                    logger.warning("expiry skipped order_id=%s error=%s", order.order_id, exc)
                    continue
                self._release_wallet(db, order)
                expired.append(order.order_id)
            db.commit()
        if expired:
            logger.info("expired stale pending orders count=%s", len(expired))
        return cutoff, expired

    def validate_coupon(self, code: str, user_id: str, cart_total_cents: int) -> CouponValidateResponse:
        """Eligibility verdict for one coupon code against a cart total."""

        normalized = code.strip().upper()
        with self.session_factory() as db:
            coupon = db.execute(select(Coupon).where(Coupon.code == normalized)).scalar_one_or_none()
            if coupon is None:
                return _rejected("not_found", "coupon not found")
            if not coupon.active:
                return _rejected("inactive", "coupon is not active")
            now = datetime.now(timezone.utc)
            if coupon.starts_at and now < _aware(coupon.starts_at):
                return _rejected("not_started", "coupon is not active yet")
            if coupon.ends_at and now > _aware(coupon.ends_at):
                return _rejected("expired", "coupon has expired")
            if coupon.min_purchase_cents and cart_total_cents < coupon.min_purchase_cents:
                return _rejected("min_purchase", f"minimum purchase is {coupon.min_purchase_cents} cents")
            if coupon.max_uses and coupon.current_uses >= coupon.max_uses:
                return _rejected("usage_limit_reached", "coupon usage limit reached")

            registered = user_id and user_id != "guest"
            if coupon.allowed_users:
                if not registered:
                    return _rejected("login_required", "log in to use this coupon")
                if user_id not in coupon.allowed_users:
                    return _rejected("user_not_allowed", "coupon is not available for this account")
            if coupon.max_uses_per_user and registered:
                used = db.execute(
                    select(func.count())
                    .select_from(CouponUsage)
                    .where(CouponUsage.coupon_id == coupon.coupon_id, CouponUsage.user_id == user_id)
                ).scalar_one()
                if used >= coupon.max_uses_per_user:
                    return _rejected("per_user_limit_reached", "you have already used this coupon")

            descriptor = CouponDescriptor(
                id=coupon.coupon_id,
                code=coupon.code,
                type=coupon.type,
                value=coupon.value,
                free_shipping=coupon.type == "free_shipping",
                max_discount_cents=coupon.max_discount_cents,
            )
            discount = coupon_discount(descriptor, cart_total_cents)
            return CouponValidateResponse(
                valid=True, coupon=descriptor.model_copy(update={"discount_amount_cents": discount})
            )

    def wallet_balance(self, user_id: str) -> int | None:
        with self.session_factory() as db:
            wallet = db.get(Wallet, user_id)
            return wallet.balance_cents if wallet else None
