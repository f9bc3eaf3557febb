"""Checkout orchestrator.

Turns a cart snapshot plus the UI's checkout input into exactly one terminal
`OrderOutcome` per attempt:

    DRAFT -> VALIDATING -> PRICING_COMPUTED -> ORDER_CREATED
          -> PAYMENT_IN_FLIGHT -> COMPLETED | FAILED

This is the only place that decides whether a pending order gets cancelled.
Any failure after the order exists cancels it, except an ambiguous payment
outcome, which leaves the order pending for reconciliation.
"""

import time
from dataclasses import dataclass, field
from uuid import uuid4

import httpx

from cartpay.common.config import settings
from cartpay.common.errors import (
    CheckoutError,
    CheckoutInProgressError,
    ConsistencyRiskError,
    ValidationError,
)
from cartpay.common.logging import idempotency_key_ctx, logger, order_id_ctx
from cartpay.common.metrics import checkout_attempts_total, checkout_latency_seconds, checkout_outcomes_total
from cartpay.common.state_machine import CHECKOUT_TRANSITIONS, CheckoutState, validate_transition
from cartpay.checkout.coupons import CouponValidator
from cartpay.checkout.ledger import OrderLedgerClient
from cartpay.checkout.notifications import LoggingNotifier, NotificationKind, Notifier
from cartpay.checkout.payment import PaymentConfirmation, PaymentConfirmationProtocol, PaymentResult
from cartpay.checkout.pricing import compute_breakdown
from cartpay.checkout.schemas import (
    CartSnapshot,
    CheckoutInput,
    CouponDescriptor,
    OrderDraft,
    OrderOutcome,
    PaymentMethod,
    PricingBreakdown,
    ShippingMethod,
    parse_checkout_input,
)
from cartpay.checkout.wallet import WalletClient

SUPPORT_MESSAGE = (
    "We could not confirm your payment. Your order is on hold; please contact support "
    "before trying again so you are not charged twice."
)
FINALIZE_DELAYED_MESSAGE = "Payment received; your order confirmation may take a few minutes."


def new_idempotency_key() -> str:
    return f"order_{uuid4().hex}"


@dataclass
class CheckoutAttempt:
    """State of one user-initiated checkout attempt."""

    cart: CartSnapshot
    idempotency_key: str
    state: CheckoutState = CheckoutState.DRAFT
    history: list[CheckoutState] = field(default_factory=lambda: [CheckoutState.DRAFT])
    checkout: CheckoutInput | None = None
    pricing: PricingBreakdown | None = None
    order_id: str | None = None
    payment: PaymentConfirmation | None = None
    warnings: list[str] = field(default_factory=list)

    def move(self, new_state: CheckoutState) -> None:
        validate_transition(CHECKOUT_TRANSITIONS, self.state, new_state)
        logger.info("checkout transition %s -> %s", self.state.value, new_state.value)
        self.state = new_state
        self.history.append(new_state)


class CheckoutSession:
    """UI-side checkout state for one cart between edits.

    Quotes are recomputed on every call. Applying a coupon validates it against
    the coupon service and replaces any previous one; removing is local.
    """

    def __init__(self, orchestrator: "CheckoutOrchestrator", cart: CartSnapshot) -> None:
        self.orchestrator = orchestrator
        self.cart = cart
        self.coupon: CouponDescriptor | None = None

    async def apply_coupon(self, code: str) -> CouponDescriptor:
        self.coupon = await self.orchestrator.coupons.validate(code, self.cart.subtotal_cents, self.cart.user_id)
        return self.coupon

    def remove_coupon(self) -> None:
        self.coupon = None

    def quote(
        self,
        region: str | None,
        shipping_method: ShippingMethod = ShippingMethod.STANDARD,
        use_wallet: bool = False,
        wallet_balance_cents: int = 0,
    ) -> PricingBreakdown:
        return compute_breakdown(
            self.cart,
            region=region,
            shipping_method=shipping_method,
            coupon=self.coupon,
            use_wallet=use_wallet,
            wallet_balance_cents=wallet_balance_cents,
        )


class CheckoutOrchestrator:
    """Single entry point (`place_order`) used by the UI layer."""

    def __init__(
        self,
        ledger: OrderLedgerClient,
        payments: PaymentConfirmationProtocol,
        coupons: CouponValidator,
        wallet: WalletClient,
        notifier: Notifier | None = None,
        service_name: str | None = None,
        key_factory=new_idempotency_key,
    ) -> None:
        self.ledger = ledger
        self.payments = payments
        self.coupons = coupons
        self.wallet = wallet
        self.notifier = notifier or LoggingNotifier()
        self.service_name = service_name or settings.service_name
        self.key_factory = key_factory
        self._in_flight: set[str] = set()

    def session(self, cart: CartSnapshot) -> CheckoutSession:
        return CheckoutSession(self, cart)

    def is_in_flight(self, cart_id: str) -> bool:
        return cart_id in self._in_flight

    async def place_order(self, raw_input, cart: CartSnapshot) -> OrderOutcome:
        """Run one checkout attempt for `cart`.

        Raises `CheckoutInProgressError` if an attempt for the same cart is
        still running; otherwise always returns an outcome.
        """

        if cart.cart_id in self._in_flight:
            raise CheckoutInProgressError("a checkout for this cart is already in progress")
        self._in_flight.add(cart.cart_id)

        attempt = CheckoutAttempt(cart=cart, idempotency_key=self.key_factory())
        key_token = idempotency_key_ctx.set(attempt.idempotency_key)
        order_token = order_id_ctx.set("")
        checkout_attempts_total.labels(service=self.service_name).inc()
        start = time.perf_counter()
        try:
            outcome = await self._drive(attempt, raw_input)
            method = attempt.checkout.payment_method.value if attempt.checkout else "unknown"
            checkout_latency_seconds.labels(service=self.service_name, payment_method=method).observe(
                time.perf_counter() - start
            )
            checkout_outcomes_total.labels(
                service=self.service_name,
                state=outcome.state.value,
                error_code=outcome.error_code or "",
            ).inc()
            await self._emit(outcome)
            return outcome
        finally:
            self._in_flight.discard(cart.cart_id)
            order_id_ctx.reset(order_token)
            idempotency_key_ctx.reset(key_token)

    async def _drive(self, attempt: CheckoutAttempt, raw_input) -> OrderOutcome:
        attempt.move(CheckoutState.VALIDATING)
        try:
            checkout = parse_checkout_input(raw_input)
            if attempt.cart.is_empty:
                raise ValidationError("cart", "cart is empty")
        except ValidationError as exc:
            return self._failed(attempt, exc)
        attempt.checkout = checkout

        try:
            attempt.pricing = await self._price(attempt.cart, checkout)
            attempt.move(CheckoutState.PRICING_COMPUTED)

            attempt.order_id = await self.ledger.create_pending_order(
                self._draft(attempt.cart, checkout, attempt.pricing), attempt.idempotency_key
            )
            order_id_ctx.set(attempt.order_id)
            attempt.move(CheckoutState.ORDER_CREATED)

            result = None
            if attempt.pricing.total_cents == 0:
                await self._finalize(attempt, f"no_charge:{attempt.order_id}")
            elif checkout.payment_method is PaymentMethod.CARD:
                attempt.move(CheckoutState.PAYMENT_IN_FLIGHT)
                attempt.payment = self.payments.begin(
                    attempt.order_id, attempt.pricing.total_cents, attempt.idempotency_key
                )
                result = await attempt.payment.run(checkout.card)
                await self._finalize(attempt, result.intent_id)

            attempt.move(CheckoutState.COMPLETED)
            return self._completed(attempt, result)
        except ConsistencyRiskError as exc:
            logger.error("ambiguous payment outcome, leaving order pending intent_id=%s", exc.intent_id)
            return self._failed(attempt, exc)
        except Exception as exc:
            if not isinstance(exc, (CheckoutError, httpx.HTTPError)):
                logger.exception("unexpected checkout failure: %s", exc)
            if attempt.order_id is not None:
                await self.ledger.cancel_order(attempt.order_id, attempt.idempotency_key, _cancel_reason(exc))
            return self._failed(attempt, exc)

    async def _price(self, cart: CartSnapshot, checkout: CheckoutInput) -> PricingBreakdown:
        coupon = None
        if checkout.coupon_code:
            coupon = await self.coupons.validate(checkout.coupon_code, cart.subtotal_cents, cart.user_id)
        balance = await self.wallet.fetch_balance(cart.user_id) if checkout.use_wallet else 0
        return compute_breakdown(
            cart,
            region=checkout.shipping.state,
            shipping_method=checkout.shipping_method,
            coupon=coupon,
            use_wallet=checkout.use_wallet,
            wallet_balance_cents=balance,
        )

    def _draft(self, cart: CartSnapshot, checkout: CheckoutInput, pricing: PricingBreakdown) -> OrderDraft:
        return OrderDraft(
            user_id=cart.user_id,
            cart_id=cart.cart_id,
            items=list(cart.lines),
            shipping_info=checkout.shipping,
            billing_info=checkout.billing_or_shipping,
            pricing=pricing,
            payment_method=checkout.payment_method,
            currency=self.payments.currency,
        )

    async def _finalize(self, attempt: CheckoutAttempt, payment_ref: str) -> None:
        # The charge already happened: a finalize failure must not cancel the order.
        try:
            await self.ledger.finalize_order(attempt.order_id, payment_ref, attempt.idempotency_key)
        except Exception as exc:
            logger.error("order finalization deferred payment_ref=%s error=%r", payment_ref, exc)
            attempt.warnings.append(FINALIZE_DELAYED_MESSAGE)

    def _completed(self, attempt: CheckoutAttempt, result: PaymentResult | None) -> OrderOutcome:
        return OrderOutcome(
            state=CheckoutState.COMPLETED,
            idempotency_key=attempt.idempotency_key,
            order_id=attempt.order_id,
            pricing=attempt.pricing,
            payment_status=result.status if result else None,
            message="Order placed successfully.",
            clear_cart=True,
            redirect_to=f"{settings.confirmation_path}?order_id={attempt.order_id}",
            warnings=attempt.warnings,
        )

    def _failed(self, attempt: CheckoutAttempt, exc: Exception) -> OrderOutcome:
        attempt.move(CheckoutState.FAILED)
        outcome = OrderOutcome(
            state=CheckoutState.FAILED,
            idempotency_key=attempt.idempotency_key,
            order_id=attempt.order_id,
            pricing=attempt.pricing,
            warnings=attempt.warnings,
        )
        if isinstance(exc, ValidationError):
            outcome.error_code, outcome.message, outcome.field = exc.code, exc.message, exc.field
        elif isinstance(exc, ConsistencyRiskError):
            outcome.error_code, outcome.message, outcome.support_required = exc.code, SUPPORT_MESSAGE, True
        elif isinstance(exc, CheckoutError):
            outcome.error_code, outcome.message = exc.code, exc.message
        elif isinstance(exc, httpx.HTTPError):
            outcome.error_code = "transient_service_error"
            outcome.message = "A service is temporarily unavailable. Please try again."
        else:
            outcome.error_code = "unexpected_error"
            outcome.message = "Something went wrong while placing your order. Please try again."
        if attempt.payment is not None:
            outcome.payment_status = attempt.payment.state.value.lower()
        return outcome

    async def _emit(self, outcome: OrderOutcome) -> None:
        kind = NotificationKind.SUCCESS if outcome.succeeded else NotificationKind.ERROR
        try:
            await self.notifier.notify(kind, outcome.message, order_id=outcome.order_id)
        except Exception as exc:
            logger.error("notification delivery failed kind=%s error=%r", kind.value, exc)


def _cancel_reason(exc: Exception) -> str:
    code = getattr(exc, "code", None) or type(exc).__name__
    return f"payment_failed:{code}"
