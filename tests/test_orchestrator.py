"""End-to-end checkout attempts with in-memory collaborators."""

import asyncio

import httpx
import pytest

from cartpay.common.errors import (
    CheckoutInProgressError,
    InvalidCouponError,
    PaymentDeclinedError,
    TerminalServiceError,
    TransientServiceError,
)
from cartpay.common.state_machine import CheckoutState
from cartpay.checkout.orchestrator import SUPPORT_MESSAGE, CheckoutOrchestrator
from cartpay.checkout.payment import PaymentConfirmationProtocol, PaymentIntent
from cartpay.checkout.schemas import CouponDescriptor, CouponType


class FakeLedger:
    def __init__(self, fail_create=None, fail_finalize=None):
        self.fail_create = fail_create
        self.fail_finalize = fail_finalize
        self.created: list[tuple] = []
        self.cancelled: list[tuple] = []
        self.finalized: list[tuple] = []
        self.gate: asyncio.Event | None = None

    async def create_pending_order(self, draft, idempotency_key):
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_create:
            raise self.fail_create
        self.created.append((draft, idempotency_key))
        return "order-1"

    async def cancel_order(self, order_id, idempotency_key, reason):
        self.cancelled.append((order_id, idempotency_key, reason))
        return True

    async def finalize_order(self, order_id, payment_ref, idempotency_key):
        if self.fail_finalize:
            raise self.fail_finalize
        self.finalized.append((order_id, payment_ref))


class FakeGateway:
    def __init__(self, confirm_result="succeeded", fail_tokenize=None, fail_intent=None):
        self.confirm_result = confirm_result
        self.fail_tokenize = fail_tokenize
        self.fail_intent = fail_intent
        self.calls: list[str] = []

    async def tokenize(self, card):
        self.calls.append("tokenize")
        if self.fail_tokenize:
            raise self.fail_tokenize
        return "tok_1"

    async def create_intent(self, order_id, amount_cents, currency, idempotency_key):
        self.calls.append("create_intent")
        if self.fail_intent:
            raise self.fail_intent
        return PaymentIntent(intent_id="pi_1", client_secret="secret")

    async def confirm(self, client_secret, token, idempotency_key):
        self.calls.append("confirm")
        if isinstance(self.confirm_result, Exception):
            raise self.confirm_result
        return self.confirm_result


class FakeCoupons:
    def __init__(self, coupon=None, error=None):
        self.coupon = coupon
        self.error = error
        self.calls = 0

    async def validate(self, code, cart_subtotal_cents, user_id):
        self.calls += 1
        if self.error:
            raise self.error
        return self.coupon


class FakeWallet:
    def __init__(self, balance=0):
        self.balance = balance

    async def fetch_balance(self, user_id):
        return self.balance


class RecordingNotifier:
    def __init__(self):
        self.sent: list[tuple] = []

    async def notify(self, kind, message, *, order_id=None):
        self.sent.append((kind.value, message, order_id))


def _orchestrator(executor, fast_retry, *, ledger=None, gateway=None, coupons=None, wallet=None):
    notifier = RecordingNotifier()
    orchestrator = CheckoutOrchestrator(
        ledger=ledger or FakeLedger(),
        payments=PaymentConfirmationProtocol(gateway or FakeGateway(), executor, retry_config=fast_retry, currency="EUR"),
        coupons=coupons or FakeCoupons(),
        wallet=wallet or FakeWallet(),
        notifier=notifier,
        service_name="test",
        key_factory=lambda: "order_key_1",
    )
    return orchestrator, notifier


@pytest.mark.anyio
async def test_card_checkout_completes(executor, fast_retry, cart, card_input):
    ledger = FakeLedger()
    orchestrator, notifier = _orchestrator(executor, fast_retry, ledger=ledger)

    outcome = await orchestrator.place_order(card_input, cart)

    assert outcome.state is CheckoutState.COMPLETED
    assert outcome.order_id == "order-1"
    assert outcome.clear_cart
    assert outcome.redirect_to.endswith("?order_id=order-1")
    assert outcome.payment_status == "succeeded"
    assert ledger.created[0][1] == "order_key_1"
    assert ledger.finalized == [("order-1", "pi_1")]
    assert ledger.cancelled == []
    assert [kind for kind, _, _ in notifier.sent] == ["success"]


@pytest.mark.anyio
async def test_order_draft_never_contains_card_data(executor, fast_retry, cart, card_input):
    ledger = FakeLedger()
    orchestrator, _ = _orchestrator(executor, fast_retry, ledger=ledger)

    await orchestrator.place_order(card_input, cart)

    draft = ledger.created[0][0]
    assert "4242" not in draft.model_dump_json()
    assert draft.billing_info.full_name == "Lucia Garcia"


@pytest.mark.anyio
async def test_decline_cancels_order_once_with_same_key(executor, fast_retry, cart, card_input):
    ledger = FakeLedger()
    orchestrator, notifier = _orchestrator(
        executor, fast_retry, ledger=ledger, gateway=FakeGateway("requires_payment_method")
    )

    outcome = await orchestrator.place_order(card_input, cart)

    assert outcome.state is CheckoutState.FAILED
    assert outcome.error_code == "requires_payment_method"
    assert outcome.payment_status == "failed"
    assert not outcome.clear_cart
    assert ledger.cancelled == [("order-1", "order_key_1", "payment_failed:requires_payment_method")]
    assert [kind for kind, _, _ in notifier.sent] == ["error"]


@pytest.mark.anyio
async def test_ambiguous_payment_leaves_order_pending(executor, fast_retry, cart, card_input):
    ledger = FakeLedger()
    gateway = FakeGateway(httpx.ReadTimeout("no response"))
    orchestrator, _ = _orchestrator(executor, fast_retry, ledger=ledger, gateway=gateway)

    outcome = await orchestrator.place_order(card_input, cart)

    assert outcome.state is CheckoutState.FAILED
    assert outcome.support_required
    assert outcome.error_code == "consistency_risk"
    assert outcome.message == SUPPORT_MESSAGE
    assert ledger.cancelled == []
    assert gateway.calls.count("confirm") == 1


@pytest.mark.anyio
async def test_card_rejected_at_tokenize_cancels_order(executor, fast_retry, cart, card_input):
    ledger = FakeLedger()
    gateway = FakeGateway(
        fail_tokenize=PaymentDeclinedError(
            "card number rejected", dependency="payment_gateway", status_code=402, code="card_declined"
        )
    )
    orchestrator, notifier = _orchestrator(executor, fast_retry, ledger=ledger, gateway=gateway)

    outcome = await orchestrator.place_order(card_input, cart)

    assert outcome.state is CheckoutState.FAILED
    assert outcome.error_code == "card_declined"
    assert not outcome.support_required
    assert ledger.cancelled == [("order-1", "order_key_1", "payment_failed:card_declined")]
    assert ledger.finalized == []
    assert gateway.calls == ["tokenize"]
    assert [kind for kind, _, _ in notifier.sent] == ["error"]


@pytest.mark.anyio
async def test_intent_rejected_cancels_order_without_retry(executor, fast_retry, cart, card_input):
    ledger = FakeLedger()
    gateway = FakeGateway(
        fail_intent=TerminalServiceError(
            "amount below minimum", dependency="payment_gateway", status_code=400, code="amount_too_small"
        )
    )
    orchestrator, _ = _orchestrator(executor, fast_retry, ledger=ledger, gateway=gateway)

    outcome = await orchestrator.place_order(card_input, cart)

    assert outcome.state is CheckoutState.FAILED
    assert outcome.error_code == "amount_too_small"
    assert ledger.cancelled == [("order-1", "order_key_1", "payment_failed:amount_too_small")]
    assert gateway.calls == ["tokenize", "create_intent"]


@pytest.mark.anyio
async def test_invalid_input_makes_no_network_calls(executor, fast_retry, cart, card_input):
    ledger = FakeLedger()
    coupons = FakeCoupons()
    orchestrator, _ = _orchestrator(executor, fast_retry, ledger=ledger, coupons=coupons)
    card_input["shipping"]["zip_code"] = "ABCDE"
    card_input["coupon_code"] = "SAVE10"

    outcome = await orchestrator.place_order(card_input, cart)

    assert outcome.state is CheckoutState.FAILED
    assert outcome.field == "shipping.zip_code"
    assert outcome.error_code == "validation_error"
    assert ledger.created == []
    assert coupons.calls == 0


@pytest.mark.anyio
async def test_empty_cart_is_rejected(executor, fast_retry, cart, card_input):
    orchestrator, _ = _orchestrator(executor, fast_retry)

    outcome = await orchestrator.place_order(card_input, cart.model_copy(update={"lines": ()}))

    assert outcome.field == "cart"


@pytest.mark.anyio
async def test_invalid_coupon_fails_before_order_creation(executor, fast_retry, cart, card_input):
    ledger = FakeLedger()
    coupons = FakeCoupons(error=InvalidCouponError("unknown code", dependency="coupon_service", code="not_found"))
    orchestrator, _ = _orchestrator(executor, fast_retry, ledger=ledger, coupons=coupons)
    card_input["coupon_code"] = "nope"

    outcome = await orchestrator.place_order(card_input, cart)

    assert outcome.error_code == "not_found"
    assert outcome.order_id is None
    assert ledger.created == []
    assert ledger.cancelled == []


@pytest.mark.anyio
async def test_order_store_outage_reports_transient_error(executor, fast_retry, cart, card_input):
    ledger = FakeLedger(fail_create=TransientServiceError("store down", dependency="order_store", status_code=503))
    orchestrator, _ = _orchestrator(executor, fast_retry, ledger=ledger)

    outcome = await orchestrator.place_order(card_input, cart)

    assert outcome.error_code == "transient_service_error"
    assert ledger.cancelled == []


@pytest.mark.anyio
async def test_bank_transfer_skips_payment(executor, fast_retry, cart, card_input):
    ledger = FakeLedger()
    gateway = FakeGateway()
    orchestrator, _ = _orchestrator(executor, fast_retry, ledger=ledger, gateway=gateway)
    card_input.update(payment_method="bank_transfer", card=None)

    outcome = await orchestrator.place_order(card_input, cart)

    assert outcome.state is CheckoutState.COMPLETED
    assert gateway.calls == []
    assert ledger.finalized == []


@pytest.mark.anyio
async def test_zero_total_is_finalized_without_charge(executor, fast_retry, cart, card_input):
    ledger = FakeLedger()
    gateway = FakeGateway()
    orchestrator, _ = _orchestrator(executor, fast_retry, ledger=ledger, gateway=gateway, wallet=FakeWallet(10**7))
    card_input["use_wallet"] = True

    outcome = await orchestrator.place_order(card_input, cart)

    assert outcome.state is CheckoutState.COMPLETED
    assert outcome.pricing.total_cents == 0
    assert gateway.calls == []
    assert ledger.finalized == [("order-1", "no_charge:order-1")]


@pytest.mark.anyio
async def test_coupon_discount_reaches_order(executor, fast_retry, cart, card_input):
    ledger = FakeLedger()
    coupon = CouponDescriptor(id="c1", code="SAVE10", type=CouponType.PERCENTAGE, value=10)
    orchestrator, _ = _orchestrator(executor, fast_retry, ledger=ledger, coupons=FakeCoupons(coupon))
    card_input["coupon_code"] = "save10"

    outcome = await orchestrator.place_order(card_input, cart)

    assert outcome.pricing.coupon_code == "SAVE10"
    assert outcome.pricing.total_cents == 10890
    assert ledger.created[0][0].pricing.total_cents == 10890


@pytest.mark.anyio
async def test_finalize_failure_still_completes(executor, fast_retry, cart, card_input):
    ledger = FakeLedger(fail_finalize=TransientServiceError("store down", dependency="order_store"))
    orchestrator, _ = _orchestrator(executor, fast_retry, ledger=ledger)

    outcome = await orchestrator.place_order(card_input, cart)

    assert outcome.state is CheckoutState.COMPLETED
    assert outcome.warnings
    assert ledger.cancelled == []


@pytest.mark.anyio
async def test_concurrent_attempt_for_same_cart_is_rejected(executor, fast_retry, cart, card_input):
    ledger = FakeLedger()
    ledger.gate = asyncio.Event()
    orchestrator, _ = _orchestrator(executor, fast_retry, ledger=ledger)

    first = asyncio.create_task(orchestrator.place_order(card_input, cart))
    await asyncio.sleep(0)
    assert orchestrator.is_in_flight(cart.cart_id)

    with pytest.raises(CheckoutInProgressError):
        await orchestrator.place_order(card_input, cart)

    ledger.gate.set()
    outcome = await first
    assert outcome.state is CheckoutState.COMPLETED
    assert not orchestrator.is_in_flight(cart.cart_id)


@pytest.mark.anyio
async def test_session_coupon_replace_and_remove(executor, fast_retry, cart):
    coupon = CouponDescriptor(id="c1", code="SAVE10", type=CouponType.PERCENTAGE, value=10)
    orchestrator, _ = _orchestrator(executor, fast_retry, coupons=FakeCoupons(coupon))
    session = orchestrator.session(cart)

    await session.apply_coupon("save10")
    assert session.quote("Madrid").coupon_discount_cents == 1000

    session.remove_coupon()
    assert session.quote("Madrid").coupon_discount_cents == 0
