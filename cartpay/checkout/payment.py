"""Payment confirmation protocol: tokenize -> create intent -> confirm.

Raw card input only ever crosses into the gateway's tokenizer. Everything
after that step works with the opaque token, so the orchestrator never holds
card data beyond the tokenize call.

Confirmation is the one step where a blind retry can double-charge. Its retry
predicate only allows failures where the request provably never reached the
gateway (connection refused, connect timeout, 429). Any other transport
failure or 5xx on confirm is an ambiguous outcome and becomes a
`ConsistencyRiskError`.
"""

from dataclasses import dataclass, field, replace
from typing import Protocol

import httpx

from cartpay.common.config import settings
from cartpay.common.errors import (
    AttemptTimeoutError,
    ConsistencyRiskError,
    PaymentDeclinedError,
    ServiceError,
    TransientServiceError,
)
from cartpay.common.logging import logger
from cartpay.common.metrics import payment_confirmations_total
from cartpay.common.state_machine import PAYMENT_TRANSITIONS, PaymentState, validate_transition
from cartpay.checkout.http import raise_for_service_status
from cartpay.checkout.resilience import ResilienceExecutor, RetryConfig
from cartpay.checkout.schemas import CardInput

SUCCESS_STATUSES = frozenset({"succeeded", "processing", "requires_capture"})


@dataclass(frozen=True)
class PaymentIntent:
    intent_id: str
    client_secret: str


@dataclass(frozen=True)
class PaymentResult:
    intent_id: str
    status: str


class PaymentGateway(Protocol):
    async def tokenize(self, card: CardInput) -> str: ...

    async def create_intent(
        self, order_id: str, amount_cents: int, currency: str, idempotency_key: str
    ) -> PaymentIntent: ...

    async def confirm(self, client_secret: str, token: str, idempotency_key: str) -> str: ...


class HttpPaymentGateway:
    """Card gateway over HTTP: hosted tokenizer plus intent endpoints."""

    dependency = "payment_gateway"

    def __init__(self, http: httpx.AsyncClient) -> None:
        self.http = http

    async def tokenize(self, card: CardInput) -> str:
        resp = await self.http.post(
            "/v1/tokens",
            json={
                "number": card.number.get_secret_value(),
                "exp": card.expiry,
                "cvc": card.cvc.get_secret_value(),
                "name": card.holder_name,
            },
        )
        raise_for_service_status(resp, self.dependency, terminal_error=PaymentDeclinedError)
        return resp.json()["token"]

    async def create_intent(
        self, order_id: str, amount_cents: int, currency: str, idempotency_key: str
    ) -> PaymentIntent:
        resp = await self.http.post(
            "/v1/payment_intents",
            json={"amount": amount_cents, "currency": currency.lower(), "metadata": {"order_id": order_id}},
            headers={"Idempotency-Key": idempotency_key},
        )
        raise_for_service_status(resp, self.dependency)
        body = resp.json()
        return PaymentIntent(intent_id=body["id"], client_secret=body["client_secret"])

    async def confirm(self, client_secret: str, token: str, idempotency_key: str) -> str:
        resp = await self.http.post(
            "/v1/payment_intents/confirm",
            json={"client_secret": client_secret, "payment_method": token},
            headers={"Idempotency-Key": idempotency_key},
        )
        raise_for_service_status(resp, self.dependency, terminal_error=PaymentDeclinedError)
        return resp.json()["status"]


def _never_reached_gateway(error: BaseException) -> bool:
    if isinstance(error, (httpx.ConnectError, httpx.ConnectTimeout)):
        return True
    return isinstance(error, ServiceError) and error.status_code == 429


def confirm_retry_predicate(error: BaseException) -> bool:
    return _never_reached_gateway(error)


def is_ambiguous_outcome(error: BaseException) -> bool:
    """True when a failed confirm may still have charged the card."""

    if _never_reached_gateway(error):
        return False
    if isinstance(error, (httpx.TransportError, AttemptTimeoutError)):
        return True
    return isinstance(error, TransientServiceError)


@dataclass
class PaymentConfirmation:
    """One run of the protocol for one order. Not reusable."""

    gateway: PaymentGateway
    executor: ResilienceExecutor
    retry_config: RetryConfig
    confirm_retry_config: RetryConfig
    order_id: str
    amount_cents: int
    currency: str
    idempotency_key: str
    state: PaymentState = PaymentState.IDLE
    history: list[PaymentState] = field(default_factory=lambda: [PaymentState.IDLE])
    intent_id: str | None = None

    def _move(self, new_state: PaymentState) -> None:
        validate_transition(PAYMENT_TRANSITIONS, self.state, new_state)
        logger.info("payment transition %s -> %s", self.state.value, new_state.value)
        self.state = new_state
        self.history.append(new_state)

    async def run(self, card: CardInput) -> PaymentResult:
        """Drive the protocol to SUCCEEDED or raise after moving to FAILED."""

        try:
            return await self._run(card)
        except Exception:
            if self.state is not PaymentState.FAILED:
                self._move(PaymentState.FAILED)
            raise

    async def _run(self, card: CardInput) -> PaymentResult:
        self._move(PaymentState.TOKENIZING_CARD)
        token = await self.executor.execute(
            lambda: self.gateway.tokenize(card), self.retry_config, dependency="gateway_tokenize"
        )

        self._move(PaymentState.CREATING_INTENT)
        intent = await self.executor.execute(
            lambda: self.gateway.create_intent(
                self.order_id, self.amount_cents, self.currency, f"{self.idempotency_key}:intent"
            ),
            self.retry_config,
            dependency="gateway_intent",
        )
        self.intent_id = intent.intent_id

        self._move(PaymentState.CONFIRMING_PAYMENT)
        try:
            status = await self.executor.execute(
                lambda: self.gateway.confirm(intent.client_secret, token, f"{self.idempotency_key}:confirm"),
                self.confirm_retry_config,
                dependency="gateway_confirm",
            )
        except Exception as exc:
            if is_ambiguous_outcome(exc):
                payment_confirmations_total.labels(service=self.executor.service_name, status="unknown").inc()
                raise ConsistencyRiskError(
                    "payment outcome unknown; contact support before retrying",
                    order_id=self.order_id,
                    intent_id=intent.intent_id,
                ) from exc
            raise

        payment_confirmations_total.labels(service=self.executor.service_name, status=status).inc()
        if status not in SUCCESS_STATUSES:
            raise PaymentDeclinedError(
                f"payment not completed (status={status})",
                dependency="payment_gateway",
                code=status,
            )
        self._move(PaymentState.SUCCEEDED)
        return PaymentResult(intent_id=intent.intent_id, status=status)


class PaymentConfirmationProtocol:
    """Factory for per-order `PaymentConfirmation` runs."""

    def __init__(
        self,
        gateway: PaymentGateway,
        executor: ResilienceExecutor,
        retry_config: RetryConfig | None = None,
        confirm_retry_config: RetryConfig | None = None,
        currency: str | None = None,
    ) -> None:
        self.gateway = gateway
        self.executor = executor
        self.retry_config = retry_config or RetryConfig.from_settings()
        # No hard per-attempt timeout: abandoning a submitted confirm locally
        # would only turn it into an unknown outcome.
        self.confirm_retry_config = confirm_retry_config or replace(
            self.retry_config, retry_predicate=confirm_retry_predicate, per_attempt_timeout=None
        )
        self.currency = currency or settings.currency

    def begin(self, order_id: str, amount_cents: int, idempotency_key: str) -> PaymentConfirmation:
        return PaymentConfirmation(
            gateway=self.gateway,
            executor=self.executor,
            retry_config=self.retry_config,
            confirm_retry_config=self.confirm_retry_config,
            order_id=order_id,
            amount_cents=amount_cents,
            currency=self.currency,
            idempotency_key=idempotency_key,
        )
