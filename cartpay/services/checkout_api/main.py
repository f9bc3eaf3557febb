"""HTTP surface exposing the checkout orchestrator to the storefront UI."""

from contextlib import asynccontextmanager
from uuid import uuid4

import httpx
from fastapi import FastAPI, HTTPException, Request, Response
from pydantic import BaseModel

from cartpay.common.config import settings
from cartpay.common.errors import CheckoutError, CheckoutInProgressError, TerminalServiceError
from cartpay.common.logging import configure_logging, log_startup_config, logger, trace_id_ctx
from cartpay.common.metrics import http_requests_total, metrics_response
from cartpay.common.tracing import instrument_app, setup_tracing
from cartpay.checkout.coupons import CouponValidator
from cartpay.checkout.ledger import OrderLedgerClient
from cartpay.checkout.orchestrator import CheckoutOrchestrator
from cartpay.checkout.payment import HttpPaymentGateway, PaymentConfirmationProtocol
from cartpay.checkout.resilience import ResilienceExecutor
from cartpay.checkout.schemas import (
    CartSnapshot,
    CouponDescriptor,
    OrderOutcome,
    PricingBreakdown,
    ShippingMethod,
)
from cartpay.checkout.wallet import WalletClient


class QuoteRequest(BaseModel):
    cart: CartSnapshot
    region: str | None = None
    shipping_method: ShippingMethod = ShippingMethod.STANDARD
    coupon_code: str | None = None
    use_wallet: bool = False


class CouponRequest(BaseModel):
    cart: CartSnapshot
    code: str


class PlaceOrderRequest(BaseModel):
    """`checkout` stays untyped here so field errors come back as outcomes."""

    cart: CartSnapshot
    checkout: dict


def build_orchestrator(store_http: httpx.AsyncClient, gateway_http: httpx.AsyncClient) -> CheckoutOrchestrator:
    """Wire the orchestrator and its collaborators around two HTTP clients."""

    executor = ResilienceExecutor(service_name=settings.service_name)
    return CheckoutOrchestrator(
        ledger=OrderLedgerClient(store_http, executor),
        payments=PaymentConfirmationProtocol(HttpPaymentGateway(gateway_http), executor),
        coupons=CouponValidator(store_http, executor),
        wallet=WalletClient(store_http, executor),
    )


def outcome_status_code(outcome: OrderOutcome) -> int:
    if outcome.succeeded:
        return 201
    if outcome.support_required:
        return 202
    if outcome.field is not None:
        return 422
    if outcome.error_code in {"transient_service_error", "attempt_timeout", "unexpected_error"}:
        return 503
    return 400


def _checkout_http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, TerminalServiceError):
        return HTTPException(status_code=400, detail={"code": exc.code, "message": exc.message})
    code = getattr(exc, "code", "transient_service_error")
    return HTTPException(status_code=503, detail={"code": code, "message": "service temporarily unavailable"})


def create_app(orchestrator: CheckoutOrchestrator, lifespan=None) -> FastAPI:
    app = FastAPI(title="CartPay Checkout", lifespan=lifespan)

    @app.middleware("http")
    async def correlation_middleware(request: Request, call_next):
        """Bind a trace id for the request and count responses."""

        token = trace_id_ctx.set(request.headers.get("x-correlation-id") or str(uuid4()))
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            route = getattr(request.scope.get("route"), "path", request.url.path)
            http_requests_total.labels(
                service=settings.service_name,
                route=route,
                method=request.method,
                status_code=str(status_code),
            ).inc()
            trace_id_ctx.reset(token)

    @app.post("/checkout/quote", response_model=PricingBreakdown)
    async def quote(req: QuoteRequest):
        """Recompute the pricing breakdown for the current selections."""

        session = orchestrator.session(req.cart)
        try:
            if req.coupon_code:
                await session.apply_coupon(req.coupon_code)
            balance = await orchestrator.wallet.fetch_balance(req.cart.user_id) if req.use_wallet else 0
        except (CheckoutError, httpx.HTTPError) as exc:
            raise _checkout_http_error(exc) from exc
        return session.quote(req.region, req.shipping_method, req.use_wallet, balance)

    @app.post("/checkout/coupon", response_model=CouponDescriptor)
    async def apply_coupon(req: CouponRequest):
        try:
            return await orchestrator.session(req.cart).apply_coupon(req.code)
        except (CheckoutError, httpx.HTTPError) as exc:
            raise _checkout_http_error(exc) from exc

    @app.post("/checkout/orders", response_model=OrderOutcome)
    async def place_order(req: PlaceOrderRequest, response: Response):
        """Run one checkout attempt and return its terminal outcome."""

        try:
            outcome = await orchestrator.place_order(req.checkout, req.cart)
        except CheckoutInProgressError as exc:
            raise HTTPException(status_code=409, detail={"code": exc.code, "message": exc.message}) from exc
        response.status_code = outcome_status_code(outcome)
        return outcome

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    @app.get("/health")
    def health():
        """Container health probe endpoint."""

        return {"ok": True}

    return app


store_http = httpx.AsyncClient(base_url=settings.store_url, timeout=5.0)
gateway_http = httpx.AsyncClient(
    base_url=settings.gateway_url,
    timeout=15.0,
    headers={"Authorization": f"Bearer {settings.gateway_api_key}"},
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Close collaborator connection pools with the app."""

    yield
    await store_http.aclose()
    await gateway_http.aclose()
    logger.info("checkout api stopped")


configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    ["SERVICE_NAME", "STORE_URL", "GATEWAY_URL", "GATEWAY_API_KEY", "RETRY_MAX_ATTEMPTS"],
)
app = create_app(build_orchestrator(store_http, gateway_http), lifespan=lifespan)
instrument_app(app)
