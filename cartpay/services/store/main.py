"""HTTP surface for the storefront backend: orders, coupons, wallet, reconciliation."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Response

from cartpay.common.config import settings
from cartpay.common.db import Base, SessionLocal, engine
from cartpay.common.errors import InvalidTransitionError
from cartpay.common.logging import configure_logging, log_startup_config
from cartpay.common.metrics import metrics_response
from cartpay.common.tracing import instrument_app, setup_tracing
from cartpay.services.store.models import Order
from cartpay.services.store.schemas import (
    CouponValidateRequest,
    CouponValidateResponse,
    ExpiryReport,
    OrderCancelRequest,
    OrderCreateRequest,
    OrderFinalizeRequest,
    OrderResponse,
    WalletBalanceResponse,
)
from cartpay.services.store.service import (
    IdempotencyMismatchError,
    InsufficientWalletFundsError,
    OrderConflictError,
    OrderNotFoundError,
    StoreService,
)


def _order_response(order: Order) -> OrderResponse:
    return OrderResponse(
        order_id=order.order_id,
        idempotency_key=order.idempotency_key,
        status=order.status,
        payment_method=order.payment_method,
        total_cents=order.total_cents,
        currency=order.currency,
        pricing=order.pricing,
        payment_ref=order.payment_ref,
        created_at=order.created_at,
    )


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, OrderNotFoundError):
        return HTTPException(status_code=404, detail={"code": "order_not_found", "message": "order not found"})
    if isinstance(exc, IdempotencyMismatchError):
        return HTTPException(status_code=403, detail={"code": "idempotency_mismatch", "message": str(exc)})
    if isinstance(exc, InsufficientWalletFundsError):
        return HTTPException(status_code=409, detail={"code": "insufficient_wallet_funds", "message": str(exc)})
    return HTTPException(status_code=409, detail={"code": "order_conflict", "message": str(exc)})


def create_app(service: StoreService, lifespan=None) -> FastAPI:
    """Build the store API around one `StoreService`."""

    app = FastAPI(title="CartPay Store", lifespan=lifespan)
    handled = (OrderNotFoundError, IdempotencyMismatchError, OrderConflictError, InvalidTransitionError)

    @app.post("/orders", response_model=OrderResponse)
    def create_order(req: OrderCreateRequest, response: Response):
        """Create a pending order, or return the one already created for this key."""

        try:
            order, created = service.create_order(req)
        except InsufficientWalletFundsError as exc:
            raise _http_error(exc) from exc
        response.status_code = 201 if created else 200
        return _order_response(order)

    @app.get("/orders/{order_id}", response_model=OrderResponse)
    def get_order(order_id: str):
        try:
            return _order_response(service.get_order(order_id))
        except handled as exc:
            raise _http_error(exc) from exc

    @app.get("/orders/{order_id}/timeline")
    def get_timeline(order_id: str):
        """Status history for support and reconciliation tooling."""

        return [
            {
                "from_status": row.from_status,
                "to_status": row.to_status,
                "reason": row.reason,
                "created_at": row.created_at,
            }
            for row in service.timeline(order_id)
        ]

    @app.post("/orders/{order_id}/cancel", response_model=OrderResponse)
    def cancel_order(order_id: str, req: OrderCancelRequest):
        try:
            return _order_response(service.cancel_order(order_id, req.idempotency_key, req.reason))
        except handled as exc:
            raise _http_error(exc) from exc

    @app.post("/orders/{order_id}/finalize", response_model=OrderResponse)
    def finalize_order(order_id: str, req: OrderFinalizeRequest):
        """Idempotent post-payment side effects (wallet debit, coupon usage)."""

        try:
            order, _ = service.finalize_order(order_id, req.payment_ref)
        except handled as exc:
            raise _http_error(exc) from exc
        return _order_response(order)

    @app.post("/coupons/validate", response_model=CouponValidateResponse)
    def validate_coupon(req: CouponValidateRequest):
        return service.validate_coupon(req.code, req.user_id, req.cart_total_cents)

    @app.get("/wallet/{user_id}/balance", response_model=WalletBalanceResponse)
    def wallet_balance(user_id: str):
        balance = service.wallet_balance(user_id)
        if balance is None:
            raise HTTPException(status_code=404, detail={"code": "wallet_not_found", "message": "no wallet"})
        return WalletBalanceResponse(user_id=user_id, balance_cents=balance)

    @app.post("/reconciliation/expire-pending", response_model=ExpiryReport)
    def expire_pending():
        """Expire card orders left pending past the TTL."""

        cutoff, expired = service.expire_pending_orders()
        return ExpiryReport(cutoff=cutoff, expired_order_ids=expired)

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    @app.get("/health")
    def health():
        """Container health probe endpoint."""

        return {"ok": True}

    return app


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Create tables for local SQLite runs; Postgres is migrated by Alembic."""

    if settings.postgres_dsn.startswith("sqlite"):
        Base.metadata.create_all(engine)
    yield


configure_logging()
setup_tracing(settings.service_name)
log_startup_config(settings.service_name, ["SERVICE_NAME", "POSTGRES_DSN", "PENDING_ORDER_TTL_SECONDS"])
service = StoreService(SessionLocal, service_name=settings.service_name)
app = create_app(service, lifespan=lifespan)
instrument_app(app)
