"""Order Ledger Client: pending order creation, cancellation and finalization.

The client never deduplicates on its own. It sends the same idempotency key
for every retry of one logical attempt and relies on the store's unique
idempotency index to collapse duplicates.
"""

import httpx

from cartpay.common.logging import logger
from cartpay.common.metrics import order_cancellations_total
from cartpay.checkout.http import raise_for_service_status
from cartpay.checkout.resilience import ResilienceExecutor, RetryConfig
from cartpay.checkout.schemas import OrderDraft


class OrderLedgerClient:
    """Talks to the order store's `/orders` API."""

    dependency = "order_store"

    def __init__(
        self,
        http: httpx.AsyncClient,
        executor: ResilienceExecutor,
        retry_config: RetryConfig | None = None,
    ) -> None:
        self.http = http
        self.executor = executor
        self.retry_config = retry_config or RetryConfig.from_settings()

    async def create_pending_order(self, draft: OrderDraft, idempotency_key: str) -> str:
        """Create (or fetch the existing) pending order for `idempotency_key`."""

        payload = {"idempotency_key": idempotency_key, **draft.model_dump(mode="json")}

        async def call() -> str:
            resp = await self.http.post(
                "/orders",
                json=payload,
                headers={"Idempotency-Key": idempotency_key},
            )
            raise_for_service_status(resp, self.dependency)
            return resp.json()["order_id"]

        order_id = await self.executor.execute(call, self.retry_config, dependency=self.dependency)
        logger.info("pending order ready order_id=%s", order_id)
        return order_id

    async def cancel_order(self, order_id: str, idempotency_key: str, reason: str) -> bool:
        """Best-effort cancellation; failures are logged, never raised.

        Orphaned pending orders that survive a failed cancel are expired by the
        reconciliation sweep.
        """

        async def call() -> None:
            resp = await self.http.post(
                f"/orders/{order_id}/cancel",
                json={"idempotency_key": idempotency_key, "reason": reason},
            )
            raise_for_service_status(resp, self.dependency)

        try:
            await self.executor.execute(call, self.retry_config, dependency=self.dependency)
        except Exception as exc:
            order_cancellations_total.labels(service=self.executor.service_name, result="failed").inc()
            logger.error("order cancellation failed order_id=%s reason=%s error=%r", order_id, reason, exc)
            return False
        order_cancellations_total.labels(service=self.executor.service_name, result="cancelled").inc()
        logger.info("order cancelled order_id=%s reason=%s", order_id, reason)
        return True

    async def finalize_order(self, order_id: str, payment_ref: str, idempotency_key: str) -> None:
        """Apply post-payment side effects; idempotent per order on the server."""

        async def call() -> None:
            resp = await self.http.post(
                f"/orders/{order_id}/finalize",
                json={"payment_ref": payment_ref, "idempotency_key": idempotency_key},
            )
            raise_for_service_status(resp, self.dependency)

        await self.executor.execute(call, self.retry_config, dependency=self.dependency)

    async def get_order(self, order_id: str) -> dict:
        async def call() -> dict:
            resp = await self.http.get(f"/orders/{order_id}")
            raise_for_service_status(resp, self.dependency)
            return resp.json()

        return await self.executor.execute(call, self.retry_config, dependency=self.dependency)
