"""Read-only wallet balance lookup consumed by the pricing engine.

Debits never happen here; they are applied by the store's finalize call.
"""

import httpx

from cartpay.checkout.http import raise_for_service_status
from cartpay.checkout.resilience import ResilienceExecutor, RetryConfig


class WalletClient:
    dependency = "wallet"

    def __init__(
        self,
        http: httpx.AsyncClient,
        executor: ResilienceExecutor,
        retry_config: RetryConfig | None = None,
    ) -> None:
        self.http = http
        self.executor = executor
        self.retry_config = retry_config or RetryConfig.from_settings()

    async def fetch_balance(self, user_id: str) -> int:
        """Available balance in cents; guests have no wallet."""

        if not user_id or user_id == "guest":
            return 0

        async def call() -> int:
            resp = await self.http.get(f"/wallet/{user_id}/balance")
            if resp.status_code == 404:
                return 0
            raise_for_service_status(resp, self.dependency)
            return int(resp.json()["balance_cents"])

        return await self.executor.execute(call, self.retry_config, dependency=self.dependency)
