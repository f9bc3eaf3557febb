"""Coupon validator.

Normalizes the code and asks the coupon service for a verdict. Eligibility
rules (usage limits, date windows, minimum purchase, per-user caps) live in
the service; this module only maps its answer onto the error taxonomy.
"""

import httpx
from pydantic import ValidationError as PydanticValidationError

from cartpay.common.errors import CouponNotEligibleError, InvalidCouponError, TerminalServiceError
from cartpay.common.logging import logger
from cartpay.checkout.http import raise_for_service_status
from cartpay.checkout.resilience import ResilienceExecutor, RetryConfig
from cartpay.checkout.schemas import CouponDescriptor, CouponType

# Service rejection reasons that mean the cart or user does not qualify.
NOT_ELIGIBLE_REASONS = frozenset(
    {"min_purchase", "usage_limit_reached", "per_user_limit_reached", "user_not_allowed", "login_required"}
)


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


class CouponValidator:
    dependency = "coupon_service"

    def __init__(
        self,
        http: httpx.AsyncClient,
        executor: ResilienceExecutor,
        retry_config: RetryConfig | None = None,
    ) -> None:
        self.http = http
        self.executor = executor
        self.retry_config = retry_config or RetryConfig.from_settings()

    async def validate(self, code: str, cart_subtotal_cents: int, user_id: str) -> CouponDescriptor:
        """Return the coupon's descriptor or raise a coupon error.

        `InvalidCouponError` and `CouponNotEligibleError` are terminal; network
        and 5xx failures are retried and surface as transient errors.
        """

        normalized = normalize_code(code)
        if not normalized:
            raise InvalidCouponError("coupon code is empty", dependency=self.dependency, code="empty_code")

        async def call() -> dict:
            resp = await self.http.post(
                "/coupons/validate",
                json={"code": normalized, "user_id": user_id, "cart_total_cents": cart_subtotal_cents},
            )
            try:
                raise_for_service_status(resp, self.dependency, terminal_error=InvalidCouponError)
            except InvalidCouponError as exc:
                # 4xx answers carry the same reason codes as a `valid: false` body.
                raise self._rejection(exc.code or "invalid", exc.message, exc.status_code) from exc
            return resp.json()

        body = await self.executor.execute(call, self.retry_config, dependency=self.dependency)
        if not body.get("valid"):
            reason = body.get("reason") or "invalid"
            message = body.get("error") or "coupon is not valid"
            logger.info("coupon rejected code=%s reason=%s", normalized, reason)
            raise self._rejection(reason, message)
        return self._descriptor(body["coupon"])

    def _rejection(self, reason: str, message: str, status_code: int | None = None) -> TerminalServiceError:
        error = CouponNotEligibleError if reason in NOT_ELIGIBLE_REASONS else InvalidCouponError
        return error(message, dependency=self.dependency, status_code=status_code, code=reason)

    def _descriptor(self, raw: dict) -> CouponDescriptor:
        try:
            coupon = CouponDescriptor.model_validate(raw)
        except PydanticValidationError as exc:
            raise InvalidCouponError(
                "coupon service returned a malformed coupon", dependency=self.dependency, code="malformed"
            ) from exc
        if coupon.type is CouponType.PERCENTAGE and coupon.value > 100:
            raise InvalidCouponError(
                f"percentage coupon value {coupon.value} exceeds 100",
                dependency=self.dependency,
                code="invalid_value",
            )
        return coupon
