"""Checkout error taxonomy.

Every failure path in checkout resolves to one of these types so the
orchestrator (and the HTTP layer) can decide who hears about it: the offending
form field, a toast, or a support escalation.
"""


class CheckoutError(Exception):
    """Base class for checkout failures carrying a user-facing message."""

    code = "checkout_error"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class ValidationError(CheckoutError):
    """Bad input. Never retried; reported next to the offending field."""

    code = "validation_error"

    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


class ServiceError(CheckoutError):
    """Failure reported by (or while talking to) an external collaborator."""

    def __init__(
        self,
        message: str,
        *,
        dependency: str,
        status_code: int | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message, code=code)
        self.dependency = dependency
        self.status_code = status_code


class TransientServiceError(ServiceError):
    """Network, 5xx or 429 failure. Retried before the user hears about it."""

    code = "transient_service_error"


class AttemptTimeoutError(TransientServiceError):
    """One attempt exceeded its hard timeout."""

    code = "attempt_timeout"


class TerminalServiceError(ServiceError):
    """4xx business-rule rejection. Reported immediately, never retried."""

    code = "terminal_service_error"


class InvalidCouponError(TerminalServiceError):
    """Coupon code not found, expired, inactive or malformed."""

    code = "invalid_coupon"


class CouponNotEligibleError(TerminalServiceError):
    """Cart or user does not meet the coupon's conditions."""

    code = "coupon_not_eligible"


class PaymentDeclinedError(TerminalServiceError):
    """Gateway returned a terminal decline for the confirmation."""

    code = "payment_declined"


class ConsistencyRiskError(CheckoutError):
    """Payment outcome unknown: the gateway may already have captured funds.

    The pending order is left untouched for reconciliation; the user is asked
    to contact support instead of retrying.
    """

    code = "consistency_risk"

    def __init__(self, message: str, *, order_id: str | None = None, intent_id: str | None = None) -> None:
        super().__init__(message)
        self.order_id = order_id
        self.intent_id = intent_id


class CheckoutInProgressError(CheckoutError):
    """A checkout attempt for the same cart is already running."""

    code = "checkout_in_progress"


class InvalidTransitionError(ValueError):
    """Raised when a state machine is asked for an illegal transition."""
