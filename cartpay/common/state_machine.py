"""State machines for checkout attempts, the payment protocol and stored orders."""

from enum import Enum

from cartpay.common.errors import InvalidTransitionError


class CheckoutState(str, Enum):
    DRAFT = "DRAFT"
    VALIDATING = "VALIDATING"
    PRICING_COMPUTED = "PRICING_COMPUTED"
    ORDER_CREATED = "ORDER_CREATED"
    PAYMENT_IN_FLIGHT = "PAYMENT_IN_FLIGHT"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class PaymentState(str, Enum):
    IDLE = "IDLE"
    TOKENIZING_CARD = "TOKENIZING_CARD"
    CREATING_INTENT = "CREATING_INTENT"
    CONFIRMING_PAYMENT = "CONFIRMING_PAYMENT"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


CHECKOUT_TRANSITIONS: dict[CheckoutState, set[CheckoutState]] = {
    CheckoutState.DRAFT: {CheckoutState.VALIDATING},
    CheckoutState.VALIDATING: {CheckoutState.PRICING_COMPUTED, CheckoutState.FAILED},
    CheckoutState.PRICING_COMPUTED: {CheckoutState.ORDER_CREATED, CheckoutState.FAILED},
    # Non-card and zero-total orders skip PAYMENT_IN_FLIGHT.
    CheckoutState.ORDER_CREATED: {
        CheckoutState.PAYMENT_IN_FLIGHT,
        CheckoutState.COMPLETED,
        CheckoutState.FAILED,
    },
    CheckoutState.PAYMENT_IN_FLIGHT: {CheckoutState.COMPLETED, CheckoutState.FAILED},
    CheckoutState.COMPLETED: set(),
    CheckoutState.FAILED: set(),
}

PAYMENT_TRANSITIONS: dict[PaymentState, set[PaymentState]] = {
    PaymentState.IDLE: {PaymentState.TOKENIZING_CARD, PaymentState.FAILED},
    PaymentState.TOKENIZING_CARD: {PaymentState.CREATING_INTENT, PaymentState.FAILED},
    PaymentState.CREATING_INTENT: {PaymentState.CONFIRMING_PAYMENT, PaymentState.FAILED},
    PaymentState.CONFIRMING_PAYMENT: {PaymentState.SUCCEEDED, PaymentState.FAILED},
    PaymentState.SUCCEEDED: set(),
    PaymentState.FAILED: set(),
}

ORDER_TRANSITIONS: dict[OrderStatus, set[OrderStatus]] = {
    OrderStatus.PENDING: {OrderStatus.PAID, OrderStatus.CANCELLED, OrderStatus.EXPIRED},
    # A late gateway confirmation still wins over the expiry sweep.
    OrderStatus.EXPIRED: {OrderStatus.PAID, OrderStatus.CANCELLED},
    OrderStatus.PAID: set(),
    OrderStatus.CANCELLED: set(),
}


def validate_transition(table: dict, current: Enum, new: Enum) -> None:
    """Raise when `current -> new` is not allowed by `table`."""

    if new not in table.get(current, set()):
        raise InvalidTransitionError(f"Invalid transition: {current.value} -> {new.value}")
