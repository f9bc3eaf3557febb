"""Shared fixtures: carts, checkout input and a sleep that never waits."""

import os

# Importing the service modules must not start an OTLP exporter.
os.environ.setdefault("TRACING_ENABLED", "false")

import pytest  # noqa: E402

from cartpay.checkout.resilience import ResilienceExecutor, RetryConfig  # noqa: E402
from cartpay.checkout.schemas import CartLine, CartSnapshot  # noqa: E402


@pytest.fixture
def anyio_backend():
    return "asyncio"


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def sleeper():
    return RecordingSleep()


@pytest.fixture
def executor(sleeper):
    return ResilienceExecutor(service_name="test", sleep=sleeper)


@pytest.fixture
def fast_retry():
    return RetryConfig(max_attempts=3, initial_backoff=1.0, backoff_multiplier=2.0, max_backoff=30.0)


@pytest.fixture
def cart():
    return CartSnapshot(
        cart_id="cart-1",
        user_id="user-1",
        lines=(
            CartLine(product_id="p1", name="Olive oil", unit_price_cents=2500, quantity=2),
            CartLine(product_id="p2", name="Saffron", unit_price_cents=5000, quantity=1),
        ),
    )


@pytest.fixture
def shipping():
    return {
        "first_name": "Lucia",
        "last_name": "Garcia",
        "email": "Lucia@Example.com",
        "phone": "612345678",
        "address": "Calle Mayor 1",
        "city": "Madrid",
        "state": "Madrid",
        "zip_code": "28013",
    }


@pytest.fixture
def card_input(shipping):
    return {
        "shipping": shipping,
        "payment_method": "card",
        "card": {"number": "4242 4242 4242 4242", "holder_name": "Lucia Garcia", "expiry": "12/99", "cvc": "123"},
        "accept_terms": True,
    }
