"""Structured JSON logging with checkout-attempt context fields."""

import logging
import os
import sys
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from cartpay.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
idempotency_key_ctx: ContextVar[str] = ContextVar("idempotency_key", default="")
order_id_ctx: ContextVar[str] = ContextVar("order_id", default="")

_SECRET_MARKERS = ("KEY", "SECRET", "PASSWORD", "TOKEN")


class ContextFilter(logging.Filter):
    """Inject service and correlation identifiers into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        record.trace_id = trace_id_ctx.get()
        record.idempotency_key = idempotency_key_ctx.get()
        record.order_id = order_id_ctx.get()
        return True


def configure_logging() -> None:
    """Configure root logger once per service process."""

    handler = logging.StreamHandler(sys.stdout)
    context_filter = ContextFilter()
    handler.addFilter(context_filter)
    formatter = JsonFormatter(
        "%(asctime)s %(levelname)s %(service_name)s %(trace_id)s %(idempotency_key)s %(order_id)s %(message)s"
    )
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)
    root.addFilter(context_filter)


def _safe_env(name: str) -> str:
    value = os.getenv(name)
    if value is None:
        return "<unset>"
    if any(marker in name for marker in _SECRET_MARKERS):
        return "<redacted>"
    return value


def log_startup_config(service_name: str, keys: list[str]) -> None:
    """Log selected environment keys at startup, redacting secret-like names."""

    snapshot = {"service": service_name, **{key: _safe_env(key) for key in keys}}
    logger.info("startup_config=%s", snapshot)


logger = logging.getLogger("cartpay")
