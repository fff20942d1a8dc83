"""Structured JSON logging with trace, payment and dispatch-cycle context fields."""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from settlepay.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
payment_id_ctx: ContextVar[str] = ContextVar("payment_id", default="")
cycle_id_ctx: ContextVar[str] = ContextVar("cycle_id", default="")

# Client libraries log every request/connection at INFO.
QUIET_LOGGERS = ("aiokafka", "httpx", "httpcore")


class ContextFilter(logging.Filter):
    """Inject service and correlation identifiers into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        record.trace_id = trace_id_ctx.get()
        record.payment_id = payment_id_ctx.get()
        record.cycle_id = cycle_id_ctx.get()
        return True


@contextmanager
def bind_context(var: ContextVar[str], value: str):
    """Set one correlation field for the duration of a block."""

    token = var.set(value)
    try:
        yield
    finally:
        var.reset(token)


def configure_logging(level: str | None = None) -> None:
    """Configure root logger once per service process."""

    handler = logging.StreamHandler(sys.stdout)
    context_filter = ContextFilter()
    handler.addFilter(context_filter)
    formatter = JsonFormatter(
        "%(asctime)s %(levelname)s %(service_name)s %(trace_id)s %(payment_id)s %(cycle_id)s %(message)s",
        rename_fields={"asctime": "timestamp", "levelname": "level"},
    )
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level or settings.log_level)
    root.addFilter(context_filter)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


logger = logging.getLogger("settlepay")
