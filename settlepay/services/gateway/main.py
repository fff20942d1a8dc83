"""Gateway process entrypoint: intake API, dispatcher loop and outbox relay."""

from settlepay.common.config import settings
from settlepay.common.db import Base, SessionLocal, engine
from settlepay.common.events import KafkaBus
from settlepay.common.logging import configure_logging
from settlepay.common.outbox import OutboxRelay
from settlepay.common.rate_limiter import FixedWindowRateLimiter
from settlepay.common.startup import log_startup_config
from settlepay.common.tracing import setup_tracing
from settlepay.services.gateway.api import create_app
from settlepay.services.gateway.dispatcher import Dispatcher
from settlepay.services.gateway.models import OutboxEvent
from settlepay.services.gateway.service import PaymentService
from settlepay.services.gateway.store import SqlPaymentStore
from settlepay.services.provider_adapter.service import build_provider


configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings,
    [
        "database_dsn",
        "kafka_bootstrap_servers",
        "outbox_enabled",
        "provider_mode",
        "provider_url",
        "max_rate_per_window",
        "rate_window_seconds",
        "max_retries",
        "dispatch_interval_seconds",
        "stale_processing_seconds",
        "parallel_settlement",
        "immediate_dispatch",
    ],
)
if settings.auto_create_schema:
    Base.metadata.create_all(engine)

service = PaymentService(
    SqlPaymentStore(SessionLocal),
    build_provider(),
    max_retries=settings.max_retries,
    stale_after_seconds=settings.stale_processing_seconds,
    service_name=settings.service_name,
)
# One limiter instance for both the intake fast path and the dispatcher.
limiter = FixedWindowRateLimiter(settings.max_rate_per_window, settings.rate_window_seconds)
dispatcher = Dispatcher(
    service,
    limiter,
    interval_seconds=settings.dispatch_interval_seconds,
    parallel_settlement=settings.parallel_settlement,
)
relay = (
    OutboxRelay(SessionLocal, OutboxEvent, KafkaBus(), service_name=settings.service_name)
    if settings.outbox_enabled
    else None
)
app = create_app(service, dispatcher, relay=relay, immediate_dispatch=settings.immediate_dispatch)
