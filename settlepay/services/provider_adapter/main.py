"""Provider adapter API.

Serves the simulated settlement provider over HTTP so the gateway can run with
`PROVIDER_MODE=http` against a separate process.
"""

from decimal import Decimal

from fastapi import FastAPI
from pydantic import BaseModel, Field

from settlepay.common.config import settings
from settlepay.common.logging import configure_logging
from settlepay.common.metrics import metrics_response
from settlepay.common.startup import log_startup_config
from settlepay.common.tracing import instrument_app, setup_tracing
from settlepay.services.gateway.provider import ProviderRequest
from settlepay.services.provider_adapter.service import MockSettlementProvider


class SubmitRequest(BaseModel):
    tx_id: str = Field(min_length=1)
    amount: Decimal
    currency: str = Field(min_length=3, max_length=3)
    merchant_id: str
    customer_id: str
    description: str | None = None


class SubmitResponse(BaseModel):
    outcome: str
    reference: str | None = None
    reason: str | None = None


def create_app(provider: MockSettlementProvider) -> FastAPI:
    app = FastAPI(title="SettlePay Provider Adapter")
    instrument_app(app)

    @app.post("/submit", response_model=SubmitResponse)
    async def submit(req: SubmitRequest):
        """Run one simulated settlement and report its outcome in the body."""

        result = await provider.submit(ProviderRequest(**req.model_dump()))
        return SubmitResponse(outcome=result.outcome.value, reference=result.reference, reason=result.reason)

    @app.get("/health")
    def health():
        """Container health check endpoint."""

        return {"ok": True}

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    return app


configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings,
    ["mock_retryable_probability", "mock_permanent_probability", "mock_min_latency_ms", "mock_max_latency_ms"],
)
app = create_app(
    MockSettlementProvider(
        retryable_probability=settings.mock_retryable_probability,
        permanent_probability=settings.mock_permanent_probability,
        min_latency_ms=settings.mock_min_latency_ms,
        max_latency_ms=settings.mock_max_latency_ms,
    )
)
