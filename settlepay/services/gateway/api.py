"""HTTP surface for payment intake and reads.

`create_app` takes already-wired collaborators so tests can run the routes
against a throwaway database; `main.py` does the production wiring.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from time import perf_counter
from uuid import uuid4

from fastapi import BackgroundTasks, FastAPI, Header, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from settlepay.common.logging import trace_id_ctx
from settlepay.common.metrics import (
    http_request_duration_seconds,
    http_requests_total,
    metrics_response,
    payment_latency_seconds,
    payment_requests_total,
    rate_limit_denied_total,
)
from settlepay.common.outbox import OutboxRelay
from settlepay.common.state_machine import PaymentStatus
from settlepay.common.tracing import instrument_app
from settlepay.services.gateway.dispatcher import Dispatcher
from settlepay.services.gateway.errors import (
    DuplicateKey,
    NotFound,
    NotSettleable,
    PaymentError,
    PermitUnavailable,
)
from settlepay.services.gateway.schemas import (
    ErrorResponse,
    PaymentCreateRequest,
    PaymentResponse,
    TimelineEntry,
)
from settlepay.services.gateway.service import PaymentService


def _error(status_code: int, exc: PaymentError) -> JSONResponse:
    body = ErrorResponse(error_code=exc.code, message=exc.message, timestamp=datetime.now(timezone.utc))
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


def create_app(
    service: PaymentService,
    dispatcher: Dispatcher,
    relay: OutboxRelay | None = None,
    immediate_dispatch: bool = True,
    run_background: bool = True,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_: FastAPI):
        """Run the dispatcher loop (and outbox relay) with the app lifecycle."""

        tasks = []
        if run_background:
            tasks.append(asyncio.create_task(dispatcher.run_forever()))
            if relay is not None:
                tasks.append(asyncio.create_task(relay.run_forever()))
        yield
        for task in tasks:
            task.cancel()
        if relay is not None:
            await relay.bus.close()

    app = FastAPI(title="SettlePay Gateway", lifespan=lifespan)
    instrument_app(app)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Record request count and latency for every HTTP call."""

        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(
                service=service.service_name, route=route, method=method
            ).observe(elapsed)
            http_requests_total.labels(
                service=service.service_name,
                route=route,
                method=method,
                status_code=str(status_code),
            ).inc()

    @app.exception_handler(DuplicateKey)
    async def duplicate_handler(_: Request, exc: DuplicateKey):
        return _error(409, exc)

    @app.exception_handler(NotFound)
    async def not_found_handler(_: Request, exc: NotFound):
        return _error(404, exc)

    @app.exception_handler(NotSettleable)
    async def not_settleable_handler(_: Request, exc: NotSettleable):
        return _error(409, exc)

    @app.exception_handler(PermitUnavailable)
    async def permit_unavailable_handler(_: Request, exc: PermitUnavailable):
        return _error(429, exc)

    @app.post("/api/v1/payments", response_model=PaymentResponse, status_code=201)
    async def create_payment(
        req: PaymentCreateRequest,
        background_tasks: BackgroundTasks,
        x_trace_id: str | None = Header(default=None),
    ):
        """Create a PENDING payment; 409 if the idempotency key was already used."""

        trace_id = x_trace_id or str(uuid4())
        trace_id_ctx.set(trace_id)
        payment_requests_total.labels(service=service.service_name).inc()
        with payment_latency_seconds.labels(service=service.service_name).time():
            payment = service.create(req)
        if immediate_dispatch:
            background_tasks.add_task(dispatcher.dispatch_now, payment.payment_id)
        return PaymentResponse.model_validate(payment)

    @app.get("/api/v1/payments/{payment_id}", response_model=PaymentResponse)
    def get_payment(payment_id: str):
        """Fetch current state for one payment."""

        return PaymentResponse.model_validate(service.get(payment_id))

    @app.get("/api/v1/payments/{payment_id}/timeline", response_model=list[TimelineEntry])
    def get_payment_timeline(payment_id: str):
        """Every status change of one payment, oldest first."""

        return [TimelineEntry.model_validate(row) for row in service.timeline(payment_id)]

    @app.post("/api/v1/payments/{payment_id}/settle", response_model=PaymentResponse)
    async def settle_payment(payment_id: str, timeout_seconds: float = Query(default=10.0, gt=0, le=60)):
        """Operator action: settle one PENDING payment now, out of queue order.

        Waits up to `timeout_seconds` for a permit from the dispatcher's limiter, so
        the provider cap still holds. 409 if the payment is not PENDING, 429 if no
        permit came free in time.
        """

        payment = service.get(payment_id)
        if payment.status != PaymentStatus.PENDING.value:
            raise NotSettleable(f"payment {payment_id} is {payment.status}")
        granted = await run_in_threadpool(dispatcher.limiter.wait_for_permit, timeout=timeout_seconds)
        if not granted:
            rate_limit_denied_total.labels(service=service.service_name, path="manual").inc()
            raise PermitUnavailable(f"no provider permit within {timeout_seconds}s")
        settled = await service.settle(payment_id)
        if settled is None:
            raise NotSettleable(f"payment {payment_id} was claimed by another worker")
        return PaymentResponse.model_validate(settled)

    @app.get("/api/v1/payments", response_model=PaymentResponse)
    def get_payment_by_idempotency_key(idempotency_key: str = Query(min_length=1)):
        """Look a payment up by the key it was created with."""

        return PaymentResponse.model_validate(service.get_by_idempotency_key(idempotency_key))

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    @app.get("/health")
    def health():
        """Container health check endpoint."""

        return {"ok": True}

    return app
