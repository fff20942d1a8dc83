"""Shared fixtures: SQLite-backed store, fake clocks and a scripted provider."""

import asyncio
import os
from collections import deque
from datetime import datetime, timedelta, timezone
from decimal import Decimal

# Settings are read once at import time; keep exporters and Postgres out of tests.
os.environ.setdefault("TRACING_ENABLED", "false")
os.environ.setdefault("DATABASE_DSN", "sqlite://")

import pytest
from settlepay.common.db import Base, build_engine, make_session_factory
from settlepay.common.rate_limiter import FixedWindowRateLimiter
from settlepay.services.gateway import models  # noqa: F401  (registers tables)
from settlepay.services.gateway.dispatcher import Dispatcher
from settlepay.services.gateway.provider import ProviderRequest, ProviderResult, SettlementProvider
from settlepay.services.gateway.schemas import PaymentCreateRequest
from settlepay.services.gateway.service import PaymentService
from settlepay.services.gateway.store import SqlPaymentStore


class FakeClock:
    """Wall clock for the engine; only moves when a test says so."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeMonotonic:
    """Monotonic clock for the rate limiter."""

    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class ScriptedProvider(SettlementProvider):
    """Returns queued results (or raises queued exceptions); succeeds once the script runs out."""

    def __init__(self, delay: float = 0.0) -> None:
        self.script: deque = deque()
        self.calls: list[ProviderRequest] = []
        self.delay = delay
        self.in_flight: dict[str, int] = {}
        self.max_in_flight: dict[str, int] = {}
        self.before_return = None

    @property
    def name(self) -> str:
        return "scripted"

    def push(self, *results) -> None:
        self.script.extend(results)

    async def submit(self, request: ProviderRequest) -> ProviderResult:
        self.calls.append(request)
        current = self.in_flight.get(request.tx_id, 0) + 1
        self.in_flight[request.tx_id] = current
        self.max_in_flight[request.tx_id] = max(current, self.max_in_flight.get(request.tx_id, 0))
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.before_return is not None:
                self.before_return(request)
            if self.script:
                item = self.script.popleft()
                if isinstance(item, BaseException):
                    raise item
                return item
            return ProviderResult.success(f"REF-{len(self.calls)}")
        finally:
            self.in_flight[request.tx_id] -= 1

    def calls_for(self, payment_id: str) -> int:
        return sum(1 for call in self.calls if call.tx_id == payment_id)


@pytest.fixture
def db_engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'settlepay-test.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return make_session_factory(db_engine)


@pytest.fixture
def store(session_factory):
    return SqlPaymentStore(session_factory)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def monotonic():
    return FakeMonotonic()


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def service(store, provider, clock):
    return PaymentService(store, provider, max_retries=3, stale_after_seconds=300, clock=clock, service_name="test")


@pytest.fixture
def limiter(monotonic):
    return FixedWindowRateLimiter(max_rate=2, window_seconds=1.0, clock=monotonic, sleep=monotonic.advance)


@pytest.fixture
def dispatcher(service, limiter):
    return Dispatcher(service, limiter, interval_seconds=5.0)


@pytest.fixture
def make_request():
    def _make(key: str = "k1", amount: str = "10.00", **overrides) -> PaymentCreateRequest:
        fields = {
            "idempotency_key": key,
            "amount": Decimal(amount),
            "currency": "usd",
            "merchant_id": "merchant-1",
            "customer_id": "cust-1",
            "description": "order #1",
        }
        fields.update(overrides)
        return PaymentCreateRequest(**fields)

    return _make
