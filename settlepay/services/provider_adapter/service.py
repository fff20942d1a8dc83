"""Simulated settlement provider.

Outcome mix: a small share of transient (retryable) failures, a smaller share
of declines (permanent), everything else succeeds with a `MOCK_TXN_<n>`
reference. Customer ids starting with `force-timeout` / `force-decline` pin the
outcome so flows can be exercised deterministically.
"""

import asyncio
import itertools
import random

from settlepay.common.config import settings
from settlepay.common.logging import logger
from settlepay.services.gateway.provider import (
    HttpSettlementProvider,
    ProviderRequest,
    ProviderResult,
    SettlementProvider,
)


class MockSettlementProvider(SettlementProvider):
    """In-process provider with random latency and a configurable outcome mix."""

    def __init__(
        self,
        retryable_probability: float = 0.05,
        permanent_probability: float = 0.03,
        min_latency_ms: int = 50,
        max_latency_ms: int = 200,
        rng: random.Random | None = None,
        sleep=asyncio.sleep,
    ) -> None:
        if retryable_probability + permanent_probability > 1.0:
            raise ValueError("failure probabilities must sum to <= 1.0")
        self.retryable_probability = retryable_probability
        self.permanent_probability = permanent_probability
        self.min_latency_ms = min_latency_ms
        self.max_latency_ms = max(min_latency_ms, max_latency_ms)
        self.rng = rng or random.Random()
        self._sleep = sleep
        self._sequence = itertools.count(1)

    @property
    def name(self) -> str:
        return "mock"

    def _pick_outcome(self, customer_id: str) -> str:
        customer = customer_id.lower()
        if customer.startswith("force-timeout"):
            return "TIMEOUT"
        if customer.startswith("force-decline"):
            return "DECLINE"
        roll = self.rng.random()
        if roll < self.retryable_probability:
            return "TIMEOUT"
        if roll < self.retryable_probability + self.permanent_probability:
            return "DECLINE"
        return "SUCCESS"

    async def submit(self, request: ProviderRequest) -> ProviderResult:
        latency_ms = self.rng.randint(self.min_latency_ms, self.max_latency_ms)
        await self._sleep(latency_ms / 1000)
        outcome = self._pick_outcome(request.customer_id)
        if outcome == "TIMEOUT":
            logger.warning("mock_provider_transient_failure payment_id=%s", request.tx_id)
            return ProviderResult.retryable("Temporary service unavailable")
        if outcome == "DECLINE":
            logger.warning("mock_provider_declined payment_id=%s", request.tx_id)
            return ProviderResult.permanent("Card declined")
        reference = f"MOCK_TXN_{next(self._sequence)}"
        logger.info(
            "mock_provider_settled payment_id=%s reference=%s amount=%s currency=%s latency_ms=%s",
            request.tx_id,
            reference,
            request.amount,
            request.currency,
            latency_ms,
        )
        return ProviderResult.success(reference)


def build_provider(config=settings) -> SettlementProvider:
    """Provider selected by `provider_mode`: in-process mock or the HTTP adapter."""

    if config.provider_mode == "http":
        return HttpSettlementProvider(config.provider_url, timeout_seconds=config.provider_timeout_seconds)
    if config.provider_mode != "mock":
        raise ValueError(f"unknown provider_mode: {config.provider_mode}")
    return MockSettlementProvider(
        retryable_probability=config.mock_retryable_probability,
        permanent_probability=config.mock_permanent_probability,
        min_latency_ms=config.mock_min_latency_ms,
        max_latency_ms=config.mock_max_latency_ms,
    )
