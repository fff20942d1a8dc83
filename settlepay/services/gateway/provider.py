"""Settlement provider contract and the HTTP client implementation.

Whether a failure is retryable is decided by the provider, never inferred here
from transport status codes. The only local classification is for failures the
provider could not report itself: transport errors and timeouts are retryable,
a response we cannot parse is permanent.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

import httpx

from settlepay.common.logging import logger


class ProviderOutcome(str, Enum):
    SUCCESS = "SUCCESS"
    RETRYABLE_FAILURE = "RETRYABLE_FAILURE"
    PERMANENT_FAILURE = "PERMANENT_FAILURE"


@dataclass(frozen=True)
class ProviderRequest:
    """One settlement submission; `tx_id` is our payment id."""

    tx_id: str
    amount: Decimal
    currency: str
    merchant_id: str
    customer_id: str
    description: str | None = None

    def to_json(self) -> dict:
        return {
            "tx_id": self.tx_id,
            "amount": str(self.amount),
            "currency": self.currency,
            "merchant_id": self.merchant_id,
            "customer_id": self.customer_id,
            "description": self.description,
        }


@dataclass(frozen=True)
class ProviderResult:
    outcome: ProviderOutcome
    reference: str | None = None
    reason: str | None = None

    @classmethod
    def success(cls, reference: str) -> "ProviderResult":
        return cls(ProviderOutcome.SUCCESS, reference=reference)

    @classmethod
    def retryable(cls, reason: str) -> "ProviderResult":
        return cls(ProviderOutcome.RETRYABLE_FAILURE, reason=reason)

    @classmethod
    def permanent(cls, reason: str) -> "ProviderResult":
        return cls(ProviderOutcome.PERMANENT_FAILURE, reason=reason)


class SettlementProvider(ABC):
    """External settlement capability with bounded but variable latency."""

    @property
    @abstractmethod
    def name(self) -> str: ...

    @abstractmethod
    async def submit(self, request: ProviderRequest) -> ProviderResult:
        """Submit one payment. Timeouts must come back as retryable results."""


class HttpSettlementProvider(SettlementProvider):
    """Talks to a provider over HTTP: `POST {base_url}/submit`.

    The response body is `{"outcome": ..., "reference": ..., "reason": ...}`.
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._client = client

    @property
    def name(self) -> str:
        return "http"

    async def _post(self, request: ProviderRequest) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(
                f"{self.base_url}/submit", json=request.to_json(), timeout=self.timeout_seconds
            )
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            return await client.post(f"{self.base_url}/submit", json=request.to_json())

    async def submit(self, request: ProviderRequest) -> ProviderResult:
        try:
            resp = await self._post(request)
        except httpx.TimeoutException:
            logger.warning("provider_timeout payment_id=%s", request.tx_id)
            return ProviderResult.retryable("provider timeout")
        except httpx.TransportError as exc:
            logger.warning("provider_unreachable payment_id=%s error=%s", request.tx_id, exc)
            return ProviderResult.retryable(f"provider unreachable: {exc.__class__.__name__}")

        try:
            body = resp.json()
            outcome = ProviderOutcome(body["outcome"])
        except (ValueError, KeyError, TypeError):
            logger.error(
                "provider_bad_response payment_id=%s status_code=%s", request.tx_id, resp.status_code
            )
            return ProviderResult.permanent(f"unreadable provider response (HTTP {resp.status_code})")

        if outcome is ProviderOutcome.SUCCESS:
            reference = body.get("reference")
            if not reference:
                return ProviderResult.permanent("provider reported success without a reference")
            return ProviderResult.success(reference)
        return ProviderResult(outcome, reason=body.get("reason") or outcome.value.lower())
