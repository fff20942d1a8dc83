"""Payment error taxonomy.

`DuplicateKey` and `NotFound` reach callers of the engine. The provider and
recovery errors are internal: the lifecycle engine absorbs them into state
transitions, and their `code` is what ends up on the timeline.
"""

from settlepay.common.state_machine import InvalidTransition


class PaymentError(Exception):
    code = "PAYMENT_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class DuplicateKey(PaymentError):
    """A payment with this idempotency key already exists."""

    code = "DUPLICATE_PAYMENT"

    def __init__(self, idempotency_key: str) -> None:
        super().__init__(f"payment with idempotency key already exists: {idempotency_key}")
        self.idempotency_key = idempotency_key


class NotFound(PaymentError):
    code = "PAYMENT_NOT_FOUND"


class RetryableProviderFailure(PaymentError):
    code = "PROVIDER_RETRYABLE"


class PermanentProviderFailure(PaymentError):
    code = "PROVIDER_PERMANENT"


class RetryBudgetExhausted(PaymentError):
    code = "RETRY_BUDGET_EXHAUSTED"

    def __init__(self, retries: int, last_reason: str) -> None:
        super().__init__(f"retry budget exhausted after {retries} retries: {last_reason}")
        self.retries = retries
        self.last_reason = last_reason


class OrphanedProcessing(PaymentError):
    code = "ORPHANED_PROCESSING"


class NotSettleable(PaymentError):
    """The payment exists but is not PENDING, or another worker claimed it first."""

    code = "PAYMENT_NOT_PENDING"


class PermitUnavailable(PaymentError):
    """No provider permit became free within the caller's timeout."""

    code = "PROVIDER_RATE_LIMITED"


__all__ = [
    "DuplicateKey",
    "InvalidTransition",
    "NotFound",
    "NotSettleable",
    "OrphanedProcessing",
    "PaymentError",
    "PermanentProviderFailure",
    "PermitUnavailable",
    "RetryBudgetExhausted",
    "RetryableProviderFailure",
]
