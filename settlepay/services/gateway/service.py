"""Payment lifecycle engine.

Owns intake, the PENDING -> PROCESSING -> terminal state machine, the retry
budget, and recovery of attempts orphaned by a crash. Every transition is a
conditional store update, so a payment never has two in-flight provider calls
and a late result from a reclaimed attempt cannot overwrite newer state.
"""

import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Sequence
from uuid import uuid4

from settlepay.common.events import PAYMENTS_COMPLETED, PAYMENTS_FAILED, EventEnvelope
from settlepay.common.logging import bind_context, logger, payment_id_ctx, trace_id_ctx
from settlepay.common.metrics import (
    claim_conflicts_total,
    duplicates_rejected_total,
    orphans_reclaimed_total,
    payment_e2e_seconds,
    payment_failure_total,
    payment_success_total,
    payments_created_total,
    pending_payments_total,
    provider_latency_seconds,
    retries_total,
)
from settlepay.common.state_machine import PaymentStatus, is_terminal
from settlepay.common.tracing import get_tracer
from settlepay.services.gateway.errors import (
    DuplicateKey,
    NotFound,
    OrphanedProcessing,
    PaymentError,
    PermanentProviderFailure,
    RetryableProviderFailure,
    RetryBudgetExhausted,
)
from settlepay.services.gateway.models import Payment, PaymentTimeline
from settlepay.services.gateway.provider import (
    ProviderOutcome,
    ProviderRequest,
    ProviderResult,
    SettlementProvider,
)
from settlepay.services.gateway.schemas import PaymentCreateRequest
from settlepay.services.gateway.store import PaymentStore

PENDING = PaymentStatus.PENDING.value
PROCESSING = PaymentStatus.PROCESSING.value
COMPLETED = PaymentStatus.COMPLETED.value
FAILED = PaymentStatus.FAILED.value


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentService:
    """Lifecycle engine shared by the intake API and the dispatcher."""

    def __init__(
        self,
        store: PaymentStore,
        provider: SettlementProvider,
        max_retries: int = 3,
        stale_after_seconds: float = 300,
        clock: Callable[[], datetime] = utcnow,
        service_name: str = "gateway",
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.store = store
        self.provider = provider
        self.max_retries = max_retries
        self.stale_after = timedelta(seconds=stale_after_seconds)
        self.clock = clock
        self.service_name = service_name
        self.tracer = get_tracer(__name__)

    def create(self, req: PaymentCreateRequest) -> Payment:
        """Create one PENDING payment per idempotency key.

        Raises `DuplicateKey` when the key was used before; the existing record is
        left untouched and can be fetched with `get_by_idempotency_key`.
        """

        now = self.clock()
        payment = Payment(
            payment_id=str(uuid4()),
            idempotency_key=req.idempotency_key,
            amount=req.amount,
            currency=req.currency.upper(),
            merchant_id=req.merchant_id,
            customer_id=req.customer_id,
            description=req.description,
            status=PENDING,
            state_version=0,
            retry_count=0,
            created_at=now,
            updated_at=now,
        )
        try:
            created = self.store.insert_unique(payment)
        except DuplicateKey:
            duplicates_rejected_total.labels(service=self.service_name).inc()
            logger.warning("duplicate_payment_rejected idempotency_key=%s", req.idempotency_key)
            raise
        payments_created_total.labels(service=self.service_name, currency=created.currency).inc()
        logger.info(
            "payment_created payment_id=%s idempotency_key=%s amount=%s currency=%s",
            created.payment_id,
            created.idempotency_key,
            created.amount,
            created.currency,
        )
        return created

    def get(self, payment_id: str) -> Payment:
        return self.store.get_by_id(payment_id)

    def get_by_idempotency_key(self, idempotency_key: str) -> Payment:
        return self.store.get_by_key(idempotency_key)

    def list_eligible(self, limit: int | None = None) -> list[Payment]:
        """PENDING payments, oldest first."""

        eligible = self.store.list_by_status(PENDING, limit=limit)
        pending_payments_total.labels(service=self.service_name).set(self.store.count_by_status(PENDING))
        return eligible

    def timeline(self, payment_id: str) -> Sequence[PaymentTimeline]:
        """Recorded transitions for one payment; raises `NotFound` for an unknown id."""

        self.store.get_by_id(payment_id)
        return self.store.timeline(payment_id)

    def recover_orphans(self) -> list[Payment]:
        """Return PROCESSING payments untouched for longer than the staleness threshold to PENDING.

        The reclaim is conditional on the version observed here; if the attempt
        finishes in the meantime, its own update wins and this one is skipped.
        """

        now = self.clock()
        reclaimed = []
        for payment in self.store.list_stale(PROCESSING, now - self.stale_after):
            orphan = OrphanedProcessing(f"no settlement result since {payment.updated_at.isoformat()}")
            updated = self.store.compare_and_swap_status(
                payment.payment_id,
                PROCESSING,
                PENDING,
                {"updated_at": now},
                expected_version=payment.state_version,
                reason=str(orphan),
            )
            if updated is None:
                claim_conflicts_total.labels(service=self.service_name, transition="reclaim").inc()
                continue
            orphans_reclaimed_total.labels(service=self.service_name).inc()
            logger.warning(
                "orphan_reclaimed payment_id=%s stuck_since=%s retry_count=%s",
                payment.payment_id,
                payment.updated_at.isoformat(),
                payment.retry_count,
            )
            reclaimed.append(updated)
        return reclaimed

    async def settle(self, payment_id: str) -> Payment | None:
        """Claim one PENDING payment, submit it to the provider and record the outcome.

        Returns the payment after its post-attempt transition, or None when the
        payment was not claimable (missing, not PENDING, or claimed by someone else).
        """

        with bind_context(payment_id_ctx, payment_id):
            try:
                payment = self.store.get_by_id(payment_id)
            except NotFound:
                logger.error("settle_skipped_missing payment_id=%s", payment_id)
                return None
            if payment.status != PENDING:
                logger.info("settle_skipped payment_id=%s status=%s", payment_id, payment.status)
                return None
            claimed = self.store.compare_and_swap_status(
                payment_id,
                PENDING,
                PROCESSING,
                {"updated_at": self.clock()},
                expected_version=payment.state_version,
                reason="claimed_for_settlement",
            )
            if claimed is None:
                claim_conflicts_total.labels(service=self.service_name, transition="claim").inc()
                logger.info("claim_lost payment_id=%s", payment_id)
                return None
            result = await self._submit(claimed)
            return self._record_result(claimed, result)

    async def _submit(self, payment: Payment) -> ProviderResult:
        """Call the provider; any unexpected exception becomes a permanent failure."""

        request = ProviderRequest(
            tx_id=payment.payment_id,
            amount=payment.amount,
            currency=payment.currency,
            merchant_id=payment.merchant_id,
            customer_id=payment.customer_id,
            description=payment.description,
        )
        started = time.perf_counter()
        with self.tracer.start_as_current_span("provider.submit") as span:
            span.set_attribute("payment.id", payment.payment_id)
            span.set_attribute("payment.attempt", payment.retry_count + 1)
            try:
                result = await self.provider.submit(request)
            except Exception as exc:
                logger.exception("provider_unexpected_error payment_id=%s", payment.payment_id)
                result = ProviderResult.permanent(f"internal processing error: {exc.__class__.__name__}")
            span.set_attribute("provider.outcome", result.outcome.value)
        provider_latency_seconds.labels(service=self.service_name, outcome=result.outcome.value).observe(
            time.perf_counter() - started
        )
        return result

    def _record_result(self, claimed: Payment, result: ProviderResult) -> Payment | None:
        now = self.clock()
        failure: PaymentError | None = None
        if result.outcome is ProviderOutcome.SUCCESS:
            target = COMPLETED
            mutations = {"provider_reference": result.reference, "completed_at": now, "updated_at": now}
            reason = "provider_completed"
        elif result.outcome is ProviderOutcome.RETRYABLE_FAILURE and claimed.retry_count < self.max_retries:
            failure = RetryableProviderFailure(result.reason or "retryable failure")
            target = PENDING
            mutations = {
                "retry_count": claimed.retry_count + 1,
                "failure_reason": failure.message,
                "updated_at": now,
            }
            reason = str(failure)
        else:
            if result.outcome is ProviderOutcome.RETRYABLE_FAILURE:
                failure = RetryBudgetExhausted(claimed.retry_count, result.reason or "retryable failure")
            else:
                failure = PermanentProviderFailure(result.reason or "permanent failure")
            target = FAILED
            mutations = {"failure_reason": failure.message, "completed_at": now, "updated_at": now}
            reason = str(failure)

        events = []
        if is_terminal(target):
            events.append(self._terminal_event(claimed, target, mutations, failure))

        updated = self.store.compare_and_swap_status(
            claimed.payment_id,
            PROCESSING,
            target,
            mutations,
            expected_version=claimed.state_version,
            reason=reason,
            events=events,
        )
        if updated is None:
            # Reclaimed by the orphan sweep while the provider call was in flight.
            claim_conflicts_total.labels(service=self.service_name, transition="settle").inc()
            logger.warning(
                "settle_result_discarded payment_id=%s outcome=%s reference=%s",
                claimed.payment_id,
                result.outcome.value,
                result.reference,
            )
            return None

        if target == COMPLETED:
            payment_success_total.labels(service=self.service_name).inc()
            self._observe_terminal_e2e(updated)
            logger.info(
                "payment_completed payment_id=%s provider_reference=%s",
                updated.payment_id,
                updated.provider_reference,
            )
        elif target == PENDING:
            retries_total.labels(service=self.service_name, dependency="provider").inc()
            logger.warning(
                "payment_retry_scheduled payment_id=%s retry_count=%s/%s reason=%s",
                updated.payment_id,
                updated.retry_count,
                self.max_retries,
                updated.failure_reason,
            )
        else:
            payment_failure_total.labels(service=self.service_name, reason_code=failure.code).inc()
            self._observe_terminal_e2e(updated)
            logger.error(
                "payment_failed payment_id=%s code=%s reason=%s",
                updated.payment_id,
                failure.code,
                updated.failure_reason,
            )
        return updated

    def _terminal_event(
        self, payment: Payment, target: str, mutations: dict, failure: PaymentError | None
    ) -> EventEnvelope:
        payload = {
            "status": target,
            "amount": str(payment.amount),
            "currency": payment.currency,
            "merchant_id": payment.merchant_id,
            "customer_id": payment.customer_id,
            "retry_count": payment.retry_count,
        }
        if target == COMPLETED:
            payload["provider_reference"] = mutations["provider_reference"]
        else:
            payload["error_code"] = failure.code
            payload["failure_reason"] = failure.message
        return EventEnvelope(
            event_type=PAYMENTS_COMPLETED if target == COMPLETED else PAYMENTS_FAILED,
            aggregate_id=payment.payment_id,
            trace_id=trace_id_ctx.get(),
            payload=payload,
        )

    def _observe_terminal_e2e(self, payment: Payment) -> None:
        if payment.created_at is None or payment.completed_at is None:
            return
        elapsed = max(0.0, (payment.completed_at - payment.created_at).total_seconds())
        payment_e2e_seconds.labels(service=self.service_name, terminal_state=payment.status).observe(elapsed)
