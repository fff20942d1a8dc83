"""Rate-limited dispatch loop.

Each cycle reclaims orphaned attempts, then walks PENDING payments oldest first
and asks the rate limiter for one permit per payment. The first denial ends the
cycle: younger payments never spend the budget that older ones are waiting on.
"""

import asyncio
import time
from dataclasses import dataclass, field
from uuid import uuid4

from settlepay.common.logging import bind_context, cycle_id_ctx, logger
from settlepay.common.metrics import dispatch_cycle_seconds, rate_limit_denied_total
from settlepay.common.rate_limiter import RateLimiter
from settlepay.services.gateway.models import Payment
from settlepay.services.gateway.service import PaymentService


@dataclass
class CycleReport:
    """What one dispatch cycle did."""

    reclaimed: int = 0
    dispatched: int = 0
    deferred: int = 0
    outcomes: dict[str, str] = field(default_factory=dict)


class Dispatcher:
    """Drives PENDING payments through the provider under the rate limiter.

    `run_forever` wakes every `interval_seconds` or as soon as `trigger()` is
    called. Tests call `run_cycle()` directly.
    """

    def __init__(
        self,
        service: PaymentService,
        limiter: RateLimiter,
        interval_seconds: float = 5.0,
        parallel_settlement: bool = False,
    ) -> None:
        self.service = service
        self.limiter = limiter
        self.interval_seconds = interval_seconds
        self.parallel_settlement = parallel_settlement
        self._wakeup = asyncio.Event()

    def trigger(self) -> None:
        """Wake the periodic loop before its next tick."""

        self._wakeup.set()

    async def _settle_one(self, payment_id: str, report: CycleReport) -> None:
        try:
            settled = await self.service.settle(payment_id)
        except Exception as exc:
            # Store trouble on one payment must not end the cycle for the rest.
            logger.exception("settle_error payment_id=%s error=%s", payment_id, exc)
            report.outcomes[payment_id] = "ERROR"
            return
        report.outcomes[payment_id] = settled.status if settled is not None else "SKIPPED"

    async def run_cycle(self, path: str = "cycle") -> CycleReport:
        """One pass: orphan sweep, then FIFO settlement until the limiter says no."""

        with bind_context(cycle_id_ctx, uuid4().hex[:12]):
            return await self._run_cycle(path)

    async def _run_cycle(self, path: str) -> CycleReport:
        started = time.perf_counter()
        report = CycleReport()
        report.reclaimed = len(self.service.recover_orphans())
        eligible: list[Payment] = self.service.list_eligible()

        granted: list[str] = []
        for index, payment in enumerate(eligible):
            if not self.limiter.try_acquire(1):
                report.deferred = len(eligible) - index
                rate_limit_denied_total.labels(service=self.service.service_name, path=path).inc()
                logger.debug(
                    "rate_limited payment_id=%s deferred=%s", payment.payment_id, report.deferred
                )
                break
            if self.parallel_settlement:
                granted.append(payment.payment_id)
            else:
                await self._settle_one(payment.payment_id, report)
            report.dispatched += 1

        if granted:
            await asyncio.gather(*(self._settle_one(payment_id, report) for payment_id in granted))

        dispatch_cycle_seconds.labels(service=self.service.service_name).observe(time.perf_counter() - started)
        if eligible or report.reclaimed:
            logger.info(
                "dispatch_cycle eligible=%s dispatched=%s deferred=%s reclaimed=%s",
                len(eligible),
                report.dispatched,
                report.deferred,
                report.reclaimed,
            )
        return report

    async def dispatch_now(self, payment_id: str | None = None) -> CycleReport | None:
        """Fast path after intake: run one FIFO cycle now instead of waiting for the tick.

        The new payment gets a permit only once every older eligible payment has
        one. Purely an optimization; the periodic cycle picks it up either way.
        """

        logger.debug("immediate_dispatch payment_id=%s", payment_id)
        try:
            return await self.run_cycle(path="immediate")
        except Exception as exc:
            logger.exception("immediate_dispatch_error payment_id=%s error=%s", payment_id, exc)
            return None

    async def _wait_for_tick(self) -> None:
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=self.interval_seconds)
        except asyncio.TimeoutError:
            pass
        self._wakeup.clear()

    async def run_forever(self) -> None:
        """Run cycles until cancelled; a failing cycle is logged and the loop goes on."""

        while True:
            try:
                await self.run_cycle()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("dispatch_loop_error error=%s", exc)
            await self._wait_for_tick()
