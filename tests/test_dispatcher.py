"""Dispatch loop: FIFO order, rate-limit deferral, isolation and overlap safety."""

import asyncio

import pytest

from settlepay.services.gateway.dispatcher import Dispatcher
from settlepay.services.gateway.provider import ProviderResult


def _create_in_order(service, clock, make_request, keys):
    payments = []
    for key in keys:
        payments.append(service.create(make_request(key)))
        clock.advance(1)
    return payments


@pytest.mark.asyncio
async def test_cycle_settles_oldest_first_and_defers_the_rest(dispatcher, service, provider, clock, make_request, monotonic):
    p1, p2, p3 = _create_in_order(service, clock, make_request, ["a", "b", "c"])

    report = await dispatcher.run_cycle()

    assert report.dispatched == 2
    assert report.deferred == 1
    assert [call.tx_id for call in provider.calls] == [p1.payment_id, p2.payment_id]
    assert service.get(p1.payment_id).status == "COMPLETED"
    assert service.get(p2.payment_id).status == "COMPLETED"
    assert service.get(p3.payment_id).status == "PENDING"

    # Same window: nothing left to spend.
    report = await dispatcher.run_cycle()
    assert report.dispatched == 0
    assert report.deferred == 1

    monotonic.advance(1.0)
    report = await dispatcher.run_cycle()
    assert report.dispatched == 1
    assert service.get(p3.payment_id).status == "COMPLETED"


@pytest.mark.asyncio
async def test_retried_payment_keeps_its_place_in_line(dispatcher, service, provider, clock, make_request, monotonic):
    p1, p2, p3 = _create_in_order(service, clock, make_request, ["a", "b", "c"])
    provider.push(ProviderResult.retryable("Temporary service unavailable"))

    await dispatcher.run_cycle()
    monotonic.advance(1.0)
    await dispatcher.run_cycle()

    # p1 retried and is still older than p3, so it goes first in the next window.
    assert [call.tx_id for call in provider.calls] == [p1.payment_id, p2.payment_id, p1.payment_id, p3.payment_id]


@pytest.mark.asyncio
async def test_failure_on_one_payment_does_not_stop_the_cycle(dispatcher, service, provider, clock, make_request, monkeypatch):
    p1, p2 = _create_in_order(service, clock, make_request, ["a", "b"])
    real_settle = service.settle

    async def flaky_settle(payment_id):
        if payment_id == p1.payment_id:
            raise RuntimeError("database went away")
        return await real_settle(payment_id)

    monkeypatch.setattr(service, "settle", flaky_settle)

    report = await dispatcher.run_cycle()

    assert report.outcomes == {p1.payment_id: "ERROR", p2.payment_id: "COMPLETED"}
    assert service.get(p2.payment_id).status == "COMPLETED"


@pytest.mark.asyncio
async def test_cycle_reclaims_orphans_before_dispatching(dispatcher, service, store, clock, make_request):
    payment = service.create(make_request())
    store.compare_and_swap_status(
        payment.payment_id,
        "PENDING",
        "PROCESSING",
        {"updated_at": clock()},
        expected_version=payment.state_version,
        reason="claimed_for_settlement",
    )
    clock.advance(301)

    report = await dispatcher.run_cycle()

    assert report.reclaimed == 1
    assert report.outcomes == {payment.payment_id: "COMPLETED"}


@pytest.mark.asyncio
async def test_immediate_dispatch_serves_older_deferred_payments_first(
    dispatcher, service, provider, clock, make_request, monotonic
):
    a, b, c = _create_in_order(service, clock, make_request, ["a", "b", "c"])
    await dispatcher.run_cycle()
    assert service.get(c.payment_id).status == "PENDING"

    monotonic.advance(1.0)
    d = service.create(make_request("d"))
    report = await dispatcher.dispatch_now(d.payment_id)

    # c waited longest, so it takes the first permit of the new window.
    order = [call.tx_id for call in provider.calls]
    assert order == [a.payment_id, b.payment_id, c.payment_id, d.payment_id]
    assert report.outcomes == {c.payment_id: "COMPLETED", d.payment_id: "COMPLETED"}


@pytest.mark.asyncio
async def test_immediate_dispatch_uses_the_shared_limiter(dispatcher, service, provider, clock, make_request):
    p1, p2, p3 = _create_in_order(service, clock, make_request, ["a", "b", "c"])

    report = await dispatcher.dispatch_now(p3.payment_id)

    assert report.dispatched == 2
    assert report.deferred == 1
    assert service.get(p3.payment_id).status == "PENDING"
    # The periodic cycle in the same window is also out of permits.
    report = await dispatcher.run_cycle()
    assert report.dispatched == 0
    assert [call.tx_id for call in provider.calls] == [p1.payment_id, p2.payment_id]


@pytest.mark.asyncio
async def test_immediate_dispatch_of_settled_payment_is_a_no_op(dispatcher, service, provider, make_request):
    payment = service.create(make_request())
    await dispatcher.dispatch_now(payment.payment_id)

    report = await dispatcher.dispatch_now(payment.payment_id)

    assert report.dispatched == 0
    assert provider.calls_for(payment.payment_id) == 1


@pytest.mark.asyncio
async def test_parallel_settlement_respects_the_limiter(service, provider, limiter, clock, make_request):
    dispatcher = Dispatcher(service, limiter, parallel_settlement=True)
    provider.delay = 0.01
    p1, p2, p3 = _create_in_order(service, clock, make_request, ["a", "b", "c"])

    report = await dispatcher.run_cycle()

    assert report.dispatched == 2
    assert report.deferred == 1
    assert report.outcomes == {p1.payment_id: "COMPLETED", p2.payment_id: "COMPLETED"}
    assert service.get(p3.payment_id).status == "PENDING"


@pytest.mark.asyncio
async def test_overlapping_cycles_never_double_submit(service, provider, clock, make_request):
    from settlepay.common.rate_limiter import FixedWindowRateLimiter

    dispatcher = Dispatcher(service, FixedWindowRateLimiter(max_rate=100), parallel_settlement=True)
    provider.delay = 0.01
    payments = _create_in_order(service, clock, make_request, [f"k{i}" for i in range(5)])

    await asyncio.gather(dispatcher.run_cycle(), dispatcher.run_cycle())

    for payment in payments:
        assert provider.calls_for(payment.payment_id) == 1
        assert provider.max_in_flight[payment.payment_id] == 1
        assert service.get(payment.payment_id).status == "COMPLETED"


@pytest.mark.asyncio
async def test_trigger_wakes_the_loop_before_the_interval(service, limiter, make_request):
    dispatcher = Dispatcher(service, limiter, interval_seconds=60)
    task = asyncio.create_task(dispatcher.run_forever())
    try:
        await asyncio.sleep(0.05)
        payment = service.create(make_request())
        dispatcher.trigger()
        for _ in range(100):
            await asyncio.sleep(0.01)
            if service.get(payment.payment_id).status == "COMPLETED":
                break
        assert service.get(payment.payment_id).status == "COMPLETED"
    finally:
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
