"""End-to-end delivery scenarios.

Full service wiring over the in-memory store and queue; subscriber
endpoints are scripted through httpx.MockTransport and time is advanced
manually between sweeps.
"""

from datetime import timedelta

import httpx
import pytest

from hookrelay_protocols import (
    DeliveryState,
    DeliveryStateError,
    DispatchStatus,
    ErrorClass,
    OutcomeKind,
)
from hookrelay_shared import derive_delivery_id

pytestmark = pytest.mark.integration


async def _run_until_settled(service, clock, max_sweeps=20):
    """Sweep, jumping the clock to the next eligible entry, until the queue is empty."""
    for _ in range(max_sweeps):
        await service.drain_due()
        next_at = await service.queue.next_eligible_at()
        if next_at is None:
            return
        clock.set(max(clock.time(), next_at.timestamp()))
    raise AssertionError("deliveries did not settle")


def _assert_attempt_sequence(attempts, max_retries):
    numbers = [a.attempt_number for a in attempts if a.outcome != OutcomeKind.THROTTLED]
    assert numbers == list(range(1, len(numbers) + 1))
    assert len(numbers) <= max_retries + 1
    assert [a.sequence for a in attempts] == list(range(1, len(attempts) + 1))


@pytest.mark.asyncio
async def test_three_server_errors_dead_letter(service, make_event, transport, clock):
    transport.set(httpx.Response(500))
    result = await service.dispatch(make_event())
    delivery_id = result.delivery_ids["sub_1"]

    await _run_until_settled(service, clock)

    assert await service.get_delivery_state(delivery_id) == DeliveryState.DEAD_LETTERED
    attempts = await service.list_attempts(delivery_id)
    assert len(attempts) == 3
    assert all(a.outcome == OutcomeKind.RETRYABLE_FAILURE for a in attempts)
    assert all(a.error_class == ErrorClass.SERVER_ERROR for a in attempts)
    assert attempts[-1].next_attempt_at is None
    _assert_attempt_sequence(attempts, max_retries=3)
    assert await service.queue_size() == 0


@pytest.mark.asyncio
async def test_backoff_doubles_between_attempts(service, make_event, transport, clock):
    transport.set(httpx.Response(500))
    result = await service.dispatch(make_event())
    delivery_id = result.delivery_ids["sub_1"]

    await _run_until_settled(service, clock)

    executed = [a.executed_at for a in await service.list_attempts(delivery_id)]
    gaps = [(b - a).total_seconds() for a, b in zip(executed, executed[1:])]
    assert gaps == [60.0, 120.0]


@pytest.mark.asyncio
async def test_two_failures_then_success(service, make_event, transport, clock):
    transport.set(httpx.Response(500), httpx.Response(500), httpx.Response(200))
    result = await service.dispatch(make_event())
    delivery_id = result.delivery_ids["sub_1"]

    await _run_until_settled(service, clock)

    assert await service.get_delivery_state(delivery_id) == DeliveryState.SUCCEEDED
    attempts = await service.list_attempts(delivery_id)
    assert [a.outcome for a in attempts] == [
        OutcomeKind.RETRYABLE_FAILURE,
        OutcomeKind.RETRYABLE_FAILURE,
        OutcomeKind.SUCCESS,
    ]
    assert attempts[-1].next_attempt_at is None
    assert await service.queue.get(delivery_id) is None
    assert len(transport.requests) == 3


@pytest.mark.asyncio
async def test_filtered_event_creates_no_attempts(service, source, make_subscription, make_event, transport, clock):
    await source.put(make_subscription(filter_rules={"order.created": {"amount": {"min": 1000}}}))
    event = make_event(payload={"amount": 500})

    result = await service.dispatch(event)
    await _run_until_settled(service, clock)

    assert result.statuses == {"sub_1": DispatchStatus.FILTERED}
    assert transport.requests == []
    assert (await service.delivery_stats())["attempts"] == 0
    assert await service.store.get_delivery(derive_delivery_id(event.id, "sub_1")) is None


@pytest.mark.asyncio
async def test_429_retry_after_keeps_attempt_number(service, make_event, transport, clock):
    transport.set(httpx.Response(429, headers={"Retry-After": "5"}), httpx.Response(200))
    result = await service.dispatch(make_event())
    delivery_id = result.delivery_ids["sub_1"]

    await service.drain_due()
    delivery = await service.get_delivery(delivery_id)
    assert delivery.state == DeliveryState.PENDING_RETRY
    assert delivery.next_attempt_at == clock.now() + timedelta(seconds=5)

    clock.advance(4)
    assert (await service.drain_due()).claimed == 0
    clock.advance(1)
    await service.drain_due()

    assert await service.get_delivery_state(delivery_id) == DeliveryState.SUCCEEDED
    attempts = await service.list_attempts(delivery_id)
    assert [(a.attempt_number, a.outcome) for a in attempts] == [
        (1, OutcomeKind.THROTTLED),
        (1, OutcomeKind.SUCCESS),
    ]
    assert [r.headers["X-Webhook-Attempt"] for r in transport.requests] == ["1", "1"]
    _assert_attempt_sequence(attempts, max_retries=3)


@pytest.mark.asyncio
async def test_throttles_never_exhaust_retry_budget(service, source, make_subscription, make_event, transport, clock):
    await source.put(make_subscription(max_retries=1))
    transport.set(*([httpx.Response(429)] * 6), httpx.Response(200))
    result = await service.dispatch(make_event())
    delivery_id = result.delivery_ids["sub_1"]

    await _run_until_settled(service, clock)

    delivery = await service.get_delivery(delivery_id)
    assert delivery.state == DeliveryState.SUCCEEDED
    assert delivery.throttle_count == 6
    assert delivery.attempts_made == 1


@pytest.mark.asyncio
async def test_network_errors_retry_then_succeed(service, make_event, transport, clock):
    transport.set(httpx.ConnectError("connection refused"), httpx.Response(204))
    result = await service.dispatch(make_event())
    delivery_id = result.delivery_ids["sub_1"]

    await _run_until_settled(service, clock)

    attempts = await service.list_attempts(delivery_id)
    assert [a.error_class for a in attempts] == [ErrorClass.NETWORK_ERROR, None]
    assert await service.get_delivery_state(delivery_id) == DeliveryState.SUCCEEDED


@pytest.mark.asyncio
async def test_manual_retry_of_dead_letter_after_fix(service, make_event, transport, clock):
    transport.set(httpx.Response(500))
    result = await service.dispatch(make_event())
    delivery_id = result.delivery_ids["sub_1"]
    await _run_until_settled(service, clock)
    assert await service.get_delivery_state(delivery_id) == DeliveryState.DEAD_LETTERED

    transport.set(httpx.Response(200))
    retried = await service.retry_now(delivery_id)
    assert retried.state == DeliveryState.PENDING_RETRY
    await service.drain_due()

    assert await service.get_delivery_state(delivery_id) == DeliveryState.SUCCEEDED
    attempts = await service.list_attempts(delivery_id)
    assert [a.attempt_number for a in attempts] == [1, 2, 3, 4]
    _assert_attempt_sequence(attempts, max_retries=3)


@pytest.mark.asyncio
async def test_manual_retry_capped_at_max_attempts(service, make_event, transport, clock):
    transport.set(httpx.Response(500))
    result = await service.dispatch(make_event())
    delivery_id = result.delivery_ids["sub_1"]
    await _run_until_settled(service, clock)

    await service.retry_now(delivery_id)
    await service.drain_due()
    assert await service.get_delivery_state(delivery_id) == DeliveryState.DEAD_LETTERED

    with pytest.raises(DeliveryStateError, match="ceiling"):
        await service.retry_now(delivery_id)
    assert len(await service.list_attempts(delivery_id)) == 4


@pytest.mark.asyncio
async def test_independent_subscriptions_fail_independently(service, source, make_subscription, make_event, transport, clock):
    await source.put(make_subscription(id="sub_2", url="https://down.example.com/hook"))

    def handler(request):
        if request.url.host == "down.example.com":
            return httpx.Response(503)
        return httpx.Response(200)

    transport.set(handler)
    result = await service.dispatch(make_event())

    await _run_until_settled(service, clock)

    assert await service.get_delivery_state(result.delivery_ids["sub_1"]) == DeliveryState.SUCCEEDED
    assert await service.get_delivery_state(result.delivery_ids["sub_2"]) == DeliveryState.DEAD_LETTERED
    stats = await service.delivery_stats()
    assert stats["by_state"]["succeeded"] == 1
    assert stats["by_state"]["dead_lettered"] == 1
    assert stats["success_rate"] == 0.5


@pytest.mark.asyncio
async def test_unserializable_payload_fails_permanently(service, make_event, transport, clock):
    result = await service.dispatch(make_event(payload={"order_id": "ord_9", "handle": object()}))
    delivery_id = result.delivery_ids["sub_1"]

    await _run_until_settled(service, clock)

    delivery = await service.get_delivery(delivery_id)
    assert delivery.state == DeliveryState.PERMANENTLY_FAILED
    assert delivery.attempts_made == 1
    attempts = await service.list_attempts(delivery_id)
    assert [(a.outcome, a.error_class) for a in attempts] == [
        (OutcomeKind.PERMANENT_FAILURE, ErrorClass.SERIALIZATION_ERROR),
    ]
    assert transport.requests == []
    assert await service.queue_size() == 0
