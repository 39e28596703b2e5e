"""Unit tests for DeliveryDispatcher."""

from unittest.mock import AsyncMock

import httpx
import pytest

from hookrelay import WebhookDeliveryService
from hookrelay_protocols import DeliveryState, DispatchStatus, SubscriptionSourceError
from hookrelay_shared import derive_delivery_id


@pytest.mark.asyncio
async def test_dispatch_enqueues_without_network(service, make_event, transport):
    event = make_event()

    result = await service.dispatch(event)

    delivery_id = derive_delivery_id(event.id, "sub_1")
    assert result.statuses == {"sub_1": DispatchStatus.QUEUED}
    assert result.delivery_ids == {"sub_1": delivery_id}
    assert transport.requests == []
    assert await service.get_delivery_state(delivery_id) == DeliveryState.QUEUED
    entry = await service.queue.get(delivery_id)
    assert entry.attempt_number == 1
    assert entry.eligible_at == (await service.get_delivery(delivery_id)).next_attempt_at


@pytest.mark.asyncio
async def test_redispatch_is_idempotent(service, make_event):
    event = make_event()

    await service.dispatch(event)
    again = await service.dispatch(event)

    assert again.statuses == {"sub_1": DispatchStatus.DUPLICATE}
    assert await service.queue_size() == 1
    stats = await service.delivery_stats()
    assert stats["deliveries"] == 1


@pytest.mark.asyncio
async def test_filtered_subscription_leaves_no_delivery(service, source, make_subscription, make_event):
    await source.put(make_subscription(
        filter_rules={"order.created": {"amount": {"min": 1000}}},
    ))

    result = await service.dispatch(make_event(payload={"amount": 500}))

    assert result.statuses == {"sub_1": DispatchStatus.FILTERED}
    assert result.delivery_ids == {}
    assert (await service.delivery_stats())["deliveries"] == 0
    assert await service.queue_size() == 0


@pytest.mark.asyncio
async def test_fan_out_to_matching_subscriptions_only(service, source, make_subscription, make_event):
    await source.put(make_subscription(id="sub_2", url="https://b.example.com/hook"))
    await source.put(make_subscription(id="sub_3", event_types={"payment.failed"}))
    await source.put(make_subscription(id="sub_4", url="https://d.example.com/hook", active=False))

    result = await service.dispatch(make_event())

    assert set(result.statuses) == {"sub_1", "sub_2"}
    assert len(set(result.delivery_ids.values())) == 2


@pytest.mark.asyncio
async def test_event_type_without_subscribers(service, make_event):
    result = await service.dispatch(make_event(type="customer.deleted"))

    assert result.statuses == {}


@pytest.mark.asyncio
async def test_unreadable_subscriptions_raise(settings, http_client, clock, mock_logger, make_event):
    source = AsyncMock()
    source.get_active_subscriptions_for_event_type.side_effect = TimeoutError("registry down")
    service = WebhookDeliveryService(
        source, settings, http_client=http_client, clock=clock, logger=mock_logger,
    )

    with pytest.raises(SubscriptionSourceError):
        await service.dispatch(make_event())


@pytest.mark.asyncio
async def test_summarize_reports_delivery_outcomes(service, source, make_subscription, make_event, transport):
    await source.put(make_subscription(id="sub_2", url="https://b.example.com/hook"))
    await source.put(make_subscription(
        id="sub_3",
        url="https://c.example.com/hook",
        filter_rules={"order.created": {"amount": {"max": 1}}},
    ))

    def handler(request):
        if request.url.host == "b.example.com":
            return httpx.Response(500)
        return httpx.Response(200)

    transport.set(handler)
    result = await service.dispatch(make_event())
    await service.drain_due()

    summary = await service.summarize(result)

    assert summary.statuses == {
        "sub_1": DispatchStatus.DELIVERED,
        "sub_2": DispatchStatus.RETRY_SCHEDULED,
        "sub_3": DispatchStatus.FILTERED,
    }
