"""Unit tests for DeliveryExecutor and response classification.

HTTP is served by httpx.MockTransport; nothing leaves the process.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

import httpx
import pytest

from hookrelay.executor import DeliveryExecutor, classify_response, parse_retry_after
from hookrelay.signing import verify
from hookrelay.store import InMemoryDeliveryStore
from hookrelay_protocols import Delivery, DeliveryState, ErrorClass, OutcomeKind
from hookrelay_shared import canonical_json, derive_delivery_id

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


# =============================================================================
# CLASSIFICATION
# =============================================================================


@pytest.mark.parametrize("status", [200, 201, 202, 204, 299])
def test_2xx_is_success(status):
    outcome = classify_response(status, {}, NOW)

    assert outcome.kind == OutcomeKind.SUCCESS
    assert outcome.error_class is None


@pytest.mark.parametrize("status", [500, 502, 503, 504, 599])
def test_5xx_is_retryable(status):
    outcome = classify_response(status, {}, NOW, body="upstream down")

    assert outcome.kind == OutcomeKind.RETRYABLE_FAILURE
    assert outcome.error_class == ErrorClass.SERVER_ERROR
    assert outcome.detail == "upstream down"


@pytest.mark.parametrize("status", [400, 401, 403, 404, 410, 422, 301, 302])
def test_4xx_and_redirects_are_permanent(status):
    outcome = classify_response(status, {}, NOW)

    assert outcome.kind == OutcomeKind.PERMANENT_FAILURE
    assert outcome.error_class == ErrorClass.CLIENT_ERROR


def test_429_is_throttle_with_retry_after():
    outcome = classify_response(429, {"retry-after": "5"}, NOW)

    assert outcome.kind == OutcomeKind.THROTTLED
    assert outcome.error_class == ErrorClass.THROTTLED
    assert outcome.retry_after_seconds == 5.0


def test_429_without_retry_after():
    assert classify_response(429, {}, NOW).retry_after_seconds is None


def test_retry_after_http_date():
    header = format_datetime(NOW + timedelta(seconds=30), usegmt=True)

    assert parse_retry_after(header, NOW) == pytest.approx(30.0)


@pytest.mark.parametrize("value,expected", [
    ("0", 0.0),
    ("-3", 0.0),
    (" 12 ", 12.0),
    ("soon", None),
    ("", None),
    (None, None),
    ("inf", None),
])
def test_retry_after_parsing(value, expected):
    assert parse_retry_after(value, NOW) == expected


def test_retry_after_date_in_past_is_zero():
    header = format_datetime(NOW - timedelta(seconds=30), usegmt=True)

    assert parse_retry_after(header, NOW) == 0.0


def test_response_detail_is_truncated():
    outcome = classify_response(500, {}, NOW, body="x" * 5000)

    assert len(outcome.detail) == 500


# =============================================================================
# EXECUTOR
# =============================================================================


def _executor(handler, store, clock, mock_logger, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return DeliveryExecutor(store, http_client=client, clock=clock, logger=mock_logger, **kwargs)


async def _delivery(store, event, subscription):
    delivery = Delivery(
        delivery_id=derive_delivery_id(event.id, subscription.id),
        event=event,
        subscription_id=subscription.id,
        state=DeliveryState.IN_FLIGHT,
        created_at=event.created_at,
        updated_at=event.created_at,
    )
    await store.create_delivery(delivery)
    return delivery


@pytest.mark.asyncio
async def test_request_is_signed_canonical_json(make_subscription, make_event, clock, mock_logger):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200)

    store = InMemoryDeliveryStore()
    subscription = make_subscription(headers={"Authorization": "Bearer abc"})
    event = make_event(payload={"b": 2, "a": 1})
    delivery = await _delivery(store, event, subscription)

    outcome = await _executor(handler, store, clock, mock_logger).execute(delivery, subscription, 1)

    assert outcome.is_success
    request = seen[0]
    assert request.method == "POST"
    assert str(request.url) == subscription.url
    assert request.content == canonical_json(event.to_wire())
    assert json.loads(request.content)["data"] == {"a": 1, "b": 2}
    assert verify(request.content, request.headers["X-Webhook-Signature"], subscription.secret)
    assert request.headers["X-Webhook-Signature"].startswith("sha256=")
    assert request.headers["X-Webhook-Delivery"] == delivery.delivery_id
    assert request.headers["X-Webhook-Attempt"] == "1"
    assert request.headers["X-Webhook-Event"] == "order.created"
    assert request.headers["X-Webhook-ID"] == event.id
    assert request.headers["X-Idempotency-Key"] == event.idempotency_key
    assert request.headers["Content-Type"] == "application/json"
    assert request.headers["Authorization"] == "Bearer abc"


@pytest.mark.asyncio
async def test_custom_headers_cannot_override_reserved(make_subscription, make_event, clock, mock_logger):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200)

    store = InMemoryDeliveryStore()
    subscription = make_subscription(headers={
        "x-webhook-signature": "forged",
        "X-Webhook-Attempt": "99",
        "X-Tenant": "acme",
    })
    event = make_event()
    delivery = await _delivery(store, event, subscription)

    await _executor(handler, store, clock, mock_logger).execute(delivery, subscription, 1)

    headers = seen[0].headers
    assert headers["X-Webhook-Signature"] != "forged"
    assert headers["X-Webhook-Attempt"] == "1"
    assert headers["X-Tenant"] == "acme"


@pytest.mark.asyncio
async def test_every_execute_appends_exactly_one_record(make_subscription, make_event, clock, mock_logger):
    store = InMemoryDeliveryStore()
    subscription = make_subscription()
    event = make_event()
    delivery = await _delivery(store, event, subscription)
    planned_at = NOW + timedelta(minutes=1)

    outcome = await _executor(
        lambda request: httpx.Response(503, text="maintenance"), store, clock, mock_logger,
    ).execute(delivery, subscription, 1, plan_next=lambda o: planned_at)

    attempts = await store.list_attempts(delivery.delivery_id)
    assert len(attempts) == 1
    record = attempts[0]
    assert record.attempt_number == 1
    assert record.sequence == 1
    assert record.outcome == OutcomeKind.RETRYABLE_FAILURE
    assert record.status_code == 503
    assert record.error_class == ErrorClass.SERVER_ERROR
    assert record.error_detail == "maintenance"
    assert record.next_attempt_at == planned_at
    assert record.executed_at == clock.now()
    assert outcome.kind == OutcomeKind.RETRYABLE_FAILURE


@pytest.mark.asyncio
async def test_connection_error_is_retryable_network_error(make_subscription, make_event, clock, mock_logger):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    store = InMemoryDeliveryStore()
    subscription = make_subscription()
    delivery = await _delivery(store, make_event(), subscription)

    outcome = await _executor(handler, store, clock, mock_logger).execute(delivery, subscription, 1)

    assert outcome.kind == OutcomeKind.RETRYABLE_FAILURE
    assert outcome.error_class == ErrorClass.NETWORK_ERROR
    assert "ConnectError" in outcome.detail
    assert len(await store.list_attempts(delivery.delivery_id)) == 1


@pytest.mark.asyncio
async def test_transport_timeout_is_retryable_timeout(make_subscription, make_event, clock, mock_logger):
    def handler(request):
        raise httpx.ReadTimeout("read timed out", request=request)

    store = InMemoryDeliveryStore()
    subscription = make_subscription()
    delivery = await _delivery(store, make_event(), subscription)

    outcome = await _executor(handler, store, clock, mock_logger).execute(delivery, subscription, 1)

    assert outcome.kind == OutcomeKind.RETRYABLE_FAILURE
    assert outcome.error_class == ErrorClass.TIMEOUT


@pytest.mark.asyncio
async def test_slow_endpoint_is_hard_cancelled(make_subscription, make_event, clock, mock_logger):
    async def handler(request):
        await asyncio.sleep(10)
        return httpx.Response(200)

    store = InMemoryDeliveryStore()
    subscription = make_subscription(timeout_seconds=0.05)
    delivery = await _delivery(store, make_event(), subscription)

    outcome = await _executor(handler, store, clock, mock_logger).execute(delivery, subscription, 1)

    assert outcome.error_class == ErrorClass.TIMEOUT
    assert outcome.kind == OutcomeKind.RETRYABLE_FAILURE


@pytest.mark.asyncio
async def test_unexpected_exception_never_escapes(make_subscription, make_event, clock, mock_logger):
    def handler(request):
        raise RuntimeError("boom")

    store = InMemoryDeliveryStore()
    subscription = make_subscription()
    delivery = await _delivery(store, make_event(), subscription)

    outcome = await _executor(handler, store, clock, mock_logger).execute(delivery, subscription, 1)

    assert outcome.kind == OutcomeKind.RETRYABLE_FAILURE
    assert outcome.error_class == ErrorClass.NETWORK_ERROR
    mock_logger.exception.assert_called_once()


@pytest.mark.asyncio
async def test_oversized_payload_is_permanent_without_request(make_subscription, make_event, clock, mock_logger):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200)

    store = InMemoryDeliveryStore()
    subscription = make_subscription()
    delivery = await _delivery(store, make_event(payload={"blob": "x" * 2048}), subscription)

    outcome = await _executor(
        handler, store, clock, mock_logger, payload_size_limit=1024,
    ).execute(delivery, subscription, 1)

    assert outcome.kind == OutcomeKind.PERMANENT_FAILURE
    assert outcome.error_class == ErrorClass.PAYLOAD_TOO_LARGE
    assert seen == []
    assert len(await store.list_attempts(delivery.delivery_id)) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("value", [b"raw-bytes", object()])
async def test_unserializable_payload_is_recorded_as_permanent(value, make_subscription, make_event, clock, mock_logger):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200)

    store = InMemoryDeliveryStore()
    subscription = make_subscription()
    delivery = await _delivery(store, make_event(payload={"amount": 1500, "blob": value}), subscription)

    outcome = await _executor(handler, store, clock, mock_logger).execute(delivery, subscription, 1)

    assert outcome.kind == OutcomeKind.PERMANENT_FAILURE
    assert outcome.error_class == ErrorClass.SERIALIZATION_ERROR
    assert seen == []
    attempts = await store.list_attempts(delivery.delivery_id)
    assert [a.error_class for a in attempts] == [ErrorClass.SERIALIZATION_ERROR]


@pytest.mark.asyncio
async def test_owned_client_closed_on_aclose(clock, mock_logger):
    executor = DeliveryExecutor(InMemoryDeliveryStore(), clock=clock, logger=mock_logger)
    client = executor._http()

    await executor.aclose()

    assert client.is_closed


@pytest.mark.asyncio
async def test_injected_client_left_open(clock, mock_logger):
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
    executor = DeliveryExecutor(InMemoryDeliveryStore(), http_client=client, clock=clock, logger=mock_logger)

    await executor.aclose()

    assert not client.is_closed
    await client.aclose()
