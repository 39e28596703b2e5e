"""Pytest configuration for hookrelay service-layer tests.

HTTP goes through httpx.MockTransport driven by a ScriptedTransport, and
time through the ManualClock from the root conftest, so retries, backoff
and token buckets are fully deterministic.

Note: mock_logger and clock fixtures are centralized in root conftest.py
"""

import random
from typing import Any, Callable, List, Union

import httpx
import pytest

from hookrelay import InMemorySubscriptionSource, Settings, WebhookDeliveryService
from hookrelay_protocols import Event, RetryPolicy, Subscription


# =============================================================================
# HTTP
# =============================================================================

Scripted = Union[httpx.Response, Exception, Callable[[httpx.Request], httpx.Response]]


class ScriptedTransport:
    """MockTransport handler that replays a script of responses.

    Each request consumes the next item; the last item repeats once the
    script runs out. Exceptions in the script are raised as transport errors.
    """

    def __init__(self, *script: Scripted):
        self.script: List[Scripted] = list(script) or [httpx.Response(200)]
        self.requests: List[httpx.Request] = []

    def set(self, *script: Scripted) -> None:
        self.script = list(script)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(item, Exception):
            raise item
        if callable(item) and not isinstance(item, httpx.Response):
            return item(request)
        return item


@pytest.fixture
def transport():
    return ScriptedTransport(httpx.Response(200))


@pytest.fixture
def http_client(transport):
    return httpx.AsyncClient(transport=httpx.MockTransport(transport))


# =============================================================================
# DOMAIN FACTORIES
# =============================================================================

@pytest.fixture
def make_subscription():
    """Factory for subscriptions with zero-jitter exponential backoff."""

    def _make(**overrides: Any) -> Subscription:
        fields = dict(
            id="sub_1",
            url="https://hooks.example.com/orders",
            secret="whsec_test_secret",
            event_types=frozenset({"order.created"}),
            max_retries=3,
            timeout_seconds=5.0,
            retry_policy=RetryPolicy(
                base_delay_seconds=60.0, max_delay_seconds=3600.0, jitter_fraction=0.0,
            ),
        )
        fields.update(overrides)
        return Subscription(**fields)

    return _make


@pytest.fixture
def make_event(clock):
    """Factory for order.created events stamped with the manual clock."""
    counter = {"n": 0}

    def _make(**overrides: Any) -> Event:
        counter["n"] += 1
        fields = dict(
            id=f"evt_{counter['n']}",
            type="order.created",
            payload={"order_id": f"ord_{counter['n']}", "amount": 1500},
            created_at=clock.now(),
        )
        fields.update(overrides)
        return Event(**fields)

    return _make


# =============================================================================
# SERVICE
# =============================================================================

@pytest.fixture
def settings():
    return Settings(
        sweep_interval_seconds=0.01,
        sweep_batch_limit=50,
        shutdown_grace_seconds=1.0,
        jitter_fraction=0.0,
        throttle_delay_seconds=5.0,
        inactive_recheck_seconds=300.0,
        default_requests_per_minute=600.0,
        default_burst_size=100,
        circuit_breaker_threshold=5,
        circuit_breaker_timeout_seconds=300.0,
        log_json=False,
    )


@pytest.fixture
def source(make_subscription):
    return InMemorySubscriptionSource([make_subscription()])


@pytest.fixture
def service(source, settings, http_client, clock, mock_logger):
    return WebhookDeliveryService(
        source,
        settings,
        http_client=http_client,
        clock=clock,
        logger=mock_logger,
        rng=random.Random(7),
    )
