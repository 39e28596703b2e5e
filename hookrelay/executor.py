"""Delivery Executor - one authenticated HTTP attempt.

Serializes the event to canonical JSON, signs those exact bytes, POSTs them
with the subscription's timeout as a hard bound, and classifies the result:

- 2xx                      -> success
- network error / timeout  -> retryable_failure
- 5xx                      -> retryable_failure
- 429                      -> throttled (Retry-After honored)
- other 4xx, 3xx           -> permanent_failure
- body over size limit     -> permanent_failure (no request made)
- unserializable payload   -> permanent_failure (no request made)

Nothing raised by the HTTP layer escapes; every call to execute() appends
exactly one immutable DeliveryAttempt record.
"""

from __future__ import annotations

import asyncio
import math
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Callable, Dict, Mapping, Optional

import httpx

from hookrelay_protocols import (
    AttemptOutcome,
    ClockProtocol,
    Delivery,
    DeliveryAttempt,
    DeliveryStoreProtocol,
    ErrorClass,
    Event,
    LoggerProtocol,
    OutcomeKind,
    Subscription,
)
from hookrelay_shared import SystemClock, canonical_json, resolve_logger

from hookrelay import metrics
from hookrelay.signing import SignatureEngine

NextAttemptPlanner = Callable[[AttemptOutcome], Optional[datetime]]

_DETAIL_LIMIT = 500


def parse_retry_after(value: Optional[str], now: datetime) -> Optional[float]:
    """Parse a Retry-After header (delta-seconds or HTTP-date).

    Returns:
        Non-negative seconds, or None if absent/unparseable
    """
    if not value:
        return None
    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        seconds = None
    if seconds is not None:
        return max(0.0, seconds) if math.isfinite(seconds) else None

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - now).total_seconds())


def classify_response(
    status_code: int,
    headers: Mapping[str, str],
    now: datetime,
    latency_ms: float = 0.0,
    body: str = "",
) -> AttemptOutcome:
    """Map an HTTP response to an AttemptOutcome."""
    detail = body[:_DETAIL_LIMIT] if body else None

    if 200 <= status_code < 300:
        return AttemptOutcome(
            kind=OutcomeKind.SUCCESS, status_code=status_code, latency_ms=latency_ms,
        )
    if status_code == 429:
        retry_after = next(
            (value for name, value in headers.items() if name.lower() == "retry-after"), None,
        )
        return AttemptOutcome(
            kind=OutcomeKind.THROTTLED,
            error_class=ErrorClass.THROTTLED,
            status_code=status_code,
            detail=detail,
            latency_ms=latency_ms,
            retry_after_seconds=parse_retry_after(retry_after, now),
        )
    if status_code >= 500:
        return AttemptOutcome(
            kind=OutcomeKind.RETRYABLE_FAILURE,
            error_class=ErrorClass.SERVER_ERROR,
            status_code=status_code,
            detail=detail,
            latency_ms=latency_ms,
        )
    return AttemptOutcome(
        kind=OutcomeKind.PERMANENT_FAILURE,
        error_class=ErrorClass.CLIENT_ERROR,
        status_code=status_code,
        detail=detail or f"HTTP {status_code}",
        latency_ms=latency_ms,
    )


class DeliveryExecutor:
    """Performs single delivery attempts over httpx."""

    def __init__(
        self,
        store: DeliveryStoreProtocol,
        signer: Optional[SignatureEngine] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Optional[ClockProtocol] = None,
        logger: Optional[LoggerProtocol] = None,
        signature_header: str = "X-Webhook-Signature",
        user_agent: str = "HookRelay/1.0",
        payload_size_limit: int = 1_048_576,
    ):
        """Initialize executor.

        Args:
            store: Where attempt records are appended
            signer: Signature engine (SHA-256 by default)
            http_client: Shared AsyncClient; one is created lazily if None
            clock: Time source for scheduled/executed timestamps
            logger: Optional logger
            signature_header: Header carrying the payload signature
            user_agent: User-Agent for outbound requests
            payload_size_limit: Largest body (bytes) that will be sent
        """
        self._store = store
        self._signer = signer or SignatureEngine()
        self._client = http_client
        self._owns_client = http_client is None
        self._clock = clock or SystemClock()
        self._logger = resolve_logger(logger, "delivery_executor")
        self._signature_header = signature_header
        self._user_agent = user_agent
        self._payload_size_limit = payload_size_limit

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def aclose(self) -> None:
        """Close the HTTP client if this executor created it."""
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def build_headers(
        self,
        subscription: Subscription,
        event: Event,
        body: bytes,
        delivery_id: str,
        attempt_number: int,
    ) -> Dict[str, str]:
        """Reserved headers plus the subscription's custom headers.

        Custom headers cannot override reserved ones (case-insensitive).
        """
        reserved = {
            "Content-Type": "application/json",
            "User-Agent": self._user_agent,
            "X-Webhook-Event": event.type,
            "X-Webhook-ID": event.id,
            "X-Webhook-Timestamp": event.created_at.isoformat(),
            "X-Idempotency-Key": event.idempotency_key,
            "X-Webhook-Delivery": delivery_id,
            "X-Webhook-Attempt": str(attempt_number),
            self._signature_header: self._signer.header_value(
                self._signer.sign(body, subscription.secret)
            ),
        }
        reserved_names = {name.lower() for name in reserved}
        headers = {
            name: value for name, value in subscription.headers.items()
            if name.lower() not in reserved_names
        }
        headers.update(reserved)
        return headers

    async def send(
        self,
        subscription: Subscription,
        event: Event,
        delivery_id: str,
        attempt_number: int,
    ) -> AttemptOutcome:
        """Make the HTTP call and classify it, without recording anything."""
        try:
            body = canonical_json(event.to_wire())
        except (TypeError, ValueError) as e:
            return AttemptOutcome(
                kind=OutcomeKind.PERMANENT_FAILURE,
                error_class=ErrorClass.SERIALIZATION_ERROR,
                detail=f"payload is not JSON serializable: {e}"[:_DETAIL_LIMIT],
            )
        if len(body) > self._payload_size_limit:
            return AttemptOutcome(
                kind=OutcomeKind.PERMANENT_FAILURE,
                error_class=ErrorClass.PAYLOAD_TOO_LARGE,
                detail=f"payload is {len(body)} bytes (limit {self._payload_size_limit})",
            )

        headers = self.build_headers(subscription, event, body, delivery_id, attempt_number)
        timeout = subscription.timeout_seconds
        started = time.perf_counter()

        metrics.INFLIGHT.inc()
        try:
            response = await asyncio.wait_for(
                self._http().post(
                    subscription.url,
                    content=body,
                    headers=headers,
                    timeout=httpx.Timeout(timeout),
                ),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            return AttemptOutcome(
                kind=OutcomeKind.RETRYABLE_FAILURE,
                error_class=ErrorClass.TIMEOUT,
                detail=f"timed out after {timeout}s: {type(e).__name__}",
                latency_ms=(time.perf_counter() - started) * 1000,
            )
        except httpx.HTTPError as e:
            return AttemptOutcome(
                kind=OutcomeKind.RETRYABLE_FAILURE,
                error_class=ErrorClass.NETWORK_ERROR,
                detail=f"{type(e).__name__}: {e}"[:_DETAIL_LIMIT],
                latency_ms=(time.perf_counter() - started) * 1000,
            )
        except Exception as e:
            self._logger.exception(
                "delivery_unexpected_error",
                delivery_id=delivery_id,
                subscription_id=subscription.id,
            )
            return AttemptOutcome(
                kind=OutcomeKind.RETRYABLE_FAILURE,
                error_class=ErrorClass.NETWORK_ERROR,
                detail=f"{type(e).__name__}: {e}"[:_DETAIL_LIMIT],
                latency_ms=(time.perf_counter() - started) * 1000,
            )
        finally:
            metrics.INFLIGHT.dec()

        latency_ms = (time.perf_counter() - started) * 1000
        return classify_response(
            response.status_code,
            response.headers,
            self._clock.now(),
            latency_ms=latency_ms,
            body=response.text if not response.is_success else "",
        )

    async def execute(
        self,
        delivery: Delivery,
        subscription: Subscription,
        attempt_number: int,
        scheduled_at: Optional[datetime] = None,
        plan_next: Optional[NextAttemptPlanner] = None,
    ) -> AttemptOutcome:
        """Perform and record one attempt.

        Args:
            delivery: Delivery being attempted
            subscription: Current subscription configuration
            attempt_number: Budget slot this attempt occupies (1-based)
            scheduled_at: When the attempt was due (defaults to now)
            plan_next: Called with the outcome; its return value is stored
                as the record's next_attempt_at

        Returns:
            The classified AttemptOutcome
        """
        scheduled_at = scheduled_at or self._clock.now()
        outcome = await self.send(subscription, delivery.event, delivery.delivery_id, attempt_number)
        executed_at = self._clock.now()
        next_attempt_at = plan_next(outcome) if plan_next else None

        record = await self._store.append_attempt(DeliveryAttempt(
            delivery_id=delivery.delivery_id,
            subscription_id=subscription.id,
            event_id=delivery.event.id,
            attempt_number=attempt_number,
            scheduled_at=scheduled_at,
            executed_at=executed_at,
            outcome=outcome.kind,
            status_code=outcome.status_code,
            error_class=outcome.error_class,
            error_detail=outcome.detail,
            latency_ms=outcome.latency_ms,
            next_attempt_at=next_attempt_at,
        ))
        metrics.attempt_recorded(outcome)

        self._logger.info(
            "delivery_attempt_recorded",
            delivery_id=delivery.delivery_id,
            subscription_id=subscription.id,
            event_type=delivery.event.type,
            attempt=attempt_number,
            sequence=record.sequence,
            outcome=outcome.kind.value,
            status_code=outcome.status_code,
            error_class=outcome.error_class.value if outcome.error_class else None,
            latency_ms=round(outcome.latency_ms, 2),
        )
        return outcome
