"""Subscription view for the delivery subsystem.

Subscriptions belong to the registration collaborator; this module only
reads them. SubscriptionCatalog validates each subscription once per
configuration fingerprint (URL policy, rate limit, filter rules), caches the
compiled form, and records configuration errors for operational queries
instead of throwing them into the event pipeline.

A subscription with an invalid URL or policy receives nothing. A
subscription with malformed filter rules for one event type stops
receiving that type only.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Sequence
from urllib.parse import urlsplit

from hookrelay_protocols import (
    ConfigurationError,
    LoggerProtocol,
    Subscription,
    SubscriptionSourceError,
    SubscriptionSourceProtocol,
)
from hookrelay_shared import resolve_logger, utc_now

from hookrelay.filters import CompiledFilter, compile_filter_rules


# =============================================================================
# URL POLICY
# =============================================================================

@dataclass(frozen=True)
class UrlPolicy:
    """Configuration-time URL checks."""
    require_https: bool = False
    allowed_domains: Sequence[str] = ()
    blocked_domains: Sequence[str] = ()


def _domain_matches(host: str, domain: str) -> bool:
    domain = domain.lower().lstrip(".")
    return host == domain or host.endswith("." + domain)


def validate_url(url: str, policy: Optional[UrlPolicy] = None) -> str:
    """Validate a subscription URL.

    Args:
        url: Candidate endpoint URL
        policy: Optional scheme/domain policy

    Returns:
        The URL, unchanged

    Raises:
        ConfigurationError: malformed URL or rejected by policy
    """
    policy = policy or UrlPolicy()
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError as e:
        raise ConfigurationError(f"Malformed URL: {url!r} ({e})") from e

    if parts.scheme not in ("http", "https"):
        raise ConfigurationError(f"URL must be absolute http(s): {url!r}")
    host = (parts.hostname or "").lower()
    if not host:
        raise ConfigurationError(f"URL has no host: {url!r}")
    if any(ch.isspace() for ch in url):
        raise ConfigurationError(f"URL contains whitespace: {url!r}")
    if port == 0:
        raise ConfigurationError(f"URL has invalid port: {url!r}")
    if policy.require_https and parts.scheme != "https":
        raise ConfigurationError(f"HTTPS is required: {url!r}")
    if policy.allowed_domains and not any(_domain_matches(host, d) for d in policy.allowed_domains):
        raise ConfigurationError(f"Domain not allowed: {host}")
    if any(_domain_matches(host, d) for d in policy.blocked_domains):
        raise ConfigurationError(f"Domain blocked: {host}")
    return url


# Headroom between the request timeout and the retry queue lease.
LEASE_MARGIN_SECONDS = 10.0


def validate_policies(subscription: Subscription, lease_seconds: Optional[float] = None) -> None:
    """Validate numeric configuration of a subscription.

    With `lease_seconds` set, the request timeout must end at least
    LEASE_MARGIN_SECONDS before a claimed queue entry becomes visible again.
    """
    if subscription.timeout_seconds <= 0:
        raise ConfigurationError("timeout_seconds must be positive")
    if lease_seconds is not None and subscription.timeout_seconds + LEASE_MARGIN_SECONDS > lease_seconds:
        raise ConfigurationError(
            f"timeout_seconds must be at most {lease_seconds - LEASE_MARGIN_SECONDS:g} "
            f"(lease is {lease_seconds:g}s)"
        )
    if subscription.max_retries < 0:
        raise ConfigurationError("max_retries must not be negative")
    if not subscription.secret:
        raise ConfigurationError("secret must not be empty")
    rate_limit = subscription.rate_limit
    if rate_limit is not None:
        if rate_limit.requests_per_minute <= 0:
            raise ConfigurationError("requests_per_minute must be positive")
        if rate_limit.burst_size < 1:
            raise ConfigurationError("burst_size must be at least 1")
    retry = subscription.retry_policy
    if retry is not None:
        if retry.base_delay_seconds <= 0 or retry.max_delay_seconds <= 0:
            raise ConfigurationError("retry delays must be positive")
        if retry.base_delay_seconds > retry.max_delay_seconds:
            raise ConfigurationError("base_delay_seconds must not exceed max_delay_seconds")
        if not 0 <= retry.jitter_fraction <= 1:
            raise ConfigurationError("jitter_fraction must be within [0, 1]")


# =============================================================================
# PREPARED SUBSCRIPTIONS
# =============================================================================

@dataclass(frozen=True)
class PreparedSubscription:
    """A subscription plus its compiled, validated delivery configuration."""
    subscription: Subscription
    filters: Mapping[str, CompiledFilter] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def id(self) -> str:
        return self.subscription.id

    @property
    def usable(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class ConfigurationIssue:
    """A configuration error surfaced to operational tooling."""
    subscription_id: str
    message: str
    event_type: Optional[str] = None
    detected_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "subscription_id": self.subscription_id,
            "event_type": self.event_type,
            "message": self.message,
            "detected_at": self.detected_at.isoformat() if self.detected_at else None,
        }


class SubscriptionCatalog:
    """Read-through, validating view over the subscription collaborator."""

    def __init__(
        self,
        source: SubscriptionSourceProtocol,
        url_policy: Optional[UrlPolicy] = None,
        logger: Optional[LoggerProtocol] = None,
        lease_seconds: Optional[float] = None,
    ):
        self._source = source
        self._url_policy = url_policy or UrlPolicy()
        self._lease_seconds = lease_seconds
        self._logger = resolve_logger(logger, "subscription_catalog")
        self._prepared: Dict[str, tuple] = {}
        self._issues: Dict[str, List[ConfigurationIssue]] = {}

    def prepare(self, subscription: Subscription) -> PreparedSubscription:
        """Validate and compile, reusing the cache while the config is unchanged."""
        fingerprint = subscription.fingerprint()
        cached = self._prepared.get(subscription.id)
        if cached is not None and cached[0] == fingerprint:
            # Secret and active flag are read fresh; they never affect validation.
            return replace(cached[1], subscription=subscription)

        prepared = self._build(subscription)
        self._prepared[subscription.id] = (fingerprint, prepared)
        return prepared

    def _build(self, subscription: Subscription) -> PreparedSubscription:
        issues: List[ConfigurationIssue] = []
        now = utc_now()
        error: Optional[str] = None
        filters: Dict[str, CompiledFilter] = {}

        try:
            validate_url(subscription.url, self._url_policy)
            validate_policies(subscription, self._lease_seconds)
        except ConfigurationError as e:
            error = str(e)
            issues.append(ConfigurationIssue(subscription.id, error, detected_at=now))

        if error is None:
            filters = compile_filter_rules(subscription.filter_rules, strict=False)
            for event_type, compiled in filters.items():
                if compiled.error is not None:
                    issues.append(ConfigurationIssue(
                        subscription.id, compiled.error, event_type=event_type, detected_at=now,
                    ))

        if issues:
            self._issues[subscription.id] = issues
            for issue in issues:
                self._logger.warning(
                    "subscription_configuration_error",
                    subscription_id=subscription.id,
                    event_type=issue.event_type,
                    error=issue.message,
                )
        else:
            self._issues.pop(subscription.id, None)

        return PreparedSubscription(subscription=subscription, filters=filters, error=error)

    async def active_for_event_type(self, event_type: str) -> List[PreparedSubscription]:
        """Usable, active subscriptions for an event type.

        Raises:
            SubscriptionSourceError: the collaborator could not be read
        """
        try:
            subscriptions = await self._source.get_active_subscriptions_for_event_type(event_type)
        except Exception as e:
            self._logger.error("subscription_source_failed", event_type=event_type, error=str(e))
            raise SubscriptionSourceError(f"Could not read subscriptions for {event_type}: {e}") from e

        prepared = []
        for subscription in subscriptions:
            if not subscription.active or not subscription.subscribes_to(event_type):
                continue
            candidate = self.prepare(subscription)
            if candidate.usable:
                prepared.append(candidate)
        return prepared

    async def get(self, subscription_id: str) -> Optional[PreparedSubscription]:
        """Current view of one subscription (None if it no longer exists).

        Raises:
            SubscriptionSourceError: the collaborator could not be read
        """
        try:
            subscription = await self._source.get_subscription(subscription_id)
        except Exception as e:
            self._logger.error(
                "subscription_source_failed", subscription_id=subscription_id, error=str(e),
            )
            raise SubscriptionSourceError(f"Could not read subscription {subscription_id}: {e}") from e
        if subscription is None:
            self._prepared.pop(subscription_id, None)
            self._issues.pop(subscription_id, None)
            return None
        return self.prepare(subscription)

    def configuration_errors(self, subscription_id: Optional[str] = None) -> List[ConfigurationIssue]:
        if subscription_id is not None:
            return list(self._issues.get(subscription_id, []))
        return [issue for issues in self._issues.values() for issue in issues]


# =============================================================================
# IN-MEMORY COLLABORATOR
# =============================================================================

class InMemorySubscriptionSource:
    """Stand-in for the registration collaborator (tests, local runs)."""

    def __init__(self, subscriptions: Optional[List[Subscription]] = None):
        self._subscriptions: Dict[str, Subscription] = {}
        self._lock = asyncio.Lock()
        for subscription in subscriptions or []:
            self._subscriptions[subscription.id] = subscription

    async def put(self, subscription: Subscription) -> None:
        async with self._lock:
            self._subscriptions[subscription.id] = subscription

    async def deactivate(self, subscription_id: str) -> None:
        async with self._lock:
            current = self._subscriptions.get(subscription_id)
            if current is not None:
                self._subscriptions[subscription_id] = replace(current, active=False)

    async def delete(self, subscription_id: str) -> None:
        async with self._lock:
            self._subscriptions.pop(subscription_id, None)

    async def get_active_subscriptions_for_event_type(self, event_type: str) -> List[Subscription]:
        async with self._lock:
            return [
                s for s in self._subscriptions.values()
                if s.active and s.subscribes_to(event_type)
            ]

    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        async with self._lock:
            return self._subscriptions.get(subscription_id)
