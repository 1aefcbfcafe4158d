"""Custom exception hierarchy for tcg-pricing."""

from __future__ import annotations

from typing import Any

from tcg_pricing.core.models import ProviderErrorKind, QuotaObservation


class PricingError(Exception):
    """Base exception for all tcg-pricing errors.

    All exceptions carry an optional `context` dict for structured error
    metadata that can be logged or serialized without parsing the message.
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.context = context or {}


class ConfigError(PricingError):
    """Invalid or missing configuration, including an unknown category.

    Raised by load_config() during startup and by the policy registry.
    Should be treated as fatal and never retried.

    Context keys:
        field: str — the config field that failed validation
        value: Any — the invalid value (redacted for secrets)
    """


class StorageError(PricingError):
    """Database operation failed.

    Policy: raise immediately. A torn cache or quota row is worse than a
    failed request.

    Context keys:
        operation: str — "upsert", "query", "migrate", etc.
        table: str — the table involved
    """


class QuotaExceededError(PricingError):
    """The local quota tracker refused a reservation for a provider.

    Policy: recoverable. The resolver falls through to the next provider
    in the fallback chain.

    Context keys:
        provider: str — the provider whose quota is spent
        period: str — "day" or "month"
        used: int, limit: int
    """


class ProviderError(PricingError):
    """A provider adapter failed to produce a normalized payload.

    Policy: recoverable. Logged and absorbed by the resolver's fallback loop.

    Attributes:
        kind: which failure class this is
        consumed_quota: whether the provider counted the call against quota
        quota: remaining-quota observations surfaced by the failed call

    Context keys:
        provider: str, url: str | None, status_code: int | None
    """

    kind: ProviderErrorKind = ProviderErrorKind.NETWORK_FAILURE
    default_consumes_quota: bool = True

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        *,
        consumed_quota: bool | None = None,
        quota: tuple[QuotaObservation, ...] = (),
    ):
        super().__init__(message, context)
        self.consumed_quota = (
            self.default_consumes_quota if consumed_quota is None else consumed_quota
        )
        self.quota = quota


class RateLimitedError(ProviderError):
    """Provider answered HTTP 429. The call is not billed by the provider.

    Context keys:
        retry_after: int | None — seconds the provider asked us to wait
    """

    kind = ProviderErrorKind.RATE_LIMITED
    default_consumes_quota = False


class ItemNotFoundError(ProviderError):
    """Provider has no record for the requested item."""

    kind = ProviderErrorKind.NOT_FOUND


class MalformedResponseError(ProviderError):
    """Provider response could not be normalized into a canonical payload."""

    kind = ProviderErrorKind.MALFORMED


class NetworkFailureError(ProviderError):
    """Connection failure, timeout, or provider-side server error.

    A connection that was never established costs no quota; adapters set
    ``consumed_quota=False`` for that case.
    """

    kind = ProviderErrorKind.NETWORK_FAILURE


class AllProvidersExhaustedError(PricingError):
    """Every provider in the fallback chain failed and no cached entry exists.

    Policy: terminal for the request. Callers must surface an explicit
    "price unavailable" state, never a zero price.

    Context keys:
        key: str — the cache key
        category: str
        attempts: list[dict] — one {"provider", "outcome"} per chain member
    """
