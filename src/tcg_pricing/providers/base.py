"""Provider adapter protocols: the source-agnostic boundary.

Architecture
------------
Every external pricing source is wrapped in an adapter:

    Provider REST API → ProviderAdapter.fetch → FetchResult(Payload) → Resolver

- **ProviderAdapter** is the only interface the resolver depends on. An
  adapter translates one provider's REST shape into a canonical payload,
  or raises a ``ProviderError`` subclass.

- **BatchProviderAdapter** is the optional capability for providers with
  a batch lookup endpoint. The refresh path groups requests into batches
  of ``batch_size`` so one HTTP call counts once against quota.

Adding a provider means writing one adapter class and registering its
kind in ``tcg_pricing.providers.ADAPTER_KINDS``; the resolver is never
touched.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import httpx
from aiolimiter import AsyncLimiter

from tcg_pricing.core.config import ProviderConfig
from tcg_pricing.core.exceptions import (
    ItemNotFoundError,
    MalformedResponseError,
    NetworkFailureError,
    ProviderError,
    RateLimitedError,
)
from tcg_pricing.core.models import (
    CacheKey,
    Category,
    Payload,
    ProviderName,
    QuotaObservation,
    RequestSpec,
)

logger = logging.getLogger(__name__)

_USER_AGENT = "tcg-pricing/0.1"


@dataclass(frozen=True)
class FetchResult:
    """A normalized payload plus any quota the provider reported."""

    payload: Payload
    quota: tuple[QuotaObservation, ...] = ()


@dataclass(frozen=True)
class BatchFetchResult:
    """Per-key outcome of one batch call. One call, one quota unit."""

    payloads: dict[CacheKey, Payload] = field(default_factory=dict)
    errors: dict[CacheKey, ProviderError] = field(default_factory=dict)
    quota: tuple[QuotaObservation, ...] = ()


@runtime_checkable
class ProviderAdapter(Protocol):
    """Consumer-facing interface for one pricing source."""

    name: ProviderName
    categories: frozenset[Category]

    async def fetch(self, request: RequestSpec) -> FetchResult:
        """Fetch and normalize one item.

        Raises
        ------
        ProviderError
            One of RateLimitedError, ItemNotFoundError,
            MalformedResponseError, NetworkFailureError.
        """
        ...

    async def aclose(self) -> None: ...


@runtime_checkable
class BatchProviderAdapter(ProviderAdapter, Protocol):
    """A provider that can look up many items in one request."""

    batch_size: int
    batch_categories: frozenset[Category]

    async def fetch_batch(self, requests: Sequence[RequestSpec]) -> BatchFetchResult:
        ...


def supports_batch(adapter: ProviderAdapter, category: Category) -> bool:
    return (
        isinstance(adapter, BatchProviderAdapter)
        and category in adapter.batch_categories
    )


class HttpProviderAdapter:
    """Shared httpx + aiolimiter plumbing for REST-backed adapters.

    Subclasses set ``name``, ``categories`` and ``default_base_url``, and
    implement ``fetch``. ``_request`` maps transport and status failures
    onto the provider error taxonomy. Nothing is retried here; the
    fallback chain decides what happens next.
    """

    name: ProviderName = "http"
    categories: frozenset[Category] = frozenset()
    default_base_url: str = ""

    def __init__(
        self,
        config: ProviderConfig,
        *,
        name: ProviderName | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if name is not None:
            self.name = name
        self._config = config
        self._base_url = (config.base_url or self.default_base_url).rstrip("/")
        self._limiter = AsyncLimiter(max_rate=config.rate_limit, time_period=1.0)
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers={"User-Agent": _USER_AGENT, **self._auth_headers()},
            follow_redirects=True,
            transport=transport,
        )

    async def __aenter__(self) -> HttpProviderAdapter:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _auth_headers(self) -> dict[str, str]:
        return {}

    def _quota_from_response(
        self, response: httpx.Response, body: Any
    ) -> tuple[QuotaObservation, ...]:
        """Remaining-quota observations carried by a response, if any."""
        return ()

    async def _request(
        self,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> tuple[Any, tuple[QuotaObservation, ...]]:
        """Execute one rate-limited request and return (json body, quota).

        Raises:
            RateLimitedError: HTTP 429.
            ItemNotFoundError: HTTP 404.
            NetworkFailureError: connection failure, transport error, 5xx.
            MalformedResponseError: other non-2xx status or unparseable JSON.
        """
        url = f"{self._base_url}{path}"
        context: dict[str, Any] = {"provider": self.name, "url": url}
        try:
            await self._limiter.acquire()
            response = await self._client.request(method, path, **kwargs)
        except httpx.ConnectError as e:
            raise NetworkFailureError(
                f"Could not connect to {self.name}: {e}",
                context=context,
                consumed_quota=False,
            ) from e
        except httpx.HTTPError as e:
            raise NetworkFailureError(
                f"Transport error from {self.name}: {e}", context=context
            ) from e

        context["status_code"] = response.status_code
        try:
            body = response.json() if response.content else None
        except ValueError:
            body = None
            parse_failed = True
        else:
            parse_failed = False
        quota = self._quota_from_response(response, body)

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            context["retry_after"] = int(retry_after) if retry_after and retry_after.isdigit() else None
            raise RateLimitedError(
                f"{self.name} rate limited the request", context=context, quota=quota
            )
        if response.status_code == 404:
            raise ItemNotFoundError(
                f"{self.name} has no record at {path}", context=context, quota=quota
            )
        if response.status_code >= 500:
            raise NetworkFailureError(
                f"{self.name} server error {response.status_code}",
                context=context,
                quota=quota,
            )
        if response.status_code >= 400:
            raise MalformedResponseError(
                f"HTTP {response.status_code} from {self.name}",
                context=context,
                quota=quota,
            )
        if parse_failed or body is None:
            raise MalformedResponseError(
                f"{self.name} returned a non-JSON body", context=context, quota=quota
            )
        return body, quota

    def _malformed(
        self,
        message: str,
        *,
        quota: tuple[QuotaObservation, ...] = (),
        **context: Any,
    ) -> MalformedResponseError:
        return MalformedResponseError(
            f"{self.name}: {message}",
            context={"provider": self.name, **context},
            quota=quota,
        )

    @contextmanager
    def _normalizing(
        self, *, quota: tuple[QuotaObservation, ...] = (), **context: Any
    ) -> Iterator[None]:
        """Turn a bad field met while building a payload into MalformedResponseError.

        Covers failed conversions, missing keys, wrongly typed containers and
        pydantic validation errors. Provider errors pass through unchanged.
        """
        try:
            yield
        except ProviderError:
            raise
        except (TypeError, ValueError, KeyError, AttributeError) as e:
            raise self._malformed(
                f"unusable response field: {e}", quota=quota, **context
            ) from e
