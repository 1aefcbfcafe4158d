"""Tests for tcg_pricing.core.exceptions."""

import pytest

from tcg_pricing.core.exceptions import (
    AllProvidersExhaustedError,
    ConfigError,
    ItemNotFoundError,
    MalformedResponseError,
    NetworkFailureError,
    PricingError,
    ProviderError,
    QuotaExceededError,
    RateLimitedError,
    StorageError,
)
from tcg_pricing.core.models import ProviderErrorKind, QuotaObservation, QuotaPeriod


class TestExceptionHierarchy:
    """Verify the exception class hierarchy."""

    def test_config_is_subclass(self):
        assert issubclass(ConfigError, PricingError)

    def test_storage_is_subclass(self):
        assert issubclass(StorageError, PricingError)

    def test_quota_exceeded_is_subclass(self):
        assert issubclass(QuotaExceededError, PricingError)

    def test_provider_failures_share_a_parent(self):
        for cls in (RateLimitedError, ItemNotFoundError, MalformedResponseError, NetworkFailureError):
            assert issubclass(cls, ProviderError)
            assert issubclass(cls, PricingError)

    def test_exhausted_is_not_a_provider_error(self):
        assert issubclass(AllProvidersExhaustedError, PricingError)
        assert not issubclass(AllProvidersExhaustedError, ProviderError)


class TestProviderErrorKinds:
    @pytest.mark.parametrize(
        "cls, kind",
        [
            (RateLimitedError, ProviderErrorKind.RATE_LIMITED),
            (ItemNotFoundError, ProviderErrorKind.NOT_FOUND),
            (MalformedResponseError, ProviderErrorKind.MALFORMED),
            (NetworkFailureError, ProviderErrorKind.NETWORK_FAILURE),
        ],
    )
    def test_kind(self, cls, kind):
        assert cls("boom").kind == kind

    def test_rate_limited_does_not_consume_quota(self):
        assert RateLimitedError("slow down").consumed_quota is False

    def test_other_failures_consume_quota_by_default(self):
        assert ItemNotFoundError("gone").consumed_quota is True
        assert MalformedResponseError("junk").consumed_quota is True
        assert NetworkFailureError("5xx").consumed_quota is True

    def test_connect_failure_can_opt_out(self):
        exc = NetworkFailureError("refused", consumed_quota=False)
        assert exc.consumed_quota is False

    def test_quota_observations_carried(self):
        obs = (QuotaObservation(period=QuotaPeriod.DAY, remaining=3, limit=100),)
        exc = ItemNotFoundError("gone", quota=obs)
        assert exc.quota == obs


class TestExceptionContext:
    """Verify context dict behavior."""

    def test_context_preserved(self):
        exc = RateLimitedError(
            "429 from justtcg",
            context={"provider": "justtcg", "retry_after": 30},
        )
        assert exc.context["provider"] == "justtcg"
        assert exc.context["retry_after"] == 30

    def test_default_context_is_empty_dict(self):
        exc = PricingError("test error")
        assert exc.context == {}

    def test_str_returns_message(self):
        exc = ConfigError("invalid field")
        assert str(exc) == "invalid field"

    def test_context_none_becomes_empty_dict(self):
        exc = StorageError("db fail", context=None)
        assert exc.context == {}

    def test_exception_can_be_caught_as_base(self):
        with pytest.raises(PricingError):
            raise QuotaExceededError("spent", context={"provider": "justtcg"})

    def test_exception_can_be_caught_as_parent(self):
        with pytest.raises(ProviderError):
            raise MalformedResponseError("bad json", context={"provider": "scrydex"})
