"""Tests for tcg_pricing.engine.policy."""

from datetime import timedelta

import pytest

from tcg_pricing.core.config import CacheConfig, CachePolicyConfig
from tcg_pricing.core.exceptions import ConfigError
from tcg_pricing.core.models import Category
from tcg_pricing.engine.policy import PolicyRegistry


class TestPolicyRegistry:
    def test_defaults(self, policies):
        single = policies.policy_for(Category.SINGLE_PRICE)
        assert single.ttl == timedelta(hours=24)
        assert single.soft_refresh_interval == timedelta(hours=20)
        assert policies.policy_for(Category.SEARCH_RESULT).ttl == timedelta(minutes=15)
        assert policies.policy_for(Category.CARD_METADATA).credit_cost == 0.5

    def test_lookup_by_string(self, policies):
        assert policies.policy_for("sealed_price").category == Category.SEALED_PRICE

    def test_unknown_category_raises_config_error(self, policies):
        with pytest.raises(ConfigError, match="No cache policy") as exc_info:
            policies.policy_for("graded_population")
        assert exc_info.value.context["value"] == "graded_population"

    def test_missing_policy_raises_config_error(self):
        registry = PolicyRegistry({})
        with pytest.raises(ConfigError):
            registry.policy_for(Category.SINGLE_PRICE)

    def test_configured_override(self):
        registry = PolicyRegistry.from_config(
            CacheConfig(
                policies={
                    Category.SEARCH_RESULT: CachePolicyConfig(
                        ttl_seconds=120, soft_refresh_seconds=60, credit_cost=2.0
                    )
                }
            )
        )
        policy = registry.policy_for(Category.SEARCH_RESULT)
        assert policy.ttl == timedelta(seconds=120)
        assert policy.soft_refresh_interval == timedelta(seconds=60)
        assert policy.credit_cost == 2.0

    def test_every_category_listed(self, policies):
        assert set(policies.categories()) == set(Category)
        assert len(policies.all()) == len(Category)
