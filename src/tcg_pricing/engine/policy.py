"""Policy Registry: category -> time-to-live and soft-refresh interval."""

from __future__ import annotations

from datetime import timedelta

from tcg_pricing.core.config import CacheConfig
from tcg_pricing.core.exceptions import ConfigError
from tcg_pricing.core.models import Category, PolicyEntry


class PolicyRegistry:
    """Static lookup table built once from configuration.

    An unknown category is a programming error and raises ConfigError.
    """

    def __init__(self, policies: dict[Category, PolicyEntry]) -> None:
        self._policies = dict(policies)

    @classmethod
    def from_config(cls, config: CacheConfig) -> PolicyRegistry:
        entries = {
            category: PolicyEntry(
                category=category,
                ttl=timedelta(seconds=p.ttl_seconds),
                soft_refresh_interval=timedelta(seconds=p.soft_refresh_seconds),
                credit_cost=p.credit_cost,
            )
            for category, p in config.resolved_policies().items()
        }
        return cls(entries)

    def policy_for(self, category: Category | str) -> PolicyEntry:
        try:
            return self._policies[Category(category)]
        except (KeyError, ValueError) as e:
            raise ConfigError(
                f"No cache policy for category: {category!r}",
                context={"field": "category", "value": str(category)},
            ) from e

    def categories(self) -> list[Category]:
        return list(self._policies)

    def all(self) -> list[PolicyEntry]:
        return list(self._policies.values())
