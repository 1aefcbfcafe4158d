"""Configuration loading, validation, and access."""

from __future__ import annotations

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from tcg_pricing.core.exceptions import ConfigError
from tcg_pricing.core.models import Category, StorageBackend


class StorageConfig(BaseModel):
    """Storage backend configuration."""

    model_config = ConfigDict(frozen=True)

    backend: StorageBackend = StorageBackend.SQLITE
    sqlite_path: str = "./data/tcg_pricing.db"


class CachePolicyConfig(BaseModel):
    """TTL and soft-refresh settings for one category."""

    model_config = ConfigDict(frozen=True)

    ttl_seconds: int
    soft_refresh_seconds: int
    credit_cost: float = 1.0

    @model_validator(mode="after")
    def ttl_covers_soft_refresh(self) -> CachePolicyConfig:
        if self.soft_refresh_seconds < 1:
            raise ValueError("soft_refresh_seconds must be >= 1")
        if self.ttl_seconds < self.soft_refresh_seconds:
            raise ValueError("ttl_seconds must be >= soft_refresh_seconds")
        return self


_HOUR = 3600
_DAY = 24 * _HOUR

DEFAULT_POLICIES: dict[Category, CachePolicyConfig] = {
    Category.CARD_METADATA: CachePolicyConfig(
        ttl_seconds=3 * _DAY, soft_refresh_seconds=_DAY, credit_cost=0.5
    ),
    Category.EXPANSION_METADATA: CachePolicyConfig(
        ttl_seconds=7 * _DAY, soft_refresh_seconds=3 * _DAY, credit_cost=0.5
    ),
    Category.SINGLE_PRICE: CachePolicyConfig(
        ttl_seconds=_DAY, soft_refresh_seconds=20 * _HOUR, credit_cost=1.0
    ),
    Category.SEALED_PRICE: CachePolicyConfig(
        ttl_seconds=_DAY, soft_refresh_seconds=20 * _HOUR, credit_cost=1.0
    ),
    Category.SEARCH_RESULT: CachePolicyConfig(
        ttl_seconds=15 * 60, soft_refresh_seconds=10 * 60, credit_cost=1.0
    ),
}


class CacheConfig(BaseModel):
    """Per-category cache policies. Missing categories use the defaults."""

    model_config = ConfigDict(frozen=True)

    policies: dict[Category, CachePolicyConfig] = {}

    def resolved_policies(self) -> dict[Category, CachePolicyConfig]:
        merged = dict(DEFAULT_POLICIES)
        merged.update(self.policies)
        return merged


class ProviderConfig(BaseModel):
    """Connection and quota settings for one pricing provider."""

    model_config = ConfigDict(frozen=True)

    kind: str | None = None
    enabled: bool = True
    base_url: str | None = None
    api_key: str | None = None
    team_id: str | None = None
    rate_limit: float = 5.0
    daily_limit: int | None = None
    monthly_limit: int | None = None
    batch_size: int = 20

    @field_validator("rate_limit")
    @classmethod
    def rate_limit_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("rate_limit must be > 0")
        return v

    @field_validator("daily_limit", "monthly_limit")
    @classmethod
    def limits_positive(cls, v: int | None) -> int | None:
        if v is not None and v < 1:
            raise ValueError("quota limits must be >= 1")
        return v

    @field_validator("batch_size")
    @classmethod
    def batch_size_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("batch_size must be >= 1")
        return v


def _default_providers() -> dict[str, ProviderConfig]:
    return {
        "scrydex": ProviderConfig(rate_limit=10.0),
        "justtcg": ProviderConfig(rate_limit=5.0, daily_limit=100, monthly_limit=1000),
        "pricecharting": ProviderConfig(rate_limit=1.0),
    }


def _default_chains() -> dict[Category, list[str]]:
    return {
        Category.CARD_METADATA: ["scrydex", "justtcg"],
        Category.EXPANSION_METADATA: ["scrydex"],
        Category.SINGLE_PRICE: ["scrydex", "justtcg"],
        Category.SEALED_PRICE: ["pricecharting", "scrydex"],
        Category.SEARCH_RESULT: ["scrydex", "justtcg"],
    }


class ResolverConfig(BaseModel):
    """Timeout budgets and background quota headroom."""

    model_config = ConfigDict(frozen=True)

    foreground_timeout_seconds: float = 10.0
    background_timeout_seconds: float = 4.0
    background_quota_headroom: float = 0.1

    @field_validator("foreground_timeout_seconds", "background_timeout_seconds")
    @classmethod
    def timeout_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeouts must be > 0")
        return v

    @field_validator("background_quota_headroom")
    @classmethod
    def headroom_is_fraction(cls, v: float) -> float:
        if not 0.0 <= v < 1.0:
            raise ValueError("background_quota_headroom must be in [0.0, 1.0)")
        return v


class SchedulerConfig(BaseModel):
    """Background refresh loop settings."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    tick_seconds: float = 60.0
    max_refreshes_per_tick: int = 20
    retry_after_seconds: int = 900
    sweep_every_ticks: int = 10
    sweep_idle_seconds: int = 3600

    @field_validator("max_refreshes_per_tick", "sweep_every_ticks")
    @classmethod
    def at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v


class APIConfig(BaseModel):
    """FastAPI server configuration."""

    model_config = ConfigDict(frozen=True)

    host: str = "0.0.0.0"
    port: int = 8000
    api_key: str | None = None


class LoggingConfig(BaseModel):
    """Root logger level for CLI and server entry points."""

    model_config = ConfigDict(frozen=True)

    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def level_known(cls, v: str) -> str:
        upper = v.upper()
        if upper not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level: {v}")
        return upper


class PricingConfig(BaseModel):
    """Root configuration for the entire tcg-pricing system."""

    model_config = ConfigDict(frozen=True)

    storage: StorageConfig = StorageConfig()
    cache: CacheConfig = CacheConfig()
    providers: dict[str, ProviderConfig] = _default_providers()
    fallback_chains: dict[Category, list[str]] = _default_chains()
    resolver: ResolverConfig = ResolverConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    api: APIConfig = APIConfig()
    logging: LoggingConfig = LoggingConfig()

    @model_validator(mode="after")
    def chains_reference_known_providers(self) -> PricingConfig:
        for category, chain in self.fallback_chains.items():
            unknown = [name for name in chain if name not in self.providers]
            if unknown:
                raise ValueError(
                    f"fallback chain for {category} references unknown providers: {unknown}"
                )
            if len(set(chain)) != len(chain):
                raise ValueError(f"fallback chain for {category} repeats a provider")
        return self

    def chain_for(self, category: Category) -> list[str]:
        """Enabled providers for a category, in configured order."""
        return [
            name
            for name in self.fallback_chains.get(category, [])
            if self.providers[name].enabled
        ]


def load_config(
    config_path: str | None = None,
    env_prefix: str = "TCG_PRICING_",
) -> PricingConfig:
    """Load configuration from environment + YAML file + defaults.

    Resolution order (highest priority first):
    1. Environment variables (TCG_PRICING_STORAGE__SQLITE_PATH, etc.)
    2. YAML file at config_path
    3. Built-in defaults

    Nested keys use double-underscore in env vars:
        TCG_PRICING_PROVIDERS__JUSTTCG__API_KEY=...  ->  providers.justtcg.api_key
    """
    try:
        yaml_path = _resolve_config_path(config_path)
        base: dict = {}
        if yaml_path is not None:
            base = _load_yaml(yaml_path)

        merged = _merge_env_vars(base, env_prefix)
        if "providers" in merged:
            merged["providers"] = _overlay_default_providers(merged["providers"])
        if "fallback_chains" in merged:
            chains = {str(k): v for k, v in _default_chains().items()}
            chains.update(merged["fallback_chains"] or {})
            merged["fallback_chains"] = chains
        return PricingConfig.model_validate(merged)
    except Exception as e:
        if isinstance(e, ConfigError):
            raise
        raise ConfigError(str(e), context={"source": "load_config"}) from e


def _overlay_default_providers(providers: dict) -> dict:
    """Partial provider sections extend the defaults instead of replacing them."""
    result = {
        name: cfg.model_dump(exclude_unset=True) for name, cfg in _default_providers().items()
    }
    for name, section in providers.items():
        result.setdefault(name, {})
        result[name] = {**result[name], **(section or {})}
    return result


def _resolve_config_path(explicit: str | None) -> Path | None:
    """Determine config file path."""
    if explicit is not None:
        p = Path(explicit)
        if not p.exists():
            raise ConfigError(
                f"Config file not found: {explicit}",
                context={"field": "config_path", "value": explicit},
            )
        return p

    env_path = os.environ.get("TCG_PRICING_CONFIG")
    if env_path:
        p = Path(env_path)
        if not p.exists():
            raise ConfigError(
                f"Config file from TCG_PRICING_CONFIG not found: {env_path}",
                context={"field": "TCG_PRICING_CONFIG", "value": env_path},
            )
        return p

    default = Path("tcg-pricing.yml")
    if default.exists():
        return default

    return None


def _load_yaml(path: Path) -> dict:
    """Load and parse YAML file."""
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError(
                f"YAML config must be a mapping, got {type(data).__name__}",
                context={"field": "config_file", "value": str(path)},
            )
        return data
    except yaml.YAMLError as e:
        raise ConfigError(
            f"Failed to parse YAML config: {e}",
            context={"field": "config_file", "value": str(path)},
        ) from e


# Leaf keys whose env values stay strings even when they look numeric.
_STRING_FIELDS = frozenset(
    {"api_key", "team_id", "base_url", "kind", "sqlite_path", "host", "level"}
)


def _merge_env_vars(base: dict, prefix: str) -> dict:
    """Overlay environment variables onto base config dict.

    Double-underscore separates nesting levels.
    Values are auto-cast: "true"/"false" -> bool, numeric strings -> int/float,
    comma-separated values under fallback_chains -> list.
    Keys in ``_STRING_FIELDS`` are never cast.
    """
    result = dict(base)

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        remainder = key[len(prefix) :]
        parts = [p.lower() for p in remainder.split("__")]

        # Skip the CONFIG env var itself
        if parts == ["config"]:
            continue

        if parts[0] == "fallback_chains":
            cast_value: object = [v.strip() for v in value.split(",") if v.strip()]
        elif parts[-1] in _STRING_FIELDS:
            cast_value = value
        else:
            cast_value = _auto_cast(value)

        target = result
        for part in parts[:-1]:
            if not isinstance(target.get(part), dict):
                target[part] = {}
            target = target[part]
        target[parts[-1]] = cast_value

    return result


def _auto_cast(value: str) -> str | int | float | bool:
    """Auto-cast string values from environment variables."""
    if value.lower() == "true":
        return True
    if value.lower() == "false":
        return False
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        pass
    return value
