"""Tests for tcg_pricing.core.config."""

import os

import pytest
from pydantic import ValidationError

from tcg_pricing.core.config import (
    CacheConfig,
    CachePolicyConfig,
    DEFAULT_POLICIES,
    PricingConfig,
    ProviderConfig,
    ResolverConfig,
    StorageConfig,
    _auto_cast,
    _merge_env_vars,
    load_config,
)
from tcg_pricing.core.exceptions import ConfigError
from tcg_pricing.core.models import Category, StorageBackend


@pytest.fixture
def clean_env(tmp_path, monkeypatch):
    """No TCG_PRICING_* variables and no stray tcg-pricing.yml in cwd."""
    for key in list(os.environ):
        if key.startswith("TCG_PRICING_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)
    return tmp_path


class TestStorageConfig:
    def test_defaults_to_sqlite(self):
        c = StorageConfig()
        assert c.backend == StorageBackend.SQLITE
        assert c.sqlite_path.endswith(".db")


class TestCachePolicyConfig:
    def test_ttl_must_cover_soft_refresh(self):
        with pytest.raises(ValidationError, match="ttl_seconds must be >= soft_refresh_seconds"):
            CachePolicyConfig(ttl_seconds=60, soft_refresh_seconds=120)

    def test_soft_refresh_must_be_positive(self):
        with pytest.raises(ValidationError, match="soft_refresh_seconds must be >= 1"):
            CachePolicyConfig(ttl_seconds=60, soft_refresh_seconds=0)

    def test_defaults_cover_every_category(self):
        assert set(DEFAULT_POLICIES) == set(Category)

    def test_overrides_merge_over_defaults(self):
        config = CacheConfig(
            policies={Category.SINGLE_PRICE: CachePolicyConfig(ttl_seconds=7200, soft_refresh_seconds=3600)}
        )
        resolved = config.resolved_policies()
        assert resolved[Category.SINGLE_PRICE].ttl_seconds == 7200
        assert resolved[Category.SEALED_PRICE] == DEFAULT_POLICIES[Category.SEALED_PRICE]


class TestProviderConfig:
    def test_rate_limit_positive(self):
        with pytest.raises(ValidationError, match="rate_limit must be > 0"):
            ProviderConfig(rate_limit=0)

    def test_quota_limits_positive(self):
        with pytest.raises(ValidationError, match="quota limits must be >= 1"):
            ProviderConfig(daily_limit=0)

    def test_batch_size_positive(self):
        with pytest.raises(ValidationError, match="batch_size must be >= 1"):
            ProviderConfig(batch_size=0)


class TestResolverConfig:
    def test_headroom_is_a_fraction(self):
        with pytest.raises(ValidationError):
            ResolverConfig(background_quota_headroom=1.0)

    def test_timeouts_positive(self):
        with pytest.raises(ValidationError, match="timeouts must be > 0"):
            ResolverConfig(foreground_timeout_seconds=0)


class TestPricingConfig:
    def test_default_chains(self):
        config = PricingConfig()
        assert config.chain_for(Category.SINGLE_PRICE) == ["scrydex", "justtcg"]
        assert config.chain_for(Category.SEALED_PRICE) == ["pricecharting", "scrydex"]

    def test_chain_skips_disabled_providers(self):
        config = PricingConfig(
            providers={
                "scrydex": ProviderConfig(enabled=False),
                "justtcg": ProviderConfig(),
                "pricecharting": ProviderConfig(),
            }
        )
        assert config.chain_for(Category.SINGLE_PRICE) == ["justtcg"]

    def test_chain_with_unknown_provider_rejected(self):
        with pytest.raises(ValidationError, match="unknown providers"):
            PricingConfig(fallback_chains={Category.SINGLE_PRICE: ["tcgplayer"]})

    def test_chain_with_repeated_provider_rejected(self):
        with pytest.raises(ValidationError, match="repeats a provider"):
            PricingConfig(fallback_chains={Category.SINGLE_PRICE: ["scrydex", "scrydex"]})


class TestLoadConfig:
    def test_defaults_without_file(self, clean_env):
        config = load_config()
        assert config.storage.backend == StorageBackend.SQLITE
        assert config.providers["justtcg"].daily_limit == 100

    def test_yaml_loading(self, clean_env):
        yaml_file = clean_env / "config.yml"
        yaml_file.write_text(
            "storage:\n  sqlite_path: /tmp/prices.db\n"
            "cache:\n  policies:\n    search_result:\n"
            "      ttl_seconds: 600\n      soft_refresh_seconds: 300\n"
        )
        config = load_config(config_path=str(yaml_file))
        assert config.storage.sqlite_path == "/tmp/prices.db"
        policy = config.cache.resolved_policies()[Category.SEARCH_RESULT]
        assert policy.ttl_seconds == 600

    def test_default_file_in_cwd_is_picked_up(self, clean_env):
        (clean_env / "tcg-pricing.yml").write_text("api:\n  port: 9001\n")
        assert load_config().api.port == 9001

    def test_partial_provider_section_keeps_defaults(self, clean_env):
        yaml_file = clean_env / "config.yml"
        yaml_file.write_text("providers:\n  justtcg:\n    api_key: secret\n")
        config = load_config(config_path=str(yaml_file))
        assert config.providers["justtcg"].api_key == "secret"
        assert config.providers["justtcg"].daily_limit == 100
        assert "scrydex" in config.providers

    def test_env_overrides_yaml(self, clean_env, monkeypatch):
        yaml_file = clean_env / "config.yml"
        yaml_file.write_text("api:\n  port: 9001\n")
        monkeypatch.setenv("TCG_PRICING_API__PORT", "9100")
        config = load_config(config_path=str(yaml_file))
        assert config.api.port == 9100

    def test_env_provider_secret(self, clean_env, monkeypatch):
        monkeypatch.setenv("TCG_PRICING_PROVIDERS__SCRYDEX__API_KEY", "sk-test")
        config = load_config()
        assert config.providers["scrydex"].api_key == "sk-test"
        assert config.providers["justtcg"].monthly_limit == 1000

    def test_env_numeric_api_key_stays_a_string(self, clean_env, monkeypatch):
        monkeypatch.setenv("TCG_PRICING_PROVIDERS__JUSTTCG__API_KEY", "123456")
        monkeypatch.setenv("TCG_PRICING_PROVIDERS__JUSTTCG__DAILY_LIMIT", "50")
        config = load_config()
        assert config.providers["justtcg"].api_key == "123456"
        assert config.providers["justtcg"].daily_limit == 50

    def test_env_fallback_chain_is_a_list(self, clean_env, monkeypatch):
        monkeypatch.setenv("TCG_PRICING_FALLBACK_CHAINS__SINGLE_PRICE", "justtcg, scrydex")
        config = load_config()
        assert config.chain_for(Category.SINGLE_PRICE) == ["justtcg", "scrydex"]
        assert config.chain_for(Category.SEALED_PRICE) == ["pricecharting", "scrydex"]

    def test_missing_explicit_file_raises(self, clean_env):
        with pytest.raises(ConfigError, match="Config file not found"):
            load_config(config_path=str(clean_env / "nope.yml"))

    def test_missing_env_file_raises(self, clean_env, monkeypatch):
        monkeypatch.setenv("TCG_PRICING_CONFIG", str(clean_env / "nope.yml"))
        with pytest.raises(ConfigError, match="TCG_PRICING_CONFIG not found"):
            load_config()

    def test_non_mapping_yaml_raises(self, clean_env):
        yaml_file = clean_env / "config.yml"
        yaml_file.write_text("- just\n- a list\n")
        with pytest.raises(ConfigError, match="must be a mapping"):
            load_config(config_path=str(yaml_file))

    def test_invalid_values_become_config_error(self, clean_env):
        yaml_file = clean_env / "config.yml"
        yaml_file.write_text("logging:\n  level: chatty\n")
        with pytest.raises(ConfigError, match="unknown log level"):
            load_config(config_path=str(yaml_file))


class TestEnvHelpers:
    def test_auto_cast(self):
        assert _auto_cast("true") is True
        assert _auto_cast("FALSE") is False
        assert _auto_cast("42") == 42
        assert _auto_cast("0.25") == 0.25
        assert _auto_cast("scrydex") == "scrydex"

    def test_merge_nests_double_underscore(self, monkeypatch):
        monkeypatch.setenv("TEST_SCHEDULER__TICK_SECONDS", "30")
        merged = _merge_env_vars({"scheduler": {"enabled": False}}, "TEST_")
        assert merged["scheduler"] == {"enabled": False, "tick_seconds": 30}

    def test_merge_skips_config_path_var(self, monkeypatch):
        monkeypatch.setenv("TEST_CONFIG", "/etc/tcg.yml")
        assert "config" not in _merge_env_vars({}, "TEST_")

    def test_merge_leaves_string_fields_uncast(self, monkeypatch):
        monkeypatch.setenv("TEST_PROVIDERS__SCRYDEX__TEAM_ID", "0042")
        monkeypatch.setenv("TEST_PROVIDERS__SCRYDEX__RATE_LIMIT", "2.5")
        monkeypatch.setenv("TEST_API__HOST", "127001")
        merged = _merge_env_vars({}, "TEST_")
        assert merged["providers"]["scrydex"] == {"team_id": "0042", "rate_limit": 2.5}
        assert merged["api"]["host"] == "127001"
