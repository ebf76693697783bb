from __future__ import annotations

from datetime import timedelta

import pytest

from tally.config import Settings, configure_logging


def test_defaults() -> None:
    settings = Settings()
    assert settings.default_location == "general"
    assert settings.cache_ttl == timedelta(seconds=30)
    assert settings.max_parcel_weight_g == 28_000
    assert settings.boilies_keywords == ("bouillette", "boilies")


def test_from_env_reads_tally_variables() -> None:
    settings = Settings.from_env({
        "TALLY_DATABASE_URL": "sqlite+aiosqlite:///shop.db",
        "TALLY_DEFAULT_LOCATION": "depot",
        "TALLY_CACHE_TTL_SECONDS": "5",
        "TALLY_CACHE_MAX_SIZE": "50",
        "TALLY_LOG_LEVEL": "debug",
    })
    assert settings.database_url == "sqlite+aiosqlite:///shop.db"
    assert settings.default_location == "depot"
    assert settings.cache_ttl == timedelta(seconds=5)
    assert settings.cache_max_size == 50
    assert settings.log_level == "DEBUG"


def test_from_env_zero_ttl_disables_expiry() -> None:
    assert Settings.from_env({"TALLY_CACHE_TTL_SECONDS": "0"}).cache_ttl is None


def test_from_env_keeps_defaults_when_unset() -> None:
    assert Settings.from_env({}) == Settings()


def test_fluent_methods_return_new_settings() -> None:
    base = Settings()
    tuned = base.with_database("sqlite+aiosqlite:///other.db").with_cache(ttl_seconds=10, max_size=10).with_location("shop")

    assert base == Settings()
    assert tuned.database_url == "sqlite+aiosqlite:///other.db"
    assert tuned.cache_ttl == timedelta(seconds=10)
    assert tuned.cache_max_size == 10
    assert tuned.default_location == "shop"


def test_configure_logging_rejects_unknown_level() -> None:
    with pytest.raises(ValueError):
        configure_logging("LOUD")
