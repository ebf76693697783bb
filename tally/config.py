"""
Configuration — engine settings and logging setup.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta

import structlog

# ═══════════════════════════════════════════════════════════════════════════════
# Settings — Full Configuration
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class Settings:
    """
    Engine settings.

    Fluent builder pattern — chain methods to configure.

    Example:
        settings = (
            Settings()
            .with_database("postgresql+asyncpg://shop@db/shop")
            .with_cache(ttl_seconds=10, max_size=5000)
        )

    Note: Immutable — each method returns new Settings.
    """

    database_url: str = "sqlite+aiosqlite:///tally.db"
    default_location: str = "general"
    cache_ttl: timedelta | None = timedelta(seconds=30)
    cache_max_size: int = 1000
    # Categories matched (case-insensitive, substring) as boilies; only those
    # lines are constrained by a promo's packaging filter.
    boilies_keywords: tuple[str, ...] = ("bouillette", "boilies")
    max_parcel_weight_g: int = 28_000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        """
        Read settings from TALLY_* environment variables.

        Unset variables keep their defaults. TALLY_CACHE_TTL_SECONDS=0
        disables expiry (entries then live until invalidated or evicted).
        """
        env = os.environ if environ is None else environ
        base = cls()

        ttl = base.cache_ttl
        if raw_ttl := env.get("TALLY_CACHE_TTL_SECONDS"):
            seconds = float(raw_ttl)
            ttl = timedelta(seconds=seconds) if seconds > 0 else None

        return cls(
            database_url=env.get("TALLY_DATABASE_URL", base.database_url),
            default_location=env.get("TALLY_DEFAULT_LOCATION", base.default_location),
            cache_ttl=ttl,
            cache_max_size=int(env.get("TALLY_CACHE_MAX_SIZE", base.cache_max_size)),
            boilies_keywords=base.boilies_keywords,
            max_parcel_weight_g=base.max_parcel_weight_g,
            log_level=env.get("TALLY_LOG_LEVEL", base.log_level).upper(),
        )

    def with_database(self, url: str) -> Settings:
        """Point the engine at another database."""
        return Settings(
            database_url=url,
            default_location=self.default_location,
            cache_ttl=self.cache_ttl,
            cache_max_size=self.cache_max_size,
            boilies_keywords=self.boilies_keywords,
            max_parcel_weight_g=self.max_parcel_weight_g,
            log_level=self.log_level,
        )

    def with_cache(
        self,
        *,
        ttl_seconds: float | None = None,
        max_size: int | None = None,
    ) -> Settings:
        """
        Tune the read caches.

        Example:
            .with_cache(ttl_seconds=5)
            .with_cache(max_size=10_000)
        """
        ttl = self.cache_ttl
        if ttl_seconds is not None:
            ttl = timedelta(seconds=ttl_seconds) if ttl_seconds > 0 else None
        return Settings(
            database_url=self.database_url,
            default_location=self.default_location,
            cache_ttl=ttl,
            cache_max_size=max_size if max_size is not None else self.cache_max_size,
            boilies_keywords=self.boilies_keywords,
            max_parcel_weight_g=self.max_parcel_weight_g,
            log_level=self.log_level,
        )

    def with_location(self, location: str) -> Settings:
        """Set the stock location used when callers pass none."""
        return Settings(
            database_url=self.database_url,
            default_location=location,
            cache_ttl=self.cache_ttl,
            cache_max_size=self.cache_max_size,
            boilies_keywords=self.boilies_keywords,
            max_parcel_weight_g=self.max_parcel_weight_g,
            log_level=self.log_level,
        )


# ═══════════════════════════════════════════════════════════════════════════════
# Logging
# ═══════════════════════════════════════════════════════════════════════════════


def configure_logging(level: str = "INFO") -> None:
    """
    Configure structlog for console output.

    Library modules only call structlog.get_logger(); applications call
    this once at startup.
    """
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        raise ValueError(f"Unknown log level: {level}")

    logging.basicConfig(format="%(message)s", level=numeric)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
        cache_logger_on_first_use=True,
    )

    # Suppress noisy library loggers
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


__all__ = ("Settings", "configure_logging")
