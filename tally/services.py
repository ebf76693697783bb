"""
Services — every component wired from Settings.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

import structlog

from tally import cache as C
from tally.checkout import CheckoutAggregator
from tally.config import Settings
from tally.db import Database, open_database
from tally.promo import GlobalPromotionStore, PromoCodeEngine
from tally.shipping import ShippingPriceCalculator
from tally.stock import StockLedger

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class Services:
    db: Database
    stock: StockLedger
    promo: PromoCodeEngine
    promotions: GlobalPromotionStore
    shipping: ShippingPriceCalculator
    checkout: CheckoutAggregator


def build_services(db: Database, settings: Settings) -> Services:
    """Components over an existing database; each gets its own cache tier."""

    def tier[T]() -> C.LocalTier[T]:
        return C.LocalTier(max_size=settings.cache_max_size, ttl=settings.cache_ttl)

    promo = PromoCodeEngine(db, tier(), boilies_keywords=settings.boilies_keywords)
    promotions = GlobalPromotionStore(db, tier())
    shipping = ShippingPriceCalculator(db, tier(), max_parcel_weight_g=settings.max_parcel_weight_g)
    return Services(
        db=db,
        stock=StockLedger(db, tier(), default_location=settings.default_location),
        promo=promo,
        promotions=promotions,
        shipping=shipping,
        checkout=CheckoutAggregator(promo, shipping, promotions),
    )


@asynccontextmanager
async def open_services(settings: Settings | None = None) -> AsyncIterator[Services]:
    """
    Open the database (creating the schema) and wire all components.

    Example:
        async with open_services(Settings.from_env()) as services:
            await services.stock.reserve_stock("boilie-20mm", 1)
    """
    settings = settings or Settings()
    async with open_database(settings.database_url) as db:
        logger.info("Services ready", dialect=db.dialect, location=settings.default_location)
        yield build_services(db, settings)


__all__ = ("Services", "build_services", "open_services")
