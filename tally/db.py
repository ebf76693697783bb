"""
Database layer — SQLAlchemy schema and async session factory.

Money is stored as integer cents and percentages as hundredths of a percent
so every backend round-trips values exactly; weights are stored in grams.
Conversion to Decimal happens in the component stores.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ═══════════════════════════════════════════════════════════════════════════════
# Base
# ═══════════════════════════════════════════════════════════════════════════════


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    return datetime.now(UTC)


# ═══════════════════════════════════════════════════════════════════════════════
# Stock
# ═══════════════════════════════════════════════════════════════════════════════


class StockTable(Base):
    """
    One row per tracked (product, variant, location).

    variant_id is "" for products without variants: a NULL would make the
    composite unique key ineffective on most backends.
    """

    __tablename__ = "stock"
    __table_args__ = (
        UniqueConstraint("product_id", "variant_id", "location", name="uq_stock_key"),
        CheckConstraint("stock >= 0", name="ck_stock_non_negative"),
        CheckConstraint("reserved >= 0", name="ck_reserved_non_negative"),
        CheckConstraint("reserved <= stock", name="ck_reserved_within_stock"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    product_id: Mapped[str] = mapped_column(String(100), nullable=False)
    variant_id: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    location: Mapped[str] = mapped_column(String(50), nullable=False)
    stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reserved: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


# ═══════════════════════════════════════════════════════════════════════════════
# Promo Codes
# ═══════════════════════════════════════════════════════════════════════════════


class PromoCodeTable(Base):
    __tablename__ = "promo_codes"
    __table_args__ = (
        CheckConstraint("used_count >= 0", name="ck_used_count_non_negative"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    code: Mapped[str] = mapped_column(String(100), nullable=False)
    # Lower-cased code: lookups and uniqueness are case-insensitive.
    code_key: Mapped[str] = mapped_column(String(100), nullable=False, unique=True, index=True)
    discount_type: Mapped[str] = mapped_column(String(20), nullable=False)
    # Cents for "fixed", hundredths of a percent for "percentage".
    discount_value_hundredths: Mapped[int] = mapped_column(Integer, nullable=False)
    min_purchase_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_uses: Mapped[int | None] = mapped_column(Integer, nullable=True)
    used_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    valid_from: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    valid_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    allowed_user_ids: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    allowed_product_ids: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    allowed_categories: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    allowed_gammes: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    allowed_conditionnements: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    unlimited_per_user: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class PromoCodeUsageTable(Base):
    """
    Append-only redemption log.

    idempotency_key — "{promo}:{user}:{order}", makes recording safe to retry.
    single_use_key — "{promo}:{user}" for single-use codes, NULL otherwise;
    its unique index is what rejects a second concurrent redemption.
    """

    __tablename__ = "promo_code_usage"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    promo_code_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("promo_codes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    order_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    discount_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    used_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    single_use_key: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)


class GlobalPromotionTable(Base):
    """Site-wide promotions; the partial unique index allows one active row."""

    __tablename__ = "global_promotions"
    __table_args__ = (
        Index(
            "uq_one_active_global_promotion",
            "active",
            unique=True,
            sqlite_where=text("active = 1"),
            postgresql_where=text("active"),
        ),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    discount_percent_hundredths: Mapped[int] = mapped_column(Integer, nullable=False)
    apply_to_all: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    allowed_categories: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    allowed_gammes: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    valid_from: Mapped[date | None] = mapped_column(Date, nullable=True)
    valid_until: Mapped[date | None] = mapped_column(Date, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


# ═══════════════════════════════════════════════════════════════════════════════
# Shipping Rules
# ═══════════════════════════════════════════════════════════════════════════════


class ShippingRuleTable(Base):
    """
    Shipping price rules.

    At most one active rule per shipping type, held by a partial unique
    index so concurrent activations cannot both commit. Legacy rows (NULL
    shipping type) are outside the index.
    """

    __tablename__ = "shipping_rules"
    __table_args__ = (
        Index(
            "uq_active_shipping_type",
            "shipping_type",
            unique=True,
            sqlite_where=text("active = 1"),
            postgresql_where=text("active"),
        ),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    # NULL: legacy row created before home/relay existed.
    shipping_type: Mapped[str | None] = mapped_column(String(10), nullable=True, index=True)
    country: Mapped[str | None] = mapped_column(String(3), nullable=True)
    fixed_price_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    margin_percent_hundredths: Mapped[int | None] = mapped_column(Integer, nullable=True)
    margin_fixed_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # [{"min_g": int, "max_g": int | None, "price_cents": int}, ...] in stored order
    weight_ranges: Mapped[list[dict[str, Any]] | None] = mapped_column(JSON, nullable=True)
    min_weight_g: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_weight_g: Mapped[int | None] = mapped_column(Integer, nullable=True)
    min_order_value_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    free_shipping_threshold_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


# ═══════════════════════════════════════════════════════════════════════════════
# Column Conversions
# ═══════════════════════════════════════════════════════════════════════════════


def to_hundredths(value: Decimal | None) -> int | None:
    """Decimal → integer hundredths (cents, or hundredths of a percent)."""
    if value is None:
        return None
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_hundredths(value: int | None) -> Decimal | None:
    if value is None:
        return None
    return (Decimal(value) / 100).quantize(Decimal("0.01"))


def to_grams(kg: Decimal | None) -> int | None:
    if kg is None:
        return None
    return int((kg * 1000).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_grams(grams: int | None) -> Decimal | None:
    if grams is None:
        return None
    return Decimal(grams) / 1000


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


# ═══════════════════════════════════════════════════════════════════════════════
# Database Setup
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class Database:
    """Engine + session factory, plus the dialect-aware INSERT used for upserts."""

    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def insert(self, model: type[Base]) -> Any:
        """Core INSERT supporting ON CONFLICT for the current backend."""
        table = model.__table__
        if self.dialect == "postgresql":
            return pg_insert(table)
        return sqlite_insert(table)


async def create_database(url: str = "sqlite+aiosqlite:///:memory:") -> Database:
    """Create schema (if missing) and return the Database handle."""
    engine = create_async_engine(url, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    return Database(engine=engine, session_factory=async_sessionmaker(engine, expire_on_commit=False))


@asynccontextmanager
async def open_database(url: str) -> AsyncIterator[Database]:
    """
    Scoped database — disposes the engine on exit.

    Example:
        async with open_database("sqlite+aiosqlite:///shop.db") as db:
            ledger = StockLedger(db)
    """
    database = await create_database(url)
    try:
        yield database
    finally:
        await database.engine.dispose()


__all__ = (
    "Base",
    "StockTable",
    "PromoCodeTable",
    "PromoCodeUsageTable",
    "GlobalPromotionTable",
    "ShippingRuleTable",
    "Database",
    "create_database",
    "open_database",
    "utcnow",
    "to_hundredths",
    "from_hundredths",
    "to_grams",
    "from_grams",
    "as_utc",
)
