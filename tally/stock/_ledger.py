"""
StockLedger — per-SKU stock and in-flight reservations.

Every mutation is a single conditional UPDATE or INSERT ... ON CONFLICT, so
two carts racing for the last unit cannot both win, whichever process they
run in. Reads go through an explicit cache; writes invalidate the touched
key after commit.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, cast

import structlog
from combinators import lift as L
from sqlalchemy import case, select, update
from sqlalchemy.engine import CursorResult

from tally import cache as C
from tally._types import Error, LazyCoroResult, Ok, Result, StoreError
from tally.db import Database, StockTable, utcnow
from tally.stock._types import OrderItem, StockKey, StockLevel, StockRecord, Tracked, Untracked

logger = structlog.get_logger(__name__)

_stock = StockTable.__table__


def _match(key: StockKey) -> tuple[Any, ...]:
    return (
        _stock.c.product_id == key.product_id,
        _stock.c.variant_id == (key.variant_id or ""),
        _stock.c.location == key.location,
    )


def _clamped_minus(column: Any, qty: int) -> Any:
    """column - qty, floored at zero, evaluated by the database."""
    return case((column > qty, column - qty), else_=0)


def _require_positive(qty: int) -> None:
    if qty <= 0:
        raise ValueError(f"Quantity must be positive, got {qty}")


def _failure(action: str, exc: Exception, **context: Any) -> StoreError:
    logger.error("Stock store failure", action=action, error=str(exc), **context)
    return StoreError(f"Failed to {action}: {exc}", exc)


# ═══════════════════════════════════════════════════════════════════════════════
# Stock Ledger
# ═══════════════════════════════════════════════════════════════════════════════


class StockLedger:
    """
    Stock levels and reservations.

    Example:
        ledger = StockLedger(db, C.LocalTier(ttl=timedelta(seconds=30)))

        match await ledger.reserve_stock("boilie-20mm", 2):
            case Ok(True):
                ...  # held for this cart
            case Ok(False):
                ...  # not enough available
            case Error(e):
                ...  # store unreachable
    """

    def __init__(
        self,
        db: Database,
        tier: C.Tier[StockLevel],
        default_location: str = "general",
    ) -> None:
        self._db = db
        self._default_location = default_location
        self._levels: C.CacheExecutor[StockKey, StockLevel, StoreError] = (
            C.cache(lambda key: key.cache_key, self._fetch_level).tier(tier).build()
        )

    def _key(self, product_id: str, variant_id: str | None, location: str | None) -> StockKey:
        return StockKey(product_id, variant_id or None, location or self._default_location)

    def _fetch_level(self, key: StockKey) -> LazyCoroResult[StockLevel, StoreError]:
        async def fetch() -> StockLevel:
            async with self._db.session_factory() as session:
                result = await session.execute(select(_stock.c.stock, _stock.c.reserved).where(*_match(key)))
                row = result.one_or_none()
            if row is None:
                return Untracked()
            return Tracked(stock=row.stock, reserved=row.reserved)

        return L.catching_async(
            fetch,
            on_error=lambda e: _failure("read stock", e, key=key.cache_key),
        )

    # ═══════════════════════════════════════════════════════════════════════════
    # Reads
    # ═══════════════════════════════════════════════════════════════════════════

    async def get_available_stock(
        self,
        product_id: str,
        variant_id: str | None = None,
        location: str | None = None,
    ) -> Result[StockLevel, StoreError]:
        """
        Current level for a key: Untracked() when no record exists, else
        Tracked(stock, reserved) with .available = max(0, stock - reserved).
        """
        match await self._levels.get(self._key(product_id, variant_id, location)):
            case Ok(cached):
                return Ok(cached.value)
            case Error(e):
                return Error(e)

    async def list_stock(self, location: str | None = None) -> Result[list[StockRecord], StoreError]:
        """All tracked records of a location, for the admin listing."""
        return await self._select_records(location, only_depleted=False)

    async def stock_alerts(self, location: str | None = None) -> Result[list[StockRecord], StoreError]:
        """Tracked records with nothing left to sell."""
        return await self._select_records(location, only_depleted=True)

    async def _select_records(
        self,
        location: str | None,
        *,
        only_depleted: bool,
    ) -> Result[list[StockRecord], StoreError]:
        loc = location or self._default_location
        stmt = select(_stock).where(_stock.c.location == loc)
        if only_depleted:
            stmt = stmt.where(_stock.c.stock - _stock.c.reserved <= 0)
        stmt = stmt.order_by(_stock.c.product_id, _stock.c.variant_id)
        try:
            async with self._db.session_factory() as session:
                rows = (await session.execute(stmt)).all()
        except Exception as e:
            return Error(_failure("list stock", e, location=loc))

        return Ok([
            StockRecord(
                product_id=row.product_id,
                variant_id=row.variant_id or None,
                location=row.location,
                stock=row.stock,
                reserved=row.reserved,
            )
            for row in rows
        ])

    # ═══════════════════════════════════════════════════════════════════════════
    # Writes
    # ═══════════════════════════════════════════════════════════════════════════

    async def reserve_stock(
        self,
        product_id: str,
        qty: int,
        variant_id: str | None = None,
        location: str | None = None,
    ) -> Result[bool, StoreError]:
        """
        Hold qty units for a cart.

        Ok(True) when held (or the key is untracked), Ok(False) when fewer
        than qty units are available; nothing is written in that case.
        """
        _require_positive(qty)
        key = self._key(product_id, variant_id, location)

        stmt = (
            update(_stock)
            .where(*_match(key), _stock.c.stock - _stock.c.reserved >= qty)
            .values(reserved=_stock.c.reserved + qty, updated_at=utcnow())
        )
        try:
            async with self._db.session_factory() as session:
                cursor = cast(CursorResult[Any], await session.execute(stmt))
                reserved = cursor.rowcount > 0
                tracked = True
                if not reserved:
                    found = await session.execute(select(_stock.c.id).where(*_match(key)))
                    tracked = found.first() is not None
                await session.commit()
        except Exception as e:
            return Error(_failure("reserve stock", e, key=key.cache_key, qty=qty))

        if not tracked:
            return Ok(True)

        if reserved:
            await self._levels.invalidate(key)
            logger.info("Stock reserved", key=key.cache_key, qty=qty)
        else:
            logger.warning("Insufficient stock", key=key.cache_key, qty=qty)
        return Ok(reserved)

    async def release_stock(
        self,
        product_id: str,
        qty: int,
        variant_id: str | None = None,
        location: str | None = None,
    ) -> Result[None, StoreError]:
        """Give back a reservation. Reserved never drops below zero."""
        _require_positive(qty)
        key = self._key(product_id, variant_id, location)

        stmt = (
            update(_stock)
            .where(*_match(key))
            .values(reserved=_clamped_minus(_stock.c.reserved, qty), updated_at=utcnow())
        )
        try:
            async with self._db.session_factory() as session:
                cursor = cast(CursorResult[Any], await session.execute(stmt))
                await session.commit()
        except Exception as e:
            return Error(_failure("release stock", e, key=key.cache_key, qty=qty))

        if cursor.rowcount > 0:
            await self._levels.invalidate(key)
            logger.info("Stock released", key=key.cache_key, qty=qty)
        return Ok(None)

    async def confirm_order(
        self,
        items: Sequence[OrderItem],
        location: str | None = None,
    ) -> Result[None, StoreError]:
        """
        Turn reservations into sales: stock and reserved both drop by each
        item's quantity (floored at zero), all items in one transaction.

        A prior reservation is not required. Untracked items are skipped.
        """
        for item in items:
            _require_positive(item.quantity)
        keys = [self._key(item.product_id, item.variant_id, location) for item in items]

        try:
            async with self._db.session_factory() as session:
                for item, key in zip(items, keys):
                    await session.execute(
                        update(_stock)
                        .where(*_match(key))
                        .values(
                            stock=_clamped_minus(_stock.c.stock, item.quantity),
                            reserved=_clamped_minus(_stock.c.reserved, item.quantity),
                            updated_at=utcnow(),
                        )
                    )
                await session.commit()
        except Exception as e:
            return Error(_failure("confirm order", e, items=len(items)))

        for key in keys:
            await self._levels.invalidate(key)
        logger.info("Order confirmed", items=len(items))
        return Ok(None)

    async def update_stock(
        self,
        product_id: str,
        new_stock: int,
        variant_id: str | None = None,
        location: str | None = None,
    ) -> Result[None, StoreError]:
        """
        Admin upsert of the on-hand count (negative values clamp to 0).

        Creates the record on first write. Reservations are kept, except
        that reserved is cut down to the new stock when it would exceed it:
        holds on units that no longer exist cannot be honoured.
        """
        key = self._key(product_id, variant_id, location)
        now = utcnow()

        stmt = self._db.insert(StockTable).values(
            product_id=key.product_id,
            variant_id=key.variant_id or "",
            location=key.location,
            stock=max(0, new_stock),
            reserved=0,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["product_id", "variant_id", "location"],
            set_={
                "stock": stmt.excluded.stock,
                "reserved": case(
                    (_stock.c.reserved > stmt.excluded.stock, stmt.excluded.stock),
                    else_=_stock.c.reserved,
                ),
                "updated_at": stmt.excluded.updated_at,
            },
        )
        try:
            async with self._db.session_factory() as session:
                await session.execute(stmt)
                await session.commit()
        except Exception as e:
            return Error(_failure("update stock", e, key=key.cache_key))

        await self._levels.invalidate(key)
        logger.info("Stock updated", key=key.cache_key, stock=max(0, new_stock))
        return Ok(None)


# ═══════════════════════════════════════════════════════════════════════════════
# Exports
# ═══════════════════════════════════════════════════════════════════════════════

__all__ = ("StockLedger",)
