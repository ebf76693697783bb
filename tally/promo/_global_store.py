"""
GlobalPromotionStore — the stored site-wide promotion.

At most one promotion is active; saving an active one deactivates the rest
in the same transaction. The active row is cached and dropped on every write.
"""

from __future__ import annotations

import dataclasses
import uuid
from datetime import datetime
from typing import Any, cast

import structlog
from combinators import lift as L
from sqlalchemy import delete, select, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.exc import IntegrityError

from tally import cache as C
from tally._types import Error, LazyCoroResult, Ok, Result, StoreError
from tally.db import Database, GlobalPromotionTable, as_utc, from_hundredths, to_hundredths, utcnow
from tally.promo._global import GlobalPromotion, current_promotion, validate_promotion

logger = structlog.get_logger(__name__)

_promotions = GlobalPromotionTable.__table__

ACTIVE_PROMOTION_KEY = "global-promotion:active"

SAVE_ATTEMPTS = 3


def _failure(action: str, exc: Exception, **context: Any) -> StoreError:
    logger.error("Global promotion store failure", action=action, error=str(exc), **context)
    return StoreError(f"Failed to {action}: {exc}", exc)


def _to_promotion(row: Any) -> GlobalPromotion:
    return GlobalPromotion(
        id=row.id,
        discount_percent=from_hundredths(row.discount_percent_hundredths),
        apply_to_all=row.apply_to_all,
        allowed_categories=tuple(row.allowed_categories or ()),
        allowed_gammes=tuple(row.allowed_gammes or ()),
        active=row.active,
        valid_from=row.valid_from,
        valid_until=row.valid_until,
        description=row.description,
        created_at=as_utc(row.created_at),
    )


def _to_columns(promotion: GlobalPromotion) -> dict[str, Any]:
    return {
        "active": promotion.active,
        "discount_percent_hundredths": to_hundredths(promotion.discount_percent),
        "apply_to_all": promotion.apply_to_all,
        "allowed_categories": list(promotion.allowed_categories) or None,
        "allowed_gammes": list(promotion.allowed_gammes) or None,
        "valid_from": promotion.valid_from,
        "valid_until": promotion.valid_until,
        "description": promotion.description,
    }


class GlobalPromotionStore:
    """
    Example:
        store = GlobalPromotionStore(db, C.LocalTier())
        await store.save_promotion(GlobalPromotion(Decimal("15"), valid_until=date(2026, 12, 31)))

        match await store.current():
            case Ok(promotion):
                lines = apply_promotion(promotion, lines, utcnow())
    """

    def __init__(self, db: Database, tier: C.Tier[tuple[GlobalPromotion, ...]]) -> None:
        self._db = db
        self._active: C.CacheExecutor[str, tuple[GlobalPromotion, ...], StoreError] = (
            C.cache(lambda key: key, self._fetch_active).tier(tier).build()
        )

    def _fetch_active(self, _key: str) -> LazyCoroResult[tuple[GlobalPromotion, ...], StoreError]:
        async def fetch() -> tuple[GlobalPromotion, ...]:
            async with self._db.session_factory() as session:
                rows = (await session.execute(select(_promotions).where(_promotions.c.active.is_(True)))).all()
            return tuple(_to_promotion(row) for row in rows)

        return L.catching_async(
            fetch,
            on_error=lambda e: _failure("load global promotion", e),
        )

    async def current(self, at: datetime | None = None) -> Result[GlobalPromotion | None, StoreError]:
        """The promotion live at `at` (now by default), Ok(None) outside any window."""
        match await self._active.get(ACTIVE_PROMOTION_KEY):
            case Ok(cached):
                return Ok(current_promotion(cached.value, at or utcnow()))
            case Error(e):
                return Error(e)

    async def list_promotions(self) -> Result[list[GlobalPromotion], StoreError]:
        try:
            async with self._db.session_factory() as session:
                rows = (
                    await session.execute(select(_promotions).order_by(_promotions.c.created_at.desc()))
                ).all()
        except Exception as e:
            return Error(_failure("list global promotions", e))
        return Ok([_to_promotion(row) for row in rows])

    async def save_promotion(self, promotion: GlobalPromotion) -> Result[GlobalPromotion, StoreError]:
        """
        Create or update a promotion; an active one replaces the previous one.

        Raises:
            InvalidGlobalPromotion: nothing is written
        """
        validate_promotion(promotion)

        promotion_id = promotion.id or str(uuid.uuid4())
        now = utcnow()
        columns = _to_columns(promotion)

        upsert = self._db.insert(GlobalPromotionTable).values(
            id=promotion_id, created_at=now, updated_at=now, **columns
        )
        upsert = upsert.on_conflict_do_update(index_elements=["id"], set_={**columns, "updated_at": now})
        deactivate = (
            update(_promotions)
            .where(_promotions.c.active.is_(True), _promotions.c.id != promotion_id)
            .values(active=False, updated_at=now)
        )

        for attempt in range(1, SAVE_ATTEMPTS + 1):
            try:
                async with self._db.session_factory() as session:
                    if promotion.active:
                        await session.execute(deactivate)
                    await session.execute(upsert)
                    row = (await session.execute(select(_promotions).where(_promotions.c.id == promotion_id))).one()
                    await session.commit()
                break
            except IntegrityError as e:
                if attempt == SAVE_ATTEMPTS:
                    return Error(_failure("save global promotion", e, promotion_id=promotion_id, attempts=attempt))
                logger.warning("Concurrent global promotion activation, retrying", attempt=attempt)
            except Exception as e:
                return Error(_failure("save global promotion", e, promotion_id=promotion_id))

        await self._active.invalidate(ACTIVE_PROMOTION_KEY)
        logger.info(
            "Global promotion saved",
            promotion_id=promotion_id,
            active=promotion.active,
            discount_percent=str(promotion.discount_percent),
        )
        return Ok(_to_promotion(row))

    async def set_active(self, promotion_id: str, active: bool) -> Result[GlobalPromotion | None, StoreError]:
        try:
            async with self._db.session_factory() as session:
                row = (
                    await session.execute(select(_promotions).where(_promotions.c.id == promotion_id))
                ).one_or_none()
        except Exception as e:
            return Error(_failure("load global promotion", e, promotion_id=promotion_id))

        if row is None:
            return Ok(None)
        match await self.save_promotion(dataclasses.replace(_to_promotion(row), active=active)):
            case Ok(saved):
                return Ok(saved)
            case Error(e):
                return Error(e)

    async def delete_promotion(self, promotion_id: str) -> Result[bool, StoreError]:
        try:
            async with self._db.session_factory() as session:
                cursor = cast(
                    CursorResult[Any],
                    await session.execute(delete(_promotions).where(_promotions.c.id == promotion_id)),
                )
                await session.commit()
        except Exception as e:
            return Error(_failure("delete global promotion", e, promotion_id=promotion_id))

        deleted = cursor.rowcount > 0
        if deleted:
            await self._active.invalidate(ACTIVE_PROMOTION_KEY)
            logger.info("Global promotion deleted", promotion_id=promotion_id)
        return Ok(deleted)


__all__ = ("GlobalPromotionStore", "ACTIVE_PROMOTION_KEY")
