"""
PromoCodeEngine — validation against the store, redemption, admin surface.

Redemption is closed against races at the store: the usage row and the
counter bump share one transaction, the single-use key is a unique index,
and the counter only moves while under max_uses.
"""

from __future__ import annotations

import dataclasses
import uuid
from collections.abc import Sequence
from datetime import datetime
from decimal import Decimal
from typing import Any, cast

import structlog
from combinators import lift as L
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.exc import IntegrityError

from tally import cache as C
from tally._types import CartLine, Error, LazyCoroResult, Ok, Result, StoreError, money
from tally.db import (
    Database,
    PromoCodeTable,
    PromoCodeUsageTable,
    as_utc,
    from_hundredths,
    to_hundredths,
    utcnow,
)
from tally.promo._eligibility import BOILIES_KEYWORDS, evaluate_cart, screen
from tally.promo._types import (
    BulkImportReport,
    DiscountType,
    PromoAdminOutcome,
    PromoCode,
    PromoCodeDraft,
    PromoUsage,
    PromoValidation,
    RejectionKind,
    UsageReceipt,
    UsageStatus,
)

logger = structlog.get_logger(__name__)

_codes = PromoCodeTable.__table__
_usage = PromoCodeUsageTable.__table__

# Fields an admin update may not touch.
_FROZEN_FIELDS = frozenset({"id", "used_count", "created_at"})


def _code_key(code: str) -> str:
    return code.strip().lower()


def _cache_key(code: str) -> str:
    return f"promo:{_code_key(code)}"


def _failure(action: str, exc: Exception, **context: Any) -> StoreError:
    logger.error("Promo store failure", action=action, error=str(exc), **context)
    return StoreError(f"Failed to {action}: {exc}", exc)


# ═══════════════════════════════════════════════════════════════════════════════
# Row Mapping
# ═══════════════════════════════════════════════════════════════════════════════


def _to_promo(row: Any) -> PromoCode:
    return PromoCode(
        id=row.id,
        code=row.code,
        discount_type=DiscountType(row.discount_type),
        discount_value=from_hundredths(row.discount_value_hundredths) or Decimal(0),
        min_purchase=from_hundredths(row.min_purchase_cents),
        max_uses=row.max_uses,
        used_count=row.used_count,
        valid_from=as_utc(row.valid_from),
        valid_until=as_utc(row.valid_until),
        active=row.active,
        allowed_user_ids=tuple(row.allowed_user_ids or ()),
        allowed_product_ids=tuple(row.allowed_product_ids or ()),
        allowed_categories=tuple(row.allowed_categories or ()),
        allowed_gammes=tuple(row.allowed_gammes or ()),
        allowed_conditionnements=tuple(row.allowed_conditionnements or ()),
        unlimited_per_user=row.unlimited_per_user,
        description=row.description,
        created_at=as_utc(row.created_at),
    )


def _to_columns(promo: PromoCode | PromoCodeDraft) -> dict[str, Any]:
    """Editable columns; empty allow-lists are stored as NULL."""
    return {
        "code": promo.code,
        "code_key": _code_key(promo.code),
        "discount_type": promo.discount_type.value,
        "discount_value_hundredths": to_hundredths(promo.discount_value),
        "min_purchase_cents": to_hundredths(promo.min_purchase),
        "max_uses": promo.max_uses,
        "valid_from": promo.valid_from,
        "valid_until": promo.valid_until,
        "active": promo.active,
        "allowed_user_ids": list(promo.allowed_user_ids) or None,
        "allowed_product_ids": list(promo.allowed_product_ids) or None,
        "allowed_categories": list(promo.allowed_categories) or None,
        "allowed_gammes": list(promo.allowed_gammes) or None,
        "allowed_conditionnements": list(promo.allowed_conditionnements) or None,
        "unlimited_per_user": promo.unlimited_per_user,
        "description": promo.description,
    }


def _to_usage(row: Any) -> PromoUsage:
    return PromoUsage(
        promo_code_id=row.promo_code_id,
        user_id=row.user_id,
        order_id=row.order_id,
        discount_amount=from_hundredths(row.discount_amount_cents) or Decimal(0),
        used_at=as_utc(row.used_at) or utcnow(),
    )


# ═══════════════════════════════════════════════════════════════════════════════
# Promo Code Engine
# ═══════════════════════════════════════════════════════════════════════════════


class PromoCodeEngine:
    """
    Promo code validation and redemption.

    Example:
        engine = PromoCodeEngine(db, C.LocalTier(ttl=timedelta(seconds=30)))

        match await engine.validate("SUMMER10", user_id, lines, subtotal):
            case Ok(v) if v.valid:
                discount = v.discount
            case Ok(v):
                show(v.rejection.message)
            case Error(e):
                ...  # store unreachable
    """

    def __init__(
        self,
        db: Database,
        tier: C.Tier[PromoCode],
        boilies_keywords: Sequence[str] = BOILIES_KEYWORDS,
    ) -> None:
        self._db = db
        self._keywords = tuple(boilies_keywords)
        self._by_code: C.CacheExecutor[str, PromoCode | None, StoreError] = (
            C.cache(_cache_key, self._fetch_code).tier(cast(C.Tier[PromoCode | None], tier)).build()
        )

    def _fetch_code(self, code: str) -> LazyCoroResult[PromoCode | None, StoreError]:
        async def fetch() -> PromoCode | None:
            async with self._db.session_factory() as session:
                result = await session.execute(select(_codes).where(_codes.c.code_key == _code_key(code)))
                row = result.one_or_none()
            return _to_promo(row) if row is not None else None

        return L.catching_async(
            fetch,
            on_error=lambda e: _failure("load promo code", e, code=code),
        )

    async def _forget(self) -> None:
        await self._by_code.invalidate_pattern("promo:*")

    # ═══════════════════════════════════════════════════════════════════════════
    # Validation
    # ═══════════════════════════════════════════════════════════════════════════

    async def get_promo_code(self, code: str) -> Result[PromoCode | None, StoreError]:
        """Case-insensitive lookup; Ok(None) when no such code."""
        match await self._by_code.get(code):
            case Ok(cached):
                return Ok(cached.value)
            case Error(e):
                return Error(e)

    async def validate(
        self,
        code: str,
        user_id: str | None,
        cart_lines: Sequence[CartLine],
        cart_subtotal: Decimal,
        now: datetime | None = None,
    ) -> Result[PromoValidation, StoreError]:
        """
        Check a code against a user and cart.

        Stops at the first failed check; the rejection kind says which one.
        A passing code carries the discount and its split over the lines.
        """
        match await self.get_promo_code(code):
            case Error(e):
                return Error(e)
            case Ok(None):
                return Ok(PromoValidation.rejected(RejectionKind.NOT_FOUND, "Invalid promo code"))
            case Ok(promo):
                return await self._check(promo, user_id, cart_lines, money(cart_subtotal), now or utcnow())

    async def _check(
        self,
        promo: PromoCode,
        user_id: str | None,
        cart_lines: Sequence[CartLine],
        subtotal: Decimal,
        at: datetime,
    ) -> Result[PromoValidation, StoreError]:
        if rejection := screen(promo, at):
            return Ok(PromoValidation(valid=False, promo_code=promo, rejection=rejection))

        if not user_id:
            return Ok(PromoValidation.rejected(
                RejectionKind.LOGIN_REQUIRED,
                "You must be logged in to use a promo code",
                promo,
            ))

        if not promo.unlimited_per_user:
            match await self.has_user_used(promo.id, user_id):
                case Error(e):
                    return Error(e)
                case Ok(True):
                    return Ok(PromoValidation.rejected(
                        RejectionKind.ALREADY_USED,
                        "You have already used this promo code",
                        promo,
                    ))
                case Ok(False):
                    pass

        validation = evaluate_cart(promo, user_id, cart_lines, subtotal, self._keywords)
        if validation.valid:
            logger.info("Promo code accepted", code=promo.code, user_id=user_id, discount=str(validation.discount))
        return Ok(validation)

    async def has_user_used(self, promo_code_id: str, user_id: str) -> Result[bool, StoreError]:
        stmt = (
            select(_usage.c.id)
            .where(_usage.c.promo_code_id == promo_code_id, _usage.c.user_id == user_id)
            .limit(1)
        )
        try:
            async with self._db.session_factory() as session:
                found = (await session.execute(stmt)).first()
        except Exception as e:
            return Error(_failure("check usage", e, promo_code_id=promo_code_id, user_id=user_id))
        return Ok(found is not None)

    # ═══════════════════════════════════════════════════════════════════════════
    # Redemption
    # ═══════════════════════════════════════════════════════════════════════════

    async def record_usage(
        self,
        promo_code_id: str,
        user_id: str,
        order_id: str | None,
        discount_amount: Decimal,
    ) -> Result[UsageReceipt, StoreError]:
        """
        Record a redemption once per (code, user, order).

        Safe to retry: a repeat returns ALREADY_RECORDED and leaves the
        counter alone. A second order by the same user on a single-use code
        returns ALREADY_USED; a code at max_uses returns EXHAUSTED.
        """

        def receipt(status: UsageStatus) -> Ok[UsageReceipt]:
            return Ok(UsageReceipt(status, promo_code_id, user_id, order_id))

        try:
            async with self._db.session_factory() as session:
                found = await session.execute(
                    select(_codes.c.unlimited_per_user).where(_codes.c.id == promo_code_id)
                )
                code_row = found.one_or_none()
        except Exception as e:
            return Error(_failure("record usage", e, promo_code_id=promo_code_id))

        if code_row is None:
            return receipt(UsageStatus.UNKNOWN_CODE)

        idempotency_key = f"{promo_code_id}:{user_id}:{order_id or ''}"
        insert = (
            self._db.insert(PromoCodeUsageTable)
            .values(
                promo_code_id=promo_code_id,
                user_id=user_id,
                order_id=order_id,
                discount_amount_cents=to_hundredths(money(discount_amount)),
                used_at=utcnow(),
                idempotency_key=idempotency_key,
                single_use_key=None if code_row.unlimited_per_user else f"{promo_code_id}:{user_id}",
            )
            .on_conflict_do_nothing(index_elements=["idempotency_key"])
        )
        bump = (
            update(_codes)
            .where(
                _codes.c.id == promo_code_id,
                or_(_codes.c.max_uses.is_(None), _codes.c.used_count < _codes.c.max_uses),
            )
            .values(used_count=_codes.c.used_count + 1, updated_at=utcnow())
        )

        try:
            async with self._db.session_factory() as session:
                inserted = cast(CursorResult[Any], await session.execute(insert))
                if inserted.rowcount == 0:
                    await session.rollback()
                    status = UsageStatus.ALREADY_RECORDED
                else:
                    bumped = cast(CursorResult[Any], await session.execute(bump))
                    if bumped.rowcount == 0:
                        await session.rollback()
                        status = UsageStatus.EXHAUSTED
                    else:
                        await session.commit()
                        status = UsageStatus.RECORDED
        except IntegrityError:
            match await self._usage_exists(idempotency_key):
                case Ok(True):
                    status = UsageStatus.ALREADY_RECORDED
                case Ok(False):
                    status = UsageStatus.ALREADY_USED
                case Error(e):
                    return Error(e)
        except Exception as e:
            return Error(_failure("record usage", e, promo_code_id=promo_code_id, user_id=user_id))

        match status:
            case UsageStatus.RECORDED:
                await self._forget()
                logger.info("Promo usage recorded", promo_code_id=promo_code_id, user_id=user_id, order_id=order_id)
            case UsageStatus.ALREADY_RECORDED:
                logger.info("Promo usage already recorded", promo_code_id=promo_code_id, order_id=order_id)
            case _:
                logger.warning("Promo usage refused", promo_code_id=promo_code_id, user_id=user_id, status=status.name)
        return receipt(status)

    async def _usage_exists(self, idempotency_key: str) -> Result[bool, StoreError]:
        try:
            async with self._db.session_factory() as session:
                found = await session.execute(
                    select(_usage.c.id).where(_usage.c.idempotency_key == idempotency_key)
                )
                return Ok(found.first() is not None)
        except Exception as e:
            return Error(_failure("check usage", e, idempotency_key=idempotency_key))

    # ═══════════════════════════════════════════════════════════════════════════
    # Usage Queries
    # ═══════════════════════════════════════════════════════════════════════════

    async def usage_count(self, promo_code_id: str) -> Result[int, StoreError]:
        stmt = select(func.count()).select_from(_usage).where(_usage.c.promo_code_id == promo_code_id)
        try:
            async with self._db.session_factory() as session:
                count = (await session.execute(stmt)).scalar_one()
        except Exception as e:
            return Error(_failure("count usage", e, promo_code_id=promo_code_id))
        return Ok(int(count))

    async def list_usage(self, promo_code_id: str) -> Result[list[PromoUsage], StoreError]:
        return await self._select_usage(_usage.c.promo_code_id == promo_code_id)

    async def user_usage(self, user_id: str) -> Result[list[PromoUsage], StoreError]:
        return await self._select_usage(_usage.c.user_id == user_id)

    async def _select_usage(self, condition: Any) -> Result[list[PromoUsage], StoreError]:
        stmt = select(_usage).where(condition).order_by(_usage.c.used_at, _usage.c.id)
        try:
            async with self._db.session_factory() as session:
                rows = (await session.execute(stmt)).all()
        except Exception as e:
            return Error(_failure("list usage", e))
        return Ok([_to_usage(row) for row in rows])

    # ═══════════════════════════════════════════════════════════════════════════
    # Admin
    # ═══════════════════════════════════════════════════════════════════════════

    async def list_promo_codes(self) -> Result[list[PromoCode], StoreError]:
        try:
            async with self._db.session_factory() as session:
                rows = (await session.execute(select(_codes).order_by(_codes.c.created_at.desc()))).all()
        except Exception as e:
            return Error(_failure("list promo codes", e))
        return Ok([_to_promo(row) for row in rows])

    async def add_promo_code(self, draft: PromoCodeDraft) -> Result[PromoAdminOutcome, StoreError]:
        """Create a code. Codes differing only by case count as duplicates."""
        code = draft.code.strip()
        if not code:
            return Ok(PromoAdminOutcome(success=False, error="Promo code cannot be empty"))

        now = utcnow()
        promo_id = f"promo-{uuid.uuid4().hex}"
        columns = _to_columns(dataclasses.replace(draft, code=code))
        stmt = (
            self._db.insert(PromoCodeTable)
            .values(id=promo_id, used_count=0, created_at=now, updated_at=now, **columns)
            .on_conflict_do_nothing(index_elements=["code_key"])
        )
        try:
            async with self._db.session_factory() as session:
                cursor = cast(CursorResult[Any], await session.execute(stmt))
                await session.commit()
        except Exception as e:
            return Error(_failure("add promo code", e, code=code))

        if cursor.rowcount == 0:
            logger.warning("Duplicate promo code", code=code)
            return Ok(PromoAdminOutcome(success=False, error="This promo code already exists"))

        await self._by_code.invalidate(code)
        logger.info("Promo code added", code=code, promo_code_id=promo_id)
        clean = dataclasses.replace(draft, code=code)
        created = PromoCode(
            id=promo_id,
            created_at=now,
            **{f.name: getattr(clean, f.name) for f in dataclasses.fields(clean)},
        )
        return Ok(PromoAdminOutcome(success=True, promo_code=created))

    async def add_promo_codes_bulk(self, drafts: Sequence[PromoCodeDraft]) -> Result[BulkImportReport, StoreError]:
        """
        Create many codes. Codes are trimmed and upper-cased; empty ones and
        duplicates are counted as failed, the rest are created.
        """
        created = 0
        errors: list[str] = []
        for draft in drafts:
            code = draft.code.strip().upper()
            if not code:
                errors.append("Empty code skipped")
                continue
            match await self.add_promo_code(dataclasses.replace(draft, code=code)):
                case Ok(PromoAdminOutcome(success=True)):
                    created += 1
                case Ok(outcome):
                    errors.append(f"Failed to create {code}: {outcome.error}")
                case Error(e):
                    return Error(e)

        logger.info("Bulk promo import", created=created, failed=len(errors))
        return Ok(BulkImportReport(created=created, failed=len(errors), errors=tuple(errors)))

    async def update_promo_code(self, promo_code_id: str, **changes: Any) -> Result[PromoAdminOutcome, StoreError]:
        """
        Apply field changes to a code.

        Example:
            await engine.update_promo_code(pid, active=False)
            await engine.update_promo_code(pid, max_uses=500, valid_until=end)
        """
        if forbidden := _FROZEN_FIELDS & changes.keys():
            raise ValueError(f"Cannot update {', '.join(sorted(forbidden))}")
        if "code" in changes:
            changes["code"] = str(changes["code"]).strip()
            if not changes["code"]:
                return Ok(PromoAdminOutcome(success=False, error="Promo code cannot be empty"))

        try:
            async with self._db.session_factory() as session:
                row = (await session.execute(select(_codes).where(_codes.c.id == promo_code_id))).one_or_none()
        except Exception as e:
            return Error(_failure("update promo code", e, promo_code_id=promo_code_id))

        if row is None:
            return Ok(PromoAdminOutcome(success=False, error="Promo code not found"))

        updated = dataclasses.replace(_to_promo(row), **changes)
        stmt = (
            update(_codes)
            .where(_codes.c.id == promo_code_id)
            .values(updated_at=utcnow(), **_to_columns(updated))
        )
        try:
            async with self._db.session_factory() as session:
                await session.execute(stmt)
                await session.commit()
        except IntegrityError:
            logger.warning("Duplicate promo code", code=updated.code)
            return Ok(PromoAdminOutcome(success=False, error="This promo code already exists"))
        except Exception as e:
            return Error(_failure("update promo code", e, promo_code_id=promo_code_id))

        await self._forget()
        logger.info("Promo code updated", promo_code_id=promo_code_id, fields=sorted(changes))
        return Ok(PromoAdminOutcome(success=True, promo_code=updated))

    async def delete_promo_code(self, promo_code_id: str) -> Result[bool, StoreError]:
        """Delete a code and its usage history. Ok(False) when it did not exist."""
        try:
            async with self._db.session_factory() as session:
                await session.execute(delete(_usage).where(_usage.c.promo_code_id == promo_code_id))
                cursor = cast(CursorResult[Any], await session.execute(delete(_codes).where(_codes.c.id == promo_code_id)))
                await session.commit()
        except Exception as e:
            return Error(_failure("delete promo code", e, promo_code_id=promo_code_id))

        deleted = cursor.rowcount > 0
        if deleted:
            await self._forget()
            logger.info("Promo code deleted", promo_code_id=promo_code_id)
        return Ok(deleted)


# ═══════════════════════════════════════════════════════════════════════════════
# Exports
# ═══════════════════════════════════════════════════════════════════════════════

__all__ = ("PromoCodeEngine",)
