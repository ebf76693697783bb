"""
ShippingPriceCalculator — rules from the store, priced by the pure functions.

Reads share one cached list of active rules; save_rule() and delete_rule()
drop it after commit.
"""

from __future__ import annotations

import dataclasses
import uuid
from decimal import Decimal
from typing import Any, cast

import structlog
from combinators import lift as L
from sqlalchemy import delete, or_, select, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.exc import IntegrityError

from tally import cache as C
from tally._types import Error, LazyCoroResult, Ok, Result, StoreError, money
from tally.db import (
    Database,
    ShippingRuleTable,
    as_utc,
    from_grams,
    from_hundredths,
    to_grams,
    to_hundredths,
    utcnow,
)
from tally.shipping._parcels import MAX_PARCEL_WEIGHT_G, build_parcels
from tally.shipping._pricing import apply_rule, resolve_rule, validate_rule
from tally.shipping._types import (
    Parcel,
    RuleType,
    ShippingQuote,
    ShippingRule,
    ShippingType,
    WeightRange,
)

logger = structlog.get_logger(__name__)

_rules = ShippingRuleTable.__table__

ACTIVE_RULES_KEY = "shipping:active-rules"

# Attempts at save_rule() when a concurrent activation wins the active index.
SAVE_ATTEMPTS = 3


def _failure(action: str, exc: Exception, **context: Any) -> StoreError:
    logger.error("Shipping store failure", action=action, error=str(exc), **context)
    return StoreError(f"Failed to {action}: {exc}", exc)


# ═══════════════════════════════════════════════════════════════════════════════
# Row Mapping
# ═══════════════════════════════════════════════════════════════════════════════


def _to_rule(row: Any) -> ShippingRule:
    return ShippingRule(
        id=row.id,
        name=row.name,
        type=RuleType(row.type),
        shipping_type=ShippingType(row.shipping_type) if row.shipping_type else None,
        country=row.country,
        fixed_price=from_hundredths(row.fixed_price_cents),
        margin_percent=from_hundredths(row.margin_percent_hundredths),
        margin_fixed=from_hundredths(row.margin_fixed_cents),
        weight_ranges=tuple(
            WeightRange(
                min=from_grams(band["min_g"]) or Decimal(0),
                max=from_grams(band.get("max_g")),
                price=from_hundredths(band["price_cents"]) or Decimal(0),
            )
            for band in row.weight_ranges or ()
        ),
        min_weight=from_grams(row.min_weight_g),
        max_weight=from_grams(row.max_weight_g),
        min_order_value=from_hundredths(row.min_order_value_cents),
        free_shipping_threshold=from_hundredths(row.free_shipping_threshold_cents),
        active=row.active,
        created_at=as_utc(row.created_at),
    )


def _to_columns(rule: ShippingRule) -> dict[str, Any]:
    return {
        "name": rule.name.strip(),
        "type": rule.type.value,
        "shipping_type": rule.shipping_type.value if rule.shipping_type else None,
        "country": rule.country.upper() if rule.country else None,
        "fixed_price_cents": to_hundredths(rule.fixed_price),
        "margin_percent_hundredths": to_hundredths(rule.margin_percent),
        "margin_fixed_cents": to_hundredths(rule.margin_fixed),
        "weight_ranges": [
            {
                "min_g": to_grams(band.min),
                "max_g": to_grams(band.max),
                "price_cents": to_hundredths(band.price),
            }
            for band in rule.weight_ranges
        ] or None,
        "min_weight_g": to_grams(rule.min_weight),
        "max_weight_g": to_grams(rule.max_weight),
        "min_order_value_cents": to_hundredths(rule.min_order_value),
        "free_shipping_threshold_cents": to_hundredths(rule.free_shipping_threshold),
        "active": rule.active,
    }


# ═══════════════════════════════════════════════════════════════════════════════
# Shipping Price Calculator
# ═══════════════════════════════════════════════════════════════════════════════


class ShippingPriceCalculator:
    """
    Shipping price resolution and rule administration.

    Example:
        calc = ShippingPriceCalculator(db, C.LocalTier(ttl=timedelta(seconds=30)))

        match await calc.calculate_final_shipping_price(
            base_price=Decimal("9.90"),
            weight=Decimal("3"),
            order_value=Decimal("50.00"),
            shipping_type=ShippingType.HOME,
            country="FR",
        ):
            case Ok(quote):
                quote.price, quote.reason
            case Error(e):
                ...
    """

    def __init__(
        self,
        db: Database,
        tier: C.Tier[tuple[ShippingRule, ...]],
        max_parcel_weight_g: int = MAX_PARCEL_WEIGHT_G,
    ) -> None:
        self._db = db
        self._max_parcel_weight_g = max_parcel_weight_g
        self._active: C.CacheExecutor[str, tuple[ShippingRule, ...], StoreError] = (
            C.cache(lambda key: key, self._fetch_active).tier(tier).build()
        )

    def _fetch_active(self, _key: str) -> LazyCoroResult[tuple[ShippingRule, ...], StoreError]:
        async def fetch() -> tuple[ShippingRule, ...]:
            async with self._db.session_factory() as session:
                rows = (await session.execute(select(_rules).where(_rules.c.active.is_(True)))).all()
            return tuple(_to_rule(row) for row in rows)

        return L.catching_async(
            fetch,
            on_error=lambda e: _failure("load shipping rules", e),
        )

    # ═══════════════════════════════════════════════════════════════════════════
    # Pricing
    # ═══════════════════════════════════════════════════════════════════════════

    async def active_rules(self) -> Result[tuple[ShippingRule, ...], StoreError]:
        match await self._active.get(ACTIVE_RULES_KEY):
            case Ok(cached):
                return Ok(cached.value)
            case Error(e):
                return Error(e)

    async def get_active_shipping_price(
        self,
        shipping_type: ShippingType,
        country: str | None = None,
    ) -> Result[ShippingRule | None, StoreError]:
        """The rule that prices this shipping type and country, Ok(None) if none."""
        match await self.active_rules():
            case Ok(rules):
                return Ok(resolve_rule(rules, shipping_type, country))
            case Error(e):
                return Error(e)

    async def calculate_final_shipping_price(
        self,
        base_price: Decimal,
        weight: Decimal,
        order_value: Decimal,
        shipping_type: ShippingType,
        country: str | None = None,
    ) -> Result[ShippingQuote, StoreError]:
        """
        Price a shipment: base_price is the carrier's price, weight is in kg.

        The quote's reason tells which branch decided; price 0 with
        FREE_THRESHOLD is free shipping.
        """
        match await self.get_active_shipping_price(shipping_type, country):
            case Ok(rule):
                quote = apply_rule(rule, money(base_price), weight, money(order_value))
                logger.debug(
                    "Shipping priced",
                    shipping_type=shipping_type.value,
                    country=country,
                    rule_id=quote.rule_id,
                    reason=quote.reason.name,
                    price=str(quote.price),
                )
                return Ok(quote)
            case Error(e):
                return Error(e)

    async def calculate_shipment_price(
        self,
        base_price: Decimal,
        weight: Decimal,
        order_value: Decimal,
        shipping_type: ShippingType,
        country: str | None = None,
    ) -> Result[ShippingQuote, StoreError]:
        """
        Price a whole cart: split into parcels, price each, add them up.

        base_price is the carrier's price for one parcel. The free-shipping
        threshold and minimum order value still compare against the whole
        order_value, so a free order stays free however many parcels it takes.
        """
        match await self.get_active_shipping_price(shipping_type, country):
            case Ok(rule):
                quote = self._price_parcels(rule, money(base_price), weight, money(order_value))
                logger.debug(
                    "Shipment priced",
                    shipping_type=shipping_type.value,
                    country=country,
                    rule_id=quote.rule_id,
                    reason=quote.reason.name,
                    parcels=quote.parcels,
                    price=str(quote.price),
                )
                return Ok(quote)
            case Error(e):
                return Error(e)

    def _price_parcels(
        self,
        rule: ShippingRule | None,
        base_price: Decimal,
        weight: Decimal,
        order_value: Decimal,
    ) -> ShippingQuote:
        grams = to_grams(weight) or 0
        if grams <= 0:
            return apply_rule(rule, base_price, weight, order_value)

        parcels = self.build_parcels(grams)
        quotes = [
            apply_rule(rule, base_price, from_grams(parcel.weight_g) or Decimal(0), order_value)
            for parcel in parcels
        ]
        return dataclasses.replace(
            quotes[0],
            price=money(sum((q.price for q in quotes), Decimal(0))),
            parcels=len(parcels),
        )

    def build_parcels(self, total_weight_g: int | Decimal) -> list[Parcel]:
        """Parcels for a shipment, under this shop's parcel weight limit."""
        return build_parcels(total_weight_g, self._max_parcel_weight_g)

    # ═══════════════════════════════════════════════════════════════════════════
    # Administration
    # ═══════════════════════════════════════════════════════════════════════════

    async def list_rules(self) -> Result[list[ShippingRule], StoreError]:
        """All rules, active or not, newest first."""
        try:
            async with self._db.session_factory() as session:
                rows = (await session.execute(select(_rules).order_by(_rules.c.created_at.desc()))).all()
        except Exception as e:
            return Error(_failure("list shipping rules", e))
        return Ok([_to_rule(row) for row in rows])

    async def save_rule(self, rule: ShippingRule) -> Result[ShippingRule, StoreError]:
        """
        Create or update a rule.

        An active rule becomes the only active one of its shipping type:
        siblings (and legacy untyped rules, for home) are deactivated in the
        same transaction. If another activation of the same type commits
        first, the active-rule index rejects this one and the transaction is
        replayed, so the last writer ends up active.

        Raises:
            InvalidShippingRule: malformed rule; nothing is written
        """
        validate_rule(rule)

        rule_id = rule.id or str(uuid.uuid4())
        now = utcnow()
        columns = _to_columns(rule)

        upsert = self._db.insert(ShippingRuleTable).values(id=rule_id, created_at=now, updated_at=now, **columns)
        upsert = upsert.on_conflict_do_update(
            index_elements=["id"],
            set_={**columns, "updated_at": now},
        )

        deactivate = (
            update(_rules)
            .where(_rules.c.active.is_(True), _rules.c.id != rule_id, self._siblings(rule.shipping_type))
            .values(active=False, updated_at=now)
        )

        for attempt in range(1, SAVE_ATTEMPTS + 1):
            try:
                async with self._db.session_factory() as session:
                    deactivated = 0
                    if rule.active:
                        cursor = cast(CursorResult[Any], await session.execute(deactivate))
                        deactivated = cursor.rowcount
                    await session.execute(upsert)
                    row = (await session.execute(select(_rules).where(_rules.c.id == rule_id))).one()
                    await session.commit()
                break
            except IntegrityError as e:
                if attempt == SAVE_ATTEMPTS:
                    return Error(_failure("save shipping rule", e, rule_id=rule_id, attempts=attempt))
                logger.warning("Concurrent shipping rule activation, retrying", rule_id=rule_id, attempt=attempt)
            except Exception as e:
                return Error(_failure("save shipping rule", e, rule_id=rule_id))

        await self._active.invalidate(ACTIVE_RULES_KEY)
        saved = _to_rule(row)
        logger.info(
            "Shipping rule saved",
            rule_id=rule_id,
            type=rule.type.value,
            shipping_type=rule.shipping_type.value if rule.shipping_type else None,
            deactivated=deactivated,
        )
        return Ok(saved)

    @staticmethod
    def _siblings(shipping_type: ShippingType | None) -> Any:
        if shipping_type is None:
            return _rules.c.shipping_type.is_(None)
        if shipping_type is ShippingType.HOME:
            return or_(_rules.c.shipping_type == shipping_type.value, _rules.c.shipping_type.is_(None))
        return _rules.c.shipping_type == shipping_type.value

    async def set_active(self, rule_id: str, active: bool) -> Result[ShippingRule | None, StoreError]:
        """Toggle a stored rule; activation goes through save_rule() so siblings are deactivated."""
        try:
            async with self._db.session_factory() as session:
                row = (await session.execute(select(_rules).where(_rules.c.id == rule_id))).one_or_none()
        except Exception as e:
            return Error(_failure("load shipping rule", e, rule_id=rule_id))

        if row is None:
            return Ok(None)
        match await self.save_rule(dataclasses.replace(_to_rule(row), active=active)):
            case Ok(saved):
                return Ok(saved)
            case Error(e):
                return Error(e)

    async def delete_rule(self, rule_id: str) -> Result[bool, StoreError]:
        try:
            async with self._db.session_factory() as session:
                cursor = cast(CursorResult[Any], await session.execute(delete(_rules).where(_rules.c.id == rule_id)))
                await session.commit()
        except Exception as e:
            return Error(_failure("delete shipping rule", e, rule_id=rule_id))

        deleted = cursor.rowcount > 0
        if deleted:
            await self._active.invalidate(ACTIVE_RULES_KEY)
            logger.info("Shipping rule deleted", rule_id=rule_id)
        return Ok(deleted)


# ═══════════════════════════════════════════════════════════════════════════════
# Exports
# ═══════════════════════════════════════════════════════════════════════════════

__all__ = ("ShippingPriceCalculator", "ACTIVE_RULES_KEY")
