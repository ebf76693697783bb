"""
Checkout aggregation — subtotal, discount and shipping into one total.
"""

from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Sequence
from datetime import datetime
from decimal import Decimal

import structlog

from tally._types import ZERO, CartLine, Error, Ok, Result, StoreError, money
from tally.checkout._types import (
    CheckoutTotals,
    Destination,
    ShippingComputed,
    ShippingCost,
    ShippingFree,
    ShippingPending,
)
from tally.db import utcnow
from tally.promo import GlobalPromotion, GlobalPromotionStore, PromoCodeEngine, PromoValidation, apply_promotion
from tally.shipping import QuoteReason, ShippingPriceCalculator, ShippingQuote

logger = structlog.get_logger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# Shipping Cost Helpers
# ═══════════════════════════════════════════════════════════════════════════════


def shipping_cost(amount: Decimal) -> ShippingFree | ShippingComputed:
    """A computed amount: zero is free, anything else must be positive."""
    value = money(amount)
    if value == 0:
        return ShippingFree()
    return ShippingComputed(value)


def shipping_from_quote(quote: ShippingQuote) -> ShippingCost:
    """
    Only a reached free-shipping threshold is free shipping.

    Any other zero price (a rule misconfigured at 0, a margin eating the whole
    base) stays pending rather than letting the order through unpriced.
    """
    if quote.reason is QuoteReason.FREE_THRESHOLD:
        return ShippingFree()
    if quote.price > 0:
        return ShippingComputed(money(quote.price))
    logger.warning("Shipping priced at zero", rule_id=quote.rule_id, reason=quote.reason.name)
    return ShippingPending("shipping priced at zero without a free-shipping threshold")


def can_submit(totals: CheckoutTotals) -> bool:
    """False while shipping is still pending."""
    return totals.can_submit


def with_fallback[T, E](result: Result[T, E], default: T, reason: str) -> T:
    """
    Unwrap a result, or use the caller's default and say so in the log.

    Example:
        rule = with_fallback(await calc.get_active_shipping_price(t), None, "shipping rules unavailable")
    """
    match result:
        case Ok(value):
            return value
        case Error(e):
            logger.warning("Using fallback", reason=reason, error=str(e), default=str(default))
            return default


# ═══════════════════════════════════════════════════════════════════════════════
# compute_totals() — Pure Aggregation
# ═══════════════════════════════════════════════════════════════════════════════


def _amount(shipping: ShippingCost) -> Decimal:
    match shipping:
        case ShippingComputed(amount):
            return money(amount)
        case ShippingFree() | ShippingPending():
            return ZERO


def compute_totals(
    cart_lines: Sequence[CartLine],
    promo_result: PromoValidation | None,
    shipping: ShippingCost,
) -> CheckoutTotals:
    """
    Final totals for a cart.

    Free lines are left out of the subtotal. An absent or invalid promo
    result means no discount, and the discount never exceeds the subtotal.
    """
    subtotal = money(sum((line.line_total for line in cart_lines if not line.is_free), ZERO))

    discount = ZERO
    if promo_result is not None and promo_result.valid:
        discount = min(max(money(promo_result.discount), ZERO), subtotal)

    cost = _amount(shipping)
    return CheckoutTotals(
        subtotal=subtotal,
        discount=discount,
        shipping=shipping,
        shipping_cost=cost,
        total=money(max(ZERO, subtotal - discount) + cost),
    )


def cart_weight(cart_lines: Sequence[CartLine]) -> Decimal:
    """Shipped weight in kg; lines without a weight count as zero."""
    return sum((line.unit_weight * line.quantity for line in cart_lines if line.unit_weight), Decimal(0))


# ═══════════════════════════════════════════════════════════════════════════════
# Checkout Aggregator
# ═══════════════════════════════════════════════════════════════════════════════


class CheckoutAggregator:
    """
    Prices a cart end to end: promo validation and shipping run concurrently.

    The live global promotion, when a store is given, reprices the lines
    first; the promo code, the subtotal and the free-shipping threshold all
    see the promoted prices.

    Example:
        checkout = CheckoutAggregator(promo_engine, shipping_calculator, promotions)

        match await checkout.price_cart(
            lines,
            user_id="u1",
            promo_code="SUMMER10",
            destination=Destination("75001", "FR"),
            base_shipping_price=Decimal("9.90"),
        ):
            case Ok(totals) if totals.can_submit:
                ...
    """

    def __init__(
        self,
        promo: PromoCodeEngine,
        shipping: ShippingPriceCalculator,
        promotions: GlobalPromotionStore | None = None,
    ) -> None:
        self._promo = promo
        self._shipping = shipping
        self._promotions = promotions

    async def price_cart(
        self,
        cart_lines: Sequence[CartLine],
        *,
        user_id: str | None,
        promo_code: str | None,
        destination: Destination | None,
        base_shipping_price: Decimal | None,
        shipping_fallback: Decimal | None = None,
        now: datetime | None = None,
    ) -> Result[CheckoutTotals, StoreError]:
        """
        Totals for a cart.

        Shipping stays pending until the destination has a postal code and a
        country and the carrier base price is known. shipping_fallback, when
        given, replaces a failed shipping lookup (logged); otherwise the
        failure is returned.

        Raises:
            ValueError: shipping_fallback is not a positive amount
        """
        fallback = None
        if shipping_fallback is not None:
            if shipping_fallback <= 0:
                raise ValueError(f"shipping_fallback must be positive, got {shipping_fallback}")
            fallback = ShippingComputed(money(shipping_fallback))

        now = now or utcnow()
        listed = money(sum((line.line_total for line in cart_lines if not line.is_free), ZERO))
        match await self._global_promotion(now):
            case Ok(promotion):
                cart_lines = apply_promotion(promotion, cart_lines, now)
            case Error(e):
                return Error(e)

        subtotal = money(sum((line.line_total for line in cart_lines if not line.is_free), ZERO))

        promo_result, shipping_result = await asyncio.gather(
            self._validate_promo(promo_code, user_id, cart_lines, subtotal, now),
            self._price_shipping(cart_lines, subtotal, destination, base_shipping_price),
        )

        match promo_result, shipping_result:
            case Error(e), _:
                return Error(e)
            case Ok(validation), Ok(shipping):
                return Ok(self._totals(cart_lines, validation, shipping, listed - subtotal))
            case Ok(_), Error(e) if fallback is None:
                return Error(e)
            case Ok(validation), Error(_):
                shipping = with_fallback(shipping_result, fallback, "shipping price unavailable")
                return Ok(self._totals(cart_lines, validation, shipping, listed - subtotal))

    @staticmethod
    def _totals(
        cart_lines: Sequence[CartLine],
        validation: PromoValidation | None,
        shipping: ShippingCost,
        promotion_savings: Decimal,
    ) -> CheckoutTotals:
        totals = dataclasses.replace(
            compute_totals(cart_lines, validation, shipping),
            promotion_savings=money(promotion_savings),
        )
        logger.info(
            "Cart priced",
            subtotal=str(totals.subtotal),
            promotion_savings=str(totals.promotion_savings),
            discount=str(totals.discount),
            shipping=type(totals.shipping).__name__,
            total=str(totals.total),
        )
        return totals

    async def _global_promotion(self, now: datetime) -> Result[GlobalPromotion | None, StoreError]:
        if self._promotions is None:
            return Ok(None)
        return await self._promotions.current(now)

    async def _validate_promo(
        self,
        code: str | None,
        user_id: str | None,
        cart_lines: Sequence[CartLine],
        subtotal: Decimal,
        now: datetime,
    ) -> Result[PromoValidation | None, StoreError]:
        if not code or not code.strip():
            return Ok(None)
        return await self._promo.validate(code, user_id, cart_lines, subtotal, now=now)

    async def _price_shipping(
        self,
        cart_lines: Sequence[CartLine],
        subtotal: Decimal,
        destination: Destination | None,
        base_shipping_price: Decimal | None,
    ) -> Result[ShippingCost, StoreError]:
        if destination is None or not destination.is_complete:
            return Ok(ShippingPending())
        if base_shipping_price is None:
            return Ok(ShippingPending("carrier price not known yet"))

        result = await self._shipping.calculate_shipment_price(
            base_price=base_shipping_price,
            weight=cart_weight(cart_lines),
            order_value=subtotal,
            shipping_type=destination.shipping_type,
            country=destination.country,
        )
        match result:
            case Ok(quote):
                return Ok(shipping_from_quote(quote))
            case Error(e):
                return Error(e)


# ═══════════════════════════════════════════════════════════════════════════════
# Exports
# ═══════════════════════════════════════════════════════════════════════════════

__all__ = (
    "shipping_cost",
    "shipping_from_quote",
    "can_submit",
    "with_fallback",
    "compute_totals",
    "cart_weight",
    "CheckoutAggregator",
)
