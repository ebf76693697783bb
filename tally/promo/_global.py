"""
Global promotion — a site-wide percentage off line prices.

Unlike promo codes it needs no code and no user: while a promotion is live,
every eligible line is simply cheaper, before anything else is priced.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal

from tally._types import ZERO, CartLine, money

# ═══════════════════════════════════════════════════════════════════════════════
# Types
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class GlobalPromotion:
    """
    discount_percent off every eligible line.

    apply_to_all=True covers the whole catalogue. Otherwise a line must match
    one of the category or gamme filters; with no filter nothing matches.
    The window is in whole days, both ends included.
    """

    discount_percent: Decimal
    apply_to_all: bool = True
    allowed_categories: tuple[str, ...] = ()
    allowed_gammes: tuple[str, ...] = ()
    active: bool = True
    valid_from: date | None = None
    valid_until: date | None = None
    description: str | None = None
    id: str | None = None
    created_at: datetime | None = None


class InvalidGlobalPromotion(ValueError):
    """Raised at save time for a promotion that cannot be applied."""


# ═══════════════════════════════════════════════════════════════════════════════
# Checks
# ═══════════════════════════════════════════════════════════════════════════════


def validate_promotion(promotion: GlobalPromotion) -> None:
    """
    Raises:
        InvalidGlobalPromotion
    """
    if not ZERO < promotion.discount_percent <= 100:
        raise InvalidGlobalPromotion("discount_percent must be in (0, 100]")
    if (
        promotion.valid_from is not None
        and promotion.valid_until is not None
        and promotion.valid_from > promotion.valid_until
    ):
        raise InvalidGlobalPromotion("valid_from is after valid_until")


def is_live(promotion: GlobalPromotion, at: datetime) -> bool:
    today = at.date()
    if not promotion.active:
        return False
    if promotion.valid_from is not None and today < promotion.valid_from:
        return False
    if promotion.valid_until is not None and today > promotion.valid_until:
        return False
    return True


def current_promotion(promotions: Iterable[GlobalPromotion], at: datetime) -> GlobalPromotion | None:
    """Newest live promotion, if any."""
    live = [p for p in promotions if is_live(p, at)]
    return max(live, key=lambda p: p.created_at or datetime.min.replace(tzinfo=at.tzinfo), default=None)


def _one_of(value: str | None, allowed: Sequence[str]) -> bool:
    return bool(value) and any(value.lower() == candidate.lower() for candidate in allowed)


def is_eligible(promotion: GlobalPromotion, line: CartLine) -> bool:
    """Category and gamme filters are alternatives: either one matching is enough."""
    if not promotion.active or line.is_free:
        return False
    if promotion.apply_to_all:
        return True
    return _one_of(line.category, promotion.allowed_categories) or _one_of(line.gamme, promotion.allowed_gammes)


# ═══════════════════════════════════════════════════════════════════════════════
# Pricing
# ═══════════════════════════════════════════════════════════════════════════════


def discounted_price(promotion: GlobalPromotion, price: Decimal) -> Decimal:
    return money(max(ZERO, price - price * promotion.discount_percent / 100))


def apply_promotion(
    promotion: GlobalPromotion | None,
    cart_lines: Sequence[CartLine],
    at: datetime,
) -> list[CartLine]:
    """
    Lines with the promotion folded into their unit price.

    Returns the lines unchanged when there is no live promotion.
    """
    if promotion is None or not is_live(promotion, at):
        return list(cart_lines)
    return [
        dataclasses.replace(line, unit_price=discounted_price(promotion, line.unit_price))
        if is_eligible(promotion, line)
        else line
        for line in cart_lines
    ]


# ═══════════════════════════════════════════════════════════════════════════════
# Exports
# ═══════════════════════════════════════════════════════════════════════════════

__all__ = (
    "GlobalPromotion",
    "InvalidGlobalPromotion",
    "validate_promotion",
    "is_live",
    "current_promotion",
    "is_eligible",
    "discounted_price",
    "apply_promotion",
)
