"""
Eligibility — pure checks and discount arithmetic.

Nothing here touches the store: the engine loads the code and the usage
flag, these functions decide.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime
from decimal import Decimal

from tally._types import ZERO, CartLine, money
from tally.promo._types import (
    AppliedItem,
    DiscountType,
    PromoCode,
    PromoRejection,
    PromoValidation,
    RejectionKind,
)

BOILIES_KEYWORDS = ("bouillette", "boilies")


# ═══════════════════════════════════════════════════════════════════════════════
# Code-Level Checks
# ═══════════════════════════════════════════════════════════════════════════════


def screen(promo: PromoCode, now: datetime) -> PromoRejection | None:
    """Checks that depend only on the code itself: active, window, usage cap."""
    if not promo.active:
        return PromoRejection(RejectionKind.INACTIVE, "This promo code is no longer active")
    if promo.valid_from is not None and promo.valid_from > now:
        return PromoRejection(RejectionKind.NOT_YET_VALID, "This promo code is not valid yet")
    if promo.valid_until is not None and promo.valid_until < now:
        return PromoRejection(RejectionKind.EXPIRED, "This promo code has expired")
    if promo.is_exhausted:
        return PromoRejection(RejectionKind.EXHAUSTED, "This promo code has reached its usage limit")
    return None


# ═══════════════════════════════════════════════════════════════════════════════
# Line Filters
# ═══════════════════════════════════════════════════════════════════════════════


def _one_of(value: str | None, allowed: Iterable[str]) -> bool:
    if not value:
        return False
    needle = value.lower()
    return any(needle == candidate.lower() for candidate in allowed)


def is_boilies(line: CartLine, keywords: Sequence[str] = BOILIES_KEYWORDS) -> bool:
    category = (line.category or "").lower()
    return any(keyword in category for keyword in keywords)


def line_matches(
    promo: PromoCode,
    line: CartLine,
    keywords: Sequence[str] = BOILIES_KEYWORDS,
) -> bool:
    """
    Whether a cart line is covered by the code's filters.

    Every non-empty filter must match. The packaging filter only constrains
    boilies: other products pass it whatever their packaging.
    """
    if line.is_free:
        return False
    if promo.allowed_product_ids and line.product_id not in promo.allowed_product_ids:
        return False
    if promo.allowed_categories and not _one_of(line.category, promo.allowed_categories):
        return False
    if promo.allowed_gammes and not _one_of(line.gamme, promo.allowed_gammes):
        return False
    if (
        promo.allowed_conditionnements
        and is_boilies(line, keywords)
        and not _one_of(line.conditionnement, promo.allowed_conditionnements)
    ):
        return False
    return True


def eligible_lines(
    promo: PromoCode,
    lines: Sequence[CartLine],
    keywords: Sequence[str] = BOILIES_KEYWORDS,
) -> list[CartLine]:
    return [line for line in lines if line_matches(promo, line, keywords)]


# ═══════════════════════════════════════════════════════════════════════════════
# Discount
# ═══════════════════════════════════════════════════════════════════════════════


def discount_basis(eligible: Sequence[CartLine], cart_lines: Sequence[CartLine]) -> Decimal:
    """
    Amount the discount is computed on.

    Currently the value of the matching lines only. Switching to the whole
    cart is `sum(l.line_total for l in cart_lines if not l.is_free)`.
    """
    return money(sum((line.line_total for line in eligible), ZERO))


def compute_discount(promo: PromoCode, basis: Decimal) -> Decimal:
    """percentage: basis * value / 100. fixed: value, never more than basis."""
    if basis <= 0:
        return ZERO
    match promo.discount_type:
        case DiscountType.PERCENTAGE:
            return min(money(basis * promo.discount_value / 100), basis)
        case DiscountType.FIXED:
            return min(money(promo.discount_value), basis)


def allocate(
    promo: PromoCode,
    eligible: Sequence[CartLine],
    discount: Decimal,
) -> tuple[AppliedItem, ...]:
    """
    Split the discount over the eligible lines.

    Percentage codes take their rate on each line, fixed codes are spread
    pro rata to line value. Rounding leftovers land on the last line so the
    shares always add up to the discount.
    """
    if not eligible:
        return ()

    basis = sum((line.line_total for line in eligible), ZERO)
    shares: list[Decimal] = []
    for line in eligible[:-1]:
        if basis <= 0:
            shares.append(ZERO)
        elif promo.discount_type is DiscountType.PERCENTAGE:
            shares.append(money(line.line_total * promo.discount_value / 100))
        else:
            shares.append(money(discount * line.line_total / basis))
    shares.append(money(discount - sum(shares, ZERO)))

    return tuple(
        AppliedItem(
            product_id=line.product_id,
            variant_id=line.variant_id,
            line_total=line.line_total,
            discount=share,
        )
        for line, share in zip(eligible, shares)
    )


# ═══════════════════════════════════════════════════════════════════════════════
# Cart-Level Evaluation
# ═══════════════════════════════════════════════════════════════════════════════


def evaluate_cart(
    promo: PromoCode,
    user_id: str,
    cart_lines: Sequence[CartLine],
    cart_subtotal: Decimal,
    keywords: Sequence[str] = BOILIES_KEYWORDS,
) -> PromoValidation:
    """Minimum purchase, user allow-list, line filters, then the discount."""
    if promo.min_purchase is not None and promo.min_purchase > 0 and cart_subtotal < promo.min_purchase:
        return PromoValidation.rejected(
            RejectionKind.MIN_PURCHASE,
            f"Minimum purchase required: {money(promo.min_purchase)}",
            promo,
        )

    if promo.allowed_user_ids and user_id not in promo.allowed_user_ids:
        return PromoValidation.rejected(
            RejectionKind.USER_NOT_ALLOWED,
            "This promo code is not valid for your account",
            promo,
        )

    eligible = eligible_lines(promo, cart_lines, keywords)
    if not eligible:
        return PromoValidation.rejected(
            RejectionKind.NO_ELIGIBLE_ITEMS,
            "This promo code does not apply to the items in your cart",
            promo,
        )

    discount = compute_discount(promo, discount_basis(eligible, cart_lines))
    return PromoValidation.accepted(promo, discount, allocate(promo, eligible, discount))


# ═══════════════════════════════════════════════════════════════════════════════
# Exports
# ═══════════════════════════════════════════════════════════════════════════════

__all__ = (
    "BOILIES_KEYWORDS",
    "screen",
    "is_boilies",
    "line_matches",
    "eligible_lines",
    "discount_basis",
    "compute_discount",
    "allocate",
    "evaluate_cart",
)
