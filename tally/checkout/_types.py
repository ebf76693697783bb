"""
Checkout types — shipping cost tri-state, destination, totals.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from tally._types import ZERO
from tally.shipping import ShippingType

# ═══════════════════════════════════════════════════════════════════════════════
# Shipping Cost — Pending | Computed | Free
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class ShippingPending:
    """Not known yet: destination incomplete or calculation in flight. Blocks submission."""

    reason: str = "destination incomplete"


@dataclass(frozen=True, slots=True)
class ShippingComputed:
    amount: Decimal

    def __post_init__(self) -> None:
        if self.amount <= 0:
            raise ValueError("ShippingComputed needs a positive amount, use ShippingFree for zero")


@dataclass(frozen=True, slots=True)
class ShippingFree:
    """Computed and legitimately zero (threshold reached)."""


type ShippingCost = ShippingPending | ShippingComputed | ShippingFree


# ═══════════════════════════════════════════════════════════════════════════════
# Destination
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class Destination:
    postal_code: str | None = None
    country: str | None = None
    shipping_type: ShippingType = ShippingType.HOME

    @property
    def is_complete(self) -> bool:
        return bool(self.postal_code and self.postal_code.strip() and self.country and self.country.strip())


# ═══════════════════════════════════════════════════════════════════════════════
# Totals
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class CheckoutTotals:
    """
    total = max(0, subtotal - discount) + shipping_cost

    shipping_cost is 0 both when shipping is free and while it is pending;
    only the shipping state tells them apart. subtotal is already net of the
    global promotion; promotion_savings is what it took off.
    """

    subtotal: Decimal
    discount: Decimal
    shipping: ShippingCost
    shipping_cost: Decimal
    total: Decimal
    promotion_savings: Decimal = ZERO

    @property
    def can_submit(self) -> bool:
        return not isinstance(self.shipping, ShippingPending)

    @property
    def merchandise_total(self) -> Decimal:
        return max(ZERO, self.subtotal - self.discount)


# ═══════════════════════════════════════════════════════════════════════════════
# Exports
# ═══════════════════════════════════════════════════════════════════════════════

__all__ = (
    "ShippingPending",
    "ShippingComputed",
    "ShippingFree",
    "ShippingCost",
    "Destination",
    "CheckoutTotals",
)
