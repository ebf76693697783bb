"""
Core types for tally.

Re-exports from kungfu + money helpers + the store error.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

# Re-export from kungfu
from kungfu import Result, Ok, Error, LazyCoroResult

# ═══════════════════════════════════════════════════════════════════════════════
# Money
# ═══════════════════════════════════════════════════════════════════════════════

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

type Amount = Decimal | int | str
"""Anything money() accepts. Floats are rejected on purpose."""


def money(value: Amount) -> Decimal:
    """
    Normalize an amount to cents.

    Example:
        money("19.9")   # Decimal("19.90")
        money(5)        # Decimal("5.00")
    """
    if isinstance(value, float):
        raise TypeError("money amounts must not be floats, use Decimal or str")
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_decimal(value: Decimal | int | str | None) -> Decimal | None:
    """Convert without quantizing (weights, percentages). None passes through."""
    if value is None:
        return None
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


# ═══════════════════════════════════════════════════════════════════════════════
# Cart Line — Consumed From The Storefront Cart
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class CartLine:
    """
    One cart line as the storefront hands it over.

    unit_weight is in kilograms and only matters for weight-based shipping.
    """

    product_id: str
    unit_price: Decimal
    quantity: int = 1
    variant_id: str | None = None
    category: str | None = None
    gamme: str | None = None
    conditionnement: str | None = None
    is_free: bool = False
    unit_weight: Decimal | None = None

    @property
    def line_total(self) -> Decimal:
        return money(self.unit_price * self.quantity)


# ═══════════════════════════════════════════════════════════════════════════════
# Store Error — Infrastructure Failure
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class StoreError:
    """
    Storage operation error.

    Business outcomes (out of stock, expired code, no rule) are never
    StoreErrors; they travel inside Ok values.
    """

    message: str
    cause: Exception | None = None

    def __str__(self) -> str:
        return self.message


# ═══════════════════════════════════════════════════════════════════════════════
# Exports
# ═══════════════════════════════════════════════════════════════════════════════

__all__ = (
    # Re-exports from kungfu
    "Result",
    "Ok",
    "Error",
    "LazyCoroResult",
    # Money
    "CENT",
    "ZERO",
    "Amount",
    "money",
    "to_decimal",
    # Cart
    "CartLine",
    # Errors
    "StoreError",
)
