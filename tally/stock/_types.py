"""
Stock types — keys, tagged stock levels, records.
"""

from __future__ import annotations

from dataclasses import dataclass

# ═══════════════════════════════════════════════════════════════════════════════
# Stock Key
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class StockKey:
    """Identity of a stock record: (product, variant, location)."""

    product_id: str
    variant_id: str | None
    location: str

    @property
    def cache_key(self) -> str:
        return f"stock:{self.location}:{self.product_id}:{self.variant_id or ''}"


# ═══════════════════════════════════════════════════════════════════════════════
# Stock Level — Tracked | Untracked
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class Tracked:
    """A stock record exists; availability is bounded."""

    stock: int
    reserved: int

    @property
    def available(self) -> int:
        return max(0, self.stock - self.reserved)

    @property
    def is_out_of_stock(self) -> bool:
        return self.available == 0


@dataclass(frozen=True, slots=True)
class Untracked:
    """
    No stock record: the product is not stock-managed and is always available.

    Distinct from Tracked(stock=0), which is genuinely out of stock.
    """

    @property
    def is_out_of_stock(self) -> bool:
        return False


type StockLevel = Tracked | Untracked


# ═══════════════════════════════════════════════════════════════════════════════
# Records & Inputs
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class StockRecord:
    product_id: str
    variant_id: str | None
    location: str
    stock: int
    reserved: int

    @property
    def available(self) -> int:
        return max(0, self.stock - self.reserved)

    @property
    def key(self) -> StockKey:
        return StockKey(self.product_id, self.variant_id, self.location)


@dataclass(frozen=True, slots=True)
class OrderItem:
    """One line of a confirmed order, as passed to confirm_order()."""

    product_id: str
    quantity: int
    variant_id: str | None = None


# ═══════════════════════════════════════════════════════════════════════════════
# Exports
# ═══════════════════════════════════════════════════════════════════════════════

__all__ = (
    "StockKey",
    "Tracked",
    "Untracked",
    "StockLevel",
    "StockRecord",
    "OrderItem",
)
