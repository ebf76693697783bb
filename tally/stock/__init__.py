"""
Stock — per-SKU stock levels and reservations.

    from tally import stock as S

    ledger = S.StockLedger(db, tier)

    match await ledger.get_available_stock("boilie-20mm", "1kg"):
        case Ok(S.Tracked() as level):
            level.available
        case Ok(S.Untracked()):
            ...  # not stock-managed, always available
"""

from __future__ import annotations

from tally.stock._types import (
    StockKey,
    Tracked,
    Untracked,
    StockLevel,
    StockRecord,
    OrderItem,
)
from tally.stock._ledger import StockLedger

__all__ = (
    "StockKey",
    "Tracked",
    "Untracked",
    "StockLevel",
    "StockRecord",
    "OrderItem",
    "StockLedger",
)
