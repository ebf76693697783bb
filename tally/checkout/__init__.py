"""
Checkout — totals and the "is shipping known yet" gate.

    from tally import checkout as K

    totals = K.compute_totals(lines, validation, K.shipping_cost(Decimal("8.00")))
    totals.total, totals.can_submit

    totals = K.compute_totals(lines, None, K.ShippingPending())
    assert not K.can_submit(totals)
"""

from __future__ import annotations

from tally.checkout._types import (
    ShippingPending,
    ShippingComputed,
    ShippingFree,
    ShippingCost,
    Destination,
    CheckoutTotals,
)
from tally.checkout._aggregate import (
    shipping_cost,
    shipping_from_quote,
    can_submit,
    with_fallback,
    compute_totals,
    cart_weight,
    CheckoutAggregator,
)

__all__ = (
    # Types
    "ShippingPending",
    "ShippingComputed",
    "ShippingFree",
    "ShippingCost",
    "Destination",
    "CheckoutTotals",
    # Aggregation
    "shipping_cost",
    "shipping_from_quote",
    "can_submit",
    "with_fallback",
    "compute_totals",
    "cart_weight",
    "CheckoutAggregator",
)
