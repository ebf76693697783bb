"""
Parcels — split a shipment by weight.
"""

from __future__ import annotations

import math
from decimal import Decimal, ROUND_HALF_UP

from tally.shipping._types import Parcel

MAX_PARCEL_WEIGHT_G = 28_000


def build_parcels(
    total_weight_g: int | Decimal,
    max_parcel_weight_g: int = MAX_PARCEL_WEIGHT_G,
) -> list[Parcel]:
    """
    One parcel up to the carrier limit, otherwise two halves.

    Example:
        build_parcels(12_500)   # [Parcel(12500)]
        build_parcels(30_001)   # [Parcel(15001), Parcel(15000)]

    Raises:
        ValueError: total_weight_g is not strictly positive
    """
    if total_weight_g <= 0:
        raise ValueError(f"total_weight_g must be positive, got {total_weight_g}")

    total = int(Decimal(total_weight_g).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if total <= max_parcel_weight_g:
        return [Parcel(weight_g=total)]

    first = math.ceil(total / 2)
    return [Parcel(weight_g=first), Parcel(weight_g=total - first)]


__all__ = ("MAX_PARCEL_WEIGHT_G", "build_parcels")
