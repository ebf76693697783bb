"""
Shipping types — price rules, quotes, parcels.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum, auto

# ═══════════════════════════════════════════════════════════════════════════════
# Rule Vocabulary
# ═══════════════════════════════════════════════════════════════════════════════

ALL_COUNTRIES = "ALL"


class RuleType(Enum):
    FIXED = "fixed"
    MARGIN_PERCENT = "margin_percent"
    MARGIN_FIXED = "margin_fixed"
    WEIGHT_RANGES = "weight_ranges"
    # Price comes from the carrier quote; the rule only gates thresholds.
    BOXTAL_ONLY = "boxtal_only"


class ShippingType(Enum):
    HOME = "home"
    RELAY = "relay"

    @property
    def other(self) -> ShippingType:
        return ShippingType.RELAY if self is ShippingType.HOME else ShippingType.HOME


# ═══════════════════════════════════════════════════════════════════════════════
# Shipping Rule
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class WeightRange:
    """Band [min, max] in kilograms; max=None is open-ended."""

    min: Decimal
    max: Decimal | None
    price: Decimal

    def contains(self, weight: Decimal) -> bool:
        return weight >= self.min and (self.max is None or weight <= self.max)

    def contains_below_max(self, weight: Decimal) -> bool:
        """Like contains() but excluding the upper edge."""
        return weight >= self.min and (self.max is None or weight < self.max)


@dataclass(frozen=True, slots=True)
class ShippingRule:
    """
    A merchant-configured shipping price rule.

    shipping_type=None marks a legacy rule from before home/relay existed.
    country=None or "ALL" applies everywhere. Weights are kilograms.
    id=None means "not saved yet"; save_rule() assigns one.
    """

    name: str
    type: RuleType
    shipping_type: ShippingType | None = ShippingType.HOME
    country: str | None = None
    fixed_price: Decimal | None = None
    margin_percent: Decimal | None = None
    margin_fixed: Decimal | None = None
    weight_ranges: tuple[WeightRange, ...] = ()
    min_weight: Decimal | None = None
    max_weight: Decimal | None = None
    min_order_value: Decimal | None = None
    free_shipping_threshold: Decimal | None = None
    active: bool = True
    id: str | None = None
    created_at: datetime | None = None

    @property
    def applies_everywhere(self) -> bool:
        return self.country is None or self.country.upper() == ALL_COUNTRIES


class InvalidShippingRule(ValueError):
    """Raised by save_rule() before anything is written."""


# ═══════════════════════════════════════════════════════════════════════════════
# Quote
# ═══════════════════════════════════════════════════════════════════════════════


class QuoteReason(Enum):
    """Which branch of the pricing produced the price."""

    NO_RULE = auto()
    FREE_THRESHOLD = auto()
    BELOW_MIN_ORDER = auto()
    OUT_OF_WEIGHT = auto()
    RULE_APPLIED = auto()
    NO_RANGE = auto()
    CARRIER_QUOTE = auto()
    INCOMPLETE_RULE = auto()


@dataclass(frozen=True, slots=True)
class ShippingQuote:
    price: Decimal
    rule_id: str | None
    reason: QuoteReason
    # Parcels the price covers; per-shipment quotes are always one.
    parcels: int = 1

    @property
    def is_free(self) -> bool:
        return self.price == 0


# ═══════════════════════════════════════════════════════════════════════════════
# Parcels
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class Parcel:
    weight_g: int


# ═══════════════════════════════════════════════════════════════════════════════
# Exports
# ═══════════════════════════════════════════════════════════════════════════════

__all__ = (
    "ALL_COUNTRIES",
    "RuleType",
    "ShippingType",
    "WeightRange",
    "ShippingRule",
    "InvalidShippingRule",
    "QuoteReason",
    "ShippingQuote",
    "Parcel",
)
