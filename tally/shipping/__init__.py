"""
Shipping — rule resolution, final shipping price, parcels.

    from tally import shipping as Sh

    calc = Sh.ShippingPriceCalculator(db, tier)
    quote = await calc.calculate_final_shipping_price(base, weight, order_value, Sh.ShippingType.HOME, "FR")

    # whole cart: split over the parcel limit, one rule price per parcel
    quote = await calc.calculate_shipment_price(base, weight, order_value, Sh.ShippingType.HOME, "FR")
    quote.parcels

Pure pieces are usable on their own:

    rule = Sh.resolve_rule(rules, Sh.ShippingType.RELAY, "BE")
    quote = Sh.apply_rule(rule, base, weight, order_value)
"""

from __future__ import annotations

from tally.shipping._types import (
    ALL_COUNTRIES,
    RuleType,
    ShippingType,
    WeightRange,
    ShippingRule,
    InvalidShippingRule,
    QuoteReason,
    ShippingQuote,
    Parcel,
)
from tally.shipping._pricing import resolve_rule, apply_rule, validate_rule
from tally.shipping._parcels import MAX_PARCEL_WEIGHT_G, build_parcels
from tally.shipping._calculator import ShippingPriceCalculator, ACTIVE_RULES_KEY

__all__ = (
    # Types
    "ALL_COUNTRIES",
    "RuleType",
    "ShippingType",
    "WeightRange",
    "ShippingRule",
    "InvalidShippingRule",
    "QuoteReason",
    "ShippingQuote",
    "Parcel",
    # Pricing
    "resolve_rule",
    "apply_rule",
    "validate_rule",
    # Parcels
    "MAX_PARCEL_WEIGHT_G",
    "build_parcels",
    # Calculator
    "ShippingPriceCalculator",
    "ACTIVE_RULES_KEY",
)
