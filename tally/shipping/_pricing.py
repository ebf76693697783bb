"""
Pricing — pure rule resolution, application and validation.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from decimal import Decimal

from tally._types import ZERO, money
from tally.shipping._types import (
    InvalidShippingRule,
    QuoteReason,
    RuleType,
    ShippingQuote,
    ShippingRule,
    ShippingType,
)

_EPOCH = datetime.min.replace(tzinfo=UTC)


# ═══════════════════════════════════════════════════════════════════════════════
# Resolution
# ═══════════════════════════════════════════════════════════════════════════════


def _newest(rules: Iterable[ShippingRule]) -> ShippingRule | None:
    return max(rules, key=lambda r: r.created_at or _EPOCH, default=None)


def resolve_rule(
    rules: Iterable[ShippingRule],
    shipping_type: ShippingType,
    country: str | None = None,
) -> ShippingRule | None:
    """
    Pick the rule that prices a shipment.

    Tiers, first non-empty wins, newest rule within a tier:
        1. same shipping type, exact country
        2. same shipping type, country ALL or unset
        3. legacy rule without shipping type
        4. the other shipping type

    Rules restricted to another country never apply.
    """
    wanted = country.upper() if country else None
    candidates = [
        rule for rule in rules
        if rule.active and (rule.applies_everywhere or (wanted is not None and rule.country == wanted))
    ]

    def exact(rule: ShippingRule) -> bool:
        return wanted is not None and rule.country == wanted

    tiers: list[Callable[[ShippingRule], bool]] = [
        lambda r: r.shipping_type is shipping_type and exact(r),
        lambda r: r.shipping_type is shipping_type and r.applies_everywhere,
        lambda r: r.shipping_type is None,
        lambda r: r.shipping_type is shipping_type.other and exact(r),
        lambda r: r.shipping_type is shipping_type.other,
    ]
    for tier in tiers:
        if found := _newest(r for r in candidates if tier(r)):
            return found
    return None


# ═══════════════════════════════════════════════════════════════════════════════
# Application
# ═══════════════════════════════════════════════════════════════════════════════


def _priced(rule: ShippingRule) -> Callable[[Decimal, Decimal], tuple[Decimal, QuoteReason]]:
    """Per-type price function: (base_price, weight) -> (price, reason)."""
    match rule.type:
        case RuleType.FIXED:
            fixed = rule.fixed_price
            if fixed is None:
                return lambda base, weight: (base, QuoteReason.INCOMPLETE_RULE)
            return lambda base, weight: (fixed, QuoteReason.RULE_APPLIED)
        case RuleType.MARGIN_PERCENT:
            percent = rule.margin_percent
            if percent is None:
                return lambda base, weight: (base, QuoteReason.INCOMPLETE_RULE)
            return lambda base, weight: (base * (1 + percent / 100), QuoteReason.RULE_APPLIED)
        case RuleType.MARGIN_FIXED:
            margin = rule.margin_fixed
            if margin is None:
                return lambda base, weight: (base, QuoteReason.INCOMPLETE_RULE)
            return lambda base, weight: (base + margin, QuoteReason.RULE_APPLIED)
        case RuleType.WEIGHT_RANGES:
            def by_range(base: Decimal, weight: Decimal) -> tuple[Decimal, QuoteReason]:
                # A weight on a shared edge belongs to the band starting there.
                for band in rule.weight_ranges:
                    if band.contains_below_max(weight):
                        return band.price, QuoteReason.RULE_APPLIED
                for band in rule.weight_ranges:
                    if band.contains(weight):
                        return band.price, QuoteReason.RULE_APPLIED
                return base, QuoteReason.NO_RANGE

            return by_range
        case RuleType.BOXTAL_ONLY:
            return lambda base, weight: (base, QuoteReason.CARRIER_QUOTE)


def apply_rule(
    rule: ShippingRule | None,
    base_price: Decimal,
    weight: Decimal,
    order_value: Decimal,
) -> ShippingQuote:
    """
    Final shipping price for one shipment.

    The free-shipping threshold wins over everything else. Below the
    minimum order value or outside the weight limits the rule does not
    apply and the carrier's base price stands. Thresholds of zero are
    treated as unset.
    """
    base = money(base_price)
    if rule is None:
        return ShippingQuote(base, None, QuoteReason.NO_RULE)

    threshold = rule.free_shipping_threshold
    if threshold is not None and threshold > 0 and order_value >= threshold:
        return ShippingQuote(ZERO, rule.id, QuoteReason.FREE_THRESHOLD)

    minimum = rule.min_order_value
    if minimum is not None and minimum > 0 and order_value < minimum:
        return ShippingQuote(base, rule.id, QuoteReason.BELOW_MIN_ORDER)

    if (rule.min_weight is not None and weight < rule.min_weight) or (
        rule.max_weight is not None and weight > rule.max_weight
    ):
        return ShippingQuote(base, rule.id, QuoteReason.OUT_OF_WEIGHT)

    price, reason = _priced(rule)(base, weight)
    return ShippingQuote(money(max(price, ZERO)), rule.id, reason)


# ═══════════════════════════════════════════════════════════════════════════════
# Validation — Save Time
# ═══════════════════════════════════════════════════════════════════════════════


def validate_rule(rule: ShippingRule) -> None:
    """
    Reject malformed rules before they are stored.

    Ranges may touch (one band's max equal to the next band's min) but not
    overlap, and only the last stored band may be open-ended.

    Raises:
        InvalidShippingRule
    """
    if not rule.name.strip():
        raise InvalidShippingRule("Rule name is required")

    required = {
        RuleType.FIXED: ("fixed_price", rule.fixed_price),
        RuleType.MARGIN_PERCENT: ("margin_percent", rule.margin_percent),
        RuleType.MARGIN_FIXED: ("margin_fixed", rule.margin_fixed),
    }
    if rule.type in required:
        field_name, value = required[rule.type]
        if value is None:
            raise InvalidShippingRule(f"{rule.type.value} rule needs {field_name}")
        if value < 0 and rule.type is not RuleType.MARGIN_FIXED:
            raise InvalidShippingRule(f"{field_name} must not be negative")

    if rule.min_weight is not None and rule.max_weight is not None and rule.min_weight > rule.max_weight:
        raise InvalidShippingRule("min_weight is greater than max_weight")

    if rule.type is RuleType.WEIGHT_RANGES:
        _validate_ranges(rule)


def _validate_ranges(rule: ShippingRule) -> None:
    bands = rule.weight_ranges
    if not bands:
        raise InvalidShippingRule("weight_ranges rule needs at least one range")

    for index, band in enumerate(bands):
        if band.min < 0 or band.price < 0:
            raise InvalidShippingRule(f"Range {index}: negative weight or price")
        if band.max is not None and band.min > band.max:
            raise InvalidShippingRule(f"Range {index}: min is greater than max")
        if band.max is None and index != len(bands) - 1:
            raise InvalidShippingRule(f"Range {index}: only the last range may be open-ended")

    ordered = sorted(bands, key=lambda b: b.min)
    for lower, upper in zip(ordered, ordered[1:]):
        if lower.max is None or upper.min < lower.max:
            raise InvalidShippingRule(
                f"Ranges overlap: {lower.min}-{lower.max} and {upper.min}-{upper.max}"
            )


# ═══════════════════════════════════════════════════════════════════════════════
# Exports
# ═══════════════════════════════════════════════════════════════════════════════

__all__ = ("resolve_rule", "apply_rule", "validate_rule")
