from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal

import pytest

from tally import CartLine, Error, Ok, StoreError
from tally import cache as C
from tally.checkout import (
    CheckoutAggregator,
    Destination,
    ShippingComputed,
    ShippingFree,
    ShippingPending,
    can_submit,
    cart_weight,
    compute_totals,
    shipping_cost,
    shipping_from_quote,
    with_fallback,
)
from tally.db import open_database
from tally.promo import (
    DiscountType,
    GlobalPromotion,
    GlobalPromotionStore,
    PromoCodeDraft,
    PromoCodeEngine,
    PromoValidation,
    RejectionKind,
)
from tally.shipping import (
    QuoteReason,
    RuleType,
    ShippingPriceCalculator,
    ShippingQuote,
    ShippingRule,
    ShippingType,
    WeightRange,
)

D = Decimal
CART = [
    CartLine("p1", D("20.00"), 2, category="Bouillettes", unit_weight=D("1")),
    CartLine("p2", D("10.00"), 1, category="Dips", unit_weight=D("0.25")),
    CartLine("gift", D("0.00"), 1, is_free=True),
]
FR = Destination(postal_code="75001", country="FR")


def accepted(discount: str) -> PromoValidation:
    return PromoValidation(valid=True, discount=D(discount))


# ═══════════════════════════════════════════════════════════════════════════════
# compute_totals()
# ═══════════════════════════════════════════════════════════════════════════════


def test_totals_with_discount_and_shipping() -> None:
    totals = compute_totals(CART, accepted("5.00"), shipping_cost(D("8.00")))

    assert totals.subtotal == D("50.00")
    assert totals.discount == D("5.00")
    assert totals.shipping == ShippingComputed(D("8.00"))
    assert totals.total == D("53.00")
    assert totals.can_submit


def test_no_promo_plus_shipping() -> None:
    totals = compute_totals(CART, None, shipping_cost(D("8.00")))
    assert totals.total == D("58.00")


def test_free_shipping_is_submittable() -> None:
    totals = compute_totals(CART, None, shipping_cost(D("0")))
    assert totals.shipping == ShippingFree()
    assert totals.total == D("50.00")
    assert can_submit(totals)


def test_pending_shipping_blocks_submission() -> None:
    totals = compute_totals(CART, None, ShippingPending())
    assert totals.shipping_cost == 0
    assert totals.total == D("50.00")
    assert not can_submit(totals)


def test_discount_never_exceeds_subtotal() -> None:
    totals = compute_totals(CART, accepted("80.00"), shipping_cost(D("8.00")))
    assert totals.discount == D("50.00")
    assert totals.merchandise_total == 0
    assert totals.total == D("8.00")


def test_rejected_promo_gives_no_discount() -> None:
    rejected = PromoValidation.rejected(RejectionKind.MIN_PURCHASE, "too small")
    assert compute_totals(CART, rejected, ShippingFree()).discount == 0


def test_computed_shipping_must_be_positive() -> None:
    with pytest.raises(ValueError):
        ShippingComputed(D("0"))
    with pytest.raises(ValueError):
        ShippingComputed(D("-1"))


def test_only_threshold_quote_is_free_shipping() -> None:
    assert shipping_from_quote(ShippingQuote(D("0"), "r1", QuoteReason.FREE_THRESHOLD)) == ShippingFree()
    assert shipping_from_quote(ShippingQuote(D("6.90"), "r1", QuoteReason.RULE_APPLIED)) == ShippingComputed(D("6.90"))
    for reason in (QuoteReason.RULE_APPLIED, QuoteReason.NO_RULE, QuoteReason.CARRIER_QUOTE):
        assert isinstance(shipping_from_quote(ShippingQuote(D("0"), "r1", reason)), ShippingPending)


def test_cart_weight_skips_lines_without_weight() -> None:
    assert cart_weight(CART) == D("2.25")


def test_with_fallback() -> None:
    assert with_fallback(Ok(D("3")), D("0"), "unused") == D("3")
    assert with_fallback(Error(StoreError("down")), D("9.90"), "rules unavailable") == D("9.90")


# ═══════════════════════════════════════════════════════════════════════════════
# CheckoutAggregator
# ═══════════════════════════════════════════════════════════════════════════════


async def checkout_for(db) -> tuple[CheckoutAggregator, PromoCodeEngine, ShippingPriceCalculator]:
    promo = PromoCodeEngine(db, C.LocalTier())
    shipping = ShippingPriceCalculator(db, C.LocalTier())
    return CheckoutAggregator(promo, shipping), promo, shipping


def test_price_cart_with_promo_and_fixed_shipping(settings, run, ok) -> None:
    async def main() -> None:
        async with open_database(settings.database_url) as db:
            checkout, promo, shipping = await checkout_for(db)
            ok(await promo.add_promo_code(PromoCodeDraft(
                code="SUMMER10",
                discount_type=DiscountType.PERCENTAGE,
                discount_value=D("10"),
                min_purchase=D("30"),
            )))
            ok(await shipping.save_rule(ShippingRule(name="flat", type=RuleType.FIXED, fixed_price=D("8.00"))))

            totals = ok(await checkout.price_cart(
                CART,
                user_id="u1",
                promo_code="SUMMER10",
                destination=FR,
                base_shipping_price=D("9.90"),
            ))
            assert totals.subtotal == D("50.00")
            assert totals.discount == D("5.00")
            assert totals.shipping == ShippingComputed(D("8.00"))
            assert totals.total == D("53.00")

    run(main)


def test_price_cart_free_shipping_threshold(settings, run, ok) -> None:
    async def main() -> None:
        async with open_database(settings.database_url) as db:
            checkout, _, shipping = await checkout_for(db)
            ok(await shipping.save_rule(ShippingRule(
                name="flat",
                type=RuleType.FIXED,
                fixed_price=D("8.00"),
                free_shipping_threshold=D("40"),
            )))

            totals = ok(await checkout.price_cart(
                CART, user_id=None, promo_code=None, destination=FR, base_shipping_price=D("9.90"),
            ))
            assert totals.shipping == ShippingFree()
            assert totals.total == D("50.00")
            assert totals.can_submit

    run(main)


def test_price_cart_waits_for_destination(settings, run, ok) -> None:
    async def main() -> None:
        async with open_database(settings.database_url) as db:
            checkout, _, _ = await checkout_for(db)

            incomplete = ok(await checkout.price_cart(
                CART,
                user_id="u1",
                promo_code="",
                destination=Destination(postal_code="75001"),
                base_shipping_price=D("9.90"),
            ))
            assert isinstance(incomplete.shipping, ShippingPending)
            assert not incomplete.can_submit

            no_quote = ok(await checkout.price_cart(
                CART, user_id="u1", promo_code=None, destination=FR, base_shipping_price=None,
            ))
            assert not no_quote.can_submit

    run(main)


def test_price_cart_relay_uses_carrier_price_without_rule(settings, run, ok) -> None:
    async def main() -> None:
        async with open_database(settings.database_url) as db:
            checkout, _, _ = await checkout_for(db)
            relay = Destination(postal_code="1000", country="BE", shipping_type=ShippingType.RELAY)

            totals = ok(await checkout.price_cart(
                CART, user_id=None, promo_code=None, destination=relay, base_shipping_price=D("4.50"),
            ))
            assert totals.shipping == ShippingComputed(D("4.50"))
            assert totals.total == D("54.50")

    run(main)


def test_price_cart_shipping_failure_and_fallback(settings, run, ok) -> None:
    async def main() -> None:
        async with open_database(settings.database_url) as db:
            checkout, _, _ = await checkout_for(db)
            async with db.engine.begin() as conn:
                await conn.exec_driver_sql("DROP TABLE shipping_rules")

            match await checkout.price_cart(
                CART, user_id=None, promo_code=None, destination=FR, base_shipping_price=D("9.90"),
            ):
                case Error(e):
                    assert "shipping rules" in e.message
                case Ok(_):
                    pytest.fail("expected a store error")

            totals = ok(await checkout.price_cart(
                CART,
                user_id=None,
                promo_code=None,
                destination=FR,
                base_shipping_price=D("9.90"),
                shipping_fallback=D("9.90"),
            ))
            assert totals.shipping == ShippingComputed(D("9.90"))
            assert totals.total == D("59.90")

    run(main)


def test_price_cart_rejects_non_positive_fallback(settings, run) -> None:
    async def main() -> None:
        async with open_database(settings.database_url) as db:
            checkout, _, _ = await checkout_for(db)
            for fallback in (D("0"), D("-1")):
                with pytest.raises(ValueError):
                    await checkout.price_cart(
                        CART,
                        user_id=None,
                        promo_code=None,
                        destination=FR,
                        base_shipping_price=D("9.90"),
                        shipping_fallback=fallback,
                    )

    run(main)


def test_price_cart_zero_priced_rule_stays_pending(settings, run, ok) -> None:
    async def main() -> None:
        async with open_database(settings.database_url) as db:
            checkout, _, shipping = await checkout_for(db)
            ok(await shipping.save_rule(ShippingRule(name="zero", type=RuleType.FIXED, fixed_price=D("0"))))

            totals = ok(await checkout.price_cart(
                CART, user_id=None, promo_code=None, destination=FR, base_shipping_price=D("9.90"),
            ))
            assert isinstance(totals.shipping, ShippingPending)
            assert not totals.can_submit

    run(main)


def test_price_cart_heavy_cart_is_priced_per_parcel(settings, run, ok) -> None:
    async def main() -> None:
        async with open_database(settings.database_url) as db:
            checkout, _, shipping = await checkout_for(db)
            ok(await shipping.save_rule(ShippingRule(
                name="bands",
                type=RuleType.WEIGHT_RANGES,
                weight_ranges=(
                    WeightRange(D("0"), D("5"), D("6")),
                    WeightRange(D("5"), None, D("12")),
                ),
            )))
            heavy = [CartLine("bucket", D("15.00"), 2, unit_weight=D("15"))]

            totals = ok(await checkout.price_cart(
                heavy, user_id=None, promo_code=None, destination=FR, base_shipping_price=D("9.90"),
            ))
            assert totals.shipping == ShippingComputed(D("24.00"))
            assert totals.total == D("54.00")

    run(main)


# ═══════════════════════════════════════════════════════════════════════════════
# Global Promotion
# ═══════════════════════════════════════════════════════════════════════════════

NOW = datetime(2026, 6, 15, 12, tzinfo=UTC)


def test_price_cart_applies_live_global_promotion(settings, run, ok) -> None:
    async def main() -> None:
        async with open_database(settings.database_url) as db:
            promo = PromoCodeEngine(db, C.LocalTier())
            shipping = ShippingPriceCalculator(db, C.LocalTier())
            promotions = GlobalPromotionStore(db, C.LocalTier())
            checkout = CheckoutAggregator(promo, shipping, promotions)

            ok(await promotions.save_promotion(GlobalPromotion(
                D("10"),
                apply_to_all=False,
                allowed_categories=("bouillettes",),
                valid_from=date(2026, 6, 1),
                valid_until=date(2026, 6, 30),
            )))
            ok(await promo.add_promo_code(PromoCodeDraft(
                code="SUMMER10",
                discount_type=DiscountType.PERCENTAGE,
                discount_value=D("10"),
            )))
            ok(await shipping.save_rule(ShippingRule(
                name="flat",
                type=RuleType.FIXED,
                fixed_price=D("8.00"),
                free_shipping_threshold=D("48"),
            )))

            totals = ok(await checkout.price_cart(
                CART,
                user_id="u1",
                promo_code="SUMMER10",
                destination=FR,
                base_shipping_price=D("9.90"),
                now=NOW,
            ))
            # 2 x 18.00 + 10.00: under the 48.00 threshold once promoted.
            assert totals.subtotal == D("46.00")
            assert totals.promotion_savings == D("4.00")
            assert totals.discount == D("4.60")
            assert totals.shipping == ShippingComputed(D("8.00"))
            assert totals.total == D("49.40")

            after = ok(await checkout.price_cart(
                CART,
                user_id=None,
                promo_code=None,
                destination=FR,
                base_shipping_price=D("9.90"),
                now=datetime(2026, 7, 1, tzinfo=UTC),
            ))
            assert after.subtotal == D("50.00")
            assert after.promotion_savings == D("0.00")
            assert after.shipping == ShippingFree()

    run(main)
