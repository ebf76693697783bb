"""
Promo — promotional code validation, discounts and redemption.

    from tally import promo as P

    engine = P.PromoCodeEngine(db, tier)

    match await engine.validate("SUMMER10", user_id, lines, subtotal):
        case Ok(v) if v.valid:
            v.discount, v.applied_items
        case Ok(v):
            v.rejection.kind    # P.RejectionKind.EXPIRED, ...

    await engine.record_usage(v.promo_code.id, user_id, order_id, v.discount)

The site-wide promotion needs no code; it reprices lines before anything else:

    lines = P.apply_promotion(promotion, lines, now)
"""

from __future__ import annotations

from tally.promo._types import (
    DiscountType,
    PromoCode,
    PromoCodeDraft,
    RejectionKind,
    PromoRejection,
    AppliedItem,
    PromoValidation,
    UsageStatus,
    UsageReceipt,
    PromoUsage,
    PromoAdminOutcome,
    BulkImportReport,
)
from tally.promo._eligibility import (
    BOILIES_KEYWORDS,
    screen,
    is_boilies,
    line_matches,
    eligible_lines,
    discount_basis,
    compute_discount,
    allocate,
    evaluate_cart,
)
from tally.promo._engine import PromoCodeEngine
from tally.promo._global import (
    GlobalPromotion,
    InvalidGlobalPromotion,
    validate_promotion,
    is_live,
    current_promotion,
    is_eligible,
    discounted_price,
    apply_promotion,
)
from tally.promo._global_store import ACTIVE_PROMOTION_KEY, GlobalPromotionStore

__all__ = (
    # Types
    "DiscountType",
    "PromoCode",
    "PromoCodeDraft",
    "RejectionKind",
    "PromoRejection",
    "AppliedItem",
    "PromoValidation",
    "UsageStatus",
    "UsageReceipt",
    "PromoUsage",
    "PromoAdminOutcome",
    "BulkImportReport",
    # Eligibility
    "BOILIES_KEYWORDS",
    "screen",
    "is_boilies",
    "line_matches",
    "eligible_lines",
    "discount_basis",
    "compute_discount",
    "allocate",
    "evaluate_cart",
    # Engine
    "PromoCodeEngine",
    # Global promotion
    "GlobalPromotion",
    "InvalidGlobalPromotion",
    "validate_promotion",
    "is_live",
    "current_promotion",
    "is_eligible",
    "discounted_price",
    "apply_promotion",
    "GlobalPromotionStore",
    "ACTIVE_PROMOTION_KEY",
)
