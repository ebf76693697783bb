"""
Promo code types — codes, validation outcomes, usage receipts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum, auto

from tally._types import ZERO

# ═══════════════════════════════════════════════════════════════════════════════
# Promo Code
# ═══════════════════════════════════════════════════════════════════════════════


class DiscountType(Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


@dataclass(frozen=True, slots=True)
class PromoCode:
    """
    A promotional code as configured by the merchant.

    discount_value is a percentage (10 → 10%) or an amount in euros,
    depending on discount_type. Empty allow-lists mean "no restriction".
    """

    id: str
    code: str
    discount_type: DiscountType
    discount_value: Decimal
    min_purchase: Decimal | None = None
    max_uses: int | None = None
    used_count: int = 0
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    active: bool = True
    allowed_user_ids: tuple[str, ...] = ()
    allowed_product_ids: tuple[str, ...] = ()
    allowed_categories: tuple[str, ...] = ()
    allowed_gammes: tuple[str, ...] = ()
    allowed_conditionnements: tuple[str, ...] = ()
    unlimited_per_user: bool = False
    description: str | None = None
    created_at: datetime | None = None

    @property
    def is_exhausted(self) -> bool:
        return self.max_uses is not None and self.used_count >= self.max_uses


@dataclass(frozen=True, slots=True)
class PromoCodeDraft:
    """Everything an admin provides when creating a code; id and counters are assigned."""

    code: str
    discount_type: DiscountType
    discount_value: Decimal
    min_purchase: Decimal | None = None
    max_uses: int | None = None
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    active: bool = True
    allowed_user_ids: tuple[str, ...] = ()
    allowed_product_ids: tuple[str, ...] = ()
    allowed_categories: tuple[str, ...] = ()
    allowed_gammes: tuple[str, ...] = ()
    allowed_conditionnements: tuple[str, ...] = ()
    unlimited_per_user: bool = False
    description: str | None = None


# ═══════════════════════════════════════════════════════════════════════════════
# Validation
# ═══════════════════════════════════════════════════════════════════════════════


class RejectionKind(Enum):
    """Why a code was refused, in the order the checks run."""

    NOT_FOUND = auto()
    INACTIVE = auto()
    NOT_YET_VALID = auto()
    EXPIRED = auto()
    EXHAUSTED = auto()
    LOGIN_REQUIRED = auto()
    ALREADY_USED = auto()
    MIN_PURCHASE = auto()
    USER_NOT_ALLOWED = auto()
    NO_ELIGIBLE_ITEMS = auto()


@dataclass(frozen=True, slots=True)
class PromoRejection:
    kind: RejectionKind
    message: str


@dataclass(frozen=True, slots=True)
class AppliedItem:
    """Share of the discount carried by one eligible cart line."""

    product_id: str
    variant_id: str | None
    line_total: Decimal
    discount: Decimal


@dataclass(frozen=True, slots=True)
class PromoValidation:
    """
    Outcome of validate().

    valid=True: discount > 0 is ready to subtract, applied_items sums to it.
    valid=False: rejection says why, discount is zero.
    """

    valid: bool
    discount: Decimal = ZERO
    promo_code: PromoCode | None = None
    rejection: PromoRejection | None = None
    applied_items: tuple[AppliedItem, ...] = field(default=())

    @classmethod
    def accepted(
        cls,
        promo_code: PromoCode,
        discount: Decimal,
        applied_items: tuple[AppliedItem, ...],
    ) -> PromoValidation:
        return cls(valid=True, discount=discount, promo_code=promo_code, applied_items=applied_items)

    @classmethod
    def rejected(
        cls,
        kind: RejectionKind,
        message: str,
        promo_code: PromoCode | None = None,
    ) -> PromoValidation:
        return cls(valid=False, promo_code=promo_code, rejection=PromoRejection(kind, message))


# ═══════════════════════════════════════════════════════════════════════════════
# Usage
# ═══════════════════════════════════════════════════════════════════════════════


class UsageStatus(Enum):
    """
    Outcome of record_usage().

    RECORDED          → row written, counter incremented
    ALREADY_RECORDED  → same (code, user, order) seen before; nothing changed
    ALREADY_USED      → single-use code already redeemed by this user
    EXHAUSTED         → max_uses reached
    UNKNOWN_CODE      → no such promo code
    """

    RECORDED = auto()
    ALREADY_RECORDED = auto()
    ALREADY_USED = auto()
    EXHAUSTED = auto()
    UNKNOWN_CODE = auto()


@dataclass(frozen=True, slots=True)
class UsageReceipt:
    status: UsageStatus
    promo_code_id: str
    user_id: str
    order_id: str | None

    @property
    def is_recorded(self) -> bool:
        """True when the redemption is on the books, first time or on retry."""
        return self.status in (UsageStatus.RECORDED, UsageStatus.ALREADY_RECORDED)


@dataclass(frozen=True, slots=True)
class PromoUsage:
    promo_code_id: str
    user_id: str
    order_id: str | None
    discount_amount: Decimal
    used_at: datetime


# ═══════════════════════════════════════════════════════════════════════════════
# Admin Outcomes
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class PromoAdminOutcome:
    success: bool
    promo_code: PromoCode | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class BulkImportReport:
    created: int
    failed: int
    errors: tuple[str, ...] = ()


# ═══════════════════════════════════════════════════════════════════════════════
# Exports
# ═══════════════════════════════════════════════════════════════════════════════

__all__ = (
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
)
