"""
tally — order pricing and inventory reservation for a storefront.

    from tally import stock as S      # Stock levels and reservations
    from tally import promo as P      # Promo code validation and redemption
    from tally import shipping as Sh  # Shipping price rules
    from tally import checkout as K   # Totals and the shipping gate
    from tally import cache as C      # Explicit TTL caches
"""

from tally._types import (
    Result,
    Ok,
    Error,
    LazyCoroResult,
    CENT,
    ZERO,
    Amount,
    money,
    CartLine,
    StoreError,
)
from tally import cache
from tally import stock
from tally import promo
from tally import shipping
from tally import checkout
from tally.config import Settings, configure_logging
from tally.services import Services, open_services

__version__ = "0.1.0"

__all__ = (
    "cache",
    "stock",
    "promo",
    "shipping",
    "checkout",
    "Result",
    "Ok",
    "Error",
    "LazyCoroResult",
    "CENT",
    "ZERO",
    "Amount",
    "money",
    "CartLine",
    "StoreError",
    "Settings",
    "configure_logging",
    "Services",
    "open_services",
)
