"""
Reward sources (rewarded ads, store purchases) and the generation charge.

Each one calls into the ledger with a fixed, source-specific amount.
"""

import re
import logging
from typing import Optional

from .errors import PreconditionViolation
from .ledger import GemstoneLedger
from .schemas import Source

logger = logging.getLogger(__name__)

# Store packages
STARTER_PACK_GEMSTONES = 25
CREATOR_PACK_GEMSTONES = 75
PRO_PACK_GEMSTONES = 200

PACKAGE_GEMSTONES = {
    "starter": STARTER_PACK_GEMSTONES,
    "creator": CREATOR_PACK_GEMSTONES,
    "pro": PRO_PACK_GEMSTONES,
}

# (max price, gemstones), checked in order
PRICE_TIERS = (
    (0.99, 10),
    (4.99, 50),
    (9.99, 100),
    (19.99, 250),
    (49.99, 500),
)

_IDENTIFIER_PATTERN = re.compile(r"gems?_?(\d+)")
_TITLE_PATTERN = re.compile(r"(\d+)\s*gems?")


def gemstones_for_package(identifier: str, title: str = "", price: Optional[float] = None) -> int:
    """
    Works out how many gemstones a store package grants.

    Tries, in order: a count in the identifier ("gems_50"), a count in the
    title ("50 Gems"), a known package name ("pro_pack"), then the price tier.
    Returns 0 when nothing matches.
    """
    identifier = (identifier or "").lower()
    match = _IDENTIFIER_PATTERN.search(identifier)
    if match:
        return int(match.group(1))

    match = _TITLE_PATTERN.search((title or "").lower())
    if match:
        return int(match.group(1))

    for name, amount in PACKAGE_GEMSTONES.items():
        if re.search(rf"(^|[^a-z]){name}([^a-z]|$)", identifier):
            return amount

    if price is not None:
        for max_price, amount in PRICE_TIERS:
            if price <= max_price:
                return amount

    return 0


async def reward_ad_watch(ledger: GemstoneLedger) -> int:
    """Credits the fixed ad reward once a rewarded ad has been watched to the end."""
    amount = ledger.settings.ad_reward_amount
    new_balance = await ledger.earn(amount, Source.AD_REWARD)
    logger.info(f"Awarded {amount} gemstones for watching an ad.")
    return new_balance


async def complete_purchase(
    ledger: GemstoneLedger,
    identifier: str,
    title: str = "",
    price: Optional[float] = None,
) -> tuple[int, int]:
    """
    Credits a completed store purchase.
    Returns (gemstones_received, new_balance).
    """
    amount = gemstones_for_package(identifier, title=title, price=price)
    if amount <= 0:
        logger.error(f"Could not determine gemstones for package '{identifier}'.")
        raise PreconditionViolation(f"Package '{identifier}' does not map to any gemstone amount")
    new_balance = await ledger.earn(amount, Source.PURCHASE)
    return amount, new_balance


async def charge_for_generation(ledger: GemstoneLedger, cost: Optional[int] = None) -> int:
    """
    Debits the cost of one AI generation. Must succeed before the generation starts;
    InsufficientBalance is left for the caller to route the user to the store.
    """
    if cost is None:
        cost = ledger.settings.generation_cost
    return await ledger.spend(cost, Source.GENERATION_SPEND)
