"""Account tier detection from vendor rate-limit headers."""

import logging
from typing import Dict, List, Tuple

from ..models import TierInfo
from ..utils.rate_limiter import DEFAULT_LIMITS, FALLBACK_LIMIT

logger = logging.getLogger(__name__)

# (minimum rpm, tier, display name, confidence), highest first.
TIER_TABLES: Dict[str, List[Tuple[int, str, str, float]]] = {
    "openai": [
        (10000, "tier_5", "Tier 5 (Enterprise)", 0.95),
        (5000, "tier_4", "Tier 4", 0.9),
        (500, "tier_2", "Tier 2", 0.85),
        (50, "tier_1", "Tier 1", 0.8),
        (0, "free", "Free tier", 0.75),
    ],
    "anthropic": [
        (2000, "tier_4", "Scale (Tier 4)", 0.9),
        (1000, "tier_3", "Build (Tier 3)", 0.85),
        (50, "tier_1", "Build (Tier 1)", 0.8),
        (0, "free", "Free tier", 0.7),
    ],
    "google": [
        (1500, "enterprise", "Enterprise", 0.9),
        (1000, "premium", "Premium", 0.85),
        (360, "standard", "Standard (paid)", 0.8),
        (60, "tier_2", "Tier 2", 0.75),
        (30, "tier_1_plus", "Tier 1+", 0.75),
        (15, "tier_1", "Tier 1", 0.7),
        (0, "free", "Free tier", 0.7),
    ],
}

# (minimum rpm, easy, optimal, extreme) worker counts.
CONCURRENCY = [
    (3000, 10, 30, 50),
    (1000, 8, 20, 35),
    (360, 5, 12, 20),
    (60, 3, 6, 10),
    (30, 2, 4, 6),
    (15, 1, 2, 3),
    (0, 1, 1, 2),
]


def classify_tier(provider: str, rpm: int) -> TierInfo:
    """Map a reported requests-per-minute limit onto the vendor's tier names."""
    for minimum, tier, tier_name, confidence in TIER_TABLES.get(provider, []):
        if rpm >= minimum:
            return TierInfo(provider, tier, tier_name, rpm, confidence, detected=True)
    return TierInfo(provider, "unknown", "Unknown", rpm, 0.3, detected=True)


def default_tier(provider: str) -> TierInfo:
    rpm = DEFAULT_LIMITS.get(provider, FALLBACK_LIMIT)
    return TierInfo(provider, "estimated", "Estimated", rpm, 0.5)


def recommended_concurrency(rpm: int) -> Dict[str, int]:
    """Worker counts that stay well inside ``rpm``."""
    for minimum, easy, optimal, extreme in CONCURRENCY:
        if rpm >= minimum:
            return {"easy": easy, "optimal": optimal, "extreme": extreme}
    return {"easy": 1, "optimal": 1, "extreme": 1}


def detect_tier(provider) -> TierInfo:
    """Ask the vendor for the account's limit; fall back to the defaults."""
    rpm = provider.request_limit()
    if not rpm or rpm <= 0:
        logger.info(f"{provider.display_name} reported no rate limit, assuming defaults")
        return default_tier(provider.name)

    info = classify_tier(provider.name, rpm)
    logger.info(f"{provider.display_name} account is {info.tier_name} ({rpm} requests/minute)")
    return info
