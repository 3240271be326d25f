"""
shared/utils/loyalty.py
Traveler loyalty points and tiers.
"""

from typing import Optional, Tuple

from shared.models.models import LoyaltyTier, TravelerProfile

# Lower bound of each tier, ascending
TIER_THRESHOLDS: Tuple[Tuple[LoyaltyTier, int], ...] = (
    (LoyaltyTier.BRONZE, 0),
    (LoyaltyTier.SILVER, 1000),
    (LoyaltyTier.GOLD, 5000),
    (LoyaltyTier.PLATINUM, 15000),
)


def tier_for(points: int) -> LoyaltyTier:
    tier = LoyaltyTier.BRONZE
    for candidate, floor in TIER_THRESHOLDS:
        if points >= floor:
            tier = candidate
    return tier


def next_tier(points: int) -> Tuple[Optional[LoyaltyTier], Optional[int]]:
    """(next tier, points still needed), or (None, None) at the top tier."""
    for candidate, floor in TIER_THRESHOLDS:
        if points < floor:
            return candidate, floor - points
    return None, None


def award_points(profile: TravelerProfile, points: int) -> TravelerProfile:
    profile.loyalty_points = (profile.loyalty_points or 0) + points
    profile.loyalty_tier = tier_for(profile.loyalty_points)
    return profile
