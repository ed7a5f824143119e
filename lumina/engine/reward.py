"""
lumina.engine.reward — Referral Reward Calculation
===================================================

Pure calculation pipeline.  No DB I/O inside the engine.

Pipeline stages:
  verified count → Tier lookup
  program start  → Decay multiplier
  base × decay × tier bonus → RewardBreakdown
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime

from lumina.constants import MIN_DECAY_MULTIPLIER, round_amount
from lumina.engine.program import ReferralSettings, TierInfo

logger = logging.getLogger(__name__)

__all__ = [
    "ReferralCaps",
    "RewardBreakdown",
    "calculate_decay_multiplier",
    "calculate_referral_reward",
    "get_user_tier",
    "referral_caps",
]


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class RewardBreakdown:
    """Final reward with the pieces it was built from (all rounded)."""

    total: float
    base: float
    decay: float
    tier_bonus: float

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "breakdown": {
                "base": self.base,
                "decay": self.decay,
                "tier_bonus": self.tier_bonus,
            },
        }


@dataclass(frozen=True, slots=True)
class ReferralCaps:
    daily: int
    monthly: int
    lifetime: int

    def to_dict(self) -> dict:
        return {"daily": self.daily, "monthly": self.monthly, "lifetime": self.lifetime}


# ---------------------------------------------------------------------------
# Stage 1: Tier lookup
# ---------------------------------------------------------------------------
def get_user_tier(verified_referrals: int, tiers: Sequence[TierInfo]) -> TierInfo:
    """Return the highest tier whose threshold *verified_referrals* meets.

    *tiers* must be non-empty and ordered by ``tier_level``.  When no tier
    qualifies the first one is returned.
    """
    if not tiers:
        raise ValueError("Tier ladder is empty")
    user_tier = tiers[0]
    for tier in tiers:
        if verified_referrals >= tier.min_referrals:
            user_tier = tier
    return user_tier


def referral_caps(tier: TierInfo, settings: ReferralSettings) -> ReferralCaps:
    """Effective caps for a referrer on *tier*."""
    return ReferralCaps(
        daily=tier.max_daily_referrals or settings.max_daily_referrals,
        monthly=tier.max_monthly_referrals or settings.max_monthly_referrals,
        lifetime=settings.max_lifetime_referrals,
    )


# ---------------------------------------------------------------------------
# Stage 2: Time decay
# ---------------------------------------------------------------------------
def calculate_decay_multiplier(
    program_start: datetime,
    settings: ReferralSettings,
    now: datetime | None = None,
) -> float:
    """Multiplier in [0.2, 1.0] applied to the base reward.

    Rewards stay at full value for ``decay_start_day`` whole days after
    *program_start*, then lose ``decay_rate_per_day`` per day, never
    dropping below ``min_reward / base_reward`` nor below 0.2.
    """
    if not settings.decay_enabled:
        return 1.0

    now = now or datetime.now(UTC)
    days_since_start = (now - program_start).days
    if days_since_start < settings.decay_start_day:
        return 1.0

    decay_days = days_since_start - settings.decay_start_day
    floor = (
        settings.min_reward / settings.base_reward
        if settings.base_reward > 0
        else MIN_DECAY_MULTIPLIER
    )
    multiplier = max(floor, 1 - decay_days * settings.decay_rate_per_day)
    return min(1.0, max(MIN_DECAY_MULTIPLIER, multiplier))


# ---------------------------------------------------------------------------
# Stage 3: Reward
# ---------------------------------------------------------------------------
def calculate_referral_reward(
    base_reward: float,
    decay_multiplier: float,
    tier_bonus_multiplier: float,
) -> RewardBreakdown:
    """Apply decay, then the tier bonus on top of the decayed amount."""
    decayed = base_reward * decay_multiplier
    tier_bonus = decayed * (tier_bonus_multiplier - 1)
    total = decayed + tier_bonus

    return RewardBreakdown(
        total=round_amount(total),
        base=base_reward,
        decay=round_amount(decayed),
        tier_bonus=round_amount(tier_bonus),
    )
