"""
lumina.engine.program — Program Settings & Tier Ladder Types
=============================================================

Plain, immutable value types the pure engine works on.  The service layer
maps database rows onto these so that nothing in ``lumina.engine`` ever
touches a session.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass

from lumina.constants import DEFAULT_DISCLOSURE

__all__ = [
    "DEFAULT_SETTINGS",
    "DEFAULT_TIERS",
    "ReferralSettings",
    "TierInfo",
]


@dataclass(frozen=True, slots=True)
class ReferralSettings:
    """Program-wide tuning.  Amounts are in reward tokens."""

    base_reward: float = 10.0
    decay_enabled: bool = True
    decay_start_day: int = 30
    decay_rate_per_day: float = 0.02
    min_reward: float = 2.0
    max_daily_referrals: int = 5
    max_monthly_referrals: int = 50
    max_lifetime_referrals: int = 500
    anti_sybil_enabled: bool = True
    min_account_age_days: int = 1
    min_activity_score: int = 10
    require_email_verification: bool = True
    require_wallet_connection: bool = False
    block_disposable_emails: bool = True
    same_ip_cooldown_hours: int = 24
    disclosure_text: str = DEFAULT_DISCLOSURE

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class TierInfo:
    """One rung of the tier ladder.

    ``max_daily_referrals`` / ``max_monthly_referrals`` of ``None`` or 0
    mean "use the program-wide cap".
    """

    tier_level: int
    name: str
    min_referrals: int
    bonus_multiplier: float = 1.0
    max_daily_referrals: int | None = None
    max_monthly_referrals: int | None = None
    badge_icon: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


DEFAULT_SETTINGS = ReferralSettings()

DEFAULT_TIERS: tuple[TierInfo, ...] = (
    TierInfo(1, "Starter", 0, 1.0, 5, 50, "star"),
    TierInfo(2, "Bronze", 10, 1.1, 7, 75, "award"),
    TierInfo(3, "Silver", 25, 1.25, 10, 100, "trophy"),
    TierInfo(4, "Gold", 50, 1.5, 15, 150, "crown"),
    TierInfo(5, "Diamond", 100, 2.0, 25, 250, "gem"),
)
