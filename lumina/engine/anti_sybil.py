"""
lumina.engine.anti_sybil — Referral Validation Scoring
=======================================================

Scores a prospective referral from 0 to 100 and maps the score to a
status.  Every check is a penalty subtracted from 100 except the hard
stops (self-referral, rate-limit windows), which reject outright.

The caller gathers the evidence (account age, same-IP history, referrer
stats) into a :class:`ReferralContext`; this module does no I/O.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from lumina.constants import (
    DISPOSABLE_EMAIL_DOMAINS,
    PENALTY_ACCOUNT_AGE,
    PENALTY_DISPOSABLE_EMAIL,
    PENALTY_EMAIL_UNVERIFIED,
    PENALTY_NO_WALLET,
    PENALTY_SAME_IP,
    VALID_SCORE,
    VERIFIED_SCORE,
    email_domain,
)
from lumina.database.models import ReferralStatus
from lumina.engine.program import ReferralSettings, TierInfo
from lumina.engine.reward import referral_caps

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ReferrerStats:
    """Aggregate view of one referrer's events."""

    total_referrals: int = 0
    daily_referrals: int = 0
    monthly_referrals: int = 0
    lifetime_referrals: int = 0
    verified_referrals: int = 0
    pending_referrals: int = 0
    rejected_referrals: int = 0
    total_earnings: float = 0.0
    pending_earnings: float = 0.0

    def to_dict(self) -> dict:
        return {
            "total_referrals": self.total_referrals,
            "daily_referrals": self.daily_referrals,
            "monthly_referrals": self.monthly_referrals,
            "lifetime_referrals": self.lifetime_referrals,
            "verified_referrals": self.verified_referrals,
            "pending_referrals": self.pending_referrals,
            "rejected_referrals": self.rejected_referrals,
            "total_earnings": self.total_earnings,
            "pending_earnings": self.pending_earnings,
        }


@dataclass(frozen=True, slots=True)
class ReferralContext:
    """Evidence about one prospective referral."""

    referrer_id: str
    referred_id: str
    referred_email: str | None
    account_age_days: int
    has_wallet: bool = False
    email_verified: bool = True
    recent_same_ip: bool = False
    stats: ReferrerStats = field(default_factory=ReferrerStats)


@dataclass(slots=True)
class ValidationResult:
    is_valid: bool
    score: int
    reasons: list[str] = field(default_factory=list)
    status: ReferralStatus = ReferralStatus.PENDING

    @classmethod
    def rejected(cls, reason: str) -> ValidationResult:
        return cls(is_valid=False, score=0, reasons=[reason], status=ReferralStatus.REJECTED)

    def to_dict(self) -> dict:
        return {
            "is_valid": self.is_valid,
            "score": self.score,
            "reasons": list(self.reasons),
            "status": self.status.value,
        }


def status_for_score(score: int) -> ReferralStatus:
    if score >= VERIFIED_SCORE:
        return ReferralStatus.VERIFIED
    if score < VALID_SCORE:
        return ReferralStatus.REJECTED
    return ReferralStatus.PENDING


def is_disposable_email(email: str | None) -> bool:
    domain = email_domain(email)
    return domain is not None and domain in DISPOSABLE_EMAIL_DOMAINS


# ---------------------------------------------------------------------------
# Rate-limit windows
# ---------------------------------------------------------------------------
def check_referral_windows(
    stats: ReferrerStats, tier: TierInfo, settings: ReferralSettings
) -> str | None:
    """Return the rejection reason when a cap is already reached."""
    caps = referral_caps(tier, settings)
    if stats.daily_referrals >= caps.daily:
        return "Daily referral limit reached"
    if stats.monthly_referrals >= caps.monthly:
        return "Monthly referral limit reached"
    if stats.lifetime_referrals >= caps.lifetime:
        return "Lifetime referral limit reached"
    return None


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------
def score_referral(
    ctx: ReferralContext,
    settings: ReferralSettings,
    tier: TierInfo,
) -> ValidationResult:
    """Score *ctx* against *settings* for a referrer on *tier*."""
    if not settings.anti_sybil_enabled:
        return ValidationResult(
            is_valid=True, score=100, reasons=[], status=ReferralStatus.VERIFIED
        )

    if ctx.referrer_id == ctx.referred_id:
        return ValidationResult.rejected("Self-referral not allowed")

    score = 100
    reasons: list[str] = []

    if settings.block_disposable_emails and is_disposable_email(ctx.referred_email):
        score -= PENALTY_DISPOSABLE_EMAIL
        reasons.append("Disposable email detected")

    if (
        settings.min_account_age_days > 0
        and ctx.account_age_days < settings.min_account_age_days
    ):
        score -= PENALTY_ACCOUNT_AGE
        reasons.append(
            f"Account age ({ctx.account_age_days} days) below minimum "
            f"({settings.min_account_age_days} days)"
        )

    if settings.require_wallet_connection and not ctx.has_wallet:
        score -= PENALTY_NO_WALLET
        reasons.append("Wallet not connected")

    if ctx.recent_same_ip and settings.same_ip_cooldown_hours > 0:
        score -= PENALTY_SAME_IP
        reasons.append("Recent referral from same IP address")

    if settings.require_email_verification and not ctx.email_verified:
        score -= PENALTY_EMAIL_UNVERIFIED
        reasons.append("Email not verified")

    window_reason = check_referral_windows(ctx.stats, tier, settings)
    if window_reason is not None:
        logger.info(
            "Referral %s → %s blocked: %s",
            ctx.referrer_id, ctx.referred_id, window_reason,
        )
        return ValidationResult.rejected(window_reason)

    return ValidationResult(
        is_valid=score >= VALID_SCORE,
        score=score,
        reasons=reasons,
        status=status_for_score(score),
    )
