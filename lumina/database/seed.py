"""
lumina.database.seed — Program Defaults Seeder
===============================================

Inserts the default program settings row and the default tier ladder on
first startup so the referral endpoints work out of the box.

Idempotent — settings are only inserted when no row exists, tiers only
for levels that are missing.  Admin edits are never overwritten.
"""

from __future__ import annotations

import logging

from sqlalchemy import Engine, select

from lumina.database.engine import get_session
from lumina.database.models import ReferralProgramSettings, ReferralTier
from lumina.engine.program import DEFAULT_SETTINGS, DEFAULT_TIERS

logger = logging.getLogger(__name__)


def seed_program_defaults(engine: Engine) -> None:
    """Insert default settings and tiers that don't yet exist."""
    inserted = 0
    with get_session(engine) as session:
        has_settings = session.scalar(select(ReferralProgramSettings.id).limit(1))
        if has_settings is None:
            s = DEFAULT_SETTINGS
            session.add(ReferralProgramSettings(
                base_reward=s.base_reward,
                decay_enabled=s.decay_enabled,
                decay_start_day=s.decay_start_day,
                decay_rate_per_day=s.decay_rate_per_day,
                min_reward=s.min_reward,
                max_daily_referrals_global=s.max_daily_referrals,
                max_monthly_referrals_global=s.max_monthly_referrals,
                max_lifetime_referrals=s.max_lifetime_referrals,
                anti_sybil_enabled=s.anti_sybil_enabled,
                min_account_age_days=s.min_account_age_days,
                min_activity_score=s.min_activity_score,
                require_email_verification=s.require_email_verification,
                require_wallet_connection=s.require_wallet_connection,
                block_disposable_emails=s.block_disposable_emails,
                same_ip_cooldown_hours=s.same_ip_cooldown_hours,
                disclosure_text=s.disclosure_text,
            ))
            inserted += 1

        existing_levels = set(session.scalars(select(ReferralTier.tier_level)).all())
        for tier in DEFAULT_TIERS:
            if tier.tier_level in existing_levels:
                continue
            session.add(ReferralTier(
                tier_level=tier.tier_level,
                name=tier.name,
                min_referrals=tier.min_referrals,
                bonus_multiplier=tier.bonus_multiplier,
                max_daily_referrals=tier.max_daily_referrals,
                max_monthly_referrals=tier.max_monthly_referrals,
                badge_icon=tier.badge_icon,
            ))
            inserted += 1

    if inserted:
        logger.info("Seeded %d referral program defaults.", inserted)
