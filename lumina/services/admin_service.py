"""
lumina.services.admin_service — Admin Mutation Service Layer
=============================================================

Every admin write follows the pattern:
  1. Begin transaction
  2. Read "before" snapshot
  3. Apply change
  4. Write admin_log with before/after JSONB
  5. Commit
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from lumina.database.models import (
    AdminActionType,
    AdminLog,
    ReferralEvent,
    ReferralProgramSettings,
    ReferralStatus,
    ReferralTier,
)
from lumina.errors import InvalidProgramSettings, ReferralStateError, TierConflict
from lumina.services import referral_service

logger = logging.getLogger(__name__)

# Columns admins may edit through the settings endpoint
SETTINGS_FIELDS: frozenset[str] = frozenset({
    "base_reward",
    "decay_enabled",
    "decay_start_day",
    "decay_rate_per_day",
    "min_reward",
    "max_daily_referrals_global",
    "max_monthly_referrals_global",
    "max_lifetime_referrals",
    "anti_sybil_enabled",
    "min_account_age_days",
    "min_activity_score",
    "require_email_verification",
    "require_wallet_connection",
    "block_disposable_emails",
    "same_ip_cooldown_hours",
    "disclosure_text",
})

TIER_FIELDS: frozenset[str] = frozenset({
    "name",
    "min_referrals",
    "bonus_multiplier",
    "max_daily_referrals",
    "max_monthly_referrals",
    "special_perks",
    "badge_icon",
    "is_active",
})


# ---------------------------------------------------------------------------
# Generic audit helpers
# ---------------------------------------------------------------------------

def _row_to_dict(obj: Any) -> dict | None:
    """Convert a SQLAlchemy model instance to a JSON-serializable dict."""
    if obj is None:
        return None
    result = {}
    for col in obj.__table__.columns:
        val = getattr(obj, col.key, None)
        if isinstance(val, datetime):
            val = val.isoformat()
        result[col.name] = val
    return result


def _log_admin_action(
    session: Session,
    *,
    actor_id: str,
    action_type: AdminActionType,
    target_table: str,
    target_id: str | None,
    before: dict | None,
    after: dict | None,
    ip_address: str | None = None,
    reason: str | None = None,
) -> None:
    """Insert a row into admin_log within the current transaction."""
    session.add(AdminLog(
        actor_id=str(actor_id),
        action_type=action_type.value,
        target_table=target_table,
        target_id=target_id,
        before_snapshot=before,
        after_snapshot=after,
        ip_address=ip_address,
        reason=reason,
    ))


# ---------------------------------------------------------------------------
# Program settings
# ---------------------------------------------------------------------------

def update_program_settings(
    engine,
    *,
    changes: dict[str, Any],
    actor_id: str,
    ip_address: str | None = None,
) -> ReferralProgramSettings:
    """Apply *changes* to the active settings row, creating it if missing.

    Unknown keys are ignored.  Raises :class:`InvalidProgramSettings` when
    the result would set ``min_reward`` above ``base_reward``; nothing is
    written in that case.
    """
    with Session(engine, expire_on_commit=False) as session:
        row = referral_service.get_settings_row(session)
        action = AdminActionType.UPDATE
        if row is None:
            row = ReferralProgramSettings()
            session.add(row)
            session.flush()
            action = AdminActionType.CREATE
        before = _row_to_dict(row) if action == AdminActionType.UPDATE else None

        for key, value in changes.items():
            if key in SETTINGS_FIELDS:
                setattr(row, key, value)
        effective = referral_service.settings_from_row(row)
        if effective.min_reward > effective.base_reward:
            raise InvalidProgramSettings(
                f"min_reward ({effective.min_reward:g}) cannot exceed "
                f"base_reward ({effective.base_reward:g})"
            )
        row.updated_by = str(actor_id)
        session.flush()

        _log_admin_action(
            session,
            actor_id=actor_id,
            action_type=action,
            target_table="referral_program_settings",
            target_id=str(row.id),
            before=before,
            after=_row_to_dict(row),
            ip_address=ip_address,
        )
        session.commit()
        session.refresh(row)
        session.expunge(row)

    logger.info("Referral settings updated by %s: %s", actor_id, sorted(changes))
    return row


# ---------------------------------------------------------------------------
# Tier ladder
# ---------------------------------------------------------------------------

def create_tier(
    engine,
    *,
    tier_level: int,
    name: str,
    min_referrals: int,
    bonus_multiplier: float = 1.0,
    max_daily_referrals: int | None = None,
    max_monthly_referrals: int | None = None,
    special_perks: dict | None = None,
    badge_icon: str | None = None,
    actor_id: str,
) -> ReferralTier:
    """Add a rung to the ladder.  Raises :class:`TierConflict` on a taken level."""
    with Session(engine, expire_on_commit=False) as session:
        taken = session.scalar(
            select(ReferralTier.id).where(ReferralTier.tier_level == tier_level)
        )
        if taken is not None:
            raise TierConflict(f"Tier level {tier_level} already exists")

        tier = ReferralTier(
            tier_level=tier_level,
            name=name,
            min_referrals=min_referrals,
            bonus_multiplier=bonus_multiplier,
            max_daily_referrals=max_daily_referrals,
            max_monthly_referrals=max_monthly_referrals,
            special_perks=special_perks,
            badge_icon=badge_icon,
        )
        session.add(tier)
        session.flush()
        _log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.CREATE,
            target_table="referral_tiers",
            target_id=str(tier.tier_level),
            before=None,
            after=_row_to_dict(tier),
        )
        session.commit()
        session.refresh(tier)
        session.expunge(tier)
        return tier


def _ensure_not_last_active(session: Session) -> None:
    active = session.scalar(
        select(func.count()).select_from(ReferralTier)
        .where(ReferralTier.is_active.is_(True))
    ) or 0
    if active <= 1:
        raise TierConflict("Cannot deactivate the last active tier")


def update_tier(
    engine,
    *,
    tier_level: int,
    actor_id: str,
    **changes: Any,
) -> ReferralTier | None:
    """Patch a tier.  Returns ``None`` if the level doesn't exist.

    Setting ``is_active`` to false is held to the same rule as
    :func:`deactivate_tier`.
    """
    with Session(engine, expire_on_commit=False) as session:
        tier = session.scalar(
            select(ReferralTier).where(ReferralTier.tier_level == tier_level)
        )
        if tier is None:
            return None
        if changes.get("is_active") is False and tier.is_active:
            _ensure_not_last_active(session)
        before = _row_to_dict(tier)
        for key, value in changes.items():
            if key in TIER_FIELDS:
                setattr(tier, key, value)
        session.flush()
        _log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.UPDATE,
            target_table="referral_tiers",
            target_id=str(tier_level),
            before=before,
            after=_row_to_dict(tier),
        )
        session.commit()
        session.refresh(tier)
        session.expunge(tier)
        return tier


def deactivate_tier(engine, *, tier_level: int, actor_id: str) -> bool:
    """Soft-delete a tier.  The last active tier cannot be removed."""
    with Session(engine) as session:
        tier = session.scalar(
            select(ReferralTier).where(ReferralTier.tier_level == tier_level)
        )
        if tier is None or not tier.is_active:
            return False
        _ensure_not_last_active(session)

        before = _row_to_dict(tier)
        tier.is_active = False
        session.flush()
        _log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.DELETE,
            target_table="referral_tiers",
            target_id=str(tier_level),
            before=before,
            after=_row_to_dict(tier),
        )
        session.commit()
        return True


# ---------------------------------------------------------------------------
# Referral review
# ---------------------------------------------------------------------------

def _set_status(
    engine,
    *,
    event_id: str,
    status: ReferralStatus,
    action_type: AdminActionType,
    actor_id: str,
    reason: str | None,
) -> dict | None:
    now = datetime.now(UTC)
    with Session(engine, expire_on_commit=False) as session:
        event = session.get(ReferralEvent, event_id)
        if event is None:
            return None
        if event.is_paid:
            raise ReferralStateError("Paid referrals cannot change status")

        before = _row_to_dict(event)
        note = f"{action_type.value.lower()} by admin {actor_id}"
        if reason:
            note = f"{note}: {reason}"
        referral_service.set_referral_status(event, status, now=now, note=note)
        session.flush()
        _log_admin_action(
            session,
            actor_id=actor_id,
            action_type=action_type,
            target_table="referral_events",
            target_id=event_id,
            before=before,
            after=_row_to_dict(event),
            reason=reason,
        )
        referral_service.refresh_reward_summary(session, event.referrer_id, now=now)
        session.commit()
        return referral_service.event_to_dict(event)


def verify_referral(
    engine, *, event_id: str, actor_id: str, reason: str | None = None
) -> dict | None:
    return _set_status(
        engine,
        event_id=event_id,
        status=ReferralStatus.VERIFIED,
        action_type=AdminActionType.VERIFY,
        actor_id=actor_id,
        reason=reason,
    )


def reject_referral(
    engine, *, event_id: str, actor_id: str, reason: str | None = None
) -> dict | None:
    return _set_status(
        engine,
        event_id=event_id,
        status=ReferralStatus.REJECTED,
        action_type=AdminActionType.REJECT,
        actor_id=actor_id,
        reason=reason,
    )


# ---------------------------------------------------------------------------
# Batch jobs (admin-triggered)
# ---------------------------------------------------------------------------
# One admin_log row per affected event, committed together with the change.

def _log_transitions(
    session: Session,
    *,
    actor_id: str,
    action_type: AdminActionType,
    before: dict[str, dict | None],
    events: list[ReferralEvent],
    reason: str | None = None,
) -> None:
    session.flush()
    for event in events:
        _log_admin_action(
            session,
            actor_id=actor_id,
            action_type=action_type,
            target_table="referral_events",
            target_id=event.id,
            before=before[event.id],
            after=_row_to_dict(event),
            reason=reason,
        )


def _snapshots(events: list[ReferralEvent]) -> dict[str, dict | None]:
    return {e.id: _row_to_dict(e) for e in events}


def pay_referrals(
    engine, *, event_ids: list[str], actor_id: str, reason: str | None = None
) -> list[str]:
    """Pay out verified referrals.  Returns the ids actually paid."""
    now = datetime.now(UTC)
    with Session(engine) as session:
        before = _snapshots(referral_service.payable_referrals(session, event_ids))
        paid = referral_service.mark_referrals_paid(session, event_ids, now=now)
        _log_transitions(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.PAYOUT,
            before=before,
            events=paid,
            reason=reason,
        )
        paid_ids = [e.id for e in paid]
        session.commit()
    return paid_ids


def run_review(engine, *, actor_id: str) -> list[dict]:
    now = datetime.now(UTC)
    with Session(engine) as session:
        settings = referral_service.get_referral_settings(session)
        before = _snapshots(referral_service.matured_referrals(session, settings, now))
        promoted = referral_service.review_pending_referrals(session, settings, now)
        _log_transitions(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.REVIEW,
            before=before,
            events=promoted,
        )
        result = [referral_service.event_to_dict(e) for e in promoted]
        session.commit()
    return result


def run_expiry(engine, *, max_age_days: int, actor_id: str) -> int:
    now = datetime.now(UTC)
    with Session(engine) as session:
        before = _snapshots(referral_service.stale_referrals(session, max_age_days, now))
        expired = referral_service.expire_pending_referrals(session, max_age_days, now)
        _log_transitions(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.EXPIRE,
            before=before,
            events=expired,
            reason=f"pending for more than {max_age_days} days",
        )
        session.commit()
    return len(expired)


# ---------------------------------------------------------------------------
# Audit log reads
# ---------------------------------------------------------------------------

def get_audit_log(session: Session, *, page: int = 1, page_size: int = 25) -> dict:
    total = session.scalar(select(func.count()).select_from(AdminLog)) or 0
    offset = (page - 1) * page_size
    rows = session.scalars(
        select(AdminLog)
        .order_by(AdminLog.timestamp.desc(), AdminLog.id.desc())
        .offset(offset)
        .limit(page_size)
    ).all()
    return {
        "total": total,
        "page": page,
        "page_size": page_size,
        "entries": [
            {
                "id": r.id,
                "actor_id": r.actor_id,
                "action_type": r.action_type,
                "target_table": r.target_table,
                "target_id": r.target_id,
                "before_snapshot": r.before_snapshot,
                "after_snapshot": r.after_snapshot,
                "reason": r.reason,
                "timestamp": r.timestamp.isoformat() if r.timestamp else None,
            }
            for r in rows
        ],
    }
