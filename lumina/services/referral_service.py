"""
lumina.services.referral_service — Referral Persistence & Lifecycle
====================================================================

Shared service module behind the referral routes and the admin API.

Reads (settings, tiers, stats, leaderboard) take an open ``Session``.
Apply and code issuance take the ``Engine`` and own their transaction,
the way a single request would.  The batch transitions (review, expire,
payout) work in the caller's session so the admin layer can audit them
in the same commit.

A referral's life:
  apply → score → pending | verified          (rejected → never stored)
  pending → verified  (review, once the referred account matures)
  pending → expired   (expiry job)
  verified → paid     (payout)
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy import Engine, case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from lumina.constants import (
    MAX_LEADERBOARD_LIMIT,
    REFERRAL_CODE_ALPHABET,
    as_utc,
)
from lumina.database.models import (
    ReferralEvent,
    ReferralProgramSettings,
    ReferralReward,
    ReferralStatus,
    ReferralTier,
    User,
)
from lumina.engine.anti_sybil import (
    ReferralContext,
    ReferrerStats,
    ValidationResult,
    is_disposable_email,
    score_referral,
)
from lumina.engine.program import DEFAULT_SETTINGS, DEFAULT_TIERS, ReferralSettings, TierInfo
from lumina.engine.reward import (
    RewardBreakdown,
    calculate_decay_multiplier,
    calculate_referral_reward,
    get_user_tier,
)
from lumina.errors import (
    AlreadyReferred,
    InvalidReferralCode,
    ReferralRejected,
    UnknownUser,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ReferralOutcome:
    """Everything the apply endpoint reports back."""

    event: dict
    reward: RewardBreakdown
    validation: ValidationResult
    tier: TierInfo


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------
def _iso(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def event_to_dict(e: ReferralEvent) -> dict:
    return {
        "id": e.id,
        "referrer_id": e.referrer_id,
        "referred_id": e.referred_id,
        "referral_code": e.referral_code,
        "bonus_amount": e.bonus_amount,
        "base_reward": e.base_reward,
        "decay_multiplier": e.decay_multiplier,
        "tier_bonus": e.tier_bonus,
        "tier_level": e.tier_level,
        "is_paid": bool(e.is_paid),
        "paid_at": _iso(e.paid_at),
        "status": e.status,
        "verified_at": _iso(e.verified_at),
        "validation_score": e.validation_score,
        "validation_notes": e.validation_notes,
        "created_at": _iso(e.created_at),
    }


def _pick(value, default):
    return default if value is None else value


# ---------------------------------------------------------------------------
# Settings & tiers
# ---------------------------------------------------------------------------
def settings_from_row(row: ReferralProgramSettings) -> ReferralSettings:
    """Map a settings row onto :class:`ReferralSettings`, column by column.

    NULL columns fall back to the program default.
    """
    d = DEFAULT_SETTINGS
    return ReferralSettings(
        base_reward=float(_pick(row.base_reward, d.base_reward)),
        decay_enabled=_pick(row.decay_enabled, d.decay_enabled),
        decay_start_day=_pick(row.decay_start_day, d.decay_start_day),
        decay_rate_per_day=float(_pick(row.decay_rate_per_day, d.decay_rate_per_day)),
        min_reward=float(_pick(row.min_reward, d.min_reward)),
        max_daily_referrals=_pick(row.max_daily_referrals_global, d.max_daily_referrals),
        max_monthly_referrals=_pick(
            row.max_monthly_referrals_global, d.max_monthly_referrals
        ),
        max_lifetime_referrals=_pick(row.max_lifetime_referrals, d.max_lifetime_referrals),
        anti_sybil_enabled=_pick(row.anti_sybil_enabled, d.anti_sybil_enabled),
        min_account_age_days=_pick(row.min_account_age_days, d.min_account_age_days),
        min_activity_score=_pick(row.min_activity_score, d.min_activity_score),
        require_email_verification=_pick(
            row.require_email_verification, d.require_email_verification
        ),
        require_wallet_connection=_pick(
            row.require_wallet_connection, d.require_wallet_connection
        ),
        block_disposable_emails=_pick(row.block_disposable_emails, d.block_disposable_emails),
        same_ip_cooldown_hours=_pick(row.same_ip_cooldown_hours, d.same_ip_cooldown_hours),
        disclosure_text=row.disclosure_text or d.disclosure_text,
    )


def get_settings_row(session: Session) -> ReferralProgramSettings | None:
    return session.scalar(
        select(ReferralProgramSettings)
        .where(ReferralProgramSettings.is_active.is_(True))
        .order_by(ReferralProgramSettings.id)
        .limit(1)
    )


def get_referral_settings(session: Session) -> ReferralSettings:
    """Active program settings, or the defaults when none are stored."""
    row = get_settings_row(session)
    if row is None:
        return DEFAULT_SETTINGS
    return settings_from_row(row)


def tier_from_row(row: ReferralTier) -> TierInfo:
    return TierInfo(
        tier_level=row.tier_level,
        name=row.name,
        min_referrals=row.min_referrals,
        bonus_multiplier=float(row.bonus_multiplier or 1.0),
        max_daily_referrals=row.max_daily_referrals,
        max_monthly_referrals=row.max_monthly_referrals,
        badge_icon=row.badge_icon,
    )


def get_referral_tiers(session: Session) -> list[TierInfo]:
    """Active tiers ordered by level, or the default ladder."""
    rows = session.scalars(
        select(ReferralTier)
        .where(ReferralTier.is_active.is_(True))
        .order_by(ReferralTier.tier_level)
    ).all()
    if not rows:
        return list(DEFAULT_TIERS)
    return [tier_from_row(r) for r in rows]


def get_disclosure(session: Session) -> str:
    return get_referral_settings(session).disclosure_text


# ---------------------------------------------------------------------------
# Users & codes
# ---------------------------------------------------------------------------
def get_user_by_referral_code(session: Session, code: str) -> User | None:
    return session.scalar(select(User).where(User.referral_code == code))


_CODE_ATTEMPTS = 10


def _generate_code(length: int) -> str:
    return "".join(secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(length))


def get_or_create_referral_code(engine: Engine, user_id: str, *, length: int = 8) -> str:
    """Return the user's referral code, generating a unique one if absent.

    The code is only written while the user still has none, so two
    concurrent first requests both return whichever code landed first.
    A code another user claimed in the meantime is retried with a fresh one.
    """
    with Session(engine) as session:
        user = session.get(User, user_id)
        if user is None:
            raise UnknownUser(user_id)
        if user.referral_code:
            return user.referral_code

        for _ in range(_CODE_ATTEMPTS):
            code = _generate_code(length)
            if get_user_by_referral_code(session, code) is not None:
                continue
            try:
                with session.begin_nested():
                    claimed = session.execute(
                        update(User)
                        .where(User.id == user_id, User.referral_code.is_(None))
                        .values(referral_code=code)
                        .execution_options(synchronize_session=False)
                    ).rowcount
            except IntegrityError:
                logger.debug("Referral code collision for user %s, retrying", user_id)
                continue

            if not claimed:
                # issued by a concurrent request
                return session.scalar(select(User.referral_code).where(User.id == user_id))
            session.commit()
            logger.info("Issued referral code for user %s", user_id)
            return code

    raise RuntimeError(
        f"Could not issue a unique referral code after {_CODE_ATTEMPTS} attempts"
    )


def get_referrals_by_referrer(session: Session, referrer_id: str) -> list[ReferralEvent]:
    """All of a referrer's events, newest first."""
    return list(session.scalars(
        select(ReferralEvent)
        .where(ReferralEvent.referrer_id == referrer_id)
        .order_by(ReferralEvent.created_at.desc())
    ).all())


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------
def _window_starts(now: datetime) -> tuple[datetime, datetime]:
    """(start of today, start of this month), both UTC."""
    now = now.astimezone(UTC)
    start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
    start_of_month = start_of_day.replace(day=1)
    return start_of_day, start_of_month


def _count_where(condition):
    return func.coalesce(func.sum(case((condition, 1), else_=0)), 0)


def _amount_where(condition):
    return func.coalesce(
        func.sum(case((condition, ReferralEvent.bonus_amount), else_=0)), 0
    )


def get_referrer_stats(
    session: Session, referrer_id: str, now: datetime | None = None
) -> ReferrerStats:
    """Counts and earnings for one referrer.

    Daily and monthly windows start at 00:00 UTC of the current day and
    of the first day of the current month.
    """
    now = now or datetime.now(UTC)
    start_of_day, start_of_month = _window_starts(now)
    verified = ReferralEvent.status == ReferralStatus.VERIFIED.value

    row = session.execute(
        select(
            func.count().label("total"),
            _count_where(ReferralEvent.created_at >= start_of_day).label("daily"),
            _count_where(ReferralEvent.created_at >= start_of_month).label("monthly"),
            _count_where(verified).label("verified"),
            _count_where(
                ReferralEvent.status == ReferralStatus.PENDING.value
            ).label("pending"),
            _count_where(
                ReferralEvent.status == ReferralStatus.REJECTED.value
            ).label("rejected"),
            _amount_where(ReferralEvent.is_paid.is_(True)).label("earned"),
            _amount_where(
                verified & ReferralEvent.is_paid.is_(False)
            ).label("owed"),
        ).where(ReferralEvent.referrer_id == referrer_id)
    ).one()

    return ReferrerStats(
        total_referrals=row.total,
        daily_referrals=int(row.daily),
        monthly_referrals=int(row.monthly),
        lifetime_referrals=row.total,
        verified_referrals=int(row.verified),
        pending_referrals=int(row.pending),
        rejected_referrals=int(row.rejected),
        total_earnings=float(row.earned),
        pending_earnings=float(row.owed),
    )


def _insert_summary(session: Session, user_id: str) -> ReferralReward:
    try:
        with session.begin_nested():
            summary = ReferralReward(user_id=user_id)
            session.add(summary)
            session.flush()
    except IntegrityError:
        # created by a concurrent transaction
        summary = session.get(ReferralReward, user_id, populate_existing=True)
        if summary is None:
            raise
    return summary


def refresh_reward_summary(
    session: Session,
    user_id: str,
    *,
    tiers: list[TierInfo] | None = None,
    now: datetime | None = None,
) -> ReferralReward:
    """Upsert the ``referral_rewards`` row for *user_id* from its events."""
    stats = get_referrer_stats(session, user_id, now)
    tier = get_user_tier(stats.verified_referrals, tiers or get_referral_tiers(session))

    summary = session.get(ReferralReward, user_id) or _insert_summary(session, user_id)
    summary.total_referrals = stats.total_referrals
    summary.verified_referrals = stats.verified_referrals
    summary.rejected_referrals = stats.rejected_referrals
    summary.total_earnings = stats.total_earnings
    summary.pending_earnings = stats.pending_earnings
    summary.current_tier = tier.tier_level
    summary.lifetime_referrals = stats.lifetime_referrals
    session.flush()
    return summary


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
def _has_recent_same_ip(
    session: Session,
    referrer_id: str,
    ip: str | None,
    cooldown_hours: int,
    now: datetime,
) -> bool:
    if not ip or cooldown_hours <= 0:
        return False
    cutoff = now - timedelta(hours=cooldown_hours)
    hit = session.scalar(
        select(ReferralEvent.id).where(
            ReferralEvent.referrer_id == referrer_id,
            ReferralEvent.referred_user_ip == ip,
            ReferralEvent.created_at >= cutoff,
        ).limit(1)
    )
    return hit is not None


def _account_age_days(user: User, now: datetime) -> int:
    created = as_utc(user.created_at)
    if created is None:
        return 0
    return max(0, (now - created).days)


def validate_referral(
    session: Session,
    *,
    referrer_id: str,
    referred_id: str,
    referred_email: str | None,
    referred_ip: str | None = None,
    settings: ReferralSettings | None = None,
    tiers: list[TierInfo] | None = None,
    now: datetime | None = None,
) -> ValidationResult:
    """Gather the evidence for a prospective referral and score it."""
    now = now or datetime.now(UTC)
    settings = settings or get_referral_settings(session)
    tiers = tiers or get_referral_tiers(session)

    referrer = session.get(User, referrer_id)
    referred = session.get(User, referred_id)
    if referrer is None or referred is None:
        return ValidationResult.rejected("User not found")

    stats = get_referrer_stats(session, referrer_id, now)
    tier = get_user_tier(stats.verified_referrals, tiers)

    ctx = ReferralContext(
        referrer_id=referrer_id,
        referred_id=referred_id,
        referred_email=referred_email,
        account_age_days=_account_age_days(referred, now),
        has_wallet=bool(referred.wallet_address),
        email_verified=bool(referred.email_verified),
        recent_same_ip=_has_recent_same_ip(
            session, referrer_id, referred_ip, settings.same_ip_cooldown_hours, now
        ),
        stats=stats,
    )
    return score_referral(ctx, settings, tier)


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------
def create_referral(
    engine: Engine,
    *,
    referrer_id: str,
    referred_id: str,
    referral_code: str,
    referred_email: str | None,
    program_start: datetime,
    referred_ip: str | None = None,
    referred_user_agent: str | None = None,
    now: datetime | None = None,
) -> ReferralOutcome:
    """Validate, price and persist a referral.

    Raises
    ------
    ReferralRejected
        Validation came back invalid.
    AlreadyReferred
        The referred user already has a referral on record.
    """
    now = now or datetime.now(UTC)
    with Session(engine, expire_on_commit=False) as session:
        settings = get_referral_settings(session)
        tiers = get_referral_tiers(session)

        validation = validate_referral(
            session,
            referrer_id=referrer_id,
            referred_id=referred_id,
            referred_email=referred_email,
            referred_ip=referred_ip,
            settings=settings,
            tiers=tiers,
            now=now,
        )
        if not validation.is_valid:
            logger.info(
                "Referral %s → %s rejected (score %d): %s",
                referrer_id, referred_id, validation.score,
                "; ".join(validation.reasons),
            )
            raise ReferralRejected(validation.reasons)

        stats = get_referrer_stats(session, referrer_id, now)
        tier = get_user_tier(stats.verified_referrals, tiers)
        decay = calculate_decay_multiplier(program_start, settings, now)
        reward = calculate_referral_reward(
            settings.base_reward, decay, tier.bonus_multiplier
        )

        event = ReferralEvent(
            referrer_id=referrer_id,
            referred_id=referred_id,
            referral_code=referral_code,
            bonus_amount=reward.total,
            base_reward=settings.base_reward,
            decay_multiplier=decay,
            tier_bonus=reward.tier_bonus,
            tier_level=tier.tier_level,
            status=validation.status.value,
            verified_at=now if validation.status == ReferralStatus.VERIFIED else None,
            referred_user_ip=referred_ip,
            referred_user_agent=referred_user_agent,
            validation_score=validation.score,
            validation_notes="; ".join(validation.reasons),
            created_at=now,
        )
        try:
            with session.begin_nested():
                session.add(event)
                session.flush()
        except IntegrityError:
            # referred_id is unique; a concurrent apply for this user got there first
            raise AlreadyReferred(referred_id) from None

        referred = session.get(User, referred_id)
        if referred is not None:
            referred.referred_by = referrer_id

        refresh_reward_summary(session, referrer_id, tiers=tiers, now=now)
        session.commit()

        logger.info(
            "Referral %s → %s stored as %s (score %d, reward %.2f)",
            referrer_id, referred_id, event.status, validation.score, reward.total,
        )
        return ReferralOutcome(
            event=event_to_dict(event),
            reward=reward,
            validation=validation,
            tier=tier,
        )


def apply_referral_code(
    engine: Engine,
    *,
    referral_code: str,
    user_id: str,
    program_start: datetime,
    client_ip: str | None = None,
    user_agent: str | None = None,
    now: datetime | None = None,
) -> ReferralOutcome:
    """Resolve *referral_code* to its owner and refer *user_id* to them."""
    with Session(engine) as session:
        referrer = get_user_by_referral_code(session, referral_code)
        if referrer is None:
            raise InvalidReferralCode(referral_code)
        if referrer.id == user_id:
            raise ReferralRejected(["Cannot use your own referral code"])

        referred = session.get(User, user_id)
        if referred is None:
            raise UnknownUser(user_id)

        already = referred.referred_by is not None or session.scalar(
            select(ReferralEvent.id).where(ReferralEvent.referred_id == user_id).limit(1)
        ) is not None
        if already:
            raise AlreadyReferred(user_id)

        referrer_id = referrer.id
        referred_email = referred.email

    return create_referral(
        engine,
        referrer_id=referrer_id,
        referred_id=user_id,
        referral_code=referral_code,
        referred_email=referred_email,
        program_start=program_start,
        referred_ip=client_ip,
        referred_user_agent=user_agent,
        now=now,
    )


# ---------------------------------------------------------------------------
# Leaderboard
# ---------------------------------------------------------------------------
def get_referral_leaderboard(session: Session, limit: int = 10) -> list[dict]:
    """Top referrers by verified referrals, with profile and tier."""
    limit = max(1, min(limit, MAX_LEADERBOARD_LIMIT))
    verified_count = _count_where(
        ReferralEvent.status == ReferralStatus.VERIFIED.value
    ).label("verified_referrals")
    total_count = func.count().label("total_referrals")

    rows = session.execute(
        select(
            ReferralEvent.referrer_id,
            total_count,
            verified_count,
            _amount_where(ReferralEvent.is_paid.is_(True)).label("total_earnings"),
        )
        .group_by(ReferralEvent.referrer_id)
        .order_by(verified_count.desc(), total_count.desc(), ReferralEvent.referrer_id)
        .limit(limit)
    ).all()

    referrer_ids = [r.referrer_id for r in rows]
    users = {
        u.id: u for u in session.scalars(
            select(User).where(User.id.in_(referrer_ids))
        ).all()
    } if referrer_ids else {}
    tiers = get_referral_tiers(session)

    board = []
    for rank, row in enumerate(rows, start=1):
        u = users.get(row.referrer_id)
        tier = get_user_tier(int(row.verified_referrals), tiers)
        board.append({
            "rank": rank,
            "referrer_id": row.referrer_id,
            "total_referrals": row.total_referrals,
            "verified_referrals": int(row.verified_referrals),
            "total_earnings": float(row.total_earnings),
            "user": {
                "username": u.username,
                "display_name": u.display_name,
                "avatar_url": u.avatar_url,
            } if u else None,
            "tier": tier.name,
            "tier_level": tier.tier_level,
        })
    return board


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------
def set_referral_status(
    event: ReferralEvent,
    status: ReferralStatus,
    *,
    now: datetime,
    note: str | None = None,
) -> None:
    event.status = status.value
    if status == ReferralStatus.VERIFIED and event.verified_at is None:
        event.verified_at = now
    if note:
        event.validation_notes = (
            f"{event.validation_notes}; {note}" if event.validation_notes else note
        )


def _is_mature(user: User, settings: ReferralSettings, now: datetime) -> bool:
    if _account_age_days(user, now) < settings.min_account_age_days:
        return False
    if (user.xp or 0) < settings.min_activity_score:
        return False
    if settings.require_email_verification and not user.email_verified:
        return False
    if settings.require_wallet_connection and not user.wallet_address:
        return False
    if settings.block_disposable_emails and is_disposable_email(user.email):
        return False
    return True


def matured_referrals(
    session: Session,
    settings: ReferralSettings | None = None,
    now: datetime | None = None,
) -> list[ReferralEvent]:
    """Pending referrals whose referred account now passes review."""
    now = now or datetime.now(UTC)
    settings = settings or get_referral_settings(session)
    rows = session.execute(
        select(ReferralEvent, User)
        .join(User, ReferralEvent.referred_id == User.id)
        .where(ReferralEvent.status == ReferralStatus.PENDING.value)
        .order_by(ReferralEvent.created_at)
    ).all()
    return [event for event, referred in rows if _is_mature(referred, settings, now)]


def stale_referrals(
    session: Session, max_age_days: int, now: datetime | None = None
) -> list[ReferralEvent]:
    """Pending referrals created more than *max_age_days* ago."""
    now = now or datetime.now(UTC)
    cutoff = now - timedelta(days=max_age_days)
    return list(session.scalars(
        select(ReferralEvent).where(
            ReferralEvent.status == ReferralStatus.PENDING.value,
            ReferralEvent.created_at < cutoff,
        ).order_by(ReferralEvent.created_at)
    ).all())


def payable_referrals(session: Session, event_ids: Iterable[str]) -> list[ReferralEvent]:
    """The verified, unpaid events among *event_ids*."""
    ids = list(dict.fromkeys(event_ids))
    if not ids:
        return []
    return list(session.scalars(
        select(ReferralEvent).where(
            ReferralEvent.id.in_(ids),
            ReferralEvent.status == ReferralStatus.VERIFIED.value,
            ReferralEvent.is_paid.is_(False),
        ).order_by(ReferralEvent.created_at)
    ).all())


def _refresh_summaries(session: Session, events: list[ReferralEvent], now: datetime) -> None:
    if not events:
        return
    tiers = get_referral_tiers(session)
    for referrer_id in {e.referrer_id for e in events}:
        refresh_reward_summary(session, referrer_id, tiers=tiers, now=now)


def review_pending_referrals(
    session: Session,
    settings: ReferralSettings | None = None,
    now: datetime | None = None,
) -> list[ReferralEvent]:
    """Promote pending referrals whose referred account has matured.

    A referred user is mature once their account meets the minimum age,
    the minimum activity score and (when required) has a verified email
    and a connected wallet.  Returns the promoted events.
    """
    now = now or datetime.now(UTC)
    promoted = matured_referrals(session, settings, now)
    for event in promoted:
        set_referral_status(event, ReferralStatus.VERIFIED, now=now, note="Verified on review")
    _refresh_summaries(session, promoted, now)

    if promoted:
        logger.info("Promoted %d pending referrals after review", len(promoted))
    return promoted


def expire_pending_referrals(
    session: Session, max_age_days: int, now: datetime | None = None
) -> list[ReferralEvent]:
    """Mark pending referrals older than *max_age_days* as expired."""
    now = now or datetime.now(UTC)
    expired = stale_referrals(session, max_age_days, now)
    for event in expired:
        set_referral_status(event, ReferralStatus.EXPIRED, now=now)
    _refresh_summaries(session, expired, now)

    if expired:
        logger.info(
            "Expired %d pending referrals older than %d days", len(expired), max_age_days
        )
    return expired


def mark_referrals_paid(
    session: Session, event_ids: Iterable[str], now: datetime | None = None
) -> list[ReferralEvent]:
    """Mark verified, unpaid events as paid.  Returns the events actually paid."""
    now = now or datetime.now(UTC)
    ids = list(dict.fromkeys(event_ids))
    paid = payable_referrals(session, ids)
    for event in paid:
        event.is_paid = True
        event.paid_at = now
    _refresh_summaries(session, paid, now)

    skipped = len(ids) - len(paid)
    if skipped:
        logger.warning("Payout skipped %d events (unknown, unverified or already paid)", skipped)
    return paid
