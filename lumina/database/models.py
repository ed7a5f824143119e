"""
lumina.database.models — SQLAlchemy 2.0 Data Models
====================================================

Tables:
- users                     — Projection of the platform's user table
- referral_events           — One row per applied referral (append-mostly)
- referral_rewards          — Denormalized per-referrer summary
- referral_tiers            — Tier ladder (bonus multiplier + caps)
- referral_program_settings — Program tuning (single active row)
- admin_log                 — Append-only audit trail
- rate_limit_events         — Durable sliding-window counters
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from lumina.constants import DEFAULT_DISCLOSURE


def _uuid() -> str:
    return str(uuid.uuid4())


# Token amounts: two decimals, returned as float
Amount = Numeric(14, 2, asdecimal=False)


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Lumina ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class ReferralStatus(enum.StrEnum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"
    EXPIRED = "expired"


class AdminActionType(enum.StrEnum):
    """Categories of admin mutations recorded in admin_log."""
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    VERIFY = "VERIFY"
    REJECT = "REJECT"
    PAYOUT = "PAYOUT"
    REVIEW = "REVIEW"
    EXPIRE = "EXPIRE"


# ---------------------------------------------------------------------------
# Users — the columns of the platform user table the referral engine reads
# ---------------------------------------------------------------------------
class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    username: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    display_name: Mapped[str | None] = mapped_column(String(100), default=None)
    avatar_url: Mapped[str | None] = mapped_column(String(500), default=None)
    wallet_address: Mapped[str | None] = mapped_column(String(64), default=None)
    email_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    xp: Mapped[int] = mapped_column(Integer, default=0)  # activity score
    referral_code: Mapped[str | None] = mapped_column(
        String(32), unique=True, default=None
    )
    referred_by: Mapped[str | None] = mapped_column(String(36), default=None)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    reward_summary: Mapped[ReferralReward | None] = relationship(
        back_populates="user", uselist=False, cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<User id={self.id} username={self.username!r}>"


# ---------------------------------------------------------------------------
# ReferralEvent — one row per applied referral
# ---------------------------------------------------------------------------
class ReferralEvent(Base):
    __tablename__ = "referral_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    referrer_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    referred_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False, unique=True,
    )
    referral_code: Mapped[str] = mapped_column(String(32), nullable=False)

    # Reward breakdown, frozen at creation time
    bonus_amount: Mapped[float] = mapped_column(Amount, default=0.0)
    base_reward: Mapped[float] = mapped_column(Amount, default=10.0)
    decay_multiplier: Mapped[float] = mapped_column(Float, default=1.0)
    tier_bonus: Mapped[float] = mapped_column(Amount, default=0.0)
    tier_level: Mapped[int] = mapped_column(Integer, default=1)

    is_paid: Mapped[bool] = mapped_column(Boolean, default=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=ReferralStatus.PENDING.value
    )
    verified_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )

    # Anti-Sybil evidence
    referred_user_ip: Mapped[str | None] = mapped_column(String(45), default=None)
    referred_user_agent: Mapped[str | None] = mapped_column(Text, default=None)
    validation_score: Mapped[int] = mapped_column(Integer, default=0)
    validation_notes: Mapped[str | None] = mapped_column(Text, default=None)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    referrer: Mapped[User] = relationship(foreign_keys=[referrer_id])
    referred: Mapped[User] = relationship(foreign_keys=[referred_id])

    __table_args__ = (
        Index("ix_referral_events_referrer_time", "referrer_id", "created_at"),
        Index(
            "ix_referral_events_referrer_ip_time",
            "referrer_id", "referred_user_ip", "created_at",
        ),
        Index("ix_referral_events_status", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<ReferralEvent id={self.id} referrer={self.referrer_id} "
            f"status={self.status!r}>"
        )


# ---------------------------------------------------------------------------
# ReferralReward — denormalized per-referrer summary
# ---------------------------------------------------------------------------
class ReferralReward(Base):
    """Refreshed after every write that touches a referrer's events so
    profile pages can read totals without aggregating."""
    __tablename__ = "referral_rewards"

    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    total_referrals: Mapped[int] = mapped_column(Integer, default=0)
    verified_referrals: Mapped[int] = mapped_column(Integer, default=0)
    rejected_referrals: Mapped[int] = mapped_column(Integer, default=0)
    total_earnings: Mapped[float] = mapped_column(Amount, default=0.0)
    pending_earnings: Mapped[float] = mapped_column(Amount, default=0.0)
    current_tier: Mapped[int] = mapped_column(Integer, default=1)
    lifetime_referrals: Mapped[int] = mapped_column(Integer, default=0)
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    user: Mapped[User] = relationship(back_populates="reward_summary")

    def __repr__(self) -> str:
        return f"<ReferralReward user={self.user_id} tier={self.current_tier}>"


# ---------------------------------------------------------------------------
# ReferralTier — tier ladder
# ---------------------------------------------------------------------------
class ReferralTier(Base):
    __tablename__ = "referral_tiers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tier_level: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(50), nullable=False)
    min_referrals: Mapped[int] = mapped_column(Integer, nullable=False)
    bonus_multiplier: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    max_daily_referrals: Mapped[int | None] = mapped_column(Integer, default=10)
    max_monthly_referrals: Mapped[int | None] = mapped_column(Integer, default=100)
    special_perks: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    badge_icon: Mapped[str | None] = mapped_column(String(50), default=None)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<ReferralTier level={self.tier_level} name={self.name!r}>"


# ---------------------------------------------------------------------------
# ReferralProgramSettings — program tuning
# ---------------------------------------------------------------------------
class ReferralProgramSettings(Base):
    """Program tuning knobs.  Only the first active row is read; admins
    edit it in place through the admin API."""
    __tablename__ = "referral_program_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    base_reward: Mapped[float | None] = mapped_column(Amount, default=10.0)
    decay_enabled: Mapped[bool | None] = mapped_column(Boolean, default=True)
    decay_start_day: Mapped[int | None] = mapped_column(Integer, default=30)
    decay_rate_per_day: Mapped[float | None] = mapped_column(Float, default=0.02)
    min_reward: Mapped[float | None] = mapped_column(Amount, default=2.0)
    max_daily_referrals_global: Mapped[int | None] = mapped_column(Integer, default=5)
    max_monthly_referrals_global: Mapped[int | None] = mapped_column(Integer, default=50)
    max_lifetime_referrals: Mapped[int | None] = mapped_column(Integer, default=500)
    anti_sybil_enabled: Mapped[bool | None] = mapped_column(Boolean, default=True)
    min_account_age_days: Mapped[int | None] = mapped_column(Integer, default=1)
    min_activity_score: Mapped[int | None] = mapped_column(Integer, default=10)
    require_email_verification: Mapped[bool | None] = mapped_column(Boolean, default=True)
    require_wallet_connection: Mapped[bool | None] = mapped_column(Boolean, default=False)
    block_disposable_emails: Mapped[bool | None] = mapped_column(Boolean, default=True)
    same_ip_cooldown_hours: Mapped[int | None] = mapped_column(Integer, default=24)
    disclosure_text: Mapped[str | None] = mapped_column(Text, default=DEFAULT_DISCLOSURE)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    updated_by: Mapped[str | None] = mapped_column(String(64), default=None)

    def __repr__(self) -> str:
        return f"<ReferralProgramSettings id={self.id} active={self.is_active}>"


# ---------------------------------------------------------------------------
# AdminLog — append-only audit trail
# ---------------------------------------------------------------------------
class AdminLog(Base):
    __tablename__ = "admin_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    target_table: Mapped[str] = mapped_column(String(50), nullable=False)
    target_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    before_snapshot: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    after_snapshot: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_admin_log_actor_time", "actor_id", "timestamp"),
        Index("ix_admin_log_target", "target_table", "target_id", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<AdminLog id={self.id} actor={self.actor_id} action={self.action_type}>"


# ---------------------------------------------------------------------------
# RateLimitEvent — durable request events for sliding-window throttling
# ---------------------------------------------------------------------------
class RateLimitEvent(Base):
    """One row per counted request.  ``scope`` separates limiters (admin
    mutations vs. referral applications); ``key`` is the admin id or the
    client IP."""
    __tablename__ = "rate_limit_events"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    scope: Mapped[str] = mapped_column(String(32), nullable=False)
    key: Mapped[str] = mapped_column(String(64), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("ix_rate_limit_scope_key_ts", "scope", "key", timestamp.desc()),
        Index("ix_rate_limit_ts", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<RateLimitEvent scope={self.scope!r} key={self.key!r} ts={self.timestamp}>"
