"""Create referral program tables

Revision ID: 0f3c2a7e9b41
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0f3c2a7e9b41"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _created_at(name: str = "created_at") -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
    )


def upgrade() -> None:
    """Create users projection, referral tables, audit log and rate-limit events."""
    op.create_table(
        "users",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("username", sa.String(50), nullable=False, unique=True),
        sa.Column("display_name", sa.String(100)),
        sa.Column("avatar_url", sa.String(500)),
        sa.Column("wallet_address", sa.String(64)),
        sa.Column("email_verified", sa.Boolean(), server_default=sa.false()),
        sa.Column("xp", sa.Integer(), server_default="0"),
        sa.Column("referral_code", sa.String(32), unique=True),
        sa.Column("referred_by", sa.String(36)),
        sa.Column("is_admin", sa.Boolean(), server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true()),
        _created_at(),
    )

    op.create_table(
        "referral_events",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "referrer_id",
            sa.String(36),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "referred_id",
            sa.String(36),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("referral_code", sa.String(32), nullable=False),
        sa.Column("bonus_amount", sa.Numeric(14, 2), server_default="0"),
        sa.Column("base_reward", sa.Numeric(14, 2), server_default="10"),
        sa.Column("decay_multiplier", sa.Float(), server_default="1"),
        sa.Column("tier_bonus", sa.Numeric(14, 2), server_default="0"),
        sa.Column("tier_level", sa.Integer(), server_default="1"),
        sa.Column("is_paid", sa.Boolean(), server_default=sa.false()),
        sa.Column("paid_at", sa.DateTime(timezone=True)),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("verified_at", sa.DateTime(timezone=True)),
        sa.Column("referred_user_ip", sa.String(45)),
        sa.Column("referred_user_agent", sa.Text()),
        sa.Column("validation_score", sa.Integer(), server_default="0"),
        sa.Column("validation_notes", sa.Text()),
        _created_at(),
    )
    op.create_index(
        "ix_referral_events_referrer_time",
        "referral_events",
        ["referrer_id", "created_at"],
    )
    op.create_index(
        "ix_referral_events_referrer_ip_time",
        "referral_events",
        ["referrer_id", "referred_user_ip", "created_at"],
    )
    op.create_index(
        "ix_referral_events_status",
        "referral_events",
        ["status", "created_at"],
    )

    op.create_table(
        "referral_rewards",
        sa.Column(
            "user_id",
            sa.String(36),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("total_referrals", sa.Integer(), server_default="0"),
        sa.Column("verified_referrals", sa.Integer(), server_default="0"),
        sa.Column("rejected_referrals", sa.Integer(), server_default="0"),
        sa.Column("total_earnings", sa.Numeric(14, 2), server_default="0"),
        sa.Column("pending_earnings", sa.Numeric(14, 2), server_default="0"),
        sa.Column("current_tier", sa.Integer(), server_default="1"),
        sa.Column("lifetime_referrals", sa.Integer(), server_default="0"),
        _created_at("last_updated"),
    )

    op.create_table(
        "referral_tiers",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tier_level", sa.Integer(), nullable=False, unique=True),
        sa.Column("name", sa.String(50), nullable=False),
        sa.Column("min_referrals", sa.Integer(), nullable=False),
        sa.Column("bonus_multiplier", sa.Float(), nullable=False, server_default="1"),
        sa.Column("max_daily_referrals", sa.Integer(), server_default="10"),
        sa.Column("max_monthly_referrals", sa.Integer(), server_default="100"),
        sa.Column("special_perks", postgresql.JSONB(), nullable=True),
        sa.Column("badge_icon", sa.String(50)),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true()),
        _created_at(),
    )

    op.create_table(
        "referral_program_settings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("base_reward", sa.Numeric(14, 2)),
        sa.Column("decay_enabled", sa.Boolean()),
        sa.Column("decay_start_day", sa.Integer()),
        sa.Column("decay_rate_per_day", sa.Float()),
        sa.Column("min_reward", sa.Numeric(14, 2)),
        sa.Column("max_daily_referrals_global", sa.Integer()),
        sa.Column("max_monthly_referrals_global", sa.Integer()),
        sa.Column("max_lifetime_referrals", sa.Integer()),
        sa.Column("anti_sybil_enabled", sa.Boolean()),
        sa.Column("min_account_age_days", sa.Integer()),
        sa.Column("min_activity_score", sa.Integer()),
        sa.Column("require_email_verification", sa.Boolean()),
        sa.Column("require_wallet_connection", sa.Boolean()),
        sa.Column("block_disposable_emails", sa.Boolean()),
        sa.Column("same_ip_cooldown_hours", sa.Integer()),
        sa.Column("disclosure_text", sa.Text()),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true()),
        _created_at("updated_at"),
        sa.Column("updated_by", sa.String(64)),
    )

    op.create_table(
        "admin_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("actor_id", sa.String(64), nullable=False),
        sa.Column("action_type", sa.String(50), nullable=False),
        sa.Column("target_table", sa.String(50), nullable=False),
        sa.Column("target_id", sa.String(100)),
        sa.Column("before_snapshot", postgresql.JSONB(), nullable=True),
        sa.Column("after_snapshot", postgresql.JSONB(), nullable=True),
        sa.Column("ip_address", sa.String(45)),
        sa.Column("reason", sa.Text()),
        _created_at("timestamp"),
    )
    op.create_index("ix_admin_log_actor_time", "admin_log", ["actor_id", "timestamp"])
    op.create_index(
        "ix_admin_log_target", "admin_log", ["target_table", "target_id", "timestamp"]
    )

    op.create_table(
        "rate_limit_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("scope", sa.String(32), nullable=False),
        sa.Column("key", sa.String(64), nullable=False),
        _created_at("timestamp"),
    )
    op.create_index(
        "ix_rate_limit_scope_key_ts",
        "rate_limit_events",
        ["scope", "key", sa.text("timestamp DESC")],
    )
    op.create_index("ix_rate_limit_ts", "rate_limit_events", ["timestamp"])


def downgrade() -> None:
    """Drop every referral table."""
    op.drop_index("ix_rate_limit_ts", table_name="rate_limit_events")
    op.drop_index("ix_rate_limit_scope_key_ts", table_name="rate_limit_events")
    op.drop_table("rate_limit_events")

    op.drop_index("ix_admin_log_target", table_name="admin_log")
    op.drop_index("ix_admin_log_actor_time", table_name="admin_log")
    op.drop_table("admin_log")

    op.drop_table("referral_program_settings")
    op.drop_table("referral_tiers")
    op.drop_table("referral_rewards")

    op.drop_index("ix_referral_events_status", table_name="referral_events")
    op.drop_index("ix_referral_events_referrer_ip_time", table_name="referral_events")
    op.drop_index("ix_referral_events_referrer_time", table_name="referral_events")
    op.drop_table("referral_events")

    op.drop_table("users")
