"""
tests/test_anti_sybil.py — Referral Validation Scoring Tests
=============================================================

Pure scoring: penalties, hard stops, and score → status mapping.
"""

from __future__ import annotations

from dataclasses import replace

import pytest

from lumina.database.models import ReferralStatus
from lumina.engine.anti_sybil import (
    ReferralContext,
    ReferrerStats,
    check_referral_windows,
    is_disposable_email,
    score_referral,
    status_for_score,
)
from lumina.engine.program import DEFAULT_SETTINGS, DEFAULT_TIERS

STARTER = DEFAULT_TIERS[0]


def _ctx(**overrides) -> ReferralContext:
    base = dict(
        referrer_id="referrer",
        referred_id="referred",
        referred_email="newbie@example.com",
        account_age_days=10,
        has_wallet=True,
        email_verified=True,
        recent_same_ip=False,
        stats=ReferrerStats(),
    )
    base.update(overrides)
    return ReferralContext(**base)


class TestScoreReferral:
    def test_clean_referral_is_verified(self):
        result = score_referral(_ctx(), DEFAULT_SETTINGS, STARTER)
        assert result.is_valid
        assert result.score == 100
        assert result.reasons == []
        assert result.status == ReferralStatus.VERIFIED

    def test_anti_sybil_disabled_skips_every_check(self):
        settings = replace(DEFAULT_SETTINGS, anti_sybil_enabled=False)
        ctx = _ctx(referred_id="referrer", referred_email="x@mailinator.com")
        result = score_referral(ctx, settings, STARTER)
        assert result.is_valid
        assert result.score == 100
        assert result.status == ReferralStatus.VERIFIED

    def test_self_referral(self):
        result = score_referral(_ctx(referred_id="referrer"), DEFAULT_SETTINGS, STARTER)
        assert not result.is_valid
        assert result.score == 0
        assert result.reasons == ["Self-referral not allowed"]
        assert result.status == ReferralStatus.REJECTED

    def test_disposable_email_goes_pending(self):
        result = score_referral(
            _ctx(referred_email="bot@Mailinator.com"), DEFAULT_SETTINGS, STARTER
        )
        assert result.score == 50
        assert result.is_valid
        assert result.status == ReferralStatus.PENDING
        assert "Disposable email detected" in result.reasons

    def test_disposable_email_allowed_when_not_blocking(self):
        settings = replace(DEFAULT_SETTINGS, block_disposable_emails=False)
        result = score_referral(_ctx(referred_email="bot@yopmail.com"), settings, STARTER)
        assert result.score == 100

    def test_young_account(self):
        result = score_referral(_ctx(account_age_days=0), DEFAULT_SETTINGS, STARTER)
        assert result.score == 70
        assert result.status == ReferralStatus.PENDING
        assert result.reasons == ["Account age (0 days) below minimum (1 days)"]

    def test_age_check_off_when_minimum_zero(self):
        settings = replace(DEFAULT_SETTINGS, min_account_age_days=0)
        result = score_referral(_ctx(account_age_days=0), settings, STARTER)
        assert result.score == 100

    def test_wallet_required(self):
        settings = replace(DEFAULT_SETTINGS, require_wallet_connection=True)
        result = score_referral(_ctx(has_wallet=False), settings, STARTER)
        assert result.score == 80
        assert result.status == ReferralStatus.VERIFIED
        assert result.reasons == ["Wallet not connected"]

    def test_same_ip(self):
        result = score_referral(_ctx(recent_same_ip=True), DEFAULT_SETTINGS, STARTER)
        assert result.score == 60
        assert result.reasons == ["Recent referral from same IP address"]

    def test_unverified_email(self):
        result = score_referral(_ctx(email_verified=False), DEFAULT_SETTINGS, STARTER)
        assert result.score == 90
        assert result.reasons == ["Email not verified"]

    def test_unverified_email_ignored_when_not_required(self):
        settings = replace(DEFAULT_SETTINGS, require_email_verification=False)
        result = score_referral(_ctx(email_verified=False), settings, STARTER)
        assert result.score == 100

    def test_penalties_stack_into_rejection(self):
        ctx = _ctx(
            referred_email="bot@tempmail.com",
            account_age_days=0,
            recent_same_ip=True,
        )
        result = score_referral(ctx, DEFAULT_SETTINGS, STARTER)
        assert result.score == -20
        assert not result.is_valid
        assert result.status == ReferralStatus.REJECTED
        assert len(result.reasons) == 3

    def test_daily_cap_is_hard_reject(self):
        stats = ReferrerStats(daily_referrals=5, monthly_referrals=5, lifetime_referrals=5)
        result = score_referral(_ctx(stats=stats), DEFAULT_SETTINGS, STARTER)
        assert not result.is_valid
        assert result.score == 0
        assert result.reasons == ["Daily referral limit reached"]

    def test_window_reject_replaces_penalty_reasons(self):
        stats = ReferrerStats(daily_referrals=5)
        result = score_referral(
            _ctx(email_verified=False, stats=stats), DEFAULT_SETTINGS, STARTER
        )
        assert result.reasons == ["Daily referral limit reached"]


class TestWindows:
    def test_monthly(self):
        stats = ReferrerStats(daily_referrals=0, monthly_referrals=50)
        assert check_referral_windows(stats, STARTER, DEFAULT_SETTINGS) == (
            "Monthly referral limit reached"
        )

    def test_lifetime(self):
        stats = ReferrerStats(lifetime_referrals=500)
        assert check_referral_windows(stats, STARTER, DEFAULT_SETTINGS) == (
            "Lifetime referral limit reached"
        )

    def test_higher_tier_raises_daily_cap(self):
        stats = ReferrerStats(daily_referrals=6)
        assert check_referral_windows(stats, STARTER, DEFAULT_SETTINGS) is not None
        assert check_referral_windows(stats, DEFAULT_TIERS[1], DEFAULT_SETTINGS) is None

    def test_under_caps(self):
        assert check_referral_windows(ReferrerStats(), STARTER, DEFAULT_SETTINGS) is None


@pytest.mark.parametrize("score,status", [
    (100, ReferralStatus.VERIFIED),
    (80, ReferralStatus.VERIFIED),
    (79, ReferralStatus.PENDING),
    (30, ReferralStatus.PENDING),
    (29, ReferralStatus.REJECTED),
    (-40, ReferralStatus.REJECTED),
])
def test_status_for_score(score, status):
    assert status_for_score(score) == status


@pytest.mark.parametrize("email,expected", [
    ("a@guerrillamail.com", True),
    ("a@SHARKLASERS.COM", True),
    ("a@gmail.com", False),
    ("not-an-email", False),
    (None, False),
])
def test_is_disposable_email(email, expected):
    assert is_disposable_email(email) is expected
