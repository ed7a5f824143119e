"""
lumina.constants — Shared Constants & Helpers
==============================================

Single source of truth for values shared between the engine, the
services and the API.  Import from here instead of duplicating.
"""

from __future__ import annotations

import string
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal

# ---------------------------------------------------------------------------
# Anti-Sybil
# ---------------------------------------------------------------------------
DISPOSABLE_EMAIL_DOMAINS: frozenset[str] = frozenset({
    "tempmail.com",
    "throwaway.com",
    "guerrillamail.com",
    "mailinator.com",
    "10minutemail.com",
    "temp-mail.org",
    "fakeinbox.com",
    "trashmail.com",
    "yopmail.com",
    "sharklasers.com",
    "getairmail.com",
})

# Score thresholds → status
VERIFIED_SCORE = 80
VALID_SCORE = 30

# Penalties subtracted from a starting score of 100
PENALTY_DISPOSABLE_EMAIL = 50
PENALTY_ACCOUNT_AGE = 30
PENALTY_NO_WALLET = 20
PENALTY_SAME_IP = 40
PENALTY_EMAIL_UNVERIFIED = 10

# Absolute floor for the decay multiplier
MIN_DECAY_MULTIPLIER = 0.2

# ---------------------------------------------------------------------------
# Referral codes
# ---------------------------------------------------------------------------
REFERRAL_CODE_ALPHABET = string.ascii_uppercase + string.digits
MAX_LEADERBOARD_LIMIT = 50

DEFAULT_DISCLOSURE = (
    "Referral rewards are subject to verification. Rewards decrease over "
    "time and are capped to ensure program sustainability. Terms and "
    "conditions apply."
)


# ---------------------------------------------------------------------------
# Money helpers
# ---------------------------------------------------------------------------
_CENT = Decimal("0.01")


def round_amount(value: float) -> float:
    """Round a token amount to two decimals, halves away from zero.

    ``round()`` uses banker's rounding and binary floats, so 2.675 would
    come out as 2.67; going through ``Decimal(str(x))`` keeps the
    human-visible digits.
    """
    return float(Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP))


def email_domain(email: str | None) -> str | None:
    """Return the lower-cased domain part of *email*, or None."""
    if not email or "@" not in email:
        return None
    domain = email.split("@", 1)[1].strip().lower()
    return domain or None


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive timestamps (SQLite drops tzinfo on round-trip)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value
