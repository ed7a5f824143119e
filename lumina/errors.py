"""
lumina.errors — Domain exceptions
==================================

Raised by the service layer, translated to HTTP responses by the routes.
"""

from __future__ import annotations


class ReferralError(Exception):
    """Base class for referral-program failures a client can act on."""


class UnknownUser(ReferralError):
    def __init__(self, user_id: str) -> None:
        super().__init__("User not found")
        self.user_id = user_id


class InvalidReferralCode(ReferralError):
    def __init__(self, code: str) -> None:
        super().__init__("Invalid referral code")
        self.code = code


class AlreadyReferred(ReferralError):
    def __init__(self, user_id: str) -> None:
        super().__init__("User has already been referred")
        self.user_id = user_id


class ReferralRejected(ReferralError):
    """Validation produced an invalid result; *reasons* explain why."""

    def __init__(self, reasons: list[str]) -> None:
        super().__init__(", ".join(reasons) or "Referral rejected")
        self.reasons = list(reasons)


class TierConflict(ReferralError):
    """A tier-ladder change would leave the ladder inconsistent."""


class ReferralStateError(ReferralError):
    """The referral's current state does not allow the requested change."""


class InvalidProgramSettings(ReferralError):
    """A settings change would leave the program inconsistent."""
