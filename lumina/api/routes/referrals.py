"""
lumina.api.routes.referrals — User and public referral endpoints
=================================================================
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel
from sqlalchemy.orm import Session

from lumina.api.deps import client_ip, get_config, get_current_user, get_engine, get_session
from lumina.api.rate_limit import rate_limited_apply
from lumina.config import LuminaConfig
from lumina.constants import MAX_LEADERBOARD_LIMIT
from lumina.database.models import ReferralStatus
from lumina.engine.reward import get_user_tier, referral_caps
from lumina.errors import ReferralError, UnknownUser
from lumina.services import referral_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/referrals", tags=["referrals"])


class ApplyReferral(BaseModel):
    referral_code: str | None = None
    user_id: str | None = None


def _apply_message(status: str, total: float, cfg: LuminaConfig, reasons: list[str]) -> str:
    if status == ReferralStatus.VERIFIED:
        return f"Referral verified! You earned {total:.2f} {cfg.currency_symbol}."
    if status == ReferralStatus.PENDING:
        return "Referral submitted for verification."
    return f"Referral could not be verified: {', '.join(reasons)}"


# ---------------------------------------------------------------------------
# GET /referrals — the caller's own dashboard
# ---------------------------------------------------------------------------
@router.get("")
def get_my_referrals(
    user: dict = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    user_id = str(user["sub"])
    settings = referral_service.get_referral_settings(session)
    tiers = referral_service.get_referral_tiers(session)
    stats = referral_service.get_referrer_stats(session, user_id)
    tier = get_user_tier(stats.verified_referrals, tiers)
    events = referral_service.get_referrals_by_referrer(session, user_id)

    return {
        "referrals": [referral_service.event_to_dict(e) for e in events],
        "stats": stats.to_dict(),
        "current_tier": tier.to_dict(),
        "tiers": [t.to_dict() for t in tiers],
        "caps": referral_caps(tier, settings).to_dict(),
        "disclosure": settings.disclosure_text,
    }


@router.get("/code")
def get_my_code(
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
    cfg: LuminaConfig = Depends(get_config),
):
    try:
        code = referral_service.get_or_create_referral_code(
            engine, str(user["sub"]), length=cfg.referral_code_length
        )
    except UnknownUser:
        raise HTTPException(404, "User not found")
    return {"code": code}


# ---------------------------------------------------------------------------
# Public reads
# ---------------------------------------------------------------------------
@router.get("/leaderboard")
def get_leaderboard(
    limit: int = Query(10, ge=1),
    session: Session = Depends(get_session),
):
    limit = min(limit, MAX_LEADERBOARD_LIMIT)
    return {
        "leaderboard": referral_service.get_referral_leaderboard(session, limit),
        "limit": limit,
    }


@router.get("/tiers")
def get_tiers(session: Session = Depends(get_session)):
    tiers = referral_service.get_referral_tiers(session)
    return {
        "tiers": [t.to_dict() for t in tiers],
        "disclosure": referral_service.get_disclosure(session),
    }


@router.get("/settings")
def get_public_settings(session: Session = Depends(get_session)):
    """The subset of program tuning that users are allowed to see."""
    settings = referral_service.get_referral_settings(session)
    return {
        "base_reward": settings.base_reward,
        "decay_enabled": settings.decay_enabled,
        "max_daily_referrals": settings.max_daily_referrals,
        "max_monthly_referrals": settings.max_monthly_referrals,
        "max_lifetime_referrals": settings.max_lifetime_referrals,
        "disclosure": settings.disclosure_text,
    }


# ---------------------------------------------------------------------------
# POST /referrals/apply
# ---------------------------------------------------------------------------
@router.post("/apply", dependencies=[Depends(rate_limited_apply)])
def apply_referral(
    body: ApplyReferral,
    request: Request,
    engine=Depends(get_engine),
    cfg: LuminaConfig = Depends(get_config),
):
    referral_code = (body.referral_code or "").strip().upper()
    user_id = (body.user_id or "").strip()
    if not referral_code or not user_id:
        raise HTTPException(400, "Referral code and user ID are required")

    try:
        outcome = referral_service.apply_referral_code(
            engine,
            referral_code=referral_code,
            user_id=user_id,
            program_start=cfg.program_start,
            client_ip=client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
    except ReferralError as exc:
        logger.info("Referral apply refused for user %s: %s", user_id, exc)
        raise HTTPException(400, str(exc))

    status = outcome.event["status"]
    return {
        "success": True,
        "event": outcome.event,
        "reward": outcome.reward.to_dict(),
        "tier": outcome.tier.to_dict(),
        "validation": outcome.validation.to_dict(),
        "message": _apply_message(
            status, outcome.reward.total, cfg, outcome.validation.reasons
        ),
    }
