"""
lumina.api.routes.admin — Referral program administration (JWT‑protected)
==========================================================================

Reads require an admin token; mutations are additionally rate-limited
per admin by :func:`rate_limited_admin`.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from lumina.api.deps import client_ip, get_config, get_current_admin, get_engine, get_session
from lumina.api.rate_limit import rate_limited_admin
from lumina.config import LuminaConfig
from lumina.database.models import ReferralEvent, ReferralStatus, ReferralTier
from lumina.errors import InvalidProgramSettings, ReferralStateError, TierConflict
from lumina.services import admin_service, referral_service

router = APIRouter(prefix="/admin", tags=["admin"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class SettingsUpdate(BaseModel):
    base_reward: float | None = Field(None, gt=0)
    decay_enabled: bool | None = None
    decay_start_day: int | None = Field(None, ge=0)
    decay_rate_per_day: float | None = Field(None, ge=0, le=1)
    min_reward: float | None = Field(None, ge=0)
    max_daily_referrals_global: int | None = Field(None, ge=0)
    max_monthly_referrals_global: int | None = Field(None, ge=0)
    max_lifetime_referrals: int | None = Field(None, ge=0)
    anti_sybil_enabled: bool | None = None
    min_account_age_days: int | None = Field(None, ge=0)
    min_activity_score: int | None = Field(None, ge=0)
    require_email_verification: bool | None = None
    require_wallet_connection: bool | None = None
    block_disposable_emails: bool | None = None
    same_ip_cooldown_hours: int | None = Field(None, ge=0)
    disclosure_text: str | None = None


class TierCreate(BaseModel):
    tier_level: int = Field(ge=1)
    name: str
    min_referrals: int = Field(ge=0)
    bonus_multiplier: float = Field(1.0, ge=1.0)
    max_daily_referrals: int | None = None
    max_monthly_referrals: int | None = None
    special_perks: dict[str, Any] | None = None
    badge_icon: str | None = None


class TierUpdate(BaseModel):
    name: str | None = None
    min_referrals: int | None = Field(None, ge=0)
    bonus_multiplier: float | None = Field(None, ge=1.0)
    max_daily_referrals: int | None = None
    max_monthly_referrals: int | None = None
    special_perks: dict[str, Any] | None = None
    badge_icon: str | None = None
    is_active: bool | None = None


class StatusChange(BaseModel):
    reason: str | None = None


class PayoutRequest(BaseModel):
    event_ids: list[str] = Field(min_length=1)
    reason: str | None = None


class ExpiryRequest(BaseModel):
    max_age_days: int | None = Field(None, ge=1)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _tier_dict(t: ReferralTier) -> dict:
    return {
        "id": t.id,
        "tier_level": t.tier_level,
        "name": t.name,
        "min_referrals": t.min_referrals,
        "bonus_multiplier": t.bonus_multiplier,
        "max_daily_referrals": t.max_daily_referrals,
        "max_monthly_referrals": t.max_monthly_referrals,
        "special_perks": t.special_perks,
        "badge_icon": t.badge_icon,
        "is_active": t.is_active,
        "created_at": t.created_at.isoformat() if t.created_at else None,
    }


# ---------------------------------------------------------------------------
# Program settings
# ---------------------------------------------------------------------------
@router.get("/referrals/settings")
def get_settings(
    admin: dict = Depends(get_current_admin),
    session: Session = Depends(get_session),
):
    row = referral_service.get_settings_row(session)
    return {
        "settings": referral_service.get_referral_settings(session).to_dict(),
        "updated_at": row.updated_at.isoformat() if row and row.updated_at else None,
        "updated_by": row.updated_by if row else None,
    }


@router.put("/referrals/settings")
def update_settings(
    body: SettingsUpdate,
    request: Request,
    admin: dict = Depends(rate_limited_admin),
    engine=Depends(get_engine),
):
    changes = body.model_dump(exclude_none=True)
    if not changes:
        raise HTTPException(400, "No fields to update")
    try:
        row = admin_service.update_program_settings(
            engine,
            changes=changes,
            actor_id=str(admin["sub"]),
            ip_address=client_ip(request),
        )
    except InvalidProgramSettings as exc:
        raise HTTPException(400, str(exc))
    return {"settings": referral_service.settings_from_row(row).to_dict()}


# ---------------------------------------------------------------------------
# Tier ladder
# ---------------------------------------------------------------------------
@router.get("/referrals/tiers")
def list_tiers(
    admin: dict = Depends(get_current_admin),
    session: Session = Depends(get_session),
):
    """All tiers, including deactivated ones."""
    tiers = session.scalars(select(ReferralTier).order_by(ReferralTier.tier_level)).all()
    return {"tiers": [_tier_dict(t) for t in tiers]}


@router.post("/referrals/tiers", status_code=201)
def create_tier(
    body: TierCreate,
    admin: dict = Depends(rate_limited_admin),
    engine=Depends(get_engine),
):
    try:
        tier = admin_service.create_tier(
            engine, actor_id=str(admin["sub"]), **body.model_dump()
        )
    except TierConflict as exc:
        raise HTTPException(409, str(exc))
    return _tier_dict(tier)


@router.patch("/referrals/tiers/{tier_level}")
def update_tier(
    tier_level: int,
    body: TierUpdate,
    admin: dict = Depends(rate_limited_admin),
    engine=Depends(get_engine),
):
    changes = body.model_dump(exclude_none=True)
    if not changes:
        raise HTTPException(400, "No fields to update")
    try:
        tier = admin_service.update_tier(
            engine, tier_level=tier_level, actor_id=str(admin["sub"]), **changes
        )
    except TierConflict as exc:
        raise HTTPException(409, str(exc))
    if tier is None:
        raise HTTPException(404, "Tier not found")
    return _tier_dict(tier)


@router.delete("/referrals/tiers/{tier_level}")
def delete_tier(
    tier_level: int,
    admin: dict = Depends(rate_limited_admin),
    engine=Depends(get_engine),
):
    try:
        removed = admin_service.deactivate_tier(
            engine, tier_level=tier_level, actor_id=str(admin["sub"])
        )
    except TierConflict as exc:
        raise HTTPException(409, str(exc))
    if not removed:
        raise HTTPException(404, "Tier not found")
    return {"tier_level": tier_level, "is_active": False}


# ---------------------------------------------------------------------------
# Referral events
# ---------------------------------------------------------------------------
@router.get("/referrals")
def list_referrals(
    status: ReferralStatus | None = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    admin: dict = Depends(get_current_admin),
    session: Session = Depends(get_session),
):
    query = select(ReferralEvent).order_by(ReferralEvent.created_at.desc())
    if status is not None:
        query = query.where(ReferralEvent.status == status.value)
    events = session.scalars(
        query.offset((page - 1) * page_size).limit(page_size)
    ).all()
    return {
        "referrals": [referral_service.event_to_dict(e) for e in events],
        "page": page,
        "page_size": page_size,
    }


def _change_status(action, event_id: str, body: StatusChange | None, admin: dict, engine):
    try:
        event = action(
            engine,
            event_id=event_id,
            actor_id=str(admin["sub"]),
            reason=body.reason if body else None,
        )
    except ReferralStateError as exc:
        raise HTTPException(409, str(exc))
    if event is None:
        raise HTTPException(404, "Referral not found")
    return event


@router.post("/referrals/{event_id}/verify")
def verify_referral(
    event_id: str,
    body: StatusChange | None = None,
    admin: dict = Depends(rate_limited_admin),
    engine=Depends(get_engine),
):
    return _change_status(admin_service.verify_referral, event_id, body, admin, engine)


@router.post("/referrals/{event_id}/reject")
def reject_referral(
    event_id: str,
    body: StatusChange | None = None,
    admin: dict = Depends(rate_limited_admin),
    engine=Depends(get_engine),
):
    return _change_status(admin_service.reject_referral, event_id, body, admin, engine)


@router.post("/referrals/payouts")
def pay_referrals(
    body: PayoutRequest,
    admin: dict = Depends(rate_limited_admin),
    engine=Depends(get_engine),
):
    paid = admin_service.pay_referrals(
        engine, event_ids=body.event_ids, actor_id=str(admin["sub"]), reason=body.reason
    )
    return {"paid": paid, "skipped": len(set(body.event_ids)) - len(paid)}


@router.post("/referrals/review")
def review_referrals(
    admin: dict = Depends(rate_limited_admin),
    engine=Depends(get_engine),
):
    promoted = admin_service.run_review(engine, actor_id=str(admin["sub"]))
    return {"promoted": promoted, "count": len(promoted)}


@router.post("/referrals/expire")
def expire_referrals(
    body: ExpiryRequest | None = None,
    admin: dict = Depends(rate_limited_admin),
    engine=Depends(get_engine),
    cfg: LuminaConfig = Depends(get_config),
):
    max_age_days = (body.max_age_days if body else None) or cfg.pending_expiry_days
    expired = admin_service.run_expiry(
        engine, max_age_days=max_age_days, actor_id=str(admin["sub"])
    )
    return {"expired": expired, "max_age_days": max_age_days}


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------
@router.get("/audit")
def get_audit_log(
    page: int = Query(1, ge=1),
    page_size: int = Query(25, ge=1, le=100),
    admin: dict = Depends(get_current_admin),
    session: Session = Depends(get_session),
):
    return admin_service.get_audit_log(session, page=page, page_size=page_size)
