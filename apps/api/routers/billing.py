"""Billing and credits router."""

from __future__ import annotations

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from routers.rate_limit import rate_limit
from services.credits import ensure_user, get_credit_summary, get_transaction_history
from services.plans import CREDIT_PACKS, PLANS, allotment
from services.referrals import get_referral_summary, register_referral
from services.rewards import daily_checkin, grant_signup_bonus

router = APIRouter()
logger = logging.getLogger(__name__)


class CheckinRequest(BaseModel):
    user_id: Optional[str] = None


class ReferralRequest(BaseModel):
    referral_code: str = Field(..., min_length=1, max_length=128)


async def _ensure_account_holder(db: AsyncSession, user_id: str, email: Optional[str]) -> None:
    await ensure_user(db, user_id, email=email)
    await grant_signup_bonus(db, user_id)


@router.get("/credits")
async def credits_summary(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    await _ensure_account_holder(db, scoped_user_id, auth.email)
    return await get_credit_summary(db, scoped_user_id)


@router.get("/history")
async def credit_history(
    user_id: Optional[str] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    entry_type: Optional[Literal["earn", "spend", "freeze", "unfreeze", "admin_adjust"]] = Query(default=None, alias="type"),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    return await get_transaction_history(db, scoped_user_id, page=page, limit=limit, entry_type=entry_type)


@router.post("/checkin")
async def checkin(
    request: CheckinRequest,
    _rate_limit: None = Depends(
        rate_limit("billing_checkin", limit=int(settings.RATE_LIMIT_CHECKINS_PER_HOUR), window_seconds=3600)
    ),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    await _ensure_account_holder(db, scoped_user_id, auth.email)
    result = await daily_checkin(db, scoped_user_id)
    summary = await get_credit_summary(db, scoped_user_id)
    return {**result, "balance": summary["balance"], "available_balance": summary["available_balance"]}


@router.get("/plans")
async def plan_catalog():
    return {
        "plans": [
            {
                "plan_id": plan.plan_id,
                "tier": plan.tier,
                "monthly_credits": allotment(plan.plan_id, "month"),
                "yearly_credits": allotment(plan.plan_id, "year"),
            }
            for plan in PLANS.values()
        ],
        "credit_packs": [{"pack_id": pack.pack_id, "credits": pack.credits} for pack in CREDIT_PACKS.values()],
    }


@router.get("/referral")
async def referral_summary(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await _ensure_account_holder(db, auth.user_id, auth.email)
    return await get_referral_summary(db, auth.user_id)


@router.post("/referral")
async def register_referral_code(
    request: ReferralRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await _ensure_account_holder(db, auth.user_id, auth.email)
    return await register_referral(db, auth.user_id, request.referral_code)
