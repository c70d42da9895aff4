"""Referral registration and the one-time referrer reward.

A user's referral code is their user id. A referred user can be registered
once, and the referrer is paid ``REFERRAL_REWARD_CREDITS`` the first time the
referred user completes a generation or pays for a subscription or credit
pack, whichever happens first.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import HTTPException
from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_transaction import CreditTransaction
from models.referral import REFERRAL_TRIGGERS, Referral
from models.user import User
from services.credits import LedgerResult, earn
from services.idempotency import insert_once, referral_reference

logger = logging.getLogger(__name__)


async def get_referral_for_user(db: AsyncSession, referred_user_id: str) -> Optional[Referral]:
    result = await db.execute(
        select(Referral)
        .where(Referral.referred_user_id == referred_user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def _serialize_referral(row: Referral) -> Dict[str, Any]:
    return {
        "id": row.id,
        "referrer_id": row.referrer_id,
        "referred_user_id": row.referred_user_id,
        "credits_awarded": bool(row.credits_awarded),
        "first_generation_completed": bool(row.first_generation_completed),
        "reward_trigger": row.reward_trigger,
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "credits_awarded_at": row.credits_awarded_at.isoformat() if row.credits_awarded_at else None,
    }


async def register_referral(db: AsyncSession, referred_user_id: str, referral_code: str) -> Dict[str, Any]:
    """Record that ``referred_user_id`` signed up with ``referral_code``.

    Re-registering with the same code is a no-op; a different code after the
    first registration is rejected.
    """
    code = (referral_code or "").strip()
    if not code:
        raise HTTPException(status_code=400, detail="referral_code is required")
    if code == referred_user_id:
        raise HTTPException(status_code=400, detail="You cannot use your own referral code")

    referrer = await db.get(User, code)
    if referrer is None:
        raise HTTPException(status_code=404, detail="Referral code not found")

    row, created = await insert_once(
        db,
        Referral(referrer_id=referrer.id, referred_user_id=referred_user_id, referral_code=code),
        lambda: get_referral_for_user(db, referred_user_id),
    )
    await db.commit()
    if not created and row.referrer_id != referrer.id:
        raise HTTPException(status_code=409, detail="A referral is already registered for this account")

    if created:
        logger.info("Registered referral of user %s by %s", referred_user_id, referrer.id)
    return {"status": "registered" if created else "already_registered", "referral": _serialize_referral(row)}


async def award_referral_reward(
    db: AsyncSession,
    referred_user_id: str,
    *,
    trigger: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> Optional[LedgerResult]:
    """Pay the referrer of ``referred_user_id`` once; later triggers are no-ops.

    Returns None when the user was not referred or the reward was already paid.
    """
    if trigger not in REFERRAL_TRIGGERS:
        raise ValueError(f"Unknown referral trigger: {trigger}")

    referral = await get_referral_for_user(db, referred_user_id)
    if referral is None:
        return None
    if trigger == "first_generation":
        referral.first_generation_completed = True
    amount = int(settings.REFERRAL_REWARD_CREDITS)
    if referral.credits_awarded or amount <= 0:
        await db.commit()
        return None

    result = await earn(
        db,
        referral.referrer_id,
        amount,
        source="referral",
        reference_id=referral_reference(referral.id),
        metadata={"referred_user_id": referred_user_id, "trigger": trigger, **(metadata or {})},
        description="Referral reward",
    )
    awarded_by = (result.transaction.metadata_json or {}).get("trigger", trigger)
    referral.credits_awarded = True
    referral.reward_trigger = awarded_by
    referral.credits_awarded_at = referral.credits_awarded_at or datetime.now(timezone.utc)
    await db.commit()

    if result.applied:
        logger.info(
            "Referrer %s earned %s credits for user %s (%s)",
            referral.referrer_id,
            amount,
            referred_user_id,
            trigger,
        )
    return result if result.applied else None


async def get_referral_summary(db: AsyncSession, user_id: str) -> Dict[str, Any]:
    referrals = await db.execute(
        select(Referral).where(Referral.referrer_id == user_id).order_by(Referral.created_at.desc())
    )
    rows = list(referrals.scalars().all())
    earned = await db.execute(
        select(func.coalesce(func.sum(CreditTransaction.amount), 0)).where(
            CreditTransaction.user_id == user_id,
            CreditTransaction.source == "referral",
        )
    )
    return {
        "referral_code": user_id,
        "reward_credits": int(settings.REFERRAL_REWARD_CREDITS),
        "total_referrals": len(rows),
        "rewarded_referrals": sum(1 for row in rows if row.credits_awarded),
        "credits_earned": int(earned.scalar_one()),
        "referrals": [_serialize_referral(row) for row in rows],
    }
