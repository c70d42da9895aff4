"""Signup bonus and daily check-in rewards."""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.daily_checkin import DailyCheckin
from services.credits import LedgerResult, earn
from services.idempotency import checkin_reference, insert_once, signup_reference

logger = logging.getLogger(__name__)


async def grant_signup_bonus(db: AsyncSession, user_id: str) -> Optional[LedgerResult]:
    amount = int(settings.SIGNUP_BONUS_CREDITS)
    if amount <= 0:
        return None
    return await earn(
        db,
        user_id,
        amount,
        source="signup",
        reference_id=signup_reference(user_id),
        description="Signup bonus",
    )


async def _get_checkin(db: AsyncSession, user_id: str, day: date) -> Optional[DailyCheckin]:
    result = await db.execute(
        select(DailyCheckin).where(DailyCheckin.user_id == user_id, DailyCheckin.checkin_date == day)
    )
    return result.scalar_one_or_none()


def _serialize_checkin(row: DailyCheckin, status: str) -> Dict[str, Any]:
    return {
        "status": status,
        "checkin_date": row.checkin_date.isoformat(),
        "consecutive_days": int(row.consecutive_days or 0),
        "credits_earned": int(row.credits_earned or 0),
        "weekly_bonus_earned": bool(row.weekly_bonus_earned),
    }


async def daily_checkin(db: AsyncSession, user_id: str, today: Optional[date] = None) -> Dict[str, Any]:
    """Grant the daily reward once per calendar day (UTC).

    A streak reaching ``CHECKIN_STREAK_DAYS`` consecutive days earns the weekly
    bonus once; the streak window then starts over.
    """
    day = today or datetime.now(timezone.utc).date()
    existing = await _get_checkin(db, user_id, day)
    if existing is not None:
        return _serialize_checkin(existing, "already_checked_in")

    previous = await _get_checkin(db, user_id, day - timedelta(days=1))
    consecutive = int(previous.consecutive_days) + 1 if previous else 1
    streak_days = max(int(settings.CHECKIN_STREAK_DAYS), 1)
    bonus_due = consecutive % streak_days == 0 and int(settings.CHECKIN_WEEKLY_BONUS_CREDITS) > 0

    daily_credits = int(settings.CHECKIN_DAILY_CREDITS)
    await earn(
        db,
        user_id,
        daily_credits,
        source="checkin",
        reference_id=checkin_reference(user_id, day),
        description="Daily check-in",
    )
    credits_earned = daily_credits
    if bonus_due:
        await earn(
            db,
            user_id,
            int(settings.CHECKIN_WEEKLY_BONUS_CREDITS),
            source="checkin",
            reference_id=checkin_reference(user_id, day, bonus=True),
            metadata={"consecutive_days": consecutive},
            description=f"{streak_days}-day check-in streak bonus",
        )
        credits_earned += int(settings.CHECKIN_WEEKLY_BONUS_CREDITS)

    row, created = await insert_once(
        db,
        DailyCheckin(
            user_id=user_id,
            checkin_date=day,
            consecutive_days=consecutive,
            credits_earned=credits_earned,
            weekly_bonus_earned=bonus_due,
        ),
        lambda: _get_checkin(db, user_id, day),
    )
    await db.commit()
    if not created:
        return _serialize_checkin(row, "already_checked_in")

    logger.info("User %s checked in on %s (streak=%s bonus=%s)", user_id, day, consecutive, bonus_due)
    return _serialize_checkin(row, "checked_in")
