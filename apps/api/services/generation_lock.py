"""Advisory locks stored in the database with explicit expiry."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import delete, insert, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.advisory_lock import AdvisoryLock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LockHandle:
    lock_key: str
    lock_id: str
    holder: Optional[str]
    expires_at: datetime


def settlement_lock_key(task_id: str) -> str:
    return f"generation:{task_id}"


def request_lock_key(user_id: str, kind: str) -> str:
    return f"generation-request:{user_id}:{kind}"


def cron_lock_key(job_name: str) -> str:
    return f"cron:{job_name}"


async def acquire_lock(
    db: AsyncSession,
    lock_key: str,
    *,
    holder: Optional[str] = None,
    ttl_seconds: int = 300,
) -> Optional[LockHandle]:
    """Take ``lock_key`` or return None while another live holder has it.

    A row whose ``expires_at`` has passed is taken over in a single conditional
    UPDATE so two contenders cannot both win an expired lock.
    """
    now = datetime.now(timezone.utc)
    expires_at = now + timedelta(seconds=max(int(ttl_seconds), 1))
    lock_id = str(uuid.uuid4())
    values = {
        "lock_id": lock_id,
        "holder": holder,
        "acquired_at": now,
        "expires_at": expires_at,
    }

    try:
        async with db.begin_nested():
            await db.execute(insert(AdvisoryLock).values(lock_key=lock_key, **values))
    except IntegrityError:
        result = await db.execute(
            update(AdvisoryLock)
            .where(AdvisoryLock.lock_key == lock_key, AdvisoryLock.expires_at < now)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await db.commit()
            return None
        logger.warning("Took over expired advisory lock %s (holder=%s)", lock_key, holder)

    await db.commit()
    return LockHandle(lock_key=lock_key, lock_id=lock_id, holder=holder, expires_at=expires_at)


async def release_lock(db: AsyncSession, handle: LockHandle) -> bool:
    """Delete the lock row only if it still carries our ``lock_id``."""
    result = await db.execute(
        delete(AdvisoryLock)
        .where(AdvisoryLock.lock_key == handle.lock_key, AdvisoryLock.lock_id == handle.lock_id)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    released = result.rowcount > 0
    if not released:
        logger.warning("Advisory lock %s was taken over before release", handle.lock_key)
    return released


async def get_lock(db: AsyncSession, lock_key: str) -> Optional[AdvisoryLock]:
    result = await db.execute(
        select(AdvisoryLock)
        .where(AdvisoryLock.lock_key == lock_key)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()
