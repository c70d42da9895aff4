"""Idempotency keys and insert-or-return-existing helpers.

Uniqueness constraints in the database are the synchronization point: a write is
attempted inside a SAVEPOINT and a unique violation means the event was already
applied, so the existing row is returned instead.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Awaitable, Callable, Optional, Tuple, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.processed_webhook_event import ProcessedWebhookEvent

T = TypeVar("T")


def generation_reference(task_id: str, phase: str) -> str:
    if phase not in ("reserve", "unfreeze", "spend"):
        raise ValueError(f"Unknown generation phase: {phase}")
    return f"gen:{task_id}:{phase}"


def webhook_reference(event_id: str) -> str:
    return f"webhook:{event_id}"


def renewal_reference(subscription_id: str, period_start: datetime) -> str:
    return f"renewal:{subscription_id}:{period_start.strftime('%Y-%m-%dT%H:%M:%S')}"


def signup_reference(user_id: str) -> str:
    return f"signup:{user_id}"


def checkin_reference(user_id: str, day: date, bonus: bool = False) -> str:
    prefix = "checkin-bonus" if bonus else "checkin"
    return f"{prefix}:{user_id}:{day.isoformat()}"


def referral_reference(referral_id: str) -> str:
    return f"referral:{referral_id}"


def purchase_reference(event_id: str) -> str:
    return f"purchase:{event_id}"


async def insert_once(
    db: AsyncSession,
    instance: T,
    lookup: Callable[[], Awaitable[Optional[T]]],
    apply: Optional[Callable[[T], Awaitable[None]]] = None,
) -> Tuple[T, bool]:
    """Insert ``instance`` unless its unique key exists.

    ``apply`` runs inside the same savepoint after the insert is flushed, so an
    exception raised there rolls the insert back too. Returns ``(row, created)``.
    """
    try:
        async with db.begin_nested():
            db.add(instance)
            await db.flush()
            if apply is not None:
                await apply(instance)
    except IntegrityError:
        existing = await lookup()
        if existing is None:
            raise
        return existing, False
    return instance, True


async def get_processed_event(db: AsyncSession, event_id: str) -> Optional[ProcessedWebhookEvent]:
    result = await db.execute(select(ProcessedWebhookEvent).where(ProcessedWebhookEvent.event_id == event_id))
    return result.scalar_one_or_none()


async def record_processed_event(
    db: AsyncSession,
    *,
    event_id: str,
    event_type: str,
    user_id: Optional[str],
    status: str,
    result: Any,
) -> Tuple[ProcessedWebhookEvent, bool]:
    """Store the outcome of an event; a concurrent duplicate returns the first writer's row."""
    row, created = await insert_once(
        db,
        ProcessedWebhookEvent(
            event_id=event_id,
            event_type=event_type,
            user_id=user_id,
            status=status,
            result_json=result,
        ),
        lambda: get_processed_event(db, event_id),
    )
    await db.commit()
    return row, created
