"""Generation requests and their credit settlement.

A request freezes its cost before the provider is called. The task is then
settled exactly once, by whichever path observes the provider outcome first:
the live poll job, the status endpoint, or the recovery scheduler. Settlement
holds the ``generation:<taskId>`` advisory lock, applies ledger effects under
deterministic reference ids, and only then commits the terminal status, so an
interrupted settlement is finished by the next attempt without double charging.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.generation_task import GenerationTask
from services.credits import (
    capture_reservation,
    freeze,
    get_account_balance,
    get_transaction_by_reference,
    has_enough_credits,
    spend,
    unfreeze,
)
from services.errors import GenerationInProgressError, InsufficientCreditsError
from services.generation_lock import acquire_lock, release_lock, request_lock_key, settlement_lock_key
from services.idempotency import generation_reference
from services.providers import ProviderBundle
from services.providers.types import (
    GenerationJobSpec,
    ProviderTaskStatus,
    ProviderTerminalFailure,
    ProviderTransientError,
    StoredObject,
)
from services.referrals import award_referral_reward

logger = logging.getLogger(__name__)

GENERATION_KINDS = ("image", "video")
TERMINAL_STATUSES = ("completed", "failed")
DEFAULT_MODELS = {"image": "nano-banana", "video": "sora-2"}


@dataclass(frozen=True)
class SettlementResult:
    """Outcome of one settlement attempt.

    ``applied`` is True only for the attempt that moved the task to a terminal
    state. Losing a race is reported as a successful no-op.
    """

    task_id: str
    outcome: str
    status: str
    applied: bool
    message: Optional[str] = None


def get_generation_cost(kind: str) -> int:
    if kind == "image":
        return int(settings.CREDIT_COST_IMAGE_GENERATION)
    if kind == "video":
        return int(settings.CREDIT_COST_VIDEO_GENERATION)
    raise ValueError(f"Unsupported generation kind: {kind}")


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


async def get_generation_task(
    db: AsyncSession,
    task_id: str,
    user_id: Optional[str] = None,
) -> Optional[GenerationTask]:
    query = select(GenerationTask).where(GenerationTask.id == task_id)
    if user_id:
        query = query.where(GenerationTask.user_id == user_id)
    result = await db.execute(query.execution_options(populate_existing=True))
    return result.scalar_one_or_none()


def serialize_generation_task(task: GenerationTask) -> Dict[str, Any]:
    completed_at = _as_utc(task.completed_at)
    created_at = _as_utc(task.created_at)
    return {
        "task_id": task.id,
        "user_id": task.user_id,
        "kind": task.kind,
        "model": task.model,
        "status": task.status,
        "credits_reserved": int(task.credits_reserved or 0),
        "external_task_id": task.external_task_id,
        "asset_url": task.asset_url,
        "settled_by": task.settled_by,
        "error_message": task.error_message,
        "created_at": created_at.isoformat() if created_at else None,
        "completed_at": completed_at.isoformat() if completed_at else None,
    }


async def _release_reservation(db: AsyncSession, task: GenerationTask, reason: str) -> None:
    """Unfreeze the task's reservation if one was ever recorded."""
    reserve = await get_transaction_by_reference(db, generation_reference(task.id, "reserve"))
    if reserve is None:
        return
    await unfreeze(
        db,
        task.user_id,
        int(reserve.amount),
        reason=reason,
        reference_id=generation_reference(task.id, "unfreeze"),
        metadata={"task_id": task.id},
    )


async def _fail_undispatched_task(db: AsyncSession, task: GenerationTask, error_message: str, settled_by: str) -> None:
    await _release_reservation(db, task, reason=f"Release {task.kind} generation reservation")
    task.status = "failed"
    task.error_message = error_message[:500]
    task.settled_by = settled_by
    task.completed_at = datetime.now(timezone.utc)
    await db.commit()


async def request_generation(
    db: AsyncSession,
    user_id: str,
    *,
    kind: str,
    prompt: str,
    providers: ProviderBundle,
    model: Optional[str] = None,
    options: Optional[Dict[str, Any]] = None,
) -> GenerationTask:
    """Reserve credits for a generation and dispatch it to the provider.

    Returns the task in ``processing``. Raises 402 before any provider call
    when available credits are short, 409 while another request of the same
    kind for the user is mid-submission, and 502 when the provider refuses the
    job (the reservation is released in that case).
    """
    if kind not in GENERATION_KINDS:
        raise ValueError(f"Unsupported generation kind: {kind}")
    cost = get_generation_cost(kind)

    request_lock = await acquire_lock(
        db,
        request_lock_key(user_id, kind),
        holder=f"request:{user_id}",
        ttl_seconds=settings.GENERATION_REQUEST_LOCK_TTL_SECONDS,
    )
    if request_lock is None:
        raise GenerationInProgressError(kind)

    try:
        if not await has_enough_credits(db, user_id, cost):
            account = await get_account_balance(db, user_id)
            available = account.available_balance if account else 0
            raise InsufficientCreditsError(required=cost, available=available)

        task = GenerationTask(
            id=str(uuid.uuid4()),
            user_id=user_id,
            kind=kind,
            model=model or DEFAULT_MODELS[kind],
            prompt=prompt,
            status="reserved",
            credits_reserved=cost,
        )
        db.add(task)
        await db.commit()

        try:
            await freeze(
                db,
                user_id,
                cost,
                reason=f"Reserve {kind} generation",
                reference_id=generation_reference(task.id, "reserve"),
                metadata={"task_id": task.id, "kind": kind},
            )
        except InsufficientCreditsError:
            task.status = "failed"
            task.error_message = "insufficient_credits"
            task.completed_at = datetime.now(timezone.utc)
            await db.commit()
            raise

        try:
            submitted = await providers.generation.submit(
                GenerationJobSpec(kind=kind, model=task.model, prompt=prompt, options=dict(options or {}))
            )
        except (ProviderTransientError, ProviderTerminalFailure) as exc:
            logger.warning("Generation submit failed for task %s: %s", task.id, exc)
            await _fail_undispatched_task(db, task, f"submit_failed: {exc}", settled_by="live")
            raise HTTPException(
                status_code=502,
                detail="Generation provider did not accept the job. Reserved credits were released; retry later.",
            ) from exc

        task.external_task_id = submitted.external_task_id
        task.status = "processing"
        await db.commit()
        logger.info(
            "Generation task %s dispatched (user=%s kind=%s external=%s cost=%s)",
            task.id,
            user_id,
            kind,
            submitted.external_task_id,
            cost,
        )
        return task
    finally:
        await release_lock(db, request_lock)


async def _store_result(providers: ProviderBundle, status: ProviderTaskStatus) -> StoredObject:
    if not status.result_url:
        raise ProviderTransientError("Provider reported success without a result URL")
    data, content_type = await providers.generation.download(status.result_url)
    return await providers.storage.store(data, content_type)


async def settle_generation_task(
    db: AsyncSession,
    task_id: str,
    *,
    providers: ProviderBundle,
    settled_by: str,
    provider_status: Optional[ProviderTaskStatus] = None,
) -> SettlementResult:
    """Poll the provider and move a processing task to its terminal state.

    ``ProviderTransientError`` propagates and leaves the task untouched.
    """
    task = await get_generation_task(db, task_id)
    if task is None:
        raise ValueError(f"Generation task {task_id} not found")
    if task.status in TERMINAL_STATUSES:
        return SettlementResult(task.id, "already_settled", task.status, applied=False)
    if task.status != "processing" or not task.external_task_id:
        return SettlementResult(task.id, "not_dispatched", task.status, applied=False)

    status = provider_status or await providers.generation.poll_status(task.external_task_id)
    if not status.is_terminal:
        return SettlementResult(task.id, "still_processing", task.status, applied=False)

    stored: Optional[StoredObject] = None
    if status.state == "success":
        stored = await _store_result(providers, status)

    lock = await acquire_lock(
        db,
        settlement_lock_key(task.id),
        holder=settled_by,
        ttl_seconds=settings.GENERATION_SETTLE_LOCK_TTL_SECONDS,
    )
    if lock is None:
        logger.info("Settlement of task %s skipped: lock held by another settler", task.id)
        return SettlementResult(task.id, "lock_contention", task.status, applied=False)

    try:
        task = await get_generation_task(db, task_id)
        if task.status in TERMINAL_STATUSES:
            return SettlementResult(task.id, "already_settled", task.status, applied=False)

        task.lock_id = lock.lock_id
        await db.commit()

        if stored is not None:
            outcome = await _settle_completed(db, task, stored)
        else:
            outcome = await _settle_failed(db, task, status.error or "provider_failed")

        task.settled_by = settled_by
        task.lock_id = None
        task.completed_at = datetime.now(timezone.utc)
        await db.commit()
        logger.info("Generation task %s settled as %s by %s", task.id, task.status, settled_by)
        settled = SettlementResult(task.id, outcome, task.status, applied=True, message=task.error_message)
        charged = task.error_message is None
        user_id = task.user_id
    except Exception:
        await db.rollback()
        raise
    finally:
        await release_lock(db, lock)

    if settled.outcome == "completed" and charged:
        await _reward_referrer(db, user_id, settled.task_id)
    return settled


async def _reward_referrer(db: AsyncSession, user_id: str, task_id: str) -> None:
    """Pay a pending referral reward; the settlement itself is already committed."""
    try:
        await award_referral_reward(db, user_id, trigger="first_generation", metadata={"task_id": task_id})
    except Exception:
        logger.exception("Referral reward for user %s failed after task %s settled", user_id, task_id)
        await db.rollback()


async def _settle_completed(db: AsyncSession, task: GenerationTask, stored: StoredObject) -> str:
    cost = int(task.credits_reserved or 0)
    reserve = await get_transaction_by_reference(db, generation_reference(task.id, "reserve"))
    charge = {
        "metadata": {"task_id": task.id, "kind": task.kind, "model": task.model},
        "description": f"{task.kind.capitalize()} generation",
    }
    try:
        if reserve is not None:
            await capture_reservation(
                db,
                task.user_id,
                int(reserve.amount),
                release_reference=generation_reference(task.id, "unfreeze"),
                spend_reference=generation_reference(task.id, "spend"),
                reason=f"Settle {task.kind} generation",
                **charge,
            )
        else:
            await spend(
                db,
                task.user_id,
                cost,
                source="api_call",
                reference_id=generation_reference(task.id, "spend"),
                **charge,
            )
    except InsufficientCreditsError as exc:
        # The asset is already delivered; keep it and flag the missing charge.
        logger.error(
            "Generation task %s completed but charge failed (required=%s available=%s)",
            task.id,
            exc.required,
            exc.available,
        )
        task.error_message = "charge_failed"

    task.status = "completed"
    task.asset_key = stored.key
    task.asset_url = stored.url
    return "completed"


async def _settle_failed(db: AsyncSession, task: GenerationTask, error: str) -> str:
    await _release_reservation(db, task, reason=f"Refund failed {task.kind} generation")
    task.status = "failed"
    task.error_message = str(error)[:500]
    return "failed"


async def fail_abandoned_reservation(db: AsyncSession, task_id: str, settled_by: str) -> bool:
    """Fail a task stuck in ``reserved`` and release its credits."""
    lock = await acquire_lock(
        db,
        settlement_lock_key(task_id),
        holder=settled_by,
        ttl_seconds=settings.GENERATION_SETTLE_LOCK_TTL_SECONDS,
    )
    if lock is None:
        return False
    try:
        current = await get_generation_task(db, task_id)
        if current is None or current.status != "reserved":
            return False
        await _fail_undispatched_task(db, current, "abandoned_reservation", settled_by=settled_by)
        return True
    except Exception:
        await db.rollback()
        raise
    finally:
        await release_lock(db, lock)
