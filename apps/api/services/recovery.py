"""Recovery scheduler for generation tasks the live paths never settled."""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.cron_execution import CronExecution
from models.generation_task import GenerationTask
from services.generation import fail_abandoned_reservation, settle_generation_task
from services.generation_lock import acquire_lock, cron_lock_key, release_lock
from services.providers import ProviderBundle


logger = logging.getLogger(__name__)

RECOVERY_JOB_NAME = "generation-recovery"
# Another settler won the lock or finished first; nothing left for this run to do.
SETTLED_ELSEWHERE_OUTCOMES = ("lock_contention", "already_settled", "not_dispatched")


@dataclass
class CronRunResult:
    """Outcome of one recovery pass.

    ``status`` is ``skipped`` when another process held the run lock; no
    execution row is written in that case. Every task counted in ``found``
    lands in exactly one of the outcome buckets.
    """

    execution_id: Optional[str]
    status: str
    found: int = 0
    completed: int = 0
    failed: int = 0
    still_processing: int = 0
    settled_elsewhere: int = 0
    errors: int = 0
    released_reservations: int = 0
    duration_ms: int = 0
    error_message: Optional[str] = None

    def counts(self) -> Dict[str, int]:
        return {
            "found": self.found,
            "completed": self.completed,
            "failed": self.failed,
            "still_processing": self.still_processing,
            "settled_elsewhere": self.settled_elsewhere,
            "errors": self.errors,
            "released_reservations": self.released_reservations,
        }

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


async def _close_abandoned_runs(db: AsyncSession, job_name: str, now: datetime) -> int:
    cutoff = now - timedelta(seconds=int(settings.RECOVERY_LOCK_TTL_SECONDS))
    result = await db.execute(
        update(CronExecution)
        .where(
            CronExecution.job_name == job_name,
            CronExecution.status == "running",
            CronExecution.started_at < cutoff,
        )
        .values(status="failed", error_message="abandoned", completed_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return int(result.rowcount or 0)


async def _recover_processing_tasks(
    db: AsyncSession,
    providers: ProviderBundle,
    result: CronRunResult,
    cutoff: datetime,
) -> None:
    rows = await db.execute(
        select(GenerationTask.id, GenerationTask.external_task_id)
        .where(GenerationTask.status == "processing", GenerationTask.updated_at < cutoff)
        .order_by(GenerationTask.updated_at.asc())
        .limit(max(int(settings.RECOVERY_BATCH_SIZE), 1))
    )
    candidates = rows.all()
    result.found = len(candidates)

    for task_id, external_task_id in candidates:
        if not external_task_id:
            logger.error("Recovery: processing task %s has no external task id", task_id)
            result.errors += 1
            continue
        try:
            settlement = await settle_generation_task(db, task_id, providers=providers, settled_by="recovery")
        except Exception:
            logger.exception("Recovery: failed to settle generation task %s", task_id)
            await db.rollback()
            result.errors += 1
            continue

        if settlement.outcome == "completed":
            result.completed += 1
        elif settlement.outcome == "failed":
            result.failed += 1
        elif settlement.outcome == "still_processing":
            result.still_processing += 1
        elif settlement.outcome in SETTLED_ELSEWHERE_OUTCOMES:
            result.settled_elsewhere += 1
        else:
            logger.error("Recovery: unexpected settlement outcome %s for task %s", settlement.outcome, task_id)
            result.errors += 1


async def _release_abandoned_reservations(db: AsyncSession, result: CronRunResult, cutoff: datetime) -> None:
    rows = await db.execute(
        select(GenerationTask.id)
        .where(GenerationTask.status == "reserved", GenerationTask.created_at < cutoff)
        .order_by(GenerationTask.created_at.asc())
        .limit(max(int(settings.RECOVERY_BATCH_SIZE), 1))
    )
    for task_id in rows.scalars().all():
        try:
            if await fail_abandoned_reservation(db, task_id, settled_by="recovery"):
                result.released_reservations += 1
        except Exception:
            logger.exception("Recovery: failed to release reservation for task %s", task_id)
            await db.rollback()
            result.errors += 1


async def run_stuck_task_recovery(
    providers: ProviderBundle,
    *,
    job_name: str = RECOVERY_JOB_NAME,
) -> CronRunResult:
    """Run one recovery pass; concurrent runs across processes are skipped."""
    started = time.monotonic()
    now = datetime.now(timezone.utc)
    async with async_session_maker() as db:
        lock = await acquire_lock(
            db,
            cron_lock_key(job_name),
            holder="recovery",
            ttl_seconds=settings.RECOVERY_LOCK_TTL_SECONDS,
        )
        if lock is None:
            logger.info("Recovery run skipped: %s already running elsewhere", job_name)
            return CronRunResult(execution_id=None, status="skipped")

        try:
            closed = await _close_abandoned_runs(db, job_name, now)
            if closed:
                logger.warning("Recovery: closed %s abandoned execution record(s)", closed)

            # Per-task rollbacks expire ORM state, so the row is only addressed by id from here on.
            execution_id = str(uuid.uuid4())
            db.add(CronExecution(id=execution_id, job_name=job_name, status="running", started_at=now))
            await db.commit()

            result = CronRunResult(execution_id=execution_id, status="running")
            cutoff = now - timedelta(minutes=max(int(settings.RECOVERY_STALE_AFTER_MINUTES), 1))
            try:
                await _recover_processing_tasks(db, providers, result, cutoff)
                await _release_abandoned_reservations(db, result, cutoff)
                result.status = "completed"
            except Exception as exc:
                logger.exception("Recovery run %s failed", execution_id)
                await db.rollback()
                result.status = "failed"
                result.error_message = str(exc)[:500]

            result.duration_ms = _elapsed_ms(started)
            await db.execute(
                update(CronExecution)
                .where(CronExecution.id == execution_id)
                .values(
                    status=result.status,
                    results_json=result.counts(),
                    error_message=result.error_message,
                    duration_ms=result.duration_ms,
                    completed_at=datetime.now(timezone.utc),
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            logger.info("Recovery run %s %s: %s", execution_id, result.status, result.counts())
            return result
        finally:
            await release_lock(db, lock)


async def trigger_recovery_now(providers: ProviderBundle) -> CronRunResult:
    return await run_stuck_task_recovery(providers)


def _serialize_execution(row: CronExecution) -> Dict[str, Any]:
    return {
        "id": row.id,
        "job_name": row.job_name,
        "status": row.status,
        "results": row.results_json or {},
        "error_message": row.error_message,
        "duration_ms": row.duration_ms,
        "started_at": row.started_at.isoformat() if row.started_at else None,
        "completed_at": row.completed_at.isoformat() if row.completed_at else None,
    }


async def list_cron_executions(
    db: AsyncSession,
    *,
    limit: int = 20,
    job_name: str = RECOVERY_JOB_NAME,
) -> Dict[str, Any]:
    """Recent execution records plus aggregate stats over the returned window."""
    result = await db.execute(
        select(CronExecution)
        .where(CronExecution.job_name == job_name)
        .order_by(CronExecution.started_at.desc())
        .limit(max(1, min(int(limit), 200)))
    )
    rows: List[CronExecution] = list(result.scalars().all())
    finished = [row for row in rows if row.status in ("completed", "failed")]
    succeeded = [row for row in finished if row.status == "completed"]
    durations = [int(row.duration_ms) for row in finished if row.duration_ms is not None]

    stats = {
        "total": len(rows),
        "completed": len(succeeded),
        "failed": len(finished) - len(succeeded),
        "success_rate": round(len(succeeded) / len(finished), 4) if finished else None,
        "average_duration_ms": int(sum(durations) / len(durations)) if durations else None,
        "total_recovered": sum(int((row.results_json or {}).get("completed", 0)) for row in rows),
        "total_failed": sum(int((row.results_json or {}).get("failed", 0)) for row in rows),
    }
    return {"items": [_serialize_execution(row) for row in rows], "stats": stats}
