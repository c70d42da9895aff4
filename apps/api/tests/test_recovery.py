from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, update
from sqlalchemy.future import select

from models.credit_transaction import CreditTransaction
from models.cron_execution import CronExecution
from models.generation_task import GenerationTask
from services.credits import earn, ensure_user, freeze, get_account_balance
from services.generation import SettlementResult, get_generation_task, request_generation, settle_generation_task
from services.generation_lock import acquire_lock, cron_lock_key
from services.idempotency import generation_reference
from services.providers.types import ProviderTaskStatus, ProviderTransientError
from services.recovery import RECOVERY_JOB_NAME, list_cron_executions, run_stuck_task_recovery


USER_ID = "recovery-user"


async def _fund(db, credits: int = 100):
    await ensure_user(db, USER_ID)
    await earn(db, USER_ID, credits, source="purchase", reference_id=f"purchase:{USER_ID}")


async def _age_task(db, task_id: str, minutes: int):
    stamp = datetime.now(timezone.utc) - timedelta(minutes=minutes)
    await db.execute(
        update(GenerationTask)
        .where(GenerationTask.id == task_id)
        .values(created_at=stamp, updated_at=stamp)
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def _stale_task(db, providers, prompt: str, minutes: int = 12) -> GenerationTask:
    task = await request_generation(db, USER_ID, kind="image", prompt=prompt, providers=providers)
    await _age_task(db, task.id, minutes)
    return task


async def _count_entries(db, task_id: str, entry_type: str) -> int:
    result = await db.execute(
        select(func.count(CreditTransaction.id)).where(
            CreditTransaction.reference_id.like(f"gen:{task_id}:%"),
            CreditTransaction.type == entry_type,
        )
    )
    return int(result.scalar() or 0)


@pytest.mark.asyncio
async def test_recovery_completes_stale_task_exactly_once(session_maker, db, providers):
    await _fund(db)
    task = await _stale_task(db, providers, "a lighthouse")
    providers.generation.statuses[task.external_task_id] = ProviderTaskStatus(
        state="success",
        result_url="https://provider.test/out.png",
    )

    with patch("services.recovery.async_session_maker", session_maker):
        result = await run_stuck_task_recovery(providers)

    assert result.status == "completed"
    assert result.counts() == {
        "found": 1,
        "completed": 1,
        "failed": 0,
        "still_processing": 0,
        "settled_elsewhere": 0,
        "errors": 0,
        "released_reservations": 0,
    }
    task = await get_generation_task(db, task.id)
    assert task.status == "completed"
    assert task.settled_by == "recovery"
    assert await _count_entries(db, task.id, "unfreeze") == 1
    assert await _count_entries(db, task.id, "spend") == 1

    retry = await settle_generation_task(db, task.id, providers=providers, settled_by="recovery")
    assert (retry.outcome, retry.applied) == ("already_settled", False)
    assert await _count_entries(db, task.id, "spend") == 1

    execution = await db.get(CronExecution, result.execution_id)
    assert execution.status == "completed"
    assert execution.results_json["completed"] == 1
    assert execution.duration_ms is not None
    assert execution.completed_at is not None


@pytest.mark.asyncio
async def test_recovery_ignores_fresh_tasks(session_maker, db, providers):
    await _fund(db)
    task = await request_generation(db, USER_ID, kind="image", prompt="fresh", providers=providers)
    providers.generation.statuses[task.external_task_id] = ProviderTaskStatus(
        state="success",
        result_url="https://provider.test/out.png",
    )

    with patch("services.recovery.async_session_maker", session_maker):
        result = await run_stuck_task_recovery(providers)

    assert result.found == 0
    assert (await get_generation_task(db, task.id)).status == "processing"
    assert providers.generation.poll_calls == []


@pytest.mark.asyncio
async def test_recovery_counts_pending_failed_and_errored_tasks(session_maker, db, providers):
    await _fund(db)
    pending = await _stale_task(db, providers, "pending")
    failing = await _stale_task(db, providers, "failing")
    flaky = await _stale_task(db, providers, "flaky")
    providers.generation.statuses[pending.external_task_id] = ProviderTaskStatus(state="processing")
    providers.generation.statuses[failing.external_task_id] = ProviderTaskStatus(state="fail", error="rejected")
    providers.generation.statuses[flaky.external_task_id] = ProviderTransientError("gateway timeout")

    with patch("services.recovery.async_session_maker", session_maker):
        result = await run_stuck_task_recovery(providers)

    assert result.status == "completed"
    assert (result.found, result.still_processing, result.failed, result.errors) == (3, 1, 1, 1)
    assert (await get_generation_task(db, pending.id)).status == "processing"
    assert (await get_generation_task(db, failing.id)).status == "failed"
    assert (await get_generation_task(db, flaky.id)).status == "processing"

    account = await get_account_balance(db, USER_ID)
    assert account.frozen_balance == 10
    assert account.balance == 100

    execution = await db.get(CronExecution, result.execution_id)
    assert execution.status == "completed"
    assert execution.results_json["errors"] == 1
    assert execution.results_json["found"] == 3
    assert execution.error_message is None


@pytest.mark.asyncio
async def test_recovery_run_is_skipped_while_lock_is_held(session_maker, db, providers):
    held = await acquire_lock(db, cron_lock_key(RECOVERY_JOB_NAME), holder="other-instance", ttl_seconds=600)
    assert held is not None

    with patch("services.recovery.async_session_maker", session_maker):
        result = await run_stuck_task_recovery(providers)

    assert result.status == "skipped"
    assert result.execution_id is None
    rows = await db.execute(select(func.count(CronExecution.id)))
    assert rows.scalar() == 0


@pytest.mark.asyncio
async def test_recovery_releases_abandoned_reservations(session_maker, db, providers):
    await _fund(db, 50)
    task = GenerationTask(user_id=USER_ID, kind="image", prompt="never sent", status="reserved", credits_reserved=5)
    db.add(task)
    await db.commit()
    await freeze(db, USER_ID, 5, reason="reserve", reference_id=generation_reference(task.id, "reserve"))
    await _age_task(db, task.id, 20)

    with patch("services.recovery.async_session_maker", session_maker):
        result = await run_stuck_task_recovery(providers)

    assert result.released_reservations == 1
    task = await get_generation_task(db, task.id)
    assert task.status == "failed"
    assert task.error_message == "abandoned_reservation"
    account = await get_account_balance(db, USER_ID)
    assert (account.balance, account.frozen_balance) == (50, 0)


@pytest.mark.asyncio
async def test_abandoned_running_rows_are_closed_and_stats_reported(session_maker, db, providers):
    long_ago = datetime.now(timezone.utc) - timedelta(hours=3)
    db.add(CronExecution(job_name=RECOVERY_JOB_NAME, status="running", started_at=long_ago))
    await db.commit()

    with patch("services.recovery.async_session_maker", session_maker):
        await run_stuck_task_recovery(providers)
        await run_stuck_task_recovery(providers)

    listing = await list_cron_executions(db)
    statuses = sorted(item["status"] for item in listing["items"])
    assert statuses == ["completed", "completed", "failed"]
    abandoned = [item for item in listing["items"] if item["status"] == "failed"]
    assert abandoned[0]["error_message"] == "abandoned"
    assert listing["stats"]["total"] == 3
    assert listing["stats"]["completed"] == 2
    assert listing["stats"]["success_rate"] == round(2 / 3, 4)


@pytest.mark.asyncio
async def test_recovery_keeps_settling_after_a_task_error_rolls_back(session_maker, db, providers):
    await _fund(db)
    flaky = await _stale_task(db, providers, "flaky", minutes=30)
    finished = await _stale_task(db, providers, "finished", minutes=15)
    providers.generation.statuses[flaky.external_task_id] = ProviderTransientError("gateway timeout")
    providers.generation.statuses[finished.external_task_id] = ProviderTaskStatus(
        state="success",
        result_url="https://provider.test/out.png",
    )

    with patch("services.recovery.async_session_maker", session_maker):
        result = await run_stuck_task_recovery(providers)

    assert result.status == "completed"
    assert (result.found, result.errors, result.completed) == (2, 1, 1)
    assert (await get_generation_task(db, finished.id)).status == "completed"
    assert await _count_entries(db, finished.id, "spend") == 1


@pytest.mark.asyncio
async def test_tasks_settled_by_another_worker_are_counted_separately(session_maker, db, providers):
    await _fund(db)
    task = await _stale_task(db, providers, "raced")
    raced = SettlementResult(task.id, "lock_contention", "processing", applied=False)

    with (
        patch("services.recovery.async_session_maker", session_maker),
        patch("services.recovery.settle_generation_task", AsyncMock(return_value=raced)),
    ):
        result = await run_stuck_task_recovery(providers)

    assert (result.found, result.settled_elsewhere, result.errors) == (1, 1, 0)
    counts = result.counts()
    assert counts["found"] == sum(value for key, value in counts.items() if key not in ("found", "released_reservations"))
