import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from fastapi import HTTPException
from sqlalchemy import func, insert
from sqlalchemy.future import select

from models.advisory_lock import AdvisoryLock
from models.credit_transaction import CreditTransaction
from services.credits import earn, ensure_user, freeze, get_account_balance, unfreeze
from services.errors import GenerationInProgressError, InsufficientCreditsError
from services.generation import get_generation_task, request_generation, settle_generation_task
from services.generation_lock import acquire_lock, release_lock, request_lock_key, settlement_lock_key
from services.generation_queue import process_generation_poll_job_async
from services.idempotency import generation_reference
from services.providers.types import ProviderTaskStatus, ProviderTerminalFailure, ProviderTransientError
from services.referrals import get_referral_for_user, register_referral


USER_ID = "gen-user"


async def _fund(db, credits: int):
    await ensure_user(db, USER_ID)
    await earn(db, USER_ID, credits, source="purchase", reference_id=f"purchase:{USER_ID}:{credits}")


async def _entries(db, task_id: str):
    result = await db.execute(
        select(CreditTransaction.type, func.count(CreditTransaction.id))
        .where(CreditTransaction.reference_id.like(f"gen:{task_id}:%"))
        .group_by(CreditTransaction.type)
    )
    return dict(result.all())


@pytest.mark.asyncio
async def test_failed_generation_refunds_the_reservation(db, providers):
    await _fund(db, 20)
    with patch("services.generation.settings.CREDIT_COST_IMAGE_GENERATION", 15):
        task = await request_generation(db, USER_ID, kind="image", prompt="a lighthouse", providers=providers)

    assert task.status == "processing"
    assert task.credits_reserved == 15
    account = await get_account_balance(db, USER_ID)
    assert account.available_balance == 5

    providers.generation.statuses[task.external_task_id] = ProviderTaskStatus(state="fail", error="nsfw_blocked")
    result = await settle_generation_task(db, task.id, providers=providers, settled_by="live")

    assert result.applied is True
    assert result.outcome == "failed"
    task = await get_generation_task(db, task.id)
    assert task.status == "failed"
    assert task.error_message == "nsfw_blocked"
    account = await get_account_balance(db, USER_ID)
    assert (account.balance, account.available_balance) == (20, 20)
    assert await _entries(db, task.id) == {"freeze": 1, "unfreeze": 1}


@pytest.mark.asyncio
async def test_successful_generation_charges_once_across_settlers(db, providers):
    await _fund(db, 30)
    task = await request_generation(db, USER_ID, kind="image", prompt="a red fox", providers=providers)
    providers.generation.statuses[task.external_task_id] = ProviderTaskStatus(
        state="success",
        result_url="https://provider.test/out.png",
    )

    live = await settle_generation_task(db, task.id, providers=providers, settled_by="live")
    recovery = await settle_generation_task(db, task.id, providers=providers, settled_by="recovery")

    assert (live.outcome, live.applied) == ("completed", True)
    assert (recovery.outcome, recovery.applied) == ("already_settled", False)
    task = await get_generation_task(db, task.id)
    assert task.status == "completed"
    assert task.settled_by == "live"
    assert task.asset_url == "https://cdn.test/assets/1.png"
    assert task.lock_id is None
    assert task.completed_at is not None
    account = await get_account_balance(db, USER_ID)
    assert (account.balance, account.frozen_balance, account.total_spent) == (25, 0, 5)
    assert await _entries(db, task.id) == {"freeze": 1, "unfreeze": 1, "spend": 1}


@pytest.mark.asyncio
async def test_settlement_while_lock_is_held_is_a_noop(session_maker, db, providers):
    await _fund(db, 30)
    task = await request_generation(db, USER_ID, kind="image", prompt="a city at night", providers=providers)
    providers.generation.statuses[task.external_task_id] = ProviderTaskStatus(
        state="success",
        result_url="https://provider.test/out.png",
    )

    async with session_maker() as other:
        held = await acquire_lock(other, settlement_lock_key(task.id), holder="live", ttl_seconds=300)
        assert held is not None

        contended = await settle_generation_task(db, task.id, providers=providers, settled_by="recovery")
        assert (contended.outcome, contended.applied) == ("lock_contention", False)
        assert (await get_generation_task(db, task.id)).status == "processing"
        assert await _entries(db, task.id) == {"freeze": 1}

        assert await release_lock(other, held) is True

    settled = await settle_generation_task(db, task.id, providers=providers, settled_by="recovery")
    assert settled.outcome == "completed"
    assert await _entries(db, task.id) == {"freeze": 1, "unfreeze": 1, "spend": 1}


@pytest.mark.asyncio
async def test_expired_lock_is_taken_over(db, providers):
    await _fund(db, 30)
    task = await request_generation(db, USER_ID, kind="image", prompt="a glacier", providers=providers)
    providers.generation.statuses[task.external_task_id] = ProviderTaskStatus(state="fail", error="timeout")

    stale = datetime.now(timezone.utc) - timedelta(minutes=30)
    await db.execute(
        insert(AdvisoryLock).values(
            lock_key=settlement_lock_key(task.id),
            lock_id="crashed-holder",
            holder="live",
            acquired_at=stale,
            expires_at=stale + timedelta(minutes=5),
        )
    )
    await db.commit()

    result = await settle_generation_task(db, task.id, providers=providers, settled_by="recovery")

    assert result.outcome == "failed"
    remaining = await db.execute(select(func.count()).select_from(AdvisoryLock))
    assert remaining.scalar() == 0


@pytest.mark.asyncio
async def test_success_without_result_url_stays_processing(db, providers):
    await _fund(db, 30)
    task = await request_generation(db, USER_ID, kind="image", prompt="a canyon", providers=providers)
    providers.generation.statuses[task.external_task_id] = ProviderTaskStatus(state="success")

    with pytest.raises(ProviderTransientError):
        await settle_generation_task(db, task.id, providers=providers, settled_by="live")

    assert (await get_generation_task(db, task.id)).status == "processing"
    account = await get_account_balance(db, USER_ID)
    assert account.frozen_balance == 5


@pytest.mark.asyncio
async def test_pending_provider_state_leaves_task_untouched(db, providers):
    await _fund(db, 30)
    task = await request_generation(db, USER_ID, kind="image", prompt="a meadow", providers=providers)
    providers.generation.statuses[task.external_task_id] = ProviderTaskStatus(state="pending")

    result = await settle_generation_task(db, task.id, providers=providers, settled_by="status_poll")

    assert (result.outcome, result.applied) == ("still_processing", False)
    assert await _entries(db, task.id) == {"freeze": 1}


@pytest.mark.asyncio
async def test_request_rejected_before_provider_call_when_credits_short(db, providers):
    await _fund(db, 10)

    with pytest.raises(InsufficientCreditsError) as exc_info:
        await request_generation(db, USER_ID, kind="video", prompt="a storm", providers=providers)

    assert exc_info.value.required == 20
    assert exc_info.value.available == 10
    assert providers.generation.submitted == []


@pytest.mark.asyncio
async def test_submit_failure_releases_reservation(db, providers):
    await _fund(db, 30)
    providers.generation.submit_error = ProviderTerminalFailure("model unavailable")

    with pytest.raises(HTTPException) as exc_info:
        await request_generation(db, USER_ID, kind="image", prompt="a harbor", providers=providers)

    assert exc_info.value.status_code == 502
    account = await get_account_balance(db, USER_ID)
    assert (account.balance, account.frozen_balance) == (30, 0)


@pytest.mark.asyncio
async def test_concurrent_request_for_same_kind_is_rejected(session_maker, db, providers):
    await _fund(db, 30)
    async with session_maker() as other:
        held = await acquire_lock(other, request_lock_key(USER_ID, "image"), holder="request", ttl_seconds=60)

        with pytest.raises(GenerationInProgressError) as exc_info:
            await request_generation(db, USER_ID, kind="image", prompt="a bridge", providers=providers)
        assert exc_info.value.status_code == 409

        await release_lock(other, held)

    task = await request_generation(db, USER_ID, kind="image", prompt="a bridge", providers=providers)
    assert task.status == "processing"


@pytest.mark.asyncio
async def test_poll_job_reschedules_until_terminal(session_maker, db, providers):
    await _fund(db, 30)
    task = await request_generation(db, USER_ID, kind="image", prompt="a forest", providers=providers)

    with (
        patch("services.generation_queue.async_session_maker", session_maker),
        patch("services.generation_queue.build_providers", return_value=providers),
        patch("services.generation_queue.enqueue_generation_poll_job") as enqueue,
    ):
        outcome = await process_generation_poll_job_async(task.id, attempt=1)
        assert outcome == "still_processing"
        enqueue.assert_called_once_with(task.id, 2)

        providers.generation.statuses[task.external_task_id] = ProviderTaskStatus(
            state="success",
            result_url="https://provider.test/out.png",
        )
        outcome = await process_generation_poll_job_async(task.id, attempt=2)
        assert outcome == "completed"
        assert enqueue.call_count == 1

    task = await get_generation_task(db, task.id)
    assert task.status == "completed"
    assert task.settled_by == "live"


@pytest.mark.asyncio
async def test_concurrent_settlers_charge_exactly_once(session_maker, db, providers):
    await _fund(db, 30)
    task = await request_generation(db, USER_ID, kind="image", prompt="a comet", providers=providers)
    providers.generation.statuses[task.external_task_id] = ProviderTaskStatus(
        state="success",
        result_url="https://provider.test/out.png",
    )

    async def _settle(settled_by: str):
        async with session_maker() as session:
            return await settle_generation_task(session, task.id, providers=providers, settled_by=settled_by)

    results = await asyncio.gather(_settle("live"), _settle("recovery"))

    assert sorted(result.applied for result in results) == [False, True]
    loser = next(result for result in results if not result.applied)
    assert loser.outcome in ("lock_contention", "already_settled")
    assert await _entries(db, task.id) == {"freeze": 1, "unfreeze": 1, "spend": 1}
    account = await get_account_balance(db, USER_ID)
    assert (account.balance, account.frozen_balance, account.total_spent) == (25, 0, 5)


@pytest.mark.asyncio
async def test_released_credits_cannot_be_frozen_during_settlement(session_maker, db, providers):
    await _fund(db, 5)
    task = await request_generation(db, USER_ID, kind="image", prompt="an aurora", providers=providers)
    providers.generation.statuses[task.external_task_id] = ProviderTaskStatus(
        state="success",
        result_url="https://provider.test/out.png",
    )

    async def _settle():
        async with session_maker() as session:
            return await settle_generation_task(session, task.id, providers=providers, settled_by="live")

    async def _competing_freeze() -> bool:
        async with session_maker() as session:
            try:
                await freeze(session, USER_ID, 5, reason="competing request", reference_id="competing:freeze")
            except InsufficientCreditsError:
                await session.rollback()
                return False
            return True

    settled, froze = await asyncio.gather(_settle(), _competing_freeze())

    assert settled.outcome == "completed"
    assert froze is False
    task = await get_generation_task(db, task.id)
    assert task.error_message is None
    account = await get_account_balance(db, USER_ID)
    assert (account.balance, account.frozen_balance, account.total_spent) == (0, 0, 5)
    assert await _entries(db, task.id) == {"freeze": 1, "unfreeze": 1, "spend": 1}


@pytest.mark.asyncio
async def test_spend_recorded_after_an_interrupted_release_is_not_released_twice(db, providers):
    await _fund(db, 30)
    task = await request_generation(db, USER_ID, kind="image", prompt="a dune", providers=providers)
    await unfreeze(
        db, USER_ID, 5, reason="released before crash", reference_id=generation_reference(task.id, "unfreeze")
    )
    providers.generation.statuses[task.external_task_id] = ProviderTaskStatus(
        state="success",
        result_url="https://provider.test/out.png",
    )

    result = await settle_generation_task(db, task.id, providers=providers, settled_by="recovery")

    assert result.outcome == "completed"
    account = await get_account_balance(db, USER_ID)
    assert (account.balance, account.frozen_balance, account.total_spent) == (25, 0, 5)
    assert await _entries(db, task.id) == {"freeze": 1, "unfreeze": 1, "spend": 1}


@pytest.mark.asyncio
async def test_first_completed_generation_pays_the_referrer(db, providers):
    await ensure_user(db, "referrer")
    await _fund(db, 30)
    await register_referral(db, USER_ID, "referrer")

    for prompt in ("a kite", "a boat"):
        task = await request_generation(db, USER_ID, kind="image", prompt=prompt, providers=providers)
        providers.generation.statuses[task.external_task_id] = ProviderTaskStatus(
            state="success",
            result_url="https://provider.test/out.png",
        )
        await settle_generation_task(db, task.id, providers=providers, settled_by="live")

    referrer = await get_account_balance(db, "referrer")
    assert int(referrer.balance) == 10
    referral = await get_referral_for_user(db, USER_ID)
    assert referral.credits_awarded is True
    assert referral.first_generation_completed is True
    assert referral.reward_trigger == "first_generation"
