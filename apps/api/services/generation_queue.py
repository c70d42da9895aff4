"""Durable generation poll queue helpers (Redis/RQ)."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

from redis import Redis
from rq import Queue, Retry
from rq.job import Job

from config import settings
from database import async_session_maker
from services.generation import settle_generation_task
from services.providers import build_providers
from services.providers.types import ProviderTransientError


logger = logging.getLogger(__name__)

GENERATION_QUEUE_NAME = "generation_jobs"


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_generation_queue() -> Queue:
    """Return the configured generation poll queue."""
    return Queue(
        name=GENERATION_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=600,
    )


def enqueue_generation_poll_job(task_id: str, attempt: int = 1) -> Job:
    """Schedule a live poll of the provider for ``task_id``."""
    queue = get_generation_queue()
    return queue.enqueue_in(
        timedelta(seconds=max(int(settings.GENERATION_POLL_INTERVAL_SECONDS), 1)),
        "services.generation_queue.process_generation_poll_job",
        task_id,
        attempt,
        job_id=f"generation:{task_id}:{attempt}",
        retry=Retry(max=3, interval=[10, 30, 120]),
        job_timeout=600,
        result_ttl=86400,
        failure_ttl=86400,
    )


async def process_generation_poll_job_async(task_id: str, attempt: int = 1) -> str:
    """Poll once and settle; reschedule while the provider is still working.

    After ``GENERATION_POLL_MAX_ATTEMPTS`` the task is left for the recovery
    scheduler.
    """
    providers = build_providers(settings)
    try:
        async with async_session_maker() as db:
            try:
                result = await settle_generation_task(db, task_id, providers=providers, settled_by="live")
                outcome = result.outcome
            except ProviderTransientError as exc:
                logger.warning("Transient provider error polling task %s (attempt %s): %s", task_id, attempt, exc)
                outcome = "transient_error"
    finally:
        await providers.aclose()

    if outcome in ("still_processing", "transient_error"):
        if attempt < int(settings.GENERATION_POLL_MAX_ATTEMPTS):
            enqueue_generation_poll_job(task_id, attempt + 1)
        else:
            logger.warning("Task %s still unsettled after %s polls; leaving it to recovery", task_id, attempt)
    return outcome


def process_generation_poll_job(task_id: str, attempt: int = 1) -> str:
    """RQ worker entrypoint for generation poll jobs."""
    return asyncio.run(process_generation_poll_job_async(task_id, attempt))
