"""RQ worker process entrypoint for generation poll jobs.

A poll job lost with a crashed worker is not redelivered, so unless
``--skip-recovery`` is given the worker first runs one recovery pass over
tasks left unsettled before it starts consuming the queue.
"""

import argparse
import asyncio
import logging
from typing import List, Optional

from rq import Worker

from config import settings
from database import engine
from services.generation_queue import GENERATION_QUEUE_NAME, get_redis_connection
from services.providers import build_providers
from services.recovery import run_stuck_task_recovery


async def recover_before_start() -> str:
    providers = build_providers(settings)
    try:
        result = await run_stuck_task_recovery(providers)
    finally:
        await providers.aclose()
        # Pooled connections are bound to this loop; every job runs on its own.
        await engine.dispose()

    if result.status == "skipped":
        print("⏭️ Startup recovery skipped: another process holds the recovery lock.")
    else:
        counts = result.counts()
        print(
            f"♻️ Startup recovery {result.status}: found={counts['found']} completed={counts['completed']} "
            f"failed={counts['failed']} released={counts['released_reservations']} errors={counts['errors']}"
        )
    return result.status


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Consume generation poll jobs.")
    parser.add_argument("--burst", action="store_true", help="Exit once the queue is empty.")
    parser.add_argument("--skip-recovery", action="store_true", help="Start consuming without a recovery pass.")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    if settings.RECOVERY_ENABLED and not args.skip_recovery:
        try:
            asyncio.run(recover_before_start())
        except Exception as exc:
            print(f"⚠️ Startup recovery failed: {exc}")

    worker = Worker([GENERATION_QUEUE_NAME], connection=get_redis_connection())
    worker.work(with_scheduler=True, burst=args.burst)


if __name__ == "__main__":
    main()
