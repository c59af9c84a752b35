"""
Generic background worker runner.

Reads the desired job name from CLI args or the WORKER_JOB environment
variable and delegates to the appropriate scheduler.
"""

import asyncio
import os
import sys
from collections.abc import Awaitable, Callable

from eventsync.config import settings
from eventsync.infrastructure.observability.logging import get_logger, setup_logging
from eventsync.jobs.clock_job import start_clock_scheduler
from eventsync.jobs.sync_job import start_sync_scheduler
from eventsync.jobs.task_handlers import start_task_queue_worker
from eventsync.jobs.wipeout_job import start_wipeout_scheduler

logger = get_logger(__name__)

JobCoroutine = Callable[[], Awaitable[None]]

JOB_REGISTRY: dict[str, JobCoroutine] = {
    "task_queue": start_task_queue_worker,
    "clock": start_clock_scheduler,
    "wipeout": start_wipeout_scheduler,
    "sync": start_sync_scheduler,
}


def _resolve_job_name() -> str:
    """Pick the target job from CLI args or WORKER_JOB env variable."""
    if len(sys.argv) > 1:
        return sys.argv[1].strip().lower()
    return os.getenv("WORKER_JOB", "task_queue").strip().lower()


async def run_worker(job_name: str | None = None) -> None:
    """Run the requested background job."""
    name = (job_name or _resolve_job_name()).strip().lower()
    if name not in JOB_REGISTRY:
        raise ValueError(
            f"Unknown worker job '{name}'. "
            f"Available jobs: {', '.join(sorted(JOB_REGISTRY.keys()))}"
        )

    logger.info("Starting background worker", job=name)
    await JOB_REGISTRY[name]()


def main() -> None:
    """CLI entrypoint."""
    setup_logging("DEBUG" if settings.debug else "INFO", json_logs=not settings.is_dev())
    job_name = _resolve_job_name()
    asyncio.run(run_worker(job_name))


if __name__ == "__main__":
    main()
