"""Durable generation job queue helpers (Redis/RQ)."""

from __future__ import annotations

from redis import Redis
from rq import Queue
from rq.job import Job

from config import settings


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_generation_queue() -> Queue:
    """Return the configured generation queue."""
    return Queue(
        name=settings.GENERATION_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=_job_timeout_seconds(),
    )


def _job_timeout_seconds() -> int:
    # Leave the worker room to record the timeout before RQ kills the job.
    return max(int(settings.GENERATION_MAX_RUNNING_SECONDS), 1) + 60


def enqueue_generation_job(job_id: str) -> Job:
    """Enqueue a generation job.

    No RQ retry: a failed attempt is final and the user starts a new job.
    The worker's queued->running claim keeps a duplicate delivery from running twice.
    """
    queue = get_generation_queue()
    return queue.enqueue(
        "services.generation.process_generation_job",
        job_id,
        job_id=f"generation:{job_id}",
        job_timeout=_job_timeout_seconds(),
        result_ttl=86400,
        failure_ttl=86400,
    )
