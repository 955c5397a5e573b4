"""Best-effort job status notifications over Redis pub/sub.

Subscribers get a hint to poll sooner. The database row stays authoritative.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict

import redis.asyncio as redis

from config import settings

logger = logging.getLogger(__name__)


def job_channel(account_id: str) -> str:
    return f"generation_jobs:{account_id}"


def job_event_payload(job: Any) -> Dict[str, Any]:
    return {
        "id": job.id,
        "status": job.status,
        "progress": int(job.progress or 0),
        "progress_stage": job.progress_stage,
        "error_message": job.error_message,
        "updated_at": job.updated_at.isoformat() if job.updated_at else None,
    }


async def publish_job_event(job: Any) -> None:
    """Publish a committed job snapshot. Never raises."""
    if not settings.JOB_EVENTS_ENABLED or job is None:
        return
    try:
        client = redis.from_url(settings.REDIS_URL, decode_responses=True)
        try:
            await client.publish(job_channel(job.account_id), json.dumps(job_event_payload(job)))
        finally:
            await client.aclose()
    except Exception as exc:
        logger.warning("Job event publish skipped for %s: %s", getattr(job, "id", "?"), exc)
