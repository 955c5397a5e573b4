"""Generation job dispatch, state machine and worker pipeline.

Every status change is a compare-and-set UPDATE guarded by the allowed source
states, so a job only moves forward along

    queued -> running -> succeeded | failed
    queued | running -> canceled
    queued -> failed   (dispatch error or queue stall)

and a terminal row is never written again.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Dict, List, Optional, Sequence
import uuid

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.generation_job import (
    ACTIVE_JOB_STATUSES,
    GENERATION_MODES,
    TERMINAL_JOB_STATUSES,
    GenerationJob,
)
from services import storage
from services.credits import debit_for_generation, get_balance
from services.errors import (
    ArtifactNotReady,
    InsufficientCredits,
    JobNotCancelable,
    NotFound,
    PipelineFailure,
    QueueUnavailable,
    ValidationError,
)
from services.generation_queue import enqueue_generation_job
from services.job_events import publish_job_event
from services.onboarding import claim_session, latest_draft
from services.tailoring import generate_tailored_latex

logger = logging.getLogger(__name__)

MODE_ALIASES = {
    "quick": "QUICK",
    "deep": "DEEP",
    "scratch": "FROM_SCRATCH",
    "from_scratch": "FROM_SCRATCH",
}
GENERIC_FAILURE_MESSAGE = "Generation failed. Please try again."
QUEUE_FAILURE_MESSAGE = "Generation queue unavailable. Please try again."
QUEUE_STALL_MESSAGE = "Generation could not be started. Please try again."


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def timeout_message(seconds: Optional[int] = None) -> str:
    limit = int(seconds or settings.GENERATION_MAX_RUNNING_SECONDS)
    return f"Generation timed out after {limit} seconds. Please try again."


def normalize_mode(mode: Optional[str]) -> str:
    raw = str(mode or "QUICK").strip()
    if raw.upper() in GENERATION_MODES:
        return raw.upper()
    alias = MODE_ALIASES.get(raw.lower())
    if alias:
        return alias
    raise ValidationError(f"Mode must be one of: {', '.join(GENERATION_MODES)}")


def _validate_job_request(jd_text: Optional[str], resume_reference: Optional[str], resume_text: Optional[str]) -> None:
    if not jd_text or not isinstance(jd_text, str) or not jd_text.strip():
        raise ValidationError("jdText is required")
    if len(jd_text) > settings.MAX_JD_LENGTH:
        raise ValidationError(f"Job description exceeds maximum length ({settings.MAX_JD_LENGTH} characters)")
    if not str(resume_reference or "").strip():
        raise ValidationError("resumeReference is required")
    if resume_text is not None and len(resume_text) > settings.MAX_RESUME_TEXT_LENGTH:
        raise ValidationError(
            f"Resume text exceeds maximum length ({settings.MAX_RESUME_TEXT_LENGTH} characters)"
        )


def _scoped_resume_reference(account_id: str, resume_reference: str, session_id: Optional[str]) -> str:
    """Resolve a resume reference the account (or its claimed session) owns."""
    try:
        prefixes = [storage.account_prefix(account_id)]
        if session_id:
            prefixes.append(storage.session_prefix(session_id))
        bucket, object_path = storage.split_reference(resume_reference)
        object_path = storage.scoped_object_path(bucket, object_path, prefixes)
        return storage.make_reference(bucket, object_path)
    except ValueError as exc:
        raise ValidationError(f"resumeReference is not usable: {exc}") from exc


# ---------------------------------------------------------------------------
# State transitions
# ---------------------------------------------------------------------------


async def _transition(
    db: AsyncSession,
    job_id: str,
    from_states: Sequence[str],
    expected_lock_id: Optional[str] = None,
    **values: Any,
) -> bool:
    conditions = [GenerationJob.id == job_id, GenerationJob.status.in_(tuple(from_states))]
    if expected_lock_id is not None:
        conditions.append(GenerationJob.lock_id == expected_lock_id)
    result = await db.execute(
        update(GenerationJob)
        .where(*conditions)
        .values(updated_at=_utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


async def get_job(db: AsyncSession, job_id: str) -> Optional[GenerationJob]:
    result = await db.execute(
        select(GenerationJob).where(GenerationJob.id == job_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def claim_job(db: AsyncSession, job_id: str) -> Optional[str]:
    """Move queued -> running. Returns the lock id, or None if another worker or a cancel got there first."""
    lock_id = str(uuid.uuid4())
    claimed = await _transition(
        db,
        job_id,
        ("queued",),
        status="running",
        started_at=_utcnow(),
        lock_id=lock_id,
        progress=5,
        progress_stage="running",
    )
    return lock_id if claimed else None


async def update_progress(
    db: AsyncSession,
    job_id: str,
    progress: int,
    stage: Optional[str] = None,
    lock_id: Optional[str] = None,
) -> bool:
    """Advisory progress update; ignored unless the job is running."""
    values: Dict[str, Any] = {"progress": max(0, min(int(progress), 100))}
    if stage:
        values["progress_stage"] = stage
    return await _transition(db, job_id, ("running",), expected_lock_id=lock_id, **values)


async def complete_job(db: AsyncSession, job_id: str, artifact_ref: str, lock_id: Optional[str] = None) -> bool:
    return await _transition(
        db,
        job_id,
        ("running",),
        expected_lock_id=lock_id,
        status="succeeded",
        progress=100,
        progress_stage="succeeded",
        result_artifact_ref=artifact_ref,
        error_message=None,
        completed_at=_utcnow(),
    )


async def fail_job(
    db: AsyncSession,
    job_id: str,
    message: str,
    from_states: Sequence[str] = ("running",),
    lock_id: Optional[str] = None,
) -> bool:
    return await _transition(
        db,
        job_id,
        from_states,
        expected_lock_id=lock_id,
        status="failed",
        progress_stage="failed",
        error_message=(message or GENERIC_FAILURE_MESSAGE)[:1000],
        completed_at=_utcnow(),
    )


async def _publish_current(db: AsyncSession, job_id: str) -> None:
    job = await get_job(db, job_id)
    await publish_job_event(job)


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


async def create_generation_job(
    db: AsyncSession,
    account_id: str,
    *,
    mode: Optional[str],
    jd_text: Optional[str],
    resume_reference: Optional[str],
    resume_text: Optional[str] = None,
    session_id: Optional[str] = None,
    draft_id: Optional[str] = None,
) -> GenerationJob:
    """Admission check, insert as queued, hand off to the queue.

    The credit check runs before the row is inserted, so a rejected request
    leaves nothing behind. No credit is taken here; the worker charges after
    success.
    """
    normalized_mode = normalize_mode(mode)
    _validate_job_request(jd_text, resume_reference, resume_text)
    resume_reference = _scoped_resume_reference(account_id, str(resume_reference), session_id)

    balance = await get_balance(db, account_id)
    if balance <= 0:
        raise InsufficientCredits("Insufficient credits")

    job_id = str(uuid.uuid4())
    job = GenerationJob(
        id=job_id,
        account_id=account_id,
        status="queued",
        progress=0,
        progress_stage="queued",
        mode=normalized_mode,
        jd_text=jd_text,
        resume_reference=resume_reference,
        resume_text=resume_text or None,
        session_id=session_id,
        draft_id=draft_id,
        queue_job_id=f"generation:{job_id}",
        updated_at=_utcnow(),
    )
    db.add(job)
    await db.commit()
    await db.refresh(job)
    logger.info("Created generation job %s for account %s (mode=%s)", job.id, account_id, normalized_mode)

    try:
        enqueue_generation_job(job.id)
    except Exception as exc:
        logger.error("Generation job %s could not be enqueued: %s", job.id, exc)
        await fail_job(db, job.id, QUEUE_FAILURE_MESSAGE, from_states=("queued",))
        raise QueueUnavailable("Generation queue unavailable. Check Redis/worker availability and retry.") from exc

    return job


async def create_job_from_session(
    db: AsyncSession,
    session_id: Optional[str],
    account_id: str,
    mode: Optional[str] = None,
) -> GenerationJob:
    """Claim an onboarding session and queue a job from its latest draft.

    Repeating the call for the same draft returns the job already created
    from it unless that job failed or was canceled.
    """
    session = await claim_session(db, session_id, account_id)
    draft = await latest_draft(db, session.id)
    if draft is None:
        raise ValidationError("No draft found for this session. Please complete the onboarding form first.")

    result = await db.execute(
        select(GenerationJob)
        .where(
            GenerationJob.account_id == account_id,
            GenerationJob.draft_id == draft.id,
            GenerationJob.status.in_(("queued", "running", "succeeded")),
        )
        .order_by(GenerationJob.created_at.desc())
        .limit(1)
    )
    existing = result.scalar_one_or_none()
    if existing is not None:
        return existing

    return await create_generation_job(
        db,
        account_id,
        mode=mode,
        jd_text=draft.jd_text,
        resume_reference=storage.make_reference(draft.resume_bucket, draft.resume_object_path),
        resume_text=draft.resume_extracted_text,
        session_id=session.id,
        draft_id=draft.id,
    )


async def cancel_job(db: AsyncSession, job_id: str, account_id: str) -> GenerationJob:
    """Best-effort cancel. A running worker's later result is discarded uncharged."""
    job = await _get_owned_job(db, job_id, account_id)
    if job.status in TERMINAL_JOB_STATUSES:
        raise JobNotCancelable(f"Job is already {job.status}")

    canceled = await _transition(
        db,
        job_id,
        ACTIVE_JOB_STATUSES,
        status="canceled",
        progress_stage="canceled",
        completed_at=_utcnow(),
    )
    job = await get_job(db, job_id)
    if not canceled:
        raise JobNotCancelable(f"Job is already {job.status}")
    logger.info("Generation job %s canceled by account %s", job_id, account_id)
    await publish_job_event(job)
    return job


# ---------------------------------------------------------------------------
# Worker
# ---------------------------------------------------------------------------


async def _load_resume_text(job: GenerationJob) -> str:
    if job.resume_text and job.resume_text.strip():
        return job.resume_text
    if not storage.is_text_resume(job.resume_reference):
        raise PipelineFailure(
            "This resume format has no readable text. Please upload a .txt, .md or .tex resume or paste its text."
        )
    try:
        text = await asyncio.to_thread(storage.read_text, job.resume_reference)
    except (OSError, ValueError) as exc:
        logger.warning("Resume %s unreadable for job %s: %s", job.resume_reference, job.id, exc)
        raise PipelineFailure("The uploaded resume could not be read. Please upload it again.") from exc
    if not text.strip():
        raise PipelineFailure("The uploaded resume is empty.")
    return text


async def _set_progress(job_id: str, lock_id: str, progress: int, stage: str) -> None:
    async with async_session_maker() as db:
        if await update_progress(db, job_id, progress, stage, lock_id=lock_id):
            await _publish_current(db, job_id)


async def _run_pipeline(job: GenerationJob, lock_id: str) -> str:
    resume_text = await _load_resume_text(job)
    await _set_progress(job.id, lock_id, 20, "generating")
    latex = await asyncio.to_thread(generate_tailored_latex, job.jd_text, resume_text, job.mode)
    await _set_progress(job.id, lock_id, 90, "storing")
    return await asyncio.to_thread(
        storage.put_text,
        settings.ARTIFACT_BUCKET,
        f"{job.account_id}/{job.id}.tex",
        latex,
    )


async def _fail_running(job_id: str, lock_id: str, message: str) -> None:
    async with async_session_maker() as db:
        if await fail_job(db, job_id, message, lock_id=lock_id):
            await _publish_current(db, job_id)
        else:
            logger.info("Generation job %s already left running before failure was recorded", job_id)


async def process_generation_job_async(job_id: str) -> Optional[str]:
    """Execute one generation job. Returns the job's final status, or None if not claimed."""
    async with async_session_maker() as db:
        lock_id = await claim_job(db, job_id)
        if lock_id is None:
            job = await get_job(db, job_id)
            logger.info(
                "Generation job %s not claimable (status=%s); skipping",
                job_id,
                job.status if job else "missing",
            )
            return None
        job = await get_job(db, job_id)
        await publish_job_event(job)

    max_seconds = max(int(settings.GENERATION_MAX_RUNNING_SECONDS), 1)
    try:
        artifact_ref = await asyncio.wait_for(_run_pipeline(job, lock_id), timeout=max_seconds)
    except asyncio.TimeoutError:
        logger.warning("Generation job %s exceeded %ss", job_id, max_seconds)
        await _fail_running(job_id, lock_id, timeout_message(max_seconds))
        return "failed"
    except PipelineFailure as exc:
        logger.warning("Generation job %s failed: %s", job_id, exc)
        await _fail_running(job_id, lock_id, str(exc))
        return "failed"
    except Exception as exc:
        logger.exception("Generation job %s crashed: %s", job_id, exc)
        await _fail_running(job_id, lock_id, GENERIC_FAILURE_MESSAGE)
        return "failed"

    async with async_session_maker() as db:
        succeeded = await complete_job(db, job_id, artifact_ref, lock_id=lock_id)
        final = await get_job(db, job_id)

    if not succeeded:
        logger.info(
            "Generation job %s finished after leaving running (status=%s); result discarded, not charged",
            job_id,
            final.status if final else "missing",
        )
        bucket, object_path = storage.split_reference(artifact_ref)
        storage.remove_object(bucket, object_path)
        return final.status if final else None

    await publish_job_event(final)
    # Charged strictly after the succeeded state is committed.
    await debit_for_generation(job_id, final.account_id)
    logger.info("Generation job %s succeeded", job_id)
    return "succeeded"


def process_generation_job(job_id: str) -> None:
    """RQ worker entrypoint for generation jobs."""
    asyncio.run(process_generation_job_async(job_id))


async def expire_stalled_generation_jobs(
    max_running_seconds: Optional[int] = None,
    max_queued_seconds: Optional[int] = None,
) -> int:
    """Force-fail jobs stuck running past the limit, or queued with no worker picking them up."""
    running_limit = max(int(max_running_seconds or settings.GENERATION_MAX_RUNNING_SECONDS), 1)
    queued_limit = max(int(max_queued_seconds or settings.GENERATION_MAX_QUEUED_SECONDS), 1)
    now = _utcnow()
    expired = 0
    async with async_session_maker() as db:
        running = await db.execute(
            select(GenerationJob.id).where(
                GenerationJob.status == "running",
                GenerationJob.started_at < now - timedelta(seconds=running_limit),
            )
        )
        for job_id in running.scalars().all():
            if await fail_job(db, job_id, timeout_message(running_limit)):
                expired += 1
                await _publish_current(db, job_id)

        queued = await db.execute(
            select(GenerationJob.id).where(
                GenerationJob.status == "queued",
                GenerationJob.created_at < now - timedelta(seconds=queued_limit),
            )
        )
        for job_id in queued.scalars().all():
            if await fail_job(db, job_id, QUEUE_STALL_MESSAGE, from_states=("queued",)):
                expired += 1
                await _publish_current(db, job_id)

    if expired:
        logger.warning("Expired %d stalled generation jobs", expired)
    return expired


# ---------------------------------------------------------------------------
# Status reporter
# ---------------------------------------------------------------------------


async def _get_owned_job(db: AsyncSession, job_id: str, account_id: str) -> GenerationJob:
    # Ownership is part of the query: another account's job looks exactly like a missing one.
    result = await db.execute(
        select(GenerationJob)
        .where(GenerationJob.id == job_id, GenerationJob.account_id == account_id)
        .execution_options(populate_existing=True)
    )
    job = result.scalar_one_or_none()
    if job is None:
        raise NotFound("Job not found")
    return job


def serialize_job_status(job: GenerationJob) -> Dict[str, Any]:
    return {
        "id": job.id,
        "status": job.status,
        "progress": int(job.progress or 0),
        "progress_stage": job.progress_stage,
        "mode": job.mode,
        "error_message": job.error_message,
        "result_artifact_ref": job.result_artifact_ref,
        "created_at": job.created_at.isoformat() if job.created_at else None,
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
        "updated_at": job.updated_at.isoformat() if job.updated_at else None,
    }


async def get_job_status(db: AsyncSession, job_id: str, account_id: str) -> Dict[str, Any]:
    """Read-only snapshot of an owned job."""
    job = await _get_owned_job(db, job_id, account_id)
    return serialize_job_status(job)


async def list_jobs(db: AsyncSession, account_id: str, limit: int = 20) -> List[Dict[str, Any]]:
    result = await db.execute(
        select(GenerationJob)
        .where(GenerationJob.account_id == account_id)
        .order_by(GenerationJob.created_at.desc())
        .limit(max(1, min(int(limit), 100)))
    )
    return [serialize_job_status(job) for job in result.scalars().all()]


async def get_job_artifact(db: AsyncSession, job_id: str, account_id: str) -> Dict[str, Any]:
    """Return the generated LaTeX of an owned, succeeded job."""
    job = await _get_owned_job(db, job_id, account_id)
    if job.status != "succeeded" or not job.result_artifact_ref:
        raise ArtifactNotReady(f"Job is {job.status}; no document is available")
    try:
        latex = await asyncio.to_thread(storage.read_text, job.result_artifact_ref)
    except (OSError, ValueError) as exc:
        logger.warning("Artifact %s for job %s unreadable: %s", job.result_artifact_ref, job_id, exc)
        raise NotFound("Generated document not found") from exc
    return {"id": job.id, "artifact_ref": job.result_artifact_ref, "latex_text": latex}


def store_account_resume(
    account_id: str,
    filename: Optional[str],
    content_type: Optional[str],
    data: bytes,
) -> Dict[str, Any]:
    """Write an uploaded resume under the account's own storage prefix."""
    try:
        stored = storage.store_resume(storage.account_prefix(account_id), filename, content_type, data)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
    logger.info("Stored resume %s for account %s", stored["reference"], account_id)
    return stored
