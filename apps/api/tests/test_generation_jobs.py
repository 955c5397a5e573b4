import asyncio
from datetime import datetime, timedelta, timezone
import time
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import update
from sqlalchemy.future import select

from config import settings
import main
from models.credit_ledger import CreditLedgerEntry
from models.generation_job import GenerationJob
from services import storage
from services.credits import adjust, get_balance, get_ledger_sum
from services.errors import PipelineFailure
from services.generation import (
    GENERIC_FAILURE_MESSAGE,
    QUEUE_FAILURE_MESSAGE,
    QUEUE_STALL_MESSAGE,
    claim_job,
    complete_job,
    expire_stalled_generation_jobs,
    process_generation_job_async,
)
from services.session_token import create_session_token


ACCOUNT_ID = "generation-user"
OTHER_ACCOUNT_ID = "generation-user-other"
AUTH_HEADER = {"Authorization": f"Bearer {create_session_token(ACCOUNT_ID)['token']}"}
OTHER_AUTH_HEADER = {"Authorization": f"Bearer {create_session_token(OTHER_ACCOUNT_ID)['token']}"}
FAKE_LATEX = "\\documentclass{article}\n\\begin{document}Jane Doe\\end{document}"
JOB_PAYLOAD = {
    "mode": "QUICK",
    "jdText": "Backend Engineer. Python, FastAPI, PostgreSQL.",
    "resumeReference": "resumes/accounts/generation-user/cv.txt",
    "resumeText": "Jane Doe. Python developer, 5 years.",
}
OTHER_JOB_PAYLOAD = {**JOB_PAYLOAD, "resumeReference": f"resumes/accounts/{OTHER_ACCOUNT_ID}/cv.txt"}


class _FakeQueueJob:
    def __init__(self, job_id: str):
        self.id = job_id


def _enqueue_noop(job_id: str):
    return _FakeQueueJob(f"generation:{job_id}")


def _enqueue_unavailable(job_id: str):
    raise ConnectionError("redis down")


def _fake_generate(jd_text: str, resume_text: str, mode: str) -> str:
    return FAKE_LATEX


def _failing_generate(jd_text: str, resume_text: str, mode: str) -> str:
    raise PipelineFailure("The resume generator is unavailable right now. Please try again.")


def _crashing_generate(jd_text: str, resume_text: str, mode: str) -> str:
    raise RuntimeError("segfault in tokenizer")


def _slow_generate(jd_text: str, resume_text: str, mode: str) -> str:
    time.sleep(2)
    return FAKE_LATEX


async def _grant(session_maker, credits: int, account_id: str = ACCOUNT_ID) -> None:
    async with session_maker() as db:
        await adjust(db, account_id, credits, reason="grant", source="test")


async def _create_job(client, payload=None, headers=None) -> str:
    with patch("services.generation.enqueue_generation_job", _enqueue_noop):
        response = await client.post("/jobs", json=payload or JOB_PAYLOAD, headers=headers or AUTH_HEADER)
    assert response.status_code == 200, response.text
    return response.json()["job_id"]


async def _load_job(session_maker, job_id: str) -> GenerationJob:
    async with session_maker() as db:
        return (await db.execute(select(GenerationJob).where(GenerationJob.id == job_id))).scalar_one()


async def _generation_entries(session_maker):
    async with session_maker() as db:
        result = await db.execute(select(CreditLedgerEntry).where(CreditLedgerEntry.reason == "generation"))
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_create_job_without_credits_is_rejected_before_insert(pipeline_env):
    client, session_maker = pipeline_env
    with patch("services.generation.enqueue_generation_job", _enqueue_noop):
        response = await client.post("/jobs", json=JOB_PAYLOAD, headers=AUTH_HEADER)

    assert response.status_code == 402
    assert response.json() == {"error": "Insufficient credits", "code": "NO_CREDITS"}
    async with session_maker() as db:
        assert (await db.execute(select(GenerationJob))).scalars().all() == []


@pytest.mark.asyncio
async def test_create_job_validates_input(pipeline_env):
    client, session_maker = pipeline_env
    await _grant(session_maker, 1)

    with patch("services.generation.enqueue_generation_job", _enqueue_noop):
        missing_jd = await client.post("/jobs", json={**JOB_PAYLOAD, "jdText": ""}, headers=AUTH_HEADER)
        bad_mode = await client.post("/jobs", json={**JOB_PAYLOAD, "mode": "TURBO"}, headers=AUTH_HEADER)
        missing_resume = await client.post("/jobs", json={**JOB_PAYLOAD, "resumeReference": None}, headers=AUTH_HEADER)
        unauthenticated = await client.post("/jobs", json=JOB_PAYLOAD)

    assert missing_jd.status_code == 400
    assert bad_mode.status_code == 400
    assert missing_resume.status_code == 400
    assert unauthenticated.status_code == 401


@pytest.mark.asyncio
async def test_successful_job_runs_once_and_charges_once(pipeline_env):
    client, session_maker = pipeline_env
    await _grant(session_maker, 1)
    job_id = await _create_job(client)

    queued = (await client.get(f"/jobs/{job_id}", headers=AUTH_HEADER)).json()
    assert queued["status"] == "queued"
    assert queued["progress"] == 0

    with patch("services.generation.generate_tailored_latex", _fake_generate):
        assert await process_generation_job_async(job_id) == "succeeded"
        # Duplicate delivery of the same queue message.
        assert await process_generation_job_async(job_id) is None

    status = (await client.get(f"/jobs/{job_id}", headers=AUTH_HEADER)).json()
    assert status["status"] == "succeeded"
    assert status["progress"] == 100
    assert status["progressStage"] == "succeeded"
    assert status["errorMessage"] is None
    assert status["resultArtifactRef"] == f"{settings.ARTIFACT_BUCKET}/{ACCOUNT_ID}/{job_id}.tex"
    assert storage.read_text(status["resultArtifactRef"]) == FAKE_LATEX

    entries = await _generation_entries(session_maker)
    assert [(e.delta, e.reference_id) for e in entries] == [(-1, job_id)]
    async with session_maker() as db:
        assert await get_balance(db, ACCOUNT_ID) == 0
        assert await get_ledger_sum(db, ACCOUNT_ID) == 0
    assert (await _load_job(session_maker, job_id)).billing_status == "charged"


@pytest.mark.asyncio
async def test_pipeline_failure_is_recorded_and_not_charged(pipeline_env):
    client, session_maker = pipeline_env
    await _grant(session_maker, 1)
    job_id = await _create_job(client)

    with patch("services.generation.generate_tailored_latex", _failing_generate):
        assert await process_generation_job_async(job_id) == "failed"

    status = (await client.get(f"/jobs/{job_id}", headers=AUTH_HEADER)).json()
    assert status["status"] == "failed"
    assert status["errorMessage"] == "The resume generator is unavailable right now. Please try again."
    assert status["resultArtifactRef"] is None
    assert await _generation_entries(session_maker) == []
    async with session_maker() as db:
        assert await get_balance(db, ACCOUNT_ID) == 1


@pytest.mark.asyncio
async def test_unexpected_crash_records_generic_message(pipeline_env):
    client, session_maker = pipeline_env
    await _grant(session_maker, 1)
    job_id = await _create_job(client)

    with patch("services.generation.generate_tailored_latex", _crashing_generate):
        assert await process_generation_job_async(job_id) == "failed"

    status = (await client.get(f"/jobs/{job_id}", headers=AUTH_HEADER)).json()
    assert status["errorMessage"] == GENERIC_FAILURE_MESSAGE
    assert "segfault" not in status["errorMessage"]


@pytest.mark.asyncio
async def test_missing_resume_object_fails_job(pipeline_env):
    client, session_maker = pipeline_env
    await _grant(session_maker, 1)
    payload = {key: value for key, value in JOB_PAYLOAD.items() if key != "resumeText"}
    job_id = await _create_job(client, payload=payload)

    with patch("services.generation.generate_tailored_latex", _fake_generate):
        assert await process_generation_job_async(job_id) == "failed"

    job = await _load_job(session_maker, job_id)
    assert job.status == "failed"
    assert "resume could not be read" in job.error_message


@pytest.mark.asyncio
async def test_three_credits_buy_exactly_three_jobs(pipeline_env):
    client, session_maker = pipeline_env
    await _grant(session_maker, 3)

    job_ids = [await _create_job(client) for _ in range(3)]
    with patch("services.generation.generate_tailored_latex", _fake_generate):
        for job_id in job_ids:
            assert await process_generation_job_async(job_id) == "succeeded"

    credits = await client.get("/credits", headers=AUTH_HEADER)
    assert credits.json() == {"credits": 0}

    with patch("services.generation.enqueue_generation_job", _enqueue_noop):
        fourth = await client.post("/jobs", json=JOB_PAYLOAD, headers=AUTH_HEADER)
    assert fourth.status_code == 402
    assert fourth.json()["code"] == "NO_CREDITS"


@pytest.mark.asyncio
async def test_debit_failure_keeps_job_succeeded(pipeline_env):
    client, session_maker = pipeline_env
    await _grant(session_maker, 1)
    job_id = await _create_job(client)
    # Balance spent elsewhere between admission and completion.
    async with session_maker() as db:
        await adjust(db, ACCOUNT_ID, -1, reason="generation", source="test", reference_id="other-job")

    with patch("services.generation.generate_tailored_latex", _fake_generate):
        assert await process_generation_job_async(job_id) == "succeeded"

    job = await _load_job(session_maker, job_id)
    assert job.status == "succeeded"
    assert job.billing_status == "debit_failed"
    async with session_maker() as db:
        assert await get_balance(db, ACCOUNT_ID) == 0


@pytest.mark.asyncio
async def test_job_status_is_scoped_to_owner(pipeline_env):
    client, session_maker = pipeline_env
    await _grant(session_maker, 1)
    job_id = await _create_job(client)

    other = await client.get(f"/jobs/{job_id}", headers=OTHER_AUTH_HEADER)
    assert other.status_code == 404
    assert other.json()["code"] == "NOT_FOUND"

    missing = await client.get("/jobs/does-not-exist", headers=AUTH_HEADER)
    assert missing.status_code == 404

    unauthenticated = await client.get(f"/jobs/{job_id}")
    assert unauthenticated.status_code == 401

    cancel_other = await client.post(f"/jobs/{job_id}/cancel", headers=OTHER_AUTH_HEADER)
    assert cancel_other.status_code == 404


@pytest.mark.asyncio
async def test_list_jobs_returns_only_own_jobs(pipeline_env):
    client, session_maker = pipeline_env
    await _grant(session_maker, 2)
    await _grant(session_maker, 1, account_id=OTHER_ACCOUNT_ID)
    own = [await _create_job(client), await _create_job(client)]
    await _create_job(client, payload=OTHER_JOB_PAYLOAD, headers=OTHER_AUTH_HEADER)

    response = await client.get("/jobs", headers=AUTH_HEADER)
    assert response.status_code == 200
    assert sorted(job["id"] for job in response.json()["jobs"]) == sorted(own)


@pytest.mark.asyncio
async def test_queue_unavailable_marks_job_failed(pipeline_env):
    client, session_maker = pipeline_env
    await _grant(session_maker, 1)

    with patch("services.generation.enqueue_generation_job", _enqueue_unavailable):
        response = await client.post("/jobs", json=JOB_PAYLOAD, headers=AUTH_HEADER)

    assert response.status_code == 503
    assert response.json()["code"] == "QUEUE_UNAVAILABLE"
    async with session_maker() as db:
        jobs = (await db.execute(select(GenerationJob))).scalars().all()
        assert await get_balance(db, ACCOUNT_ID) == 1
    assert len(jobs) == 1
    assert jobs[0].status == "failed"
    assert jobs[0].error_message == QUEUE_FAILURE_MESSAGE


@pytest.mark.asyncio
async def test_worker_timeout_fails_job_without_charge(pipeline_env):
    client, session_maker = pipeline_env
    await _grant(session_maker, 1)
    job_id = await _create_job(client)

    with (
        patch.object(settings, "GENERATION_MAX_RUNNING_SECONDS", 1),
        patch("services.generation.generate_tailored_latex", _slow_generate),
    ):
        assert await process_generation_job_async(job_id) == "failed"

    job = await _load_job(session_maker, job_id)
    assert job.status == "failed"
    assert job.error_message == "Generation timed out after 1 seconds. Please try again."
    async with session_maker() as db:
        assert await claim_job(db, job_id) is None
        assert await get_balance(db, ACCOUNT_ID) == 1


@pytest.mark.asyncio
async def test_sweeper_expires_stalled_running_job(pipeline_env):
    client, session_maker = pipeline_env
    await _grant(session_maker, 1)
    job_id = await _create_job(client)

    async with session_maker() as db:
        lock_id = await claim_job(db, job_id)
        assert lock_id is not None
        await db.execute(
            update(GenerationJob)
            .where(GenerationJob.id == job_id)
            .values(started_at=datetime.now(timezone.utc) - timedelta(minutes=30))
        )
        await db.commit()

    assert await expire_stalled_generation_jobs(max_running_seconds=60) == 1
    assert await expire_stalled_generation_jobs(max_running_seconds=60) == 0

    job = await _load_job(session_maker, job_id)
    assert job.status == "failed"
    assert job.error_message == "Generation timed out after 60 seconds. Please try again."

    async with session_maker() as db:
        # The first worker finishing late cannot overwrite the terminal state.
        assert await complete_job(db, job_id, "generated/late.tex", lock_id=lock_id) is False
        assert await claim_job(db, job_id) is None
    assert await _generation_entries(session_maker) == []


@pytest.mark.asyncio
async def test_sweeper_expires_job_stuck_in_queue(pipeline_env):
    # queued -> failed is an added edge: jobs no worker ever picked up are closed out too.
    client, session_maker = pipeline_env
    await _grant(session_maker, 1)
    job_id = await _create_job(client)

    async with session_maker() as db:
        await db.execute(
            update(GenerationJob)
            .where(GenerationJob.id == job_id)
            .values(created_at=datetime.now(timezone.utc) - timedelta(hours=3))
        )
        await db.commit()

    assert await expire_stalled_generation_jobs(max_queued_seconds=3600) == 1
    job = await _load_job(session_maker, job_id)
    assert job.status == "failed"
    assert job.error_message == QUEUE_STALL_MESSAGE

    with patch("services.generation.generate_tailored_latex", _fake_generate):
        assert await process_generation_job_async(job_id) is None


@pytest.mark.asyncio
async def test_canceled_queued_job_is_never_claimed(pipeline_env):
    client, session_maker = pipeline_env
    await _grant(session_maker, 1)
    job_id = await _create_job(client)

    canceled = await client.post(f"/jobs/{job_id}/cancel", headers=AUTH_HEADER)
    assert canceled.status_code == 200
    assert canceled.json()["status"] == "canceled"

    with patch("services.generation.generate_tailored_latex", _fake_generate):
        assert await process_generation_job_async(job_id) is None

    again = await client.post(f"/jobs/{job_id}/cancel", headers=AUTH_HEADER)
    assert again.status_code == 409
    assert again.json()["code"] == "JOB_NOT_CANCELABLE"
    assert await _generation_entries(session_maker) == []


@pytest.mark.asyncio
async def test_cancel_running_job_discards_late_result(pipeline_env):
    client, session_maker = pipeline_env
    await _grant(session_maker, 1)
    job_id = await _create_job(client)

    async with session_maker() as db:
        lock_id = await claim_job(db, job_id)

    canceled = await client.post(f"/jobs/{job_id}/cancel", headers=AUTH_HEADER)
    assert canceled.json()["status"] == "canceled"

    async with session_maker() as db:
        assert await complete_job(db, job_id, "generated/late.tex", lock_id=lock_id) is False
    job = await _load_job(session_maker, job_id)
    assert job.status == "canceled"
    assert job.result_artifact_ref is None


@pytest.mark.asyncio
async def test_periodic_sweep_logs_failed_tick_with_traceback(caplog):
    sleep = AsyncMock(side_effect=[None, asyncio.CancelledError()])
    sweep = AsyncMock(side_effect=RuntimeError("database unavailable"))
    with patch.object(settings, "GENERATION_SWEEP_INTERVAL_SECONDS", 1), patch(
        "main.asyncio.sleep", sleep
    ), patch("main.expire_stalled_generation_jobs", sweep), caplog.at_level("ERROR", logger="main"):
        with pytest.raises(asyncio.CancelledError):
            await main._periodic_generation_sweep()

    assert sweep.await_count == 1
    failures = [record for record in caplog.records if record.getMessage() == "Generation sweep tick failed"]
    assert len(failures) == 1
    assert failures[0].exc_info is not None


@pytest.mark.asyncio
async def test_create_job_rejects_resume_reference_the_account_does_not_own(pipeline_env):
    client, session_maker = pipeline_env
    await _grant(session_maker, 5)
    foreign_references = [
        f"resumes/accounts/{OTHER_ACCOUNT_ID}/cv.txt",
        f"resumes/accounts/{ACCOUNT_ID}-other/cv.txt",
        "resumes/sessions/some-session/cv.txt",
        f"{settings.ARTIFACT_BUCKET}/{ACCOUNT_ID}/previous.tex",
        f"resumes/accounts/{ACCOUNT_ID}/../{OTHER_ACCOUNT_ID}/cv.txt",
        "resumes/cv.txt",
    ]

    with patch("services.generation.enqueue_generation_job", _enqueue_noop):
        for reference in foreign_references:
            response = await client.post(
                "/jobs", json={**JOB_PAYLOAD, "resumeReference": reference}, headers=AUTH_HEADER
            )
            assert response.status_code == 400, reference
            assert response.json()["code"] == "VALIDATION_ERROR"

    async with session_maker() as db:
        assert (await db.execute(select(GenerationJob))).scalars().all() == []


@pytest.mark.asyncio
async def test_uploaded_account_resume_feeds_the_job(pipeline_env):
    client, session_maker = pipeline_env
    await _grant(session_maker, 1)
    resume_text = "Jane Doe. Staff engineer, Python and Postgres."

    upload = await client.post(
        "/jobs/resume",
        files={"file": ("My CV.txt", resume_text.encode("utf-8"), "text/plain")},
        headers=AUTH_HEADER,
    )
    assert upload.status_code == 200, upload.text
    stored = upload.json()
    assert stored["bucket"] == settings.RESUME_BUCKET
    assert stored["objectPath"].startswith(f"accounts/{ACCOUNT_ID}/")
    assert stored["objectPath"].endswith("_My_CV.txt")
    assert stored["sizeBytes"] == len(resume_text)
    assert stored["extractedText"] == resume_text

    payload = {"mode": "QUICK", "jdText": JOB_PAYLOAD["jdText"], "resumeReference": stored["reference"]}
    job_id = await _create_job(client, payload=payload)

    seen = {}

    def capture_generate(jd_text: str, resume_text: str, mode: str) -> str:
        seen["resume_text"] = resume_text
        return FAKE_LATEX

    with patch("services.generation.generate_tailored_latex", capture_generate):
        assert await process_generation_job_async(job_id) == "succeeded"
    assert seen["resume_text"] == resume_text


@pytest.mark.asyncio
async def test_resume_upload_enforces_type_and_size(pipeline_env):
    client, _ = pipeline_env

    unsupported = await client.post(
        "/jobs/resume", files={"file": ("cv.exe", b"MZ", "application/octet-stream")}, headers=AUTH_HEADER
    )
    assert unsupported.status_code == 400
    assert unsupported.json()["code"] == "VALIDATION_ERROR"

    empty = await client.post("/jobs/resume", files={"file": ("cv.txt", b"", "text/plain")}, headers=AUTH_HEADER)
    assert empty.status_code == 400

    with patch.object(settings, "MAX_RESUME_UPLOAD_BYTES", 16):
        too_large = await client.post(
            "/jobs/resume", files={"file": ("cv.txt", b"x" * 17, "text/plain")}, headers=AUTH_HEADER
        )
    assert too_large.status_code == 413
    assert too_large.json()["code"] == "UPLOAD_TOO_LARGE"

    unauthenticated = await client.post("/jobs/resume", files={"file": ("cv.txt", b"Jane", "text/plain")})
    assert unauthenticated.status_code == 401


@pytest.mark.asyncio
async def test_binary_resume_without_text_fails_job(pipeline_env):
    client, session_maker = pipeline_env
    await _grant(session_maker, 1)
    storage.put_bytes(settings.RESUME_BUCKET, f"accounts/{ACCOUNT_ID}/cv.pdf", b"%PDF-1.7 binary")
    payload = {
        "mode": "QUICK",
        "jdText": JOB_PAYLOAD["jdText"],
        "resumeReference": f"resumes/accounts/{ACCOUNT_ID}/cv.pdf",
    }
    job_id = await _create_job(client, payload=payload)

    with patch("services.generation.generate_tailored_latex", _fake_generate):
        assert await process_generation_job_async(job_id) == "failed"

    job = await _load_job(session_maker, job_id)
    assert "no readable text" in job.error_message
    assert await _generation_entries(session_maker) == []


@pytest.mark.asyncio
async def test_artifact_route_returns_latex_only_for_succeeded_owned_job(pipeline_env):
    client, session_maker = pipeline_env
    await _grant(session_maker, 1)
    job_id = await _create_job(client)

    not_ready = await client.get(f"/jobs/{job_id}/artifact", headers=AUTH_HEADER)
    assert not_ready.status_code == 409
    assert not_ready.json()["code"] == "ARTIFACT_NOT_READY"

    with patch("services.generation.generate_tailored_latex", _fake_generate):
        assert await process_generation_job_async(job_id) == "succeeded"

    artifact = await client.get(f"/jobs/{job_id}/artifact", headers=AUTH_HEADER)
    assert artifact.status_code == 200
    assert artifact.json() == {
        "id": job_id,
        "resultArtifactRef": f"{settings.ARTIFACT_BUCKET}/{ACCOUNT_ID}/{job_id}.tex",
        "latexText": FAKE_LATEX,
    }

    other = await client.get(f"/jobs/{job_id}/artifact", headers=OTHER_AUTH_HEADER)
    assert other.status_code == 404

    storage.remove_object(settings.ARTIFACT_BUCKET, f"{ACCOUNT_ID}/{job_id}.tex")
    gone = await client.get(f"/jobs/{job_id}/artifact", headers=AUTH_HEADER)
    assert gone.status_code == 404
