"""Generation jobs router: upload, submit, poll, list, cancel and fetch results."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, File, Query, UploadFile
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from routers.uploads import read_resume_upload
from services.credits import ensure_account
from services.generation import (
    cancel_job,
    create_generation_job,
    get_job_artifact,
    get_job_status,
    list_jobs,
    serialize_job_status,
    store_account_resume,
)

router = APIRouter()


class CreateJobRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    mode: Optional[str] = None
    jd_text: Optional[str] = Field(default=None, alias="jdText")
    resume_reference: Optional[str] = Field(default=None, alias="resumeReference")
    resume_text: Optional[str] = Field(default=None, alias="resumeText")


def _status_response(status: dict) -> dict:
    return {
        "id": status["id"],
        "status": status["status"],
        "progress": status["progress"],
        "progressStage": status["progress_stage"],
        "errorMessage": status["error_message"],
        "resultArtifactRef": status["result_artifact_ref"],
        "updatedAt": status["updated_at"],
    }


@router.post("")
async def create_job(
    payload: CreateJobRequest,
    _rate_limit: None = Depends(rate_limit("generation_create", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Queue a tailoring run. Rejected with 402 when the account has no credits."""
    await ensure_account(db, auth.account_id, auth.email)
    job = await create_generation_job(
        db,
        auth.account_id,
        mode=payload.mode,
        jd_text=payload.jd_text,
        resume_reference=payload.resume_reference,
        resume_text=payload.resume_text,
    )
    return {"job_id": job.id, "status": job.status}


@router.post("/resume")
async def upload_account_resume(
    file: UploadFile = File(...),
    auth: AuthContext = Depends(get_auth_context),
):
    """Store a resume for the signed-in account; pass the returned reference as resumeReference."""
    data = await read_resume_upload(file)
    return store_account_resume(auth.account_id, file.filename, file.content_type, data)


@router.get("")
async def list_generation_jobs(
    limit: int = Query(default=20, ge=1, le=100),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    jobs = await list_jobs(db, auth.account_id, limit=limit)
    return {"jobs": [_status_response(job) for job in jobs]}


@router.get("/{job_id}")
async def get_generation_job(
    job_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return _status_response(await get_job_status(db, job_id, auth.account_id))


@router.post("/{job_id}/cancel")
async def cancel_generation_job(
    job_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    job = await cancel_job(db, job_id, auth.account_id)
    return _status_response(serialize_job_status(job))


@router.get("/{job_id}/artifact")
async def get_generation_artifact(
    job_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """The generated LaTeX document. 409 until the job has succeeded."""
    artifact = await get_job_artifact(db, job_id, auth.account_id)
    return {
        "id": artifact["id"],
        "resultArtifactRef": artifact["artifact_ref"],
        "latexText": artifact["latex_text"],
    }
