"""Onboarding session router: anonymous sessions, drafts and resume upload/removal."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, File, Request, Response, UploadFile
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import client_ip, rate_limit
from routers.uploads import read_resume_upload
from services.credits import ensure_account
from services.generation import create_job_from_session
from services.errors import SessionNotFound
from services.onboarding import delete_resume, save_draft, session_status, start_session, store_session_resume

router = APIRouter()


class StartSessionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    force_new: bool = Field(default=False, alias="forceNew")


class SaveDraftRequest(BaseModel):
    # Fields stay optional here so missing/oversized input is reported as 400 by the service.
    model_config = ConfigDict(populate_by_name=True)

    jd_text: Optional[str] = Field(default=None, alias="jdText")
    jd_source_url: Optional[str] = Field(default=None, alias="jdSourceUrl")
    jd_title: Optional[str] = Field(default=None, alias="jdTitle")
    jd_company: Optional[str] = Field(default=None, alias="jdCompany")
    resume_bucket: Optional[str] = Field(default=None, alias="resumeBucket")
    resume_object_path: Optional[str] = Field(default=None, alias="resumeObjectPath")
    resume_original_filename: Optional[str] = Field(default=None, alias="resumeOriginalFilename")
    resume_mime_type: Optional[str] = Field(default=None, alias="resumeMimeType")
    resume_size_bytes: Optional[int] = Field(default=None, alias="resumeSizeBytes")
    resume_extracted_text: Optional[str] = Field(default=None, alias="resumeExtractedText")


class DeleteResumeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    bucket: Optional[str] = None
    object_path: Optional[str] = Field(default=None, alias="objectPath")


class ClaimSessionRequest(BaseModel):
    mode: Optional[str] = None


def _set_session_cookie(response: Response, session_id: str) -> None:
    response.set_cookie(
        key=settings.ONBOARDING_COOKIE_NAME,
        value=session_id,
        max_age=max(int(settings.ONBOARDING_SESSION_TTL_DAYS), 1) * 24 * 60 * 60,
        path="/",
        httponly=True,
        samesite="lax",
        secure=settings.ONBOARDING_COOKIE_SECURE or settings.is_production,
    )


def require_session_cookie(session_id: str, request: Request) -> str:
    """Only the browser holding the session cookie may change that session."""
    if request.cookies.get(settings.ONBOARDING_COOKIE_NAME) != session_id:
        raise SessionNotFound("No onboarding session found for this browser. Please start a session first.")
    return session_id


@router.post("")
async def start_onboarding_session(
    request: Request,
    response: Response,
    payload: Optional[StartSessionRequest] = None,
    _rate_limit: None = Depends(rate_limit("onboarding_start", limit=60, window_seconds=3600)),
    db: AsyncSession = Depends(get_db),
):
    """Start a new anonymous session or resume the one in the cookie."""
    session, created = await start_session(
        db,
        presented_session_id=request.cookies.get(settings.ONBOARDING_COOKIE_NAME),
        client_ip=client_ip(request),
        user_agent=request.headers.get("user-agent"),
        force_new=bool(payload and payload.force_new),
    )
    _set_session_cookie(response, session.id)
    return {"session_id": session.id, "created": created}


@router.get("/{session_id}")
async def get_onboarding_session(session_id: str, db: AsyncSession = Depends(get_db)):
    """Current status and latest draft, for restoring a returning visitor."""
    status = await session_status(db, session_id)
    return {
        "session_id": status["session_id"],
        "status": status["status"],
        "isEditable": status["is_editable"],
        "expiresAt": status["expires_at"],
        "draft": status["draft"],
    }


@router.post("/{session_id}/draft")
async def save_onboarding_draft(
    payload: SaveDraftRequest,
    session_id: str = Depends(require_session_cookie),
    db: AsyncSession = Depends(get_db),
):
    draft = await save_draft(db, session_id, payload.model_dump())
    return {"draft_id": draft.id}


@router.post("/{session_id}/resume")
async def upload_onboarding_resume(
    file: UploadFile = File(...),
    session_id: str = Depends(require_session_cookie),
    db: AsyncSession = Depends(get_db),
):
    """Store a resume under this session; the returned bucket/objectPath go into the next draft."""
    data = await read_resume_upload(file)
    return await store_session_resume(db, session_id, file.filename, file.content_type, data)


@router.delete("/{session_id}/resume")
async def delete_onboarding_resume(
    payload: DeleteResumeRequest,
    session_id: str = Depends(require_session_cookie),
    db: AsyncSession = Depends(get_db),
):
    deleted = await delete_resume(db, session_id, payload.bucket or "", payload.object_path or "")
    return {"success": True, "deleted": deleted}


@router.post("/{session_id}/claim")
async def claim_onboarding_session(
    session_id: str = Depends(require_session_cookie),
    payload: Optional[ClaimSessionRequest] = None,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Adopt the session for the signed-in account and queue a job from its latest draft."""
    await ensure_account(db, auth.account_id, auth.email)
    job = await create_job_from_session(db, session_id, auth.account_id, mode=payload.mode if payload else None)
    return {"job_id": job.id, "status": job.status}
