"""Onboarding session store: anonymous sessions and their append-only drafts."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import hashlib
import logging
from typing import Any, Dict, Optional, Tuple
import uuid

from sqlalchemy import delete, func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.onboarding_draft import OnboardingDraft
from models.onboarding_session import OnboardingSession
from services import storage
from services.errors import SessionExpired, SessionInactive, SessionNotFound, ValidationError

logger = logging.getLogger(__name__)

DRAFT_OPTIONAL_TEXT_FIELDS = (
    "jd_source_url",
    "jd_title",
    "jd_company",
    "resume_original_filename",
    "resume_mime_type",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def hash_client_ip(ip: Optional[str]) -> str:
    """Salted SHA-256 of the client IP. The raw address is never stored."""
    raw = str(ip or "").strip() or "unknown"
    return hashlib.sha256(f"{settings.IP_HASH_SALT}{raw}".encode("utf-8")).hexdigest()


def compute_session_status(session: OnboardingSession, now: Optional[datetime] = None) -> str:
    """Derive the effective status: expired beats claimed beats active."""
    current = now or _utcnow()
    expires_at = _as_utc(session.expires_at)
    if expires_at is None or current > expires_at:
        return "expired"
    if session.status == "claimed" or session.claimed_by_account_id:
        return "claimed"
    return "active"


async def get_session(db: AsyncSession, session_id: Optional[str]) -> OnboardingSession:
    if not session_id:
        raise SessionNotFound("No onboarding session found. Please start a session first.")
    result = await db.execute(select(OnboardingSession).where(OnboardingSession.id == session_id))
    session = result.scalar_one_or_none()
    if session is None:
        raise SessionNotFound("Session not found")
    return session


async def require_editable_session(db: AsyncSession, session_id: Optional[str]) -> OnboardingSession:
    """Run the three lifecycle checks against freshly loaded state."""
    session = await get_session(db, session_id)
    await db.refresh(session)
    if session.status != "active":
        raise SessionInactive("Session is no longer active")
    expires_at = _as_utc(session.expires_at)
    if expires_at is None or _utcnow() > expires_at:
        raise SessionExpired("Session has expired")
    return session


async def start_session(
    db: AsyncSession,
    presented_session_id: Optional[str],
    client_ip: Optional[str],
    user_agent: Optional[str],
    force_new: bool = False,
) -> Tuple[OnboardingSession, bool]:
    """Resume a valid active session or create a new one.

    Returns the session and whether it was newly created.
    """
    if presented_session_id and not force_new:
        result = await db.execute(select(OnboardingSession).where(OnboardingSession.id == presented_session_id))
        existing = result.scalar_one_or_none()
        if existing is not None and existing.status == "active" and compute_session_status(existing) == "active":
            return existing, False

    now = _utcnow()
    session = OnboardingSession(
        id=str(uuid.uuid4()),
        status="active",
        ip_hash=hash_client_ip(client_ip),
        user_agent=str(user_agent)[:512] if user_agent else None,
        expires_at=now + timedelta(days=max(int(settings.ONBOARDING_SESSION_TTL_DAYS), 1)),
    )
    db.add(session)
    await db.commit()
    await db.refresh(session)
    logger.info("Started onboarding session %s", session.id)
    return session, True


def _session_object_path(session_id: str, bucket: str, object_path: str) -> str:
    try:
        return storage.scoped_object_path(bucket, object_path, [storage.session_prefix(session_id)])
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc


def _validate_draft_fields(fields: Dict[str, Any], session_id: str) -> Dict[str, Any]:
    jd_text = fields.get("jd_text")
    if not jd_text or not isinstance(jd_text, str) or not jd_text.strip():
        raise ValidationError("jdText is required")
    if len(jd_text) > settings.MAX_JD_LENGTH:
        raise ValidationError(f"Job description exceeds maximum length ({settings.MAX_JD_LENGTH} characters)")

    resume_bucket = str(fields.get("resume_bucket") or "").strip()
    if not resume_bucket:
        raise ValidationError("resumeBucket is required")
    resume_object_path = str(fields.get("resume_object_path") or "").strip()
    if not resume_object_path:
        raise ValidationError("resumeObjectPath is required")
    resume_object_path = _session_object_path(session_id, resume_bucket, resume_object_path)

    size = fields.get("resume_size_bytes")
    if size is not None:
        try:
            size = int(size)
        except (TypeError, ValueError) as exc:
            raise ValidationError("resumeSizeBytes must be an integer") from exc
        if size < 0:
            raise ValidationError("resumeSizeBytes must be non-negative")

    extracted = fields.get("resume_extracted_text")
    if extracted is not None and len(str(extracted)) > settings.MAX_RESUME_TEXT_LENGTH:
        raise ValidationError(
            f"Resume text exceeds maximum length ({settings.MAX_RESUME_TEXT_LENGTH} characters)"
        )

    cleaned: Dict[str, Any] = {
        "jd_text": jd_text,
        "resume_bucket": resume_bucket,
        "resume_object_path": resume_object_path,
        "resume_size_bytes": size,
        "resume_extracted_text": extracted or None,
    }
    for key in DRAFT_OPTIONAL_TEXT_FIELDS:
        value = fields.get(key)
        if value is not None:
            value = str(value).strip() or None
        cleaned[key] = value
    return cleaned


async def save_draft(db: AsyncSession, session_id: Optional[str], fields: Dict[str, Any]) -> OnboardingDraft:
    """Append a new draft row to an editable session."""
    session = await require_editable_session(db, session_id)
    cleaned = _validate_draft_fields(fields, session.id)

    result = await db.execute(
        select(func.coalesce(func.max(OnboardingDraft.sequence), 0)).where(OnboardingDraft.session_id == session.id)
    )
    next_sequence = int(result.scalar() or 0) + 1

    draft = OnboardingDraft(id=str(uuid.uuid4()), session_id=session.id, sequence=next_sequence, **cleaned)
    db.add(draft)
    await db.commit()
    await db.refresh(draft)
    return draft


async def latest_draft(db: AsyncSession, session_id: str) -> Optional[OnboardingDraft]:
    result = await db.execute(
        select(OnboardingDraft)
        .where(OnboardingDraft.session_id == session_id)
        .order_by(OnboardingDraft.sequence.desc(), OnboardingDraft.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def delete_resume(db: AsyncSession, session_id: Optional[str], bucket: str, object_path: str) -> bool:
    """Remove a stored resume and the drafts that reference it.

    Calling it again after the object is gone succeeds and returns False.
    """
    if not str(bucket or "").strip() or not str(object_path or "").strip():
        raise ValidationError("bucket and objectPath are required")
    session = await require_editable_session(db, session_id)
    bucket = str(bucket).strip()
    object_path = _session_object_path(session.id, bucket, object_path)

    object_removed = storage.remove_object(bucket, object_path)

    result = await db.execute(
        delete(OnboardingDraft)
        .where(
            OnboardingDraft.session_id == session.id,
            OnboardingDraft.resume_bucket == bucket,
            OnboardingDraft.resume_object_path == object_path,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    drafts_removed = int(result.rowcount or 0)
    logger.info(
        "Deleted resume %s/%s for session %s (object_removed=%s, drafts_removed=%d)",
        bucket,
        object_path,
        session.id,
        object_removed,
        drafts_removed,
    )
    return object_removed or drafts_removed > 0


async def store_session_resume(
    db: AsyncSession,
    session_id: Optional[str],
    filename: Optional[str],
    content_type: Optional[str],
    data: bytes,
) -> Dict[str, Any]:
    """Write an uploaded resume under the session's own storage prefix."""
    session = await require_editable_session(db, session_id)
    try:
        stored = storage.store_resume(storage.session_prefix(session.id), filename, content_type, data)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
    logger.info("Stored resume %s/%s for session %s", stored["bucket"], stored["objectPath"], session.id)
    return stored


def serialize_draft(draft: Optional[OnboardingDraft]) -> Optional[Dict[str, Any]]:
    if draft is None:
        return None
    return {
        "id": draft.id,
        "jdText": draft.jd_text,
        "jdTitle": draft.jd_title,
        "jdCompany": draft.jd_company,
        "jdSourceUrl": draft.jd_source_url,
        "resumeBucket": draft.resume_bucket,
        "resumeObjectPath": draft.resume_object_path,
        "resumeOriginalFilename": draft.resume_original_filename,
        "createdAt": draft.created_at.isoformat() if draft.created_at else None,
    }


async def session_status(db: AsyncSession, session_id: Optional[str]) -> Dict[str, Any]:
    """Pure read of the session's effective status and latest draft."""
    session = await get_session(db, session_id)
    status = compute_session_status(session)
    draft = await latest_draft(db, session.id)
    expires_at = _as_utc(session.expires_at)
    return {
        "session_id": session.id,
        "status": status,
        "is_editable": status == "active",
        "expires_at": expires_at.isoformat() if expires_at else None,
        "draft": serialize_draft(draft),
    }


async def claim_session(db: AsyncSession, session_id: Optional[str], account_id: str) -> OnboardingSession:
    """Adopt an active session for an authenticated account."""
    session = await get_session(db, session_id)
    await db.refresh(session)
    if session.claimed_by_account_id == account_id and compute_session_status(session) == "claimed":
        return session
    if session.status != "active":
        raise SessionInactive("Session is expired or already claimed.")
    if compute_session_status(session) == "expired":
        raise SessionExpired("Session has expired")

    result = await db.execute(
        update(OnboardingSession)
        .where(OnboardingSession.id == session.id, OnboardingSession.status == "active")
        .values(status="claimed", claimed_by_account_id=account_id, claimed_at=_utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount != 1:
        raise SessionInactive("Session is expired or already claimed.")
    await db.refresh(session)
    logger.info("Onboarding session %s claimed by account %s", session.id, account_id)
    return session
