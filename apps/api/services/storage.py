"""Local object storage for resume uploads and generated artifacts.

Objects are addressed as ``bucket/object_path`` under ``STORAGE_ROOT``.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple
import uuid

from config import settings

logger = logging.getLogger(__name__)

RESUME_EXTENSIONS = {".pdf", ".docx", ".doc", ".txt", ".md", ".tex"}
TEXT_RESUME_EXTENSIONS = {".txt", ".md", ".tex"}


def _safe_segment(value: str, field: str) -> str:
    text = str(value or "").strip().strip("/")
    if not text:
        raise ValueError(f"{field} is required")
    parts = [p for p in text.split("/") if p]
    if any(p in {".", ".."} for p in parts):
        raise ValueError(f"{field} must not contain relative path segments")
    return "/".join(parts)


def safe_filename(filename: str, default: str = "resume.txt") -> str:
    base = os.path.basename(filename or default)
    cleaned = "".join(ch if ch.isalnum() or ch in ("-", "_", ".") else "_" for ch in base)
    return cleaned.lstrip(".") or default


def session_prefix(session_id: str) -> str:
    return f"sessions/{_single_segment(session_id, 'session_id')}/"


def account_prefix(account_id: str) -> str:
    return f"accounts/{_single_segment(account_id, 'account_id')}/"


def _single_segment(value: str, field: str) -> str:
    text = _safe_segment(value, field)
    if "/" in text:
        raise ValueError(f"{field} must not contain '/'")
    return text


def scoped_object_path(bucket: str, object_path: str, prefixes: Iterable[str]) -> str:
    """Normalize an object path and require it to live in the resume bucket under one of ``prefixes``.

    Raises ValueError for any other bucket (including the artifact bucket) or path.
    """
    if _safe_segment(bucket, "bucket") != settings.RESUME_BUCKET:
        raise ValueError(f"Resumes must be stored in the '{settings.RESUME_BUCKET}' bucket")
    path = _safe_segment(object_path, "object_path")
    if not any(path.startswith(prefix) for prefix in prefixes):
        raise ValueError("object_path is outside the caller's storage area")
    return path


def object_path_for(bucket: str, object_path: str) -> Path:
    """Resolve a storage object to a filesystem path inside STORAGE_ROOT."""
    root = Path(settings.STORAGE_ROOT)
    return root / _safe_segment(bucket, "bucket") / _safe_segment(object_path, "object_path")


def make_reference(bucket: str, object_path: str) -> str:
    return f"{_safe_segment(bucket, 'bucket')}/{_safe_segment(object_path, 'object_path')}"


def split_reference(reference: str) -> Tuple[str, str]:
    text = str(reference or "").strip().strip("/")
    if "/" not in text:
        raise ValueError("Storage reference must look like bucket/object_path")
    bucket, object_path = text.split("/", 1)
    return bucket, object_path


def put_text(bucket: str, object_path: str, content: str) -> str:
    target = object_path_for(bucket, object_path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content, encoding="utf-8")
    return make_reference(bucket, object_path)


def read_text(reference: str) -> str:
    bucket, object_path = split_reference(reference)
    target = object_path_for(bucket, object_path)
    return target.read_text(encoding="utf-8", errors="replace")


def remove_object(bucket: str, object_path: str) -> bool:
    """Delete an object. Returns False when it was already gone."""
    target = object_path_for(bucket, object_path)
    if not target.exists():
        logger.info("Storage object %s/%s already removed", bucket, object_path)
        return False
    target.unlink(missing_ok=True)
    logger.info("Deleted storage object %s/%s", bucket, object_path)
    return True


def put_bytes(bucket: str, object_path: str, content: bytes) -> str:
    target = object_path_for(bucket, object_path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(content)
    return make_reference(bucket, object_path)


def store_resume(prefix: str, filename: Optional[str], content_type: Optional[str], data: bytes) -> Dict[str, Any]:
    """Store an uploaded resume under ``prefix`` in the resume bucket.

    Text formats are decoded and returned as ``extractedText`` so the caller
    can put them straight into a draft or job.
    """
    original_filename = safe_filename(filename or "resume.txt")
    suffix = Path(original_filename).suffix.lower()
    if suffix not in RESUME_EXTENSIONS:
        raise ValueError(f"Unsupported resume type. Upload one of: {', '.join(sorted(RESUME_EXTENSIONS))}")
    if not data:
        raise ValueError("Uploaded resume is empty")

    object_path = f"{prefix}{uuid.uuid4()}_{original_filename}"
    put_bytes(settings.RESUME_BUCKET, object_path, data)

    extracted = None
    if suffix in TEXT_RESUME_EXTENSIONS:
        extracted = data.decode("utf-8", errors="replace")
    return {
        "bucket": settings.RESUME_BUCKET,
        "objectPath": object_path,
        "reference": make_reference(settings.RESUME_BUCKET, object_path),
        "originalFilename": original_filename,
        "mimeType": (content_type or "").strip() or None,
        "sizeBytes": len(data),
        "extractedText": extracted,
    }


def is_text_resume(reference: str) -> bool:
    return Path(str(reference or "")).suffix.lower() in TEXT_RESUME_EXTENSIONS
