"""Shared resume upload handling for the session and account upload routes."""

from fastapi import UploadFile

from config import settings
from services.errors import UploadTooLarge, ValidationError


async def read_resume_upload(file: UploadFile) -> bytes:
    """Read an upload in chunks, stopping as soon as it passes the size limit."""
    max_bytes = int(settings.MAX_RESUME_UPLOAD_BYTES)
    chunks = []
    total_size = 0
    try:
        while True:
            chunk = await file.read(1024 * 1024)
            if not chunk:
                break
            total_size += len(chunk)
            if total_size > max_bytes:
                raise UploadTooLarge(f"File too large. Max upload size is {max_bytes // (1024 * 1024)}MB.")
            chunks.append(chunk)
    finally:
        await file.close()

    if total_size == 0:
        raise ValidationError("Uploaded resume is empty")
    return b"".join(chunks)
