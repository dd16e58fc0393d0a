"""QR hand-off: a phone uploads a selfie into a short-lived session owned by a desktop account."""

from __future__ import annotations

import base64
import logging
import os
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from io import BytesIO
from pathlib import Path
from typing import Any, Dict, List

import qrcode
from fastapi import HTTPException, UploadFile
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm import selectinload

from config import settings
from models.mobile_upload import MobileUpload, MobileUploadSession

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".heic"}
UPLOAD_CHUNK_BYTES = 256 * 1024


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _sanitize_filename(filename: str) -> str:
    base = os.path.basename(filename or "selfie.jpg")
    safe = "".join(ch if ch.isalnum() or ch in ("-", "_", ".") else "_" for ch in base)
    return safe or "selfie.jpg"


def phone_url(session_id: str) -> str:
    return f"{settings.SITE_URL.rstrip('/')}/mobile-upload?session={session_id}"


class LocalUploadStorage:
    """Stores hand-off photos on local disk under one directory per session."""

    def __init__(self, root: str):
        self.root = Path(root)

    def path_for(self, session_id: str, filename: str) -> Path:
        directory = self.root / session_id
        directory.mkdir(parents=True, exist_ok=True)
        return directory / f"{uuid.uuid4().hex}_{filename}"

    def read(self, file_url: str) -> bytes:
        return Path(file_url).read_bytes()

    def delete(self, file_url: str) -> None:
        path = Path(file_url)
        try:
            path.unlink(missing_ok=True)
            if path.parent != self.root and not any(path.parent.iterdir()):
                path.parent.rmdir()
        except OSError as exc:
            logger.warning("Could not remove hand-off file %s: %s", path, exc)


def get_upload_storage() -> LocalUploadStorage:
    return LocalUploadStorage(settings.MOBILE_UPLOAD_DIR)


async def create_session(account_id: str, db: AsyncSession) -> Dict[str, Any]:
    now = datetime.now(timezone.utc)
    ttl_hours = max(1, int(settings.MOBILE_SESSION_TTL_HOURS))
    session = MobileUploadSession(
        id=secrets.token_urlsafe(24),
        account_id=account_id,
        expires_at=now + timedelta(hours=ttl_hours),
    )
    db.add(session)
    await db.commit()
    logger.info("mobile_session_created account=%s expires_at=%s", account_id, session.expires_at.isoformat())
    return {
        "session_id": session.id,
        "upload_url": phone_url(session.id),
        "expires_at": session.expires_at.isoformat(),
    }


async def _load_session(session_id: str, db: AsyncSession) -> MobileUploadSession:
    result = await db.execute(
        select(MobileUploadSession).where(MobileUploadSession.id == str(session_id or "").strip())
    )
    session = result.scalar_one_or_none()
    if session is None:
        raise HTTPException(status_code=404, detail="Upload session not found")
    return session


def _ensure_live(session: MobileUploadSession) -> None:
    if _utc(session.expires_at) <= datetime.now(timezone.utc):
        raise HTTPException(status_code=410, detail="Upload session expired")


async def get_owned_session(session_id: str, account_id: str, db: AsyncSession) -> MobileUploadSession:
    session = await _load_session(session_id, db)
    if session.account_id != account_id:
        raise HTTPException(status_code=404, detail="Upload session not found")
    return session


def render_qr_png(url: str) -> bytes:
    image = qrcode.make(url)
    buffer = BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


async def record_upload(
    session_id: str,
    file: UploadFile,
    db: AsyncSession,
    storage: LocalUploadStorage,
) -> Dict[str, Any]:
    """Store a phone upload against a live session. The session id is the capability."""
    session = await _load_session(session_id, db)
    _ensure_live(session)

    original_filename = _sanitize_filename(file.filename or "selfie.jpg")
    suffix = Path(original_filename).suffix.lower()
    content_type = (file.content_type or "").lower()
    if not content_type.startswith("image/") and suffix not in ALLOWED_IMAGE_EXTENSIONS:
        raise HTTPException(
            status_code=422,
            detail="Unsupported file type. Upload an image (jpg, png, webp, heic).",
        )

    max_bytes = int(settings.MAX_IMAGE_UPLOAD_BYTES)
    destination = storage.path_for(session.id, original_filename)
    total_size = 0
    try:
        with destination.open("wb") as out:
            while True:
                chunk = await file.read(UPLOAD_CHUNK_BYTES)
                if not chunk:
                    break
                total_size += len(chunk)
                if total_size > max_bytes:
                    out.close()
                    storage.delete(str(destination))
                    raise HTTPException(
                        status_code=413,
                        detail=f"File too large. Max upload size is {max_bytes // (1024 * 1024)}MB.",
                    )
                out.write(chunk)
    finally:
        await file.close()

    if total_size == 0:
        storage.delete(str(destination))
        raise HTTPException(status_code=422, detail="Uploaded file is empty")

    upload = MobileUpload(
        session_id=session.id,
        file_url=str(destination),
        original_filename=original_filename,
        mime_type=content_type or None,
        file_size_bytes=total_size,
    )
    db.add(upload)
    await db.commit()
    logger.info("mobile_upload_stored session=%s bytes=%s", session.id, total_size)
    return {
        "upload_id": upload.id,
        "file_name": original_filename,
        "file_size_bytes": total_size,
        "status": "uploaded",
    }


async def claim_uploads(
    session_id: str,
    account_id: str,
    db: AsyncSession,
    storage: LocalUploadStorage,
) -> List[Dict[str, Any]]:
    """Hand every unclaimed upload to the desktop exactly once."""
    session = await get_owned_session(session_id, account_id, db)
    _ensure_live(session)

    claim_token = secrets.token_urlsafe(16)
    await db.execute(
        update(MobileUpload)
        .where(
            MobileUpload.session_id == session.id,
            MobileUpload.claimed_at.is_(None),
        )
        .values(claimed_at=datetime.now(timezone.utc), claim_token=claim_token)
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    result = await db.execute(
        select(MobileUpload)
        .where(MobileUpload.claim_token == claim_token)
        .order_by(MobileUpload.created_at.asc())
    )
    claimed = []
    unreadable = []
    for upload in result.scalars().all():
        try:
            data = storage.read(upload.file_url)
        except OSError as exc:
            logger.warning("Hand-off file unreadable for upload %s, releasing claim: %s", upload.id, exc)
            unreadable.append(upload.id)
            continue
        claimed.append(
            {
                "upload_id": upload.id,
                "file_name": upload.original_filename,
                "mime_type": upload.mime_type,
                "file_size_bytes": upload.file_size_bytes,
                "image_base64": base64.b64encode(data).decode("ascii"),
            }
        )

    if unreadable:
        await db.execute(
            update(MobileUpload)
            .where(MobileUpload.id.in_(unreadable), MobileUpload.claim_token == claim_token)
            .values(claimed_at=None, claim_token=None)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    return claimed


async def purge_expired(db: AsyncSession, storage: LocalUploadStorage) -> Dict[str, int]:
    now = datetime.now(timezone.utc)
    result = await db.execute(
        select(MobileUploadSession)
        .where(MobileUploadSession.expires_at <= now)
        .options(selectinload(MobileUploadSession.uploads))
    )
    sessions = list(result.scalars().all())
    files_removed = 0
    for session in sessions:
        for upload in session.uploads:
            storage.delete(upload.file_url)
            files_removed += 1
        await db.delete(session)
    await db.commit()
    if sessions:
        logger.info("mobile_sessions_purged sessions=%s files=%s", len(sessions), files_removed)
    return {"sessions_removed": len(sessions), "files_removed": files_removed}
