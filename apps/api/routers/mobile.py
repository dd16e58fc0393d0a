"""Mobile QR hand-off router."""

from __future__ import annotations

import hmac
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Header, HTTPException, UploadFile
from fastapi.responses import Response
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.mobile_handoff import (
    LocalUploadStorage,
    claim_uploads,
    create_session,
    get_owned_session,
    get_upload_storage,
    phone_url,
    purge_expired,
    record_upload,
    render_qr_png,
)

router = APIRouter()
logger = logging.getLogger(__name__)


class MobileSessionResponse(BaseModel):
    session_id: str
    upload_url: str
    qr_url: str
    expires_at: str


class MobileUploadResponse(BaseModel):
    upload_id: str
    file_name: str
    file_size_bytes: int
    status: str


class ClaimedUpload(BaseModel):
    upload_id: str
    file_name: Optional[str] = None
    mime_type: Optional[str] = None
    file_size_bytes: Optional[int] = None
    image_base64: Optional[str] = None


class ClaimResponse(BaseModel):
    session_id: str
    uploads: List[ClaimedUpload]


@router.post("/sessions", response_model=MobileSessionResponse)
async def start_mobile_session(
    _rate_limit: None = Depends(rate_limit("mobile_session", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Open a hand-off session for the desktop to display as a QR code."""
    created = await create_session(auth.account_id, db)
    return MobileSessionResponse(
        qr_url=f"/mobile/sessions/{created['session_id']}/qr",
        **created,
    )


@router.get("/sessions/{session_id}/qr")
async def mobile_session_qr(
    session_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    session = await get_owned_session(session_id, auth.account_id, db)
    return Response(content=render_qr_png(phone_url(session.id)), media_type="image/png")


@router.post("/sessions/{session_id}/uploads", response_model=MobileUploadResponse)
async def upload_from_phone(
    session_id: str,
    file: UploadFile = File(...),
    _rate_limit: None = Depends(rate_limit("mobile_upload", limit=30, window_seconds=600)),
    storage: LocalUploadStorage = Depends(get_upload_storage),
    db: AsyncSession = Depends(get_db),
):
    """Phone-side upload. Unauthenticated; the session id is the capability."""
    stored = await record_upload(session_id, file, db, storage)
    return MobileUploadResponse(**stored)


@router.post("/sessions/{session_id}/claim", response_model=ClaimResponse)
async def claim_phone_uploads(
    session_id: str,
    auth: AuthContext = Depends(get_auth_context),
    storage: LocalUploadStorage = Depends(get_upload_storage),
    db: AsyncSession = Depends(get_db),
):
    """Return uploads not yet handed to the desktop; each is returned once."""
    uploads = await claim_uploads(session_id, auth.account_id, db, storage)
    return ClaimResponse(session_id=session_id, uploads=[ClaimedUpload(**item) for item in uploads])


@router.post("/cleanup")
async def cleanup_expired_sessions(
    cron_secret: str = Header(default="", alias="X-Cron-Secret"),
    storage: LocalUploadStorage = Depends(get_upload_storage),
    db: AsyncSession = Depends(get_db),
):
    """Externally scheduled purge of expired sessions and their files."""
    expected = (settings.CRON_SECRET or "").strip()
    if not expected or not hmac.compare_digest(cron_secret.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("Rejected mobile cleanup call with invalid cron secret")
        raise HTTPException(status_code=401, detail="Unauthorized")
    return await purge_expired(db, storage)
