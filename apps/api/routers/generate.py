"""Headshot generation router."""

from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.errors import (
    AccountNotFound,
    DuplicateIdempotencyKey,
    ExternalServicePermanent,
    ExternalServiceTransient,
    InsufficientCredits,
)
from services.generation import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STYLE_PROMPTS,
    ImageGenerator,
    decode_image_payload,
    find_completed_generation,
    get_image_generator,
    list_generations,
    record_generation,
)
from services.ledger import normalize_idempotency_key, refund_credit, spend_credit

router = APIRouter()
logger = logging.getLogger(__name__)


class GenerateRequest(BaseModel):
    image_base64: str
    style: str = "professional"
    idempotency_key: Optional[str] = None


class GenerateResponse(BaseModel):
    generation_id: str
    image: str
    mime_type: str
    style: str
    credits_remaining: int
    unlimited: bool


class GenerationItem(BaseModel):
    generation_id: str
    style: str
    status: str
    error_kind: Optional[str] = None
    created_at: Optional[str] = None


def _already_generated(generation_id: Optional[str]) -> HTTPException:
    return HTTPException(
        status_code=409,
        detail={
            "error": "This request already produced a headshot. Use a new Idempotency-Key to generate another.",
            "generation_id": generation_id,
        },
    )


@router.get("/styles")
async def list_styles():
    return {"styles": sorted(STYLE_PROMPTS.keys())}


@router.post("", response_model=GenerateResponse)
async def generate_headshot(
    request: GenerateRequest,
    idempotency_header: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    _rate_limit: None = Depends(rate_limit("generate", limit=30, window_seconds=60)),
    auth: AuthContext = Depends(get_auth_context),
    generator: ImageGenerator = Depends(get_image_generator),
    db: AsyncSession = Depends(get_db),
):
    """Spend one credit (or pass an unlimited plan) and generate a styled headshot."""
    style = str(request.style or "").strip().lower()
    if style not in STYLE_PROMPTS:
        raise HTTPException(status_code=422, detail=f"Unknown style. Choose one of: {', '.join(sorted(STYLE_PROMPTS))}.")

    try:
        key = normalize_idempotency_key(idempotency_header or request.idempotency_key)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    try:
        image_bytes = decode_image_payload(request.image_base64, int(settings.MAX_IMAGE_UPLOAD_BYTES))
    except OverflowError as exc:
        raise HTTPException(
            status_code=413,
            detail=f"Image too large. Max size is {int(settings.MAX_IMAGE_UPLOAD_BYTES) // (1024 * 1024)}MB.",
        ) from exc
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    try:
        consumed = await spend_credit(auth.account_id, key, db)
    except AccountNotFound as exc:
        raise HTTPException(status_code=404, detail="Account not found") from exc
    except InsufficientCredits as exc:
        raise HTTPException(
            status_code=402,
            detail={
                "error": exc.user_message,
                "requires_upgrade": True,
                "credits_remaining": exc.credits_remaining,
            },
        ) from exc

    if consumed.replayed:
        # The credit was spent once for this key; only an attempt without a result may run again.
        delivered = await find_completed_generation(auth.account_id, key, db)
        if delivered is not None:
            raise _already_generated(delivered.id)

    try:
        image = await generator.generate(image_bytes, style)
    except (ExternalServiceTransient, ExternalServicePermanent) as exc:
        transient = isinstance(exc, ExternalServiceTransient)
        logger.warning(
            "Generation failed account=%s key=%s kind=%s: %s",
            auth.account_id,
            key,
            "transient" if transient else "permanent",
            exc,
        )
        refunded = False
        if settings.REFUND_ON_GENERATION_FAILURE:
            refunded = await refund_credit(auth.account_id, key, db)
        await record_generation(
            db,
            account_id=auth.account_id,
            style=style,
            idempotency_key=key,
            status=STATUS_FAILED,
            error_kind="transient" if transient else "permanent",
        )
        raise HTTPException(
            status_code=503 if transient else 422,
            detail={
                "error": exc.user_message if transient else "We could not generate a headshot from this photo.",
                "retryable": transient,
                "credit_refunded": refunded,
            },
        ) from exc

    try:
        row = await record_generation(
            db,
            account_id=auth.account_id,
            style=style,
            idempotency_key=key,
            status=STATUS_COMPLETED,
            mime_type=image.mime_type,
        )
    except DuplicateIdempotencyKey as exc:
        # A concurrent request with the same key delivered first.
        delivered = await find_completed_generation(auth.account_id, key, db)
        raise _already_generated(delivered.id if delivered else None) from exc

    return GenerateResponse(
        generation_id=row.id,
        image=image.as_data_url(),
        mime_type=image.mime_type,
        style=style,
        credits_remaining=consumed.credits_remaining,
        unlimited=consumed.unlimited,
    )


@router.get("/history", response_model=List[GenerationItem])
async def generation_history(
    limit: int = Query(default=50, ge=1, le=200),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    rows = await list_generations(auth.account_id, db, limit=limit)
    return [
        GenerationItem(
            generation_id=row.id,
            style=row.style,
            status=row.status,
            error_kind=row.error_kind,
            created_at=row.created_at.isoformat() if row.created_at else None,
        )
        for row in rows
    ]
