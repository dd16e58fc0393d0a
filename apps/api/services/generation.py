"""Headshot generation collaborator and generation history."""

from __future__ import annotations

import base64
import binascii
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.generation import Generation
from services.errors import DuplicateIdempotencyKey, ExternalServicePermanent, ExternalServiceTransient

logger = logging.getLogger(__name__)

STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

_BASE_PROMPT = (
    "Transform this casual selfie into a professional headshot while preserving the "
    "person's exact facial identity. Keep the same face shape, bone structure, facial "
    "features, skin tone and hair color; do not alter age or physical appearance. "
    "Only change clothing, background and lighting to professional standards. "
)

STYLE_PROMPTS: Dict[str, str] = {
    "professional": (
        "Dress them in a clean, modern business suit with a white dress shirt and tie. "
        "Use a clean, neutral background. Professional corporate headshot style."
    ),
    "finance": (
        "Dress them in a conservative dark suit (navy or charcoal) with a white dress shirt "
        "and tie. Use a clean, neutral background. Conservative banking and finance style."
    ),
    "tech": (
        "Dress them in modern business casual: blazer with dress shirt, no tie. "
        "Use a clean, modern background. Tech startup professional style."
    ),
    "creative": (
        "Dress them in a stylish modern outfit: blazer with an interesting shirt or top. "
        "Use a clean, artistic background. Creative professional style."
    ),
    "executive": (
        "Dress them in a high-end executive suit with white dress shirt and tie. "
        "Use a clean, professional background. C-suite executive style."
    ),
    "editorial": (
        "Dress them in a sophisticated business outfit. Use a clean, editorial-style "
        "background. Magazine-quality professional headshot."
    ),
}


def build_prompt(style_id: str) -> str:
    if style_id not in STYLE_PROMPTS:
        raise ValueError(f"Unknown style: {style_id}")
    return _BASE_PROMPT + STYLE_PROMPTS[style_id]


@dataclass(frozen=True)
class GeneratedImage:
    data: bytes
    mime_type: str = "image/png"

    def as_data_url(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"


def decode_image_payload(value: str, max_bytes: int) -> bytes:
    """Decode a base64 image (optionally a `data:` URL). Raises ValueError."""
    raw = str(value or "").strip()
    if raw.startswith("data:"):
        _, _, raw = raw.partition(",")
    if not raw:
        raise ValueError("image is required")
    # Reject before decoding anything that cannot fit.
    if len(raw) > (max_bytes * 4) // 3 + 4:
        raise OverflowError("image too large")
    try:
        data = base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("image is not valid base64") from exc
    if not data:
        raise ValueError("image is empty")
    if len(data) > max_bytes:
        raise OverflowError("image too large")
    return data


def sniff_image_mime(data: bytes) -> Optional[str]:
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if data[4:12] in (b"ftypheic", b"ftypheix", b"ftypmif1"):
        return "image/heic"
    return None


class ImageGenerator(ABC):
    """Turns a selfie into a styled headshot."""

    @abstractmethod
    async def generate(self, image_bytes: bytes, style_id: str) -> GeneratedImage:
        raise NotImplementedError


class GeminiImageGenerator(ImageGenerator):
    """Gemini `generateContent` over HTTP with one bounded attempt."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        api_base: str,
        timeout_seconds: float,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.api_base = api_base.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def _payload(self, image_bytes: bytes, style_id: str) -> Dict[str, Any]:
        return {
            "contents": [
                {
                    "role": "user",
                    "parts": [
                        {"text": build_prompt(style_id)},
                        {
                            "inline_data": {
                                "mime_type": sniff_image_mime(image_bytes) or "image/png",
                                "data": base64.b64encode(image_bytes).decode("ascii"),
                            }
                        },
                    ],
                }
            ]
        }

    @staticmethod
    def _extract_image(body: Any) -> Optional[GeneratedImage]:
        if not isinstance(body, dict):
            return None
        candidates = body.get("candidates") or []
        if not candidates:
            return None
        parts = ((candidates[0] or {}).get("content") or {}).get("parts") or []
        for part in parts:
            if not isinstance(part, dict):
                continue
            inline = part.get("inlineData") or part.get("inline_data")
            if not inline or not inline.get("data"):
                continue
            try:
                data = base64.b64decode(inline["data"])
            except (binascii.Error, ValueError):
                return None
            mime_type = inline.get("mimeType") or inline.get("mime_type") or "image/png"
            return GeneratedImage(data=data, mime_type=mime_type)
        return None

    async def generate(self, image_bytes: bytes, style_id: str) -> GeneratedImage:
        if not self.api_key:
            raise ExternalServicePermanent("gemini", "GEMINI_API_KEY is not configured")
        try:
            payload = self._payload(image_bytes, style_id)
        except ValueError as exc:
            raise ExternalServicePermanent("gemini", str(exc)) from exc

        url = f"{self.api_base}/models/{self.model}:generateContent"
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.post(url, params={"key": self.api_key}, json=payload)
        except httpx.TimeoutException as exc:
            logger.warning("Gemini request timed out after %ss", self.timeout_seconds)
            raise ExternalServiceTransient("gemini", "timeout") from exc
        except httpx.HTTPError as exc:
            logger.warning("Gemini request failed: %s", exc)
            raise ExternalServiceTransient("gemini", "network error") from exc

        status = response.status_code
        if status == 429 or status >= 500:
            logger.warning("Gemini returned retryable status %s", status)
            raise ExternalServiceTransient("gemini", f"status {status}")
        if status >= 400:
            logger.error("Gemini rejected request: status=%s body=%s", status, response.text[:500])
            raise ExternalServicePermanent("gemini", f"status {status}")

        try:
            body = response.json()
        except ValueError:
            body = None
        image = self._extract_image(body)
        if image is None:
            logger.warning("Gemini response contained no image")
            raise ExternalServiceTransient("gemini", "no image returned")
        return image


def get_image_generator() -> ImageGenerator:
    """FastAPI dependency; tests override it with a fake."""
    return GeminiImageGenerator(
        api_key=settings.GEMINI_API_KEY,
        model=settings.GEMINI_MODEL,
        api_base=settings.GEMINI_API_BASE,
        timeout_seconds=float(settings.GENERATION_TIMEOUT_SECONDS),
    )


async def find_completed_generation(account_id: str, idempotency_key: str, db: AsyncSession) -> Optional[Generation]:
    result = await db.execute(
        select(Generation).where(
            Generation.account_id == account_id,
            Generation.idempotency_key == idempotency_key,
            Generation.status == STATUS_COMPLETED,
        )
    )
    return result.scalars().first()


async def record_generation(
    db: AsyncSession,
    *,
    account_id: str,
    style: str,
    idempotency_key: str,
    status: str,
    error_kind: Optional[str] = None,
    mime_type: Optional[str] = None,
) -> Generation:
    """Persist one attempt; a second completed result for the same key is refused."""
    row = Generation(
        account_id=account_id,
        style=style,
        idempotency_key=idempotency_key,
        status=status,
        error_kind=error_kind,
        mime_type=mime_type,
    )
    db.add(row)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise DuplicateIdempotencyKey(idempotency_key) from exc
    return row


async def list_generations(account_id: str, db: AsyncSession, limit: int = 50) -> List[Generation]:
    result = await db.execute(
        select(Generation)
        .where(Generation.account_id == account_id)
        .order_by(Generation.created_at.desc())
        .limit(max(1, min(int(limit), 200)))
    )
    return list(result.scalars().all())
