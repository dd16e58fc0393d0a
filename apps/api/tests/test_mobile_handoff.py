import base64
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.future import select

from config import settings
from conftest import seed_account
from database import get_db
from main import app
from models.mobile_upload import MobileUpload, MobileUploadSession
from services.session_token import create_session_token

OWNER_ID = "acct-desktop"
OWNER_HEADER = {"Authorization": f"Bearer {create_session_token(OWNER_ID)['token']}"}
OTHER_HEADER = {"Authorization": f"Bearer {create_session_token('acct-stranger')['token']}"}
PHOTO = b"\xff\xd8\xff\xe0" + b"jpeg-body" * 20


@pytest_asyncio.fixture
async def mobile_client(session_maker, tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "MOBILE_UPLOAD_DIR", str(tmp_path / "handoff"))
    monkeypatch.setattr(settings, "CRON_SECRET", "cron-secret-value")
    await seed_account(session_maker, OWNER_ID)
    await seed_account(session_maker, "acct-stranger")

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client, session_maker

    app.dependency_overrides.pop(get_db, None)


async def _start_session(client) -> dict:
    response = await client.post("/mobile/sessions", headers=OWNER_HEADER)
    assert response.status_code == 200
    return response.json()


async def _upload(client, session_id: str, content: bytes = PHOTO, filename: str = "selfie.jpg", content_type: str = "image/jpeg"):
    return await client.post(
        f"/mobile/sessions/{session_id}/uploads",
        files={"file": (filename, content, content_type)},
    )


@pytest.mark.asyncio
async def test_phone_upload_is_claimed_once_by_owner(mobile_client):
    client, _ = mobile_client
    session = await _start_session(client)
    assert session["upload_url"].endswith(f"/mobile-upload?session={session['session_id']}")

    uploaded = await _upload(client, session["session_id"])
    assert uploaded.status_code == 200
    assert uploaded.json()["file_size_bytes"] == len(PHOTO)

    first = await client.post(f"/mobile/sessions/{session['session_id']}/claim", headers=OWNER_HEADER)
    second = await client.post(f"/mobile/sessions/{session['session_id']}/claim", headers=OWNER_HEADER)

    assert first.status_code == 200
    claimed = first.json()["uploads"]
    assert len(claimed) == 1
    assert base64.b64decode(claimed[0]["image_base64"]) == PHOTO
    assert second.json()["uploads"] == []


@pytest.mark.asyncio
async def test_other_accounts_cannot_claim_or_view_qr(mobile_client):
    client, _ = mobile_client
    session = await _start_session(client)
    await _upload(client, session["session_id"])

    claim = await client.post(f"/mobile/sessions/{session['session_id']}/claim", headers=OTHER_HEADER)
    qr = await client.get(f"/mobile/sessions/{session['session_id']}/qr", headers=OTHER_HEADER)

    assert claim.status_code == 404
    assert qr.status_code == 404


@pytest.mark.asyncio
async def test_qr_code_is_png(mobile_client):
    client, _ = mobile_client
    session = await _start_session(client)

    response = await client.get(session["qr_url"], headers=OWNER_HEADER)

    assert response.status_code == 200
    assert response.headers["content-type"] == "image/png"
    assert response.content.startswith(b"\x89PNG")


@pytest.mark.asyncio
async def test_upload_validation(mobile_client, monkeypatch):
    client, _ = mobile_client
    session = await _start_session(client)

    unknown = await _upload(client, "no-such-session")
    not_image = await _upload(client, session["session_id"], b"%PDF-1.4", "doc.pdf", "application/pdf")
    monkeypatch.setattr(settings, "MAX_IMAGE_UPLOAD_BYTES", 32)
    too_large = await _upload(client, session["session_id"])

    assert unknown.status_code == 404
    assert not_image.status_code == 422
    assert too_large.status_code == 413
    assert not any(Path(settings.MOBILE_UPLOAD_DIR).rglob("*.jpg"))


@pytest.mark.asyncio
async def test_expired_session_rejects_uploads_and_is_purged(mobile_client):
    client, session_maker = mobile_client
    session = await _start_session(client)
    await _upload(client, session["session_id"])

    async with session_maker() as db:
        row = await db.get(MobileUploadSession, session["session_id"])
        row.expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)
        await db.commit()

    late = await _upload(client, session["session_id"])
    assert late.status_code == 410

    denied = await client.post("/mobile/cleanup", headers={"X-Cron-Secret": "wrong"})
    assert denied.status_code == 401

    purged = await client.post("/mobile/cleanup", headers={"X-Cron-Secret": "cron-secret-value"})
    assert purged.status_code == 200
    assert purged.json() == {"sessions_removed": 1, "files_removed": 1}

    async with session_maker() as db:
        assert (await db.execute(select(MobileUpload))).scalars().all() == []
        assert await db.get(MobileUploadSession, session["session_id"]) is None
    assert not any(path.is_file() for path in Path(settings.MOBILE_UPLOAD_DIR).rglob("*"))


@pytest.mark.asyncio
async def test_cleanup_keeps_live_sessions(mobile_client):
    client, session_maker = mobile_client
    session = await _start_session(client)
    await _upload(client, session["session_id"])

    purged = await client.post("/mobile/cleanup", headers={"X-Cron-Secret": "cron-secret-value"})

    assert purged.json() == {"sessions_removed": 0, "files_removed": 0}
    async with session_maker() as db:
        assert await db.get(MobileUploadSession, session["session_id"]) is not None


@pytest.mark.asyncio
async def test_unreadable_upload_stays_claimable(mobile_client):
    client, session_maker = mobile_client
    session = await _start_session(client)
    await _upload(client, session["session_id"])

    with patch("services.mobile_handoff.LocalUploadStorage.read", side_effect=OSError("disk unavailable")):
        failed = await client.post(f"/mobile/sessions/{session['session_id']}/claim", headers=OWNER_HEADER)

    assert failed.status_code == 200
    assert failed.json()["uploads"] == []
    async with session_maker() as db:
        upload = (await db.execute(select(MobileUpload))).scalars().one()
    assert upload.claimed_at is None
    assert upload.claim_token is None

    recovered = await client.post(f"/mobile/sessions/{session['session_id']}/claim", headers=OWNER_HEADER)
    uploads = recovered.json()["uploads"]
    assert len(uploads) == 1
    assert base64.b64decode(uploads[0]["image_base64"]) == PHOTO
