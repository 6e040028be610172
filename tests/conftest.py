import os
import tempfile

# --- env vóór de app-import: eigen SQLite-bestand + lokale opslag per testrun ---
_TMP = tempfile.mkdtemp(prefix="filament-intake-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP}/test.db"
os.environ["USE_LOCAL_STORAGE"] = "1"
os.environ["LOCAL_STORAGE_ROOT"] = os.path.join(_TMP, "uploads")
os.environ["RATE_LIMIT_ENABLED"] = "0"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["OPENAI_API_KEY"] = ""  # nooit de echte API aanroepen

import asyncio
import time
from typing import List, Optional

import pytest
from fastapi.testclient import TestClient

from app.auth.jwt import create_access_token
from app.core.errors import ExtractionError
from app.db import Base, SessionLocal, engine
from app.main import app
from app.models.user import User
from app.schemas.extraction import ExtractedFilamentData
from app.services.storage import get_image_store
from app.services.vision import VisionExtractor, get_vision_extractor


class FakeExtractor(VisionExtractor):
    """Geeft vaste data terug; beelden die met b"BAD" beginnen falen."""

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.calls: List[bytes] = []
        self.models: List[Optional[str]] = []

    async def extract(self, data: bytes, model_hint: Optional[str] = None) -> ExtractedFilamentData:
        self.calls.append(data)
        self.models.append(model_hint)
        if self.delay:
            await asyncio.sleep(self.delay)
        if data.startswith(b"BAD"):
            raise ExtractionError("Could not read label")
        return ExtractedFilamentData(
            name=f"Spool {len(self.calls)}",
            manufacturer="Sunlu",
            material="PLA",
            color_code="#112233",
            confidence=0.9,
        )


def image_file(data: bytes = b"\xff\xd8\xff good spool", name: str = "spool.jpg", mime: str = "image/jpeg"):
    return ("images", (name, data, mime))


def wait_for_session(client, token, headers, predicate, timeout: float = 5.0):
    """Poll de status-endpoint tot predicate(response) waar is."""
    deadline = time.time() + timeout
    last = None
    while time.time() < deadline:
        last = client.get(f"/api/ai/upload-session/{token}", headers=headers)
        if predicate(last):
            return last
        time.sleep(0.05)
    raise AssertionError(f"session {token} never reached expected state; last={last.json() if last else None}")


@pytest.fixture(autouse=True)
def _fresh_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def anyio_backend():
    # Dwing anyio om alleen asyncio te gebruiken (geen Trio nodig)
    return "asyncio"


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def _make_user(db, user_id: str, email: str) -> User:
    user = User(id=user_id, email=email)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def user(db):
    return _make_user(db, "user-1", "maker@example.com")


@pytest.fixture
def other_user(db):
    return _make_user(db, "user-2", "someone@example.com")


@pytest.fixture
def auth_headers(user):
    return {"Authorization": f"Bearer {create_access_token(user_id=user.id, email=user.email)}"}


@pytest.fixture
def other_headers(other_user):
    return {"Authorization": f"Bearer {create_access_token(user_id=other_user.id, email=other_user.email)}"}


@pytest.fixture
def extractor():
    return FakeExtractor()


@pytest.fixture
def store():
    return get_image_store()


@pytest.fixture
def client(extractor):
    app.dependency_overrides[get_vision_extractor] = lambda: extractor
    # als context manager: startup/shutdown draaien en de worker-tasks
    # leven op de event loop van de TestClient
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def make_image():
    return image_file


@pytest.fixture
def wait_session():
    return wait_for_session
