import asyncio
from datetime import timedelta
from typing import Optional

import pytest

from app.core.errors import ExtractionError
from app.db import SessionLocal
from app.jobs.extraction import ExtractionWorker, WorkerRegistry, start_processing
from app.models.upload_session import PendingUpload, SessionStatus, UploadSession, UploadStatus, utcnow
from app.schemas.extraction import ExtractedFilamentData
from app.services import upload_sessions as sessions
from app.services.vision import VisionExtractor

pytestmark = pytest.mark.anyio

STALE = timedelta(minutes=15)


class CancelOnFirstCall(VisionExtractor):
    """Annuleert de sessie terwijl het eerste beeld nog in de vision-call zit."""

    def __init__(self, token: str, owner_id: str):
        self.token = token
        self.owner_id = owner_id
        self.calls = 0

    async def extract(self, data: bytes, model_hint: Optional[str] = None) -> ExtractedFilamentData:
        self.calls += 1
        if self.calls == 1:
            with SessionLocal() as db:
                sessions.cancel_session(db, self.token, self.owner_id)
        return ExtractedFilamentData(name="late result")


class ExpireOnFirstCall(VisionExtractor):
    """Laat de sessie verlopen tijdens de eerste vision-call; optioneel faalt die call daarna."""

    def __init__(self, session_id: int, fail: bool = False):
        self.session_id = session_id
        self.fail = fail
        self.calls = 0

    async def extract(self, data: bytes, model_hint: Optional[str] = None) -> ExtractedFilamentData:
        self.calls += 1
        if self.calls == 1:
            with SessionLocal() as db:
                db.query(UploadSession).filter(UploadSession.id == self.session_id).update(
                    {UploadSession.expires_at: utcnow() - timedelta(seconds=1)}
                )
                db.commit()
        if self.fail:
            raise ExtractionError("Could not read label")
        return ExtractedFilamentData(name="late result")


# Helpers
def _mk_session(db, user, store, payloads, status=SessionStatus.pending):
    session = sessions.create_session(db, user.id, ttl=timedelta(hours=1), status=status)
    locators = [store.save(p, ".jpg") for p in payloads]
    if locators:
        sessions.attach_images(db, session, locators)
    return session


def _uploads(db, session_id):
    db.expire_all()
    return (
        db.query(PendingUpload)
        .filter(PendingUpload.session_id == session_id)
        .order_by(PendingUpload.id)
        .all()
    )


def _status(db, session_id):
    db.expire_all()
    return db.get(UploadSession, session_id).status


# -------------------------
# 1) Worker
# -------------------------
async def test_worker_processes_in_creation_order(db, user, store, extractor):
    payloads = [b"\xff\xd8\xff one", b"\xff\xd8\xff two", b"\xff\xd8\xff three"]
    session = _mk_session(db, user, store, payloads)
    assert sessions.claim_for_processing(db, session, stale_after=STALE)

    outcome = await ExtractionWorker(session.id, extractor=extractor, store=store).run()

    assert outcome == "completed"
    assert extractor.calls == payloads
    assert _status(db, session.id) == "completed"
    for upload in _uploads(db, session.id):
        assert upload.status == "ready"
        assert upload.extracted_data["manufacturer"] == "Sunlu"
        assert upload.error_message is None


async def test_worker_isolates_failures(db, user, store, extractor):
    session = _mk_session(db, user, store, [b"BAD first", b"\xff\xd8\xff ok", b"BAD last"])
    sessions.claim_for_processing(db, session, stale_after=STALE)

    await ExtractionWorker(session.id, extractor=extractor, store=store).run()

    uploads = _uploads(db, session.id)
    assert [u.status for u in uploads] == ["error", "ready", "error"]
    for u in uploads:
        if u.status == "error":
            assert u.error_message == "Could not read label"
            assert u.extracted_data is None
        else:
            assert u.extracted_data is not None
            assert u.error_message is None
    assert _status(db, session.id) == "completed"


async def test_worker_records_storage_failure_per_image(db, user, store, extractor):
    session = _mk_session(db, user, store, [b"\xff\xd8\xff ok"])
    # bestand verdwenen tussen upload en verwerking
    store.delete(_uploads(db, session.id)[0].image_url)
    sessions.claim_for_processing(db, session, stale_after=STALE)

    await ExtractionWorker(session.id, extractor=extractor, store=store).run()

    upload = _uploads(db, session.id)[0]
    assert upload.status == "error"
    assert "Failed to read image" in upload.error_message
    assert _status(db, session.id) == "completed"


async def test_worker_stops_when_cancelled_mid_call(db, user, store):
    session = _mk_session(db, user, store, [b"\xff\xd8\xff a", b"\xff\xd8\xff b", b"\xff\xd8\xff c"])
    sessions.claim_for_processing(db, session, stale_after=STALE)
    canceller = CancelOnFirstCall(session.token, user.id)

    outcome = await ExtractionWorker(session.id, extractor=canceller, store=store).run()

    assert outcome == "stopped"
    assert canceller.calls == 1
    assert _status(db, session.id) == "cancelled"
    # ook het beeld dat al in de vision-call zat wordt niet alsnog ready
    assert {u.status for u in _uploads(db, session.id)} == {"cancelled"}


async def test_worker_does_nothing_for_cancelled_session(db, user, store, extractor):
    session = _mk_session(db, user, store, [b"\xff\xd8\xff a"])
    sessions.cancel_session(db, session.token, user.id)

    outcome = await ExtractionWorker(session.id, extractor=extractor, store=store).run()

    assert outcome == "stopped"
    assert extractor.calls == []


async def test_worker_stops_on_expired_session(db, user, store, extractor):
    session = _mk_session(db, user, store, [b"\xff\xd8\xff a"])
    sessions.claim_for_processing(db, session, stale_after=STALE)
    db.query(UploadSession).filter(UploadSession.id == session.id).update(
        {UploadSession.expires_at: utcnow() - timedelta(seconds=1)}
    )
    db.commit()

    outcome = await ExtractionWorker(session.id, extractor=extractor, store=store).run()

    assert outcome == "stopped"
    assert extractor.calls == []
    assert _status(db, session.id) == "expired"
    assert _uploads(db, session.id)[0].status == "pending"


@pytest.mark.parametrize("fail", [False, True])
async def test_image_in_flight_returns_to_pending_when_session_expires(db, user, store, fail):
    session = _mk_session(db, user, store, [b"\xff\xd8\xff a", b"\xff\xd8\xff b"])
    sessions.claim_for_processing(db, session, stale_after=STALE)
    expirer = ExpireOnFirstCall(session.id, fail=fail)

    outcome = await ExtractionWorker(session.id, extractor=expirer, store=store).run()

    assert outcome == "stopped"
    assert expirer.calls == 1
    assert _status(db, session.id) == "expired"
    uploads = _uploads(db, session.id)
    assert [u.status for u in uploads] == ["pending", "pending"]
    assert uploads[0].extracted_data is None
    assert uploads[0].error_message is None


# -------------------------
# 2) Registry / start_processing
# -------------------------
async def test_registry_is_single_flight():
    registry = WorkerRegistry()
    gate = asyncio.Event()

    async def run():
        await gate.wait()
        return "completed"

    assert registry.spawn(1, run) is True
    assert registry.spawn(1, run) is False
    assert registry.is_running(1)
    assert len(registry) == 1

    gate.set()
    await registry.join(1)
    assert not registry.is_running(1)
    assert registry.spawn(1, run) is True
    await registry.join(1)


async def test_registry_shutdown_cancels_live_workers():
    registry = WorkerRegistry()

    async def forever():
        await asyncio.sleep(3600)
        return "completed"

    registry.spawn(1, forever)
    registry.spawn(2, forever)
    await registry.shutdown()
    assert len(registry) == 0
    assert not registry.is_running(1)


async def test_start_processing_twice_spawns_once(db, user, store, extractor):
    extractor.delay = 0.05
    session = _mk_session(db, user, store, [b"\xff\xd8\xff a", b"\xff\xd8\xff b"])
    registry = WorkerRegistry()

    assert await start_processing(db, session, registry=registry, extractor=extractor, store=store)
    assert await start_processing(db, session, registry=registry, extractor=extractor, store=store)
    assert len(registry) == 1

    await registry.join(session.id)
    assert len(extractor.calls) == 2
    assert _status(db, session.id) == "completed"


async def test_start_processing_without_uploads(db, user, store, extractor):
    session = _mk_session(db, user, store, [])
    registry = WorkerRegistry()
    assert await start_processing(db, session, registry=registry, extractor=extractor, store=store) is False
    assert _status(db, session.id) == "pending"


async def test_fresh_heartbeat_from_other_process_is_respected(db, user, store, extractor):
    session = _mk_session(db, user, store, [b"\xff\xd8\xff a"])
    # een ander proces heeft de sessie net geclaimd
    assert sessions.claim_for_processing(db, session, stale_after=STALE)
    registry = WorkerRegistry()

    assert await start_processing(db, session, registry=registry, extractor=extractor, store=store) is True
    assert len(registry) == 0
    assert extractor.calls == []


async def test_stale_processing_session_is_reclaimed(db, user, store, extractor):
    session = _mk_session(db, user, store, [b"\xff\xd8\xff a", b"\xff\xd8\xff b"])
    sessions.claim_for_processing(db, session, stale_after=STALE)
    first = _uploads(db, session.id)[0]
    # dode worker: één beeld bleef op processing hangen, heartbeat is oud
    db.query(PendingUpload).filter(PendingUpload.id == first.id).update(
        {PendingUpload.status: UploadStatus.processing.value}
    )
    db.query(UploadSession).filter(UploadSession.id == session.id).update(
        {UploadSession.heartbeat_at: utcnow() - timedelta(hours=1)}
    )
    db.commit()
    db.refresh(session)
    registry = WorkerRegistry()

    assert await start_processing(db, session, registry=registry, extractor=extractor, store=store) is True
    await registry.join(session.id)

    assert [u.status for u in _uploads(db, session.id)] == ["ready", "ready"]
    assert _status(db, session.id) == "completed"


async def test_claim_cannot_leave_terminal_status(db, user, store):
    session = _mk_session(db, user, store, [b"\xff\xd8\xff a"])
    sessions.cancel_session(db, session.token, user.id)
    db.refresh(session)
    assert sessions.claim_for_processing(db, session, stale_after=STALE) is False
    assert _status(db, session.id) == "cancelled"
