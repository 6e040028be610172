# app/routers/upload_sessions.py
from datetime import timedelta
from typing import List, Optional, Tuple

from fastapi import APIRouter, Depends, File, Request, Response, UploadFile
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.auth.deps import get_current_user
from app.core.errors import Conflict, StorageError
from app.core.logging_config import logger
from app.core.rate_limit import limiter
from app.core.settings import settings
from app.db import get_db
from app.jobs.extraction import WorkerRegistry, start_processing
from app.models.upload_session import (
    UNPROCESSED_UPLOAD_STATUSES,
    SessionStatus,
    UploadSession,
    as_utc,
    status_values,
)
from app.models.user import User
from app.observability.metrics import sessions_created_counter
from app.schemas.upload_sessions import (
    BulkUploadOut,
    CancelOut,
    ExtractPreviewIn,
    ExtractPreviewOut,
    PendingUploadOut,
    ProcessingSnapshotOut,
    SessionCreatedOut,
    SessionStatusOut,
    SessionUploadOut,
    SingleExtractOut,
)
from app.services import upload_sessions as sessions
from app.services.image_intake import decode_base64_image, read_images, store_images
from app.services.storage import ImageStore, get_image_store
from app.services.vision import VisionExtractor, get_vision_extractor


router = APIRouter(prefix="/api/ai", tags=["upload-sessions"])

NO_STORE = "no-store, no-cache, must-revalidate"


def get_worker_registry(request: Request) -> WorkerRegistry:
    return request.app.state.workers


def _model_hint(user: User) -> str:
    return user.vision_model or settings.OPENAI_MODEL


def _upload_url(token: str) -> str:
    return f"{str(settings.PUBLIC_BASE_URL).rstrip('/')}/mobile-upload/{token}"


# -----------------------------------------------------------------------------
# Snapshots
# -----------------------------------------------------------------------------
def _status_snapshot(db: Session, session: UploadSession) -> SessionStatusOut:
    uploads = sessions.visible_uploads(db, session.id)
    unprocessed = set(status_values(UNPROCESSED_UPLOAD_STATUSES))
    return SessionStatusOut(
        status=session.status,
        image_count=len(uploads),
        images=[PendingUploadOut.from_record(u) for u in uploads],
        processed_count=sum(1 for u in uploads if u.is_processed),
        pending_count=sum(1 for u in uploads if u.status in unprocessed),
        processing=session.status == SessionStatus.processing.value,
        expires_at=as_utc(session.expires_at),
    )


def _processing_snapshot(db: Session, session: UploadSession, processing: bool) -> ProcessingSnapshotOut:
    uploads = sessions.visible_uploads(db, session.id)
    return ProcessingSnapshotOut(
        results=[PendingUploadOut.from_record(u) for u in uploads],
        processing=processing,
        processed_count=sum(1 for u in uploads if u.is_processed),
        total_count=len(uploads),
    )


# -----------------------------------------------------------------------------
# Sessies
# -----------------------------------------------------------------------------
@router.post("/upload-session", response_model=SessionCreatedOut)
def create_upload_session(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    session = sessions.create_session(
        db, user.id, ttl=timedelta(minutes=settings.MOBILE_SESSION_TTL_MINUTES)
    )
    sessions_created_counter.labels(kind="mobile").inc()
    return SessionCreatedOut(
        token=session.token,
        upload_url=_upload_url(session.token),
        expires_at=as_utc(session.expires_at),
    )


@router.get("/upload-session/{token}", response_model=SessionStatusOut)
def get_upload_session(
    token: str,
    response: Response,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    response.headers["Cache-Control"] = NO_STORE
    session = sessions.get_for_owner(db, token, user.id)
    if session.status == SessionStatus.cancelled.value:
        # 409, maar wel met de per-beeld status zodat de client kan tonen wat er gebeurd is
        snapshot = _status_snapshot(db, session)
        raise Conflict("Session cancelled", extra=snapshot.model_dump(mode="json", by_alias=True))
    sessions.ensure_live(db, session)
    return _status_snapshot(db, session)


@router.post("/upload-session/{token}/process", response_model=ProcessingSnapshotOut)
async def process_upload_session(
    token: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    registry: WorkerRegistry = Depends(get_worker_registry),
    extractor: VisionExtractor = Depends(get_vision_extractor),
    store: ImageStore = Depends(get_image_store),
):
    session = await run_in_threadpool(sessions.load_for_owner, db, token, user.id)
    processing = await start_processing(
        db,
        session,
        registry=registry,
        extractor=extractor,
        store=store,
        model_hint=_model_hint(user),
    )
    return await run_in_threadpool(_processing_snapshot, db, session, processing)


@router.post("/upload-session/{token}/cancel", response_model=CancelOut)
def cancel_upload_session(
    token: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    cancelled, status = sessions.cancel_session(db, token, user.id)
    return CancelOut(cancelled_count=cancelled, status=status)


@router.delete("/upload-session/{token}")
def delete_upload_session(
    token: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    sessions.delete_session(db, token, user.id)
    return {"success": True}


# -----------------------------------------------------------------------------
# Mobiele upload (token = credential, geen login)
# -----------------------------------------------------------------------------
@router.post("/mobile-upload/{token}", response_model=SessionUploadOut)
@limiter.limit(settings.RATE_LIMIT_MOBILE_UPLOAD)
async def mobile_upload(
    request: Request,
    token: str,
    images: Optional[List[UploadFile]] = File(None),
    db: Session = Depends(get_db),
    store: ImageStore = Depends(get_image_store),
):
    session = await run_in_threadpool(sessions.load_for_upload, db, token)
    incoming = await read_images(images or [])
    locators, failed = await run_in_threadpool(store_images, store, incoming)
    uploaded, total = await run_in_threadpool(sessions.attach_images, db, session, locators)
    logger.info("mobile_upload", session_id=session.id, uploaded=uploaded, failed=failed)
    return SessionUploadOut(uploaded_count=uploaded, failed_count=failed, total_count=total)


# -----------------------------------------------------------------------------
# Directe uploads vanaf het dashboard
# -----------------------------------------------------------------------------
def _create_bulk_session(db: Session, owner_id: str, locators: List[str]) -> Tuple[UploadSession, int]:
    session = sessions.create_session(
        db,
        owner_id,
        ttl=timedelta(days=settings.BULK_SESSION_TTL_DAYS),
        status=SessionStatus.uploading,
    )
    uploaded, _ = sessions.attach_images(db, session, locators)
    return session, uploaded


@router.post("/extract-bulk", response_model=BulkUploadOut)
async def extract_bulk(
    images: Optional[List[UploadFile]] = File(None),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    registry: WorkerRegistry = Depends(get_worker_registry),
    extractor: VisionExtractor = Depends(get_vision_extractor),
    store: ImageStore = Depends(get_image_store),
):
    incoming = await read_images(images or [])
    locators, failed = await run_in_threadpool(store_images, store, incoming)

    session, uploaded = await run_in_threadpool(_create_bulk_session, db, user.id, locators)
    sessions_created_counter.labels(kind="bulk").inc()

    processing = await start_processing(
        db,
        session,
        registry=registry,
        extractor=extractor,
        store=store,
        model_hint=_model_hint(user),
    )
    snapshot = await run_in_threadpool(_processing_snapshot, db, session, processing)
    return BulkUploadOut(
        token=session.token,
        expires_at=as_utc(session.expires_at),
        uploaded_count=uploaded,
        failed_count=failed,
        **snapshot.model_dump(),
    )


@router.post("/extract", response_model=SingleExtractOut)
async def extract_single(
    image: Optional[UploadFile] = File(None),
    user: User = Depends(get_current_user),
    extractor: VisionExtractor = Depends(get_vision_extractor),
    store: ImageStore = Depends(get_image_store),
):
    incoming = await read_images([image] if image is not None else [])
    locators, _ = await run_in_threadpool(store_images, store, incoming)
    try:
        data = await extractor.extract(incoming[0].data, _model_hint(user))
    except Exception:
        # geen resultaat, dan ook geen beeld laten staan
        try:
            await run_in_threadpool(store.delete, locators[0])
        except StorageError as e:
            logger.warning("image_cleanup_failed", image_url=locators[0], error=e.message)
        raise
    logger.info("single_extraction", user_id=user.id, image_url=locators[0])
    return SingleExtractOut(image_url=locators[0], extracted_data=data)


@router.post("/extract-preview", response_model=ExtractPreviewOut)
async def extract_preview(
    body: ExtractPreviewIn,
    user: User = Depends(get_current_user),
    extractor: VisionExtractor = Depends(get_vision_extractor),
):
    """Extractie op een base64-beeld uit de body; er wordt niets opgeslagen."""
    data = decode_base64_image(body.image_base64)
    extracted = await extractor.extract(data, _model_hint(user))
    logger.info("preview_extraction", user_id=user.id, size=len(data))
    return ExtractPreviewOut(extracted_data=extracted)
