# app/services/pending_uploads.py
#
# Dashboard-kant: pending uploads over alle sessies van één eigenaar.
from typing import List, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.errors import NotFound, ValidationError
from app.core.logging_config import logger
from app.models.upload_session import (
    ACTIVE_UPLOAD_STATUSES,
    CLEARABLE_UPLOAD_STATUSES,
    UNPROCESSED_UPLOAD_STATUSES,
    PendingUpload,
    UploadSession,
    UploadStatus,
    status_values,
    utcnow,
)
from app.schemas.extraction import ExtractedFilamentData
from app.services.inventory import InventoryStore
from app.services.reconciliation import reconcile_with_inventory


def _owned_session_ids(owner_id: str):
    return select(UploadSession.id).where(UploadSession.owner_id == owner_id)


def _get_owned(db: Session, upload_id: int, owner_id: str) -> PendingUpload:
    upload = (
        db.query(PendingUpload)
        .join(UploadSession, PendingUpload.session_id == UploadSession.id)
        .filter(PendingUpload.id == upload_id, UploadSession.owner_id == owner_id)
        .first()
    )
    if not upload:
        raise NotFound("Pending upload not found")
    return upload


def list_for_owner(db: Session, owner_id: str, inventory: InventoryStore) -> List[PendingUpload]:
    candidates = (
        db.query(PendingUpload)
        .join(UploadSession, PendingUpload.session_id == UploadSession.id)
        .filter(
            UploadSession.owner_id == owner_id,
            PendingUpload.status.in_(status_values(ACTIVE_UPLOAD_STATUSES)),
        )
        .order_by(PendingUpload.created_at.desc(), PendingUpload.id.desc())
        .all()
    )
    return reconcile_with_inventory(db, owner_id, candidates, inventory)


def summarize(uploads: Sequence[PendingUpload]) -> Tuple[int, int]:
    """(pending_count, processed_count)"""
    unprocessed = set(status_values(UNPROCESSED_UPLOAD_STATUSES))
    pending = sum(1 for u in uploads if u.status in unprocessed)
    processed = sum(1 for u in uploads if u.is_processed)
    return pending, processed


def edit_extracted_data(
    db: Session, upload_id: int, owner_id: str, data: ExtractedFilamentData
) -> PendingUpload:
    """Handmatige correctie voor import; forceert status terug naar ready."""
    upload = _get_owned(db, upload_id, owner_id)
    if upload.status in (UploadStatus.imported.value, UploadStatus.cancelled.value):
        # een al geïmporteerde of geannuleerde foto komt niet terug in de lijst
        raise ValidationError(f"Pending upload is {upload.status}")
    upload.extracted_data = data.to_stored()
    upload.error_message = None
    upload.status = UploadStatus.ready.value
    upload.updated_at = utcnow()
    db.commit()
    db.refresh(upload)
    logger.info("pending_upload_edited", upload_id=upload.id, owner_id=owner_id)
    return upload


def delete_upload(db: Session, upload_id: int, owner_id: str) -> None:
    upload = _get_owned(db, upload_id, owner_id)
    db.delete(upload)
    db.commit()
    logger.info("pending_upload_deleted", upload_id=upload_id, owner_id=owner_id)


def clear_for_owner(db: Session, owner_id: str) -> int:
    deleted = (
        db.query(PendingUpload)
        .filter(
            PendingUpload.session_id.in_(_owned_session_ids(owner_id)),
            PendingUpload.status.in_(status_values(CLEARABLE_UPLOAD_STATUSES)),
        )
        .delete(synchronize_session=False)
    )
    db.commit()
    logger.info("pending_uploads_cleared", owner_id=owner_id, count=deleted)
    return deleted


def mark_imported(db: Session, owner_id: str, ids: Sequence[int]) -> int:
    """Idempotent: al geïmporteerde ids tellen niet opnieuw mee."""
    ids = sorted({int(i) for i in ids})
    if not ids:
        raise ValidationError("ids must be a non-empty list")
    updated = (
        db.query(PendingUpload)
        .filter(
            PendingUpload.id.in_(ids),
            PendingUpload.session_id.in_(_owned_session_ids(owner_id)),
            PendingUpload.status != UploadStatus.imported.value,
        )
        .update(
            {PendingUpload.status: UploadStatus.imported.value, PendingUpload.updated_at: utcnow()},
            synchronize_session=False,
        )
    )
    db.commit()
    logger.info("pending_uploads_marked_imported", owner_id=owner_id, requested=len(ids), updated=updated)
    return updated
