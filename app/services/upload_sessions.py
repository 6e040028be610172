# app/services/upload_sessions.py
#
# Upload sessies + hun pending uploads: opslag en statusovergangen.
#
# Alle statuswijzigingen die een invariant bewaken zijn conditionele
# single-row UPDATEs (compare-and-set op de huidige status). Zo kan een
# terminale status (completed/expired/cancelled) nooit worden overschreven,
# ook niet door een worker in een ander proces.
from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.errors import Conflict, Forbidden, Gone, NotFound
from app.core.logging_config import logger
from app.models.upload_session import (
    CANCELLED_MESSAGE,
    LIVE_SESSION_STATUSES,
    UNPROCESSED_UPLOAD_STATUSES,
    PendingUpload,
    SessionStatus,
    UploadSession,
    UploadStatus,
    as_utc,
    status_values,
    utcnow,
)
from app.schemas.extraction import ExtractedFilamentData

# statussen waarin nog foto's aan een sessie toegevoegd mogen worden
UPLOADABLE_SESSION_STATUSES = (SessionStatus.pending, SessionStatus.uploading)


def new_session_token() -> str:
    return secrets.token_hex(32)


# -----------------------------------------------------------------------------
# Aanmaken / ophalen
# -----------------------------------------------------------------------------
def create_session(
    db: Session,
    owner_id: str,
    *,
    ttl: timedelta,
    status: SessionStatus = SessionStatus.pending,
) -> UploadSession:
    now = utcnow()
    session = UploadSession(
        token=new_session_token(),
        owner_id=owner_id,
        status=status.value,
        created_at=now,
        expires_at=now + ttl,
    )
    db.add(session)
    db.commit()
    db.refresh(session)
    logger.info("upload_session_created", session_id=session.id, owner_id=owner_id, status=session.status)
    return session


def get_by_token(db: Session, token: str) -> UploadSession:
    session = db.query(UploadSession).filter(UploadSession.token == token).first()
    if not session:
        raise NotFound("Session not found or expired")
    return session


def get_for_owner(db: Session, token: str, owner_id: str) -> UploadSession:
    session = get_by_token(db, token)
    if session.owner_id != owner_id:
        raise Forbidden("Access denied")
    return session


# -----------------------------------------------------------------------------
# Lazy expiry + liveness
# -----------------------------------------------------------------------------
def expire_if_due(db: Session, session: UploadSession, now: Optional[datetime] = None) -> bool:
    """
    Zet een verlopen, niet-terminale sessie op expired. Geeft True als de
    sessie (nu of eerder) als verlopen moet worden behandeld.
    """
    if session.status == SessionStatus.expired.value:
        return True
    if not session.is_expired(now):
        return False
    if session.status in status_values(LIVE_SESSION_STATUSES):
        updated = (
            db.query(UploadSession)
            .filter(
                UploadSession.id == session.id,
                UploadSession.status.in_(status_values(LIVE_SESSION_STATUSES)),
            )
            .update({UploadSession.status: SessionStatus.expired.value}, synchronize_session=False)
        )
        db.commit()
        db.refresh(session)
        if updated:
            logger.info("upload_session_expired", session_id=session.id)
    # completed blijft completed, maar is na expiresAt niet meer bereikbaar
    return session.status != SessionStatus.cancelled.value


def ensure_live(db: Session, session: UploadSession) -> UploadSession:
    """Gone bij verlopen, Conflict bij geannuleerd."""
    if session.status == SessionStatus.cancelled.value:
        raise Conflict("Session cancelled", extra={"status": session.status})
    if expire_if_due(db, session):
        raise Gone("Session expired", extra={"status": session.status})
    return session


def load_for_owner(db: Session, token: str, owner_id: str) -> UploadSession:
    return ensure_live(db, get_for_owner(db, token, owner_id))


# -----------------------------------------------------------------------------
# Pending uploads binnen een sessie
# -----------------------------------------------------------------------------
def load_for_upload(db: Session, token: str) -> UploadSession:
    """Mobiele flow: het token is de credential, geen eigenaar-check."""
    session = ensure_live(db, get_by_token(db, token))
    if session.status not in status_values(UPLOADABLE_SESSION_STATUSES):
        raise Conflict(
            f"Session is {session.status}; no more images can be added",
            extra={"status": session.status},
        )
    return session


def attach_images(db: Session, session: UploadSession, image_urls: Iterable[str]) -> Tuple[int, int]:
    """
    Maak een PendingUpload per locator en zet de sessie op uploading.
    Geeft (aantal toegevoegd, totaal in sessie).
    """
    image_urls = list(image_urls)

    # pending -> uploading (of uploading blijft uploading); faalt als de sessie
    # ondertussen is geannuleerd / gestart
    updated = (
        db.query(UploadSession)
        .filter(
            UploadSession.id == session.id,
            UploadSession.status.in_(status_values(UPLOADABLE_SESSION_STATUSES)),
        )
        .update({UploadSession.status: SessionStatus.uploading.value}, synchronize_session=False)
    )
    if not updated:
        db.rollback()
        db.refresh(session)
        raise Conflict(
            f"Session is {session.status}; no more images can be added",
            extra={"status": session.status},
        )

    now = utcnow()
    for offset, url in enumerate(image_urls):
        db.add(
            PendingUpload(
                session_id=session.id,
                image_url=url,
                status=UploadStatus.pending.value,
                # strikt oplopend binnen één batch, voor de verwerkingsvolgorde
                created_at=now + timedelta(microseconds=offset),
            )
        )
    db.commit()
    db.refresh(session)

    total = count_uploads(db, session.id)
    logger.info("images_attached", session_id=session.id, added=len(image_urls), total=total)
    return len(image_urls), total


def count_uploads(db: Session, session_id: int) -> int:
    return (
        db.query(func.count(PendingUpload.id))
        .filter(PendingUpload.session_id == session_id)
        .scalar()
        or 0
    )


def visible_uploads(db: Session, session_id: int) -> List[PendingUpload]:
    """Alle uploads van de sessie behalve de al geïmporteerde, nieuwste eerst."""
    return (
        db.query(PendingUpload)
        .filter(
            PendingUpload.session_id == session_id,
            PendingUpload.status != UploadStatus.imported.value,
        )
        .order_by(PendingUpload.created_at.desc(), PendingUpload.id.desc())
        .all()
    )


def has_unprocessed(db: Session, session_id: int) -> bool:
    return (
        db.query(PendingUpload.id)
        .filter(
            PendingUpload.session_id == session_id,
            PendingUpload.status.in_(status_values(UNPROCESSED_UPLOAD_STATUSES)),
        )
        .first()
        is not None
    )


# -----------------------------------------------------------------------------
# Overgangen
# -----------------------------------------------------------------------------
def claim_for_processing(db: Session, session: UploadSession, *, stale_after: timedelta) -> bool:
    """
    Single-flight: uploading -> processing als compare-and-set. Een sessie die
    al op processing staat maar waarvan de heartbeat ouder is dan stale_after
    (worker gecrasht / proces herstart) wordt overgenomen met een CAS op de
    waargenomen heartbeat. Geeft True als deze aanroep de worker mag starten.
    """
    now = utcnow()

    if session.status == SessionStatus.uploading.value:
        query = db.query(UploadSession).filter(
            UploadSession.id == session.id,
            UploadSession.status == SessionStatus.uploading.value,
        )
    elif session.status == SessionStatus.processing.value:
        observed = session.heartbeat_at
        if observed is not None and now - as_utc(observed) < stale_after:
            return False
        query = db.query(UploadSession).filter(
            UploadSession.id == session.id,
            UploadSession.status == SessionStatus.processing.value,
        )
        if observed is None:
            query = query.filter(UploadSession.heartbeat_at.is_(None))
        else:
            query = query.filter(UploadSession.heartbeat_at == observed)
    else:
        return False

    claimed = query.update(
        {
            UploadSession.status: SessionStatus.processing.value,
            UploadSession.heartbeat_at: now,
        },
        synchronize_session=False,
    )
    db.commit()
    db.refresh(session)
    return bool(claimed)


def cancel_session(db: Session, token: str, owner_id: str) -> Tuple[int, str]:
    """
    Annuleer een sessie; pending/processing uploads gaan mee naar cancelled,
    ready/error blijven staan. Geeft (aantal geannuleerde uploads, status).
    """
    session = get_for_owner(db, token, owner_id)

    if session.status == SessionStatus.cancelled.value:
        return 0, session.status
    if expire_if_due(db, session):
        raise Gone("Session expired", extra={"status": session.status})
    if session.status == SessionStatus.completed.value:
        raise Conflict("Session already completed", extra={"status": session.status})

    updated = (
        db.query(UploadSession)
        .filter(
            UploadSession.id == session.id,
            UploadSession.status.in_(status_values(LIVE_SESSION_STATUSES)),
        )
        .update({UploadSession.status: SessionStatus.cancelled.value}, synchronize_session=False)
    )
    if not updated:
        # worker was net klaar (completed) of iemand anders was ons voor
        db.rollback()
        db.refresh(session)
        if session.status == SessionStatus.cancelled.value:
            return 0, session.status
        raise Conflict(f"Session is {session.status}", extra={"status": session.status})

    cancelled = (
        db.query(PendingUpload)
        .filter(
            PendingUpload.session_id == session.id,
            PendingUpload.status.in_(status_values(UNPROCESSED_UPLOAD_STATUSES)),
        )
        .update(
            {
                PendingUpload.status: UploadStatus.cancelled.value,
                PendingUpload.error_message: CANCELLED_MESSAGE,
                PendingUpload.extracted_data: None,
                PendingUpload.updated_at: utcnow(),
            },
            synchronize_session=False,
        )
    )
    db.commit()
    db.refresh(session)
    logger.info("upload_session_cancelled", session_id=session.id, cancelled_uploads=cancelled)
    return cancelled, session.status


def delete_session(db: Session, token: str, owner_id: str) -> int:
    session = get_for_owner(db, token, owner_id)
    session_id = session.id
    db.delete(session)
    db.commit()
    logger.info("upload_session_deleted", session_id=session_id, owner_id=owner_id)
    return session_id


# -----------------------------------------------------------------------------
# Worker-kant: per-record updates
# -----------------------------------------------------------------------------
def current_status(db: Session, session_id: int) -> Optional[str]:
    """Verse status (met lazy expiry); None als de sessie is verwijderd."""
    session = db.get(UploadSession, session_id)
    if session is None:
        return None
    expire_if_due(db, session)
    return session.status


def next_unprocessed(db: Session, session_id: int) -> Optional[PendingUpload]:
    """Oudste nog niet verwerkte upload (creatievolgorde)."""
    return (
        db.query(PendingUpload)
        .filter(
            PendingUpload.session_id == session_id,
            PendingUpload.status.in_(status_values(UNPROCESSED_UPLOAD_STATUSES)),
        )
        .order_by(PendingUpload.created_at.asc(), PendingUpload.id.asc())
        .first()
    )


def mark_upload_processing(db: Session, upload_id: int) -> bool:
    updated = (
        db.query(PendingUpload)
        .filter(
            PendingUpload.id == upload_id,
            PendingUpload.status.in_(status_values(UNPROCESSED_UPLOAD_STATUSES)),
        )
        .update(
            {PendingUpload.status: UploadStatus.processing.value, PendingUpload.updated_at: utcnow()},
            synchronize_session=False,
        )
    )
    db.commit()
    return bool(updated)


def release_upload(db: Session, upload_id: int) -> bool:
    """processing -> pending, voor een beeld dat een gestopte worker niet heeft afgemaakt."""
    updated = (
        db.query(PendingUpload)
        .filter(
            PendingUpload.id == upload_id,
            PendingUpload.status == UploadStatus.processing.value,
        )
        .update(
            {PendingUpload.status: UploadStatus.pending.value, PendingUpload.updated_at: utcnow()},
            synchronize_session=False,
        )
    )
    db.commit()
    return bool(updated)


def store_upload_result(db: Session, upload_id: int, data: ExtractedFilamentData) -> bool:
    """processing -> ready. No-op (False) als de upload intussen is geannuleerd of verwijderd."""
    updated = (
        db.query(PendingUpload)
        .filter(
            PendingUpload.id == upload_id,
            PendingUpload.status == UploadStatus.processing.value,
        )
        .update(
            {
                PendingUpload.status: UploadStatus.ready.value,
                PendingUpload.extracted_data: data.to_stored(),
                PendingUpload.error_message: None,
                PendingUpload.updated_at: utcnow(),
            },
            synchronize_session=False,
        )
    )
    db.commit()
    return bool(updated)


def store_upload_failure(db: Session, upload_id: int, message: str) -> bool:
    """processing -> error, met leesbare melding."""
    updated = (
        db.query(PendingUpload)
        .filter(
            PendingUpload.id == upload_id,
            PendingUpload.status == UploadStatus.processing.value,
        )
        .update(
            {
                PendingUpload.status: UploadStatus.error.value,
                PendingUpload.extracted_data: None,
                PendingUpload.error_message: message or "Failed to process image",
                PendingUpload.updated_at: utcnow(),
            },
            synchronize_session=False,
        )
    )
    db.commit()
    return bool(updated)


def touch_heartbeat(db: Session, session_id: int) -> None:
    db.query(UploadSession).filter(
        UploadSession.id == session_id,
        UploadSession.status == SessionStatus.processing.value,
    ).update({UploadSession.heartbeat_at: utcnow()}, synchronize_session=False)
    db.commit()


def complete_session(db: Session, session_id: int) -> bool:
    """processing -> completed; alleen als niemand de sessie intussen heeft beëindigd."""
    updated = (
        db.query(UploadSession)
        .filter(
            UploadSession.id == session_id,
            UploadSession.status == SessionStatus.processing.value,
        )
        .update({UploadSession.status: SessionStatus.completed.value}, synchronize_session=False)
    )
    db.commit()
    return bool(updated)
