# app/models/upload_session.py
from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any, List, Optional

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """SQLite geeft naive datetimes terug; we slaan altijd UTC op."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SessionStatus(str, enum.Enum):
    pending = "pending"
    uploading = "uploading"
    processing = "processing"
    completed = "completed"
    expired = "expired"
    cancelled = "cancelled"


class UploadStatus(str, enum.Enum):
    pending = "pending"
    processing = "processing"
    ready = "ready"
    error = "error"
    cancelled = "cancelled"
    imported = "imported"


LIVE_SESSION_STATUSES = (
    SessionStatus.pending,
    SessionStatus.uploading,
    SessionStatus.processing,
)

# Nog door de worker te verwerken. "processing" hoort erbij zodat een
# afgebroken worker zijn half-afgemaakte beeld opnieuw oppakt.
UNPROCESSED_UPLOAD_STATUSES = (UploadStatus.pending, UploadStatus.processing)

# Zichtbaar in het dashboard (cross-session lijst)
ACTIVE_UPLOAD_STATUSES = (
    UploadStatus.pending,
    UploadStatus.processing,
    UploadStatus.ready,
    UploadStatus.error,
)

# Alles wat "clear all" mag weggooien; imported blijft staan
CLEARABLE_UPLOAD_STATUSES = ACTIVE_UPLOAD_STATUSES + (UploadStatus.cancelled,)

CANCELLED_MESSAGE = "Cancelled by user"


class UploadSession(Base):
    __tablename__ = "upload_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    token: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)
    owner_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False
    )

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SessionStatus.pending.value
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # door de worker per beeld bijgewerkt; zie WORKER_STALE_SECONDS
    heartbeat_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    uploads: Mapped[List["PendingUpload"]] = relationship(
        "PendingUpload",
        back_populates="session",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="PendingUpload.id",
    )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > as_utc(self.expires_at)

    def __repr__(self) -> str:
        return f"<UploadSession id={self.id} owner={self.owner_id} status={self.status}>"


class PendingUpload(Base):
    __tablename__ = "pending_uploads"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[int] = mapped_column(
        ForeignKey("upload_sessions.id", ondelete="CASCADE"), index=True, nullable=False
    )

    image_url: Mapped[str] = mapped_column(String(1024), index=True, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=UploadStatus.pending.value, index=True
    )

    # ExtractedFilamentData.model_dump(); alleen gezet als status == ready
    extracted_data: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    session: Mapped["UploadSession"] = relationship("UploadSession", back_populates="uploads")

    @property
    def is_processed(self) -> bool:
        return self.status in (UploadStatus.ready.value, UploadStatus.error.value)

    def __repr__(self) -> str:
        return f"<PendingUpload id={self.id} session={self.session_id} status={self.status}>"


def status_values(statuses) -> list[str]:
    return [s.value if isinstance(s, enum.Enum) else s for s in statuses]
