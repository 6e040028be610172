# Models package; importeren registreert de tabellen op Base.metadata

from .user import User
from .filament import Filament
from .upload_session import (
    PendingUpload,
    SessionStatus,
    UploadSession,
    UploadStatus,
)

__all__ = [
    "User",
    "Filament",
    "UploadSession",
    "PendingUpload",
    "SessionStatus",
    "UploadStatus",
]
