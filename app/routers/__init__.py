# Routers package

from . import ai_settings, pending_uploads, upload_sessions

__all__ = [
    "ai_settings",
    "pending_uploads",
    "upload_sessions",
]
