# app/models/user.py
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column
from app.db import Base


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)

    email: Mapped[str] = mapped_column(
        String(320), unique=True, index=True, nullable=False
    )

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default="1")

    # voorkeursmodel voor de vision-extractie; None = settings.OPENAI_MODEL
    vision_model: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # eigen OpenAI key, Fernet-versleuteld (app.core.encryption); None = env key
    openai_api_key: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
