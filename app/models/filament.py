# app/models/filament.py
#
# Voorraad-record. De CRUD hiervoor leeft buiten deze service; we mappen
# alleen de kolommen die de reconciliatie van pending uploads nodig heeft.
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from app.db import Base


class Filament(Base):
    __tablename__ = "filaments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    manufacturer: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    material: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # locator van de foto waaruit dit record is aangemaakt
    image_url: Mapped[Optional[str]] = mapped_column(String(1024), index=True, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Filament id={self.id} user={self.user_id} name={self.name!r}>"
