# app/services/inventory.py
from abc import ABC, abstractmethod
from typing import List, Sequence

from fastapi import Depends
from sqlalchemy.orm import Session

from app.db import get_db
from app.models.filament import Filament


class InventoryStore(ABC):
    """Leeskant van de voorraad, voor zover de pending-lijst die nodig heeft."""

    @abstractmethod
    def find_by_owner_and_locators(self, owner_id: str, locators: Sequence[str]) -> List[Filament]:
        ...


class SqlInventoryStore(InventoryStore):
    def __init__(self, db: Session):
        self.db = db

    def find_by_owner_and_locators(self, owner_id: str, locators: Sequence[str]) -> List[Filament]:
        locators = [loc for loc in set(locators) if loc]
        if not locators:
            return []
        return (
            self.db.query(Filament)
            .filter(Filament.user_id == owner_id, Filament.image_url.in_(locators))
            .all()
        )


def get_inventory_store(db: Session = Depends(get_db)) -> InventoryStore:
    return SqlInventoryStore(db)
