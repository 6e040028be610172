# app/services/reconciliation.py
#
# Foto's die al tot een voorraad-record hebben geleid horen niet meer in de
# pending-lijst, ook als de client "mark imported" nooit heeft gestuurd.
from typing import List, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.logging_config import logger
from app.models.upload_session import PendingUpload, UploadSession, UploadStatus, utcnow
from app.observability.metrics import reconciled_counter
from app.services.inventory import InventoryStore


def reconcile_with_inventory(
    db: Session,
    owner_id: str,
    candidates: Sequence[PendingUpload],
    inventory: InventoryStore,
) -> List[PendingUpload]:
    """
    Filter candidates tegen de voorraad van owner_id. Matches verdwijnen uit het
    resultaat en worden meteen op imported gezet.
    """
    locators = {u.image_url for u in candidates if u.image_url}
    if not locators:
        return list(candidates)

    consumed = {
        f.image_url
        for f in inventory.find_by_owner_and_locators(owner_id, sorted(locators))
        if f.image_url
    }
    if not consumed:
        return list(candidates)

    matched_ids = [u.id for u in candidates if u.image_url in consumed]
    owned_sessions = select(UploadSession.id).where(UploadSession.owner_id == owner_id)
    updated = (
        db.query(PendingUpload)
        .filter(
            PendingUpload.id.in_(matched_ids),
            PendingUpload.session_id.in_(owned_sessions),
            PendingUpload.status != UploadStatus.imported.value,
        )
        .update(
            {PendingUpload.status: UploadStatus.imported.value, PendingUpload.updated_at: utcnow()},
            synchronize_session=False,
        )
    )
    db.commit()

    if updated:
        reconciled_counter.inc(updated)
        logger.info("pending_uploads_reconciled", owner_id=owner_id, count=updated)

    return [u for u in candidates if u.image_url not in consumed]
