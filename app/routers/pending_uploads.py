# app/routers/pending_uploads.py
from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session

from app.auth.deps import get_current_user
from app.db import get_db
from app.models.user import User
from app.schemas.upload_sessions import (
    CountOut,
    MarkImportedIn,
    PendingListOut,
    PendingUploadEditIn,
    PendingUploadOut,
)
from app.services import pending_uploads as pending
from app.services.inventory import InventoryStore, get_inventory_store

router = APIRouter(prefix="/api/ai/pending-uploads", tags=["pending-uploads"])


@router.get("", response_model=PendingListOut)
def list_pending_uploads(
    response: Response,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    inventory: InventoryStore = Depends(get_inventory_store),
):
    response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate"
    uploads = pending.list_for_owner(db, user.id, inventory)
    pending_count, processed_count = pending.summarize(uploads)
    return PendingListOut(
        items=[PendingUploadOut.from_record(u) for u in uploads],
        pending_count=pending_count,
        processed_count=processed_count,
        total_count=len(uploads),
    )


# vóór /{upload_id} registreren, anders matcht "mark-imported" als id
@router.post("/mark-imported", response_model=CountOut)
def mark_pending_imported(
    body: MarkImportedIn,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    count = pending.mark_imported(db, user.id, body.ids)
    return CountOut(count=count)


@router.patch("/{upload_id}", response_model=PendingUploadOut)
def edit_pending_upload(
    upload_id: int,
    body: PendingUploadEditIn,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    upload = pending.edit_extracted_data(db, upload_id, user.id, body.extracted_data)
    return PendingUploadOut.from_record(upload)


@router.delete("/{upload_id}")
def delete_pending_upload(
    upload_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    pending.delete_upload(db, upload_id, user.id)
    return {"success": True}


@router.delete("", response_model=CountOut)
def clear_pending_uploads(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    count = pending.clear_for_owner(db, user.id)
    return CountOut(count=count)
