from datetime import timedelta

from app.models.filament import Filament
from app.models.upload_session import PendingUpload, SessionStatus, UploadStatus
from app.services import upload_sessions as sessions
from app.services.inventory import SqlInventoryStore
from app.services.pending_uploads import list_for_owner

PENDING_PATH = "/api/ai/pending-uploads"


# Helpers
def _mk_uploads(db, owner_id, statuses, prefix="img"):
    """Eén sessie met een upload per status; geeft de uploads terug (oud -> nieuw)."""
    session = sessions.create_session(db, owner_id, ttl=timedelta(days=30), status=SessionStatus.uploading)
    uploads = []
    for i, status in enumerate(statuses):
        upload = PendingUpload(
            session_id=session.id,
            image_url=f"/uploads/filaments/{prefix}-{session.id}-{i}.jpg",
            status=status.value,
            extracted_data={"name": f"Spool {i}"} if status == UploadStatus.ready else None,
            error_message="Could not read label" if status == UploadStatus.error else None,
        )
        db.add(upload)
        uploads.append(upload)
    db.commit()
    return uploads


def _add_filament(db, user_id, image_url):
    db.add(Filament(user_id=user_id, name="Imported spool", image_url=image_url))
    db.commit()


def _status_of(db, upload_id):
    db.expire_all()
    return db.get(PendingUpload, upload_id).status


# -------------------------
# 1) Lijst + reconciliatie
# -------------------------
def test_list_spans_sessions_and_hides_finished_states(client, auth_headers, db, user):
    _mk_uploads(db, user.id, [UploadStatus.pending, UploadStatus.ready])
    _mk_uploads(db, user.id, [UploadStatus.error, UploadStatus.cancelled, UploadStatus.imported])

    r = client.get(PENDING_PATH, headers=auth_headers)
    assert r.status_code == 200
    body = r.json()
    assert sorted(item["status"] for item in body["items"]) == ["error", "pending", "ready"]
    assert body["pendingCount"] == 1
    assert body["processedCount"] == 2
    assert body["totalCount"] == 3
    assert r.headers["cache-control"].startswith("no-store")


def test_list_is_owner_scoped(client, auth_headers, db, user, other_user):
    _mk_uploads(db, other_user.id, [UploadStatus.ready])
    assert client.get(PENDING_PATH, headers=auth_headers).json()["items"] == []


def test_ready_item_serializes_extracted_data(client, auth_headers, db, user):
    _mk_uploads(db, user.id, [UploadStatus.ready])
    item = client.get(PENDING_PATH, headers=auth_headers).json()["items"][0]
    assert item["extractedData"]["name"] == "Spool 0"
    assert item["extractedData"]["schemaVersion"] == 1
    assert item["error"] is None


def test_unreadable_stored_data_reads_as_empty(client, auth_headers, db, user):
    (upload,) = _mk_uploads(db, user.id, [UploadStatus.ready])
    upload.extracted_data = {"isSealed": "maybe"}
    db.commit()
    item = client.get(PENDING_PATH, headers=auth_headers).json()["items"][0]
    assert item["extractedData"] is None


def test_reconciliation_hides_and_marks_imported(client, auth_headers, db, user):
    first, second = _mk_uploads(db, user.id, [UploadStatus.ready, UploadStatus.ready])
    # voorraad-record aangemaakt, maar mark-imported nooit gestuurd
    _add_filament(db, user.id, first.image_url)

    items = client.get(PENDING_PATH, headers=auth_headers).json()["items"]
    assert [item["id"] for item in items] == [second.id]
    assert _status_of(db, first.id) == "imported"

    # blijft weg bij de volgende read
    assert [i["id"] for i in client.get(PENDING_PATH, headers=auth_headers).json()["items"]] == [second.id]


def test_reconciliation_ignores_other_owners_inventory(db, user, other_user):
    (upload,) = _mk_uploads(db, user.id, [UploadStatus.ready])
    _add_filament(db, other_user.id, upload.image_url)

    items = list_for_owner(db, user.id, SqlInventoryStore(db))
    assert [u.id for u in items] == [upload.id]
    assert _status_of(db, upload.id) == "ready"


# -------------------------
# 2) Mark imported
# -------------------------
def test_mark_imported_is_idempotent(client, auth_headers, db, user):
    uploads = _mk_uploads(db, user.id, [UploadStatus.ready, UploadStatus.error])
    ids = [u.id for u in uploads]

    r1 = client.post(f"{PENDING_PATH}/mark-imported", headers=auth_headers, json={"ids": ids})
    assert r1.status_code == 200
    assert r1.json() == {"success": True, "count": 2}

    r2 = client.post(f"{PENDING_PATH}/mark-imported", headers=auth_headers, json={"ids": ids})
    assert r2.json() == {"success": True, "count": 0}

    assert {_status_of(db, i) for i in ids} == {"imported"}
    assert client.get(PENDING_PATH, headers=auth_headers).json()["items"] == []


def test_mark_imported_requires_ids(client, auth_headers):
    r = client.post(f"{PENDING_PATH}/mark-imported", headers=auth_headers, json={"ids": []})
    assert r.status_code == 400


def test_mark_imported_skips_foreign_uploads(client, auth_headers, db, other_user):
    (foreign,) = _mk_uploads(db, other_user.id, [UploadStatus.ready])
    r = client.post(f"{PENDING_PATH}/mark-imported", headers=auth_headers, json={"ids": [foreign.id]})
    assert r.json()["count"] == 0
    assert _status_of(db, foreign.id) == "ready"


# -------------------------
# 3) Bewerken / verwijderen
# -------------------------
def test_edit_forces_ready_and_clears_error(client, auth_headers, db, user):
    (failed,) = _mk_uploads(db, user.id, [UploadStatus.error])

    r = client.patch(
        f"{PENDING_PATH}/{failed.id}",
        headers=auth_headers,
        json={"extractedData": {"name": "Hand fixed", "material": "PETG", "colorCode": "#0f0"}},
    )
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["status"] == "ready"
    assert body["error"] is None
    assert body["extractedData"]["name"] == "Hand fixed"
    assert body["extractedData"]["colorCode"] == "#00FF00"

    db.expire_all()
    stored = db.get(PendingUpload, failed.id)
    assert stored.error_message is None
    assert stored.extracted_data["material"] == "PETG"


def test_edit_foreign_upload_is_not_found(client, auth_headers, db, other_user):
    (foreign,) = _mk_uploads(db, other_user.id, [UploadStatus.ready])
    r = client.patch(f"{PENDING_PATH}/{foreign.id}", headers=auth_headers, json={"extractedData": {"name": "x"}})
    assert r.status_code == 404


def test_delete_single_upload(client, auth_headers, db, user):
    keep, drop = _mk_uploads(db, user.id, [UploadStatus.ready, UploadStatus.error])

    assert client.delete(f"{PENDING_PATH}/{drop.id}", headers=auth_headers).json() == {"success": True}
    assert client.delete(f"{PENDING_PATH}/{drop.id}", headers=auth_headers).status_code == 404

    items = client.get(PENDING_PATH, headers=auth_headers).json()["items"]
    assert [i["id"] for i in items] == [keep.id]


def test_clear_keeps_imported_and_foreign(client, auth_headers, db, user, other_user):
    mine = _mk_uploads(
        db,
        user.id,
        [UploadStatus.pending, UploadStatus.ready, UploadStatus.error, UploadStatus.cancelled, UploadStatus.imported],
    )
    (foreign,) = _mk_uploads(db, other_user.id, [UploadStatus.ready])

    r = client.delete(PENDING_PATH, headers=auth_headers)
    assert r.status_code == 200
    assert r.json() == {"success": True, "count": 4}

    db.expire_all()
    remaining = {u.id for u in db.query(PendingUpload).all()}
    assert remaining == {mine[-1].id, foreign.id}
