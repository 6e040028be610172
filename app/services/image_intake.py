# app/services/image_intake.py
#
# Multipart foto's inlezen, valideren en wegschrijven naar de ImageStore.
# Eerst de hele batch valideren, dan pas opslaan: een ongeldig bestand
# laat niets half achter.
import base64
import binascii
import mimetypes
from dataclasses import dataclass
from pathlib import PurePath
from typing import List, Sequence, Tuple

from fastapi import UploadFile

from app.core.errors import StorageError, ValidationError
from app.core.logging_config import logger
from app.core.settings import settings
from app.observability.metrics import images_uploaded_counter
from app.services.storage import ImageStore

_EXT_FOR_MIME = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/heic": ".heic",
    "image/heif": ".heif",
}


@dataclass
class IncomingImage:
    filename: str
    content_type: str
    data: bytes

    @property
    def suggested_ext(self) -> str:
        ext = PurePath(self.filename or "").suffix.lower()
        return ext or _EXT_FOR_MIME.get(self.content_type, ".jpg")


def resolve_mime(content_type: str | None, filename: str | None) -> str:
    ctype = (content_type or "").split(";")[0].strip().lower()
    if ctype and ctype != "application/octet-stream":
        return ctype
    # iOS stuurt HEIC soms als octet-stream
    guessed, _ = mimetypes.guess_type(filename or "")
    if not guessed and (filename or "").lower().endswith((".heic", ".heif")):
        guessed = "image/heic"
    return guessed or ctype


def validate_mime(content_type: str) -> None:
    if content_type not in settings.allowed_mimes:
        raise ValidationError("Invalid file type. Only JPEG, PNG, WebP, and HEIC are allowed.")


def validate_size(size_bytes: int) -> None:
    if size_bytes == 0:
        raise ValidationError("Empty file")
    if size_bytes > settings.max_upload_bytes:
        raise ValidationError(f"File too large (>{settings.max_upload_mb} MB)")


def validate_count(count: int) -> None:
    if count == 0:
        raise ValidationError("No images provided")
    if count > settings.max_upload_files:
        raise ValidationError(f"Too many images (max {settings.max_upload_files})")


async def read_images(files: Sequence[UploadFile]) -> List[IncomingImage]:
    validate_count(len(files))
    images: List[IncomingImage] = []
    for f in files:
        ctype = resolve_mime(f.content_type, f.filename)
        validate_mime(ctype)
        data = await f.read()
        validate_size(len(data))
        images.append(IncomingImage(filename=f.filename or "", content_type=ctype, data=data))
    return images


def store_images(store: ImageStore, images: Sequence[IncomingImage]) -> Tuple[List[str], int]:
    """
    Sla elk beeld op; een StorageError slaat alleen dat bestand over.
    Faalt als er niets kon worden opgeslagen. Geeft (locators, aantal mislukt).
    """
    locators: List[str] = []
    failed = 0
    for image in images:
        try:
            locators.append(store.save(image.data, image.suggested_ext))
            images_uploaded_counter.labels(result="stored").inc()
        except StorageError as e:
            failed += 1
            images_uploaded_counter.labels(result="failed").inc()
            logger.warning("image_store_failed", filename=image.filename, error=e.message)

    if not locators:
        raise StorageError("Failed to store any of the uploaded images")
    return locators, failed


def decode_base64_image(payload: str | None) -> bytes:
    """Base64 (of een data: URL) uit een JSON body naar bytes; zelfde groottegrens als uploads."""
    if not payload or not payload.strip():
        raise ValidationError("No image data provided")
    encoded = payload.strip()
    if encoded.startswith("data:"):
        _, _, encoded = encoded.partition(",")
    try:
        data = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValidationError("Invalid image data") from e
    validate_size(len(data))
    return data
