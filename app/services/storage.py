# app/services/storage.py
import secrets
import time
from abc import ABC, abstractmethod
from functools import lru_cache
from pathlib import Path, PurePosixPath
from urllib.parse import urlparse

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from app.core.errors import StorageError
from app.core.logging_config import logger
from app.core.settings import settings
from app.infra.retry import is_transient_s3_error, retry_on

DEFAULT_EXT = ".jpg"


def generate_image_name(suggested_ext: str | None = None) -> str:
    """filament-<epoch ms>-<12 hex><ext>, zoals de oude multer-naamgeving."""
    ext = (suggested_ext or "").lower()
    if not ext.startswith(".") or len(ext) > 6 or not ext[1:].isalnum():
        ext = DEFAULT_EXT
    return f"filament-{int(time.time() * 1000)}-{secrets.token_hex(6)}{ext}"


# =========================
# Abstracte ImageStore
# =========================
class ImageStore(ABC):
    """Duurzame opslag voor geüploade foto's, geadresseerd via een locator."""

    @abstractmethod
    def save(self, data: bytes, suggested_ext: str | None = None) -> str:
        """Sla bytes op onder een gegenereerde naam en geef de locator terug."""

    @abstractmethod
    def read(self, locator: str) -> bytes:
        """Lees de bytes achter een locator terug."""

    @abstractmethod
    def delete(self, locator: str) -> bool:
        """Verwijder een bestand; False als het er niet (meer) was."""


# =========================
# Local Storage
# =========================
class LocalImageStore(ImageStore):
    """Lokale bestandsopslag; locators zijn URL-paden onder url_prefix."""

    def __init__(self, base_path: str, url_prefix: str = "/uploads/filaments"):
        self.base_path = Path(base_path)
        self.url_prefix = "/" + url_prefix.strip("/")
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _path_for(self, locator: str) -> Path:
        # alleen de bestandsnaam telt; voorkomt ../ uit de locator
        name = PurePosixPath(locator).name
        if not name:
            raise StorageError(f"Invalid image locator: {locator!r}")
        return self.base_path / name

    def save(self, data: bytes, suggested_ext: str | None = None) -> str:
        name = generate_image_name(suggested_ext)
        file_path = self.base_path / name
        try:
            with open(file_path, "wb") as f:
                f.write(data)
        except OSError as e:
            logger.error("image_store_write_failed", path=str(file_path), error=str(e))
            raise StorageError(f"Failed to store image: {e}") from e
        logger.debug("image_stored", path=str(file_path), size=len(data))
        return f"{self.url_prefix}/{name}"

    def read(self, locator: str) -> bytes:
        file_path = self._path_for(locator)
        try:
            return file_path.read_bytes()
        except OSError as e:
            raise StorageError(f"Failed to read image {locator}: {e}") from e

    def delete(self, locator: str) -> bool:
        file_path = self._path_for(locator)
        try:
            if file_path.exists():
                file_path.unlink()
                return True
            return False
        except OSError as e:
            raise StorageError(f"Failed to delete image {locator}: {e}") from e


# =========================
# S3 Storage
# =========================
class S3ImageStore(ImageStore):
    """Amazon S3 opslag; locators zijn publieke (CloudFront of S3) URL's."""

    def __init__(self, bucket: str, region: str = "eu-west-1", prefix: str = "uploads/filaments/",
                 cloudfront_domain: str | None = None, s3_client=None):
        self.bucket = bucket
        self.region = region
        self.prefix = prefix.strip("/") + "/"
        self.cloudfront_domain = cloudfront_domain
        self.s3_client = s3_client or boto3.client("s3", region_name=region)

    def _public_base(self) -> str:
        if self.cloudfront_domain:
            return f"https://{self.cloudfront_domain}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com"

    def _key_for(self, locator: str) -> str:
        path = urlparse(locator).path.lstrip("/")
        if not path.startswith(self.prefix):
            raise StorageError(f"Image locator outside bucket prefix: {locator!r}")
        return path

    def save(self, data: bytes, suggested_ext: str | None = None) -> str:
        name = generate_image_name(suggested_ext)
        key = f"{self.prefix}{name}"
        try:
            retry_on(
                lambda: self.s3_client.put_object(
                    Bucket=self.bucket,
                    Key=key,
                    Body=data,
                    ContentType=_content_type_for(name),
                ),
                is_retryable=is_transient_s3_error,
                op="s3_put",
            )
        except (ClientError, BotoCoreError) as e:
            logger.error("image_store_s3_put_failed", key=key, error=str(e))
            raise StorageError(f"S3 upload failed: {e}") from e
        return f"{self._public_base()}/{key}"

    def read(self, locator: str) -> bytes:
        key = self._key_for(locator)
        try:
            obj = retry_on(
                lambda: self.s3_client.get_object(Bucket=self.bucket, Key=key),
                is_retryable=is_transient_s3_error,
                op="s3_get",
            )
            return obj["Body"].read()
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"S3 read failed for {key}: {e}") from e

    def delete(self, locator: str) -> bool:
        key = self._key_for(locator)
        try:
            self.s3_client.delete_object(Bucket=self.bucket, Key=key)
            return True
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"S3 delete failed for {key}: {e}") from e


def _content_type_for(name: str) -> str:
    ext = PurePosixPath(name).suffix.lower()
    content_types = {
        ".jpg": "image/jpeg",
        ".jpeg": "image/jpeg",
        ".png": "image/png",
        ".webp": "image/webp",
        ".heic": "image/heic",
        ".heif": "image/heif",
    }
    return content_types.get(ext, "application/octet-stream")


# =========================
# Factory
# =========================
@lru_cache(maxsize=1)
def get_image_store() -> ImageStore:
    """
    Factory functie om de juiste storage backend te retourneren.
    """
    if settings.USE_LOCAL_STORAGE:
        return LocalImageStore(settings.LOCAL_STORAGE_ROOT, settings.LOCAL_URL_PREFIX)

    if not settings.S3_BUCKET:
        raise ValueError("S3_BUCKET is vereist als USE_LOCAL_STORAGE uit staat")

    return S3ImageStore(
        bucket=settings.S3_BUCKET,
        region=settings.S3_REGION,
        prefix=settings.S3_PREFIX,
        cloudfront_domain=settings.CLOUDFRONT_DOMAIN,
    )
