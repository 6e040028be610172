# app/core/settings.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import AnyHttpUrl
from typing import Optional


class Settings(BaseSettings):
    PUBLIC_BASE_URL: AnyHttpUrl = "http://localhost:8000"

    # --- Database ---
    DATABASE_URL: str = "sqlite:///./filament_intake.db"

    # --- Storage ---
    USE_LOCAL_STORAGE: bool = True
    LOCAL_STORAGE_ROOT: str = "./public/uploads/filaments"
    LOCAL_URL_PREFIX: str = "/uploads/filaments"
    S3_BUCKET: Optional[str] = None
    S3_REGION: str = "eu-west-1"
    S3_PREFIX: str = "uploads/filaments/"
    CLOUDFRONT_DOMAIN: Optional[str] = None

    allowed_mimes: list[str] = [
        "image/jpeg",
        "image/png",
        "image/webp",
        "image/heic",
        "image/heif",
    ]
    max_upload_mb: int = 10
    max_upload_files: int = 50

    # --- Upload sessions ---
    MOBILE_SESSION_TTL_MINUTES: int = 30
    BULK_SESSION_TTL_DAYS: int = 30
    WORKER_STALE_SECONDS: int = 900

    # --- Vision (OpenAI) ---
    OPENAI_API_KEY: Optional[str] = None
    OPENAI_MODEL: str = "gpt-4o"
    VISION_TIMEOUT_SECONDS: Optional[float] = None  # None = geen timeout
    VISION_MAX_RETRIES: int = 2
    VISION_MAX_IMAGE_PX: int = 1536
    VISION_JPEG_QUALITY: int = 85

    # --- Auth ---
    JWT_SECRET: str = "dev_secret_change_me_please"
    JWT_EXP_HOURS: int = 24
    # sleutel voor de versleutelde OpenAI keys van gebruikers
    ENCRYPTION_SECRET: str = "dev_encryption_secret_change_me"

    # --- HTTP ---
    ALLOWED_ORIGINS: list[str] = ["http://localhost:5173", "http://localhost:8000"]
    LOG_LEVEL: str = "INFO"
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_MOBILE_UPLOAD: str = "30/minute"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_mb * 1024 * 1024


settings = Settings()  # leest .env
