# app/routers/ai_settings.py
from typing import Awaitable, Callable, Optional

from cryptography.fernet import InvalidToken
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.auth.deps import get_current_user
from app.core.encryption import decrypt_secret, encrypt_secret, is_valid_openai_key_format, mask_api_key
from app.core.errors import ValidationError
from app.core.logging_config import logger
from app.core.settings import settings
from app.db import get_db
from app.models.user import User
from app.schemas.upload_sessions import (
    ApiKeyIn,
    ApiKeySavedOut,
    ApiKeyStatusOut,
    ModelSelectIn,
    ModelSettingsOut,
    VisionModelOut,
)
from app.services.vision import VISION_MODEL_IDS, VISION_MODELS, get_key_checker

router = APIRouter(prefix="/api/ai", tags=["ai-settings"])


def _settings_for(user: User) -> ModelSettingsOut:
    return ModelSettingsOut(
        ai_enabled=bool(user.openai_api_key or settings.OPENAI_API_KEY),
        selected_model=user.vision_model or settings.OPENAI_MODEL,
        available_models=[VisionModelOut(**m) for m in VISION_MODELS],
    )


def _masked_user_key(user: User) -> Optional[str]:
    if not user.openai_api_key:
        return None
    try:
        return mask_api_key(decrypt_secret(user.openai_api_key))
    except InvalidToken:
        return "****"


@router.get("/models", response_model=ModelSettingsOut)
def list_models(user: User = Depends(get_current_user)):
    return _settings_for(user)


@router.post("/model", response_model=ModelSettingsOut)
def select_model(
    body: ModelSelectIn,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    if body.model not in VISION_MODEL_IDS:
        raise ValidationError(f"Unknown model: {body.model}")
    user.vision_model = body.model
    db.commit()
    logger.info("vision_model_selected", user_id=user.id, model=body.model)
    return _settings_for(user)


# -----------------------------------------------------------------------------
# Eigen OpenAI key per gebruiker
# -----------------------------------------------------------------------------
def _store_user_key(db: Session, user: User, api_key: str) -> None:
    user.openai_api_key = encrypt_secret(api_key)
    db.commit()


@router.get("/api-key/status", response_model=ApiKeyStatusOut)
def api_key_status(user: User = Depends(get_current_user)):
    return ApiKeyStatusOut(
        has_user_key=bool(user.openai_api_key),
        has_env_key=bool(settings.OPENAI_API_KEY),
        masked_key=_masked_user_key(user),
        **_settings_for(user).model_dump(),
    )


@router.post("/api-key", response_model=ApiKeySavedOut)
async def save_api_key(
    body: ApiKeyIn,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    check_key: Callable[[str], Awaitable[Optional[str]]] = Depends(get_key_checker),
):
    api_key = body.api_key.strip()
    if not api_key:
        raise ValidationError("API key is required")
    if not is_valid_openai_key_format(api_key):
        raise ValidationError("Invalid API key format. OpenAI keys start with 'sk-'")

    problem = await check_key(api_key)
    if problem:
        raise ValidationError(problem)

    await run_in_threadpool(_store_user_key, db, user, api_key)
    logger.info("user_api_key_saved", user_id=user.id)
    return ApiKeySavedOut(masked_key=mask_api_key(api_key))


@router.delete("/api-key")
def delete_api_key(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    user.openai_api_key = None
    db.commit()
    logger.info("user_api_key_removed", user_id=user.id)
    return {"success": True}
