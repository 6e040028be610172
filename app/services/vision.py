# app/services/vision.py
from __future__ import annotations

import base64
import io
import json
import re
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Optional

import openai
from cryptography.fernet import InvalidToken
from fastapi import Depends
from openai import AsyncOpenAI
from PIL import Image, UnidentifiedImageError
from pillow_heif import register_heif_opener
from pydantic import ValidationError as PydanticValidationError
from starlette.concurrency import run_in_threadpool

from app.auth.deps import get_current_user
from app.core.encryption import decrypt_secret
from app.core.errors import ExtractionError, ValidationError
from app.core.logging_config import logger
from app.core.settings import settings
from app.models.user import User
from app.observability.metrics import extraction_counter, extraction_latency_hist
from app.schemas.extraction import ExtractedFilamentData
from app.services.vision_prompt import EXTRACTION_PROMPT

register_heif_opener()

# Modellen met vision support die een gebruiker mag kiezen
VISION_MODELS = [
    {"id": "gpt-4o", "name": "GPT-4o", "description": "Best quality, fast"},
    {"id": "gpt-4o-mini", "name": "GPT-4o Mini", "description": "Faster, cheaper, good quality"},
    {"id": "gpt-4-turbo", "name": "GPT-4 Turbo", "description": "Previous gen, reliable"},
    {"id": "o1", "name": "o1 (Reasoning)", "description": "Deep reasoning, slower"},
    {"id": "o1-mini", "name": "o1 Mini (Reasoning)", "description": "Fast reasoning"},
]
VISION_MODEL_IDS = {m["id"] for m in VISION_MODELS}

_JSON_BLOCK = re.compile(r"\{[\s\S]*\}")

_MAGIC_MIME = (
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"GIF8", "image/gif"),
)


def detect_mime_type(data: bytes) -> Optional[str]:
    for magic, mime in _MAGIC_MIME:
        if data.startswith(magic):
            return mime
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return None


def normalize_material(material: str) -> str:
    """Marketingnamen ('High Speed PLA', 'Rapid PLA') terug naar het basismateriaal."""
    upper = material.upper().strip()

    if "PLA" in upper and "SILK" in upper:
        return "PLA Silk"
    if "PLA" in upper and "MATTE" in upper:
        return "PLA Matte"
    if "PLA" in upper and ("+" in upper or "PLUS" in upper):
        return "PLA+"
    if "PLA" in upper and "CF" in upper:
        return "PLA-CF"
    if "PLA" in upper and "HF" in upper:
        return "PLA-HF"
    if "PLA" in upper and "PETG" not in upper:
        return "PLA"

    if "PETG" in upper and "CF" in upper:
        return "PETG-CF"
    if "PETG" in upper and "HF" in upper:
        return "PETG-HF"
    if "PETG" in upper or "PET-G" in upper:
        return "PETG"

    material_map = {
        "ABS": "ABS",
        "TPU": "TPU",
        "TPE": "TPU",
        "ASA": "ASA",
        "NYLON CF": "PA-CF",
        "PA-CF": "PA-CF",
        "PA CF": "PA-CF",
        "NYLON": "PA",
        "PA12": "PA",
        "PA6": "PA",
        "POLYCARBONATE": "PC",
        "POLYPROPYLENE": "PP",
        "HIPS": "HIPS",
        "PVA": "PVA",
        "PC": "PC",
        "PP": "PP",
        "PA": "PA",
    }
    if upper in material_map:
        return material_map[upper]
    for key, value in material_map.items():
        if key in upper:
            return value
    return upper


def parse_extraction_reply(content: Optional[str]) -> ExtractedFilamentData:
    """Pak het eerste {...} blok uit het modelantwoord en normaliseer het."""
    if not content:
        raise ExtractionError("No response from OpenAI Vision API")

    match = _JSON_BLOCK.search(content)
    if not match:
        raise ExtractionError("Could not parse JSON from response")

    try:
        raw: Dict[str, Any] = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise ExtractionError(f"Invalid JSON in response: {e}") from e
    if not isinstance(raw, dict):
        raise ExtractionError("Unexpected response shape from OpenAI Vision API")

    # het model verzint soms een eigen schemaVersion; die bepalen wij
    raw.pop("schemaVersion", None)
    raw.pop("schema_version", None)

    try:
        data = ExtractedFilamentData.model_validate(raw)
    except PydanticValidationError as e:
        raise ExtractionError(f"Malformed extraction result: {e.error_count()} invalid field(s)") from e
    if data.material:
        data.material = normalize_material(data.material)
    return data


def resize_for_vision(data: bytes, max_px: int, quality: int) -> bytes:
    """
    Verklein naar max_px op de langste zijde en her-encodeer als JPEG.
    Scheelt veel upload-tijd en houdt genoeg detail voor labeltekst.
    """
    with Image.open(io.BytesIO(data)) as img:
        img.thumbnail((max_px, max_px), Image.Resampling.LANCZOS)
        if img.mode != "RGB":
            img = img.convert("RGB")
        buffer = io.BytesIO()
        img.save(buffer, format="JPEG", quality=quality)
        return buffer.getvalue()


class VisionExtractor(ABC):
    """Zet ruwe beeldbytes om naar ExtractedFilamentData, of faalt met ExtractionError."""

    @abstractmethod
    async def extract(self, data: bytes, model_hint: Optional[str] = None) -> ExtractedFilamentData:
        ...


class OpenAIVisionExtractor(VisionExtractor):
    def __init__(
        self,
        api_key: str,
        default_model: str = "gpt-4o",
        timeout: Optional[float] = None,
        max_retries: int = 2,
        max_image_px: int = 1536,
        jpeg_quality: int = 85,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.default_model = default_model
        self.max_image_px = max_image_px
        self.jpeg_quality = jpeg_quality
        self.client = client or AsyncOpenAI(
            api_key=api_key,
            timeout=timeout,
            max_retries=max_retries,
        )

    async def _prepare_image(self, data: bytes) -> tuple[bytes, str]:
        try:
            resized = await run_in_threadpool(
                resize_for_vision, data, self.max_image_px, self.jpeg_quality
            )
            return resized, "image/jpeg"
        except (UnidentifiedImageError, OSError, ValueError) as e:
            logger.warning("vision_resize_failed", error=str(e))
            return data, detect_mime_type(data) or "image/jpeg"

    async def extract(self, data: bytes, model_hint: Optional[str] = None) -> ExtractedFilamentData:
        model = model_hint or self.default_model
        image_bytes, mime = await self._prepare_image(data)
        image_url = f"data:{mime};base64,{base64.b64encode(image_bytes).decode('ascii')}"

        start = time.time()
        logger.info("vision_request", model=model, size=len(image_bytes))
        try:
            response = await self.client.chat.completions.create(
                model=model,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": EXTRACTION_PROMPT},
                            {"type": "image_url", "image_url": {"url": image_url, "detail": "high"}},
                        ],
                    }
                ],
                max_tokens=1000,
                temperature=0.2,
            )
        except openai.AuthenticationError as e:
            extraction_counter.labels(result="error").inc()
            raise ExtractionError("Invalid API key") from e
        except openai.RateLimitError as e:
            extraction_counter.labels(result="error").inc()
            raise ExtractionError("Rate limit exceeded") from e
        except openai.APITimeoutError as e:
            extraction_counter.labels(result="error").inc()
            raise ExtractionError("Vision request timed out") from e
        except openai.APIError as e:
            extraction_counter.labels(result="error").inc()
            raise ExtractionError(f"OpenAI API error: {e}") from e
        finally:
            extraction_latency_hist.observe(time.time() - start)

        content = response.choices[0].message.content if response.choices else None
        try:
            data_out = parse_extraction_reply(content)
        except ExtractionError:
            extraction_counter.labels(result="error").inc()
            raise
        extraction_counter.labels(result="success").inc()
        return data_out


def resolve_api_key(user: Optional[User]) -> Optional[str]:
    """Eigen key van de gebruiker eerst, anders de key uit de omgeving."""
    if user is not None and user.openai_api_key:
        try:
            return decrypt_secret(user.openai_api_key)
        except InvalidToken:
            logger.error("user_api_key_decrypt_failed", user_id=user.id)
    return settings.OPENAI_API_KEY or None


def get_vision_extractor(user: User = Depends(get_current_user)) -> VisionExtractor:
    """FastAPI dependency; tests overschrijven deze met een fake."""
    api_key = resolve_api_key(user)
    if not api_key:
        raise ValidationError("OpenAI API key not configured. Please add your API key in Settings.")
    return OpenAIVisionExtractor(
        api_key=api_key,
        default_model=settings.OPENAI_MODEL,
        timeout=settings.VISION_TIMEOUT_SECONDS,
        max_retries=settings.VISION_MAX_RETRIES,
        max_image_px=settings.VISION_MAX_IMAGE_PX,
        jpeg_quality=settings.VISION_JPEG_QUALITY,
    )


async def check_openai_key(api_key: str) -> Optional[str]:
    """Probeer de key tegen de API. None als hij werkt, anders de foutmelding."""
    client = AsyncOpenAI(api_key=api_key, timeout=15, max_retries=0)
    try:
        await client.models.list()
    except openai.AuthenticationError:
        return "Invalid API key"
    except openai.APIError as e:
        logger.warning("api_key_check_failed", error=str(e))
        return "Could not validate API key"
    finally:
        await client.close()
    return None


def get_key_checker() -> Callable[[str], Awaitable[Optional[str]]]:
    return check_openai_key
