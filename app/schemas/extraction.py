# app/schemas/extraction.py
from __future__ import annotations

import re
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from app.core.logging_config import logger

EXTRACTED_DATA_VERSION = 1

_HEX_CLEAN = re.compile(r"[^#0-9a-fA-F]")
_HEX_FULL = re.compile(r"^#[0-9a-fA-F]{6}$")


def normalize_color_code(code: str) -> Optional[str]:
    """'#abc', 'ABCDEF', ' #a1b2c3 ' -> '#AABBCC' / '#ABCDEF' / '#A1B2C3'; ongeldig -> None."""
    hex_code = _HEX_CLEAN.sub("", code.strip())
    if not hex_code.startswith("#"):
        hex_code = "#" + hex_code
    if len(hex_code) == 4:
        hex_code = "#" + "".join(ch * 2 for ch in hex_code[1:])
    if _HEX_FULL.match(hex_code):
        return hex_code.upper()
    return None


def _to_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class ExtractedFilamentData(BaseModel):
    """
    Gestructureerd resultaat van de vision-extractie voor één foto.

    Wordt als JSON op PendingUpload.extracted_data bewaard. `schema_version`
    maakt latere wijzigingen herkenbaar; rijen die niet (meer) valideren
    worden bij het lezen als "geen data" behandeld (zie from_stored).
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
        extra="ignore",
    )

    schema_version: int = EXTRACTED_DATA_VERSION

    name: Optional[str] = None
    manufacturer: Optional[str] = None
    material: Optional[str] = None
    color_name: Optional[str] = None
    color_code: Optional[str] = None
    diameter: Optional[float] = None
    print_temp: Optional[str] = None
    print_speed: Optional[str] = None
    bed_temp: Optional[str] = None
    drying_temp: Optional[str] = None
    drying_time: Optional[str] = None
    total_weight: Optional[float] = None
    is_sealed: Optional[bool] = None
    estimated_price: Optional[float] = None
    notes: Optional[str] = None
    sku: Optional[str] = None
    batch_number: Optional[str] = None
    production_date: Optional[str] = None
    raw_text: Optional[str] = None

    confidence: float = Field(default=0.5, ge=0.0, le=1.0)

    @field_validator("color_code", mode="before")
    @classmethod
    def _color_code(cls, v):
        if v is None or not isinstance(v, str):
            return None
        return normalize_color_code(v)

    @field_validator("diameter", mode="before")
    @classmethod
    def _diameter(cls, v):
        d = _to_float(v)
        return d if d is not None and 0 < d < 10 else None

    @field_validator("total_weight", mode="before")
    @classmethod
    def _total_weight(cls, v):
        w = _to_float(v)
        return w if w is not None and 0 < w < 100 else None

    @field_validator("estimated_price", mode="before")
    @classmethod
    def _estimated_price(cls, v):
        p = _to_float(v)
        return p if p is not None and p > 0 else None

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence(cls, v):
        c = _to_float(v)
        if c is None:
            return 0.5
        return min(max(c, 0.0), 1.0)

    def to_stored(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)

    @classmethod
    def from_stored(cls, raw: Any) -> Optional["ExtractedFilamentData"]:
        if not raw:
            return None
        try:
            if isinstance(raw, (str, bytes)):
                # oude rijen: JSON als tekst opgeslagen
                return cls.model_validate_json(raw)
            return cls.model_validate(raw)
        except PydanticValidationError as e:
            logger.warning("extracted_data_unreadable", error=str(e))
            return None
