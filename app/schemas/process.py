"""Pydantic schemas for image processing requests and responses.

Wire format is camelCase (``chunkHeight``, ``yOffset``...); Python code uses
snake_case through alias generation.
"""

from __future__ import annotations

from typing import Any, List
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from app.core.config import settings

ALLOWED_URL_SCHEMES = ("http", "https")


class CamelModel(BaseModel):
    """Base model exchanging camelCase JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _check_dimension(value: int) -> int:
    max_px = settings.app.max_dimension_px
    if value < 1 or value > max_px:
        raise ValueError(f"must be between 1 and {max_px} pixels")
    return value


class ProcessImageRequest(CamelModel):
    """Body of both processing endpoints."""

    url: str = Field(..., description="Public http(s) URL of the source image.")
    chunk_height: int = Field(..., description="Height of each chunk in pixels.")
    resize_width: int | None = Field(
        default=None,
        description="Optional width to resize to before slicing (aspect ratio kept).",
    )

    @field_validator("url")
    @classmethod
    def _validate_url(cls, value: str) -> str:
        value = value.strip()
        try:
            parts = urlsplit(value)
        except ValueError as exc:
            raise ValueError("Invalid URL format") from exc
        if parts.scheme not in ALLOWED_URL_SCHEMES:
            raise ValueError("Invalid URL protocol. Only http and https are allowed.")
        if not parts.netloc:
            raise ValueError("Invalid URL format")
        return value

    @field_validator("chunk_height")
    @classmethod
    def _validate_chunk_height(cls, value: int) -> int:
        return _check_dimension(value)

    @field_validator("resize_width", mode="before")
    @classmethod
    def _empty_resize_width_is_none(cls, value: Any) -> Any:
        # 0, "" and null all mean "keep the original width"
        if value in (None, "", 0, "0"):
            return None
        return value

    @field_validator("resize_width")
    @classmethod
    def _validate_resize_width(cls, value: int | None) -> int | None:
        if value is None:
            return None
        return _check_dimension(value)


class ImageChunk(CamelModel):
    """One horizontal slice of the source image."""

    id: int = Field(..., description="Zero-based chunk index, top to bottom.")
    base64: str = Field(..., description="PNG data URI of the chunk.")
    height: int = Field(..., description="Chunk height in pixels (last one may be shorter).")
    y_offset: int = Field(..., description="Top edge of the chunk in the source image.")


class ProcessingResult(CamelModel):
    """Response of both processing endpoints."""

    original_url: str
    total_width: int
    total_height: int
    chunk_height: int
    resize_width: int | None = None
    chunk_count: int
    chunks: List[ImageChunk] = Field(default_factory=list)
    processing_time_ms: int


class HealthResponse(CamelModel):
    """Liveness payload."""

    status: str = "ok"
    timestamp: str
    api_key_configured: bool
