"""Pydantic models shared across API, client, controller, and storage.

Beginner terms used in this file:
- Model: a typed schema class used for validation/serialization.
- Literal: restricts a field to a fixed set of allowed string values.
- frozen: instances cannot be modified after construction.
- Inline payload: media bytes carried inside a response (base64 in JSON).
"""

from __future__ import annotations

import base64
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

GenerationMode = Literal["image", "video"]

# Lifecycle controller states. "completed" and "failed" are terminal.
LifecycleState = Literal["idle", "submitting", "polling", "completed", "failed"]

# Canonical state produced by the result normalizer.
NormalizedState = Literal["succeeded", "failed", "in_progress"]


class GenerationRequest(BaseModel):
    """One user submission. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    mode: GenerationMode
    # Emptiness is checked by the controller so it can fail before any I/O.
    prompt: str
    size: str | None = None
    quality: str | None = None
    duration_seconds: int | None = Field(default=None, ge=1)
    # First image is the primary reference.
    reference_images: tuple[bytes, ...] = ()

    @model_validator(mode="after")
    def _check_mode_fields(self) -> GenerationRequest:
        if self.mode == "video" and self.reference_images:
            raise ValueError("reference_images are only supported for image generation")
        if self.mode == "image" and self.duration_seconds is not None:
            raise ValueError("duration_seconds is only supported for video generation")
        return self

    def settings(self) -> dict[str, Any]:
        """Request settings stored alongside a history record."""
        settings: dict[str, Any] = {}
        if self.size:
            settings["size"] = self.size
        if self.quality:
            settings["quality"] = self.quality
        if self.duration_seconds is not None:
            settings["duration_seconds"] = self.duration_seconds
        return settings


class NormalizedResult(BaseModel):
    """Canonical view of a loosely structured upstream response."""

    state: NormalizedState
    media_url: str | None = None
    media_inline_payload: bytes | None = None
    progress: float | None = None
    error_message: str | None = None
    revised_prompt: str | None = None

    @property
    def has_media(self) -> bool:
        return self.media_url is not None or self.media_inline_payload is not None


class GenerationResult(BaseModel):
    """Media reference stored on a history record."""

    media_url: str | None = None
    # Base64 text; only present when a caller saved an inline payload directly.
    media_inline_payload: str | None = None
    revised_prompt: str | None = None


class GenerationRecord(BaseModel):
    """Canonical history record shape returned by API/storage."""

    id: str
    owner_id: str
    mode: GenerationMode
    prompt: str
    settings: dict[str, Any] = Field(default_factory=dict)
    result: GenerationResult = Field(default_factory=GenerationResult)
    reference_image_count: int = 0
    created_at: datetime


class NewGeneration(BaseModel):
    """Request body for POST /api/generations and the controller's save call."""

    id: str | None = None
    owner_id: str | None = None
    mode: GenerationMode
    prompt: str = Field(min_length=1)
    settings: dict[str, Any] = Field(default_factory=dict)
    result: GenerationResult = Field(default_factory=GenerationResult)
    reference_image_count: int = Field(default=0, ge=0)


class GenerationPage(BaseModel):
    generations: list[GenerationRecord] = Field(default_factory=list)
    next_cursor: str | None = None


class LifecycleSnapshot(BaseModel):
    """Observable controller state for one owner session."""

    state: LifecycleState = "idle"
    mode: GenerationMode | None = None
    job_id: str | None = None
    progress: float | None = None
    poll_attempts: int = 0
    error: str | None = None
    # Non-fatal persistence problem; the result is still shown.
    warning: str | None = None
    result: GenerationResult | None = None
    record_id: str | None = None


class GenerateImageRequest(BaseModel):
    """Request body for POST /api/generate-image."""

    prompt: str = ""
    size: str | None = None
    quality: str | None = None
    # Base64 (optionally data URI) encoded reference images.
    reference_images: list[str] = Field(default_factory=list)


class RefineImageRequest(BaseModel):
    """Request body for POST /api/refine-image."""

    prompt: str = ""
    previous_image: str = Field(min_length=1)
    size: str | None = None
    quality: str | None = None


class GenerateVideoRequest(BaseModel):
    """Request body for POST /api/generate-video."""

    prompt: str = ""
    size: str | None = None
    seconds: int | None = Field(default=None, ge=1)


class SaveVideoRequest(BaseModel):
    video_data: str = ""
    format: str = Field(default="mp4", pattern=r"^[A-Za-z0-9]{1,8}$")


class SubmitGenerationRequest(BaseModel):
    """Request body for POST /api/sessions/{owner_id}/submit."""

    mode: GenerationMode
    prompt: str = ""
    size: str | None = None
    quality: str | None = None
    duration_seconds: int | None = Field(default=None, ge=1)
    reference_images: list[str] = Field(default_factory=list)


def encode_payload(data: bytes | None) -> str | None:
    """Base64 text for JSON responses."""
    if data is None:
        return None
    return base64.b64encode(data).decode("ascii")
