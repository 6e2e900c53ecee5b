"""Pydantic models for cache statistics, script analysis and API payloads."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_LOGLINE = "A compelling narrative unfolds."
DEFAULT_CONCEPT = "An engaging story brought to life through AI-powered production."
DEFAULT_HOOK_SCORE = 5
DEFAULT_AUDIENCE = "General"
DEFAULT_SUGGESTED_TITLE = "Untitled Production"


class CacheStats(BaseModel):
    """Read-only snapshot of asset cache occupancy."""

    entry_count: int
    total_bytes: int
    max_bytes: int
    max_entries: int | None = None


class ProductionModules(BaseModel):
    """Pitch modules produced alongside a script breakdown."""

    model_config = ConfigDict(extra="allow")

    logline: str = DEFAULT_LOGLINE
    concept: str = DEFAULT_CONCEPT


class ProductionMetadata(BaseModel):
    """Audience and packaging metadata for a script breakdown."""

    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True, extra="allow")

    hook_score: int | float = Field(default=DEFAULT_HOOK_SCORE, alias="hookScore")
    audience: str = DEFAULT_AUDIENCE
    suggested_titles: list[str] = Field(
        default_factory=lambda: [DEFAULT_SUGGESTED_TITLE],
        alias="suggestedTitles",
    )


class ScriptAnalysis(BaseModel):
    """Structured breakdown recovered from a script-analysis model response."""

    characters: list[dict[str, Any]] = Field(default_factory=list)
    scenes: list[dict[str, Any]] = Field(default_factory=list)
    tasks: list[dict[str, Any]] = Field(default_factory=list)
    modules: ProductionModules = Field(default_factory=ProductionModules)
    metadata: ProductionMetadata = Field(default_factory=ProductionMetadata)


class RawTextRequest(BaseModel):
    """Raw model output submitted for recovery."""

    text: str


class NormalizeResponse(BaseModel):
    """Cleaned JSON text and the value parsed from it."""

    cleaned: str
    data: Any


class ParseFailureDetail(BaseModel):
    """Diagnostics returned when a model response cannot be recovered."""

    message: str
    original_length: int
    cleaned_length: int
    head_sample: str
    tail_sample: str


class FingerprintRequest(BaseModel):
    """Generation parameters identifying one asset request."""

    prompt: str
    style: str
    resolution: str
    aspect_ratio: str
    seed: int


class FingerprintResponse(BaseModel):
    fingerprint: str


class AssetPayload(BaseModel):
    """Text-encoded asset, usually a base64 data URI."""

    payload: str = Field(..., min_length=1)


class AssetResponse(BaseModel):
    fingerprint: str
    payload: str
