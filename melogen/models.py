from __future__ import annotations

import math
import re
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

LayerName = Literal["melody", "chords", "bassline"]
ValidationMode = Literal["preserve", "strict"]
FeedbackRating = Literal["up", "down"]
FeedbackReason = Literal["quality", "prompt_mismatch", "other"]

LAYER_ORDER: tuple[LayerName, ...] = ("melody", "chords", "bassline")
BEATS_PER_MEASURE = 4
DURATION_DECIMALS = 6
PITCH_PATTERN = r"^[A-G][#b]?-?\d+$"


def clip_duration(start: float, duration: float, total_beats: float) -> float:
    """Clip ``duration`` so a note at ``start`` ends on or before ``total_beats``."""
    remaining = total_beats - start
    clipped = round(min(duration, remaining), DURATION_DECIMALS)
    if start + clipped > total_beats:
        scale = 10**DURATION_DECIMALS
        clipped = math.floor(remaining * scale) / scale
    return clipped


class Note(BaseModel):
    note: str = Field(pattern=PITCH_PATTERN, description="Pitch like C4 or F#3")
    start: float = Field(ge=0)
    duration: float = Field(gt=0)
    velocity: int = Field(default=100, ge=0, le=127)
    slide: bool = False

    @property
    def end(self) -> float:
        return self.start + self.duration


class Composition(BaseModel):
    melody: list[Note] = Field(default_factory=list)
    chords: list[Note] = Field(default_factory=list)
    bassline: list[Note] = Field(default_factory=list)
    tempo: int | None = Field(default=None, ge=1, le=400)
    chord_progression: str | None = Field(default=None, max_length=200)

    def layer(self, name: LayerName) -> list[Note]:
        return getattr(self, name)

    def layers(self) -> dict[LayerName, list[Note]]:
        return {name: self.layer(name) for name in LAYER_ORDER}

    def is_empty(self) -> bool:
        return not any(self.layers().values())


class GenerationRequest(BaseModel):
    prompt: str = Field(min_length=3, max_length=500)
    example_melody: list[Note] | None = None
    chord_progression: str | None = Field(default=None, max_length=200)
    measures: int = Field(default=8, ge=1, le=128)
    layers: list[LayerName] | None = Field(default=None, max_length=3)
    grid_resolution: float = Field(default=0.25, ge=0.0625, le=0.5)
    tempo: int | None = Field(default=None, ge=1, le=400)
    intensify_darkness: bool = False
    strict: bool = False

    @field_validator("prompt")
    @classmethod
    def reject_blank_prompt(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Prompt must contain text.")
        return value

    @field_validator("chord_progression")
    @classmethod
    def normalize_chord_progression(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = value.strip()
        if not cleaned:
            return None
        if not re.fullmatch(r"[A-Za-z0-9#/()+\s\-]+", cleaned):
            raise ValueError("Chord progressions look like Am-G-C-F.")
        return cleaned

    @property
    def beat_budget(self) -> float:
        return float(self.measures * BEATS_PER_MEASURE)

    @property
    def requested_layers(self) -> list[LayerName]:
        if not self.layers:
            return list(LAYER_ORDER)
        return [name for name in LAYER_ORDER if name in self.layers]


class GenerationResponse(BaseModel):
    composition: Composition
    fingerprint: str
    cached: bool
    key: str
    chord_progression: str | None = None
    request_id: str | None = None


class ChordSuggestionRequest(BaseModel):
    key: str = Field(min_length=1, max_length=40)
    prompt: str | None = Field(default=None, max_length=500)


class ChordSuggestionResponse(BaseModel):
    chord_progressions: list[str]


class ValidationOptionsPayload(BaseModel):
    total_beats: float = Field(default=32, gt=0, le=512)
    mode: ValidationMode = "preserve"
    grid: float = Field(default=0.25, ge=0, le=4)
    max_interval: int = Field(default=12, ge=0, le=48)
    remove_duplicates: bool = True
    ensure_min_notes: int = Field(default=0, ge=0, le=256)
    allow_chromatic: bool = False
    humanize: bool = False


class ValidateNotesRequest(BaseModel):
    notes: list[Any] = Field(default_factory=list)
    key: str = "A minor"
    options: ValidationOptionsPayload = Field(default_factory=ValidationOptionsPayload)


class ValidateNotesResponse(BaseModel):
    notes: list[Note]
    dropped: int = Field(ge=0)


class FeedbackRequest(BaseModel):
    rating: FeedbackRating
    prompt: str = Field(min_length=1, max_length=500)
    key: str = Field(min_length=1, max_length=40)
    composition: Composition
    measures: int | None = Field(default=None, ge=1, le=128)
    tempo: int | None = Field(default=None, ge=1, le=400)
    grid_resolution: float | None = None
    chord_progression: str | None = None
    intensify_darkness: bool | None = None
    reason: FeedbackReason | None = None
    notes: str | None = Field(default=None, max_length=2000)


class UsageResponse(BaseModel):
    totalEstimatedTokensUsed: int = Field(ge=0)
    timestamp: str
