from __future__ import annotations

import hashlib
import json
import re
from typing import Any

from melogen.models import LAYER_ORDER, GenerationRequest, Note

CACHE_KEY_VERSION = "v1"
TEMPO_MIN = 20
TEMPO_MAX = 400
DEFAULT_MEASURES = 8
DEFAULT_GRID_RESOLUTION = 0.25
TIMING_DECIMALS = 3


def normalize_prompt(prompt: str) -> str:
    return re.sub(r"\s+", " ", prompt.strip())


def normalize_tempo(tempo: float | None) -> int | None:
    if tempo is None:
        return None
    return int(max(TEMPO_MIN, min(TEMPO_MAX, round(tempo))))


def _normalize_example_note(note: Note | dict[str, Any]) -> dict[str, Any]:
    data = note.model_dump() if isinstance(note, Note) else dict(note)
    return {
        "note": str(data.get("note", "")),
        "start": round(float(data.get("start", 0.0)), TIMING_DECIMALS),
        "duration": round(float(data.get("duration", 0.0)), TIMING_DECIMALS),
        "velocity": int(data.get("velocity", 0)),
        "slide": bool(data.get("slide", False)),
    }


def normalize_request(request: GenerationRequest) -> dict[str, Any]:
    layers = list(LAYER_ORDER) if not request.layers else [name for name in LAYER_ORDER if name in request.layers]
    example = [_normalize_example_note(note) for note in request.example_melody] if request.example_melody else None
    return {
        "version": CACHE_KEY_VERSION,
        "prompt": normalize_prompt(request.prompt),
        "chord_progression": request.chord_progression.strip() if request.chord_progression else None,
        "example": example,
        "measures": request.measures or DEFAULT_MEASURES,
        "layers": layers,
        "grid_resolution": request.grid_resolution or DEFAULT_GRID_RESOLUTION,
        "tempo": normalize_tempo(request.tempo),
        "intensify_darkness": bool(request.intensify_darkness),
        "strict": bool(request.strict),
    }


def canonical_json(payload: Any) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def build_cache_key(request: GenerationRequest) -> str:
    return hashlib.sha256(canonical_json(normalize_request(request)).encode("utf-8")).hexdigest()
