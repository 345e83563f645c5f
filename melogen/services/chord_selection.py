from __future__ import annotations

import hashlib
import logging
import random
import re
from typing import Sequence

from melogen.logging_utils import log_event
from melogen.services.prompt_detection import Instrument, Mood

logger = logging.getLogger(__name__)

DEFAULT_MINOR_PROGRESSIONS = (
    "Am-G-F-E",
    "Am-F-Dm-E",
    "Dm-Bb-Gm-A",
    "Em-C-Am-B7",
    "Am-Em-F-G",
    "Am-C-G-F",
    "Dm-Am-Bb-G",
)
DARK_MINOR_PROGRESSIONS = (
    "Am-F-E7-Am",
    "Dm-Bb-Gm-A",
    "Cm-Ab-G-Gm",
    "Bm-G-Em-F#",
    "Em-C-Am-B7",
    "Fm-Db-Ebm-C",
    "Gm-Eb-F-D",
    "Cm-G-Ab-Bb",
)
DEFAULT_MAJOR_PROGRESSIONS = (
    "C-G-Am-F",
    "C-F-Am-G",
    "G-D-Em-C",
    "F-C-Dm-Bb",
    "C-Am-F-G",
    "C-Dm-Am-G",
    "F-G-Em-Am",
)
FALLBACK_PROGRESSION = "Am-G-F-E"

TRAP_KEYWORDS = ("trap", "hip-hop", "hip hop", "bass")
MINIMAL_KEYWORDS = ("minimal", "sparse", "simple")
COMPLEX_KEYWORDS = ("complex", "jazz", "fusion", "chromatic")

SECTION_LABELS = ("sectionA", "sectionB", "sectionC")
MAX_JITTER = 3

_DARK_MARKER = re.compile(r"m|dim|sus|#|7", re.IGNORECASE)
_EXTENDED_CHORD = re.compile(r"maj7|sus|dim|add|m7|7")


def chord_names(progression: str) -> list[str]:
    return [chord.strip() for chord in progression.split("-") if chord.strip()]


def is_dark_progression(progression: str) -> bool:
    return bool(_DARK_MARKER.search(progression))


def filter_suggestions(
    suggestions: Sequence[str],
    mood: Mood,
    prompt: str,
    instrument: Instrument | None = None,
) -> list[str]:
    """Narrow external suggestions to the prompt's style; a filter that would empty the pool is skipped.

    The instrument and style filters are exclusive: the first one that
    matches and keeps something decides the pool. Mood only applies when
    none of them did.
    """
    suggestions = list(suggestions)
    if not suggestions:
        return suggestions
    lower = prompt.lower()

    if instrument == "guitar":
        friendly = [p for p in suggestions if len(chord_names(p)) <= 4]
        if friendly:
            return friendly
    if instrument == "piano":
        friendly = [p for p in suggestions if len(chord_names(p)) >= 4 or _EXTENDED_CHORD.search(p.lower())]
        if friendly:
            return friendly

    if any(keyword in lower for keyword in TRAP_KEYWORDS):
        short = [p for p in suggestions if len(chord_names(p)) <= 3]
        if short:
            return short
    if any(keyword in lower for keyword in MINIMAL_KEYWORDS):
        repetitive = [p for p in suggestions if len(set(chord_names(p))) <= 3]
        if repetitive:
            return repetitive
    if any(keyword in lower for keyword in COMPLEX_KEYWORDS):
        extended = [p for p in suggestions if len(chord_names(p)) >= 5]
        if extended:
            return extended

    if mood == "dark":
        return [p for p in suggestions if is_dark_progression(p)] or suggestions
    if mood == "bright":
        return [p for p in suggestions if not is_dark_progression(p)] or suggestions
    return suggestions


def base_index(pool_size: int, seed: str, key: str) -> int:
    digest = hashlib.sha256(f"{seed}|{key}".encode("utf-8")).hexdigest()
    return int(digest[:8], 16) % pool_size


def pick_progression(
    pool: Sequence[str],
    seed: str,
    key: str,
    rng: random.Random | None = None,
) -> str:
    if not pool:
        return FALLBACK_PROGRESSION
    rng = rng or random.Random()
    offset = rng.randrange(min(len(pool), MAX_JITTER)) if len(pool) > 1 else 0
    return pool[(base_index(len(pool), seed, key) + offset) % len(pool)]


def builtin_pool(key: str, mood: Mood) -> tuple[str, ...]:
    minor_key = "minor" in key.lower()
    if minor_key:
        return DARK_MINOR_PROGRESSIONS
    if mood == "dark":
        return DEFAULT_MINOR_PROGRESSIONS
    return DEFAULT_MAJOR_PROGRESSIONS


def select_progressions(
    prompt: str,
    key: str,
    mood: Mood,
    suggestions: Sequence[str] | None = None,
    instrument: Instrument | None = None,
    rng: random.Random | None = None,
) -> list[str]:
    """Pick one to three progressions (sections A, B, C) for a prompt."""
    rng = rng or random.Random()
    filtered = filter_suggestions(suggestions, mood, prompt, instrument) if suggestions else []
    pool = list(filtered) if filtered else list(builtin_pool(key, mood))
    source = "suggestions" if filtered else "builtin"

    if len(pool) <= 2:
        chosen = [pick_progression(pool, f"{prompt}|{SECTION_LABELS[0]}", key, rng)]
    else:
        chosen = []
        remaining = pool
        for label in SECTION_LABELS:
            progression = pick_progression(remaining or pool, f"{prompt}|{label}", key, rng)
            chosen.append(progression)
            remaining = [p for p in remaining if p != progression]

    log_event(logger, "chord_progressions_selected", source=source, pool_size=len(pool), progressions=chosen)
    return chosen
