from __future__ import annotations

import logging
import re
from typing import Literal

from melogen.logging_utils import log_event
from melogen.models import LAYER_ORDER, LayerName
from melogen.services.music_theory import DEFAULT_KEY, KeyInfo, parse_key

Mood = Literal["dark", "bright", "neutral"]
Instrument = Literal["piano", "guitar", "strings", "synth", "bass"]

logger = logging.getLogger(__name__)

DARK_KEYWORDS = ("dark", "mrocz", "ominous", "gloom", "brood", "haunt", "evil", "sinister", "melanch", "noir")
BRIGHT_KEYWORDS = ("happy", "bright", "joy", "uplift", "sunny", "energetic", "funky")
KEYWORD_STOP_WORDS = frozenset(
    {
        "the", "and", "with", "that", "this", "into", "from", "your", "feel", "like", "make",
        "melody", "music", "song", "track", "riff", "beat", "style", "vibe", "sound", "tempo",
        "bpm", "minor", "major", "slow", "fast", "dark", "bright", "guitar", "piano", "bass", "strings", "synth",
        "in", "at", "for", "on", "by", "of", "to", "a", "an", "is", "are", "be", "it", "as", "up", "down", "soft", "hard",
    }
)

_INSTRUMENT_PATTERNS: tuple[tuple[Instrument, re.Pattern[str]], ...] = (
    ("piano", re.compile(r"(grand|upright|felt)?\s?piano|keys|keyboard|rhodes|keyscape")),
    ("guitar", re.compile(r"guitar|strum|acoustic|electric|nylon|six-string|strat|les paul")),
    ("strings", re.compile(r"string ensemble|strings|violin|cello|orchestral")),
    ("synth", re.compile(r"synth|pad|plucks|lead synth|analog")),
    ("bass", re.compile(r"bass guitar|slap bass|808|sub bass")),
)

_KEY_IN_PROMPT = re.compile(r"\b([A-G][b#]?)[\s-]+(major|minor)\b", re.IGNORECASE)
_KEY_LABEL = re.compile(r"([a-g][b#]?)[\s-]*(major|minor)", re.IGNORECASE)
_TEMPO_IN_PROMPT = re.compile(r"(\d{2,3})\s*(?:bpm|beats?\s*per\s*minute)", re.IGNORECASE)
_ARPEGGIO = re.compile(r"arpeggio|arp", re.IGNORECASE)

_MELODY_WORDS = r"(melody|melodic|lead|top\s*line)"
_CHORD_WORDS = r"(chord|chords|harmony|harmonic)"
_BASS_WORDS = r"(bass|bassline|bass\s*line)"

_ONLY_PATTERNS = (
    re.compile(rf"\b(just|only|solely)\s+(the\s+)?{_MELODY_WORDS}\b"),
    re.compile(rf"\b(just|only|solely)\s+(the\s+)?{_BASS_WORDS}\b"),
    re.compile(rf"\b(just|only|solely)\s+(the\s+)?{_CHORD_WORDS}\b"),
    re.compile(r"\bmelody\s+only\b"),
    re.compile(r"\bbassline\s+only\b"),
    re.compile(r"\bchords\s+only\b"),
)
_QUANTITY_PATTERNS = (
    re.compile(r"\bonly\s+\d+"),
    re.compile(r"\bjust\s+\d+"),
    re.compile(r"\bonly\s+a\s+few"),
    re.compile(r"\bonly\s+some"),
)
_WITHOUT_PATTERNS: dict[LayerName, tuple[re.Pattern[str], ...]] = {
    "melody": (
        re.compile(rf"\b(without|no|skip)\s+(the\s+)?{_MELODY_WORDS}\b"),
        re.compile(rf"\b{_MELODY_WORDS}\s+(excluded|removed)\b"),
    ),
    "chords": (
        re.compile(rf"\b(without|no|skip)\s+(the\s+)?{_CHORD_WORDS}\b"),
        re.compile(rf"\b{_CHORD_WORDS}\s+(excluded|removed)\b"),
    ),
    "bassline": (
        re.compile(rf"\b(without|no|skip)\s+(the\s+)?{_BASS_WORDS}\b"),
        re.compile(rf"\b{_BASS_WORDS}\s+(excluded|removed)\b"),
    ),
}


def _contains_any(text: str, keywords: tuple[str, ...]) -> bool:
    lower = text.lower()
    return any(keyword in lower for keyword in keywords)


def detect_mood(prompt: str, intensify_darkness: bool = False) -> Mood:
    if intensify_darkness or _contains_any(prompt, DARK_KEYWORDS):
        return "dark"
    if _contains_any(prompt, BRIGHT_KEYWORDS):
        return "bright"
    return "neutral"


def detect_instrument(prompt: str) -> Instrument | None:
    lower = prompt.lower()
    for instrument, pattern in _INSTRUMENT_PATTERNS:
        if pattern.search(lower):
            return instrument
    return None


def mentions_arpeggio(text: str | None) -> bool:
    return bool(text) and bool(_ARPEGGIO.search(text))


def extract_keywords(prompt: str | None) -> list[str]:
    if not prompt:
        return []
    tokens = [token.strip() for token in re.split(r"[^a-z0-9#+]+", prompt.lower())]
    keywords: list[str] = []
    for token in tokens:
        if not token or token in KEYWORD_STOP_WORDS:
            continue
        if len(token) < 2 and not any(ch.isdigit() for ch in token):
            continue
        if token not in keywords:
            keywords.append(token)
    return keywords


def extract_tempo(prompt: str | None) -> int | None:
    if not prompt:
        return None
    m = _TEMPO_IN_PROMPT.search(prompt)
    return int(m.group(1)) if m else None


def extract_key(prompt: str) -> str:
    m = _KEY_IN_PROMPT.search(prompt)
    if not m:
        return DEFAULT_KEY
    tonic = m.group(1)[0].upper() + m.group(1)[1:]
    return f"{tonic} {m.group(2).lower()}"


def normalize_key_label(key: str | None) -> str | None:
    if not key:
        return None
    m = _KEY_LABEL.search(key)
    if not m:
        return None
    return f"{m.group(1).upper()}-{m.group(2).lower()}"


def parse_key_info(key: str | None) -> KeyInfo | None:
    """Strict variant of ``parse_key``: only labels naming a mode are understood."""
    if not key:
        return None
    m = _KEY_LABEL.search(key)
    if not m:
        return None
    tonic = m.group(1)[0].upper() + m.group(1)[1:].lower()
    return parse_key(f"{tonic} {m.group(2).lower()}")


def detect_layers(prompt: str) -> list[LayerName] | None:
    lower = prompt.lower()
    has_selection = any(pattern.search(lower) for pattern in _ONLY_PATTERNS)
    excluded = [
        layer for layer, patterns in _WITHOUT_PATTERNS.items() if any(pattern.search(lower) for pattern in patterns)
    ]

    if not has_selection and not excluded and any(pattern.search(lower) for pattern in _QUANTITY_PATTERNS):
        log_event(logger, "layer_detection_quantity_phrase_ignored")
        return None

    if has_selection:
        selected: list[LayerName] = []
        if re.search(rf"\b{_MELODY_WORDS}\b", lower):
            selected.append("melody")
        if re.search(rf"\b{_CHORD_WORDS}\b", lower):
            selected.append("chords")
        if re.search(rf"\b{_BASS_WORDS}\b", lower):
            selected.append("bassline")
        if selected:
            log_event(logger, "layer_detection_selected", layers=selected)
            return selected

    if excluded:
        remaining = [layer for layer in LAYER_ORDER if layer not in excluded]
        log_event(logger, "layer_detection_excluded", excluded=excluded, layers=remaining)
        return remaining

    return None
