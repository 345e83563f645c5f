from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal

NOTE_TO_SEMITONE = {
    "C": 0,
    "C#": 1,
    "Db": 1,
    "D": 2,
    "D#": 3,
    "Eb": 3,
    "E": 4,
    "F": 5,
    "F#": 6,
    "Gb": 6,
    "G": 7,
    "G#": 8,
    "Ab": 8,
    "A": 9,
    "A#": 10,
    "Bb": 10,
    "B": 11,
    "Cb": 11,
}
SEMITONE_TO_NOTE = {v: k for k, v in NOTE_TO_SEMITONE.items() if len(k) == 1 or "#" in k}

SCALE_PATTERNS = {
    "major": (0, 2, 4, 5, 7, 9, 11),
    "minor": (0, 2, 3, 5, 7, 8, 10),
    "harmonic_minor": (0, 2, 3, 5, 7, 8, 11),
}

# 88-key piano range, A0..C8.
MIDI_MIN = 21
MIDI_MAX = 108

DEFAULT_KEY = "A minor"

KeyMode = Literal["major", "minor"]

_PITCH_RE = re.compile(r"^([A-G][#b]?)(-?\d+)$")
_KEY_RE = re.compile(r"^\s*([A-Ga-g])([#b]?)\s*[-_ ]?\s*(major|minor|maj|min|ionian|aeolian|m)?\s*$", re.IGNORECASE)


@dataclass(frozen=True)
class KeyInfo:
    tonic: str
    mode: KeyMode

    @property
    def is_minor(self) -> bool:
        return self.mode == "minor"

    def scale_name(self, allow_chromatic: bool = False) -> str:
        if not self.is_minor:
            return "major"
        return "harmonic_minor" if allow_chromatic else "minor"

    def scale_pitch_classes(self, allow_chromatic: bool = False) -> list[int]:
        base = NOTE_TO_SEMITONE[self.tonic]
        return [(base + step) % 12 for step in SCALE_PATTERNS[self.scale_name(allow_chromatic)]]


def parse_key(key: str | None) -> KeyInfo:
    """Parse labels like ``A minor``, ``F#-major``, ``Am`` or ``Bb``.

    Unknown input falls back to A minor. A bare tonic is read as major.
    """
    if not key:
        return parse_key(DEFAULT_KEY)
    m = _KEY_RE.match(key)
    if not m:
        return parse_key(DEFAULT_KEY)
    tonic = f"{m.group(1).upper()}{m.group(2)}"
    if tonic not in NOTE_TO_SEMITONE:
        return parse_key(DEFAULT_KEY)
    suffix = (m.group(3) or "").lower()
    mode: KeyMode = "minor" if suffix in {"minor", "min", "aeolian", "m"} else "major"
    # "M" is conventionally major, "m" minor.
    if m.group(3) == "M":
        mode = "major"
    return KeyInfo(tonic=tonic, mode=mode)


def is_valid_pitch(pitch: object) -> bool:
    if not isinstance(pitch, str):
        return False
    m = _PITCH_RE.match(pitch)
    return bool(m) and m.group(1) in NOTE_TO_SEMITONE


def pitch_to_midi(pitch: str) -> int:
    m = _PITCH_RE.match(pitch)
    if not m or m.group(1) not in NOTE_TO_SEMITONE:
        raise ValueError(f"Invalid pitch name: {pitch!r}")
    midi = NOTE_TO_SEMITONE[m.group(1)] + (int(m.group(2)) + 1) * 12
    # Cb belongs to the octave above its sounding pitch (Cb4 == B3).
    if m.group(1) == "Cb":
        midi -= 12
    return midi


def midi_to_pitch(midi: int) -> str:
    octave = (midi // 12) - 1
    return f"{SEMITONE_TO_NOTE[midi % 12]}{octave}"


def circular_distance(a: int, b: int) -> int:
    diff = abs(a - b) % 12
    return min(diff, 12 - diff)


def nearest_scale_pitch_class(pitch_class: int, scale: list[int]) -> int:
    # Scale is ordered by degree, so the first minimum is the lower degree.
    best = scale[0]
    best_distance = 13
    for candidate in scale:
        distance = circular_distance(pitch_class, candidate)
        if distance < best_distance:
            best = candidate
            best_distance = distance
    return best


def snap_midi_to_scale(midi: int, scale: list[int]) -> int:
    pitch_class = midi % 12
    target = nearest_scale_pitch_class(pitch_class, scale)
    correction = target - pitch_class
    if correction > 6:
        correction -= 12
    elif correction < -6:
        correction += 12
    return midi + correction


def nearest_in_range(candidate: int, lower: int = MIDI_MIN, upper: int = MIDI_MAX) -> int:
    while candidate < lower:
        candidate += 12
    while candidate > upper:
        candidate -= 12
    return max(lower, min(candidate, upper))
