from __future__ import annotations

import logging
import math
import random
from dataclasses import dataclass, field
from typing import Any, Iterable

from melogen.logging_utils import log_event
from melogen.models import Note, ValidationMode, clip_duration
from melogen.services.music_theory import (
    MIDI_MAX,
    MIDI_MIN,
    KeyInfo,
    is_valid_pitch,
    midi_to_pitch,
    nearest_in_range,
    parse_key,
    pitch_to_midi,
    snap_midi_to_scale,
)

logger = logging.getLogger(__name__)

DEFAULT_TOTAL_BEATS = 32.0
DEFAULT_GRID = 0.25
DUPLICATE_FALLBACK_GRID = 0.125
PRESERVE_DECIMALS = 2
HUMANIZE_TIMING = 0.02
HUMANIZE_VELOCITY = 5
BACKFILL_VELOCITY_JITTER = 4
BACKFILL_ATTEMPTS_PER_NOTE = 4


@dataclass(frozen=True)
class ValidationOptions:
    total_beats: float = DEFAULT_TOTAL_BEATS
    mode: ValidationMode = "preserve"
    grid: float = DEFAULT_GRID
    max_interval: int = 12
    remove_duplicates: bool = True
    ensure_min_notes: int = 0
    allow_chromatic: bool = False
    humanize: bool = False
    rng: random.Random | None = field(default=None, compare=False, repr=False)

    @property
    def strict(self) -> bool:
        return self.mode == "strict"


@dataclass
class _WorkingNote:
    note: str
    midi: int
    start: float
    duration: float
    velocity: int
    slide: bool

    def with_pitch(self, midi: int) -> None:
        self.midi = midi
        self.note = midi_to_pitch(midi)


@dataclass(frozen=True)
class MelodyAnalysis:
    avg_interval: float
    max_interval: int
    rhythmic_density: float
    range: int
    score: float


@dataclass(frozen=True)
class MelodyAssessment:
    score: float
    issues: list[str]
    avg_interval: float
    range: int
    max_interval: int
    note_count: int
    rhythmic_variety: float
    coverage_ratio: float


def quantize(value: float, grid: float = DEFAULT_GRID) -> float:
    """Snap ``value`` to the nearest grid step, halves rounding up."""
    if grid <= 0:
        return value
    steps = math.floor(value / grid + 0.5)
    return round(steps * grid, 6)


def snap_to_scale(pitch: str, key: KeyInfo | str, allow_chromatic: bool = False) -> str:
    key_info = key if isinstance(key, KeyInfo) else parse_key(key)
    midi = snap_midi_to_scale(pitch_to_midi(pitch), key_info.scale_pitch_classes(allow_chromatic))
    return midi_to_pitch(nearest_in_range(midi))


def _finite_number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value) if math.isfinite(value) else None


def _coerce(raw: Any) -> _WorkingNote | None:
    if isinstance(raw, Note):
        raw = raw.model_dump()
    if not isinstance(raw, dict):
        return None
    pitch = raw.get("note")
    start = _finite_number(raw.get("start"))
    duration = _finite_number(raw.get("duration"))
    if start is None or duration is None or start < 0 or not is_valid_pitch(pitch):
        return None
    midi = pitch_to_midi(pitch)
    if midi < MIDI_MIN or midi > MIDI_MAX:
        return None
    velocity = _finite_number(raw.get("velocity"))
    return _WorkingNote(
        note=pitch,
        midi=midi,
        start=start,
        duration=duration,
        velocity=int(velocity) if velocity is not None else 100,
        slide=bool(raw.get("slide", False)),
    )


def _clip_to_budget(notes: list[_WorkingNote], total_beats: float) -> list[_WorkingNote]:
    kept = []
    for note in notes:
        if note.start >= total_beats:
            continue
        note.duration = clip_duration(note.start, note.duration, total_beats)
        if note.duration > 0:
            kept.append(note)
    return kept


def _normalize_timing(notes: list[_WorkingNote], options: ValidationOptions) -> list[_WorkingNote]:
    if options.strict:
        if options.grid > 0:
            for note in notes:
                note.start = quantize(note.start, options.grid)
                note.duration = max(options.grid, quantize(note.duration, options.grid))
    else:
        for note in notes:
            note.start = round(note.start, PRESERVE_DECIMALS)
            note.duration = round(note.duration, PRESERVE_DECIMALS)
    return _clip_to_budget(notes, options.total_beats)


def _snap_pitches(notes: list[_WorkingNote], scale: list[int]) -> None:
    for note in notes:
        note.with_pitch(nearest_in_range(snap_midi_to_scale(note.midi, scale)))


def _clamp_intervals(notes: list[_WorkingNote], scale: list[int], max_interval: int) -> None:
    if max_interval <= 0:
        return
    for previous, current in zip(notes, notes[1:]):
        interval = current.midi - previous.midi
        if abs(interval) > max_interval:
            pulled = previous.midi + int(math.copysign(max_interval, interval))
            current.with_pitch(nearest_in_range(snap_midi_to_scale(pulled, scale)))


def _remove_duplicates(notes: list[_WorkingNote], grid: float) -> list[_WorkingNote]:
    bucket_grid = grid if grid > 0 else DUPLICATE_FALLBACK_GRID
    seen: set[tuple[float, str]] = set()
    unique = []
    for note in notes:
        slot = (quantize(note.start, bucket_grid), midi_to_pitch(note.midi))
        if slot in seen:
            continue
        seen.add(slot)
        unique.append(note)
    return unique


def _backfill(notes: list[_WorkingNote], options: ValidationOptions, rng: random.Random) -> list[_WorkingNote]:
    target = options.ensure_min_notes
    if not notes or len(notes) >= target:
        return notes
    originals = list(notes)
    filled = list(notes)
    for _ in range(BACKFILL_ATTEMPTS_PER_NOTE * target):
        if len(filled) >= target:
            break
        template = originals[len(filled) % len(originals)]
        last = filled[-1]
        start = round(last.start + last.duration, 6)
        if start + template.duration > options.total_beats:
            break
        jitter = rng.randint(-BACKFILL_VELOCITY_JITTER, BACKFILL_VELOCITY_JITTER)
        filled.append(
            _WorkingNote(
                note=template.note,
                midi=template.midi,
                start=start,
                duration=template.duration,
                velocity=max(1, min(127, template.velocity + jitter)),
                slide=template.slide,
            )
        )
    return filled


def _humanize(notes: list[_WorkingNote], total_beats: float, rng: random.Random) -> None:
    for note in notes:
        start = round(note.start + (rng.random() - 0.5) * HUMANIZE_TIMING, 6)
        if 0 <= start < total_beats:
            note.start = start
        elif start < 0:
            note.start = 0.0
        note.velocity += math.floor((rng.random() - 0.5) * HUMANIZE_VELOCITY * 2)


def _finalize(notes: list[_WorkingNote], total_beats: float) -> list[Note]:
    final = []
    for note in notes:
        if note.start < 0 or note.start >= total_beats:
            continue
        duration = clip_duration(note.start, note.duration, total_beats)
        if duration <= 0:
            continue
        final.append(
            Note(
                note=note.note,
                start=note.start,
                duration=duration,
                velocity=max(1, min(127, note.velocity)),
                slide=note.slide,
            )
        )
    final.sort(key=lambda note: note.start)
    return final


def validate_notes(raw_notes: Iterable[Any] | None, key: str | None, options: ValidationOptions | None = None) -> list[Note]:
    """Repair raw generator output into clean notes for ``key``.

    Every stage filters or repairs; nothing here raises on bad input and an
    input with no usable notes yields ``[]``.
    """
    options = options or ValidationOptions()
    raw_list = list(raw_notes) if raw_notes else []
    if not raw_list or options.total_beats <= 0:
        return []
    rng = options.rng or random.Random()

    notes = [note for note in (_coerce(raw) for raw in raw_list) if note is not None]
    notes.sort(key=lambda note: note.start)
    notes = _clip_to_budget(notes, options.total_beats)
    notes = _normalize_timing(notes, options)

    if options.strict:
        scale = parse_key(key).scale_pitch_classes(options.allow_chromatic)
        _snap_pitches(notes, scale)
        _clamp_intervals(notes, scale, options.max_interval)

    if options.remove_duplicates:
        notes = _remove_duplicates(notes, options.grid)

    if options.strict and options.ensure_min_notes > 0:
        notes = _backfill(notes, options, rng)

    if options.humanize:
        _humanize(notes, options.total_beats, rng)

    result = _finalize(notes, options.total_beats)
    if len(result) != len(raw_list):
        log_event(
            logger,
            "notes_validated",
            level=logging.DEBUG,
            mode=options.mode,
            received=len(raw_list),
            kept=len(result),
        )
    return result


def _midi_values(notes: list[Note]) -> list[int]:
    return [pitch_to_midi(note.note) for note in sorted(notes, key=lambda n: n.start) if is_valid_pitch(note.note)]


def analyze_melody(notes: list[Note]) -> MelodyAnalysis:
    midis = _midi_values(notes)
    if len(midis) < 2:
        return MelodyAnalysis(avg_interval=0.0, max_interval=0, rhythmic_density=0.0, range=0, score=0.0)

    intervals = [abs(b - a) for a, b in zip(midis, midis[1:])]
    avg_interval = sum(intervals) / len(intervals)
    max_interval = max(intervals)
    pitch_range = max(midis) - min(midis)
    span = max(note.end for note in notes)
    density = len(notes) / span if span > 0 else 0.0

    score = 50.0
    if 2 <= avg_interval <= 5:
        score += 15
    elif 0 < avg_interval < 2:
        score -= 10
    elif avg_interval > 5:
        score -= 5
    if 12 <= pitch_range <= 24:
        score += 15
    elif 0 < pitch_range < 12:
        score -= 10
    if 1 <= density <= 4:
        score += 15
    if max_interval > 12:
        score -= 10
    if len(notes) < 5:
        score -= 20

    return MelodyAnalysis(
        avg_interval=avg_interval,
        max_interval=max_interval,
        rhythmic_density=density,
        range=pitch_range,
        score=max(0.0, min(100.0, score)),
    )


def assess_melody(notes: list[Note], total_beats: float, mood: str, intensify: bool) -> MelodyAssessment:
    """Score a melody and list what a retry should fix."""
    if not notes:
        return MelodyAssessment(
            score=0.0,
            issues=["No notes in melody"],
            avg_interval=0.0,
            range=0,
            max_interval=0,
            note_count=0,
            rhythmic_variety=0.0,
            coverage_ratio=0.0,
        )

    base = analyze_melody(notes)
    coverage = sum(note.duration for note in notes) / total_beats if total_beats > 0 else 0.0
    variety = len({note.duration for note in notes}) / len(notes)
    extreme = mood == "dark" or intensify

    issues = []
    if 0 < base.avg_interval < 2:
        issues.append("Melody is too monotonic - use intervals of 2-5 semitones more often")
    if base.avg_interval > 5 and not extreme:
        issues.append("Melody jumps too much - use more stepwise motion (1-2 semitones)")
    if 0 < base.range < 12:
        issues.append("Melodic range is too narrow - expand to at least one octave (12 semitones)")
    elif base.range > 28 and not extreme:
        issues.append("Melodic range is too wide - keep within roughly two octaves")
    if base.max_interval > (19 if extreme else 12):
        issues.append("Contains intervals larger than allowed - keep dramatic leaps under control")
    if len(notes) < 8:
        issues.append("Too few notes - add more to create a fuller melody")
    if coverage < 0.6:
        issues.append(f"Melody has too many gaps - fill in more of the {total_beats:g} beats")
    if variety < (0.2 if extreme else 0.3):
        issues.append("Rhythm is too repetitive - vary note durations more")

    score = base.score - len(issues) * (3 if extreme else 5)
    if extreme:
        score += 5

    return MelodyAssessment(
        score=max(0.0, min(100.0, score)),
        issues=issues,
        avg_interval=base.avg_interval,
        range=base.range,
        max_interval=base.max_interval,
        note_count=len(notes),
        rhythmic_variety=variety,
        coverage_ratio=coverage,
    )
