import random

from melogen.models import Note
from melogen.services.melody_validator import (
    ValidationOptions,
    analyze_melody,
    assess_melody,
    quantize,
    snap_to_scale,
    validate_notes,
)


def _raw(note, start, duration, velocity=100):
    return {"note": note, "start": start, "duration": duration, "velocity": velocity}


def _shape(notes):
    return [(n.note, n.start, n.duration) for n in notes]


def test_notes_are_clipped_to_beat_budget():
    notes = validate_notes(
        [_raw("A4", 7, 2), _raw("A4", 8, 1), _raw("C5", 0, 1)],
        "A minor",
        ValidationOptions(total_beats=8),
    )
    assert _shape(notes) == [("C5", 0, 1), ("A4", 7, 1)]


def test_duplicate_pitch_on_same_slot_is_removed():
    notes = validate_notes([_raw("C4", 2.0, 1), _raw("C4", 2.0, 0.5)], "A minor")
    assert _shape(notes) == [("C4", 2.0, 1)]


def test_empty_input_yields_empty_list():
    assert validate_notes([], "A minor") == []
    assert validate_notes(None, "A minor") == []


def test_unusable_entries_are_dropped():
    notes = validate_notes(
        [
            "not a note",
            _raw("H4", 0, 1),
            _raw("C4", -1, 1),
            _raw("C4", float("nan"), 1),
            _raw("C4", True, 1),
            _raw("C9", 0, 1),
            _raw("E4", 1, 1),
        ],
        "A minor",
    )
    assert _shape(notes) == [("E4", 1, 1)]


def test_note_models_are_accepted():
    notes = validate_notes([Note(note="E4", start=0, duration=1, velocity=80)], "A minor")
    assert notes[0].velocity == 80


def test_off_scale_pitch_snaps_to_lower_neighbour():
    assert snap_to_scale("A#3", "A minor") == "A3"
    assert snap_to_scale("C4", "A minor") == "C4"


def test_quantize_rounds_halves_up_and_is_idempotent():
    assert quantize(0.125, 0.25) == 0.25
    assert quantize(1.1, 0.25) == 1.0
    assert quantize(1.3, 0) == 1.3
    for value in (0.1, 0.37, 2.62, 7.99):
        once = quantize(value, 0.25)
        assert quantize(once, 0.25) == once


def test_preserve_mode_rounds_to_two_decimals():
    notes = validate_notes([_raw("A4", 1.234, 0.5678)], "A minor")
    assert _shape(notes) == [("A4", 1.23, 0.57)]


def test_strict_mode_quantizes_with_minimum_grid_duration():
    notes = validate_notes([_raw("A4", 1.1, 0.05)], "A minor", ValidationOptions(total_beats=8, mode="strict"))
    assert _shape(notes) == [("A4", 1.0, 0.25)]


def test_strict_mode_snaps_pitches_and_limits_leaps():
    notes = validate_notes(
        [_raw("A3", 0, 1), _raw("A5", 1, 1), _raw("A#3", 2, 1)],
        "A minor",
        ValidationOptions(total_beats=8, mode="strict", max_interval=12),
    )
    assert [n.note for n in notes] == ["A3", "A4", "A3"]


def test_strict_backfill_repeats_originals_after_last_note():
    notes = validate_notes(
        [_raw("A4", 0, 1), _raw("C5", 1, 1)],
        "A minor",
        ValidationOptions(total_beats=32, mode="strict", ensure_min_notes=6, rng=random.Random(0)),
    )
    assert [(n.note, n.start) for n in notes] == [
        ("A4", 0),
        ("C5", 1),
        ("A4", 2),
        ("C5", 3),
        ("A4", 4),
        ("C5", 5),
    ]
    assert all(96 <= n.velocity <= 104 for n in notes[2:])


def test_backfill_stops_at_budget():
    notes = validate_notes(
        [_raw("A4", 0, 2), _raw("C5", 2, 2)],
        "A minor",
        ValidationOptions(total_beats=8, mode="strict", ensure_min_notes=10, rng=random.Random(0)),
    )
    assert len(notes) == 4
    assert max(n.end for n in notes) == 8


def test_preserve_mode_never_backfills():
    notes = validate_notes(
        [_raw("A4", 0, 1), _raw("C5", 1, 1)],
        "A minor",
        ValidationOptions(total_beats=32, ensure_min_notes=6),
    )
    assert len(notes) == 2


def test_humanize_stays_close_to_written_timing():
    raw = [_raw("A4", 0, 1), _raw("C5", 1, 1), _raw("E5", 2, 1)]
    notes = validate_notes(raw, "A minor", ValidationOptions(total_beats=8, humanize=True, rng=random.Random(3)))

    for original, note in zip(raw, notes):
        assert note.start >= 0
        assert abs(note.start - original["start"]) <= 0.01
        assert 95 <= note.velocity <= 104


def test_velocity_is_clamped():
    notes = validate_notes([_raw("A4", 0, 1, velocity=0), _raw("C5", 1, 1, velocity=500)], "A minor")
    assert [n.velocity for n in notes] == [1, 127]


def _scale_run():
    return [Note(note=pitch, start=i, duration=1) for i, pitch in enumerate(["C4", "D4", "E4", "F4", "G4", "A4", "B4", "C5"])]


def test_analyze_melody_scores_stepwise_octave_run():
    analysis = analyze_melody(_scale_run())
    assert analysis.range == 12
    assert analysis.max_interval == 2
    assert analysis.rhythmic_density == 1
    assert analysis.score == 70


def test_assess_melody_lists_issues():
    assessment = assess_melody(_scale_run(), 8, "neutral", False)
    assert assessment.issues == [
        "Melody is too monotonic - use intervals of 2-5 semitones more often",
        "Rhythm is too repetitive - vary note durations more",
    ]
    assert assessment.score == 60
    assert assessment.coverage_ratio == 1


def test_dark_mood_softens_penalties():
    assessment = assess_melody(_scale_run(), 8, "dark", False)
    assert assessment.score == 69


def test_assess_sparse_and_empty_melodies():
    sparse = assess_melody([Note(note="A4", start=0, duration=1)], 32, "neutral", False)
    assert "Melody has too many gaps - fill in more of the 32 beats" in sparse.issues
    assert "Too few notes - add more to create a fuller melody" in sparse.issues

    empty = assess_melody([], 32, "neutral", False)
    assert empty.score == 0
    assert empty.issues == ["No notes in melody"]


def test_clipped_notes_end_within_budget_without_grid():
    notes = validate_notes(
        [_raw("A4", 7.3333333, 1)],
        "A minor",
        ValidationOptions(total_beats=8, mode="strict", grid=0),
    )

    assert len(notes) == 1
    assert notes[0].end <= 8
    assert notes[0].duration == 0.666666
