import hashlib
import random

from melogen.services.chord_library import find_local_progressions, list_available_progression_keys
from melogen.services.chord_selection import (
    DARK_MINOR_PROGRESSIONS,
    DEFAULT_MAJOR_PROGRESSIONS,
    DEFAULT_MINOR_PROGRESSIONS,
    FALLBACK_PROGRESSION,
    base_index,
    builtin_pool,
    filter_suggestions,
    is_dark_progression,
    pick_progression,
    select_progressions,
)


class NoJitter(random.Random):
    def randrange(self, *args, **kwargs):
        return 0


def test_base_index_is_stable_hash_of_seed_and_key():
    digest = hashlib.sha256("dark loop|sectionA|A minor".encode("utf-8")).hexdigest()
    assert base_index(7, "dark loop|sectionA", "A minor") == int(digest[:8], 16) % 7


def test_pick_without_jitter_lands_on_base_index():
    pool = list(DEFAULT_MAJOR_PROGRESSIONS)
    expected = pool[base_index(len(pool), "seed", "C major")]
    assert pick_progression(pool, "seed", "C major", NoJitter()) == expected
    assert pick_progression([], "seed", "C major") == FALLBACK_PROGRESSION


def test_jitter_stays_within_three_slots():
    pool = list(DEFAULT_MAJOR_PROGRESSIONS)
    start = base_index(len(pool), "seed", "C major")
    allowed = {pool[(start + offset) % len(pool)] for offset in range(3)}
    rng = random.Random(7)
    for _ in range(30):
        assert pick_progression(pool, "seed", "C major", rng) in allowed


def test_three_distinct_sections_from_large_pool():
    chosen = select_progressions("moody piano", "C major", "neutral", rng=random.Random(1))
    assert len(chosen) == 3
    assert len(set(chosen)) == 3
    assert set(chosen) <= set(DEFAULT_MAJOR_PROGRESSIONS)


def test_small_pool_yields_single_progression():
    chosen = select_progressions("loop", "A minor", "neutral", suggestions=["Am-G", "Am-F"], rng=NoJitter())
    assert len(chosen) == 1
    assert chosen[0] in {"Am-G", "Am-F"}


def test_builtin_pool_by_key_and_mood():
    assert builtin_pool("A minor", "bright") == DARK_MINOR_PROGRESSIONS
    assert builtin_pool("C major", "dark") == DEFAULT_MINOR_PROGRESSIONS
    assert builtin_pool("C major", "neutral") == DEFAULT_MAJOR_PROGRESSIONS


def test_dark_marker_detection():
    assert is_dark_progression("Am-F-E7-Am")
    assert is_dark_progression("C-G-Dsus4")
    assert not is_dark_progression("C-G-F")


def test_mood_filter_keeps_matching_progressions():
    suggestions = ["C-G-F-C", "Am-F-E7-Am"]
    assert filter_suggestions(suggestions, "dark", "loop") == ["Am-F-E7-Am"]
    assert filter_suggestions(suggestions, "bright", "loop") == ["C-G-F-C"]
    assert filter_suggestions(suggestions, "neutral", "loop") == suggestions


def test_filter_that_would_empty_pool_is_skipped():
    assert filter_suggestions(["Am-F-E7-Am"], "bright", "loop") == ["Am-F-E7-Am"]
    assert filter_suggestions(["C-G-Am-F-Dm"], "neutral", "trap beat") == ["C-G-Am-F-Dm"]


def test_style_filters():
    suggestions = ["C-G-F", "C-G-Am-F-Dm", "C-C-G-G"]
    assert filter_suggestions(suggestions, "neutral", "trap beat") == ["C-G-F"]
    assert filter_suggestions(suggestions, "neutral", "complex jazz") == ["C-G-Am-F-Dm"]
    assert filter_suggestions(suggestions, "neutral", "minimal loop") == ["C-G-F", "C-C-G-G"]
    assert filter_suggestions(suggestions, "neutral", "strum", instrument="guitar") == ["C-G-F", "C-C-G-G"]


def test_local_progressions_for_key_aliases():
    a_minor = find_local_progressions("A minor")
    assert a_minor[:3] == ["Am-Dm-E7-Am", "Am-Em", "Am-Bdim-E7"]
    assert "Am-Dm-Em-Am" in a_minor
    assert find_local_progressions("Am") == a_minor
    assert find_local_progressions("F#-minor")[0] == "F#m-Bm-C#7-F#m"
    assert find_local_progressions("H lydian") == []
    assert len(list_available_progression_keys()) == 22


def test_major_templates_expand_from_scale_degrees():
    c_major = find_local_progressions("C major")
    assert c_major[:3] == ["C-G-Am-F", "C-Am-F-G", "C-Em"]
    assert c_major[3:] == ["C-Am", "C-G-F", "Dm-G-C", "C-F"]
