from __future__ import annotations

import re

BASE_PROGRESSIONS: dict[str, tuple[str, ...]] = {
    "c major": ("C-G-Am-F", "C-Am-F-G", "C-Em"),
    "a minor": ("Am-Dm-E7-Am", "Am-Em", "Am-Bdim-E7"),
    "g major": ("G-D-Em-C", "G-Em-C-D", "G-Bm"),
    "e minor": ("Em-Am-B7-Em", "Em-Bm", "Em-F#dim-B7"),
    "d major": ("D-A-Bm-G", "D-Bm-G-A", "D-F#m"),
    "b minor": ("Bm-Em-F#7-Bm", "Bm-F#m", "Bm-C#dim-F#7"),
    "a major": ("A-D-E-A", "A-F#m-D-E", "A-C#m"),
    "f# minor": ("F#m-Bm-C#7-F#m", "F#m-C#m", "F#m-G#dim-C#7"),
    "e major": ("E-B-C#m-A", "E-A-E-B", "E-G#m"),
    "c# minor": ("C#m-F#m-G#7-C#m", "C#m-G#m", "C#m-D#dim-G#7"),
    "f major": ("F-C-Dm-Bb", "F-Bb-C-F", "F-Am"),
    "d minor": ("Dm-Gm-A7-Dm", "Dm-Am", "Dm-Edim-A7"),
    "bb major": ("Bb-F-Gm-Eb", "Bb-Eb-Gm-F", "Bb-Dm"),
    "g minor": ("Gm-Cm-D7-Gm", "Gm-Dm", "Gm-Adim-D7"),
    "eb major": ("Eb-Bb-Cm-Ab", "Eb-Ab-Bb-Eb", "Eb-Gm"),
    "c minor": ("Cm-Fm-G7-Cm", "Cm-Gm", "Cm-Ddim-G7"),
    "ab major": ("Ab-Eb-Fm-Db", "Ab-Db-Eb-Ab", "Ab-Cm"),
    "f minor": ("Fm-Bbm-C7-Fm", "Fm-Cm", "Fm-Gdim-C7"),
    "db major": ("Db-Ab-Bbm-Gb", "Db-Gb-Ab-Db", "Db-Fm"),
    "bb minor": ("Bbm-Ebm-F7-Bbm", "Bbm-Fm", "Bbm-Cdim-F7"),
    "gb major": ("Gb-Db-Ebm-Cb", "Gb-Cb-Db-Gb", "Gb-Bbm"),
    "eb minor": ("Ebm-Abm-Bb7-Ebm", "Ebm-Bbm", "Ebm-Fdim-Bb7"),
}

KEY_SYNONYMS: dict[str, tuple[str, ...]] = {
    "c major": ("cmaj", "c ionian", "c"),
    "a minor": ("am", "a aeolian"),
    "g major": ("gmaj", "g"),
    "e minor": ("em",),
    "d major": ("dmaj", "d"),
    "b minor": ("bm",),
    "a major": ("amaj", "a"),
    "f# minor": ("f#m",),
    "e major": ("emaj", "e"),
    "c# minor": ("c#m",),
    "f major": ("fmaj", "f"),
    "d minor": ("dm",),
    "bb major": ("bbmaj", "bb"),
    "g minor": ("gm",),
    "eb major": ("ebmaj", "eb"),
    "c minor": ("cm",),
    "ab major": ("abmaj", "ab"),
    "f minor": ("fm",),
    "db major": ("dbmaj", "db"),
    "bb minor": ("bbm",),
    "gb major": ("gbmaj", "gb"),
    "eb minor": ("ebm",),
}

RELATIVE_KEYS: dict[str, str] = {}
for _major, _minor in (
    ("c major", "a minor"),
    ("g major", "e minor"),
    ("d major", "b minor"),
    ("a major", "f# minor"),
    ("e major", "c# minor"),
    ("f major", "d minor"),
    ("bb major", "g minor"),
    ("eb major", "c minor"),
    ("ab major", "f minor"),
    ("db major", "bb minor"),
    ("gb major", "eb minor"),
):
    RELATIVE_KEYS[_major] = _minor
    RELATIVE_KEYS[_minor] = _major

# Diatonic triads by scale degree.
MAJOR_KEY_CHORDS: dict[str, tuple[str, ...]] = {
    "c major": ("C", "Dm", "Em", "F", "G", "Am", "Bdim"),
    "g major": ("G", "Am", "Bm", "C", "D", "Em", "F#dim"),
    "d major": ("D", "Em", "F#m", "G", "A", "Bm", "C#dim"),
    "a major": ("A", "Bm", "C#m", "D", "E", "F#m", "G#dim"),
    "e major": ("E", "F#m", "G#m", "A", "B", "C#m", "D#dim"),
    "f major": ("F", "Gm", "Am", "Bb", "C", "Dm", "Edim"),
    "bb major": ("Bb", "Cm", "Dm", "Eb", "F", "Gm", "Adim"),
    "eb major": ("Eb", "Fm", "Gm", "Ab", "Bb", "Cm", "Ddim"),
    "ab major": ("Ab", "Bbm", "Cm", "Db", "Eb", "Fm", "Gdim"),
    "db major": ("Db", "Ebm", "Fm", "Gb", "Ab", "Bbm", "Cdim"),
    "gb major": ("Gb", "Abm", "Bbm", "Cb", "Db", "Ebm", "Fdim"),
}
MINOR_KEY_CHORDS: dict[str, tuple[str, ...]] = {
    "a minor": ("Am", "Bdim", "C", "Dm", "Em", "F", "G"),
    "e minor": ("Em", "F#dim", "G", "Am", "Bm", "C", "D"),
    "b minor": ("Bm", "C#dim", "D", "Em", "F#m", "G", "A"),
    "f# minor": ("F#m", "G#dim", "A", "Bm", "C#m", "D", "E"),
    "c# minor": ("C#m", "D#dim", "E", "F#m", "G#m", "A", "B"),
    "d minor": ("Dm", "Edim", "F", "Gm", "Am", "Bb", "C"),
    "g minor": ("Gm", "Adim", "Bb", "Cm", "Dm", "Eb", "F"),
    "c minor": ("Cm", "Ddim", "Eb", "Fm", "Gm", "Ab", "Bb"),
    "f minor": ("Fm", "Gdim", "Ab", "Bbm", "Cm", "Db", "Eb"),
    "bb minor": ("Bbm", "Cdim", "Db", "Ebm", "Fm", "Gb", "Ab"),
    "eb minor": ("Ebm", "Fdim", "Gb", "Abm", "Bbm", "Cb", "Db"),
}

MAJOR_ROMAN_TEMPLATES = ("I-vi", "I-V-IV", "ii-V-I", "I-IV")
MINOR_ROMAN_TEMPLATES = ("i-iv-V-i", "i-v", "i-II-V", "i-iv", "i-v-iv-V")

ROMAN_TO_DEGREE = {"I": 1, "II": 2, "III": 3, "IV": 4, "V": 5, "VI": 6, "VII": 7}


def normalize_key_name(key: str) -> str:
    return re.sub(r"\s+", " ", key.strip().lower().replace("-", " "))


def chord_for_roman(key: str, token: str) -> str | None:
    roman = re.sub(r"[^ivIV]", "", token).upper()
    degree = ROMAN_TO_DEGREE.get(roman)
    if degree is None:
        return None
    chords = MINOR_KEY_CHORDS.get(key) if "minor" in key else MAJOR_KEY_CHORDS.get(key)
    if not chords:
        return None
    return chords[degree - 1]


def expand_template(key: str, template: str) -> str | None:
    tokens = [token.strip() for token in template.replace("→", "-").split("-") if token.strip()]
    if not tokens:
        return None
    chords = []
    for token in tokens:
        chord = chord_for_roman(key, token)
        if chord is None:
            return None
        chords.append(chord)
    return "-".join(chords)


def _build_local_progressions() -> dict[str, tuple[str, ...]]:
    library: dict[str, tuple[str, ...]] = {}
    for key, base in BASE_PROGRESSIONS.items():
        templates = MINOR_ROMAN_TEMPLATES if "minor" in key else MAJOR_ROMAN_TEMPLATES
        merged = [progression.strip() for progression in base if progression.strip()]
        for template in templates:
            expanded = expand_template(key, template)
            if expanded and expanded not in merged:
                merged.append(expanded)
        library[key] = tuple(merged)
    return library


LOCAL_PROGRESSIONS = _build_local_progressions()

_SYNONYM_LOOKUP: dict[str, str] = {}
for _canonical, _synonyms in KEY_SYNONYMS.items():
    _SYNONYM_LOOKUP[_canonical] = _canonical
    for _synonym in _synonyms:
        _SYNONYM_LOOKUP[_synonym] = _canonical


def find_local_progressions(key: str) -> list[str]:
    """Progressions for ``key``, falling back to its relative key; ``[]`` when unknown."""
    canonical = _SYNONYM_LOOKUP.get(normalize_key_name(key))
    if canonical is None:
        return []
    if canonical in LOCAL_PROGRESSIONS:
        return list(LOCAL_PROGRESSIONS[canonical])
    relative = RELATIVE_KEYS.get(canonical)
    if relative and relative in LOCAL_PROGRESSIONS:
        return list(LOCAL_PROGRESSIONS[relative])
    return []


def list_available_progression_keys() -> list[str]:
    return list(LOCAL_PROGRESSIONS)
