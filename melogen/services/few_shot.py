from __future__ import annotations

import json
import logging
import math
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Any

from melogen.logging_utils import log_event
from melogen.services.prompt_detection import (
    Instrument,
    Mood,
    detect_instrument,
    detect_mood,
    mentions_arpeggio,
    normalize_key_label,
    parse_key_info,
)

logger = logging.getLogger(__name__)

# Few-shot guidance ships disabled; zero is a deliberate setting.
DEFAULT_MAX_EXAMPLES = 0
MAX_CORPUS_ENTRIES = 200
SNIPPET_NOTES = 4
INDEX_TIE_BREAK = 0.0001
MAX_CACHED_PROMPTS = 64


def _as_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)) and math.isfinite(value):
        return float(value)
    if isinstance(value, str):
        try:
            parsed = float(value)
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


@dataclass(frozen=True)
class TrainingExample:
    prompt: str | None = None
    key: str | None = None
    tempo: float | None = None
    measures: int | None = None
    chord_progression: str | None = None
    melody: list[dict[str, Any]] = field(default_factory=list)
    source: str | None = None
    instrument: str | None = None
    style: str | None = None
    signature: str | None = None

    @classmethod
    def from_dict(cls, data: Any) -> TrainingExample | None:
        if not isinstance(data, dict):
            return None
        input_ = data.get("input") if isinstance(data.get("input"), dict) else {}
        output = data.get("output") if isinstance(data.get("output"), dict) else {}
        metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
        metrics = metadata.get("metrics") if isinstance(metadata.get("metrics"), dict) else {}

        tempo = _as_number(metadata.get("tempo")) or _as_number(input_.get("tempo")) or _as_number(metrics.get("tempo"))
        measures = _as_number(input_.get("measures"))
        melody = output.get("melody")
        return cls(
            prompt=_as_str(input_.get("prompt")),
            key=_as_str(input_.get("key")),
            tempo=tempo,
            measures=int(measures) if measures else None,
            chord_progression=_as_str(input_.get("chordProgression")),
            melody=[note for note in melody if isinstance(note, dict)] if isinstance(melody, list) else [],
            source=_as_str(metadata.get("source")),
            instrument=_as_str(metadata.get("instrument")),
            style=_as_str(metadata.get("style")),
            signature=_as_str(metadata.get("signature")),
        )


@dataclass(frozen=True)
class FewShotContext:
    instrument: Instrument | None = None
    key: str | None = None
    mood: Mood | None = None
    prompt: str | None = None
    tempo: float | None = None
    keywords: tuple[str, ...] = ()

    def cache_key(self) -> str:
        return json.dumps(
            {
                "instrument": self.instrument or "any",
                "key": normalize_key_label(self.key) or "any",
                "mood": self.mood or "any",
                "hasArp": mentions_arpeggio(self.prompt),
                "tempo": self.tempo,
                "keywords": sorted(self.keywords),
            },
            sort_keys=True,
        )


@dataclass(frozen=True)
class ScoredExample:
    example: TrainingExample
    score: float
    tempo_delta: float


@dataclass(frozen=True)
class FewShotResult:
    prompt: str | None
    total: int
    examples: list[TrainingExample]

    @property
    def selected(self) -> int:
        return len(self.examples)


def example_matches_instrument(example: TrainingExample, instrument: Instrument | None) -> bool:
    if not instrument:
        return True
    if detect_instrument(example.prompt or "") == instrument:
        return True
    if instrument in (example.instrument or "").lower():
        return True
    return instrument in (example.source or "").lower()


def _matches_keywords(example: TrainingExample, keywords: tuple[str, ...]) -> bool:
    haystacks = [value.lower() for value in (example.source, example.prompt, example.instrument, example.style) if value]
    if not haystacks:
        return False
    return any(keyword in haystack for keyword in keywords for haystack in haystacks)


def score_example(example: TrainingExample, context: FewShotContext, index: int) -> ScoredExample:
    score = 0.0
    if context.instrument and example_matches_instrument(example, context.instrument):
        score += 5

    target_key = parse_key_info(context.key)
    example_key = parse_key_info(example.key or example.source)
    if target_key and example_key:
        if target_key == example_key:
            score += 4
        elif target_key.tonic == example_key.tonic:
            score += 3
        elif target_key.mode == example_key.mode:
            score += 1

    if context.mood and detect_mood(example.prompt or "") == context.mood:
        score += 2

    tempo_delta = math.inf
    if example.tempo and context.tempo:
        tempo_delta = abs(example.tempo - context.tempo)
        score += max(0.0, 3 - tempo_delta / 20)

    if mentions_arpeggio(context.prompt) and mentions_arpeggio(example.prompt):
        score += 1.5

    score -= index * INDEX_TIE_BREAK
    return ScoredExample(example=example, score=score, tempo_delta=tempo_delta)


def select_examples(
    corpus: list[TrainingExample],
    context: FewShotContext,
    max_examples: int,
) -> list[TrainingExample]:
    if max_examples <= 0 or not corpus:
        return []

    pool = [example for example in corpus if example_matches_instrument(example, context.instrument)] or list(corpus)
    if context.keywords:
        pool = [example for example in pool if _matches_keywords(example, context.keywords)] or pool

    scored = [score_example(example, context, index) for index, example in enumerate(pool)]
    if any(item.score > 0 for item in scored):
        scored = sorted(scored, key=lambda item: (-item.score, item.tempo_delta))
    return [item.example for item in scored[:max_examples]]


def render_examples_block(examples: list[TrainingExample]) -> str | None:
    if not examples:
        return None
    sections = []
    for example in examples:
        prompt = example.prompt or example.source or "Unknown prompt"
        snippet = json.dumps(example.melody[:SNIPPET_NOTES], separators=(",", ":"))
        sections.append(f"Prompt: {prompt}\nMelody snippet: {snippet}")
    return "Here are examples of high-quality melodies:\n\n" + "\n\n".join(sections)


class FewShotLibrary:
    """File-backed corpus of rated examples, reloaded when the file changes."""

    def __init__(self, path: Path, max_examples: int = DEFAULT_MAX_EXAMPLES) -> None:
        self._path = Path(path)
        self._max_examples = max_examples
        self._lock = Lock()
        self._examples: list[TrainingExample] = []
        self._mtime_ns: int | None = None
        self._prompt_cache: OrderedDict[str, str | None] = OrderedDict()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def max_examples(self) -> int:
        return self._max_examples

    def _reset_locked(self) -> None:
        self._examples = []
        self._mtime_ns = None
        self._prompt_cache.clear()

    def _load_locked(self) -> list[TrainingExample]:
        try:
            mtime_ns = self._path.stat().st_mtime_ns
        except FileNotFoundError:
            self._reset_locked()
            return self._examples
        except OSError as exc:
            log_event(logger, "few_shot_dataset_load_failed", level=logging.WARNING, path=str(self._path), error=str(exc))
            self._reset_locked()
            return self._examples

        if self._mtime_ns == mtime_ns:
            return self._examples

        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            log_event(logger, "few_shot_dataset_load_failed", level=logging.WARNING, path=str(self._path), error=str(exc))
            self._reset_locked()
            return self._examples

        self._prompt_cache.clear()
        self._mtime_ns = mtime_ns
        if not isinstance(data, list) or not data:
            log_event(logger, "few_shot_dataset_empty", level=logging.WARNING, path=str(self._path))
            self._examples = []
            return self._examples

        examples = []
        for item in data:
            example = TrainingExample.from_dict(item)
            if example is not None:
                examples.append(example)
        self._examples = examples
        log_event(logger, "few_shot_dataset_loaded", path=str(self._path), examples=len(examples), skipped=len(data) - len(examples))
        return self._examples

    def load(self) -> list[TrainingExample]:
        with self._lock:
            return list(self._load_locked())

    def prompt_for(self, context: FewShotContext) -> FewShotResult:
        with self._lock:
            corpus = self._load_locked()
            if not corpus:
                return FewShotResult(prompt=None, total=0, examples=[])
            examples = select_examples(corpus, context, self._max_examples)
            cache_key = context.cache_key()
            if cache_key in self._prompt_cache:
                self._prompt_cache.move_to_end(cache_key)
            else:
                self._prompt_cache[cache_key] = render_examples_block(examples)
                while len(self._prompt_cache) > MAX_CACHED_PROMPTS:
                    self._prompt_cache.popitem(last=False)
            prompt = self._prompt_cache[cache_key]
        log_event(
            logger,
            "few_shot_examples_selected",
            level=logging.DEBUG,
            total=len(corpus),
            selected=len(examples),
            instrument=context.instrument,
        )
        return FewShotResult(prompt=prompt, total=len(corpus), examples=examples)

    def add_example(self, entry: dict[str, Any]) -> bool:
        """Prepend ``entry`` to the corpus file unless its signature is already there.

        Raises ``OSError`` when the file cannot be written.
        """
        signature = (entry.get("metadata") or {}).get("signature")
        with self._lock:
            dataset = self._read_raw_locked()
            for existing in dataset:
                metadata = existing.get("metadata") if isinstance(existing, dict) else None
                if isinstance(metadata, dict) and metadata.get("signature"):
                    if metadata["signature"] == signature:
                        return False
                elif isinstance(existing, dict) and existing.get("output") == entry.get("output"):
                    return False
            dataset.insert(0, entry)
            del dataset[MAX_CORPUS_ENTRIES:]
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(json.dumps(dataset, indent=2), encoding="utf-8")
            self._reset_locked()
        log_event(logger, "few_shot_example_added", path=str(self._path), examples=len(dataset))
        return True

    def _read_raw_locked(self) -> list[Any]:
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return []
        except (OSError, ValueError) as exc:
            log_event(logger, "few_shot_dataset_load_failed", level=logging.WARNING, path=str(self._path), error=str(exc))
            return []
        return data if isinstance(data, list) else []
