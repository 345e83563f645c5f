from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Any

from melogen.logging_utils import bind_fingerprint, elapsed_ms, log_event, unbind_fingerprint
from melogen.models import LAYER_ORDER, Composition, GenerationRequest, LayerName
from melogen.services.admission import AdmissionController, CapacityExhaustedError, UsageSnapshot
from melogen.services.chord_library import find_local_progressions
from melogen.services.chord_selection import filter_suggestions, select_progressions
from melogen.services.composition_cache import CompositionCache, trim_composition_to_beats
from melogen.services.feedback import FeedbackStore, composition_signature
from melogen.services.few_shot import FewShotContext, FewShotLibrary
from melogen.services.generator import (
    CompositionGenerator,
    GenerationFailedError,
    GeneratorInput,
    HttpCompositionGenerator,
    UnconfiguredGenerator,
    parse_generator_payload,
)
from melogen.services.melody_validator import MelodyAssessment, ValidationOptions, assess_melody, validate_notes
from melogen.services.prompt_detection import (
    detect_instrument,
    detect_layers,
    detect_mood,
    extract_key,
    extract_keywords,
    extract_tempo,
)
from melogen.services.request_key import build_cache_key, normalize_tempo
from melogen.settings import Settings

logger = logging.getLogger(__name__)

# Strict-mode grid and minimum note count per layer.
STRICT_LAYER_PROFILES: dict[LayerName, tuple[float, int]] = {
    "melody": (1 / 32, 12),
    "chords": (1 / 16, 8),
    "bassline": (1 / 8, 8),
}
SECTION_SEPARATOR = " | "
DEFAULT_RETRY_FEEDBACK = "The melody needs more musical interest and variety."
REJECTED_RETRY_FEEDBACK = "Listeners rejected that exact composition before; write a different one."


@dataclass(frozen=True)
class GenerationResult:
    composition: Composition
    fingerprint: str
    cached: bool
    key: str

    @property
    def chord_progression(self) -> str | None:
        return self.composition.chord_progression


@dataclass(frozen=True)
class PromptAnalysis:
    key: str
    mood: str
    instrument: str | None
    keywords: tuple[str, ...]
    tempo: int | None
    layers: tuple[LayerName, ...]


def build_generator(settings: Settings) -> CompositionGenerator:
    if not settings.generator_url:
        log_event(logger, "generator_not_configured", level=logging.WARNING)
        return UnconfiguredGenerator()
    return HttpCompositionGenerator(
        url=settings.generator_url,
        model=settings.generator_model,
        api_key=settings.generator_api_key,
        timeout_seconds=settings.generator_timeout_seconds,
    )


class CompositionService:
    """Turns prompts into validated compositions.

    Owns the cache, the admission controller, the few-shot corpus and the
    feedback store. Identical requests within the cache TTL share one
    generation; fresh generations are gated by the usage budget and run
    inside an admission slot.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        generator: CompositionGenerator | None = None,
        cache: CompositionCache | None = None,
        admission: AdmissionController | None = None,
        library: FewShotLibrary | None = None,
        feedback: FeedbackStore | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.cache = cache or CompositionCache(self.settings.cache_ttl_seconds)
        self.admission = admission or AdmissionController(
            max_concurrent=self.settings.max_concurrent_generations,
            min_interval_seconds=self.settings.min_request_interval_seconds,
            usage_soft_limit=self.settings.usage_soft_limit_tokens,
            usage_window_seconds=self.settings.usage_window_seconds,
        )
        self.library = library or FewShotLibrary(self.settings.few_shot_dataset_path, self.settings.few_shot_examples)
        self.feedback = feedback or FeedbackStore(self.settings.feedback_log_path, self.library)
        self.generator = generator or build_generator(self.settings)
        self._rng = rng or random.Random()

    def generate(self, request: GenerationRequest) -> GenerationResult:
        fingerprint = build_cache_key(request)
        token = bind_fingerprint(fingerprint)
        try:
            key = extract_key(request.prompt)
            cached = self.cache.get(fingerprint, request.beat_budget)
            if cached is not None:
                return GenerationResult(composition=cached, fingerprint=fingerprint, cached=True, key=key)
            composition = self.cache.coalesce(
                fingerprint,
                lambda: self._generate_fresh(request),
                beat_budget=request.beat_budget,
            )
            return GenerationResult(composition=composition, fingerprint=fingerprint, cached=False, key=key)
        finally:
            unbind_fingerprint(token)

    def _generate_fresh(self, request: GenerationRequest) -> Composition:
        if not self.admission.check_usage_budget():
            snapshot = self.admission.usage_snapshot()
            raise CapacityExhaustedError(
                "Generation budget for this window is used up. Please try again later.",
                retry_after_seconds=snapshot.seconds_until_reset,
            )
        with self.admission.slot():
            return self._compose(request)

    def analyze_prompt(self, request: GenerationRequest) -> PromptAnalysis:
        prompt = request.prompt
        if request.layers:
            layers = tuple(request.requested_layers)
        else:
            layers = tuple(detect_layers(prompt) or LAYER_ORDER)
        return PromptAnalysis(
            key=extract_key(prompt),
            mood=detect_mood(prompt, request.intensify_darkness),
            instrument=detect_instrument(prompt),
            keywords=tuple(extract_keywords(prompt)),
            tempo=normalize_tempo(request.tempo or extract_tempo(prompt)),
            layers=layers,
        )

    def choose_progression(self, prompt: str, analysis: PromptAnalysis) -> str:
        sections = select_progressions(
            prompt,
            analysis.key,
            analysis.mood,
            suggestions=find_local_progressions(analysis.key),
            instrument=analysis.instrument,
            rng=self._rng,
        )
        return SECTION_SEPARATOR.join(sections)

    def _compose(self, request: GenerationRequest) -> Composition:
        started = time.perf_counter()
        analysis = self.analyze_prompt(request)
        chord_progression = request.chord_progression or self.choose_progression(request.prompt, analysis)
        few_shot = self.library.prompt_for(
            FewShotContext(
                instrument=analysis.instrument,
                key=analysis.key,
                mood=analysis.mood,
                prompt=request.prompt,
                tempo=analysis.tempo,
                keywords=analysis.keywords,
            )
        )
        rejected = self.feedback.load_negative_signatures()
        example = [note.model_dump() for note in request.example_melody] if request.example_melody else None
        log_event(
            logger,
            "melody_generation_started",
            key=analysis.key,
            mood=analysis.mood,
            instrument=analysis.instrument,
            layers=list(analysis.layers),
            few_shot_examples=few_shot.selected,
            strict=request.strict,
        )

        best: Composition | None = None
        best_score = -1.0
        retry_feedback: str | None = None
        last_error: GenerationFailedError | None = None
        attempts = self.settings.max_generation_attempts
        for attempt in range(1, attempts + 1):
            log_event(logger, "melody_generation_attempt", attempt=attempt, max_attempts=attempts)
            try:
                output = self.generator(
                    GeneratorInput(
                        prompt=request.prompt,
                        key=analysis.key,
                        chord_progression=chord_progression,
                        layers=analysis.layers,
                        measures=request.measures,
                        tempo=analysis.tempo,
                        mood=analysis.mood,
                        intensify_darkness=request.intensify_darkness,
                        example_melody=example,
                        few_shot=few_shot.prompt,
                        feedback=retry_feedback,
                        attempt=attempt,
                    )
                )
            except GenerationFailedError as exc:
                last_error = exc
                log_event(logger, "melody_generation_attempt_failed", level=logging.WARNING, attempt=attempt, reason=str(exc))
                continue

            self.admission.record_usage(output.tokens_used)
            try:
                raw_layers = parse_generator_payload(output.payload, analysis.layers)
            except GenerationFailedError as exc:
                last_error = exc
                log_event(logger, "melody_generation_attempt_failed", level=logging.WARNING, attempt=attempt, reason=str(exc))
                continue

            candidate = self._validate_layers(raw_layers, request, analysis, chord_progression)
            if candidate.is_empty():
                log_event(logger, "melody_generation_empty_output", level=logging.WARNING, attempt=attempt)
                continue
            if rejected and composition_signature(candidate) in rejected:
                log_event(logger, "melody_generation_rejected_signature", level=logging.WARNING, attempt=attempt)
                retry_feedback = REJECTED_RETRY_FEEDBACK
                continue

            assessment = self._assess(candidate, request, analysis)
            log_event(
                logger,
                "melody_generation_scored",
                attempt=attempt,
                score=assessment.score,
                note_count=assessment.note_count,
                coverage=round(assessment.coverage_ratio, 2),
                issues=assessment.issues,
            )
            if assessment.score > best_score:
                best, best_score = candidate, assessment.score
            if assessment.score >= self.settings.quality_threshold:
                break
            retry_feedback = ". ".join(assessment.issues) + "." if assessment.issues else DEFAULT_RETRY_FEEDBACK

        if best is None:
            log_event(logger, "melody_generation_exhausted", level=logging.ERROR, attempts=attempts)
            raise GenerationFailedError(
                "The generator did not return a usable composition after several attempts."
            ) from last_error

        log_event(
            logger,
            "melody_generation_completed",
            score=best_score,
            duration_ms=elapsed_ms(started),
        )
        return best

    def _validate_layers(
        self,
        raw_layers: dict[LayerName, list[Any]],
        request: GenerationRequest,
        analysis: PromptAnalysis,
        chord_progression: str,
    ) -> Composition:
        budget = request.beat_budget
        layers: dict[LayerName, list] = {}
        for name in LAYER_ORDER:
            if name not in analysis.layers:
                layers[name] = []
                continue
            if request.strict:
                grid, minimum = STRICT_LAYER_PROFILES[name]
                options = ValidationOptions(
                    total_beats=budget,
                    mode="strict",
                    grid=grid,
                    ensure_min_notes=minimum,
                    rng=self._rng,
                )
            else:
                options = ValidationOptions(total_beats=budget, grid=request.grid_resolution, rng=self._rng)
            layers[name] = validate_notes(raw_layers.get(name), analysis.key, options)

        composition = Composition(**layers, tempo=analysis.tempo, chord_progression=chord_progression)
        return trim_composition_to_beats(composition, budget)

    def _assess(self, composition: Composition, request: GenerationRequest, analysis: PromptAnalysis) -> MelodyAssessment:
        # Layer sets without a melody have nothing to score; accept the first usable one.
        if "melody" not in analysis.layers:
            return MelodyAssessment(
                score=100.0,
                issues=[],
                avg_interval=0.0,
                range=0,
                max_interval=0,
                note_count=sum(len(notes) for notes in composition.layers().values()),
                rhythmic_variety=0.0,
                coverage_ratio=1.0,
            )
        return assess_melody(composition.melody, request.beat_budget, analysis.mood, request.intensify_darkness)

    def suggest_chords(self, key: str, prompt: str | None = None) -> list[str]:
        local = find_local_progressions(key)
        if not prompt:
            if local:
                return local
            return select_progressions("", key, "neutral", rng=self._rng)
        mood = detect_mood(prompt)
        instrument = detect_instrument(prompt)
        if local:
            return filter_suggestions(local, mood, prompt, instrument)
        return select_progressions(prompt, key, mood, instrument=instrument, rng=self._rng)

    def close(self) -> None:
        close = getattr(self.generator, "close", None)
        if callable(close):
            close()
            log_event(logger, "generator_closed")

    def usage(self) -> UsageSnapshot:
        return self.admission.usage_snapshot()

    def health(self) -> dict[str, Any]:
        usage = self.admission.usage_snapshot()
        return {
            "status": "ok",
            "admission": {"active": self.admission.active, "queued": self.admission.queued},
            "cache": self.cache.stats(),
            "usage": {"window_tokens": usage.window_tokens, "remaining": usage.remaining},
        }
