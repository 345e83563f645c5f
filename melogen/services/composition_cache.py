from __future__ import annotations

import logging
import time
from concurrent.futures import Future
from dataclasses import dataclass
from threading import Lock
from typing import Callable

from melogen.logging_utils import log_event, short_fingerprint
from melogen.models import Composition, Note, clip_duration

logger = logging.getLogger(__name__)

COMPOSITION_CACHE_TTL_SECONDS = 30 * 60
BEAT_FIT_TOLERANCE = 0.01


@dataclass(frozen=True)
class CacheEntry:
    composition: Composition
    created_at: float


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    stale_evictions: int = 0
    expired: int = 0
    coalesced: int = 0
    generations: int = 0


def composition_fits_within_beats(composition: Composition, total_beats: float, tolerance: float = BEAT_FIT_TOLERANCE) -> bool:
    limit = total_beats + tolerance
    for name, notes in composition.layers().items():
        for note in notes:
            if note.start + note.duration > limit:
                log_event(
                    logger,
                    "cache_note_exceeds_beat_budget",
                    level=logging.DEBUG,
                    layer=name,
                    start=note.start,
                    duration=note.duration,
                    limit=limit,
                )
                return False
    return True


def _trim_layer(notes: list[Note], total_beats: float) -> list[Note]:
    trimmed: list[Note] = []
    for note in notes:
        if note.start >= total_beats:
            continue
        if note.start + note.duration > total_beats:
            note = note.model_copy(update={"duration": clip_duration(note.start, note.duration, total_beats)})
        if note.duration > 0:
            trimmed.append(note)
    return trimmed


def trim_composition_to_beats(composition: Composition, total_beats: float) -> Composition:
    return composition.model_copy(
        update={name: _trim_layer(notes, total_beats) for name, notes in composition.layers().items()}
    )


class CompositionCache:
    """TTL-bound fingerprint -> composition store with single-flight generation."""

    def __init__(
        self,
        ttl_seconds: float = COMPOSITION_CACHE_TTL_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
        tolerance: float = BEAT_FIT_TOLERANCE,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._tolerance = tolerance
        self._entries: dict[str, CacheEntry] = {}
        self._in_flight: dict[str, Future[Composition]] = {}
        self._lock = Lock()
        self._stats = CacheStats()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _lookup_locked(self, fingerprint: str, beat_budget: float) -> Composition | None:
        entry = self._entries.get(fingerprint)
        if entry is None:
            self._stats.misses += 1
            return None
        age = self._clock() - entry.created_at
        if age >= self._ttl:
            del self._entries[fingerprint]
            self._stats.expired += 1
            self._stats.misses += 1
            log_event(logger, "cache_expired", cache_key=short_fingerprint(fingerprint), age_seconds=round(age, 1))
            return None
        if not composition_fits_within_beats(entry.composition, beat_budget, self._tolerance):
            del self._entries[fingerprint]
            self._stats.stale_evictions += 1
            self._stats.misses += 1
            log_event(logger, "cache_stale_evicted", cache_key=short_fingerprint(fingerprint), beat_budget=beat_budget)
            return None
        self._stats.hits += 1
        log_event(
            logger,
            "cache_hit",
            cache_key=short_fingerprint(fingerprint),
            age_seconds=round(age, 1),
            melody_notes=len(entry.composition.melody),
            chord_notes=len(entry.composition.chords),
            bass_notes=len(entry.composition.bassline),
        )
        return entry.composition

    def _purge_expired_locked(self, now: float) -> int:
        expired = [fp for fp, entry in self._entries.items() if now - entry.created_at >= self._ttl]
        for fp in expired:
            del self._entries[fp]
        self._stats.expired += len(expired)
        return len(expired)

    def get(self, fingerprint: str, beat_budget: float) -> Composition | None:
        with self._lock:
            composition = self._lookup_locked(fingerprint, beat_budget)
        if composition is None:
            log_event(logger, "cache_miss", level=logging.DEBUG, cache_key=short_fingerprint(fingerprint))
        return composition

    def set(self, fingerprint: str, composition: Composition) -> None:
        with self._lock:
            now = self._clock()
            purged = self._purge_expired_locked(now)
            self._entries[fingerprint] = CacheEntry(composition=composition, created_at=now)
        log_event(logger, "cache_store", cache_key=short_fingerprint(fingerprint), purged=purged)

    def invalidate(self, fingerprint: str) -> bool:
        with self._lock:
            removed = self._entries.pop(fingerprint, None) is not None
        if removed:
            log_event(logger, "cache_invalidated", cache_key=short_fingerprint(fingerprint))
        return removed

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def in_flight(self, fingerprint: str) -> bool:
        with self._lock:
            return fingerprint in self._in_flight

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "entries": len(self._entries),
                "in_flight": len(self._in_flight),
                "hits": self._stats.hits,
                "misses": self._stats.misses,
                "stale_evictions": self._stats.stale_evictions,
                "expired": self._stats.expired,
                "coalesced": self._stats.coalesced,
                "generations": self._stats.generations,
            }

    def coalesce(
        self,
        fingerprint: str,
        factory: Callable[[], Composition],
        *,
        beat_budget: float | None = None,
        timeout: float | None = None,
    ) -> Composition:
        """Run ``factory`` at most once per fingerprint across concurrent callers.

        Callers arriving while a generation is in flight wait for it and get
        the same composition, or the same exception. Success is written
        through to the cache; failures are not cached. When ``beat_budget``
        is given, a fresh cache entry that fits is returned without running
        ``factory``, which closes the gap between a miss and a just-settled
        generation.
        """
        with self._lock:
            if beat_budget is not None and fingerprint in self._entries:
                cached = self._lookup_locked(fingerprint, beat_budget)
                if cached is not None:
                    return cached
            future = self._in_flight.get(fingerprint)
            leader = future is None
            if future is None:
                future = Future()
                self._in_flight[fingerprint] = future
                self._stats.generations += 1
            else:
                self._stats.coalesced += 1

        if not leader:
            log_event(logger, "coalesce_joined", cache_key=short_fingerprint(fingerprint))
            return future.result(timeout=timeout)

        log_event(logger, "coalesce_started", cache_key=short_fingerprint(fingerprint))
        try:
            composition = factory()
        except BaseException as exc:
            with self._lock:
                self._in_flight.pop(fingerprint, None)
            future.set_exception(exc)
            log_event(
                logger,
                "coalesce_failed",
                level=logging.WARNING,
                cache_key=short_fingerprint(fingerprint),
                error_type=type(exc).__name__,
            )
            raise

        with self._lock:
            now = self._clock()
            self._purge_expired_locked(now)
            self._entries[fingerprint] = CacheEntry(composition=composition, created_at=now)
            self._in_flight.pop(fingerprint, None)
        future.set_result(composition)
        log_event(logger, "coalesce_completed", cache_key=short_fingerprint(fingerprint))
        return composition
