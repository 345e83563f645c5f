from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any

from melogen.logging_utils import log_event
from melogen.models import Composition, FeedbackRequest
from melogen.services.few_shot import FewShotLibrary

logger = logging.getLogger(__name__)

MAX_FEEDBACK_ENTRIES = 500
DEFAULT_REASON = "quality"
DEFAULT_MEASURES = 8


def _layers_payload(composition: Composition) -> dict[str, Any]:
    return {name: [note.model_dump() for note in notes] for name, notes in composition.layers().items()}


def composition_signature(composition: Composition) -> str:
    payload = json.dumps(_layers_payload(composition), sort_keys=True, separators=(",", ":"))
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class FeedbackStore:
    """Persists ratings: thumbs-down into the rejection log, thumbs-up into the few-shot corpus."""

    def __init__(self, feedback_path: Path, library: FewShotLibrary) -> None:
        self._path = Path(feedback_path)
        self._library = library
        self._lock = Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _read_log_locked(self) -> list[Any]:
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return []
        except (OSError, ValueError) as exc:
            log_event(logger, "feedback_log_read_failed", level=logging.WARNING, path=str(self._path), error=str(exc))
            return []
        if not isinstance(data, list):
            log_event(logger, "feedback_log_malformed", level=logging.WARNING, path=str(self._path))
            return []
        return data

    def load_negative_signatures(self) -> set[str]:
        with self._lock:
            entries = self._read_log_locked()
        return {
            entry["signature"]
            for entry in entries
            if isinstance(entry, dict) and isinstance(entry.get("signature"), str) and entry["signature"]
        }

    def is_rejected(self, composition: Composition, signatures: set[str] | None = None) -> bool:
        if signatures is None:
            signatures = self.load_negative_signatures()
        return bool(signatures) and composition_signature(composition) in signatures

    def submit(self, feedback: FeedbackRequest) -> str:
        signature = composition_signature(feedback.composition)
        if feedback.rating == "up":
            self._record_positive(feedback, signature)
        else:
            self._record_negative(feedback, signature)
        return signature

    def _record_positive(self, feedback: FeedbackRequest, signature: str) -> None:
        entry = {
            "input": {
                "prompt": feedback.prompt,
                "key": feedback.key,
                "measures": feedback.measures or DEFAULT_MEASURES,
                "chordProgression": feedback.chord_progression or "Unknown",
                "tempo": feedback.tempo,
                "gridResolution": feedback.grid_resolution,
                "intensifyDarkness": feedback.intensify_darkness,
            },
            "output": _layers_payload(feedback.composition),
            "metadata": {
                "signature": signature,
                "rating": "up",
                "timestamp": _utc_timestamp(),
                "source": "user-feedback",
                "aiGenerated": True,
            },
        }
        try:
            added = self._library.add_example(entry)
        except OSError as exc:
            log_event(logger, "feedback_write_failed", level=logging.WARNING, path=str(self._library.path), error=str(exc))
            return
        log_event(logger, "feedback_positive_recorded", signature=signature[:12], added=added)

    def _record_negative(self, feedback: FeedbackRequest, signature: str) -> None:
        entry = {
            "prompt": feedback.prompt,
            "key": feedback.key,
            "measures": feedback.measures,
            "tempo": feedback.tempo,
            "gridResolution": feedback.grid_resolution,
            "chordProgression": feedback.chord_progression,
            "intensifyDarkness": feedback.intensify_darkness,
            "reason": feedback.reason or DEFAULT_REASON,
            "notes": (feedback.notes or "").strip() or None,
            "signature": signature,
            "timestamp": _utc_timestamp(),
        }
        with self._lock:
            entries = self._read_log_locked()
            entries.insert(0, {k: v for k, v in entry.items() if v is not None})
            del entries[MAX_FEEDBACK_ENTRIES:]
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                self._path.write_text(json.dumps(entries, indent=2), encoding="utf-8")
            except OSError as exc:
                log_event(logger, "feedback_write_failed", level=logging.WARNING, path=str(self._path), error=str(exc))
                return
        log_event(logger, "feedback_negative_recorded", signature=signature[:12], entries=len(entries))
