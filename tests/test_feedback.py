import json
import logging

from melogen.models import Composition, FeedbackRequest, Note
from melogen.services.feedback import FeedbackStore, composition_signature
from melogen.services.few_shot import FewShotLibrary


def _composition(pitch: str = "A4") -> Composition:
    return Composition(
        melody=[Note(note=pitch, start=0, duration=1), Note(note="C5", start=1, duration=1)],
        bassline=[Note(note="A2", start=0, duration=2)],
        tempo=120,
        chord_progression="Am-F-E7-Am",
    )


def _feedback(rating: str, composition: Composition | None = None, **overrides) -> FeedbackRequest:
    payload = {
        "rating": rating,
        "prompt": "dark piano loop",
        "key": "A minor",
        "composition": composition or _composition(),
    }
    payload.update(overrides)
    return FeedbackRequest(**payload)


def _store(tmp_path) -> FeedbackStore:
    library = FewShotLibrary(tmp_path / "dataset.json", max_examples=2)
    return FeedbackStore(tmp_path / "feedback.json", library)


def test_signature_covers_layers_only():
    signature = composition_signature(_composition())
    assert len(signature) == 40
    assert composition_signature(_composition().model_copy(update={"tempo": 90})) == signature
    assert composition_signature(_composition("B4")) != signature


def test_thumbs_down_is_prepended_with_default_reason(tmp_path):
    store = _store(tmp_path)
    first = store.submit(_feedback("down"))
    second = store.submit(_feedback("down", _composition("B4"), reason="prompt_mismatch", notes="  too busy  "))

    entries = json.loads(store.path.read_text(encoding="utf-8"))
    assert [entry["signature"] for entry in entries] == [second, first]
    assert entries[0]["reason"] == "prompt_mismatch"
    assert entries[0]["notes"] == "too busy"
    assert entries[1]["reason"] == "quality"
    assert "notes" not in entries[1]
    assert entries[1]["timestamp"].endswith("Z")
    assert store.load_negative_signatures() == {first, second}
    assert store.is_rejected(_composition())


def test_rejection_log_is_capped(tmp_path):
    store = _store(tmp_path)
    store.path.write_text(json.dumps([{"signature": f"old-{i}"} for i in range(500)]), encoding="utf-8")

    newest = store.submit(_feedback("down"))

    entries = json.loads(store.path.read_text(encoding="utf-8"))
    assert len(entries) == 500
    assert entries[0]["signature"] == newest
    assert entries[-1]["signature"] == "old-498"


def test_missing_log_means_no_rejections(tmp_path):
    store = _store(tmp_path)
    assert store.load_negative_signatures() == set()
    assert not store.is_rejected(_composition())


def test_malformed_log_warns_and_is_ignored(tmp_path, caplog):
    store = _store(tmp_path)
    store.path.write_text(json.dumps({"signature": "abc"}), encoding="utf-8")

    with caplog.at_level(logging.WARNING):
        assert store.load_negative_signatures() == set()

    assert any(getattr(record, "event", "") == "feedback_log_malformed" for record in caplog.records)


def test_thumbs_up_feeds_the_example_corpus_once(tmp_path):
    store = _store(tmp_path)
    feedback = _feedback("up", tempo=120, measures=4)

    signature = store.submit(feedback)
    store.submit(feedback)

    stored = json.loads((tmp_path / "dataset.json").read_text(encoding="utf-8"))
    assert len(stored) == 1
    assert stored[0]["metadata"]["signature"] == signature
    assert stored[0]["metadata"]["source"] == "user-feedback"
    assert stored[0]["input"]["measures"] == 4
    assert stored[0]["input"]["chordProgression"] == "Unknown"
    assert [note["note"] for note in stored[0]["output"]["melody"]] == ["A4", "C5"]

    examples = store._library.load()
    assert examples[0].prompt == "dark piano loop"
    assert examples[0].tempo == 120


def test_write_failures_are_logged_not_raised(tmp_path, caplog):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    library = FewShotLibrary(blocker / "dataset.json")
    store = FeedbackStore(blocker / "feedback.json", library)

    with caplog.at_level(logging.WARNING):
        store.submit(_feedback("down"))
        store.submit(_feedback("up"))

    failures = [r for r in caplog.records if getattr(r, "event", "") == "feedback_write_failed"]
    assert len(failures) == 2
