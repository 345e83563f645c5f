import logging
import random

from fastapi.testclient import TestClient

from melogen import main as main_module
from melogen.main import app
from melogen.services.admission import AdmissionTimeoutError
from melogen.services.composer import CompositionService
from melogen.services.generator import GenerationFailedError, GeneratorOutput
from melogen.settings import Settings


client = TestClient(app)

SCALE_RUN = [
    {"note": pitch, "start": i, "duration": 1, "velocity": 100}
    for i, pitch in enumerate(["C4", "D4", "E4", "F4", "G4", "A4", "B4", "C5"])
]


class FakeGenerator:
    def __init__(self, error=None):
        self.error = error
        self.calls = 0

    def __call__(self, request):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return GeneratorOutput(payload={"melody": SCALE_RUN}, tokens_used=40)


def _install_service(monkeypatch, tmp_path, generator=None, **settings) -> CompositionService:
    service = CompositionService(
        Settings(data_dir=tmp_path, quality_threshold=0, min_request_interval_seconds=0, **settings),
        generator=generator or FakeGenerator(),
        rng=random.Random(0),
    )
    monkeypatch.setattr(main_module, "service", service)
    return service


def _sample_request() -> dict:
    return {"prompt": "dark trap melody in A minor, 140 bpm", "measures": 8}


def test_generate_returns_composition_then_serves_cache(monkeypatch, tmp_path):
    service = _install_service(monkeypatch, tmp_path)

    first = client.post("/api/generate", json=_sample_request())
    second = client.post("/api/generate", json=_sample_request())

    assert first.status_code == 200
    payload = first.json()
    assert payload["cached"] is False
    assert payload["key"] == "A minor"
    assert payload["composition"]["tempo"] == 140
    assert len(payload["composition"]["melody"]) == 8
    assert payload["chord_progression"]
    assert payload["request_id"] == first.headers["X-Request-ID"]
    assert second.json()["cached"] is True
    assert second.json()["composition"] == payload["composition"]
    assert service.generator.calls == 1


def test_generate_exhausted_budget_returns_429_with_retry_after(monkeypatch, tmp_path):
    service = _install_service(monkeypatch, tmp_path, usage_soft_limit_tokens=10)
    service.admission.record_usage(10)

    res = client.post("/api/generate", json=_sample_request())

    assert res.status_code == 429
    assert int(res.headers["Retry-After"]) >= 1
    assert "busy" in res.json()["detail"]["message"]
    assert res.json()["detail"]["request_id"]


def test_generate_admission_timeout_returns_429(monkeypatch, tmp_path):
    service = _install_service(monkeypatch, tmp_path)

    def timed_out(_request):
        raise AdmissionTimeoutError("Timed out waiting for a generation slot.")

    monkeypatch.setattr(service, "_generate_fresh", timed_out)

    res = client.post("/api/generate", json=_sample_request())

    assert res.status_code == 429
    assert "Retry-After" not in res.headers


def test_generate_failure_returns_502(monkeypatch, tmp_path, caplog):
    _install_service(monkeypatch, tmp_path, generator=FakeGenerator(error=GenerationFailedError("down")))

    with caplog.at_level(logging.ERROR):
        res = client.post("/api/generate", json=_sample_request())

    assert res.status_code == 502
    assert "Composition generation failed" in res.json()["detail"]["message"]
    assert any(getattr(record, "event", "") == "request_failed" for record in caplog.records)


def test_generate_rejects_invalid_payload(monkeypatch, tmp_path):
    _install_service(monkeypatch, tmp_path)

    res = client.post("/api/generate", json={"prompt": "  ", "measures": 0})

    assert res.status_code == 422


def test_usage_endpoint_reports_total_tokens(monkeypatch, tmp_path):
    _install_service(monkeypatch, tmp_path)
    client.post("/api/generate", json=_sample_request())

    res = client.get("/api/usage")

    assert res.status_code == 200
    payload = res.json()
    assert set(payload) == {"totalEstimatedTokensUsed", "timestamp"}
    assert payload["totalEstimatedTokensUsed"] == 40
    assert payload["timestamp"].endswith("Z")


def test_suggest_chords_endpoint(monkeypatch, tmp_path):
    _install_service(monkeypatch, tmp_path)

    res = client.post("/api/suggest-chords", json={"key": "A minor"})

    assert res.status_code == 200
    assert res.json()["chord_progressions"][0] == "Am-Dm-E7-Am"


def test_validate_notes_endpoint_repairs_and_counts_drops(monkeypatch, tmp_path):
    _install_service(monkeypatch, tmp_path)

    res = client.post(
        "/api/validate-notes",
        json={
            "notes": [
                {"note": "A#3", "start": 0, "duration": 1},
                {"note": "bogus", "start": 1, "duration": 1},
                {"note": "C4", "start": 40, "duration": 1},
            ],
            "key": "A minor",
            "options": {"mode": "strict", "total_beats": 32},
        },
    )

    assert res.status_code == 200
    payload = res.json()
    assert [note["note"] for note in payload["notes"]] == ["A3"]
    assert payload["dropped"] == 2


def test_feedback_endpoint_records_rejection(monkeypatch, tmp_path):
    service = _install_service(monkeypatch, tmp_path)
    composition = {"melody": SCALE_RUN[:2]}

    res = client.post(
        "/api/feedback",
        json={"rating": "down", "prompt": "dark trap", "key": "A minor", "composition": composition},
    )

    assert res.status_code == 200
    assert res.json()["ok"] is True
    assert res.json()["signature"] in service.feedback.load_negative_signatures()


def test_healthz_reports_service_state(monkeypatch, tmp_path):
    _install_service(monkeypatch, tmp_path)

    res = client.get("/healthz")

    assert res.status_code == 200
    assert res.json()["status"] == "ok"
    assert res.json()["admission"] == {"active": 0, "queued": 0}


def test_request_id_header_is_echoed():
    res = client.get("/healthz", headers={"X-Request-ID": "req-123"})

    assert res.headers.get("X-Request-ID") == "req-123"


def test_request_logging_emits_completion_event(monkeypatch, tmp_path, caplog):
    _install_service(monkeypatch, tmp_path)

    with caplog.at_level(logging.INFO):
        client.get("/healthz")

    assert any(getattr(record, "event", "") == "request_completed" for record in caplog.records)


def test_app_shutdown_closes_generator(monkeypatch, tmp_path):
    class ClosableGenerator(FakeGenerator):
        closed = False

        def close(self):
            self.closed = True

    generator = ClosableGenerator()
    _install_service(monkeypatch, tmp_path, generator=generator)

    with TestClient(app) as lifespan_client:
        assert lifespan_client.get("/healthz").status_code == 200
        assert generator.closed is False

    assert generator.closed is True
