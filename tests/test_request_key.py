from melogen.models import GenerationRequest
from melogen.services.request_key import build_cache_key, canonical_json, normalize_request


def _request(**overrides) -> GenerationRequest:
    payload = {"prompt": "dark trap melody, 140 bpm", "measures": 8}
    payload.update(overrides)
    return GenerationRequest(**payload)


def test_fingerprint_is_sha256_hex():
    key = build_cache_key(_request())
    assert len(key) == 64
    assert all(ch in "0123456789abcdef" for ch in key)


def test_fingerprint_ignores_prompt_whitespace():
    assert build_cache_key(_request(prompt="  dark   trap melody,\n140 bpm ")) == build_cache_key(_request())


def test_fingerprint_ignores_layer_order_and_missing_layers_mean_all():
    assert build_cache_key(_request(layers=["bassline", "melody"])) == build_cache_key(_request(layers=["melody", "bassline"]))
    assert build_cache_key(_request(layers=None)) == build_cache_key(_request(layers=["chords", "bassline", "melody"]))
    assert build_cache_key(_request(layers=[])) == build_cache_key(_request())


def test_fingerprint_ignores_example_note_field_order_and_sub_millibeat_noise():
    first = _request(example_melody=[{"note": "C4", "start": 0, "duration": 1, "velocity": 90}])
    second = _request(example_melody=[{"velocity": 90, "duration": 1.0001, "start": 0.0002, "note": "C4"}])
    assert build_cache_key(first) == build_cache_key(second)


def test_fingerprint_changes_with_meaningful_fields():
    base = build_cache_key(_request())
    assert build_cache_key(_request(prompt="bright trap melody, 140 bpm")) != base
    assert build_cache_key(_request(measures=4)) != base
    assert build_cache_key(_request(strict=True)) != base
    assert build_cache_key(_request(intensify_darkness=True)) != base
    assert build_cache_key(_request(chord_progression="Am-F-E7-Am")) != base
    assert build_cache_key(_request(example_melody=[{"note": "C4", "start": 0, "duration": 1}])) != build_cache_key(
        _request(example_melody=[{"note": "D4", "start": 0, "duration": 1}])
    )


def test_normalized_payload_defaults_and_tempo_clamp():
    payload = normalize_request(_request(tempo=10))
    assert payload["tempo"] == 20
    assert payload["layers"] == ["melody", "chords", "bassline"]
    assert payload["grid_resolution"] == 0.25
    assert payload["example"] is None
    assert normalize_request(_request())["tempo"] is None


def test_canonical_json_is_key_sorted_and_compact():
    assert canonical_json({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'
