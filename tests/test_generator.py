import json

import httpx
import pytest

from melogen.services.generator import (
    GenerationFailedError,
    GeneratorInput,
    HttpCompositionGenerator,
    build_messages,
    extract_json_payload,
    parse_generator_payload,
)

MELODY = [{"note": "A4", "start": 0, "duration": 1}]


def _input(**overrides) -> GeneratorInput:
    payload = {"prompt": "dark trap melody", "key": "A minor", "chord_progression": "Am-F-E7-Am"}
    payload.update(overrides)
    return GeneratorInput(**payload)


def _completion(content: str, usage: dict | None = None) -> dict:
    body = {"choices": [{"message": {"role": "assistant", "content": content}}]}
    if usage is not None:
        body["usage"] = usage
    return body


def _generator(handler, sleeps):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return HttpCompositionGenerator(
        url="https://llm.test/v1/chat/completions",
        model="test-model",
        client=client,
        sleep=sleeps.append,
    )


def test_bare_list_goes_to_first_requested_layer():
    assert parse_generator_payload(MELODY)["melody"] == MELODY
    layers = parse_generator_payload(MELODY, ("chords",))
    assert layers["chords"] == MELODY
    assert layers["melody"] == []


def test_mapping_payload_keeps_known_layers():
    layers = parse_generator_payload({"melody": MELODY, "chords": None, "tempo": 120})
    assert layers == {"melody": MELODY, "chords": [], "bassline": []}


@pytest.mark.parametrize("raw", [{"tempo": 120}, {"melody": "A4 B4"}, "A4 B4", None])
def test_unusable_payloads_raise(raw):
    with pytest.raises(GenerationFailedError):
        parse_generator_payload(raw)


def test_json_is_extracted_from_fenced_or_chatty_replies():
    assert extract_json_payload('```json\n{"melody": []}\n```') == {"melody": []}
    assert extract_json_payload('Sure! Here you go: {"melody": []} Enjoy.') == {"melody": []}
    with pytest.raises(GenerationFailedError):
        extract_json_payload("no json at all")


def test_messages_carry_retry_feedback():
    messages = build_messages(_input(feedback="Too few notes.", attempt=2, tempo=140))
    user = messages[1]["content"]
    assert "Tempo: 140 BPM" in user
    assert "Attempt 2. Fix these problems from the previous attempt: Too few notes." in user
    assert "every note must end by beat 32" in messages[0]["content"]


def test_retries_transient_status_then_succeeds():
    calls = []
    sleeps = []

    def handler(request):
        calls.append(json.loads(request.content))
        if len(calls) == 1:
            return httpx.Response(503, json={"error": "busy"})
        content = "```json\n" + json.dumps({"melody": MELODY}) + "\n```"
        return httpx.Response(200, json=_completion(content, {"total_tokens": 321}))

    output = _generator(handler, sleeps)(_input())

    assert len(calls) == 2
    assert calls[0]["model"] == "test-model"
    assert sleeps == [2]
    assert output.payload == {"melody": MELODY}
    assert output.tokens_used == 321


def test_missing_usage_falls_back_to_estimate():
    def handler(request):
        return httpx.Response(200, json=_completion(json.dumps(MELODY)))

    output = _generator(handler, [])(_input())
    assert output.payload == MELODY
    assert output.tokens_used > 0


def test_client_error_is_not_retried():
    calls = []
    sleeps = []

    def handler(request):
        calls.append(request)
        return httpx.Response(400, json={"error": "bad request"})

    with pytest.raises(GenerationFailedError):
        _generator(handler, sleeps)(_input())

    assert len(calls) == 1
    assert sleeps == []


def test_gives_up_after_retries():
    calls = []
    sleeps = []

    def handler(request):
        calls.append(request)
        return httpx.Response(502)

    with pytest.raises(GenerationFailedError):
        _generator(handler, sleeps)(_input())

    assert len(calls) == 3
    assert sleeps == [2, 4]
