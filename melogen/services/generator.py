from __future__ import annotations

import json
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

import httpx

from melogen.logging_utils import elapsed_ms, log_event
from melogen.models import LAYER_ORDER, LayerName

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
CHARS_PER_TOKEN = 4


class GenerationFailedError(RuntimeError):
    pass


@dataclass(frozen=True)
class GeneratorInput:
    prompt: str
    key: str
    chord_progression: str
    layers: tuple[LayerName, ...] = LAYER_ORDER
    measures: int = 8
    tempo: int | None = None
    mood: str = "neutral"
    intensify_darkness: bool = False
    example_melody: list[dict[str, Any]] | None = None
    few_shot: str | None = None
    feedback: str | None = None
    attempt: int = 1


@dataclass(frozen=True)
class GeneratorOutput:
    payload: Any
    tokens_used: int = 0


class CompositionGenerator(Protocol):
    def __call__(self, request: GeneratorInput) -> GeneratorOutput: ...


def estimate_tokens(*texts: str | None) -> int:
    length = sum(len(text) for text in texts if text)
    return max(1, math.ceil(length / CHARS_PER_TOKEN))


def parse_generator_payload(raw: Any, layers: tuple[LayerName, ...] = LAYER_ORDER) -> dict[LayerName, list[Any]]:
    """Split generator output into per-layer raw note lists.

    A bare list is a single-layer answer for the first requested layer. A
    mapping must carry at least one layer name and every layer it carries
    must be a list.
    """
    result: dict[LayerName, list[Any]] = {name: [] for name in LAYER_ORDER}
    if isinstance(raw, list):
        result[layers[0] if layers else "melody"] = raw
        return result
    if not isinstance(raw, dict):
        raise GenerationFailedError(f"Generator returned {type(raw).__name__}, expected a note list or layer mapping.")
    present = [name for name in LAYER_ORDER if name in raw]
    if not present:
        raise GenerationFailedError("Generator output has none of the melody, chords or bassline layers.")
    for name in present:
        value = raw[name]
        if value is None:
            continue
        if not isinstance(value, list):
            raise GenerationFailedError(f"Generator layer {name!r} is {type(value).__name__}, expected a list.")
        result[name] = value
    return result


def _strip_code_fences(text: str) -> str:
    fence_start = text.find("```")
    if fence_start == -1:
        return text
    fence_end = text.rfind("```")
    if fence_end == fence_start:
        return text
    inner = text[fence_start + 3 : fence_end].lstrip()
    if inner.startswith("json"):
        inner = inner[4:]
    return inner.strip()


def extract_json_payload(content: str) -> Any:
    sanitized = _strip_code_fences(content).strip()
    try:
        return json.loads(sanitized)
    except json.JSONDecodeError:
        pass
    decoder = json.JSONDecoder()
    for index, char in enumerate(sanitized):
        if char not in "{[":
            continue
        try:
            payload, _ = decoder.raw_decode(sanitized, index)
        except json.JSONDecodeError:
            continue
        return payload
    raise GenerationFailedError("Generator reply did not contain JSON.")


def build_messages(request: GeneratorInput) -> list[dict[str, str]]:
    total_beats = request.measures * 4
    layer_list = ", ".join(request.layers)
    system = (
        "You compose music as JSON. Reply with one JSON object whose keys are "
        f"{layer_list}; each value is a list of notes "
        '{"note": "A4", "start": 0, "duration": 0.5, "velocity": 100, "slide": false}. '
        f"Times are in beats; every note must end by beat {total_beats}."
    )
    parts = [
        f"Prompt: {request.prompt}",
        f"Key: {request.key}",
        f"Chord progression: {request.chord_progression}",
        f"Measures: {request.measures} (4/4)",
    ]
    if request.tempo:
        parts.append(f"Tempo: {request.tempo} BPM")
    if request.intensify_darkness:
        parts.append("Push the darkness: minor colours, tension, dramatic leaps are welcome.")
    if request.example_melody:
        parts.append(f"Example melody to draw from: {json.dumps(request.example_melody, separators=(',', ':'))}")
    if request.few_shot:
        parts.append(request.few_shot)
    if request.feedback:
        parts.append(f"Attempt {request.attempt}. Fix these problems from the previous attempt: {request.feedback}")
    return [{"role": "system", "content": system}, {"role": "user", "content": "\n\n".join(parts)}]


@dataclass
class HttpCompositionGenerator:
    """Calls an OpenAI-compatible chat-completions endpoint."""

    url: str
    model: str
    api_key: str | None = None
    timeout_seconds: float = 60.0
    max_retries: int = 2
    temperature: float = 0.9
    client: httpx.Client | None = None
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def __post_init__(self) -> None:
        if self.client is None:
            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self.client = httpx.Client(timeout=self.timeout_seconds, headers=headers)

    def close(self) -> None:
        if self.client is not None:
            self.client.close()

    def _post(self, body: dict[str, Any]) -> dict[str, Any]:
        last_error: Exception | None = None
        for attempt in range(self.max_retries + 1):
            if attempt > 0:
                backoff = 2**attempt
                log_event(logger, "generator_retry", level=logging.WARNING, retry=attempt, backoff_seconds=backoff)
                self.sleep(backoff)
            try:
                response = self.client.post(self.url, json=body)
                response.raise_for_status()
                return response.json()
            except httpx.HTTPStatusError as exc:
                last_error = exc
                if exc.response.status_code in RETRYABLE_STATUS_CODES:
                    continue
                raise GenerationFailedError(f"Generator rejected the request with HTTP {exc.response.status_code}.") from exc
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                last_error = exc
                continue
            except ValueError as exc:
                raise GenerationFailedError("Generator response was not JSON.") from exc
        raise GenerationFailedError(f"Generator unavailable after {self.max_retries + 1} tries.") from last_error

    def __call__(self, request: GeneratorInput) -> GeneratorOutput:
        messages = build_messages(request)
        body = {"model": self.model, "messages": messages, "temperature": self.temperature, "stream": False}
        started = time.perf_counter()
        data = self._post(body)
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise GenerationFailedError("Generator response is missing message content.") from exc
        if not isinstance(content, str):
            raise GenerationFailedError("Generator message content is not text.")

        usage = data.get("usage") if isinstance(data.get("usage"), dict) else {}
        tokens = usage.get("total_tokens")
        if not isinstance(tokens, int) or tokens <= 0:
            tokens = estimate_tokens(*(message["content"] for message in messages), content)
        log_event(
            logger,
            "generator_call_completed",
            attempt=request.attempt,
            duration_ms=elapsed_ms(started),
            tokens=tokens,
        )
        return GeneratorOutput(payload=extract_json_payload(content), tokens_used=tokens)


class UnconfiguredGenerator:
    """Stand-in used when no generator endpoint is configured."""

    def __call__(self, request: GeneratorInput) -> GeneratorOutput:
        raise GenerationFailedError("No generator endpoint configured; set MELOGEN_GENERATOR_URL.")
