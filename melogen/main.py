from __future__ import annotations

import logging
import math
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from melogen.logging_utils import (
    clear_request_context,
    configure_logging,
    current_request_id,
    elapsed_ms,
    log_event,
    new_request_id,
    set_request_context,
)
from melogen.models import (
    ChordSuggestionRequest,
    ChordSuggestionResponse,
    FeedbackRequest,
    GenerationRequest,
    GenerationResponse,
    UsageResponse,
    ValidateNotesRequest,
    ValidateNotesResponse,
)
from melogen.services.admission import AdmissionTimeoutError, CapacityExhaustedError
from melogen.services.composer import CompositionService
from melogen.services.generator import GenerationFailedError
from melogen.services.melody_validator import ValidationOptions, validate_notes
from melogen.settings import Settings

configure_logging()
logger = logging.getLogger(__name__)

service = CompositionService(Settings.from_env())


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    yield
    service.close()


app = FastAPI(title="Melogen", lifespan=lifespan)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or new_request_id()
    set_request_context(request_id=request_id, route=request.url.path, method=request.method)
    started = time.perf_counter()
    log_event(logger, "request_started")
    try:
        response = await call_next(request)
    except Exception:
        log_event(logger, "request_completed", status_code=500, duration_ms=elapsed_ms(started))
        raise

    log_event(logger, "request_completed", status_code=response.status_code, duration_ms=elapsed_ms(started))
    response.headers["X-Request-ID"] = request_id
    clear_request_context()
    return response


@app.exception_handler(Exception)
async def global_exception_handler(_request: Request, exc: Exception):
    request_id = current_request_id()
    logger.exception(
        "unhandled_exception",
        extra={"event": "unhandled_exception", "request_id": request_id},
    )
    response = JSONResponse(
        status_code=500,
        content={
            "detail": "Something went wrong while processing your request. Please try again.",
            "request_id": request_id,
        },
        headers={"X-Request-ID": request_id},
    )
    clear_request_context()
    return response


def _capacity_error(action: str, reason: str, retry_after_seconds: float | None) -> HTTPException:
    log_event(logger, "request_throttled", level=logging.WARNING, action=action, reason=reason)
    headers = {}
    if retry_after_seconds is not None:
        headers["Retry-After"] = str(max(1, math.ceil(retry_after_seconds)))
    return HTTPException(
        status_code=429,
        detail={
            "message": f"{action} is busy right now. Please try again later.",
            "request_id": current_request_id(),
        },
        headers=headers or None,
    )


def _generation_error(action: str, exc: GenerationFailedError) -> HTTPException:
    log_event(logger, "request_failed", level=logging.ERROR, action=action, reason=str(exc))
    return HTTPException(
        status_code=502,
        detail={
            "message": f"{action} failed. Please try again or adjust the prompt.",
            "request_id": current_request_id(),
        },
    )


@app.get("/healthz")
def healthz():
    return service.health()


@app.post("/api/generate", response_model=GenerationResponse)
def generate_endpoint(payload: GenerationRequest):
    action = "Composition generation"
    log_event(
        logger,
        "generation_request_received",
        measures=payload.measures,
        layers=payload.requested_layers,
        strict=payload.strict,
        has_example=bool(payload.example_melody),
    )
    try:
        result = service.generate(payload)
    except CapacityExhaustedError as exc:
        raise _capacity_error(action, exc.reason, exc.retry_after_seconds) from exc
    except AdmissionTimeoutError as exc:
        raise _capacity_error(action, str(exc), None) from exc
    except GenerationFailedError as exc:
        raise _generation_error(action, exc) from exc

    return GenerationResponse(
        composition=result.composition,
        fingerprint=result.fingerprint,
        cached=result.cached,
        key=result.key,
        chord_progression=result.chord_progression,
        request_id=current_request_id(),
    )


@app.post("/api/suggest-chords", response_model=ChordSuggestionResponse)
def suggest_chords_endpoint(payload: ChordSuggestionRequest):
    progressions = service.suggest_chords(payload.key, payload.prompt)
    log_event(logger, "chord_suggestions_returned", key=payload.key, count=len(progressions))
    return ChordSuggestionResponse(chord_progressions=progressions)


@app.post("/api/validate-notes", response_model=ValidateNotesResponse)
def validate_notes_endpoint(payload: ValidateNotesRequest):
    options = ValidationOptions(**payload.options.model_dump())
    notes = validate_notes(payload.notes, payload.key, options)
    dropped = max(0, len(payload.notes) - len(notes))
    if dropped:
        log_event(logger, "notes_dropped", received=len(payload.notes), kept=len(notes), mode=options.mode)
    return ValidateNotesResponse(notes=notes, dropped=dropped)


@app.post("/api/feedback")
def feedback_endpoint(payload: FeedbackRequest):
    signature = service.feedback.submit(payload)
    log_event(logger, "feedback_received", rating=payload.rating, reason=payload.reason)
    return {"ok": True, "signature": signature}


@app.get("/api/usage", response_model=UsageResponse)
def usage_endpoint():
    snapshot = service.usage()
    return UsageResponse(
        totalEstimatedTokensUsed=snapshot.total_tokens,
        timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
    )
