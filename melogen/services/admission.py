from __future__ import annotations

import itertools
import logging
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from threading import Condition, Lock
from typing import Callable, Iterator

from melogen.logging_utils import log_event

logger = logging.getLogger(__name__)

MAX_CONCURRENT_GENERATIONS = 2
MIN_REQUEST_INTERVAL_SECONDS = 2.0
SOFT_USAGE_LIMIT_TOKENS = 20_000
USAGE_WINDOW_SECONDS = 24 * 60 * 60


class CapacityExhaustedError(RuntimeError):
    def __init__(self, reason: str, retry_after_seconds: float | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.retry_after_seconds = retry_after_seconds


class AdmissionTimeoutError(TimeoutError):
    pass


@dataclass(frozen=True)
class AdmissionPermit:
    ticket: int
    granted_at: float


@dataclass
class UsageWindow:
    window_start: float
    tokens_consumed: int = 0


@dataclass(frozen=True)
class UsageSnapshot:
    total_tokens: int
    window_tokens: int
    soft_limit: int
    seconds_until_reset: float

    @property
    def remaining(self) -> int:
        return max(0, self.soft_limit - self.window_tokens)

    @property
    def exhausted(self) -> bool:
        return self.window_tokens >= self.soft_limit


class AdmissionController:
    """Bounds concurrent generator calls, paces grants and tracks token usage.

    Grants are FIFO: a caller is admitted only from the head of the wait
    queue and only while fewer than ``max_concurrent`` permits are out.
    Independently, successive grants are spaced at least ``min_interval``
    apart; the head caller sleeps off the shortfall outside the lock while
    keeping its place.

    The usage budget is advisory. ``acquire`` never consults it; callers
    ask ``check_usage_budget`` before generating and report what they spent
    with ``record_usage``.
    """

    def __init__(
        self,
        max_concurrent: int = MAX_CONCURRENT_GENERATIONS,
        min_interval_seconds: float = MIN_REQUEST_INTERVAL_SECONDS,
        usage_soft_limit: int = SOFT_USAGE_LIMIT_TOKENS,
        usage_window_seconds: float = USAGE_WINDOW_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1.")
        self._max_concurrent = max_concurrent
        self._min_interval = max(0.0, min_interval_seconds)
        self._clock = clock
        self._sleep = sleep
        self._condition = Condition()
        self._waiting: deque[int] = deque()
        self._active: set[int] = set()
        self._tickets = itertools.count(1)
        self._last_grant: float | None = None

        self._usage_lock = Lock()
        self._usage_soft_limit = usage_soft_limit
        self._usage_window_seconds = usage_window_seconds
        self._window = UsageWindow(window_start=clock())
        self._total_tokens = 0

    @property
    def active(self) -> int:
        with self._condition:
            return len(self._active)

    @property
    def queued(self) -> int:
        with self._condition:
            return len(self._waiting)

    def _pacing_shortfall_locked(self) -> float:
        if self._last_grant is None or self._min_interval <= 0:
            return 0.0
        return self._min_interval - (self._clock() - self._last_grant)

    def _at_head_with_capacity_locked(self, ticket: int) -> bool:
        return self._waiting[0] == ticket and len(self._active) < self._max_concurrent

    def acquire(self, timeout: float | None = None) -> AdmissionPermit:
        ticket = next(self._tickets)
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._condition:
            self._waiting.append(ticket)
            if not self._at_head_with_capacity_locked(ticket):
                log_event(
                    logger,
                    "admission_queued",
                    ticket=ticket,
                    active=len(self._active),
                    queued=len(self._waiting),
                )

        try:
            while True:
                with self._condition:
                    while not self._at_head_with_capacity_locked(ticket):
                        remaining = None if deadline is None else deadline - time.monotonic()
                        if remaining is not None and remaining <= 0:
                            raise AdmissionTimeoutError(f"Timed out waiting for a generation slot after {timeout}s.")
                        self._condition.wait(timeout=remaining)
                    shortfall = self._pacing_shortfall_locked()
                    if shortfall <= 0:
                        self._waiting.popleft()
                        self._active.add(ticket)
                        granted_at = self._clock()
                        self._last_grant = granted_at
                        active = len(self._active)
                        self._condition.notify_all()
                        break

                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise AdmissionTimeoutError(f"Timed out waiting for a generation slot after {timeout}s.")
                    shortfall = min(shortfall, remaining)
                log_event(logger, "admission_pacing_wait", ticket=ticket, wait_ms=int(shortfall * 1000))
                self._sleep(shortfall)
        except BaseException:
            with self._condition:
                if ticket in self._waiting:
                    self._waiting.remove(ticket)
                self._condition.notify_all()
            raise

        log_event(logger, "admission_granted", ticket=ticket, active=active)
        return AdmissionPermit(ticket=ticket, granted_at=granted_at)

    def release(self, permit: AdmissionPermit) -> None:
        with self._condition:
            if permit.ticket not in self._active:
                log_event(logger, "admission_release_ignored", level=logging.DEBUG, ticket=permit.ticket)
                return
            self._active.discard(permit.ticket)
            active = len(self._active)
            self._condition.notify_all()
        log_event(logger, "admission_released", ticket=permit.ticket, active=active)

    @contextmanager
    def slot(self, timeout: float | None = None) -> Iterator[AdmissionPermit]:
        permit = self.acquire(timeout=timeout)
        try:
            yield permit
        finally:
            self.release(permit)

    def _roll_window_locked(self, now: float) -> None:
        if now - self._window.window_start >= self._usage_window_seconds:
            log_event(logger, "usage_window_reset", previous_tokens=self._window.tokens_consumed)
            self._window = UsageWindow(window_start=now)

    def check_usage_budget(self, estimated_tokens: int = 0) -> bool:
        """Report whether the current usage window still admits new work.

        Rejects once the window has reached the soft limit, or when a
        positive estimate would carry it past the limit.
        """
        with self._usage_lock:
            self._roll_window_locked(self._clock())
            consumed = self._window.tokens_consumed
        estimated = max(0, estimated_tokens)
        if consumed >= self._usage_soft_limit or consumed + estimated > self._usage_soft_limit:
            log_event(
                logger,
                "usage_budget_exhausted",
                level=logging.WARNING,
                tokens_used=consumed,
                estimated_tokens=estimated,
                soft_limit=self._usage_soft_limit,
            )
            return False
        log_event(
            logger,
            "usage_budget_checked",
            level=logging.DEBUG,
            tokens_used=consumed,
            remaining=self._usage_soft_limit - consumed,
        )
        return True

    def record_usage(self, tokens: int) -> None:
        if tokens <= 0:
            return
        with self._usage_lock:
            self._roll_window_locked(self._clock())
            self._window.tokens_consumed += tokens
            self._total_tokens += tokens
            window_tokens = self._window.tokens_consumed
        log_event(logger, "usage_recorded", tokens=tokens, window_tokens=window_tokens)

    def usage_snapshot(self) -> UsageSnapshot:
        with self._usage_lock:
            now = self._clock()
            self._roll_window_locked(now)
            return UsageSnapshot(
                total_tokens=self._total_tokens,
                window_tokens=self._window.tokens_consumed,
                soft_limit=self._usage_soft_limit,
                seconds_until_reset=max(0.0, self._usage_window_seconds - (now - self._window.window_start)),
            )
