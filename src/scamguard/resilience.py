"""
Retry, circuit-breaker and deadline primitives wrapping every call the engine
makes to an external collaborator or store.

Breakers are explicit objects owned by a ``BreakerRegistry`` that is built
once per process and handed to every component, so tests can start from a
fresh registry.
"""

from __future__ import annotations

import asyncio
import contextvars
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    stop_any,
    wait_exponential,
)

from .config import Settings, get_settings
from .errors import (
    DeadlineExceededError,
    DegradedServiceError,
    DependencyError,
    ValidationError,
    log_failure,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
Operation = Callable[[], Awaitable[T]]
Clock = Callable[[], float]


class DependencyKind(str, Enum):
    LANGUAGE_DETECTION = "language_detection"
    OCR = "ocr"
    TRANSCRIPTION = "transcription"
    REASONING = "reasoning"
    PATTERN_STORE = "pattern_store"
    DOMAIN_INTEL = "domain_intel"
    URL_RESOLVER = "url_resolver"
    DOMAIN_TRUST_STORE = "domain_trust_store"


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 1.0
    sleep: Callable[[float], Awaitable[Any]] = field(default=asyncio.sleep)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "RetryPolicy":
        settings = settings or get_settings()
        return cls(max_retries=settings.retry_max_retries, base_delay=settings.retry_base_delay)


class Deadline:
    """Cancellation token carrying the request's remaining time budget."""

    def __init__(self, budget: float, *, clock: Clock = time.monotonic) -> None:
        self.budget = budget
        self._clock = clock
        self._expires_at = clock() + budget

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def check(self, stage: str) -> None:
        if self.expired:
            raise DeadlineExceededError(stage)


# set by the engine for the lifetime of one analysis; stage tasks inherit it
current_deadline: contextvars.ContextVar[Deadline | None] = contextvars.ContextVar(
    "scamguard_deadline", default=None
)


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, DependencyError) and exc.retryable


async def with_retry(
    op: Operation[T],
    policy: RetryPolicy | None = None,
    *,
    dependency: str = "dependency",
    deadline: Deadline | None = None,
) -> T:
    """Run ``op`` and retry retryable dependency failures with exponential backoff.

    The delay before retry ``k`` (0-indexed) is ``base_delay * 2**k``. Retrying
    stops early when the next delay would not fit in the remaining request
    budget (``deadline``, or the one carried by ``current_deadline``). Either
    way the last failure is re-raised tagged fatal.
    """
    policy = policy or RetryPolicy()
    if deadline is None:
        deadline = current_deadline.get()

    def _out_of_budget(state: RetryCallState) -> bool:
        if deadline is None:
            return False
        next_delay = policy.base_delay * 2 ** (state.attempt_number - 1)
        if next_delay < deadline.remaining():
            return False
        logger.info(
            "Not retrying %s: next delay %.2fs exceeds remaining budget %.2fs",
            dependency,
            next_delay,
            deadline.remaining(),
        )
        return True

    def _before_sleep(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        logger.info(
            "Retrying %s (attempt %d/%d) after %.2fs: %s",
            dependency,
            state.attempt_number,
            policy.max_retries + 1,
            state.next_action.sleep if state.next_action else 0.0,
            exc,
        )

    retrying = AsyncRetrying(
        sleep=policy.sleep,
        stop=stop_any(stop_after_attempt(policy.max_retries + 1), _out_of_budget),
        wait=wait_exponential(multiplier=policy.base_delay, exp_base=2, min=0),
        retry=retry_if_exception(_is_retryable),
        before_sleep=_before_sleep,
        reraise=False,
    )
    try:
        async for attempt in retrying:
            with attempt:
                result = await op()
    except RetryError as exc:
        last = exc.last_attempt.exception()
        raise DependencyError(
            dependency,
            f"gave up after {exc.last_attempt.attempt_number} attempt(s): {last}",
            retryable=False,
        ) from last
    return result


class CircuitBreaker:
    """Per-dependency closed/open/half-open guard.

    State changes are serialized with a lock; the wrapped coroutine itself
    runs outside the lock.
    """

    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        open_timeout: float = 60.0,
        clock: Clock = time.monotonic,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.open_timeout = open_timeout
        self._clock = clock
        self._lock = threading.Lock()
        self._state = BreakerState.CLOSED
        self._failures = 0
        self._last_failure: float | None = None
        self._probe_in_flight = False

    @property
    def state(self) -> BreakerState:
        with self._lock:
            return self._current_state()

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failures

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "state": self._current_state().value,
                "failures": self._failures,
                "last_failure": self._last_failure,
            }

    async def call(self, op: Operation[T]) -> T:
        self._acquire()
        try:
            result = await op()
        except ValidationError:
            self._release_probe()
            raise
        except Exception:
            self.record_failure()
            raise
        except BaseException:
            # cancellation is not a dependency verdict
            self._release_probe()
            raise
        self.record_success()
        return result

    def record_success(self) -> None:
        with self._lock:
            if self._state is not BreakerState.CLOSED:
                logger.info("Circuit %s closed after successful probe", self.name)
            self._state = BreakerState.CLOSED
            self._failures = 0
            self._probe_in_flight = False

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            self._last_failure = self._clock()
            was_probe = self._state is BreakerState.HALF_OPEN
            self._probe_in_flight = False
            if was_probe or self._failures >= self.failure_threshold:
                if self._state is not BreakerState.OPEN:
                    logger.warning(
                        "Circuit %s opened after %d consecutive failures",
                        self.name,
                        self._failures,
                    )
                self._state = BreakerState.OPEN

    def _acquire(self) -> None:
        with self._lock:
            state = self._current_state()
            if state is BreakerState.CLOSED:
                return
            if state is BreakerState.HALF_OPEN and not self._probe_in_flight:
                self._probe_in_flight = True
                return
        raise DegradedServiceError(self.name)

    def _release_probe(self) -> None:
        with self._lock:
            self._probe_in_flight = False

    def _current_state(self) -> BreakerState:
        if (
            self._state is BreakerState.OPEN
            and self._last_failure is not None
            and self._clock() - self._last_failure >= self.open_timeout
        ):
            self._state = BreakerState.HALF_OPEN
            self._probe_in_flight = False
        return self._state


class BreakerRegistry:
    """One breaker per dependency kind, kept for the registry's lifetime."""

    def __init__(
        self,
        *,
        failure_threshold: int = 5,
        open_timeout: float = 60.0,
        clock: Clock = time.monotonic,
    ) -> None:
        self._failure_threshold = failure_threshold
        self._open_timeout = open_timeout
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings | None = None, *, clock: Clock = time.monotonic) -> "BreakerRegistry":
        settings = settings or get_settings()
        return cls(
            failure_threshold=settings.breaker_failure_threshold,
            open_timeout=settings.breaker_open_timeout,
            clock=clock,
        )

    def get(self, kind: DependencyKind | str) -> CircuitBreaker:
        name = kind.value if isinstance(kind, DependencyKind) else str(kind)
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(
                    name,
                    failure_threshold=self._failure_threshold,
                    open_timeout=self._open_timeout,
                    clock=self._clock,
                )
                self._breakers[name] = breaker
            return breaker

    def snapshot(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            breakers = dict(self._breakers)
        return {name: breaker.snapshot() for name, breaker in breakers.items()}

    def reset(self) -> None:
        with self._lock:
            self._breakers.clear()


class ResilientCaller:
    """Breaker-guarded retry: the wrapper applied to every external call."""

    def __init__(self, registry: BreakerRegistry | None = None, policy: RetryPolicy | None = None) -> None:
        self.registry = registry or BreakerRegistry()
        self.policy = policy or RetryPolicy()

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "ResilientCaller":
        return cls(BreakerRegistry.from_settings(settings), RetryPolicy.from_settings(settings))

    async def call(self, kind: DependencyKind | str, op: Operation[T], *, deadline: Deadline | None = None) -> T:
        name = kind.value if isinstance(kind, DependencyKind) else str(kind)
        breaker = self.registry.get(name)
        try:
            return await breaker.call(lambda: with_retry(op, self.policy, dependency=name, deadline=deadline))
        except (DependencyError, DegradedServiceError) as exc:
            log_failure("resilience", exc, dependency=name)
            raise
