"""
Error taxonomy shared by every engine component, plus the failure logger
that records recovered and unrecovered errors with their request context.
"""

from __future__ import annotations

import contextvars
import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)

request_context: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar(
    "scamguard_request_context", default={}
)


class ScamGuardError(Exception):
    """Base class for engine errors."""

    kind = "error"


class ValidationError(ScamGuardError, ValueError):
    """Malformed or missing input. Never retried."""

    kind = "validation"


class DependencyError(ScamGuardError):
    """A collaborator or store call failed."""

    kind = "dependency"

    def __init__(self, dependency: str, message: str, *, retryable: bool = True) -> None:
        super().__init__(f"{dependency}: {message}")
        self.dependency = dependency
        self.retryable = retryable

    @property
    def fatal(self) -> bool:
        return not self.retryable


class DeadlineExceededError(ScamGuardError, TimeoutError):
    """The request budget ran out before a stage could start."""

    kind = "timeout"

    def __init__(self, stage: str) -> None:
        super().__init__(f"deadline exceeded before stage '{stage}'")
        self.stage = stage


class DegradedServiceError(ScamGuardError):
    """Circuit is open: the dependency is temporarily unavailable."""

    kind = "degraded"

    def __init__(self, dependency: str) -> None:
        super().__init__(f"{dependency}: service temporarily unavailable")
        self.dependency = dependency


class EngineError(ScamGuardError):
    """No stage produced any usable signal."""

    kind = "fatal"


def classify_http_error(dependency: str, exc: Exception) -> DependencyError:
    """Map an httpx failure onto a retryable or fatal DependencyError."""
    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        retryable = code >= 500 or code == 429
        return DependencyError(dependency, f"HTTP {code}", retryable=retryable)
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return DependencyError(dependency, f"transport failure: {exc!r}", retryable=True)
    return DependencyError(dependency, f"unexpected failure: {exc!r}", retryable=False)


def error_kind(exc: BaseException) -> str:
    if isinstance(exc, DependencyError):
        return "dependency-retryable" if exc.retryable else "dependency-fatal"
    if isinstance(exc, ScamGuardError):
        return exc.kind
    if isinstance(exc, TimeoutError):
        return "timeout"
    return type(exc).__name__


def log_failure(
    component: str,
    exc: BaseException,
    *,
    level: int = logging.WARNING,
    **context: Any,
) -> None:
    merged = {**request_context.get(), **context}
    details = " ".join(f"{key}={value}" for key, value in sorted(merged.items()))
    logger.log(
        level,
        "component=%s kind=%s error=%s %s",
        component,
        error_kind(exc),
        exc,
        details,
    )
