import asyncio

import pytest

from scamguard.errors import DeadlineExceededError, DegradedServiceError, DependencyError, ValidationError
from scamguard.resilience import (
    BreakerRegistry,
    BreakerState,
    CircuitBreaker,
    Deadline,
    DependencyKind,
    ResilientCaller,
    RetryPolicy,
    current_deadline,
    with_retry,
)


def flaky(failures, exc_factory, result="ok"):
    calls = {"count": 0}

    async def op():
        calls["count"] += 1
        if calls["count"] <= failures:
            raise exc_factory()
        return result

    return op, calls


@pytest.mark.asyncio
async def test_retry_uses_exponential_delays(sleeps):
    op, calls = flaky(3, lambda: DependencyError("ocr", "503"))
    result = await with_retry(op, RetryPolicy(sleep=sleeps), dependency="ocr")
    assert result == "ok"
    assert calls["count"] == 4
    assert sleeps.delays == [1, 2, 4]


@pytest.mark.asyncio
async def test_retry_exhaustion_is_fatal_and_stops_after_three_retries(sleeps):
    op, calls = flaky(10, lambda: DependencyError("ocr", "timeout"))
    with pytest.raises(DependencyError) as info:
        await with_retry(op, RetryPolicy(sleep=sleeps), dependency="ocr")
    assert info.value.fatal
    assert isinstance(info.value.__cause__, DependencyError)
    assert calls["count"] == 4
    assert sleeps.delays == [1, 2, 4]


@pytest.mark.asyncio
async def test_non_retryable_error_propagates_without_retry(sleeps):
    op, calls = flaky(10, lambda: DependencyError("domain_intel", "HTTP 404", retryable=False))
    with pytest.raises(DependencyError) as info:
        await with_retry(op, RetryPolicy(sleep=sleeps))
    assert "404" in str(info.value)
    assert calls["count"] == 1
    assert sleeps.delays == []


@pytest.mark.asyncio
async def test_validation_error_is_never_retried(sleeps):
    op, calls = flaky(10, lambda: ValidationError("bad input"))
    with pytest.raises(ValidationError):
        await with_retry(op, RetryPolicy(sleep=sleeps))
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_retry_stops_when_next_delay_exceeds_remaining_budget(clock, sleeps):
    op, calls = flaky(10, lambda: DependencyError("pattern_store", "503"))
    deadline = Deadline(2.5, clock=clock)

    with pytest.raises(DependencyError) as info:
        await with_retry(op, RetryPolicy(sleep=sleeps), dependency="pattern_store", deadline=deadline)

    assert info.value.fatal
    assert calls["count"] == 3
    assert sleeps.delays == [1, 2]


@pytest.mark.asyncio
async def test_retry_reads_deadline_from_context(clock, sleeps):
    registry = BreakerRegistry(failure_threshold=1, clock=clock)
    caller = ResilientCaller(registry, RetryPolicy(sleep=sleeps))
    op, calls = flaky(10, lambda: DependencyError("pattern_store", "timeout"))

    token = current_deadline.set(Deadline(0.5, clock=clock))
    try:
        with pytest.raises(DependencyError) as info:
            await caller.call(DependencyKind.PATTERN_STORE, op)
    finally:
        current_deadline.reset(token)

    assert info.value.fatal
    assert calls["count"] == 1
    assert sleeps.delays == []
    assert registry.get(DependencyKind.PATTERN_STORE).state is BreakerState.OPEN


@pytest.mark.asyncio
async def test_breaker_opens_after_threshold_and_skips_operation(clock):
    breaker = CircuitBreaker("ocr", failure_threshold=5, open_timeout=60, clock=clock)
    op, calls = flaky(100, lambda: DependencyError("ocr", "down", retryable=False))
    for _ in range(5):
        with pytest.raises(DependencyError):
            await breaker.call(op)
    assert breaker.state is BreakerState.OPEN

    with pytest.raises(DegradedServiceError):
        await breaker.call(op)
    assert calls["count"] == 5


@pytest.mark.asyncio
async def test_success_resets_failure_count(clock):
    breaker = CircuitBreaker("ocr", failure_threshold=3, clock=clock)
    op, _ = flaky(2, lambda: DependencyError("ocr", "down", retryable=False))
    for _ in range(2):
        with pytest.raises(DependencyError):
            await breaker.call(op)
    assert await breaker.call(op) == "ok"
    assert breaker.failure_count == 0
    assert breaker.state is BreakerState.CLOSED


@pytest.mark.asyncio
async def test_half_open_admits_single_probe_and_closes_on_success(clock):
    breaker = CircuitBreaker("pattern_store", failure_threshold=1, open_timeout=60, clock=clock)

    async def fail():
        raise DependencyError("pattern_store", "down", retryable=False)

    with pytest.raises(DependencyError):
        await breaker.call(fail)
    clock.advance(59)
    assert breaker.state is BreakerState.OPEN
    clock.advance(1)
    assert breaker.state is BreakerState.HALF_OPEN

    release = asyncio.Event()

    async def probe():
        await release.wait()
        return "probe-ok"

    probe_task = asyncio.create_task(breaker.call(probe))
    await asyncio.sleep(0)
    with pytest.raises(DegradedServiceError):
        await breaker.call(probe)
    release.set()
    assert await probe_task == "probe-ok"
    assert breaker.state is BreakerState.CLOSED


@pytest.mark.asyncio
async def test_failed_probe_reopens_breaker(clock):
    breaker = CircuitBreaker("domain_intel", failure_threshold=2, open_timeout=30, clock=clock)

    async def fail():
        raise DependencyError("domain_intel", "down", retryable=False)

    for _ in range(2):
        with pytest.raises(DependencyError):
            await breaker.call(fail)
    clock.advance(30)
    assert breaker.state is BreakerState.HALF_OPEN
    with pytest.raises(DependencyError):
        await breaker.call(fail)
    assert breaker.state is BreakerState.OPEN
    clock.advance(10)
    with pytest.raises(DegradedServiceError):
        await breaker.call(fail)


@pytest.mark.asyncio
async def test_caller_counts_exhausted_retries_as_one_breaker_failure(clock, sleeps):
    registry = BreakerRegistry(failure_threshold=2, open_timeout=60, clock=clock)
    caller = ResilientCaller(registry, RetryPolicy(sleep=sleeps))
    op, calls = flaky(100, lambda: DependencyError("ocr", "503"))

    with pytest.raises(DependencyError):
        await caller.call(DependencyKind.OCR, op)
    assert calls["count"] == 4
    assert registry.get(DependencyKind.OCR).state is BreakerState.CLOSED

    with pytest.raises(DependencyError):
        await caller.call(DependencyKind.OCR, op)
    assert registry.get("ocr").state is BreakerState.OPEN

    with pytest.raises(DegradedServiceError):
        await caller.call(DependencyKind.OCR, op)
    assert calls["count"] == 8
    assert registry.snapshot()["ocr"]["state"] == "open"


@pytest.mark.asyncio
async def test_registry_isolates_dependencies(clock):
    registry = BreakerRegistry(failure_threshold=1, clock=clock)
    registry.get(DependencyKind.OCR).record_failure()
    assert registry.get(DependencyKind.OCR).state is BreakerState.OPEN
    assert registry.get(DependencyKind.TRANSCRIPTION).state is BreakerState.CLOSED
    registry.reset()
    assert registry.get(DependencyKind.OCR).state is BreakerState.CLOSED


def test_deadline_tracks_remaining_budget(clock):
    deadline = Deadline(3.0, clock=clock)
    assert deadline.remaining() == 3.0
    clock.advance(2.5)
    assert deadline.remaining() == pytest.approx(0.5)
    deadline.check("url-trust")
    clock.advance(1)
    assert deadline.expired
    with pytest.raises(DeadlineExceededError):
        deadline.check("url-trust")
