import asyncio

import pytest

from core.circuit_breaker import BreakerState, CircuitBreakerRegistry, ProviderCircuitBreaker
from core.exceptions import CircuitBreakerOpenError
from core.models import CircuitBreakerPolicy

POLICY = CircuitBreakerPolicy(failure_threshold=2, recovery_timeout=10.0)


async def fail():
    raise RuntimeError("fail")


async def ok():
    return "ok"


async def trip(breaker):
    for _ in range(POLICY.failure_threshold):
        with pytest.raises(RuntimeError):
            await breaker.call(fail, POLICY)


@pytest.mark.asyncio
async def test_circuit_breaker_opens_and_refuses_without_calling(clock):
    breaker = ProviderCircuitBreaker("X", clock=clock)
    await trip(breaker)

    calls = 0

    async def counted():
        nonlocal calls
        calls += 1
        return "ok"

    with pytest.raises(CircuitBreakerOpenError) as exc_info:
        await breaker.call(counted, POLICY)

    assert breaker.state == BreakerState.OPEN.value
    assert calls == 0
    assert exc_info.value.retry_after == pytest.approx(10.0)


@pytest.mark.asyncio
async def test_success_decrements_failure_count(clock):
    breaker = ProviderCircuitBreaker("X", clock=clock)
    policy = CircuitBreakerPolicy(failure_threshold=5)

    for _ in range(3):
        with pytest.raises(RuntimeError):
            await breaker.call(fail, policy)
    await breaker.call(ok, policy)

    assert breaker.failure_count == 2
    assert breaker.state == "closed"

    for _ in range(5):
        await breaker.call(ok, policy)
    assert breaker.failure_count == 0


@pytest.mark.asyncio
async def test_half_open_after_recovery_lets_one_probe_through(clock):
    breaker = ProviderCircuitBreaker("X", clock=clock)
    await trip(breaker)
    clock.advance(10.0)

    probe_started = asyncio.Event()
    release_probe = asyncio.Event()

    async def slow_probe():
        probe_started.set()
        await release_probe.wait()
        return "probe"

    probe = asyncio.create_task(breaker.call(slow_probe, POLICY))
    await probe_started.wait()

    assert breaker.state == "half_open"
    with pytest.raises(CircuitBreakerOpenError):
        await breaker.call(ok, POLICY)

    release_probe.set()
    assert await probe == "probe"
    assert breaker.state == "closed"
    assert breaker.failure_count == 0


@pytest.mark.asyncio
async def test_failed_probe_reopens_with_fresh_deadline(clock):
    breaker = ProviderCircuitBreaker("X", clock=clock)
    await trip(breaker)
    clock.advance(10.0)

    with pytest.raises(RuntimeError):
        await breaker.call(fail, POLICY)

    assert breaker.state == "open"
    clock.advance(9.0)
    with pytest.raises(CircuitBreakerOpenError):
        await breaker.call(ok, POLICY)
    clock.advance(1.0)
    assert await breaker.call(ok, POLICY) == "ok"


async def start_half_open_trial(breaker, clock):
    """Trip the breaker, wait out recovery and hold the single trial attempt open."""
    await trip(breaker)
    clock.advance(10.0)
    started = asyncio.Event()
    finish = asyncio.Event()

    async def trial():
        started.set()
        await finish.wait()
        return "trial"

    task = asyncio.create_task(breaker.call(trial, POLICY))
    await started.wait()
    return task, finish


@pytest.mark.asyncio
async def test_late_success_from_closed_attempt_does_not_close_half_open(clock):
    breaker = ProviderCircuitBreaker("X", clock=clock)
    started = asyncio.Event()
    finish = asyncio.Event()

    async def straggler():
        started.set()
        await finish.wait()
        return "late"

    late = asyncio.create_task(breaker.call(straggler, POLICY))
    await started.wait()
    trial, finish_trial = await start_half_open_trial(breaker, clock)

    finish.set()
    assert await late == "late"

    assert breaker.state == "half_open"
    with pytest.raises(CircuitBreakerOpenError):
        await breaker.call(ok, POLICY)

    finish_trial.set()
    assert await trial == "trial"
    assert breaker.state == "closed"


@pytest.mark.asyncio
async def test_late_failure_from_closed_attempt_does_not_reopen_half_open(clock):
    breaker = ProviderCircuitBreaker("X", clock=clock)
    started = asyncio.Event()
    finish = asyncio.Event()

    async def straggler():
        started.set()
        await finish.wait()
        raise RuntimeError("late failure")

    late = asyncio.create_task(breaker.call(straggler, POLICY))
    await started.wait()
    trial, finish_trial = await start_half_open_trial(breaker, clock)

    finish.set()
    with pytest.raises(RuntimeError):
        await late

    assert breaker.state == "half_open"
    with pytest.raises(CircuitBreakerOpenError):
        await breaker.call(ok, POLICY)

    finish_trial.set()
    await trial
    assert breaker.state == "closed"
    assert breaker.failure_count == 0


@pytest.mark.asyncio
async def test_admit_token_marks_only_the_half_open_attempt(clock):
    breaker = ProviderCircuitBreaker("X", clock=clock)

    assert await breaker.admit() is False
    await breaker.release(False)

    await trip(breaker)
    clock.advance(10.0)
    assert await breaker.admit() is True
    with pytest.raises(CircuitBreakerOpenError):
        await breaker.admit()

    await breaker.release(True)
    assert await breaker.call(ok, POLICY) == "ok"
    assert breaker.state == "closed"


@pytest.mark.asyncio
async def test_status_reports_next_attempt_only_when_open(clock):
    breaker = ProviderCircuitBreaker("X", clock=clock)

    assert breaker.status() == {"state": "closed", "failure_count": 0}

    await trip(breaker)
    status = breaker.status()
    assert status["state"] == "open"
    assert status["failure_count"] == 2
    assert "next_attempt_time" in status


@pytest.mark.asyncio
async def test_cancelled_probe_frees_the_slot(clock):
    breaker = ProviderCircuitBreaker("X", clock=clock)
    await trip(breaker)
    clock.advance(10.0)

    started = asyncio.Event()

    async def hang():
        started.set()
        await asyncio.sleep(3600)

    task = asyncio.create_task(breaker.call(hang, POLICY))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert await breaker.call(ok, POLICY) == "ok"
    assert breaker.state == "closed"


@pytest.mark.asyncio
async def test_protect_stream_records_outcome_once(clock):
    breaker = ProviderCircuitBreaker("X", clock=clock)

    async def broken_stream():
        yield "a"
        yield "b"
        raise RuntimeError("mid-stream")

    received = []
    with pytest.raises(RuntimeError):
        async for item in breaker.protect_stream(broken_stream, POLICY):
            received.append(item)

    assert received == ["a", "b"]
    assert breaker.failure_count == 1


@pytest.mark.asyncio
async def test_registry_reset(clock):
    registry = CircuitBreakerRegistry(clock=clock)
    breaker = registry.get("X")
    await trip(breaker)

    await registry.reset("X")

    assert registry.get("X") is breaker
    assert breaker.status() == {"state": "closed", "failure_count": 0}
