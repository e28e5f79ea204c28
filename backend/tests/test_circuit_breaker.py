import time

import anyio
import pytest

from taskhub.shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError


class ProcessorDown(RuntimeError):
    pass


def _decline():
    raise ProcessorDown("authorize_failed")


async def _fail(breaker: CircuitBreaker, times: int) -> None:
    for _ in range(times):
        with pytest.raises(ProcessorDown):
            await breaker.call(_decline)


@pytest.mark.anyio
async def test_breaker_trips_at_threshold_and_rejects_without_calling():
    breaker = CircuitBreaker(name="processor", failure_threshold=3, recovery_time=60)
    calls = []

    await _fail(breaker, 2)
    assert breaker.state == "closed"
    await _fail(breaker, 1)
    assert breaker.state == "open"

    with pytest.raises(CircuitBreakerOpenError):
        await breaker.call(lambda: calls.append("charged"))
    assert calls == []


@pytest.mark.anyio
async def test_failures_outside_the_window_do_not_count():
    breaker = CircuitBreaker(name="processor", failure_threshold=2, window_seconds=0.05)

    await _fail(breaker, 1)
    await anyio.sleep(0.08)
    await _fail(breaker, 1)

    assert breaker.state == "closed"


@pytest.mark.anyio
async def test_success_after_recovery_closes_and_failure_reopens():
    breaker = CircuitBreaker(name="processor", failure_threshold=1, recovery_time=0.05)
    await _fail(breaker, 1)

    await anyio.sleep(0.08)
    assert await breaker.call(lambda: "pi_123") == "pi_123"
    assert breaker.state == "closed"

    await _fail(breaker, 1)
    await anyio.sleep(0.08)
    await _fail(breaker, 1)
    assert breaker.state == "open"


@pytest.mark.anyio
async def test_half_open_limits_concurrent_trial_calls():
    breaker = CircuitBreaker(name="processor", failure_threshold=1, recovery_time=0.01, half_open_max_calls=1)
    await _fail(breaker, 1)
    await anyio.sleep(0.03)
    release = anyio.Event()
    outcomes: list[str] = []

    async def slow_trial() -> str:
        await release.wait()
        return "ok"

    async def trial() -> None:
        outcomes.append(await breaker.call(slow_trial))

    async with anyio.create_task_group() as tg:
        tg.start_soon(trial)
        await anyio.sleep(0.01)
        with pytest.raises(CircuitBreakerOpenError):
            await breaker.call(lambda: "second")
        release.set()

    assert outcomes == ["ok"]
    assert breaker.state == "closed"


@pytest.mark.anyio
async def test_slow_call_times_out_and_counts_as_failure():
    breaker = CircuitBreaker(name="processor", failure_threshold=1, recovery_time=1.0, timeout_seconds=0.01)

    with pytest.raises(TimeoutError):
        await breaker.call(lambda: anyio.to_thread.run_sync(time.sleep, 0.05))

    assert breaker.state == "open"
