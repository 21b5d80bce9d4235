from __future__ import annotations

import logging

import pytest

from meridian.app.resilience.circuit import CircuitBreaker, CircuitSettings
from meridian.app.resilience.contracts import CircuitState, ErrorCategory
from retrieval_fakes import ManualClock


def _breaker(clock: ManualClock, **overrides: float) -> CircuitBreaker:
    settings = CircuitSettings(
        failure_threshold=int(overrides.pop("failure_threshold", 3)),
        **overrides,
    )
    return CircuitBreaker("hosted_index", settings, clock=clock)


async def _fail(breaker: CircuitBreaker, times: int) -> list[bool]:
    return [await breaker.record_failure(ErrorCategory.TRANSIENT) for _ in range(times)]


@pytest.mark.asyncio
async def test_opens_after_threshold_consecutive_failures(clock: ManualClock) -> None:
    breaker = _breaker(clock)

    opened = await _fail(breaker, 3)

    assert opened == [False, False, True]
    snapshot = breaker.snapshot()
    assert snapshot.state == CircuitState.OPEN
    assert snapshot.opened_at == clock.now
    assert snapshot.last_failure_category == ErrorCategory.TRANSIENT


@pytest.mark.asyncio
async def test_open_circuit_rejects_until_cooldown(clock: ManualClock) -> None:
    breaker = _breaker(clock, cooldown_seconds=30.0)
    await _fail(breaker, 3)

    clock.advance(29.0)
    rejected = await breaker.acquire()
    clock.advance(1.0)
    probe = await breaker.acquire()

    assert rejected.allowed is False
    assert probe.allowed is True
    assert probe.is_probe is True
    assert breaker.state == CircuitState.HALF_OPEN


@pytest.mark.asyncio
async def test_half_open_admits_a_single_probe(clock: ManualClock) -> None:
    breaker = _breaker(clock)
    await _fail(breaker, 3)
    clock.advance(30.0)

    first = await breaker.acquire()
    second = await breaker.acquire()

    assert first.allowed is True
    assert second.allowed is False
    assert second.state == CircuitState.OPEN


@pytest.mark.asyncio
async def test_probe_success_closes_and_resets(clock: ManualClock) -> None:
    breaker = _breaker(clock)
    await _fail(breaker, 3)
    clock.advance(30.0)
    await breaker.acquire()

    await breaker.record_success()

    snapshot = breaker.snapshot()
    assert snapshot.state == CircuitState.CLOSED
    assert snapshot.consecutive_failures == 0
    assert snapshot.opened_at is None
    assert snapshot.cooldown_seconds == 30.0


@pytest.mark.asyncio
async def test_probe_failure_reopens_with_longer_cooldown(clock: ManualClock) -> None:
    breaker = _breaker(clock, cooldown_seconds=30.0, max_cooldown_seconds=50.0)
    await _fail(breaker, 3)
    clock.advance(30.0)
    await breaker.acquire()

    reopened = await breaker.record_failure(ErrorCategory.TRANSIENT)

    assert reopened is True
    assert breaker.state == CircuitState.OPEN
    assert breaker.snapshot().cooldown_seconds == 50.0
    assert breaker.snapshot().opened_at == clock.now

    clock.advance(49.0)
    assert (await breaker.acquire()).allowed is False


@pytest.mark.asyncio
async def test_failures_outside_window_reset_the_streak(clock: ManualClock) -> None:
    breaker = _breaker(clock, window_seconds=60.0)
    await _fail(breaker, 2)

    clock.advance(61.0)
    opened = await _fail(breaker, 2)

    assert opened == [False, False]
    assert breaker.state == CircuitState.CLOSED
    assert breaker.snapshot().consecutive_failures == 2


@pytest.mark.asyncio
async def test_evenly_spaced_failures_never_fill_the_window(clock: ManualClock) -> None:
    breaker = _breaker(clock, failure_threshold=5, window_seconds=60.0)

    opened: list[bool] = []
    for _ in range(5):
        opened.extend(await _fail(breaker, 1))
        clock.advance(50.0)

    assert opened == [False] * 5
    assert breaker.state == CircuitState.CLOSED
    assert breaker.snapshot().consecutive_failures == 2


@pytest.mark.asyncio
async def test_failures_inside_window_open_the_circuit(clock: ManualClock) -> None:
    breaker = _breaker(clock, window_seconds=60.0)

    opened: list[bool] = []
    for _ in range(3):
        opened.extend(await _fail(breaker, 1))
        clock.advance(25.0)

    assert opened == [False, False, True]
    assert breaker.state == CircuitState.OPEN


@pytest.mark.asyncio
async def test_success_in_closed_state_resets_counter(clock: ManualClock) -> None:
    breaker = _breaker(clock)
    await _fail(breaker, 2)

    await breaker.record_success()
    opened = await _fail(breaker, 2)

    assert opened == [False, False]
    assert breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_release_probe_allows_another_probe(clock: ManualClock) -> None:
    breaker = _breaker(clock)
    await _fail(breaker, 3)
    clock.advance(30.0)
    await breaker.acquire()

    await breaker.release_probe()

    assert (await breaker.acquire()).allowed is True


@pytest.mark.asyncio
async def test_reset_returns_to_closed(clock: ManualClock) -> None:
    breaker = _breaker(clock)
    await _fail(breaker, 3)

    await breaker.reset()

    assert breaker.state == CircuitState.CLOSED
    assert (await breaker.acquire()).allowed is True


@pytest.mark.asyncio
async def test_transitions_are_logged(clock: ManualClock, caplog) -> None:
    breaker = _breaker(clock)

    with caplog.at_level(logging.WARNING):
        await _fail(breaker, 3)

    assert any(
        "circuit_transition backend=hosted_index from=closed to=open" in message
        for message in caplog.messages
    )
