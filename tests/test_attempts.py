from datetime import timedelta

import pytest

from loanease.service.attempts import AttemptLimiter, attempt_key
from loanease.service.clock import FrozenClock
from loanease.service.runtime import check_rate_limit, get_runtime, reset_runtime_for_tests


@pytest.fixture
def limiter(settings, clock):
    return AttemptLimiter(settings, clock=clock)


def test_attempt_key_normalizes_email():
    assert attempt_key(" User@Example.COM ", "10.0.0.1") == "user@example.com|10.0.0.1"
    assert attempt_key("user@example.com", None) == "user@example.com|unknown"


class TestAttemptLimiter:
    async def test_locks_out_at_the_limit(self, limiter, settings):
        key = attempt_key("user@example.com", "10.0.0.1")
        for expected in range(1, settings.max_login_attempts):
            locked, attempts = await limiter.record_failure(key)
            assert (locked, attempts) == (False, expected)

        locked, attempts = await limiter.record_failure(key)
        assert locked is True
        assert attempts == settings.max_login_attempts
        assert await limiter.lockout_remaining(key) == settings.lockout_duration_minutes * 60

    async def test_failure_while_locked(self, limiter, settings):
        key = "user@example.com|10.0.0.1"
        for _ in range(settings.max_login_attempts):
            await limiter.record_failure(key)
        assert await limiter.record_failure(key) == (True, -1)

    async def test_lockout_expires(self, limiter, clock, settings):
        key = "user@example.com|10.0.0.1"
        for _ in range(settings.max_login_attempts):
            await limiter.record_failure(key)
        clock.advance(timedelta(minutes=settings.lockout_duration_minutes))
        assert await limiter.lockout_remaining(key) == 0
        assert await limiter.record_failure(key) == (False, 1)

    async def test_window_resets_the_count(self, limiter, clock, settings):
        key = "user@example.com|10.0.0.1"
        await limiter.record_failure(key)
        clock.advance(timedelta(minutes=settings.attempt_window_minutes))
        assert await limiter.record_failure(key) == (False, 1)

    async def test_clear_forgets_failures(self, limiter):
        key = "user@example.com|10.0.0.1"
        await limiter.record_failure(key)
        await limiter.clear(key)
        assert await limiter.record_failure(key) == (False, 1)

    async def test_keys_are_independent(self, limiter, settings):
        for _ in range(settings.max_login_attempts):
            await limiter.record_failure("a@example.com|1.1.1.1")
        assert await limiter.lockout_remaining("a@example.com|2.2.2.2") == 0


class TestLocalRateLimit:
    async def test_budget_then_refusal(self):
        runtime = get_runtime()
        for _ in range(3):
            assert await check_rate_limit(runtime, "2fa:send:user-1", 3, 60) is True
        allowed, remaining, reset_seconds = await check_rate_limit(
            runtime, "2fa:send:user-1", 3, 60, return_remaining=True
        )
        assert allowed is False
        assert remaining == 0
        assert reset_seconds > 0

    async def test_zero_limit_disables_checks(self):
        runtime = get_runtime()
        assert await check_rate_limit(runtime, "anything", 0, 60) is True

    async def test_refill_follows_runtime_clock(self):
        clock = FrozenClock()
        runtime = reset_runtime_for_tests(clock=clock)
        for _ in range(2):
            assert await check_rate_limit(runtime, "reset:a@example.com", 2, 60) is True
        assert await check_rate_limit(runtime, "reset:a@example.com", 2, 60) is False

        clock.advance(timedelta(seconds=31))
        assert await check_rate_limit(runtime, "reset:a@example.com", 2, 60) is True

    async def test_refilled_buckets_are_pruned(self):
        clock = FrozenClock()
        runtime = reset_runtime_for_tests(clock=clock)
        for n in range(50):
            await check_rate_limit(runtime, f"reset:user-{n}@example.com", 5, 60)
        assert len(runtime._local_rate_limits) == 50

        clock.advance(timedelta(seconds=61))
        await check_rate_limit(runtime, "reset:latest@example.com", 5, 60)
        assert list(runtime._local_rate_limits) == ["reset:latest@example.com"]
