import asyncio

from agent import rate_limit
from agent.rate_limit import RateLimiter, get_rate_limiter
from config import rate_limit_settings


def make_limiter(clock, **kw):
    settings = {"tokens_per_minute": 1000, "requests_per_minute": 50, "max_wait_attempts": 3, "min_wait_ms": 1000}
    settings.update(kw)
    return RateLimiter(clock=clock, sleep=clock.sleep, **settings)


def test_under_budget_is_allowed_without_waiting(clock):
    limiter = make_limiter(clock)
    limiter.record_usage(200)
    assert asyncio.run(limiter.check_rate_limit(300)) is True
    assert clock.sleeps == []


def test_waits_until_oldest_usage_ages_out(clock):
    limiter = make_limiter(clock)
    limiter.record_usage(800)
    clock.advance(10)

    assert asyncio.run(limiter.check_rate_limit(300)) is True
    assert clock.sleeps == [50.0]


def test_wait_time_frees_just_enough_budget(clock):
    limiter = make_limiter(clock)
    limiter.record_usage(400)
    clock.advance(5)
    limiter.record_usage(400)
    clock.advance(5)
    # Needs 100 tokens freed: only the first record has to expire
    assert limiter.calculate_wait_time(300) == 50000
    # Needs 500 tokens freed: both records have to expire
    assert limiter.calculate_wait_time(700) == 55000


def test_small_wait_is_skipped(clock):
    limiter = make_limiter(clock)
    limiter.record_usage(800)
    clock.advance(59.5)
    assert asyncio.run(limiter.check_rate_limit(300)) is True
    assert clock.sleeps == []


def test_request_cap_is_enforced(clock):
    limiter = make_limiter(clock, requests_per_minute=2)
    limiter.record_usage(10)
    clock.advance(1)
    limiter.record_usage(10)
    clock.advance(1)

    assert asyncio.run(limiter.check_rate_limit(10)) is True
    assert clock.sleeps == [58.0]


def test_fails_open_after_max_wait_attempts(clock):
    waits = []

    async def stuck_sleep(seconds):
        waits.append(seconds)

    limiter = RateLimiter(tokens_per_minute=1000, max_wait_attempts=2, clock=clock, sleep=stuck_sleep)
    limiter.record_usage(1000)
    assert asyncio.run(limiter.check_rate_limit(500)) is True
    assert len(waits) == 2


def test_window_never_exceeds_budget_by_more_than_one_request(clock):
    limiter = make_limiter(clock)
    for _ in range(20):
        asyncio.run(limiter.check_rate_limit(300))
        limiter.record_usage(300)
        assert limiter.get_current_usage().tokens <= 1000 + 300
        clock.advance(2)


def test_current_usage_report(clock):
    limiter = make_limiter(clock)
    limiter.record_usage(250)
    clock.advance(20)
    usage = limiter.get_current_usage()
    assert usage.tokens == 250
    assert usage.requests == 1
    assert usage.percent_used == 25
    assert usage.time_until_reset == 40000


def test_reset_and_update_config(clock):
    limiter = make_limiter(clock)
    limiter.record_usage(900)
    limiter.reset()
    assert limiter.get_current_usage().tokens == 0
    limiter.update_config(tokens_per_minute=5000, requests_per_minute=7)
    assert limiter.tokens_per_minute == 5000
    assert limiter.requests_per_minute == 7
    assert limiter.burst_threshold == 4000


def test_cancel_releases_waiters(clock):
    async def scenario():
        limiter = RateLimiter(tokens_per_minute=100, max_wait_attempts=1, clock=clock,
                              sleep=lambda s: asyncio.sleep(3600))
        limiter.record_usage(100)
        task = asyncio.ensure_future(limiter.check_rate_limit(50, "req-1"))
        for _ in range(3):
            await asyncio.sleep(0)
        limiter.cancel_waiting_requests()
        return await asyncio.wait_for(task, timeout=5)

    assert asyncio.run(scenario()) is True


def test_cancelled_wait_does_not_wait_again(clock):
    sleeps = []

    async def scenario():
        async def long_sleep(seconds):
            sleeps.append(seconds)
            await asyncio.sleep(3600)

        limiter = RateLimiter(tokens_per_minute=100, max_wait_attempts=5, clock=clock, sleep=long_sleep)
        limiter.record_usage(100)
        task = asyncio.ensure_future(limiter.check_rate_limit(50, "req-2"))
        for _ in range(5):
            await asyncio.sleep(0)
        limiter.cancel_waiting_requests()
        return await asyncio.wait_for(task, timeout=5)

    assert asyncio.run(scenario()) is True
    assert len(sleeps) == 1


def test_default_limiter_is_shared(monkeypatch):
    monkeypatch.setattr(rate_limit, "_default_limiter", None)
    limiter = get_rate_limiter()
    assert get_rate_limiter() is limiter
    assert limiter.tokens_per_minute == rate_limit_settings.tokens_per_minute
    assert limiter.max_wait_attempts == rate_limit_settings.max_wait_attempts
