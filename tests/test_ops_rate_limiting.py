import pytest

from common.rate_limiter import FixedWindowRateLimiter, RateLimitError


def test_rate_limiting_blocks_after_limit():
    limiter = FixedWindowRateLimiter()
    limiter.check(key="submit_transaction:agent-1", limit=2, window_seconds=60)
    limiter.check(key="submit_transaction:agent-1", limit=2, window_seconds=60)

    with pytest.raises(RateLimitError) as e:
        limiter.check(key="submit_transaction:agent-1", limit=2, window_seconds=60)
    assert e.value.code == "rate_limited"
    assert e.value.data["count"] == 3


def test_keys_are_independent_and_resettable():
    limiter = FixedWindowRateLimiter()
    limiter.check(key="a", limit=1, window_seconds=60)
    limiter.check(key="b", limit=1, window_seconds=60)
    limiter.reset("a")
    limiter.check(key="a", limit=1, window_seconds=60)


def test_zero_limit_disables():
    limiter = FixedWindowRateLimiter()
    for _ in range(5):
        limiter.check(key="x", limit=0)
