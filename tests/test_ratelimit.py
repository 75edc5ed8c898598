import pytest

from vh_gateway.ratelimit import RateLimiter, parse_rate_limit


class Clock:
    def __init__(self):
        self.t = 0.0

    def __call__(self):
        return self.t


@pytest.mark.parametrize(
    "spec,expected",
    [("60/m", (60.0, 1.0)), ("10/s", (10.0, 10.0)), ("3600/hour", (3600.0, 1.0)), (" 30/MIN ", (30.0, 0.5))],
)
def test_parse_rate_limit(spec, expected):
    assert parse_rate_limit(spec) == expected


@pytest.mark.parametrize("spec", ["", "60", "0/m", "-1/s", "5/fortnight", "x/m"])
def test_parse_rate_limit_rejects(spec):
    with pytest.raises(ValueError):
        parse_rate_limit(spec)


def test_bucket_refills_over_time():
    clock = Clock()
    limiter = RateLimiter(capacity=2, refill_rate_per_sec=1.0, clock=clock)
    assert limiter.allow("ip:a")
    assert limiter.allow("ip:a")
    assert not limiter.allow("ip:a")
    assert limiter.retry_after("ip:a") == 1
    assert limiter.allow("ip:b")

    clock.t += 1.0
    assert limiter.allow("ip:a")
    assert not limiter.allow("ip:a")


def test_full_table_drops_idle_buckets_first():
    clock = Clock()
    limiter = RateLimiter(capacity=1, refill_rate_per_sec=1.0, max_keys=2, clock=clock)
    assert limiter.allow("a")
    assert limiter.allow("b")
    # Both buckets are drained: nothing can be dropped yet.
    assert not limiter.allow("c")

    clock.t += 5.0
    assert limiter.allow("c")
    assert len(limiter) == 1
