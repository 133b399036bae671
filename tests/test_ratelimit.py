import pytest

from arshooter.errors import RateLimitError
from arshooter.ratelimit import RateLimiter


class FakeTime:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


def test_allows_up_to_max_requests_per_window():
    clock = FakeTime()
    limiter = RateLimiter(max_requests=3, window_seconds=60, time_fn=clock)

    assert [limiter.allow("ip") for _ in range(4)] == [True, True, True, False]
    # Other keys have their own budget.
    assert limiter.allow("other-ip")


def test_window_slides():
    clock = FakeTime()
    limiter = RateLimiter(max_requests=2, window_seconds=10, time_fn=clock)

    assert limiter.allow("k")
    clock.now += 4
    assert limiter.allow("k")
    assert not limiter.allow("k")

    clock.now += 6  # first hit leaves the window
    assert limiter.allow("k")
    assert not limiter.allow("k")


def test_retry_after_counts_down():
    clock = FakeTime()
    limiter = RateLimiter(max_requests=1, window_seconds=30, time_fn=clock)

    assert limiter.retry_after("k") == 0
    clock.now += 10
    assert limiter.retry_after("k") == pytest.approx(20)


def test_check_raises_with_whole_seconds():
    clock = FakeTime()
    limiter = RateLimiter(max_requests=1, window_seconds=30, time_fn=clock)
    limiter.check("k")
    clock.now += 0.5

    with pytest.raises(RateLimitError) as exc:
        limiter.check("k")
    assert exc.value.retry_after == 30
    assert exc.value.status_code == 429
    assert exc.value.to_dict()["retryAfter"] == 30


def test_reset():
    limiter = RateLimiter(max_requests=1, window_seconds=60, time_fn=FakeTime())
    assert limiter.allow("k")
    assert not limiter.allow("k")
    limiter.reset()
    assert limiter.allow("k")
