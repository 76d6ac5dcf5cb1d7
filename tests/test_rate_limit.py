import threading

from services.rate_limit import _FixedWindowLimiter


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


def test_allows_up_to_limit_then_blocks():
    clock = FakeClock()
    limiter = _FixedWindowLimiter(5, 60, clock=clock)
    assert [limiter.allow("a") for _ in range(6)] == [True] * 5 + [False]


def test_window_resets_after_expiry():
    clock = FakeClock(100.0)
    limiter = _FixedWindowLimiter(2, 60, clock=clock)
    limiter.allow("a")
    limiter.allow("a")
    assert limiter.allow("a") is False

    clock.now = 159.9
    assert limiter.allow("a") is False
    clock.now = 160.0
    assert limiter.allow("a") is True


def test_keys_are_independent():
    limiter = _FixedWindowLimiter(1, 60, clock=FakeClock())
    assert limiter.allow("a") is True
    assert limiter.allow("b") is True
    assert limiter.allow("a") is False


def test_concurrent_requests_never_exceed_limit():
    limiter = _FixedWindowLimiter(5, 60, clock=FakeClock())
    results = []
    lock = threading.Lock()

    def hit():
        allowed = limiter.allow("tok")
        with lock:
            results.append(allowed)

    threads = [threading.Thread(target=hit) for _ in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert results.count(True) == 5
