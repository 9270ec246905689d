from __future__ import annotations

from pathlib import Path
import sys


ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(ROOT))

from replyflow.automation.rate_limiter import RateLimiter


class _FakeClock:
    def __init__(self, now_ms: float = 1_000_000.0) -> None:
        self.now_ms = now_ms

    def __call__(self) -> float:
        return self.now_ms


def test_allows_up_to_limit_then_rejects() -> None:
    clock = _FakeClock()
    limiter = RateLimiter(limit=3, window_ms=10_000, clock=clock)

    decisions = [limiter.allow("u1") for _ in range(3)]
    clock.now_ms += 2_500
    rejected = limiter.allow("u1")

    assert [decision.allowed for decision in decisions] == [True, True, True]
    assert [decision.remaining for decision in decisions] == [2, 1, 0]
    assert rejected.allowed is False
    assert rejected.remaining == 0
    assert rejected.retry_after == 8
    assert rejected.reset_at_ms == 1_010_000.0


def test_window_slides_and_rejections_are_not_counted() -> None:
    clock = _FakeClock()
    limiter = RateLimiter(limit=2, window_ms=1_000, clock=clock)
    limiter.allow("u1")
    clock.now_ms += 500
    limiter.allow("u1")
    assert limiter.allow("u1").allowed is False

    clock.now_ms += 500
    decision = limiter.allow("u1")

    assert decision.allowed is True
    assert decision.remaining == 0


def test_identities_are_independent() -> None:
    clock = _FakeClock()
    limiter = RateLimiter(limit=1, window_ms=1_000, clock=clock)

    assert limiter.allow("u1").allowed is True
    assert limiter.allow("u2").allowed is True
    assert limiter.allow("u1").allowed is False


def test_retry_after_is_at_least_one_second() -> None:
    clock = _FakeClock()
    limiter = RateLimiter(limit=1, window_ms=1_000, clock=clock)
    limiter.allow("u1")
    clock.now_ms += 999.9

    assert limiter.allow("u1").retry_after == 1


def test_headers_use_epoch_seconds() -> None:
    limiter = RateLimiter(limit=5, window_ms=60_000, clock=_FakeClock(1_700_000_000_000.0))

    headers = limiter.allow("u1").headers()

    assert headers == {
        "X-RateLimit-Limit": "5",
        "X-RateLimit-Remaining": "4",
        "X-RateLimit-Reset": "1700000060",
    }


def test_prune_idle_drops_expired_identities() -> None:
    clock = _FakeClock()
    limiter = RateLimiter(limit=1, window_ms=1_000, clock=clock)
    limiter.allow("u1")
    clock.now_ms += 600
    limiter.allow("u2")
    clock.now_ms += 500

    assert limiter.prune_idle() == 1
    assert limiter.allow("u1").allowed is True
    assert limiter.allow("u2").allowed is False


def test_allow_drops_expired_identities_once_registry_passes_threshold() -> None:
    clock = _FakeClock()
    limiter = RateLimiter(limit=5, window_ms=1_000, clock=clock, prune_threshold=100)
    for index in range(100):
        limiter.allow(f"owner:{index}")
    assert len(limiter) == 100

    clock.now_ms += 1_001
    decision = limiter.allow("owner:late")

    assert decision.allowed is True
    assert len(limiter) == 1


def test_registry_with_live_windows_grows_before_pruning_again() -> None:
    clock = _FakeClock()
    limiter = RateLimiter(limit=5, window_ms=1_000, clock=clock, prune_threshold=100)
    for index in range(150):
        limiter.allow(f"early:{index}")
    assert len(limiter) == 150

    clock.now_ms += 1_001
    for index in range(60):
        limiter.allow(f"late:{index}")

    assert len(limiter) == 60
    assert limiter.allow("early:0").remaining == 4
