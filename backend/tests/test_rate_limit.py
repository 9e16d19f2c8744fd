from __future__ import annotations

import time

import pytest
from starlette.requests import Request

from app.rate_limit import (
    TIERS,
    RateLimiter,
    SlidingWindowLimiter,
    extract_client_ip,
    strip_port,
)


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_limiter(clock: FakeClock) -> RateLimiter:
    return RateLimiter(clock=clock, wall_clock=lambda: 1_700_000_000.0)


def test_strict_tier_allows_burst_then_denies_with_retry_after() -> None:
    limiter = make_limiter(FakeClock())
    results = [limiter.check_ip("10.0.0.1", "strict") for _ in range(4)]

    assert [item.allowed for item in results] == [True, True, True, False]
    denied = results[-1]
    assert denied.retry_after_s >= 1
    assert denied.remaining == 0
    assert denied.limit == TIERS["strict"].burst
    assert denied.headers()["Retry-After"] == str(denied.retry_after_s)


def test_denied_request_does_not_consume_tokens() -> None:
    clock = FakeClock()
    limiter = make_limiter(clock)
    for _ in range(3):
        limiter.check_ip("10.0.0.1", "strict")
    for _ in range(5):
        assert limiter.check_ip("10.0.0.1", "strict").allowed is False

    clock.advance(12.1)
    assert limiter.check_ip("10.0.0.1", "strict").allowed is True


def test_buckets_are_isolated_per_ip_and_tier() -> None:
    limiter = make_limiter(FakeClock())
    for _ in range(3):
        assert limiter.check_ip("10.0.0.1", "strict").allowed is True
    assert limiter.check_ip("10.0.0.1", "strict").allowed is False

    assert limiter.check_ip("10.0.0.2", "strict").allowed is True
    assert limiter.check_ip("10.0.0.1", "moderate").allowed is True
    assert limiter.check_ip("10.0.0.1", "normal").allowed is True


def test_normal_tier_refills_within_one_point_two_seconds() -> None:
    clock = FakeClock()
    limiter = make_limiter(clock)
    for _ in range(10):
        assert limiter.check_ip("10.0.0.9", "normal").allowed is True
    assert limiter.check_ip("10.0.0.9", "normal").allowed is False

    clock.advance(1.2)
    assert limiter.check_ip("10.0.0.9", "normal").allowed is True


def test_unknown_tier_falls_back_to_normal() -> None:
    limiter = make_limiter(FakeClock())
    info = limiter.check_ip("10.0.0.1", "does-not-exist")
    assert info.allowed is True
    assert info.limit == TIERS["normal"].burst


def test_sweep_evicts_idle_buckets_only() -> None:
    clock = FakeClock()
    limiter = make_limiter(clock)
    limiter.check_ip("10.0.0.1", "strict")
    clock.advance(500)
    limiter.check_ip("10.0.0.2", "moderate")
    clock.advance(200)

    assert limiter.sweep() == 1
    stats = limiter.stats()
    assert stats["strict"] == 0
    assert stats["moderate"] == 1


def test_sweeper_thread_starts_and_stops() -> None:
    limiter = RateLimiter()
    limiter.start_sweeper(0.01)
    assert limiter._sweeper is not None and limiter._sweeper.is_alive()
    limiter.stop_sweeper()
    assert limiter._sweeper is None


@pytest.mark.parametrize(
    ("remote_addr", "expected"),
    [
        ("192.168.1.20:54321", "192.168.1.20"),
        ("192.168.1.20", "192.168.1.20"),
        ("[::1]:8080", "::1"),
        ("::1", "::1"),
        ("2001:db8::5", "2001:db8::5"),
        ("", ""),
    ],
)
def test_strip_port(remote_addr: str, expected: str) -> None:
    assert strip_port(remote_addr) == expected


def test_proxy_headers_ignored_without_trust_proxy() -> None:
    headers = {"x-forwarded-for": "1.1.1.1", "x-real-ip": "2.2.2.2", "cf-connecting-ip": "3.3.3.3"}
    assert extract_client_ip(headers, "10.0.0.5:1234", trust_proxy=False) == "10.0.0.5"


def test_proxy_header_precedence_with_trust_proxy() -> None:
    remote = "[::1]:4000"
    assert (
        extract_client_ip(
            {"cf-connecting-ip": "3.3.3.3", "x-real-ip": "2.2.2.2", "x-forwarded-for": "1.1.1.1"},
            remote,
            trust_proxy=True,
        )
        == "3.3.3.3"
    )
    assert extract_client_ip({"x-real-ip": "2.2.2.2", "x-forwarded-for": "1.1.1.1"}, remote, trust_proxy=True) == "2.2.2.2"
    assert extract_client_ip({"x-forwarded-for": "1.1.1.1, 9.9.9.9"}, remote, trust_proxy=True) == "1.1.1.1"
    assert extract_client_ip({}, remote, trust_proxy=True) == "::1"


def test_sliding_window_limiter_counts_per_key() -> None:
    clock = FakeClock()
    limiter = SlidingWindowLimiter(limit=2, window_seconds=3600, clock=clock)

    assert limiter.consume(key="a").allowed is True
    assert limiter.consume(key="a").allowed is True
    denied = limiter.consume(key="a")
    assert denied.allowed is False
    assert "max 2 generations per hour" in (denied.message or "")
    assert limiter.consume(key="b").allowed is True

    clock.advance(3601)
    assert limiter.consume(key="a").allowed is True


def test_sliding_window_sweep_drops_expired_keys() -> None:
    clock = FakeClock()
    limiter = SlidingWindowLimiter(limit=3, window_seconds=3600, clock=clock)
    for index in range(1000):
        limiter.consume(key=f"198.51.100.{index}")
    assert limiter.tracked_keys() == 1000

    clock.advance(1800)
    limiter.consume(key="fresh")
    assert limiter.sweep() == 0

    clock.advance(1801)
    assert limiter.sweep() == 1000
    assert limiter.tracked_keys() == 1
    assert limiter.consume(key="fresh").remaining == 1


def test_sweeper_thread_also_sweeps_registered_limiters() -> None:
    clock = FakeClock()
    generation = SlidingWindowLimiter(limit=3, window_seconds=60, clock=clock)
    generation.consume(key="203.0.113.1")
    clock.advance(61)

    limiter = make_limiter(FakeClock())
    limiter.register(generation)
    limiter.start_sweeper(0.01)
    try:
        for _ in range(200):
            if generation.tracked_keys() == 0:
                break
            time.sleep(0.01)
    finally:
        limiter.stop_sweeper()
    assert generation.tracked_keys() == 0


def test_allow_returns_decision_and_retry_after_for_request() -> None:
    limiter = make_limiter(FakeClock())
    request = Request(
        {
            "type": "http",
            "method": "POST",
            "path": "/api/password/check",
            "headers": [(b"x-real-ip", b"203.0.113.5")],
            "client": ("10.0.0.9", 5000),
        }
    )

    decisions = [limiter.allow(request, "strict") for _ in range(4)]
    assert decisions[:3] == [(True, 0), (True, 0), (True, 0)]
    allowed, retry_after = decisions[3]
    assert allowed is False
    assert 1 <= retry_after <= 60
    assert limiter.check_ip("10.0.0.9", "strict").allowed is False
    assert limiter.check_ip("203.0.113.5", "strict").allowed is True
