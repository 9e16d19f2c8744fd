from __future__ import annotations

import ipaddress
import json
import logging
import math
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Callable, Mapping

from starlette.requests import Request

logger = logging.getLogger("meyaml.ratelimit")

BUCKET_IDLE_TTL_SECONDS = 10 * 60
DEFAULT_SWEEP_INTERVAL_SECONDS = 5 * 60


@dataclass(frozen=True)
class Tier:
    name: str
    rate_per_second: float
    burst: int


TIERS: dict[str, Tier] = {
    "strict": Tier("strict", 5 / 60, 3),
    "moderate": Tier("moderate", 10 / 60, 5),
    "normal": Tier("normal", 60 / 60, 10),
}
DEFAULT_TIER = "normal"


@dataclass
class Bucket:
    tokens: float
    last_refill: float
    last_access: float


@dataclass
class RateLimitInfo:
    allowed: bool
    limit: int
    remaining: int
    reset_epoch_s: int
    retry_after_s: int

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_epoch_s),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after_s)
        return headers


def strip_port(remote_addr: str) -> str:
    value = (remote_addr or "").strip()
    if not value:
        return ""

    if value.startswith("["):
        end = value.find("]")
        if end > 0:
            return value[1:end]
        return value

    try:
        ipaddress.ip_address(value)
        return value
    except ValueError:
        pass

    if value.count(":") == 1:
        host, _, port = value.partition(":")
        if port.isdigit():
            return host
    return value


def extract_client_ip(headers: Mapping[str, str], remote_addr: str, *, trust_proxy: bool) -> str:
    if trust_proxy:
        for header in ("cf-connecting-ip", "x-real-ip"):
            candidate = (headers.get(header) or "").strip()
            if candidate:
                return candidate

        forwarded = (headers.get("x-forwarded-for") or "").strip()
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first

    return strip_port(remote_addr) or "unknown"


def request_remote_addr(request: Request) -> str:
    client = request.client
    if client is None:
        return ""
    host = client.host or ""
    if ":" in host and not host.startswith("["):
        return f"[{host}]:{client.port}"
    return f"{host}:{client.port}"


class RateLimiter:
    """Per-(tier, ip) token buckets with idle-bucket reclamation."""

    def __init__(
        self,
        *,
        trust_proxy: bool = False,
        tiers: dict[str, Tier] | None = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        idle_ttl_seconds: float = BUCKET_IDLE_TTL_SECONDS,
    ) -> None:
        self.trust_proxy = trust_proxy
        self.tiers = dict(tiers or TIERS)
        self.idle_ttl_seconds = idle_ttl_seconds
        self._clock = clock
        self._wall_clock = wall_clock
        self._buckets: dict[tuple[str, str], Bucket] = {}
        self._lock = threading.Lock()
        self._stop_event: threading.Event | None = None
        self._sweeper: threading.Thread | None = None
        self._companions: list[SlidingWindowLimiter] = []

    def _tier(self, name: str) -> Tier:
        return self.tiers.get(name) or self.tiers[DEFAULT_TIER]

    def client_ip(self, request: Request) -> str:
        return extract_client_ip(request.headers, request_remote_addr(request), trust_proxy=self.trust_proxy)

    def _refill(self, bucket: Bucket, tier: Tier, now: float) -> None:
        elapsed = max(0.0, now - bucket.last_refill)
        bucket.tokens = min(float(tier.burst), bucket.tokens + elapsed * tier.rate_per_second)
        bucket.last_refill = now

    def check_ip(self, ip: str, tier_name: str) -> RateLimitInfo:
        tier = self._tier(tier_name)
        now = self._clock()
        with self._lock:
            key = (tier.name, ip)
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = Bucket(tokens=float(tier.burst), last_refill=now, last_access=now)
                self._buckets[key] = bucket

            self._refill(bucket, tier, now)
            bucket.last_access = now

            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                allowed = True
                retry_after = 0
            else:
                allowed = False
                delay = (1.0 - bucket.tokens) / tier.rate_per_second
                retry_after = max(1, math.ceil(delay))

            remaining = int(math.floor(bucket.tokens))
            seconds_to_full = (tier.burst - bucket.tokens) / tier.rate_per_second

        return RateLimitInfo(
            allowed=allowed,
            limit=tier.burst,
            remaining=max(0, remaining),
            reset_epoch_s=int(math.ceil(self._wall_clock() + seconds_to_full)),
            retry_after_s=retry_after,
        )

    def allow_with_info(self, request: Request, tier: str) -> RateLimitInfo:
        return self.check_ip(self.client_ip(request), tier)

    def allow(self, request: Request, tier: str) -> tuple[bool, int]:
        info = self.allow_with_info(request, tier)
        return info.allowed, info.retry_after_s

    def sweep(self, now: float | None = None) -> int:
        current = self._clock() if now is None else now
        with self._lock:
            stale = [
                key
                for key, bucket in self._buckets.items()
                if current - bucket.last_access > self.idle_ttl_seconds
            ]
            for key in stale:
                del self._buckets[key]
        if stale:
            logger.info(json.dumps({"event": "ratelimit.sweep", "evicted": len(stale)}, ensure_ascii=False))
        return len(stale)

    def register(self, limiter: SlidingWindowLimiter) -> None:
        """Sweep ``limiter`` on the same schedule as the token buckets."""
        self._companions.append(limiter)

    def stats(self) -> dict[str, int]:
        counts = {name: 0 for name in self.tiers}
        with self._lock:
            for tier_name, _ in self._buckets:
                counts[tier_name] = counts.get(tier_name, 0) + 1
        return counts

    def start_sweeper(self, interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS) -> None:
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        stop_event = threading.Event()

        def run() -> None:
            while not stop_event.wait(interval_seconds):
                self.sweep()
                for limiter in self._companions:
                    limiter.sweep()

        self._stop_event = stop_event
        self._sweeper = threading.Thread(target=run, name="ratelimit-sweeper", daemon=True)
        self._sweeper.start()

    def stop_sweeper(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=2)
        self._stop_event = None
        self._sweeper = None


@dataclass
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_seconds: int
    message: str | None = None


class SlidingWindowLimiter:
    def __init__(self, *, limit: int, window_seconds: int, clock: Callable[[], float] = time.time):
        self.limit = max(1, int(limit))
        self.window_seconds = max(1, int(window_seconds))
        self._hits: dict[str, deque[float]] = defaultdict(deque)
        self._clock = clock
        self._lock = threading.Lock()

    def consume(self, *, key: str) -> RateLimitDecision:
        now = self._clock()
        with self._lock:
            queue = self._hits[key]
            while queue and now - queue[0] > self.window_seconds:
                queue.popleft()

            if len(queue) >= self.limit:
                reset_seconds = int(max(1, self.window_seconds - (now - queue[0])))
                return RateLimitDecision(
                    allowed=False,
                    remaining=0,
                    reset_seconds=reset_seconds,
                    message=(
                        f"Rate limit exceeded. Please try again later "
                        f"(max {self.limit} generations per hour)."
                    ),
                )

            queue.append(now)
            return RateLimitDecision(
                allowed=True,
                remaining=max(0, self.limit - len(queue)),
                reset_seconds=self.window_seconds,
            )

    def sweep(self, now: float | None = None) -> int:
        current = self._clock() if now is None else now
        with self._lock:
            stale = [key for key, queue in self._hits.items() if not queue or current - queue[-1] > self.window_seconds]
            for key in stale:
                del self._hits[key]
        return len(stale)

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._hits)
