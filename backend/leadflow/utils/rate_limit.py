import ipaddress
import math
import time
from collections import deque
from dataclasses import dataclass
from threading import Lock
from typing import Optional

from fastapi import Request

from leadflow.core.config import get_settings

WINDOW_SECONDS = 60


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    count: int
    retry_after: int = 0
    key: str = ""


class SlidingWindowRateLimiter:
    """Per-key sliding window over ``time.monotonic`` timestamps.

    Stale buckets are dropped every ``prune_interval_seconds`` or as soon as
    the number of keys passes ``max_buckets``.
    """

    def __init__(self, *, max_buckets: int = 50_000, prune_interval_seconds: int = 60) -> None:
        self._buckets: dict[str, deque[float]] = {}
        self._lock = Lock()
        self._max_buckets = max_buckets
        self._prune_every = max(1, int(prune_interval_seconds))
        self._pruned_at = 0.0

    def hit(self, key: str, limit: int, window_seconds: int = WINDOW_SECONDS) -> RateDecision:
        if limit <= 0 or window_seconds <= 0:
            return RateDecision(True, 0, key=key)
        now = time.monotonic()
        cutoff = now - window_seconds
        with self._lock:
            if len(self._buckets) > self._max_buckets or now - self._pruned_at >= self._prune_every:
                self._prune(cutoff)
                self._pruned_at = now

            bucket = self._buckets.setdefault(key, deque())
            while bucket and bucket[0] <= cutoff:
                bucket.popleft()
            if len(bucket) >= limit:
                retry_after = max(1, math.ceil(bucket[0] + window_seconds - now))
                return RateDecision(False, len(bucket), retry_after, key)
            bucket.append(now)
            return RateDecision(True, len(bucket), key=key)

    def allow(self, key: str, limit: int, window_seconds: int) -> tuple[bool, int]:
        decision = self.hit(key, limit, window_seconds)
        return decision.allowed, decision.count

    def _prune(self, cutoff: float) -> None:
        for key in [k for k, bucket in self._buckets.items() if not bucket or bucket[-1] <= cutoff]:
            del self._buckets[key]

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()
            self._pruned_at = 0.0


rate_limiter = SlidingWindowRateLimiter()


def _peer_is_trusted(peer_ip: Optional[str], trusted: list[str]) -> bool:
    if not (peer_ip and trusted):
        return False
    try:
        ip_obj = ipaddress.ip_address(peer_ip)
    except ValueError:
        return peer_ip in trusted
    for entry in trusted:
        try:
            if ip_obj in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            continue
    return False


def get_client_ip(request: Request) -> Optional[str]:
    """Extract client IP from request.

    SECURITY: ``X-Forwarded-For`` is trusted only when the direct peer is in
    ``TRUSTED_PROXY_CIDRS``. Otherwise forwarded headers are ignored.
    """
    peer_ip = request.client.host if request.client else None
    if _peer_is_trusted(peer_ip, get_settings().trusted_proxy_cidrs):
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            # Rightmost IP is the one added by the first trusted reverse proxy.
            parts = [p.strip() for p in forwarded.split(",") if p.strip()]
            if parts:
                return parts[-1]
    return peer_ip


def check_request(request: Request, scope: str, limit: int) -> RateDecision:
    """Count one request from the caller's IP against ``scope`` (``stripe``, ``api``)."""
    ip = get_client_ip(request) or "unknown"
    return rate_limiter.hit(f"{scope}:ip:{ip}", limit)


def get_user_agent(request: Request) -> Optional[str]:
    return request.headers.get("user-agent") if request else None
