"""Per-process token-bucket rate limiting, keyed by owner and route group.

Rule compilation calls the language model, so ``/rules/compile`` draws from
its own, smaller bucket (COMPILE_RATE_LIMIT_RPS / COMPILE_RATE_LIMIT_BURST).
"""

from __future__ import annotations

import os
import threading
import time
from dataclasses import dataclass
from typing import Optional

from fastapi import Header, HTTPException, Request

from .config import get_app_env


def _env_bool(name: str) -> Optional[bool]:
    raw = os.getenv(name)
    if raw is None:
        return None
    val = raw.strip().lower()
    if val in {"1", "true", "yes"}:
        return True
    if val in {"0", "false", "no"}:
        return False
    return None


def rate_limit_enabled() -> bool:
    explicit = _env_bool("RATE_LIMIT_ENABLED")
    if explicit is not None:
        return explicit
    return get_app_env() == "prod"


def _env_float(name: str, default: float, minimum: float) -> float:
    try:
        val = float(os.getenv(name, str(default)))
    except ValueError:
        val = default
    return max(val, minimum)


def _limits_for(group: str) -> tuple[float, int]:
    if group == "compile":
        rps = _env_float("COMPILE_RATE_LIMIT_RPS", 0.2, 0.01)
        burst = int(_env_float("COMPILE_RATE_LIMIT_BURST", 3, 1))
        return rps, burst
    return _env_float("RATE_LIMIT_RPS", 5, 0.1), int(_env_float("RATE_LIMIT_BURST", 20, 1))


def _path_group(path: str) -> str:
    parts = [p for p in path.split("/") if p]
    if parts[:4] == ["api", "v1", "rules", "compile"]:
        return "compile"
    if len(parts) >= 3 and parts[0] == "api" and parts[1] == "v1":
        return parts[2]
    return parts[0] if parts else "/"


@dataclass
class Bucket:
    tokens: float
    last_ts: float


class TokenBucketLimiter:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[str, Bucket] = {}

    def allow(self, key: str, *, rps: float, burst: int, now: Optional[float] = None) -> tuple[bool, float]:
        now = time.monotonic() if now is None else now
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = Bucket(tokens=float(burst), last_ts=now)
                self._buckets[key] = bucket
            elapsed = max(0.0, now - bucket.last_ts)
            bucket.tokens = min(float(burst), bucket.tokens + elapsed * rps)
            bucket.last_ts = now
            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                return True, 0.0
            retry_after = (1.0 - bucket.tokens) / rps
            return False, max(retry_after, 0.1)

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()


_limiter = TokenBucketLimiter()


def rate_limit_dependency(
    request: Request,
    x_owner_id: Optional[str] = Header(None, alias="X-Owner-Id"),
) -> None:
    if not rate_limit_enabled():
        return
    ident = (x_owner_id or "").strip() or (request.client.host if request.client else "unknown")
    group = _path_group(request.url.path)
    rps, burst = _limits_for(group)
    allowed, retry_after = _limiter.allow(f"{ident}:{group}", rps=rps, burst=burst)
    if not allowed:
        raise HTTPException(
            status_code=429,
            detail="Too Many Requests",
            headers={"Retry-After": str(max(1, int(retry_after + 0.999)))},
        )
