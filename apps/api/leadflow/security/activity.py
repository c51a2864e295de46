"""Best-effort per-user counters: request rate limiting and suspicious-activity scoring.

Both sit on a small TTL cache interface so the process-local store can be
replaced by a shared one without touching the callers.
"""

from __future__ import annotations

import json
import math
import re
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from leadflow.security.roles import Role, RolePermissions, resolve_role


class TtlCache(Protocol):
    def get(self, key: str) -> Any | None:
        ...

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def incr(self, key: str, amount: int, ttl_seconds: float) -> int:
        """Atomically add ``amount``; a missing or expired key starts a new window."""
        ...

    def ttl(self, key: str) -> float | None:
        ...


@dataclass
class _Entry:
    value: Any
    expires_at: float


class InProcessTtlCache:
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, _Entry] = {}

    def _live(self, key: str, now: float) -> _Entry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= now:
            del self._entries[key]
            return None
        return entry

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._live(key, self._clock())
            return entry.value if entry is not None else None

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        with self._lock:
            self._entries[key] = _Entry(value=value, expires_at=self._clock() + ttl_seconds)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def incr(self, key: str, amount: int, ttl_seconds: float) -> int:
        with self._lock:
            now = self._clock()
            entry = self._live(key, now)
            if entry is None:
                entry = _Entry(value=0, expires_at=now + ttl_seconds)
                self._entries[key] = entry
            entry.value = int(entry.value) + amount
            return entry.value

    def ttl(self, key: str) -> float | None:
        with self._lock:
            now = self._clock()
            entry = self._live(key, now)
            return entry.expires_at - now if entry is not None else None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


@dataclass(slots=True)
class RateDecision:
    allowed: bool
    count: int
    retry_after: int


class UserRequestLimiter:
    """Fixed window of ``max_requests`` per user id."""

    def __init__(self, cache: TtlCache) -> None:
        self._cache = cache

    def hit(self, user_id: str, *, max_requests: int, window_seconds: int) -> RateDecision:
        key = f"rate:{user_id}"
        count = self._cache.incr(key, 1, window_seconds)
        if count <= max_requests:
            return RateDecision(allowed=True, count=count, retry_after=0)
        remaining = self._cache.ttl(key)
        retry_after = max(1, math.ceil(remaining if remaining is not None else window_seconds))
        return RateDecision(allowed=False, count=count, retry_after=retry_after)


def _segments(path: str) -> list[str]:
    return [segment for segment in path.lower().split("/") if segment]


def suspicious_patterns(role: Role | str | None, method: str, path: str, permissions: RolePermissions) -> list[str]:
    segments = _segments(path)
    matched: list[str] = []
    if "admin" in segments and resolve_role(role) is not Role.ADMIN:
        matched.append("non_admin_admin_path")
    if method.upper() == "DELETE" and not permissions.can_delete:
        matched.append("delete_without_permission")
    if "finalized" in segments and not permissions.can_read_finalized:
        matched.append("finalized_without_permission")
    return matched


class SuspiciousActivityTracker:
    """Accumulates pattern hits per user over a sliding TTL window. Never blocks."""

    def __init__(self, cache: TtlCache) -> None:
        self._cache = cache

    def observe(self, user_id: str, patterns: list[str], *, window_seconds: int) -> int:
        key = f"suspicious:{user_id}"
        if not patterns:
            return int(self._cache.get(key) or 0)
        return self._cache.incr(key, len(patterns), window_seconds)


_MALICIOUS_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("script_tag", re.compile(r"script\s*>", re.IGNORECASE)),
    ("javascript_uri", re.compile(r"javascript:", re.IGNORECASE)),
    ("inline_handler", re.compile(r"on\w+\s*=", re.IGNORECASE)),
    ("union_select", re.compile(r"union\s+select", re.IGNORECASE)),
    ("drop_table", re.compile(r"drop\s+table", re.IGNORECASE)),
    ("delete_from", re.compile(r"delete\s+from", re.IGNORECASE)),
)


def detect_malicious_content(*payloads: Any) -> list[str]:
    text = " ".join(json.dumps(payload, default=str) for payload in payloads if payload is not None)
    return [name for name, pattern in _MALICIOUS_PATTERNS if pattern.search(text)]


_activity_cache = InProcessTtlCache()


def get_activity_cache() -> InProcessTtlCache:
    return _activity_cache


def reset_activity_tracking() -> None:
    _activity_cache.clear()
