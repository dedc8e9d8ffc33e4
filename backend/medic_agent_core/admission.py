from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Protocol

import structlog

logger = structlog.get_logger(__name__)

ALLOW = "allow"
DENY = "deny"
REASON_BLOCKED = "blocked"
REASON_RATE_LIMITED = "rate_limited"


class ExpiringCache(Protocol):
    def get(self, key: str) -> Any: ...

    def set(self, key: str, value: Any, ttl_seconds: float) -> None: ...

    def increment_within(self, key: str, limit: int, ttl_seconds: float) -> int | None: ...


class InMemoryExpiringCache:
    """Process-local key/value store with per-key expiry.

    ``increment_within`` is the only read-modify-write operation and runs under
    the cache lock, so concurrent callers on one key never undercount. Writes
    sweep expired entries at most once per ``sweep_interval_seconds``.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        *,
        sweep_interval_seconds: float = 60.0,
    ) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[Any, float]] = {}
        self._lock = threading.Lock()
        self._sweep_interval = sweep_interval_seconds
        self._next_sweep = clock() + sweep_interval_seconds

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _live(self, key: str, now: float) -> tuple[Any, float] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry[1] <= now:
            del self._entries[key]
            return None
        return entry

    def _sweep(self, now: float) -> None:
        if now < self._next_sweep:
            return
        expired = [key for key, (_, expires_at) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        self._next_sweep = now + self._sweep_interval
        if expired:
            logger.debug("expired_entries_swept", count=len(expired), remaining=len(self._entries))

    def get(self, key: str) -> Any:
        with self._lock:
            entry = self._live(key, self._clock())
            return entry[0] if entry else None

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        with self._lock:
            now = self._clock()
            self._sweep(now)
            self._entries[key] = (value, now + ttl_seconds)

    def increment_within(self, key: str, limit: int, ttl_seconds: float) -> int | None:
        """Increment the counter at ``key`` unless it already reached ``limit``.

        Returns the new count, or None when the limit was already reached. Each
        successful increment refreshes the expiry.
        """
        with self._lock:
            now = self._clock()
            self._sweep(now)
            entry = self._live(key, now)
            current = int(entry[0]) if entry else 0
            if current >= limit:
                return None
            self._entries[key] = (current + 1, now + ttl_seconds)
            return current + 1


@dataclass(frozen=True)
class AdmissionDecision:
    outcome: str
    reason: str | None = None
    count: int | None = None

    @property
    def allowed(self) -> bool:
        return self.outcome == ALLOW


class AdmissionController:
    def __init__(self, cache: ExpiringCache, *, limit: int, ttl_seconds: float) -> None:
        self.cache = cache
        self.limit = limit
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _block_key(origin: str) -> str:
        return f"blocked:{origin}"

    @staticmethod
    def _count_key(origin: str) -> str:
        return f"count:{origin}"

    def admit(self, origin: str) -> AdmissionDecision:
        if self.cache.get(self._block_key(origin)):
            logger.warning("blocked_origin_request", origin=origin)
            return AdmissionDecision(DENY, REASON_BLOCKED)

        count = self.cache.increment_within(self._count_key(origin), self.limit, self.ttl_seconds)
        if count is None:
            self.cache.set(self._block_key(origin), True, self.ttl_seconds)
            logger.warning("rate_limit_exceeded", origin=origin, limit=self.limit)
            return AdmissionDecision(DENY, REASON_RATE_LIMITED)

        logger.info("rate_limit_updated", origin=origin, count=count)
        return AdmissionDecision(ALLOW, count=count)
