"""Fixed-window request counters keyed by (operation type, client identity)."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Mapping

from flowchat.config import RateLimitRule
from flowchat.core.types import OperationType
from flowchat.log import get_logger

logger = get_logger(__name__)


@dataclass(slots=True)
class Bucket:
    count: int
    window_start: float
    expires_at: float


class BucketStore:
    """In-process bucket storage with per-key TTL.

    Anything with the same three methods (for example a shared cache) can
    stand in for it when several processes serve one site.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._buckets: dict[tuple[str, str], Bucket] = {}

    def get(self, key: tuple[str, str]) -> Bucket | None:
        bucket = self._buckets.get(key)
        if bucket is not None and bucket.expires_at <= self._clock():
            del self._buckets[key]
            return None
        return bucket

    def set(self, key: tuple[str, str], bucket: Bucket) -> None:
        self._buckets[key] = bucket

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [k for k, b in self._buckets.items() if b.expires_at <= now]
        for key in expired:
            del self._buckets[key]
        return len(expired)


class RateLimiter:
    """``check`` is read-only and must run before ``record`` for the same request.

    The two are deliberately separate calls; a concurrent increment on the
    same key is last-write-wins.
    """

    def __init__(
        self,
        rules: Mapping[str, RateLimitRule],
        store: BucketStore | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._rules = dict(rules)
        self._clock = clock
        self._store = store or BucketStore(clock)

    def rule_for(self, operation: str) -> RateLimitRule:
        rule = self._rules.get(str(operation)) or self._rules.get(OperationType.API.value)
        if rule is None:
            raise KeyError(f"No rate limit rule for '{operation}' and no 'api' default")
        return rule

    def check(self, operation: str, client: str) -> bool:
        rule = self.rule_for(operation)
        bucket = self._store.get((str(operation), client))
        if bucket is None or self._clock() - bucket.window_start >= rule.window_seconds:
            return True
        allowed = bucket.count < rule.threshold
        if not allowed:
            logger.info("rate_limited", operation=str(operation), client=client, count=bucket.count)
        return allowed

    def record(self, operation: str, client: str) -> None:
        rule = self.rule_for(operation)
        key = (str(operation), client)
        now = self._clock()
        bucket = self._store.get(key)
        if bucket is not None and now - bucket.window_start < rule.window_seconds:
            bucket.count += 1
            self._store.set(key, bucket)
            return
        self._store.set(key, Bucket(count=1, window_start=now, expires_at=now + rule.window_seconds))

    def purge_expired(self) -> int:
        return self._store.purge_expired()

    def retry_after(self, operation: str, client: str) -> float:
        """Seconds until the current window for this key ends (0 when not limited)."""
        rule = self.rule_for(operation)
        bucket = self._store.get((str(operation), client))
        if bucket is None:
            return 0.0
        return max(0.0, bucket.window_start + rule.window_seconds - self._clock())
