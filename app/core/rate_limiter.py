"""
Token Bucket Rate Limiter

Non-blocking gate for calls to the external provider (and for inbound
webhook traffic), keyed by service name or client.
"""
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable

from app.core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class RateLimitConfig:
    """Bucket size and refill period for one key"""
    tokens_per_interval: int = 50
    interval_seconds: float = 1.0


@dataclass
class _Bucket:
    tokens: float
    last_refill: float


class RateLimiter:
    """
    Per-key token buckets.

    Each bucket holds at most ``tokens_per_interval`` tokens and is refilled
    with ``floor(elapsed / interval) * tokens_per_interval`` tokens. The
    refill clock only advances by whole intervals, so a partially elapsed
    interval keeps counting towards the next refill.

    Every ``prune_every`` acquires, buckets idle for a whole interval are
    dropped, so per-client keys do not accumulate.
    """

    def __init__(
        self,
        default_config: RateLimitConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        prune_every: int = 1000,
    ):
        self.default_config = default_config or RateLimitConfig()
        self._configs: dict[str, RateLimitConfig] = {}
        self._buckets: dict[str, _Bucket] = {}
        self._clock = clock
        self._lock = threading.Lock()
        self._prune_every = prune_every
        self._calls_since_prune = 0

    def configure(self, key: str, config: RateLimitConfig) -> None:
        """Set the bucket parameters for a key (resets its bucket)"""
        with self._lock:
            self._configs[key] = config
            self._buckets.pop(key, None)

    def config_for(self, key: str) -> RateLimitConfig:
        return self._configs.get(key, self.default_config)

    def _refill(self, key: str, now: float) -> _Bucket:
        config = self.config_for(key)
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = _Bucket(tokens=config.tokens_per_interval, last_refill=now)
            self._buckets[key] = bucket
            return bucket

        intervals = math.floor((now - bucket.last_refill) / config.interval_seconds)
        if intervals > 0:
            bucket.tokens = min(
                config.tokens_per_interval,
                bucket.tokens + intervals * config.tokens_per_interval,
            )
            bucket.last_refill += intervals * config.interval_seconds
        return bucket

    def _prune(self, now: float) -> None:
        """Drop buckets idle for a full interval; they would be full again anyway"""
        self._calls_since_prune = 0
        idle = [
            key for key, bucket in self._buckets.items()
            if now - bucket.last_refill >= self.config_for(key).interval_seconds
        ]
        for key in idle:
            del self._buckets[key]
        if idle:
            logger.debug(
                "Idle rate limit buckets pruned",
                extra_data={"pruned": len(idle), "kept": len(self._buckets)},
            )

    def acquire(self, key: str) -> bool:
        """Take one token; False immediately when the bucket is empty"""
        with self._lock:
            now = self._clock()
            self._calls_since_prune += 1
            if self._calls_since_prune >= self._prune_every:
                self._prune(now)
            bucket = self._refill(key, now)
            if bucket.tokens >= 1:
                bucket.tokens -= 1
                return True

        logger.debug(
            "Rate limit token refused",
            extra_data={"key": key, "limit": self.config_for(key).tokens_per_interval},
        )
        return False

    def retry_after(self, key: str) -> float:
        """Seconds until the bucket for ``key`` next refills (0 if a token is available)"""
        with self._lock:
            now = self._clock()
            bucket = self._refill(key, now)
            if bucket.tokens >= 1:
                return 0.0
            interval = self.config_for(key).interval_seconds
            return max(0.0, bucket.last_refill + interval - now)

    def available_tokens(self, key: str) -> int:
        with self._lock:
            return int(self._refill(key, self._clock()).tokens)

    def reset(self, key: str | None = None) -> None:
        """Drop bucket state (one key or all)"""
        with self._lock:
            if key is None:
                self._buckets.clear()
            else:
                self._buckets.pop(key, None)
