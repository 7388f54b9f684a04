"""In-process metrics for chatrelay.

Tracks:
- HTTP request timings (by normalized endpoint)
- Database operation timings
- Socket event handling timings (by event name)
- Token cache hits/misses
- Named counters (messages sent, notifications created/delivered, connections)

Exposed through the admin-only /metrics endpoint.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from functools import wraps
from threading import Lock
from typing import Any, Callable, TypeVar

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

SLOW_OPERATION_MS = 100


@dataclass
class TimingStats:
    """Statistics for a timed operation."""

    count: int = 0
    total_ms: float = 0.0
    min_ms: float = float("inf")
    max_ms: float = 0.0

    def record(self, duration_ms: float) -> None:
        self.count += 1
        self.total_ms += duration_ms
        self.min_ms = min(self.min_ms, duration_ms)
        self.max_ms = max(self.max_ms, duration_ms)

    @property
    def avg_ms(self) -> float:
        return self.total_ms / self.count if self.count > 0 else 0.0

    def to_dict(self) -> dict:
        return {
            "count": self.count,
            "avg_ms": round(self.avg_ms, 2),
            "min_ms": round(self.min_ms, 2) if self.count > 0 else 0,
            "max_ms": round(self.max_ms, 2),
        }


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return (self.hits / total * 100) if total > 0 else 0.0

    def to_dict(self) -> dict:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate_pct": round(self.hit_rate, 2),
        }


@dataclass
class Metrics:
    """Global metrics collector."""

    _lock: Lock = field(default_factory=Lock)
    db_operations: dict[str, TimingStats] = field(default_factory=lambda: defaultdict(TimingStats))
    socket_events: dict[str, TimingStats] = field(default_factory=lambda: defaultdict(TimingStats))
    request_stats: dict[str, TimingStats] = field(default_factory=lambda: defaultdict(TimingStats))
    cache_stats: dict[str, CacheStats] = field(default_factory=lambda: defaultdict(CacheStats))
    counters: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    _start_time: float = field(default_factory=time.time)

    def record_db_operation(self, operation: str, duration_ms: float) -> None:
        with self._lock:
            self.db_operations[operation].record(duration_ms)

    def record_socket_event(self, event: str, duration_ms: float) -> None:
        with self._lock:
            self.socket_events[event].record(duration_ms)

    def record_request(self, endpoint: str, duration_ms: float) -> None:
        with self._lock:
            self.request_stats[endpoint].record(duration_ms)

    def record_cache_hit(self, cache_name: str) -> None:
        with self._lock:
            self.cache_stats[cache_name].hits += 1

    def record_cache_miss(self, cache_name: str) -> None:
        with self._lock:
            self.cache_stats[cache_name].misses += 1

    def increment(self, name: str, amount: int = 1) -> None:
        """Bump a named counter."""
        with self._lock:
            self.counters[name] += amount

    def to_dict(self) -> dict:
        with self._lock:
            return {
                "uptime_seconds": round(time.time() - self._start_time, 1),
                "counters": dict(self.counters),
                "db_operations": {k: v.to_dict() for k, v in self.db_operations.items()},
                "socket_events": {k: v.to_dict() for k, v in self.socket_events.items()},
                "requests": {k: v.to_dict() for k, v in self.request_stats.items()},
                "cache": {k: v.to_dict() for k, v in self.cache_stats.items()},
            }

    def reset(self) -> None:
        """Reset all metrics (useful for testing)."""
        with self._lock:
            self.db_operations.clear()
            self.socket_events.clear()
            self.request_stats.clear()
            self.cache_stats.clear()
            self.counters.clear()
            self._start_time = time.time()


metrics = Metrics()


@contextmanager
def timed_socket_event(event: str):
    """Time the handling of one inbound socket event.

    Usage:
        with timed_socket_event("send_message"):
            await hub.send_message(...)
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        duration_ms = (time.perf_counter() - start) * 1000
        metrics.record_socket_event(event, duration_ms)
        if duration_ms > SLOW_OPERATION_MS:
            logger.warning(f"Slow socket event: {event} took {duration_ms:.1f}ms")


def timed_operation(operation_name: str) -> Callable[[F], F]:
    """Decorator to time a function and record it as a DB operation."""

    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                duration_ms = (time.perf_counter() - start) * 1000
                metrics.record_db_operation(operation_name, duration_ms)
                if duration_ms > SLOW_OPERATION_MS:
                    logger.warning(f"Slow operation: {operation_name} took {duration_ms:.1f}ms")

        return wrapper  # type: ignore

    return decorator
