"""Lightweight in-process observability helpers.

Latency aggregates per operation plus named event counters
(evictions, partial retrievals, state conflicts, dropped segments).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from threading import Lock

logger = logging.getLogger(__name__)


@dataclass
class LatencySummary:
    """Aggregated latency metrics for one operation."""

    count: int = 0
    error_count: int = 0
    total_ms: float = 0.0
    min_ms: float = 0.0
    max_ms: float = 0.0
    last_ms: float = 0.0

    def add(self, duration_ms: float, ok: bool) -> None:
        self.count += 1
        if not ok:
            self.error_count += 1
        self.total_ms += duration_ms
        self.last_ms = duration_ms
        if self.count == 1:
            self.min_ms = self.max_ms = duration_ms
        else:
            self.min_ms = min(self.min_ms, duration_ms)
            self.max_ms = max(self.max_ms, duration_ms)


class _Recorder:
    def __init__(self) -> None:
        self._lock = Lock()
        self._latency: dict[str, LatencySummary] = {}
        self._counters: dict[str, int] = {}

    def record(self, *, operation: str, duration_ms: float, ok: bool) -> None:
        normalized = max(float(duration_ms), 0.0)
        with self._lock:
            self._latency.setdefault(operation, LatencySummary()).add(normalized, ok)

        logger.debug(
            "latency operation=%s duration_ms=%.3f ok=%s",
            operation,
            normalized,
            ok,
        )

    def increment(self, name: str, amount: int) -> None:
        with self._lock:
            self._counters[name] = self._counters.get(name, 0) + amount

    def latency_snapshot(self) -> dict[str, dict[str, float | int]]:
        with self._lock:
            return {
                operation: {
                    "count": s.count,
                    "error_count": s.error_count,
                    "total_ms": round(s.total_ms, 3),
                    "avg_ms": round(s.total_ms / s.count if s.count else 0.0, 3),
                    "min_ms": round(s.min_ms, 3),
                    "max_ms": round(s.max_ms, 3),
                    "last_ms": round(s.last_ms, 3),
                }
                for operation, s in sorted(self._latency.items())
            }

    def counter_snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(sorted(self._counters.items()))

    def reset(self) -> None:
        with self._lock:
            self._latency.clear()
            self._counters.clear()


_RECORDER = _Recorder()


def record_latency(*, operation: str, duration_ms: float, ok: bool = True) -> None:
    """Record one latency sample."""
    _RECORDER.record(operation=operation, duration_ms=duration_ms, ok=ok)


def increment_counter(name: str, amount: int = 1) -> None:
    """Bump a named event counter."""
    if amount:
        _RECORDER.increment(name, amount)


def latency_metrics_snapshot() -> dict[str, dict[str, float | int]]:
    """Return current in-process latency aggregates."""
    return _RECORDER.latency_snapshot()


def counter_snapshot() -> dict[str, int]:
    """Return current event counters."""
    return _RECORDER.counter_snapshot()


def reset_metrics() -> None:
    """Clear all latency aggregates and counters (test helper)."""
    _RECORDER.reset()
