from __future__ import annotations

import threading
from collections import Counter
from datetime import UTC, datetime
from typing import Any


def _parse_ts(value: str) -> datetime | None:
    try:
        dt = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=UTC)


class IndexingMetrics:
    """Process-local counters plus submit-to-complete lag of indexing jobs."""

    def __init__(self, *, staleness_target_ms: int = 5000) -> None:
        self.staleness_target_ms = max(1, int(staleness_target_ms))
        self._lock = threading.Lock()
        self._counters: Counter[str] = Counter()
        self._lag_ms_last = 0
        self._lag_ms_max = 0
        self._stale_total = 0

    def incr(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[name] += amount

    def observe_completion(self, *, submitted_at: str, completed_at: datetime | None = None) -> int | None:
        submitted = _parse_ts(submitted_at)
        if submitted is None:
            return None
        done = completed_at or datetime.now(UTC)
        lag_ms = max(0, int((done - submitted).total_seconds() * 1000))
        with self._lock:
            self._lag_ms_last = lag_ms
            self._lag_ms_max = max(self._lag_ms_max, lag_ms)
            if lag_ms > self.staleness_target_ms:
                self._stale_total += 1
        return lag_ms

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "counters": dict(sorted(self._counters.items())),
                "lag_ms_last": self._lag_ms_last,
                "lag_ms_max": self._lag_ms_max,
                "stale_total": self._stale_total,
                "staleness_target_ms": self.staleness_target_ms,
            }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._lag_ms_last = 0
            self._lag_ms_max = 0
            self._stale_total = 0
