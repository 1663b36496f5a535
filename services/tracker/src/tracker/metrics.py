from __future__ import annotations

import threading

from common.utils import now_utc_iso
from pydantic import BaseModel

from tracker.models import CycleResult

CYCLE_COUNTERS = ("created", "renewed", "reopened", "updated", "closed", "discarded")


class MetricsSnapshot(BaseModel):
    generated_at: str
    requests: dict[str, int]
    endpoints: dict[str, dict[str, float | int]]
    cycles: dict[str, int]
    postings: dict[str, int]
    failures_by_type: dict[str, int]


class MetricsStore:
    """In-process counters for HTTP requests and ingestion cycle outcomes."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._requests = {"total": 0, "errors": 0}
        self._endpoints: dict[str, dict[str, float | int]] = {}
        self._cycles = {"ok": 0, "error": 0, "skipped": 0}
        self._postings = {name: 0 for name in CYCLE_COUNTERS}
        self._failures_by_type: dict[str, int] = {}

    def observe(self, *, method: str, route: str, status_code: int, duration_ms: float) -> None:
        """Count one request against its route template, e.g. ``GET /postings/{posting_id}``."""
        key = f"{method} {route}"
        status_class = f"{status_code // 100}xx"
        with self._lock:
            self._requests["total"] += 1
            if status_code >= 400:
                self._requests["errors"] += 1
            stats = self._endpoints.get(key)
            if stats is None:
                stats = {"count": 0, "latency_ms_total": 0.0, "latency_ms_max": 0.0}
                self._endpoints[key] = stats
            stats["count"] = int(stats["count"]) + 1
            stats[status_class] = int(stats.get(status_class, 0)) + 1
            stats["latency_ms_total"] = float(stats["latency_ms_total"]) + duration_ms
            stats["latency_ms_max"] = max(float(stats["latency_ms_max"]), duration_ms)

    def observe_cycle(self, result: CycleResult) -> None:
        with self._lock:
            self._cycles[result.status] = self._cycles.get(result.status, 0) + 1
            for name in CYCLE_COUNTERS:
                self._postings[name] += getattr(result, name)
            if result.error_type:
                self._failures_by_type[result.error_type] = (
                    self._failures_by_type.get(result.error_type, 0) + 1
                )

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                generated_at=now_utc_iso(),
                requests=dict(self._requests),
                endpoints={key: dict(value) for key, value in self._endpoints.items()},
                cycles=dict(self._cycles),
                postings=dict(self._postings),
                failures_by_type=dict(self._failures_by_type),
            )
