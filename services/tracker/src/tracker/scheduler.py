from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import TYPE_CHECKING

from common.utils import now_utc_iso

from tracker.models import CycleResult

if TYPE_CHECKING:
    from tracker.ingestion import CorpusEngine

LOGGER = logging.getLogger("jobcorpus.scheduler")


class InFlightRegistry:
    """Companies with an ingestion cycle currently running."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: set[str] = set()

    def try_claim(self, company_id: str) -> bool:
        with self._lock:
            if company_id in self._active:
                return False
            self._active.add(company_id)
            return True

    def release(self, company_id: str) -> None:
        with self._lock:
            self._active.discard(company_id)

    def is_in_flight(self, company_id: str) -> bool:
        with self._lock:
            return company_id in self._active


class IngestionScheduler:
    """Runs ingestion cycles for many companies on a bounded worker pool."""

    def __init__(self, engine: CorpusEngine, worker_count: int) -> None:
        if worker_count < 1:
            raise ValueError("worker_count must be at least 1")
        self.engine = engine
        self._executor = ThreadPoolExecutor(
            max_workers=worker_count,
            thread_name_prefix="jobcorpus-ingest",
        )

    def submit(self, company_id: str) -> Future[CycleResult]:
        return self._executor.submit(self.engine.run_ingestion_cycle, company_id)

    def run_all(self, company_ids: Iterable[str] | None = None) -> list[CycleResult]:
        if company_ids is None:
            company_ids = [
                company.company_id
                for company in self.engine.repository.list_companies(enabled_only=True)
            ]
        submitted = [(company_id, self.submit(company_id)) for company_id in company_ids]
        return [self._collect(company_id, future) for company_id, future in submitted]

    def _collect(self, company_id: str, future: Future[CycleResult]) -> CycleResult:
        """Wait for one cycle; a crash becomes an error result for that company only."""
        try:
            return future.result()
        except Exception as exc:
            LOGGER.exception(
                json.dumps(
                    {
                        "event": "cycle_crashed",
                        "company_id": company_id,
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                    }
                )
            )
            failed_at = now_utc_iso()
            result = CycleResult(
                company_id=company_id,
                status="error",
                started_at=failed_at,
                finished_at=failed_at,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            if self.engine.metrics is not None:
                self.engine.metrics.observe_cycle(result)
            return result

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
