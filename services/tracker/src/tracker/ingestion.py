"""Ingestion cycles and corpus reads.

One cycle for one company runs fetch -> extract -> normalize -> dedupe ->
diff -> apply. Only the final step writes postings, inside a single
transaction, so a cycle that fails anywhere leaves the corpus as it was.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict
from datetime import datetime
from functools import partial

from common.utils import now_utc_iso, parse_iso_datetime, to_utc_iso

from tracker.differ import dedupe_candidates, diff
from tracker.errors import (
    ExtractionError,
    FetchError,
    NormalizationDiscard,
    PersistenceError,
    PostingNotFound,
)
from tracker.fetcher import Fetcher
from tracker.lifecycle import LifecycleManager
from tracker.metrics import MetricsStore
from tracker.models import (
    Candidate,
    Company,
    CycleResult,
    JobPosting,
    NormalizedPosting,
    RawContent,
)
from tracker.normalizer import normalize
from tracker.query import evaluate, parse
from tracker.registry import SourceRegistry
from tracker.repository import CorpusRepository
from tracker.scheduler import InFlightRegistry
from tracker.settings import TrackerSettings

LOGGER = logging.getLogger("jobcorpus.ingestion")

CYCLE_FAILURES = (FetchError, ExtractionError, PersistenceError)


def resolve_since(since: str | datetime | None) -> str | None:
    """Return ``since`` as a UTC ISO string comparable with stored timestamps."""
    if since is None or since == "":
        return None
    parsed = since if isinstance(since, datetime) else parse_iso_datetime(since)
    if parsed is None:
        raise ValueError(f"Invalid since timestamp: {since}")
    return to_utc_iso(parsed)


class CorpusEngine:
    def __init__(
        self,
        repository: CorpusRepository,
        registry: SourceRegistry,
        fetcher: Fetcher,
        in_flight: InFlightRegistry | None = None,
        metrics: MetricsStore | None = None,
        settings: TrackerSettings | None = None,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.fetcher = fetcher
        self.in_flight = in_flight or InFlightRegistry()
        self.metrics = metrics
        self.settings = settings or fetcher.settings
        self.lifecycle = LifecycleManager(repository)

    def run_ingestion_cycle(self, company_id: str, now: datetime | None = None) -> CycleResult:
        """Run one ingestion cycle for ``company_id``.

        Raises KeyError for an unknown company. Every other failure is
        reported through the returned result's ``status``.
        """
        company = self.repository.get_company_or_raise(company_id)
        started_at = now_utc_iso()
        if not self.in_flight.try_claim(company_id):
            result = CycleResult(
                company_id=company_id,
                status="skipped",
                started_at=started_at,
                finished_at=started_at,
                error="ingestion cycle already in flight",
            )
            LOGGER.info(json.dumps({"event": "cycle_skipped", "company_id": company_id}))
            return self._finish(result)

        try:
            return self._finish(self._run_claimed(company, started_at, now))
        finally:
            self.in_flight.release(company_id)

    def _finish(self, result: CycleResult) -> CycleResult:
        self.repository.record_cycle(result)
        if self.metrics is not None:
            self.metrics.observe_cycle(result)
        return result

    def _run_claimed(self, company: Company, started_at: str, now: datetime | None) -> CycleResult:
        started = time.perf_counter()
        fetched = 0
        discarded = 0
        try:
            raw = self.fetcher.fetch(company)
            candidates = self._extract(company, raw)
            fetched = len(candidates)
            normalized, discarded = self._normalize_all(company, candidates)
            if candidates and not normalized:
                raise ExtractionError(
                    f"all {fetched} extracted candidates were discarded",
                    company_id=company.company_id,
                )
            by_key = dedupe_candidates(normalized)
            existing = self.repository.active_postings(company.company_id)
            posting_diff = diff(existing.keys(), by_key.keys())
            cycle_now = to_utc_iso(now) if now is not None else now_utc_iso()
            counts = self.lifecycle.apply(company.company_id, posting_diff, by_key, cycle_now)
        except CYCLE_FAILURES as exc:
            result = CycleResult(
                company_id=company.company_id,
                status="error",
                started_at=started_at,
                finished_at=now_utc_iso(),
                fetched=fetched,
                discarded=discarded,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            LOGGER.warning(
                json.dumps(
                    {
                        "event": "cycle_failed",
                        "company_id": company.company_id,
                        "error_type": result.error_type,
                        "error": result.error,
                        "duration_ms": round((time.perf_counter() - started) * 1000, 3),
                    }
                )
            )
            return result

        result = CycleResult(
            company_id=company.company_id,
            status="ok",
            started_at=started_at,
            finished_at=now_utc_iso(),
            fetched=fetched,
            discarded=discarded,
            **asdict(counts),
        )
        LOGGER.info(
            json.dumps(
                {
                    "event": "cycle_complete",
                    "company_id": company.company_id,
                    "fetched": result.fetched,
                    "discarded": result.discarded,
                    "created": result.created,
                    "renewed": result.renewed,
                    "reopened": result.reopened,
                    "updated": result.updated,
                    "closed": result.closed,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 3),
                }
            )
        )
        return result

    def _extract(self, company: Company, raw: RawContent) -> list[Candidate]:
        try:
            extractor = self.registry.extractor_for(company)
            return list(extractor(raw, company))
        except ExtractionError:
            raise
        except Exception as exc:
            raise ExtractionError(
                f"extractor {company.extractor!r} failed: {exc.__class__.__name__}: {exc}",
                company_id=company.company_id,
            ) from exc

    def _normalize_all(
        self,
        company: Company,
        candidates: list[Candidate],
    ) -> tuple[list[NormalizedPosting], int]:
        normalized: list[NormalizedPosting] = []
        discarded = 0
        for index, candidate in enumerate(candidates):
            try:
                normalized.append(normalize(candidate, company))
            except NormalizationDiscard as exc:
                discarded += 1
                LOGGER.info(
                    json.dumps(
                        {
                            "event": "candidate_discarded",
                            "company_id": company.company_id,
                            "index": index,
                            "reason": exc.reason,
                        }
                    )
                )
        return normalized, discarded

    def search(
        self,
        *,
        company_id: str | None = None,
        query: str | None = None,
        active: bool | None = None,
        since: str | datetime | None = None,
        limit: int | None = None,
    ) -> list[JobPosting]:
        """Filter the corpus, most recently seen first.

        ``query`` is parsed before anything is read, so a ParseError reaches
        the caller without touching the store.
        """
        expr = parse(query)
        resolved_since = resolve_since(since)
        resolved_limit = self.settings.default_search_limit if limit is None else limit
        if resolved_limit < 1:
            raise ValueError("limit must be at least 1")
        return self.repository.search_postings(
            company_id=company_id,
            active=active,
            since=resolved_since,
            limit=resolved_limit,
            predicate=None if expr.is_empty else partial(evaluate, expr),
        )

    def get_posting_by_id(self, posting_id: int) -> JobPosting:
        posting = self.repository.get_posting(posting_id)
        if posting is None:
            raise PostingNotFound(posting_id)
        return posting
