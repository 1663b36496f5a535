from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest
from common.utils import now_utc_iso
from tracker.ingestion import CorpusEngine
from tracker.metrics import MetricsStore
from tracker.models import Company, CompanyConfig, RawContent
from tracker.registry import SourceRegistry
from tracker.repository import CorpusRepository
from tracker.scheduler import InFlightRegistry
from tracker.settings import TrackerSettings

ACME = CompanyConfig(
    company_id="acme",
    name="Acme Corp",
    ticker="ACME",
    fetch_url="https://acme.example/careers.json",
    base_url="https://acme.example",
    extractor="json_feed",
)


class FeedFetcher:
    """Serves canned feed bodies per company instead of calling the network."""

    def __init__(self, settings: TrackerSettings) -> None:
        self.settings = settings
        self.bodies: dict[str, str | Exception] = {}
        self.calls: list[str] = []

    def set_feed(self, company_id: str, postings: list[dict[str, Any]]) -> None:
        self.bodies[company_id] = json.dumps(postings)

    def set_body(self, company_id: str, body: str | Exception) -> None:
        self.bodies[company_id] = body

    def fetch(self, company: Company) -> RawContent:
        self.calls.append(company.company_id)
        body = self.bodies[company.company_id]
        if isinstance(body, Exception):
            raise body
        return RawContent(
            url=company.fetch_url,
            final_url=company.fetch_url,
            status_code=200,
            content_type="application/json",
            body=body,
            fetched_at=now_utc_iso(),
        )

    def close(self) -> None:
        pass


@pytest.fixture
def settings(tmp_path: Path) -> TrackerSettings:
    return TrackerSettings(
        database_path=str(tmp_path / "tracker.sqlite3"),
        per_domain_interval_s=0,
        retry_base_delay_s=0,
        retry_max_delay_s=0,
    )


@pytest.fixture
def repository(settings: TrackerSettings):
    repo = CorpusRepository(settings.database_path)
    repo.connect()
    yield repo
    repo.close()


@pytest.fixture
def company(repository: CorpusRepository) -> Company:
    return repository.upsert_company(ACME)


@pytest.fixture
def feed(settings: TrackerSettings) -> FeedFetcher:
    return FeedFetcher(settings)


@pytest.fixture
def engine(
    repository: CorpusRepository,
    company: Company,
    feed: FeedFetcher,
    settings: TrackerSettings,
) -> CorpusEngine:
    return CorpusEngine(
        repository,
        SourceRegistry([ACME]),
        feed,
        InFlightRegistry(),
        MetricsStore(),
        settings,
    )
