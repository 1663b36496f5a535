from __future__ import annotations

from datetime import UTC, datetime

import pytest
from tracker.errors import ParseError, PostingNotFound
from tracker.ingestion import CorpusEngine, resolve_since
from tracker.models import CompanyConfig
from tracker.repository import CorpusRepository

pytestmark = pytest.mark.integration

T1 = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)
T2 = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)

POSTINGS = [
    {
        "title": "Backend Engineer",
        "description": "<p>Python services. Internal recruiter note: fast track.</p>",
        "url": "/jobs/1",
    },
    {"title": "Senior Data Engineer", "description": "<p>Spark and SQL</p>", "url": "/jobs/2"},
    {"title": "Product Designer", "description": "<p>Figma</p>", "url": "/jobs/3"},
]


@pytest.fixture
def seeded(engine: CorpusEngine, feed) -> CorpusEngine:
    feed.set_feed("acme", POSTINGS)
    engine.run_ingestion_cycle("acme", now=T1)
    feed.set_feed("acme", POSTINGS[1:])
    engine.run_ingestion_cycle("acme", now=T2)
    return engine


def titles(engine: CorpusEngine, **filters: object) -> list[str]:
    return [posting.title for posting in engine.search(**filters)]


def test_search_orders_by_last_seen_then_id(seeded: CorpusEngine) -> None:
    assert titles(seeded) == ["Product Designer", "Senior Data Engineer", "Backend Engineer"]


def test_search_filters_by_status_and_since(seeded: CorpusEngine) -> None:
    assert titles(seeded, active=False) == ["Backend Engineer"]
    assert titles(seeded, active=True) == ["Product Designer", "Senior Data Engineer"]
    assert titles(seeded, since="2026-03-02T00:00:00Z") == [
        "Product Designer",
        "Senior Data Engineer",
    ]
    assert titles(seeded, company_id="globex") == []


def test_search_applies_boolean_query(seeded: CorpusEngine) -> None:
    assert titles(seeded, query='("data engineer" OR backend) -recruiter') == [
        "Senior Data Engineer"
    ]
    assert titles(seeded, query="figma OR spark") == ["Product Designer", "Senior Data Engineer"]
    assert titles(seeded, query="-engineer") == ["Product Designer"]


def test_search_limit_counts_only_matches(seeded: CorpusEngine) -> None:
    assert titles(seeded, query="engineer", limit=1) == ["Senior Data Engineer"]
    assert len(seeded.search(limit=2)) == 2


def test_search_defaults_to_configured_limit(seeded: CorpusEngine) -> None:
    seeded.settings = seeded.settings.model_copy(update={"default_search_limit": 1})
    assert len(seeded.search()) == 1


def test_search_rejects_bad_input_before_reading(seeded: CorpusEngine) -> None:
    with pytest.raises(ParseError) as exc_info:
        seeded.search(query="(unclosed")
    assert exc_info.value.position == 0
    with pytest.raises(ValueError, match="Invalid since"):
        seeded.search(since="last tuesday")
    with pytest.raises(ValueError, match="limit"):
        seeded.search(limit=0)


def test_search_spans_companies(seeded: CorpusEngine, repository: CorpusRepository, feed) -> None:
    globex = CompanyConfig(
        company_id="globex",
        name="Globex",
        fetch_url="https://globex.example/jobs.json",
        extractor="json_feed",
    )
    repository.upsert_company(globex)
    seeded.registry.add_company(globex)
    feed.set_feed("globex", [{"title": "Data Engineer", "url": "https://globex.example/1"}])
    seeded.run_ingestion_cycle("globex", now=datetime(2026, 3, 3, tzinfo=UTC))

    assert titles(seeded, query='"data engineer"') == ["Data Engineer", "Senior Data Engineer"]
    assert titles(seeded, query='"data engineer"', company_id="acme") == ["Senior Data Engineer"]


def test_get_posting_by_id(seeded: CorpusEngine) -> None:
    first = seeded.search(query="backend")[0]

    assert seeded.get_posting_by_id(first.id) == first
    with pytest.raises(PostingNotFound):
        seeded.get_posting_by_id(9999)


def test_resolve_since_normalizes_offsets() -> None:
    assert resolve_since("2026-03-02T11:00:00+02:00") == "2026-03-02T09:00:00.000000+00:00"
    assert resolve_since(None) is None
    assert resolve_since("") is None
