from __future__ import annotations

from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient
from pytest_bdd import given, parsers, scenario, then, when
from tracker.main import create_app
from tracker.models import CompanyConfig
from tracker.registry import SourceRegistry
from tracker.settings import TrackerSettings

pytestmark = pytest.mark.bdd

ACME = CompanyConfig(
    company_id="acme",
    name="Acme Corp",
    fetch_url="https://acme.example/jobs.json",
    extractor="json_feed",
)


@scenario("features/corpus.feature", "A removed posting is closed and a new one is created")
def test_removed_posting_is_closed() -> None:
    pass


@scenario("features/corpus.feature", "A failed fetch leaves the corpus unchanged")
def test_failed_fetch_leaves_corpus_unchanged() -> None:
    pass


@scenario("features/corpus.feature", "A malformed query is rejected with its position")
def test_malformed_query_is_rejected() -> None:
    pass


@pytest.fixture
def context() -> dict[str, object]:
    return {"titles": []}


@pytest.fixture
def client(tmp_path: Path, context: dict[str, object]):
    def handler(request: httpx.Request) -> httpx.Response:
        titles = context["titles"]
        if titles is None:
            return httpx.Response(503)
        feed = [
            {"title": title, "url": f"/jobs/{title.lower().replace(' ', '-')}"}
            for title in titles
        ]
        return httpx.Response(200, json=feed)

    settings = TrackerSettings(
        database_path=str(tmp_path / "tracker.sqlite3"),
        max_retries=0,
        per_domain_interval_s=0,
    )
    app = create_app(
        settings,
        sources=SourceRegistry([ACME]),
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
    )
    with TestClient(app) as test_client:
        yield test_client


@given(parsers.parse('a company careers feed listing "{first}" and "{second}"'))
def given_feed_listing(context: dict[str, object], first: str, second: str) -> None:
    context["titles"] = [first, second]


@given("an ingestion cycle has run")
def given_cycle_has_run(client: TestClient) -> None:
    assert client.post("/companies/acme/cycles").status_code == 200


@when(
    parsers.parse('the feed lists "{first}" and "{second}" and another cycle runs'),
    target_fixture="response",
)
def when_feed_changes(client: TestClient, context: dict[str, object], first: str, second: str):
    context["titles"] = [first, second]
    return client.post("/companies/acme/cycles")


@when("the careers feed is unavailable and another cycle runs", target_fixture="response")
def when_feed_is_unavailable(client: TestClient, context: dict[str, object]):
    context["titles"] = None
    return client.post("/companies/acme/cycles")


@when(parsers.parse('postings are searched with "{query}"'), target_fixture="response")
def when_postings_are_searched(client: TestClient, query: str):
    return client.get("/postings", params={"q": query})


@then(
    parsers.parse(
        "the cycle reports {created:d} created, {renewed:d} renewed and {closed:d} closed"
    )
)
def then_cycle_counts(response, created: int, renewed: int, closed: int) -> None:
    assert response.status_code == 200
    body = response.json()
    assert (body["created"], body["renewed"], body["closed"]) == (created, renewed, closed)


@then(parsers.parse('the active postings are "{first}" and "{second}"'))
def then_active_postings(client: TestClient, first: str, second: str) -> None:
    response = client.get("/postings", params={"active": "true"})
    assert sorted(posting["title"] for posting in response.json()) == sorted([first, second])


@then("the cycle is rejected with a bad gateway error")
def then_bad_gateway(response) -> None:
    assert response.status_code == 502
    assert response.json()["detail"]["error_type"] == "FetchError"


@then(parsers.parse("the search is rejected at position {position:d}"))
def then_search_rejected(response, position: int) -> None:
    assert response.status_code == 400
    assert response.json()["detail"]["position"] == position
