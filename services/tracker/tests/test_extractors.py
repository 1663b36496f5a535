from __future__ import annotations

import json

import pytest
from tracker.errors import ExtractionError
from tracker.extractors import (
    extract_greenhouse,
    extract_json_feed,
    extract_json_ld,
    extract_lever,
)
from tracker.models import Company, RawContent

pytestmark = pytest.mark.unit

COMPANY = Company(
    company_id="acme",
    name="Acme Corp",
    fetch_url="https://acme.example/careers",
    extractor="json_ld",
    enabled=True,
    created_at="2026-01-01T00:00:00.000000+00:00",
    updated_at="2026-01-01T00:00:00.000000+00:00",
)


def raw(body: str) -> RawContent:
    return RawContent(
        url=COMPANY.fetch_url,
        final_url=COMPANY.fetch_url,
        status_code=200,
        body=body,
        fetched_at="2026-03-01T00:00:00.000000+00:00",
    )


def page(*blocks: str) -> str:
    scripts = "".join(f'<script type="application/ld+json">{block}</script>' for block in blocks)
    return f"<html><head>{scripts}</head><body><h1>Careers</h1></body></html>"


def test_json_ld_job_posting_fields_are_mapped() -> None:
    block = json.dumps(
        {
            "@context": "https://schema.org",
            "@type": "JobPosting",
            "title": "Senior Engineer",
            "jobLocation": {
                "@type": "Place",
                "address": {
                    "addressLocality": "Austin",
                    "addressRegion": "TX",
                    "addressCountry": "US",
                },
            },
            "datePosted": "2026-01-05",
            "description": "<p>Build services</p>",
            "url": "https://acme.example/jobs/req-123",
        }
    )

    candidates = extract_json_ld(raw(page(block)), COMPANY)

    assert len(candidates) == 1
    candidate = candidates[0]
    assert candidate.title == "Senior Engineer"
    assert candidate.location_text == "Austin, TX, US"
    assert candidate.date_posted_raw == "2026-01-05"
    assert candidate.description_html == "<p>Build services</p>"
    assert candidate.source_url == "https://acme.example/jobs/req-123"


def test_json_ld_walks_graphs_and_skips_malformed_blocks() -> None:
    graph = json.dumps(
        {
            "@graph": [
                {"@type": "Organization", "name": "Acme"},
                {"@type": ["JobPosting"], "name": "Data Engineer", "url": "/jobs/2"},
                {
                    "@type": "ItemList",
                    "itemListElement": [{"item": {"@type": "jobposting", "title": "SRE"}}],
                },
            ]
        }
    )
    multi_location = json.dumps(
        {
            "@type": "JobPosting",
            "title": "Designer",
            "jobLocation": [
                {"address": {"addressLocality": "Berlin", "addressCountry": {"name": "DE"}}},
                {"address": {"addressLocality": "Remote"}},
                {"address": {"addressLocality": "Berlin", "addressCountry": {"name": "DE"}}},
            ],
        }
    )

    candidates = extract_json_ld(raw(page("{not json", graph, multi_location)), COMPANY)

    assert [candidate.title for candidate in candidates] == ["Data Engineer", "SRE", "Designer"]
    assert candidates[0].source_url == "/jobs/2"
    assert candidates[1].source_url is None
    assert candidates[2].location_text == "Berlin, DE; Remote"


def test_json_ld_page_without_postings_is_empty() -> None:
    assert extract_json_ld(raw("<html><body>No openings</body></html>"), COMPANY) == []
    assert extract_json_ld(raw(""), COMPANY) == []


def test_json_feed_accepts_lists_and_wrapped_objects() -> None:
    items = [
        {
            "title": "Backend Engineer",
            "location": ["Austin", "Remote"],
            "date_posted": "2026-02-01",
            "description": "<p>APIs</p>",
            "absolute_url": "https://acme.example/jobs/1",
        },
        {"name": "Analyst", "location": "NYC", "apply_url": "/jobs/2"},
    ]

    from_list = extract_json_feed(raw(json.dumps(items)), COMPANY)
    from_object = extract_json_feed(raw(json.dumps({"jobs": items})), COMPANY)

    assert from_list == from_object
    assert from_list[0].location_text == "Austin; Remote"
    assert from_list[0].source_url == "https://acme.example/jobs/1"
    assert from_list[1].title == "Analyst"
    assert from_list[1].source_url == "/jobs/2"


@pytest.mark.parametrize("body", ["<html>", '{"postings": "nope"}', "42", "[1, 2]"])
def test_json_feed_rejects_malformed_bodies(body: str) -> None:
    with pytest.raises(ExtractionError) as exc_info:
        extract_json_feed(raw(body), COMPANY)
    assert exc_info.value.company_id == "acme"


def test_json_feed_empty_list_yields_no_candidates() -> None:
    assert extract_json_feed(raw('{"postings": []}'), COMPANY) == []


def test_greenhouse_board_jobs_are_mapped() -> None:
    body = json.dumps(
        {
            "jobs": [
                {
                    "id": 4012,
                    "title": "Site Reliability Engineer",
                    "absolute_url": "https://boards.greenhouse.io/acme/jobs/4012",
                    "location": {"name": "Remote - US"},
                    "updated_at": "2026-02-27T10:15:00-05:00",
                    "content": "&lt;p&gt;Keep &amp;amp; scale our fleet&lt;/p&gt;",
                },
                "not-a-job",
            ],
            "meta": {"total": 1},
        }
    )

    [candidate] = extract_greenhouse(raw(body), COMPANY)

    assert candidate.title == "Site Reliability Engineer"
    assert candidate.source_url == "https://boards.greenhouse.io/acme/jobs/4012"
    assert candidate.location_text == "Remote - US"
    assert candidate.date_posted_raw == "2026-02-27T10:15:00-05:00"
    assert candidate.description_html == "<p>Keep &amp; scale our fleet</p>"


def test_lever_postings_are_mapped() -> None:
    body = json.dumps(
        [
            {
                "id": "b1c2",
                "text": "Data Analyst",
                "hostedUrl": "https://jobs.lever.co/acme/b1c2",
                "applyUrl": "https://jobs.lever.co/acme/b1c2/apply",
                "categories": {"location": "Berlin", "commitment": "Full-time"},
                "createdAt": 1772323200000,
                "descriptionPlain": "SQL and dashboards",
            },
            {"text": "Recruiter", "applyUrl": "https://jobs.lever.co/acme/x9/apply"},
        ]
    )

    first, second = extract_lever(raw(body), COMPANY)

    assert first.title == "Data Analyst"
    assert first.source_url == "https://jobs.lever.co/acme/b1c2"
    assert first.location_text == "Berlin"
    assert first.date_posted_raw == "2026-03-01"
    assert first.description_html == "SQL and dashboards"
    assert second.source_url == "https://jobs.lever.co/acme/x9/apply"
    assert second.date_posted_raw is None


@pytest.mark.parametrize(
    ("extractor", "body"),
    [
        (extract_greenhouse, "<html>maintenance</html>"),
        (extract_greenhouse, "[]"),
        (extract_lever, '{"ok": false}'),
        (extract_lever, "not json"),
    ],
)
def test_ats_adapters_reject_unexpected_payloads(extractor, body: str) -> None:
    with pytest.raises(ExtractionError):
        extractor(raw(body), COMPANY)
