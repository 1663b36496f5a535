"""Built-in extractor capabilities.

An extractor is any callable ``(RawContent, Company) -> list[Candidate]``.
Extractors only read the fetched body; URL resolution, identity and
sanitization happen later in the normalizer.
"""

from __future__ import annotations

import html
import json
from collections.abc import Iterator
from datetime import UTC, datetime
from typing import Any

from bs4 import BeautifulSoup

from tracker.errors import ExtractionError
from tracker.models import Candidate, Company, RawContent

JSON_LD_TYPE = "application/ld+json"
JOB_POSTING_TYPE = "jobposting"
FEED_LIST_KEYS = ("postings", "jobs")
FEED_URL_KEYS = ("url", "apply_url", "absolute_url")
LOCATION_SEPARATOR = "; "


def _scalar_text(value: Any) -> str | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (str, int, float)):
        text = str(value).strip()
        return text or None
    if isinstance(value, dict):
        return _scalar_text(value.get("name"))
    return None


def _first_text(node: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        text = _scalar_text(node.get(key))
        if text:
            return text
    return None


def _is_json_ld_script(value: str | None) -> bool:
    return bool(value) and value.split(";", 1)[0].strip().lower() == JSON_LD_TYPE


def _is_job_posting(node: dict[str, Any]) -> bool:
    types = node.get("@type")
    if isinstance(types, str):
        types = [types]
    if not isinstance(types, list):
        return False
    return any(isinstance(item, str) and item.lower() == JOB_POSTING_TYPE for item in types)


def _walk_job_postings(node: Any) -> Iterator[dict[str, Any]]:
    if isinstance(node, dict):
        if _is_job_posting(node):
            yield node
        for value in node.values():
            if isinstance(value, (dict, list)):
                yield from _walk_job_postings(value)
    elif isinstance(node, list):
        for item in node:
            yield from _walk_job_postings(item)


def _location_strings(node: Any) -> list[str]:
    if isinstance(node, list):
        return [text for item in node for text in _location_strings(item)]
    if isinstance(node, str):
        text = node.strip()
        return [text] if text else []
    if not isinstance(node, dict):
        return []

    address = node.get("address", node)
    if isinstance(address, dict):
        parts = [
            text
            for text in (
                _scalar_text(address.get("addressLocality")),
                _scalar_text(address.get("addressRegion")),
                _scalar_text(address.get("addressCountry")),
            )
            if text
        ]
        if parts:
            return [", ".join(parts)]
    elif isinstance(address, str) and address.strip():
        return [address.strip()]

    fallback = _scalar_text(node.get("name"))
    return [fallback] if fallback else []


def _join_locations(node: Any) -> str | None:
    unique = list(dict.fromkeys(_location_strings(node)))
    return LOCATION_SEPARATOR.join(unique) or None


def extract_json_ld(raw: RawContent, company: Company) -> list[Candidate]:
    """Collect schema.org JobPosting nodes from JSON-LD script blocks.

    Malformed blocks are skipped. Nodes without a ``url`` are left without a
    source URL rather than inheriting the listing page's address, which would
    collapse every posting on the page into one identity.
    """
    if not raw.body.strip():
        return []
    soup = BeautifulSoup(raw.body, "html.parser")
    candidates: list[Candidate] = []
    for script in soup.find_all("script", attrs={"type": _is_json_ld_script}):
        payload = script.string or script.get_text()
        if not payload or not payload.strip():
            continue
        try:
            root = json.loads(payload)
        except json.JSONDecodeError:
            continue
        for node in _walk_job_postings(root):
            candidates.append(
                Candidate(
                    title=_first_text(node, "title", "name"),
                    location_text=_join_locations(node.get("jobLocation")),
                    date_posted_raw=_scalar_text(node.get("datePosted")),
                    description_html=_scalar_text(node.get("description")),
                    source_url=_scalar_text(node.get("url")),
                )
            )
    return candidates


def _feed_items(payload: Any, company_id: str) -> list[Any]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in FEED_LIST_KEYS:
            items = payload.get(key)
            if isinstance(items, list):
                return items
    raise ExtractionError(
        "feed must be a list or an object with a 'postings' or 'jobs' list",
        company_id=company_id,
    )


def extract_json_feed(raw: RawContent, company: Company) -> list[Candidate]:
    try:
        payload = json.loads(raw.body)
    except json.JSONDecodeError as exc:
        raise ExtractionError(
            f"feed body is not valid JSON: {exc.msg} at position {exc.pos}",
            company_id=company.company_id,
        ) from exc

    candidates: list[Candidate] = []
    for index, item in enumerate(_feed_items(payload, company.company_id)):
        if not isinstance(item, dict):
            raise ExtractionError(
                f"feed item {index} is not an object",
                company_id=company.company_id,
            )
        location = item.get("location", item.get("location_text"))
        candidates.append(
            Candidate(
                title=_first_text(item, "title", "name"),
                location_text=_join_locations(location),
                date_posted_raw=_first_text(item, "date_posted", "datePosted"),
                description_html=_first_text(item, "description", "description_html"),
                source_url=_first_text(item, *FEED_URL_KEYS),
            )
        )
    return candidates


def _load_json(raw: RawContent, company: Company, source: str) -> Any:
    try:
        return json.loads(raw.body)
    except json.JSONDecodeError as exc:
        raise ExtractionError(
            f"{source} payload is not valid JSON: {exc.msg} at position {exc.pos}",
            company_id=company.company_id,
        ) from exc


def extract_greenhouse(raw: RawContent, company: Company) -> list[Candidate]:
    """Greenhouse job board API (``boards-api.greenhouse.io/v1/boards/<token>/jobs?content=true``).

    ``content`` arrives entity-escaped and is unescaped back to HTML here.
    """
    payload = _load_json(raw, company, "greenhouse")
    jobs = payload.get("jobs") if isinstance(payload, dict) else None
    if not isinstance(jobs, list):
        raise ExtractionError(
            "greenhouse payload has no 'jobs' list",
            company_id=company.company_id,
        )

    candidates: list[Candidate] = []
    for job in jobs:
        if not isinstance(job, dict):
            continue
        content = _scalar_text(job.get("content"))
        candidates.append(
            Candidate(
                title=_scalar_text(job.get("title")),
                location_text=_scalar_text(job.get("location")),
                date_posted_raw=_scalar_text(job.get("updated_at")),
                description_html=html.unescape(content) if content else None,
                source_url=_scalar_text(job.get("absolute_url")),
            )
        )
    return candidates


def _epoch_millis_to_date(value: Any) -> str | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        return datetime.fromtimestamp(value / 1000, UTC).date().isoformat()
    except (OverflowError, OSError, ValueError):
        return None


def extract_lever(raw: RawContent, company: Company) -> list[Candidate]:
    """Lever postings API (``api.lever.co/v0/postings/<account>?mode=json``)."""
    payload = _load_json(raw, company, "lever")
    if not isinstance(payload, list):
        raise ExtractionError("lever payload must be a list", company_id=company.company_id)

    candidates: list[Candidate] = []
    for job in payload:
        if not isinstance(job, dict):
            continue
        categories = job.get("categories")
        location = categories.get("location") if isinstance(categories, dict) else None
        candidates.append(
            Candidate(
                title=_scalar_text(job.get("text")),
                location_text=_scalar_text(location),
                date_posted_raw=_epoch_millis_to_date(job.get("createdAt")),
                description_html=_first_text(job, "description", "descriptionPlain"),
                source_url=_first_text(job, "hostedUrl", "applyUrl"),
            )
        )
    return candidates


BUILTIN_EXTRACTORS = {
    "json_ld": extract_json_ld,
    "json_feed": extract_json_feed,
    "greenhouse": extract_greenhouse,
    "lever": extract_lever,
}
