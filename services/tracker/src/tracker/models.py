from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, HttpUrl, computed_field

CycleStatus = Literal["ok", "error", "skipped"]


class CompanyConfig(BaseModel):
    company_id: str = Field(..., min_length=2, max_length=64, pattern=r"^[a-zA-Z0-9_-]+$")
    name: str = Field(..., min_length=1, max_length=120)
    ticker: str | None = Field(default=None, max_length=16)
    fetch_url: HttpUrl
    base_url: HttpUrl | None = None
    extractor: str = Field(..., min_length=1)
    enabled: bool = True


class Company(BaseModel):
    company_id: str
    name: str
    ticker: str | None = None
    fetch_url: str
    base_url: str | None = None
    extractor: str
    enabled: bool
    created_at: str
    updated_at: str
    last_cycle_at: str | None = None
    last_success_at: str | None = None
    last_status: str | None = None
    last_error: str | None = None
    consecutive_failures: int = 0

    @property
    def resolved_base_url(self) -> str:
        return self.base_url or self.fetch_url


class RawContent(BaseModel):
    url: str
    final_url: str
    status_code: int
    content_type: str | None = None
    body: str
    fetched_at: str


class Candidate(BaseModel):
    """An unnormalized posting as produced by an extractor."""

    title: str | None = None
    location_text: str | None = None
    date_posted_raw: str | None = None
    description_html: str | None = None
    source_url: str | None = None


class NormalizedPosting(BaseModel):
    identity_key: str
    title: str
    location_text: str = ""
    date_posted_raw: str | None = None
    description_text: str = ""
    description_plain: str = ""
    source_url: str = ""
    canonical_url: str = ""


class JobPosting(BaseModel):
    id: int
    company_id: str
    identity_key: str
    title: str
    location_text: str = ""
    date_posted_raw: str | None = None
    description_text: str = ""
    description_plain: str = ""
    source_url: str = ""
    canonical_url: str = ""
    is_active: bool
    first_seen_at: str
    last_seen_at: str
    closed_at: str | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def display_url(self) -> str:
        return self.canonical_url or self.source_url


class CycleResult(BaseModel):
    company_id: str
    status: CycleStatus
    started_at: str
    finished_at: str
    fetched: int = 0
    discarded: int = 0
    created: int = 0
    renewed: int = 0
    reopened: int = 0
    updated: int = 0
    closed: int = 0
    error: str | None = None
    error_type: str | None = None


class CycleHistoryItem(CycleResult):
    cycle_id: int


class CycleBatchResponse(BaseModel):
    started_at: str
    requested: int
    successful: int
    failed: int
    skipped: int
    results: list[CycleResult]
