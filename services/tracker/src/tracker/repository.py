from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Callable, Iterator
from contextlib import closing, contextmanager
from pathlib import Path
from typing import Any

from common.utils import now_utc_iso

from tracker.errors import PersistenceError
from tracker.models import (
    Company,
    CompanyConfig,
    CycleHistoryItem,
    CycleResult,
    JobPosting,
    NormalizedPosting,
)

LOGGER = logging.getLogger("jobcorpus.repository")

SCHEMA = """
CREATE TABLE IF NOT EXISTS companies (
    company_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    ticker TEXT,
    fetch_url TEXT NOT NULL,
    base_url TEXT,
    extractor TEXT NOT NULL,
    enabled INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    last_cycle_at TEXT,
    last_success_at TEXT,
    last_status TEXT,
    last_error TEXT,
    consecutive_failures INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS job_postings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    company_id TEXT NOT NULL REFERENCES companies(company_id),
    identity_key TEXT NOT NULL,
    title TEXT NOT NULL DEFAULT '',
    location_text TEXT NOT NULL DEFAULT '',
    date_posted_raw TEXT,
    description_text TEXT NOT NULL DEFAULT '',
    description_plain TEXT NOT NULL DEFAULT '',
    source_url TEXT NOT NULL DEFAULT '',
    canonical_url TEXT NOT NULL DEFAULT '',
    is_active INTEGER NOT NULL DEFAULT 1,
    first_seen_at TEXT NOT NULL,
    last_seen_at TEXT NOT NULL,
    closed_at TEXT,
    UNIQUE (company_id, identity_key)
);

CREATE INDEX IF NOT EXISTS idx_job_postings_company_active_seen
    ON job_postings (company_id, is_active, last_seen_at);

CREATE TABLE IF NOT EXISTS ingestion_cycles (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    company_id TEXT NOT NULL,
    started_at TEXT NOT NULL,
    finished_at TEXT NOT NULL,
    status TEXT NOT NULL,
    fetched INTEGER NOT NULL DEFAULT 0,
    discarded INTEGER NOT NULL DEFAULT 0,
    created INTEGER NOT NULL DEFAULT 0,
    renewed INTEGER NOT NULL DEFAULT 0,
    reopened INTEGER NOT NULL DEFAULT 0,
    updated INTEGER NOT NULL DEFAULT 0,
    closed INTEGER NOT NULL DEFAULT 0,
    error TEXT,
    error_type TEXT
);
"""

POSTING_COLUMNS = """
    id,
    company_id,
    identity_key,
    title,
    location_text,
    date_posted_raw,
    description_text,
    description_plain,
    source_url,
    canonical_url,
    is_active,
    first_seen_at,
    last_seen_at,
    closed_at
"""

COMPANY_COLUMNS = """
    company_id,
    name,
    ticker,
    fetch_url,
    base_url,
    extractor,
    enabled,
    created_at,
    updated_at,
    last_cycle_at,
    last_success_at,
    last_status,
    last_error,
    consecutive_failures
"""

CYCLE_COLUMNS = """
    id AS cycle_id,
    company_id,
    started_at,
    finished_at,
    status,
    fetched,
    discarded,
    created,
    renewed,
    reopened,
    updated,
    closed,
    error,
    error_type
"""

CONTENT_FIELDS = (
    "title",
    "location_text",
    "date_posted_raw",
    "description_text",
    "source_url",
    "canonical_url",
)


def _to_posting(row: sqlite3.Row) -> JobPosting:
    return JobPosting(**dict(row))


def _to_company(row: sqlite3.Row) -> Company:
    return Company(**dict(row))


def content_changed(stored: JobPosting, observed: NormalizedPosting) -> bool:
    return any(getattr(stored, field) != getattr(observed, field) for field in CONTENT_FIELDS)


class PostingWriter:
    """Posting mutations for one company inside an open transaction."""

    def __init__(self, connection: sqlite3.Connection, company_id: str) -> None:
        self._connection = connection
        self.company_id = company_id

    def find_by_key(self, identity_key: str) -> JobPosting | None:
        row = self._connection.execute(
            f"""
            SELECT {POSTING_COLUMNS}
            FROM job_postings
            WHERE company_id = ? AND identity_key = ?
            """,
            (self.company_id, identity_key),
        ).fetchone()
        return None if row is None else _to_posting(row)

    def insert(self, posting: NormalizedPosting, now: str) -> int:
        cursor = self._connection.execute(
            """
            INSERT INTO job_postings (
                company_id,
                identity_key,
                title,
                location_text,
                date_posted_raw,
                description_text,
                description_plain,
                source_url,
                canonical_url,
                is_active,
                first_seen_at,
                last_seen_at,
                closed_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?, NULL)
            """,
            (
                self.company_id,
                posting.identity_key,
                posting.title,
                posting.location_text,
                posting.date_posted_raw,
                posting.description_text,
                posting.description_plain,
                posting.source_url,
                posting.canonical_url,
                now,
                now,
            ),
        )
        return int(cursor.lastrowid)

    def _overwrite(
        self,
        posting_id: int,
        posting: NormalizedPosting,
        now: str,
        *,
        reopen: bool,
    ) -> None:
        reopen_clause = "is_active = 1, closed_at = NULL," if reopen else ""
        self._connection.execute(
            f"""
            UPDATE job_postings
            SET
                {reopen_clause}
                title = ?,
                location_text = ?,
                date_posted_raw = ?,
                description_text = ?,
                description_plain = ?,
                source_url = ?,
                canonical_url = ?,
                last_seen_at = MAX(last_seen_at, ?)
            WHERE id = ?
            """,
            (
                posting.title,
                posting.location_text,
                posting.date_posted_raw,
                posting.description_text,
                posting.description_plain,
                posting.source_url,
                posting.canonical_url,
                now,
                posting_id,
            ),
        )

    def renew(self, stored: JobPosting, posting: NormalizedPosting, now: str) -> bool:
        """Advance last_seen_at; overwrite content when it changed. Returns True on change."""
        if content_changed(stored, posting):
            self._overwrite(stored.id, posting, now, reopen=False)
            return True
        self._connection.execute(
            "UPDATE job_postings SET last_seen_at = MAX(last_seen_at, ?) WHERE id = ?",
            (now, stored.id),
        )
        return False

    def reopen(self, stored: JobPosting, posting: NormalizedPosting, now: str) -> None:
        self._overwrite(stored.id, posting, now, reopen=True)

    def close(self, identity_key: str, now: str) -> bool:
        cursor = self._connection.execute(
            """
            UPDATE job_postings
            SET is_active = 0, closed_at = ?
            WHERE company_id = ? AND identity_key = ? AND is_active = 1
            """,
            (now, self.company_id, identity_key),
        )
        return cursor.rowcount > 0


class CorpusRepository:
    def __init__(self, database_path: str) -> None:
        self.database_path = Path(database_path)
        self._connection: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    @property
    def connection(self) -> sqlite3.Connection:
        if self._connection is None:
            raise RuntimeError("Database connection is not initialized")
        return self._connection

    def connect(self) -> None:
        with self._lock:
            self.database_path.parent.mkdir(parents=True, exist_ok=True)
            self._connection = sqlite3.connect(self.database_path, check_same_thread=False)
            self._connection.row_factory = sqlite3.Row
            self._connection.execute("PRAGMA foreign_keys=ON")
            self._connection.execute("PRAGMA journal_mode=WAL")
            self._connection.executescript(SCHEMA)
            self._connection.commit()

    def close(self) -> None:
        with self._lock:
            if self._connection is None:
                return
            self._connection.close()
            self._connection = None

    @contextmanager
    def _read_connection(self) -> Iterator[sqlite3.Connection]:
        # Reads use their own connection so they never wait on the writer lock.
        with closing(sqlite3.connect(self.database_path)) as connection:
            connection.row_factory = sqlite3.Row
            yield connection

    def upsert_company(self, config: CompanyConfig) -> Company:
        with self._lock:
            now = now_utc_iso()
            self.connection.execute(
                """
                INSERT INTO companies (
                    company_id,
                    name,
                    ticker,
                    fetch_url,
                    base_url,
                    extractor,
                    enabled,
                    created_at,
                    updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(company_id) DO UPDATE SET
                    name = excluded.name,
                    ticker = excluded.ticker,
                    fetch_url = excluded.fetch_url,
                    base_url = excluded.base_url,
                    extractor = excluded.extractor,
                    enabled = excluded.enabled,
                    updated_at = excluded.updated_at
                """,
                (
                    config.company_id,
                    config.name,
                    config.ticker,
                    str(config.fetch_url),
                    str(config.base_url) if config.base_url else None,
                    config.extractor,
                    int(config.enabled),
                    now,
                    now,
                ),
            )
            self.connection.commit()
            return self.get_company_or_raise(config.company_id)

    def get_company_or_raise(self, company_id: str) -> Company:
        company = self.get_company(company_id)
        if company is None:
            raise KeyError(f"Unknown company_id: {company_id}")
        return company

    def get_company(self, company_id: str) -> Company | None:
        with self._lock:
            row = self.connection.execute(
                f"SELECT {COMPANY_COLUMNS} FROM companies WHERE company_id = ?",
                (company_id,),
            ).fetchone()
            return None if row is None else _to_company(row)

    def list_companies(self, enabled_only: bool = False) -> list[Company]:
        with self._lock:
            query = f"SELECT {COMPANY_COLUMNS} FROM companies"
            if enabled_only:
                query += " WHERE enabled = 1"
            query += " ORDER BY company_id"
            return [_to_company(row) for row in self.connection.execute(query).fetchall()]

    def active_postings(self, company_id: str) -> dict[str, JobPosting]:
        with self._lock:
            try:
                rows = self.connection.execute(
                    f"""
                    SELECT {POSTING_COLUMNS}
                    FROM job_postings
                    WHERE company_id = ? AND is_active = 1
                    """,
                    (company_id,),
                ).fetchall()
            except sqlite3.Error as exc:
                raise PersistenceError(
                    f"could not read active postings for {company_id}: {exc}"
                ) from exc
            return {row["identity_key"]: _to_posting(row) for row in rows}

    @contextmanager
    def transaction(self, company_id: str) -> Iterator[PostingWriter]:
        """Run posting writes for one company atomically.

        Commits when the block exits normally and rolls back on any exception.
        sqlite failures surface as PersistenceError.
        """
        with self._lock:
            connection = self.connection
            try:
                yield PostingWriter(connection, company_id)
                connection.commit()
            except sqlite3.Error as exc:
                connection.rollback()
                LOGGER.warning(
                    json.dumps(
                        {
                            "event": "transaction_rolled_back",
                            "company_id": company_id,
                            "error": str(exc),
                        }
                    )
                )
                raise PersistenceError(
                    f"posting transaction failed for {company_id}: {exc}"
                ) from exc
            except BaseException:
                connection.rollback()
                raise

    def get_posting(self, posting_id: int) -> JobPosting | None:
        with self._read_connection() as connection:
            row = connection.execute(
                f"SELECT {POSTING_COLUMNS} FROM job_postings WHERE id = ?",
                (posting_id,),
            ).fetchone()
            return None if row is None else _to_posting(row)

    def search_postings(
        self,
        *,
        company_id: str | None,
        active: bool | None,
        since: str | None,
        limit: int,
        predicate: Callable[[JobPosting], bool] | None = None,
    ) -> list[JobPosting]:
        """Stream filtered postings most-recently-seen first, keeping up to ``limit``.

        ``predicate`` is applied row by row, so ``limit`` counts only matches.
        """
        query = f"SELECT {POSTING_COLUMNS} FROM job_postings"
        filters: list[str] = []
        params: list[Any] = []
        if company_id:
            filters.append("company_id = ?")
            params.append(company_id)
        if active is not None:
            filters.append("is_active = ?")
            params.append(int(active))
        if since:
            filters.append("last_seen_at >= ?")
            params.append(since)
        if filters:
            query += " WHERE " + " AND ".join(filters)
        query += " ORDER BY last_seen_at DESC, id DESC"

        results: list[JobPosting] = []
        with self._read_connection() as connection:
            for row in connection.execute(query, tuple(params)):
                posting = _to_posting(row)
                if predicate is not None and not predicate(posting):
                    continue
                results.append(posting)
                if len(results) >= limit:
                    break
        return results

    def record_cycle(self, result: CycleResult) -> CycleHistoryItem:
        with self._lock:
            if result.status == "ok":
                self.connection.execute(
                    """
                    UPDATE companies
                    SET
                        last_cycle_at = ?,
                        last_success_at = ?,
                        last_status = 'ok',
                        last_error = NULL,
                        consecutive_failures = 0,
                        updated_at = ?
                    WHERE company_id = ?
                    """,
                    (result.finished_at, result.finished_at, now_utc_iso(), result.company_id),
                )
            elif result.status == "error":
                self.connection.execute(
                    """
                    UPDATE companies
                    SET
                        last_cycle_at = ?,
                        last_status = 'error',
                        last_error = ?,
                        consecutive_failures = consecutive_failures + 1,
                        updated_at = ?
                    WHERE company_id = ?
                    """,
                    (result.finished_at, result.error, now_utc_iso(), result.company_id),
                )

            cursor = self.connection.execute(
                """
                INSERT INTO ingestion_cycles (
                    company_id,
                    started_at,
                    finished_at,
                    status,
                    fetched,
                    discarded,
                    created,
                    renewed,
                    reopened,
                    updated,
                    closed,
                    error,
                    error_type
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    result.company_id,
                    result.started_at,
                    result.finished_at,
                    result.status,
                    result.fetched,
                    result.discarded,
                    result.created,
                    result.renewed,
                    result.reopened,
                    result.updated,
                    result.closed,
                    result.error,
                    result.error_type,
                ),
            )
            self.connection.commit()
            return CycleHistoryItem(cycle_id=int(cursor.lastrowid), **result.model_dump())

    def list_cycles(self, *, company_id: str | None, limit: int) -> list[CycleHistoryItem]:
        with self._lock:
            query = f"SELECT {CYCLE_COLUMNS} FROM ingestion_cycles"
            params: list[Any] = []
            if company_id:
                query += " WHERE company_id = ?"
                params.append(company_id)
            query += " ORDER BY id DESC LIMIT ?"
            params.append(limit)
            cursor = self.connection.execute(query, tuple(params))
            return [CycleHistoryItem(**dict(row)) for row in cursor.fetchall()]
