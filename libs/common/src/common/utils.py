from __future__ import annotations

import hashlib
from datetime import UTC, datetime


def now_utc_iso() -> str:
    return to_utc_iso(datetime.now(UTC))


def to_utc_iso(value: datetime) -> str:
    """Render a datetime as a fixed-width UTC ISO string.

    Naive datetimes are taken to be UTC already. Microseconds are always
    present so stored timestamps sort lexically in time order.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def parse_iso_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None


def normalize_whitespace(text: str | None) -> str:
    if not text:
        return ""
    return " ".join(text.split())


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()
