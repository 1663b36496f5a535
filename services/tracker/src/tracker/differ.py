from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from tracker.models import NormalizedPosting


@dataclass(frozen=True)
class PostingDiff:
    to_create: frozenset[str]
    to_renew: frozenset[str]
    to_close: frozenset[str]


def diff(existing_active_keys: Iterable[str], observed_keys: Iterable[str]) -> PostingDiff:
    existing = frozenset(existing_active_keys)
    observed = frozenset(observed_keys)
    return PostingDiff(
        to_create=observed - existing,
        to_renew=observed & existing,
        to_close=existing - observed,
    )


def dedupe_candidates(postings: Iterable[NormalizedPosting]) -> dict[str, NormalizedPosting]:
    """Index postings by identity key.

    A key listed twice on one page keeps its first position, but the later
    listing's fields win.
    """
    by_key: dict[str, NormalizedPosting] = {}
    for posting in postings:
        by_key[posting.identity_key] = posting
    return by_key
