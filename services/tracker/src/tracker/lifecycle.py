from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from tracker.differ import PostingDiff
from tracker.models import NormalizedPosting
from tracker.repository import CorpusRepository


@dataclass
class LifecycleCounts:
    created: int = 0
    renewed: int = 0
    reopened: int = 0
    updated: int = 0
    closed: int = 0


class LifecycleManager:
    """Applies one company's diff to the corpus in a single transaction."""

    def __init__(self, repository: CorpusRepository) -> None:
        self.repository = repository

    def apply(
        self,
        company_id: str,
        diff: PostingDiff,
        normalized_by_key: Mapping[str, NormalizedPosting],
        now: str,
    ) -> LifecycleCounts:
        counts = LifecycleCounts()
        observed = diff.to_create | diff.to_renew
        with self.repository.transaction(company_id) as writer:
            # Observed order, so inserted ids follow page order.
            for key, posting in normalized_by_key.items():
                if key not in observed:
                    continue
                stored = writer.find_by_key(key)
                if stored is None:
                    writer.insert(posting, now)
                    counts.created += 1
                elif not stored.is_active:
                    writer.reopen(stored, posting, now)
                    counts.reopened += 1
                else:
                    if writer.renew(stored, posting, now):
                        counts.updated += 1
                    counts.renewed += 1

            for key in sorted(diff.to_close):
                if writer.close(key, now):
                    counts.closed += 1
        return counts
