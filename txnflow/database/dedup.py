"""Two-stage duplicate suppression for transaction imports.

Stages (both keyed on duplicate_key, see parsers.base.compute_duplicate_key):
1. Intra-batch: among rows sharing a key, keep the first by input order.
   Runs before any store interaction.
2. Persisted: drop rows whose key already exists for the owner.

Stage 2 is a check-then-act read, so two imports racing for the same owner
can both pass it. The UNIQUE (user_id, duplicate_key) index is what keeps
the store correct; Repository.insert_transactions_chunk skips rows that
hit it.
"""

from __future__ import annotations

import logging
from typing import Protocol, Sequence, TypeVar

from txnflow.database.repository import Repository

logger = logging.getLogger(__name__)


class _Keyed(Protocol):
    duplicate_key: str


K = TypeVar("K", bound=_Keyed)


class DedupEngine:
    """Suppress intra-batch and already-persisted duplicates."""

    def __init__(self, repo: Repository):
        self.repo = repo

    @staticmethod
    def drop_batch_duplicates(candidates: Sequence[K]) -> list[K]:
        """Keep the first occurrence of each duplicate_key, in input order."""
        seen: set[str] = set()
        kept: list[K] = []
        for c in candidates:
            if c.duplicate_key in seen:
                continue
            seen.add(c.duplicate_key)
            kept.append(c)
        dropped = len(candidates) - len(kept)
        if dropped:
            logger.debug("Dropped %d intra-batch duplicate(s)", dropped)
        return kept

    def drop_persisted_duplicates(self, user_id: str, candidates: Sequence[K]) -> list[K]:
        """Drop candidates whose duplicate_key is already stored for this owner."""
        if not candidates:
            return []
        existing = self.repo.existing_duplicate_keys(
            user_id, [c.duplicate_key for c in candidates]
        )
        kept = [c for c in candidates if c.duplicate_key not in existing]
        dropped = len(candidates) - len(kept)
        if dropped:
            logger.debug("Dropped %d already-imported duplicate(s)", dropped)
        return kept
