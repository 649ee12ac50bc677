"""Ingestion pipeline: raw rows in, classified and deduplicated transactions out.

Steps for one batch:
1. Validate rows; invalid rows are dropped (prepared < total)
2. Derive duplicate_key, anomaly flags and category per row
3. Drop intra-batch duplicates (first occurrence wins)
4. Drop rows already persisted for the owner
5. Per chunk: resolve labels, then insert in one SQLite transaction
6. Report counters

Category priority: label from the row > first matching rule > batch
default > none. Labels are resolved (find-or-create by normalized name)
only for rows that survive dedup.

Chunks are independent writes. If one fails, earlier chunks stay
committed, the remaining chunks are not attempted, and IngestionError
carries the counters for what was committed. Retrying the batch is safe:
already-inserted rows are recognized as persisted duplicates.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from txnflow.categorize.anomaly import UNUSUAL_AMOUNT_THRESHOLD, detect_anomalies
from txnflow.categorize.rules import RuleEngine
from txnflow.database.dedup import DedupEngine
from txnflow.database.models import Transaction
from txnflow.database.repository import Repository
from txnflow.parsers.base import (
    CandidateRow,
    RawRow,
    compute_duplicate_key,
    validate_row,
)

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1000


@dataclass
class IngestResult:
    """Counters for one ingestion call."""
    total: int
    prepared: int
    inserted: int
    skipped_duplicates: int
    flagged_count: int


class IngestionError(Exception):
    """A chunk write failed. ``result`` reflects only committed chunks."""

    def __init__(self, message: str, result: IngestResult):
        self.result = result
        super().__init__(message)


@dataclass
class _Candidate:
    txn: Transaction
    category_label: str | None

    @property
    def duplicate_key(self) -> str:
        return self.txn.duplicate_key


class IngestionPipeline:
    """Validate → key/category/flags → dedup → chunked insert.

    Args:
        repo: Database repository.
        dedup: Dedup engine. Built from repo when omitted.
        chunk_size: Max rows per insert transaction.
        unusual_amount_threshold: Amounts strictly above this are flagged.
    """

    def __init__(
        self,
        repo: Repository,
        dedup: DedupEngine | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        unusual_amount_threshold: Decimal = UNUSUAL_AMOUNT_THRESHOLD,
    ):
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        self.repo = repo
        self.dedup = dedup or DedupEngine(repo)
        self.chunk_size = chunk_size
        self.unusual_amount_threshold = unusual_amount_threshold

    def ingest(
        self,
        user_id: str,
        rows: Iterable[RawRow],
        default_category_id: int | None = None,
    ) -> IngestResult:
        """Import a batch of raw rows for one owner."""
        rows = list(rows)
        engine = RuleEngine.for_user(self.repo, user_id)

        candidates: list[_Candidate] = []
        for index, raw in enumerate(rows):
            row = validate_row(raw)
            if row is None:
                logger.debug("Row %d rejected: date=%r amount=%r", index, raw.date, raw.amount)
                continue
            candidates.append(self._prepare(user_id, row, engine, default_category_id))
        prepared = len(candidates)
        if prepared < len(rows):
            logger.info("Dropped %d invalid row(s) of %d", len(rows) - prepared, len(rows))

        unique = self.dedup.drop_batch_duplicates(candidates)
        fresh = self.dedup.drop_persisted_duplicates(user_id, unique)
        labels: dict[str, int] = {}
        inserted = 0
        flagged = 0
        attempted = 0
        for start in range(0, len(fresh), self.chunk_size):
            group = fresh[start : start + self.chunk_size]
            chunk = [c.txn for c in group]
            try:
                self._resolve_labels(user_id, group, labels)
                written = self.repo.insert_transactions_chunk(chunk)
            except sqlite3.Error as e:
                partial = IngestResult(
                    total=len(rows),
                    prepared=prepared,
                    inserted=inserted,
                    skipped_duplicates=prepared - len(fresh) + attempted - inserted,
                    flagged_count=flagged,
                )
                logger.error(
                    "Chunk at row %d failed after %d insert(s); remaining chunks skipped: %s",
                    start, inserted, e,
                )
                raise IngestionError(f"Chunk write failed: {e}", partial) from e
            attempted += len(chunk)
            inserted += len(written)
            flagged += sum(1 for t in written if t.is_flagged)

        result = IngestResult(
            total=len(rows),
            prepared=prepared,
            inserted=inserted,
            skipped_duplicates=prepared - inserted,
            flagged_count=flagged,
        )
        logger.info(
            "Ingested %d of %d row(s) for %s (dup=%d, flagged=%d)",
            result.inserted, result.total, user_id,
            result.skipped_duplicates, result.flagged_count,
        )
        return result

    def create_transaction(
        self,
        user_id: str,
        date: str,
        description: str,
        amount,
        category_id: int | None = None,
    ) -> Transaction:
        """Insert a single transaction outside of a batch.

        Raises:
            ValueError: The date or amount does not parse.
            DuplicateTransactionError: The owner already has this transaction.
        """
        row = validate_row(RawRow(date=str(date), amount=str(amount), description=description))
        if row is None:
            raise ValueError(f"Invalid transaction date or amount: {date!r}, {amount!r}")
        txn = self._build(user_id, row, category_id)
        return self.repo.insert_transaction(txn)

    def _build(self, user_id: str, row: CandidateRow, category_id: int | None) -> Transaction:
        return Transaction(
            user_id=user_id,
            date=row.date,
            description=row.description,
            amount=row.amount,
            category_id=category_id,
            duplicate_key=compute_duplicate_key(row.description, row.date, row.amount),
            flag_reasons=detect_anomalies(
                row.description, row.amount, self.unusual_amount_threshold
            ),
        )

    def _prepare(
        self,
        user_id: str,
        row: CandidateRow,
        engine: RuleEngine,
        default_category_id: int | None,
    ) -> _Candidate:
        category_id = None
        if row.category_label is None:
            category_id = engine.resolve_category(row.description, row.amount)
            if category_id is None:
                category_id = default_category_id
        return _Candidate(
            txn=self._build(user_id, row, category_id),
            category_label=row.category_label,
        )

    def _resolve_labels(
        self, user_id: str, candidates: list[_Candidate], cache: dict[str, int],
    ) -> None:
        """Turn row category labels into category ids, creating categories as needed."""
        for c in candidates:
            label = c.category_label
            if label is None:
                continue
            if label not in cache:
                cache[label] = self.repo.find_or_create_category(user_id, label).id
            c.txn.category_id = cache[label]
