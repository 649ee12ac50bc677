"""Bulk reclassification of uncategorized transactions.

Applies the owner's current active rules to every transaction whose
category_id is still NULL. Pages are fetched with a keyset cursor on id
(id > last seen) rather than OFFSET: matched rows leave the uncategorized
set during the sweep, and an offset would then skip rows.

Each match is committed as its own single-row update. Rows without a
match are left alone and are picked up again by the next run, so running
twice in a row updates nothing the second time.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass

from txnflow.categorize.rules import RuleEngine
from txnflow.database.repository import Repository

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 1000


@dataclass
class ReclassifyResult:
    """Summary of a reclassification sweep."""
    updated: int
    scanned: int = 0
    pages: int = 0


class ReclassifyError(Exception):
    """A row update failed mid-sweep. ``updated`` counts rows already committed."""

    def __init__(self, message: str, updated: int):
        self.updated = updated
        super().__init__(message)


class BulkReclassifier:
    """Cursor-paginated sweep applying rules to uncategorized transactions.

    Args:
        repo: Database repository.
        page_size: Max rows fetched per page.
    """

    def __init__(self, repo: Repository, page_size: int = DEFAULT_PAGE_SIZE):
        if page_size < 1:
            raise ValueError("page_size must be positive")
        self.repo = repo
        self.page_size = page_size

    def run(self, user_id: str) -> ReclassifyResult:
        engine = RuleEngine.for_user(self.repo, user_id)
        if not len(engine):
            logger.info("No active rules for %s; nothing to reclassify", user_id)
            return ReclassifyResult(updated=0)

        cursor = 0
        updated = 0
        scanned = 0
        pages = 0
        while True:
            page = self.repo.get_uncategorized_page(
                user_id, after_id=cursor, limit=self.page_size
            )
            if not page:
                break
            pages += 1
            scanned += len(page)

            for txn in page:
                category_id = engine.resolve_category(txn.description, txn.amount)
                if category_id is None:
                    continue
                try:
                    changed = self.repo.update_transaction_category(
                        user_id, txn.id, category_id
                    )
                except sqlite3.Error as e:
                    logger.error(
                        "Reclassify stopped at transaction %s after %d update(s): %s",
                        txn.id, updated, e,
                    )
                    raise ReclassifyError(
                        f"Failed to update transaction {txn.id}: {e}", updated
                    ) from e
                if changed:
                    updated += 1

            cursor = page[-1].id

        logger.info(
            "Reclassified %d of %d uncategorized transaction(s) for %s (%d page(s))",
            updated, scanned, user_id, pages,
        )
        return ReclassifyResult(updated=updated, scanned=scanned, pages=pages)
