"""Filter building and reporting queries over the transactions table."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass


@dataclass
class TransactionFilter:
    """Predicates for listing and counting one owner's transactions.

    ``uncategorized`` wins over ``category_id`` when both are set.
    Dates are inclusive YYYY-MM-DD bounds.
    """
    category_id: int | None = None
    flagged: bool | None = None
    uncategorized: bool = False
    search: str | None = None
    date_from: str | None = None
    date_to: str | None = None


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def build_where(user_id: str, filt: TransactionFilter | None) -> tuple[str, list]:
    """Return a WHERE clause (without the keyword) and its parameters."""
    clauses = ["user_id = ?"]
    params: list = [user_id]
    if filt is None:
        return " AND ".join(clauses), params

    if filt.uncategorized:
        clauses.append("category_id IS NULL")
    elif filt.category_id is not None:
        clauses.append("category_id = ?")
        params.append(filt.category_id)
    if filt.flagged is not None:
        clauses.append("is_flagged = ?")
        params.append(int(filt.flagged))
    search = (filt.search or "").strip()
    if search:
        clauses.append("LOWER(description) LIKE ? ESCAPE '\\'")
        params.append(f"%{_escape_like(search.lower())}%")
    if filt.date_from:
        clauses.append("date >= ?")
        params.append(filt.date_from)
    if filt.date_to:
        clauses.append("date <= ?")
        params.append(filt.date_to)
    return " AND ".join(clauses), params


def get_status_counts(conn: sqlite3.Connection, user_id: str) -> dict:
    """Counts for the `txnflow status` command."""
    row = conn.execute(
        "SELECT"
        "  (SELECT COUNT(*) FROM transactions WHERE user_id = :u) AS total_txns,"
        "  (SELECT COUNT(*) FROM transactions"
        "     WHERE user_id = :u AND category_id IS NOT NULL) AS categorized,"
        "  (SELECT COUNT(*) FROM transactions"
        "     WHERE user_id = :u AND category_id IS NULL) AS uncategorized,"
        "  (SELECT COUNT(*) FROM transactions"
        "     WHERE user_id = :u AND is_flagged = 1) AS flagged,"
        "  (SELECT COUNT(*) FROM rules WHERE user_id = :u AND is_active = 1) AS active_rules,"
        "  (SELECT COUNT(*) FROM imports WHERE user_id = :u) AS total_imports",
        {"u": user_id},
    ).fetchone()
    return dict(row)
