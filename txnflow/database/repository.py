"""Repository: CRUD operations against SQLite using raw SQL.

All methods take/return dataclass instances from models.py. Every query
is scoped to one owner (user_id). Connection management uses a single
connection with WAL mode and foreign keys enabled.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from pathlib import Path

from txnflow.parsers.base import canonical_amount, normalize_description

from .models import (
    Category,
    ConditionType,
    FlagReason,
    Import,
    Rule,
    Transaction,
)
from .queries import TransactionFilter, build_where

# Stay well inside SQLite's bound-variable limit.
_IN_CHUNK_SIZE = 500

_NUMERIC_CONDITIONS = frozenset({
    ConditionType.AMOUNT_EQUALS,
    ConditionType.AMOUNT_GREATER_THAN,
    ConditionType.AMOUNT_LESS_THAN,
})

_INSERT_TXN_SQL = (
    "INSERT INTO transactions"
    " (user_id, date, description, amount, category_id, duplicate_key,"
    "  is_flagged, flag_reason, created_at, updated_at)"
    " VALUES (?,?,?,?,?,?,?,?,?,?)"
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class DuplicateImportError(Exception):
    """Raised when attempting to import a file with a hash that already exists."""

    def __init__(self, file_hash: str, existing_import_id: int | None = None):
        self.file_hash = file_hash
        self.existing_import_id = existing_import_id
        super().__init__(f"Import with file_hash '{file_hash}' already exists")


class DuplicateTransactionError(Exception):
    """Raised when a single insert collides with an owner's existing duplicate_key."""

    def __init__(self, duplicate_key: str):
        self.duplicate_key = duplicate_key
        super().__init__(
            f"Transaction with duplicate_key {duplicate_key!r} already exists"
        )


class Repository:
    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._conn.execute("PRAGMA journal_mode = WAL")
        return self._conn

    def close(self):
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    # ── Migrations ──────────────────────────────────────────

    def apply_migrations(self, migrations_dir: Path):
        """Apply all pending SQL migrations in order.

        Each migration runs in a transaction: if the SQL fails, the
        schema_version row is not inserted, allowing retry on next startup.
        """
        self.conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_version ("
            "  version INTEGER PRIMARY KEY,"
            "  description TEXT,"
            "  applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP"
            ")"
        )
        self.conn.commit()

        row = self.conn.execute(
            "SELECT MAX(version) FROM schema_version"
        ).fetchone()
        current = row[0] or 0

        for sql_file in sorted(Path(migrations_dir).glob("*.sql")):
            version = int(sql_file.name.split("_")[0])
            if version > current:
                try:
                    self.conn.execute("BEGIN")
                    # executescript auto-commits, so we split statements manually
                    for statement in sql_file.read_text().split(";"):
                        statement = statement.strip()
                        if statement:
                            self.conn.execute(statement)
                    self.conn.execute(
                        "INSERT INTO schema_version (version, description) VALUES (?, ?)",
                        (version, sql_file.stem),
                    )
                    self.conn.commit()
                except Exception:
                    self.conn.rollback()
                    raise

    # ── Imports ─────────────────────────────────────────────

    def insert_import(self, imp: Import) -> Import:
        """Insert an import record.

        Raises:
            DuplicateImportError: If this owner already imported a file with
                the same hash. Covers two processes racing on one file.
        """
        try:
            cur = self.conn.execute(
                "INSERT INTO imports (user_id, file_name, file_hash, file_size,"
                " record_count, status, error_message, created_at, completed_at)"
                " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (imp.user_id, imp.file_name, imp.file_hash, imp.file_size,
                 imp.record_count, imp.status, imp.error_message,
                 imp.created_at, imp.completed_at),
            )
            self.conn.commit()
        except sqlite3.IntegrityError as e:
            self.conn.rollback()
            if "file_hash" in str(e) or "UNIQUE constraint failed" in str(e):
                existing = self.get_import_by_hash(imp.user_id, imp.file_hash)
                raise DuplicateImportError(
                    imp.file_hash,
                    existing.id if existing else None,
                ) from e
            raise
        imp.id = cur.lastrowid
        return imp

    def get_import_by_hash(self, user_id: str, file_hash: str) -> Import | None:
        row = self.conn.execute(
            "SELECT * FROM imports WHERE user_id = ? AND file_hash = ?",
            (user_id, file_hash),
        ).fetchone()
        return self._row_to_import(row) if row else None

    _IMPORT_UPDATE_COLS = frozenset({"record_count", "error_message", "completed_at"})

    def update_import_status(self, import_id: int, status: str, **kwargs):
        unknown = set(kwargs.keys()) - self._IMPORT_UPDATE_COLS
        if unknown:
            raise ValueError(f"Unknown columns for update_import_status: {unknown}")

        sets = ["status = ?"]
        vals: list = [status]
        for col in ("record_count", "error_message", "completed_at"):
            if col in kwargs:
                sets.append(f"{col} = ?")
                vals.append(kwargs[col])
        vals.append(import_id)
        self.conn.execute(
            f"UPDATE imports SET {', '.join(sets)} WHERE id = ?", vals
        )
        self.conn.commit()

    # ── Categories ──────────────────────────────────────────

    def find_or_create_category(self, user_id: str, name: str) -> Category:
        """Return the owner's category with this normalized name, creating it if needed.

        Names are unique per owner, not globally.
        """
        display = name.strip()
        normalized = normalize_description(display)
        if not normalized:
            raise ValueError("Category name must not be blank")
        self.conn.execute(
            "INSERT INTO categories (user_id, name, name_normalized, created_at)"
            " VALUES (?, ?, ?, ?)"
            " ON CONFLICT (user_id, name_normalized) DO NOTHING",
            (user_id, display, normalized, _now()),
        )
        self.conn.commit()
        row = self.conn.execute(
            "SELECT * FROM categories WHERE user_id = ? AND name_normalized = ?",
            (user_id, normalized),
        ).fetchone()
        return self._row_to_category(row)

    def get_category(self, user_id: str, category_id: int) -> Category | None:
        row = self.conn.execute(
            "SELECT * FROM categories WHERE user_id = ? AND id = ?",
            (user_id, category_id),
        ).fetchone()
        return self._row_to_category(row) if row else None

    def get_category_by_name(self, user_id: str, name: str) -> Category | None:
        row = self.conn.execute(
            "SELECT * FROM categories WHERE user_id = ? AND name_normalized = ?",
            (user_id, normalize_description(name)),
        ).fetchone()
        return self._row_to_category(row) if row else None

    def get_categories(self, user_id: str) -> list[Category]:
        rows = self.conn.execute(
            "SELECT * FROM categories WHERE user_id = ? ORDER BY name",
            (user_id,),
        ).fetchall()
        return [self._row_to_category(r) for r in rows]

    def rename_category(self, user_id: str, category_id: int, name: str) -> bool:
        """Rename a category. A clash with another name raises sqlite3.IntegrityError."""
        display = name.strip()
        normalized = normalize_description(display)
        if not normalized:
            raise ValueError("Category name must not be blank")
        try:
            cur = self.conn.execute(
                "UPDATE categories SET name = ?, name_normalized = ?"
                " WHERE user_id = ? AND id = ?",
                (display, normalized, user_id, category_id),
            )
            self.conn.commit()
        except sqlite3.IntegrityError:
            self.conn.rollback()
            raise
        return cur.rowcount == 1

    def delete_category(self, user_id: str, category_id: int) -> bool:
        """Delete a category.

        Raises sqlite3.IntegrityError (FOREIGN KEY constraint failed) while
        transactions or rules still reference it.
        """
        try:
            cur = self.conn.execute(
                "DELETE FROM categories WHERE user_id = ? AND id = ?",
                (user_id, category_id),
            )
            self.conn.commit()
        except sqlite3.IntegrityError:
            self.conn.rollback()
            raise
        return cur.rowcount == 1

    # ── Rules ───────────────────────────────────────────────

    @staticmethod
    def _validate_condition(condition_type: str, condition_value: str | None) -> ConditionType:
        try:
            condition = ConditionType(condition_type)
        except ValueError:
            raise ValueError(
                f"Unknown condition_type {condition_type!r}; expected one of "
                f"{', '.join(c.value for c in ConditionType)}"
            ) from None
        if not condition_value or not condition_value.strip():
            raise ValueError("condition_value must not be blank")
        if condition in _NUMERIC_CONDITIONS:
            try:
                parsed = Decimal(condition_value.strip())
            except InvalidOperation:
                parsed = None
            if parsed is None or not parsed.is_finite():
                raise ValueError(
                    f"{condition.value} needs a numeric condition_value,"
                    f" got {condition_value!r}"
                )
        return condition

    def insert_rule(self, rule: Rule) -> Rule:
        """Insert a rule after checking its condition at the boundary.

        Raises:
            ValueError: Unknown condition_type, or a numeric condition whose
                value is not a finite number.
        """
        condition = self._validate_condition(rule.condition_type, rule.condition_value)

        try:
            cur = self.conn.execute(
                "INSERT INTO rules (user_id, name, condition_type, condition_value,"
                " action_category_id, is_active, created_at)"
                " VALUES (?, ?, ?, ?, ?, ?, ?)",
                (rule.user_id, rule.name, condition.value, rule.condition_value,
                 rule.action_category_id, int(rule.is_active), rule.created_at),
            )
            self.conn.commit()
        except sqlite3.IntegrityError:
            self.conn.rollback()
            raise
        rule.id = cur.lastrowid
        rule.condition_type = condition.value
        return rule

    def get_rules(self, user_id: str) -> list[Rule]:
        rows = self.conn.execute(
            "SELECT * FROM rules WHERE user_id = ? ORDER BY id",
            (user_id,),
        ).fetchall()
        return [self._row_to_rule(r) for r in rows]

    def get_active_rules(self, user_id: str) -> list[Rule]:
        """Active rules in priority order (ascending id)."""
        rows = self.conn.execute(
            "SELECT * FROM rules WHERE user_id = ? AND is_active = 1 ORDER BY id",
            (user_id,),
        ).fetchall()
        return [self._row_to_rule(r) for r in rows]

    def update_rule(self, rule: Rule) -> bool:
        """Overwrite an existing rule's name, condition and action category.

        Matched on (user_id, id). Returns False when no such rule exists.

        Raises:
            ValueError: Same checks as insert_rule.
        """
        condition = self._validate_condition(rule.condition_type, rule.condition_value)
        try:
            cur = self.conn.execute(
                "UPDATE rules SET name = ?, condition_type = ?, condition_value = ?,"
                " action_category_id = ? WHERE user_id = ? AND id = ?",
                (rule.name, condition.value, rule.condition_value,
                 rule.action_category_id, rule.user_id, rule.id),
            )
            self.conn.commit()
        except sqlite3.IntegrityError:
            self.conn.rollback()
            raise
        rule.condition_type = condition.value
        return cur.rowcount == 1

    def set_rule_active(self, user_id: str, rule_id: int, is_active: bool) -> bool:
        cur = self.conn.execute(
            "UPDATE rules SET is_active = ? WHERE user_id = ? AND id = ?",
            (int(is_active), user_id, rule_id),
        )
        self.conn.commit()
        return cur.rowcount == 1

    def delete_rule(self, user_id: str, rule_id: int) -> bool:
        cur = self.conn.execute(
            "DELETE FROM rules WHERE user_id = ? AND id = ?", (user_id, rule_id)
        )
        self.conn.commit()
        return cur.rowcount == 1

    # ── Transactions ────────────────────────────────────────

    @staticmethod
    def _txn_params(t: Transaction) -> tuple:
        return (
            t.user_id, t.date, t.description, canonical_amount(t.amount),
            t.category_id, t.duplicate_key, int(t.is_flagged),
            ",".join(sorted(r.value for r in t.flag_reasons)),
            t.created_at, t.updated_at,
        )

    def insert_transaction(self, txn: Transaction) -> Transaction:
        """Insert one transaction.

        Raises:
            DuplicateTransactionError: The owner already has this duplicate_key.
        """
        try:
            cur = self.conn.execute(_INSERT_TXN_SQL, self._txn_params(txn))
            self.conn.commit()
        except sqlite3.IntegrityError as e:
            self.conn.rollback()
            if "duplicate_key" in str(e):
                raise DuplicateTransactionError(txn.duplicate_key) from e
            raise
        txn.id = cur.lastrowid
        return txn

    def insert_transactions_chunk(self, txns: list[Transaction]) -> list[Transaction]:
        """Insert a chunk of transactions in one SQLite transaction.

        Rows whose (user_id, duplicate_key) already exists are skipped, not
        errors. Returns the transactions actually written, with ids set.
        Any other failure rolls back the whole chunk and re-raises.
        """
        written: list[tuple[Transaction, int]] = []
        try:
            self.conn.execute("BEGIN")
            for t in txns:
                cur = self.conn.execute(
                    _INSERT_TXN_SQL + " ON CONFLICT (user_id, duplicate_key) DO NOTHING",
                    self._txn_params(t),
                )
                if cur.rowcount == 1:
                    written.append((t, cur.lastrowid))
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        for t, txn_id in written:
            t.id = txn_id
        return [t for t, _ in written]

    def existing_duplicate_keys(self, user_id: str, keys: list[str]) -> set[str]:
        """Return the subset of keys already stored for this owner.

        Chunked to stay within SQLite's variable limit.
        """
        found: set[str] = set()
        unique = list(dict.fromkeys(keys))
        for i in range(0, len(unique), _IN_CHUNK_SIZE):
            chunk = unique[i : i + _IN_CHUNK_SIZE]
            ph = ",".join("?" * len(chunk))
            rows = self.conn.execute(
                f"SELECT duplicate_key FROM transactions"
                f" WHERE user_id = ? AND duplicate_key IN ({ph})",
                [user_id, *chunk],
            ).fetchall()
            found.update(r[0] for r in rows)
        return found

    def get_transaction(self, user_id: str, txn_id: int) -> Transaction | None:
        row = self.conn.execute(
            "SELECT * FROM transactions WHERE user_id = ? AND id = ?",
            (user_id, txn_id),
        ).fetchone()
        return self._row_to_transaction(row) if row else None

    def list_transactions(
        self,
        user_id: str,
        filt: TransactionFilter | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> list[Transaction]:
        """One page of transactions, newest date first."""
        if page < 1 or page_size < 1:
            raise ValueError("page and page_size must be positive")
        where, params = build_where(user_id, filt)
        rows = self.conn.execute(
            f"SELECT * FROM transactions WHERE {where}"
            " ORDER BY date DESC, id DESC LIMIT ? OFFSET ?",
            [*params, page_size, (page - 1) * page_size],
        ).fetchall()
        return [self._row_to_transaction(r) for r in rows]

    def count_transactions(
        self, user_id: str, filt: TransactionFilter | None = None
    ) -> int:
        where, params = build_where(user_id, filt)
        row = self.conn.execute(
            f"SELECT COUNT(*) FROM transactions WHERE {where}", params
        ).fetchone()
        return row[0]

    def get_uncategorized_page(
        self, user_id: str, after_id: int = 0, limit: int = 1000
    ) -> list[Transaction]:
        """Keyset page of uncategorized transactions with id > after_id."""
        rows = self.conn.execute(
            "SELECT * FROM transactions"
            " WHERE user_id = ? AND category_id IS NULL AND id > ?"
            " ORDER BY id LIMIT ?",
            (user_id, after_id, limit),
        ).fetchall()
        return [self._row_to_transaction(r) for r in rows]

    def update_transaction_category(
        self, user_id: str, txn_id: int, category_id: int | None
    ) -> bool:
        cur = self.conn.execute(
            "UPDATE transactions SET category_id = ?, updated_at = ?"
            " WHERE user_id = ? AND id = ?",
            (category_id, _now(), user_id, txn_id),
        )
        self.conn.commit()
        return cur.rowcount == 1

    def bulk_update_category(
        self, user_id: str, txn_ids: list[int], category_id: int
    ) -> int:
        """Assign one category to many of the owner's transactions. Returns rows changed."""
        return self._update_many(
            user_id, txn_ids, "category_id = ?", [category_id]
        )

    def unflag_transactions(self, user_id: str, txn_ids: list[int]) -> int:
        """Clear flags on the owner's transactions. Returns rows changed."""
        return self._update_many(
            user_id, txn_ids, "is_flagged = 0, flag_reason = ''", []
        )

    def _update_many(
        self, user_id: str, txn_ids: list[int], assignments: str, values: list
    ) -> int:
        if not txn_ids:
            return 0
        changed = 0
        now = _now()
        try:
            self.conn.execute("BEGIN")
            for i in range(0, len(txn_ids), _IN_CHUNK_SIZE):
                chunk = txn_ids[i : i + _IN_CHUNK_SIZE]
                ph = ",".join("?" * len(chunk))
                cur = self.conn.execute(
                    f"UPDATE transactions SET {assignments}, updated_at = ?"
                    f" WHERE user_id = ? AND id IN ({ph})",
                    [*values, now, user_id, *chunk],
                )
                changed += cur.rowcount
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        return changed

    def delete_transaction(self, user_id: str, txn_id: int) -> bool:
        cur = self.conn.execute(
            "DELETE FROM transactions WHERE user_id = ? AND id = ?",
            (user_id, txn_id),
        )
        self.conn.commit()
        return cur.rowcount == 1

    # ── Row Converters ──────────────────────────────────────

    @staticmethod
    def _row_to_import(row: sqlite3.Row) -> Import:
        return Import(
            id=row["id"], user_id=row["user_id"],
            file_name=row["file_name"], file_hash=row["file_hash"],
            file_size=row["file_size"], record_count=row["record_count"],
            status=row["status"], error_message=row["error_message"],
            created_at=row["created_at"], completed_at=row["completed_at"],
        )

    @staticmethod
    def _row_to_category(row: sqlite3.Row) -> Category:
        return Category(
            id=row["id"], user_id=row["user_id"], name=row["name"],
            name_normalized=row["name_normalized"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_rule(row: sqlite3.Row) -> Rule:
        return Rule(
            id=row["id"], user_id=row["user_id"], name=row["name"],
            condition_type=row["condition_type"],
            condition_value=row["condition_value"],
            action_category_id=row["action_category_id"],
            is_active=bool(row["is_active"]),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_transaction(row: sqlite3.Row) -> Transaction:
        reasons = frozenset(
            FlagReason(code) for code in row["flag_reason"].split(",") if code
        )
        return Transaction(
            id=row["id"], user_id=row["user_id"], date=row["date"],
            description=row["description"], amount=Decimal(row["amount"]),
            category_id=row["category_id"],
            duplicate_key=row["duplicate_key"],
            flag_reasons=reasons,
            created_at=row["created_at"], updated_at=row["updated_at"],
        )
