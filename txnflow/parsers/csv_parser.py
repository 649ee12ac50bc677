"""Generic transaction CSV parser.

Expects a header row. Columns are located by case-insensitive alias so
exports from different banks work without per-bank code; the alias lists
can be overridden from settings.yaml (csv.columns).

Rows are returned as text. Date and amount validation is left to the
ingestion pipeline so bad rows are counted there (prepared < total).
"""

from __future__ import annotations

import csv
import logging
from pathlib import Path

from .base import BaseParser, RawRow

logger = logging.getLogger(__name__)

DEFAULT_COLUMNS: dict[str, list[str]] = {
    "date": ["date", "transaction date", "posted date", "posting date"],
    "description": ["description", "memo", "payee", "name"],
    "amount": ["amount", "transaction amount"],
    "category": ["category", "categoryid", "category name"],
}

REQUIRED_FIELDS = ("date", "amount")


class CsvParser(BaseParser):
    """Parse a CSV export into RawRows.

    Args:
        columns: Maps field name (date, description, amount, category) to
            the header aliases that may carry it. Missing fields fall back
            to DEFAULT_COLUMNS.
    """

    def __init__(self, columns: dict[str, list[str]] | None = None):
        super().__init__()
        self.columns = {**DEFAULT_COLUMNS, **(columns or {})}

    def detect(self, file_path: Path) -> bool:
        """A CSV is supported when its header names a date and an amount column."""
        try:
            with open(file_path, "r", newline="", encoding="utf-8-sig", errors="replace") as f:
                header = next(csv.reader(f), [])
        except (OSError, UnicodeDecodeError):
            return False
        mapping = self._resolve_columns(header)
        return all(field in mapping for field in REQUIRED_FIELDS)

    def parse(self, file_path: Path) -> list[RawRow]:
        rows: list[RawRow] = []
        self.skipped_count = 0

        with open(file_path, "r", newline="", encoding="utf-8-sig", errors="replace") as f:
            reader = csv.DictReader(f)
            mapping = self._resolve_columns(reader.fieldnames or [])
            missing = [field for field in REQUIRED_FIELDS if field not in mapping]
            if missing:
                raise ValueError(
                    f"CSV {file_path.name} is missing required column(s): {', '.join(missing)}"
                )

            for row in reader:
                raw = self._parse_row(row, mapping)
                if raw is None:
                    self.skipped_count += 1
                    continue
                rows.append(raw)

        if self.skipped_count:
            logger.debug("Skipped %d blank row(s) in %s", self.skipped_count, file_path.name)
        return rows

    def _resolve_columns(self, header: list[str]) -> dict[str, str]:
        """Map each field to the first header column matching one of its aliases."""
        by_lower = {h.strip().lower(): h for h in header if h}
        mapping: dict[str, str] = {}
        for field, aliases in self.columns.items():
            for alias in aliases:
                column = by_lower.get(alias.strip().lower())
                if column is not None:
                    mapping[field] = column
                    break
        return mapping

    @staticmethod
    def _parse_row(row: dict, mapping: dict[str, str]) -> RawRow | None:
        def _get(field: str) -> str | None:
            column = mapping.get(field)
            if column is None:
                return None
            value = row.get(column)
            return value.strip() if isinstance(value, str) else None

        values = {field: _get(field) for field in ("date", "amount", "description", "category")}
        if not any(values.values()):
            return None
        return RawRow(
            date=values["date"] or "",
            amount=values["amount"] or "",
            description=values["description"],
            category_label=values["category"],
        )
