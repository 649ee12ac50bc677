"""YAML configuration loader for txnflow.

Loads two files from the config/ directory:
  settings.yaml  ingestion, reclassification and CSV column settings
  rules.yaml     seed classification rules for `txnflow rule load`
"""

from decimal import Decimal, InvalidOperation
from pathlib import Path

import yaml

from txnflow.categorize.anomaly import UNUSUAL_AMOUNT_THRESHOLD
from txnflow.categorize.reclassify import DEFAULT_PAGE_SIZE
from txnflow.ingest.pipeline import DEFAULT_CHUNK_SIZE


class Config:
    """Loads and provides access to the YAML configuration files."""

    def __init__(self, config_dir: Path | str = "config"):
        self.config_dir = Path(config_dir)
        if not self.config_dir.is_dir():
            raise FileNotFoundError(f"Config directory not found: {self.config_dir}")

        self._settings: dict | None = None
        self._rules: list[dict] | None = None

    def _load(self, filename: str) -> dict | list:
        path = self.config_dir / filename
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid YAML in {path}: {e}") from e
        if data is None:
            raise ValueError(f"Empty config file: {path}")
        return data

    @property
    def settings(self) -> dict:
        if self._settings is None:
            data = self._load("settings.yaml")
            if not isinstance(data, dict):
                raise ValueError("settings.yaml must be a mapping")
            self._settings = data
        return self._settings

    @property
    def rules(self) -> list[dict]:
        """Seed rules from rules.yaml (top-level `rules:` list)."""
        if self._rules is None:
            data = self._load("rules.yaml")
            self._rules = data.get("rules", []) if isinstance(data, dict) else data
        return self._rules

    def _section(self, name: str) -> dict:
        return self.settings.get(name) or {}

    def _positive_int(self, section: str, key: str, default: int) -> int:
        value = self._section(section).get(key, default)
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise ValueError(f"{section}.{key} must be a positive integer, got {value!r}")
        return value

    @property
    def chunk_size(self) -> int:
        """Rows per insert transaction. Default: 1000."""
        return self._positive_int("ingest", "chunk_size", DEFAULT_CHUNK_SIZE)

    @property
    def page_size(self) -> int:
        """Rows per reclassification page. Default: 1000."""
        return self._positive_int("reclassify", "page_size", DEFAULT_PAGE_SIZE)

    @property
    def unusual_amount_threshold(self) -> Decimal:
        """Amounts strictly above this are flagged UNUSUAL_AMOUNT. Default: 1000."""
        value = self._section("ingest").get("unusual_amount_threshold")
        if value is None:
            return UNUSUAL_AMOUNT_THRESHOLD
        try:
            threshold = Decimal(str(value))
        except InvalidOperation:
            threshold = None
        if threshold is None or not threshold.is_finite():
            raise ValueError(
                f"ingest.unusual_amount_threshold must be a number, got {value!r}"
            )
        return threshold

    @property
    def csv_columns(self) -> dict[str, list[str]]:
        """Header aliases per field (date, description, amount, category)."""
        columns = self._section("csv").get("columns") or {}
        result: dict[str, list[str]] = {}
        for field, aliases in columns.items():
            if isinstance(aliases, str):
                aliases = [aliases]
            result[field] = [str(a) for a in aliases]
        return result
