"""File watcher: PollingObserver + CSV import orchestration.

Watches a drop folder for new CSV exports, waits for file stability
(size+mtime stable for 10s), validates file completeness, then runs the
import:
  detect → stable → hash check → parse → ingest

Uses PollingObserver rather than inotify so NAS and Docker volumes work.
30-second polling interval.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from watchdog.events import FileSystemEventHandler

from txnflow.database.models import Import
from txnflow.database.repository import DuplicateImportError
from txnflow.ingest.pipeline import IngestionError, IngestionPipeline
from txnflow.parsers.base import compute_file_hash
from txnflow.parsers.csv_parser import CsvParser

if TYPE_CHECKING:
    from txnflow.database.repository import Repository

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = {".csv"}

DEFAULT_STABILITY_SECONDS = 10
DEFAULT_CHECK_INTERVAL = 2.0

DEFAULT_POLL_INTERVAL = 30


@dataclass
class ImportResult:
    """Result of importing a single file."""
    file_name: str
    status: str  # "success", "duplicate", "error"
    total: int = 0
    prepared: int = 0
    inserted: int = 0
    skipped_duplicates: int = 0
    flagged_count: int = 0
    error_message: str | None = None


class FileStabilityError(Exception):
    """Raised when a file fails post-stability validation."""


# ── File stability & validation ──────────────────────────


def wait_for_stable(
    filepath: Path,
    stability_seconds: int = DEFAULT_STABILITY_SECONDS,
    check_interval: float = DEFAULT_CHECK_INTERVAL,
    max_wait: float = 300.0,
) -> None:
    """Wait until file size and mtime are stable for stability_seconds.

    Raises:
        TimeoutError: If the file doesn't stabilize within max_wait.
    """
    prev_size = -1
    prev_mtime = -1.0
    stable_since: float | None = None
    start = time.monotonic()

    while True:
        if time.monotonic() - start > max_wait:
            raise TimeoutError(
                f"File did not stabilize within {max_wait}s: {filepath}"
            )

        stat = filepath.stat()
        if stat.st_size == prev_size and stat.st_mtime == prev_mtime:
            if stable_since is None:
                stable_since = time.monotonic()
            elif time.monotonic() - stable_since >= stability_seconds:
                return
        else:
            stable_since = None

        prev_size = stat.st_size
        prev_mtime = stat.st_mtime
        time.sleep(check_interval)


def validate_file_completeness(filepath: Path) -> None:
    """A CSV must be non-empty and end with a newline.

    Raises:
        FileStabilityError: If the file appears incomplete.
    """
    with open(filepath, "rb") as f:
        f.seek(0, 2)
        size = f.tell()
        if size == 0:
            raise FileStabilityError(f"Empty CSV file: {filepath}")
        f.seek(size - 1)
        last_byte = f.read(1)
        if last_byte not in (b"\n", b"\r"):
            raise FileStabilityError(
                f"CSV file does not end with newline: {filepath}"
            )


# ── CSV import ───────────────────────────────────────────


class CsvImporter:
    """Import one CSV file for one owner.

    Args:
        repo: Database repository.
        pipeline: Ingestion pipeline the parsed rows are fed to.
        parser: CSV parser. Defaults to CsvParser with built-in column aliases.
    """

    def __init__(
        self,
        repo: Repository,
        pipeline: IngestionPipeline,
        parser: CsvParser | None = None,
    ):
        self.repo = repo
        self.pipeline = pipeline
        self.parser = parser or CsvParser()

    def import_file(
        self,
        filepath: Path,
        user_id: str,
        default_category_id: int | None = None,
    ) -> ImportResult:
        """Run the import on a single file.

        Steps:
        1. Check file extension
        2. File hash check (same file imported before by this owner)
        3. Record import in DB
        4. Detect header, parse
        5. Ingest (validate, classify, dedup, chunked insert)
        """
        file_name = filepath.name

        if filepath.suffix.lower() not in SUPPORTED_EXTENSIONS:
            return ImportResult(
                file_name=file_name,
                status="error",
                error_message=f"Unsupported file extension: {filepath.suffix}",
            )

        file_hash = compute_file_hash(filepath)
        existing = self.repo.get_import_by_hash(user_id, file_hash)
        if existing is not None and existing.status == "completed":
            logger.info("Duplicate file skipped: %s", file_name)
            return ImportResult(file_name=file_name, status="duplicate")

        if existing is not None:
            # Failed or interrupted imports are retried; already-inserted rows dedupe
            logger.info("Retrying %s import: %s", existing.status, file_name)
            imp = existing
            self.repo.update_import_status(imp.id, "pending", error_message=None)
        else:
            imp = Import(
                user_id=user_id,
                file_name=file_name,
                file_hash=file_hash,
                file_size=filepath.stat().st_size,
            )
            try:
                self.repo.insert_import(imp)
            except DuplicateImportError:
                # Another process recorded this file between our check and insert
                logger.info("Duplicate file (race): %s", file_name)
                return ImportResult(file_name=file_name, status="duplicate")

        try:
            if not self.parser.detect(filepath):
                raise ValueError(
                    f"Unrecognized CSV header in {file_name}: missing required column(s)"
                )
            rows = self.parser.parse(filepath)
            batch = self.pipeline.ingest(
                user_id, rows, default_category_id=default_category_id,
            )
        except IngestionError as e:
            logger.exception("Import failed part-way for %s", file_name)
            self.repo.update_import_status(
                imp.id, "error",
                record_count=e.result.inserted,
                error_message=str(e),
            )
            partial = e.result
            return ImportResult(
                file_name=file_name,
                status="error",
                total=partial.total,
                prepared=partial.prepared,
                inserted=partial.inserted,
                skipped_duplicates=partial.skipped_duplicates,
                flagged_count=partial.flagged_count,
                error_message=str(e),
            )
        except Exception as e:
            logger.exception("Import failed for %s", file_name)
            self.repo.update_import_status(
                imp.id, "error", error_message=str(e),
            )
            return ImportResult(
                file_name=file_name, status="error", error_message=str(e),
            )

        self.repo.update_import_status(
            imp.id, "completed",
            record_count=batch.inserted,
            completed_at=datetime.now(timezone.utc).isoformat(),
        )
        return ImportResult(
            file_name=file_name,
            status="success",
            total=batch.total,
            prepared=batch.prepared,
            inserted=batch.inserted,
            skipped_duplicates=batch.skipped_duplicates,
            flagged_count=batch.flagged_count,
        )


# ── File watcher ─────────────────────────────────────────


class FileWatcher(FileSystemEventHandler):
    """Watch a drop folder for new CSV files using PollingObserver.

    Processes files sequentially to avoid database contention.

    Args:
        watch_dir: Directory to watch for new files.
        importer: CsvImporter to process files.
        user_id: Owner the imported transactions belong to.
        default_category_id: Batch default category for every file.
        stability_seconds: Seconds of stability before processing.
        check_interval: Seconds between stability checks.
    """

    def __init__(
        self,
        watch_dir: Path,
        importer: CsvImporter,
        user_id: str,
        default_category_id: int | None = None,
        stability_seconds: int = DEFAULT_STABILITY_SECONDS,
        check_interval: float = DEFAULT_CHECK_INTERVAL,
    ):
        self.watch_dir = Path(watch_dir)
        self.importer = importer
        self.user_id = user_id
        self.default_category_id = default_category_id
        self.stability_seconds = stability_seconds
        self.check_interval = check_interval
        self._observer = None

    def start(self) -> None:
        """Start watching the drop folder."""
        from watchdog.observers.polling import PollingObserver

        if not self.watch_dir.exists():
            self.watch_dir.mkdir(parents=True, exist_ok=True)

        self._observer = PollingObserver(timeout=DEFAULT_POLL_INTERVAL)
        self._observer.schedule(self, str(self.watch_dir), recursive=False)
        self._observer.start()
        logger.info("Watching %s for new CSV files", self.watch_dir)

    def stop(self) -> None:
        """Stop watching."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join()
            self._observer = None
            logger.info("File watcher stopped")

    def on_created(self, event) -> None:
        """Handle new file creation events."""
        if event.is_directory:
            return

        filepath = Path(event.src_path)
        if filepath.suffix.lower() not in SUPPORTED_EXTENSIONS:
            return

        logger.info("New file detected: %s", filepath.name)
        self._process_file(filepath)

    def _process_file(self, filepath: Path) -> ImportResult:
        """Wait for stability, validate, then import."""
        try:
            wait_for_stable(
                filepath,
                stability_seconds=self.stability_seconds,
                check_interval=self.check_interval,
            )
            validate_file_completeness(filepath)

            result = self.importer.import_file(
                filepath, self.user_id,
                default_category_id=self.default_category_id,
            )
            logger.info(
                "Import result for %s: %s (inserted=%d, dup=%d, flagged=%d)",
                filepath.name, result.status,
                result.inserted, result.skipped_duplicates, result.flagged_count,
            )
            return result

        except FileStabilityError as e:
            logger.error("File validation failed: %s", e)
            return ImportResult(
                file_name=filepath.name, status="error", error_message=str(e),
            )
        except TimeoutError as e:
            logger.error("File stability timeout: %s", e)
            return ImportResult(
                file_name=filepath.name, status="error", error_message=str(e),
            )
        except Exception as e:
            logger.exception("Unexpected error processing %s", filepath.name)
            return ImportResult(
                file_name=filepath.name, status="error", error_message=str(e),
            )
