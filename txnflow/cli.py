"""CLI entry point for txnflow.

Commands (all act on the owner given by --user / TXNFLOW_USER):
    txnflow import [--file PATH] [--default-category NAME]
                                     Import a CSV file or all files in the watch dir
    txnflow watch                    Start the drop-folder watcher
    txnflow reclassify               Apply active rules to uncategorized transactions
    txnflow status                   Transaction, rule and import counts
    txnflow review                   List flagged transactions
    txnflow unflag ID [ID ...]       Clear flags after review
    txnflow list [--category NAME] [--uncategorized] [--flagged] [--search TEXT]
                 [--from DATE] [--to DATE]
                                     List transactions, newest first
    txnflow add DATE DESCRIPTION AMOUNT [--category NAME]
                                     Record one transaction
    txnflow categorize ID [ID ...] --category NAME
                                     Assign a category to transactions
    txnflow delete ID                Delete a transaction
    txnflow rule list|add|edit|enable|disable|delete|load
    txnflow category list|add|rename|delete
"""

from __future__ import annotations

import argparse
import logging
import os
import sqlite3
import sys
import time
from pathlib import Path

logger = logging.getLogger(__name__)

_PACKAGE_MIGRATIONS = Path(__file__).parent / "database" / "migrations"


def _setup_logging() -> None:
    """Configure logging based on TXNFLOW_LOG_LEVEL env var."""
    level = os.environ.get("TXNFLOW_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _get_config():
    """Load application config from config directory."""
    from txnflow.config import Config

    config_dir = os.environ.get("TXNFLOW_CONFIG_DIR", "config")
    return Config(config_dir=config_dir)


def _get_migrations_dir() -> Path:
    return Path(os.environ.get("TXNFLOW_MIGRATIONS_DIR", str(_PACKAGE_MIGRATIONS)))


def _get_repo():
    """Create a Repository connected to the configured database, schema applied."""
    from txnflow.database.repository import Repository

    db_path = os.environ.get("TXNFLOW_DB_PATH", "txnflow.db")
    repo = Repository(db_path=db_path)
    repo.apply_migrations(_get_migrations_dir())
    return repo


def _get_watch_dir() -> Path:
    return Path(os.environ.get("TXNFLOW_WATCH_DIR", "import"))


def _get_pipeline(config, repo):
    from txnflow.ingest.pipeline import IngestionPipeline

    return IngestionPipeline(
        repo,
        chunk_size=config.chunk_size,
        unusual_amount_threshold=config.unusual_amount_threshold,
    )


def _get_importer(config, repo):
    """Wire parser → pipeline → importer from config."""
    from txnflow.parsers.csv_parser import CsvParser
    from txnflow.watcher.observer import CsvImporter

    pipeline = _get_pipeline(config, repo)
    return CsvImporter(repo, pipeline, parser=CsvParser(columns=config.csv_columns))


def _default_category_id(repo, user_id: str, name: str | None) -> int | None:
    if not name:
        return None
    return repo.find_or_create_category(user_id, name).id


def _print_result(result, indent: str = "") -> None:
    print(
        f"{indent}{result.file_name}: {result.status}"
        f" (total={result.total}, valid={result.prepared},"
        f" inserted={result.inserted}, dup={result.skipped_duplicates},"
        f" flagged={result.flagged_count})"
    )
    if result.error_message:
        print(f"{indent}  error: {result.error_message}")


# ── Command handlers ─────────────────────────────────────


def cmd_import(args: argparse.Namespace) -> int:
    """Import one CSV file, or every CSV in the watch dir."""
    from txnflow.watcher.observer import SUPPORTED_EXTENSIONS

    config = _get_config()
    repo = _get_repo()
    try:
        importer = _get_importer(config, repo)
        try:
            default_id = _default_category_id(repo, args.user, args.default_category)
        except ValueError as e:
            print(f"Error: {e}")
            return 1

        if args.file:
            filepath = args.file.resolve()
            if not filepath.exists():
                print(f"Error: File not found: {filepath}")
                return 1
            if filepath.suffix.lower() not in SUPPORTED_EXTENSIONS:
                print(f"Error: Unsupported file type: {filepath.suffix}")
                return 1

            result = importer.import_file(filepath, args.user, default_category_id=default_id)
            _print_result(result)
            return 0 if result.status != "error" else 1

        watch_dir = _get_watch_dir()
        if not watch_dir.exists():
            print(f"Watch directory not found: {watch_dir}")
            return 1

        files = [
            f for f in sorted(watch_dir.iterdir())
            if f.is_file() and f.suffix.lower() in SUPPORTED_EXTENSIONS
        ]
        if not files:
            print("No pending files found.")
            return 0

        total_inserted = 0
        total_dup = 0
        errors = 0
        for filepath in files:
            result = importer.import_file(filepath, args.user, default_category_id=default_id)
            _print_result(result, indent="  ")
            total_inserted += result.inserted
            total_dup += result.skipped_duplicates
            if result.status == "error":
                errors += 1

        print(
            f"\nProcessed {len(files)} files: {total_inserted} inserted,"
            f" {total_dup} duplicates, {errors} errors"
        )
        return 1 if errors else 0
    finally:
        repo.close()


def cmd_watch(args: argparse.Namespace) -> int:
    """Start the file watcher daemon."""
    from txnflow.watcher.observer import FileWatcher

    config = _get_config()
    repo = _get_repo()
    watcher = None
    try:
        try:
            default_id = _default_category_id(repo, args.user, args.default_category)
        except ValueError as e:
            print(f"Error: {e}")
            return 1

        watcher = FileWatcher(
            watch_dir=_get_watch_dir(),
            importer=_get_importer(config, repo),
            user_id=args.user,
            default_category_id=default_id,
        )
        print(f"Watching {watcher.watch_dir} for CSV files... (Ctrl+C to stop)")
        watcher.start()

        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        print("\nStopping watcher...")
    finally:
        if watcher is not None:
            watcher.stop()
        repo.close()

    return 0


def cmd_reclassify(args: argparse.Namespace) -> int:
    """Apply active rules to every uncategorized transaction."""
    from txnflow.categorize.reclassify import BulkReclassifier, ReclassifyError

    config = _get_config()
    repo = _get_repo()
    try:
        result = BulkReclassifier(repo, page_size=config.page_size).run(args.user)
    except ReclassifyError as e:
        print(f"Error: {e} ({e.updated} updated before the failure)")
        return 1
    finally:
        repo.close()

    print(f"Updated {result.updated} transaction(s).")
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    """Display counts for the owner."""
    from txnflow.database.queries import get_status_counts

    repo = _get_repo()
    counts = get_status_counts(repo.conn, args.user)
    repo.close()

    print(f"txnflow status for {args.user}")
    print("=" * 40)
    print(f"  Total transactions:  {counts['total_txns']:,}")
    print(f"  Categorized:         {counts['categorized']:,}")
    print(f"  Uncategorized:       {counts['uncategorized']:,}")
    print(f"  Flagged for review:  {counts['flagged']:,}")
    print(f"  Active rules:        {counts['active_rules']:,}")
    print(f"  Total imports:       {counts['total_imports']:,}")
    return 0


def cmd_review(args: argparse.Namespace) -> int:
    """List transactions flagged for review."""
    from txnflow.database.queries import TransactionFilter

    repo = _get_repo()
    try:
        filt = TransactionFilter(flagged=True)
        total = repo.count_transactions(args.user, filt)
        rows = repo.list_transactions(args.user, filt, page=args.page, page_size=args.limit)
    finally:
        repo.close()

    if not rows:
        print("No transactions pending review.")
        return 0

    print(f"Flagged transactions ({len(rows)} of {total}):")
    print("-" * 80)
    for t in rows:
        reasons = ",".join(sorted(r.value for r in t.flag_reasons))
        print(
            f"  {t.id:>6}  {t.date}  {t.amount:>12}"
            f"  {t.description[:30]:<30}  {reasons}"
        )
    return 0


def cmd_unflag(args: argparse.Namespace) -> int:
    """Clear flags on reviewed transactions."""
    repo = _get_repo()
    try:
        changed = repo.unflag_transactions(args.user, args.ids)
    finally:
        repo.close()
    print(f"Unflagged {changed} transaction(s).")
    return 0 if changed == len(set(args.ids)) else 1


# ── Transaction management ───────────────────────────────


def cmd_list(args: argparse.Namespace) -> int:
    """List transactions, newest first, with optional filters."""
    from txnflow.database.queries import TransactionFilter
    from txnflow.parsers.base import parse_date

    bounds = {}
    for key, value in (("date_from", args.date_from), ("date_to", args.date_to)):
        if value is None:
            continue
        bounds[key] = parse_date(value)
        if bounds[key] is None:
            print(f"Error: Invalid date: {value}")
            return 1

    repo = _get_repo()
    try:
        category_id = None
        if args.category:
            category = repo.get_category_by_name(args.user, args.category)
            if category is None:
                print(f"Error: Category not found: {args.category}")
                return 1
            category_id = category.id

        filt = TransactionFilter(
            category_id=category_id,
            flagged=True if args.flagged else None,
            uncategorized=args.uncategorized,
            search=args.search,
            **bounds,
        )
        total = repo.count_transactions(args.user, filt)
        rows = repo.list_transactions(args.user, filt, page=args.page, page_size=args.limit)
        names = _category_names(repo, args.user)
    finally:
        repo.close()

    if not rows:
        print("No transactions found.")
        return 0

    print(f"Transactions ({len(rows)} of {total}):")
    print("-" * 80)
    for t in rows:
        category = names.get(t.category_id, "-") if t.category_id else "-"
        mark = "!" if t.is_flagged else " "
        print(
            f"  {t.id:>6} {mark} {t.date}  {t.amount:>12}"
            f"  {t.description[:30]:<30}  {category}"
        )
    return 0


def cmd_add(args: argparse.Namespace) -> int:
    """Record a single transaction by hand."""
    from txnflow.database.repository import DuplicateTransactionError

    config = _get_config()
    repo = _get_repo()
    try:
        category_id = _default_category_id(repo, args.user, args.category)
        txn = _get_pipeline(config, repo).create_transaction(
            args.user, args.date, args.description, args.amount,
            category_id=category_id,
        )
    except (DuplicateTransactionError, ValueError) as e:
        print(f"Error: {e}")
        return 1
    finally:
        repo.close()

    print(f"Added transaction {txn.id}: {txn.date} {txn.amount} {txn.description}")
    if txn.is_flagged:
        print(f"  flagged: {','.join(sorted(r.value for r in txn.flag_reasons))}")
    return 0


def cmd_categorize(args: argparse.Namespace) -> int:
    """Assign one category to the given transactions."""
    repo = _get_repo()
    try:
        try:
            category = repo.find_or_create_category(args.user, args.category)
        except ValueError as e:
            print(f"Error: {e}")
            return 1
        changed = repo.bulk_update_category(args.user, args.ids, category.id)
    finally:
        repo.close()
    print(f"Categorized {changed} transaction(s) as {category.name}.")
    return 0 if changed == len(set(args.ids)) else 1


def cmd_delete(args: argparse.Namespace) -> int:
    """Delete one transaction."""
    repo = _get_repo()
    try:
        deleted = repo.delete_transaction(args.user, args.id)
    finally:
        repo.close()
    if not deleted:
        print(f"Error: Transaction {args.id} not found.")
        return 1
    print(f"Deleted transaction {args.id}.")
    return 0


# ── Rule management ──────────────────────────────────────


def cmd_rule(args: argparse.Namespace) -> int:
    """Dispatch rule subcommands."""
    handlers = {
        "list": _cmd_rule_list,
        "add": _cmd_rule_add,
        "edit": _cmd_rule_edit,
        "enable": _cmd_rule_toggle,
        "disable": _cmd_rule_toggle,
        "delete": _cmd_rule_delete,
        "load": _cmd_rule_load,
    }
    handler = handlers.get(args.rule_command)
    if handler is None:
        print("Usage: txnflow rule {list,add,edit,enable,disable,delete,load}")
        return 1

    repo = _get_repo()
    try:
        return handler(repo, args)
    finally:
        repo.close()


def _category_names(repo, user_id: str) -> dict[int, str]:
    return {c.id: c.name for c in repo.get_categories(user_id)}


def _cmd_rule_list(repo, args: argparse.Namespace) -> int:
    rules = repo.get_rules(args.user)
    if not rules:
        print("No rules defined.")
        return 0
    names = _category_names(repo, args.user)
    for r in rules:
        state = "on " if r.is_active else "off"
        target = names.get(r.action_category_id, "-") if r.action_category_id else "-"
        print(
            f"  {r.id:>4}  [{state}]  {r.name:<24}  {r.condition_type}"
            f" {r.condition_value!r} -> {target}"
        )
    return 0


def _add_rule(repo, user_id: str, name: str, condition_type: str,
              condition_value: str, category: str | None, active: bool = True):
    from txnflow.database.models import Rule

    category_id = _default_category_id(repo, user_id, category)
    return repo.insert_rule(Rule(
        user_id=user_id,
        name=name,
        condition_type=condition_type.upper(),
        condition_value=condition_value,
        action_category_id=category_id,
        is_active=active,
    ))


def _cmd_rule_add(repo, args: argparse.Namespace) -> int:
    try:
        rule = _add_rule(
            repo, args.user, args.name, args.condition_type,
            args.condition_value, args.category,
        )
    except ValueError as e:
        print(f"Error: {e}")
        return 1
    print(f"Added rule {rule.id}: {rule.name}")
    return 0


def _cmd_rule_edit(repo, args: argparse.Namespace) -> int:
    """Change any of a rule's name, condition or category. An empty --category clears it."""
    rule = next((r for r in repo.get_rules(args.user) if r.id == args.id), None)
    if rule is None:
        print(f"Error: Rule {args.id} not found.")
        return 1
    if args.name is not None:
        rule.name = args.name
    if args.condition_type is not None:
        rule.condition_type = args.condition_type.upper()
    if args.condition_value is not None:
        rule.condition_value = args.condition_value
    try:
        if args.category is not None:
            rule.action_category_id = _default_category_id(repo, args.user, args.category)
        repo.update_rule(rule)
    except ValueError as e:
        print(f"Error: {e}")
        return 1
    print(f"Updated rule {rule.id}: {rule.name}")
    return 0


def _cmd_rule_toggle(repo, args: argparse.Namespace) -> int:
    active = args.rule_command == "enable"
    if not repo.set_rule_active(args.user, args.id, active):
        print(f"Error: Rule {args.id} not found.")
        return 1
    print(f"Rule {args.id} {'enabled' if active else 'disabled'}.")
    return 0


def _cmd_rule_delete(repo, args: argparse.Namespace) -> int:
    if not repo.delete_rule(args.user, args.id):
        print(f"Error: Rule {args.id} not found.")
        return 1
    print(f"Deleted rule {args.id}.")
    return 0


def _cmd_rule_load(repo, args: argparse.Namespace) -> int:
    """Create the seed rules from rules.yaml, in file order."""
    config = _get_config()
    added = 0
    errors = 0
    for entry in config.rules:
        try:
            _add_rule(
                repo, args.user,
                name=str(entry.get("name") or entry.get("condition_value", "")),
                condition_type=str(entry.get("condition_type", "")),
                condition_value=str(entry.get("condition_value", "")),
                category=entry.get("category"),
                active=bool(entry.get("active", True)),
            )
            added += 1
        except ValueError as e:
            print(f"  Skipped rule {entry.get('name', '?')!r}: {e}")
            errors += 1
    print(f"Loaded {added} rule(s), {errors} error(s).")
    return 1 if errors else 0


# ── Category management ──────────────────────────────────


def cmd_category(args: argparse.Namespace) -> int:
    """Dispatch category subcommands."""
    handlers = {
        "list": _cmd_category_list,
        "add": _cmd_category_add,
        "rename": _cmd_category_rename,
        "delete": _cmd_category_delete,
    }
    handler = handlers.get(args.category_command)
    if handler is None:
        print("Usage: txnflow category {list,add,rename,delete}")
        return 1

    repo = _get_repo()
    try:
        return handler(repo, args)
    finally:
        repo.close()


def _cmd_category_list(repo, args: argparse.Namespace) -> int:
    categories = repo.get_categories(args.user)
    if not categories:
        print("No categories defined.")
        return 0
    for c in categories:
        print(f"  {c.id:>4}  {c.name}")
    return 0


def _cmd_category_add(repo, args: argparse.Namespace) -> int:
    try:
        category = repo.find_or_create_category(args.user, args.name)
    except ValueError as e:
        print(f"Error: {e}")
        return 1
    print(f"Category {category.id}: {category.name}")
    return 0


def _cmd_category_rename(repo, args: argparse.Namespace) -> int:
    try:
        renamed = repo.rename_category(args.user, args.id, args.name)
    except (ValueError, sqlite3.IntegrityError) as e:
        print(f"Error: {e}")
        return 1
    if not renamed:
        print(f"Error: Category {args.id} not found.")
        return 1
    print(f"Renamed category {args.id} to '{args.name.strip()}'.")
    return 0


def _cmd_category_delete(repo, args: argparse.Namespace) -> int:
    try:
        deleted = repo.delete_category(args.user, args.id)
    except sqlite3.IntegrityError:
        print(
            f"Error: Category {args.id} is still used by transactions or rules;"
            " reassign them first."
        )
        return 1
    if not deleted:
        print(f"Error: Category {args.id} not found.")
        return 1
    print(f"Deleted category {args.id}.")
    return 0


# ── Main entry point ─────────────────────────────────────


_COMMANDS = {
    "import": cmd_import,
    "watch": cmd_watch,
    "reclassify": cmd_reclassify,
    "status": cmd_status,
    "review": cmd_review,
    "unflag": cmd_unflag,
    "list": cmd_list,
    "add": cmd_add,
    "categorize": cmd_categorize,
    "delete": cmd_delete,
    "rule": cmd_rule,
    "category": cmd_category,
}


def main(argv: list[str] | None = None):
    _setup_logging()

    parser = argparse.ArgumentParser(
        prog="txnflow",
        description="txnflow transaction ingestion and classification",
    )
    parser.add_argument(
        "--user", default=os.environ.get("TXNFLOW_USER", "default"),
        help="Owner of the transactions (default: $TXNFLOW_USER or 'default')",
    )
    subparsers = parser.add_subparsers(dest="command")

    # import
    import_p = subparsers.add_parser("import", help="Import CSV file(s)")
    import_p.add_argument("--file", type=Path, help="Specific file to import")
    import_p.add_argument("--default-category", help="Category for rows no rule matches")

    # watch
    watch_p = subparsers.add_parser("watch", help="Start file watcher daemon")
    watch_p.add_argument("--default-category", help="Category for rows no rule matches")

    # reclassify
    subparsers.add_parser("reclassify", help="Apply active rules to uncategorized transactions")

    # status
    subparsers.add_parser("status", help="Show transaction, rule and import counts")

    # review
    review_p = subparsers.add_parser("review", help="List flagged transactions")
    review_p.add_argument("--page", type=int, default=1)
    review_p.add_argument("--limit", type=int, default=50)

    # unflag
    unflag_p = subparsers.add_parser("unflag", help="Clear flags on reviewed transactions")
    unflag_p.add_argument("ids", type=int, nargs="+", help="Transaction IDs")

    # list
    list_p = subparsers.add_parser("list", help="List transactions")
    list_p.add_argument("--category", help="Only this category")
    list_p.add_argument("--uncategorized", action="store_true", help="Only uncategorized")
    list_p.add_argument("--flagged", action="store_true", help="Only flagged")
    list_p.add_argument("--search", help="Description contains this text")
    list_p.add_argument("--from", dest="date_from", help="Earliest date (inclusive)")
    list_p.add_argument("--to", dest="date_to", help="Latest date (inclusive)")
    list_p.add_argument("--page", type=int, default=1)
    list_p.add_argument("--limit", type=int, default=50)

    # add
    add_p = subparsers.add_parser("add", help="Record a single transaction")
    add_p.add_argument("date", help="Transaction date")
    add_p.add_argument("description", help="Description")
    add_p.add_argument("amount", help="Amount")
    add_p.add_argument("--category", help="Category to assign")

    # categorize
    categorize_p = subparsers.add_parser("categorize", help="Assign a category to transactions")
    categorize_p.add_argument("ids", type=int, nargs="+", help="Transaction IDs")
    categorize_p.add_argument("--category", required=True, help="Category name")

    # delete
    delete_p = subparsers.add_parser("delete", help="Delete a transaction")
    delete_p.add_argument("id", type=int, help="Transaction ID")

    # rule
    rule_p = subparsers.add_parser("rule", help="Manage classification rules")
    rule_sub = rule_p.add_subparsers(dest="rule_command")
    rule_sub.add_parser("list", help="List rules in priority order")
    rule_add_p = rule_sub.add_parser("add", help="Add a rule")
    rule_add_p.add_argument("name", help="Rule name")
    rule_add_p.add_argument("condition_type", help="e.g. DESCRIPTION_CONTAINS, AMOUNT_GREATER_THAN")
    rule_add_p.add_argument("condition_value", help="Text or number to compare against")
    rule_add_p.add_argument("--category", help="Category to assign on match")
    rule_edit_p = rule_sub.add_parser("edit", help="Change a rule")
    rule_edit_p.add_argument("id", type=int, help="Rule ID")
    rule_edit_p.add_argument("--name", help="New rule name")
    rule_edit_p.add_argument("--type", dest="condition_type", help="New condition type")
    rule_edit_p.add_argument("--value", dest="condition_value", help="New condition value")
    rule_edit_p.add_argument("--category", help="New category; empty string clears it")
    for toggle in ("enable", "disable", "delete"):
        toggle_p = rule_sub.add_parser(toggle, help=f"{toggle.capitalize()} a rule")
        toggle_p.add_argument("id", type=int, help="Rule ID")
    rule_sub.add_parser("load", help="Create the seed rules from rules.yaml")

    # category
    cat_p = subparsers.add_parser("category", help="Manage categories")
    cat_sub = cat_p.add_subparsers(dest="category_command")
    cat_sub.add_parser("list", help="List categories")
    cat_add_p = cat_sub.add_parser("add", help="Add a category")
    cat_add_p.add_argument("name", help="Display name")
    cat_rename_p = cat_sub.add_parser("rename", help="Rename a category")
    cat_rename_p.add_argument("id", type=int, help="Category ID")
    cat_rename_p.add_argument("name", help="New display name")
    cat_delete_p = cat_sub.add_parser("delete", help="Delete an unused category")
    cat_delete_p.add_argument("id", type=int, help="Category ID")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    handler = _COMMANDS.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}")
        sys.exit(1)

    sys.exit(handler(args))


if __name__ == "__main__":
    main()
