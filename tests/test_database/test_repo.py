"""Tests for Repository CRUD operations."""

import sqlite3
from decimal import Decimal

import pytest

from txnflow.database.models import FlagReason, Import, Rule, Transaction
from txnflow.database.repository import (
    DuplicateImportError,
    DuplicateTransactionError,
)
from txnflow.parsers.base import compute_duplicate_key


def _make_txn(user_id: str = "alice", **overrides) -> Transaction:
    defaults = dict(
        user_id=user_id,
        date="2026-01-15",
        description="PHILZ COFFEE SF",
        amount=Decimal("-5.00"),
    )
    defaults.update(overrides)
    if "duplicate_key" not in defaults:
        defaults["duplicate_key"] = compute_duplicate_key(
            defaults["description"], defaults["date"], defaults["amount"]
        )
    return Transaction(**defaults)


def _make_rule(user_id: str = "alice", **overrides) -> Rule:
    defaults = dict(
        user_id=user_id,
        name="coffee",
        condition_type="DESCRIPTION_CONTAINS",
        condition_value="coffee",
    )
    defaults.update(overrides)
    return Rule(**defaults)


# ── Import CRUD ────────────────────────────────────────────


class TestImportCrud:
    def test_insert_and_retrieve_by_hash(self, repo):
        repo.insert_import(Import(user_id="alice", file_name="a.csv", file_hash="h1"))
        found = repo.get_import_by_hash("alice", "h1")
        assert found is not None
        assert found.file_name == "a.csv"
        assert found.status == "pending"

    def test_hash_lookup_is_owner_scoped(self, repo):
        repo.insert_import(Import(user_id="alice", file_name="a.csv", file_hash="h1"))
        assert repo.get_import_by_hash("bob", "h1") is None

    def test_same_file_for_two_owners(self, repo):
        repo.insert_import(Import(user_id="alice", file_name="a.csv", file_hash="h1"))
        repo.insert_import(Import(user_id="bob", file_name="a.csv", file_hash="h1"))

    def test_duplicate_hash_raises(self, repo):
        first = repo.insert_import(Import(user_id="alice", file_name="a.csv", file_hash="h1"))
        with pytest.raises(DuplicateImportError) as exc_info:
            repo.insert_import(Import(user_id="alice", file_name="b.csv", file_hash="h1"))
        assert exc_info.value.existing_import_id == first.id

    def test_update_status(self, repo):
        imp = repo.insert_import(Import(user_id="alice", file_name="a.csv", file_hash="h1"))
        repo.update_import_status(imp.id, "completed", record_count=7)
        found = repo.get_import_by_hash("alice", "h1")
        assert found.status == "completed"
        assert found.record_count == 7

    def test_update_status_rejects_unknown_columns(self, repo):
        with pytest.raises(ValueError, match="Unknown columns"):
            repo.update_import_status(1, "completed", file_hash="x")


# ── Categories ─────────────────────────────────────────────


class TestCategories:
    def test_find_or_create_is_idempotent(self, repo):
        a = repo.find_or_create_category("alice", "Dining Out")
        b = repo.find_or_create_category("alice", "  dining   OUT ")
        assert a.id == b.id
        assert b.name == "Dining Out"
        assert len(repo.get_categories("alice")) == 1

    def test_names_unique_per_owner_only(self, repo):
        a = repo.find_or_create_category("alice", "Dining")
        b = repo.find_or_create_category("bob", "Dining")
        assert a.id != b.id

    def test_blank_name_rejected(self, repo):
        with pytest.raises(ValueError):
            repo.find_or_create_category("alice", "   ")

    def test_get_by_name(self, repo):
        cat = repo.find_or_create_category("alice", "Groceries")
        assert repo.get_category_by_name("alice", "GROCERIES").id == cat.id
        assert repo.get_category_by_name("bob", "Groceries") is None

    def test_rename(self, repo):
        cat = repo.find_or_create_category("alice", "Food")
        assert repo.rename_category("alice", cat.id, "Dining")
        assert repo.get_category("alice", cat.id).name == "Dining"

    def test_rename_clash_raises(self, repo):
        repo.find_or_create_category("alice", "Food")
        other = repo.find_or_create_category("alice", "Dining")
        with pytest.raises(sqlite3.IntegrityError):
            repo.rename_category("alice", other.id, "food")

    def test_rename_other_owner_is_noop(self, repo):
        cat = repo.find_or_create_category("alice", "Food")
        assert not repo.rename_category("bob", cat.id, "Dining")

    def test_delete_unused(self, repo):
        cat = repo.find_or_create_category("alice", "Food")
        assert repo.delete_category("alice", cat.id)
        assert repo.get_category("alice", cat.id) is None

    def test_delete_in_use_raises(self, repo):
        cat = repo.find_or_create_category("alice", "Food")
        repo.insert_transaction(_make_txn(category_id=cat.id))
        with pytest.raises(sqlite3.IntegrityError):
            repo.delete_category("alice", cat.id)
        assert repo.get_category("alice", cat.id) is not None


# ── Rules ──────────────────────────────────────────────────


class TestRules:
    def test_insert_assigns_id(self, repo):
        rule = repo.insert_rule(_make_rule())
        assert rule.id is not None

    def test_roundtrip(self, repo):
        cat = repo.find_or_create_category("alice", "Dining")
        repo.insert_rule(_make_rule(action_category_id=cat.id, is_active=False))
        stored = repo.get_rules("alice")[0]
        assert stored.condition_type == "DESCRIPTION_CONTAINS"
        assert stored.action_category_id == cat.id
        assert stored.is_active is False

    def test_unknown_condition_type_rejected(self, repo):
        with pytest.raises(ValueError, match="Unknown condition_type"):
            repo.insert_rule(_make_rule(condition_type="REGEX"))

    def test_blank_value_rejected(self, repo):
        with pytest.raises(ValueError, match="blank"):
            repo.insert_rule(_make_rule(condition_value="  "))

    def test_non_numeric_amount_rejected(self, repo):
        with pytest.raises(ValueError, match="numeric"):
            repo.insert_rule(_make_rule(condition_type="AMOUNT_GREATER_THAN",
                                        condition_value="lots"))

    def test_active_rules_ordered_by_id(self, repo):
        first = repo.insert_rule(_make_rule(name="first"))
        repo.insert_rule(_make_rule(name="off", is_active=False))
        third = repo.insert_rule(_make_rule(name="third"))
        repo.insert_rule(_make_rule(user_id="bob", name="bob's"))
        assert [r.id for r in repo.get_active_rules("alice")] == [first.id, third.id]

    def test_enable_disable(self, repo):
        rule = repo.insert_rule(_make_rule())
        assert repo.set_rule_active("alice", rule.id, False)
        assert repo.get_active_rules("alice") == []
        assert not repo.set_rule_active("bob", rule.id, True)

    def test_update(self, repo):
        cat = repo.find_or_create_category("alice", "Big")
        rule = repo.insert_rule(_make_rule())
        rule.name = "large"
        rule.condition_type = "AMOUNT_GREATER_THAN"
        rule.condition_value = "100"
        rule.action_category_id = cat.id
        assert repo.update_rule(rule)
        stored = repo.get_rules("alice")[0]
        assert (stored.name, stored.condition_type, stored.condition_value) == (
            "large", "AMOUNT_GREATER_THAN", "100",
        )
        assert stored.action_category_id == cat.id
        assert stored.is_active is True

    def test_update_validates_condition(self, repo):
        rule = repo.insert_rule(_make_rule())
        rule.condition_type = "AMOUNT_LESS_THAN"
        with pytest.raises(ValueError, match="numeric"):
            repo.update_rule(rule)
        assert repo.get_rules("alice")[0].condition_type == "DESCRIPTION_CONTAINS"

    def test_update_other_owner_is_noop(self, repo):
        rule = repo.insert_rule(_make_rule())
        rule.user_id = "bob"
        rule.name = "stolen"
        assert not repo.update_rule(rule)
        assert repo.get_rules("alice")[0].name == "coffee"

    def test_delete(self, repo):
        rule = repo.insert_rule(_make_rule())
        assert not repo.delete_rule("bob", rule.id)
        assert repo.delete_rule("alice", rule.id)
        assert repo.get_rules("alice") == []


# ── Transactions ───────────────────────────────────────────


class TestTransactions:
    def test_roundtrip_preserves_decimal_and_flags(self, repo):
        txn = repo.insert_transaction(_make_txn(
            amount=Decimal("1200.50"),
            flag_reasons=frozenset({FlagReason.UNUSUAL_AMOUNT}),
        ))
        found = repo.get_transaction("alice", txn.id)
        assert found.amount == Decimal("1200.5")
        assert found.is_flagged
        assert found.flag_reasons == frozenset({FlagReason.UNUSUAL_AMOUNT})

    def test_roundtrip_keeps_long_precision(self, repo):
        amount = Decimal("1234567890123.123456789012345678901")
        txn = repo.insert_transaction(_make_txn(amount=amount))
        assert repo.get_transaction("alice", txn.id).amount == amount

    def test_duplicate_key_collision_raises(self, repo):
        repo.insert_transaction(_make_txn())
        with pytest.raises(DuplicateTransactionError):
            repo.insert_transaction(_make_txn(description="philz  coffee sf"))

    def test_same_key_for_two_owners(self, repo):
        repo.insert_transaction(_make_txn())
        repo.insert_transaction(_make_txn(user_id="bob"))
        assert repo.count_transactions("bob") == 1

    def test_get_is_owner_scoped(self, repo):
        txn = repo.insert_transaction(_make_txn())
        assert repo.get_transaction("bob", txn.id) is None

    def test_chunk_skips_existing_keys(self, repo):
        repo.insert_transaction(_make_txn())
        written = repo.insert_transactions_chunk([
            _make_txn(),
            _make_txn(description="Other"),
        ])
        assert [t.description for t in written] == ["Other"]
        assert written[0].id is not None
        assert repo.count_transactions("alice") == 2

    def test_chunk_rolls_back_on_error(self, repo):
        bad = _make_txn(description="Bad", category_id=9999)  # FK violation
        with pytest.raises(sqlite3.IntegrityError):
            repo.insert_transactions_chunk([_make_txn(description="Good"), bad])
        assert repo.count_transactions("alice") == 0

    def test_existing_duplicate_keys(self, repo):
        txn = repo.insert_transaction(_make_txn())
        other = _make_txn(description="Other")
        found = repo.existing_duplicate_keys(
            "alice", [txn.duplicate_key, other.duplicate_key]
        )
        assert found == {txn.duplicate_key}
        assert repo.existing_duplicate_keys("bob", [txn.duplicate_key]) == set()

    def test_existing_duplicate_keys_many(self, repo):
        keys = [f"k{i}" for i in range(1200)]
        assert repo.existing_duplicate_keys("alice", keys) == set()

    def test_uncategorized_page_cursor(self, repo):
        cat = repo.find_or_create_category("alice", "Food")
        ids = [
            repo.insert_transaction(_make_txn(description=f"t{i}")).id
            for i in range(5)
        ]
        repo.update_transaction_category("alice", ids[1], cat.id)
        page = repo.get_uncategorized_page("alice", after_id=0, limit=2)
        assert [t.id for t in page] == [ids[0], ids[2]]
        page = repo.get_uncategorized_page("alice", after_id=ids[2], limit=2)
        assert [t.id for t in page] == [ids[3], ids[4]]

    def test_bulk_update_category_owner_scoped(self, repo):
        cat = repo.find_or_create_category("alice", "Food")
        a = repo.insert_transaction(_make_txn(description="a"))
        b = repo.insert_transaction(_make_txn(description="b"))
        theirs = repo.insert_transaction(_make_txn(user_id="bob", description="c"))
        assert repo.bulk_update_category("alice", [a.id, b.id, theirs.id], cat.id) == 2
        assert repo.get_transaction("bob", theirs.id).category_id is None

    def test_unflag(self, repo):
        txn = repo.insert_transaction(_make_txn(
            description="", flag_reasons=frozenset({FlagReason.MISSING_DESCRIPTION}),
        ))
        assert repo.unflag_transactions("alice", [txn.id]) == 1
        found = repo.get_transaction("alice", txn.id)
        assert not found.is_flagged
        assert found.flag_reasons == frozenset()

    def test_update_many_empty_list(self, repo):
        assert repo.unflag_transactions("alice", []) == 0

    def test_delete(self, repo):
        txn = repo.insert_transaction(_make_txn())
        assert not repo.delete_transaction("bob", txn.id)
        assert repo.delete_transaction("alice", txn.id)
        assert repo.get_transaction("alice", txn.id) is None
