"""Dataclass models matching the SQLite schema.

Each dataclass corresponds to one table. Fields match column names exactly,
except ``Transaction.flag_reasons`` which is stored as a comma-separated
``flag_reason`` column. Primary keys are INTEGER ids assigned by SQLite,
so ``id`` is None until the row has been inserted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ConditionType(str, Enum):
    """The predicate a rule encodes."""
    DESCRIPTION_CONTAINS = "DESCRIPTION_CONTAINS"
    DESCRIPTION_EXACT = "DESCRIPTION_EXACT"
    AMOUNT_EQUALS = "AMOUNT_EQUALS"
    AMOUNT_GREATER_THAN = "AMOUNT_GREATER_THAN"
    AMOUNT_LESS_THAN = "AMOUNT_LESS_THAN"


class FlagReason(str, Enum):
    """Why a transaction was marked for review."""
    MISSING_DESCRIPTION = "MISSING_DESCRIPTION"
    UNUSUAL_AMOUNT = "UNUSUAL_AMOUNT"


@dataclass
class Import:
    user_id: str
    file_name: str
    file_hash: str
    id: int | None = None
    file_size: int | None = None
    record_count: int | None = None
    status: str = "pending"
    error_message: str | None = None
    created_at: str = field(default_factory=_now)
    completed_at: str | None = None


@dataclass
class Category:
    user_id: str
    name: str
    name_normalized: str
    id: int | None = None
    created_at: str = field(default_factory=_now)


@dataclass
class Rule:
    """A classification rule.

    ``condition_type`` is a plain string as stored. Values outside
    ``ConditionType`` can only come from a damaged database and are
    treated as never matching by the rule engine.
    """
    user_id: str
    name: str
    condition_type: str
    condition_value: str
    id: int | None = None
    action_category_id: int | None = None
    is_active: bool = True
    created_at: str = field(default_factory=_now)


@dataclass
class Transaction:
    user_id: str
    date: str              # YYYY-MM-DD
    description: str
    amount: Decimal
    duplicate_key: str
    id: int | None = None
    category_id: int | None = None
    flag_reasons: frozenset[FlagReason] = frozenset()
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    @property
    def is_flagged(self) -> bool:
        return bool(self.flag_reasons)
