"""Rule engine: first matching active rule wins.

A RuleEngine holds an immutable snapshot of one owner's active rules,
sorted by ascending id (creation order). Build one per run and keep it for
the whole run; never re-read rules mid-run.

Each rule is compiled once into a predicate over (normalized description,
amount). Rules that cannot be evaluated (unknown condition_type from a
damaged row, non-numeric value on an amount condition, blank pattern)
compile to a predicate that never matches, and are logged once.
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Callable, Iterable

from txnflow.database.models import ConditionType, Rule
from txnflow.database.repository import Repository
from txnflow.parsers.base import normalize_description, to_decimal

logger = logging.getLogger(__name__)

Predicate = Callable[[str, Decimal], bool]


def _never(desc: str, amount: Decimal) -> bool:
    return False


def _parse_threshold(value: str) -> Decimal | None:
    try:
        parsed = Decimal(value.strip())
    except (InvalidOperation, AttributeError):
        return None
    return parsed if parsed.is_finite() else None


def compile_rule(rule: Rule) -> Predicate:
    """Return the match predicate for one rule."""
    try:
        condition = ConditionType(rule.condition_type)
    except ValueError:
        logger.warning(
            "Rule %s has unknown condition_type %r; it will never match",
            rule.id, rule.condition_type,
        )
        return _never

    if condition in (ConditionType.DESCRIPTION_CONTAINS, ConditionType.DESCRIPTION_EXACT):
        pattern = normalize_description(rule.condition_value)
        # An empty pattern would match everything
        if not pattern:
            logger.warning("Rule %s has a blank pattern; it will never match", rule.id)
            return _never
        if condition is ConditionType.DESCRIPTION_CONTAINS:
            return lambda desc, amount: pattern in desc
        return lambda desc, amount: desc == pattern

    threshold = _parse_threshold(rule.condition_value)
    if threshold is None:
        logger.warning(
            "Rule %s has non-numeric value %r for %s; it will never match",
            rule.id, rule.condition_value, condition.value,
        )
        return _never
    if condition is ConditionType.AMOUNT_EQUALS:
        return lambda desc, amount: amount == threshold
    if condition is ConditionType.AMOUNT_GREATER_THAN:
        return lambda desc, amount: amount > threshold
    return lambda desc, amount: amount < threshold


class RuleEngine:
    """Evaluate an ordered snapshot of active rules against a transaction."""

    def __init__(self, rules: Iterable[Rule]):
        ordered = sorted((r for r in rules if r.is_active), key=lambda r: r.id)
        self.rules: tuple[Rule, ...] = tuple(ordered)
        self._compiled: tuple[tuple[Rule, Predicate], ...] = tuple(
            (r, compile_rule(r)) for r in self.rules
        )

    @classmethod
    def for_user(cls, repo: Repository, user_id: str) -> RuleEngine:
        """Snapshot the owner's active rules."""
        return cls(repo.get_active_rules(user_id))

    def __len__(self) -> int:
        return len(self.rules)

    def match(self, description: str | None, amount) -> Rule | None:
        """Return the first rule whose condition matches, or None."""
        desc = normalize_description(description)
        value = to_decimal(amount)
        for rule, predicate in self._compiled:
            if predicate(desc, value):
                return rule
        return None

    def resolve_category(self, description: str | None, amount) -> int | None:
        """Category id of the first matching rule, or None.

        A matching rule with no action category still stops evaluation.
        """
        rule = self.match(description, amount)
        return rule.action_category_id if rule is not None else None
