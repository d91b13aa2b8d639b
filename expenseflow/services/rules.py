"""Approval rule matching and selection."""
from __future__ import annotations

from decimal import Decimal
from typing import Iterable, List, Optional

from expenseflow.services.snapshots import RuleSpec


def rule_matches(rule: RuleSpec, converted_amount: Decimal, category: str) -> bool:
    """Return True when an active rule covers the amount and category.

    ``min_amount`` and ``max_amount`` are both inclusive and expressed in the
    company's base currency. A rule without ``max_amount`` is unbounded and a
    rule without categories applies to every category.
    """
    if not rule.is_active:
        return False
    if converted_amount < (rule.min_amount or Decimal("0")):
        return False
    if rule.max_amount is not None and converted_amount > rule.max_amount:
        return False
    if rule.categories and category not in rule.categories:
        return False
    return True


def applicable_rules(
    rules: Iterable[RuleSpec], converted_amount: Decimal, category: str
) -> List[RuleSpec]:
    return [rule for rule in rules if rule_matches(rule, converted_amount, category)]


def select_rule(
    rules: Iterable[RuleSpec], converted_amount: Decimal, category: str
) -> Optional[RuleSpec]:
    """Pick the first matching rule in company order. Rules are never combined."""
    return next(
        (rule for rule in rules if rule_matches(rule, converted_amount, category)),
        None,
    )
