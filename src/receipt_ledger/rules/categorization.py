from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable

from .loader import CategoriesRules, CategoryRule, NormalizationRules
from .normalization import normalize_name


@dataclass(frozen=True, slots=True)
class CategoryMatch:
    category: str
    rule_id: str | None
    confidence: float | None


UNCATEGORIZED = CategoryMatch(category="other", rule_id=None, confidence=None)


def categorize(name_clean: str, tokens: list[str], rules: CategoriesRules) -> CategoryMatch:
    for rule in rules.rules:
        if _matches(rule, name_clean, tokens):
            return CategoryMatch(category=rule.category, rule_id=rule.id, confidence=rule.confidence)
    return UNCATEGORIZED


def categorize_receipt(
    names: Iterable[str],
    rules: CategoriesRules,
    normalization: NormalizationRules,
) -> CategoryMatch:
    """Categorize a receipt from its vendor and line-item names.

    Names are tried in order; the first name that matches a rule decides,
    with rules themselves evaluated by descending priority.
    """
    for name in names:
        if not name:
            continue
        name_clean, tokens = normalize_name(name, normalization)
        match = categorize(name_clean, tokens, rules)
        if match.rule_id is not None:
            return match
    return UNCATEGORIZED


def _matches(rule: CategoryRule, name_clean: str, tokens: list[str]) -> bool:
    for condition in rule.when_any:
        if "regex" in condition and re.search(str(condition["regex"]), name_clean) is not None:
            return True
        if "contains_any" in condition and _contains_any(list(condition["contains_any"]), name_clean, tokens):
            return True
    return False


def _contains_any(values: list[str], name_clean: str, tokens: list[str]) -> bool:
    token_set = set(tokens)
    for value in values:
        v = str(value).casefold()
        if v in token_set or (v and v in name_clean):
            return True
    return False
