from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml

from ..models import CATEGORIES


@dataclass(frozen=True, slots=True)
class NormalizationRules:
    stopwords: set[str]
    synonyms: dict[str, str]


@dataclass(frozen=True, slots=True)
class Merchant:
    id: str
    names: list[str]

    @property
    def display_name(self) -> str:
        return self.names[0] if self.names else self.id


@dataclass(frozen=True, slots=True)
class MerchantsRules:
    merchants: list[Merchant]


@dataclass(frozen=True, slots=True)
class CategoryRule:
    id: str
    priority: int
    when_any: list[dict]
    category: str
    confidence: float | None = None


@dataclass(frozen=True, slots=True)
class CategoriesRules:
    rules: list[CategoryRule]


@dataclass(frozen=True, slots=True)
class RuleSet:
    normalization: NormalizationRules
    merchants: MerchantsRules
    categories: CategoriesRules

    @classmethod
    def load_from_dir(cls, rules_dir: Path) -> "RuleSet":
        normalization = _load_yaml(rules_dir / "normalization.yml") or {}
        merchants = _load_yaml(rules_dir / "merchants.yml") or {}
        categories = _load_yaml(rules_dir / "categories.yml") or {}

        normalization_rules = NormalizationRules(
            stopwords={str(s) for s in normalization.get("stopwords") or []},
            synonyms={str(k): str(v) for k, v in (normalization.get("synonyms") or {}).items()},
        )

        merchants_rules = MerchantsRules(
            merchants=[
                Merchant(id=str(m["id"]), names=[str(n) for n in (m.get("names") or [])])
                for m in (merchants.get("merchants") or [])
            ]
        )

        category_rules = [_category_rule(rule, rules_dir) for rule in categories.get("rules") or []]
        category_rules.sort(key=lambda r: r.priority, reverse=True)

        return cls(
            normalization=normalization_rules,
            merchants=merchants_rules,
            categories=CategoriesRules(rules=category_rules),
        )


def _category_rule(rule: dict, rules_dir: Path) -> CategoryRule:
    then = dict(rule.get("then") or {})
    category = str(then.get("category") or "other")
    if category not in CATEGORIES:
        raise ValueError(
            f"Rule {rule.get('id')!r} in {rules_dir / 'categories.yml'} maps to unknown category {category!r}."
        )
    confidence = then.get("confidence")
    return CategoryRule(
        id=str(rule["id"]),
        priority=int(rule.get("priority") or 0),
        when_any=list((rule.get("when") or {}).get("any") or []),
        category=category,
        confidence=float(confidence) if confidence is not None else None,
    )


def _load_yaml(path: Path) -> dict | None:
    if not path.exists():
        raise FileNotFoundError(str(path))
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return None
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping at {path}, got {type(data).__name__}.")
    return data
