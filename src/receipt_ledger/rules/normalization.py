from __future__ import annotations

import re
import unicodedata

from .loader import NormalizationRules

# \W is Unicode-aware, so kana and kanji survive as word characters.
_NON_WORD = re.compile(r"[\W_]+")
_WS = re.compile(r"\s+")


def clean_text(value: str) -> str:
    # NFKC folds full-width digits and latin letters common on Japanese receipts.
    value = unicodedata.normalize("NFKC", value).casefold()
    value = _NON_WORD.sub(" ", value)
    return _WS.sub(" ", value).strip()


def tokenize(clean_value: str) -> list[str]:
    if not clean_value:
        return []
    return [t for t in clean_value.split(" ") if t]


def normalize_name(name_raw: str, rules: NormalizationRules) -> tuple[str, list[str]]:
    name_clean = _apply_synonyms(clean_text(name_raw), rules)
    tokens = [t for t in tokenize(name_clean) if t not in rules.stopwords]
    return name_clean, tokens


def _apply_synonyms(name_clean: str, rules: NormalizationRules) -> str:
    out = name_clean
    for raw_key, raw_value in rules.synonyms.items():
        key = clean_text(raw_key)
        value = clean_text(raw_value)
        if not key or not value:
            continue
        pattern = r"\s+".join(re.escape(part) for part in key.split(" "))
        out = re.sub(rf"(?<!\w){pattern}(?!\w)", value, out)
    return _WS.sub(" ", out).strip()
