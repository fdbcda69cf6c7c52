"""Trust boundary between model/backend output and persisted records.

Everything a backend or batch job extracts passes through :func:`validate`
before it can become a :class:`~receipt_ledger.models.Transaction`. A failed
validation is not an error for the caller: it builds a degraded record
(``needs_review``) from :func:`fallback_fields` and keeps the error details.
"""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .models import CATEGORIES, TRANSACTION_TYPES, Category, TransactionType

DEGRADED_MERCHANT = "Unknown"
DEGRADED_DESCRIPTION = "Validation failed - needs review"

_AMOUNT_NOISE = re.compile(r"[^\d.\-]")
_DATE_PREFIX = re.compile(r"^(\d{4})[-/.](\d{1,2})[-/.](\d{1,2})(?:[T ].*)?$")
_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class TransactionCandidate(BaseModel):
    """Strict contract a raw extraction must satisfy."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    amount: float = Field(gt=0, allow_inf_nan=False)
    type: TransactionType
    date: str
    merchant: str = Field(min_length=1)
    category: Category
    description: str = ""

    @field_validator("amount", mode="before")
    @classmethod
    def _coerce_amount(cls, value: Any) -> Any:
        if isinstance(value, str):
            cleaned = _AMOUNT_NOISE.sub("", value.replace(",", ""))
            return cleaned or value
        return value

    @field_validator("type", "category", mode="before")
    @classmethod
    def _casefold_enum(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().casefold()
        return value

    @field_validator("date", mode="before")
    @classmethod
    def _coerce_date(cls, value: Any) -> Any:
        if isinstance(value, date):
            return value.isoformat()
        if isinstance(value, str):
            return _normalize_date(value) or value
        return value

    @field_validator("date")
    @classmethod
    def _check_date(cls, value: str) -> str:
        try:
            date.fromisoformat(value)
        except ValueError as exc:
            raise ValueError("date must be a calendar date in YYYY-MM-DD format") from exc
        if len(value) != 10:
            raise ValueError("date must be a calendar date in YYYY-MM-DD format")
        return value

    @field_validator("description", mode="before")
    @classmethod
    def _none_description(cls, value: Any) -> Any:
        return "" if value is None else value


@dataclass(frozen=True, slots=True)
class ValidRecord:
    candidate: TransactionCandidate


@dataclass(frozen=True, slots=True)
class ValidationFailure:
    errors: list[dict[str, Any]]
    raw: dict[str, Any] = field(default_factory=dict)


def validate(raw: Any) -> ValidRecord | ValidationFailure:
    if not isinstance(raw, Mapping):
        return ValidationFailure(
            errors=[error_detail("", "object_type", "extraction output is not an object")],
        )
    try:
        return ValidRecord(candidate=TransactionCandidate.model_validate(dict(raw)))
    except ValidationError as exc:
        errors = [
            error_detail(".".join(str(part) for part in err["loc"]), err["type"], err["msg"])
            for err in exc.errors()
        ]
        return ValidationFailure(errors=errors, raw=dict(raw))


def error_detail(field_name: str, code: str, message: str) -> dict[str, Any]:
    return {"field": field_name, "code": code, "message": message}


def fallback_fields(raw: Mapping[str, Any], *, today: str) -> dict[str, Any]:
    """Best-effort values for a degraded record; every field is always present."""
    amount = _as_number(raw.get("amount"))
    type_ = str(raw.get("type") or "").strip().casefold()
    category = str(raw.get("category") or "").strip().casefold()
    merchant = str(raw.get("merchant") or "").strip()
    description = str(raw.get("description") or "").strip()

    raw_date = raw.get("date")
    day = _normalize_date(raw_date) if isinstance(raw_date, str) else None
    if day is None or not _is_calendar_date(day):
        day = today

    return {
        "amount": amount if amount is not None and amount >= 0 else 0.0,
        "type": type_ if type_ in TRANSACTION_TYPES else "expense",
        "date": day,
        "merchant": merchant or DEGRADED_MERCHANT,
        "category": category if category in CATEGORIES else "other",
        "description": description or DEGRADED_DESCRIPTION,
    }


def parse_model_json(text: str) -> dict[str, Any]:
    """Parse a model's JSON answer, tolerating markdown code fences.

    Raises ``ValueError`` when the text holds no JSON object.
    """
    cleaned = _CODE_FENCE.sub("", text.strip()).strip()
    if not cleaned.startswith("{"):
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start == -1 or end <= start:
            raise ValueError("model output contains no JSON object")
        cleaned = cleaned[start : end + 1]
    data = json.loads(cleaned)
    if not isinstance(data, dict):
        raise ValueError("model output is not a JSON object")
    return data


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        cleaned = _AMOUNT_NOISE.sub("", value.replace(",", ""))
        try:
            number = float(cleaned)
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


def _normalize_date(value: str) -> str | None:
    match = _DATE_PREFIX.match(value.strip())
    if not match:
        return None
    year, month, day = match.groups()
    return f"{year}-{int(month):02d}-{int(day):02d}"


def _is_calendar_date(value: str) -> bool:
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True
