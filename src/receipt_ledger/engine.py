from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo

from .airlock import ValidationFailure, ValidRecord, error_detail, fallback_fields, parse_model_json
from .identity import is_guest_user
from .models import CATEGORIES, TRANSACTION_TYPES, ComparisonResult, ExtractionResult, Transaction
from .rules.categorization import categorize_receipt
from .rules.loader import RuleSet
from .rules.merchants import detect_merchant


def now_in(tz: str) -> datetime:
    try:
        zone = ZoneInfo(tz)
    except Exception:
        return datetime.now().astimezone()
    return datetime.now(tz=zone)


@dataclass(frozen=True, slots=True)
class RecordContext:
    transaction_id: str
    image_id: str
    user_id: str
    s3_key: str | None = None
    processing_model: str | None = None
    confidence: float | None = None
    job_id: str | None = None


@dataclass(frozen=True, slots=True)
class TransactionEngine:
    ruleset: RuleSet
    tz: str = "Asia/Tokyo"
    guest_ttl_days: int = 60
    account_ttl_days: int | None = None

    @classmethod
    def load(
        cls,
        rules_dir: Path,
        *,
        tz: str = "Asia/Tokyo",
        guest_ttl_days: int = 60,
        account_ttl_days: int | None = None,
    ) -> "TransactionEngine":
        return cls(
            ruleset=RuleSet.load_from_dir(rules_dir),
            tz=tz,
            guest_ttl_days=guest_ttl_days,
            account_ttl_days=account_ttl_days,
        )

    def candidate_from_extraction(self, result: ExtractionResult) -> dict[str, Any]:
        """Raw transaction fields from a backend result, ready for the airlock."""
        merchant, merchant_source = self._resolve_merchant(result.vendor)

        category = (result.category_hint or "").strip().casefold()
        if category not in CATEGORIES or category == "other":
            names = [merchant, result.vendor or "", *(li.description or "" for li in result.line_items)]
            category = categorize_receipt(
                names, self.ruleset.categories, self.ruleset.normalization
            ).category

        type_ = (result.type_hint or "").strip().casefold()
        description = result.description or ", ".join(
            li.description for li in result.line_items[:3] if li.description
        )

        return {
            "amount": result.total_amount,
            "type": type_ if type_ in TRANSACTION_TYPES else "expense",
            "date": result.date,
            "merchant": merchant,
            "merchant_source": merchant_source,
            "category": category,
            "description": description,
        }

    def candidate_from_model_text(self, text: str) -> dict[str, Any]:
        """Raw transaction fields from a batch model answer.

        Raises ``ValueError`` when the answer is not a JSON object.
        """
        data = parse_model_json(text)
        merchant, merchant_source = self._resolve_merchant(
            str(data.get("merchant") or data.get("vendor") or "")
        )
        raw = dict(data)
        raw["merchant"] = merchant
        raw["merchant_source"] = merchant_source
        if "amount" not in raw and "totalAmount" in raw:
            raw["amount"] = raw["totalAmount"]
        return raw

    def build_transaction(
        self,
        outcome: ValidRecord | ValidationFailure,
        context: RecordContext,
        *,
        merchant_source: str | None = None,
        now: datetime | None = None,
    ) -> Transaction:
        now = now or now_in(self.tz)
        timestamp = now.isoformat()

        if isinstance(outcome, ValidRecord):
            fields = outcome.candidate.model_dump()
            status = "unconfirmed"
            errors = None
        else:
            fields = fallback_fields(outcome.raw, today=now.date().isoformat())
            status = "needs_review"
            errors = outcome.errors
            if fields["merchant"] != outcome.raw.get("merchant"):
                merchant_source = "unknown"

        ttl, is_guest = self.expiry_for(context.user_id, now)
        return Transaction(
            transaction_id=context.transaction_id,
            image_id=context.image_id,
            user_id=context.user_id,
            merchant_source=merchant_source,
            status=status,
            created_at=timestamp,
            updated_at=timestamp,
            ttl=ttl,
            is_guest=is_guest,
            s3_key=context.s3_key,
            processing_model=context.processing_model,
            confidence=context.confidence,
            validation_errors=errors,
            job_id=context.job_id,
            **fields,
        )

    def transaction_without_extraction(
        self,
        comparison: ComparisonResult,
        context: RecordContext,
        *,
        now: datetime | None = None,
    ) -> Transaction:
        """Degraded record for an image no backend could read."""
        errors = [error_detail(f.backend, "backend_failed", f.error) for f in comparison.errors]
        return self.build_transaction(
            ValidationFailure(errors=errors, raw={}),
            context,
            merchant_source="unknown",
            now=now,
        )

    def expiry_for(self, user_id: str, now: datetime) -> tuple[int | None, bool | None]:
        if is_guest_user(user_id):
            return int((now + timedelta(days=self.guest_ttl_days)).timestamp()), True
        if self.account_ttl_days is not None:
            return int((now + timedelta(days=self.account_ttl_days)).timestamp()), None
        return None, None

    def _resolve_merchant(self, vendor: str | None) -> tuple[str, str]:
        vendor = (vendor or "").strip()
        if not vendor:
            return "", "unknown"
        merchant = detect_merchant(vendor, self.ruleset.merchants, self.ruleset.normalization)
        if merchant is not None:
            return merchant.display_name, "list_match"
        return vendor, "ocr_fallback"
