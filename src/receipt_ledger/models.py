from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

CATEGORIES: tuple[str, ...] = (
    "food",
    "transport",
    "shopping",
    "entertainment",
    "utilities",
    "health",
    "other",
)
TRANSACTION_TYPES: tuple[str, ...] = ("income", "expense")

Category = Literal["food", "transport", "shopping", "entertainment", "utilities", "health", "other"]
TransactionType = Literal["income", "expense"]
TransactionStatus = Literal["unconfirmed", "needs_review", "confirmed"]
MerchantSource = Literal["list_match", "ocr_fallback", "unknown"]
ComparisonStatus = Literal["completed", "failed"]

IngestStage = Literal[
    "received",
    "extracted",
    "validated",
    "copied",
    "verified",
    "written",
    "migrated",
    "done",
]


class LineItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    description: str | None = None
    quantity: float | None = None
    unit_price: float | None = None
    total_price: float | None = None


class ExtractionResult(BaseModel):
    """Normalized output of one extraction backend for one image."""

    model_config = ConfigDict(frozen=True)

    backend: str
    model: str | None = None
    success: bool = True
    vendor: str | None = None
    total_amount: float | None = None
    tax_amount: float | None = None
    subtotal: float | None = None
    currency: str | None = None
    date: str | None = None
    line_items: tuple[LineItem, ...] = ()
    confidence: float | None = Field(default=None, ge=0.0, le=1.0, allow_inf_nan=False)
    type_hint: str | None = None
    category_hint: str | None = None
    description: str | None = None
    error: str | None = None
    elapsed_ms: int | None = None

    @classmethod
    def failed(cls, backend: str, error: str, *, elapsed_ms: int | None = None) -> "ExtractionResult":
        return cls(backend=backend, success=False, error=error, elapsed_ms=elapsed_ms)


class BackendFailure(BaseModel):
    model_config = ConfigDict(frozen=True)

    backend: str
    error: str


class ComparisonResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    results: tuple[ExtractionResult, ...]
    status: ComparisonStatus
    success_count: int
    failure_count: int
    compared_at: str

    @classmethod
    def from_results(cls, results: list[ExtractionResult], *, compared_at: str) -> "ComparisonResult":
        success_count = sum(1 for r in results if r.success)
        failure_count = len(results) - success_count
        return cls(
            results=tuple(results),
            status="completed" if success_count > 0 else "failed",
            success_count=success_count,
            failure_count=failure_count,
            compared_at=compared_at,
        )

    @property
    def errors(self) -> list[BackendFailure]:
        return [
            BackendFailure(backend=r.backend, error=r.error or "unknown error")
            for r in self.results
            if not r.success
        ]

    def get(self, backend: str) -> ExtractionResult | None:
        for result in self.results:
            if result.backend == backend:
                return result
        return None

    def pick(self, preferred: str | None = None) -> ExtractionResult | None:
        """Return the preferred backend's result if it succeeded, else the first success."""
        if preferred:
            result = self.get(preferred)
            if result is not None and result.success:
                return result
        for result in self.results:
            if result.success:
                return result
        return None


class Transaction(BaseModel):
    """Persisted transaction record; attribute names are camelCase in the table."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    transaction_id: str = Field(min_length=1)
    image_id: str
    user_id: str
    amount: float = Field(ge=0, allow_inf_nan=False)
    type: TransactionType
    date: str
    merchant: str
    merchant_source: MerchantSource | None = None
    category: str
    description: str
    status: TransactionStatus
    ai_processed: bool = True
    version: int = 1
    created_at: str
    updated_at: str
    confirmed_at: str | None = None
    ttl: int | None = None
    is_guest: bool | None = None
    s3_key: str | None = None
    processing_model: str | None = None
    confidence: float | None = Field(default=None, ge=0.0, le=1.0, allow_inf_nan=False)
    validation_errors: list[dict[str, Any]] | None = None
    job_id: str | None = None

    def to_item(self) -> dict[str, Any]:
        data = self.model_dump(by_alias=True, mode="json")
        return {k: v for k, v in data.items() if v is not None or k == "confirmedAt"}


class BatchJob(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore", protected_namespaces=()
    )

    intent_id: str
    job_id: str
    user_id: str
    status: str = "PENDING"
    model_id: str | None = None
    image_keys: dict[str, str] = Field(default_factory=dict)


class IngestOutcome(BaseModel):
    key: str
    status: Literal["done", "duplicate", "skipped"]
    stage: IngestStage
    transaction_id: str | None = None
    transaction_status: TransactionStatus | None = None
    comparison_status: ComparisonStatus | None = None
    reason: str | None = None


class BatchOutcome(BaseModel):
    key: str
    status: Literal["completed", "failed", "skipped"]
    job_id: str | None = None
    total_lines: int = 0
    parse_errors: int = 0
    degraded: int = 0
    record_failures: int = 0
    written: int = 0
    duplicates: int = 0
    write_failures: int = 0
    migrated: int = 0
    migration_failures: int = 0
    job_status_updated: bool = False
    reason: str | None = None

    @property
    def success_count(self) -> int:
        return self.written + self.duplicates

    @property
    def failure_count(self) -> int:
        return self.parse_errors + self.record_failures + self.write_failures
