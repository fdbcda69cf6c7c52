from __future__ import annotations

import time
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..models import ExtractionResult, LineItem
from .base import BackendError, ExtractionBackend, ReceiptImage, normalize_confidence, parse_amount

MAX_LINE_ITEMS = 50


def _field(fields: list[dict], field_type: str) -> dict | None:
    for item in fields:
        if (item.get("Type") or {}).get("Text") == field_type:
            return item
    return None


def _text(fields: list[dict], field_type: str) -> str | None:
    found = _field(fields, field_type)
    text = ((found or {}).get("ValueDetection") or {}).get("Text")
    return str(text).strip() if text else None


def _amount(fields: list[dict], field_type: str) -> float | None:
    return parse_amount(_text(fields, field_type))


def _currency(fields: list[dict]) -> str | None:
    for field_type in ("TOTAL", "AMOUNT_PAID"):
        code = ((_field(fields, field_type) or {}).get("Currency") or {}).get("Code")
        if code:
            return str(code).upper()
    return None


def _line_items(groups: list[dict]) -> tuple[LineItem, ...]:
    items: list[LineItem] = []
    for group in groups:
        for line in group.get("LineItems") or []:
            fields = line.get("LineItemExpenseFields") or []
            item = LineItem(
                description=_text(fields, "ITEM"),
                quantity=_amount(fields, "QUANTITY") or 1.0,
                unit_price=_amount(fields, "UNIT_PRICE"),
                total_price=_amount(fields, "PRICE"),
            )
            if item.description or item.unit_price or item.total_price:
                items.append(item)
            if len(items) >= MAX_LINE_ITEMS:
                return tuple(items)
    return tuple(items)


def normalize_expense(response: dict[str, Any], *, backend: str = "textract") -> ExtractionResult:
    documents = response.get("ExpenseDocuments") or []
    if not documents:
        raise BackendError(backend, "no expense document in response")

    doc = documents[0]
    summary = doc.get("SummaryFields") or []
    total_field = _field(summary, "TOTAL") or {}
    confidence = (total_field.get("ValueDetection") or {}).get("Confidence")

    return ExtractionResult(
        backend=backend,
        model="analyze_expense",
        vendor=_text(summary, "VENDOR_NAME"),
        total_amount=_amount(summary, "TOTAL") or _amount(summary, "AMOUNT_PAID"),
        tax_amount=_amount(summary, "TAX"),
        subtotal=_amount(summary, "SUBTOTAL"),
        currency=_currency(summary),
        date=_text(summary, "INVOICE_RECEIPT_DATE"),
        line_items=_line_items(doc.get("LineItemGroups") or []),
        confidence=normalize_confidence(confidence),
    )


class TextractBackend(ExtractionBackend):
    """AWS Textract AnalyzeExpense, reading the image straight from S3."""

    def __init__(self, client: Any | None = None, *, region: str | None = None) -> None:
        self._client = client or boto3.client("textract", region_name=region)

    @property
    def name(self) -> str:
        return "textract"

    def extract(self, image: ReceiptImage) -> ExtractionResult:
        started = time.monotonic()
        try:
            response = self._client.analyze_expense(
                Document={"S3Object": {"Bucket": image.bucket, "Name": image.key}}
            )
        except (ClientError, BotoCoreError) as exc:
            raise BackendError(self.name, f"analyze_expense failed: {exc}") from exc
        result = normalize_expense(response, backend=self.name)
        return result.model_copy(update={"elapsed_ms": int((time.monotonic() - started) * 1000)})
