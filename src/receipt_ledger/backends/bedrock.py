"""Vision chat models on Amazon Bedrock (Nova and Claude)."""

from __future__ import annotations

import json
import threading
import time
from abc import abstractmethod
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..airlock import parse_model_json
from ..logging import get_logger
from ..models import ExtractionResult, LineItem
from ..stores.object_store import ObjectStore
from .base import BackendError, ExtractionBackend, ReceiptImage, normalize_confidence, parse_amount

log = get_logger(__name__)

MAX_LINE_ITEMS = 50

_PROMPT = """You read photographed receipts (Japanese or English) and answer with JSON only.
Do not wrap the answer in markdown code fences.

Return an object with these keys:
- vendor: store or counterparty name
- totalAmount: total paid, as a number
- taxAmount: consumption tax, as a number
- subtotal: amount before tax, as a number
- currency: ISO 4217 code, JPY when unsure
- date: transaction date as YYYY-MM-DD
- type: "income" or "expense"
- category: one of food, transport, shopping, entertainment, utilities, health, other
- description: a short summary of what was bought
- lineItems: list of {{"description", "quantity", "unitPrice", "totalPrice"}}
- confidence: your confidence from 0 to 100
{merchants}"""

_MERCHANT_HINT = """
Known merchants: {names}
If the receipt's store matches one of these fully or partially (for example "7-11"),
use the listed name as vendor."""


class MerchantCatalog:
    """Known merchant names, loaded from the object store on first use.

    A failed load is not cached, so the next call tries again. ``reset``
    drops a loaded list.
    """

    def __init__(self, object_store: ObjectStore, bucket: str, key: str) -> None:
        self._object_store = object_store
        self._bucket = bucket
        self._key = key
        self._names: list[str] | None = None
        self._lock = threading.Lock()

    def names(self) -> list[str]:
        with self._lock:
            if self._names is not None:
                return self._names
            try:
                data = json.loads(self._object_store.get_bytes(self._bucket, self._key))
                self._names = [str(m["name"]) for m in data.get("merchants") or [] if m.get("name")]
            except (ClientError, BotoCoreError, ValueError, KeyError, AttributeError) as exc:
                log.warning("merchant_catalog.load_failed", key=self._key, reason=str(exc))
                return []
            log.info("merchant_catalog.loaded", count=len(self._names))
            return self._names

    def reset(self) -> None:
        with self._lock:
            self._names = None


def build_prompt(merchant_names: list[str]) -> str:
    hint = _MERCHANT_HINT.format(names=", ".join(merchant_names)) if merchant_names else ""
    return _PROMPT.format(merchants=hint)


def result_from_model_payload(backend: str, model: str, data: dict[str, Any]) -> ExtractionResult:
    items = []
    for raw in (data.get("lineItems") or [])[:MAX_LINE_ITEMS]:
        if not isinstance(raw, dict):
            continue
        items.append(
            LineItem(
                description=str(raw["description"]) if raw.get("description") else None,
                quantity=parse_amount(raw.get("quantity")),
                unit_price=parse_amount(raw.get("unitPrice")),
                total_price=parse_amount(raw.get("totalPrice")),
            )
        )
    vendor = data.get("vendor") or data.get("merchant")
    return ExtractionResult(
        backend=backend,
        model=model,
        vendor=str(vendor) if vendor else None,
        total_amount=parse_amount(data.get("totalAmount", data.get("amount"))),
        tax_amount=parse_amount(data.get("taxAmount")),
        subtotal=parse_amount(data.get("subtotal")),
        currency=str(data["currency"]).upper() if data.get("currency") else None,
        date=str(data["date"]) if data.get("date") else None,
        line_items=tuple(items),
        confidence=normalize_confidence(data.get("confidence")),
        type_hint=str(data["type"]) if data.get("type") else None,
        category_hint=str(data["category"]) if data.get("category") else None,
        description=str(data["description"]) if data.get("description") else None,
    )


class _BedrockChatBackend(ExtractionBackend):
    def __init__(
        self,
        name: str,
        model_id: str,
        *,
        client: Any | None = None,
        catalog: MerchantCatalog | None = None,
        max_tokens: int = 1024,
        region: str | None = None,
    ) -> None:
        self._name = name
        self.model_id = model_id
        self.catalog = catalog
        self.max_tokens = max_tokens
        self._client = client or boto3.client("bedrock-runtime", region_name=region)

    @property
    def name(self) -> str:
        return self._name

    def extract(self, image: ReceiptImage) -> ExtractionResult:
        prompt = build_prompt(self.catalog.names() if self.catalog else [])
        started = time.monotonic()
        try:
            response = self._client.invoke_model(
                modelId=self.model_id,
                contentType="application/json",
                accept="application/json",
                body=json.dumps(self._payload(image, prompt)),
            )
            body = json.loads(response["body"].read())
        except (ClientError, BotoCoreError) as exc:
            raise BackendError(self.name, f"invoke_model failed: {exc}") from exc

        text = self._response_text(body)
        try:
            data = parse_model_json(text)
        except ValueError as exc:
            raise BackendError(self.name, f"unparseable model output ({len(text)} chars): {exc}") from exc

        result = result_from_model_payload(self.name, self.model_id, data)
        return result.model_copy(update={"elapsed_ms": int((time.monotonic() - started) * 1000)})

    @abstractmethod
    def _payload(self, image: ReceiptImage, prompt: str) -> dict[str, Any]:
        """Request body for ``invoke_model``."""

    @abstractmethod
    def _response_text(self, body: dict[str, Any]) -> str:
        """The model's answer text from a decoded response body."""


class NovaBackend(_BedrockChatBackend):
    """Amazon Nova models, messages-v1 request schema."""

    def _payload(self, image: ReceiptImage, prompt: str) -> dict[str, Any]:
        return {
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"image": {"format": image.image_format, "source": {"bytes": image.as_base64()}}},
                        {"text": prompt},
                    ],
                }
            ],
            "inferenceConfig": {"maxTokens": self.max_tokens, "temperature": 0.1},
        }

    def _response_text(self, body: dict[str, Any]) -> str:
        content = ((body.get("output") or {}).get("message") or {}).get("content") or []
        return str(content[0].get("text") or "") if content else ""


class ClaudeBackend(_BedrockChatBackend):
    """Anthropic Claude models, Bedrock messages API."""

    def _payload(self, image: ReceiptImage, prompt: str) -> dict[str, Any]:
        return {
            "anthropic_version": "bedrock-2023-05-31",
            "max_tokens": self.max_tokens,
            "system": "Answer with a single JSON object and nothing else.",
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "image",
                            "source": {
                                "type": "base64",
                                "media_type": image.content_type,
                                "data": image.as_base64(),
                            },
                        },
                        {"type": "text", "text": prompt},
                    ],
                }
            ],
        }

    def _response_text(self, body: dict[str, Any]) -> str:
        content = body.get("content") or []
        return str(content[0].get("text") or "") if content else ""
