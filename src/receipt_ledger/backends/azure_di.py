"""Azure AI Document Intelligence receipt model.

The service is asynchronous: the image is submitted once, the response
carries an ``Operation-Location`` URL, and that URL is polled until the
analysis succeeds or fails. Polling waits ``poll_interval_s`` first and
``poll_interval_step_s`` longer after every poll, and gives up once
``poll_timeout_s`` has elapsed since submission.
"""

from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..http_client import HttpRequestError, get_json, post_bytes
from ..logging import get_logger
from ..models import ExtractionResult, LineItem
from .base import (
    BackendError,
    BackendTimeoutError,
    BackendUnavailableError,
    ExtractionBackend,
    ReceiptImage,
    normalize_confidence,
)

log = get_logger(__name__)

MAX_LINE_ITEMS = 50
CREDENTIALS_TTL_S = 55 * 60


@dataclass(frozen=True, slots=True)
class AzureCredentials:
    endpoint: str
    api_key: str


class AzureCredentialsProvider:
    """Resolves the endpoint and key, from settings or from Secrets Manager.

    Secrets Manager lookups are cached on the provider for ``ttl_s``.
    """

    def __init__(
        self,
        *,
        endpoint: str | None = None,
        api_key: str | None = None,
        secret_arn: str | None = None,
        secrets_client: Any | None = None,
        ttl_s: float = CREDENTIALS_TTL_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._static = AzureCredentials(endpoint, api_key) if endpoint and api_key else None
        self._secret_arn = secret_arn
        self._secrets_client = secrets_client
        self._ttl_s = ttl_s
        self._clock = clock
        self._cached: AzureCredentials | None = None
        self._expires_at = 0.0
        self._lock = threading.Lock()

    def get(self) -> AzureCredentials | None:
        if self._static is not None:
            return self._static
        if not self._secret_arn:
            return None
        with self._lock:
            now = self._clock()
            if self._cached is not None and now < self._expires_at:
                return self._cached
            credentials = self._load_secret()
            if credentials is not None:
                self._cached = credentials
                self._expires_at = now + self._ttl_s
            return credentials

    def reset(self) -> None:
        with self._lock:
            self._cached = None
            self._expires_at = 0.0

    def _load_secret(self) -> AzureCredentials | None:
        if self._secrets_client is None:
            self._secrets_client = boto3.client("secretsmanager")
        try:
            response = self._secrets_client.get_secret_value(SecretId=self._secret_arn)
            secret = json.loads(response.get("SecretString") or "{}")
            return AzureCredentials(endpoint=str(secret["endpoint"]), api_key=str(secret["apiKey"]))
        except (ClientError, BotoCoreError, ValueError, KeyError) as exc:
            log.error("azure_credentials.load_failed", secret_arn=self._secret_arn, reason=str(exc))
            return None


def _value(field: dict | None) -> Any:
    if not field:
        return None
    for key in ("valueString", "valueNumber", "valueDate", "valueInteger"):
        if field.get(key) is not None:
            return field[key]
    currency = field.get("valueCurrency")
    if currency:
        return currency.get("amount")
    return field.get("content")


def _number(field: dict | None) -> float | None:
    value = _value(field)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    return None


def normalize_analyze_result(payload: dict[str, Any], *, backend: str = "azure_di", model: str | None = None) -> ExtractionResult:
    documents = (payload.get("analyzeResult") or {}).get("documents") or []
    if not documents:
        raise BackendError(backend, "analysis returned no documents")

    doc = documents[0]
    fields = doc.get("fields") or {}

    items: list[LineItem] = []
    for entry in ((fields.get("Items") or {}).get("valueArray") or [])[:MAX_LINE_ITEMS]:
        item_fields = entry.get("valueObject") or {}
        description = _value(item_fields.get("Description"))
        items.append(
            LineItem(
                description=str(description) if description else None,
                quantity=_number(item_fields.get("Quantity")) or 1.0,
                unit_price=_number(item_fields.get("Price")),
                total_price=_number(item_fields.get("TotalPrice")),
            )
        )

    currency = ((fields.get("Total") or {}).get("valueCurrency") or {}).get("currencyCode")
    vendor = _value(fields.get("MerchantName"))
    day = _value(fields.get("TransactionDate"))

    return ExtractionResult(
        backend=backend,
        model=model,
        vendor=str(vendor) if vendor else None,
        total_amount=_number(fields.get("Total")),
        tax_amount=_number(fields.get("TotalTax")),
        subtotal=_number(fields.get("Subtotal")),
        currency=str(currency).upper() if currency else None,
        date=str(day) if day else None,
        line_items=tuple(items),
        confidence=normalize_confidence(doc.get("confidence")),
    )


class AzureDocumentIntelligenceBackend(ExtractionBackend):
    def __init__(
        self,
        credentials: AzureCredentialsProvider,
        *,
        model_id: str = "prebuilt-receipt",
        api_version: str = "2024-11-30",
        poll_timeout_s: float = 30.0,
        poll_interval_s: float = 1.0,
        poll_interval_step_s: float = 0.5,
        request_timeout_s: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.credentials = credentials
        self.model_id = model_id
        self.api_version = api_version
        self.poll_timeout_s = poll_timeout_s
        self.poll_interval_s = poll_interval_s
        self.poll_interval_step_s = poll_interval_step_s
        self.request_timeout_s = request_timeout_s
        self._sleep = sleep
        self._clock = clock

    @property
    def name(self) -> str:
        return "azure_di"

    def extract(self, image: ReceiptImage) -> ExtractionResult:
        credentials = self.credentials.get()
        if credentials is None:
            raise BackendUnavailableError(self.name, "no Azure Document Intelligence credentials configured")

        started = self._clock()
        operation_url = self._submit(image, credentials)
        payload = self._poll(operation_url, credentials, started=started)
        result = normalize_analyze_result(payload, backend=self.name, model=self.model_id)
        return result.model_copy(update={"elapsed_ms": int((self._clock() - started) * 1000)})

    def _submit(self, image: ReceiptImage, credentials: AzureCredentials) -> str:
        url = (
            f"{credentials.endpoint.rstrip('/')}/documentintelligence/documentModels/"
            f"{self.model_id}:analyze?api-version={self.api_version}"
        )
        try:
            response = post_bytes(
                url,
                image.content,
                headers={
                    "Ocp-Apim-Subscription-Key": credentials.api_key,
                    "Content-Type": image.content_type,
                },
                timeout_s=self.request_timeout_s,
            )
        except HttpRequestError as exc:
            raise BackendError(self.name, f"submit failed: {exc}") from exc

        operation_url = response.header("Operation-Location")
        if not operation_url:
            raise BackendError(self.name, f"submit returned HTTP {response.status} without Operation-Location")
        return operation_url

    def _poll(self, operation_url: str, credentials: AzureCredentials, *, started: float) -> dict[str, Any]:
        deadline = started + self.poll_timeout_s
        interval = self.poll_interval_s
        polls = 0
        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise BackendTimeoutError(
                    self.name, f"analysis not finished after {self.poll_timeout_s:.1f}s ({polls} polls)"
                )
            self._sleep(min(interval, remaining))
            interval += self.poll_interval_step_s

            try:
                payload = get_json(
                    operation_url,
                    headers={"Ocp-Apim-Subscription-Key": credentials.api_key},
                    timeout_s=self.request_timeout_s,
                )
            except HttpRequestError as exc:
                raise BackendError(self.name, f"poll failed: {exc}") from exc
            polls += 1

            status = str(payload.get("status") or "").casefold()
            if status == "succeeded":
                return payload
            if status == "failed":
                message = (payload.get("error") or {}).get("message") or "analysis failed"
                raise BackendError(self.name, str(message))
