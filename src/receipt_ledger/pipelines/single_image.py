"""Immediate ingestion of one uploaded receipt image.

Order per image: derive id, fetch, extract, validate, copy to the permanent
key, verify the copy, conditional insert, delete the upload. A transaction
row therefore never references an image that is not at its permanent key,
and a crash between any two steps is repaired by redelivering the event:
copy and verify repeat harmlessly, the insert is conditional, and deleting
the upload comes last.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Mapping

from botocore.exceptions import BotoCoreError, ClientError

from ..airlock import validate
from ..backends.base import ReceiptImage
from ..engine import RecordContext, TransactionEngine
from ..fanout import FanOutEngine
from ..identity import image_transaction_id
from ..logging import bind_context, clear_context, get_logger
from ..models import IngestOutcome, IngestStage
from ..storage import InvalidObjectKeyError, UploadKey, object_refs, parse_upload_key, permanent_key
from ..stores.object_store import ObjectStore
from ..stores.transaction_store import TransactionStore

log = get_logger(__name__)


class _Progress:
    def __init__(self, key: str) -> None:
        self.key = key
        self.stage: IngestStage = "received"

    def advance(self, stage: IngestStage) -> None:
        self.stage = stage
        log.debug("image.stage", key=self.key, stage=stage)


@dataclass(frozen=True, slots=True)
class SingleImagePipeline:
    object_store: ObjectStore
    transactions: TransactionStore
    fanout: FanOutEngine
    engine: TransactionEngine
    primary_backend: str = "nova_lite"
    clock: Callable[[], datetime] | None = None

    def handle_event(self, event: Mapping[str, Any]) -> list[IngestOutcome]:
        refs = object_refs(event)
        log.info("image.processing_started", record_count=len(refs))
        return [self.process(ref.bucket, ref.key) for ref in refs]

    def process(self, bucket: str, key: str) -> IngestOutcome:
        """Run one image through the pipeline. Never raises for per-image problems."""
        progress = _Progress(key)
        try:
            upload = parse_upload_key(key)
        except InvalidObjectKeyError as exc:
            log.warning("image.processing_skipped", key=key, reason="invalid_key_structure", detail=str(exc))
            return IngestOutcome(key=key, status="skipped", stage="received", reason="invalid_key_structure")

        bind_context(user_id=upload.user_id, image_id=upload.image_id)
        try:
            return self._run(bucket, upload, progress)
        except Exception as exc:  # per-image failures never reach the event source
            log.exception("image.processing_failed", key=key, stage=progress.stage, reason=str(exc))
            return IngestOutcome(
                key=key,
                status="skipped",
                stage=progress.stage,
                transaction_id=image_transaction_id(upload.image_id),
                reason=str(exc) or type(exc).__name__,
            )
        finally:
            clear_context("user_id", "image_id")

    def _run(self, bucket: str, upload: UploadKey, progress: _Progress) -> IngestOutcome:
        key = upload.key
        transaction_id = image_transaction_id(upload.image_id)
        processed_key = permanent_key(key)

        content = self.object_store.get_bytes(bucket, key)
        comparison = self.fanout.compare(ReceiptImage(bucket=bucket, key=key, content=content))
        progress.advance("extracted")

        now = self.clock() if self.clock else None
        chosen = comparison.pick(self.primary_backend)
        if chosen is None:
            log.warning("image.all_backends_failed", key=key, failure_count=comparison.failure_count)
            transaction = self.engine.transaction_without_extraction(
                comparison,
                RecordContext(
                    transaction_id=transaction_id,
                    image_id=upload.image_id,
                    user_id=upload.user_id,
                    s3_key=processed_key,
                ),
                now=now,
            )
        else:
            raw = self.engine.candidate_from_extraction(chosen)
            outcome = validate(raw)
            transaction = self.engine.build_transaction(
                outcome,
                RecordContext(
                    transaction_id=transaction_id,
                    image_id=upload.image_id,
                    user_id=upload.user_id,
                    s3_key=processed_key,
                    processing_model=chosen.model or chosen.backend,
                    confidence=chosen.confidence,
                ),
                merchant_source=raw.get("merchant_source"),
                now=now,
            )
        if transaction.status == "needs_review":
            log.warning(
                "airlock.breach",
                key=key,
                transaction_id=transaction_id,
                errors=transaction.validation_errors,
            )
        progress.advance("validated")

        self.object_store.copy(bucket, key, processed_key)
        progress.advance("copied")

        if not self.object_store.exists(bucket, processed_key):
            log.error(
                "image.processing_skipped",
                key=key,
                reason="copy_verification_failed",
                processed_key=processed_key,
            )
            return IngestOutcome(
                key=key,
                status="skipped",
                stage=progress.stage,
                transaction_id=transaction_id,
                comparison_status=comparison.status,
                reason="copy_verification_failed",
            )
        progress.advance("verified")

        created = self.transactions.put_if_absent(transaction)
        if not created:
            log.info("image.transaction_exists", transaction_id=transaction_id)
        progress.advance("written")

        cleanup_error = None
        try:
            self.object_store.delete(bucket, key)
        except (ClientError, BotoCoreError) as exc:
            # a leftover upload is reprocessed as a duplicate
            cleanup_error = str(exc) or type(exc).__name__
            log.error("image.cleanup_failed", key=key, transaction_id=transaction_id, reason=cleanup_error)
        else:
            progress.advance("migrated")
            progress.advance("done")

        log.info(
            "image.processing_completed",
            transaction_id=transaction_id,
            s3_key=processed_key,
            created=created,
            transaction_status=transaction.status,
        )
        return IngestOutcome(
            key=key,
            status="done" if created else "duplicate",
            stage=progress.stage,
            transaction_id=transaction_id,
            transaction_status=transaction.status,
            comparison_status=comparison.status,
            reason=cleanup_error,
        )
