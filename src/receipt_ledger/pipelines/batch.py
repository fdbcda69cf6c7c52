"""Ingestion of a Bedrock batch inference result file.

The file is streamed line by line; transactions are flushed in chunks as
they accumulate so memory stays bounded by the chunk size, not the file.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Iterator, Mapping

from botocore.exceptions import BotoCoreError, ClientError
from pydantic import ValidationError as PydanticValidationError

from ..airlock import ValidationFailure, error_detail, validate
from ..backends.base import normalize_confidence
from ..engine import RecordContext, TransactionEngine, now_in
from ..identity import batch_transaction_id
from ..logging import bind_context, clear_context, get_logger
from ..models import BatchJob, BatchOutcome, Transaction
from ..settings import MAX_BATCH_WRITE_SIZE
from ..storage import (
    UPLOAD_PREFIX,
    InvalidObjectKeyError,
    dated_key,
    object_refs,
    parse_batch_result_key,
    parse_upload_key,
    upload_time,
)
from ..stores.object_store import ObjectStore
from ..stores.transaction_store import BatchJobStore, TransactionStore

log = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class BatchLine:
    image_id: str
    text: str


def parse_result_line(line: str) -> BatchLine:
    """Read one JSONL envelope.

    Accepts ``customData`` or ``recordId`` for the image id, and either
    ``output.text`` or the Converse-style
    ``modelOutput.output.message.content[0].text`` for the model answer.
    Raises ``ValueError`` for anything else.
    """
    data = json.loads(line)
    if not isinstance(data, dict):
        raise ValueError("line is not a JSON object")

    image_id = data.get("customData") or data.get("recordId")
    if not isinstance(image_id, str) or not image_id.strip():
        raise ValueError("missing customData/recordId")

    text = _dig(data, "output", "text")
    if text is None:
        content = _dig(data, "modelOutput", "output", "message", "content")
        if isinstance(content, list) and content and isinstance(content[0], dict):
            text = content[0].get("text")
    if not isinstance(text, str):
        raise ValueError("missing model output text")

    return BatchLine(image_id=image_id.strip(), text=text)


def _dig(data: Any, *path: str) -> Any:
    for part in path:
        if not isinstance(data, dict):
            return None
        data = data.get(part)
    return data


@dataclass
class _Tally:
    total_lines: int = 0
    parse_errors: int = 0
    degraded: int = 0
    record_failures: int = 0
    written: int = 0
    duplicates: int = 0
    write_failures: int = 0
    migrated: int = 0
    migration_failures: int = 0


class _SourceKeys:
    """Maps image ids to their temporary upload keys.

    Known keys come from the batch job; anything else is looked up by
    listing the owner's upload prefix once, on first miss.
    """

    def __init__(self, object_store: ObjectStore, bucket: str, job: BatchJob) -> None:
        self._object_store = object_store
        self._bucket = bucket
        self._prefix = f"{UPLOAD_PREFIX}{job.user_id}/"
        self._keys = dict(job.image_keys)
        self._listed = False

    def get(self, image_id: str) -> str | None:
        if image_id not in self._keys and not self._listed:
            self._listed = True
            for key in self._list():
                try:
                    upload = parse_upload_key(key)
                except InvalidObjectKeyError:
                    continue
                self._keys.setdefault(upload.image_id, key)
        return self._keys.get(image_id)

    def _list(self) -> Iterator[str]:
        try:
            yield from self._object_store.list_keys(self._bucket, self._prefix)
        except (ClientError, BotoCoreError) as exc:
            log.warning("batch.upload_listing_failed", prefix=self._prefix, reason=str(exc))


@dataclass(frozen=True, slots=True)
class BatchPipeline:
    object_store: ObjectStore
    transactions: TransactionStore
    jobs: BatchJobStore
    engine: TransactionEngine
    chunk_size: int = MAX_BATCH_WRITE_SIZE
    clock: Callable[[], datetime] | None = None

    def __post_init__(self) -> None:
        if not 1 <= self.chunk_size <= MAX_BATCH_WRITE_SIZE:
            raise ValueError(f"chunk_size must be between 1 and {MAX_BATCH_WRITE_SIZE}")

    def handle_event(self, event: Mapping[str, Any]) -> list[BatchOutcome]:
        return [self.process(ref.bucket, ref.key) for ref in object_refs(event)]

    def process(self, bucket: str, key: str) -> BatchOutcome:
        try:
            job_id = parse_batch_result_key(key)
        except InvalidObjectKeyError as exc:
            log.warning("batch.processing_skipped", key=key, reason="invalid_key_format", detail=str(exc))
            return BatchOutcome(key=key, status="skipped", reason="invalid_key_format")

        try:
            job = self.jobs.find_by_job_id(job_id)
        except (ClientError, BotoCoreError, PydanticValidationError) as exc:
            log.error(
                "batch.processing_skipped", key=key, job_id=job_id, reason="job_lookup_failed", detail=str(exc)
            )
            return BatchOutcome(key=key, status="skipped", job_id=job_id, reason="job_lookup_failed")
        if job is None:
            log.error("batch.processing_skipped", key=key, job_id=job_id, reason="job_not_found")
            return BatchOutcome(key=key, status="skipped", job_id=job_id, reason="job_not_found")

        bind_context(job_id=job_id, user_id=job.user_id)
        try:
            return self._run(bucket, key, job)
        finally:
            clear_context("job_id", "user_id")

    def _run(self, bucket: str, key: str, job: BatchJob) -> BatchOutcome:
        now = self.clock() if self.clock else now_in(self.engine.tz)
        tally = _Tally()
        sources = _SourceKeys(self.object_store, bucket, job)
        written: list[Transaction] = []
        existing: list[Transaction] = []
        status = "completed"
        reason = None

        log.info("batch.processing_started", key=key, intent_id=job.intent_id)
        try:
            pending: list[Transaction] = []
            for line_number, line in enumerate(self.object_store.iter_lines(bucket, key), start=1):
                if not line.strip():
                    continue
                tally.total_lines += 1
                try:
                    entry = parse_result_line(line)
                except ValueError as exc:
                    tally.parse_errors += 1
                    log.warning("batch.line_parse_failed", line_number=line_number, reason=str(exc))
                    continue

                try:
                    transaction = self._transform(entry, job, sources, now)
                except Exception as exc:  # one bad record never stops the file
                    tally.record_failures += 1
                    log.exception(
                        "batch.record_failed", line_number=line_number, image_id=entry.image_id, reason=str(exc)
                    )
                    continue
                if transaction.status == "needs_review":
                    tally.degraded += 1
                pending.append(transaction)
                if len(pending) >= self.chunk_size:
                    self._flush(pending, tally, written, existing)
                    pending = []
            if pending:
                self._flush(pending, tally, written, existing)
        except Exception as exc:  # the job status is still updated below
            log.exception("batch.processing_failed", key=key, reason=str(exc))
            status = "failed"
            reason = str(exc) or type(exc).__name__

        self._migrate(bucket, written, existing, sources, now, tally)
        updated = self._complete(job, tally, now)

        log.info(
            "batch.processing_completed",
            status=status,
            total_lines=tally.total_lines,
            written=tally.written,
            duplicates=tally.duplicates,
            parse_errors=tally.parse_errors,
            record_failures=tally.record_failures,
            write_failures=tally.write_failures,
            degraded=tally.degraded,
        )
        return BatchOutcome(
            key=key,
            status=status,
            job_id=job.job_id,
            total_lines=tally.total_lines,
            parse_errors=tally.parse_errors,
            degraded=tally.degraded,
            record_failures=tally.record_failures,
            written=tally.written,
            duplicates=tally.duplicates,
            write_failures=tally.write_failures,
            migrated=tally.migrated,
            migration_failures=tally.migration_failures,
            job_status_updated=updated,
            reason=reason,
        )

    def _transform(self, entry: BatchLine, job: BatchJob, sources: _SourceKeys, now: datetime) -> Transaction:
        source_key = sources.get(entry.image_id)
        context = RecordContext(
            transaction_id=batch_transaction_id(job.job_id, entry.image_id),
            image_id=entry.image_id,
            user_id=job.user_id,
            s3_key=self._destination(source_key, now) if source_key else None,
            processing_model=job.model_id or "bedrock_batch",
            job_id=job.job_id,
        )
        try:
            raw = self.engine.candidate_from_model_text(entry.text)
        except ValueError as exc:
            outcome = ValidationFailure(
                errors=[error_detail("output", "invalid_json", str(exc))],
                raw={},
            )
            return self.engine.build_transaction(outcome, context, merchant_source="unknown", now=now)

        context = replace(context, confidence=normalize_confidence(raw.get("confidence")))
        transaction = self.engine.build_transaction(
            validate(raw), context, merchant_source=raw.get("merchant_source"), now=now
        )
        if transaction.status == "needs_review":
            log.warning(
                "airlock.breach",
                image_id=entry.image_id,
                transaction_id=transaction.transaction_id,
                errors=transaction.validation_errors,
            )
        return transaction

    @staticmethod
    def _destination(source_key: str, now: datetime) -> str:
        # dated by upload time so a replayed result file resolves the same key
        uploaded = upload_time(source_key)
        day = uploaded.astimezone(now.tzinfo).date() if uploaded else now.date()
        return dated_key(source_key, day)

    def _flush(
        self,
        chunk: list[Transaction],
        tally: _Tally,
        written: list[Transaction],
        existing: list[Transaction],
    ) -> None:
        try:
            result = self.transactions.batch_write(chunk)
        except (ClientError, BotoCoreError) as exc:
            tally.write_failures += len(chunk)
            log.error("batch.chunk_failed", size=len(chunk), reason=str(exc))
            return

        tally.written += len(result.written)
        tally.duplicates += len(result.existing)
        tally.write_failures += len(result.unprocessed)
        written.extend(result.written)
        existing.extend(result.existing)
        if result.existing:
            log.info(
                "batch.transactions_exist",
                transaction_ids=[t.transaction_id for t in result.existing],
            )
        if result.unprocessed:
            log.error(
                "batch.chunk_failed",
                size=len(chunk),
                unprocessed=len(result.unprocessed),
                attempts=result.attempts,
                transaction_ids=[t.transaction_id for t in result.unprocessed],
            )
        else:
            log.debug("batch.chunk_written", size=len(chunk), attempts=result.attempts)

    def _migrate(
        self,
        bucket: str,
        written: list[Transaction],
        existing: list[Transaction],
        sources: _SourceKeys,
        now: datetime,
        tally: _Tally,
    ) -> None:
        """Move images to their dated permanent key, best effort.

        Images of records that already existed are moved only if their upload
        is still there, which finishes a migration an earlier run left undone.
        """
        for transaction in written:
            source_key = sources.get(transaction.image_id)
            if source_key is None:
                tally.migration_failures += 1
                log.warning("batch.migration_skipped", image_id=transaction.image_id, reason="source_not_found")
                continue
            self._move(bucket, transaction.image_id, source_key, now, tally)

        for transaction in existing:
            source_key = sources.get(transaction.image_id)
            if source_key is None:
                continue
            try:
                present = self.object_store.exists(bucket, source_key)
            except (ClientError, BotoCoreError) as exc:
                log.warning("batch.migration_skipped", image_id=transaction.image_id, reason=str(exc))
                continue
            if present:
                self._move(bucket, transaction.image_id, source_key, now, tally)

        log.info("batch.migration_completed", migrated=tally.migrated, failed=tally.migration_failures)

    def _move(self, bucket: str, image_id: str, source_key: str, now: datetime, tally: _Tally) -> None:
        dest_key = self._destination(source_key, now)
        try:
            self.object_store.copy(bucket, source_key, dest_key)
            if not self.object_store.exists(bucket, dest_key):
                tally.migration_failures += 1
                log.warning("batch.migration_failed", image_id=image_id, reason="copy_verification_failed")
                return
            self.object_store.delete(bucket, source_key)
        except (ClientError, BotoCoreError) as exc:
            tally.migration_failures += 1
            log.warning("batch.migration_failed", image_id=image_id, reason=str(exc))
            return
        tally.migrated += 1

    def _complete(self, job: BatchJob, tally: _Tally, now: datetime) -> bool:
        try:
            self.jobs.mark_completed(
                job.intent_id,
                success_count=tally.written + tally.duplicates,
                failure_count=tally.parse_errors + tally.record_failures + tally.write_failures,
                total_count=tally.total_lines,
                completed_at=now.isoformat(),
            )
        except (ClientError, BotoCoreError) as exc:
            log.error("batch.job_status_update_failed", intent_id=job.intent_id, reason=str(exc))
            return False
        return True
