from datetime import datetime, timedelta

import pytest

from receipt_ledger.engine import TransactionEngine
from receipt_ledger.fanout import FanOutEngine
from receipt_ledger.models import ExtractionResult, LineItem
from receipt_ledger.pipelines.single_image import SingleImagePipeline

from fakes import FailingBackend, FakeObjectStore, FakeTransactionStore, StaticBackend

UPLOAD = "uploads/device-7/1714600000000-img001.jpg"
PROCESSED = "processed/device-7/1714600000000-img001.jpg"

GOOD_RESULT = ExtractionResult(
    backend="nova_lite",
    model="us.amazon.nova-lite-v1:0",
    vendor="7-11 新宿店",
    total_amount=540.0,
    date="2024-05-01",
    line_items=(LineItem(description="おにぎり", quantity=2, total_price=300.0),),
    confidence=0.9,
)


def _pipeline(
    engine: TransactionEngine,
    fixed_now: datetime,
    *backends,
    objects: dict[str, bytes] | None = None,
) -> tuple[SingleImagePipeline, FakeObjectStore, FakeTransactionStore]:
    store = FakeObjectStore({UPLOAD: b"\xff\xd8image"} if objects is None else objects)
    transactions = FakeTransactionStore()
    pipeline = SingleImagePipeline(
        object_store=store,
        transactions=transactions,
        fanout=FanOutEngine(list(backends) or [StaticBackend("nova_lite", GOOD_RESULT)]),
        engine=engine,
        primary_backend="nova_lite",
        clock=lambda: fixed_now,
    )
    return pipeline, store, transactions


def test_image_becomes_unconfirmed_transaction(engine: TransactionEngine, fixed_now: datetime) -> None:
    pipeline, store, transactions = _pipeline(engine, fixed_now)

    outcome = pipeline.process("receipts", UPLOAD)

    assert outcome.status == "done"
    assert outcome.stage == "done"
    assert outcome.transaction_id == "tx-img001"

    transaction = transactions.items["tx-img001"]
    assert transaction.status == "unconfirmed"
    assert transaction.amount == 540.0
    assert transaction.merchant == "セブン-イレブン (7-Eleven)"
    assert transaction.merchant_source == "list_match"
    assert transaction.category == "food"
    assert transaction.description == "おにぎり"
    assert transaction.s3_key == PROCESSED
    assert transaction.processing_model == "us.amazon.nova-lite-v1:0"
    assert transaction.version == 1
    assert transaction.confirmed_at is None

    assert PROCESSED in store.objects
    assert UPLOAD not in store.objects


def test_guest_records_expire_after_sixty_days(engine: TransactionEngine, fixed_now: datetime) -> None:
    pipeline, _, transactions = _pipeline(engine, fixed_now)

    pipeline.process("receipts", UPLOAD)

    transaction = transactions.items["tx-img001"]
    assert transaction.is_guest is True
    assert transaction.ttl == int((fixed_now + timedelta(days=60)).timestamp())


def test_account_records_on_the_image_path_do_not_expire(engine: TransactionEngine, fixed_now: datetime) -> None:
    key = "uploads/us-east-1:abc/1714600000000-img002.jpg"
    pipeline, _, transactions = _pipeline(engine, fixed_now, objects={key: b"img"})

    pipeline.process("receipts", key)

    transaction = transactions.items["tx-img002"]
    assert transaction.ttl is None
    assert transaction.is_guest is None


def test_copy_happens_before_write_and_delete_comes_last(engine: TransactionEngine, fixed_now: datetime) -> None:
    pipeline, store, transactions = _pipeline(engine, fixed_now)

    pipeline.process("receipts", UPLOAD)

    ops = [op for op, _ in store.calls]
    assert ops == ["get", "copy", "exists", "delete"]
    assert transactions.put_calls == 1


def test_failed_copy_means_no_transaction(engine: TransactionEngine, fixed_now: datetime) -> None:
    pipeline, store, transactions = _pipeline(engine, fixed_now)
    store.silent_copy_failures.add(UPLOAD)

    outcome = pipeline.process("receipts", UPLOAD)

    assert outcome.status == "skipped"
    assert outcome.reason == "copy_verification_failed"
    assert outcome.stage == "copied"
    assert transactions.items == {}
    assert transactions.put_calls == 0
    assert UPLOAD in store.objects


def test_redelivered_event_is_a_duplicate(engine: TransactionEngine, fixed_now: datetime) -> None:
    pipeline, store, transactions = _pipeline(engine, fixed_now)

    first = pipeline.process("receipts", UPLOAD)
    store.objects[UPLOAD] = b"\xff\xd8image"
    second = pipeline.process("receipts", UPLOAD)

    assert first.status == "done"
    assert second.status == "duplicate"
    assert second.stage == "done"
    assert list(transactions.items) == ["tx-img001"]
    assert UPLOAD not in store.objects


def test_failed_cleanup_still_reports_the_written_transaction(
    engine: TransactionEngine, fixed_now: datetime
) -> None:
    pipeline, store, transactions = _pipeline(engine, fixed_now)
    store.failing_deletes.add(UPLOAD)

    outcome = pipeline.process("receipts", UPLOAD)

    assert outcome.status == "done"
    assert outcome.stage == "written"
    assert outcome.transaction_id == "tx-img001"
    assert outcome.reason is not None
    assert "tx-img001" in transactions.items
    assert PROCESSED in store.objects
    assert UPLOAD in store.objects


def test_primary_backend_result_is_preferred(engine: TransactionEngine, fixed_now: datetime) -> None:
    pipeline, _, transactions = _pipeline(
        engine,
        fixed_now,
        StaticBackend("textract", vendor="LAWSON", total_amount=999.0, date="2024-05-01"),
        StaticBackend("nova_lite", GOOD_RESULT),
    )

    pipeline.process("receipts", UPLOAD)

    assert transactions.items["tx-img001"].amount == 540.0


def test_three_of_four_backends_failing_still_produces_transaction(
    engine: TransactionEngine, fixed_now: datetime
) -> None:
    pipeline, _, transactions = _pipeline(
        engine,
        fixed_now,
        FailingBackend("textract"),
        FailingBackend("nova_lite"),
        StaticBackend("claude_sonnet", vendor="Tokyo Metro", total_amount=210.0, date="2024-05-01"),
        FailingBackend("azure_di"),
    )

    outcome = pipeline.process("receipts", UPLOAD)

    assert outcome.status == "done"
    assert outcome.comparison_status == "completed"
    transaction = transactions.items["tx-img001"]
    assert transaction.status == "unconfirmed"
    assert transaction.merchant == "Tokyo Metro"
    assert transaction.merchant_source == "ocr_fallback"
    assert transaction.category == "transport"


def test_invalid_extraction_is_kept_as_degraded_record(engine: TransactionEngine, fixed_now: datetime) -> None:
    pipeline, _, transactions = _pipeline(
        engine,
        fixed_now,
        StaticBackend("nova_lite", vendor="", total_amount=None, date="05/01"),
    )

    outcome = pipeline.process("receipts", UPLOAD)

    assert outcome.status == "done"
    assert outcome.transaction_status == "needs_review"
    transaction = transactions.items["tx-img001"]
    assert transaction.status == "needs_review"
    assert transaction.amount == 0.0
    assert transaction.merchant == "Unknown"
    assert transaction.merchant_source == "unknown"
    assert transaction.date == "2024-05-02"
    assert transaction.description == "Validation failed - needs review"
    assert {e["field"] for e in transaction.validation_errors} >= {"amount", "date", "merchant"}


def test_all_backends_failing_still_records_the_image(engine: TransactionEngine, fixed_now: datetime) -> None:
    pipeline, store, transactions = _pipeline(
        engine,
        fixed_now,
        FailingBackend("textract", "throttled"),
        FailingBackend("nova_lite", "model error"),
    )

    outcome = pipeline.process("receipts", UPLOAD)

    assert outcome.comparison_status == "failed"
    transaction = transactions.items["tx-img001"]
    assert transaction.status == "needs_review"
    assert [e["code"] for e in transaction.validation_errors] == ["backend_failed", "backend_failed"]
    assert transaction.validation_errors[0]["field"] == "textract"
    assert PROCESSED in store.objects


def test_missing_upload_is_skipped_without_raising(engine: TransactionEngine, fixed_now: datetime) -> None:
    pipeline, _, transactions = _pipeline(engine, fixed_now, objects={})

    outcome = pipeline.process("receipts", UPLOAD)

    assert outcome.status == "skipped"
    assert outcome.stage == "received"
    assert outcome.transaction_id == "tx-img001"
    assert transactions.items == {}


@pytest.mark.parametrize("key", ["processed/device-7/1-img.jpg", "uploads/device-7"])
def test_unexpected_keys_are_skipped(engine: TransactionEngine, fixed_now: datetime, key: str) -> None:
    pipeline, _, transactions = _pipeline(engine, fixed_now)

    outcome = pipeline.process("receipts", key)

    assert outcome.status == "skipped"
    assert outcome.reason == "invalid_key_structure"
    assert transactions.put_calls == 0


def test_handle_event_processes_every_record(engine: TransactionEngine, fixed_now: datetime) -> None:
    other = "uploads/device-7/1714600000001-img002.png"
    pipeline, _, transactions = _pipeline(engine, fixed_now, objects={UPLOAD: b"a", other: b"b"})
    event = {
        "Records": [
            {"s3": {"bucket": {"name": "receipts"}, "object": {"key": UPLOAD}}},
            {"s3": {"bucket": {"name": "receipts"}, "object": {"key": other}}},
        ]
    }

    outcomes = pipeline.handle_event(event)

    assert [o.status for o in outcomes] == ["done", "done"]
    assert sorted(transactions.items) == ["tx-img001", "tx-img002"]
