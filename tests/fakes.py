from __future__ import annotations

from collections.abc import Iterator, Sequence

from botocore.exceptions import ClientError

from receipt_ledger.backends.base import BackendError, ExtractionBackend, ReceiptImage
from receipt_ledger.models import BatchJob, ExtractionResult, Transaction
from receipt_ledger.stores.transaction_store import BatchWriteResult


def client_error(code: str, operation: str = "Operation") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class FakeObjectStore:
    def __init__(self, objects: dict[str, bytes] | None = None, *, bucket: str = "receipts") -> None:
        self.bucket = bucket
        self.objects: dict[str, bytes] = dict(objects or {})
        self.silent_copy_failures: set[str] = set()
        self.failing_deletes: set[str] = set()
        self.calls: list[tuple[str, str]] = []

    def get_bytes(self, bucket: str, key: str) -> bytes:
        self.calls.append(("get", key))
        if key not in self.objects:
            raise client_error("NoSuchKey", "GetObject")
        return self.objects[key]

    def iter_lines(self, bucket: str, key: str) -> Iterator[str]:
        yield from self.get_bytes(bucket, key).decode("utf-8").splitlines()

    def copy(self, bucket: str, source_key: str, dest_key: str) -> None:
        self.calls.append(("copy", dest_key))
        if source_key not in self.objects:
            raise client_error("NoSuchKey", "CopyObject")
        if source_key in self.silent_copy_failures:
            return
        self.objects[dest_key] = self.objects[source_key]

    def exists(self, bucket: str, key: str) -> bool:
        self.calls.append(("exists", key))
        return key in self.objects

    def delete(self, bucket: str, key: str) -> None:
        self.calls.append(("delete", key))
        if key in self.failing_deletes:
            raise client_error("AccessDenied", "DeleteObject")
        self.objects.pop(key, None)

    def list_keys(self, bucket: str, prefix: str) -> Iterator[str]:
        self.calls.append(("list", prefix))
        return iter(sorted(k for k in self.objects if k.startswith(prefix)))


class FakeTransactionStore:
    def __init__(self) -> None:
        self.items: dict[str, Transaction] = {}
        self.chunk_sizes: list[int] = []
        self.unprocessable: set[str] = set()
        self.put_calls = 0

    def put_if_absent(self, transaction: Transaction) -> bool:
        self.put_calls += 1
        if transaction.transaction_id in self.items:
            return False
        self.items[transaction.transaction_id] = transaction
        return True

    def batch_write(self, transactions: Sequence[Transaction]) -> BatchWriteResult:
        self.chunk_sizes.append(len(transactions))
        existing = [t for t in transactions if t.transaction_id in self.items]
        fresh = [t for t in transactions if t.transaction_id not in self.items]
        written = [t for t in fresh if t.transaction_id not in self.unprocessable]
        unprocessed = [t for t in fresh if t.transaction_id in self.unprocessable]
        for t in written:
            self.items[t.transaction_id] = t
        return BatchWriteResult(written=written, unprocessed=unprocessed, attempts=1, existing=existing)


class FakeBatchJobStore:
    def __init__(self, *jobs: BatchJob, fail_update: bool = False, fail_lookup: bool = False) -> None:
        self.jobs = {job.job_id: job for job in jobs}
        self.fail_update = fail_update
        self.fail_lookup = fail_lookup
        self.completed: list[dict] = []

    def find_by_job_id(self, job_id: str) -> BatchJob | None:
        if self.fail_lookup:
            raise client_error("ProvisionedThroughputExceededException", "Query")
        return self.jobs.get(job_id)

    def mark_completed(self, intent_id: str, **stats) -> None:
        if self.fail_update:
            raise client_error("ProvisionedThroughputExceededException", "UpdateItem")
        self.completed.append({"intent_id": intent_id, **stats})


class StaticBackend(ExtractionBackend):
    def __init__(self, name: str, result: ExtractionResult | None = None, **fields) -> None:
        self._name = name
        self._result = result or ExtractionResult(backend=name, **fields)
        self.seen: list[ReceiptImage] = []

    @property
    def name(self) -> str:
        return self._name

    def extract(self, image: ReceiptImage) -> ExtractionResult:
        self.seen.append(image)
        return self._result


class FailingBackend(ExtractionBackend):
    def __init__(self, name: str, message: str = "service unavailable") -> None:
        self._name = name
        self.message = message

    @property
    def name(self) -> str:
        return self._name

    def extract(self, image: ReceiptImage) -> ExtractionResult:
        raise BackendError(self._name, self.message)
