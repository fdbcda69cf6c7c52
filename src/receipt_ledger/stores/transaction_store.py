"""DynamoDB access for transactions and batch jobs."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Protocol, Sequence

import boto3
from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.exceptions import ClientError

from ..logging import get_logger
from ..models import BatchJob, Transaction
from ..settings import MAX_BATCH_WRITE_SIZE

log = get_logger(__name__)

_serializer = TypeSerializer()
_deserializer = TypeDeserializer()

CONDITIONAL_CHECK_FAILED = "ConditionalCheckFailedException"


def marshall(item: dict[str, Any]) -> dict[str, Any]:
    # DynamoDB rejects Python floats; numbers travel as Decimal.
    prepared = json.loads(json.dumps(item), parse_float=Decimal)
    return {key: _serializer.serialize(value) for key, value in prepared.items()}


def unmarshall(item: dict[str, Any]) -> dict[str, Any]:
    return {key: _plain(_deserializer.deserialize(value)) for key, value in item.items()}


def _plain(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, set)):
        return [_plain(v) for v in value]
    return value


@dataclass(frozen=True, slots=True)
class BatchWriteResult:
    written: list[Transaction]
    unprocessed: list[Transaction]
    attempts: int
    delays: list[float] = field(default_factory=list)
    existing: list[Transaction] = field(default_factory=list)


class TransactionStore(Protocol):
    def put_if_absent(self, transaction: Transaction) -> bool: ...

    def batch_write(self, transactions: Sequence[Transaction]) -> BatchWriteResult: ...


class BatchJobStore(Protocol):
    def find_by_job_id(self, job_id: str) -> BatchJob | None: ...

    def mark_completed(
        self,
        intent_id: str,
        *,
        success_count: int,
        failure_count: int,
        total_count: int,
        completed_at: str,
    ) -> None: ...


class DynamoTransactionStore:
    def __init__(
        self,
        table_name: str,
        client: Any | None = None,
        *,
        max_retries: int = 3,
        backoff_base_s: float = 0.1,
        sleep: Callable[[float], None] = time.sleep,
        region: str | None = None,
    ) -> None:
        self.table_name = table_name
        self.max_retries = max_retries
        self.backoff_base_s = backoff_base_s
        self._client = client or boto3.client("dynamodb", region_name=region)
        self._sleep = sleep

    def put_if_absent(self, transaction: Transaction) -> bool:
        """Insert unless a record with this transactionId exists.

        Returns False when the record already existed.
        """
        try:
            self._client.put_item(
                TableName=self.table_name,
                Item=marshall(transaction.to_item()),
                ConditionExpression="attribute_not_exists(transactionId)",
            )
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") == CONDITIONAL_CHECK_FAILED:
                return False
            raise
        return True

    def batch_write(self, transactions: Sequence[Transaction]) -> BatchWriteResult:
        """Insert up to 25 new transactions, retrying only what DynamoDB left unprocessed.

        BatchWriteItem cannot be conditional, so ids already in the table are
        looked up first and left untouched; they come back as ``existing``.
        Retry ``n`` waits ``backoff_base_s * 2**n`` seconds. Items that could
        not be checked, marshalled or written after ``max_retries`` retries
        are returned as ``unprocessed``, not raised.
        """
        if len(transactions) > MAX_BATCH_WRITE_SIZE:
            raise ValueError(f"batch_write accepts at most {MAX_BATCH_WRITE_SIZE} items")
        if not transactions:
            return BatchWriteResult(written=[], unprocessed=[], attempts=0)

        by_id = {t.transaction_id: t for t in transactions}
        existing_ids, unresolved_ids = self._existing_ids(list(by_id))

        items: dict[str, dict[str, Any]] = {}
        rejected_ids: set[str] = set()
        for transaction_id, transaction in by_id.items():
            if transaction_id in existing_ids or transaction_id in unresolved_ids:
                continue
            try:
                items[transaction_id] = marshall(transaction.to_item())
            except (TypeError, ValueError) as exc:
                rejected_ids.add(transaction_id)
                log.error("batch.item_rejected", transaction_id=transaction_id, reason=str(exc))

        pending = list(items)
        delays: list[float] = []
        attempts = 0

        while pending:
            attempts += 1
            response = self._client.batch_write_item(
                RequestItems={self.table_name: [{"PutRequest": {"Item": items[i]}} for i in pending]}
            )
            leftover = (response.get("UnprocessedItems") or {}).get(self.table_name) or []
            leftover_ids = {
                str(_deserializer.deserialize(r["PutRequest"]["Item"]["transactionId"])) for r in leftover
            }
            pending = [i for i in pending if i in leftover_ids]
            if not pending or len(delays) >= self.max_retries:
                break

            delay = self.backoff_base_s * (2 ** len(delays))
            log.warning(
                "batch.write_retry",
                unprocessed=len(pending),
                backoff_s=delay,
                retry=len(delays) + 1,
            )
            delays.append(delay)
            self._sleep(delay)

        failed_ids = set(pending) | unresolved_ids | rejected_ids
        return BatchWriteResult(
            written=[t for i, t in by_id.items() if i in items and i not in failed_ids],
            unprocessed=[t for i, t in by_id.items() if i in failed_ids],
            attempts=attempts,
            delays=delays,
            existing=[t for i, t in by_id.items() if i in existing_ids],
        )

    def _existing_ids(self, transaction_ids: list[str]) -> tuple[set[str], set[str]]:
        """Split ``transaction_ids`` into those already stored and those that could not be checked."""
        found: set[str] = set()
        request: dict[str, Any] = {
            self.table_name: {
                "Keys": [{"transactionId": {"S": i}} for i in transaction_ids],
                "ProjectionExpression": "transactionId",
            }
        }
        retries = 0
        while True:
            response = self._client.batch_get_item(RequestItems=request)
            for item in (response.get("Responses") or {}).get(self.table_name) or []:
                found.add(item["transactionId"]["S"])
            request = response.get("UnprocessedKeys") or {}
            if not request.get(self.table_name) or retries >= self.max_retries:
                break

            delay = self.backoff_base_s * (2**retries)
            log.warning("batch.lookup_retry", unprocessed=len(request[self.table_name]["Keys"]), backoff_s=delay)
            retries += 1
            self._sleep(delay)

        unresolved = {key["transactionId"]["S"] for key in (request.get(self.table_name) or {}).get("Keys", [])}
        if unresolved:
            log.error("batch.lookup_failed", unresolved=len(unresolved))
        return found, unresolved


class DynamoBatchJobStore:
    def __init__(
        self,
        table_name: str,
        client: Any | None = None,
        *,
        index_name: str = "jobIdIndex",
        region: str | None = None,
    ) -> None:
        self.table_name = table_name
        self.index_name = index_name
        self._client = client or boto3.client("dynamodb", region_name=region)

    def find_by_job_id(self, job_id: str) -> BatchJob | None:
        response = self._client.query(
            TableName=self.table_name,
            IndexName=self.index_name,
            KeyConditionExpression="jobId = :jobId",
            ExpressionAttributeValues={":jobId": {"S": job_id}},
        )
        items = response.get("Items") or []
        if not items:
            return None
        return BatchJob.model_validate(unmarshall(items[0]))

    def mark_completed(
        self,
        intent_id: str,
        *,
        success_count: int,
        failure_count: int,
        total_count: int,
        completed_at: str,
    ) -> None:
        self._client.update_item(
            TableName=self.table_name,
            Key={"intentId": {"S": intent_id}},
            UpdateExpression="SET #status = :status, completedAt = :now, resultStats = :stats",
            ExpressionAttributeNames={"#status": "status"},
            ExpressionAttributeValues=marshall(
                {
                    ":status": "COMPLETED",
                    ":now": completed_at,
                    ":stats": {
                        "successCount": success_count,
                        "failureCount": failure_count,
                        "totalCount": total_count,
                    },
                }
            ),
        )
