"""Lambda-style entrypoints.

Pipelines and their clients are built once per process and reused across
invocations; ``reset()`` drops them together with the adapter caches.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Any, Mapping

import boto3

from .backends.azure_di import AzureCredentialsProvider, AzureDocumentIntelligenceBackend
from .backends.bedrock import ClaudeBackend, MerchantCatalog, NovaBackend
from .backends.textract import TextractBackend
from .engine import TransactionEngine
from .fanout import FanOutEngine
from .logging import init_invocation_context, setup_logging
from .pipelines.batch import BatchPipeline
from .pipelines.single_image import SingleImagePipeline
from .settings import Settings
from .stores.object_store import S3ObjectStore
from .stores.transaction_store import DynamoBatchJobStore, DynamoTransactionStore


def build_single_image_pipeline(settings: Settings) -> SingleImagePipeline:
    object_store = S3ObjectStore(boto3.client("s3"))
    catalog = MerchantCatalog(object_store, settings.bucket_name, settings.merchant_catalog_key)
    bedrock = boto3.client("bedrock-runtime")
    credentials = AzureCredentialsProvider(
        endpoint=settings.azure_endpoint,
        api_key=settings.azure_api_key,
        secret_arn=settings.azure_secret_arn,
    )

    fanout = FanOutEngine(
        [
            TextractBackend(boto3.client("textract")),
            NovaBackend("nova_lite", settings.nova_model_id, client=bedrock, catalog=catalog),
            ClaudeBackend("claude_sonnet", settings.claude_model_id, client=bedrock, catalog=catalog),
            AzureDocumentIntelligenceBackend(
                credentials,
                model_id=settings.azure_model_id,
                api_version=settings.azure_api_version,
                poll_timeout_s=settings.azure_poll_timeout_s,
                poll_interval_s=settings.azure_poll_interval_s,
                poll_interval_step_s=settings.azure_poll_interval_step_s,
            ),
        ],
        max_workers=settings.fanout_max_workers,
    )
    engine = TransactionEngine.load(
        settings.rules_dir,
        tz=settings.tz,
        guest_ttl_days=settings.guest_ttl_days,
    )
    return SingleImagePipeline(
        object_store=object_store,
        transactions=DynamoTransactionStore(settings.transactions_table, boto3.client("dynamodb")),
        fanout=fanout,
        engine=engine,
        primary_backend=settings.primary_backend,
    )


def build_batch_pipeline(settings: Settings) -> BatchPipeline:
    dynamodb = boto3.client("dynamodb")
    engine = TransactionEngine.load(
        settings.rules_dir,
        tz=settings.tz,
        guest_ttl_days=settings.guest_ttl_days,
        account_ttl_days=settings.account_ttl_days,
    )
    return BatchPipeline(
        object_store=S3ObjectStore(boto3.client("s3")),
        transactions=DynamoTransactionStore(
            settings.transactions_table,
            dynamodb,
            max_retries=settings.batch_max_retries,
            backoff_base_s=settings.batch_backoff_base_s,
        ),
        jobs=DynamoBatchJobStore(settings.batch_jobs_table, dynamodb, index_name=settings.batch_job_index),
        engine=engine,
        chunk_size=settings.batch_write_size,
    )


@lru_cache(maxsize=1)
def settings() -> Settings:
    return Settings.from_env()


@lru_cache(maxsize=1)
def single_image_pipeline() -> SingleImagePipeline:
    return build_single_image_pipeline(settings())


@lru_cache(maxsize=1)
def batch_pipeline() -> BatchPipeline:
    return build_batch_pipeline(settings())


def reset() -> None:
    settings.cache_clear()
    single_image_pipeline.cache_clear()
    batch_pipeline.cache_clear()


def _request_id(context: Any) -> str | None:
    return getattr(context, "aws_request_id", None)


def image_uploaded(event: Mapping[str, Any], context: Any = None) -> dict[str, Any]:
    setup_logging(settings().log_level)
    trace_id = init_invocation_context(request_id=_request_id(context))
    outcomes = single_image_pipeline().handle_event(event)
    return {
        "traceId": trace_id,
        "processed": sum(1 for o in outcomes if o.status != "skipped"),
        "outcomes": [o.model_dump() for o in outcomes],
    }


def batch_result_ready(event: Mapping[str, Any], context: Any = None) -> dict[str, Any]:
    setup_logging(settings().log_level)
    trace_id = init_invocation_context(request_id=_request_id(context))
    outcomes = batch_pipeline().handle_event(event)
    return {
        "traceId": trace_id,
        "outcomes": [
            {**o.model_dump(), "successCount": o.success_count, "failureCount": o.failure_count}
            for o in outcomes
        ],
    }
