from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from .logging import DEFAULT_LOG_LEVEL

# DynamoDB BatchWriteItem accepts at most 25 put requests per call.
MAX_BATCH_WRITE_SIZE = 25

DEFAULT_RULES_DIR = Path(__file__).resolve().parent / "rules" / "data"


class ConfigError(RuntimeError):
    pass


def _resolve_dir(value: str | None, default: Path) -> Path:
    if not value:
        return default
    candidate = Path(value)
    if candidate.is_absolute():
        return candidate
    return (Path.cwd() / candidate).resolve()


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}.") from exc


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}.") from exc


@dataclass(frozen=True, slots=True)
class Settings:
    bucket_name: str = ""
    transactions_table: str = "receipt-ledger-transactions"
    batch_jobs_table: str = "receipt-ledger-batch-jobs"
    batch_job_index: str = "jobIdIndex"
    primary_backend: str = "nova_lite"
    nova_model_id: str = "us.amazon.nova-lite-v1:0"
    claude_model_id: str = "us.anthropic.claude-3-5-sonnet-20241022-v2:0"
    merchant_catalog_key: str = "merchants/common-merchants.json"
    batch_write_size: int = MAX_BATCH_WRITE_SIZE
    batch_max_retries: int = 3
    batch_backoff_base_s: float = 0.1
    azure_endpoint: str | None = None
    azure_api_key: str | None = None
    azure_secret_arn: str | None = None
    azure_model_id: str = "prebuilt-receipt"
    azure_api_version: str = "2024-11-30"
    azure_poll_timeout_s: float = 30.0
    azure_poll_interval_s: float = 1.0
    azure_poll_interval_step_s: float = 0.5
    fanout_max_workers: int = 4
    tz: str = "Asia/Tokyo"
    guest_ttl_days: int = 60
    account_ttl_days: int = 365
    rules_dir: Path = DEFAULT_RULES_DIR
    log_level: str = DEFAULT_LOG_LEVEL

    @classmethod
    def from_env(cls) -> "Settings":
        batch_write_size = _int_env("BATCH_WRITE_SIZE", MAX_BATCH_WRITE_SIZE)
        batch_write_size = max(1, min(batch_write_size, MAX_BATCH_WRITE_SIZE))

        batch_max_retries = _int_env("BATCH_MAX_RETRIES", 3)
        if batch_max_retries < 0:
            raise ConfigError("BATCH_MAX_RETRIES must not be negative.")

        poll_timeout = _float_env("AZURE_POLL_TIMEOUT_S", 30.0)
        if poll_timeout <= 0:
            raise ConfigError("AZURE_POLL_TIMEOUT_S must be positive.")

        return cls(
            bucket_name=os.getenv("BUCKET_NAME", ""),
            transactions_table=os.getenv("TRANSACTIONS_TABLE_NAME", "receipt-ledger-transactions"),
            batch_jobs_table=os.getenv("BATCH_JOBS_TABLE_NAME", "receipt-ledger-batch-jobs"),
            batch_job_index=os.getenv("BATCH_JOB_INDEX_NAME", "jobIdIndex"),
            primary_backend=os.getenv("PRIMARY_BACKEND", "nova_lite"),
            nova_model_id=os.getenv("NOVA_MODEL_ID", "us.amazon.nova-lite-v1:0"),
            claude_model_id=os.getenv(
                "CLAUDE_MODEL_ID", "us.anthropic.claude-3-5-sonnet-20241022-v2:0"
            ),
            merchant_catalog_key=os.getenv("MERCHANT_CATALOG_KEY", "merchants/common-merchants.json"),
            batch_write_size=batch_write_size,
            batch_max_retries=batch_max_retries,
            batch_backoff_base_s=_float_env("BATCH_BACKOFF_BASE_S", 0.1),
            azure_endpoint=os.getenv("AZURE_DI_ENDPOINT") or None,
            azure_api_key=os.getenv("AZURE_DI_API_KEY") or None,
            azure_secret_arn=os.getenv("AZURE_DI_SECRET_ARN") or None,
            azure_model_id=os.getenv("AZURE_DI_MODEL_ID", "prebuilt-receipt"),
            azure_api_version=os.getenv("AZURE_DI_API_VERSION", "2024-11-30"),
            azure_poll_timeout_s=poll_timeout,
            azure_poll_interval_s=_float_env("AZURE_POLL_INTERVAL_S", 1.0),
            azure_poll_interval_step_s=_float_env("AZURE_POLL_INTERVAL_STEP_S", 0.5),
            fanout_max_workers=max(1, _int_env("FANOUT_MAX_WORKERS", 4)),
            tz=os.getenv("RECEIPT_TZ", "Asia/Tokyo"),
            guest_ttl_days=_int_env("GUEST_TTL_DAYS", 60),
            account_ttl_days=_int_env("ACCOUNT_TTL_DAYS", 365),
            rules_dir=_resolve_dir(os.getenv("RECEIPT_LEDGER_RULES_DIR"), DEFAULT_RULES_DIR),
            log_level=os.getenv("LOG_LEVEL", DEFAULT_LOG_LEVEL),
        )
