from __future__ import annotations

from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

from receipt_ledger.engine import TransactionEngine
from receipt_ledger.settings import DEFAULT_RULES_DIR

FIXED_NOW = datetime(2024, 5, 2, 10, 30, tzinfo=ZoneInfo("Asia/Tokyo"))


@pytest.fixture(autouse=True)
def aws_env(monkeypatch: pytest.MonkeyPatch) -> None:
    # boto3 clients need a region and credentials even when stubbed.
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.delenv("AWS_PROFILE", raising=False)


@pytest.fixture()
def engine() -> TransactionEngine:
    return TransactionEngine.load(DEFAULT_RULES_DIR)


@pytest.fixture()
def batch_engine() -> TransactionEngine:
    return TransactionEngine.load(DEFAULT_RULES_DIR, account_ttl_days=365)


@pytest.fixture()
def fixed_now() -> datetime:
    return FIXED_NOW
