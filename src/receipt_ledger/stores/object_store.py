from __future__ import annotations

from typing import Any, Iterator, Protocol

import boto3
from botocore.exceptions import ClientError

_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}


class ObjectStore(Protocol):
    def get_bytes(self, bucket: str, key: str) -> bytes: ...

    def iter_lines(self, bucket: str, key: str) -> Iterator[str]: ...

    def copy(self, bucket: str, source_key: str, dest_key: str) -> None: ...

    def exists(self, bucket: str, key: str) -> bool: ...

    def delete(self, bucket: str, key: str) -> None: ...

    def list_keys(self, bucket: str, prefix: str) -> Iterator[str]: ...


def is_missing_object(exc: ClientError) -> bool:
    return str(exc.response.get("Error", {}).get("Code")) in _MISSING_CODES


class S3ObjectStore:
    """Object store operations on S3."""

    def __init__(self, client: Any | None = None, *, region: str | None = None) -> None:
        self._client = client or boto3.client("s3", region_name=region)

    def get_bytes(self, bucket: str, key: str) -> bytes:
        response = self._client.get_object(Bucket=bucket, Key=key)
        return response["Body"].read()

    def iter_lines(self, bucket: str, key: str) -> Iterator[str]:
        """Yield the object's lines without loading the whole body into memory."""
        response = self._client.get_object(Bucket=bucket, Key=key)
        body = response["Body"]
        try:
            for raw in body.iter_lines():
                yield raw.decode("utf-8", errors="replace")
        finally:
            body.close()

    def copy(self, bucket: str, source_key: str, dest_key: str) -> None:
        self._client.copy_object(
            Bucket=bucket,
            CopySource={"Bucket": bucket, "Key": source_key},
            Key=dest_key,
        )

    def exists(self, bucket: str, key: str) -> bool:
        try:
            self._client.head_object(Bucket=bucket, Key=key)
        except ClientError as exc:
            if is_missing_object(exc):
                return False
            raise
        return True

    def delete(self, bucket: str, key: str) -> None:
        self._client.delete_object(Bucket=bucket, Key=key)

    def list_keys(self, bucket: str, prefix: str) -> Iterator[str]:
        paginator = self._client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
            for obj in page.get("Contents") or []:
                yield obj["Key"]
