"""Object key conventions for uploaded images and batch results.

``uploads/{user_id}/{timestamp}-{image_id}.{ext}``   temporary upload
``processed/{user_id}/{timestamp}-{image_id}.{ext}`` permanent (single image)
``processed/{YYYY-MM-DD}/{filename}``               permanent (batch)
``batch-output/{job_id}/...``                       batch result files
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Mapping
from urllib.parse import unquote_plus

UPLOAD_PREFIX = "uploads/"
PROCESSED_PREFIX = "processed/"
BATCH_OUTPUT_PREFIX = "batch-output/"

_TIMESTAMP_PREFIX = re.compile(r"^\d+-")
_UPLOAD_MILLIS = re.compile(r"^(\d{13})-")
_EXTENSION = re.compile(r"\.[^/.]+$")


class InvalidObjectKeyError(ValueError):
    pass


@dataclass(frozen=True, slots=True)
class UploadKey:
    key: str
    user_id: str
    filename: str
    image_id: str


@dataclass(frozen=True, slots=True)
class ObjectRef:
    bucket: str
    key: str


def parse_upload_key(key: str) -> UploadKey:
    parts = key.split("/")
    if len(parts) < 3 or f"{parts[0]}/" != UPLOAD_PREFIX or not parts[1] or not parts[-1]:
        raise InvalidObjectKeyError(f"Expected uploads/{{user_id}}/{{filename}}, got {key!r}.")
    user_id, filename = parts[1], parts[-1]
    image_id = _TIMESTAMP_PREFIX.sub("", _EXTENSION.sub("", filename))
    if not image_id:
        raise InvalidObjectKeyError(f"No image id in {key!r}.")
    return UploadKey(key=key, user_id=user_id, filename=filename, image_id=image_id)


def permanent_key(upload_key: str) -> str:
    if not upload_key.startswith(UPLOAD_PREFIX):
        raise InvalidObjectKeyError(f"{upload_key!r} is not under {UPLOAD_PREFIX}.")
    return PROCESSED_PREFIX + upload_key[len(UPLOAD_PREFIX) :]


def dated_key(source_key: str, day: date) -> str:
    filename = source_key.rsplit("/", 1)[-1]
    return f"{PROCESSED_PREFIX}{day.isoformat()}/{filename}"


def upload_time(key: str) -> datetime | None:
    """Upload time from the epoch-millisecond filename prefix, if the key has one."""
    match = _UPLOAD_MILLIS.match(key.rsplit("/", 1)[-1])
    if not match:
        return None
    return datetime.fromtimestamp(int(match.group(1)) / 1000, tz=timezone.utc)


def parse_batch_result_key(key: str) -> str:
    parts = key.split("/")
    if len(parts) < 3 or f"{parts[0]}/" != BATCH_OUTPUT_PREFIX or not parts[1]:
        raise InvalidObjectKeyError(f"Expected batch-output/{{job_id}}/..., got {key!r}.")
    return parts[1]


def object_refs(event: Mapping[str, Any]) -> list[ObjectRef]:
    """Extract bucket/key pairs from an S3 object-created notification."""
    refs: list[ObjectRef] = []
    for record in event.get("Records") or []:
        s3 = record.get("s3") or {}
        bucket = (s3.get("bucket") or {}).get("name")
        raw_key = (s3.get("object") or {}).get("key")
        if not bucket or not raw_key:
            continue
        refs.append(ObjectRef(bucket=bucket, key=unquote_plus(raw_key)))
    return refs
