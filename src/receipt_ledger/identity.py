"""Deterministic transaction identifiers.

Only stable inputs take part in derivation. Wall-clock time, retry counters
and anything else that changes between deliveries of the same event must
never be hashed in, otherwise a redelivered event would produce a second
record.
"""

from __future__ import annotations

import hashlib

IMAGE_TRANSACTION_PREFIX = "tx-"
BATCH_TRANSACTION_ID_LENGTH = 24

GUEST_USER_PREFIXES = ("device-", "ephemeral-")


def image_transaction_id(image_id: str) -> str:
    """Identifier for the single-image path, taken directly from the image id."""
    if not image_id:
        raise ValueError("image_id must not be empty")
    return f"{IMAGE_TRANSACTION_PREFIX}{image_id}"


def batch_transaction_id(job_id: str, image_id: str) -> str:
    """Identifier for the batch path: ``sha256("{job_id}#{image_id}")`` truncated."""
    if not job_id or not image_id:
        raise ValueError("job_id and image_id must not be empty")
    digest = hashlib.sha256(f"{job_id}#{image_id}".encode("utf-8")).hexdigest()
    return digest[:BATCH_TRANSACTION_ID_LENGTH]


def is_guest_user(user_id: str) -> bool:
    return user_id.startswith(GUEST_USER_PREFIXES)
