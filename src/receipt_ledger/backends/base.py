"""
Extraction backend interface.

Every backend turns one receipt image into an ExtractionResult, hiding its
own request and response shapes. Backends raise BackendError (or any other
exception) on failure; the fan-out engine settles that into a failed result
so sibling backends are unaffected.
"""

from __future__ import annotations

import base64
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from ..models import ExtractionResult

_CONTENT_TYPES = {
    "webp": "image/webp",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
}


class BackendError(RuntimeError):
    def __init__(self, backend: str, message: str) -> None:
        super().__init__(f"{backend}: {message}")
        self.backend = backend


class BackendTimeoutError(BackendError):
    pass


class BackendUnavailableError(BackendError):
    pass


@dataclass(frozen=True, slots=True)
class ReceiptImage:
    bucket: str
    key: str
    content: bytes

    @property
    def image_format(self) -> str:
        suffix = self.key.rsplit(".", 1)[-1].casefold() if "." in self.key else ""
        if suffix == "jpg":
            return "jpeg"
        return suffix if suffix in _CONTENT_TYPES else "webp"

    @property
    def content_type(self) -> str:
        return _CONTENT_TYPES[self.image_format]

    def as_base64(self) -> str:
        return base64.b64encode(self.content).decode("ascii")


class ExtractionBackend(ABC):
    @property
    @abstractmethod
    def name(self) -> str:
        """Backend name used in results, logs and configuration."""

    @abstractmethod
    def extract(self, image: ReceiptImage) -> ExtractionResult:
        """Extract receipt fields from ``image``."""


def parse_amount(value: Any) -> float | None:
    """Read a money amount from a number or a printed string such as "¥1,280"."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    text = "".join(ch for ch in str(value) if ch.isdigit() or ch in ".-")
    try:
        number = float(text)
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def normalize_confidence(value: Any) -> float | None:
    """Scale a 0-100 or 0-1 confidence score to 0.0-1.0."""
    number = parse_amount(value)
    if number is None or number < 0:
        return None
    if number > 1:
        number = number / 100.0
    return min(number, 1.0)
