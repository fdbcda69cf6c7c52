from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Sequence

from .backends.base import ExtractionBackend, ReceiptImage
from .logging import get_logger
from .models import ComparisonResult, ExtractionResult

log = get_logger(__name__)


class FanOutEngine:
    """Runs every backend on one image concurrently and collects settled outcomes.

    Results keep the order of ``backends``; a backend that raises occupies its
    slot with a failed ExtractionResult instead of cancelling the others.
    """

    def __init__(self, backends: Sequence[ExtractionBackend], *, max_workers: int | None = None) -> None:
        if not backends:
            raise ValueError("FanOutEngine needs at least one backend")
        names = [b.name for b in backends]
        if len(set(names)) != len(names):
            raise ValueError(f"Backend names must be unique, got {names}")
        self.backends = list(backends)
        self.max_workers = max_workers or len(self.backends)

    @property
    def names(self) -> list[str]:
        return [b.name for b in self.backends]

    def compare(self, image: ReceiptImage) -> ComparisonResult:
        log.info("comparison.started", key=image.key, backends=self.names)

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="fanout") as pool:
            futures = [pool.submit(_settle, backend, image) for backend in self.backends]
            results = [future.result() for future in futures]

        comparison = ComparisonResult.from_results(
            results, compared_at=datetime.now(timezone.utc).isoformat()
        )
        for failure in comparison.errors:
            log.warning("comparison.backend_failed", backend=failure.backend, reason=failure.error)
        log.info(
            "comparison.completed",
            key=image.key,
            status=comparison.status,
            success_count=comparison.success_count,
            failure_count=comparison.failure_count,
        )
        return comparison


def _settle(backend: ExtractionBackend, image: ReceiptImage) -> ExtractionResult:
    started = time.monotonic()
    try:
        result = backend.extract(image)
    except Exception as exc:  # any backend failure stays in its own slot
        elapsed_ms = int((time.monotonic() - started) * 1000)
        return ExtractionResult.failed(backend.name, str(exc) or type(exc).__name__, elapsed_ms=elapsed_ms)
    if result.backend != backend.name:
        result = result.model_copy(update={"backend": backend.name})
    return result
