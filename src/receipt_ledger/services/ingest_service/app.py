from __future__ import annotations

from typing import Any

from fastapi import Depends, FastAPI, Header
from pydantic import BaseModel, Field

from ... import handlers
from ...logging import init_invocation_context
from ...models import BatchOutcome, IngestOutcome
from ...pipelines.batch import BatchPipeline
from ...pipelines.single_image import SingleImagePipeline


class S3Notification(BaseModel):
    Records: list[dict[str, Any]] = Field(default_factory=list)


class ImageUploadedResponse(BaseModel):
    trace_id: str
    outcomes: list[IngestOutcome]


class BatchResultResponse(BaseModel):
    trace_id: str
    outcomes: list[BatchOutcome]


app = FastAPI(title="Receipt Ledger Ingest Service", version="0.1.0")


@app.get("/healthz")
def healthz() -> dict:
    return {"status": "ok"}


@app.post("/events/image-uploaded", response_model=ImageUploadedResponse)
def image_uploaded(
    event: S3Notification,
    pipeline: SingleImagePipeline = Depends(handlers.single_image_pipeline),
    x_trace_id: str | None = Header(None),
) -> ImageUploadedResponse:
    trace_id = init_invocation_context(headers={"x-trace-id": x_trace_id} if x_trace_id else None)
    outcomes = pipeline.handle_event(event.model_dump())
    return ImageUploadedResponse(trace_id=trace_id, outcomes=outcomes)


@app.post("/events/batch-result", response_model=BatchResultResponse)
def batch_result(
    event: S3Notification,
    pipeline: BatchPipeline = Depends(handlers.batch_pipeline),
    x_trace_id: str | None = Header(None),
) -> BatchResultResponse:
    trace_id = init_invocation_context(headers={"x-trace-id": x_trace_id} if x_trace_id else None)
    outcomes = pipeline.handle_event(event.model_dump())
    return BatchResultResponse(trace_id=trace_id, outcomes=outcomes)
