# bouncer/routes/ingest.py
"""
Event ingestion. Validates the body and enqueues it; all work happens in the
queue workers.
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from bouncer.errors import ValidationError
from bouncer.infrastructure.observability.logging import get_logger
from bouncer.middleware.rate_limit_dependencies import rate_limit_client, rate_limit_webhook
from bouncer.notifications.models import Channel
from bouncer.queues.models import JobOptions, QueueName
from bouncer.queues.orchestrator import QueueOrchestrator
from bouncer.routes.dependencies import get_orchestrator

logger = get_logger(__name__)

router = APIRouter(prefix="/ingest", tags=["ingest"])


class NotifyTarget(BaseModel):
    recipient: str = Field(min_length=1)
    channel: Channel = Channel.EMAIL


class IngestEvent(BaseModel):
    job_type: str
    target_account_id: str = Field(min_length=1)
    owner_id: str | None = None
    event: dict[str, Any]
    notify: NotifyTarget | None = None
    delay_ms: int = Field(default=0, ge=0)


class IngestResponse(BaseModel):
    job_id: str
    queue: str
    job_type: str


async def _enqueue(orchestrator: QueueOrchestrator, queue: QueueName, body: IngestEvent) -> IngestResponse:
    payload = body.model_dump(
        mode="json", include={"target_account_id", "owner_id", "event", "notify"}
    )
    try:
        job_id = await orchestrator.enqueue(
            queue, body.job_type, payload, JobOptions(delay_ms=body.delay_ms)
        )
    except ValidationError as e:
        raise HTTPException(
            status_code=422, detail=e.to_dict()
        ) from e

    return IngestResponse(job_id=job_id, queue=queue.value, job_type=body.job_type)


@router.post("/webhook", status_code=status.HTTP_202_ACCEPTED, response_model=IngestResponse)
async def ingest_webhook(
    body: IngestEvent,
    orchestrator: QueueOrchestrator = Depends(get_orchestrator),
    _rate: None = Depends(rate_limit_webhook),
):
    return await _enqueue(orchestrator, QueueName.WEBHOOK, body)


@router.post("/stream", status_code=status.HTTP_202_ACCEPTED, response_model=IngestResponse)
async def ingest_stream(
    body: IngestEvent,
    orchestrator: QueueOrchestrator = Depends(get_orchestrator),
    _rate: None = Depends(rate_limit_client),
):
    return await _enqueue(orchestrator, QueueName.STREAM, body)
