"""Admin API routes — manual finalization, webhook event inspection and replay."""

import uuid
from datetime import datetime

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel

from app.core.auth import require_admin
from app.core.config import get_settings
from app.core.exceptions import FinalizationNotAllowedError, OrderNotFoundError

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


# ---------- Schemas ----------


class ReprocessFinalizationRequest(BaseModel):
    order_id: str


class FinalizationResponse(BaseModel):
    order_id: str
    already_finalized: bool
    completed_steps: list[str]
    failed_steps: dict[str, str]
    done: bool


class WebhookEventSummary(BaseModel):
    id: str
    provider: str
    event_type: str
    action: str | None
    resource_id: str
    processed: bool
    attempt_count: int
    processing_error: str | None
    received_at: datetime
    last_attempt_at: datetime | None


class ReplayResponse(BaseModel):
    event_id: str
    applied: bool
    processed: bool
    error: str | None
    order_id: str | None


# ---------- Finalization ----------


@router.post("/reprocess-finalization", response_model=FinalizationResponse)
async def reprocess_finalization(
    body: ReprocessFinalizationRequest,
    request: Request,
    operator: str = Depends(require_admin),
):
    """Re-run outstanding finalization steps for an order with an approved payment."""
    finalizer = request.app.state.finalizer
    try:
        result = await finalizer.finalize(body.order_id)
    except OrderNotFoundError:
        raise HTTPException(status_code=404, detail="Order not found")
    except FinalizationNotAllowedError:
        raise HTTPException(status_code=409, detail="Order has no approved payment")

    logger.info(
        "admin_finalization_reprocessed",
        operator=operator,
        order_id=body.order_id,
        done=result.done,
        failed_steps=list(result.failed_steps),
    )
    return FinalizationResponse(
        order_id=result.order_id,
        already_finalized=result.already_finalized,
        completed_steps=result.completed_steps,
        failed_steps=result.failed_steps,
        done=result.done,
    )


# ---------- Webhook events ----------


@router.get("/webhook-events/exhausted", response_model=list[WebhookEventSummary])
async def list_exhausted_events(
    request: Request,
    limit: int = Query(100, ge=1, le=500),
    _: str = Depends(require_admin),
):
    """Unprocessed events that reached the retry ceiling."""
    store = request.app.state.webhook_store
    events = await store.list_exhausted(max_attempts=get_settings().webhook_max_attempts, limit=limit)
    return [
        WebhookEventSummary(
            id=str(e.id),
            provider=e.provider,
            event_type=e.event_type,
            action=e.action,
            resource_id=e.resource_id,
            processed=e.processed,
            attempt_count=e.attempt_count,
            processing_error=e.processing_error,
            received_at=e.received_at,
            last_attempt_at=e.last_attempt_at,
        )
        for e in events
    ]


@router.post("/webhook-events/{event_id}/replay", response_model=ReplayResponse)
async def replay_event(
    event_id: uuid.UUID,
    request: Request,
    operator: str = Depends(require_admin),
):
    """Process one stored event now, regardless of its attempt count."""
    store = request.app.state.webhook_store
    if await store.get(event_id) is None:
        raise HTTPException(status_code=404, detail="Webhook event not found")

    result = await request.app.state.reconciler.process_event(event_id, force=True)
    logger.info("admin_webhook_replayed", operator=operator, event_id=str(event_id), error=result.error)
    return ReplayResponse(
        event_id=str(event_id),
        applied=result.applied,
        processed=result.succeeded,
        error=result.error,
        order_id=result.order_id,
    )


# ---------- Scheduler ----------


@router.get("/scheduler/status")
async def scheduler_status(request: Request, _: str = Depends(require_admin)):
    """Per-job status of the reconciliation scheduler."""
    return request.app.state.scheduler.status()
