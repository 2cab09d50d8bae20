"""Inbound payment processor webhooks.

The handler only authenticates, validates and stores the delivery; the
payment is reconciled in a background task after the 200 is sent, so the
processor never waits on our order pipeline and never sees our failures.
"""

import json

import structlog
from fastapi import APIRouter, BackgroundTasks, HTTPException, Request
from pydantic import BaseModel

from app.core.config import get_settings
from app.core.exceptions import InvalidWebhookPayloadError, WebhookVerificationError
from app.middleware.correlation import get_correlation_id
from app.payments.schemas import parse_notification
from app.payments.verification import REQUEST_ID_HEADER, resolve_client_ip

logger = structlog.get_logger(__name__)

router = APIRouter()

SUPPORTED_PROCESSORS = frozenset({"mercadopago"})


class WebhookAck(BaseModel):
    status: str
    event_id: str


def _client_ip(request: Request) -> str | None:
    peer = request.client.host if request.client else None
    return resolve_client_ip(
        peer,
        request.headers.get("x-forwarded-for"),
        get_settings().webhook_trusted_proxies,
    )


async def _process_in_background(reconciler, event_id) -> None:
    try:
        await reconciler.process_event(event_id)
    except Exception:
        # The scheduler replays the stored event
        logger.exception("webhook_background_processing_failed", event_id=str(event_id))


@router.post("/webhook/{processor}", response_model=WebhookAck)
async def receive_webhook(processor: str, request: Request, background_tasks: BackgroundTasks):
    """Receive one processor notification."""
    client_ip = _client_ip(request)

    decision = await request.app.state.rate_limiter.hit(f"webhook:{client_ip or 'unknown'}")
    if not decision.allowed:
        logger.warning("webhook_rate_limited", client_ip=client_ip, processor=processor)
        raise HTTPException(
            status_code=429,
            detail="Too many requests",
            headers={"Retry-After": str(decision.retry_after)},
        )

    if processor not in SUPPORTED_PROCESSORS:
        raise HTTPException(status_code=404, detail=f"Unknown payment processor '{processor}'")

    settings = get_settings()
    if settings.webhook_signature_validation and not settings.mercadopago_webhook_secret:
        logger.error("mercadopago_webhook_secret_missing")
        raise HTTPException(status_code=503, detail="Webhook endpoint is not configured")

    raw_body = await request.body()

    try:
        body = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        raise HTTPException(status_code=400, detail="Invalid JSON body")

    if settings.webhook_signature_validation:
        try:
            request.app.state.verifier.ensure_valid(raw_body, request.headers, client_ip=client_ip)
        except WebhookVerificationError:
            raise HTTPException(status_code=403, detail="Webhook verification failed")
    else:
        logger.warning("webhook_signature_validation_disabled", client_ip=client_ip)

    try:
        notification = parse_notification(body)
    except InvalidWebhookPayloadError as exc:
        logger.warning("webhook_payload_invalid", client_ip=client_ip, error=str(exc))
        raise HTTPException(status_code=400, detail=str(exc))

    event_id = await request.app.state.webhook_store.append(
        raw_payload=raw_body.decode("utf-8"),
        notification=notification,
        provider=processor,
        request_id=request.headers.get(REQUEST_ID_HEADER) or get_correlation_id(),
    )

    logger.info(
        "webhook_received",
        event_id=str(event_id),
        event_type=notification.type,
        action=notification.action,
        resource_id=notification.resource_id,
    )
    background_tasks.add_task(_process_in_background, request.app.state.reconciler, event_id)
    return WebhookAck(status="received", event_id=str(event_id))
