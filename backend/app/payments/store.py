"""Durable webhook log and retry queue.

Every verified delivery is appended before any business logic runs, so a
crash mid-processing loses nothing: the scheduler finds the row again via
``list_unprocessed``. ``mark_processed`` is the only mutation path.
"""

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.models.webhook_event import WebhookEvent
from app.payments.schemas import WebhookNotification

logger = structlog.get_logger(__name__)

# Stored error messages are truncated to keep rows small
_MAX_ERROR_LENGTH = 2000


@dataclass(frozen=True)
class ProcessingOutcome:
    """What one processing attempt concluded, as recorded on the event."""

    processed: bool
    error: str | None = None


class WebhookStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def append(
        self,
        raw_payload: str,
        notification: WebhookNotification,
        provider: str = "mercadopago",
        request_id: str | None = None,
        now: datetime | None = None,
    ) -> uuid.UUID:
        """Persist one delivery and return its id."""
        event = WebhookEvent(
            provider=provider,
            event_type=notification.type,
            action=notification.action,
            resource_id=notification.resource_id,
            request_id=request_id,
            raw_payload=raw_payload,
            received_at=now or datetime.now(UTC),
        )
        async with self._session_factory() as session:
            session.add(event)
            await session.commit()

        logger.info(
            "webhook_event_stored",
            event_id=str(event.id),
            event_type=event.event_type,
            resource_id=event.resource_id,
        )
        return event.id

    async def get(self, event_id: uuid.UUID) -> WebhookEvent | None:
        async with self._session_factory() as session:
            return await session.get(WebhookEvent, event_id)

    async def mark_processed(
        self,
        event_id: uuid.UUID,
        outcome: ProcessingOutcome,
        now: datetime | None = None,
    ) -> None:
        """Record one processing attempt.

        ``attempt_count`` is incremented atomically on every call. A processed
        event never flips back to unprocessed.
        """
        now = now or datetime.now(UTC)
        values: dict = {
            "attempt_count": WebhookEvent.attempt_count + 1,
            "last_attempt_at": now,
            "processing_error": outcome.error[:_MAX_ERROR_LENGTH] if outcome.error else None,
        }
        if outcome.processed:
            values["processed"] = True
            values["processed_at"] = now

        async with self._session_factory() as session:
            result = await session.execute(
                update(WebhookEvent).where(WebhookEvent.id == event_id).values(**values)
            )
            await session.commit()

        if result.rowcount == 0:
            logger.warning("webhook_event_missing_on_mark", event_id=str(event_id))

    async def list_unprocessed(self, max_attempts: int, limit: int = 100) -> list[WebhookEvent]:
        """Unprocessed events still under the retry ceiling, oldest first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(WebhookEvent)
                .where(
                    WebhookEvent.processed.is_(False),
                    WebhookEvent.attempt_count < max_attempts,
                )
                .order_by(WebhookEvent.received_at)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def list_exhausted(self, max_attempts: int, limit: int = 100) -> list[WebhookEvent]:
        """Unprocessed events that reached the ceiling (manual inspection)."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(WebhookEvent)
                .where(
                    WebhookEvent.processed.is_(False),
                    WebhookEvent.attempt_count >= max_attempts,
                )
                .order_by(WebhookEvent.received_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def prune_processed(self, older_than: datetime) -> int:
        """Delete processed events received before ``older_than``.

        Unprocessed events are never pruned.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                delete(WebhookEvent).where(
                    WebhookEvent.processed.is_(True),
                    WebhookEvent.received_at < older_than,
                )
            )
            await session.commit()

        pruned = result.rowcount or 0
        if pruned:
            logger.info("webhook_events_pruned", pruned=pruned, older_than=older_than.isoformat())
        return pruned
