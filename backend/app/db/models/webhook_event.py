"""WebhookEvent model — append-only log of every accepted webhook delivery."""

import uuid
from datetime import UTC, datetime

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String, Text, Uuid

from app.db.base import Base


class WebhookEvent(Base):
    """One row per accepted delivery, stored before any business logic runs.

    Rows are never deleted while unprocessed. ``attempt_count`` grows on every
    processing attempt; rows at the retry ceiling stay here for operators.
    """

    __tablename__ = "webhook_events"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    provider = Column(String(50), nullable=False, default="mercadopago")

    event_type = Column(String(100), nullable=False)  # payment, merchant_order, ...
    action = Column(String(100), nullable=True)  # payment.created, payment.updated
    resource_id = Column(String(255), nullable=False, index=True)  # processor payment id
    request_id = Column(String(255), nullable=True)  # x-request-id from the processor

    # Exact body as received
    raw_payload = Column(Text, nullable=False)

    processed = Column(Boolean, nullable=False, default=False)
    processing_error = Column(Text, nullable=True)
    attempt_count = Column(Integer, nullable=False, default=0)

    received_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("ix_webhook_events_processed_attempts", "processed", "attempt_count"),)

    def __init__(self, **kwargs: object) -> None:
        # Column defaults only fire on INSERT; keep in-memory instances consistent
        kwargs.setdefault("provider", "mercadopago")
        kwargs.setdefault("processed", False)
        kwargs.setdefault("attempt_count", 0)
        super().__init__(**kwargs)
