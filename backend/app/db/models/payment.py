"""Payment model — local mirror of the processor-side payment object."""

import uuid
from datetime import UTC, datetime

from sqlalchemy import JSON, Column, DateTime, Float, ForeignKey, Integer, String, Uuid

from app.db.base import Base
from app.payments.schemas import PaymentStatus


class Payment(Base):
    """Written only by the reconciler (webhooks and sweeps).

    An order may accumulate several payments (re-attempts get new processor
    ids); the processor id is unique.
    """

    __tablename__ = "payments"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id = Column(String(64), ForeignKey("orders.id"), nullable=False, index=True)
    processor_payment_id = Column(String(255), nullable=False, unique=True)

    status = Column(String(50), nullable=False, default=PaymentStatus.PENDING.value)  # PaymentStatus values
    status_detail = Column(String(255), nullable=True)

    amount = Column(Float, nullable=True)
    net_received_amount = Column(Float, nullable=True)
    method = Column(String(100), nullable=True)  # pix, visa, master, ...
    payment_type = Column(String(100), nullable=True)  # bank_transfer, credit_card, ...

    # Last fetched processor snapshot
    raw_processor_response = Column(JSON, nullable=True)

    webhook_attempts = Column(Integer, nullable=False, default=0)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    last_webhook_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
