"""FinancialSummary model — daily sales totals booked at finalization."""

import uuid
from datetime import UTC, datetime

from sqlalchemy import Column, Date, DateTime, Float, Integer, Uuid

from app.db.base import Base


class FinancialSummary(Base):
    __tablename__ = "financial_summaries"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    date = Column(Date, nullable=False, unique=True)

    total_sales = Column(Float, nullable=False, default=0.0)
    total_net_revenue = Column(Float, nullable=False, default=0.0)
    total_fees = Column(Float, nullable=False, default=0.0)
    approved_orders = Column(Integer, nullable=False, default=0)
    total_products_sold = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
