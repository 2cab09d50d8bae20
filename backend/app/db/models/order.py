"""Order, OrderItem, Product and OrderFile models.

Only the columns the reconciliation pipeline reads or writes live here; the
catalogue and checkout flows own everything else.
"""

import uuid
from datetime import UTC, datetime

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from app.db.base import Base
from app.payments.schemas import FinalizationState, OrderStatus


def _new_id() -> str:
    return str(uuid.uuid4())


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(64), primary_key=True, default=_new_id)
    customer_name = Column(String(255), nullable=True)
    customer_phone = Column(String(50), nullable=True)

    status = Column(String(50), nullable=False, default=OrderStatus.PENDING.value)  # OrderStatus values
    grand_total = Column(Float, nullable=False, default=0.0)

    # Stock was soft-reserved at checkout and must be consumed or released
    stock_reserved = Column(Boolean, nullable=False, default=False)

    # Post-payment finalization: pending | done (set once)
    finalization_state = Column(String(20), nullable=False, default=FinalizationState.PENDING.value, index=True)

    # Sub-step markers, each claimed by a conditional update
    stock_decremented_at = Column(DateTime(timezone=True), nullable=True)
    sale_recorded_at = Column(DateTime(timezone=True), nullable=True)
    files_promoted_at = Column(DateTime(timezone=True), nullable=True)
    customer_notified_at = Column(DateTime(timezone=True), nullable=True)
    # Held while a notification is being sent; stale claims are taken over
    notification_claimed_at = Column(DateTime(timezone=True), nullable=True)
    finalized_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC), index=True)
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    items = relationship("OrderItem", back_populates="order", lazy="selectin")
    files = relationship("OrderFile", back_populates="order", lazy="selectin")


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(64), ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(String(64), ForeignKey("products.id"), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Float, nullable=False, default=0.0)

    order = relationship("Order", back_populates="items")


class Product(Base):
    __tablename__ = "products"

    id = Column(String(64), primary_key=True, default=_new_id)
    name = Column(String(255), nullable=False)
    stock_quantity = Column(Integer, nullable=True)  # NULL = not stock-controlled
    reserved_quantity = Column(Integer, nullable=False, default=0)


class OrderFile(Base):
    """Customization artwork uploaded before payment, promoted after approval."""

    __tablename__ = "order_files"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(64), ForeignKey("orders.id"), nullable=False, index=True)
    temp_path = Column(Text, nullable=False)
    permanent_path = Column(Text, nullable=True)
    promoted_at = Column(DateTime(timezone=True), nullable=True)

    order = relationship("Order", back_populates="files")
