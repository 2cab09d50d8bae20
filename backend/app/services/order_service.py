"""Order-side operations used by payment reconciliation.

Every finalization sub-step is guarded by a conditional UPDATE on its own
marker column ("set only if still NULL"). The UPDATE is the first statement
of its transaction and the side effect it guards (stock, sales totals) runs
in that same transaction, so concurrent callers for one order serialize on
the row and exactly one of them wins. No lock is held across network I/O.
"""

from datetime import UTC, date, datetime, timedelta

import structlog
from sqlalchemy import case, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.models.financial_summary import FinancialSummary
from app.db.models.order import Order, OrderFile, OrderItem, Product
from app.db.models.payment import Payment
from app.payments.schemas import FinalizationState, OrderStatus, PaymentStatus

logger = structlog.get_logger(__name__)

# Stock level at or below which a low-stock warning is logged
LOW_STOCK_THRESHOLD = 5

# Notification claims older than this are considered abandoned
NOTIFICATION_CLAIM_TTL = timedelta(minutes=10)


class OrderService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # ── Reads ───────────────────────────────────────────────────────

    async def get_order(self, order_id: str) -> Order | None:
        """Load an order with its items and files."""
        async with self._session_factory() as session:
            return await session.get(Order, order_id)

    async def get_order_by_payment_metadata(
        self,
        external_reference: str | None,
        metadata: dict | None = None,
    ) -> Order | None:
        """Find the order a processor payment was created for.

        Checkout stores the order id both as ``external_reference`` and as
        ``metadata.order_id``; either is enough.
        """
        candidates = [external_reference, (metadata or {}).get("order_id")]
        async with self._session_factory() as session:
            for candidate in candidates:
                if not candidate:
                    continue
                order = await session.get(Order, str(candidate))
                if order is not None:
                    return order
        return None

    async def get_approved_payment(self, order_id: str) -> Payment | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Payment)
                .where(Payment.order_id == order_id, Payment.status == PaymentStatus.APPROVED.value)
                .order_by(Payment.approved_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def is_finalized(self, order_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(select(Order.finalization_state).where(Order.id == order_id))
            return result.scalar_one_or_none() == FinalizationState.DONE.value

    async def list_unfinalized_approved(self, since: datetime, limit: int = 50) -> list[str]:
        """Orders with an approved payment whose finalization never completed."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Order.id)
                .join(Payment, Payment.order_id == Order.id)
                .where(
                    Payment.status == PaymentStatus.APPROVED.value,
                    Order.finalization_state != FinalizationState.DONE.value,
                    Order.created_at >= since,
                )
                .group_by(Order.id, Order.created_at)
                .order_by(Order.created_at)
                .limit(limit)
            )
            return list(result.scalars().all())

    # ── Status ──────────────────────────────────────────────────────

    async def update_order_status(
        self,
        order_id: str,
        status: OrderStatus,
        session: AsyncSession | None = None,
    ) -> bool:
        """Set the order status.

        Cancellation only applies to orders still PENDING: a rejected
        re-attempt must not cancel an order another payment already paid.
        When ``session`` is given the caller owns the transaction.
        """
        stmt = update(Order).where(Order.id == order_id).values(status=status.value)
        if status == OrderStatus.CANCELED:
            stmt = stmt.where(Order.status == OrderStatus.PENDING.value)

        if session is not None:
            result = await session.execute(stmt)
            return result.rowcount > 0

        async with self._session_factory() as own_session:
            result = await own_session.execute(stmt)
            await own_session.commit()
            return result.rowcount > 0

    # ── Finalization sub-steps ──────────────────────────────────────

    async def decrement_stock(self, order_id: str, now: datetime | None = None) -> bool:
        """Claim the stock step and decrement product stock for the order's items.

        Consumes the soft reservation when checkout reserved stock.

        Returns:
            True if this call performed the decrement, False if already done
        """
        now = now or datetime.now(UTC)
        async with self._session_factory() as session:
            claimed = await session.execute(
                update(Order)
                .where(Order.id == order_id, Order.stock_decremented_at.is_(None))
                .values(stock_decremented_at=now)
            )
            if claimed.rowcount == 0:
                await session.rollback()
                return False

            reserved = (
                await session.execute(select(Order.stock_reserved).where(Order.id == order_id))
            ).scalar_one()
            items = (
                await session.execute(select(OrderItem).where(OrderItem.order_id == order_id))
            ).scalars().all()

            for item in items:
                values: dict = {"stock_quantity": Product.stock_quantity - item.quantity}
                if reserved:
                    values["reserved_quantity"] = case(
                        (Product.reserved_quantity >= item.quantity, Product.reserved_quantity - item.quantity),
                        else_=0,
                    )
                await session.execute(
                    update(Product)
                    .where(Product.id == item.product_id, Product.stock_quantity.is_not(None))
                    .values(**values)
                )

            if reserved:
                await session.execute(update(Order).where(Order.id == order_id).values(stock_reserved=False))

            product_ids = [item.product_id for item in items]
            if product_ids:
                levels = await session.execute(
                    select(Product.id, Product.name, Product.stock_quantity).where(Product.id.in_(product_ids))
                )
                for product_id, name, stock in levels.all():
                    if stock is not None and stock <= LOW_STOCK_THRESHOLD:
                        logger.warning("product_low_stock", product_id=product_id, name=name, stock=stock)
            await session.commit()

        logger.info("order_stock_decremented", order_id=order_id, items=len(items))
        return True

    async def release_reserved_stock(self, order_id: str) -> bool:
        """Give back a soft reservation for an order that will not be paid.

        No-op if nothing was reserved or stock was already consumed.
        """
        async with self._session_factory() as session:
            claimed = await session.execute(
                update(Order)
                .where(
                    Order.id == order_id,
                    Order.stock_reserved.is_(True),
                    Order.stock_decremented_at.is_(None),
                )
                .values(stock_reserved=False)
            )
            if claimed.rowcount == 0:
                await session.rollback()
                return False

            items = (
                await session.execute(select(OrderItem).where(OrderItem.order_id == order_id))
            ).scalars().all()
            for item in items:
                await session.execute(
                    update(Product)
                    .where(Product.id == item.product_id)
                    .values(
                        reserved_quantity=case(
                            (Product.reserved_quantity >= item.quantity, Product.reserved_quantity - item.quantity),
                            else_=0,
                        )
                    )
                )
            await session.commit()

        logger.info("order_reservation_released", order_id=order_id)
        return True

    async def record_sale(
        self,
        order_id: str,
        net_received_amount: float | None,
        now: datetime | None = None,
    ) -> bool:
        """Claim the sale step and add the order to today's financial summary."""
        now = now or datetime.now(UTC)
        today: date = now.date()

        async with self._session_factory() as session:
            claimed = await session.execute(
                update(Order)
                .where(Order.id == order_id, Order.sale_recorded_at.is_(None))
                .values(sale_recorded_at=now)
            )
            if claimed.rowcount == 0:
                await session.rollback()
                return False

            grand_total = (
                await session.execute(select(Order.grand_total).where(Order.id == order_id))
            ).scalar_one()
            items = (
                await session.execute(select(OrderItem.quantity).where(OrderItem.order_id == order_id))
            ).scalars().all()

            total = round(grand_total or 0.0, 2)
            net = round(net_received_amount if net_received_amount is not None else total, 2)
            fees = round(total - net, 2)
            products_sold = sum(items)

            updated = await session.execute(
                update(FinancialSummary)
                .where(FinancialSummary.date == today)
                .values(
                    total_sales=FinancialSummary.total_sales + total,
                    total_net_revenue=FinancialSummary.total_net_revenue + net,
                    total_fees=FinancialSummary.total_fees + fees,
                    approved_orders=FinancialSummary.approved_orders + 1,
                    total_products_sold=FinancialSummary.total_products_sold + products_sold,
                )
            )
            if updated.rowcount == 0:
                session.add(
                    FinancialSummary(
                        date=today,
                        total_sales=total,
                        total_net_revenue=net,
                        total_fees=fees,
                        approved_orders=1,
                        total_products_sold=products_sold,
                    )
                )
            await session.commit()

        logger.info("order_sale_recorded", order_id=order_id, total=total, net=net)
        return True

    async def mark_file_promoted(self, file_id: int, permanent_path: str, now: datetime | None = None) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                update(OrderFile)
                .where(OrderFile.id == file_id, OrderFile.promoted_at.is_(None))
                .values(permanent_path=permanent_path, promoted_at=now or datetime.now(UTC))
            )
            await session.commit()
            return result.rowcount > 0

    async def mark_files_promoted(self, order_id: str, now: datetime | None = None) -> bool:
        """Close the files step once no file of the order is left in temp storage."""
        async with self._session_factory() as session:
            pending = (
                await session.execute(
                    select(OrderFile.id).where(OrderFile.order_id == order_id, OrderFile.promoted_at.is_(None))
                )
            ).first()
            if pending is not None:
                await session.rollback()
                return False
            result = await session.execute(
                update(Order)
                .where(Order.id == order_id, Order.files_promoted_at.is_(None))
                .values(files_promoted_at=now or datetime.now(UTC))
            )
            await session.commit()
            return result.rowcount > 0

    async def claim_notification(self, order_id: str, now: datetime | None = None) -> bool:
        """Take the right to notify the customer.

        A claim older than NOTIFICATION_CLAIM_TTL is treated as abandoned by a
        crashed worker and can be taken over.
        """
        now = now or datetime.now(UTC)
        async with self._session_factory() as session:
            result = await session.execute(
                update(Order)
                .where(
                    Order.id == order_id,
                    Order.customer_notified_at.is_(None),
                    or_(
                        Order.notification_claimed_at.is_(None),
                        Order.notification_claimed_at < now - NOTIFICATION_CLAIM_TTL,
                    ),
                )
                .values(notification_claimed_at=now)
            )
            await session.commit()
            return result.rowcount > 0

    async def mark_customer_notified(self, order_id: str, now: datetime | None = None) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(Order).where(Order.id == order_id).values(customer_notified_at=now or datetime.now(UTC))
            )
            await session.commit()

    async def release_notification_claim(self, order_id: str) -> None:
        """Drop a notification claim after a failed send so the next run retries it."""
        async with self._session_factory() as session:
            await session.execute(update(Order).where(Order.id == order_id).values(notification_claimed_at=None))
            await session.commit()

    async def mark_finalization_done(self, order_id: str, now: datetime | None = None) -> bool:
        """Set finalization_state to done once, when every sub-step is complete."""
        async with self._session_factory() as session:
            result = await session.execute(
                update(Order)
                .where(
                    Order.id == order_id,
                    Order.finalization_state != FinalizationState.DONE.value,
                    Order.stock_decremented_at.is_not(None),
                    Order.sale_recorded_at.is_not(None),
                    Order.files_promoted_at.is_not(None),
                    Order.customer_notified_at.is_not(None),
                )
                .values(finalization_state=FinalizationState.DONE.value, finalized_at=now or datetime.now(UTC))
            )
            await session.commit()
            return result.rowcount > 0
