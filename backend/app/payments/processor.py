"""Idempotent payment reconciliation.

A stored webhook event is only a hint that something changed. The payment is
always re-fetched from the processor and the local mirror is moved to the
fetched status, so processing the same event twice, or two events for one
payment in any order, converges on the processor's current state.
"""

import uuid
from datetime import UTC, datetime

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import OrderNotResolvedError, ProcessorAPIError
from app.db.models.payment import Payment
from app.db.models.webhook_event import WebhookEvent
from app.integrations.mercadopago import MercadoPagoClient
from app.payments.finalization import OrderFinalizer
from app.payments.schemas import OrderStatus, PaymentStatus, ProcessingResult, ProcessorPayment
from app.payments.store import ProcessingOutcome, WebhookStore
from app.services.order_service import OrderService

logger = structlog.get_logger(__name__)

PAYMENT_TRANSITIONS: dict[PaymentStatus, set[PaymentStatus]] = {
    PaymentStatus.PENDING: {
        PaymentStatus.APPROVED,
        PaymentStatus.AUTHORIZED,
        PaymentStatus.IN_PROCESS,
        PaymentStatus.IN_MEDIATION,
        PaymentStatus.REJECTED,
        PaymentStatus.CANCELLED,
    },
    PaymentStatus.AUTHORIZED: {PaymentStatus.APPROVED, PaymentStatus.REJECTED, PaymentStatus.CANCELLED},
    PaymentStatus.IN_PROCESS: {
        PaymentStatus.PENDING,
        PaymentStatus.APPROVED,
        PaymentStatus.REJECTED,
        PaymentStatus.CANCELLED,
    },
    PaymentStatus.IN_MEDIATION: {PaymentStatus.APPROVED, PaymentStatus.REFUNDED, PaymentStatus.CHARGED_BACK},
    PaymentStatus.APPROVED: {PaymentStatus.REFUNDED, PaymentStatus.CHARGED_BACK, PaymentStatus.IN_MEDIATION},
    PaymentStatus.REJECTED: set(),
    PaymentStatus.CANCELLED: set(),
    PaymentStatus.REFUNDED: set(),
    PaymentStatus.CHARGED_BACK: set(),
}

# Order status implied by a payment status; statuses absent here are recorded only
ORDER_STATUS_FOR_PAYMENT: dict[PaymentStatus, OrderStatus] = {
    PaymentStatus.APPROVED: OrderStatus.PAID,
    PaymentStatus.REJECTED: OrderStatus.CANCELED,
    PaymentStatus.CANCELLED: OrderStatus.CANCELED,
    PaymentStatus.REFUNDED: OrderStatus.REFUNDED,
    PaymentStatus.CHARGED_BACK: OrderStatus.REFUNDED,
}


def is_valid_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    return target in PAYMENT_TRANSITIONS.get(current, set())


class PaymentReconciler:
    def __init__(
        self,
        store: WebhookStore,
        client: MercadoPagoClient,
        finalizer: OrderFinalizer,
        orders: OrderService,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        self.store = store
        self.client = client
        self.finalizer = finalizer
        self.orders = orders
        self._session_factory = session_factory

    async def process_event(self, event_id: uuid.UUID, force: bool = False) -> ProcessingResult:
        """Process one stored event and record the attempt.

        Already-processed events are skipped unless ``force`` is set; the
        retry ceiling is the scheduler's concern and is not checked here.
        """
        event = await self.store.get(event_id)
        if event is None:
            logger.warning("webhook_event_not_found", event_id=str(event_id))
            return ProcessingResult(applied=False, error="event not found")

        if event.processed and not force:
            logger.debug("webhook_event_already_processed", event_id=str(event_id))
            return ProcessingResult(applied=False)

        result = await self.process(event)
        await self.store.mark_processed(
            event.id,
            ProcessingOutcome(processed=result.succeeded, error=result.error),
        )
        return result

    async def process(self, event: WebhookEvent) -> ProcessingResult:
        """Reconcile the payment an event points at. Never raises."""
        log = logger.bind(event_id=str(event.id), event_type=event.event_type, resource_id=event.resource_id)

        if event.event_type != "payment":
            log.info("webhook_event_ignored")
            return ProcessingResult(applied=False)

        try:
            fetched = await self.client.fetch_payment(event.resource_id)
            return await self._reconcile(fetched)
        except (ProcessorAPIError, OrderNotResolvedError) as exc:
            log.warning("webhook_processing_deferred", error=str(exc), error_type=type(exc).__name__)
            return ProcessingResult(applied=False, error=str(exc), retryable=True)
        except Exception as exc:
            log.exception("webhook_processing_failed")
            return ProcessingResult(
                applied=False,
                error=f"{type(exc).__name__}: {exc}",
                retryable=True,
            )

    async def _resolve_order_id(self, fetched: ProcessorPayment) -> str:
        async with self._session_factory() as session:
            order_id = (
                await session.execute(
                    select(Payment.order_id).where(Payment.processor_payment_id == fetched.id)
                )
            ).scalar_one_or_none()
        if order_id:
            return order_id

        order = await self.orders.get_order_by_payment_metadata(fetched.external_reference, fetched.metadata)
        if order is None:
            raise OrderNotResolvedError(fetched.id)
        return order.id

    async def _reconcile(self, fetched: ProcessorPayment) -> ProcessingResult:
        order_id = await self._resolve_order_id(fetched)
        now = datetime.now(UTC)
        target = fetched.status
        log = logger.bind(order_id=order_id, payment_id=fetched.id)

        snapshot = {
            "status_detail": fetched.status_detail,
            "amount": fetched.transaction_amount,
            "net_received_amount": fetched.net_received_amount,
            "method": fetched.payment_method_id,
            "payment_type": fetched.payment_type_id,
            "raw_processor_response": fetched.raw,
            "last_webhook_at": now,
            "webhook_attempts": Payment.webhook_attempts + 1,
        }

        async with self._session_factory() as session:
            payment = (
                await session.execute(select(Payment).where(Payment.processor_payment_id == fetched.id))
            ).scalar_one_or_none()
            if payment is None:
                payment = Payment(
                    order_id=order_id,
                    processor_payment_id=fetched.id,
                    status=PaymentStatus.PENDING.value,
                )
                session.add(payment)
                await session.flush()
                log.info("payment_record_created")

            previous = PaymentStatus(payment.status)
            applied = False

            if previous == target:
                await session.execute(update(Payment).where(Payment.id == payment.id).values(**snapshot))
            else:
                if not is_valid_transition(previous, target):
                    log.warning(
                        "payment_transition_unexpected",
                        from_status=previous.value,
                        to_status=target.value,
                    )
                values = dict(snapshot, status=target.value)
                if target == PaymentStatus.APPROVED:
                    values["approved_at"] = now
                swapped = await session.execute(
                    update(Payment)
                    .where(Payment.id == payment.id, Payment.status == previous.value)
                    .values(**values)
                )
                applied = swapped.rowcount > 0
                if applied and target in ORDER_STATUS_FOR_PAYMENT:
                    await self.orders.update_order_status(
                        order_id, ORDER_STATUS_FOR_PAYMENT[target], session=session
                    )
            await session.commit()

        if applied:
            log.info("payment_status_changed", from_status=previous.value, to_status=target.value)
        else:
            log.info("payment_status_unchanged", status=target.value)

        await self._apply_side_effects(order_id, target)

        return ProcessingResult(
            applied=applied,
            order_id=order_id,
            previous_status=previous,
            new_status=target,
        )

    async def _apply_side_effects(self, order_id: str, status: PaymentStatus) -> None:
        """Status actions that run after the transition has been committed.

        Finalization is resumed even when nothing changed, so a crash after
        the commit is repaired by the next delivery of any event.
        """
        if status == PaymentStatus.APPROVED:
            try:
                await self.finalizer.finalize(order_id)
            except Exception:
                # Sweep picks the order up again
                logger.exception("order_finalization_error", order_id=order_id)
        elif status in (PaymentStatus.REJECTED, PaymentStatus.CANCELLED):
            await self.orders.release_reserved_stock(order_id)
