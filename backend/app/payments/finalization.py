"""Post-payment order finalization.

Finalization is a sequence of independent sub-steps, each completed at most
once per order:

    stock         decrement product stock (consuming any reservation)
    sale          add the order to the daily financial summary
    files         move customization artwork to permanent storage
    notification  tell the customer the payment was confirmed

A failed step does not undo the ones that succeeded; the next run (webhook
retry, sweep or admin reprocess) skips completed steps and retries only the
failed ones. ``finalization_state`` turns ``done`` once every marker is set.
"""

from collections.abc import Awaitable, Callable

import structlog

from app.core.exceptions import FinalizationNotAllowedError, OrderNotFoundError
from app.db.models.order import Order
from app.integrations.whatsapp import Notifier
from app.payments.schemas import FinalizationResult, FinalizationState
from app.services.order_service import OrderService
from app.services.storage_service import FileStorage

logger = structlog.get_logger(__name__)

# Step name and the order column that marks it done, in execution order
STEPS = (
    ("stock", "stock_decremented_at"),
    ("sale", "sale_recorded_at"),
    ("files", "files_promoted_at"),
    ("notification", "customer_notified_at"),
)


class OrderFinalizer:
    def __init__(self, orders: OrderService, notifier: Notifier, storage: FileStorage):
        self.orders = orders
        self.notifier = notifier
        self.storage = storage

    async def finalize(self, order_id: str) -> FinalizationResult:
        """Run every outstanding sub-step for an order with an approved payment.

        Safe to call concurrently and repeatedly for the same order.

        Raises:
            OrderNotFoundError: unknown order
            FinalizationNotAllowedError: the order has no approved payment
        """
        order = await self.orders.get_order(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)

        if order.finalization_state == FinalizationState.DONE.value:
            logger.debug("order_already_finalized", order_id=order_id)
            return FinalizationResult(order_id=order_id, already_finalized=True, done=True)

        payment = await self.orders.get_approved_payment(order_id)
        if payment is None:
            raise FinalizationNotAllowedError(order_id)

        result = FinalizationResult(order_id=order_id)

        actions = {
            "stock": lambda: self.orders.decrement_stock(order_id),
            "sale": lambda: self.orders.record_sale(order_id, payment.net_received_amount),
            "files": lambda: self._promote_files(order),
            "notification": lambda: self._notify(order),
        }
        for name, marker in STEPS:
            if getattr(order, marker) is None:
                await self._run_step(result, name, actions[name])

        if not result.failed_steps:
            # Whoever completes the last step closes the order; steps still
            # in flight elsewhere leave it pending for that caller
            marked = await self.orders.mark_finalization_done(order_id)
            result.done = marked or await self.orders.is_finalized(order_id)

        log = logger.bind(
            order_id=order_id,
            completed_steps=result.completed_steps,
            failed_steps=list(result.failed_steps),
        )
        if result.failed_steps:
            log.warning("order_finalization_incomplete")
        elif result.done:
            log.info("order_finalized")
        else:
            log.info("order_finalization_pending")
        return result

    async def _run_step(
        self,
        result: FinalizationResult,
        name: str,
        step: Callable[[], Awaitable[bool]],
    ) -> None:
        try:
            performed = await step()
        except Exception as exc:
            logger.exception("finalization_step_failed", order_id=result.order_id, step=name)
            result.failed_steps[name] = str(exc) or type(exc).__name__
            return
        if performed:
            result.completed_steps.append(name)

    async def _promote_files(self, order: Order) -> bool:
        for order_file in order.files:
            if order_file.promoted_at is not None:
                continue
            destination = await self.storage.promote(order.id, order_file.temp_path)
            await self.orders.mark_file_promoted(order_file.id, destination)
        return await self.orders.mark_files_promoted(order.id)

    async def _notify(self, order: Order) -> bool:
        if not await self.orders.claim_notification(order.id):
            return False
        try:
            await self.notifier.notify_customer(order, "payment_approved")
        except Exception:
            # Delivery failed: free the marker so the next run sends again
            await self.orders.release_notification_claim(order.id)
            raise
        await self.orders.mark_customer_notified(order.id)
        return True
