"""Tests for idempotent payment reconciliation (PaymentReconciler)."""

import asyncio
from unittest.mock import patch

import pytest
from sqlalchemy import select

from app.core.exceptions import ProcessorAPIError, ProcessorTimeoutError
from app.db.models.financial_summary import FinancialSummary
from app.db.models.order import Order, Product
from app.db.models.payment import Payment
from app.db.models.webhook_event import WebhookEvent
from app.payments.schemas import FinalizationState, OrderStatus, PaymentStatus, ProcessorPayment

pytestmark = pytest.mark.integration


async def _payment(session_factory, processor_payment_id: str) -> Payment | None:
    async with session_factory() as session:
        result = await session.execute(select(Payment).where(Payment.processor_payment_id == processor_payment_id))
        return result.scalar_one_or_none()


# ============================================================================
# Approval
# ============================================================================


async def test_approved_payment_marks_order_paid_and_finalizes(
    reconciler, processor_client, notifier, seed, session_factory
):
    product_id = await seed.product(stock=10)
    order_id = await seed.order(items=[(product_id, 2)], grand_total=100.0)
    await seed.payment(order_id, "P1")
    processor_client.set_payment("P1", "approved", order_id, net_received_amount=95.0)
    event_id = await seed.event("P1")

    result = await reconciler.process_event(event_id)

    assert result.applied is True
    assert result.succeeded is True
    assert result.previous_status == PaymentStatus.PENDING
    assert result.new_status == PaymentStatus.APPROVED

    order = await seed.get(Order, order_id)
    assert order.status == OrderStatus.PAID.value
    assert order.finalization_state == FinalizationState.DONE.value
    assert (await seed.get(Product, product_id)).stock_quantity == 8
    assert notifier.sent == [(order_id, "payment_approved")]

    payment = await _payment(session_factory, "P1")
    assert payment.status == PaymentStatus.APPROVED.value
    assert payment.approved_at is not None
    assert payment.net_received_amount == 95.0
    assert payment.raw_processor_response["status"] == "approved"

    event = await seed.get(WebhookEvent, event_id)
    assert event.processed is True
    assert event.attempt_count == 1


async def test_payment_row_created_from_external_reference(reconciler, processor_client, seed, session_factory):
    order_id = await seed.order()
    processor_client.set_payment("P-new", "pending", order_id)

    result = await reconciler.process_event(await seed.event("P-new"))

    assert result.succeeded is True
    assert result.order_id == order_id
    payment = await _payment(session_factory, "P-new")
    assert payment.order_id == order_id
    assert payment.status == PaymentStatus.PENDING.value


async def test_order_resolved_from_metadata_when_reference_is_unknown(reconciler, processor_client, seed):
    order_id = await seed.order()
    processor_client.payments["P-meta"] = ProcessorPayment.from_api(
        {
            "id": "P-meta",
            "status": "pending",
            "external_reference": "legacy-cart-77",
            "metadata": {"order_id": order_id},
        }
    )

    result = await reconciler.process_event(await seed.event("P-meta"))

    assert result.succeeded is True
    assert result.order_id == order_id


async def test_status_from_payload_is_never_trusted(reconciler, processor_client, seed, session_factory):
    """The webhook says nothing about status; the fetched payment decides."""
    order_id = await seed.order()
    await seed.payment(order_id, "P1")
    processor_client.set_payment("P1", "in_process", order_id)

    await reconciler.process_event(await seed.event("P1"))

    assert processor_client.calls == ["P1"]
    assert (await _payment(session_factory, "P1")).status == PaymentStatus.IN_PROCESS.value
    assert (await seed.get(Order, order_id)).status == OrderStatus.PENDING.value


# ============================================================================
# Idempotence and order independence
# ============================================================================


async def test_same_event_processed_twice_has_single_effect(reconciler, processor_client, notifier, seed):
    product_id = await seed.product(stock=5)
    order_id = await seed.order(items=[(product_id, 1)])
    await seed.payment(order_id, "P1")
    processor_client.set_payment("P1", "approved", order_id)
    event_id = await seed.event("P1")

    first = await reconciler.process_event(event_id)
    second = await reconciler.process_event(event_id, force=True)

    assert first.applied is True
    assert second.applied is False
    assert second.succeeded is True
    assert (await seed.get(Product, product_id)).stock_quantity == 4
    assert len(notifier.sent) == 1


async def test_already_processed_event_is_skipped(reconciler, processor_client, seed):
    order_id = await seed.order()
    await seed.payment(order_id, "P1")
    processor_client.set_payment("P1", "approved", order_id)
    event_id = await seed.event("P1")
    await reconciler.process_event(event_id)

    result = await reconciler.process_event(event_id)

    assert result.applied is False
    assert processor_client.calls == ["P1"]
    assert (await seed.get(WebhookEvent, event_id)).attempt_count == 1


async def test_duplicate_deliveries_converge(reconciler, processor_client, notifier, seed):
    product_id = await seed.product(stock=5)
    order_id = await seed.order(items=[(product_id, 1)])
    await seed.payment(order_id, "P1")
    processor_client.set_payment("P1", "approved", order_id)
    first = await seed.event("P1")
    duplicate = await seed.event("P1")

    results = [await reconciler.process_event(first), await reconciler.process_event(duplicate)]

    assert [r.applied for r in results] == [True, False]
    assert (await seed.get(Product, product_id)).stock_quantity == 4
    assert len(notifier.sent) == 1


async def test_late_stale_event_does_not_regress_status(reconciler, processor_client, seed, session_factory):
    """Events for one payment may arrive in any order; the processor's current state wins."""
    order_id = await seed.order()
    await seed.payment(order_id, "P1")
    created = await seed.event("P1")
    refunded = await seed.event("P1")

    processor_client.set_payment("P1", "refunded", order_id)
    await reconciler.process_event(refunded)
    await reconciler.process_event(created)

    assert (await _payment(session_factory, "P1")).status == PaymentStatus.REFUNDED.value
    assert (await seed.get(Order, order_id)).status == OrderStatus.REFUNDED.value


@pytest.mark.parametrize("reverse", [False, True])
async def test_processing_order_does_not_change_final_state(
    reconciler, processor_client, seed, session_factory, reverse
):
    order_id = await seed.order()
    await seed.payment(order_id, "P1")
    events = [await seed.event("P1"), await seed.event("P1"), await seed.event("P1")]
    processor_client.set_payment("P1", "approved", order_id)

    for event_id in reversed(events) if reverse else events:
        await reconciler.process_event(event_id)

    assert (await _payment(session_factory, "P1")).status == PaymentStatus.APPROVED.value
    order = await seed.get(Order, order_id)
    assert order.status == OrderStatus.PAID.value
    assert order.finalization_state == FinalizationState.DONE.value


async def test_concurrent_deliveries_apply_transition_once(reconciler, processor_client, notifier, seed):
    product_id = await seed.product(stock=10)
    order_id = await seed.order(items=[(product_id, 1)])
    await seed.payment(order_id, "P1")
    processor_client.set_payment("P1", "approved", order_id)
    event_ids = [await seed.event("P1") for _ in range(4)]

    results = await asyncio.gather(*(reconciler.process_event(e) for e in event_ids))

    assert all(r.succeeded for r in results)
    assert [r.applied for r in results].count(True) == 1
    assert (await seed.get(Order, order_id)).finalization_state == FinalizationState.DONE.value
    assert (await seed.get(Product, product_id)).stock_quantity == 9
    assert notifier.sent == [(order_id, "payment_approved")]
    for event_id in event_ids:
        assert (await seed.get(WebhookEvent, event_id)).processed is True


# ============================================================================
# Rejection, refunds and unexpected transitions
# ============================================================================


async def test_rejected_payment_cancels_order_and_releases_reservation(reconciler, processor_client, seed):
    product_id = await seed.product(stock=10, reserved=2)
    order_id = await seed.order(items=[(product_id, 2)], stock_reserved=True)
    await seed.payment(order_id, "P1")
    processor_client.set_payment("P1", "rejected", order_id)

    result = await reconciler.process_event(await seed.event("P1"))

    assert result.applied is True
    order = await seed.get(Order, order_id)
    assert order.status == OrderStatus.CANCELED.value
    assert order.stock_reserved is False
    product = await seed.get(Product, product_id)
    assert product.reserved_quantity == 0
    assert product.stock_quantity == 10


async def test_rejected_retry_does_not_cancel_paid_order(reconciler, processor_client, seed):
    order_id = await seed.order()
    await seed.payment(order_id, "P-ok")
    await seed.payment(order_id, "P-bad")
    processor_client.set_payment("P-ok", "approved", order_id)
    processor_client.set_payment("P-bad", "rejected", order_id)

    await reconciler.process_event(await seed.event("P-ok"))
    await reconciler.process_event(await seed.event("P-bad"))

    assert (await seed.get(Order, order_id)).status == OrderStatus.PAID.value


async def test_refund_after_approval_keeps_stock(reconciler, processor_client, seed):
    product_id = await seed.product(stock=10)
    order_id = await seed.order(items=[(product_id, 3)])
    await seed.payment(order_id, "P1")
    processor_client.set_payment("P1", "approved", order_id)
    await reconciler.process_event(await seed.event("P1"))

    processor_client.set_payment("P1", "refunded", order_id)
    result = await reconciler.process_event(await seed.event("P1"))

    assert result.applied is True
    assert result.previous_status == PaymentStatus.APPROVED
    assert (await seed.get(Order, order_id)).status == OrderStatus.REFUNDED.value
    assert (await seed.get(Product, product_id)).stock_quantity == 7


async def test_unexpected_transition_is_applied_and_logged(reconciler, processor_client, seed, session_factory):
    order_id = await seed.order()
    await seed.payment(order_id, "P1", status=PaymentStatus.REJECTED)
    processor_client.set_payment("P1", "approved", order_id)

    with patch("app.payments.processor.logger") as mock_logger:
        mock_logger.bind.return_value = mock_logger
        result = await reconciler.process_event(await seed.event("P1"))

    assert result.applied is True
    assert (await _payment(session_factory, "P1")).status == PaymentStatus.APPROVED.value
    warned = [call.args[0] for call in mock_logger.warning.call_args_list]
    assert "payment_transition_unexpected" in warned


# ============================================================================
# Failures stay retryable
# ============================================================================


async def test_order_not_yet_created_is_retryable(reconciler, processor_client, seed, session_factory):
    processor_client.set_payment("P2", "approved", "O2")
    event_id = await seed.event("P2")

    result = await reconciler.process_event(event_id)

    assert result.applied is False
    assert result.retryable is True
    event = await seed.get(WebhookEvent, event_id)
    assert event.processed is False
    assert event.attempt_count == 1
    assert "P2" in event.processing_error
    assert await _payment(session_factory, "P2") is None

    # Checkout commits the order; the next attempt succeeds
    await seed.order(order_id="O2")
    retried = await reconciler.process_event(event_id)

    assert retried.applied is True
    assert (await seed.get(WebhookEvent, event_id)).processed is True


async def test_processor_timeout_leaves_event_unprocessed(reconciler, processor_client, seed):
    order_id = await seed.order()
    await seed.payment(order_id, "P1")
    processor_client.set_error("P1", ProcessorTimeoutError("Timed out fetching payment P1"))
    event_id = await seed.event("P1")

    result = await reconciler.process_event(event_id)

    assert result.retryable is True
    event = await seed.get(WebhookEvent, event_id)
    assert event.processed is False
    assert event.attempt_count == 1
    assert "Timed out" in event.processing_error
    assert (await seed.get(Order, order_id)).status == OrderStatus.PENDING.value


async def test_unknown_payment_at_processor_is_retryable(reconciler, seed):
    result = await reconciler.process_event(await seed.event("P-missing"))

    assert result.retryable is True
    assert "not found" in result.error


async def test_unexpected_error_is_absorbed(reconciler, processor_client, seed):
    order_id = await seed.order()
    processor_client.set_error("P1", RuntimeError("boom"))

    result = await reconciler.process_event(await seed.event("P1"))

    assert result.retryable is True
    assert result.error == "RuntimeError: boom"
    assert (await seed.get(Order, order_id)).status == OrderStatus.PENDING.value


async def test_api_error_is_retryable(reconciler, processor_client, seed):
    processor_client.set_error("P1", ProcessorAPIError("Mercado Pago returned 503"))
    result = await reconciler.process_event(await seed.event("P1"))
    assert result.retryable is True


async def test_non_payment_event_is_acknowledged_without_fetch(reconciler, processor_client, seed):
    event_id = await seed.event("MO-1", event_type="merchant_order")

    result = await reconciler.process_event(event_id)

    assert result.applied is False
    assert result.succeeded is True
    assert processor_client.calls == []
    assert (await seed.get(WebhookEvent, event_id)).processed is True


# ============================================================================
# Finalization recovery
# ============================================================================


async def test_unchanged_approval_resumes_unfinished_finalization(
    reconciler, processor_client, notifier, seed
):
    """Crash after the status commit: the next delivery completes finalization."""
    order_id = await seed.order()
    await seed.payment(order_id, "P1", status=PaymentStatus.APPROVED)
    processor_client.set_payment("P1", "approved", order_id)

    result = await reconciler.process_event(await seed.event("P1"))

    assert result.applied is False
    assert (await seed.get(Order, order_id)).finalization_state == FinalizationState.DONE.value
    assert notifier.sent == [(order_id, "payment_approved")]


async def test_finalization_failure_does_not_fail_the_event(reconciler, processor_client, notifier, seed):
    order_id = await seed.order()
    await seed.payment(order_id, "P1")
    processor_client.set_payment("P1", "approved", order_id)
    notifier.failures_left = 1
    event_id = await seed.event("P1")

    result = await reconciler.process_event(event_id)

    assert result.applied is True
    assert (await seed.get(WebhookEvent, event_id)).processed is True
    order = await seed.get(Order, order_id)
    assert order.status == OrderStatus.PAID.value
    assert order.finalization_state == FinalizationState.PENDING.value
    assert order.customer_notified_at is None
    assert order.sale_recorded_at is not None


async def test_sale_recorded_in_daily_summary(reconciler, processor_client, seed, session_factory):
    product_id = await seed.product(stock=None)
    order_id = await seed.order(items=[(product_id, 3)], grand_total=150.0)
    await seed.payment(order_id, "P1")
    processor_client.set_payment("P1", "approved", order_id, net_received_amount=140.0)

    await reconciler.process_event(await seed.event("P1"))

    async with session_factory() as session:
        summary = (await session.execute(select(FinancialSummary))).scalar_one()
    assert summary.total_sales == 150.0
    assert summary.total_net_revenue == 140.0
    assert summary.total_fees == 10.0
    assert summary.approved_orders == 1
    assert summary.total_products_sold == 3
    # Not stock-controlled
    assert (await seed.get(Product, product_id)).stock_quantity is None
