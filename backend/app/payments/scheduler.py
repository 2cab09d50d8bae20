"""Reconciliation scheduler: the safety net behind webhook delivery.

Runs as asyncio tasks inside the API process:
  - replay: re-process stored events that never finished (under the ceiling)
  - sweep: finalize orders with an approved payment that never completed
  - prune: delete processed events past the retention window

Every job runs once at startup and then on its own interval. A failure in
one record is logged and skipped; a failure of a whole pass is logged and
the loop keeps going.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from app.core.config import Settings, get_settings
from app.payments.finalization import OrderFinalizer
from app.payments.processor import PaymentReconciler
from app.payments.store import WebhookStore
from app.services.order_service import OrderService

logger = structlog.get_logger(__name__)


class ReconciliationScheduler:
    def __init__(
        self,
        reconciler: PaymentReconciler,
        store: WebhookStore,
        finalizer: OrderFinalizer,
        orders: OrderService,
        settings: Settings | None = None,
    ):
        self.reconciler = reconciler
        self.store = store
        self.finalizer = finalizer
        self.orders = orders
        self.settings = settings or get_settings()

        self._tasks: dict[str, asyncio.Task] = {}
        self._status: dict[str, dict[str, Any]] = {
            name: {"interval_seconds": interval, "last_run_at": None, "last_result": None, "last_error": None}
            for name, interval in self._intervals().items()
        }

    def _intervals(self) -> dict[str, int]:
        s = self.settings
        return {
            "replay": s.webhook_replay_interval_seconds,
            "sweep": s.finalization_sweep_interval_seconds,
            "prune": s.retention_sweep_interval_seconds,
        }

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks.values())

    async def start(self) -> None:
        """Start the three loops. Each runs its first pass immediately."""
        if self.running:
            return

        jobs: dict[str, Callable[[], Awaitable[int]]] = {
            "replay": self.replay_unprocessed,
            "sweep": self.sweep_unfinalized,
            "prune": self.prune,
        }
        for name, interval in self._intervals().items():
            self._tasks[name] = asyncio.create_task(self._loop(name, jobs[name], interval), name=f"reconciliation-{name}")
        logger.info("reconciliation_scheduler_started", intervals=self._intervals())

    async def stop(self) -> None:
        for task in self._tasks.values():
            task.cancel()
        for task in self._tasks.values():
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("reconciliation_scheduler_stopped")

    async def _loop(self, name: str, job: Callable[[], Awaitable[int]], interval: int) -> None:
        while True:
            await self.run_job(name, job)
            await asyncio.sleep(interval)

    async def run_job(self, name: str, job: Callable[[], Awaitable[int]]) -> int | None:
        """Run one pass of a job, recording its outcome. Never raises."""
        entry = self._status[name]
        entry["last_run_at"] = datetime.now(UTC).isoformat()
        try:
            result = await job()
        except Exception as exc:
            logger.exception("reconciliation_job_failed", job=name)
            entry["last_error"] = f"{type(exc).__name__}: {exc}"
            return None
        entry["last_result"] = result
        entry["last_error"] = None
        return result

    async def replay_unprocessed(self) -> int:
        """Re-process unprocessed events below the retry ceiling.

        Returns:
            Number of events that were processed successfully in this pass
        """
        events = await self.store.list_unprocessed(
            max_attempts=self.settings.webhook_max_attempts,
            limit=self.settings.reconciliation_batch_size,
        )
        if not events:
            return 0

        succeeded = 0
        for event in events:
            try:
                result = await self.reconciler.process_event(event.id)
            except Exception:
                logger.exception("webhook_replay_failed", event_id=str(event.id))
                continue
            if result.succeeded:
                succeeded += 1

        logger.info("webhook_replay_completed", candidates=len(events), succeeded=succeeded)
        return succeeded

    async def sweep_unfinalized(self) -> int:
        """Finalize recent orders whose approved payment was never fully acted on.

        Returns:
            Number of orders that reached finalization_state=done in this pass
        """
        since = datetime.now(UTC) - timedelta(hours=self.settings.finalization_lookback_hours)
        order_ids = await self.orders.list_unfinalized_approved(
            since=since,
            limit=self.settings.reconciliation_batch_size,
        )
        if not order_ids:
            return 0

        finalized = 0
        for order_id in order_ids:
            try:
                result = await self.finalizer.finalize(order_id)
            except Exception:
                logger.exception("finalization_sweep_order_failed", order_id=order_id)
                continue
            if result.done:
                finalized += 1

        logger.info("finalization_sweep_completed", candidates=len(order_ids), finalized=finalized)
        return finalized

    async def prune(self) -> int:
        cutoff = datetime.now(UTC) - timedelta(days=self.settings.webhook_retention_days)
        return await self.store.prune_processed(older_than=cutoff)

    def status(self) -> dict[str, Any]:
        jobs = {}
        for name, entry in self._status.items():
            task = self._tasks.get(name)
            jobs[name] = {**entry, "running": task is not None and not task.done()}
        return {
            "enabled": self.settings.scheduler_enabled,
            "running": self.running,
            "max_attempts": self.settings.webhook_max_attempts,
            "jobs": jobs,
        }
