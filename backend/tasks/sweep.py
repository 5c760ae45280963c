"""
Payment Sweep - The Safety Net
==============================
Background task that finds orders whose webhook never arrived (or whose
provisioning failed) and reconciles them against the gateway.

This ensures no paid order is left undelivered because a signal was lost.

Features:
- Runs every 2 minutes (first cycle 1 minute after start)
- Only orders last touched between 3 minutes and 24 hours ago
- Batches of 10, throttled between gateway calls
- Per-order attempt cap before manual intervention is required
- Manual trigger that never overlaps a running cycle
"""

import asyncio
from datetime import datetime
from typing import Optional

import structlog
from pydantic import BaseModel

from config import SweepConfig
from database import IOrderStore
from pipeline.errors import GatewayUnavailable, OrderNotFound, ProvisioningFailure
from pipeline.reconciliation import ReconcileOutcome, ReconciliationEngine
from schemas.orders import utcnow

# Configure logger
logger = structlog.get_logger().bind(component="sweep")


class SweepReport(BaseModel):
    selected: int = 0
    checked: int = 0
    provisioned: int = 0
    rejected: int = 0
    pending: int = 0
    excluded: int = 0
    errors: int = 0

    def record(self, outcome: ReconcileOutcome) -> None:
        if outcome == ReconcileOutcome.PROVISIONED:
            self.provisioned += 1
        elif outcome == ReconcileOutcome.REJECTED:
            self.rejected += 1
        else:
            self.pending += 1


# =============================================================================
# SWEEP LOGIC
# =============================================================================

async def sweep_once(
    engine: ReconciliationEngine,
    store: IOrderStore,
    config: SweepConfig,
    now: Optional[datetime] = None,
) -> SweepReport:
    """
    Reconcile one batch of unresolved orders.

    Attempts are counted on the engine's sweep context; an order that used up
    its attempts is excluded from selection and needs the admin force path.
    """
    now = now or utcnow()
    context = engine.sweep_context
    # Exhausted orders are dropped before the batch limit so they cannot
    # crowd newer orders out of every cycle
    exhausted = context.exhausted_ids()
    orders = await store.list_unresolved(
        updated_before=now - config.min_age,
        updated_after=now - config.max_age,
        limit=config.batch_size,
        exclude_ids=exhausted,
    )
    report = SweepReport(selected=len(orders), excluded=len(exhausted))
    if not orders:
        return report

    logger.info("sweep_cycle_started", selected=len(orders), excluded=len(exhausted))

    for order in orders:
        if report.checked:
            await asyncio.sleep(config.throttle_seconds)

        attempt = context.record_attempt(order.id)
        report.checked += 1
        outcome = None
        try:
            outcome = await engine.reconcile_order(order.id)
        except (GatewayUnavailable, ProvisioningFailure, OrderNotFound) as e:
            report.errors += 1
            logger.warning(
                "sweep_order_failed",
                order_id=order.id,
                attempt=attempt,
                error_type=type(e).__name__,
                error=str(e),
            )
        else:
            report.record(outcome)
            logger.info("sweep_order_checked", order_id=order.id, attempt=attempt, outcome=outcome.value)

        if outcome == ReconcileOutcome.PROVISIONED:
            context.reset(order.id)
        elif context.is_exhausted(order.id):
            logger.error("order_requires_manual_intervention", order_id=order.id, attempts=attempt)

    logger.info("sweep_cycle_complete", **report.model_dump())
    return report


# =============================================================================
# LOOP
# =============================================================================

class PaymentSweep:
    """Fixed-interval loop around ``sweep_once``."""

    def __init__(self, engine: ReconciliationEngine, store: IOrderStore, config: Optional[SweepConfig] = None):
        self.engine = engine
        self.store = store
        self.config = config or SweepConfig()
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._in_flight = False

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def cycle_in_flight(self) -> bool:
        return self._in_flight

    def start(self) -> None:
        if not self.config.enabled:
            logger.info("sweep_disabled")
            return
        if self.is_running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop())
        logger.info(
            "sweep_started",
            interval_seconds=self.config.interval_seconds,
            min_age_seconds=self.config.min_age_seconds,
            max_age_seconds=self.config.max_age_seconds,
        )

    async def stop(self) -> None:
        """Stop scheduling cycles. A cycle already running is allowed to finish."""
        if self._task is None:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        logger.info("sweep_stopped")

    async def run_once(self) -> Optional[SweepReport]:
        """Run one cycle now. Returns None if a cycle is already in flight."""
        if self._in_flight:
            logger.info("sweep_cycle_skipped_in_flight")
            return None
        self._in_flight = True
        try:
            return await sweep_once(self.engine, self.store, self.config)
        finally:
            self._in_flight = False

    async def _wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``. True if stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def _loop(self) -> None:
        if await self._wait(self.config.initial_delay_seconds):
            return
        while True:
            try:
                await self.run_once()
            except Exception as e:
                logger.error("sweep_cycle_error", error=str(e), exc_info=True)
            if await self._wait(self.config.interval_seconds):
                return
