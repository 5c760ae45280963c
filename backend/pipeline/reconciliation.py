"""
Reconciliation Engine
=====================
Converges the three payment completion signals on one idempotent operation.

Signals:
- Gateway webhook (asynchronous notification)
- Browser return-redirect (bounded re-verification against the gateway)
- Periodic sweep (tasks/sweep.py)

Guarantees:
- At most one provisioning call per order, enforced by the order store's
  compare-and-swap writes rather than by locks held here
- A confirmed payment whose provisioning fails is reverted to pending so any
  later signal can retry it
- Notification failures never affect the order
"""

import asyncio
from enum import Enum
from typing import Any, Optional, Union

import structlog
from pydantic import BaseModel

from config import ReconciliationConfig, SweepConfig
from database import IOrderStore
from pipeline.errors import (
    GatewayRejected,
    GatewayUnavailable,
    InvalidWebhookPayload,
    MissingPaymentId,
    OrderNotFound,
    ProvisioningFailure,
)
from pipeline.gateway_client import GatewayPaymentStatus, PaymentGatewayClient
from pipeline.notifier import Audience, INotifier, LoggingNotifier, OutcomeNotification
from pipeline.provisioning import SubjectProvisioner
from schemas.orders import Order, OrderStatus, utcnow

logger = structlog.get_logger().bind(component="reconciliation")


# =============================================================================
# OUTCOMES
# =============================================================================

class ReconcileOutcome(str, Enum):
    PROVISIONED = "provisioned"
    ALREADY_RESOLVED = "already_resolved"
    IN_FLIGHT = "in_flight"
    PENDING = "pending"
    REJECTED = "rejected"
    NOT_FOUND_AT_GATEWAY = "not_found_at_gateway"


class WebhookAction(str, Enum):
    IGNORED = "ignored"
    DROPPED = "dropped"
    DEFERRED = "deferred"
    PROVISIONED = "provisioned"
    ALREADY_RESOLVED = "already_resolved"
    IN_FLIGHT = "in_flight"
    PENDING = "pending"
    REJECTED = "rejected"
    PROVISIONING_FAILED = "provisioning_failed"


class WebhookResult(BaseModel):
    action: WebhookAction
    order_id: Optional[str] = None


class RedirectState(str, Enum):
    RESOLVED = "resolved"
    REJECTED = "rejected"
    RETRY = "retry"
    PROCESSING = "processing"


class RedirectOutcome(BaseModel):
    state: RedirectState
    order: Order
    next_attempt: Optional[int] = None

    def result_params(self) -> dict[str, str]:
        """Query parameters for the result page."""
        order = self.order
        result = order.provisioning_result
        params: dict[str, Any] = {
            "order_id": order.id,
            "type": order.subject_type.value,
            "amount": str(order.amount),
            "status": order.status.value,
        }
        if result is not None:
            params.update({
                "username": result.username,
                "days": result.days_added,
                "expiry": result.expires_at,
                "connection_limit": result.connection_limit,
            })
        return {k: str(v) for k, v in params.items() if v is not None}


# =============================================================================
# SWEEP CONTEXT
# =============================================================================

class SweepContext:
    """Per-order count of sweep attempts. Lives as long as its engine."""

    def __init__(self, max_attempts: int):
        self.max_attempts = max_attempts
        self._attempts: dict[str, int] = {}

    def attempts(self, order_id: str) -> int:
        return self._attempts.get(order_id, 0)

    def is_exhausted(self, order_id: str) -> bool:
        return self.attempts(order_id) >= self.max_attempts

    def exhausted_ids(self) -> list[str]:
        return [order_id for order_id in self._attempts if self.is_exhausted(order_id)]

    def record_attempt(self, order_id: str) -> int:
        self._attempts[order_id] = self.attempts(order_id) + 1
        return self._attempts[order_id]

    def reset(self, order_id: str) -> None:
        self._attempts.pop(order_id, None)


# =============================================================================
# ENGINE
# =============================================================================

class ReconciliationEngine:
    """Owns ``confirm_and_provision`` and the entry points that lead to it."""

    def __init__(
        self,
        store: IOrderStore,
        gateway: PaymentGatewayClient,
        provisioner: SubjectProvisioner,
        notifier: Optional[INotifier] = None,
        config: Optional[ReconciliationConfig] = None,
        sweep_config: Optional[SweepConfig] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.provisioner = provisioner
        self.notifier = notifier or LoggingNotifier()
        self.config = config or ReconciliationConfig()
        self.sweep_context = SweepContext(
            max_attempts=(sweep_config or SweepConfig()).max_attempts_per_order
        )

    async def _load(self, order_id: str) -> Order:
        order = await self.store.get_by_id(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    # -------------------------------------------------------------------------
    # Core operation
    # -------------------------------------------------------------------------

    async def confirm_and_provision(self, order_id: str, gateway_payment_id: str) -> Order:
        """
        Approve the order and provision it exactly once.

        Returns the order unchanged if it was already provisioned or if another
        caller won the approval. Raises ProvisioningFailure after reverting
        the order to pending.
        """
        log = logger.bind(order_id=order_id, payment_id=gateway_payment_id)
        order = await self._load(order_id)

        if order.is_provisioned:
            log.info("already_provisioned")
            return order

        if not gateway_payment_id:
            raise MissingPaymentId(order_id)

        won = await self.store.transition_status(
            order_id, OrderStatus.APPROVED, external_payment_id=gateway_payment_id
        )
        if not won:
            log.info("confirmation_lost_race", status=order.status.value)
            return await self._load(order_id)

        order = await self._load(order_id)
        try:
            result = await self.provisioner.provision(order)
        except Exception as e:
            reverted = await self.store.transition_status(
                order_id, OrderStatus.PENDING, admin_override=True
            )
            log.error(
                "paid_not_delivered",
                subject_type=order.subject_type.value,
                email=order.payer.email,
                amount=str(order.amount),
                reverted=reverted,
                error=str(e),
            )
            if isinstance(e, ProvisioningFailure):
                raise
            raise ProvisioningFailure(f"Provisioning crashed: {e}") from e

        if not await self.store.record_provisioning(order_id, result):
            log.warning("provisioning_result_not_recorded")

        order = await self._load(order_id)
        log.info(
            "order_provisioned",
            subject_type=order.subject_type.value,
            account_id=result.account_id,
            username=result.username,
        )
        await self._notify(order)
        return order

    async def _notify(self, order: Order) -> None:
        for audience in (Audience.CUSTOMER, Audience.ADMIN):
            try:
                await self.notifier.notify(OutcomeNotification.for_order(order, audience))
            except Exception:
                logger.exception("notification_failed", order_id=order.id, audience=audience.value)

    async def _apply_gateway_status(
        self,
        order: Order,
        gateway_payment_id: Optional[str],
        status: str,
    ) -> ReconcileOutcome:
        """Act on what the gateway says about ``order``. Raises GatewayRejected."""
        if order.is_provisioned:
            return ReconcileOutcome.ALREADY_RESOLVED

        if status == GatewayPaymentStatus.APPROVED:
            updated = await self.confirm_and_provision(order.id, gateway_payment_id)
            if updated.is_provisioned:
                return ReconcileOutcome.PROVISIONED
            return ReconcileOutcome.IN_FLIGHT

        # Another path is provisioning right now
        if order.status == OrderStatus.APPROVED:
            return ReconcileOutcome.IN_FLIGHT

        if status in GatewayPaymentStatus.FAILED:
            if order.status == OrderStatus.PENDING:
                await self.store.transition_status(order.id, OrderStatus.REJECTED)
            raise GatewayRejected(order.id, status=status, gateway_payment_id=gateway_payment_id)

        if status in GatewayPaymentStatus.IN_FLIGHT and order.status == OrderStatus.REJECTED:
            await self.store.transition_status(order.id, OrderStatus.PENDING)

        return ReconcileOutcome.PENDING

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    async def reconcile_order(self, order_id: str) -> ReconcileOutcome:
        """One gateway lookup by external reference and the transition it implies."""
        order = await self._load(order_id)
        if order.is_provisioned:
            return ReconcileOutcome.ALREADY_RESOLVED

        payment = await self.gateway.fetch_payment_by_external_reference(order_id)
        if payment is None:
            return ReconcileOutcome.NOT_FOUND_AT_GATEWAY

        try:
            return await self._apply_gateway_status(order, payment.id, payment.status)
        except GatewayRejected:
            logger.info("payment_rejected", order_id=order_id, status=payment.status)
            return ReconcileOutcome.REJECTED

    async def handle_webhook(self, raw_body: Union[bytes, str, dict]) -> WebhookResult:
        """Process a gateway notification. Never raises for business outcomes."""
        try:
            note = self.gateway.parse_webhook(raw_body)
        except InvalidWebhookPayload as e:
            logger.warning("webhook_dropped_invalid", error=str(e))
            return WebhookResult(action=WebhookAction.DROPPED)

        if not note.recognized:
            return WebhookResult(action=WebhookAction.IGNORED)

        if note.needs_lookup:
            if not note.gateway_payment_id:
                return WebhookResult(action=WebhookAction.DROPPED)
            try:
                payment = await self.gateway.fetch_payment_by_id(note.gateway_payment_id)
            except GatewayUnavailable as e:
                logger.warning("webhook_lookup_deferred", payment_id=note.gateway_payment_id, error=str(e))
                return WebhookResult(action=WebhookAction.DEFERRED)
            note = note.model_copy(update={
                "order_id": payment.external_reference,
                "gateway_payment_id": payment.id,
                "status": payment.status,
            })

        log = logger.bind(order_id=note.order_id, payment_id=note.gateway_payment_id, status=note.status)

        if not note.order_id:
            log.warning("webhook_without_reference")
            return WebhookResult(action=WebhookAction.DROPPED)

        if note.status == GatewayPaymentStatus.APPROVED and not note.gateway_payment_id:
            log.warning("approved_without_payment_id")
            return WebhookResult(action=WebhookAction.DROPPED, order_id=note.order_id)

        order = await self.store.get_by_id(note.order_id)
        if order is None:
            log.warning("webhook_unknown_order")
            return WebhookResult(action=WebhookAction.DROPPED, order_id=note.order_id)

        try:
            outcome = await self._apply_gateway_status(order, note.gateway_payment_id, note.status)
        except GatewayRejected:
            log.info("payment_rejected")
            return WebhookResult(action=WebhookAction.REJECTED, order_id=order.id)
        except ProvisioningFailure:
            return WebhookResult(action=WebhookAction.PROVISIONING_FAILED, order_id=order.id)

        log.info("webhook_processed", outcome=outcome.value)
        return WebhookResult(action=WebhookAction(outcome.value), order_id=order.id)

    async def verify_redirect(
        self,
        order_id: str,
        attempt: int = 1,
        force_reprocess: bool = False,
    ) -> RedirectOutcome:
        """
        Re-verify an order when the payer comes back from the gateway.

        While the gateway still reports the payment as pending the caller is
        asked to retry (after a fixed delay) up to ``redirect_max_attempts``.
        Gateway and provisioning failures degrade to retry/processing.

        ``force_reprocess`` also consults the gateway for an approved order
        without a result. That path only reaches provisioning through the
        compare-and-swap, so a confirmation already in flight wins.
        """
        log = logger.bind(order_id=order_id, attempt=attempt)
        order = await self._load(order_id)

        if not order.is_provisioned and (force_reprocess or order.status != OrderStatus.APPROVED):
            try:
                payment = await self.gateway.fetch_payment_by_external_reference(order_id)
                if payment is not None:
                    await self._apply_gateway_status(order, payment.id, payment.status)
            except GatewayRejected:
                return RedirectOutcome(state=RedirectState.REJECTED, order=await self._load(order_id))
            except GatewayUnavailable as e:
                log.warning("redirect_gateway_unavailable", error=str(e))
            except ProvisioningFailure as e:
                log.warning("redirect_provisioning_failed", error=str(e))
            order = await self._load(order_id)

        if order.is_provisioned:
            return RedirectOutcome(state=RedirectState.RESOLVED, order=order)

        if order.status == OrderStatus.REJECTED:
            return RedirectOutcome(state=RedirectState.REJECTED, order=order)

        if attempt < self.config.redirect_max_attempts:
            await asyncio.sleep(self.config.redirect_retry_delay_seconds)
            log.info("redirect_retry_scheduled")
            return RedirectOutcome(state=RedirectState.RETRY, order=order, next_attempt=attempt + 1)

        log.info("redirect_still_processing")
        return RedirectOutcome(state=RedirectState.PROCESSING, order=order)

    async def force_provision(self, order_id: str, gateway_payment_id: Optional[str] = None) -> Order:
        """
        Administrative recovery for a paid order that never got provisioned.

        Uses the given payment id or the last one the order saw. An approved
        order without a result is reverted with the admin override only once
        it is older than ``provisioning_timeout``; a younger one is returned
        unchanged because its provisioning may still be running.
        """
        order = await self._load(order_id)
        if order.is_provisioned:
            return order

        payment_id = gateway_payment_id or order.external_payment_id
        if not payment_id:
            raise MissingPaymentId(order_id)

        if order.status == OrderStatus.APPROVED:
            age = utcnow() - order.updated_at
            if age < self.config.provisioning_timeout:
                logger.warning(
                    "admin_force_provision_in_flight",
                    order_id=order_id,
                    age_seconds=age.total_seconds(),
                )
                return order

        logger.warning("admin_force_provision", order_id=order_id, status=order.status.value)
        if order.status == OrderStatus.APPROVED:
            await self.store.transition_status(order_id, OrderStatus.PENDING, admin_override=True)

        self.sweep_context.reset(order_id)
        return await self.confirm_and_provision(order_id, payment_id)

    async def get_status(self, order_id: str, force_reprocess: bool = False) -> Order:
        """Current order. With ``force_reprocess`` the gateway is consulted first."""
        if force_reprocess:
            try:
                await self.reconcile_order(order_id)
            except (GatewayUnavailable, ProvisioningFailure) as e:
                logger.warning("status_reconcile_failed", order_id=order_id, error=str(e))
        return await self._load(order_id)
