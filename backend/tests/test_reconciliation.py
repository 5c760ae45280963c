"""
Reconciliation engine tests.

Covers idempotence, at-most-once under concurrent confirmation, rollback on
provisioning failure, webhook handling and the redirect verifier.
"""
import asyncio
import json

import pytest

from pipeline.errors import MissingPaymentId, OrderNotFound, ProvisioningFailure
from pipeline.notifier import Audience
from pipeline.reconciliation import (
    ReconcileOutcome,
    RedirectState,
    SweepContext,
    WebhookAction,
)
from schemas.orders import OrderStatus, SubjectKind


def _webhook(order_id: str, status: str = "approved", payment_id: str = "P1") -> bytes:
    return json.dumps({
        "type": "payment",
        "status": status,
        "externalReference": order_id,
        "paymentId": payment_id,
    }).encode()


class TestConfirmAndProvision:

    @pytest.mark.asyncio
    async def test_provisions_once_and_is_idempotent(self, engine, make_order, provisioning_client):
        order = await make_order()

        first = await engine.confirm_and_provision(order.id, "P1")
        second = await engine.confirm_and_provision(order.id, "P1")

        assert provisioning_client.provisioning_calls == 1
        assert first.status == OrderStatus.APPROVED
        assert first.provisioning_result is not None
        assert second.provisioning_result == first.provisioning_result

    @pytest.mark.asyncio
    async def test_concurrent_confirmations_provision_once(self, engine, make_order, provisioning_client, store):
        provisioning_client.delay = 0.01
        order = await make_order()

        await asyncio.gather(
            engine.confirm_and_provision(order.id, "P1"),
            engine.confirm_and_provision(order.id, "P1"),
        )

        assert provisioning_client.provisioning_calls == 1
        stored = await store.get_by_id(order.id)
        assert stored.status == OrderStatus.APPROVED
        assert stored.provisioning_result is not None

    @pytest.mark.asyncio
    async def test_failure_reverts_to_pending_then_retry_succeeds(
        self, engine, make_order, provisioning_client, store
    ):
        provisioning_client.failures = 1
        order = await make_order()

        with pytest.raises(ProvisioningFailure):
            await engine.confirm_and_provision(order.id, "P1")

        reverted = await store.get_by_id(order.id)
        assert reverted.status == OrderStatus.PENDING
        assert reverted.provisioning_result is None
        assert reverted.external_payment_id == "P1"

        recovered = await engine.confirm_and_provision(order.id, "P1")
        assert recovered.status == OrderStatus.APPROVED
        assert recovered.provisioning_result is not None
        assert provisioning_client.provisioning_calls == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_is_wrapped(self, engine, make_order, store):
        @engine.provisioner.register(SubjectKind.NEW_PURCHASE)
        async def crash(order):
            raise KeyError("id")

        order = await make_order()
        with pytest.raises(ProvisioningFailure):
            await engine.confirm_and_provision(order.id, "P1")
        assert (await store.get_by_id(order.id)).status == OrderStatus.PENDING

    @pytest.mark.asyncio
    async def test_unknown_order(self, engine):
        with pytest.raises(OrderNotFound):
            await engine.confirm_and_provision("missing", "P1")

    @pytest.mark.asyncio
    async def test_empty_payment_id_never_provisions(self, engine, make_order, provisioning_client):
        order = await make_order()
        with pytest.raises(MissingPaymentId):
            await engine.confirm_and_provision(order.id, "")
        assert provisioning_client.provisioning_calls == 0

    @pytest.mark.asyncio
    async def test_notifies_customer_and_admin(self, engine, make_order, notifier):
        order = await make_order()
        await engine.confirm_and_provision(order.id, "P1")

        audiences = [n.audience for n in notifier.sent]
        assert audiences == [Audience.CUSTOMER, Audience.ADMIN]
        assert notifier.sent[0].password is not None
        assert notifier.sent[1].password is None

    @pytest.mark.asyncio
    async def test_notifier_failure_does_not_affect_order(self, engine, make_order, notifier):
        notifier.fail = True
        order = await make_order()
        result = await engine.confirm_and_provision(order.id, "P1")
        assert result.provisioning_result is not None
        assert result.status == OrderStatus.APPROVED


class TestWebhook:

    @pytest.mark.asyncio
    async def test_approved_webhook_provisions(self, engine, make_order, provisioning_client):
        order = await make_order()
        result = await engine.handle_webhook(_webhook(order.id))

        assert result.action == WebhookAction.PROVISIONED
        assert provisioning_client.provisioning_calls == 1

    @pytest.mark.asyncio
    async def test_duplicate_webhook_is_noop(self, engine, make_order, provisioning_client):
        order = await make_order()
        await engine.handle_webhook(_webhook(order.id))
        result = await engine.handle_webhook(_webhook(order.id))

        assert result.action == WebhookAction.ALREADY_RESOLVED
        assert provisioning_client.provisioning_calls == 1

    @pytest.mark.asyncio
    async def test_approved_without_payment_id_is_dropped(self, engine, make_order, provisioning_client, store):
        order = await make_order()
        result = await engine.handle_webhook(_webhook(order.id, payment_id=""))

        assert result.action == WebhookAction.DROPPED
        assert provisioning_client.provisioning_calls == 0
        assert (await store.get_by_id(order.id)).status == OrderStatus.PENDING

    @pytest.mark.asyncio
    async def test_rejected_marks_pending_order(self, engine, make_order, store):
        order = await make_order()
        result = await engine.handle_webhook(_webhook(order.id, status="rejected"))

        assert result.action == WebhookAction.REJECTED
        assert (await store.get_by_id(order.id)).status == OrderStatus.REJECTED

    @pytest.mark.asyncio
    async def test_rejection_never_touches_provisioned_order(self, engine, make_order, store):
        order = await make_order()
        await engine.confirm_and_provision(order.id, "P1")
        result = await engine.handle_webhook(_webhook(order.id, status="cancelled", payment_id="P2"))

        assert result.action == WebhookAction.ALREADY_RESOLVED
        assert (await store.get_by_id(order.id)).status == OrderStatus.APPROVED

    @pytest.mark.asyncio
    async def test_malformed_and_foreign_payloads(self, engine):
        assert (await engine.handle_webhook(b"{{{")).action == WebhookAction.DROPPED
        assert (await engine.handle_webhook(b'{"type": "plan"}')).action == WebhookAction.IGNORED
        assert (await engine.handle_webhook(_webhook("unknown"))).action == WebhookAction.DROPPED

    @pytest.mark.asyncio
    async def test_native_notification_is_completed_by_lookup(self, engine, make_order, gateway):
        order = await make_order()
        gateway.set_payment(order.id, "555", "approved")

        result = await engine.handle_webhook(b'{"type": "payment", "data": {"id": "555"}}')
        assert result.action == WebhookAction.PROVISIONED
        assert result.order_id == order.id

    @pytest.mark.asyncio
    async def test_lookup_outage_is_deferred(self, engine, gateway, make_order, store):
        order = await make_order()
        gateway.unavailable = True
        result = await engine.handle_webhook(b'{"type": "payment", "data": {"id": "555"}}')

        assert result.action == WebhookAction.DEFERRED
        assert (await store.get_by_id(order.id)).status == OrderStatus.PENDING

    @pytest.mark.asyncio
    async def test_provisioning_failure_is_reported_not_raised(self, engine, make_order, provisioning_client, store):
        provisioning_client.failures = 1
        order = await make_order()
        result = await engine.handle_webhook(_webhook(order.id))

        assert result.action == WebhookAction.PROVISIONING_FAILED
        assert (await store.get_by_id(order.id)).status == OrderStatus.PENDING


class TestScenarios:

    @pytest.mark.asyncio
    async def test_webhook_approves_order(self, engine, make_order, provisioning_client, store):
        o1 = await make_order()
        await engine.handle_webhook(_webhook(o1.id, payment_id="P1"))

        stored = await store.get_by_id(o1.id)
        assert stored.status == OrderStatus.APPROVED
        assert stored.external_payment_id == "P1"
        assert stored.provisioning_result is not None
        assert provisioning_client.provisioning_calls == 1

    @pytest.mark.asyncio
    async def test_redirect_retries_until_gateway_approves(self, engine, make_order, gateway, provisioning_client):
        o2 = await make_order()
        gateway.set_payment(o2.id, "P2", "pending")

        first = await engine.verify_redirect(o2.id, attempt=1)
        assert first.state == RedirectState.RETRY
        assert first.next_attempt == 2

        gateway.set_payment(o2.id, "P2", "approved")
        last = await engine.verify_redirect(o2.id, attempt=3)

        assert last.state == RedirectState.RESOLVED
        assert last.order.provisioning_result is not None
        assert provisioning_client.provisioning_calls == 1
        params = last.result_params()
        assert params["type"] == "new-purchase"
        assert params["days"] == "30"
        assert params["status"] == "approved"


class TestVerifyRedirect:

    @pytest.mark.asyncio
    async def test_force_reprocess_does_not_race_webhook_provisioning(
        self, engine, make_order, gateway, provisioning_client, store
    ):
        provisioning_client.delay = 0.05
        order = await make_order()
        gateway.set_payment(order.id, "P1", "approved")

        webhook = asyncio.create_task(engine.handle_webhook(_webhook(order.id)))
        await asyncio.sleep(0.01)
        outcome = await engine.verify_redirect(order.id, attempt=1, force_reprocess=True)
        await webhook

        assert outcome.state == RedirectState.RETRY
        assert provisioning_client.provisioning_calls == 1
        assert (await store.get_by_id(order.id)).is_provisioned

    @pytest.mark.asyncio
    async def test_force_reprocess_consults_gateway_for_rejected_order(self, engine, make_order, gateway, store):
        order = await make_order()
        await store.transition_status(order.id, OrderStatus.REJECTED)
        gateway.set_payment(order.id, "P2", "approved")

        outcome = await engine.verify_redirect(order.id, force_reprocess=True)
        assert outcome.state == RedirectState.RESOLVED

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, engine, make_order, gateway):
        order = await make_order()
        gateway.set_payment(order.id, "P1", "in_process")
        outcome = await engine.verify_redirect(order.id, attempt=3)
        assert outcome.state == RedirectState.PROCESSING

    @pytest.mark.asyncio
    async def test_gateway_outage_degrades(self, engine, make_order, gateway, store):
        order = await make_order()
        gateway.unavailable = True
        outcome = await engine.verify_redirect(order.id, attempt=1)

        assert outcome.state == RedirectState.RETRY
        assert (await store.get_by_id(order.id)).status == OrderStatus.PENDING

    @pytest.mark.asyncio
    async def test_rejected_payment(self, engine, make_order, gateway):
        order = await make_order()
        gateway.set_payment(order.id, "P1", "rejected")
        outcome = await engine.verify_redirect(order.id)
        assert outcome.state == RedirectState.REJECTED

    @pytest.mark.asyncio
    async def test_already_provisioned_resolves_without_gateway(self, engine, make_order, gateway):
        order = await make_order()
        await engine.confirm_and_provision(order.id, "P1")
        outcome = await engine.verify_redirect(order.id)

        assert outcome.state == RedirectState.RESOLVED
        assert gateway.reference_lookups == 0

    @pytest.mark.asyncio
    async def test_unknown_order(self, engine):
        with pytest.raises(OrderNotFound):
            await engine.verify_redirect("missing")


class TestAdminAndStatus:

    @pytest.mark.asyncio
    async def test_force_provision_reuses_payment_id(self, engine, make_order, provisioning_client, store):
        provisioning_client.failures = 1
        order = await make_order()
        with pytest.raises(ProvisioningFailure):
            await engine.confirm_and_provision(order.id, "P1")

        forced = await engine.force_provision(order.id)
        assert forced.provisioning_result is not None
        assert forced.external_payment_id == "P1"

    @pytest.mark.asyncio
    async def test_force_provision_leaves_fresh_approval_alone(self, engine, make_order, provisioning_client):
        provisioning_client.delay = 0.05
        order = await make_order()

        confirmation = asyncio.create_task(engine.confirm_and_provision(order.id, "P1"))
        await asyncio.sleep(0.01)
        forced = await engine.force_provision(order.id)
        await confirmation

        assert forced.status == OrderStatus.APPROVED
        assert not forced.is_provisioned
        assert provisioning_client.provisioning_calls == 1

    @pytest.mark.asyncio
    async def test_force_provision_recovers_stale_approval(self, engine, make_order, store, provisioning_client):
        engine.config.provisioning_timeout_seconds = 0
        order = await make_order()
        # approved but never recorded, as after a crash mid-provisioning
        await store.transition_status(order.id, OrderStatus.APPROVED, external_payment_id="P1")

        forced = await engine.force_provision(order.id)

        assert forced.is_provisioned
        assert forced.external_payment_id == "P1"
        assert provisioning_client.provisioning_calls == 1

    @pytest.mark.asyncio
    async def test_force_provision_without_payment_id(self, engine, make_order):
        order = await make_order()
        with pytest.raises(MissingPaymentId):
            await engine.force_provision(order.id)

    @pytest.mark.asyncio
    async def test_force_provision_resets_sweep_counter(self, engine, make_order):
        order = await make_order()
        engine.sweep_context.record_attempt(order.id)
        await engine.force_provision(order.id, "P7")
        assert engine.sweep_context.attempts(order.id) == 0

    @pytest.mark.asyncio
    async def test_status_force_reprocess_reconciles(self, engine, make_order, gateway):
        order = await make_order()
        gateway.set_payment(order.id, "P1", "approved")

        untouched = await engine.get_status(order.id)
        assert untouched.status == OrderStatus.PENDING

        reconciled = await engine.get_status(order.id, force_reprocess=True)
        assert reconciled.is_provisioned

    @pytest.mark.asyncio
    async def test_reconcile_outcomes(self, engine, make_order, gateway, store):
        missing = await make_order()
        assert await engine.reconcile_order(missing.id) == ReconcileOutcome.NOT_FOUND_AT_GATEWAY

        retried = await make_order()
        await store.transition_status(retried.id, OrderStatus.REJECTED)
        gateway.set_payment(retried.id, "P3", "in_process")
        assert await engine.reconcile_order(retried.id) == ReconcileOutcome.PENDING
        assert (await store.get_by_id(retried.id)).status == OrderStatus.PENDING


class TestSweepContext:

    def test_counts_and_exhaustion(self):
        context = SweepContext(max_attempts=2)
        context.record_attempt("O1")
        assert not context.is_exhausted("O1")
        context.record_attempt("O1")
        assert context.is_exhausted("O1")
        context.reset("O1")
        assert context.attempts("O1") == 0
