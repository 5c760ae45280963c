"""
Order store tests: transition table, CAS semantics and sweep selection.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError

from database import InMemoryOrderStore, is_transition_allowed
from schemas.orders import Order, OrderStatus, ProvisioningResult, SubjectKind


def _result() -> ProvisioningResult:
    return ProvisioningResult(kind=SubjectKind.NEW_PURCHASE, account_id=1, username="anaxyz12")


class TestCreateOrder:

    @pytest.mark.asyncio
    async def test_new_order_is_pending(self, make_order):
        order = await make_order()
        assert order.status == OrderStatus.PENDING
        assert order.external_payment_id is None
        assert order.provisioning_result is None
        assert order.subject_type == SubjectKind.NEW_PURCHASE

    @pytest.mark.asyncio
    async def test_amount_must_be_positive(self, make_order):
        with pytest.raises(ValidationError):
            await make_order(amount=Decimal("0"))

    @pytest.mark.asyncio
    async def test_lookup_by_payment_id(self, store, make_order):
        order = await make_order()
        await store.transition_status(order.id, OrderStatus.APPROVED, external_payment_id="pay-1")
        found = await store.get_by_external_payment_id("pay-1")
        assert found.id == order.id
        assert await store.get_by_external_payment_id("pay-2") is None


class TestTransitions:

    @pytest.mark.asyncio
    async def test_pending_to_approved_requires_payment_id(self, store, make_order):
        order = await make_order()
        assert await store.transition_status(order.id, OrderStatus.APPROVED) is False
        assert await store.transition_status(order.id, OrderStatus.APPROVED, external_payment_id="") is False
        assert await store.transition_status(order.id, OrderStatus.APPROVED, external_payment_id="p1") is True

        order = await store.get_by_id(order.id)
        assert order.status == OrderStatus.APPROVED
        assert order.external_payment_id == "p1"

    @pytest.mark.asyncio
    async def test_approved_to_approved_is_not_applied(self, store, make_order):
        order = await make_order()
        assert await store.transition_status(order.id, OrderStatus.APPROVED, external_payment_id="p1")
        assert await store.transition_status(order.id, OrderStatus.APPROVED, external_payment_id="p2") is False
        assert (await store.get_by_id(order.id)).external_payment_id == "p1"

    @pytest.mark.asyncio
    async def test_rejected_can_be_approved_after_retry(self, store, make_order):
        order = await make_order()
        assert await store.transition_status(order.id, OrderStatus.REJECTED)
        assert await store.transition_status(order.id, OrderStatus.APPROVED, external_payment_id="p9")

    @pytest.mark.asyncio
    async def test_rejected_back_to_pending(self, store, make_order):
        order = await make_order()
        await store.transition_status(order.id, OrderStatus.REJECTED)
        assert await store.transition_status(order.id, OrderStatus.PENDING)

    @pytest.mark.asyncio
    async def test_revert_requires_admin_override_and_keeps_payment_id(self, store, make_order):
        order = await make_order()
        await store.transition_status(order.id, OrderStatus.APPROVED, external_payment_id="p1")

        assert await store.transition_status(order.id, OrderStatus.PENDING) is False
        assert await store.transition_status(order.id, OrderStatus.PENDING, admin_override=True)

        order = await store.get_by_id(order.id)
        assert order.status == OrderStatus.PENDING
        assert order.external_payment_id == "p1"

    @pytest.mark.asyncio
    async def test_no_revert_after_provisioning(self, store, make_order):
        order = await make_order()
        await store.transition_status(order.id, OrderStatus.APPROVED, external_payment_id="p1")
        assert await store.record_provisioning(order.id, _result())
        assert await store.transition_status(order.id, OrderStatus.PENDING, admin_override=True) is False

    @pytest.mark.asyncio
    async def test_approved_cannot_be_rejected(self, store, make_order):
        order = await make_order()
        await store.transition_status(order.id, OrderStatus.APPROVED, external_payment_id="p1")
        assert await store.transition_status(order.id, OrderStatus.REJECTED) is False

    @pytest.mark.asyncio
    async def test_unknown_order(self, store):
        assert await store.transition_status("nope", OrderStatus.REJECTED) is False

    @pytest.mark.asyncio
    async def test_cancelled_is_never_a_target(self, store, make_order):
        order = await make_order()
        assert await store.transition_status(order.id, OrderStatus.CANCELLED) is False

    @pytest.mark.asyncio
    async def test_concurrent_cas_has_single_winner(self, store, make_order):
        order = await make_order()
        results = await asyncio.gather(*[
            store.transition_status(order.id, OrderStatus.APPROVED, external_payment_id=f"p{i}")
            for i in range(10)
        ])
        assert results.count(True) == 1

    def test_transition_table_is_pure(self, payer, new_purchase):
        order = Order(id="o1", subject=new_purchase, amount=Decimal("10"), payer=payer)
        assert is_transition_allowed(order, OrderStatus.APPROVED, "p1")
        assert not is_transition_allowed(order, OrderStatus.PENDING)


class TestRecordProvisioning:

    @pytest.mark.asyncio
    async def test_set_once(self, store, make_order):
        order = await make_order()
        await store.transition_status(order.id, OrderStatus.APPROVED, external_payment_id="p1")
        assert await store.record_provisioning(order.id, _result()) is True
        assert await store.record_provisioning(order.id, _result()) is False

    @pytest.mark.asyncio
    async def test_requires_approved(self, store, make_order):
        order = await make_order()
        assert await store.record_provisioning(order.id, _result()) is False


class TestListUnresolved:

    @pytest.mark.asyncio
    async def test_window_and_status_filter(self, payer, new_purchase):
        now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        clock = {"now": now}
        store = InMemoryOrderStore(clock=lambda: clock["now"])

        ages = {"fresh": 1, "due": 10, "stale": 2000}
        ids = {}
        for name, minutes in ages.items():
            clock["now"] = now - timedelta(minutes=minutes)
            ids[name] = (await store.create_order(new_purchase, Decimal("100"), payer)).id

        clock["now"] = now - timedelta(minutes=20)
        approved = await store.create_order(new_purchase, Decimal("100"), payer)
        await store.transition_status(approved.id, OrderStatus.APPROVED, external_payment_id="p1")

        selected = await store.list_unresolved(
            updated_before=now - timedelta(minutes=3),
            updated_after=now - timedelta(hours=24),
            limit=10,
        )
        assert [o.id for o in selected] == [ids["due"]]

    @pytest.mark.asyncio
    async def test_excluded_ids_do_not_count_against_limit(self, payer, new_purchase):
        now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        clock = {"now": now - timedelta(minutes=30)}
        store = InMemoryOrderStore(clock=lambda: clock["now"])

        ids = []
        for _ in range(3):
            ids.append((await store.create_order(new_purchase, Decimal("100"), payer)).id)
            clock["now"] += timedelta(minutes=1)

        selected = await store.list_unresolved(
            updated_before=now,
            updated_after=now - timedelta(hours=1),
            limit=2,
            exclude_ids=ids[:2],
        )
        assert [o.id for o in selected] == [ids[2]]
