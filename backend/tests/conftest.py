"""
Pytest configuration and fixtures.

Engine tests run against the in-memory order store and hand-written fakes
for the gateway and the provisioning API; client tests use httpx.MockTransport.
"""
import asyncio
from decimal import Decimal
from typing import Optional

import pytest

from config import ReconciliationConfig, SweepConfig
from database import InMemoryOrderStore
from pipeline.errors import GatewayUnavailable, ProvisioningFailure
from pipeline.gateway_client import GatewayPayment, PaymentGatewayClient, PaymentLink
from pipeline.notifier import INotifier, OutcomeNotification
from pipeline.provisioning import SubjectProvisioner
from pipeline.provisioning_client import Category, ProvisionedAccount, RemoteAccount
from pipeline.reconciliation import ReconciliationEngine
from schemas.orders import AccountKind, NewPurchase, Payer


# =============================================================================
# FAKES
# =============================================================================

class FakeGateway:
    """In-memory stand-in for PaymentGatewayClient."""

    parse_webhook = staticmethod(PaymentGatewayClient.parse_webhook)

    def __init__(self):
        self.by_reference: dict[str, GatewayPayment] = {}
        self.by_id: dict[str, GatewayPayment] = {}
        self.unavailable = False
        self.fail_links = False
        self.reference_lookups = 0
        self.links_created: list[str] = []

    def set_payment(self, order_id: str, payment_id: str, status: str) -> GatewayPayment:
        payment = GatewayPayment(id=payment_id, status=status, external_reference=order_id)
        self.by_reference[order_id] = payment
        self.by_id[payment_id] = payment
        return payment

    async def fetch_payment_by_external_reference(self, order_id: str) -> Optional[GatewayPayment]:
        self.reference_lookups += 1
        if self.unavailable:
            raise GatewayUnavailable("gateway down")
        return self.by_reference.get(order_id)

    async def fetch_payment_by_id(self, payment_id: str) -> GatewayPayment:
        if self.unavailable or payment_id not in self.by_id:
            raise GatewayUnavailable("gateway down", status_code=404)
        return self.by_id[payment_id]

    async def create_payment_link(self, order_id, description, amount, payer_email, payer_name,
                                  return_urls, reseller=False) -> PaymentLink:
        if self.fail_links:
            raise GatewayUnavailable("gateway down", status_code=503)
        self.links_created.append(order_id)
        return PaymentLink(gateway_preference_id=f"pref-{order_id}", payment_url=f"https://pay.test/{order_id}")

    async def aclose(self) -> None:
        pass


class FakeProvisioningClient:
    """Records every call; ``failures`` makes the next N creations fail."""

    def __init__(self):
        self.failures = 0
        self.delay = 0.0
        self.created: list = []
        self.resellers_created: list = []
        self.renewals: list[tuple] = []
        self.updates: list[tuple] = []
        self.accounts: dict[tuple, RemoteAccount] = {}
        self.next_id = 1000

    @property
    def provisioning_calls(self) -> int:
        return len(self.created) + len(self.resellers_created) + len(self.renewals)

    def add_account(self, kind: AccountKind = AccountKind.CLIENT, **fields) -> RemoteAccount:
        account = RemoteAccount(**fields)
        self.accounts[(kind, account.username)] = account
        return account

    async def _maybe_fail(self) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures > 0:
            self.failures -= 1
            raise ProvisioningFailure("provisioning API returned 500", status_code=500)

    async def list_active_categories(self) -> list[Category]:
        return [Category(id=7, name="VPN Premium")]

    async def create_account(self, spec) -> ProvisionedAccount:
        await self._maybe_fail()
        self.next_id += 1
        self.created.append(spec)
        return ProvisionedAccount(
            account_id=self.next_id,
            username=spec.username,
            password=spec.password,
            expires_at="2026-12-01",
            connection_limit=spec.connection_limit,
        )

    async def create_reseller(self, spec) -> ProvisionedAccount:
        await self._maybe_fail()
        self.next_id += 1
        self.resellers_created.append(spec)
        return ProvisionedAccount(
            account_id=self.next_id,
            username=spec.username,
            password=spec.password,
            expires_at=spec.expiration_date,
            max_users=spec.max_users,
            account_type=spec.account_type,
        )

    async def renew_account(self, account_id, days, kind=AccountKind.CLIENT) -> dict:
        await self._maybe_fail()
        self.renewals.append((account_id, days, kind))
        return {"expiration_date": "2026-12-31"}

    async def update_account(self, account_id, payload, kind=AccountKind.CLIENT) -> dict:
        self.updates.append((account_id, payload, kind))
        return {"success": True}

    async def find_account_by_username(self, username, kind=AccountKind.CLIENT) -> Optional[RemoteAccount]:
        return self.accounts.get((kind, username))

    async def list_accounts(self, limit: int = 50) -> list[RemoteAccount]:
        return [a for (kind, _), a in self.accounts.items() if kind == AccountKind.CLIENT][:limit]


class RecordingNotifier(INotifier):
    def __init__(self, fail: bool = False):
        self.sent: list[OutcomeNotification] = []
        self.fail = fail

    async def notify(self, notification: OutcomeNotification) -> None:
        if self.fail:
            raise RuntimeError("smtp down")
        self.sent.append(notification)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def store() -> InMemoryOrderStore:
    return InMemoryOrderStore()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def provisioning_client() -> FakeProvisioningClient:
    return FakeProvisioningClient()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def sweep_config() -> SweepConfig:
    return SweepConfig(throttle_seconds=0, max_attempts_per_order=3)


@pytest.fixture
def engine(store, gateway, provisioning_client, notifier, sweep_config) -> ReconciliationEngine:
    return ReconciliationEngine(
        store=store,
        gateway=gateway,
        provisioner=SubjectProvisioner(provisioning_client),
        notifier=notifier,
        config=ReconciliationConfig(redirect_retry_delay_seconds=0, frontend_url="https://shop.test"),
        sweep_config=sweep_config,
    )


@pytest.fixture
def payer() -> Payer:
    return Payer(email="ana@example.com", name="Ana Pérez")


@pytest.fixture
def new_purchase() -> NewPurchase:
    return NewPurchase(plan_name="basic-30", days=30, connection_limit=1)


@pytest.fixture
def make_order(store, payer, new_purchase):
    """Factory creating a pending order in the fixture store."""
    async def _make(subject=None, amount: Decimal = Decimal("6000")):
        return await store.create_order(subject or new_purchase, amount, payer)
    return _make
