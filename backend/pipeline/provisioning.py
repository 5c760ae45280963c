"""
Subject Provisioning
====================
Turns an approved order into calls against the provisioning API.

One handler per subject kind, registered on a router the same way webhook
event types are routed. Handlers return a ProvisioningResult or raise; they
never record anything themselves.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

import structlog

from config import ProvisioningConfig
from pipeline.errors import ProvisioningFailure
from pipeline.provisioning_client import (
    ClientAccountSpec,
    ProvisioningClient,
    RemoteAccount,
    ResellerAccountSpec,
    generate_client_credentials,
    generate_reseller_credentials,
)
from schemas.orders import (
    AccountKind,
    NewPurchase,
    Order,
    ProvisioningResult,
    Renewal,
    ResellerAccountType,
    ResellerPurchase,
    ResellerRenewal,
    SubjectKind,
)

ProvisioningHandler = Callable[[Order], Awaitable[ProvisioningResult]]


def _parse_expiry(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SubjectProvisioner:
    """Dispatches an order to the handler registered for its subject kind."""

    def __init__(
        self,
        client: ProvisioningClient,
        config: Optional[ProvisioningConfig] = None,
        today: Callable[[], date] = date.today,
    ):
        self.client = client
        self.config = config or ProvisioningConfig()
        self._today = today
        self._handlers: dict[SubjectKind, ProvisioningHandler] = {}
        self._logger = structlog.get_logger().bind(component="subject_provisioner")

        self.register(SubjectKind.NEW_PURCHASE)(self._provision_new_purchase)
        self.register(SubjectKind.RESELLER_PURCHASE)(self._provision_reseller_purchase)
        self.register(SubjectKind.RENEWAL)(self._provision_renewal)
        self.register(SubjectKind.RESELLER_RENEWAL)(self._provision_reseller_renewal)

    def register(self, kind: SubjectKind):
        """Decorator to register (or replace) the handler for a subject kind"""
        def decorator(handler: ProvisioningHandler):
            self._handlers[kind] = handler
            return handler
        return decorator

    @property
    def supported_kinds(self) -> list[SubjectKind]:
        return list(self._handlers.keys())

    async def provision(self, order: Order) -> ProvisioningResult:
        handler = self._handlers.get(order.subject_type)
        if handler is None:
            raise ProvisioningFailure(f"No provisioning handler for {order.subject_type.value}")

        self._logger.info(
            "provisioning_started",
            order_id=order.id,
            subject_type=order.subject_type.value,
        )
        result = await handler(order)
        self._logger.info(
            "provisioning_completed",
            order_id=order.id,
            account_id=result.account_id,
            username=result.username,
        )
        return result

    # =========================================================================
    # HANDLERS
    # =========================================================================

    async def _provision_new_purchase(self, order: Order) -> ProvisioningResult:
        subject: NewPurchase = order.subject
        credentials = generate_client_credentials(order.payer.name)
        categories = await self.client.list_active_categories()
        category = categories[0]

        account = await self.client.create_account(ClientAccountSpec(
            username=credentials.username,
            password=credentials.password,
            category_id=category.id,
            connection_limit=subject.connection_limit,
            duration=subject.days,
            observation=f"{subject.plan_name} | order {order.id} | {order.payer.email}",
        ))
        return ProvisioningResult(
            kind=SubjectKind.NEW_PURCHASE,
            account_id=account.account_id,
            username=account.username,
            password=account.password,
            expires_at=account.expires_at,
            days_added=subject.days,
            connection_limit=account.connection_limit,
            category=category.name,
        )

    async def _provision_reseller_purchase(self, order: Order) -> ProvisioningResult:
        subject: ResellerPurchase = order.subject
        credentials = generate_reseller_credentials(order.payer.name)
        categories = await self.client.list_active_categories()
        days = subject.days or 30
        expiry = (self._today() + timedelta(days=days)).isoformat()

        account = await self.client.create_reseller(ResellerAccountSpec(
            name=f"Revendedor {order.payer.name}",
            username=credentials.username,
            password=credentials.password,
            max_users=subject.max_users,
            account_type=subject.account_type.value,
            category_ids=[c.id for c in categories],
            expiration_date=expiry,
            obs=f"{subject.plan_name} | order {order.id} | {order.payer.email}",
        ))
        return ProvisioningResult(
            kind=SubjectKind.RESELLER_PURCHASE,
            account_id=account.account_id,
            username=account.username,
            password=account.password,
            expires_at=account.expires_at,
            days_added=days,
            max_users=account.max_users,
            account_type=subject.account_type,
        )

    async def _provision_renewal(self, order: Order) -> ProvisioningResult:
        subject: Renewal = order.subject
        connection_limit = subject.previous_connection_limit

        if subject.is_upgrade:
            current = await self._current_account(subject.username, AccountKind.CLIENT)
            await self.client.update_account(subject.account_id, {
                "username": current.username,
                "password": current.password,
                "category_id": current.category_id,
                "connection_limit": subject.new_connection_limit,
                "type": current.type or "user",
                "observation": current.observation or "",
                "v2ray_uuid": current.v2ray_uuid,
            })
            connection_limit = subject.new_connection_limit
            self._logger.info(
                "connection_limit_changed",
                order_id=order.id,
                account_id=subject.account_id,
                previous=subject.previous_connection_limit,
                new=subject.new_connection_limit,
            )

        renewed = await self.client.renew_account(subject.account_id, subject.days)
        return ProvisioningResult(
            kind=SubjectKind.RENEWAL,
            account_id=subject.account_id,
            username=subject.username,
            expires_at=_renewed_expiry(renewed),
            days_added=subject.days,
            connection_limit=connection_limit,
            upgraded=subject.is_upgrade,
        )

    async def _provision_reseller_renewal(self, order: Order) -> ProvisioningResult:
        subject: ResellerRenewal = order.subject
        current = await self._current_account(subject.username, AccountKind.RESELLER)

        if subject.mode == ResellerAccountType.VALIDITY:
            max_users = subject.quantity
            expiry = self._today() + timedelta(days=subject.days)
        else:
            max_users = (current.max_users or 0) + subject.quantity
            base = _parse_expiry(current.expiration_date)
            start = base.date() if base else self._today()
            expiry = start + timedelta(days=subject.days)

        payload = {
            "name": current.name or current.username,
            "username": current.username,
            "password": current.password,
            "max_users": max_users,
            "account_type": subject.mode.value,
            "category_ids": current.category_ids or list(self.config.default_category_ids),
            "expiration_date": expiry.isoformat(),
        }
        if current.observation:
            payload["observation"] = current.observation

        await self.client.update_account(subject.account_id, payload, AccountKind.RESELLER)
        return ProvisioningResult(
            kind=SubjectKind.RESELLER_RENEWAL,
            account_id=subject.account_id,
            username=subject.username,
            expires_at=expiry.isoformat(),
            days_added=subject.days,
            max_users=max_users,
            account_type=subject.mode,
        )

    async def _current_account(self, username: str, kind: AccountKind) -> RemoteAccount:
        current = await self.client.find_account_by_username(username, kind)
        if current is None:
            raise ProvisioningFailure(f"{kind.value} account {username} not found")
        return current


def _renewed_expiry(response: dict) -> Optional[str]:
    for key in ("expiration_date", "new_expiration_date"):
        if response.get(key):
            return str(response[key])
    nested = response.get("client")
    if isinstance(nested, dict) and nested.get("expiration_date"):
        return str(nested["expiration_date"])
    return None
