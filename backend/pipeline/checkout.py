"""
Checkout
========
Creates orders and their payment links.

Flow:
1. Resolve the price (discounts included) for the subject
2. Create the pending order
3. Ask the gateway for a payment link keyed by the order id
4. If the gateway fails, mark the order rejected and re-raise

Renewals resolve the remote account by username before pricing.
"""

from typing import Optional

import structlog
from pydantic import BaseModel

from config import ReconciliationConfig
from database import IOrderStore
from pipeline.errors import AccountNotFound, GatewayUnavailable
from pipeline.gateway_client import PaymentGatewayClient, ReturnUrls
from pipeline.pricing import IPricingResolver, PricingContext
from pipeline.provisioning_client import ProvisioningClient
from schemas.orders import (
    AccountKind,
    Order,
    OrderStatus,
    Payer,
    Renewal,
    ResellerAccountType,
    ResellerRenewal,
    Subject,
    SubjectKind,
)

logger = structlog.get_logger().bind(component="checkout")


class CheckoutResult(BaseModel):
    order: Order
    payment_url: str
    gateway_preference_id: str


def describe(subject: Subject) -> str:
    """Line-item title shown on the gateway's checkout page."""
    kind = SubjectKind(subject.kind)
    if kind == SubjectKind.NEW_PURCHASE:
        return f"{subject.plan_name} - {subject.days} days, {subject.connection_limit} device(s)"
    if kind == SubjectKind.RESELLER_PURCHASE:
        return f"Reseller {subject.plan_name} - {subject.max_users} users"
    if kind == SubjectKind.RENEWAL:
        if subject.is_upgrade:
            return f"Upgrade to {subject.new_connection_limit} devices + {subject.days} days - {subject.username}"
        return f"Renewal {subject.days} days - {subject.username}"
    if subject.mode == ResellerAccountType.VALIDITY:
        return f"Reseller renewal {subject.days} days - {subject.quantity} users - {subject.username}"
    return f"Reseller top-up {subject.quantity} credits - {subject.username}"


class CheckoutService:
    def __init__(
        self,
        store: IOrderStore,
        gateway: PaymentGatewayClient,
        pricing: IPricingResolver,
        provisioning: ProvisioningClient,
        config: Optional[ReconciliationConfig] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.pricing = pricing
        self.provisioning = provisioning
        self.config = config or ReconciliationConfig()

    def _return_urls(self, order_id: str) -> ReturnUrls:
        verify = f"{self.config.public_base_url}/api/payments/return/{order_id}"
        return ReturnUrls(
            success=verify,
            pending=verify,
            failure=f"{self.config.frontend_url}/error?code=PAYMENT_FAILED&order_id={order_id}",
        )

    async def start_checkout(
        self,
        subject: Subject,
        payer: Payer,
        context: Optional[PricingContext] = None,
    ) -> CheckoutResult:
        amount = await self.pricing.resolve(subject, context)
        order = await self.store.create_order(subject, amount, payer)
        log = logger.bind(order_id=order.id, subject_type=order.subject_type.value)

        try:
            link = await self.gateway.create_payment_link(
                order_id=order.id,
                description=describe(subject),
                amount=amount,
                payer_email=payer.email,
                payer_name=payer.name,
                return_urls=self._return_urls(order.id),
                reseller=order.is_reseller,
            )
        except GatewayUnavailable:
            await self.store.transition_status(order.id, OrderStatus.REJECTED)
            log.error("payment_link_failed")
            raise

        log.info("checkout_created", amount=str(amount), preference_id=link.gateway_preference_id)
        return CheckoutResult(
            order=order,
            payment_url=link.payment_url,
            gateway_preference_id=link.gateway_preference_id,
        )

    async def start_renewal(
        self,
        username: str,
        days: int,
        payer: Payer,
        new_connection_limit: Optional[int] = None,
        context: Optional[PricingContext] = None,
    ) -> CheckoutResult:
        account = await self.provisioning.find_account_by_username(username, AccountKind.CLIENT)
        if account is None:
            raise AccountNotFound(username)

        subject = Renewal(
            account_id=account.id,
            username=account.username,
            days=days,
            previous_connection_limit=account.connection_limit or 1,
            new_connection_limit=new_connection_limit,
        )
        return await self.start_checkout(subject, payer, context)

    async def start_reseller_renewal(
        self,
        username: str,
        mode: ResellerAccountType,
        quantity: int,
        payer: Payer,
        days: int = 30,
        context: Optional[PricingContext] = None,
    ) -> CheckoutResult:
        account = await self.provisioning.find_account_by_username(username, AccountKind.RESELLER)
        if account is None:
            raise AccountNotFound(username)

        subject = ResellerRenewal(
            account_id=account.id,
            username=account.username,
            mode=mode,
            quantity=quantity,
            days=days,
        )
        return await self.start_checkout(subject, payer, context)
