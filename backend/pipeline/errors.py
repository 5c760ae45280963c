"""
Reconciliation errors.

Every failure the engine distinguishes has its own type so each entry point
(webhook, redirect, sweep, admin) can map it to its own response.
"""

from typing import Optional


class ReconciliationError(Exception):
    """Base class for reconciler failures."""


class OrderNotFound(ReconciliationError):
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class MissingPaymentId(ReconciliationError):
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order {order_id} has no known gateway payment id")


class InvalidWebhookPayload(ReconciliationError):
    """Webhook body could not be parsed into a payment notification."""


class GatewayUnavailable(ReconciliationError):
    """Gateway timed out, was unreachable or answered with an error status.

    Transient: callers must not change order status because of it.
    """

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class GatewayRejected(ReconciliationError):
    """Gateway explicitly reported the payment as rejected or cancelled."""

    def __init__(self, order_id: str, *, status: str, gateway_payment_id: Optional[str] = None):
        self.order_id = order_id
        self.status = status
        self.gateway_payment_id = gateway_payment_id
        super().__init__(f"Payment for order {order_id} was {status}")


class ProvisioningFailure(ReconciliationError):
    """Account creation, renewal or update failed on the provisioning API."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        retry_after: Optional[str] = None,
    ):
        self.status_code = status_code
        self.retry_after = retry_after
        super().__init__(message)


class ProvisioningRateLimited(ProvisioningFailure):
    """HTTP 429 from the provisioning API. ``retry_after`` holds the raw header."""


class PricingError(ReconciliationError):
    """The pricing resolver could not price a subject."""


class AccountNotFound(ReconciliationError):
    """No remote account matches the username given for a renewal."""

    def __init__(self, username: str):
        self.username = username
        super().__init__(f"Account not found: {username}")
