# Reconciliation Pipeline
# =======================
# Gateway and provisioning clients, the reconciliation engine and checkout

from .errors import (
    ReconciliationError,
    GatewayUnavailable,
    GatewayRejected,
    ProvisioningFailure,
    ProvisioningRateLimited,
    OrderNotFound,
    InvalidWebhookPayload,
)
from .gateway_client import PaymentGatewayClient, WebhookNotification
from .provisioning_client import ProvisioningClient
from .provisioning import SubjectProvisioner
from .reconciliation import (
    ReconciliationEngine,
    ReconcileOutcome,
    RedirectOutcome,
    RedirectState,
    SweepContext,
    WebhookAction,
    WebhookResult,
)
from .checkout import CheckoutService

__all__ = [
    # Errors
    "ReconciliationError",
    "GatewayUnavailable",
    "GatewayRejected",
    "ProvisioningFailure",
    "ProvisioningRateLimited",
    "OrderNotFound",
    "InvalidWebhookPayload",
    # Clients
    "PaymentGatewayClient",
    "WebhookNotification",
    "ProvisioningClient",
    "SubjectProvisioner",
    # Engine
    "ReconciliationEngine",
    "ReconcileOutcome",
    "RedirectOutcome",
    "RedirectState",
    "SweepContext",
    "WebhookAction",
    "WebhookResult",
    "CheckoutService",
]
