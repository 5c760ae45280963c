"""
Payment Gateway Client
======================
Thin async client over the MercadoPago REST API.

Features:
- Payment link (checkout preference) creation keyed by order id
- Payment lookup by gateway id and by external reference
- Pure webhook parsing for both the flat and the native notification shape
- Every transport problem surfaces as GatewayUnavailable

pip install httpx pydantic structlog
"""

import json
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, Union

import httpx
import structlog
from pydantic import BaseModel, ValidationError

from config import GatewayConfig
from pipeline.errors import GatewayUnavailable, InvalidWebhookPayload

logger = structlog.get_logger().bind(component="gateway_client")


# =============================================================================
# MODELS
# =============================================================================

class GatewayPaymentStatus:
    PENDING = "pending"
    APPROVED = "approved"
    IN_PROCESS = "in_process"
    REJECTED = "rejected"
    CANCELLED = "cancelled"

    FAILED = frozenset({REJECTED, CANCELLED})
    IN_FLIGHT = frozenset({PENDING, IN_PROCESS})


class ReturnUrls(BaseModel):
    success: str
    failure: str
    pending: str


class PaymentLink(BaseModel):
    gateway_preference_id: str
    payment_url: str


class GatewayPayment(BaseModel):
    id: str
    status: str
    external_reference: Optional[str] = None
    date_created: Optional[datetime] = None

    @property
    def is_approved(self) -> bool:
        return self.status == GatewayPaymentStatus.APPROVED

    @property
    def is_failed(self) -> bool:
        return self.status in GatewayPaymentStatus.FAILED


class WebhookNotification(BaseModel):
    """Result of parsing a webhook body. Fields are None for id-only notifications."""
    recognized: bool
    order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    status: Optional[str] = None

    @property
    def needs_lookup(self) -> bool:
        return self.recognized and (self.order_id is None or self.status is None)


class _FlatNotification(BaseModel):
    type: str
    status: str
    externalReference: str
    paymentId: Optional[Union[str, int]] = None


class _NativeNotificationData(BaseModel):
    id: Union[str, int]


class _NativeNotification(BaseModel):
    type: str
    data: _NativeNotificationData


# =============================================================================
# CLIENT
# =============================================================================

class PaymentGatewayClient:
    """
    Async gateway client. Never changes order state; callers decide.

    Pass ``client`` to inject a preconfigured ``httpx.AsyncClient``
    (tests use ``httpx.MockTransport``).
    """

    def __init__(self, config: GatewayConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._client = client or httpx.AsyncClient(
            base_url=config.base_url,
            timeout=config.timeout_seconds,
            headers={
                "Authorization": f"Bearer {config.access_token}",
                "Content-Type": "application/json",
            },
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning("gateway_timeout", method=method, path=path)
            raise GatewayUnavailable(f"Gateway timeout on {method} {path}") from e
        except httpx.HTTPError as e:
            logger.warning("gateway_transport_error", method=method, path=path, error=str(e))
            raise GatewayUnavailable(f"Gateway unreachable: {e}") from e

        if response.status_code >= 400:
            logger.warning(
                "gateway_error_status",
                method=method,
                path=path,
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise GatewayUnavailable(
                f"Gateway answered {response.status_code} on {method} {path}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise GatewayUnavailable(f"Gateway returned a non-JSON body on {path}") from e

    async def create_payment_link(
        self,
        order_id: str,
        description: str,
        amount: Decimal,
        payer_email: str,
        payer_name: str,
        return_urls: ReturnUrls,
        reseller: bool = False,
    ) -> PaymentLink:
        """Create a checkout preference whose external reference is the order id."""
        preference: dict[str, Any] = {
            "items": [{
                "title": description,
                "unit_price": float(amount),
                "quantity": 1,
                "currency_id": self.config.currency,
            }],
            "payer": {"email": payer_email, "name": payer_name},
            "external_reference": order_id,
            "back_urls": return_urls.model_dump(),
            "auto_return": "approved",
        }
        if self.config.notification_url:
            suffix = "-revendedor" if reseller else ""
            preference["notification_url"] = f"{self.config.notification_url}{suffix}"

        data = await self._request("POST", "/checkout/preferences", json=preference)
        try:
            link = PaymentLink(gateway_preference_id=str(data["id"]), payment_url=data["init_point"])
        except (KeyError, TypeError) as e:
            raise GatewayUnavailable("Gateway preference response is missing id/init_point") from e

        logger.info("payment_link_created", order_id=order_id, preference_id=link.gateway_preference_id)
        return link

    async def fetch_payment_by_id(self, payment_id: str) -> GatewayPayment:
        data = await self._request("GET", f"/v1/payments/{payment_id}")
        return self._to_payment(data)

    async def fetch_payment_by_external_reference(self, order_id: str) -> Optional[GatewayPayment]:
        """Most recent payment for the order, or None if the payer never paid."""
        data = await self._request(
            "GET",
            "/v1/payments/search",
            params={
                "external_reference": order_id,
                "sort": "date_created",
                "criteria": "desc",
            },
        )
        results = data.get("results") if isinstance(data, dict) else None
        payments = [self._to_payment(item) for item in results or []]
        if not payments:
            return None
        dated = [p for p in payments if p.date_created is not None]
        if dated:
            return max(dated, key=lambda p: p.date_created)
        return payments[0]

    @staticmethod
    def _to_payment(data: Any) -> GatewayPayment:
        try:
            reference = data.get("external_reference")
            return GatewayPayment(
                id=str(data["id"]),
                status=data["status"],
                external_reference=str(reference) if reference is not None else None,
                date_created=data.get("date_created"),
            )
        except (AttributeError, KeyError, TypeError, ValidationError) as e:
            raise GatewayUnavailable("Gateway payment payload is malformed") from e

    @staticmethod
    def parse_webhook(raw_body: Union[bytes, str, dict]) -> WebhookNotification:
        """
        Parse a webhook body without any I/O.

        Accepts ``{type, status, externalReference, paymentId}`` and the
        gateway's native ``{type, data: {id}}``. Non-payment types are
        returned unrecognized; malformed payment notifications raise.
        """
        if isinstance(raw_body, dict):
            body = raw_body
        else:
            try:
                body = json.loads(raw_body)
            except (ValueError, TypeError) as e:
                raise InvalidWebhookPayload("Webhook body is not valid JSON") from e

        if not isinstance(body, dict):
            raise InvalidWebhookPayload("Webhook body must be a JSON object")

        if body.get("type") != "payment":
            return WebhookNotification(recognized=False)

        try:
            if "data" in body:
                native = _NativeNotification.model_validate(body)
                return WebhookNotification(
                    recognized=True,
                    gateway_payment_id=str(native.data.id),
                )

            flat = _FlatNotification.model_validate(body)
        except ValidationError as e:
            raise InvalidWebhookPayload(f"Malformed payment notification: {e.error_count()} errors") from e

        payment_id = str(flat.paymentId).strip() if flat.paymentId is not None else ""
        return WebhookNotification(
            recognized=True,
            order_id=flat.externalReference,
            gateway_payment_id=payment_id or None,
            status=flat.status,
        )
