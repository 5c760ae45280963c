# api/server.py
# ============================================================================
# PROVISIONING RECONCILER - FASTAPI SERVER
# ============================================================================
# Webhook intake, payment return verification, admin recovery and checkout.
# Background sweep and account poller run inside the app lifespan.
# ============================================================================

import hmac
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import structlog
import uvicorn
from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field

from config import (
    GatewayConfig,
    PollerConfig,
    PricingConfig,
    ProvisioningConfig,
    ReconciliationConfig,
    ServerConfig,
    SweepConfig,
    configure_logging,
)
from database import InMemoryOrderStore, IOrderStore, PostgresOrderStore
from pipeline.checkout import CheckoutResult, CheckoutService
from pipeline.errors import (
    AccountNotFound,
    GatewayUnavailable,
    MissingPaymentId,
    OrderNotFound,
    PricingError,
    ProvisioningFailure,
)
from pipeline.gateway_client import PaymentGatewayClient
from pipeline.pricing import PricingContext, StaticPriceTable
from pipeline.provisioning import SubjectProvisioner
from pipeline.provisioning_client import ProvisioningClient
from pipeline.reconciliation import RedirectState, ReconciliationEngine
from schemas.orders import Order, Payer, ResellerAccountType, Subject, utcnow
from tasks.account_poller import AccountSnapshot, RateLimitedPoller
from tasks.sweep import PaymentSweep, SweepReport

logger = structlog.get_logger().bind(component="server")

VERSION = "1.0.0"


# ============================================================================
# SERVICE WIRING
# ============================================================================

@dataclass
class Services:
    """Everything the routes need, built once per app."""
    store: IOrderStore
    engine: ReconciliationEngine
    checkout: CheckoutService
    sweep: Optional[PaymentSweep] = None
    poller: Optional[RateLimitedPoller] = None
    server_config: Optional[ServerConfig] = None
    reconciliation_config: Optional[ReconciliationConfig] = None
    gateway: Optional[PaymentGatewayClient] = None
    provisioning: Optional[ProvisioningClient] = None

    @property
    def frontend_url(self) -> str:
        return (self.reconciliation_config or ReconciliationConfig()).frontend_url

    async def aclose(self) -> None:
        if self.sweep is not None:
            await self.sweep.stop()
        if self.poller is not None:
            self.poller.stop()
            await self.poller.wait_idle()
        if self.gateway is not None:
            await self.gateway.aclose()
        if self.provisioning is not None:
            await self.provisioning.aclose()
        await self.store.close()


async def build_services(server_config: Optional[ServerConfig] = None) -> Services:
    """Wire real clients and stores from environment configuration."""
    server_config = server_config or ServerConfig.from_env()
    reconciliation_config = ReconciliationConfig.from_env()
    sweep_config = SweepConfig.from_env()
    provisioning_config = ProvisioningConfig.from_env()

    if server_config.database_url:
        store = PostgresOrderStore(
            server_config.database_url,
            min_size=server_config.db_min_pool_size,
            max_size=server_config.db_max_pool_size,
        )
        await store.initialize()
    else:
        logger.warning("using_in_memory_order_store")
        store = InMemoryOrderStore()

    gateway = PaymentGatewayClient(GatewayConfig.from_env())
    provisioning = ProvisioningClient(provisioning_config)
    engine = ReconciliationEngine(
        store=store,
        gateway=gateway,
        provisioner=SubjectProvisioner(provisioning, provisioning_config),
        config=reconciliation_config,
        sweep_config=sweep_config,
    )
    poller_config = PollerConfig.from_env()
    prices = StaticPriceTable(coupons=PricingConfig.from_env().coupons)

    return Services(
        store=store,
        engine=engine,
        checkout=CheckoutService(store, gateway, prices, provisioning, reconciliation_config),
        sweep=PaymentSweep(engine, store, sweep_config),
        poller=(
            RateLimitedPoller(lambda: provisioning.list_accounts(poller_config.accounts_limit), poller_config)
            if poller_config.enabled else None
        ),
        server_config=server_config,
        reconciliation_config=reconciliation_config,
        gateway=gateway,
        provisioning=provisioning,
    )


def _services(request: Request) -> Services:
    return request.app.state.services


# ============================================================================
# REQUEST/RESPONSE MODELS
# ============================================================================

class HealthResponse(BaseModel):
    status: str
    version: str
    sweep_running: bool
    poller_running: bool
    timestamp: datetime


class WebhookAck(BaseModel):
    received: bool = True
    action: str


class OrderStatusResponse(BaseModel):
    id: str
    status: str
    subject_type: str
    amount: Decimal
    external_payment_id: Optional[str] = None
    provisioned: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_order(cls, order: Order) -> "OrderStatusResponse":
        return cls(
            id=order.id,
            status=order.status.value,
            subject_type=order.subject_type.value,
            amount=order.amount,
            external_payment_id=order.external_payment_id,
            provisioned=order.is_provisioned,
            created_at=order.created_at,
            updated_at=order.updated_at,
        )


class ForceProvisionRequest(BaseModel):
    gateway_payment_id: Optional[str] = None


class ForceProvisionResponse(BaseModel):
    success: bool
    order: OrderStatusResponse
    error: Optional[str] = None


class CheckoutRequest(BaseModel):
    """Purchase of a plan (new or reseller). Any discount comes from the coupon."""
    subject: Subject
    payer: Payer
    coupon_code: Optional[str] = Field(default=None, max_length=64)


class RenewalCheckoutRequest(BaseModel):
    username: str = Field(..., min_length=1)
    days: int = Field(..., gt=0, le=365)
    payer: Payer
    new_connection_limit: Optional[int] = Field(default=None, ge=1)
    coupon_code: Optional[str] = Field(default=None, max_length=64)


class ResellerRenewalCheckoutRequest(BaseModel):
    username: str = Field(..., min_length=1)
    mode: ResellerAccountType = ResellerAccountType.VALIDITY
    quantity: int = Field(..., gt=0)
    days: int = Field(default=30, gt=0)
    payer: Payer
    coupon_code: Optional[str] = Field(default=None, max_length=64)


class CheckoutResponse(BaseModel):
    order_id: str
    amount: Decimal
    payment_url: str
    gateway_preference_id: str

    @classmethod
    def from_result(cls, result: CheckoutResult) -> "CheckoutResponse":
        return cls(
            order_id=result.order.id,
            amount=result.order.amount,
            payment_url=result.payment_url,
            gateway_preference_id=result.gateway_preference_id,
        )


# ============================================================================
# APP FACTORY
# ============================================================================

def create_app(services: Optional[Services] = None, start_background: bool = True) -> FastAPI:
    """
    Build the FastAPI app.

    ``services`` is built from the environment at startup when omitted;
    tests pass prebuilt ones and usually disable background tasks.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("server_starting", version=VERSION)
        wired = services or await build_services()
        app.state.services = wired

        if start_background:
            if wired.sweep is not None:
                wired.sweep.start()
            if wired.poller is not None:
                wired.poller.start()

        yield

        logger.info("server_stopping")
        await wired.aclose()

    app = FastAPI(
        title="Provisioning Reconciler",
        description="Payment reconciliation and account provisioning",
        version=VERSION,
        lifespan=lifespan,
    )

    cors_origins = ["*"]
    if services is not None and services.server_config is not None:
        cors_origins = services.server_config.cors_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_routes(app)
    return app


def _require_admin(services: Services, token: Optional[str]) -> None:
    expected = services.server_config.admin_token if services.server_config else None
    if expected is None:
        return
    if token is None or not hmac.compare_digest(token, expected):
        raise HTTPException(status_code=401, detail="Invalid admin token")


def _redirect(base: str, path: str, params: Dict[str, Any]) -> RedirectResponse:
    return RedirectResponse(url=f"{base}{path}?{urlencode(params)}", status_code=302)


# ============================================================================
# ROUTES
# ============================================================================

def _register_routes(app: FastAPI) -> None:

    @app.get("/health", response_model=HealthResponse)
    async def health(request: Request):
        services = _services(request)
        return HealthResponse(
            status="healthy",
            version=VERSION,
            sweep_running=bool(services.sweep and services.sweep.is_running),
            poller_running=bool(services.poller and services.poller.is_running),
            timestamp=utcnow(),
        )

    # ------------------------------------------------------------------------
    # Gateway webhook
    # ------------------------------------------------------------------------

    @app.post("/api/webhook", response_model=WebhookAck)
    @app.post("/api/webhook-revendedor", response_model=WebhookAck)
    async def gateway_webhook(request: Request):
        """Always acknowledged so the gateway stops retrying; outcomes are logged."""
        body = await request.body()
        try:
            result = await _services(request).engine.handle_webhook(body)
        except Exception as e:
            logger.error("webhook_crashed", error=str(e), exc_info=True)
            return WebhookAck(action="error")
        return WebhookAck(action=result.action.value)

    # ------------------------------------------------------------------------
    # Payment return (browser redirect)
    # ------------------------------------------------------------------------

    @app.get("/api/payments/return/{order_id}")
    async def payment_return(
        request: Request,
        order_id: str,
        force_reprocess: bool = Query(default=False),
        attempt: int = Query(default=1, ge=1, le=10),
    ):
        services = _services(request)
        frontend = services.frontend_url
        try:
            outcome = await services.engine.verify_redirect(order_id, attempt, force_reprocess)
        except OrderNotFound:
            return _redirect(frontend, "/error", {"code": "ORDER_NOT_FOUND", "order_id": order_id})

        if outcome.state == RedirectState.RETRY:
            url = request.url.include_query_params(attempt=outcome.next_attempt)
            return RedirectResponse(url=str(url), status_code=302)
        if outcome.state == RedirectState.RESOLVED:
            return _redirect(frontend, "/success", outcome.result_params())
        if outcome.state == RedirectState.REJECTED:
            return _redirect(frontend, "/error", {"code": "PAYMENT_REJECTED", "order_id": order_id})
        return _redirect(frontend, "/processing", {"order_id": order_id})

    # ------------------------------------------------------------------------
    # Order status
    # ------------------------------------------------------------------------

    @app.get("/api/orders/{order_id}", response_model=OrderStatusResponse)
    async def order_status(
        request: Request,
        order_id: str,
        force_reprocess: bool = Query(default=False),
    ):
        try:
            order = await _services(request).engine.get_status(order_id, force_reprocess)
        except OrderNotFound:
            raise HTTPException(status_code=404, detail="Order not found")
        return OrderStatusResponse.from_order(order)

    # ------------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------------

    @app.post("/api/admin/orders/{order_id}/force", response_model=ForceProvisionResponse)
    async def admin_force_provision(
        request: Request,
        order_id: str,
        body: Optional[ForceProvisionRequest] = None,
        x_admin_token: Optional[str] = Header(default=None),
    ):
        services = _services(request)
        _require_admin(services, x_admin_token)
        payment_id = body.gateway_payment_id if body else None

        try:
            order = await services.engine.force_provision(order_id, payment_id)
        except OrderNotFound:
            raise HTTPException(status_code=404, detail="Order not found")
        except MissingPaymentId as e:
            raise HTTPException(status_code=409, detail=str(e))
        except ProvisioningFailure as e:
            order = await services.engine.get_status(order_id)
            return ForceProvisionResponse(
                success=False,
                order=OrderStatusResponse.from_order(order),
                error=str(e),
            )

        return ForceProvisionResponse(
            success=order.is_provisioned,
            order=OrderStatusResponse.from_order(order),
            error=None if order.is_provisioned else "Provisioning still in flight",
        )

    @app.post("/api/admin/sweep", response_model=Optional[SweepReport])
    async def admin_run_sweep(request: Request, x_admin_token: Optional[str] = Header(default=None)):
        services = _services(request)
        _require_admin(services, x_admin_token)
        if services.sweep is None:
            raise HTTPException(status_code=503, detail="Sweep not configured")
        return await services.sweep.run_once()

    # ------------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------------

    async def _checkout(coro) -> CheckoutResponse:
        try:
            result = await coro
        except PricingError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except AccountNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        except (GatewayUnavailable, ProvisioningFailure) as e:
            raise HTTPException(status_code=502, detail=str(e))
        return CheckoutResponse.from_result(result)

    @app.post("/api/checkout", response_model=CheckoutResponse)
    async def checkout(request: Request, body: CheckoutRequest):
        service = _services(request).checkout
        context = PricingContext(coupon_code=body.coupon_code)
        return await _checkout(service.start_checkout(body.subject, body.payer, context))

    @app.post("/api/checkout/renewal", response_model=CheckoutResponse)
    async def checkout_renewal(request: Request, body: RenewalCheckoutRequest):
        service = _services(request).checkout
        return await _checkout(service.start_renewal(
            body.username, body.days, body.payer, body.new_connection_limit,
            PricingContext(coupon_code=body.coupon_code),
        ))

    @app.post("/api/checkout/reseller-renewal", response_model=CheckoutResponse)
    async def checkout_reseller_renewal(request: Request, body: ResellerRenewalCheckoutRequest):
        service = _services(request).checkout
        return await _checkout(service.start_reseller_renewal(
            body.username, body.mode, body.quantity, body.payer, body.days,
            PricingContext(coupon_code=body.coupon_code),
        ))

    # ------------------------------------------------------------------------
    # Account snapshot
    # ------------------------------------------------------------------------

    @app.get("/api/accounts/snapshot", response_model=Optional[AccountSnapshot])
    async def account_snapshot(request: Request):
        poller = _services(request).poller
        return poller.snapshot if poller is not None else None


# ============================================================================
# MAIN
# ============================================================================

configure_logging()
app = create_app()


if __name__ == "__main__":
    server_config = ServerConfig.from_env()
    uvicorn.run(
        "api.server:app",
        host=server_config.host,
        port=server_config.port,
        reload=server_config.env == "development",
        log_level="info",
    )
