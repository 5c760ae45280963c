"""
Configuration - Environment Settings
=====================================
Runtime configuration for the reconciler, loaded from environment variables.

Each component gets its own dataclass with a ``from_env`` constructor so tests
can build instances directly with explicit values.

Also owns the one-time structlog setup shared by the server and background tasks.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Optional

import structlog


def _env_bool(name: str, default: str = "true") -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_list(name: str, default: str = "") -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


# =============================================================================
# LOGGING
# =============================================================================

def configure_logging(level: str = None) -> None:
    """Configure structlog for JSON output. Safe to call more than once."""
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level_name, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# =============================================================================
# PAYMENT GATEWAY
# =============================================================================

@dataclass
class GatewayConfig:
    """Payment gateway (MercadoPago REST) settings"""
    access_token: str = ""
    base_url: str = "https://api.mercadopago.com"
    timeout_seconds: float = 30.0
    currency: str = "ARS"
    # Reseller orders notify on "<notification_url>-revendedor"
    notification_url: Optional[str] = None

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        return cls(
            access_token=os.getenv("MP_ACCESS_TOKEN", ""),
            base_url=os.getenv("MP_BASE_URL", "https://api.mercadopago.com"),
            timeout_seconds=float(os.getenv("MP_TIMEOUT_SECONDS", "30")),
            currency=os.getenv("MP_CURRENCY", "ARS"),
            notification_url=os.getenv("MP_NOTIFICATION_URL") or None,
        )


# =============================================================================
# PROVISIONING API
# =============================================================================

@dataclass
class ProvisioningConfig:
    """Account-management API (Servex) settings"""
    api_key: str = ""
    base_url: str = "https://servex.ws/api"
    timeout_seconds: float = 30.0
    # Resellers are sometimes not echoed back on create; wait before searching
    reseller_lookup_delay_seconds: float = 1.0
    default_category_ids: list[int] = field(default_factory=lambda: [279])

    @classmethod
    def from_env(cls) -> "ProvisioningConfig":
        categories = [int(c) for c in _env_list("SERVEX_DEFAULT_CATEGORY_IDS", "279")]
        return cls(
            api_key=os.getenv("SERVEX_API_KEY", ""),
            base_url=os.getenv("SERVEX_BASE_URL", "https://servex.ws/api"),
            timeout_seconds=float(os.getenv("SERVEX_TIMEOUT_SECONDS", "30")),
            reseller_lookup_delay_seconds=float(os.getenv("SERVEX_RESELLER_LOOKUP_DELAY", "1")),
            default_category_ids=categories or [279],
        )


# =============================================================================
# RECONCILIATION
# =============================================================================

@dataclass
class ReconciliationConfig:
    """Redirect verifier and checkout URL settings"""
    redirect_max_attempts: int = 3
    redirect_retry_delay_seconds: float = 2.0
    # Approved orders without a result younger than this are still in flight
    provisioning_timeout_seconds: float = 300.0
    frontend_url: str = "http://localhost:3000"
    public_base_url: str = "http://localhost:8000"

    @property
    def provisioning_timeout(self) -> timedelta:
        return timedelta(seconds=self.provisioning_timeout_seconds)

    @classmethod
    def from_env(cls) -> "ReconciliationConfig":
        return cls(
            redirect_max_attempts=int(os.getenv("REDIRECT_MAX_ATTEMPTS", "3")),
            redirect_retry_delay_seconds=float(os.getenv("REDIRECT_RETRY_DELAY", "2")),
            provisioning_timeout_seconds=float(os.getenv("PROVISIONING_TIMEOUT_SECONDS", "300")),
            frontend_url=os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/"),
            public_base_url=os.getenv("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/"),
        )


@dataclass
class SweepConfig:
    """Periodic sweep of unresolved orders"""
    enabled: bool = True
    interval_seconds: float = 120.0
    initial_delay_seconds: float = 60.0
    min_age_seconds: float = 180.0
    max_age_seconds: float = 86400.0
    batch_size: int = 10
    throttle_seconds: float = 0.5
    max_attempts_per_order: int = 20

    @property
    def min_age(self) -> timedelta:
        return timedelta(seconds=self.min_age_seconds)

    @property
    def max_age(self) -> timedelta:
        return timedelta(seconds=self.max_age_seconds)

    @classmethod
    def from_env(cls) -> "SweepConfig":
        return cls(
            enabled=_env_bool("SWEEP_ENABLED"),
            interval_seconds=float(os.getenv("SWEEP_INTERVAL", "120")),
            initial_delay_seconds=float(os.getenv("SWEEP_INITIAL_DELAY", "60")),
            min_age_seconds=float(os.getenv("SWEEP_MIN_AGE", "180")),
            max_age_seconds=float(os.getenv("SWEEP_MAX_AGE", "86400")),
            batch_size=int(os.getenv("SWEEP_BATCH_SIZE", "10")),
            throttle_seconds=float(os.getenv("SWEEP_THROTTLE", "0.5")),
            max_attempts_per_order=int(os.getenv("SWEEP_MAX_ATTEMPTS", "20")),
        )


@dataclass
class PollerConfig:
    """Rate-limited account poller"""
    enabled: bool = False
    interval_seconds: float = 5.0
    max_backoff_seconds: float = 30.0
    jitter_seconds: float = 0.25
    accounts_limit: int = 50

    @classmethod
    def from_env(cls) -> "PollerConfig":
        return cls(
            enabled=_env_bool("POLLER_ENABLED", "false"),
            interval_seconds=float(os.getenv("POLLER_INTERVAL", "5")),
            max_backoff_seconds=float(os.getenv("POLLER_MAX_BACKOFF", "30")),
            jitter_seconds=float(os.getenv("POLLER_JITTER", "0.25")),
            accounts_limit=int(os.getenv("POLLER_ACCOUNTS_LIMIT", "50")),
        )


# =============================================================================
# PRICING
# =============================================================================

@dataclass
class PricingConfig:
    """Coupon codes honoured by the static price table"""
    # CODE -> percent off, from "CODE:10,OTHER:25"
    coupons: dict[str, Decimal] = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> "PricingConfig":
        coupons = {}
        for item in _env_list("PRICING_COUPONS"):
            code, _, percent = item.partition(":")
            coupons[code.strip()] = Decimal(percent.strip())
        return cls(coupons=coupons)


# =============================================================================
# SERVER
# =============================================================================

@dataclass
class ServerConfig:
    """HTTP server settings"""
    host: str = "0.0.0.0"
    port: int = 8000
    env: str = "development"
    cors_origins: list[str] = field(default_factory=lambda: ["*"])
    admin_token: Optional[str] = None
    # In-memory store when unset
    database_url: Optional[str] = None
    db_min_pool_size: int = 2
    db_max_pool_size: int = 10

    @classmethod
    def from_env(cls) -> "ServerConfig":
        return cls(
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "8000")),
            env=os.getenv("ENV", "development"),
            cors_origins=_env_list("CORS_ORIGINS", "*"),
            admin_token=os.getenv("ADMIN_TOKEN") or None,
            database_url=os.getenv("DATABASE_URL") or None,
            db_min_pool_size=int(os.getenv("DB_MIN_POOL_SIZE", "2")),
            db_max_pool_size=int(os.getenv("DB_MAX_POOL_SIZE", "10")),
        )
