"""
Provisioning Client
===================
Async client for the account-management API (Servex) that creates and renews
end-user and reseller VPN accounts.

Features:
- Client and reseller creation, renewal and full-payload updates
- Username lookups (exact match) and paged account listing
- Active category discovery
- Credential generation for new accounts

Errors always propagate: HTTP 429 raises ProvisioningRateLimited with the raw
Retry-After header, everything else raises ProvisioningFailure.

pip install httpx pydantic structlog
"""

import asyncio
import secrets
import string
import time
import unicodedata
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from config import ProvisioningConfig
from pipeline.errors import ProvisioningFailure, ProvisioningRateLimited
from schemas.orders import AccountKind

logger = structlog.get_logger().bind(component="provisioning_client")

PASSWORD_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz23456789"
PASSWORD_LENGTH = 12
# The API rejects longer reseller passwords on update
RESELLER_PASSWORD_MAX = 25


# =============================================================================
# MODELS
# =============================================================================

class Credentials(BaseModel):
    username: str
    password: str


class Category(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    name: Optional[str] = None
    valid_until: Optional[datetime] = None

    def is_active(self, now: Optional[datetime] = None) -> bool:
        if self.valid_until is None:
            return True
        now = now or datetime.now(timezone.utc)
        valid_until = self.valid_until
        if valid_until.tzinfo is None:
            valid_until = valid_until.replace(tzinfo=timezone.utc)
        return valid_until > now


class ClientAccountSpec(BaseModel):
    username: str
    password: str
    category_id: int
    connection_limit: int = 1
    duration: int = Field(gt=0, description="Days of validity")
    type: str = "user"
    observation: str = ""


class ResellerAccountSpec(BaseModel):
    name: str
    username: str
    password: str
    max_users: int
    account_type: str
    category_ids: list[int]
    expiration_date: str
    obs: str = ""


class RemoteAccount(BaseModel):
    """An account as the provisioning API reports it (clients and resellers)."""
    model_config = ConfigDict(extra="allow")

    id: int
    username: str
    name: Optional[str] = None
    password: Optional[str] = None
    category_id: Optional[int] = None
    category_ids: Optional[list[int]] = None
    connection_limit: Optional[int] = None
    max_users: Optional[int] = None
    account_type: Optional[str] = None
    type: Optional[str] = None
    expiration_date: Optional[str] = None
    observation: Optional[str] = None
    v2ray_uuid: Optional[str] = None
    status: Optional[str] = None


class ProvisionedAccount(BaseModel):
    account_id: int
    username: str
    password: Optional[str] = None
    expires_at: Optional[str] = None
    connection_limit: Optional[int] = None
    max_users: Optional[int] = None
    account_type: Optional[str] = None


# =============================================================================
# CREDENTIALS
# =============================================================================

def _ascii_letters(name: str) -> str:
    decomposed = unicodedata.normalize("NFD", name or "")
    stripped = "".join(c for c in decomposed if not unicodedata.combining(c))
    return "".join(c for c in stripped.lower() if c in string.ascii_lowercase)


def _base36(number: int) -> str:
    digits = string.digits + string.ascii_lowercase
    out = ""
    while number:
        number, rem = divmod(number, 36)
        out = digits[rem] + out
    return out or "0"


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


def generate_username(name: str, fallback_prefix: str = "vpn") -> str:
    """``<letters of name><3 random letters><2 digits>``, or a time-based handle."""
    base = _ascii_letters(name)
    if not base:
        suffix = "".join(secrets.choice(string.ascii_lowercase + string.digits) for _ in range(5))
        return f"{fallback_prefix}{_base36(int(time.time() * 1000))}{suffix}"

    letters = "".join(secrets.choice(string.ascii_lowercase) for _ in range(3))
    number = 10 + secrets.randbelow(90)
    return f"{base}{letters}{number}"


def generate_client_credentials(name: str) -> Credentials:
    return Credentials(username=generate_username(name), password=generate_password())


def generate_reseller_credentials(name: str) -> Credentials:
    return Credentials(
        username=generate_username(name, fallback_prefix="reseller"),
        password=generate_password(),
    )


# =============================================================================
# CLIENT
# =============================================================================

class ProvisioningClient:
    """Async provisioning API client."""

    def __init__(self, config: ProvisioningConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._client = client or httpx.AsyncClient(
            base_url=config.base_url,
            timeout=config.timeout_seconds,
            headers={
                "Authorization": f"Bearer {config.api_key}",
                "Content-Type": "application/json",
            },
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning("provisioning_timeout", method=method, path=path)
            raise ProvisioningFailure(f"Provisioning API timeout on {method} {path}") from e
        except httpx.HTTPError as e:
            logger.warning("provisioning_transport_error", method=method, path=path, error=str(e))
            raise ProvisioningFailure(f"Provisioning API unreachable: {e}") from e

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            logger.warning("provisioning_rate_limited", path=path, retry_after=retry_after)
            raise ProvisioningRateLimited(
                f"Rate limited on {method} {path}",
                status_code=429,
                retry_after=retry_after,
            )

        if response.status_code >= 400:
            message = _error_message(response)
            logger.error(
                "provisioning_error_status",
                method=method,
                path=path,
                status_code=response.status_code,
                message=message,
            )
            raise ProvisioningFailure(
                f"Provisioning API answered {response.status_code} on {method} {path}: {message}",
                status_code=response.status_code,
            )

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise ProvisioningFailure(f"Non-JSON response on {method} {path}") from e

    # -------------------------------------------------------------------------
    # Categories
    # -------------------------------------------------------------------------

    async def list_active_categories(self) -> list[Category]:
        data = await self._request("GET", "/categories")
        categories = [Category.model_validate(item) for item in _as_list(data, "categories")]
        active = [c for c in categories if c.is_active()]
        logger.info("categories_loaded", total=len(categories), active=len(active))
        if not active:
            raise ProvisioningFailure("No active categories available")
        return active

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    async def create_account(self, spec: ClientAccountSpec) -> ProvisionedAccount:
        data = await self._request("POST", "/clients", json=spec.model_dump())
        created = data.get("client") if isinstance(data, dict) else None
        if not created or not created.get("id"):
            raise ProvisioningFailure(f"Client creation for {spec.username} returned no account")

        account = ProvisionedAccount(
            account_id=created["id"],
            username=created.get("username") or spec.username,
            password=created.get("password") or spec.password,
            expires_at=created.get("expiration_date"),
            connection_limit=created.get("connection_limit", spec.connection_limit),
        )
        logger.info("client_account_created", account_id=account.account_id, username=account.username)
        return account

    async def create_reseller(self, spec: ResellerAccountSpec) -> ProvisionedAccount:
        data = await self._request("POST", "/resellers", json=spec.model_dump())
        created = data.get("reseller") if isinstance(data, dict) else None

        if not created or not created.get("id"):
            # Some deployments answer 201 without echoing the reseller
            logger.warning("reseller_not_echoed", username=spec.username)
            await asyncio.sleep(self.config.reseller_lookup_delay_seconds)
            found = await self.find_account_by_username(spec.username, AccountKind.RESELLER)
            if found is None:
                raise ProvisioningFailure(f"Reseller {spec.username} was not found after creation")
            created = found.model_dump()

        account = ProvisionedAccount(
            account_id=created["id"],
            username=created.get("username") or spec.username,
            password=spec.password,
            expires_at=created.get("expiration_date") or spec.expiration_date,
            max_users=created.get("max_users", spec.max_users),
            account_type=created.get("account_type") or spec.account_type,
        )
        logger.info("reseller_account_created", account_id=account.account_id, username=account.username)
        return account

    # -------------------------------------------------------------------------
    # Renewal and updates
    # -------------------------------------------------------------------------

    async def renew_account(
        self,
        account_id: int,
        days: int,
        kind: AccountKind = AccountKind.CLIENT,
    ) -> dict:
        path = f"/{_collection(kind)}/{account_id}/renew"
        data = await self._request("POST", path, json={"days": days})
        logger.info("account_renewed", account_id=account_id, kind=kind.value, days=days)
        return data if isinstance(data, dict) else {}

    async def update_account(
        self,
        account_id: int,
        payload: dict,
        kind: AccountKind = AccountKind.CLIENT,
    ) -> dict:
        """PUT the full account payload. The API rejects partial bodies."""
        if kind == AccountKind.RESELLER and payload.get("password"):
            payload = {**payload, "password": payload["password"][:RESELLER_PASSWORD_MAX]}
        data = await self._request("PUT", f"/{_collection(kind)}/{account_id}", json=payload)
        logger.info("account_updated", account_id=account_id, kind=kind.value, fields=sorted(payload))
        return data if isinstance(data, dict) else {}

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    async def find_account_by_username(
        self,
        username: str,
        kind: AccountKind = AccountKind.CLIENT,
    ) -> Optional[RemoteAccount]:
        collection = _collection(kind)
        data = await self._request(
            "GET",
            f"/{collection}",
            params={"search": username, "scope": "todos", "limit": 100},
        )
        for item in _as_list(data, collection):
            if isinstance(item, dict) and item.get("username") == username:
                return _to_remote(item)
        return None

    async def list_accounts(self, limit: int = 50) -> list[RemoteAccount]:
        data = await self._request("GET", "/clients", params={"limit": limit, "scope": "todos"})
        return [_to_remote(item) for item in _as_list(data, "clients")]


# =============================================================================
# HELPERS
# =============================================================================

def _collection(kind: AccountKind) -> str:
    return "resellers" if kind == AccountKind.RESELLER else "clients"


def _as_list(data: Any, key: str) -> list:
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for candidate in (key, "data"):
            value = data.get(candidate)
            if isinstance(value, list):
                return value
    return []


def _to_remote(item: dict) -> RemoteAccount:
    try:
        return RemoteAccount.model_validate(item)
    except ValidationError as e:
        raise ProvisioningFailure("Provisioning API returned a malformed account") from e


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or body)[:200]
    return str(body)[:200]
