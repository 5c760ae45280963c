"""
Order Schemas
=============
Pydantic models for orders, what they buy, and what provisioning produced.

The subject of an order is a tagged union on ``kind``; each variant carries the
inputs its provisioning step needs.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, computed_field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# ENUMS
# =============================================================================

class OrderStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    # Reserved for manual closing; no automatic transition leads here
    CANCELLED = "cancelled"


class SubjectKind(str, Enum):
    NEW_PURCHASE = "new-purchase"
    RESELLER_PURCHASE = "reseller-purchase"
    RENEWAL = "renewal"
    RESELLER_RENEWAL = "reseller-renewal"


class AccountKind(str, Enum):
    CLIENT = "client"
    RESELLER = "reseller"


class ResellerAccountType(str, Enum):
    VALIDITY = "validity"
    CREDIT = "credit"


# =============================================================================
# SUBJECTS
# =============================================================================

class NewPurchase(BaseModel):
    """A new end-user account."""
    kind: Literal["new-purchase"] = "new-purchase"
    plan_name: str
    days: int = Field(gt=0)
    connection_limit: int = Field(default=1, ge=1)


class ResellerPurchase(BaseModel):
    """A new reseller account able to create up to ``max_users`` accounts."""
    kind: Literal["reseller-purchase"] = "reseller-purchase"
    plan_name: str
    max_users: int = Field(gt=0)
    account_type: ResellerAccountType = ResellerAccountType.VALIDITY
    days: Optional[int] = Field(default=30, gt=0)


class Renewal(BaseModel):
    """Extend an existing end-user account, optionally changing its device limit."""
    kind: Literal["renewal"] = "renewal"
    account_id: int
    username: str
    days: int = Field(gt=0)
    previous_connection_limit: Optional[int] = None
    new_connection_limit: Optional[int] = Field(default=None, ge=1)

    @property
    def is_upgrade(self) -> bool:
        return (
            self.new_connection_limit is not None
            and self.new_connection_limit != self.previous_connection_limit
        )


class ResellerRenewal(BaseModel):
    """Renew a reseller. Validity resets the quota, credit adds to it."""
    kind: Literal["reseller-renewal"] = "reseller-renewal"
    account_id: int
    username: str
    mode: ResellerAccountType = ResellerAccountType.VALIDITY
    quantity: int = Field(gt=0)
    days: int = Field(default=30, gt=0)


Subject = Annotated[
    Union[NewPurchase, ResellerPurchase, Renewal, ResellerRenewal],
    Field(discriminator="kind"),
]


# =============================================================================
# ORDER
# =============================================================================

class Payer(BaseModel):
    email: str = Field(max_length=254)
    name: str = Field(min_length=1, max_length=200)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        v = v.strip().lower()
        local, _, domain = v.partition("@")
        if not local or "." not in domain:
            raise ValueError("Invalid email address")
        return v


class ProvisioningResult(BaseModel):
    """What the provisioning API handed back. Recorded once per order."""
    kind: SubjectKind
    account_id: int
    username: str
    password: Optional[str] = None
    expires_at: Optional[str] = None
    days_added: Optional[int] = None
    connection_limit: Optional[int] = None
    max_users: Optional[int] = None
    account_type: Optional[ResellerAccountType] = None
    category: Optional[str] = None
    upgraded: bool = False
    provisioned_at: datetime = Field(default_factory=utcnow)


class Order(BaseModel):
    """A purchase of one subject. ``id`` doubles as the gateway external reference."""
    id: str
    subject: Subject
    amount: Decimal = Field(gt=0)
    payer: Payer
    status: OrderStatus = OrderStatus.PENDING
    external_payment_id: Optional[str] = None
    provisioning_result: Optional[ProvisioningResult] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @computed_field
    @property
    def subject_type(self) -> SubjectKind:
        return SubjectKind(self.subject.kind)

    @property
    def is_provisioned(self) -> bool:
        return self.provisioning_result is not None

    @property
    def is_reseller(self) -> bool:
        return self.subject_type in (SubjectKind.RESELLER_PURCHASE, SubjectKind.RESELLER_RENEWAL)

    def transition_to(self, new_status: OrderStatus, **changes) -> "Order":
        """Immutable state transition."""
        return self.model_copy(update={
            "status": new_status,
            "updated_at": changes.pop("updated_at", None) or utcnow(),
            **changes,
        })
