"""
Outcome notifications sent after an order is provisioned.

The engine sends one notification to the customer (with credentials for new
accounts) and one to the admin (sale alert). Delivery is best effort.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from enum import Enum
from typing import Optional

import structlog
from pydantic import BaseModel

from schemas.orders import Order, SubjectKind


class Audience(str, Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"


class OutcomeNotification(BaseModel):
    audience: Audience
    order_id: str
    subject_type: SubjectKind
    email: str
    payer_name: str
    amount: Decimal
    username: str
    password: Optional[str] = None
    expires_at: Optional[str] = None
    days_added: Optional[int] = None

    @classmethod
    def for_order(cls, order: Order, audience: Audience) -> "OutcomeNotification":
        result = order.provisioning_result
        return cls(
            audience=audience,
            order_id=order.id,
            subject_type=order.subject_type,
            email=order.payer.email,
            payer_name=order.payer.name,
            amount=order.amount,
            username=result.username,
            # Admin alerts never carry the password
            password=result.password if audience == Audience.CUSTOMER else None,
            expires_at=result.expires_at,
            days_added=result.days_added,
        )


class INotifier(ABC):
    @abstractmethod
    async def notify(self, notification: OutcomeNotification) -> None:
        pass


class LoggingNotifier(INotifier):
    """Default notifier: writes the outcome to the structured log."""

    def __init__(self):
        self._logger = structlog.get_logger().bind(component="notifier")

    async def notify(self, notification: OutcomeNotification) -> None:
        self._logger.info(
            "outcome_notification",
            audience=notification.audience.value,
            order_id=notification.order_id,
            subject_type=notification.subject_type.value,
            email=notification.email,
            username=notification.username,
            expires_at=notification.expires_at,
        )
