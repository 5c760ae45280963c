"""
Database Module - The Order Store
=================================
Persistence for orders with compare-and-swap status transitions.

This module provides:
- IOrderStore interface (the only way order state is mutated)
- The transition table shared by every store implementation
- InMemoryOrderStore (tests, single-process deployments)
- PostgresOrderStore (AsyncPG connection pool)

At-most-once provisioning rests on two guarded writes:
``transition_status`` (CAS on status) and ``record_provisioning``
(set-once on the result).

pip install asyncpg
"""

import asyncio
import json
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Callable, Iterable, List, Optional
from uuid import uuid4

import asyncpg
import structlog
from pydantic import TypeAdapter

from schemas.orders import (
    Order,
    OrderStatus,
    Payer,
    ProvisioningResult,
    Subject,
    utcnow,
)

# Configure logger
logger = structlog.get_logger().bind(component="order_store")

UNRESOLVED_STATUSES = (OrderStatus.PENDING, OrderStatus.REJECTED)


# =============================================================================
# TRANSITION TABLE
# =============================================================================

def is_transition_allowed(
    order: Order,
    new_status: OrderStatus,
    external_payment_id: Optional[str] = None,
    admin_override: bool = False,
) -> bool:
    """
    Decide whether ``order`` may move to ``new_status``.

    pending  -> approved   needs a payment id
    pending  -> rejected
    rejected -> approved   needs a payment id (retried payment succeeded)
    rejected -> pending    a fresh attempt is in progress at the gateway
    approved -> pending    admin override only, and only before provisioning

    approved -> approved is a no-op and reported as not applied, so a
    second confirmer learns it lost the race.
    """
    current = order.status

    if new_status == OrderStatus.APPROVED:
        if current not in UNRESOLVED_STATUSES:
            return False
        return bool(external_payment_id)

    if new_status == OrderStatus.REJECTED:
        return current == OrderStatus.PENDING

    if new_status == OrderStatus.PENDING:
        if current == OrderStatus.REJECTED:
            return True
        if current == OrderStatus.APPROVED:
            return admin_override and order.provisioning_result is None
        return False

    return False


# =============================================================================
# INTERFACE
# =============================================================================

class IOrderStore(ABC):
    """Order persistence. All mutation goes through the two guarded writes."""

    @abstractmethod
    async def create_order(self, subject: Subject, amount: Decimal, payer: Payer) -> Order:
        pass

    @abstractmethod
    async def get_by_id(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_by_external_payment_id(self, payment_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def transition_status(
        self,
        order_id: str,
        new_status: OrderStatus,
        external_payment_id: Optional[str] = None,
        admin_override: bool = False,
    ) -> bool:
        """Apply the transition if the table allows it. Returns False otherwise."""
        pass

    @abstractmethod
    async def record_provisioning(self, order_id: str, result: ProvisioningResult) -> bool:
        """Store the provisioning result once. Returns False if already set."""
        pass

    @abstractmethod
    async def list_unresolved(
        self,
        updated_before: datetime,
        updated_after: datetime,
        limit: int,
        exclude_ids: Iterable[str] = (),
    ) -> List[Order]:
        """
        Pending or rejected orders last touched inside the window, oldest first.

        ``exclude_ids`` are filtered out before ``limit`` is applied.
        """
        pass

    async def close(self) -> None:
        pass


# =============================================================================
# IN-MEMORY IMPLEMENTATION
# =============================================================================

class InMemoryOrderStore(IOrderStore):
    """Dict-backed store; one lock makes every check-then-write atomic."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._orders: dict[str, Order] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    async def create_order(self, subject: Subject, amount: Decimal, payer: Payer) -> Order:
        now = self._clock()
        order = Order(
            id=str(uuid4()),
            subject=subject,
            amount=amount,
            payer=payer,
            created_at=now,
            updated_at=now,
        )
        async with self._lock:
            self._orders[order.id] = order
        logger.info("order_created", order_id=order.id, subject_type=order.subject_type.value)
        return order

    async def get_by_id(self, order_id: str) -> Optional[Order]:
        return self._orders.get(order_id)

    async def get_by_external_payment_id(self, payment_id: str) -> Optional[Order]:
        for order in self._orders.values():
            if order.external_payment_id == payment_id:
                return order
        return None

    async def transition_status(
        self,
        order_id: str,
        new_status: OrderStatus,
        external_payment_id: Optional[str] = None,
        admin_override: bool = False,
    ) -> bool:
        async with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                return False
            if not is_transition_allowed(order, new_status, external_payment_id, admin_override):
                return False

            changes = {"updated_at": self._clock()}
            # A revert keeps the payment id for the admin force path
            if external_payment_id:
                changes["external_payment_id"] = external_payment_id
            self._orders[order_id] = order.transition_to(new_status, **changes)

        logger.info(
            "order_transitioned",
            order_id=order_id,
            from_status=order.status.value,
            to_status=new_status.value,
            admin_override=admin_override,
        )
        return True

    async def record_provisioning(self, order_id: str, result: ProvisioningResult) -> bool:
        async with self._lock:
            order = self._orders.get(order_id)
            if order is None or order.provisioning_result is not None:
                return False
            if order.status != OrderStatus.APPROVED:
                return False
            self._orders[order_id] = order.model_copy(update={
                "provisioning_result": result,
                "updated_at": self._clock(),
            })
        return True

    async def list_unresolved(
        self,
        updated_before: datetime,
        updated_after: datetime,
        limit: int,
        exclude_ids: Iterable[str] = (),
    ) -> List[Order]:
        excluded = set(exclude_ids)
        candidates = [
            o for o in self._orders.values()
            if o.status in UNRESOLVED_STATUSES
            and o.id not in excluded
            and updated_after < o.updated_at < updated_before
        ]
        candidates.sort(key=lambda o: o.updated_at)
        return candidates[:limit]


# =============================================================================
# POSTGRES IMPLEMENTATION
# =============================================================================

_subject_adapter = TypeAdapter(Subject)


class PostgresOrderStore(IOrderStore):
    """AsyncPG-backed store. CAS runs inside a row-locking transaction."""

    MIGRATIONS = [
        """
        CREATE TABLE IF NOT EXISTS provisioning_orders (
            id VARCHAR(64) PRIMARY KEY,
            subject JSONB NOT NULL,
            subject_type VARCHAR(32) NOT NULL,
            amount NUMERIC(12, 2) NOT NULL CHECK (amount > 0),
            payer_email VARCHAR(254) NOT NULL,
            payer_name VARCHAR(200) NOT NULL,
            status VARCHAR(16) NOT NULL DEFAULT 'pending',
            external_payment_id VARCHAR(64),
            provisioning_result JSONB,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_prov_orders_status_updated "
        "ON provisioning_orders(status, updated_at)",
        "CREATE INDEX IF NOT EXISTS idx_prov_orders_payment "
        "ON provisioning_orders(external_payment_id)",
    ]

    def __init__(self, dsn: str, min_size: int = 2, max_size: int = 10):
        self._dsn = dsn
        self._min_size = min_size
        self._max_size = max_size
        self._pool: Optional[asyncpg.Pool] = None

    async def initialize(self) -> None:
        """Create the pool and run migrations."""
        if self._pool is not None:
            return
        self._pool = await asyncpg.create_pool(
            self._dsn, min_size=self._min_size, max_size=self._max_size
        )
        async with self._pool.acquire() as conn:
            for migration in self.MIGRATIONS:
                await conn.execute(migration)
        logger.info("order_store_initialized")

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            logger.info("order_store_closed")

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("PostgresOrderStore.initialize() was not awaited")
        return self._pool

    @staticmethod
    def _row_to_order(row: asyncpg.Record) -> Order:
        result = row["provisioning_result"]
        return Order(
            id=row["id"],
            subject=_subject_adapter.validate_python(json.loads(row["subject"])),
            amount=row["amount"],
            payer=Payer(email=row["payer_email"], name=row["payer_name"]),
            status=OrderStatus(row["status"]),
            external_payment_id=row["external_payment_id"],
            provisioning_result=(
                ProvisioningResult.model_validate_json(result) if result else None
            ),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    async def create_order(self, subject: Subject, amount: Decimal, payer: Payer) -> Order:
        order = Order(id=str(uuid4()), subject=subject, amount=amount, payer=payer)
        await self.pool.execute(
            """
            INSERT INTO provisioning_orders
            (id, subject, subject_type, amount, payer_email, payer_name, status, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            """,
            order.id,
            order.subject.model_dump_json(),
            order.subject_type.value,
            order.amount,
            order.payer.email,
            order.payer.name,
            order.status.value,
            order.created_at,
            order.updated_at,
        )
        logger.info("order_created", order_id=order.id, subject_type=order.subject_type.value)
        return order

    async def get_by_id(self, order_id: str) -> Optional[Order]:
        row = await self.pool.fetchrow(
            "SELECT * FROM provisioning_orders WHERE id = $1", order_id
        )
        return self._row_to_order(row) if row else None

    async def get_by_external_payment_id(self, payment_id: str) -> Optional[Order]:
        row = await self.pool.fetchrow(
            """
            SELECT * FROM provisioning_orders
            WHERE external_payment_id = $1
            ORDER BY updated_at DESC
            LIMIT 1
            """,
            payment_id,
        )
        return self._row_to_order(row) if row else None

    async def transition_status(
        self,
        order_id: str,
        new_status: OrderStatus,
        external_payment_id: Optional[str] = None,
        admin_override: bool = False,
    ) -> bool:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT * FROM provisioning_orders WHERE id = $1 FOR UPDATE", order_id
                )
                if row is None:
                    return False
                order = self._row_to_order(row)
                if not is_transition_allowed(order, new_status, external_payment_id, admin_override):
                    return False

                await conn.execute(
                    """
                    UPDATE provisioning_orders
                    SET status = $2,
                        external_payment_id = COALESCE($3, external_payment_id),
                        updated_at = NOW()
                    WHERE id = $1
                    """,
                    order_id,
                    new_status.value,
                    external_payment_id or None,
                )

        logger.info(
            "order_transitioned",
            order_id=order_id,
            from_status=order.status.value,
            to_status=new_status.value,
            admin_override=admin_override,
        )
        return True

    async def record_provisioning(self, order_id: str, result: ProvisioningResult) -> bool:
        status = await self.pool.execute(
            """
            UPDATE provisioning_orders
            SET provisioning_result = $2, updated_at = NOW()
            WHERE id = $1
              AND provisioning_result IS NULL
              AND status = 'approved'
            """,
            order_id,
            result.model_dump_json(),
        )
        return status == "UPDATE 1"

    async def list_unresolved(
        self,
        updated_before: datetime,
        updated_after: datetime,
        limit: int,
        exclude_ids: Iterable[str] = (),
    ) -> List[Order]:
        rows = await self.pool.fetch(
            """
            SELECT * FROM provisioning_orders
            WHERE status = ANY($1)
              AND updated_at < $2
              AND updated_at > $3
              AND NOT (id = ANY($5::varchar[]))
            ORDER BY updated_at ASC
            LIMIT $4
            """,
            _status_values(UNRESOLVED_STATUSES),
            updated_before,
            updated_after,
            limit,
            list(exclude_ids),
        )
        return [self._row_to_order(row) for row in rows]


def _status_values(statuses: Iterable[OrderStatus]) -> List[str]:
    return [s.value for s in statuses]
