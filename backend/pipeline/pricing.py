"""
Pricing
=======
Resolves the amount charged for a subject. Discounts are applied here, before
the order exists; orders only ever store the final amount.

Clients never send a discount. They may name a coupon code, which the resolver
looks up in its own table; an unknown code is a pricing error.
"""

from abc import ABC, abstractmethod
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

import structlog
from pydantic import BaseModel, Field

from pipeline.errors import PricingError
from schemas.orders import (
    NewPurchase,
    Renewal,
    ResellerAccountType,
    ResellerPurchase,
    ResellerRenewal,
    Subject,
)

CENTS = Decimal("0.01")
# Reseller accounts are sold in fixed 30-day terms; provisioning treats a
# missing duration the same way
RESELLER_TERM_DAYS = 30


class PricingContext(BaseModel):
    coupon_code: Optional[str] = Field(default=None, max_length=64)


class PlanPrice(BaseModel):
    name: str
    amount: Decimal = Field(gt=0)
    days: Optional[int] = None
    connection_limit: Optional[int] = None
    max_users: Optional[int] = None
    account_type: Optional[ResellerAccountType] = None


class IPricingResolver(ABC):
    @abstractmethod
    async def resolve(self, subject: Subject, context: Optional[PricingContext] = None) -> Decimal:
        """Final amount for ``subject``. Raises PricingError when it cannot be priced."""
        pass


# Per-day renewal price by device count; larger limits scale linearly
DEFAULT_RENEWAL_DAILY_RATES = {
    1: Decimal("200"),
    2: Decimal("333.33"),
    3: Decimal("400"),
    4: Decimal("500"),
}

DEFAULT_RESELLER_VALIDITY_PRICES = {
    5: Decimal("10000"), 10: Decimal("18000"), 20: Decimal("32000"), 30: Decimal("42000"),
    50: Decimal("60000"), 75: Decimal("78000"), 100: Decimal("90000"),
}

DEFAULT_RESELLER_CREDIT_PRICES = {
    5: Decimal("12000"), 10: Decimal("20000"), 20: Decimal("36000"), 30: Decimal("51000"),
    40: Decimal("64000"), 50: Decimal("75000"), 60: Decimal("84000"), 80: Decimal("104000"),
    100: Decimal("110000"), 150: Decimal("150000"), 200: Decimal("190000"),
}

DEFAULT_PLANS = [
    PlanPrice(name="basic-30", days=30, connection_limit=1, amount=Decimal("6000")),
    PlanPrice(name="duo-30", days=30, connection_limit=2, amount=Decimal("10000")),
    PlanPrice(name="trio-30", days=30, connection_limit=3, amount=Decimal("12000")),
    PlanPrice(name="quad-30", days=30, connection_limit=4, amount=Decimal("15000")),
]

DEFAULT_RESELLER_PLANS = [
    PlanPrice(name="reseller-validity-10", days=30, max_users=10,
              account_type=ResellerAccountType.VALIDITY, amount=Decimal("18000")),
    PlanPrice(name="reseller-validity-20", days=30, max_users=20,
              account_type=ResellerAccountType.VALIDITY, amount=Decimal("32000")),
    PlanPrice(name="reseller-credit-20", days=30, max_users=20,
              account_type=ResellerAccountType.CREDIT, amount=Decimal("36000")),
]


class StaticPriceTable(IPricingResolver):
    """
    Price table held in memory.

    New and reseller purchases are priced by plan name and must match the
    plan's terms; renewals are priced per day and reseller renewals by quota.
    Coupon codes are matched case-insensitively against ``coupons`` (code to
    percent off, strictly between 0 and 100).
    """

    def __init__(
        self,
        plans: Optional[list[PlanPrice]] = None,
        reseller_plans: Optional[list[PlanPrice]] = None,
        renewal_daily_rates: Optional[dict[int, Decimal]] = None,
        reseller_validity_prices: Optional[dict[int, Decimal]] = None,
        reseller_credit_prices: Optional[dict[int, Decimal]] = None,
        coupons: Optional[dict[str, Decimal]] = None,
    ):
        self._plans = {p.name: p for p in (DEFAULT_PLANS if plans is None else plans)}
        self._reseller_plans = {
            p.name: p for p in (DEFAULT_RESELLER_PLANS if reseller_plans is None else reseller_plans)
        }
        self._daily_rates = renewal_daily_rates or DEFAULT_RENEWAL_DAILY_RATES
        self._validity_prices = reseller_validity_prices or DEFAULT_RESELLER_VALIDITY_PRICES
        self._credit_prices = reseller_credit_prices or DEFAULT_RESELLER_CREDIT_PRICES
        self._coupons = {}
        for code, percent in (coupons or {}).items():
            percent = Decimal(str(percent))
            if not Decimal("0") < percent < Decimal("100"):
                raise ValueError(f"Coupon {code} must take off between 0 and 100 percent")
            self._coupons[code.strip().upper()] = percent
        self._logger = structlog.get_logger().bind(component="price_table")

    def get_plan(self, name: str, reseller: bool = False) -> PlanPrice:
        table = self._reseller_plans if reseller else self._plans
        plan = table.get(name)
        if plan is None:
            raise PricingError(f"Unknown plan: {name}")
        return plan

    def daily_rate(self, connection_limit: int) -> Decimal:
        return self._daily_rates.get(connection_limit, self._daily_rates[1] * connection_limit)

    def _base_amount(self, subject: Subject) -> Decimal:
        if isinstance(subject, NewPurchase):
            plan = self.get_plan(subject.plan_name)
            if (plan.days, plan.connection_limit) != (subject.days, subject.connection_limit):
                raise PricingError(f"Subject does not match plan {plan.name}")
            return plan.amount

        if isinstance(subject, ResellerPurchase):
            plan = self.get_plan(subject.plan_name, reseller=True)
            terms = (subject.days or RESELLER_TERM_DAYS, subject.max_users, subject.account_type)
            if terms != (plan.days, plan.max_users, plan.account_type):
                raise PricingError(f"Subject does not match plan {plan.name}")
            return plan.amount

        if isinstance(subject, Renewal):
            limit = subject.new_connection_limit or subject.previous_connection_limit or 1
            return self.daily_rate(limit) * subject.days

        if isinstance(subject, ResellerRenewal):
            if subject.days != RESELLER_TERM_DAYS:
                raise PricingError(f"Reseller renewals last {RESELLER_TERM_DAYS} days, got {subject.days}")
            prices = (
                self._validity_prices
                if subject.mode == ResellerAccountType.VALIDITY
                else self._credit_prices
            )
            if subject.quantity not in prices:
                raise PricingError(f"No {subject.mode.value} price for quantity {subject.quantity}")
            return prices[subject.quantity]

        raise PricingError(f"Unsupported subject: {subject!r}")

    def coupon_discount(self, code: Optional[str]) -> Decimal:
        """Percent off for ``code``; zero when no code is given."""
        if code is None or not code.strip():
            return Decimal("0")
        percent = self._coupons.get(code.strip().upper())
        if percent is None:
            raise PricingError(f"Unknown coupon: {code}")
        return percent

    async def resolve(self, subject: Subject, context: Optional[PricingContext] = None) -> Decimal:
        context = context or PricingContext()
        base = self._base_amount(subject)
        discount = self.coupon_discount(context.coupon_code)
        amount = base * (Decimal("100") - discount) / Decimal("100")
        amount = amount.quantize(CENTS, rounding=ROUND_HALF_UP)
        if amount <= 0:
            raise PricingError("Resolved amount must be positive")

        self._logger.info(
            "price_resolved",
            subject_type=subject.kind,
            base=str(base),
            amount=str(amount),
            coupon_code=context.coupon_code,
            discount_percent=str(discount),
        )
        return amount
