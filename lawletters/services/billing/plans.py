"""
Subscription plan catalogue.

Prices are in cents as the payment processor reports them. Plan lookup by
amount is an exact match: an unknown amount is an error, never a guess.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, List

from dateutil.relativedelta import relativedelta

from ...errors import ValidationError
from ...models.db_models import PlanType


@dataclass(frozen=True)
class Plan:
    plan_type: PlanType
    name: str
    price_cents: int
    period: str  # "month" | "year"
    letters_allowed: int
    features: tuple

    @property
    def price(self) -> Decimal:
        return (Decimal(self.price_cents) / 100).quantize(Decimal("0.01"))

    def period_end(self, start: datetime) -> datetime:
        if self.period == "year":
            return start + relativedelta(years=1)
        return start + relativedelta(months=1)


PLANS: Dict[PlanType, Plan] = {
    PlanType.ONE_LETTER: Plan(
        plan_type=PlanType.ONE_LETTER,
        name="Basic Plan",
        price_cents=1999,
        period="month",
        letters_allowed=1,
        features=("1 legal letter draft", "Basic document review", "Email support", "PDF download"),
    ),
    PlanType.FOUR_MONTHLY: Plan(
        plan_type=PlanType.FOUR_MONTHLY,
        name="Professional Plan",
        price_cents=4999,
        period="month",
        letters_allowed=4,
        features=(
            "4 legal letter drafts per month", "Priority document review",
            "Phone and email support", "Document storage", "PDF download",
        ),
    ),
    PlanType.EIGHT_YEARLY: Plan(
        plan_type=PlanType.EIGHT_YEARLY,
        name="Premium Plan",
        price_cents=19999,
        period="year",
        letters_allowed=8,
        features=(
            "8 legal letter drafts", "Priority document review",
            "Phone and email support", "Document storage", "PDF download",
        ),
    ),
}

_BY_CENTS = {plan.price_cents: plan for plan in PLANS.values()}


def get_plan(plan_type) -> Plan:
    try:
        return PLANS[PlanType(plan_type)]
    except ValueError:
        raise ValidationError(
            f"Invalid plan type. Must be one of: {', '.join(p.value for p in PlanType)}"
        )


def plan_for_amount(amount_cents: int) -> Plan:
    """Map a paid cent amount to its plan. No tolerance, no default."""
    plan = _BY_CENTS.get(amount_cents)
    if plan is None:
        raise ValidationError(f"No plan is priced at {amount_cents} cents")
    return plan


def list_plans() -> List[Plan]:
    return list(PLANS.values())
