"""
Simulated checkout.

No card is charged. A successful "payment" is expressed as the same
``customer.subscription.created`` event the processor would deliver and is
fed through the BillingReconciler, so checkout and webhooks share one path.
"""
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import uuid4
import calendar
import logging

from sqlalchemy.orm import Session

from ...auth import RequestContext, Capability
from ...errors import NotFoundError
from ...models.db_models import ProfileDB, SubscriptionDB
from .plans import get_plan
from .reconciler import BillingReconciler, SUBSCRIPTION_CREATED

logger = logging.getLogger(__name__)


def _unix(value: datetime) -> int:
    return calendar.timegm(value.utctimetuple())


def build_subscription_event(
    user_id: str,
    price_cents: int,
    period_start: datetime,
    period_end: datetime,
    discount_code: Optional[str] = None,
    subscription_ref: Optional[str] = None,
) -> Dict[str, Any]:
    """Processor-shaped subscription-created event."""
    metadata = {"user_id": user_id}
    if discount_code:
        metadata["discount_code"] = discount_code
    return {
        "id": f"evt_sim_{uuid4().hex}",
        "type": SUBSCRIPTION_CREATED,
        "data": {
            "object": {
                "id": subscription_ref or f"sub_sim_{uuid4().hex}",
                "customer": f"cus_sim_{user_id}",
                "status": "active",
                "current_period_start": _unix(period_start),
                "current_period_end": _unix(period_end),
                "items": {"data": [{"price": {"unit_amount": price_cents}}]},
                "metadata": metadata,
            }
        },
    }


class CheckoutService:
    def __init__(self, db_session: Session):
        self.db = db_session
        self.reconciler = BillingReconciler(db_session)

    def checkout(
        self,
        ctx: RequestContext,
        plan_type: str,
        discount_code: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Buy ``plan_type`` for the caller (or, for admins, ``user_id``)."""
        plan = get_plan(plan_type)

        buyer_id = user_id or ctx.user_id
        if buyer_id != ctx.user_id:
            ctx.require(Capability.CHECKOUT_FOR_OTHERS)
        if self.db.query(ProfileDB.id).filter(ProfileDB.id == buyer_id).first() is None:
            raise NotFoundError("Profile", buyer_id)

        start = datetime.utcnow().replace(microsecond=0)
        event = build_subscription_event(
            buyer_id, plan.price_cents, start, plan.period_end(start), discount_code=discount_code,
        )
        logger.info(f"[SIMULATED CHECKOUT] {buyer_id} buying {plan.plan_type.value} at {plan.price}")

        outcome = self.reconciler.handle_event(event)
        subscription = self.db.query(SubscriptionDB).filter(
            SubscriptionDB.id == outcome.get("subscription_id")
        ).first()
        if subscription is None:
            raise NotFoundError("Subscription", event["data"]["object"]["id"])

        return {
            "subscription": subscription,
            "discount_applied": outcome.get("discount_applied", False),
            "warning": outcome.get("warning"),
        }
