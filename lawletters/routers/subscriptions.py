"""
Talk to My Lawyer - Subscriptions Router
Plan catalogue, simulated checkout and the caller's subscriptions.
"""
from typing import List, Optional
import logging

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..auth import RequestContext, get_current_user
from ..database import get_db
from ..models.db_models import PlanType, SubscriptionDB
from ..services.billing import CheckoutService, list_plans, remaining_letters
from ..services.realtime import dispatch_changes
from ..services.referrals import serialize_subscription

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class PlanResponse(BaseModel):
    plan_type: str
    name: str
    price: str
    period: str
    letters_allowed: int
    features: List[str]


class CheckoutRequest(BaseModel):
    plan_type: PlanType
    discount_code: Optional[str] = None
    user_id: Optional[str] = None  # Admins buying on behalf of a user


class SubscriptionResponse(BaseModel):
    id: str
    user_id: str
    plan_type: str
    status: str
    amount: str
    original_amount: str
    discount_amount: str
    coupon_code: Optional[str] = None
    letters_allowed: int
    letters_used: int
    current_period_end: Optional[str] = None


class CheckoutResponse(BaseModel):
    subscription: SubscriptionResponse
    discount_applied: bool
    warning: Optional[str] = None  # Informational, e.g. code not applied


class MySubscriptionsResponse(BaseModel):
    subscriptions: List[SubscriptionResponse]
    remaining_letters: int


# =============================================================================
# API ENDPOINTS
# =============================================================================

@router.get("/plans", response_model=List[PlanResponse])
async def get_plans():
    return [
        PlanResponse(
            plan_type=plan.plan_type.value,
            name=plan.name,
            price=str(plan.price),
            period=plan.period,
            letters_allowed=plan.letters_allowed,
            features=list(plan.features),
        )
        for plan in list_plans()
    ]


@router.post("/checkout", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
async def checkout(
    request: CheckoutRequest,
    ctx: RequestContext = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Buy a plan. An invalid discount code does not block the purchase: the
    plan is bought at full price and the response carries a warning.
    """
    result = CheckoutService(db).checkout(
        ctx, request.plan_type, discount_code=request.discount_code, user_id=request.user_id
    )
    await dispatch_changes(db)
    return CheckoutResponse(
        subscription=SubscriptionResponse(**serialize_subscription(result["subscription"])),
        discount_applied=result["discount_applied"],
        warning=result["warning"],
    )


@router.get("/me", response_model=MySubscriptionsResponse)
async def get_my_subscriptions(
    ctx: RequestContext = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    subscriptions = db.query(SubscriptionDB).filter(
        SubscriptionDB.user_id == ctx.user_id
    ).order_by(SubscriptionDB.created_at.desc()).all()
    return MySubscriptionsResponse(
        subscriptions=[SubscriptionResponse(**serialize_subscription(s)) for s in subscriptions],
        remaining_letters=remaining_letters(db, ctx.user_id),
    )
