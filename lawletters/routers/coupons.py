"""
Talk to My Lawyer - Coupons Router
Referral code validation and the employee coupon dashboard.
"""
from typing import List, Optional
import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..auth import RequestContext, Capability, require_capability
from ..database import get_db
from ..services.referrals import CouponEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/coupons", tags=["coupons"])


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class ValidateCodeRequest(BaseModel):
    code: str


class ValidateCodeResponse(BaseModel):
    valid: bool
    code: Optional[str] = None
    discount_percentage: int = 0
    employee_id: Optional[str] = None
    reason: Optional[str] = None


class CouponResponse(BaseModel):
    code: str
    discount_percentage: int
    is_active: bool
    usage_count: int
    max_uses: Optional[int] = None
    expires_at: Optional[str] = None


class CommissionItem(BaseModel):
    id: str
    subscription_id: str
    referred_user_id: Optional[str] = None
    commission_amount: str
    points_awarded: int
    created_at: Optional[str] = None


class EmployeeStatsResponse(BaseModel):
    employee_id: str
    coupon: Optional[CouponResponse] = None
    points: int
    commission_earned: str
    recent_commissions: List[CommissionItem]


# =============================================================================
# API ENDPOINTS
# =============================================================================

@router.post("/validate", response_model=ValidateCodeResponse)
async def validate_code(request: ValidateCodeRequest, db: Session = Depends(get_db)):
    """
    Check a referral code. Unknown or exhausted codes return valid=false.
    Public: used on the signup and checkout forms.
    """
    return ValidateCodeResponse(**CouponEngine(db).validate_code(request.code).as_dict())


@router.get("/me", response_model=EmployeeStatsResponse)
async def get_my_coupon(
    ctx: RequestContext = Depends(require_capability(Capability.VIEW_OWN_COMMISSIONS)),
    db: Session = Depends(get_db)
):
    """
    The employee's coupon, points, commission balance and recent payments.
    """
    return EmployeeStatsResponse(**CouponEngine(db).employee_stats(ctx.user_id))


@router.post("/me", response_model=CouponResponse)
async def create_my_coupon(
    ctx: RequestContext = Depends(require_capability(Capability.VIEW_OWN_COMMISSIONS)),
    db: Session = Depends(get_db)
):
    """
    Create the employee's coupon if they do not have one yet.
    """
    coupon = CouponEngine(db).create_employee_coupon(ctx.user_id)
    return _coupon_response(coupon)


@router.post("/{code}/deactivate", response_model=CouponResponse)
async def deactivate_coupon(
    code: str,
    ctx: RequestContext = Depends(require_capability(Capability.MANAGE_COUPONS)),
    db: Session = Depends(get_db)
):
    """
    Admin only. Deactivated coupons stay on record.
    """
    coupon = CouponEngine(db).deactivate(code)
    logger.info(f"Coupon {coupon.code} deactivated by {ctx.user_id}")
    return _coupon_response(coupon)


def _coupon_response(coupon) -> CouponResponse:
    return CouponResponse(
        code=coupon.code,
        discount_percentage=coupon.discount_percentage,
        is_active=coupon.is_active,
        usage_count=coupon.usage_count,
        max_uses=coupon.max_uses,
        expires_at=coupon.expires_at.isoformat() if coupon.expires_at else None,
    )
