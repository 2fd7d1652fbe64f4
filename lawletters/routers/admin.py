"""
Talk to My Lawyer - Admin Router

Admin console: profiles, all letters, employee downgrade and the
commission summary. All endpoints require the MANAGE_USERS capability.
"""
from datetime import datetime
from typing import List, Optional
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel
from sqlalchemy import desc, func
from sqlalchemy.orm import Session

from ..auth import RequestContext, Capability, require_capability
from ..database import get_db
from ..models.db_models import (
    ProfileDB, LetterDB, CommissionPaymentDB, EmployeeCouponDB, Role, LetterStatus, SubscriptionStatus,
)
from ..services.realtime import dispatch_changes, record_change
from ..services.referrals import round2
from .letters import LetterResponse, letter_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class UserListItem(BaseModel):
    id: str
    email: str
    full_name: Optional[str] = None
    role: str
    subscription_status: str
    referral_code: Optional[str] = None
    points: int
    commission_earned: str
    letter_count: int
    created_at: Optional[str] = None


class UserListResponse(BaseModel):
    users: List[UserListItem]
    total: int
    page: int
    page_size: int


class EmployeeCommissionSummary(BaseModel):
    employee_id: str
    email: str
    referral_code: Optional[str] = None
    redemptions: int
    points: int
    commission_earned: str


class CommissionSummaryResponse(BaseModel):
    total_commission: str
    total_redemptions: int
    employees: List[EmployeeCommissionSummary]


# =============================================================================
# API ENDPOINTS
# =============================================================================

@router.get("/users", response_model=UserListResponse)
async def get_users(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    search: Optional[str] = None,
    role: Optional[Role] = None,
    db: Session = Depends(get_db),
    admin: RequestContext = Depends(require_capability(Capability.MANAGE_USERS))
):
    """
    Get paginated list of profiles with letter counts.
    """
    query = db.query(ProfileDB)

    if search:
        search_term = f"%{search}%"
        query = query.filter(
            (ProfileDB.email.ilike(search_term)) |
            (ProfileDB.full_name.ilike(search_term))
        )
    if role is not None:
        query = query.filter(ProfileDB.role == role)

    total = query.count()

    offset = (page - 1) * page_size
    profiles = query.order_by(desc(ProfileDB.created_at)).offset(offset).limit(page_size).all()

    user_items = []
    for profile in profiles:
        letter_count = db.query(func.count(LetterDB.id)).filter(
            LetterDB.user_id == profile.id
        ).scalar() or 0

        user_items.append(UserListItem(
            id=profile.id,
            email=profile.email,
            full_name=profile.full_name,
            role=Role(profile.role).value,
            subscription_status=SubscriptionStatus(profile.subscription_status).value,
            referral_code=profile.referral_code,
            points=profile.points or 0,
            commission_earned=str(round2(profile.commission_earned or 0)),
            letter_count=letter_count,
            created_at=profile.created_at.isoformat() if profile.created_at else None,
        ))

    return UserListResponse(users=user_items, total=total, page=page, page_size=page_size)


@router.get("/letters", response_model=List[LetterResponse])
async def get_all_letters(
    status_filter: Optional[LetterStatus] = Query(None, alias="status"),
    user_id: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    admin: RequestContext = Depends(require_capability(Capability.MANAGE_USERS))
):
    """
    Every letter, newest first.
    """
    query = db.query(LetterDB)
    if status_filter is not None:
        query = query.filter(LetterDB.status == status_filter)
    if user_id:
        query = query.filter(LetterDB.user_id == user_id)
    letters = query.order_by(desc(LetterDB.created_at)).limit(limit).all()
    return [letter_response(letter, admin) for letter in letters]


@router.post("/users/{user_id}/downgrade", response_model=UserListItem)
async def downgrade_employee(
    user_id: str,
    db: Session = Depends(get_db),
    admin: RequestContext = Depends(require_capability(Capability.MANAGE_USERS))
):
    """
    Turn an employee back into a user. Their coupon is deactivated and the
    referral code cleared; earned points and commission stay on record.
    """
    profile = db.query(ProfileDB).filter(ProfileDB.id == user_id).first()
    if profile is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    if Role(profile.role) != Role.EMPLOYEE:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Only employees can be downgraded")

    try:
        db.query(EmployeeCouponDB).filter(EmployeeCouponDB.employee_id == user_id).update(
            {EmployeeCouponDB.is_active: False, EmployeeCouponDB.updated_at: datetime.utcnow()},
            synchronize_session=False,
        )
        profile.role = Role.USER
        profile.referral_code = None
        profile.updated_at = datetime.utcnow()
        record_change(
            db, "profile", profile.id, "updated", [profile.id],
            payload={"id": profile.id, "role": Role.USER.value}, notify_staff=True,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    await dispatch_changes(db)
    logger.info(f"Employee {user_id} downgraded to user by admin {admin.user_id}")

    letter_count = db.query(func.count(LetterDB.id)).filter(LetterDB.user_id == profile.id).scalar() or 0
    return UserListItem(
        id=profile.id,
        email=profile.email,
        full_name=profile.full_name,
        role=Role(profile.role).value,
        subscription_status=SubscriptionStatus(profile.subscription_status).value,
        referral_code=profile.referral_code,
        points=profile.points or 0,
        commission_earned=str(round2(profile.commission_earned or 0)),
        letter_count=letter_count,
        created_at=profile.created_at.isoformat() if profile.created_at else None,
    )


@router.get("/commissions", response_model=CommissionSummaryResponse)
async def get_commission_summary(
    db: Session = Depends(get_db),
    admin: RequestContext = Depends(require_capability(Capability.MANAGE_USERS))
):
    """
    Commission totals per employee, from the commission ledger.
    """
    rows = db.query(
        CommissionPaymentDB.employee_id,
        func.count(CommissionPaymentDB.id),
    ).group_by(CommissionPaymentDB.employee_id).all()
    redemptions = {employee_id: count for employee_id, count in rows}

    employees = db.query(ProfileDB).filter(
        (ProfileDB.role == Role.EMPLOYEE) | (ProfileDB.id.in_(list(redemptions.keys())))
    ).order_by(desc(ProfileDB.commission_earned)).all()

    total = sum((round2(p.commission_earned or 0) for p in employees), round2(0))
    return CommissionSummaryResponse(
        total_commission=str(total),
        total_redemptions=sum(redemptions.values()),
        employees=[
            EmployeeCommissionSummary(
                employee_id=p.id,
                email=p.email,
                referral_code=p.referral_code,
                redemptions=redemptions.get(p.id, 0),
                points=p.points or 0,
                commission_earned=str(round2(p.commission_earned or 0)),
            )
            for p in employees
        ],
    )
