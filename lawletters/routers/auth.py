"""
Talk to My Lawyer - Authentication Router
Handles registration, login and the current profile.
"""
from uuid import uuid4
from typing import Optional
import logging

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, EmailStr, field_validator
from sqlalchemy.orm import Session

from ..database import get_db
from ..models.db_models import ProfileDB, Role, SubscriptionStatus
from ..auth import (
    RequestContext, hash_password, verify_password, create_access_token, get_current_user,
)
from ..services.billing import remaining_letters
from ..services.referrals import CouponEngine, round2

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class RegisterRequest(BaseModel):
    email: EmailStr
    password: str
    full_name: Optional[str] = None
    role: str = "user"  # user | employee
    referral_code: Optional[str] = None

    @field_validator('password')
    @classmethod
    def validate_password_strength(cls, v):
        if len(v) < 8:
            raise ValueError('Password must be at least 8 characters')
        return v

    @field_validator('role')
    @classmethod
    def validate_role(cls, v):
        if v not in (Role.USER.value, Role.EMPLOYEE.value):
            raise ValueError('Role must be user or employee')
        return v


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class RegisterResponse(BaseModel):
    id: str
    message: str
    referral_code: Optional[str] = None  # Employees only
    warning: Optional[str] = None


class ProfileResponse(BaseModel):
    id: str
    email: str
    full_name: Optional[str] = None
    role: str
    referral_code: Optional[str] = None
    points: int = 0
    commission_earned: str = "0.00"
    subscription_status: str = SubscriptionStatus.INACTIVE.value
    remaining_letters: int = 0
    created_at: Optional[str] = None


def profile_response(profile: ProfileDB, db: Session) -> ProfileResponse:
    return ProfileResponse(
        id=profile.id,
        email=profile.email,
        full_name=profile.full_name,
        role=Role(profile.role).value,
        referral_code=profile.referral_code,
        points=profile.points or 0,
        commission_earned=str(round2(profile.commission_earned or 0)),
        subscription_status=SubscriptionStatus(profile.subscription_status).value,
        remaining_letters=remaining_letters(db, profile.id),
        created_at=profile.created_at.isoformat() if profile.created_at else None,
    )


# =============================================================================
# API ENDPOINTS
# =============================================================================

@router.post("/register", response_model=RegisterResponse, status_code=status.HTTP_201_CREATED)
async def register(request: RegisterRequest, db: Session = Depends(get_db)):
    """
    Register a new account.

    A referral code links the new user to the employee who owns it. An
    unusable code does not block registration.
    """
    email = request.email.lower()
    existing = db.query(ProfileDB).filter(ProfileDB.email == email).first()
    if existing:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Email already registered"
        )

    engine = CouponEngine(db)
    referred_by = None
    warning = None
    if request.referral_code:
        validation = engine.validate_code(request.referral_code)
        if validation.valid:
            referred_by = validation.employee_id
        else:
            warning = "Referral code was not applied"
            logger.info(f"Ignoring referral code {request.referral_code} at signup: {validation.reason}")

    profile = ProfileDB(
        id=str(uuid4()),
        email=email,
        password_hash=hash_password(request.password),
        full_name=request.full_name,
        role=Role(request.role),
        referred_by=referred_by,
        points=0,
        subscription_status=SubscriptionStatus.INACTIVE,
    )
    db.add(profile)

    try:
        db.flush()
        coupon = None
        if profile.role == Role.EMPLOYEE:
            coupon = engine.create_employee_coupon(profile.id, commit=False)
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(f"Profile registered: {email} ({profile.role.value})")
    return RegisterResponse(
        id=profile.id,
        message="Account created successfully",
        referral_code=coupon.code if coupon else None,
        warning=warning,
    )


@router.post("/login", response_model=TokenResponse)
async def login(request: LoginRequest, db: Session = Depends(get_db)):
    """
    Authenticate and return a JWT token.
    """
    profile = db.query(ProfileDB).filter(ProfileDB.email == request.email.lower()).first()

    if not profile or not verify_password(request.password, profile.password_hash):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    access_token = create_access_token(profile.id, profile.email, Role(profile.role).value)

    logger.info(f"Profile logged in: {profile.email}")
    return TokenResponse(access_token=access_token)


@router.get("/me", response_model=ProfileResponse)
async def get_me(
    ctx: RequestContext = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Get the current profile with balances and remaining letters.
    """
    profile = db.query(ProfileDB).filter(ProfileDB.id == ctx.user_id).first()
    return profile_response(profile, db)
