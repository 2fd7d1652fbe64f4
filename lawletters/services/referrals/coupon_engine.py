"""
Referral Coupon Engine

Validates employee referral codes and, exactly once per subscription,
credits the referring employee.

REDEMPTION (apply_code) in one transaction:
1. Guarded usage increment (active, under cap, not expired) in a single UPDATE
2. Subscription row at the discounted price
3. One CommissionPayment row (unique per subscription)
4. Employee points and commission balance incremented SQL-side

Any failure rolls back every step. Re-running for the same external
subscription id returns the stored result without touching balances.
"""
from dataclasses import dataclass, asdict
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, List, Dict, Any
from uuid import uuid4
import logging
import secrets
import string

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from ... import config
from ...errors import InvariantViolationError, NotFoundError, ValidationError
from ...models.db_models import (
    ProfileDB, SubscriptionDB, EmployeeCouponDB, CommissionPaymentDB,
    Role, PlanType, SubscriptionStatus,
)
from ..billing.plans import get_plan
from ..realtime import record_change

logger = logging.getLogger(__name__)

CODE_PREFIX = "EMP-"
CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 5

CENT = Decimal("0.01")


def round2(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def compute_amounts(amount: Decimal, discount_percentage: int) -> Dict[str, Decimal]:
    """
    Price breakdown for a redemption.

    final = round2(amount - amount * pct / 100), discount = amount - final,
    commission = round2(amount * COMMISSION_RATE) on the undiscounted price.
    """
    amount = round2(Decimal(str(amount)))
    final = round2(amount - amount * Decimal(discount_percentage) / Decimal(100))
    return {
        "original_amount": amount,
        "discount_amount": amount - final,
        "final_amount": final,
        "commission_amount": round2(amount * config.COMMISSION_RATE),
    }


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass
class CodeValidation:
    valid: bool
    code: Optional[str] = None
    discount_percentage: int = 0
    employee_id: Optional[str] = None
    reason: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RedemptionResult:
    subscription: SubscriptionDB
    commission: Optional[CommissionPaymentDB] = None
    warning: Optional[str] = None
    replayed: bool = False

    @property
    def applied(self) -> bool:
        return self.commission is not None


INVALID_REASONS = {
    "missing": "No discount code provided",
    "not_found": "Discount code not found",
    "inactive": "Discount code is no longer active",
    "expired": "Discount code has expired",
    "usage_limit_reached": "Discount code has reached its usage limit",
    "not_an_employee": "Discount code owner is no longer an employee",
}


# =============================================================================
# ENGINE
# =============================================================================

class CouponEngine:
    """Employee coupons, code validation and referral redemption."""

    def __init__(self, db_session: Session):
        self.db = db_session

    # -------------------------------------------------------------------------
    # Coupon management
    # -------------------------------------------------------------------------

    def generate_code(self) -> str:
        """Unique ``EMP-XXXXX`` code."""
        while True:
            code = CODE_PREFIX + "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))
            taken = self.db.query(EmployeeCouponDB.id).filter(EmployeeCouponDB.code == code).first()
            if not taken:
                return code

    def create_employee_coupon(
        self,
        employee_id: str,
        discount_percentage: Optional[int] = None,
        commit: bool = True,
    ) -> EmployeeCouponDB:
        """Create the employee's coupon, or return the one they already have."""
        employee = self.db.query(ProfileDB).filter(ProfileDB.id == employee_id).first()
        if employee is None:
            raise NotFoundError("Profile", employee_id)
        if Role(employee.role) != Role.EMPLOYEE:
            raise ValidationError("Only employees can hold a referral coupon")

        existing = self.get_employee_coupon(employee_id)
        if existing is not None:
            return existing

        pct = discount_percentage or config.DEFAULT_DISCOUNT_PERCENTAGE
        if not 0 < pct <= 100:
            raise ValidationError("Discount percentage must be between 1 and 100")

        coupon = EmployeeCouponDB(
            id=str(uuid4()),
            employee_id=employee_id,
            code=self.generate_code(),
            discount_percentage=pct,
            is_active=True,
            usage_count=0,
        )
        self.db.add(coupon)
        employee.referral_code = coupon.code

        if commit:
            try:
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise
            self.db.refresh(coupon)

        logger.info(f"Coupon {coupon.code} created for employee {employee_id} ({pct}% off)")
        return coupon

    def get_employee_coupon(self, employee_id: str) -> Optional[EmployeeCouponDB]:
        return self.db.query(EmployeeCouponDB).filter(
            EmployeeCouponDB.employee_id == employee_id
        ).first()

    def deactivate(self, code: str, commit: bool = True) -> EmployeeCouponDB:
        coupon = self._find(code)
        if coupon is None:
            raise NotFoundError("Coupon", code)
        coupon.is_active = False
        coupon.updated_at = datetime.utcnow()
        if commit:
            try:
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise
        logger.info(f"Coupon {coupon.code} deactivated")
        return coupon

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def validate_code(self, code: Optional[str], now: Optional[datetime] = None) -> CodeValidation:
        """Check a code. Never raises for unknown, inactive or exhausted codes."""
        normalized = (code or "").strip().upper()
        if not normalized:
            return CodeValidation(valid=False, reason="missing")

        coupon = self._find(normalized)
        if coupon is None:
            return CodeValidation(valid=False, code=normalized, reason="not_found")

        now = now or datetime.utcnow()
        reason = None
        if not coupon.is_active:
            reason = "inactive"
        elif coupon.expires_at is not None and coupon.expires_at <= now:
            reason = "expired"
        elif coupon.max_uses is not None and coupon.usage_count >= coupon.max_uses:
            reason = "usage_limit_reached"
        elif coupon.employee is None or Role(coupon.employee.role) != Role.EMPLOYEE:
            reason = "not_an_employee"

        if reason:
            return CodeValidation(valid=False, code=coupon.code, employee_id=coupon.employee_id, reason=reason)

        return CodeValidation(
            valid=True,
            code=coupon.code,
            discount_percentage=coupon.discount_percentage,
            employee_id=coupon.employee_id,
        )

    # -------------------------------------------------------------------------
    # Redemption
    # -------------------------------------------------------------------------

    def apply_code(
        self,
        code: Optional[str],
        user_id: str,
        plan_type: PlanType,
        amount: Decimal,
        subscription_ref: Optional[str] = None,
        customer_ref: Optional[str] = None,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
        commit: bool = True,
    ) -> RedemptionResult:
        """
        Create the subscription for ``user_id`` and redeem ``code`` against it.

        With no code, or a code that is not valid, the subscription is
        created at full price and the result carries a warning instead.
        ``subscription_ref`` (the processor's subscription id) is the
        idempotency key.
        """
        plan = get_plan(plan_type)

        if subscription_ref:
            existing = self.db.query(SubscriptionDB).filter(
                SubscriptionDB.external_subscription_id == subscription_ref
            ).first()
            if existing is not None:
                return self._replay(existing)

        amounts = compute_amounts(amount, 0)
        try:
            validation = self.validate_code(code) if code else None
            warning = None
            coupon = None

            if validation is not None and validation.valid:
                coupon = self._claim_usage(validation.code)
                if coupon is None:
                    validation = CodeValidation(valid=False, code=validation.code, reason="usage_limit_reached")

            if validation is not None and not validation.valid:
                warning = f"{INVALID_REASONS[validation.reason]}. Subscription created at full price."
                logger.warning(f"Code {validation.code} not applied for user {user_id}: {validation.reason}")

            if coupon is not None:
                amounts = compute_amounts(amount, coupon.discount_percentage)

            start = period_start or datetime.utcnow()
            subscription = SubscriptionDB(
                id=str(uuid4()),
                user_id=user_id,
                plan_type=plan.plan_type,
                amount=amounts["final_amount"],
                original_amount=amounts["original_amount"],
                discount_amount=amounts["discount_amount"],
                status=SubscriptionStatus.ACTIVE,
                coupon_code=coupon.code if coupon else None,
                employee_id=coupon.employee_id if coupon else None,
                external_subscription_id=subscription_ref,
                external_customer_id=customer_ref,
                current_period_start=start,
                current_period_end=period_end or plan.period_end(start),
                letters_allowed=plan.letters_allowed,
                letters_used=0,
            )
            self.db.add(subscription)
            self.db.flush()
            record_change(
                self.db, "subscription", subscription.id, "created", [user_id],
                payload=serialize_subscription(subscription), notify_staff=True,
            )

            commission = None
            if coupon is not None:
                commission = self._credit_employee(coupon, user_id, subscription, amounts["commission_amount"])

            if commit:
                self.db.commit()
                self.db.refresh(subscription)
        except Exception as e:
            logger.error(
                f"Redemption failed: code={code} user={user_id} subscription_ref={subscription_ref} "
                f"amount={amounts['original_amount']} final={amounts['final_amount']} "
                f"commission={amounts['commission_amount']}: {e}"
            )
            if commit:
                self.db.rollback()
            raise

        if commission is not None:
            logger.info(
                f"Code {coupon.code} redeemed by {user_id}: {amounts['original_amount']} -> "
                f"{amounts['final_amount']}, employee {coupon.employee_id} +{commission.commission_amount}"
            )
        return RedemptionResult(subscription=subscription, commission=commission, warning=warning)

    def _claim_usage(self, code: str) -> Optional[EmployeeCouponDB]:
        """Increment usage_count if the coupon is still redeemable. None otherwise."""
        now = datetime.utcnow()
        updated = self.db.query(EmployeeCouponDB).filter(
            EmployeeCouponDB.code == code,
            EmployeeCouponDB.is_active.is_(True),
            or_(EmployeeCouponDB.max_uses.is_(None), EmployeeCouponDB.usage_count < EmployeeCouponDB.max_uses),
            or_(EmployeeCouponDB.expires_at.is_(None), EmployeeCouponDB.expires_at > now),
        ).update(
            {
                EmployeeCouponDB.usage_count: EmployeeCouponDB.usage_count + 1,
                EmployeeCouponDB.updated_at: now,
            },
            synchronize_session=False,
        )
        if not updated:
            return None
        coupon = self._find(code)
        self.db.refresh(coupon)
        return coupon

    def _credit_employee(
        self,
        coupon: EmployeeCouponDB,
        user_id: str,
        subscription: SubscriptionDB,
        commission_amount: Decimal,
    ) -> CommissionPaymentDB:
        points = config.POINTS_PER_REDEMPTION
        commission = CommissionPaymentDB(
            id=str(uuid4()),
            employee_id=coupon.employee_id,
            referred_user_id=user_id,
            commission_amount=commission_amount,
            points_awarded=points,
            trigger_event="subscription",
            subscription_id=subscription.id,
        )
        self.db.add(commission)
        self.db.flush()

        updated = self.db.query(ProfileDB).filter(
            ProfileDB.id == coupon.employee_id,
            ProfileDB.role == Role.EMPLOYEE,
        ).update(
            {
                ProfileDB.points: ProfileDB.points + points,
                ProfileDB.commission_earned: ProfileDB.commission_earned + commission_amount,
                ProfileDB.updated_at: datetime.utcnow(),
            },
            synchronize_session=False,
        )
        if updated != 1:
            raise InvariantViolationError(
                f"Employee {coupon.employee_id} could not be credited for subscription {subscription.id}"
            )

        record_change(
            self.db, "commission", commission.id, "created", [coupon.employee_id],
            payload={
                "employee_id": coupon.employee_id,
                "subscription_id": subscription.id,
                "commission_amount": str(commission_amount),
                "points_awarded": points,
            },
            notify_staff=True,
        )
        return commission

    def _replay(self, subscription: SubscriptionDB) -> RedemptionResult:
        """Return a stored redemption after checking its bookkeeping agrees."""
        commission = self.db.query(CommissionPaymentDB).filter(
            CommissionPaymentDB.subscription_id == subscription.id
        ).first()

        if subscription.coupon_code and commission is None:
            raise InvariantViolationError(
                f"Subscription {subscription.id} used code {subscription.coupon_code} but has no commission"
            )
        if commission is not None:
            if not subscription.coupon_code:
                raise InvariantViolationError(
                    f"Commission {commission.id} exists for subscription {subscription.id} without a code"
                )
            self.check_usage_consistency(subscription.coupon_code)

        logger.info(f"Redemption for {subscription.external_subscription_id} already recorded, skipping")
        return RedemptionResult(subscription=subscription, commission=commission, replayed=True)

    def check_usage_consistency(self, code: str) -> None:
        """usage_count must equal the number of subscriptions redeemed with the code."""
        coupon = self._find(code)
        if coupon is None:
            raise InvariantViolationError(f"Coupon {code} referenced by a subscription no longer exists")
        redeemed = self.db.query(func.count(CommissionPaymentDB.id)).join(
            SubscriptionDB, SubscriptionDB.id == CommissionPaymentDB.subscription_id
        ).filter(SubscriptionDB.coupon_code == coupon.code).scalar()
        if redeemed != coupon.usage_count:
            logger.error(
                f"Coupon {coupon.code} usage_count={coupon.usage_count} but {redeemed} commission rows "
                f"(employee {coupon.employee_id})"
            )
            raise InvariantViolationError(f"Coupon {coupon.code} usage counter does not match its redemptions")

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    def employee_stats(self, employee_id: str, recent: int = 10) -> Dict[str, Any]:
        employee = self.db.query(ProfileDB).filter(ProfileDB.id == employee_id).first()
        if employee is None:
            raise NotFoundError("Profile", employee_id)

        coupon = self.get_employee_coupon(employee_id)
        payments: List[CommissionPaymentDB] = self.db.query(CommissionPaymentDB).filter(
            CommissionPaymentDB.employee_id == employee_id
        ).order_by(CommissionPaymentDB.created_at.desc()).limit(recent).all()

        return {
            "employee_id": employee_id,
            "coupon": serialize_coupon(coupon) if coupon else None,
            "points": employee.points,
            "commission_earned": str(round2(employee.commission_earned or 0)),
            "recent_commissions": [
                {
                    "id": p.id,
                    "subscription_id": p.subscription_id,
                    "referred_user_id": p.referred_user_id,
                    "commission_amount": str(round2(p.commission_amount)),
                    "points_awarded": p.points_awarded,
                    "created_at": p.created_at.isoformat() if p.created_at else None,
                }
                for p in payments
            ],
        }

    def _find(self, code: str) -> Optional[EmployeeCouponDB]:
        return self.db.query(EmployeeCouponDB).filter(
            EmployeeCouponDB.code == code.strip().upper()
        ).first()


def serialize_coupon(coupon: EmployeeCouponDB) -> Dict[str, Any]:
    return {
        "code": coupon.code,
        "discount_percentage": coupon.discount_percentage,
        "is_active": coupon.is_active,
        "usage_count": coupon.usage_count,
        "max_uses": coupon.max_uses,
        "expires_at": coupon.expires_at.isoformat() if coupon.expires_at else None,
    }


def serialize_subscription(subscription: SubscriptionDB) -> Dict[str, Any]:
    return {
        "id": subscription.id,
        "user_id": subscription.user_id,
        "plan_type": PlanType(subscription.plan_type).value,
        "status": SubscriptionStatus(subscription.status).value,
        "amount": str(round2(subscription.amount)),
        "original_amount": str(round2(subscription.original_amount)),
        "discount_amount": str(round2(subscription.discount_amount or 0)),
        "coupon_code": subscription.coupon_code,
        "letters_allowed": subscription.letters_allowed,
        "letters_used": subscription.letters_used,
        "current_period_end": (
            subscription.current_period_end.isoformat() if subscription.current_period_end else None
        ),
    }
