"""
Talk to My Lawyer - SQLAlchemy ORM Models
Relational storage for profiles, letters, billing and referrals
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from sqlalchemy import (
    Column, String, Integer, Numeric, DateTime, Date, Text, Boolean, ForeignKey,
    CheckConstraint, Enum as SQLEnum,
)
from sqlalchemy.orm import relationship
from ..database import Base


# =============================================================================
# ENUMS
# =============================================================================

class Role(str, Enum):
    """Account roles. Fixed at signup, only an admin can downgrade an employee."""
    USER = "user"
    EMPLOYEE = "employee"
    ADMIN = "admin"


class SubscriptionStatus(str, Enum):
    """Shared by Profile.subscription_status and Subscription.status."""
    INACTIVE = "inactive"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    UNPAID = "unpaid"


class LetterStatus(str, Enum):
    """Broad letter status (see services.letters.state_machine)."""
    DRAFT = "draft"
    SUBMITTED = "submitted"
    IN_REVIEW = "in_review"
    APPROVED = "approved"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TimelineStatus(str, Enum):
    """Four-stage drafting progress indicator, forward only."""
    RECEIVED = "received"
    UNDER_REVIEW = "under_review"
    GENERATING = "generating"
    POSTED = "posted"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class LetterType(str, Enum):
    """Template categories offered in the letter form."""
    GENERAL_DEMAND_LETTER = "general_demand_letter"
    CEASE_AND_DESIST_HARASSMENT = "cease_and_desist_harassment"
    ACADEMIC_RECOMMENDATION = "academic_recommendation"
    ACKNOWLEDGMENT_OF_COMPLAINT = "acknowledgment_of_complaint"
    NOTICE_TO_QUIT = "notice_to_quit"
    GENERAL = "general"


class PlanType(str, Enum):
    ONE_LETTER = "one_letter"
    FOUR_MONTHLY = "four_monthly"
    EIGHT_YEARLY = "eight_yearly"


def _enum_column(enum_cls):
    """Store enum values ("in_review") rather than member names."""
    return SQLEnum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=32,
        validate_strings=True,
    )


MONEY = Numeric(10, 2)


# =============================================================================
# IDENTITY & PROFILE STORE
# =============================================================================

class ProfileDB(Base):
    """One row per account."""
    __tablename__ = "profiles"
    __table_args__ = (
        CheckConstraint("points >= 0", name="ck_profiles_points_non_negative"),
        CheckConstraint("commission_earned >= 0", name="ck_profiles_commission_non_negative"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    full_name = Column(String(255), nullable=True)
    role = Column(_enum_column(Role), nullable=False, default=Role.USER)

    # Employees only
    referral_code = Column(String(50), unique=True, nullable=True, index=True)
    points = Column(Integer, nullable=False, default=0)
    commission_earned = Column(MONEY, nullable=False, default=Decimal("0.00"))

    # Set once at signup when the user registered with an employee code
    referred_by = Column(String(36), ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True)

    subscription_status = Column(
        _enum_column(SubscriptionStatus), nullable=False, default=SubscriptionStatus.INACTIVE
    )

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    letters = relationship(
        "LetterDB", back_populates="owner", foreign_keys="LetterDB.user_id",
        cascade="all, delete-orphan",
    )
    subscriptions = relationship("SubscriptionDB", back_populates="user", foreign_keys="SubscriptionDB.user_id")
    coupon = relationship("EmployeeCouponDB", back_populates="employee", uselist=False)


# =============================================================================
# LETTER RECORD STORE
# =============================================================================

class LetterDB(Base):
    """A letter generation request and its drafted content."""
    __tablename__ = "letters"

    id = Column(String(36), primary_key=True)  # UUID
    user_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)

    title = Column(String(255), nullable=False)
    letter_type = Column(_enum_column(LetterType), nullable=False, default=LetterType.GENERAL)
    description = Column(Text, nullable=False)  # The matter, in the user's words
    desired_resolution = Column(Text, nullable=True)

    sender_name = Column(String(255), nullable=False)
    sender_address = Column(Text, nullable=True)
    recipient_name = Column(String(255), nullable=False)
    recipient_address = Column(Text, nullable=False)
    recipient_email = Column(String(255), nullable=True)

    priority = Column(_enum_column(Priority), nullable=False, default=Priority.MEDIUM)

    # Two independent tracks
    status = Column(_enum_column(LetterStatus), nullable=False, default=LetterStatus.DRAFT, index=True)
    timeline_status = Column(
        _enum_column(TimelineStatus), nullable=False, default=TimelineStatus.RECEIVED, index=True
    )

    ai_generated_content = Column(Text, nullable=True)
    final_content = Column(Text, nullable=True)  # Reviewer-edited version
    admin_notes = Column(Text, nullable=True)
    assigned_reviewer_id = Column(String(36), ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True)
    due_date_internal = Column(Date, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    owner = relationship("ProfileDB", back_populates="letters", foreign_keys=[user_id])
    history = relationship(
        "LetterStatusHistoryDB", back_populates="letter",
        cascade="all, delete-orphan", order_by="LetterStatusHistoryDB.changed_at",
    )


class LetterStatusHistoryDB(Base):
    """
    Append-only audit row, one per `status` transition.
    Never updated; removed only together with its letter.
    """
    __tablename__ = "letter_status_history"

    id = Column(String(36), primary_key=True)  # UUID
    letter_id = Column(String(36), ForeignKey("letters.id", ondelete="CASCADE"), nullable=False, index=True)
    old_status = Column(_enum_column(LetterStatus), nullable=False)
    new_status = Column(_enum_column(LetterStatus), nullable=False)
    changed_by = Column(String(36), nullable=False, index=True)
    notes = Column(Text, nullable=True)
    changed_at = Column(DateTime, default=datetime.utcnow, index=True)

    letter = relationship("LetterDB", back_populates="history")


# =============================================================================
# BILLING
# =============================================================================

class SubscriptionDB(Base):
    """Historical record of a purchased plan. Never deleted."""
    __tablename__ = "subscriptions"

    id = Column(String(36), primary_key=True)  # UUID
    user_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    plan_type = Column(_enum_column(PlanType), nullable=False)

    amount = Column(MONEY, nullable=False)  # Post-discount price
    original_amount = Column(MONEY, nullable=False)
    discount_amount = Column(MONEY, nullable=False, default=Decimal("0.00"))
    status = Column(_enum_column(SubscriptionStatus), nullable=False, default=SubscriptionStatus.ACTIVE, index=True)

    coupon_code = Column(String(50), nullable=True)
    employee_id = Column(String(36), ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True, index=True)

    # Payment processor references
    external_subscription_id = Column(String(255), unique=True, nullable=True, index=True)
    external_customer_id = Column(String(255), nullable=True)

    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    # Letter quota
    letters_allowed = Column(Integer, nullable=False, default=1)
    letters_used = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("ProfileDB", back_populates="subscriptions", foreign_keys=[user_id])


class ProcessedWebhookEventDB(Base):
    """One row per payment-processor event already reconciled."""
    __tablename__ = "processed_webhook_events"

    event_id = Column(String(255), primary_key=True)
    event_type = Column(String(100), nullable=False)
    received_at = Column(DateTime, default=datetime.utcnow)


# =============================================================================
# REFERRALS
# =============================================================================

class EmployeeCouponDB(Base):
    """One referral coupon per employee. Deactivated, never deleted."""
    __tablename__ = "employee_coupons"
    __table_args__ = (
        CheckConstraint(
            "discount_percentage > 0 AND discount_percentage <= 100",
            name="ck_employee_coupons_discount_range",
        ),
        CheckConstraint("max_uses IS NULL OR max_uses > 0", name="ck_employee_coupons_max_uses_positive"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    employee_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), unique=True, nullable=False)
    code = Column(String(50), unique=True, nullable=False, index=True)
    discount_percentage = Column(Integer, nullable=False, default=20)
    is_active = Column(Boolean, nullable=False, default=True)
    usage_count = Column(Integer, nullable=False, default=0)
    max_uses = Column(Integer, nullable=True)  # NULL = unlimited
    expires_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    employee = relationship("ProfileDB", back_populates="coupon")


class CommissionPaymentDB(Base):
    """
    Append-only commission ledger.
    subscription_id is unique: one payment per redeemed subscription.
    """
    __tablename__ = "commission_payments"

    id = Column(String(36), primary_key=True)  # UUID
    employee_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    referred_user_id = Column(String(36), ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True)
    commission_amount = Column(MONEY, nullable=False)
    points_awarded = Column(Integer, nullable=False, default=1)
    trigger_event = Column(String(50), nullable=False, default="subscription")
    subscription_id = Column(
        String(36), ForeignKey("subscriptions.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    created_at = Column(DateTime, default=datetime.utcnow)
