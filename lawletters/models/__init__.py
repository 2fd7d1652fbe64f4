"""Talk to My Lawyer - Data Models"""
from .db_models import (
    # Enums
    Role, SubscriptionStatus, LetterStatus, TimelineStatus, Priority, LetterType, PlanType,
    # Tables
    ProfileDB, LetterDB, LetterStatusHistoryDB, SubscriptionDB, ProcessedWebhookEventDB,
    EmployeeCouponDB, CommissionPaymentDB,
)

__all__ = [
    "Role", "SubscriptionStatus", "LetterStatus", "TimelineStatus", "Priority", "LetterType", "PlanType",
    "ProfileDB", "LetterDB", "LetterStatusHistoryDB", "SubscriptionDB", "ProcessedWebhookEventDB",
    "EmployeeCouponDB", "CommissionPaymentDB",
]
