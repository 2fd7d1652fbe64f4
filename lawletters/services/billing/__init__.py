"""Plans, letter quota, checkout and payment webhooks."""
from .plans import Plan, PLANS, get_plan, plan_for_amount, list_plans
from .quota import remaining_letters, consume_letter_credit, active_subscription
from .signature import SIGNATURE_HEADER, sign_payload, verify_signature
from .reconciler import BillingReconciler, map_processor_status, profile_status_for
from .checkout import CheckoutService, build_subscription_event

__all__ = [
    "Plan",
    "PLANS",
    "get_plan",
    "plan_for_amount",
    "list_plans",
    "remaining_letters",
    "consume_letter_credit",
    "active_subscription",
    "SIGNATURE_HEADER",
    "sign_payload",
    "verify_signature",
    "BillingReconciler",
    "map_processor_status",
    "profile_status_for",
    "CheckoutService",
    "build_subscription_event",
]
