"""Employee referral coupons and commissions."""
from .coupon_engine import (
    CouponEngine,
    CodeValidation,
    RedemptionResult,
    compute_amounts,
    round2,
    serialize_coupon,
    serialize_subscription,
)

__all__ = [
    "CouponEngine",
    "CodeValidation",
    "RedemptionResult",
    "compute_amounts",
    "round2",
    "serialize_coupon",
    "serialize_subscription",
]
