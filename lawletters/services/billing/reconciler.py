"""
Billing Reconciler

Turns payment-processor subscription events into Subscription and Profile
state. Each event is applied in one transaction together with its
ProcessedWebhookEvent row, so a redelivered event is a no-op.

EVENTS:
- customer.subscription.created -> new subscription (+ referral redemption)
- customer.subscription.updated -> status and billing period
- customer.subscription.deleted -> cancelled

A recognized event that names an unknown user or subscription is logged
and acknowledged; the processor would otherwise retry a permanent mismatch.
"""
from datetime import datetime
from typing import Any, Callable, Dict, Optional
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...errors import ValidationError
from ...models.db_models import (
    ProfileDB, SubscriptionDB, ProcessedWebhookEventDB, SubscriptionStatus,
)
from ..realtime import record_change
from ..referrals.coupon_engine import CouponEngine, serialize_subscription
from .plans import plan_for_amount

logger = logging.getLogger(__name__)

SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"

PROCESSOR_STATUSES = {
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.UNPAID,
    "canceled": SubscriptionStatus.CANCELLED,
    "cancelled": SubscriptionStatus.CANCELLED,
}


def map_processor_status(value: Optional[str]) -> SubscriptionStatus:
    return PROCESSOR_STATUSES.get((value or "").lower(), SubscriptionStatus.INACTIVE)


def profile_status_for(status: SubscriptionStatus) -> SubscriptionStatus:
    """Profiles only distinguish active from everything else."""
    return SubscriptionStatus.ACTIVE if status == SubscriptionStatus.ACTIVE else SubscriptionStatus.INACTIVE


def _timestamp(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        return datetime.utcfromtimestamp(int(value))
    except (TypeError, ValueError, OverflowError):
        raise ValidationError(f"Invalid timestamp in event: {value!r}")


def _unit_amount(obj: Dict[str, Any]) -> int:
    try:
        return int(obj["items"]["data"][0]["price"]["unit_amount"])
    except (KeyError, IndexError, TypeError, ValueError):
        raise ValidationError("Subscription event has no price amount")


class BillingReconciler:
    """Applies processor events to the billing tables."""

    def __init__(self, db_session: Session):
        self.db = db_session
        self.coupons = CouponEngine(db_session)
        self._handlers: Dict[str, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
            SUBSCRIPTION_CREATED: self.on_subscription_created,
            SUBSCRIPTION_UPDATED: self.on_subscription_updated,
            SUBSCRIPTION_DELETED: self.on_subscription_cancelled,
        }

    # =========================================================================
    # ENTRY POINT
    # =========================================================================

    def handle_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """Apply one verified event. Duplicate event ids return ``duplicate``."""
        if not isinstance(event, dict):
            raise ValidationError("Malformed webhook event")
        event_id = event.get("id")
        event_type = event.get("type")
        obj = (event.get("data") or {}).get("object")
        if not event_id or not event_type or not isinstance(obj, dict):
            raise ValidationError("Malformed webhook event")

        if self._already_processed(event_id):
            logger.info(f"Webhook event {event_id} already processed")
            return {"status": "duplicate", "event_id": event_id}

        handler = self._handlers.get(event_type)
        try:
            if handler is None:
                logger.info(f"Ignoring unhandled event type: {event_type}")
                outcome = {"status": "ignored"}
            else:
                outcome = handler(obj)
            self.db.add(ProcessedWebhookEventDB(event_id=event_id, event_type=event_type))
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            if self._already_processed(event_id):
                logger.info(f"Webhook event {event_id} processed concurrently")
                return {"status": "duplicate", "event_id": event_id}
            raise
        except Exception:
            self.db.rollback()
            logger.error(f"Webhook event {event_id} ({event_type}) failed, nothing applied")
            raise

        outcome["event_id"] = event_id
        return outcome

    def _already_processed(self, event_id: str) -> bool:
        return self.db.query(ProcessedWebhookEventDB.event_id).filter(
            ProcessedWebhookEventDB.event_id == event_id
        ).first() is not None

    # =========================================================================
    # HANDLERS (no commit, handle_event owns the transaction)
    # =========================================================================

    def on_subscription_created(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        if not obj.get("id"):
            raise ValidationError("Subscription event has no subscription id")

        metadata = obj.get("metadata") or {}
        user_id = metadata.get("user_id")
        if not user_id:
            logger.error(f"No user_id in metadata of subscription {obj.get('id')}")
            return {"status": "ignored", "reason": "missing user"}

        profile = self.db.query(ProfileDB).filter(ProfileDB.id == user_id).first()
        if profile is None:
            logger.warning(f"Subscription {obj.get('id')} names unknown user {user_id}")
            return {"status": "ignored", "reason": "unknown user"}

        # Unknown amounts raise, there is no default plan
        plan = plan_for_amount(_unit_amount(obj))

        result = self.coupons.apply_code(
            metadata.get("discount_code") or None,
            user_id=user_id,
            plan_type=plan.plan_type,
            amount=plan.price,
            subscription_ref=obj.get("id"),
            customer_ref=obj.get("customer"),
            period_start=_timestamp(obj.get("current_period_start")),
            period_end=_timestamp(obj.get("current_period_end")),
            commit=False,
        )
        subscription = result.subscription
        if result.replayed:
            return {"status": "duplicate", "subscription_id": subscription.id}

        status = map_processor_status(obj.get("status") or "active")
        subscription.status = status
        self._mirror_profile(profile, profile_status_for(status))

        logger.info(
            f"Subscription {subscription.id} ({plan.plan_type.value}) created for {user_id} "
            f"at {subscription.amount}"
        )
        return {
            "status": "processed",
            "subscription_id": subscription.id,
            "plan_type": plan.plan_type.value,
            "amount": str(subscription.amount),
            "discount_applied": result.applied,
            "warning": result.warning,
        }

    def on_subscription_updated(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        subscription = self._find_subscription(obj.get("id"))
        if subscription is None:
            return {"status": "ignored", "reason": "unknown subscription"}

        status = map_processor_status(obj.get("status"))
        subscription.status = status
        start = _timestamp(obj.get("current_period_start"))
        end = _timestamp(obj.get("current_period_end"))
        if start:
            subscription.current_period_start = start
        if end:
            subscription.current_period_end = end
        subscription.updated_at = datetime.utcnow()
        self._record(subscription)

        profile = self.db.query(ProfileDB).filter(ProfileDB.id == subscription.user_id).first()
        if profile is not None:
            self._mirror_profile(profile, profile_status_for(status))

        logger.info(f"Subscription {subscription.id} updated to status: {status.value}")
        return {"status": "processed", "subscription_id": subscription.id}

    def on_subscription_cancelled(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        subscription = self._find_subscription(obj.get("id"))
        if subscription is None:
            return {"status": "ignored", "reason": "unknown subscription"}

        now = datetime.utcnow()
        subscription.status = SubscriptionStatus.CANCELLED
        subscription.cancelled_at = _timestamp(obj.get("canceled_at")) or now
        subscription.updated_at = now
        self._record(subscription)

        profile = self.db.query(ProfileDB).filter(ProfileDB.id == subscription.user_id).first()
        if profile is not None:
            self._mirror_profile(profile, SubscriptionStatus.CANCELLED)

        logger.info(f"Subscription {subscription.id} cancelled")
        return {"status": "processed", "subscription_id": subscription.id}

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _find_subscription(self, external_id: Optional[str]) -> Optional[SubscriptionDB]:
        if not external_id:
            raise ValidationError("Subscription event has no subscription id")
        subscription = self.db.query(SubscriptionDB).filter(
            SubscriptionDB.external_subscription_id == external_id
        ).first()
        if subscription is None:
            logger.warning(f"Event for unknown subscription {external_id}, ignoring")
        return subscription

    def _mirror_profile(self, profile: ProfileDB, status: SubscriptionStatus) -> None:
        profile.subscription_status = status
        profile.updated_at = datetime.utcnow()
        record_change(
            self.db, "profile", profile.id, "updated", [profile.id],
            payload={"id": profile.id, "subscription_status": status.value},
        )

    def _record(self, subscription: SubscriptionDB) -> None:
        self.db.flush()
        record_change(
            self.db, "subscription", subscription.id, "updated", [subscription.user_id],
            payload=serialize_subscription(subscription), notify_staff=True,
        )
