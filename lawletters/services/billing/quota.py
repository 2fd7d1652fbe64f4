"""
Letter quota.

Each active subscription grants ``letters_allowed`` generations. Credits
are consumed with a guarded SQL increment so two concurrent generations
cannot both spend the last credit.
"""
from typing import Optional
import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from ...errors import InvalidStateError
from ...models.db_models import SubscriptionDB, SubscriptionStatus

logger = logging.getLogger(__name__)


def remaining_letters(db: Session, user_id: str) -> int:
    """Credits left across the user's active subscriptions."""
    total = db.query(
        func.coalesce(func.sum(SubscriptionDB.letters_allowed - SubscriptionDB.letters_used), 0)
    ).filter(
        SubscriptionDB.user_id == user_id,
        SubscriptionDB.status == SubscriptionStatus.ACTIVE,
    ).scalar()
    return max(int(total or 0), 0)


def consume_letter_credit(db: Session, user_id: str) -> SubscriptionDB:
    """
    Spend one credit from the oldest active subscription that has one.

    Does not commit. Raises InvalidStateError when nothing is left.
    """
    candidates = db.query(SubscriptionDB).filter(
        SubscriptionDB.user_id == user_id,
        SubscriptionDB.status == SubscriptionStatus.ACTIVE,
        SubscriptionDB.letters_used < SubscriptionDB.letters_allowed,
    ).order_by(SubscriptionDB.created_at.asc()).all()

    for subscription in candidates:
        updated = db.query(SubscriptionDB).filter(
            SubscriptionDB.id == subscription.id,
            SubscriptionDB.letters_used < SubscriptionDB.letters_allowed,
        ).update(
            {SubscriptionDB.letters_used: SubscriptionDB.letters_used + 1},
            synchronize_session=False,
        )
        if updated:
            db.refresh(subscription)
            logger.info(
                f"Letter credit used: user={user_id} subscription={subscription.id} "
                f"({subscription.letters_used}/{subscription.letters_allowed})"
            )
            return subscription

    raise InvalidStateError("No remaining letter credits. Purchase a plan to generate letters.")


def active_subscription(db: Session, user_id: str) -> Optional[SubscriptionDB]:
    return db.query(SubscriptionDB).filter(
        SubscriptionDB.user_id == user_id,
        SubscriptionDB.status == SubscriptionStatus.ACTIVE,
    ).order_by(SubscriptionDB.created_at.desc()).first()
