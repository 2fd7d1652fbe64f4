"""
Change Feed

Entity change notifications for dashboard clients.

Services record changes on the SQLAlchemy session while they work. Nothing
leaves the process until the unit of work commits: routers call
``dispatch_changes`` after ``db.commit()``, and a rollback discards the
buffer. Delivery is at-least-once, so every event carries an ``event_id``
and clients merge by ``(entity, entity_id)``.
"""
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Set
from uuid import uuid4
import logging

from sqlalchemy import event
from sqlalchemy.orm import Session

from .connection_manager import manager

logger = logging.getLogger(__name__)

_PENDING_KEY = "pending_changes"


@dataclass
class ChangeEvent:
    """One create/update/delete of an entity the dashboards display."""
    entity: str          # "letter", "subscription", "profile", "commission"
    entity_id: str
    action: str          # "created", "updated", "deleted"
    payload: Dict[str, Any] = field(default_factory=dict)
    recipients: Set[str] = field(default_factory=set)  # Profile ids
    notify_staff: bool = False
    event_id: str = field(default_factory=lambda: str(uuid4()))
    occurred_at: str = field(default_factory=lambda: datetime.utcnow().isoformat())

    def to_message(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("recipients")
        data.pop("notify_staff")
        return {"type": "change", "data": data}


def record_change(
    db: Session,
    entity: str,
    entity_id: str,
    action: str,
    recipients: List[str],
    payload: Optional[Dict[str, Any]] = None,
    notify_staff: bool = False,
) -> ChangeEvent:
    """Buffer a change on the session until the transaction commits."""
    change = ChangeEvent(
        entity=entity,
        entity_id=entity_id,
        action=action,
        payload=payload or {},
        recipients={r for r in recipients if r},
        notify_staff=notify_staff,
    )
    if not db.in_transaction():
        # Rollback events only fire for an open transaction
        db.begin()
    db.info.setdefault(_PENDING_KEY, []).append(change)
    return change


def pending_changes(db: Session) -> List[ChangeEvent]:
    return list(db.info.get(_PENDING_KEY, []))


def pop_changes(db: Session) -> List[ChangeEvent]:
    return db.info.pop(_PENDING_KEY, [])


@event.listens_for(Session, "after_soft_rollback")
def _discard_on_rollback(session, previous_transaction):
    if previous_transaction.nested:
        return
    session.info.pop(_PENDING_KEY, None)


async def dispatch_changes(db: Session) -> int:
    """
    Push committed changes to connected clients.

    Returns the number of events dispatched.
    """
    changes = pop_changes(db)
    for change in changes:
        message = change.to_message()
        for user_id in change.recipients:
            await manager.send_to_user(user_id, message)
        if change.notify_staff:
            await manager.send_to_staff(message, exclude=change.recipients)

    if changes:
        logger.debug(f"Dispatched {len(changes)} change event(s)")
    return len(changes)


# =============================================================================
# CLIENT-SIDE MERGE
# =============================================================================

class DashboardMirror:
    """
    Local copy of server rows kept current from the change feed.

    Applying the same event twice, or an older snapshot after a newer one,
    never duplicates or regresses a row.
    """

    def __init__(self):
        self.rows: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._seen: Set[str] = set()

    def apply(self, message: Dict[str, Any]) -> bool:
        """Merge one change message. Returns False when it was a duplicate."""
        data = message.get("data", message)
        event_id = data.get("event_id")
        if event_id in self._seen:
            return False
        self._seen.add(event_id)

        table = self.rows.setdefault(data["entity"], {})
        entity_id = data["entity_id"]

        if data["action"] == "deleted":
            table.pop(entity_id, None)
            return True

        current = table.get(entity_id)
        incoming = dict(data.get("payload") or {})
        incoming["_occurred_at"] = data.get("occurred_at", "")
        if current and current.get("_occurred_at", "") > incoming["_occurred_at"]:
            return True
        table[entity_id] = {**(current or {}), **incoming}
        return True

    def list(self, entity: str) -> List[Dict[str, Any]]:
        return list(self.rows.get(entity, {}).values())
