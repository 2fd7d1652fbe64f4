"""
Letter State Machine

Two independent tracks on every letter:

- ``status``: the broad review status. Every transition is logged
  immutably in ``letter_status_history``.
- ``timeline_status``: the four-stage drafting progress indicator shown to
  the customer. Forward only, never logged.

`cancelled` is reachable from every non-terminal status; `completed` and
`cancelled` are terminal.
"""
from datetime import datetime
from typing import Optional, List, Dict, Any
from uuid import uuid4

from sqlalchemy.orm import Session

from ...errors import InvalidStateError
from ...models.db_models import (
    LetterDB, LetterStatusHistoryDB, LetterStatus, TimelineStatus,
)


# =============================================================================
# STATE CONFIGURATION
# =============================================================================

STATE_CONFIG = {
    LetterStatus.DRAFT: {
        "description": "Saved by the customer, not yet submitted",
        "allowed_transitions": [LetterStatus.SUBMITTED],
    },
    LetterStatus.SUBMITTED: {
        "description": "Submitted and waiting for review",
        "allowed_transitions": [LetterStatus.IN_REVIEW],
    },
    LetterStatus.IN_REVIEW: {
        "description": "Under attorney review or AI drafting",
        # COMPLETED directly is the AI drafting path (CompleteGeneration)
        "allowed_transitions": [LetterStatus.APPROVED, LetterStatus.COMPLETED],
    },
    LetterStatus.APPROVED: {
        "description": "Reviewer approved the draft",
        "allowed_transitions": [LetterStatus.COMPLETED],
    },
    LetterStatus.COMPLETED: {
        "description": "Letter delivered to the customer",
        "allowed_transitions": [],  # Terminal state
    },
    LetterStatus.CANCELLED: {
        "description": "Withdrawn before completion",
        "allowed_transitions": [],  # Terminal state
    },
}

TERMINAL_STATUSES = frozenset(
    s for s, config in STATE_CONFIG.items() if not config["allowed_transitions"]
)

TIMELINE_ORDER: List[TimelineStatus] = [
    TimelineStatus.RECEIVED,
    TimelineStatus.UNDER_REVIEW,
    TimelineStatus.GENERATING,
    TimelineStatus.POSTED,
]

TIMELINE_MESSAGES = {
    TimelineStatus.RECEIVED: "Letter request received and processing started",
    TimelineStatus.UNDER_REVIEW: "Letter is under attorney review",
    TimelineStatus.GENERATING: "AI is generating your letter draft",
    TimelineStatus.POSTED: "Letter draft completed and ready for review",
}


# =============================================================================
# STATE MACHINE
# =============================================================================

class LetterStateMachine:
    """
    Guards both status tracks of a letter.

    Core Principles:
    - One history row per `status` change, none for timeline-only changes
    - Timeline never moves backwards
    - Cancellation is the only universal escape
    """

    def __init__(self, db_session: Session):
        """Initialize with database session."""
        self.db = db_session

    def get_state_config(self, state: LetterStatus) -> Dict[str, Any]:
        """Get configuration for a state."""
        return STATE_CONFIG.get(state, {})

    def is_terminal_state(self, state: LetterStatus) -> bool:
        """Check if a state is terminal (no further transitions)."""
        return LetterStatus(state) in TERMINAL_STATUSES

    def get_next_states(self, state: LetterStatus) -> List[LetterStatus]:
        """Get possible next states from current state."""
        state = LetterStatus(state)
        if self.is_terminal_state(state):
            return []
        return list(self.get_state_config(state)["allowed_transitions"]) + [LetterStatus.CANCELLED]

    def can_transition(self, from_state: LetterStatus, to_state: LetterStatus) -> bool:
        """Check if a status transition is allowed."""
        return LetterStatus(to_state) in self.get_next_states(from_state)

    def transition(
        self,
        letter: LetterDB,
        to_state: LetterStatus,
        actor_id: str,
        notes: Optional[str] = None,
    ) -> LetterStatusHistoryDB:
        """
        Execute a status transition and append its history row.

        Raises InvalidStateError when the transition is not allowed.
        """
        from_state = LetterStatus(letter.status)
        to_state = LetterStatus(to_state)

        if not self.can_transition(from_state, to_state):
            raise InvalidStateError(
                f"Cannot transition letter from {from_state.value} to {to_state.value}"
            )

        entry = self.log_transition(letter, from_state, to_state, actor_id, notes)

        letter.status = to_state
        letter.updated_at = datetime.utcnow()
        return entry

    def log_transition(
        self,
        letter: LetterDB,
        from_state: LetterStatus,
        to_state: LetterStatus,
        actor_id: str,
        notes: Optional[str] = None,
    ) -> LetterStatusHistoryDB:
        """Append an immutable history row."""
        entry = LetterStatusHistoryDB(
            id=str(uuid4()),
            letter_id=letter.id,
            old_status=from_state,
            new_status=to_state,
            changed_by=actor_id,
            notes=notes,
            changed_at=datetime.utcnow(),
        )
        self.db.add(entry)
        return entry

    # =========================================================================
    # TIMELINE TRACK
    # =========================================================================

    @staticmethod
    def timeline_index(state: TimelineStatus) -> int:
        return TIMELINE_ORDER.index(TimelineStatus(state))

    def advance_timeline(
        self,
        letter: LetterDB,
        to_stage: TimelineStatus,
        expected_from: Optional[TimelineStatus] = None,
    ) -> None:
        """
        Move the timeline forward exactly one stage.

        Raises InvalidStateError if the letter is not at ``expected_from``
        (defaults to the stage right before ``to_stage``).
        """
        to_stage = TimelineStatus(to_stage)
        current = TimelineStatus(letter.timeline_status)
        target_index = self.timeline_index(to_stage)

        if expected_from is None:
            if target_index == 0:
                raise InvalidStateError(f"Timeline cannot move back to {to_stage.value}")
            expected_from = TIMELINE_ORDER[target_index - 1]

        if current != expected_from:
            raise InvalidStateError(
                f"Timeline must be {expected_from.value} to move to {to_stage.value}, "
                f"letter is {current.value}"
            )

        letter.timeline_status = to_stage
        letter.updated_at = datetime.utcnow()
