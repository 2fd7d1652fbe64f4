"""
Letter Lifecycle Service

Owns a letter from submission to completion and drives the AI drafting
sequence:

    submit -> advance_to_review -> begin_generation -> complete_generation

Every public operation is one unit of work: it commits on success, rolls
back on failure, and records a change event for the owner's dashboard.

AUTHORITY MODEL:
- OWNER: submit, submit_draft, generate, cancel, delete
- STAFF (admin/employee): update_status, cancel, generate
- Only the owner may delete, staff included
"""
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date
from typing import Optional, List, Dict, Any
from uuid import uuid4
import logging

from sqlalchemy.orm import Session

from ...auth import RequestContext, Capability
from ...errors import (
    AuthorizationError, GenerationError, InvalidStateError, NotFoundError, ValidationError,
)
from ...models.db_models import (
    LetterDB, LetterStatusHistoryDB, LetterStatus, TimelineStatus, LetterType, Priority,
)
from ..billing.quota import consume_letter_credit
from ..realtime import record_change
from .generator import LetterGenerator, LetterPrompt
from .state_machine import LetterStateMachine, TIMELINE_MESSAGES

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = {
    "title": "Title",
    "recipient_name": "Recipient name",
    "recipient_address": "Recipient address",
    "sender_name": "Sender name",
    "description": "Description",
}


@dataclass
class LetterInput:
    """Customer-supplied letter form."""
    title: str
    description: str
    sender_name: str
    recipient_name: str
    recipient_address: str
    letter_type: LetterType = LetterType.GENERAL
    priority: Priority = Priority.MEDIUM
    sender_address: Optional[str] = None
    recipient_email: Optional[str] = None
    desired_resolution: Optional[str] = None

    def validate(self) -> None:
        missing = [
            label for attr, label in REQUIRED_FIELDS.items()
            if not (getattr(self, attr) or "").strip()
        ]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")


def serialize_letter(letter: LetterDB) -> Dict[str, Any]:
    """Dashboard payload for a letter row."""
    return {
        "id": letter.id,
        "user_id": letter.user_id,
        "title": letter.title,
        "letter_type": LetterType(letter.letter_type).value,
        "priority": Priority(letter.priority).value,
        "status": LetterStatus(letter.status).value,
        "timeline_status": TimelineStatus(letter.timeline_status).value,
        "has_content": bool(letter.ai_generated_content or letter.final_content),
        "updated_at": letter.updated_at.isoformat() if letter.updated_at else None,
    }


class LetterLifecycleService:
    """
    Main service for letter management.

    Orchestrates:
    - State machine transitions (status + timeline)
    - Letter credits for generation
    - AI drafting
    - Dashboard change events
    """

    def __init__(self, db_session: Session):
        """Initialize with database session."""
        self.db = db_session
        self.state_machine = LetterStateMachine(db_session)

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    def _get(self, letter_id: str) -> LetterDB:
        letter = self.db.query(LetterDB).filter(LetterDB.id == letter_id).first()
        if letter is None:
            raise NotFoundError("Letter", letter_id)
        return letter

    def get_letter(self, ctx: RequestContext, letter_id: str) -> LetterDB:
        """Fetch a letter the caller may see."""
        letter = self._get(letter_id)
        if letter.user_id != ctx.user_id and not ctx.can(Capability.VIEW_ALL_LETTERS):
            # Hide existence of other users' letters
            raise NotFoundError("Letter", letter_id)
        return letter

    def list_letters(
        self,
        ctx: RequestContext,
        status: Optional[LetterStatus] = None,
        all_users: bool = False,
    ) -> List[LetterDB]:
        query = self.db.query(LetterDB)
        if not (all_users and ctx.can(Capability.VIEW_ALL_LETTERS)):
            query = query.filter(LetterDB.user_id == ctx.user_id)
        if status is not None:
            query = query.filter(LetterDB.status == status)
        return query.order_by(LetterDB.created_at.desc()).all()

    def get_history(self, ctx: RequestContext, letter_id: str) -> List[LetterStatusHistoryDB]:
        letter = self.get_letter(ctx, letter_id)
        return self.db.query(LetterStatusHistoryDB).filter(
            LetterStatusHistoryDB.letter_id == letter.id
        ).order_by(LetterStatusHistoryDB.changed_at.asc()).all()

    # =========================================================================
    # SUBMISSION
    # =========================================================================

    def submit(self, ctx: RequestContext, data: LetterInput, as_draft: bool = False) -> LetterDB:
        """
        Create a letter.

        Submitted letters start at submitted/received with one history row
        (draft -> submitted). Drafts start at draft/received with none.
        """
        ctx.require(Capability.SUBMIT_LETTER)
        data.validate()

        with self._atomic():
            letter = self._build_letter(ctx, data)
            if not as_draft:
                self.state_machine.transition(
                    letter, LetterStatus.SUBMITTED, ctx.user_id,
                    notes=TIMELINE_MESSAGES[TimelineStatus.RECEIVED],
                )
            action = "saved as draft" if as_draft else "submitted"
            return self._commit(letter, "created", f"Letter {letter.id} {action}")

    def _build_letter(self, ctx: RequestContext, data: LetterInput) -> LetterDB:
        letter = LetterDB(
            id=str(uuid4()),
            user_id=ctx.user_id,
            title=data.title.strip(),
            letter_type=LetterType(data.letter_type),
            description=data.description.strip(),
            desired_resolution=data.desired_resolution,
            sender_name=data.sender_name.strip(),
            sender_address=data.sender_address,
            recipient_name=data.recipient_name.strip(),
            recipient_address=data.recipient_address.strip(),
            recipient_email=data.recipient_email,
            priority=Priority(data.priority),
            status=LetterStatus.DRAFT,
            timeline_status=TimelineStatus.RECEIVED,
        )
        self.db.add(letter)
        return letter

    def submit_draft(self, ctx: RequestContext, letter_id: str) -> LetterDB:
        letter = self._get(letter_id)
        if letter.user_id != ctx.user_id:
            raise AuthorizationError("Only the owner can submit this letter")
        with self._atomic():
            self.state_machine.transition(letter, LetterStatus.SUBMITTED, ctx.user_id)
            return self._commit(letter, "updated", f"Draft {letter.id} submitted")

    # =========================================================================
    # DRAFTING SEQUENCE
    # =========================================================================

    def advance_to_review(self, letter_id: str, actor_id: str) -> LetterDB:
        """received -> under_review, and submitted -> in_review."""
        letter = self._get(letter_id)
        with self._atomic():
            self._advance_to_review(letter, actor_id)
            return self._commit(letter, "updated", f"Letter {letter.id} under review")

    def _advance_to_review(self, letter: LetterDB, actor_id: str) -> None:
        status = LetterStatus(letter.status)
        if status == LetterStatus.SUBMITTED:
            self.state_machine.advance_timeline(letter, TimelineStatus.UNDER_REVIEW)
            self.state_machine.transition(
                letter, LetterStatus.IN_REVIEW, actor_id, notes=TIMELINE_MESSAGES[TimelineStatus.UNDER_REVIEW]
            )
        elif status in (LetterStatus.IN_REVIEW, LetterStatus.APPROVED):
            # Staff already moved the status; only the timeline catches up
            self.state_machine.advance_timeline(letter, TimelineStatus.UNDER_REVIEW)
        else:
            raise InvalidStateError(
                f"Only submitted letters can be reviewed, letter is {status.value}"
            )

    def begin_generation(self, letter_id: str, actor_id: str) -> LetterDB:
        """under_review -> generating. No status change."""
        letter = self._get(letter_id)
        with self._atomic():
            self._begin_generation(letter)
            return self._commit(letter, "updated", f"Letter {letter.id} generating")

    def _begin_generation(self, letter: LetterDB) -> None:
        if self.state_machine.is_terminal_state(letter.status):
            raise InvalidStateError(f"Letter is {LetterStatus(letter.status).value}")
        self.state_machine.advance_timeline(letter, TimelineStatus.GENERATING)

    def complete_generation(self, letter_id: str, generated_text: str, actor_id: str) -> LetterDB:
        """
        Store AI content: status -> completed, timeline -> posted.

        Empty text raises GenerationError and leaves the letter generating.
        """
        letter = self._get(letter_id)
        with self._atomic():
            self._complete_generation(letter, generated_text, actor_id)
            return self._commit(letter, "updated", f"Letter {letter.id} completed")

    def _complete_generation(self, letter: LetterDB, generated_text: Optional[str], actor_id: str) -> None:
        if not (generated_text or "").strip():
            raise GenerationError("Letter generation returned no content, please retry")
        if TimelineStatus(letter.timeline_status) != TimelineStatus.GENERATING:
            raise InvalidStateError("Letter is not generating")

        self.state_machine.transition(
            letter, LetterStatus.COMPLETED, actor_id, notes=TIMELINE_MESSAGES[TimelineStatus.POSTED]
        )
        self.state_machine.advance_timeline(letter, TimelineStatus.POSTED)
        letter.ai_generated_content = generated_text.strip()

    def generate(self, ctx: RequestContext, letter_id: str, generator: LetterGenerator) -> LetterDB:
        """
        Run the whole drafting sequence, resuming where a failed attempt stopped.

        The letter is committed at `generating` before the AI call, so a
        provider failure leaves it there for a retry without spending a
        second credit.
        """
        letter = self.get_letter(ctx, letter_id)
        if letter.user_id != ctx.user_id and not ctx.can(Capability.UPDATE_LETTER_STATUS):
            raise AuthorizationError("Only the owner or staff can generate this letter")

        timeline = TimelineStatus(letter.timeline_status)
        if timeline == TimelineStatus.POSTED:
            raise InvalidStateError("Letter has already been generated")
        if self.state_machine.is_terminal_state(letter.status):
            raise InvalidStateError(f"Letter is {LetterStatus(letter.status).value}")

        if timeline != TimelineStatus.GENERATING:
            with self._atomic():
                if not ctx.can(Capability.UNLIMITED_GENERATION):
                    consume_letter_credit(self.db, letter.user_id)
                if timeline == TimelineStatus.RECEIVED:
                    self._advance_to_review(letter, ctx.user_id)
                self._begin_generation(letter)
                self._commit(letter, "updated", f"Letter {letter.id} generating")

        try:
            text = generator.generate(LetterPrompt.from_letter(letter))
        except GenerationError:
            logger.warning(f"Generation failed for letter {letter.id}, left in generating")
            raise

        with self._atomic():
            self._complete_generation(letter, text, ctx.user_id)
            return self._commit(letter, "updated", f"Letter {letter.id} generated")

    # =========================================================================
    # STAFF ACTIONS
    # =========================================================================

    def update_status(
        self,
        ctx: RequestContext,
        letter_id: str,
        new_status: LetterStatus,
        notes: Optional[str] = None,
        assigned_reviewer_id: Optional[str] = None,
        due_date_internal: Optional[date] = None,
        final_content: Optional[str] = None,
    ) -> LetterDB:
        """
        Staff status change with review metadata.

        Re-sending the current status only updates the metadata and writes
        no history row.
        """
        ctx.require(Capability.UPDATE_LETTER_STATUS)
        letter = self._get(letter_id)
        new_status = LetterStatus(new_status)

        with self._atomic():
            if new_status != LetterStatus(letter.status):
                self.state_machine.transition(letter, new_status, ctx.user_id, notes=notes)
                if (
                    new_status == LetterStatus.IN_REVIEW
                    and TimelineStatus(letter.timeline_status) == TimelineStatus.RECEIVED
                ):
                    self.state_machine.advance_timeline(letter, TimelineStatus.UNDER_REVIEW)

            if notes is not None:
                letter.admin_notes = notes
            if assigned_reviewer_id is not None:
                letter.assigned_reviewer_id = assigned_reviewer_id
            if due_date_internal is not None:
                letter.due_date_internal = due_date_internal
            if final_content is not None:
                letter.final_content = final_content

            return self._commit(
                letter, "updated", f"Letter {letter.id} set to {new_status.value} by {ctx.user_id}"
            )

    def cancel(self, ctx: RequestContext, letter_id: str, notes: Optional[str] = None) -> LetterDB:
        """Any non-terminal status -> cancelled. Timeline is left untouched."""
        letter = self._get(letter_id)
        if letter.user_id != ctx.user_id and not ctx.can(Capability.UPDATE_LETTER_STATUS):
            raise AuthorizationError("Only the owner or staff can cancel this letter")

        if self.state_machine.is_terminal_state(letter.status):
            raise InvalidStateError(f"Letter is already {LetterStatus(letter.status).value}")

        with self._atomic():
            self.state_machine.transition(letter, LetterStatus.CANCELLED, ctx.user_id, notes=notes)
            return self._commit(letter, "updated", f"Letter {letter.id} cancelled by {ctx.user_id}")

    def delete(self, ctx: RequestContext, letter_id: str) -> None:
        """Hard delete of the letter and its history. Owner only, irreversible."""
        letter = self._get(letter_id)
        if letter.user_id != ctx.user_id:
            raise AuthorizationError("Only the owner can delete this letter")

        owner_id = letter.user_id
        with self._atomic():
            self.db.delete(letter)
            record_change(self.db, "letter", letter_id, "deleted", [owner_id], notify_staff=True)
            self.db.commit()
        logger.info(f"Letter {letter_id} deleted by owner {owner_id}")

    # =========================================================================
    # INTERNALS
    # =========================================================================

    @contextmanager
    def _atomic(self):
        """Roll back everything this operation touched if any step fails."""
        try:
            yield
        except Exception:
            self.db.rollback()
            raise

    def _commit(self, letter: LetterDB, action: str, message: str) -> LetterDB:
        self.db.flush()
        record_change(
            self.db, "letter", letter.id, action, [letter.user_id],
            payload=serialize_letter(letter), notify_staff=True,
        )
        self.db.commit()
        self.db.refresh(letter)
        logger.info(message)
        return letter
