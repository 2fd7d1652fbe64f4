"""
Talk to My Lawyer - Letters API Router

Letter submission, AI drafting, review status and delivery.
All endpoints require authentication.
"""
from datetime import date
from typing import List, Optional
import logging

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, EmailStr
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from ..auth import RequestContext, Capability, get_current_user
from ..database import get_db
from ..errors import AuthorizationError
from ..models.db_models import LetterDB, LetterStatus, LetterType, Priority, TimelineStatus
from ..services.letters import (
    LetterGenerator, LetterInput, LetterLifecycleService, get_letter_generator, send_letter_email,
)
from ..services.realtime import dispatch_changes

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/letters", tags=["letters"])


# =============================================================================
# PYDANTIC MODELS FOR API
# =============================================================================

class LetterCreateRequest(BaseModel):
    """Letter form as submitted by the customer."""
    title: str
    description: str
    sender_name: str
    recipient_name: str
    recipient_address: str
    letter_type: LetterType = LetterType.GENERAL
    priority: Priority = Priority.MEDIUM
    sender_address: Optional[str] = None
    recipient_email: Optional[EmailStr] = None
    desired_resolution: Optional[str] = None
    save_as_draft: bool = False


class StatusUpdateRequest(BaseModel):
    status: LetterStatus
    notes: Optional[str] = None
    assigned_reviewer_id: Optional[str] = None
    due_date_internal: Optional[date] = None
    final_content: Optional[str] = None


class CancelRequest(BaseModel):
    notes: Optional[str] = None


class EmailRequest(BaseModel):
    recipient_email: Optional[EmailStr] = None


class LetterResponse(BaseModel):
    id: str
    user_id: str
    title: str
    letter_type: str
    description: str
    desired_resolution: Optional[str] = None
    sender_name: str
    sender_address: Optional[str] = None
    recipient_name: str
    recipient_address: str
    recipient_email: Optional[str] = None
    priority: str
    status: str
    timeline_status: str
    ai_generated_content: Optional[str] = None
    final_content: Optional[str] = None
    admin_notes: Optional[str] = None  # Staff only
    assigned_reviewer_id: Optional[str] = None
    due_date_internal: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class HistoryEntryResponse(BaseModel):
    id: str
    old_status: str
    new_status: str
    changed_by: str
    notes: Optional[str] = None
    changed_at: Optional[str] = None


class EmailResponse(BaseModel):
    message_id: str
    recipient: str
    sent_at: str


def letter_response(letter: LetterDB, ctx: RequestContext) -> LetterResponse:
    staff = ctx.can(Capability.VIEW_ALL_LETTERS)
    return LetterResponse(
        id=letter.id,
        user_id=letter.user_id,
        title=letter.title,
        letter_type=LetterType(letter.letter_type).value,
        description=letter.description,
        desired_resolution=letter.desired_resolution,
        sender_name=letter.sender_name,
        sender_address=letter.sender_address,
        recipient_name=letter.recipient_name,
        recipient_address=letter.recipient_address,
        recipient_email=letter.recipient_email,
        priority=Priority(letter.priority).value,
        status=LetterStatus(letter.status).value,
        timeline_status=TimelineStatus(letter.timeline_status).value,
        ai_generated_content=letter.ai_generated_content,
        final_content=letter.final_content,
        admin_notes=letter.admin_notes if staff else None,
        assigned_reviewer_id=letter.assigned_reviewer_id if staff else None,
        due_date_internal=letter.due_date_internal.isoformat() if staff and letter.due_date_internal else None,
        created_at=letter.created_at.isoformat() if letter.created_at else None,
        updated_at=letter.updated_at.isoformat() if letter.updated_at else None,
    )


# =============================================================================
# API ENDPOINTS
# =============================================================================

@router.post("", response_model=LetterResponse, status_code=status.HTTP_201_CREATED)
async def create_letter(
    request: LetterCreateRequest,
    ctx: RequestContext = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Submit a letter request (or save it as a draft).
    """
    data = LetterInput(**request.model_dump(exclude={"save_as_draft"}))
    letter = LetterLifecycleService(db).submit(ctx, data, as_draft=request.save_as_draft)
    await dispatch_changes(db)
    return letter_response(letter, ctx)


@router.get("", response_model=List[LetterResponse])
async def list_letters(
    status_filter: Optional[LetterStatus] = Query(None, alias="status"),
    all_users: bool = Query(False),
    ctx: RequestContext = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    List the caller's letters. Staff may pass ``all_users=true``.
    """
    letters = LetterLifecycleService(db).list_letters(ctx, status=status_filter, all_users=all_users)
    return [letter_response(letter, ctx) for letter in letters]


@router.get("/{letter_id}", response_model=LetterResponse)
async def get_letter(
    letter_id: str,
    ctx: RequestContext = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    letter = LetterLifecycleService(db).get_letter(ctx, letter_id)
    return letter_response(letter, ctx)


@router.get("/{letter_id}/history", response_model=List[HistoryEntryResponse])
async def get_letter_history(
    letter_id: str,
    ctx: RequestContext = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Status audit trail, oldest first.
    """
    entries = LetterLifecycleService(db).get_history(ctx, letter_id)
    return [
        HistoryEntryResponse(
            id=e.id,
            old_status=LetterStatus(e.old_status).value,
            new_status=LetterStatus(e.new_status).value,
            changed_by=e.changed_by,
            notes=e.notes,
            changed_at=e.changed_at.isoformat() if e.changed_at else None,
        )
        for e in entries
    ]


@router.post("/{letter_id}/submit", response_model=LetterResponse)
async def submit_draft(
    letter_id: str,
    ctx: RequestContext = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Submit a previously saved draft.
    """
    letter = LetterLifecycleService(db).submit_draft(ctx, letter_id)
    await dispatch_changes(db)
    return letter_response(letter, ctx)


@router.patch("/{letter_id}/status", response_model=LetterResponse)
async def update_letter_status(
    letter_id: str,
    request: StatusUpdateRequest,
    ctx: RequestContext = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Staff status transition with review notes. Admin and employee only.
    """
    letter = LetterLifecycleService(db).update_status(
        ctx,
        letter_id,
        request.status,
        notes=request.notes,
        assigned_reviewer_id=request.assigned_reviewer_id,
        due_date_internal=request.due_date_internal,
        final_content=request.final_content,
    )
    await dispatch_changes(db)
    return letter_response(letter, ctx)


@router.post("/{letter_id}/generate", response_model=LetterResponse)
async def generate_letter(
    letter_id: str,
    ctx: RequestContext = Depends(get_current_user),
    db: Session = Depends(get_db),
    generator: LetterGenerator = Depends(get_letter_generator)
):
    """
    Draft the letter with AI. Spends one letter credit unless the caller
    is staff. A failed attempt can be retried without spending another.
    """
    service = LetterLifecycleService(db)
    try:
        letter = await run_in_threadpool(service.generate, ctx, letter_id, generator)
    finally:
        await dispatch_changes(db)
    return letter_response(letter, ctx)


@router.post("/{letter_id}/cancel", response_model=LetterResponse)
async def cancel_letter(
    letter_id: str,
    request: Optional[CancelRequest] = None,
    ctx: RequestContext = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    letter = LetterLifecycleService(db).cancel(ctx, letter_id, notes=request.notes if request else None)
    await dispatch_changes(db)
    return letter_response(letter, ctx)


@router.post("/{letter_id}/email", response_model=EmailResponse)
async def email_letter(
    letter_id: str,
    request: EmailRequest,
    ctx: RequestContext = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Email the letter. Owners send their own letters, staff any letter.
    """
    letter = LetterLifecycleService(db).get_letter(ctx, letter_id)
    if letter.user_id != ctx.user_id and not ctx.can(Capability.EMAIL_ANY_LETTER):
        raise AuthorizationError("Only the owner or staff can email this letter")

    ack = send_letter_email(letter, request.recipient_email)
    return EmailResponse(message_id=ack.message_id, recipient=ack.recipient, sent_at=ack.sent_at.isoformat())


@router.delete("/{letter_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_letter(
    letter_id: str,
    ctx: RequestContext = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Permanently delete a letter and its history. Owner only.
    """
    LetterLifecycleService(db).delete(ctx, letter_id)
    await dispatch_changes(db)
