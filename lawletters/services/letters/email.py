"""
Outbound letter email.

Delivery is simulated: the message is logged and an acknowledgement is
returned. A real provider would slot in behind ``send_letter_email``.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from uuid import uuid4
import logging

from ... import config
from ...errors import InvalidStateError, ValidationError
from ...models.db_models import LetterDB

logger = logging.getLogger(__name__)


@dataclass
class EmailAck:
    message_id: str
    recipient: str
    sent_at: datetime


def send_letter_email(letter: LetterDB, recipient_email: Optional[str] = None) -> EmailAck:
    """
    Send the letter body to ``recipient_email`` (or the letter's recipient).

    Raises ValidationError without an address, InvalidStateError when the
    letter has no content yet.
    """
    recipient = (recipient_email or letter.recipient_email or "").strip()
    if not recipient or "@" not in recipient:
        raise ValidationError("A valid recipient email is required")

    body = letter.final_content or letter.ai_generated_content
    if not body:
        raise InvalidStateError("Letter has no content to send yet")

    ack = EmailAck(message_id=str(uuid4()), recipient=recipient, sent_at=datetime.utcnow())

    logger.info(
        f"[SIMULATED EMAIL] from={config.EMAIL_FROM} to={recipient} "
        f"letter={letter.id} subject='{letter.title}' message_id={ack.message_id}"
    )
    return ack
