"""Letter lifecycle: state machine, drafting and delivery."""
from .state_machine import LetterStateMachine, STATE_CONFIG, TIMELINE_ORDER
from .generator import LetterGenerator, LetterPrompt, get_letter_generator
from .lifecycle import LetterInput, LetterLifecycleService, serialize_letter
from .email import EmailAck, send_letter_email

__all__ = [
    "LetterStateMachine",
    "STATE_CONFIG",
    "TIMELINE_ORDER",
    "LetterGenerator",
    "LetterPrompt",
    "get_letter_generator",
    "LetterInput",
    "LetterLifecycleService",
    "serialize_letter",
    "EmailAck",
    "send_letter_email",
]
