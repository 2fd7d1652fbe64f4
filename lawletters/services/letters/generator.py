"""AI letter drafting.

Supports Google Gemini and OpenAI behind one interface. The lifecycle
service treats a generator as a pure, retryable function from a
``LetterPrompt`` to letter text.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx

from ... import config
from ...errors import GenerationError

logger = logging.getLogger(__name__)


@dataclass
class LetterPrompt:
    """Everything the model needs to draft one letter."""

    title: str
    sender_name: str
    recipient_name: str
    matter: str
    letter_type: str
    priority: str
    desired_resolution: Optional[str] = None
    sender_address: Optional[str] = None
    recipient_address: Optional[str] = None

    @classmethod
    def from_letter(cls, letter) -> "LetterPrompt":
        return cls(
            title=letter.title,
            sender_name=letter.sender_name,
            recipient_name=letter.recipient_name,
            matter=letter.description,
            letter_type=getattr(letter.letter_type, "value", letter.letter_type),
            priority=getattr(letter.priority, "value", letter.priority),
            desired_resolution=letter.desired_resolution,
            sender_address=letter.sender_address,
            recipient_address=letter.recipient_address,
        )


def build_prompt(prompt: LetterPrompt) -> str:
    """Render the drafting instructions sent to the model."""
    letter_type = prompt.letter_type.replace("_", " ")
    lines = [
        "You are a professional legal letter writer. Generate a formal legal letter "
        "based on the following information:",
        "",
        f"Title: {prompt.title}",
        f"Sender: {prompt.sender_name}",
    ]
    if prompt.sender_address:
        lines.append(f"Sender Address: {prompt.sender_address}")
    lines.append(f"Recipient: {prompt.recipient_name}")
    if prompt.recipient_address:
        lines.append(f"Recipient Address: {prompt.recipient_address}")
    lines += [
        f"Subject/Matter: {prompt.matter}",
        f"Desired Resolution: {prompt.desired_resolution or 'Not specified'}",
        f"Letter Type: {letter_type}",
        f"Priority: {prompt.priority}",
        "",
        "Please create a professional, formal legal letter that:",
        "1. Uses appropriate legal language and formatting",
        "2. Clearly states the issue/matter",
        "3. Requests the desired resolution",
        "4. Maintains a professional but firm tone",
        "5. Includes proper legal disclaimers if applicable",
        "6. Is formatted as a complete business letter with proper headers",
        "",
        "The letter should be comprehensive but concise, typically 1-2 pages when printed.",
    ]
    return "\n".join(lines)


class LetterGenerator(ABC):
    """Abstract base class for drafting providers."""

    @abstractmethod
    def generate(self, prompt: LetterPrompt) -> str:
        """Return the drafted letter body or raise GenerationError."""
        pass


class GeminiGenerator(LetterGenerator):
    """Google Gemini API provider."""

    def __init__(self, api_key: str, model: str = "gemini-1.5-flash", timeout: float = 60.0):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.base_url = "https://generativelanguage.googleapis.com/v1beta"

    def generate(self, prompt: LetterPrompt) -> str:
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(
                    f"{self.base_url}/models/{self.model}:generateContent",
                    params={"key": self.api_key},
                    json={
                        "contents": [{"role": "user", "parts": [{"text": build_prompt(prompt)}]}],
                        "generationConfig": {"temperature": 0.4, "maxOutputTokens": 2048},
                    },
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            logger.error(f"Gemini request failed: {e}")
            raise GenerationError("Letter generation service is unavailable, please retry") from e

        try:
            parts = data["candidates"][0]["content"]["parts"]
        except (KeyError, IndexError, TypeError) as e:
            raise GenerationError("Letter generation returned an unexpected response") from e
        return "".join(p.get("text", "") for p in parts)


class OpenAIGenerator(LetterGenerator):
    """OpenAI API provider."""

    def __init__(self, api_key: str, model: str = "gpt-4o-mini", timeout: float = 60.0):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.base_url = "https://api.openai.com/v1"

    def generate(self, prompt: LetterPrompt) -> str:
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(
                    f"{self.base_url}/chat/completions",
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json={
                        "model": self.model,
                        "messages": [{"role": "user", "content": build_prompt(prompt)}],
                        "temperature": 0.4,
                        "max_tokens": 2048,
                    },
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            logger.error(f"OpenAI request failed: {e}")
            raise GenerationError("Letter generation service is unavailable, please retry") from e

        try:
            return data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise GenerationError("Letter generation returned an unexpected response") from e


def get_letter_generator() -> LetterGenerator:
    """Build the configured provider. Used as a FastAPI dependency."""
    if not config.AI_API_KEY:
        raise GenerationError("Letter generation is not configured")

    if config.AI_PROVIDER == "openai":
        return OpenAIGenerator(
            config.AI_API_KEY, config.AI_MODEL or "gpt-4o-mini", config.AI_TIMEOUT_SECONDS
        )
    return GeminiGenerator(
        config.AI_API_KEY, config.AI_MODEL or "gemini-1.5-flash", config.AI_TIMEOUT_SECONDS
    )
