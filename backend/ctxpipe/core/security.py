from __future__ import annotations

import re

SECRET_PATTERN = re.compile(r"(sk-[A-Za-z0-9]{6,})")


class TextTooLong(ValueError):
    """Raised when user-provided text exceeds the accepted length."""

    def __init__(self, length: int, max_length: int) -> None:
        super().__init__(f"Text is {length} characters; the limit is {max_length}")
        self.length = length
        self.max_length = max_length


def redact_secrets(text: str) -> str:
    """Redact API keys or similar secrets from a string."""

    return SECRET_PATTERN.sub("sk-***", text)


def validate_text(text: str, max_length: int) -> str:
    """Return user-provided text unchanged after checking it.

    Blank text raises ValueError and text longer than `max_length` raises
    TextTooLong; the text itself is never trimmed or clamped.
    """

    if not text.strip():
        raise ValueError("Text must not be empty")
    if len(text) > max_length:
        raise TextTooLong(len(text), max_length)
    return text
