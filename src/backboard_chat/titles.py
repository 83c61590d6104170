"""Derive short thread titles from the first user message."""

from __future__ import annotations

import re

from .config import TITLE_MAX_CHARS

_GREETING = re.compile(
    r"^(hi|hello|hey|good morning|good afternoon|good evening)[,!.\s]*", re.IGNORECASE
)
_FILLER = re.compile(
    r"^(can you|could you|please|i want to|i need to|i would like to|help me|"
    r"tell me|show me|what is|what are|how do|how can|why is|why are)\s+",
    re.IGNORECASE,
)


def generate_smart_title(message: str, max_chars: int = TITLE_MAX_CHARS) -> str:
    """Turn a chat opener into a compact title.

    "Hi! Can you explain vector databases?" -> "Explain vector databases"
    """
    cleaned = _GREETING.sub("", message.strip(), count=1)

    # Prefer the question itself over any trailing context
    if "?" in cleaned:
        question = cleaned.split("?", 1)[0].strip()
        if len(question) > 5:
            cleaned = question

    cleaned = _FILLER.sub("", cleaned, count=1)
    if cleaned:
        cleaned = cleaned[0].upper() + cleaned[1:]

    if len(cleaned) > max_chars:
        truncated = cleaned[:max_chars]
        last_space = truncated.rfind(" ")
        if last_space > max_chars // 2:
            truncated = truncated[:last_space]
        cleaned = truncated + "..."

    if len(cleaned) < 3:
        cleaned = message[:max_chars] + ("..." if len(message) > max_chars else "")

    return cleaned
