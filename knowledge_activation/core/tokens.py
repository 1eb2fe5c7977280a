"""Cheap length-based token estimation.

These are approximations, good enough for budgeting and chunk sizing,
never exact. Every component uses the same estimator so costs computed in
one place agree with costs computed in another.
"""

from __future__ import annotations

import math

from knowledge_activation.models import Message

# Average characters per token by model family
CHARS_PER_TOKEN = {
    "gpt-4": 4.0,
    "gpt-3.5": 4.0,
    "claude": 3.5,
    "gemini": 4.0,
    "default": 4.0,
}

MESSAGE_OVERHEAD = 4
CONVERSATION_OVERHEAD = 3


def chars_per_token(model: str | None = None) -> float:
    if model:
        lower = model.lower()
        for prefix, ratio in CHARS_PER_TOKEN.items():
            if prefix in lower:
                return ratio
    return CHARS_PER_TOKEN["default"]


def estimate_tokens(text: str, model: str | None = None) -> int:
    """Estimate the token count of ``text``; empty text costs nothing."""
    if not text:
        return 0
    return math.ceil(len(text) / chars_per_token(model))


def estimate_messages_tokens(messages: list[Message], model: str | None = None) -> int:
    """Estimate a chat transcript, including per-message framing."""
    total = CONVERSATION_OVERHEAD
    for message in messages:
        total += MESSAGE_OVERHEAD + estimate_tokens(message.content, model)
    return total


def truncate_to_tokens(text: str, max_tokens: int, model: str | None = None) -> str:
    """Cut ``text`` so its estimate does not exceed ``max_tokens``."""
    if max_tokens <= 0 or estimate_tokens(text, model) <= max_tokens:
        return text
    return text[: int(max_tokens * chars_per_token(model))]
