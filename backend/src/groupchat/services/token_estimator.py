"""Rough token estimation from text length."""

import math
from typing import Iterable

from chatmodels import Message

CHARS_PER_TOKEN = 4


def estimate(text: str | None) -> int:
    """Estimate tokens for a piece of text. ~4 characters per token."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_messages(messages: Iterable[Message]) -> int:
    """Sum of estimates over message contents."""
    return sum(estimate(m.content) for m in messages)
