from __future__ import annotations

import math
import re
from typing import Iterable

# Word runs and single punctuation marks each cost at least one token
_PIECE_RE = re.compile(r"\w+|[^\w\s]")
# Chat formats wrap every content part in a few framing tokens
PART_OVERHEAD_TOKENS = 3


def estimate_token_count(text: str) -> int:
    """Approximate the token count of ``text`` for usage accounting.

    Takes the larger of the piece count and one token per four characters, so
    long unbroken strings are not undercounted.
    """

    if not text:
        return 0
    stripped = text.strip()
    return max(len(_PIECE_RE.findall(stripped)), math.ceil(len(stripped) / 4))


def estimate_prompt_tokens(parts: Iterable) -> int:
    """Estimate the prompt side of a call from its content parts.

    Binary parts are counted by their framing only; their payload is billed by
    the backend in media units this estimate does not model.
    """

    total = 0
    for part in parts:
        total += PART_OVERHEAD_TOKENS
        text = getattr(part, "text", None)
        if text:
            total += estimate_token_count(text)
    return total
