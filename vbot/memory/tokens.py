"""Approximate token counting.

Every budget decision goes through :func:`estimate_tokens`, even when an exact
tokenizer would be available, so all components agree on sizes.
"""

import math

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Estimate tokens as one per four characters, rounded up."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)
