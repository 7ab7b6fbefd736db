"""Deterministic merchant normalization.

Used whenever the classifier does not name a merchant, so every
categorized transaction ends up with a merchant_normalized value that
cohorts can be keyed on.
"""

from __future__ import annotations

import re

UNKNOWN_MERCHANT = "UNKNOWN"


def normalize_merchant(text: str | None, tokens: int = 3) -> str:
    """Normalize raw booking text into a merchant key.

    - Uppercase
    - Replace every run of non-alphanumerics with a space
    - Keep the first `tokens` words

    Returns UNKNOWN_MERCHANT when nothing alphanumeric is left.
    """
    if not text:
        return UNKNOWN_MERCHANT
    cleaned = re.sub(r"[\W_]+", " ", text.upper())
    words = cleaned.split()
    if not words:
        return UNKNOWN_MERCHANT
    return " ".join(words[:max(tokens, 1)])


def clean_merchant(name: str) -> str:
    """Uppercase and collapse whitespace in a classifier-provided merchant."""
    return re.sub(r"\s{2,}", " ", name.upper()).strip()
