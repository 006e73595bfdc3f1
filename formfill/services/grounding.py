"""
Evidence grounding.

An evidence snippet counts only if it literally occurs in the source
transcript, compared case-insensitively with whitespace runs collapsed.
"""

from __future__ import annotations

import re
from typing import Optional

_WS_RE = re.compile(r"\s+")
# Models often wrap quotes in quotation marks or add an ellipsis.
_QUOTE_TRIM = " \t\r\n\"'“”‘’…."


def clean_snippet(snippet: Optional[str]) -> Optional[str]:
    if snippet is None:
        return None
    cleaned = _WS_RE.sub(" ", snippet.strip(_QUOTE_TRIM)).strip()
    return cleaned or None


def locate(snippet: Optional[str], transcript: str) -> Optional[tuple[int, int]]:
    """
    Return (start, end) character offsets of ``snippet`` in ``transcript``.

    Returns None when the snippet is empty or does not occur.
    """
    cleaned = clean_snippet(snippet)
    if not cleaned:
        return None

    # Build a whitespace-tolerant, case-insensitive pattern from the snippet
    parts = [re.escape(p) for p in cleaned.split(" ")]
    pattern = re.compile(r"\s+".join(parts), re.IGNORECASE)
    match = pattern.search(transcript)
    if not match:
        return None
    return match.start(), match.end()


def is_grounded(snippet: Optional[str], transcript: str) -> bool:
    return locate(snippet, transcript) is not None
