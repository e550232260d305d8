"""Tidy raw narration before it is shown or stored."""
from __future__ import annotations

import re

_FENCE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")
_SPEAKER_PREFIX = re.compile(r"^\s*(narrator|assistant|storyteller)\s*:\s*", re.IGNORECASE)
_BLANK_RUNS = re.compile(r"\n{3,}")
_QUOTES = {('"', '"'), ("“", "”"), ("'", "'")}


def clean_story_content(text: str) -> str:
    """Strip code fences, speaker labels and wrapping quotes; collapse blank lines."""
    if not text:
        return ""
    cleaned = _FENCE.sub("", text.strip())
    cleaned = _SPEAKER_PREFIX.sub("", cleaned)
    cleaned = cleaned.replace("\r\n", "\n")
    cleaned = _BLANK_RUNS.sub("\n\n", cleaned).strip()
    if len(cleaned) >= 2 and (cleaned[0], cleaned[-1]) in _QUOTES:
        inner = cleaned[1:-1]
        # only unwrap when the quotes enclose the whole passage
        if cleaned[0] not in inner:
            cleaned = inner.strip()
    return cleaned
