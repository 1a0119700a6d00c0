"""Helpers for the text that crosses the language-model boundary.

Model replies are prose that usually contains one JSON object; user text is
untrusted and gets embedded in prompts. Both directions are handled here.
"""

from __future__ import annotations

import json
import re
from typing import Any

MAX_SCAN_CHARS = 50_000

_decoder = json.JSONDecoder()


def extract_first_json(text: str, max_chars: int = MAX_SCAN_CHARS) -> dict[str, Any] | None:
    """Return the first JSON object embedded in ``text``, or None.

    Each ``{`` within the first ``max_chars`` characters is tried as the start
    of an object; placeholders such as ``{action}`` in surrounding prose are
    skipped. Arrays and scalars never count as a match.
    """
    window = (text or "")[:max_chars]
    pos = window.find("{")
    while pos >= 0:
        try:
            value, _ = _decoder.raw_decode(window, pos)
        except json.JSONDecodeError:
            value = None
        if isinstance(value, dict):
            return value
        pos = window.find("{", pos + 1)
    return None


_ROLES = r"(?:system|assistant|developer|tool)"
_ROLE_BLOCK = re.compile(rf"<\s*({_ROLES})\s*>.*?</\s*\1\s*>", re.IGNORECASE | re.DOTALL)
_ROLE_TAG = re.compile(rf"</?\s*{_ROLES}\s*>", re.IGNORECASE)
_ROLE_PREFIX = re.compile(rf"^(?:{_ROLES}|role\s*:\s*system)\b[:>\-\s]*", re.IGNORECASE)


def scrub_user_text(text: str, max_chars: int | None = 500) -> str:
    """Flatten user input to one line without role tags or role prefixes."""
    if not text:
        return ""
    without_tags = _ROLE_TAG.sub("", _ROLE_BLOCK.sub("", text))
    kept = []
    for line in without_tags.splitlines():
        line = _ROLE_PREFIX.sub("", line).strip()
        if line:
            kept.append(line)
    flat = " ".join(kept)
    if max_chars:
        flat = truncate_chars(flat, max_chars)
    return flat


def truncate_chars(text: str, max_chars: int) -> str:
    if max_chars <= 0:
        return ""
    return (text or "")[:max_chars]
