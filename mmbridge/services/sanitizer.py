"""User input sanitizing and safety checks.

Runs on every admitted post before anything reaches the assistant process
or is echoed back into the thread.
"""

from __future__ import annotations

import logging
import re

logger = logging.getLogger(__name__)

MAX_INPUT_LENGTH = 5000
MAX_CHAR_RUN = 50

_SCRIPT_RE = re.compile(r"<script\b[^>]*>.*?</script\s*>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^>]*>")
_URI_RE = re.compile(r"javascript\s*:|data\s*:\s*text/html", re.IGNORECASE)
_HANDLER_RE = re.compile(
    r"\bon\w+\s*=\s*(?:\"[^\"]*\"|'[^']*')", re.IGNORECASE
)

_SUSPICIOUS_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("template injection", re.compile(r"\{\{.*?\}\}", re.DOTALL)),
    ("variable substitution", re.compile(r"\$\{.*?\}", re.DOTALL)),
    ("command substitution", re.compile(r"\$\(.*?\)", re.DOTALL)),
    ("backtick execution", re.compile(r"`[^`]*`")),
    ("exec call", re.compile(r"\bexec\s*\(")),
    ("eval call", re.compile(r"\beval\s*\(")),
)
_REPEAT_RE = re.compile(r"(.)\1{%d,}" % (MAX_CHAR_RUN - 1), re.DOTALL)


def _strip_once(text: str) -> str:
    text = _SCRIPT_RE.sub("", text)
    text = _TAG_RE.sub("", text)
    text = _HANDLER_RE.sub("", text)
    text = _URI_RE.sub("", text)
    return text


def sanitize(raw: str) -> str:
    """Strip markup and script-like content, truncate, trim.

    Removal repeats until nothing changes, so pieces that only form a tag or
    URI after an inner one is removed (``<scr<b>ipt>``) are caught too and
    ``sanitize(sanitize(x)) == sanitize(x)`` holds.
    """
    if not isinstance(raw, str):
        return ""

    text = raw
    while True:
        stripped = _strip_once(text)
        if stripped == text:
            break
        text = stripped

    text = text[:MAX_INPUT_LENGTH].strip()
    # Truncation or trimming can expose a new match at the cut.
    if _strip_once(text) != text:
        return sanitize(text)
    return text


def unsafe_reason(text: str) -> str | None:
    """Name of the first safety rule the text breaks, or None."""
    if not isinstance(text, str):
        return "not a string"
    for name, pattern in _SUSPICIOUS_PATTERNS:
        if pattern.search(text):
            return name
    if _REPEAT_RE.search(text):
        return "excessive repetition"
    return None


def is_safe(text: str) -> bool:
    """Reject template/shell injection markers and pathological repetition."""
    reason = unsafe_reason(text)
    if reason:
        logger.warning("Rejected unsafe input: %s", reason)
        return False
    return True
