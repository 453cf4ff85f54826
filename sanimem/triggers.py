"""
Trigger Matcher — standalone command phrases in inbound text.

A trigger fires when any line of the message is exactly the phrase
(case-insensitive, flexible inner whitespace, optional trailing punctuation).
Lines inside fenced code blocks and block-quoted lines never count, so a
user quoting or pasting a trigger does not flip session modes.
"""

from __future__ import annotations

import enum
import re
from typing import Iterator, Set


class Trigger(str, enum.Enum):
    """Command phrases that drive session-mode transitions."""

    HEY_SANI = "HEY_SANI"
    WHO_AM_I = "WHO_AM_I"
    EXIT_SANI_MODE = "EXIT_SANI_MODE"


_TRAILING = r"[.!?,]*"

_TRIGGER_PATTERNS = (
    (Trigger.HEY_SANI, re.compile(rf"\s*hey[\s,]+sani\s*{_TRAILING}\s*$", re.IGNORECASE)),
    (Trigger.WHO_AM_I, re.compile(rf"\s*who\s+am\s+i\s*{_TRAILING}\s*$", re.IGNORECASE)),
    (Trigger.EXIT_SANI_MODE, re.compile(rf"\s*exit\s+sani\s+mode\s*{_TRAILING}\s*$", re.IGNORECASE)),
)

_FENCE = re.compile(r"\s*(```|~~~)")
_QUOTE = re.compile(r"\s*>")


def candidate_lines(text: str) -> Iterator[str]:
    """Yield the lines of text that are neither fenced nor block-quoted."""
    in_fence = False
    for line in (text or "").splitlines():
        if _FENCE.match(line):
            in_fence = not in_fence
            continue
        if in_fence or _QUOTE.match(line):
            continue
        yield line


def matches_trigger(text: str, trigger: Trigger) -> bool:
    """Return True if any candidate line of text is the trigger phrase."""
    for name, pattern in _TRIGGER_PATTERNS:
        if name is trigger:
            return any(pattern.match(line) for line in candidate_lines(text))
    return False


def detect_triggers(text: str) -> Set[Trigger]:
    """All triggers present in text."""
    found: Set[Trigger] = set()
    for line in candidate_lines(text):
        for name, pattern in _TRIGGER_PATTERNS:
            if pattern.match(line):
                found.add(name)
    return found
