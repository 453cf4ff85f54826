"""
Injection Pattern Detector & Audit Logger

Heuristic screen for prompt-injection-shaped inbound text.  Detection is
pure: an ordered registry of compiled regexes is evaluated against the
content and every hit is reported in registry order.  Nothing is blocked
here; hits are appended to an audit file under ThreadBorn so an operator
can review them.

Audit path:
    memory/ThreadBorn/injection-attempts/<YYYY-MM-DD>/<HHMM>.md

Several attempts in the same minute share one file (append mode).  The audit
write is best effort: failures are logged at DEBUG and never raised.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Literal, Optional, Sequence, Tuple, Union

from sanimem.types import MEMORY_ROOT, THREADBORN_DIR, PatternMatch, iso_timestamp, now_utc

logger = logging.getLogger(__name__)

PatternScope = Literal["all", "non_agent_channel"]

INJECTION_AUDIT_DIR = "injection-attempts"
DEFAULT_INTERNAL_CHANNELS: Tuple[str, ...] = ("internal", "agent", "webchat")


@dataclass(frozen=True)
class InjectionPattern:
    """One registry entry."""

    id: str
    label: str
    regex: re.Pattern
    scope: PatternScope = "all"


def _p(pattern: str, flags: int = re.IGNORECASE) -> re.Pattern:
    return re.compile(pattern, flags)


INJECTION_PATTERNS: Tuple[InjectionPattern, ...] = (
    InjectionPattern(
        "tool_override_syntax", "Tool override syntax",
        _p(r"""\{\s*"tool"\s*:\s*["'][^"']+["']"""),
    ),
    InjectionPattern(
        "tool_key_mention", "Raw tool-call keys",
        _p(r'"(?:tool|tool_name|function_call)"\s*:'),
    ),
    InjectionPattern(
        "fenced_system_block", "Fenced system/prompt block",
        _p(r"(?:```|~~~)\s*(?:system|prompt|instructions?)\b"),
    ),
    InjectionPattern(
        "markdown_system_header", "Markdown system prompt header",
        _p(r"^\s{0,3}#{1,6}\s*(?:system(?:\s+prompt)?|instructions|developer\s+message)\s*:?\s*$",
           re.IGNORECASE | re.MULTILINE),
    ),
    InjectionPattern(
        "system_prompt_override", "System prompt override attempts",
        _p(r"\b(?:system\s+prompt|override\s+system|ignore\s+system|replace\s+system)\b"),
    ),
    InjectionPattern(
        "instruction_override", "Instruction override",
        _p(r"\b(?:ignore|disregard|forget)\s+(?:all\s+)?(?:(?:your|the|any)\s+)?"
           r"(?:previous|prior|above|earlier)\s+(?:instructions?|rules|messages?)\b"),
    ),
    InjectionPattern(
        "persona_redefinition", "Persona redefinition",
        _p(r"\b(?:you\s+are\s+now|from\s+now\s+on\s+you\s+are|act\s+as\s+(?:an?\s+)?|"
           r"pretend\s+(?:to\s+be|you\s+are))"),
    ),
    InjectionPattern(
        "internal_tool_syntax", "Tool invocation markup",
        _p(r"<\s*/?\s*(?:tool_use|tool_call|tool_result|function_call|function_calls|invoke)\b[^>]*>"),
    ),
    InjectionPattern(
        "fake_memory_block", "Fake memory block",
        _p(r"\b(?:memory\s+block|begin\s+memory|end\s+memory|threadborn)\b"),
    ),
    InjectionPattern(
        "embedded_agent_command", "Embedded agent commands in non-agent channels",
        _p(r"\b(?:sanimem\s+(?:agent|serve|sealing)|threadborn_write|vault_query|vault_seal|"
           r"bridge_promote|labyrinth_snapshot|session_log_entry)\b"),
        scope="non_agent_channel",
    ),
)


def is_non_agent_channel(
    channel: Optional[str],
    internal_channels: Iterable[str] = DEFAULT_INTERNAL_CHANNELS,
) -> bool:
    """A named channel that is not one of the internal/agent channels."""
    name = (channel or "").strip().lower()
    if not name:
        return False
    return name not in {c.strip().lower() for c in internal_channels}


def detect_injection_patterns(
    content: str,
    channel: Optional[str] = None,
    internal_channels: Iterable[str] = DEFAULT_INTERNAL_CHANNELS,
    patterns: Sequence[InjectionPattern] = INJECTION_PATTERNS,
) -> List[PatternMatch]:
    """Return the registry patterns that match content, in registry order."""
    if not content:
        return []
    non_agent = is_non_agent_channel(channel, internal_channels)
    matches: List[PatternMatch] = []
    for entry in patterns:
        if entry.scope == "non_agent_channel" and not non_agent:
            continue
        if entry.regex.search(content):
            matches.append(PatternMatch(entry.id, entry.label, entry.regex.pattern))
    return matches


def audit_path(
    workspace_dir: Union[str, Path],
    timestamp: datetime,
    ext: str = ".md",
) -> Path:
    """Audit file for a given instant: .../<YYYY-MM-DD>/<HHMM><ext>."""
    ts = timestamp.astimezone(timezone.utc)
    return (
        Path(workspace_dir) / MEMORY_ROOT / THREADBORN_DIR / INJECTION_AUDIT_DIR
        / ts.strftime("%Y-%m-%d") / f"{ts.strftime('%H%M')}{ext}"
    )


def format_audit_entry(
    session_key: str,
    channel: str,
    raw_input: str,
    matches: Sequence[PatternMatch],
    timestamp: datetime,
) -> str:
    """One audit record; the raw input is kept verbatim."""
    lines = [
        "---",
        f"timestamp: {iso_timestamp(timestamp)}",
        f"sessionKey: {session_key}",
        f"channel: {channel}",
        "patterns:",
    ]
    lines.extend(f"- {m.id}: {m.label} ({m.pattern})" for m in matches)
    lines.extend(["raw_input:", raw_input, ""])
    return "\n".join(lines)


def log_injection_attempt(
    workspace_dir: Union[str, Path],
    session_key: str,
    channel: str,
    raw_input: str,
    matches: Sequence[PatternMatch],
    timestamp: Optional[datetime] = None,
    ext: str = ".md",
) -> Optional[Path]:
    """
    Append an audit record for matches.  No-op when matches is empty.

    Returns:
        The audit file path, or None when nothing was written.
    """
    if not matches:
        return None
    timestamp = timestamp or now_utc()
    try:
        target = audit_path(workspace_dir, timestamp, ext)
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, "a", encoding="utf-8") as f:
            f.write(format_audit_entry(session_key, channel, raw_input, matches, timestamp))
    except Exception as e:
        logger.debug("Failed to write injection audit entry: %s", e)
        return None
    logger.info(
        "Injection patterns %s from channel %s (session %s)",
        ",".join(m.id for m in matches), channel, session_key,
    )
    return target
