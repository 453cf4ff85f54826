"""
Metadata Codec — Entry Header Encoding and Tolerant Decoding

Entries start with a delimited header block:

    ---
    id: "TB-1a2b3c4d5e6f"
    created_at: "2026-02-14T09:30:00.000Z"
    source_session_id: "sess-42"
    source_trigger: "EXIT_SANI_MODE"
    memory_type: "ThreadBorn"
    sealed: false
    ---
    # Title
    ...

Strings are JSON-quoted, booleans are bare.  Decoding never raises: files
without a well-formed header (older notes, foreign markdown) come back as
empty metadata with the original content as body.
"""

from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Optional

from sanimem.types import DecodedEntry, EntryMetadata

HEADER_DELIMITER = "---"

_KEY_LINE = re.compile(r"^([A-Za-z0-9_]+):\s*(.*)$")
_HEADING = re.compile(r"^\s{0,3}#{1,6}\s+(.*\S)\s*$")


def _encode_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return json.dumps("" if value is None else str(value), ensure_ascii=False)


def _decode_value(raw: str) -> Any:
    raw = raw.strip()
    if raw == "true":
        return True
    if raw == "false":
        return False
    if len(raw) >= 2 and raw[0] == raw[-1] == '"':
        try:
            return json.loads(raw)
        except ValueError:
            return raw[1:-1]
    if len(raw) >= 2 and raw[0] == raw[-1] == "'":
        return raw[1:-1]
    return raw


def encode(metadata: EntryMetadata) -> str:
    """Encode metadata as a header block (trailing newline included)."""
    lines = [HEADER_DELIMITER]
    for key, value in metadata.header_items():
        lines.append(f"{key}: {_encode_value(value)}")
    lines.append(HEADER_DELIMITER)
    return "\n".join(lines) + "\n"


def decode(content: str) -> DecodedEntry:
    """Split content into header dict and body. Never raises."""
    if not isinstance(content, str):
        return DecodedEntry(metadata={}, body="")
    lines = content.splitlines(keepends=True)
    if not lines or lines[0].strip() != HEADER_DELIMITER:
        return DecodedEntry(metadata={}, body=content)

    metadata: Dict[str, Any] = {}
    for idx in range(1, len(lines)):
        line = lines[idx].rstrip("\r\n")
        if line.strip() == HEADER_DELIMITER:
            body = "".join(lines[idx + 1:])
            return DecodedEntry(metadata=metadata, body=body)
        match = _KEY_LINE.match(line)
        if match:
            metadata[match.group(1)] = _decode_value(match.group(2))

    # Unterminated header: treat the whole file as body
    return DecodedEntry(metadata={}, body=content)


def render_entry(metadata: EntryMetadata, body_lines: List[str]) -> str:
    """Header plus body lines joined with newlines, ending in a newline."""
    body = "\n".join(body_lines).rstrip("\n")
    return encode(metadata) + body + "\n"


# ---------------------------------------------------------------------------
# Body helpers (Vault query)
# ---------------------------------------------------------------------------

def _title_index(lines: List[str]) -> int:
    for idx, line in enumerate(lines):
        if _HEADING.match(line):
            return idx
    return 0


def extract_title(body: str) -> str:
    """First markdown heading, else first non-blank line, else ''."""
    lines = [ln.strip() for ln in body.splitlines() if ln.strip()]
    if not lines:
        return ""
    line = lines[_title_index(lines)]
    match = _HEADING.match(line)
    return match.group(1).strip() if match else line


def extract_preview(body: str, max_lines: int = 4) -> str:
    """Up to max_lines non-blank lines following the title line."""
    lines = [ln.strip() for ln in body.splitlines() if ln.strip()]
    if not lines:
        return ""
    start = _title_index(lines) + 1
    return "\n".join(lines[start:start + max_lines])


def metadata_of(content: str) -> Optional[EntryMetadata]:
    """Typed metadata of an entry, or None if the header is foreign/missing."""
    return EntryMetadata.from_header(decode(content).metadata)
