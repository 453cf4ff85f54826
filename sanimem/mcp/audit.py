"""
Memory Tool Audit — one JSONL record per governed memory tool call.

Each tool opens a ToolCall with begin() and closes it with finish() from its
finally block, so every call is accounted for whether it wrote an entry, was
refused by governance, or failed unexpectedly.

Record keys:
    v        schema version
    ts       UTC timestamp
    rid      request id
    tool     tool name
    tier     memory tier the tool touches (absent for sani_mode_status)
    sid      resolved source session id, or "unknown"
    outcome  ok | error | denied | failed
    err      exception class name for error, denied and failed outcomes
    d        detail: workspace-relative paths, entry id, content digest
    ms       latency in milliseconds

Entry bodies never reach the log.  Content is summarised as its size, a
SHA-256 digest and a 120-char preview.

finish() is fire-and-forget: a broken output stream never disrupts a tool.
"""

from __future__ import annotations

import hashlib
import json
import logging
import sys
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, TextIO

from sanimem.errors import SealingDisabled
from sanimem.types import iso_timestamp

logger = logging.getLogger(__name__)

AUDIT_SCHEMA_VERSION = 2
PREVIEW_MAX_CHARS = 120

TOOL_TIERS: Dict[str, str] = {
    "threadborn_write": "ThreadBorn",
    "session_log_entry": "ThreadBorn",
    "bridge_promote": "BridgeThread",
    "labyrinth_snapshot": "Labyrinth",
    "vault_seal": "Vault",
    "vault_query": "Vault",
}


@dataclass
class ToolCall:
    """Audit state of one in-flight memory tool call."""

    tool: str
    rid: str
    started: float
    sid: str = "unknown"
    outcome: str = "ok"
    error: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)

    @property
    def tier(self) -> Optional[str]:
        return TOOL_TIERS.get(self.tool)

    def refused(self, exc: Exception) -> None:
        """Governance refusal. A closed sealing gate is 'denied'."""
        self.outcome = "denied" if isinstance(exc, SealingDisabled) else "error"
        self.error = type(exc).__name__

    def failed(self, exc: BaseException) -> None:
        self.outcome = "failed"
        self.error = type(exc).__name__

    def wrote(self, rel_path: str, entry_id: Optional[str] = None) -> None:
        """Record the entry the call created or appended to."""
        self.detail["path"] = rel_path
        if entry_id:
            self.detail["id"] = entry_id

    def to_record(self, latency_ms: float) -> Dict[str, Any]:
        record: Dict[str, Any] = {
            "v": AUDIT_SCHEMA_VERSION,
            "ts": iso_timestamp(),
            "rid": self.rid,
            "tool": self.tool,
        }
        if self.tier:
            record["tier"] = self.tier
        record["sid"] = self.sid
        record["outcome"] = self.outcome
        if self.error:
            record["err"] = self.error
        detail = {k: v for k, v in self.detail.items() if v is not None}
        if detail:
            record["d"] = detail
        record["ms"] = round(latency_ms, 1)
        return record


class ToolAuditLogger:
    """JSONL audit trail for the memory MCP tools."""

    def __init__(self, output: Optional[TextIO] = None):
        """
        Args:
            output: File handle for audit output. None → stderr.
        """
        self._output = output if output is not None else sys.stderr

    def begin(self, tool: str, **detail: Any) -> ToolCall:
        """Open a ToolCall with a fresh request id and the start time."""
        return ToolCall(tool=tool, rid=uuid.uuid4().hex, started=time.monotonic(),
                        detail=dict(detail))

    def finish(self, call: ToolCall) -> None:
        """Write the record for a finished call. Never raises."""
        try:
            record = call.to_record((time.monotonic() - call.started) * 1000)
            line = json.dumps(record, ensure_ascii=False, separators=(",", ":"))
            self._output.write(line + "\n")
            self._output.flush()
        except Exception as e:
            logger.debug("Tool audit write failed for %s: %s", call.tool, e)

    @staticmethod
    def content_digest(content: str) -> Dict[str, Any]:
        """
        Audit-safe summary of an entry body.

        - bytes: UTF-8 size
        - sha256: hex digest, for correlating with the file on disk
        - preview: first 120 chars on one line, '…' when truncated
        """
        content = content or ""
        encoded = content.encode("utf-8")
        preview = " ".join(content[:PREVIEW_MAX_CHARS].split())
        if len(content) > PREVIEW_MAX_CHARS:
            preview += "…"
        return {
            "bytes": len(encoded),
            "sha256": hashlib.sha256(encoded).hexdigest(),
            "preview": preview,
        }
