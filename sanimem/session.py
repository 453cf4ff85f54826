"""
Session Store — Per-Session Records and Transcript Snippets

The session store is owned by the agent runtime; sanimem only needs a
read / atomic-update contract keyed by session key.  Two implementations:

    InMemorySessionStore  — process-local dict, resets on restart
    JsonSessionStore      — one JSON object on disk, {session_key: record}

JsonSessionStore serializes read-modify-write with a FileLock on
<store>.lock and replaces the file atomically (write temp, then rename), so
concurrent updates for the same key never interleave.

Also provides read_recent_snippets() for Labyrinth snapshots: the last N
messages of a JSONL transcript, role + clipped text, oldest first.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Union

from filelock import FileLock

logger = logging.getLogger(__name__)

SessionRecord = Dict[str, Any]
RecordUpdater = Callable[[SessionRecord], None]

DEFAULT_SNIPPET_LIMIT = 6
DEFAULT_SNIPPET_MAX_CHARS = 320
MIN_SNIPPET_MAX_CHARS = 120


class SessionStoreError(ValueError):
    """The on-disk session store exists but cannot be decoded."""


class SessionStore(Protocol):
    """Read/update contract of the external session store."""

    def get(self, session_key: str) -> Optional[SessionRecord]:
        """Return a copy of the record for session_key, or None."""
        ...

    def update_entry(self, session_key: str, updater: RecordUpdater) -> SessionRecord:
        """Apply updater to the record (created empty if missing) atomically."""
        ...


def resolve_session_id(record: Optional[SessionRecord], session_key: str) -> str:
    """The session id recorded for a key, falling back to the key itself."""
    if record:
        sid = record.get("sessionId")
        if isinstance(sid, str) and sid.strip():
            return sid.strip()
    return session_key


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


class InMemorySessionStore:
    """In-memory session records keyed by session key. No persistence."""

    def __init__(self, records: Optional[Dict[str, SessionRecord]] = None) -> None:
        self._records: Dict[str, SessionRecord] = copy.deepcopy(records or {})
        self._lock = threading.Lock()

    def get(self, session_key: str) -> Optional[SessionRecord]:
        """Return a copy of the record, or None."""
        with self._lock:
            record = self._records.get(session_key)
            return copy.deepcopy(record) if record is not None else None

    def update_entry(self, session_key: str, updater: RecordUpdater) -> SessionRecord:
        """Mutate the record under the store lock and return a copy."""
        with self._lock:
            record = self._records.setdefault(session_key, {})
            updater(record)
            return copy.deepcopy(record)


# ---------------------------------------------------------------------------
# JSON file store
# ---------------------------------------------------------------------------


class JsonSessionStore:
    """Session records persisted as a single JSON object."""

    def __init__(self, path: Union[str, Path], lock_timeout: float = 10.0) -> None:
        self.path = Path(path)
        self.lock_path = Path(f"{self.path}.lock")
        self.lock_timeout = lock_timeout

    def _read(self) -> Dict[str, SessionRecord]:
        """Read the store. Only a missing file counts as empty."""
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise SessionStoreError(f"Session store {self.path} is unreadable: {e}") from e
        if not isinstance(data, dict):
            raise SessionStoreError(
                f"Session store {self.path} is unreadable: top level is "
                f"{type(data).__name__}, expected object"
            )
        return data

    def load(self) -> Dict[str, SessionRecord]:
        """Load all records for reading. Missing or unreadable files yield {}."""
        try:
            return self._read()
        except SessionStoreError as e:
            logger.warning("%s", e)
            return {}

    def _save(self, data: Dict[str, SessionRecord]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
            f.write("\n")
        os.replace(tmp_path, self.path)

    def get(self, session_key: str) -> Optional[SessionRecord]:
        """Return the record for session_key, or None."""
        record = self.load().get(session_key)
        return record if isinstance(record, dict) else None

    def update_entry(self, session_key: str, updater: RecordUpdater) -> SessionRecord:
        """Read-modify-write one record while holding the store lock.

        Raises SessionStoreError, leaving the file untouched, when the
        existing store cannot be decoded.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with FileLock(str(self.lock_path), timeout=self.lock_timeout):
            data = self._read()
            record = data.get(session_key)
            if not isinstance(record, dict):
                record = {}
            updater(record)
            data[session_key] = record
            self._save(data)
            return copy.deepcopy(record)


# ---------------------------------------------------------------------------
# Transcript snippets
# ---------------------------------------------------------------------------


def collect_text(value: Any) -> str:
    """Flatten message content (str, list of parts, nested dicts) to text."""
    if not value:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return "".join(collect_text(part) for part in value)
    if isinstance(value, dict):
        if isinstance(value.get("text"), str):
            return value["text"]
        content = value.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            return "".join(collect_text(part) for part in content)
        if isinstance(value.get("message"), dict):
            return collect_text(value["message"])
    return ""


def _load_transcript_messages(session_file: Union[str, Path]) -> List[Dict[str, Any]]:
    messages: List[Dict[str, Any]] = []
    with open(session_file, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                continue
            if not isinstance(event, dict):
                continue
            if isinstance(event.get("message"), dict):
                messages.append(event["message"])
            elif "role" in event:
                messages.append(event)
    return messages


def read_recent_snippets(
    session_file: Optional[Union[str, Path]],
    limit: int = DEFAULT_SNIPPET_LIMIT,
    max_chars: int = DEFAULT_SNIPPET_MAX_CHARS,
) -> List[Dict[str, str]]:
    """
    Last `limit` non-empty messages of a JSONL transcript, oldest first.

    Messages are collected newest-first and reversed.  Text longer than
    max_chars is clipped with an ellipsis.  An unreadable transcript yields
    an empty list.
    """
    if not session_file:
        return []
    limit = max(1, limit)
    max_chars = max(MIN_SNIPPET_MAX_CHARS, max_chars)
    try:
        messages = _load_transcript_messages(session_file)
    except (OSError, UnicodeDecodeError) as e:
        logger.debug("Transcript %s unreadable: %s", session_file, e)
        return []

    snippets: List[Dict[str, str]] = []
    for message in reversed(messages):
        if len(snippets) >= limit:
            break
        role = message.get("role")
        role = role if isinstance(role, str) else "unknown"
        text = collect_text(message.get("content")).strip()
        if not text:
            continue
        if len(text) > max_chars:
            text = text[:max_chars] + "…"
        snippets.append({"role": role, "text": text})
    snippets.reverse()
    return snippets
