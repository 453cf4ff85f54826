"""
Tool Request Structures — validated parameters for each memory operation.

Tool arguments arrive as loosely typed values.  Each operation converts them
into one of these dataclasses, which trims strings and checks required
fields in __post_init__, so the store only ever sees well-formed input.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Optional

from sanimem.errors import InvalidRequest


def _required(name: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidRequest(f"{name} is required")
    return value.strip()


def _optional(name: str, value: Any) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidRequest(f"{name} must be a string")
    return value.strip() or None


def _tags(value: Any) -> List[str]:
    """Accept a list of strings or a comma-separated string."""
    if value is None:
        return []
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, (list, tuple)):
        raise InvalidRequest("tags must be a list of strings")
    return [t.strip() for t in value if isinstance(t, str) and t.strip()]


@dataclass
class ThreadbornWriteRequest:
    """threadborn_write: a new working note."""
    title: str
    body: str
    tags: List[str] = field(default_factory=list)

    def __post_init__(self):
        self.title = _required("title", self.title)
        self.body = _required("body", self.body)
        self.tags = _tags(self.tags)


@dataclass
class BridgePromoteRequest:
    """bridge_promote: promote a ThreadBorn/Labyrinth entry."""
    source_path: str
    title: Optional[str] = None

    def __post_init__(self):
        self.source_path = _required("source_path", self.source_path)
        self.title = _optional("title", self.title)


@dataclass
class VaultSealRequest:
    """vault_seal: seal a new Vault entry or append to an existing one."""
    source_path: str
    title: Optional[str] = None
    append: bool = False
    target_path: Optional[str] = None

    def __post_init__(self):
        self.source_path = _required("source_path", self.source_path)
        self.title = _optional("title", self.title)
        self.target_path = _optional("target_path", self.target_path)
        if not isinstance(self.append, bool):
            raise InvalidRequest("append must be a boolean")


@dataclass
class LabyrinthSnapshotRequest:
    """labyrinth_snapshot: an explicit identity snapshot."""
    title: str
    body: str

    def __post_init__(self):
        self.title = _required("title", self.title)
        self.body = _required("body", self.body)


@dataclass
class VaultQueryRequest:
    """vault_query: list Vault entries by scope and tags."""
    scope: Optional[str] = None
    tags: List[str] = field(default_factory=list)

    def __post_init__(self):
        self.scope = _optional("scope", self.scope)
        self.tags = _tags(self.tags)


@dataclass
class SessionLogEntryRequest:
    """session_log_entry: journal what was asked and what happened."""
    input: str
    result: str
    tool_name: Optional[str] = None
    recommend: Optional[bool] = None
    tags: List[str] = field(default_factory=list)

    def __post_init__(self):
        self.input = _required("input", self.input)
        self.result = _required("result", self.result)
        self.tool_name = _optional("tool_name", self.tool_name)
        if self.recommend is not None and not isinstance(self.recommend, bool):
            raise InvalidRequest("recommend must be a boolean")
        self.tags = _tags(self.tags)
