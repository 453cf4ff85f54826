"""
Memory Data Model — Entries, Provenance, Results

Defines the fixed metadata header carried by every memory entry, the
provenance link that chains promoted and sealed entries back to their
origin, and the small result objects returned by the store, the query and
the injection detector.

Entries are immutable once written; the only permitted mutation is a Vault
append, which never touches the header.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Tuple

# ---------------------------------------------------------------------------
# Tiers and layout
# ---------------------------------------------------------------------------

MemoryType = Literal["ThreadBorn", "BridgeThread", "Vault", "Labyrinth"]
ProvenanceRelation = Literal["promoted_from", "sealed_from"]

VALID_MEMORY_TYPES: set = {"ThreadBorn", "BridgeThread", "Vault", "Labyrinth"}

MEMORY_ROOT = "memory"
THREADBORN_DIR = "ThreadBorn"
BRIDGETHREAD_DIR = "BridgeThread"
VAULT_DIR = "Vault"
LABYRINTH_DIR = "Labyrinth"

# Tier directories a promotion or seal may read from (never Vault)
ALLOWED_SOURCE_DIRS: Tuple[str, ...] = (THREADBORN_DIR, BRIDGETHREAD_DIR, LABYRINTH_DIR)

# Id prefix per tier
ID_PREFIXES: Dict[str, str] = {
    "ThreadBorn": "TB",
    "BridgeThread": "BT",
    "Vault": "VLT",
    "Labyrinth": "LAB",
}

# Header keys, in encoding order
REQUIRED_HEADER_KEYS: Tuple[str, ...] = (
    "id",
    "created_at",
    "source_session_id",
    "source_trigger",
    "memory_type",
    "sealed",
)
PROVENANCE_FIELDS: Tuple[str, ...] = ("id", "session_id", "trigger", "memory_type")


def now_utc() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def iso_timestamp(dt: Optional[datetime] = None) -> str:
    """UTC ISO-8601 with millisecond precision and a 'Z' suffix."""
    dt = (dt or now_utc()).astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def generate_id(memory_type: str) -> str:
    """Generate an entry id with the tier prefix (e.g. TB-1a2b3c4d5e6f)."""
    prefix = ID_PREFIXES.get(memory_type, "MEM")
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


# ---------------------------------------------------------------------------
# Provenance
# ---------------------------------------------------------------------------

@dataclass
class ProvenanceLink:
    """Link from a promoted/sealed entry back to the entry it came from."""

    relation: ProvenanceRelation = "promoted_from"
    id: Optional[str] = None
    session_id: Optional[str] = None
    trigger: Optional[str] = None
    memory_type: Optional[str] = None

    def header_items(self) -> List[Tuple[str, str]]:
        """Header key/value pairs for the fields that are known."""
        items = []
        for name in PROVENANCE_FIELDS:
            value = getattr(self, name)
            if value:
                items.append((f"{self.relation}_{name}", value))
        return items

    @classmethod
    def from_source(cls, relation: ProvenanceRelation, source: Dict[str, Any]) -> ProvenanceLink:
        """Build a link from the decoded header of the source entry."""

        def _str(key: str) -> Optional[str]:
            value = source.get(key)
            return value if isinstance(value, str) and value else None

        return cls(
            relation=relation,
            id=_str("id"),
            session_id=_str("source_session_id"),
            trigger=_str("source_trigger"),
            memory_type=_str("memory_type"),
        )

    @classmethod
    def from_header(cls, header: Dict[str, Any]) -> Optional[ProvenanceLink]:
        """Extract an existing link from a decoded header, if any."""
        for relation in ("promoted_from", "sealed_from"):
            values = {
                name: header.get(f"{relation}_{name}")
                for name in PROVENANCE_FIELDS
            }
            if any(isinstance(v, str) and v for v in values.values()):
                return cls(relation=relation, **{
                    k: v if isinstance(v, str) else None for k, v in values.items()
                })
        return None


# ---------------------------------------------------------------------------
# Entry metadata
# ---------------------------------------------------------------------------

@dataclass
class EntryMetadata:
    """
    Fixed metadata header of a memory entry.

    Rules:
    - sealed is True only for Vault entries.
    - provenance, when present, uses promoted_from for BridgeThread and
      sealed_from for Vault.
    """

    memory_type: MemoryType = "ThreadBorn"
    source_session_id: str = ""
    source_trigger: str = ""
    sealed: bool = False
    id: str = ""
    created_at: str = field(default_factory=iso_timestamp)
    provenance: Optional[ProvenanceLink] = None

    def __post_init__(self):
        if self.memory_type not in VALID_MEMORY_TYPES:
            raise ValueError(f"Invalid memory_type: {self.memory_type!r}")
        if self.sealed and self.memory_type != "Vault":
            raise ValueError("Only Vault entries may be sealed")
        if isinstance(self.provenance, dict):
            self.provenance = ProvenanceLink(**self.provenance)
        if not self.id:
            self.id = generate_id(self.memory_type)

    def header_items(self) -> List[Tuple[str, Any]]:
        """Ordered header pairs: required keys, then present provenance keys."""
        items: List[Tuple[str, Any]] = [
            ("id", self.id),
            ("created_at", self.created_at),
            ("source_session_id", self.source_session_id),
            ("source_trigger", self.source_trigger),
            ("memory_type", self.memory_type),
            ("sealed", self.sealed),
        ]
        if self.provenance is not None:
            items.extend(self.provenance.header_items())
        return items

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a flat header dictionary."""
        return dict(self.header_items())

    @classmethod
    def from_header(cls, header: Dict[str, Any]) -> Optional[EntryMetadata]:
        """Typed view of a decoded header. Returns None for foreign headers."""
        memory_type = header.get("memory_type")
        if memory_type not in VALID_MEMORY_TYPES or not header.get("id"):
            return None
        sealed = header.get("sealed") is True and memory_type == "Vault"
        return cls(
            memory_type=memory_type,
            source_session_id=str(header.get("source_session_id", "")),
            source_trigger=str(header.get("source_trigger", "")),
            sealed=sealed,
            id=str(header["id"]),
            created_at=str(header.get("created_at", "")),
            provenance=ProvenanceLink.from_header(header),
        )


@dataclass
class DecodedEntry:
    """Result of decoding an entry file: raw header dict plus body."""

    metadata: Dict[str, Any] = field(default_factory=dict)
    body: str = ""


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class MemoryWriteResult:
    """Where a write landed. path is absolute; tools relativize it."""

    path: Path
    filename: str
    entry_id: Optional[str] = None


@dataclass
class VaultQueryResult:
    """One Vault entry matched by a query."""

    path: str
    title: str
    preview: str
    created_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a plain dictionary."""
        return asdict(self)


@dataclass(frozen=True)
class PatternMatch:
    """An injection pattern that matched inbound content."""

    id: str
    label: str
    pattern: str

    def to_dict(self) -> Dict[str, str]:
        """Serialize to a plain dictionary."""
        return {"id": self.id, "label": self.label, "pattern": self.pattern}


@dataclass(frozen=True)
class ModeFlags:
    """Session mode flags as seen by callers."""

    sani_mode: bool = False
    labyrinth_mode: bool = False

    @property
    def any_active(self) -> bool:
        """Return True if at least one mode is on."""
        return self.sani_mode or self.labyrinth_mode

    def to_dict(self) -> Dict[str, bool]:
        """Serialize using the session-store key names."""
        return {"saniMode": self.sani_mode, "labyrinthMode": self.labyrinth_mode}
