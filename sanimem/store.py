"""
Governed Memory Store — Markdown Tiers with Provenance

Layout (relative to the workspace root):
    memory/ThreadBorn/     - working notes (default, least privileged)
    memory/BridgeThread/   - promoted notes with promoted_from_* provenance
    memory/Vault/          - sealed records, append-only, policy-gated
    memory/Labyrinth/      - identity snapshots, no suffix retry

Every entry carries the fixed metadata header (see codec.py) plus a
markdown body starting with "# Title".  Paths from callers go through the
workspace guard before any read or write; file creation goes through the
exclusive-create allocator.

The store never catches its own errors: sandbox, allocation and I/O
failures propagate to the caller unchanged.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Union

from sanimem.allocator import create_unique, slugify, timestamp_slug
from sanimem.codec import decode, extract_preview, extract_title, render_entry
from sanimem.errors import (
    DisallowedSource,
    InvalidAppendCombination,
    MissingTarget,
    ProvenanceUnresolved,
)
from sanimem.guard import WorkspaceGuard
from sanimem.types import (
    BRIDGETHREAD_DIR,
    LABYRINTH_DIR,
    THREADBORN_DIR,
    VAULT_DIR,
    DecodedEntry,
    EntryMetadata,
    MemoryWriteResult,
    ProvenanceLink,
    VaultQueryResult,
    iso_timestamp,
    now_utc,
)

logger = logging.getLogger(__name__)

PREVIEW_LINES = 4

Clock = Callable[[], datetime]


def _clean_tags(tags: Optional[Sequence[str]]) -> List[str]:
    return [t.strip() for t in (tags or []) if isinstance(t, str) and t.strip()]


class GovernedMemoryStore:
    """
    Typed writes and read-only queries over the four memory tiers.

    Rules:
    - every write names its originating session and trigger
    - Vault entries are created sealed and only ever appended to
    - Labyrinth snapshots never take a -N suffix
    """

    def __init__(self, workspace_dir: Union[str, Path], clock: Optional[Clock] = None):
        self.guard = WorkspaceGuard(workspace_dir)
        self._clock: Clock = clock or now_utc

    @property
    def workspace_dir(self) -> Path:
        """Return the canonical workspace root."""
        return self.guard.root

    def now(self) -> datetime:
        """Current time from the store clock."""
        return self._clock()

    def relative(self, path: Union[str, Path]) -> str:
        """Workspace-relative forward-slash path."""
        return self.guard.relative_path(path)

    # -- Internals ---------------------------------------------------------

    @staticmethod
    def _require_provenance(source_session_id: str, source_trigger: str) -> None:
        if not (source_session_id or "").strip():
            raise ProvenanceUnresolved(
                "source_session_id is required: the originating session of this write is unknown"
            )
        if not (source_trigger or "").strip():
            raise ProvenanceUnresolved(
                "source_trigger is required: the event that caused this write is unknown"
            )

    def _read_source(self, source_path: Union[str, Path]) -> tuple:
        resolved = self.guard.resolve_allowed_source(source_path)
        if self.guard.is_inside_vault(resolved):
            raise DisallowedSource(f"Vault entries cannot be used as a source: {source_path}")
        content = resolved.read_text(encoding="utf-8")
        return resolved, decode(content)

    def _write(
        self,
        directory: Path,
        title: str,
        metadata: EntryMetadata,
        body_lines: List[str],
        created: datetime,
        *,
        allow_suffix: bool = True,
        filename_base: Optional[str] = None,
    ) -> MemoryWriteResult:
        base = filename_base or f"{timestamp_slug(created)}-{slugify(title)}"
        content = render_entry(metadata, body_lines)
        result = create_unique(directory, base, content, allow_suffix=allow_suffix)
        result.entry_id = metadata.id
        logger.info(
            "Wrote %s entry %s (%s, trigger=%s)",
            metadata.memory_type, self.relative(result.path),
            metadata.id, metadata.source_trigger,
        )
        return result

    # -- ThreadBorn --------------------------------------------------------

    def write_threadborn(
        self,
        title: str,
        body: str,
        tags: Optional[Sequence[str]] = None,
        *,
        source_session_id: str,
        source_trigger: str,
        subdir: Optional[str] = None,
        filename_base: Optional[str] = None,
    ) -> MemoryWriteResult:
        """
        Write a new ThreadBorn working note.

        Args:
            title: Note title (defaults to "ThreadBorn Entry").
            body: Markdown body text.
            tags: Optional tags, rendered as a "- Tags:" line.
            source_session_id: Originating session.
            source_trigger: Event name that caused the write.
            subdir: Optional folder under memory/ThreadBorn (sandboxed).
            filename_base: Override the <timestamp>-<slug> filename.

        Returns:
            MemoryWriteResult of the created file.
        """
        self._require_provenance(source_session_id, source_trigger)
        directory = (
            self.guard.resolve_under(THREADBORN_DIR, subdir)
            if subdir else self.guard.tier_dir(THREADBORN_DIR)
        )
        created = self.now()
        title = (title or "").strip() or "ThreadBorn Entry"
        clean_tags = _clean_tags(tags)
        metadata = EntryMetadata(
            memory_type="ThreadBorn",
            source_session_id=source_session_id,
            source_trigger=source_trigger,
            created_at=iso_timestamp(created),
        )
        lines = [f"# {title}", "", f"- Created: {iso_timestamp(created)}"]
        if clean_tags:
            lines.append(f"- Tags: {', '.join(clean_tags)}")
        lines.extend(["", (body or "").strip()])
        return self._write(
            directory, title, metadata, lines, created, filename_base=filename_base,
        )

    # -- BridgeThread ------------------------------------------------------

    def write_bridge_promotion(
        self,
        source_path: Union[str, Path],
        title: Optional[str] = None,
        *,
        source_session_id: str,
        source_trigger: str,
    ) -> MemoryWriteResult:
        """
        Promote a ThreadBorn/BridgeThread/Labyrinth entry into BridgeThread.

        The new entry's promoted_from_* keys come from the source header, so
        the chain points at the source's own id, session and trigger.
        """
        self._require_provenance(source_session_id, source_trigger)
        resolved, source = self._read_source(source_path)
        created = self.now()
        base_title = (title or "").strip() or resolved.name
        metadata = EntryMetadata(
            memory_type="BridgeThread",
            source_session_id=source_session_id,
            source_trigger=source_trigger,
            created_at=iso_timestamp(created),
            provenance=ProvenanceLink.from_source("promoted_from", source.metadata),
        )
        lines = [
            f"# {base_title}",
            "",
            f"- PromotedFrom: {self.relative(resolved)}",
            f"- PromotedAt: {iso_timestamp(created)}",
            "",
            source.body.strip(),
        ]
        return self._write(
            self.guard.tier_dir(BRIDGETHREAD_DIR), base_title, metadata, lines, created,
        )

    # -- Vault -------------------------------------------------------------

    def write_vault_seal(
        self,
        source_path: Union[str, Path],
        title: Optional[str] = None,
        *,
        source_session_id: str,
        source_trigger: str,
        append: bool = False,
        target_path: Optional[Union[str, Path]] = None,
    ) -> MemoryWriteResult:
        """
        Seal a source entry into Vault, or append it to an existing Vault entry.

        Seal mode (default) creates a new sealed entry with sealed_from_*
        provenance.  Append mode requires target_path inside memory/Vault
        and adds an "Appended" section; it is the only in-place mutation
        the store performs.

        Raises:
            InvalidAppendCombination: target_path given without append=True.
            MissingTarget: append=True without an existing target.
            DisallowedSource / PathEscape: sandbox violations.
        """
        self._require_provenance(source_session_id, source_trigger)
        target_raw = str(target_path).strip() if target_path is not None else ""

        if append:
            return self._append_to_vault(source_path, target_raw)

        if target_raw:
            raise InvalidAppendCombination(
                "target_path is only valid with append=true. Omit target_path to seal "
                "a new Vault entry, or set append=true to append to an existing one."
            )

        resolved, source = self._read_source(source_path)
        created = self.now()
        base_title = (title or "").strip() or resolved.name
        metadata = EntryMetadata(
            memory_type="Vault",
            source_session_id=source_session_id,
            source_trigger=source_trigger,
            sealed=True,
            created_at=iso_timestamp(created),
            provenance=ProvenanceLink.from_source("sealed_from", source.metadata),
        )
        lines = [
            f"# {base_title}",
            "",
            "- SEALED: true",
            f"- SealedFrom: {self.relative(resolved)}",
            f"- SealedAt: {iso_timestamp(created)}",
            "",
            source.body.strip(),
        ]
        return self._write(
            self.guard.tier_dir(VAULT_DIR), base_title, metadata, lines, created,
        )

    def _append_to_vault(self, source_path: Union[str, Path], target_raw: str) -> MemoryWriteResult:
        if not target_raw:
            raise MissingTarget(
                "append=true requires target_path naming an existing entry under memory/Vault"
            )
        target = self.guard.resolve_vault_target(target_raw)
        if not target.is_file():
            raise MissingTarget(
                f"Append target does not exist: {target_raw}. Seal a new entry first "
                "(append=false, no target_path)."
            )
        resolved, source = self._read_source(source_path)
        existing = target.read_text(encoding="utf-8")
        created = self.now()
        block = [
            "",
            "## Appended",
            "",
            f"- AppendedAt: {iso_timestamp(created)}",
            f"- AppendedFrom: {self.relative(resolved)}",
            "",
            source.body.strip(),
            "",
        ]
        prefix = "" if existing.endswith("\n") else "\n"
        with open(target, "a", encoding="utf-8") as f:
            f.write(prefix + "\n".join(block))
        entry_id = decode(existing).metadata.get("id")
        logger.info(
            "Appended %s to Vault entry %s",
            self.relative(resolved), self.relative(target),
        )
        return MemoryWriteResult(
            path=target,
            filename=target.name,
            entry_id=entry_id if isinstance(entry_id, str) else None,
        )

    # -- Labyrinth ---------------------------------------------------------

    def write_labyrinth_snapshot(
        self,
        title: str,
        body: str,
        *,
        source_session_id: str,
        source_trigger: str,
    ) -> MemoryWriteResult:
        """Write a Labyrinth snapshot. A filename collision fails outright."""
        self._require_provenance(source_session_id, source_trigger)
        created = self.now()
        title = (title or "").strip() or "Labyrinth Snapshot"
        metadata = EntryMetadata(
            memory_type="Labyrinth",
            source_session_id=source_session_id,
            source_trigger=source_trigger,
            created_at=iso_timestamp(created),
        )
        lines = [
            f"# {title}",
            "",
            f"- Created: {iso_timestamp(created)}",
            "",
            (body or "").strip(),
        ]
        return self._write(
            self.guard.tier_dir(LABYRINTH_DIR), title, metadata, lines, created,
            allow_suffix=False,
        )

    # -- Reads -------------------------------------------------------------

    def read_entry(self, rel_path: Union[str, Path]) -> DecodedEntry:
        """Read and decode one entry inside the workspace."""
        resolved = self.guard.resolve(rel_path)
        return decode(resolved.read_text(encoding="utf-8"))

    def query_vault(
        self,
        scope: Optional[str] = None,
        tags: Optional[Sequence[str]] = None,
    ) -> List[VaultQueryResult]:
        """
        List Vault entries, optionally narrowed to a scope folder and tags.

        The scope folder is used when it exists, otherwise the Vault root.
        Every tag must appear (case-insensitive substring) in the raw file.
        Read-only: nothing is created, even the Vault directory.
        """
        vault_dir = self.guard.tier_dir(VAULT_DIR)
        base = vault_dir
        if scope and scope.strip():
            candidate = self.guard.resolve_under(VAULT_DIR, scope)
            if candidate.is_dir():
                base = candidate
        if not base.is_dir():
            return []

        wanted = [t.lower() for t in _clean_tags(tags)]
        results: List[VaultQueryResult] = []
        for path in sorted(base.rglob("*.md")):
            if not path.is_file() or not self.guard.contains(path):
                continue
            raw = path.read_text(encoding="utf-8", errors="replace")
            lowered = raw.lower()
            if wanted and not all(tag in lowered for tag in wanted):
                continue
            decoded = decode(raw)
            created_at = decoded.metadata.get("created_at")
            results.append(VaultQueryResult(
                path=self.relative(path),
                title=extract_title(decoded.body) or path.stem,
                preview=extract_preview(decoded.body, PREVIEW_LINES),
                created_at=created_at if isinstance(created_at, str) else None,
            ))
        logger.debug("Vault query scope=%s tags=%s -> %d result(s)", scope, wanted, len(results))
        return results
