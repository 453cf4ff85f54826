"""
Workspace Guard — Path Sandbox for Memory Reads and Writes

First line of defense for every store operation: tool arguments are
attacker-influenced, so each path is resolved (symlinks followed) against
the workspace root and rejected unless it lands strictly inside it.

Algorithm:
1. Join relative input onto the root (absolute input is taken as-is)
2. Resolve: Path.resolve(strict=False)
3. Containment: resolved must be a strict descendant of the root
4. Optional tier check: source paths must live under ThreadBorn,
   BridgeThread or Labyrinth; append targets must live under Vault

The guard is cheap to construct; the store builds one per workspace.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Optional, Union

from sanimem.errors import DisallowedSource, PathEscape
from sanimem.types import ALLOWED_SOURCE_DIRS, MEMORY_ROOT, VAULT_DIR

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def _is_strict_descendant(path: Path, root: Path) -> bool:
    if path == root:
        return False
    try:
        path.relative_to(root)
    except ValueError:
        return False
    return True


class WorkspaceGuard:
    """Path containment for one workspace root."""

    def __init__(self, workspace_dir: PathLike):
        if not str(workspace_dir).strip():
            raise PathEscape("Workspace directory is required")
        self._root = Path(workspace_dir).resolve()

    @property
    def root(self) -> Path:
        """Return the canonical workspace root."""
        return self._root

    @property
    def memory_root(self) -> Path:
        """Return <root>/memory."""
        return self._root / MEMORY_ROOT

    def tier_dir(self, tier: str) -> Path:
        """Return <root>/memory/<tier>."""
        return self.memory_root / tier

    def resolve(self, rel_path: PathLike) -> Path:
        """
        Resolve a path against the workspace root.

        Raises PathEscape if the result is not strictly inside the root, or
        if the path cannot be resolved at all (NUL bytes, symlink loops).
        """
        raw = str(rel_path).strip() if rel_path is not None else ""
        if not raw:
            raise PathEscape("Path is required")
        if "\x00" in raw:
            logger.warning("Rejected path containing NUL byte: %r", raw)
            raise PathEscape(f"Path contains a NUL byte: {raw!r}")
        candidate = Path(raw)
        if not candidate.is_absolute():
            candidate = self._root / candidate
        try:
            resolved = candidate.resolve()
        except (OSError, ValueError, RuntimeError) as e:
            logger.warning("Rejected unresolvable path %r: %s", raw, e)
            raise PathEscape(f"Path cannot be resolved: {raw!r}") from e
        if not _is_strict_descendant(resolved, self._root):
            logger.warning("Rejected path outside workspace: %s", raw)
            raise PathEscape(f"Path escapes workspace: {raw}")
        return resolved

    def _resolve_within(self, rel_path: PathLike, tiers: Iterable[str]) -> Optional[Path]:
        resolved = self.resolve(rel_path)
        for tier in tiers:
            if _is_strict_descendant(resolved, self.tier_dir(tier).resolve()):
                return resolved
        return None

    def resolve_allowed_source(self, rel_path: PathLike) -> Path:
        """
        Resolve a promotion/seal source path.

        Sources must live under memory/ThreadBorn, memory/BridgeThread or
        memory/Labyrinth.  Vault is never a valid source.
        """
        resolved = self._resolve_within(rel_path, ALLOWED_SOURCE_DIRS)
        if resolved is None:
            allowed = ", ".join(f"{MEMORY_ROOT}/{d}" for d in ALLOWED_SOURCE_DIRS)
            raise DisallowedSource(
                f"Source must be inside one of: {allowed} (got '{rel_path}')"
            )
        return resolved

    def resolve_vault_target(self, rel_path: PathLike) -> Path:
        """Resolve an append target, which must be strictly inside memory/Vault."""
        resolved = self._resolve_within(rel_path, (VAULT_DIR,))
        if resolved is None:
            raise DisallowedSource(
                f"Append target must be inside {MEMORY_ROOT}/{VAULT_DIR} (got '{rel_path}')"
            )
        return resolved

    def resolve_under(self, tier: str, rel_path: PathLike) -> Path:
        """
        Resolve a sub-path of memory/<tier> (scope or journaling folder).

        Raises PathEscape if the result leaves the tier directory.
        """
        raw = str(rel_path).strip()
        resolved = self.resolve(Path(MEMORY_ROOT, tier, raw))
        if not _is_strict_descendant(resolved, self.tier_dir(tier).resolve()):
            logger.warning("Rejected path outside %s: %s", tier, raw)
            raise PathEscape(f"Path escapes {MEMORY_ROOT}/{tier}: {raw}")
        return resolved

    def contains(self, path: Path) -> bool:
        """Return True if path (after resolving symlinks) is inside the root."""
        return _is_strict_descendant(Path(path).resolve(), self._root)

    def is_inside_vault(self, path: Path) -> bool:
        """Return True if an already-resolved path lies inside memory/Vault."""
        return _is_strict_descendant(path, self.tier_dir(VAULT_DIR).resolve())

    def relative_path(self, path: PathLike) -> str:
        """
        Workspace-relative, forward-slash path for tool responses and logs.

        Never leaks absolute paths for anything inside the root.
        """
        resolved = Path(path).resolve()
        try:
            return resolved.relative_to(self._root).as_posix()
        except ValueError:
            return resolved.as_posix()


def resolve(workspace_dir: PathLike, rel_path: PathLike) -> Path:
    """Resolve rel_path under workspace_dir or raise PathEscape."""
    return WorkspaceGuard(workspace_dir).resolve(rel_path)


def resolve_allowed_source(workspace_dir: PathLike, rel_path: PathLike) -> Path:
    """Resolve a promotion/seal source or raise PathEscape/DisallowedSource."""
    return WorkspaceGuard(workspace_dir).resolve_allowed_source(rel_path)
