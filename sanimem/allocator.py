"""
Unique File Allocator — Exclusive-Create Writes with Suffix Retry

Creates entry files without ever overwriting.  Collision detection is left
to the filesystem: the file is opened in exclusive-create mode ("x", i.e.
O_CREAT|O_EXCL), so concurrent writers racing for the same name cannot both
win.  The loser sees FileExistsError and retries with -2, -3, ... or fails
outright when suffixing is disabled (Labyrinth snapshots).

There is no separate existence check; a stat-then-write sequence would
reintroduce the race.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

from sanimem.errors import AllocationExhausted
from sanimem.types import MemoryWriteResult, iso_timestamp

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 5
MAX_SLUG_LENGTH = 60
ENTRY_EXTENSION = ".md"

_UNSAFE_CHARS = re.compile(r"[^a-z0-9._-]+", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")
_HYPHEN_RUNS = re.compile(r"-+")


def slugify(raw: str) -> str:
    """Filesystem-safe slug: lowercase, hyphenated, capped, 'entry' if empty."""
    slug = _WHITESPACE.sub("-", (raw or "").strip())
    slug = _UNSAFE_CHARS.sub("-", slug)
    slug = _HYPHEN_RUNS.sub("-", slug).strip("-").lower()
    return slug[:MAX_SLUG_LENGTH] or "entry"


def timestamp_slug(dt: Optional[datetime] = None) -> str:
    """ISO timestamp with ':' and '.' replaced by '-' (2026-02-14T09-30-00-000Z)."""
    return re.sub(r"[:.]", "-", iso_timestamp(dt))


def create_unique(
    directory: Union[str, Path],
    filename_base: str,
    content: str,
    allow_suffix: bool = True,
    *,
    max_attempts: int = MAX_ATTEMPTS,
) -> MemoryWriteResult:
    """
    Create <directory>/<filename_base>.md exclusively.

    Args:
        directory: Target directory (created recursively if missing).
        filename_base: Name without extension or suffix.
        content: Full UTF-8 file content.
        allow_suffix: Retry with -2, -3, ... on collision.
        max_attempts: Total attempts including the first (default 5).

    Returns:
        MemoryWriteResult with the absolute path and the filename.

    Raises:
        AllocationExhausted: every attempted name already existed.
        OSError: any other filesystem failure, unchanged.
    """
    target_dir = Path(directory)
    target_dir.mkdir(parents=True, exist_ok=True)

    attempts = max_attempts if allow_suffix else 1
    for attempt in range(attempts):
        suffix = "" if attempt == 0 else f"-{attempt + 1}"
        filename = f"{filename_base}{suffix}{ENTRY_EXTENSION}"
        file_path = target_dir / filename
        try:
            with open(file_path, "x", encoding="utf-8") as f:
                f.write(content)
        except FileExistsError:
            logger.debug("Collision on %s (attempt %d/%d)", filename, attempt + 1, attempts)
            continue
        return MemoryWriteResult(path=file_path, filename=filename)

    raise AllocationExhausted(
        f"Failed to allocate a unique filename for '{filename_base}' "
        f"after {attempts} attempt(s)",
        attempts=attempts,
    )
