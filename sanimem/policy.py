"""
Vault Sealing Policy Gate

Sealing into Vault is the only path that creates durable, sealed records, so
it is disabled by default and must be switched on explicitly.  The flag is
resolved per request from explicit inputs and injected into the gate; no
module-level state is consulted.

Precedence:
    runtime override (argument, else SANI_VAULT_SEALING_ENABLED)
        >  config.vault.sealing_enabled  >  False

A denied seal leaves a ThreadBorn note tagged vault:denied so an operator can
see what was attempted.  Writing that note is best effort; the caller always
gets SealingDisabled.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Mapping, Optional, Union

from sanimem.config import ENV_SEALING, SaniConfig, parse_env_flag
from sanimem.errors import SealingDisabled
from sanimem.store import GovernedMemoryStore
from sanimem.types import MemoryWriteResult

logger = logging.getLogger(__name__)

DENIAL_TAGS = ("vault:denied", "admin-denied")
DENIAL_TRIGGER = "VAULT_SEAL_DENIED"


def resolve_sealing_enabled(
    config: Optional[SaniConfig] = None,
    runtime_override: Optional[bool] = None,
    env: Optional[Mapping[str, str]] = None,
) -> bool:
    """Resolve the sealing flag for one request."""
    if runtime_override is not None:
        return bool(runtime_override)
    env = os.environ if env is None else env
    from_env = parse_env_flag(env.get(ENV_SEALING))
    if from_env is not None:
        return from_env
    return config is not None and config.vault.sealing_enabled is True


class VaultSealingGate:
    """Admits or denies Vault seal/append requests."""

    def __init__(self, store: GovernedMemoryStore, sealing_enabled: bool = False):
        self._store = store
        self._enabled = bool(sealing_enabled)

    def is_sealing_enabled(self) -> bool:
        """Return True if seal requests are admitted."""
        return self._enabled

    def seal(
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
        Seal (or append) through the store when enabled.

        Raises:
            SealingDisabled: the gate is closed (after recording the denial).
        """
        if not self._enabled:
            self._record_denial(
                source_path, title, append, target_path,
                source_session_id, source_trigger,
            )
            raise SealingDisabled(
                "Vault sealing is disabled. Enable it with "
                f"{ENV_SEALING}=1 or `sanimem sealing --on`."
            )
        return self._store.write_vault_seal(
            source_path,
            title,
            source_session_id=source_session_id,
            source_trigger=source_trigger,
            append=append,
            target_path=target_path,
        )

    def _record_denial(
        self,
        source_path,
        title,
        append: bool,
        target_path,
        source_session_id: str,
        source_trigger: str,
    ) -> None:
        body = "\n".join([
            "Vault seal request denied: sealing is disabled.",
            "",
            f"- Source: {source_path or '(none)'}",
            f"- Title: {title or '(none)'}",
            f"- Append: {'true' if append else 'false'}",
            f"- Target: {target_path or '(none)'}",
            f"- Session: {source_session_id or '(unknown)'}",
            f"- Trigger: {source_trigger or '(unknown)'}",
        ])
        try:
            self._store.write_threadborn(
                "Vault Seal Denied",
                body,
                list(DENIAL_TAGS),
                source_session_id=source_session_id or "unknown",
                source_trigger=DENIAL_TRIGGER,
            )
        except Exception as e:
            logger.debug("Failed to record vault denial: %s", e)
        logger.info("Denied vault seal of %s (session=%s)", source_path, source_session_id)
