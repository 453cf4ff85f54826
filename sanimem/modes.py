"""
Session Mode State Machine — SANI and Labyrinth modes per session.

States are the pair (saniMode, labyrinthMode), stored on the session record
together with lastModeUpdateAt (epoch milliseconds).  Transitions:

    "hey sani"        -> saniMode on                      (no memory write)
    "who am i"        -> labyrinthMode on                 Labyrinth snapshot
    "exit sani mode"  -> both off                         ThreadBorn sani:exit
    TTL elapsed       -> both off, on next read           ThreadBorn sani:ttl

Expiry is lazy: there is no scheduler, a stale mode is cleared the next time
the flags are read.  Only the three mode keys of the record are touched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, List, Optional, Set

from sanimem.config import DEFAULT_MODE_TTL_MINUTES
from sanimem.session import (
    DEFAULT_SNIPPET_LIMIT,
    DEFAULT_SNIPPET_MAX_CHARS,
    SessionRecord,
    SessionStore,
    read_recent_snippets,
    resolve_session_id,
)
from sanimem.store import GovernedMemoryStore
from sanimem.triggers import Trigger, detect_triggers
from sanimem.types import MemoryWriteResult, ModeFlags, iso_timestamp

logger = logging.getLogger(__name__)

TTL_TRIGGER = "MODE_TTL_EXPIRED"


def _epoch_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def _flags_of(record: Optional[SessionRecord]) -> ModeFlags:
    record = record or {}
    return ModeFlags(
        sani_mode=record.get("saniMode") is True,
        labyrinth_mode=record.get("labyrinthMode") is True,
    )


def _on_off(flag: bool) -> str:
    return "on" if flag else "off"


@dataclass
class ModeTransition:
    """What handle_message did for one inbound message."""

    triggers: Set[Trigger] = field(default_factory=set)
    flags: ModeFlags = field(default_factory=ModeFlags)
    writes: List[MemoryWriteResult] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        """Return True if any trigger was applied."""
        return bool(self.triggers)


class SessionModeMachine:
    """Applies trigger-driven mode transitions and lazy TTL expiry."""

    def __init__(
        self,
        store: GovernedMemoryStore,
        sessions: SessionStore,
        *,
        ttl_minutes: int = DEFAULT_MODE_TTL_MINUTES,
        snapshot_message_limit: int = DEFAULT_SNIPPET_LIMIT,
        snapshot_max_chars: int = DEFAULT_SNIPPET_MAX_CHARS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._store = store
        self._sessions = sessions
        self.ttl_minutes = ttl_minutes
        self.snapshot_message_limit = snapshot_message_limit
        self.snapshot_max_chars = snapshot_max_chars
        self._clock = clock or store.now

    # -- Helpers -----------------------------------------------------------

    def _update(self, session_key: str, **flags: bool) -> SessionRecord:
        stamp = _epoch_ms(self._clock())

        def _apply(record: SessionRecord) -> None:
            for key, value in flags.items():
                record[key] = value
            record["lastModeUpdateAt"] = stamp

        return self._sessions.update_entry(session_key, _apply)

    def _session_id(self, session_key: str, record: Optional[SessionRecord] = None) -> str:
        if record is None:
            record = self._sessions.get(session_key)
        return resolve_session_id(record, session_key)

    def _header_lines(self, session_key: str, channel: Optional[str], sender: Optional[str]) -> List[str]:
        return [
            f"- Timestamp: {iso_timestamp(self._clock())}",
            f"- Channel: {channel or 'unknown'}",
            f"- User: {sender or 'unknown'}",
            f"- SessionKey: {session_key}",
        ]

    # -- Transitions -------------------------------------------------------

    def activate_sani(self, session_key: str) -> ModeFlags:
        """Turn SANI mode on."""
        record = self._update(session_key, saniMode=True)
        logger.info("SANI mode on for session %s", session_key)
        return _flags_of(record)

    def activate_labyrinth(
        self,
        session_key: str,
        channel: Optional[str] = None,
        sender: Optional[str] = None,
        sani_hint: bool = False,
    ) -> MemoryWriteResult:
        """
        Turn Labyrinth mode on and write a snapshot of the session.

        sani_hint marks SANI as on in the snapshot when the same message
        also activated it.
        """
        record = self._update(session_key, labyrinthMode=True)
        logger.info("Labyrinth mode on for session %s", session_key)

        snippets = read_recent_snippets(
            record.get("sessionFile"),
            limit=self.snapshot_message_limit,
            max_chars=self.snapshot_max_chars,
        )
        sani_on = record.get("saniMode") is True or sani_hint
        lines = self._header_lines(session_key, channel, sender)
        lines.append(f"- Modes: saniMode={_on_off(sani_on)}, labyrinthMode=on")
        lines.extend(["", "## Recent Messages"])
        if snippets:
            lines.extend(
                f"{i}. {s['role']}: {s['text']}" for i, s in enumerate(snippets, start=1)
            )
        else:
            lines.append("No recent session messages available.")

        return self._store.write_labyrinth_snapshot(
            "Labyrinth Snapshot",
            "\n".join(lines),
            source_session_id=self._session_id(session_key, record),
            source_trigger=Trigger.WHO_AM_I.value,
        )

    def exit_modes(
        self,
        session_key: str,
        channel: Optional[str] = None,
        sender: Optional[str] = None,
    ) -> MemoryWriteResult:
        """Clear both modes and record the exit in ThreadBorn."""
        record = self._update(session_key, saniMode=False, labyrinthMode=False)
        logger.info("SANI modes cleared for session %s", session_key)
        lines = self._header_lines(session_key, channel, sender)
        lines.extend(["", "SANI mode exit requested; session flags cleared."])
        return self._store.write_threadborn(
            "SANI Mode Exit",
            "\n".join(lines),
            ["sani:exit"],
            source_session_id=self._session_id(session_key, record),
            source_trigger=Trigger.EXIT_SANI_MODE.value,
        )

    # -- Reads -------------------------------------------------------------

    def _is_expired(self, record: SessionRecord) -> bool:
        if self.ttl_minutes <= 0:
            return False
        last: Any = record.get("lastModeUpdateAt")
        if not isinstance(last, (int, float)) or isinstance(last, bool):
            last = record.get("updatedAt")
        if not isinstance(last, (int, float)) or isinstance(last, bool):
            return False
        elapsed_ms = _epoch_ms(self._clock()) - last
        return elapsed_ms > self.ttl_minutes * 60_000

    def read_flags(self, session_key: str) -> ModeFlags:
        """
        Current flags for a session, expiring stale modes first.

        When a mode is on and older than the TTL, both modes are cleared in
        one session-store update and a sani:ttl note records the previous
        state.  Unknown sessions read as all-off and are not created.
        """
        record = self._sessions.get(session_key)
        flags = _flags_of(record)
        if not flags.any_active or not self._is_expired(record):
            return flags

        expired = {}

        def _clear(current: SessionRecord) -> None:
            # Re-check under the store lock; another writer may have refreshed it.
            if _flags_of(current).any_active and self._is_expired(current):
                expired.update(_flags_of(current).to_dict())
                current["saniMode"] = False
                current["labyrinthMode"] = False
                current["lastModeUpdateAt"] = _epoch_ms(self._clock())

        updated = self._sessions.update_entry(session_key, _clear)
        if not expired:
            return _flags_of(updated)

        logger.info("SANI modes expired for session %s (ttl=%d min)", session_key, self.ttl_minutes)
        body = "\n".join([
            f"- Timestamp: {iso_timestamp(self._clock())}",
            f"- SessionKey: {session_key}",
            f"- PreviousModes: saniMode={_on_off(expired['saniMode'])}, "
            f"labyrinthMode={_on_off(expired['labyrinthMode'])}",
            f"- TtlMinutes: {self.ttl_minutes}",
            "",
            "Session modes expired after inactivity; flags cleared.",
        ])
        self._store.write_threadborn(
            "SANI Mode Expired",
            body,
            ["sani:ttl"],
            source_session_id=self._session_id(session_key, updated),
            source_trigger=TTL_TRIGGER,
        )
        return _flags_of(updated)

    def handle_message(
        self,
        session_key: str,
        content: str,
        channel: Optional[str] = None,
        sender: Optional[str] = None,
    ) -> ModeTransition:
        """Apply the triggers found in content: SANI, then Labyrinth, then exit."""
        triggers = detect_triggers(content)
        if not triggers:
            return ModeTransition(flags=self.read_flags(session_key))

        self.read_flags(session_key)
        transition = ModeTransition(triggers=triggers)
        if Trigger.HEY_SANI in triggers:
            self.activate_sani(session_key)
        if Trigger.WHO_AM_I in triggers:
            transition.writes.append(self.activate_labyrinth(
                session_key, channel, sender,
                sani_hint=Trigger.HEY_SANI in triggers,
            ))
        if Trigger.EXIT_SANI_MODE in triggers:
            transition.writes.append(self.exit_modes(session_key, channel, sender))
        transition.flags = _flags_of(self._sessions.get(session_key))
        return transition
