"""
sanimem MCP Tools — governed memory operations for the agent runtime.

Thin wrappers around GovernedMemoryStore, VaultSealingGate and the session
mode machine.  Each tool follows the same order:

    ① Provenance   — session key → session id (ProvenanceUnresolved if none)
    ② Request      — parameters validated into a request dataclass
    ③ Execution    — sealing gate (Vault only) → store
    ④ Audit record — begin() up front, finish() in the finally block, so
                     refusals and failures carry their tier and error class

Governance errors come back as {"status": "error", "error": <class>, ...}.
Anything else propagates after its audit record is written.

Tools:
    WRITE:   threadborn_write, bridge_promote, labyrinth_snapshot
    VAULT:   vault_seal (seal or append, gated), vault_query
    JOURNAL: session_log_entry
    STATUS:  sani_mode_status
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional, Tuple

from sanimem.config import SaniConfig
from sanimem.errors import (
    AllocationExhausted,
    MemoryGovernanceError,
    ProvenanceUnresolved,
)
from sanimem.mcp.audit import ToolAuditLogger, ToolCall
from sanimem.modes import SessionModeMachine
from sanimem.policy import VaultSealingGate, resolve_sealing_enabled
from sanimem.requests import (
    BridgePromoteRequest,
    LabyrinthSnapshotRequest,
    SessionLogEntryRequest,
    ThreadbornWriteRequest,
    VaultQueryRequest,
    VaultSealRequest,
)
from sanimem.session import InMemorySessionStore, SessionStore, resolve_session_id
from sanimem.store import GovernedMemoryStore
from sanimem.types import MemoryWriteResult, VaultQueryResult

logger = logging.getLogger(__name__)

VAULT_ACCESS_DIR = "vault_access"
SESSION_LOG_DIR = "sessions"


def _error(e: MemoryGovernanceError) -> Dict[str, Any]:
    return {"status": "error", "error": type(e).__name__, "message": str(e)}


def register_memory_tools(
    mcp,
    store: GovernedMemoryStore,
    config: SaniConfig,
    *,
    sessions: Optional[SessionStore] = None,
    session_key: Optional[str] = None,
    sealing_enabled: Optional[bool] = None,
    audit: Optional[ToolAuditLogger] = None,
) -> None:
    """
    Register the memory tools on a FastMCP server instance.

    Args:
        mcp: FastMCP server instance (anything with a .tool() decorator).
        store: GovernedMemoryStore bound to the agent workspace.
        config: SaniConfig (sealing default, mode TTL, snapshot limits).
        sessions: Session store used to resolve provenance and mode flags.
        session_key: Session key of the conversation this server serves.
        sealing_enabled: Runtime sealing override; None → env, then config.
        audit: ToolAuditLogger for structured logging.
    """
    if sessions is None:
        sessions = InMemorySessionStore()
    if audit is None:
        audit = ToolAuditLogger()

    modes = SessionModeMachine(
        store,
        sessions,
        ttl_minutes=config.persona.mode_ttl_minutes,
        snapshot_message_limit=config.persona.snapshot_message_limit,
        snapshot_max_chars=config.persona.snapshot_max_chars,
    )

    def _session_key() -> str:
        key = (session_key or "").strip()
        if not key:
            raise ProvenanceUnresolved(
                "No session key is bound to this server; set SANI_SESSION_KEY "
                "or pass --session-key"
            )
        return key

    def _provenance(trigger: str) -> Tuple[str, str]:
        key = _session_key()
        return resolve_session_id(sessions.get(key), key), trigger

    def _written(result: MemoryWriteResult, rec: ToolCall) -> Dict[str, Any]:
        rel = store.relative(result.path)
        rec.wrote(rel, result.entry_id)
        return {
            "status": "ok",
            "path": rel,
            "filename": result.filename,
            "id": result.entry_id,
        }

    # =====================================================================
    # WRITE
    # =====================================================================

    @mcp.tool()
    def threadborn_write(
        title: str,
        body: str,
        tags: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """Write a new ThreadBorn working note (timestamped) under memory/ThreadBorn/.

        Args:
            title: Note title.
            body: Markdown body.
            tags: Optional tags.

        Returns:
            path, filename and id of the new entry.
        """
        rec = audit.begin("threadborn_write")
        try:
            rec.sid, trigger = _provenance("THREADBORN_WRITE")
            req = ThreadbornWriteRequest(title=title, body=body, tags=tags)
            rec.detail.update(audit.content_digest(req.body))
            result = store.write_threadborn(
                req.title, req.body, req.tags,
                source_session_id=rec.sid, source_trigger=trigger,
            )
            return _written(result, rec)
        except MemoryGovernanceError as e:
            rec.refused(e)
            return _error(e)
        except Exception as e:
            rec.failed(e)
            raise
        finally:
            audit.finish(rec)

    @mcp.tool()
    def bridge_promote(
        source_path: str,
        title: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Promote a ThreadBorn or Labyrinth entry into memory/BridgeThread/ with provenance.

        Args:
            source_path: Workspace-relative path of the entry to promote.
            title: Optional title (defaults to the source filename).

        Returns:
            path, filename and id of the promoted entry.
        """
        rec = audit.begin("bridge_promote", source=source_path)
        try:
            rec.sid, trigger = _provenance("BRIDGE_PROMOTE")
            req = BridgePromoteRequest(source_path=source_path, title=title)
            result = store.write_bridge_promotion(
                req.source_path, req.title,
                source_session_id=rec.sid, source_trigger=trigger,
            )
            return _written(result, rec)
        except MemoryGovernanceError as e:
            rec.refused(e)
            return _error(e)
        except Exception as e:
            rec.failed(e)
            raise
        finally:
            audit.finish(rec)

    @mcp.tool()
    def labyrinth_snapshot(title: str, body: str) -> Dict[str, Any]:
        """Write a Labyrinth identity snapshot (explicit only, never overwrites).

        Args:
            title: Snapshot title.
            body: Snapshot body.

        Returns:
            path, filename and id of the snapshot.
        """
        rec = audit.begin("labyrinth_snapshot")
        try:
            rec.sid, trigger = _provenance("LABYRINTH_SNAPSHOT")
            req = LabyrinthSnapshotRequest(title=title, body=body)
            rec.detail.update(audit.content_digest(req.body))
            result = store.write_labyrinth_snapshot(
                req.title, req.body,
                source_session_id=rec.sid, source_trigger=trigger,
            )
            return _written(result, rec)
        except MemoryGovernanceError as e:
            rec.refused(e)
            return _error(e)
        except Exception as e:
            rec.failed(e)
            raise
        finally:
            audit.finish(rec)

    # =====================================================================
    # VAULT
    # =====================================================================

    @mcp.tool()
    def vault_seal(
        source_path: str,
        title: Optional[str] = None,
        append: bool = False,
        target_path: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Seal an entry into memory/Vault/ (disabled unless sealing is enabled).

        Seal mode (default) creates a new sealed Vault entry.  With
        append=true, target_path must name an existing Vault entry and the
        source body is appended to it.

        Args:
            source_path: ThreadBorn/BridgeThread/Labyrinth entry to seal.
            title: Optional title (defaults to the source filename).
            append: Append to target_path instead of creating a new entry.
            target_path: Existing Vault entry (append mode only).

        Returns:
            path, filename and id of the sealed or appended entry.
        """
        rec = audit.begin(
            "vault_seal", source=source_path, target=target_path,
            mode="append" if append else "seal",
        )
        try:
            rec.sid, trigger = _provenance("VAULT_SEAL")
            req = VaultSealRequest(
                source_path=source_path, title=title,
                append=append, target_path=target_path,
            )
            gate = VaultSealingGate(
                store, resolve_sealing_enabled(config, sealing_enabled),
            )
            result = gate.seal(
                req.source_path, req.title,
                source_session_id=rec.sid, source_trigger=trigger,
                append=req.append, target_path=req.target_path,
            )
            response = _written(result, rec)
            response["mode"] = "append" if req.append else "seal"
            return response
        except MemoryGovernanceError as e:
            rec.refused(e)
            return _error(e)
        except Exception as e:
            rec.failed(e)
            raise
        finally:
            audit.finish(rec)

    def _log_vault_access(req: VaultQueryRequest, results: List[VaultQueryResult]) -> Optional[str]:
        now = store.now()
        lines = [
            f"- Scope: {req.scope or 'all'}",
            f"- QueryTags: {', '.join(req.tags) if req.tags else '(none)'}",
            f"- Results: {len(results)}",
        ]
        if results:
            lines.append("")
            lines.extend(f"- {r.title} ({r.path})" for r in results)
        minute = now.strftime("%Y-%m-%d-%H%M")

        def _write(base: str) -> MemoryWriteResult:
            sid, trigger = _provenance("VAULT_QUERY")
            return store.write_threadborn(
                "Vault Access",
                "\n".join(lines),
                ["vault:access"],
                source_session_id=sid,
                source_trigger=trigger,
                subdir=VAULT_ACCESS_DIR,
                filename_base=base,
            )

        try:
            try:
                written = _write(minute)
            except AllocationExhausted:
                # Busy minute: every -N suffix is taken.
                written = _write(f"{minute}-{uuid.uuid4().hex[:8]}")
        except (MemoryGovernanceError, OSError) as e:
            logger.warning("Vault access log not written: %s", e)
            return None
        return store.relative(written.path)

    @mcp.tool()
    def vault_query(
        scope: Optional[str] = None,
        tags: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """Query sealed Vault entries by scope folder and tags (read-only).

        Args:
            scope: Vault sub-folder (e.g. identity, decisions, history).
            tags: Every tag must appear in the entry (case-insensitive).

        Returns:
            results: path, title, date and preview for each entry.
        """
        rec = audit.begin("vault_query", scope=scope)
        try:
            req = VaultQueryRequest(scope=scope, tags=tags)
            results = store.query_vault(req.scope, req.tags)
            rec.detail["results"] = len(results)
            access_log = _log_vault_access(req, results)
            rec.detail["access_log"] = access_log
            if session_key:
                rec.sid = resolve_session_id(sessions.get(session_key), session_key)
            return {
                "status": "ok",
                "scope": req.scope,
                "tags": req.tags,
                "count": len(results),
                "results": [
                    {"path": r.path, "title": r.title, "date": r.created_at, "preview": r.preview}
                    for r in results
                ],
                "access_log": access_log,
            }
        except MemoryGovernanceError as e:
            rec.refused(e)
            return _error(e)
        except Exception as e:
            rec.failed(e)
            raise
        finally:
            audit.finish(rec)

    # =====================================================================
    # JOURNAL
    # =====================================================================

    @mcp.tool()
    def session_log_entry(
        input: str,
        result: str,
        tool_name: Optional[str] = None,
        recommend: Optional[bool] = None,
        tags: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """Write a session journaling entry under memory/ThreadBorn/sessions/YYYY-MM-DD/.

        Args:
            input: What the user asked for.
            result: What happened.
            tool_name: Tool that was invoked, if any.
            recommend: Whether the outcome is worth promoting.
            tags: Optional tags.

        Returns:
            path and filename of the journal entry.
        """
        rec = audit.begin("session_log_entry", logged_tool=tool_name)
        try:
            rec.sid, trigger = _provenance("SESSION_LOG_ENTRY")
            req = SessionLogEntryRequest(
                input=input, result=result, tool_name=tool_name,
                recommend=recommend, tags=tags,
            )
            rec.detail.update(audit.content_digest(req.input))
            if req.recommend is None:
                recommend_text = "unspecified"
            else:
                recommend_text = "yes" if req.recommend else "no"
            body = "\n".join([
                f"- Input: {req.input}",
                f"- Tool: {req.tool_name or 'none'}",
                f"- Result: {req.result}",
                f"- Recommend: {recommend_text}",
            ])
            written = store.write_threadborn(
                f"Session Log {req.tool_name or 'entry'}",
                body,
                req.tags,
                source_session_id=rec.sid,
                source_trigger=trigger,
                subdir=f"{SESSION_LOG_DIR}/{store.now().strftime('%Y-%m-%d')}",
            )
            return _written(written, rec)
        except MemoryGovernanceError as e:
            rec.refused(e)
            return _error(e)
        except Exception as e:
            rec.failed(e)
            raise
        finally:
            audit.finish(rec)

    # =====================================================================
    # STATUS
    # =====================================================================

    @mcp.tool()
    def sani_mode_status() -> Dict[str, Any]:
        """Report SANI/Labyrinth mode flags for this session (expires stale modes).

        Returns:
            saniMode, labyrinthMode and the Vault sealing flag.
        """
        rec = audit.begin("sani_mode_status")
        try:
            key = _session_key()
            rec.sid = resolve_session_id(sessions.get(key), key)
            flags = modes.read_flags(key)
            response: Dict[str, Any] = {"status": "ok", "session_key": key}
            response.update(flags.to_dict())
            response["sealingEnabled"] = resolve_sealing_enabled(config, sealing_enabled)
            return response
        except MemoryGovernanceError as e:
            rec.refused(e)
            return _error(e)
        except Exception as e:
            rec.failed(e)
            raise
        finally:
            audit.finish(rec)

    logger.info("Registered 7 memory MCP tools (session_key=%s)", session_key or "(none)")
