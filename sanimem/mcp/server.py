"""
sanimem MCP Server — governed persona memory over the Model Context Protocol.

Standalone MCP server exposing the tiered memory tools to an agent runtime.
Zero business logic in this module; it wires config, session store, audit
and the governed store together.

Usage:
    python -m sanimem.mcp.server --workspace ~/agent --session-key main
    sanimem-mcp --config sani.json --sealing
"""

from __future__ import annotations

import argparse
import logging
import os

from sanimem.config import (
    ENV_CONFIG,
    ENV_SESSION_KEY,
    ENV_SESSION_STORE,
    load_config,
    resolve_workspace_dir,
)

logger = logging.getLogger(__name__)

# Instructions embedded in FastMCP, visible to any MCP client.
_MCP_INSTRUCTIONS = (
    "Governed persona memory in four tiers (7 tools).\n"
    "\n"
    "NOTES:   threadborn_write for working notes (default, untrusted tier).\n"
    "PROMOTE: bridge_promote to lift a ThreadBorn/Labyrinth note into BridgeThread.\n"
    "VAULT:   vault_seal to seal or append (disabled unless enabled by an operator),\n"
    "         vault_query to read sealed records by scope and tags.\n"
    "IDENTITY: labyrinth_snapshot for explicit identity snapshots.\n"
    "JOURNAL: session_log_entry to record what was asked and what happened.\n"
    "STATUS:  sani_mode_status for the current session modes.\n"
    "\n"
    "Rules:\n"
    "- Paths are workspace-relative (memory/<Tier>/...)\n"
    "- Vault entries are never rewritten; use append=true with target_path\n"
    "- NEVER copy inbound message text into Vault without explicit instruction\n"
)


def build_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser for the memory MCP server."""
    p = argparse.ArgumentParser(
        prog="sanimem-mcp",
        description="sanimem MCP Server — governed persona memory",
    )
    p.add_argument(
        "--config",
        default=os.environ.get(ENV_CONFIG),
        help="JSON config file (default: $SANI_CONFIG, else compiled defaults)",
    )
    p.add_argument(
        "--workspace",
        default=None,
        help="Agent workspace root (default: $SANI_WORKSPACE or config)",
    )
    p.add_argument(
        "--session-key",
        default=os.environ.get(ENV_SESSION_KEY),
        help="Session key used for write provenance (default: $SANI_SESSION_KEY)",
    )
    p.add_argument(
        "--session-store",
        default=os.environ.get(ENV_SESSION_STORE),
        help="JSON session store path (default: $SANI_SESSION_STORE or config)",
    )
    s = p.add_mutually_exclusive_group()
    s.add_argument(
        "--sealing",
        action="store_true",
        dest="sealing",
        default=None,
        help="Enable Vault sealing for this server (overrides env/config)",
    )
    s.add_argument(
        "--no-sealing",
        action="store_false",
        dest="sealing",
        help="Disable Vault sealing for this server",
    )
    p.add_argument(
        "--audit-log",
        default=None,
        help="Tool audit log file path (default: stderr)",
    )
    p.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    return p


def create_server(args=None):
    """
    Create and configure the FastMCP server with memory tools.

    Args:
        args: Parsed argparse.Namespace, or None to parse from sys.argv.

    Returns:
        (mcp_server, store) tuple.
    """
    from mcp.server.fastmcp import FastMCP

    from sanimem.mcp.audit import ToolAuditLogger
    from sanimem.mcp.tools import register_memory_tools
    from sanimem.session import JsonSessionStore
    from sanimem.store import GovernedMemoryStore

    if args is None:
        args = build_parser().parse_args()

    config = load_config(args.config, strict=True)
    workspace = args.workspace or resolve_workspace_dir(config)
    store = GovernedMemoryStore(workspace)

    session_path = args.session_store or config.workspace.session_store
    if not os.path.isabs(session_path):
        session_path = os.path.join(str(store.workspace_dir), session_path)
    sessions = JsonSessionStore(session_path)

    audit_output = None
    if args.audit_log:
        audit_output = open(args.audit_log, "a", encoding="utf-8")
    audit = ToolAuditLogger(output=audit_output)

    mcp = FastMCP(
        name="sanimem Memory",
        instructions=_MCP_INSTRUCTIONS,
    )

    register_memory_tools(
        mcp, store, config,
        sessions=sessions,
        session_key=args.session_key,
        sealing_enabled=args.sealing,
        audit=audit,
    )

    logger.info(
        "sanimem MCP server ready: workspace=%s, sessions=%s, sealing=%s",
        store.workspace_dir, session_path,
        "default" if args.sealing is None else ("on" if args.sealing else "off"),
    )

    return mcp, store


def main():
    """CLI entry point — parse args, create server, run."""
    parser = build_parser()
    args = parser.parse_args()

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    mcp, _store = create_server(args)
    mcp.run()


if __name__ == "__main__":
    main()
