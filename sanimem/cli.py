"""
sanimem CLI — Operator Commands for Governed Persona Memory

Commands:
    sanimem init    [PATH]                   — scaffold memory tiers + config
    sanimem sealing [--on | --off]           — show or toggle Vault sealing
    sanimem query   [--scope S] [--tags T]   — list Vault entries → stdout
    sanimem modes   SESSION_KEY              — session mode flags (lazy TTL)
    sanimem scan    [--channel C] [--log]    — stdin → injection patterns
    sanimem receive SESSION_KEY [--wrap]     — stdin → screening + mode triggers
    sanimem serve   [--session-key K]        — start MCP server (foreground)

Environment variables:
    SANI_WORKSPACE              Agent workspace root (default: .)
    SANI_CONFIG                 JSON config file
    SANI_ENABLED                Persona feature flag
    SANI_VAULT_SEALING_ENABLED  Runtime Vault sealing override
    SANI_SESSION_KEY            Session key for MCP write provenance
    SANI_SESSION_STORE          JSON session store path

Precedence (invariant):
    CLI --flag  >  SANI_* env var  >  config file  >  compiled default

Exit codes:
    0  Success (including idempotent no-op)
    1  Operational error (bad args, policy refusal, injection patterns found)
    2  Internal failure (unexpected exception, I/O error)
"""

from __future__ import annotations

import argparse
import getpass
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from sanimem.config import (
    CONFIG_FILENAME,
    ENV_CONFIG,
    ENV_SEALING,
    ENV_SESSION_STORE,
    ENV_WORKSPACE,
    SaniConfig,
    ValidationError,
    load_config,
    parse_env_flag,
    resolve_workspace_dir,
)
from sanimem.errors import MemoryGovernanceError
from sanimem.types import iso_timestamp

logger = logging.getLogger(__name__)

ADMIN_OVERRIDE_DIR = "admin-override"
ADMIN_TRIGGER = "ADMIN_SEALING_TOGGLE"


# ---------------------------------------------------------------------------
# Stderr helpers (respect --quiet)
# ---------------------------------------------------------------------------

_quiet = False


def _info(msg: str) -> None:
    """Print progress to stderr (suppressed by --quiet)."""
    if not _quiet:
        print(msg, file=sys.stderr)


def _warn(msg: str) -> None:
    """Print warning to stderr (always visible)."""
    print(msg, file=sys.stderr)


# ---------------------------------------------------------------------------
# Resolvers
# ---------------------------------------------------------------------------


def _config_path(args: argparse.Namespace) -> Optional[str]:
    """Config file: CLI --config > SANI_CONFIG > <workspace>/sani.json if present."""
    if getattr(args, "config", None):
        return args.config
    if os.environ.get(ENV_CONFIG):
        return os.environ[ENV_CONFIG]
    workspace = getattr(args, "workspace", None) or os.environ.get(ENV_WORKSPACE) or "."
    candidate = Path(workspace) / CONFIG_FILENAME
    return str(candidate) if candidate.is_file() else None


def _load(args: argparse.Namespace) -> SaniConfig:
    return load_config(_config_path(args), strict=True)


def _workspace(args: argparse.Namespace, config: SaniConfig) -> str:
    """Workspace: CLI --workspace > SANI_WORKSPACE > config > '.'."""
    if getattr(args, "workspace", None):
        return args.workspace
    return resolve_workspace_dir(config)


def _open_store(args: argparse.Namespace, config: SaniConfig):
    from sanimem.store import GovernedMemoryStore
    return GovernedMemoryStore(_workspace(args, config))


def _open_sessions(args: argparse.Namespace, config: SaniConfig, workspace: Path):
    from sanimem.session import JsonSessionStore
    path = (
        getattr(args, "session_store", None)
        or os.environ.get(ENV_SESSION_STORE)
        or config.workspace.session_store
    )
    if not os.path.isabs(path):
        path = str(workspace / path)
    return JsonSessionStore(path)


def _operator() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))


# ===========================================================================
# Command: init
# ===========================================================================


def cmd_init(args: argparse.Namespace) -> None:
    """Scaffold memory tiers, Vault scopes and a default config file."""
    from sanimem.types import (
        BRIDGETHREAD_DIR, LABYRINTH_DIR, MEMORY_ROOT, THREADBORN_DIR, VAULT_DIR,
    )

    target = Path(args.path).resolve()
    config_path = target / CONFIG_FILENAME
    config = load_config(str(config_path)) if config_path.is_file() else SaniConfig()

    memory = target / MEMORY_ROOT
    dirs = [memory / d for d in (THREADBORN_DIR, BRIDGETHREAD_DIR, VAULT_DIR, LABYRINTH_DIR)]
    dirs.extend(memory / VAULT_DIR / scope for scope in config.vault.scopes)
    for d in dirs:
        d.mkdir(parents=True, exist_ok=True)

    if not config_path.exists():
        config.workspace.workspace_dir = "."
        _write_json(config_path, config.to_dict())
        _info(f"  Config:    {config_path}")

    _info(f"Memory workspace ready: {target}")
    for d in dirs:
        _info(f"  {d.relative_to(target).as_posix()}/")
    print(f'export {ENV_WORKSPACE}="{target}"')


def _write_json(path: Path, data: Dict[str, Any]) -> None:
    """Write JSON atomically (temp file, then rename)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
        f.write("\n")
    os.replace(tmp, path)


# ===========================================================================
# Command: sealing
# ===========================================================================


def cmd_sealing(args: argparse.Namespace) -> None:
    """Show or toggle the Vault sealing flag."""
    from sanimem.policy import resolve_sealing_enabled

    config = _load(args)

    if args.enable is None:
        effective = resolve_sealing_enabled(config)
        env_value = os.environ.get(ENV_SEALING)
        if getattr(args, "json", False):
            _emit({
                "sealing_enabled": effective,
                "config": config.vault.sealing_enabled,
                "env": env_value,
            })
        else:
            print(f"Vault sealing: {'enabled' if effective else 'disabled'}")
            if env_value is not None:
                print(f"  ({ENV_SEALING}={env_value} overrides the config file)")
        return

    workspace = Path(_workspace(args, config)).resolve()
    config_path = Path(
        getattr(args, "config", None) or os.environ.get(ENV_CONFIG)
        or workspace / CONFIG_FILENAME
    )
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        data = SaniConfig().to_dict()
    if not isinstance(data, dict):
        raise ValidationError(f"Config file is not a JSON object: {config_path}")
    data.setdefault("vault", {})["sealing_enabled"] = bool(args.enable)
    _write_json(config_path, data)

    store = _open_store(args, config)
    now = store.now()
    user = args.user or _operator()
    action = "enable" if args.enable else "disable"
    body = "\n".join([
        f"- Action: {action}",
        f"- Timestamp: {iso_timestamp(now)}",
        f"- User: {user}",
        f"- Target: {config_path}",
    ])
    written = store.write_threadborn(
        "Vault Sealing Toggle",
        body,
        ["vault:override", "admin-override"],
        source_session_id=f"cli:{user}",
        source_trigger=ADMIN_TRIGGER,
        subdir=f"{ADMIN_OVERRIDE_DIR}/{now.strftime('%Y-%m-%d')}",
        filename_base=f"sealing-toggle-{now.strftime('%H%M')}",
    )
    logger.info("Vault sealing %sd by %s", action, user)

    env_flag = parse_env_flag(os.environ.get(ENV_SEALING))
    if env_flag is not None and env_flag != bool(args.enable):
        _warn(f"Warning: {ENV_SEALING} is set and overrides this setting at runtime")

    _info(f"Vault sealing {action}d in {config_path}")
    _info(f"  Log: {store.relative(written.path)}")
    if getattr(args, "json", False):
        _emit({
            "sealing_enabled": bool(args.enable),
            "config": str(config_path),
            "log": store.relative(written.path),
        })


# ===========================================================================
# Command: query
# ===========================================================================


def cmd_query(args: argparse.Namespace) -> None:
    """List Vault entries (read-only)."""
    config = _load(args)
    store = _open_store(args, config)
    tags = [t.strip() for t in args.tags.split(",")] if args.tags else []
    results = store.query_vault(args.scope, tags)

    if getattr(args, "json", False):
        _emit([r.to_dict() for r in results])
        return
    if not results:
        _info("No Vault entries found.")
        return
    print(f"Found {len(results)} entry(ies):\n")
    for r in results:
        print(f"  {r.path}  {r.title}")
        if r.created_at:
            print(f"    created: {r.created_at}")
        for line in r.preview.splitlines():
            print(f"    | {line}")
        print()


# ===========================================================================
# Command: modes
# ===========================================================================


def cmd_modes(args: argparse.Namespace) -> None:
    """Show the mode flags of a session (expires stale modes)."""
    from sanimem.modes import SessionModeMachine

    config = _load(args)
    store = _open_store(args, config)
    sessions = _open_sessions(args, config, store.workspace_dir)
    machine = SessionModeMachine(
        store, sessions, ttl_minutes=config.persona.mode_ttl_minutes,
    )
    flags = machine.read_flags(args.session_key)

    if getattr(args, "json", False):
        _emit({"session_key": args.session_key, **flags.to_dict()})
        return
    print(f"Session {args.session_key}:")
    print(f"  saniMode:      {'on' if flags.sani_mode else 'off'}")
    print(f"  labyrinthMode: {'on' if flags.labyrinth_mode else 'off'}")


# ===========================================================================
# Command: scan
# ===========================================================================


def cmd_scan(args: argparse.Namespace) -> None:
    """Scan stdin for injection patterns. Exit 1 when any pattern matches."""
    from sanimem.injection import detect_injection_patterns, log_injection_attempt

    content = sys.stdin.read()
    config = _load(args)
    matches = detect_injection_patterns(
        content, args.channel, config.injection.internal_channels,
    )

    audit = None
    if matches and args.log:
        store = _open_store(args, config)
        written = log_injection_attempt(
            store.workspace_dir,
            args.session_key or "cli",
            args.channel or "unknown",
            content,
            matches,
            ext=config.injection.audit_extension,
        )
        audit = store.relative(written) if written else None

    if getattr(args, "json", False):
        _emit({"matches": [m.to_dict() for m in matches], "audit": audit})
    elif not matches:
        _info("No injection patterns found.")
    else:
        for m in matches:
            print(f"  {m.id:24s}  {m.label}")
        if audit:
            _info(f"  Logged: {audit}")

    if matches:
        sys.exit(1)


# ===========================================================================
# Command: receive  (inbound message hook)
# ===========================================================================


def cmd_receive(args: argparse.Namespace) -> None:
    """Run one inbound message (stdin) through screening and mode triggers."""
    from sanimem.inbound import InboundMessage, InboundMessageHandler, wrap_inbound_message

    content = sys.stdin.read()
    config = _load(args)
    store = _open_store(args, config)
    sessions = _open_sessions(args, config, store.workspace_dir)
    message = InboundMessage(
        content=content,
        channel=args.channel,
        session_key=args.session_key,
        sender_id=args.sender_id,
        sender_name=args.sender_name,
        sender_username=args.sender_username,
    )
    outcome = InboundMessageHandler(config, store, sessions).on_message_received(message)

    if getattr(args, "json", False):
        _emit({
            "session_key": args.session_key,
            "suspicious": outcome.suspicious,
            "matches": [m.id for m in outcome.matches],
            "audit": outcome.audit_path,
            "triggers": sorted(t.value for t in outcome.triggers),
            **outcome.flags.to_dict(),
            "writes": [store.relative(w.path) for w in outcome.writes],
            "wrapped": wrap_inbound_message(content, message) if args.wrap else None,
        })
        return

    if args.wrap:
        print(wrap_inbound_message(content, message))
    for m in outcome.matches:
        _info(f"  injection: {m.id}")
    if outcome.audit_path:
        _info(f"  Logged: {outcome.audit_path}")
    for t in sorted(t.value for t in outcome.triggers):
        _info(f"  trigger: {t}")
    for w in outcome.writes:
        _info(f"  wrote: {store.relative(w.path)}")


# ===========================================================================
# Command: serve  (start MCP server)
# ===========================================================================


def cmd_serve(args: argparse.Namespace) -> None:
    """Start the sanimem MCP server in foreground."""
    try:
        from sanimem.mcp.server import build_parser as mcp_parser
        from sanimem.mcp.server import create_server
    except ImportError:
        _warn("MCP dependencies not installed. Run: pip install sanimem[mcp]")
        sys.exit(1)

    server_argv = []
    config_path = _config_path(args)
    if config_path:
        server_argv.extend(["--config", config_path])
    if getattr(args, "workspace", None):
        server_argv.extend(["--workspace", args.workspace])
    if args.session_key:
        server_argv.extend(["--session-key", args.session_key])
    if getattr(args, "verbose", False):
        server_argv.append("--verbose")

    server_args = mcp_parser().parse_args(server_argv)

    try:
        mcp, store = create_server(server_args)
    except ImportError:
        _warn("MCP dependencies not installed. Run: pip install sanimem[mcp]")
        sys.exit(1)

    _info(f"sanimem MCP server (workspace={store.workspace_dir})")
    _info("Press Ctrl+C to stop.")
    mcp.run()


# ===========================================================================
# Entry point
# ===========================================================================


def build_parser() -> argparse.ArgumentParser:
    """Build the sanimem argument parser."""
    # SUPPRESS defaults keep subparser defaults from overriding values parsed
    # at the main-parser level (argparse parents quirk).
    _common = argparse.ArgumentParser(add_help=False)
    _common.add_argument(
        "--workspace", default=argparse.SUPPRESS,
        help="Agent workspace root (default: $SANI_WORKSPACE or .)",
    )
    _common.add_argument(
        "--config", default=argparse.SUPPRESS,
        help="JSON config file (default: $SANI_CONFIG or <workspace>/sani.json)",
    )
    _common.add_argument(
        "--quiet", "-q", action="store_true", default=argparse.SUPPRESS,
        help="Suppress stderr progress messages",
    )
    _common.add_argument(
        "--json", action="store_true", default=argparse.SUPPRESS,
        help="Machine-readable JSON output",
    )
    _common.add_argument(
        "-v", "--verbose", action="store_true", default=argparse.SUPPRESS,
        help="Enable verbose logging",
    )

    parser = argparse.ArgumentParser(
        prog="sanimem",
        description="sanimem — governed tiered memory for an agent persona",
        parents=[_common],
    )
    sub = parser.add_subparsers(dest="command", help="Available commands")

    # -- init --------------------------------------------------------------
    p_init = sub.add_parser("init", parents=[_common], help="Scaffold memory tiers")
    p_init.add_argument("path", nargs="?", default=".", help="Workspace directory (default: .)")
    p_init.set_defaults(func=cmd_init)

    # -- sealing -----------------------------------------------------------
    p_seal = sub.add_parser("sealing", parents=[_common], help="Show or toggle Vault sealing")
    toggle = p_seal.add_mutually_exclusive_group()
    toggle.add_argument("--on", dest="enable", action="store_true", default=None,
                        help="Enable Vault sealing")
    toggle.add_argument("--off", dest="enable", action="store_false", default=None,
                        help="Disable Vault sealing")
    p_seal.add_argument("--user", default=None, help="Operator name for the audit log")
    p_seal.set_defaults(func=cmd_sealing)

    # -- query -------------------------------------------------------------
    p_query = sub.add_parser("query", parents=[_common], help="List Vault entries")
    p_query.add_argument("--scope", default=None, help="Vault sub-folder (identity, decisions, ...)")
    p_query.add_argument("--tags", default=None, help="Comma-separated tags (all must match)")
    p_query.set_defaults(func=cmd_query)

    # -- modes -------------------------------------------------------------
    p_modes = sub.add_parser("modes", parents=[_common], help="Show session mode flags")
    p_modes.add_argument("session_key", help="Session key")
    p_modes.add_argument("--session-store", default=None, help="JSON session store path")
    p_modes.set_defaults(func=cmd_modes)

    # -- scan --------------------------------------------------------------
    p_scan = sub.add_parser("scan", parents=[_common], help="Scan stdin for injection patterns")
    p_scan.add_argument("--channel", default=None, help="Originating channel (e.g. slack)")
    p_scan.add_argument("--session-key", default=None, help="Session key for the audit entry")
    p_scan.add_argument("--log", action="store_true", help="Append matches to the injection audit")
    p_scan.set_defaults(func=cmd_scan)

    # -- receive -----------------------------------------------------------
    p_recv = sub.add_parser("receive", parents=[_common],
                            help="Screen an inbound message and apply its mode triggers")
    p_recv.add_argument("session_key", help="Session key the message belongs to")
    p_recv.add_argument("--channel", default=None, help="Originating channel (e.g. slack)")
    p_recv.add_argument("--sender-id", default=None, help="Sender id")
    p_recv.add_argument("--sender-name", default=None, help="Sender display name")
    p_recv.add_argument("--sender-username", default=None, help="Sender username")
    p_recv.add_argument("--session-store", default=None, help="JSON session store path")
    p_recv.add_argument("--wrap", action="store_true",
                        help="Print the message wrapped in untrusted-content markers")
    p_recv.set_defaults(func=cmd_receive)

    # -- serve -------------------------------------------------------------
    p_serve = sub.add_parser("serve", parents=[_common], help="Start MCP server")
    p_serve.add_argument("--session-key", default=None, help="Session key for write provenance")
    p_serve.set_defaults(func=cmd_serve)

    return parser


def main(argv=None) -> None:
    """CLI entry point: sanimem <command> [args]."""
    global _quiet

    parser = build_parser()
    args = parser.parse_args(argv)

    _quiet = getattr(args, "quiet", False)

    if getattr(args, "verbose", False):
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(name)s %(levelname)s %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        args.func(args)
    except (MemoryGovernanceError, ValidationError) as e:
        _warn(f"Error: {e}")
        sys.exit(1)
    except BrokenPipeError:
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
        sys.exit(0)
    except KeyboardInterrupt:
        sys.exit(0)
    except Exception as e:
        _warn(f"Internal error: {e}")
        if getattr(args, "verbose", False):
            import traceback
            traceback.print_exc(file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
