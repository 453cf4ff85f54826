"""
Persona Memory Configuration

Configuration dataclasses for sanimem: workspace, persona modes, Vault
sealing, and injection scanning.  Includes load_config() for reading a JSON
config file with silent fallback to compiled defaults, and the environment
resolvers that let an operator flip a flag without editing the file.

Precedence (invariant):
    CLI --flag  >  SANI_* env var  >  config file  >  compiled default
"""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Mapping, Optional

ENV_ENABLED = "SANI_ENABLED"
ENV_SEALING = "SANI_VAULT_SEALING_ENABLED"
ENV_WORKSPACE = "SANI_WORKSPACE"
ENV_SESSION_KEY = "SANI_SESSION_KEY"
ENV_SESSION_STORE = "SANI_SESSION_STORE"
ENV_CONFIG = "SANI_CONFIG"

CONFIG_FILENAME = "sani.json"

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off", ""}

DEFAULT_MODE_TTL_MINUTES = 720


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(ValueError):
    """Raised when config values are out of valid range."""

    pass


def _check_range(
    errors: List[str], name: str, value, lo, hi, typ=None,
) -> None:
    """Append an error message if value is out of [lo, hi] or wrong type."""
    if typ is not None and (not isinstance(value, typ) or isinstance(value, bool)):
        errors.append(f"{name}: expected {typ.__name__}, got {type(value).__name__}")
        return
    if value < lo or value > hi:
        errors.append(f"{name}: {value} not in [{lo}, {hi}]")


def _check_bool(errors: List[str], name: str, value) -> None:
    """Append an error message unless value is a real boolean."""
    if not isinstance(value, bool):
        errors.append(f"{name}: expected bool, got {type(value).__name__}")


def parse_env_flag(value: Optional[str]) -> Optional[bool]:
    """Interpret an env value as a boolean. None if unset or unrecognized."""
    if value is None:
        return None
    v = value.strip().lower()
    if v in _TRUTHY:
        return True
    if v in _FALSY:
        return False
    return None


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


@dataclass
class WorkspaceConfig:
    """Where memory lives and where the session store is kept."""
    workspace_dir: str = "."
    session_store: str = "sessions.json"

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        if not str(self.workspace_dir).strip():
            errors.append("workspace.workspace_dir: must not be empty")
        return errors


@dataclass
class PersonaConfig:
    """SANI persona feature flag and mode lifecycle."""
    enabled: bool = False
    mode_ttl_minutes: int = DEFAULT_MODE_TTL_MINUTES  # <= 0 disables expiry
    snapshot_message_limit: int = 6
    snapshot_max_chars: int = 320

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_bool(errors, "persona.enabled", self.enabled)
        _check_range(errors, "persona.mode_ttl_minutes",
                     self.mode_ttl_minutes, -525_600, 525_600, int)
        _check_range(errors, "persona.snapshot_message_limit",
                     self.snapshot_message_limit, 1, 100, int)
        _check_range(errors, "persona.snapshot_max_chars",
                     self.snapshot_max_chars, 120, 10_000, int)
        return errors


@dataclass
class VaultConfig:
    """Vault sealing gate (disabled by default) and query scopes."""
    sealing_enabled: bool = False
    scopes: List[str] = field(
        default_factory=lambda: ["identity", "decisions", "history"]
    )

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_bool(errors, "vault.sealing_enabled", self.sealing_enabled)
        for scope in self.scopes:
            if not scope or "/" in scope or "\\" in scope or scope in (".", ".."):
                errors.append(f"vault.scopes: invalid scope name {scope!r}")
        return errors


@dataclass
class InjectionConfig:
    """Inbound injection scanning."""
    enabled: bool = True
    internal_channels: List[str] = field(
        default_factory=lambda: ["internal", "agent", "webchat"]
    )
    audit_extension: str = ".md"

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_bool(errors, "injection.enabled", self.enabled)
        if not self.audit_extension.startswith("."):
            errors.append("injection.audit_extension: must start with '.'")
        return errors


@dataclass
class SaniConfig:
    """Top-level sanimem configuration."""
    workspace: WorkspaceConfig = field(default_factory=WorkspaceConfig)
    persona: PersonaConfig = field(default_factory=PersonaConfig)
    vault: VaultConfig = field(default_factory=VaultConfig)
    injection: InjectionConfig = field(default_factory=InjectionConfig)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> SaniConfig:
        """Build config from a nested dict (e.g. JSON)."""
        kwargs: Dict[str, Any] = {}
        if "workspace" in d:
            kwargs["workspace"] = WorkspaceConfig(**d["workspace"])
        if "persona" in d:
            kwargs["persona"] = PersonaConfig(**d["persona"])
        if "vault" in d:
            kwargs["vault"] = VaultConfig(**d["vault"])
        if "injection" in d:
            kwargs["injection"] = InjectionConfig(**d["injection"])
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a nested dict (inverse of from_dict)."""
        return asdict(self)

    def validate(self) -> List[str]:
        """Validate all config sections. Returns list of error messages."""
        errors: List[str] = []
        errors.extend(self.workspace.validate())
        errors.extend(self.persona.validate())
        errors.extend(self.vault.validate())
        errors.extend(self.injection.validate())
        return errors


def load_config(
    path: Optional[str] = None, *, strict: bool = False,
) -> SaniConfig:
    """Load config from a JSON file. Returns defaults if file missing/invalid.

    Args:
        path: Path to config.json. If None, returns compiled defaults.
        strict: If True, raise ValidationError on invalid config values.

    Returns:
        SaniConfig with values from file or defaults.

    Raises:
        ValidationError: If strict=True and config values are out of range.
    """
    if path is None:
        cfg = SaniConfig()
    else:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            cfg = SaniConfig.from_dict(data)
        except (FileNotFoundError, json.JSONDecodeError, TypeError, KeyError, AttributeError):
            cfg = SaniConfig()

    if strict:
        errors = cfg.validate()
        if errors:
            raise ValidationError(
                f"Config validation failed: {'; '.join(errors)}"
            )

    return cfg


# ---------------------------------------------------------------------------
# Environment resolvers
# ---------------------------------------------------------------------------


def resolve_sani_enabled(
    config: Optional[SaniConfig] = None,
    env: Optional[Mapping[str, str]] = None,
) -> bool:
    """Persona feature flag: SANI_ENABLED env > config > False."""
    env = os.environ if env is None else env
    override = parse_env_flag(env.get(ENV_ENABLED))
    if override is not None:
        return override
    return config is not None and config.persona.enabled is True


def resolve_workspace_dir(
    config: Optional[SaniConfig] = None,
    env: Optional[Mapping[str, str]] = None,
) -> str:
    """Workspace directory: SANI_WORKSPACE env > config > '.'."""
    env = os.environ if env is None else env
    value = env.get(ENV_WORKSPACE)
    if value:
        return value
    return config.workspace.workspace_dir if config else "."
