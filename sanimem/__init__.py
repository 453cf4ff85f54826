"""
sanimem — Governed tiered memory for an agent persona.

Four markdown tiers under <workspace>/memory (ThreadBorn, BridgeThread,
Vault, Labyrinth), every entry carrying a fixed provenance header.  Vault
sealing is explicit and disabled by default; session modes expire lazily;
inbound text is screened for injection patterns.
"""

__version__ = "0.1.0"

from sanimem.types import (
    EntryMetadata,
    ModeFlags,
    MemoryWriteResult,
    PatternMatch,
    ProvenanceLink,
    VaultQueryResult,
)
from sanimem.errors import (
    AllocationExhausted,
    DisallowedSource,
    InvalidAppendCombination,
    InvalidRequest,
    MemoryGovernanceError,
    MissingTarget,
    PathEscape,
    ProvenanceUnresolved,
    SealingDisabled,
)
from sanimem.store import GovernedMemoryStore
from sanimem.policy import VaultSealingGate, resolve_sealing_enabled
from sanimem.modes import SessionModeMachine
from sanimem.config import SaniConfig, load_config
from sanimem.inbound import (
    InboundMessage,
    InboundMessageHandler,
    InboundOutcome,
    wrap_inbound_message,
)
from sanimem.session import InMemorySessionStore, JsonSessionStore, SessionStoreError

__all__ = [
    "__version__",
    "EntryMetadata",
    "ModeFlags",
    "MemoryWriteResult",
    "PatternMatch",
    "ProvenanceLink",
    "VaultQueryResult",
    "MemoryGovernanceError",
    "PathEscape",
    "DisallowedSource",
    "AllocationExhausted",
    "SealingDisabled",
    "MissingTarget",
    "InvalidAppendCombination",
    "ProvenanceUnresolved",
    "InvalidRequest",
    "GovernedMemoryStore",
    "VaultSealingGate",
    "resolve_sealing_enabled",
    "SessionModeMachine",
    "SaniConfig",
    "load_config",
    "InboundMessage",
    "InboundMessageHandler",
    "InboundOutcome",
    "wrap_inbound_message",
    "InMemorySessionStore",
    "JsonSessionStore",
    "SessionStoreError",
]
