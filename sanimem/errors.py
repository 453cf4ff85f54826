"""
Governance Errors — Failure Taxonomy for the Memory Store

Every failure raised by the governed store, the sealing gate and the tool
boundary derives from MemoryGovernanceError.  They subclass ValueError so
callers that only care about "bad input" can catch them generically, the
same way guard and config errors are handled elsewhere.

Header decode problems are deliberately absent: the codec degrades to empty
metadata instead of raising.
"""

from __future__ import annotations


class MemoryGovernanceError(ValueError):
    """Base class for policy, sandbox and parameter failures."""


class PathEscape(MemoryGovernanceError):
    """A path resolves outside the workspace root (or to the root itself)."""


class DisallowedSource(MemoryGovernanceError):
    """A path is inside the workspace but not in a permitted tier directory."""


class AllocationExhausted(MemoryGovernanceError):
    """No free filename could be created within the attempt budget."""

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class SealingDisabled(MemoryGovernanceError):
    """Vault sealing was requested while the sealing gate is closed."""


class MissingTarget(MemoryGovernanceError):
    """Vault append was requested without an existing target entry."""


class InvalidAppendCombination(MemoryGovernanceError):
    """target_path was supplied without append=True."""


class ProvenanceUnresolved(MemoryGovernanceError):
    """The originating session or trigger of a write could not be established."""


class InvalidRequest(MemoryGovernanceError):
    """A tool request failed boundary validation."""
