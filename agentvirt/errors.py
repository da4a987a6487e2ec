"""Project-specific exception types."""

from __future__ import annotations


class AgentVirtError(RuntimeError):
    """Base error for domain-level agent-virt failures."""


class PreconditionError(AgentVirtError):
    """Raised before any mutating call when the host or inputs are not ready."""


class MountSpecError(PreconditionError):
    """Raised when a desired mount set is malformed."""


class VMLockedError(AgentVirtError):
    """Raised when another invocation already operates on the same VM."""
