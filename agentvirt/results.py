"""Result dataclasses reported by lifecycle and reconciliation operations."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class AttachReport:
    live: list[str] = field(default_factory=list)
    persistent_only: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def attached(self) -> list[str]:
        return [*self.live, *self.persistent_only]

    @property
    def complete(self) -> bool:
        return not self.failed


@dataclass(frozen=True)
class ReadyResult:
    ready: bool
    polls: int
    state: str


@dataclass
class ReconcileResult:
    vm_name: str
    action: str
    recreated: bool = False
    ready: ReadyResult | None = None
    attach: AttachReport | None = None
    warnings: list[str] = field(default_factory=list)
