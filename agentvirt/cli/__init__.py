"""CLI package exports for top-level command entry points."""

from __future__ import annotations

from .main import AgentVirtModalCLI, main

__all__ = ['AgentVirtModalCLI', 'main']
