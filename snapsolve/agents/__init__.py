"""Agent package entrypoints."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:  # pragma: no cover
    from .orchestrator import SolvingOrchestrator

__all__ = ["SolvingOrchestrator"]


def __getattr__(name: str) -> Any:
    if name == "SolvingOrchestrator":
        from .orchestrator import SolvingOrchestrator

        return SolvingOrchestrator
    raise AttributeError("module '{}' has no attribute '{}'".format(__name__, name))
