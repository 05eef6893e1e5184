"""Utility helpers for SnapSolve."""

from .config_loader import (
    SolverConfig,
    load_environment_variables,
    load_solver_config,
    resolve_api_key,
)
from .logger import configure_logging, get_logger

__all__ = [
    "SolverConfig",
    "load_environment_variables",
    "load_solver_config",
    "resolve_api_key",
    "configure_logging",
    "get_logger",
]
