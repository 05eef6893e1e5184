"""LangGraph node implementations for the solving orchestrator."""

from .extractor import extract_problem, validate_extraction
from .solver import solve_problem

__all__ = ["extract_problem", "validate_extraction", "solve_problem"]
