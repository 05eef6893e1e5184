"""Domain error taxonomy shared by the solving pipeline and its surfaces."""

from __future__ import annotations

from typing import Optional


class SolverError(RuntimeError):
    """Base class for every error raised by the solving core."""


class ConfigError(SolverError):
    """Raised when configuration files cannot be loaded or validated."""


class ModelUnavailable(SolverError):
    """Raised when the model artifact cannot be located or validated.

    Attributes:
        reason: Machine-readable cause, e.g. ``missing_api_key``.
    """

    def __init__(self, message: str, reason: str = "unavailable") -> None:
        super().__init__(message)
        self.reason = reason


class ModelLoadError(SolverError):
    """Raised when the inference engine rejects the model artifact."""


class SessionCreationTimeout(SolverError):
    """Raised when the engine does not open a chat session in time."""

    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(
            "Session creation timed out after {:.0f}s; the engine is probably "
            "exhausted by accumulated sessions.".format(timeout_seconds)
        )
        self.timeout_seconds = timeout_seconds


class ExtractionInsufficient(SolverError):
    """Raised when image extraction yields too little text to solve."""

    def __init__(self, extracted_length: int, minimum: int) -> None:
        super().__init__(
            "Could not read problem from image: extracted {} characters, "
            "at least {} required.".format(extracted_length, minimum)
        )
        self.extracted_length = extracted_length
        self.minimum = minimum


class SolvingFailed(SolverError):
    """Raised when prompt send, stream or parse fails during a solve."""

    def __init__(self, message: str, problem_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.problem_id = problem_id


class ConversationFailed(SolverError):
    """Raised when a follow-up turn could not obtain an assistant reply."""

    def __init__(self, message: str, problem_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.problem_id = problem_id


class ProblemNotFound(SolverError):
    """Raised when a problem id does not match any persisted record."""

    def __init__(self, problem_id: str) -> None:
        super().__init__("Problem not found: {}".format(problem_id))
        self.problem_id = problem_id


class QueueFullError(SolverError):
    """Raised when the background job queue cannot accept more work."""
