"""Typed records and graph state for the solving orchestrator."""

from __future__ import annotations

import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, TypedDict

STATUS_PENDING = "pending"
STATUS_SOLVING = "solving"
STATUS_SOLVED = "solved"
STATUS_ERROR = "error"

INPUT_TEXT = "text"
INPUT_IMAGE = "image"

MODE_TEXT = "text"
MODE_IMAGE = "image"
MODE_IMAGE_WITH_TEXT = "imageWithText"

DISPLAY_TITLE_MAX_CHARS = 50

# Forward-only lifecycle; a new explicit solve may move an errored record back to solving.
_ALLOWED_TRANSITIONS: Dict[str, frozenset] = {
    STATUS_PENDING: frozenset({STATUS_SOLVING, STATUS_SOLVED, STATUS_ERROR}),
    STATUS_SOLVING: frozenset({STATUS_SOLVED, STATUS_ERROR}),
    STATUS_SOLVED: frozenset(),
    STATUS_ERROR: frozenset({STATUS_SOLVING}),
}

_clock_lock = threading.Lock()
_last_timestamp: Optional[datetime] = None


class InvalidTransition(ValueError):
    """Raised when a problem status would move backwards."""


def utc_timestamp() -> str:
    """Returns a strictly increasing UTC ISO-8601 timestamp.

    Two calls within the same clock tick still produce ordered values, which
    keeps chat messages totally ordered by their timestamp.
    """
    global _last_timestamp
    with _clock_lock:
        now = datetime.now(timezone.utc)
        if _last_timestamp is not None and now <= _last_timestamp:
            now = _last_timestamp + timedelta(microseconds=1)
        _last_timestamp = now
        return now.isoformat(timespec="microseconds")


def new_id() -> str:
    return str(uuid.uuid4())


def can_transition(current: str, target: str) -> bool:
    if current == target:
        return True
    return target in _ALLOWED_TRANSITIONS.get(current, frozenset())


def truncate(text: str, limit: int) -> str:
    cleaned = " ".join((text or "").split())
    if len(cleaned) <= limit:
        return cleaned
    return cleaned[: max(0, limit - 3)] + "..."


@dataclass
class Problem:
    """One submitted math problem and its solving lifecycle."""

    id: str = field(default_factory=new_id)
    original_input: str = ""
    extracted_text: Optional[str] = None
    latex_format: Optional[str] = None
    solution: Optional[str] = None
    step_by_step_explanation: Optional[str] = None
    title: Optional[str] = None
    created_at: str = field(default_factory=utc_timestamp)
    input_type: str = INPUT_TEXT
    status: str = STATUS_PENDING
    image_base64: Optional[str] = None

    def transition(self, target: str) -> None:
        """Moves the record to ``target`` status.

        Raises:
            InvalidTransition: If the move is not forward in the lifecycle.
        """
        if not can_transition(self.status, target):
            raise InvalidTransition("Cannot move problem {} from {} to {}".format(self.id, self.status, target))
        self.status = target

    @property
    def display_title(self) -> str:
        for candidate in (self.title, self.extracted_text, self.original_input):
            if candidate and candidate.strip():
                return truncate(candidate, DISPLAY_TITLE_MAX_CHARS)
        return "Math Problem"

    @property
    def problem_text(self) -> str:
        return self.extracted_text or self.original_input

    def to_dict(self, include_image: bool = False) -> Dict[str, Any]:
        payload = asdict(self)
        if not include_image:
            payload["has_image"] = bool(payload.pop("image_base64"))
        payload["display_title"] = self.display_title
        return payload


@dataclass
class ChatMessage:
    problem_id: str
    message: str
    is_user: bool
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=utc_timestamp)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class EssentialContext:
    """Compact in-memory summary of a solved problem used for follow-ups."""

    extracted_text: str
    solution: str
    explanation: str
    image: Optional[bytes] = None


class DecisionTrace(TypedDict, total=False):
    node: str
    summary: str
    timestamp: str


class SolveState(TypedDict, total=False):
    problem_id: str
    mode: str
    problem_text: str
    user_question: Optional[str]
    image: Optional[bytes]
    existing: bool
    session: Any
    extracted_text: str
    title: Optional[str]
    raw_response: str
    answer: str
    explanation: str
    parse_tier: str
    status: str
    decision_trace: List[DecisionTrace]


def build_initial_state(
    problem_id: str,
    mode: str,
    problem_text: str = "",
    image: Optional[bytes] = None,
    user_question: Optional[str] = None,
    existing: bool = False,
) -> SolveState:
    """Creates the graph input for one solve.

    Args:
        problem_id: Identifier the record is (or will be) stored under.
        mode: One of ``text``, ``image`` or ``imageWithText``.
        problem_text: Raw problem text for the text mode.
        image: Raw image bytes for the image modes.
        user_question: The user's literal question for ``imageWithText``.
        existing: True when the record was persisted before the solve.

    Returns:
        Initialized `SolveState`.
    """
    return SolveState(
        problem_id=problem_id,
        mode=mode,
        problem_text=problem_text,
        user_question=user_question,
        image=image,
        existing=existing,
        session=None,
        title=None,
        status=STATUS_PENDING,
        decision_trace=[],
    )


def append_trace(state: SolveState, node: str, summary: str) -> None:
    trace = state.setdefault("decision_trace", [])
    trace.append(DecisionTrace(node=node, summary=summary, timestamp=utc_timestamp()))
