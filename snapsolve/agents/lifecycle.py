"""Foreground/background bookkeeping for in-flight solves."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

from snapsolve.utils.logger import get_logger

logger = get_logger(__name__)

TokenListener = Callable[[str], None]


class LifecyclePhase(str, Enum):
    FOREGROUND = "foreground"
    TRANSITIONING_TO_BACKGROUND = "transitioning_to_background"
    BACKGROUND = "background"
    RECONCILING = "reconciling"


class ResumeOutcome(str, Enum):
    CONTINUING = "continuing"
    COMPLETED = "completed"
    INDETERMINATE = "indeterminate"


_TRANSITIONS: Dict[LifecyclePhase, Set[LifecyclePhase]] = {
    LifecyclePhase.FOREGROUND: {LifecyclePhase.TRANSITIONING_TO_BACKGROUND, LifecyclePhase.RECONCILING},
    LifecyclePhase.TRANSITIONING_TO_BACKGROUND: {LifecyclePhase.BACKGROUND, LifecyclePhase.FOREGROUND},
    LifecyclePhase.BACKGROUND: {
        LifecyclePhase.TRANSITIONING_TO_BACKGROUND,
        LifecyclePhase.RECONCILING,
        LifecyclePhase.FOREGROUND,
    },
    LifecyclePhase.RECONCILING: {LifecyclePhase.FOREGROUND, LifecyclePhase.BACKGROUND},
}

_BACKGROUND_PHASES = (LifecyclePhase.TRANSITIONING_TO_BACKGROUND, LifecyclePhase.BACKGROUND)


class InvalidLifecycleTransition(RuntimeError):
    """Raised when a lifecycle trigger does not apply to the current phase."""


@dataclass
class ResumeResult:
    problem_id: str
    outcome: ResumeOutcome
    phase: LifecyclePhase
    status: Optional[str] = None
    buffered_text: str = ""

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "problem_id": self.problem_id,
            "outcome": self.outcome.value,
            "phase": self.phase.value,
            "status": self.status,
            "buffered_text": self.buffered_text,
        }


class TokenStream:
    """Accumulates solver tokens and forwards them while attached.

    Detaching stops forwarding without dropping anything, so a resumed
    listener can catch up from :attr:`text`.
    """

    def __init__(self, problem_id: str, listener: Optional[TokenListener] = None) -> None:
        self.problem_id = problem_id
        self._listener = listener
        self._tokens: List[str] = []
        self._lock = threading.Lock()
        self.attached = True
        self.closed = False

    def push(self, token: str) -> None:
        with self._lock:
            self._tokens.append(token)
            listener = self._listener if self.attached else None
        if listener is not None:
            listener(token)

    def detach(self) -> None:
        with self._lock:
            self.attached = False

    def attach(self, listener: Optional[TokenListener] = None) -> str:
        """Resumes forwarding and returns everything buffered so far."""
        with self._lock:
            if listener is not None:
                self._listener = listener
            self.attached = True
            return "".join(self._tokens)

    def close(self) -> None:
        with self._lock:
            self.closed = True
            self.attached = False

    @property
    def text(self) -> str:
        with self._lock:
            return "".join(self._tokens)


class StreamRegistry:
    """Live token streams keyed by problem id."""

    def __init__(self) -> None:
        self._streams: Dict[str, TokenStream] = {}
        self._lock = threading.Lock()

    def open(self, problem_id: str, listener: Optional[TokenListener] = None) -> TokenStream:
        stream = TokenStream(problem_id, listener)
        with self._lock:
            self._streams[problem_id] = stream
        return stream

    def get(self, problem_id: str) -> Optional[TokenStream]:
        with self._lock:
            stream = self._streams.get(problem_id)
        if stream is None or stream.closed:
            return None
        return stream

    def is_live(self, problem_id: str) -> bool:
        return self.get(problem_id) is not None

    def close(self, problem_id: str) -> None:
        with self._lock:
            stream = self._streams.pop(problem_id, None)
        if stream is not None:
            stream.close()


class BackgroundLifecycle:
    """Per-problem state machine for background mode.

    Every problem id moves on its own. Triggers: :meth:`enter_background`
    (app hidden), :meth:`begin_reconciling` (app shown again), :meth:`settle`
    (persisted status read) and :meth:`rollback` (a trigger's follow-up work
    failed). Ids with no entry are in the foreground.
    """

    def __init__(self) -> None:
        self._phases: Dict[str, LifecyclePhase] = {}
        self._previous: Dict[str, LifecyclePhase] = {}
        self._completion_notified: Set[str] = set()

    def phase_of(self, problem_id: str) -> LifecyclePhase:
        return self._phases.get(problem_id, LifecyclePhase.FOREGROUND)

    @property
    def background_ids(self) -> List[str]:
        return sorted(pid for pid, phase in self._phases.items() if phase in _BACKGROUND_PHASES)

    def _move(self, problem_id: str, target: LifecyclePhase) -> None:
        current = self.phase_of(problem_id)
        if target not in _TRANSITIONS[current]:
            raise InvalidLifecycleTransition(
                "Cannot move {} from {} to {}".format(problem_id, current.value, target.value)
            )
        logger.debug("lifecycle_transition problem_id=%s from=%s to=%s", problem_id, current.value, target.value)
        self._set(problem_id, target)

    def _set(self, problem_id: str, phase: LifecyclePhase) -> None:
        if phase == LifecyclePhase.FOREGROUND:
            self._phases.pop(problem_id, None)
        else:
            self._phases[problem_id] = phase

    def is_background(self, problem_id: Optional[str] = None) -> bool:
        if problem_id is None:
            return bool(self.background_ids)
        return self.phase_of(problem_id) in _BACKGROUND_PHASES

    def enter_background(self, problem_id: str) -> None:
        previous = self.phase_of(problem_id)
        self._move(problem_id, LifecyclePhase.TRANSITIONING_TO_BACKGROUND)
        self._previous[problem_id] = previous

    def background_ready(self, problem_id: str) -> None:
        self._move(problem_id, LifecyclePhase.BACKGROUND)
        self._previous.pop(problem_id, None)

    def begin_reconciling(self, problem_id: str) -> None:
        previous = self.phase_of(problem_id)
        self._move(problem_id, LifecyclePhase.RECONCILING)
        self._previous[problem_id] = previous

    def settle(self, problem_id: str, completed: bool) -> LifecyclePhase:
        """Leaves reconciliation for ``problem_id``.

        A completed solve returns to the foreground. Anything else goes back
        to the phase held before reconciling.
        """
        previous = self._previous.pop(problem_id, LifecyclePhase.FOREGROUND)
        if completed or previous == LifecyclePhase.FOREGROUND:
            self._move(problem_id, LifecyclePhase.FOREGROUND)
        else:
            self._move(problem_id, LifecyclePhase.BACKGROUND)
        return self.phase_of(problem_id)

    def rollback(self, problem_id: str) -> LifecyclePhase:
        """Restores the phase held before an interrupted trigger."""
        previous = self._previous.pop(problem_id, LifecyclePhase.FOREGROUND)
        logger.debug(
            "lifecycle_rollback problem_id=%s from=%s to=%s",
            problem_id,
            self.phase_of(problem_id).value,
            previous.value,
        )
        self._set(problem_id, previous)
        return previous

    def mark_completion_notified(self, problem_id: str) -> bool:
        """Records a completion notification.

        Returns:
            False when the completion was already notified.
        """
        if problem_id in self._completion_notified:
            return False
        self._completion_notified.add(problem_id)
        return True

    def forget(self, problem_id: str) -> None:
        self._completion_notified.discard(problem_id)
        self._phases.pop(problem_id, None)
        self._previous.pop(problem_id, None)
