"""Registry of open model chat sessions."""

from __future__ import annotations

import threading
from typing import Any, Dict, List


class SessionPool:
    """Tracks live chat sessions so they can be dropped in bulk.

    The engine offers no per-session disposal, so releasing a session only
    drops the pool's reference. The pool also records the highest number of
    sessions tracked at once, which is reset by :meth:`release_all`.
    """

    def __init__(self) -> None:
        self._sessions: Dict[int, Any] = {}
        self._lock = threading.Lock()
        self._peak = 0

    def track(self, session: Any) -> None:
        with self._lock:
            self._sessions[id(session)] = session
            self._peak = max(self._peak, len(self._sessions))

    def release(self, session: Any) -> bool:
        """Stops tracking ``session``.

        Returns:
            True when the session was tracked.
        """
        with self._lock:
            return self._sessions.pop(id(session), None) is not None

    def release_all(self) -> int:
        """Drops every tracked session and returns how many were dropped."""
        with self._lock:
            count = len(self._sessions)
            self._sessions.clear()
            self._peak = 0
            return count

    def __contains__(self, session: Any) -> bool:
        with self._lock:
            return id(session) in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    @property
    def peak(self) -> int:
        with self._lock:
            return self._peak

    def snapshot(self) -> List[Any]:
        with self._lock:
            return list(self._sessions.values())
