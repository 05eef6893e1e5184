"""In-process notification hub fanned out to websocket subscribers."""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional, Set

from snapsolve.agents.state import truncate
from snapsolve.utils.logger import get_logger

logger = get_logger("snapsolve.api.notifications")

KIND_PROGRESS = "progress"
KIND_COMPLETED = "completed"
KIND_FAILED = "failed"
KIND_PROGRESS_CANCELLED = "progress_cancelled"

TITLE_MAX_CHARS = 50
BODY_MAX_CHARS = 100


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class Notification:
    kind: str
    title: str = ""
    body: str = ""
    problem_id: Optional[str] = None
    created_at: str = field(default_factory=_utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class NotificationHub:
    """Delivers user-visible notifications to subscribers and keeps a short history."""

    def __init__(self, history_size: int = 50, queue_size: int = 100, title_max_chars: int = TITLE_MAX_CHARS) -> None:
        self.queue_size = max(1, int(queue_size))
        self.title_max_chars = max(1, int(title_max_chars))
        self._history: Deque[Notification] = deque(maxlen=max(1, int(history_size)))
        self._subscribers: Set["asyncio.Queue[Notification]"] = set()
        self._progress_problem: Optional[str] = None

    @property
    def has_progress(self) -> bool:
        return self._progress_problem is not None

    def notify_progress(self, title: str, status: str, problem_id: Optional[str] = None) -> None:
        self._progress_problem = problem_id or ""
        self._publish(Notification(KIND_PROGRESS, title, status, problem_id))

    def notify_completed(self, title: str, answer: str, problem_id: Optional[str] = None) -> None:
        self._publish(Notification(KIND_COMPLETED, title, "Answer: {}".format(answer), problem_id))

    def notify_failed(self, title: str, error: str, problem_id: Optional[str] = None) -> None:
        self._publish(Notification(KIND_FAILED, title, error, problem_id))

    def cancel_progress(self) -> None:
        if not self.has_progress:
            return
        problem_id = self._progress_problem or None
        self._progress_problem = None
        self._publish(Notification(KIND_PROGRESS_CANCELLED, problem_id=problem_id))

    def subscribe(self) -> "asyncio.Queue[Notification]":
        queue: "asyncio.Queue[Notification]" = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: "asyncio.Queue[Notification]") -> None:
        self._subscribers.discard(queue)

    def recent(self, limit: Optional[int] = None) -> List[Notification]:
        items = list(self._history)
        if limit is not None:
            items = items[-int(limit):] if int(limit) > 0 else []
        return items

    def _publish(self, notification: Notification) -> None:
        notification.title = truncate(notification.title, self.title_max_chars)
        notification.body = truncate(notification.body, BODY_MAX_CHARS)
        self._history.append(notification)
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(notification)
            except asyncio.QueueFull:
                logger.warning("notification_dropped kind=%s problem_id=%s", notification.kind, notification.problem_id)
        logger.info("notification_published kind=%s problem_id=%s", notification.kind, notification.problem_id)
