"""Recording doubles for the notification and background gateways."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from snapsolve.errors import QueueFullError


class RecordingNotifier:
    def __init__(self) -> None:
        self.events: List[Tuple[str, ...]] = []

    def notify_progress(self, title: str, status: str, problem_id: Optional[str] = None) -> None:
        self.events.append(("progress", title, status, problem_id))

    def notify_completed(self, title: str, answer: str, problem_id: Optional[str] = None) -> None:
        self.events.append(("completed", title, answer, problem_id))

    def notify_failed(self, title: str, error: str, problem_id: Optional[str] = None) -> None:
        self.events.append(("failed", title, error, problem_id))

    def cancel_progress(self) -> None:
        self.events.append(("cancel_progress",))

    def kinds(self) -> List[str]:
        return [event[0] for event in self.events]


class RecordingBackground:
    """Keeps scheduled payloads so tests can run them explicitly."""

    def __init__(self, capacity: int = 8) -> None:
        self.capacity = capacity
        self.jobs: Dict[str, Dict[str, Any]] = {}

    async def schedule_one_off(self, task_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if len(self.jobs) >= self.capacity:
            raise QueueFullError("queue full")
        self.jobs[task_id] = dict(payload)
        return {"job_id": task_id, "status": "queued"}

    async def cancel(self, task_id: str) -> bool:
        return self.jobs.pop(task_id, None) is not None

    async def cancel_all(self) -> List[str]:
        cancelled = list(self.jobs)
        self.jobs.clear()
        return cancelled
