"""Background job lifecycle: bounded queue, TTL retention and worker tasks."""

from __future__ import annotations

import asyncio
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from snapsolve.errors import QueueFullError
from snapsolve.utils.logger import get_logger

logger = get_logger("snapsolve.api.runtime")

JobHandler = Callable[[Dict[str, Any]], Awaitable[Any]]


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class JobQueueFullError(QueueFullError):
    """Raised when in-memory job queue has reached capacity."""


class JobNotFoundError(KeyError):
    """Raised when requested job id does not exist."""


class InMemoryJobStore:
    """Single-process in-memory store with bounded queue and TTL cleanup.

    Jobs are keyed by the caller's task id, so the problem id doubles as the
    job id for background solves.
    """

    TERMINAL_STATUSES = {"succeeded", "failed", "canceled"}

    def __init__(self, max_queue_size: int = 16, retention_seconds: int = 1800) -> None:
        self.max_queue_size = max(1, int(max_queue_size))
        self.retention_seconds = max(60, int(retention_seconds))

        self._condition = asyncio.Condition()
        self._jobs: Dict[str, Dict[str, Any]] = {}
        self._queue: Deque[str] = deque()

    def _cleanup_locked(self) -> None:
        now_mono = time.monotonic()
        stale = []
        for job_id, payload in self._jobs.items():
            if payload.get("status") not in self.TERMINAL_STATUSES:
                continue
            finished_mono = payload.get("finished_monotonic")
            if finished_mono is None:
                continue
            if now_mono - float(finished_mono) > float(self.retention_seconds):
                stale.append(job_id)
        for job_id in stale:
            self._jobs.pop(job_id, None)

    def _queue_position_locked(self, job_id: str) -> Optional[int]:
        try:
            return list(self._queue).index(job_id) + 1
        except ValueError:
            return None

    def _public_locked(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        job_id = str(payload["job_id"])
        queue_position = self._queue_position_locked(job_id) if payload.get("status") == "queued" else None
        return {
            "job_id": job_id,
            "status": str(payload.get("status", "queued")),
            "queue_position": queue_position,
            "submitted_at": payload.get("submitted_at"),
            "started_at": payload.get("started_at"),
            "finished_at": payload.get("finished_at"),
            "error": payload.get("error"),
            "result": payload.get("result"),
            "cancel_requested": bool(payload.get("cancel_requested", False)),
        }

    def _finish_locked(self, record: Dict[str, Any], status: str, error: Optional[str] = None) -> None:
        record["status"] = status
        record["error"] = error
        record["finished_at"] = _utc_now_iso()
        record["finished_monotonic"] = time.monotonic()

    async def submit(self, job_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        async with self._condition:
            self._cleanup_locked()
            if len(self._queue) >= self.max_queue_size:
                raise JobQueueFullError("Job queue capacity reached.")
            existing = self._jobs.get(job_id)
            if existing is not None and existing.get("status") not in self.TERMINAL_STATUSES:
                return self._public_locked(existing)
            record = {
                "job_id": job_id,
                "status": "queued",
                "payload": dict(payload),
                "submitted_at": _utc_now_iso(),
                "started_at": None,
                "finished_at": None,
                "finished_monotonic": None,
                "error": None,
                "result": None,
                "cancel_requested": False,
            }
            self._jobs[job_id] = record
            self._queue.append(job_id)
            self._condition.notify_all()
            return self._public_locked(record)

    async def pop_next(self) -> Dict[str, Any]:
        async with self._condition:
            while True:
                self._cleanup_locked()
                while not self._queue:
                    await self._condition.wait()
                job_id = self._queue.popleft()
                record = self._jobs.get(job_id)
                if not record:
                    continue
                if record.get("status") == "canceled":
                    continue
                record["status"] = "running"
                record["started_at"] = _utc_now_iso()
                return dict(record)

    async def get(self, job_id: str) -> Dict[str, Any]:
        async with self._condition:
            self._cleanup_locked()
            record = self._jobs.get(str(job_id))
            if not record:
                raise JobNotFoundError(job_id)
            return self._public_locked(record)

    async def set_terminal(
        self,
        job_id: str,
        status: str,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> Dict[str, Any]:
        normalized_status = str(status or "failed").strip().lower()
        if normalized_status not in self.TERMINAL_STATUSES:
            normalized_status = "failed"
        async with self._condition:
            self._cleanup_locked()
            record = self._jobs.get(str(job_id))
            if not record:
                raise JobNotFoundError(job_id)
            if record.get("cancel_requested"):
                normalized_status = "canceled"
                result = None
                error = error or "Job canceled by user."
            record["result"] = result
            self._finish_locked(record, normalized_status, error)
            return self._public_locked(record)

    async def cancel(self, job_id: str) -> Optional[str]:
        """Cancels a queued job or flags a running one.

        Returns:
            The status the job had before cancellation, or None for jobs
            that were already terminal.
        """
        async with self._condition:
            self._cleanup_locked()
            record = self._jobs.get(str(job_id))
            if not record:
                raise JobNotFoundError(job_id)
            status = str(record.get("status", "queued"))
            if status in self.TERMINAL_STATUSES:
                return None
            if status == "queued":
                self._finish_locked(record, "canceled", "Job canceled by user.")
                try:
                    self._queue.remove(str(job_id))
                except ValueError:
                    pass
                return status
            record["cancel_requested"] = True
            return status

    async def active_ids(self) -> List[str]:
        async with self._condition:
            return [
                job_id
                for job_id, record in self._jobs.items()
                if record.get("status") not in self.TERMINAL_STATUSES
            ]

    async def queue_depth(self) -> int:
        async with self._condition:
            self._cleanup_locked()
            return len(self._queue)


class BackgroundTaskRunner:
    """Runs one-off jobs on asyncio worker tasks outside the request path."""

    def __init__(self, max_queue_size: int = 16, retention_seconds: int = 1800, worker_count: int = 1) -> None:
        self.store = InMemoryJobStore(max_queue_size=max_queue_size, retention_seconds=retention_seconds)
        self.worker_count = max(1, int(worker_count))
        self._handler: Optional[JobHandler] = None
        self._workers: List["asyncio.Task[Any]"] = []
        self._running: Dict[str, "asyncio.Task[Any]"] = {}

    @property
    def is_running(self) -> bool:
        return bool(self._workers)

    def start(self, handler: JobHandler) -> None:
        if self._workers:
            return
        self._handler = handler
        for index in range(self.worker_count):
            self._workers.append(asyncio.create_task(self._job_worker(index)))
        logger.info("job_workers_started count=%s", self.worker_count)

    async def stop(self) -> None:
        """Cancels running jobs and workers and waits for their cleanup."""
        running = list(self._running.values())
        for task in running:
            task.cancel()
        if running:
            # Jobs finish their own cleanup before their workers go away.
            await asyncio.gather(*running, return_exceptions=True)
        for task in self._workers:
            task.cancel()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
            self._workers.clear()
        logger.info("job_workers_stopped")

    async def schedule_one_off(self, task_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        record = await self.store.submit(task_id, payload)
        logger.info("job_submitted job_id=%s queue_position=%s", task_id, record.get("queue_position"))
        return record

    async def cancel(self, task_id: str) -> bool:
        try:
            previous = await self.store.cancel(task_id)
        except JobNotFoundError:
            return False
        running = self._running.get(task_id)
        if running is not None:
            running.cancel()
        return previous is not None

    async def cancel_all(self) -> List[str]:
        cancelled = []
        for task_id in await self.store.active_ids():
            if await self.cancel(task_id):
                cancelled.append(task_id)
        return cancelled

    async def get(self, task_id: str) -> Dict[str, Any]:
        return await self.store.get(task_id)

    async def _job_worker(self, worker_id: int) -> None:
        while True:
            try:
                record = await self.store.pop_next()
            except asyncio.CancelledError:  # pragma: no cover - shutdown path
                break
            job_id = str(record.get("job_id"))
            if self._handler is None:
                raise RuntimeError("Job worker {} has no handler; call start() first".format(worker_id))
            job_task = asyncio.create_task(self._handler(dict(record.get("payload", {}))))
            self._running[job_id] = job_task
            try:
                await asyncio.wait({job_task})
            except asyncio.CancelledError:  # pragma: no cover - shutdown path
                job_task.cancel()
                break
            finally:
                self._running.pop(job_id, None)

            if job_task.cancelled():
                await self.store.set_terminal(job_id=job_id, status="canceled", error="Job canceled by user.")
                continue
            exc = job_task.exception()
            if exc is not None:
                logger.warning("job_worker_failed worker_id=%s job_id=%s error=%s", worker_id, job_id, exc)
                await self.store.set_terminal(job_id=job_id, status="failed", error=str(exc))
                continue
            result = job_task.result()
            payload = result.to_dict() if hasattr(result, "to_dict") else result
            await self.store.set_terminal(job_id=job_id, status="succeeded", result=payload)
