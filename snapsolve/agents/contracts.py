"""Collaborator contracts consumed by the solving orchestrator."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol, TypedDict

from snapsolve.agents.state import ChatMessage, Problem


class BackgroundPayload(TypedDict, total=False):
    problem_id: str
    problem_text: str
    problem_type: str
    image_path: Optional[str]
    user_question: Optional[str]


class PersistenceGateway(Protocol):
    async def save_problem(self, problem: Problem) -> None:
        ...

    async def update_problem(self, problem: Problem) -> None:
        ...

    async def get_problem(self, problem_id: str) -> Optional[Problem]:
        ...

    async def list_recent(self, limit: int = 50) -> List[Problem]:
        ...

    async def search(self, query: str) -> List[Problem]:
        ...

    async def delete_problem(self, problem_id: str) -> bool:
        ...

    async def save_chat_message(self, message: ChatMessage) -> None:
        ...

    async def list_chat_messages(self, problem_id: str) -> List[ChatMessage]:
        ...

    async def stats(self) -> Dict[str, int]:
        ...


class NotificationGateway(Protocol):
    def notify_progress(self, title: str, status: str, problem_id: Optional[str] = None) -> None:
        ...

    def notify_completed(self, title: str, answer: str, problem_id: Optional[str] = None) -> None:
        ...

    def notify_failed(self, title: str, error: str, problem_id: Optional[str] = None) -> None:
        ...

    def cancel_progress(self) -> None:
        ...


class BackgroundTaskGateway(Protocol):
    async def schedule_one_off(self, task_id: str, payload: BackgroundPayload) -> Dict[str, Any]:
        ...

    async def cancel(self, task_id: str) -> bool:
        ...

    async def cancel_all(self) -> List[str]:
        ...
