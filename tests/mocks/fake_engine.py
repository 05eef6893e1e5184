"""Deterministic in-process inference engine for orchestration tests."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Tuple

from snapsolve.llm.engine import ChatTurn, ModelOptions, ModelReference, SessionClosedError
from snapsolve.llm.parser import format_delimited_response
from snapsolve.llm.prompts import EXTRACTION_PROMPT, ROLE_CLEARING_PROMPT

EXTRACTION_REPLY = (
    "**Linear Equation**\n\n"
    "**Main Problem Statement:**\nSolve 2x + 3 = 7 for x.\n\n"
    "**Given Information:**\n*   2x + 3 = 7\n\n"
    "**Visuals Description:**\nNone."
)
SOLUTION_REPLY = format_delimited_response(
    "1. Subtract 3 from both sides: `2x = 4`\n2. Divide by 2: `x = 2`",
    "x = 2",
)
FOLLOW_UP_REPLY = "We subtract 3 first to isolate the term with x."


class FakeProvisioner:
    def __init__(self, model: str = "fake/model") -> None:
        self.model = model

    def ensure_model_available(self) -> ModelReference:
        return ModelReference(provider="fake", model=self.model, api_key="test-key")

    def describe(self) -> Dict[str, Any]:
        return {"provider": "fake", "model": self.model, "api_key_present": True}


class FakeSession:
    def __init__(self, handle: "FakeHandle", supports_image: bool) -> None:
        self.handle = handle
        self.supports_image = supports_image
        self.turns: List[ChatTurn] = []

    async def send(self, turn: ChatTurn) -> None:
        if self.handle.closed:
            raise SessionClosedError("model closed")
        self.turns.append(turn)
        self.handle.engine.prompts.append((turn.text, turn.image))

    async def stream_response(self):  # noqa: ANN201 - async generator
        engine = self.handle.engine
        prompt = self.turns[-1].text
        reply = engine.reply_for(prompt)
        try:
            for index in range(0, len(reply), 7):
                await asyncio.sleep(0)
                yield reply[index : index + 7]
                if index == 0 and engine.solve_gate is not None and engine.is_solving(prompt):
                    await engine.solve_gate.wait()
            self.turns.append(ChatTurn(text=reply, is_user=False))
        finally:
            engine.closed_streams += 1


class FakeHandle:
    def __init__(self, engine: "FakeEngine") -> None:
        self.engine = engine
        self.closed = False
        self.sessions: List[FakeSession] = []

    async def create_chat(self, supports_image: bool = True) -> FakeSession:
        if self.engine.create_delay:
            await asyncio.sleep(self.engine.create_delay)
        session = FakeSession(self, supports_image)
        self.sessions.append(session)
        return session

    async def close(self) -> None:
        self.closed = True


class FakeEngine:
    """Answers by prompt kind: extraction, role clearing, solving or follow-up."""

    def __init__(
        self,
        extraction: str = EXTRACTION_REPLY,
        solution: str = SOLUTION_REPLY,
        follow_up: str = FOLLOW_UP_REPLY,
        create_delay: float = 0.0,
        load_error: Optional[Exception] = None,
        solve_error: Optional[Exception] = None,
        solve_gate: Optional[asyncio.Event] = None,
        return_no_handle: bool = False,
    ) -> None:
        self.extraction = extraction
        self.solution = solution
        self.follow_up = follow_up
        self.create_delay = create_delay
        self.load_error = load_error
        self.solve_error = solve_error
        self.solve_gate = solve_gate
        self.return_no_handle = return_no_handle
        self.load_count = 0
        self.closed_streams = 0
        self.handles: List[FakeHandle] = []
        self.prompts: List[Tuple[str, Any]] = []

    async def load_model(self, reference: ModelReference, options: ModelOptions) -> FakeHandle:
        if self.load_error is not None:
            raise self.load_error
        if self.return_no_handle:
            return None  # type: ignore[return-value]
        self.load_count += 1
        handle = FakeHandle(self)
        self.handles.append(handle)
        return handle

    @staticmethod
    def is_solving(prompt: str) -> bool:
        return prompt not in (EXTRACTION_PROMPT, ROLE_CLEARING_PROMPT) and "FOLLOW-UP QUESTION:" not in prompt

    def reply_for(self, prompt: str) -> str:
        if prompt == EXTRACTION_PROMPT:
            return self.extraction
        if prompt == ROLE_CLEARING_PROMPT:
            return "Understood."
        if "FOLLOW-UP QUESTION:" in prompt:
            return self.follow_up
        if self.solve_error is not None:
            raise self.solve_error
        return self.solution

    @property
    def session_count(self) -> int:
        return sum(len(handle.sessions) for handle in self.handles)
