"""Solver node: streams a step-by-step solution and parses it."""

from __future__ import annotations

from typing import Callable, Optional

from snapsolve.agents.state import MODE_IMAGE, MODE_IMAGE_WITH_TEXT, SolveState, append_trace
from snapsolve.llm.gateway import ModelGateway
from snapsolve.llm.parser import parse_response
from snapsolve.llm.prompts import build_role_clearing_prompt, build_solving_prompt
from snapsolve.utils.logger import get_logger

logger = get_logger(__name__)

StatusCallback = Callable[[str], None]
TokenCallback = Callable[[str], None]


def solving_input(state: SolveState) -> str:
    """Returns the problem text the solving prompt is built from."""
    mode = state.get("mode")
    if mode == MODE_IMAGE:
        return state.get("extracted_text") or ""
    if mode == MODE_IMAGE_WITH_TEXT:
        return state.get("user_question") or ""
    return state.get("problem_text") or ""


async def solve_problem(
    state: SolveState,
    gateway: ModelGateway,
    on_status: Optional[StatusCallback] = None,
    on_token: Optional[TokenCallback] = None,
) -> SolveState:
    """Sends the solving prompt and stores the parsed reply.

    When the extraction phase left a session behind, that session is reused:
    a role-clearing turn is sent first and its reply is discarded.

    Args:
        state: Current solve state.
        gateway: Model gateway owning the loaded model.
        on_status: Optional progress callback.
        on_token: Optional callback receiving every streamed token.

    Returns:
        Updated state with ``raw_response``, ``answer``, ``explanation`` and
        ``parse_tier``.
    """
    image = state.get("image")
    session = state.get("session")

    if session is not None:
        if on_status is not None:
            on_status("Switching to solver mode...")
        await gateway.send_and_collect(session, build_role_clearing_prompt())
        logger.info("role_cleared problem_id=%s", state.get("problem_id"))
    else:
        session = await gateway.create_session(supports_image=image is not None)
        state["session"] = session

    if on_status is not None:
        on_status("Solving problem step by step...")

    prompt = build_solving_prompt(solving_input(state), has_image=image is not None)
    raw = await gateway.send_and_collect(session, prompt, image=image, on_token=on_token)
    logger.debug("solver_raw problem_id=%s text=%s", state.get("problem_id"), raw)

    parsed = parse_response(raw)
    state["raw_response"] = raw
    state["answer"] = parsed.answer
    state["explanation"] = parsed.explanation
    state["parse_tier"] = parsed.tier
    logger.info(
        "solve_parsed problem_id=%s tier=%s has_answer=%s",
        state.get("problem_id"),
        parsed.tier,
        parsed.has_answer,
    )

    append_trace(state, "solve", "Parsed reply with {} tier".format(parsed.tier))
    return state
