"""Extractor nodes: transcribe an image problem into structured text."""

from __future__ import annotations

from typing import Callable, Optional

from snapsolve.agents.state import SolveState, append_trace
from snapsolve.errors import ExtractionInsufficient
from snapsolve.llm.gateway import ModelGateway
from snapsolve.llm.prompts import build_extraction_prompt
from snapsolve.utils.logger import get_logger

logger = get_logger(__name__)

StatusCallback = Callable[[str], None]


async def extract_problem(
    state: SolveState,
    gateway: ModelGateway,
    on_status: Optional[StatusCallback] = None,
) -> SolveState:
    """Runs the extraction phase on a fresh image-capable session.

    The session is left in ``state["session"]`` so the solving phase can
    reuse it instead of opening a second one.

    Args:
        state: Current solve state carrying ``image``.
        gateway: Model gateway owning the loaded model.
        on_status: Optional progress callback.

    Returns:
        Updated state with ``extracted_text`` and ``session``.
    """
    if on_status is not None:
        on_status("Analyzing image content...")

    session = await gateway.create_session(supports_image=True)
    state["session"] = session

    extracted = await gateway.send_and_collect(session, build_extraction_prompt(), image=state.get("image"))
    state["extracted_text"] = extracted.strip()
    logger.info(
        "extraction_done problem_id=%s chars=%s",
        state.get("problem_id"),
        len(state["extracted_text"]),
    )
    logger.debug("extraction_raw problem_id=%s text=%s", state.get("problem_id"), extracted)

    append_trace(state, "extract", "Extracted {} characters from image".format(len(state["extracted_text"])))
    return state


def validate_extraction(state: SolveState, min_chars: int = 10) -> SolveState:
    """Rejects extractions too short to describe a problem.

    Raises:
        ExtractionInsufficient: If fewer than ``min_chars`` characters were
            extracted.
    """
    extracted = (state.get("extracted_text") or "").strip()
    if len(extracted) < min_chars:
        logger.warning(
            "extraction_insufficient problem_id=%s chars=%s minimum=%s",
            state.get("problem_id"),
            len(extracted),
            min_chars,
        )
        raise ExtractionInsufficient(len(extracted), min_chars)
    append_trace(state, "validate", "Extraction accepted")
    return state
