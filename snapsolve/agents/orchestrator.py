"""LangGraph orchestration driving a problem from raw input to a stored solution."""

from __future__ import annotations

import asyncio
import base64
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set

from langgraph.graph import END, StateGraph

from snapsolve.agents.contracts import BackgroundPayload, BackgroundTaskGateway, NotificationGateway, PersistenceGateway
from snapsolve.agents.lifecycle import (
    BackgroundLifecycle,
    LifecyclePhase,
    ResumeOutcome,
    ResumeResult,
    StreamRegistry,
    TokenListener,
    TokenStream,
)
from snapsolve.agents.state import (
    INPUT_IMAGE,
    INPUT_TEXT,
    MODE_IMAGE,
    MODE_IMAGE_WITH_TEXT,
    MODE_TEXT,
    STATUS_ERROR,
    STATUS_SOLVED,
    STATUS_SOLVING,
    ChatMessage,
    EssentialContext,
    Problem,
    SolveState,
    append_trace,
    build_initial_state,
    can_transition,
    new_id,
)
from snapsolve.errors import (
    ConversationFailed,
    ExtractionInsufficient,
    ProblemNotFound,
    QueueFullError,
    SolverError,
    SolvingFailed,
)
from snapsolve.llm.gateway import ModelGateway
from snapsolve.llm.parser import NO_EXPLANATION
from snapsolve.llm.prompts import build_follow_up_prompt
from snapsolve.nodes import extract_problem, solve_problem, validate_extraction
from snapsolve.storage.images import ImageStore
from snapsolve.tools.ocr import extract_math_from_image
from snapsolve.tools.titles import derive_title
from snapsolve.utils.config_loader import RuntimeSettings
from snapsolve.utils.logger import get_logger

StatusCallback = Callable[[str], None]

IMAGE_ORIGINAL_INPUT = "Image-based problem"
NOT_SOLVED_YET = "Not solved yet"
COMPLETED_TITLE = "Math Problem Solved!"
FAILED_TITLE = "Math Solving Failed"
BACKGROUND_STATUS = "Solving in background..."


@dataclass
class _SolveRun:
    stream: TokenStream
    on_status: Optional[StatusCallback] = None
    background: bool = False


class SolvingOrchestrator:
    """Sequences extraction, solving, persistence and follow-up conversation.

    All collaborators are injected. The orchestrator is the only writer of
    the model gateway and of the in-memory essential contexts.
    """

    def __init__(
        self,
        gateway: ModelGateway,
        store: PersistenceGateway,
        notifier: NotificationGateway,
        background: Optional[BackgroundTaskGateway] = None,
        images: Optional[ImageStore] = None,
        settings: Optional[RuntimeSettings] = None,
    ) -> None:
        """Initializes the orchestrator and compiles its graph.

        Args:
            gateway: Owner of the loaded model and session pool.
            store: Problem and chat message persistence.
            notifier: User-visible progress and completion signaling.
            background: Job runner for background solves.
            images: Store for images handed to background jobs.
            settings: Runtime thresholds and reset policy.
        """
        self.logger = get_logger("solving_orchestrator")
        self.gateway = gateway
        self.store = store
        self.notifier = notifier
        self.background = background
        self.images = images
        self.settings = settings or RuntimeSettings()
        self.lifecycle = BackgroundLifecycle()
        self._lifecycle_lock = asyncio.Lock()
        self.streams = StreamRegistry()
        self._contexts: Dict[str, EssentialContext] = {}
        self._runs: Dict[str, _SolveRun] = {}
        self._in_flight: Set[str] = set()
        self._last_processed: Optional[str] = None
        self._graph = self._build_langgraph()

    @property
    def last_processed_problem_id(self) -> Optional[str]:
        return self._last_processed

    def essential_context(self, problem_id: str) -> Optional[EssentialContext]:
        return self._contexts.get(problem_id)

    # Graph

    def _build_langgraph(self) -> Any:
        """Builds the solving graph.

        Topology: reset, then extract and validate for image input only,
        then persist, solve and finalize.
        """
        graph = StateGraph(SolveState)
        graph.add_node("reset", self._node_reset)
        graph.add_node("extract", self._node_extract)
        graph.add_node("validate", self._node_validate)
        graph.add_node("persist", self._node_persist)
        graph.add_node("solve", self._node_solve)
        graph.add_node("finalize", self._node_finalize)
        graph.set_entry_point("reset")
        graph.add_conditional_edges(
            "reset",
            self._route_after_reset,
            {"extract": "extract", "persist": "persist"},
        )
        graph.add_edge("extract", "validate")
        graph.add_edge("validate", "persist")
        graph.add_edge("persist", "solve")
        graph.add_edge("solve", "finalize")
        graph.add_edge("finalize", END)
        return graph.compile()

    @staticmethod
    def _route_after_reset(state: SolveState) -> str:
        return "extract" if state.get("mode") == MODE_IMAGE else "persist"

    def _run_for(self, state: SolveState) -> _SolveRun:
        return self._runs[state["problem_id"]]

    def _status(self, state: SolveState, message: str) -> None:
        callback = self._run_for(state).on_status
        if callback is not None:
            callback(message)

    async def _node_reset(self, state: SolveState) -> SolveState:
        if self.settings.reset_before_solve:
            self._status(state, "Preparing model...")
            await self.gateway.reset()
            append_trace(state, "reset", "Model reloaded before solve")
        else:
            await self.gateway.initialize()
            append_trace(state, "reset", "Model reused")
        return state

    async def _node_extract(self, state: SolveState) -> SolveState:
        return await extract_problem(state, self.gateway, on_status=self._run_for(state).on_status)

    async def _node_validate(self, state: SolveState) -> SolveState:
        return validate_extraction(state, min_chars=self.settings.min_extraction_chars)

    async def _node_persist(self, state: SolveState) -> SolveState:
        problem_id = state["problem_id"]
        mode = state.get("mode", MODE_TEXT)

        if state.get("existing"):
            problem = await self.store.get_problem(problem_id)
            if problem is None:
                raise ProblemNotFound(problem_id)
            if mode == MODE_IMAGE and state.get("extracted_text"):
                problem.extracted_text = state["extracted_text"]
            problem.transition(STATUS_SOLVING)
            await self.store.update_problem(problem)
        else:
            problem = _new_problem(
                problem_id,
                mode,
                problem_text=state.get("problem_text") or "",
                image=state.get("image"),
                user_question=state.get("user_question"),
                extracted_text=state.get("extracted_text"),
            )
            problem.transition(STATUS_SOLVING)
            await self.store.save_problem(problem)

        state["status"] = STATUS_SOLVING
        self.logger.info("problem_persisted problem_id=%s mode=%s status=%s", problem_id, mode, STATUS_SOLVING)
        append_trace(state, "persist", "Problem stored with status solving")
        return state

    async def _node_solve(self, state: SolveState) -> SolveState:
        run = self._run_for(state)
        return await solve_problem(state, self.gateway, on_status=run.on_status, on_token=run.stream.push)

    async def _node_finalize(self, state: SolveState) -> SolveState:
        problem_id = state["problem_id"]
        problem = await self.store.get_problem(problem_id)
        if problem is None:
            raise ProblemNotFound(problem_id)

        mode = state.get("mode", MODE_TEXT)
        if mode == MODE_IMAGE_WITH_TEXT:
            question = state.get("user_question") or problem.original_input
            problem.extracted_text = question
            problem.title = question
        else:
            problem.title = derive_title(problem.problem_text)

        problem.solution = state.get("answer")
        problem.step_by_step_explanation = state.get("explanation")
        problem.transition(STATUS_SOLVED)
        await self.store.update_problem(problem)

        self._contexts[problem_id] = EssentialContext(
            extracted_text=problem.problem_text,
            solution=problem.solution or NOT_SOLVED_YET,
            explanation=problem.step_by_step_explanation or NO_EXPLANATION,
            image=state.get("image"),
        )
        session = state.get("session")
        if session is not None:
            self.gateway.release(session)
        state["session"] = None
        state["title"] = problem.title
        state["status"] = STATUS_SOLVED
        self._last_processed = problem_id

        self.logger.info("problem_solved problem_id=%s title=%s", problem_id, problem.title)
        append_trace(state, "finalize", "Problem solved and context stored")
        return state

    # Solving entry points

    async def solve_from_text(
        self,
        text: str,
        on_status: Optional[StatusCallback] = None,
        on_token: Optional[TokenListener] = None,
    ) -> Problem:
        """Solves a typed problem.

        Raises:
            SolvingFailed: If any phase after persistence fails.
        """
        state = build_initial_state(new_id(), MODE_TEXT, problem_text=text.strip())
        return await self._run_solve(state, on_status=on_status, on_token=on_token)

    async def solve_from_image(
        self,
        image: bytes,
        on_status: Optional[StatusCallback] = None,
        on_token: Optional[TokenListener] = None,
    ) -> Problem:
        """Solves a photographed problem with extract-then-solve.

        Raises:
            ExtractionInsufficient: If the extraction is too short. No record
                is stored in that case.
            SolvingFailed: If solving fails after the record was stored.
        """
        state = build_initial_state(new_id(), MODE_IMAGE, image=image)
        return await self._run_solve(state, on_status=on_status, on_token=on_token)

    async def solve_from_image_with_text(
        self,
        image: bytes,
        question: str,
        on_status: Optional[StatusCallback] = None,
        on_token: Optional[TokenListener] = None,
    ) -> Problem:
        state = build_initial_state(
            new_id(),
            MODE_IMAGE_WITH_TEXT,
            image=image,
            user_question=question.strip(),
        )
        return await self._run_solve(state, on_status=on_status, on_token=on_token)

    async def solve_from_ocr(
        self,
        image: bytes,
        ocr_config: Optional[Dict[str, Any]] = None,
        on_status: Optional[StatusCallback] = None,
    ) -> Problem:
        """Reads the problem with local OCR and solves it as text.

        Raises:
            ExtractionInsufficient: If OCR finds too little text.
        """
        if on_status is not None:
            on_status("Reading text from image...")
        result = await asyncio.to_thread(extract_math_from_image, image, ocr_config)
        text = result.get("question") or result.get("text") or ""
        choices = result.get("answer_choices") or []
        if choices:
            text = "{}\n{}".format(text, "\n".join(choices))
        if len(text.strip()) < self.settings.min_extraction_chars:
            raise ExtractionInsufficient(len(text.strip()), self.settings.min_extraction_chars)
        return await self.solve_from_text(text, on_status=on_status)

    async def _run_solve(
        self,
        state: SolveState,
        on_status: Optional[StatusCallback] = None,
        on_token: Optional[TokenListener] = None,
        background: bool = False,
    ) -> Problem:
        problem_id = state["problem_id"]
        if problem_id in self._in_flight:
            raise SolvingFailed("Problem {} is already being solved".format(problem_id), problem_id)

        self._in_flight.add(problem_id)
        self._runs[problem_id] = _SolveRun(
            stream=self.streams.open(problem_id, on_token),
            on_status=on_status,
            background=background,
        )
        self.logger.info("solve_started problem_id=%s mode=%s background=%s", problem_id, state.get("mode"), background)
        try:
            await self._graph.ainvoke(state)
        except ExtractionInsufficient as exc:
            self.gateway.pool.release_all()
            await self._mark_error(problem_id)
            self._notify_failed(problem_id, str(exc))
            raise
        except SolverError as exc:
            await self._fail_problem(problem_id, exc)
            raise
        except Exception as exc:
            await self._fail_problem(problem_id, exc)
            raise SolvingFailed("Solving failed: {}".format(exc), problem_id) from exc
        except asyncio.CancelledError:
            self.gateway.pool.release_all()
            self.logger.warning("solve_cancelled problem_id=%s", problem_id)
            await asyncio.shield(self._mark_error(problem_id))
            raise
        finally:
            self._in_flight.discard(problem_id)
            self._runs.pop(problem_id, None)
            self.streams.close(problem_id)

        problem = await self.store.get_problem(problem_id)
        if problem is None:
            raise SolvingFailed("Solved problem {} vanished from storage".format(problem_id), problem_id)
        if background or self.lifecycle.is_background(problem_id):
            self._notify_completed(problem)
        return problem

    async def _fail_problem(self, problem_id: str, exc: BaseException) -> None:
        self.gateway.pool.release_all()
        self.logger.error("solve_failed problem_id=%s error_type=%s error=%s", problem_id, type(exc).__name__, exc)
        await self._mark_error(problem_id)
        self._notify_failed(problem_id, str(exc))

    async def _mark_error(self, problem_id: str) -> None:
        try:
            problem = await self.store.get_problem(problem_id)
            if problem is not None and problem.status != STATUS_ERROR and can_transition(problem.status, STATUS_ERROR):
                problem.transition(STATUS_ERROR)
                await self.store.update_problem(problem)
        except Exception:
            self.logger.exception("mark_error_failed problem_id=%s", problem_id)

    def _notify_completed(self, problem: Problem) -> None:
        if self.lifecycle.mark_completion_notified(problem.id):
            self.notifier.cancel_progress()
            self.notifier.notify_completed(COMPLETED_TITLE, problem.solution or "", problem.id)

    def _notify_failed(self, problem_id: str, error: str) -> None:
        self.notifier.cancel_progress()
        self.notifier.notify_failed(FAILED_TITLE, error, problem_id)

    # Follow-up conversation

    async def continue_conversation(self, problem_id: str, message: str) -> str:
        """Answers a follow-up question about a stored problem.

        The user's message is stored before the model is asked, so it stays
        in the history even when this call fails.

        Raises:
            ConversationFailed: If the problem is unknown or any later step
                fails.
        """
        try:
            problem = await self.store.get_problem(problem_id)
        except Exception as exc:
            raise ConversationFailed("Could not load problem: {}".format(exc), problem_id) from exc
        if problem is None:
            raise ConversationFailed("Problem not found: {}".format(problem_id), problem_id)

        try:
            history = await self.store.list_chat_messages(problem_id)
            user_turn = ChatMessage(problem_id=problem_id, message=message, is_user=True)
            await self.store.save_chat_message(user_turn)
        except Exception as exc:
            raise ConversationFailed("Could not store message: {}".format(exc), problem_id) from exc

        session = None
        try:
            if self._last_processed != problem_id:
                self.logger.info("follow_up_reset previous=%s current=%s", self._last_processed, problem_id)
                await self.gateway.reset()
            self._last_processed = problem_id

            context = self._resolve_context(problem)
            prompt = build_follow_up_prompt(
                problem_text=context.extracted_text,
                solution=context.solution,
                explanation=context.explanation,
                conversation=[(turn.is_user, turn.message) for turn in history + [user_turn]],
                question=message,
            )

            self.gateway.pool.release_all()
            session = await self.gateway.create_session(supports_image=context.image is not None)
            reply = (await self.gateway.send_and_collect(session, prompt, image=context.image)).strip()
            if not reply:
                raise ConversationFailed("Model returned an empty reply", problem_id)

            await self.store.save_chat_message(ChatMessage(problem_id=problem_id, message=reply, is_user=False))
        except ConversationFailed:
            raise
        except Exception as exc:
            self.logger.error("follow_up_failed problem_id=%s error=%s", problem_id, exc)
            raise ConversationFailed("Follow-up failed: {}".format(exc), problem_id) from exc
        finally:
            if session is not None:
                self.gateway.release(session)

        self.logger.info("follow_up_answered problem_id=%s turns=%s", problem_id, len(history) + 2)
        return reply

    def _resolve_context(self, problem: Problem) -> EssentialContext:
        context = self._contexts.get(problem.id)
        if context is not None:
            return context
        image = base64.b64decode(problem.image_base64) if problem.image_base64 else None
        context = EssentialContext(
            extracted_text=problem.problem_text,
            solution=problem.solution or NOT_SOLVED_YET,
            explanation=problem.step_by_step_explanation or NO_EXPLANATION,
            image=image,
        )
        self._contexts[problem.id] = context
        return context

    # Background and foreground reconciliation

    async def continue_in_background(self, problem_id: str) -> LifecyclePhase:
        """Marks ``problem_id`` as solving in background without interrupting it.

        Lifecycle triggers are serialized. A failure after the phase changed
        restores the previous phase before the error propagates.
        """
        async with self._lifecycle_lock:
            self.lifecycle.enter_background(problem_id)
            stream = self.streams.get(problem_id)
            try:
                if stream is not None:
                    stream.detach()
                problem = await self.store.get_problem(problem_id)
                title = problem.display_title if problem is not None else "Solving math problem"
                self.notifier.notify_progress(title, BACKGROUND_STATUS, problem_id)
            except BaseException:
                if stream is not None:
                    stream.attach()
                phase = self.lifecycle.rollback(problem_id)
                self.logger.warning("background_mode_rolled_back problem_id=%s phase=%s", problem_id, phase.value)
                raise
            self.lifecycle.background_ready(problem_id)
        self.logger.info("background_mode_entered problem_id=%s live_stream=%s", problem_id, stream is not None)
        return self.lifecycle.phase_of(problem_id)

    async def resume_from_background(
        self,
        problem_id: str,
        listener: Optional[TokenListener] = None,
    ) -> ResumeResult:
        """Reconciles background mode when the user comes back.

        A live token stream is authoritative and leaves every flag alone.
        Otherwise the stored status decides: ``solved`` completes, anything
        else keeps waiting.
        """
        stream = self.streams.get(problem_id)
        if stream is not None:
            buffered = stream.attach(listener)
            self.logger.info("resume_live_stream problem_id=%s", problem_id)
            return ResumeResult(
                problem_id,
                ResumeOutcome.CONTINUING,
                self.lifecycle.phase_of(problem_id),
                buffered_text=buffered,
            )

        async with self._lifecycle_lock:
            self.lifecycle.begin_reconciling(problem_id)
            try:
                try:
                    problem = await self.store.get_problem(problem_id)
                except Exception:
                    self.logger.exception("resume_status_read_failed problem_id=%s", problem_id)
                    problem = None

                status = problem.status if problem is not None else None
                if problem is not None and status == STATUS_SOLVED:
                    self.notifier.cancel_progress()
                    self._notify_completed(problem)
                    outcome = ResumeOutcome.COMPLETED
                elif status == STATUS_SOLVING:
                    outcome = ResumeOutcome.CONTINUING
                else:
                    outcome = ResumeOutcome.INDETERMINATE
            except BaseException:
                self.lifecycle.rollback(problem_id)
                raise
            phase = self.lifecycle.settle(problem_id, completed=outcome == ResumeOutcome.COMPLETED)

        self.logger.info("resume_reconciled problem_id=%s status=%s outcome=%s", problem_id, status, outcome.value)
        return ResumeResult(problem_id, outcome, phase, status=status)

    # Background submission

    async def submit_text_in_background(self, text: str) -> Dict[str, Any]:
        problem = _new_problem(new_id(), MODE_TEXT, problem_text=text.strip())
        payload = BackgroundPayload(problem_id=problem.id, problem_text=problem.original_input, problem_type=MODE_TEXT)
        return await self._schedule(problem, payload, image=None)

    async def submit_image_in_background(self, image: bytes) -> Dict[str, Any]:
        problem = _new_problem(new_id(), MODE_IMAGE, image=image)
        payload = BackgroundPayload(problem_id=problem.id, problem_text="", problem_type=MODE_IMAGE)
        return await self._schedule(problem, payload, image=image)

    async def submit_image_with_text_in_background(self, image: bytes, question: str) -> Dict[str, Any]:
        problem = _new_problem(new_id(), MODE_IMAGE_WITH_TEXT, image=image, user_question=question.strip())
        payload = BackgroundPayload(
            problem_id=problem.id,
            problem_text=problem.original_input,
            problem_type=MODE_IMAGE_WITH_TEXT,
            user_question=problem.original_input,
        )
        return await self._schedule(problem, payload, image=image)

    async def _schedule(self, problem: Problem, payload: BackgroundPayload, image: Optional[bytes]) -> Dict[str, Any]:
        if self.background is None:
            raise SolverError("Background execution is not configured")
        if image is not None:
            if self.images is None:
                raise SolverError("Background image store is not configured")
            payload["image_path"] = self.images.write(problem.id, image)

        problem.transition(STATUS_SOLVING)
        await self.store.save_problem(problem)
        try:
            job = await self.background.schedule_one_off(problem.id, payload)
        except QueueFullError:
            await self._mark_error(problem.id)
            if self.images is not None:
                self.images.remove(payload.get("image_path"))
            raise
        self.notifier.notify_progress(problem.display_title, BACKGROUND_STATUS, problem.id)
        self.logger.info("background_scheduled problem_id=%s type=%s", problem.id, payload.get("problem_type"))
        return {"problem_id": problem.id, "job": job}

    async def run_scheduled(self, payload: BackgroundPayload) -> Problem:
        """Job body for a background solve of an already stored problem."""
        problem_id = payload["problem_id"]
        mode = payload.get("problem_type", MODE_TEXT)
        image_path = payload.get("image_path")
        image = self.images.read(image_path) if (self.images is not None and image_path) else None
        try:
            if mode in (MODE_IMAGE, MODE_IMAGE_WITH_TEXT) and image is None:
                error = SolvingFailed("Background image is missing for problem {}".format(problem_id), problem_id)
                await self._fail_problem(problem_id, error)
                raise error
            state = build_initial_state(
                problem_id,
                mode,
                problem_text=payload.get("problem_text") or "",
                image=image,
                user_question=payload.get("user_question"),
                existing=True,
            )
            return await self._run_solve(state, background=True)
        finally:
            if self.images is not None:
                self.images.remove(image_path)

    async def cancel_background_solving(self) -> List[str]:
        """Cancels every queued background solve and marks those problems failed."""
        if self.background is None:
            return []
        cancelled = list(await self.background.cancel_all())
        for problem_id in cancelled:
            await self._mark_error(problem_id)
            if self.images is not None:
                self.images.remove(str(self.images.path_for(problem_id)))
        self.notifier.cancel_progress()
        self.logger.info("background_cancelled count=%s", len(cancelled))
        return cancelled

    # History and management

    async def get_problem(self, problem_id: str) -> Problem:
        problem = await self.store.get_problem(problem_id)
        if problem is None:
            raise ProblemNotFound(problem_id)
        return problem

    async def list_recent(self, limit: int = 50) -> List[Problem]:
        return await self.store.list_recent(limit)

    async def search(self, query: str) -> List[Problem]:
        if not query.strip():
            return await self.store.list_recent()
        return await self.store.search(query)

    async def get_chat_history(self, problem_id: str) -> List[ChatMessage]:
        await self.get_problem(problem_id)
        return await self.store.list_chat_messages(problem_id)

    async def delete_problem(self, problem_id: str) -> None:
        if not await self.store.delete_problem(problem_id):
            raise ProblemNotFound(problem_id)
        self._contexts.pop(problem_id, None)
        async with self._lifecycle_lock:
            self.lifecycle.forget(problem_id)
        self.logger.info("problem_deleted problem_id=%s", problem_id)

    def is_currently_solving(self, problem_id: Optional[str] = None) -> bool:
        if problem_id is None:
            return bool(self._in_flight)
        return problem_id in self._in_flight

    async def database_stats(self) -> Dict[str, int]:
        return await self.store.stats()


def _new_problem(
    problem_id: str,
    mode: str,
    problem_text: str = "",
    image: Optional[bytes] = None,
    user_question: Optional[str] = None,
    extracted_text: Optional[str] = None,
) -> Problem:
    image_base64 = base64.b64encode(image).decode("ascii") if image else None
    if mode == MODE_IMAGE:
        return Problem(
            id=problem_id,
            original_input=IMAGE_ORIGINAL_INPUT,
            extracted_text=extracted_text,
            input_type=INPUT_IMAGE,
            image_base64=image_base64,
        )
    if mode == MODE_IMAGE_WITH_TEXT:
        question = user_question or ""
        return Problem(
            id=problem_id,
            original_input=question,
            extracted_text=question,
            title=question,
            input_type=INPUT_IMAGE,
            image_base64=image_base64,
        )
    return Problem(
        id=problem_id,
        original_input=problem_text,
        extracted_text=problem_text,
        input_type=INPUT_TEXT,
    )
