"""REST and WebSocket interfaces for the solving orchestrator."""

from __future__ import annotations

import asyncio
import base64
import binascii
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from snapsolve.agents.orchestrator import SolvingOrchestrator
from snapsolve.api.notifications import NotificationHub
from snapsolve.api.runtime import BackgroundTaskRunner, JobNotFoundError
from snapsolve.errors import (
    ExtractionInsufficient,
    ModelLoadError,
    ModelUnavailable,
    ProblemNotFound,
    QueueFullError,
    SessionCreationTimeout,
    SolverError,
)
from snapsolve.llm.engine import InferenceEngine, LangChainChatEngine, ModelOptions
from snapsolve.llm.gateway import ModelGateway
from snapsolve.llm.provisioner import ModelProvisioner
from snapsolve.storage.database import ProblemDatabase
from snapsolve.storage.images import ImageStore
from snapsolve.tools.ocr import OCRProcessingError, OCRUnavailableError
from snapsolve.utils.config_loader import DEFAULT_CONFIG_PATH, SolverConfig, load_solver_config
from snapsolve.utils.logger import get_logger

logger = get_logger("snapsolve.api")


class TextProblemRequest(BaseModel):
    text: str = Field(min_length=1, description="Typed mathematical problem statement")


class ImageProblemRequest(BaseModel):
    image_base64: str = Field(min_length=1, description="Base64 image payload")
    question: Optional[str] = Field(default=None, description="Optional question about the image")


class OCRProblemRequest(BaseModel):
    image_base64: str = Field(min_length=1, description="Base64 image payload")
    min_confidence: Optional[float] = Field(default=None)
    merge_strategy: Optional[str] = Field(default=None, description="lines|paragraph")


class MessageRequest(BaseModel):
    message: str = Field(min_length=1, description="Follow-up question")


class ProblemResponse(BaseModel):
    id: str
    original_input: str
    extracted_text: Optional[str]
    latex_format: Optional[str]
    solution: Optional[str]
    step_by_step_explanation: Optional[str]
    title: Optional[str]
    created_at: str
    input_type: str
    status: str
    has_image: bool
    display_title: str


class ChatMessageResponse(BaseModel):
    id: str
    problem_id: str
    message: str
    is_user: bool
    created_at: str


class ReplyResponse(BaseModel):
    problem_id: str
    reply: str


class BackgroundSubmitResponse(BaseModel):
    problem_id: str
    job: Dict[str, Any]


class ResumeResponse(BaseModel):
    problem_id: str
    outcome: str
    phase: str
    status: Optional[str]
    buffered_text: str


class JobStatusResponse(BaseModel):
    job_id: str
    status: str
    queue_position: Optional[int]
    submitted_at: Optional[str]
    started_at: Optional[str]
    finished_at: Optional[str]
    error: Optional[str]
    result: Optional[Dict[str, Any]]


@dataclass
class Services:
    orchestrator: SolvingOrchestrator
    notifications: NotificationHub
    runner: BackgroundTaskRunner
    database: ProblemDatabase
    config: SolverConfig


def build_services(
    config: SolverConfig,
    engine: Optional[InferenceEngine] = None,
    provisioner: Optional[ModelProvisioner] = None,
) -> Services:
    """Wires the orchestrator with its concrete collaborators.

    Args:
        config: Loaded solver configuration.
        engine: Inference engine override, LangChain/NVIDIA by default.
        provisioner: Model provisioner override.

    Returns:
        Services bundle shared by the HTTP app and the CLI.
    """
    options = ModelOptions(
        max_tokens=config.model.max_tokens,
        supports_image=config.model.supports_image,
        temperature=config.model.temperature,
        top_p=config.model.top_p,
        thinking=config.model.thinking,
        max_image_bytes=config.model.max_image_bytes,
    )
    gateway = ModelGateway(
        engine=engine or LangChainChatEngine(),
        provisioner=provisioner or ModelProvisioner(config.model),
        options=options,
        session_timeout_seconds=config.runtime.session_timeout_seconds,
    )
    database = ProblemDatabase(config.storage.database_path)
    notifications = NotificationHub(title_max_chars=config.runtime.progress_title_max_chars)
    runner = BackgroundTaskRunner(
        max_queue_size=config.background.max_queue_size,
        retention_seconds=config.background.retention_seconds,
        worker_count=config.background.worker_count,
    )
    orchestrator = SolvingOrchestrator(
        gateway=gateway,
        store=database,
        notifier=notifications,
        background=runner,
        images=ImageStore(config.storage.image_dir),
        settings=config.runtime,
    )
    return Services(orchestrator, notifications, runner, database, config)


def _decode_image(payload: str) -> bytes:
    data = payload.split(",", 1)[1] if payload.startswith("data:") else payload
    try:
        image = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise HTTPException(status_code=422, detail="image_base64 is not valid base64") from exc
    if not image:
        raise HTTPException(status_code=422, detail="image_base64 decoded to an empty payload")
    return image


def _to_http_exception(exc: Exception) -> HTTPException:
    if isinstance(exc, ProblemNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (ExtractionInsufficient, OCRProcessingError)):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, (ModelUnavailable, ModelLoadError, OCRUnavailableError)):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, SessionCreationTimeout):
        return HTTPException(status_code=504, detail=str(exc))
    if isinstance(exc, QueueFullError):
        return HTTPException(status_code=429, detail=str(exc), headers={"Retry-After": "5"})
    return HTTPException(status_code=500, detail=str(exc))


def create_app(config_path: Optional[str] = None, services: Optional[Services] = None) -> FastAPI:
    """Builds and configures the FastAPI application.

    Args:
        config_path: YAML configuration path used when ``services`` is None.
        services: Pre-built collaborators, mainly for tests.

    Returns:
        Configured FastAPI app instance.
    """
    if services is None:
        services = build_services(load_solver_config(config_path or DEFAULT_CONFIG_PATH))

    app = FastAPI(title="SnapSolve API", version=services.config.version)
    orchestrator = services.orchestrator
    hub = services.notifications
    runner = services.runner
    app.state.services = services

    @app.on_event("startup")
    async def on_startup() -> None:
        runner.start(orchestrator.run_scheduled)

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        await runner.stop()
        await orchestrator.gateway.close()

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {
            "status": "ok",
            "model_loaded": orchestrator.gateway.is_initialized,
            "solving": orchestrator.is_currently_solving(),
            "progress_active": hub.has_progress,
            "background_problems": orchestrator.lifecycle.background_ids,
            "model": orchestrator.gateway.provisioner.describe(),
        }

    @app.post("/v1/problems/text", response_model=ProblemResponse)
    async def solve_text(payload: TextProblemRequest) -> Dict[str, Any]:
        try:
            problem = await orchestrator.solve_from_text(payload.text)
        except SolverError as exc:
            raise _to_http_exception(exc) from exc
        return problem.to_dict()

    @app.post("/v1/problems/image", response_model=ProblemResponse)
    async def solve_image(payload: ImageProblemRequest) -> Dict[str, Any]:
        image = _decode_image(payload.image_base64)
        question = (payload.question or "").strip()
        try:
            if question:
                problem = await orchestrator.solve_from_image_with_text(image, question)
            else:
                problem = await orchestrator.solve_from_image(image)
        except SolverError as exc:
            raise _to_http_exception(exc) from exc
        return problem.to_dict()

    @app.post("/v1/problems/ocr", response_model=ProblemResponse)
    async def solve_ocr(payload: OCRProblemRequest) -> Dict[str, Any]:
        image = _decode_image(payload.image_base64)
        ocr_config = dict(services.config.ocr)
        if payload.min_confidence is not None:
            ocr_config["min_confidence"] = payload.min_confidence
        if payload.merge_strategy:
            ocr_config["merge_strategy"] = payload.merge_strategy
        try:
            problem = await orchestrator.solve_from_ocr(image, ocr_config)
        except SolverError as exc:
            raise _to_http_exception(exc) from exc
        return problem.to_dict()

    @app.post("/v1/background/text", response_model=BackgroundSubmitResponse)
    async def background_text(payload: TextProblemRequest) -> Dict[str, Any]:
        try:
            return await orchestrator.submit_text_in_background(payload.text)
        except SolverError as exc:
            raise _to_http_exception(exc) from exc

    @app.post("/v1/background/image", response_model=BackgroundSubmitResponse)
    async def background_image(payload: ImageProblemRequest) -> Dict[str, Any]:
        image = _decode_image(payload.image_base64)
        question = (payload.question or "").strip()
        try:
            if question:
                return await orchestrator.submit_image_with_text_in_background(image, question)
            return await orchestrator.submit_image_in_background(image)
        except SolverError as exc:
            raise _to_http_exception(exc) from exc

    @app.delete("/v1/background")
    async def background_cancel() -> Dict[str, List[str]]:
        return {"cancelled": await orchestrator.cancel_background_solving()}

    @app.get("/v1/problems", response_model=List[ProblemResponse])
    async def list_problems(limit: int = 50) -> List[Dict[str, Any]]:
        safe_limit = max(1, min(int(limit), 200))
        return [problem.to_dict() for problem in await orchestrator.list_recent(safe_limit)]

    @app.get("/v1/problems/search", response_model=List[ProblemResponse])
    async def search_problems(q: str = "") -> List[Dict[str, Any]]:
        return [problem.to_dict() for problem in await orchestrator.search(q)]

    @app.get("/v1/problems/{problem_id}", response_model=ProblemResponse)
    async def get_problem(problem_id: str) -> Dict[str, Any]:
        try:
            problem = await orchestrator.get_problem(problem_id)
        except ProblemNotFound as exc:
            raise _to_http_exception(exc) from exc
        return problem.to_dict()

    @app.delete("/v1/problems/{problem_id}")
    async def delete_problem(problem_id: str) -> Dict[str, Any]:
        try:
            await orchestrator.delete_problem(problem_id)
        except ProblemNotFound as exc:
            raise _to_http_exception(exc) from exc
        return {"deleted": True, "problem_id": problem_id}

    @app.get("/v1/problems/{problem_id}/messages", response_model=List[ChatMessageResponse])
    async def list_messages(problem_id: str) -> List[Dict[str, Any]]:
        try:
            messages = await orchestrator.get_chat_history(problem_id)
        except ProblemNotFound as exc:
            raise _to_http_exception(exc) from exc
        return [message.to_dict() for message in messages]

    @app.post("/v1/problems/{problem_id}/messages", response_model=ReplyResponse)
    async def post_message(problem_id: str, payload: MessageRequest) -> Dict[str, Any]:
        try:
            await orchestrator.get_problem(problem_id)
            reply = await orchestrator.continue_conversation(problem_id, payload.message)
        except SolverError as exc:
            raise _to_http_exception(exc) from exc
        return {"problem_id": problem_id, "reply": reply}

    @app.post("/v1/problems/{problem_id}/background")
    async def enter_background(problem_id: str) -> Dict[str, str]:
        phase = await orchestrator.continue_in_background(problem_id)
        return {"problem_id": problem_id, "phase": phase.value}

    @app.post("/v1/problems/{problem_id}/resume", response_model=ResumeResponse)
    async def resume(problem_id: str) -> Dict[str, Any]:
        result = await orchestrator.resume_from_background(problem_id)
        return result.to_dict()

    @app.get("/v1/jobs/{job_id}", response_model=JobStatusResponse)
    async def job_status(job_id: str) -> Dict[str, Any]:
        try:
            return await runner.get(job_id)
        except JobNotFoundError as exc:
            raise HTTPException(status_code=404, detail="job not found") from exc

    @app.get("/v1/stats")
    async def stats() -> Dict[str, Any]:
        return {
            "database": await orchestrator.database_stats(),
            "tracked_sessions": len(orchestrator.gateway.pool),
            "peak_sessions": orchestrator.gateway.pool.peak,
            "model_resets": orchestrator.gateway.reset_count,
            "queue_depth": await runner.store.queue_depth(),
        }

    @app.websocket("/v1/notifications")
    async def notifications(ws: WebSocket) -> None:
        await ws.accept()
        replay = int(ws.query_params.get("replay", "10") or 0)
        queue = hub.subscribe()

        async def _pump() -> None:
            if replay > 0:
                for item in hub.recent(replay):
                    await ws.send_json(item.to_dict())
            while True:
                item = await queue.get()
                await ws.send_json(item.to_dict())

        pump = asyncio.create_task(_pump())
        try:
            while True:
                message = await ws.receive()
                if message.get("type") == "websocket.disconnect":
                    break
        except WebSocketDisconnect:
            pass
        finally:
            pump.cancel()
            hub.unsubscribe(queue)
        logger.info("notifications_client_disconnected")

    return app
