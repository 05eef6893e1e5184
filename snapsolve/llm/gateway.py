"""Single owner of the loaded model instance."""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any, AsyncIterator, Callable, List, Optional

from snapsolve.errors import ModelLoadError, ModelUnavailable, SessionCreationTimeout
from snapsolve.llm.engine import ChatSession, ChatTurn, InferenceEngine, ModelHandle, ModelOptions
from snapsolve.llm.prompts import describe_prompt
from snapsolve.llm.provisioner import ModelProvisioner
from snapsolve.llm.session_pool import SessionPool
from snapsolve.utils.logger import get_logger

logger = get_logger(__name__)

TokenCallback = Callable[[str], None]


class ModelGateway:
    """Loads the model once and hands out tracked chat sessions.

    Every session is registered in the :class:`SessionPool`. :meth:`reset`
    destroys the model, drops all sessions and reloads, which invalidates
    every handle issued before it.
    """

    def __init__(
        self,
        engine: InferenceEngine,
        provisioner: ModelProvisioner,
        pool: Optional[SessionPool] = None,
        options: Optional[ModelOptions] = None,
        session_timeout_seconds: float = 60.0,
    ) -> None:
        self.engine = engine
        self.provisioner = provisioner
        self.pool = pool or SessionPool()
        self.options = options or ModelOptions()
        self.session_timeout_seconds = session_timeout_seconds
        self.reset_count = 0
        self._model: Optional[ModelHandle] = None
        self._load_lock = asyncio.Lock()

    @property
    def is_initialized(self) -> bool:
        return self._model is not None

    async def initialize(self) -> None:
        """Provisions and loads the model; a no-op once loaded.

        Raises:
            ModelUnavailable: If the provisioner cannot produce a model.
            ModelLoadError: If the engine rejects the model.
        """
        if self._model is not None:
            return
        async with self._load_lock:
            if self._model is not None:
                return
            reference = self.provisioner.ensure_model_available()
            try:
                self._model = await self.engine.load_model(reference, self.options)
            except ModelUnavailable:
                raise
            except Exception as exc:
                raise ModelLoadError("Engine rejected model {}: {}".format(reference.model, exc)) from exc
            if self._model is None:
                raise ModelLoadError("Engine returned no handle for model {}".format(reference.model))
            logger.info("model_ready model=%s", reference.model)

    async def create_session(self, supports_image: bool = True) -> ChatSession:
        """Opens a tracked chat session on the loaded model.

        Raises:
            SessionCreationTimeout: If the engine does not answer within
                ``session_timeout_seconds``.
        """
        await self.initialize()
        model = self._model
        if model is None:
            raise ModelLoadError("Model was released before a session could be opened")
        try:
            session = await asyncio.wait_for(
                model.create_chat(supports_image=supports_image),
                timeout=self.session_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            logger.error(
                "session_create_timeout timeout_s=%.1f tracked=%s",
                self.session_timeout_seconds,
                len(self.pool),
            )
            raise SessionCreationTimeout(self.session_timeout_seconds) from exc
        self.pool.track(session)
        logger.info("session_created supports_image=%s tracked=%s", supports_image, len(self.pool))
        return session

    async def send_and_stream(
        self,
        session: ChatSession,
        prompt: str,
        image: Optional[bytes] = None,
    ) -> AsyncIterator[str]:
        """Sends one user turn and yields the reply fragments.

        The turn is sent when iteration starts. Stopping early is allowed.
        """
        logger.debug("turn_sent prompt=%s", describe_prompt(prompt, image))
        await session.send(ChatTurn(text=prompt, is_user=True, image=image))
        async with contextlib.aclosing(session.stream_response()) as tokens:
            async for token in tokens:
                yield token

    async def send_and_collect(
        self,
        session: ChatSession,
        prompt: str,
        image: Optional[bytes] = None,
        on_token: Optional[TokenCallback] = None,
    ) -> str:
        parts: List[str] = []
        async for token in self.send_and_stream(session, prompt, image=image):
            parts.append(token)
            if on_token is not None:
                on_token(token)
        return "".join(parts)

    def release(self, session: Any) -> None:
        self.pool.release(session)

    async def close(self) -> None:
        dropped = self.pool.release_all()
        model, self._model = self._model, None
        if model is not None:
            await model.close()
        logger.info("model_closed sessions_dropped=%s", dropped)

    async def reset(self) -> None:
        """Closes the model and reloads it from scratch."""
        self.reset_count += 1
        logger.info("model_reset count=%s", self.reset_count)
        await self.close()
        await self.initialize()
