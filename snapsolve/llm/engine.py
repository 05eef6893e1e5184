"""Inference engine contract and its LangChain/NVIDIA implementation."""

from __future__ import annotations

import base64
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Dict, List, Optional, Protocol

from langchain_core.messages import AIMessage, HumanMessage
from langchain_nvidia_ai_endpoints import ChatNVIDIA

from snapsolve.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ModelReference:
    """Resolved model artifact handed to :meth:`InferenceEngine.load_model`."""

    provider: str
    model: str
    api_key: Optional[str] = None


@dataclass
class ModelOptions:
    max_tokens: int = 4096
    supports_image: bool = True
    temperature: float = 0.2
    top_p: float = 0.9
    thinking: bool = False
    max_image_bytes: int = 5242880


@dataclass
class ChatTurn:
    text: str
    is_user: bool = True
    image: Optional[bytes] = None


class SessionClosedError(RuntimeError):
    """Raised when a session is used after its model handle was closed."""


class ChatSession(Protocol):
    async def send(self, turn: ChatTurn) -> None:
        ...

    def stream_response(self) -> AsyncGenerator[str, None]:
        ...


class ModelHandle(Protocol):
    async def create_chat(self, supports_image: bool = True) -> ChatSession:
        ...

    async def close(self) -> None:
        ...


class InferenceEngine(Protocol):
    async def load_model(self, reference: ModelReference, options: ModelOptions) -> ModelHandle:
        ...


class LangChainChatSession:
    """Client-side conversation accumulated as LangChain messages."""

    def __init__(self, handle: "LangChainModelHandle", supports_image: bool) -> None:
        self._handle = handle
        self.supports_image = supports_image
        self.messages: List[Any] = []

    async def send(self, turn: ChatTurn) -> None:
        self._ensure_open()
        if not turn.is_user:
            self.messages.append(AIMessage(content=turn.text))
            return
        image = turn.image if self.supports_image else None
        self.messages.append(HumanMessage(content=_build_human_content(turn.text, image, self._handle.options)))

    async def stream_response(self) -> AsyncGenerator[str, None]:
        """Streams the reply to the pending turns and records it in history.

        Yields:
            Non-empty text fragments in arrival order.
        """
        self._ensure_open()
        parts: List[str] = []
        async for chunk in self._handle.client.astream(
            list(self.messages),
            chat_template_kwargs={"thinking": self._handle.options.thinking},
        ):
            self._ensure_open()
            content = str(getattr(chunk, "content", "") or "")
            if not content:
                continue
            parts.append(content)
            yield content
        self.messages.append(AIMessage(content="".join(parts)))

    def _ensure_open(self) -> None:
        if self._handle.closed:
            raise SessionClosedError("Model handle was closed; session is no longer valid.")


class LangChainModelHandle:
    def __init__(self, client: Any, options: ModelOptions) -> None:
        self.client = client
        self.options = options
        self.closed = False

    async def create_chat(self, supports_image: bool = True) -> LangChainChatSession:
        if self.closed:
            raise SessionClosedError("Cannot create a chat on a closed model handle.")
        return LangChainChatSession(self, supports_image=supports_image and self.options.supports_image)

    async def close(self) -> None:
        self.closed = True


class LangChainChatEngine:
    """Loads hosted chat models through ``langchain_nvidia_ai_endpoints``."""

    async def load_model(self, reference: ModelReference, options: ModelOptions) -> LangChainModelHandle:
        client = ChatNVIDIA(
            model=reference.model,
            api_key=reference.api_key,
            temperature=options.temperature,
            top_p=options.top_p,
            max_completion_tokens=options.max_tokens,
        )
        logger.info("model_loaded provider=%s model=%s", reference.provider, reference.model)
        return LangChainModelHandle(client, options)


def _build_human_content(text: str, image: Optional[bytes], options: ModelOptions) -> Any:
    """Builds a text-only or multimodal human content payload.

    Args:
        text: User text content.
        image: Optional raw image bytes.
        options: Model options carrying the image size ceiling.

    Returns:
        Plain text, or content blocks with a base64 ``image_url`` block.
    """
    if not image:
        return text
    if len(image) > options.max_image_bytes:
        logger.warning("image_dropped image_bytes=%s max_image_bytes=%s", len(image), options.max_image_bytes)
        return text
    content: List[Dict[str, Any]] = [{"type": "text", "text": text}]
    content.append({"type": "image_url", "image_url": {"url": image_data_url(image)}})
    return content


def image_data_url(image: bytes) -> str:
    encoded = base64.b64encode(image).decode("ascii")
    return "data:{};base64,{}".format(guess_image_media_type(image), encoded)


def guess_image_media_type(image: bytes) -> str:
    if image.startswith(b"\x89PNG"):
        return "image/png"
    if image.startswith(b"\xff\xd8"):
        return "image/jpeg"
    if image[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    if image.startswith(b"RIFF") and image[8:12] == b"WEBP":
        return "image/webp"
    return "image/png"
