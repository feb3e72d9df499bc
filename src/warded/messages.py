"""Chat message, request and response types exchanged with the model.

Design Note: Pydantic vs Dataclass Usage
----------------------------------------
Messages use frozen dataclasses because they are created by the engine
and by model adapters, never parsed from user configuration. Freezing
them lets guardrails, memory snapshots and retry attempts share message
objects without defensive copies.

See config.py for contrast - it uses Pydantic for user-provided settings.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Protocol, Union, runtime_checkable


class FinishReason(str, Enum):
    """Why the model stopped generating."""

    STOP = "stop"
    LENGTH = "length"
    TOOL_CALLS = "tool_calls"
    CONTENT_FILTER = "content_filter"
    OTHER = "other"


@dataclass(frozen=True)
class TokenUsage:
    """Token usage of one or more model calls."""

    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass(frozen=True)
class SystemMessage:
    text: str


@dataclass(frozen=True)
class UserMessage:
    text: str
    name: str | None = None

    def with_text(self, text: str) -> UserMessage:
        return replace(self, text=text)


@dataclass(frozen=True)
class ToolCall:
    """A model-issued request to run a tool.

    Attributes:
        id: Provider-assigned call id, echoed back in the tool result.
        name: Name of the requested tool.
        arguments: JSON-encoded arguments object.
    """

    id: str
    name: str
    arguments: str = "{}"


@dataclass(frozen=True)
class AiMessage:
    text: str | None = None
    tool_calls: tuple[ToolCall, ...] = ()

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    def with_text(self, text: str | None) -> AiMessage:
        return replace(self, text=text)


@dataclass(frozen=True)
class ToolResultMessage:
    tool_call_id: str
    tool_name: str
    text: str


ChatMessage = Union[SystemMessage, UserMessage, AiMessage, ToolResultMessage]


@dataclass(frozen=True)
class ToolSpecification:
    """Description of a tool as shown to the model.

    Attributes:
        name: Unique tool name within one call.
        description: What the tool does (from the function docstring).
        parameters: JSON schema of the arguments object.
    """

    name: str
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})


@dataclass(frozen=True)
class ChatRequest:
    """Everything the model needs for one generation.

    Attributes:
        messages: The conversation, oldest first.
        tool_specifications: Tools the model may request.
        response_schema: JSON schema hint for structured output, used only
            by models that report `supports_json_schema`.
    """

    messages: tuple[ChatMessage, ...]
    tool_specifications: tuple[ToolSpecification, ...] = ()
    response_schema: dict[str, Any] | None = None


@dataclass(frozen=True)
class ChatResponse:
    """A complete model response."""

    message: AiMessage
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    finish_reason: FinishReason | None = None
    model_name: str | None = None

    @property
    def text(self) -> str:
        return self.message.text or ""

    def with_text(self, text: str) -> ChatResponse:
        """Copy of this response whose message text is replaced.

        Tool calls on the message are kept.
        """
        return replace(self, message=self.message.with_text(text))


@dataclass(frozen=True)
class TextDelta:
    """A fragment of streamed response text."""

    text: str


@runtime_checkable
class ChatModel(Protocol):
    """Model invoker consumed by the engine.

    `chat` returns one complete response. `stream` yields TextDelta
    fragments as they arrive and finishes with the assembled ChatResponse.
    Implementations should raise on transport errors; the engine wraps
    them in ModelInvocationError and does not retry.
    """

    supports_json_schema: bool

    async def chat(self, request: ChatRequest) -> ChatResponse:
        ...

    def stream(self, request: ChatRequest) -> AsyncIterator[TextDelta | ChatResponse]:
        ...


__all__ = [
    "FinishReason",
    "TokenUsage",
    "SystemMessage",
    "UserMessage",
    "ToolCall",
    "AiMessage",
    "ToolResultMessage",
    "ChatMessage",
    "ToolSpecification",
    "ChatRequest",
    "ChatResponse",
    "TextDelta",
    "ChatModel",
]
