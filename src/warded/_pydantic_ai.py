"""Adapter layer for pydantic_ai.

All pydantic_ai imports live in this module. The engine only talks to the
ChatModel protocol from messages.py; `PydanticAIChatModel` implements it
over pydantic_ai's direct model request API so any provider pydantic_ai
supports ("openai:gpt-4o", "anthropic:claude-sonnet-4-5", a Model
instance, ...) can back a service. If pydantic_ai changes these
internals, only this file needs to be updated.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Sequence
from typing import Any

from pydantic_ai.direct import model_request, model_request_stream
from pydantic_ai.messages import (
    ModelMessage,
    ModelRequest,
    ModelRequestPart,
    ModelResponse,
    PartDeltaEvent,
    PartStartEvent,
    SystemPromptPart,
    TextPart,
    TextPartDelta,
    ToolCallPart,
    ToolReturnPart,
    UserPromptPart,
)
from pydantic_ai.models import Model, ModelRequestParameters
from pydantic_ai.settings import ModelSettings
from pydantic_ai.tools import ToolDefinition

from warded.messages import (
    AiMessage,
    ChatMessage,
    ChatRequest,
    ChatResponse,
    FinishReason,
    SystemMessage,
    TextDelta,
    TokenUsage,
    ToolCall,
    ToolResultMessage,
    ToolSpecification,
    UserMessage,
)

_logger = logging.getLogger(__name__)

_FINISH_REASONS = {
    "stop": FinishReason.STOP,
    "length": FinishReason.LENGTH,
    "tool_call": FinishReason.TOOL_CALLS,
    "content_filter": FinishReason.CONTENT_FILTER,
}


# ---------------------------------------------------------------------------
# Conversion
# ---------------------------------------------------------------------------


def to_model_messages(messages: Sequence[ChatMessage]) -> list[ModelMessage]:
    """Convert a conversation to pydantic_ai messages.

    Consecutive system, user and tool result messages are grouped into one
    ModelRequest; every AiMessage becomes a ModelResponse.
    """
    result: list[ModelMessage] = []
    pending: list[ModelRequestPart] = []

    def flush() -> None:
        if pending:
            result.append(ModelRequest(parts=list(pending)))
            pending.clear()

    for message in messages:
        if isinstance(message, SystemMessage):
            pending.append(SystemPromptPart(content=message.text))
        elif isinstance(message, UserMessage):
            pending.append(UserPromptPart(content=message.text))
        elif isinstance(message, ToolResultMessage):
            pending.append(
                ToolReturnPart(
                    tool_name=message.tool_name,
                    content=message.text,
                    tool_call_id=message.tool_call_id,
                )
            )
        elif isinstance(message, AiMessage):
            flush()
            parts: list[Any] = []
            if message.text:
                parts.append(TextPart(content=message.text))
            for call in message.tool_calls:
                parts.append(ToolCallPart(tool_name=call.name, args=call.arguments, tool_call_id=call.id))
            result.append(ModelResponse(parts=parts))
        else:
            raise TypeError(f"Unsupported message type: {type(message).__name__}")

    flush()
    return result


def to_tool_definitions(specifications: Sequence[ToolSpecification]) -> list[ToolDefinition]:
    return [
        ToolDefinition(
            name=spec.name,
            description=spec.description,
            parameters_json_schema=spec.parameters,
        )
        for spec in specifications
    ]


def from_model_response(response: ModelResponse) -> ChatResponse:
    """Convert a pydantic_ai ModelResponse into a ChatResponse."""
    texts: list[str] = []
    tool_calls: list[ToolCall] = []
    for part in response.parts:
        if isinstance(part, TextPart):
            texts.append(part.content)
        elif isinstance(part, ToolCallPart):
            tool_calls.append(
                ToolCall(
                    id=part.tool_call_id,
                    name=part.tool_name,
                    arguments=part.args_as_json_str(),
                )
            )

    usage = response.usage
    token_usage = TokenUsage(
        input_tokens=usage.input_tokens or 0,
        output_tokens=usage.output_tokens or 0,
    )

    raw_reason = getattr(response, "finish_reason", None)
    if raw_reason is not None:
        finish_reason = _FINISH_REASONS.get(raw_reason, FinishReason.OTHER)
    else:
        finish_reason = FinishReason.TOOL_CALLS if tool_calls else FinishReason.STOP

    return ChatResponse(
        message=AiMessage(text="".join(texts) if texts else None, tool_calls=tuple(tool_calls)),
        token_usage=token_usage,
        finish_reason=finish_reason,
        model_name=response.model_name,
    )


# ---------------------------------------------------------------------------
# Model invoker
# ---------------------------------------------------------------------------


class PydanticAIChatModel:
    """ChatModel backed by pydantic_ai's direct model request API.

    Example:
        model = PydanticAIChatModel("anthropic:claude-sonnet-4-5", settings={"temperature": 0.2})
        assistant = build_service(Assistant, model=model)

    Structured output is requested through format instructions in the
    prompt rather than provider-native JSON schema, so
    `supports_json_schema` is False.
    """

    supports_json_schema = False

    def __init__(self, model: Model | str, settings: ModelSettings | None = None):
        self.model = model
        self.settings = settings

    @classmethod
    def from_config(cls, config: Any) -> PydanticAIChatModel:
        """Build from a config.ModelConfig."""
        return cls(config.model, settings=config.to_model_settings())

    @property
    def model_name(self) -> str:
        if isinstance(self.model, str):
            return self.model
        return getattr(self.model, "model_name", type(self.model).__name__)

    def _parameters(self, request: ChatRequest) -> ModelRequestParameters:
        return ModelRequestParameters(
            function_tools=to_tool_definitions(request.tool_specifications),
            allow_text_output=True,
        )

    async def chat(self, request: ChatRequest) -> ChatResponse:
        response = await model_request(
            self.model,
            to_model_messages(request.messages),
            model_settings=self.settings,
            model_request_parameters=self._parameters(request),
        )
        return from_model_response(response)

    async def stream(self, request: ChatRequest) -> AsyncIterator[TextDelta | ChatResponse]:
        async with model_request_stream(
            self.model,
            to_model_messages(request.messages),
            model_settings=self.settings,
            model_request_parameters=self._parameters(request),
        ) as stream:
            async for event in stream:
                if isinstance(event, PartStartEvent) and isinstance(event.part, TextPart):
                    if event.part.content:
                        yield TextDelta(event.part.content)
                elif isinstance(event, PartDeltaEvent) and isinstance(event.delta, TextPartDelta):
                    if event.delta.content_delta:
                        yield TextDelta(event.delta.content_delta)
            response = stream.get()
        _logger.debug("Stream from %s finished with %d parts", self.model_name, len(response.parts))
        yield from_model_response(response)

    def __repr__(self) -> str:
        return f"PydanticAIChatModel({self.model_name!r})"


__all__ = [
    "ModelSettings",
    "PydanticAIChatModel",
    "to_model_messages",
    "to_tool_definitions",
    "from_model_response",
]
