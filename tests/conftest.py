"""Centralized test configuration and fixtures.

This module provides shared fixtures that reset all global state between tests,
and a scripted chat model so the engine can be tested without a provider.

Global state that must be reset:
- config_module._file_config_cache / _env_config_cache / _engine_defaults_cache
- config_module._process_default / _process_engine_defaults
- logging_module._process_logging_config / _file_logging_config_cache
- logging_module._logging_config (ContextVar)
- logging_module._trace_context (ContextVar)
"""

from __future__ import annotations

import asyncio
from contextvars import ContextVar
from typing import Any, Callable, Union

import pytest
from dotenv import load_dotenv

import warded.config as config_module
import warded.logging as logging_module
from warded.messages import (
    AiMessage,
    ChatRequest,
    ChatResponse,
    FinishReason,
    TextDelta,
    TokenUsage,
    ToolCall,
)

load_dotenv()


def _reset() -> None:
    config_module._process_default = None
    config_module.configure_engine_defaults(None)
    config_module.clear_config_cache()
    logging_module._reset_logging_state()


@pytest.fixture(autouse=True)
def reset_all_global_state():
    """Reset all global state before/after each test."""
    _reset()
    # Recreate ContextVars to ensure clean state (reset to default)
    logging_module._logging_config = ContextVar("warded_logging_config", default=None)
    logging_module._trace_context = ContextVar("warded_trace", default=None)
    yield
    _reset()


# ---------------------------------------------------------------------------
# Scripted model
# ---------------------------------------------------------------------------


def ai(text: str, *, input_tokens: int = 10, output_tokens: int = 5) -> ChatResponse:
    """A final text response."""
    return ChatResponse(
        message=AiMessage(text=text),
        token_usage=TokenUsage(input_tokens, output_tokens),
        finish_reason=FinishReason.STOP,
        model_name="scripted",
    )


def tool_request(*calls: tuple[str, str], input_tokens: int = 10, output_tokens: int = 5) -> ChatResponse:
    """A response requesting tools, each given as (name, json_arguments)."""
    return ChatResponse(
        message=AiMessage(
            tool_calls=tuple(ToolCall(id=f"call_{i}", name=name, arguments=args) for i, (name, args) in enumerate(calls))
        ),
        token_usage=TokenUsage(input_tokens, output_tokens),
        finish_reason=FinishReason.TOOL_CALLS,
        model_name="scripted",
    )


Scripted = Union[ChatResponse, str, BaseException, Callable[[ChatRequest], Any]]


class ScriptedChatModel:
    """ChatModel returning pre-recorded responses in order.

    Each script item is a ChatResponse, a plain string (final text), an
    exception to raise, or a function of the request returning one of
    those. Every request is recorded in `requests`.
    """

    supports_json_schema = False
    model_name = "scripted"

    def __init__(self, *script: Scripted, delay: float = 0.0):
        self.script = list(script)
        self.requests: list[ChatRequest] = []
        self.delay = delay

    @property
    def calls(self) -> int:
        return len(self.requests)

    def _next(self, request: ChatRequest) -> ChatResponse:
        self.requests.append(request)
        if not self.script:
            raise AssertionError(f"Unexpected model call #{len(self.requests)}")
        item = self.script.pop(0)
        if callable(item) and not isinstance(item, (ChatResponse, BaseException)):
            item = item(request)
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, str):
            return ai(item)
        return item

    async def chat(self, request: ChatRequest) -> ChatResponse:
        if self.delay:
            await asyncio.sleep(self.delay)
        return self._next(request)

    async def stream(self, request: ChatRequest):
        response = self._next(request)
        text = response.message.text or ""
        for i, word in enumerate(text.split(" ")):
            if self.delay:
                await asyncio.sleep(self.delay)
            yield TextDelta(word if i == 0 else " " + word)
        yield response


@pytest.fixture
def scripted():
    """Factory fixture: scripted(*responses) -> ScriptedChatModel."""
    return ScriptedChatModel
