"""Tools the model may call, and the loop that executes them.

Tools are plain Python functions. The name comes from `__name__`, the
description from the docstring and the argument schema from the
signature, so a tool is declared by writing an ordinary typed function:

    def get_weather(city: str, unit: Literal["C", "F"] = "C") -> str:
        '''Current weather for a city.'''
        ...

    assistant = build_service(Assistant, model=model, tools=[get_weather])

Arguments sent by the model are validated by pydantic before the
function is called. Sync and async functions are both supported; sync
functions run on the default thread pool.

When the model requests tools, the loop runs them sequentially in request
order, appends one result message per call and invokes the model again,
until a response without tool requests arrives. Unknown tool names,
invalid arguments and exceptions raised by a tool are reported back to
the model as the tool result instead of aborting the call.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, TypeVar, Union, get_type_hints, overload

from pydantic import BaseModel, ConfigDict, ValidationError, create_model
from pydantic_core import to_json

from warded.exceptions import ToolLoopLimitError, WardedConfigError
from warded.logging import CallExecutionLog, ToolCallLog
from warded.messages import (
    ChatMessage,
    ChatResponse,
    TokenUsage,
    ToolCall,
    ToolResultMessage,
    ToolSpecification,
    UserMessage,
)

_logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

# Internal marker attribute name - set by the @tool decorator
_TOOL_MARKER = "_warded_tool"


# ---------------------------------------------------------------------------
# Tool declaration
# ---------------------------------------------------------------------------


def _arguments_model(func: Callable[..., Any], name: str) -> type[BaseModel]:
    """Build a pydantic model mirroring the parameters of `func`."""
    signature = inspect.signature(func)
    try:
        hints = get_type_hints(func, include_extras=True)
    except (NameError, TypeError):
        hints = {}

    fields: dict[str, Any] = {}
    for param_name, param in signature.parameters.items():
        if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
            raise WardedConfigError(f"Tool '{name}' cannot take *args or **kwargs")
        annotation = hints.get(param_name, Any)
        default = ... if param.default is inspect.Parameter.empty else param.default
        fields[param_name] = (annotation, default)

    return create_model(
        f"{name}_arguments",
        __config__=ConfigDict(extra="forbid", arbitrary_types_allowed=True),
        **fields,
    )


def _render_result(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return "null"
    return to_json(value, fallback=str).decode()


@dataclass(frozen=True)
class Tool:
    """A callable the model may request, with its model-facing description.

    Attributes:
        name: Unique tool name within a call.
        description: Description shown to the model.
        handler: The function run for each request.
        arguments_model: Pydantic model validating request arguments.
    """

    name: str
    description: str
    handler: Callable[..., Any]
    arguments_model: type[BaseModel]

    @classmethod
    def from_function(
        cls,
        func: Callable[..., Any],
        *,
        name: str | None = None,
        description: str | None = None,
    ) -> Tool:
        """Describe a plain function as a tool.

        Raises:
            WardedConfigError: If the function has no usable name or takes
                variadic arguments.
        """
        declared = getattr(func, _TOOL_MARKER, None)
        if isinstance(declared, Tool) and name is None and description is None:
            return declared

        tool_name = name or getattr(func, "__name__", None)
        if not tool_name or tool_name == "<lambda>":
            raise WardedConfigError("Tool functions need a name; pass name= for lambdas and partials")
        tool_description = description if description is not None else inspect.getdoc(func) or ""
        return cls(
            name=tool_name,
            description=tool_description,
            handler=func,
            arguments_model=_arguments_model(func, tool_name),
        )

    @property
    def specification(self) -> ToolSpecification:
        schema = self.arguments_model.model_json_schema()
        schema.pop("title", None)
        return ToolSpecification(name=self.name, description=self.description, parameters=schema)

    async def __call__(self, arguments: str) -> Any:
        """Validate JSON `arguments` and run the handler.

        Raises:
            pydantic.ValidationError: If the arguments do not match.
        """
        validated = self.arguments_model.model_validate_json(arguments or "{}")
        kwargs = {key: getattr(validated, key) for key in type(validated).model_fields}
        if inspect.iscoroutinefunction(self.handler):
            return await self.handler(**kwargs)
        result = await asyncio.to_thread(self.handler, **kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result


@overload
def tool(func: F) -> F: ...


@overload
def tool(*, name: str | None = None, description: str | None = None) -> Callable[[F], F]: ...


def tool(
    func: F | None = None,
    *,
    name: str | None = None,
    description: str | None = None,
) -> F | Callable[[F], F]:
    """Optionally override the name or description a function exposes as a tool.

    The function itself is returned unchanged and stays directly callable.

    Example:
        @tool(name="search", description="Search the product catalog.")
        async def search_catalog(query: str, limit: int = 5) -> list[dict]:
            ...
    """

    def decorator(fn: F) -> F:
        setattr(fn, _TOOL_MARKER, Tool.from_function(fn, name=name, description=description))
        return fn

    if func is not None:
        return decorator(func)
    return decorator


ToolLike = Union[Tool, Callable[..., Any]]


def as_tool(value: ToolLike) -> Tool:
    return value if isinstance(value, Tool) else Tool.from_function(value)


# ---------------------------------------------------------------------------
# Registry and per-call context
# ---------------------------------------------------------------------------


class ToolRegistry:
    """Tools available to a service, keyed by unique name.

    Raises WardedConfigError on duplicate names.
    """

    def __init__(self, tools: Iterable[ToolLike] = ()):
        self._tools: dict[str, Tool] = {}
        for item in tools:
            self.add(item)

    def add(self, item: ToolLike) -> Tool:
        resolved = as_tool(item)
        if resolved.name in self._tools:
            raise WardedConfigError(f"Duplicate tool name '{resolved.name}'")
        self._tools[resolved.name] = resolved
        return resolved

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    @property
    def tools(self) -> Mapping[str, Tool]:
        return MappingProxyType(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)


@dataclass(frozen=True)
class ToolExecution:
    """One executed tool request.

    Attributes:
        request: The tool call issued by the model.
        result: Text sent back to the model.
        error: Error description if the tool could not run successfully.
        duration_ms: Wall time spent in the handler.
    """

    request: ToolCall
    result: str
    error: str | None = None
    duration_ms: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class ToolExecutionContext:
    """Tools visible to the model during one call."""

    tools: Mapping[str, Tool] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def create(cls, registry: ToolRegistry, extra: Iterable[ToolLike] = ()) -> ToolExecutionContext:
        """Context from a registry plus per-call tools.

        Raises:
            WardedConfigError: If a per-call tool reuses a registered name.
        """
        combined = dict(registry.tools)
        for item in extra:
            resolved = as_tool(item)
            if resolved.name in combined:
                raise WardedConfigError(f"Duplicate tool name '{resolved.name}' from tool provider")
            combined[resolved.name] = resolved
        return cls(tools=MappingProxyType(combined))

    @property
    def has_tools(self) -> bool:
        return bool(self.tools)

    @property
    def specifications(self) -> tuple[ToolSpecification, ...]:
        return tuple(t.specification for t in self.tools.values())

    async def execute(self, request: ToolCall) -> ToolExecution:
        """Run one tool request. Never raises for tool-level problems."""
        handler = self.tools.get(request.name)
        if handler is None:
            message = f"Error: there is no tool called {request.name}"
            _logger.debug("Model requested unknown tool %r", request.name)
            return ToolExecution(request=request, result=message, error=message)

        start = time.perf_counter()
        try:
            value = await handler(request.arguments)
        except ValidationError as e:
            message = f"Error: invalid arguments for tool {request.name}: {e}"
            return ToolExecution(request, message, message, (time.perf_counter() - start) * 1000)
        except Exception as e:
            _logger.debug("Tool %s raised %s: %s", request.name, type(e).__name__, e)
            message = f"Error: {e}" if str(e) else f"Error: {type(e).__name__}"
            return ToolExecution(request, message, message, (time.perf_counter() - start) * 1000)
        return ToolExecution(request, _render_result(value), None, (time.perf_counter() - start) * 1000)


@dataclass(frozen=True)
class ToolProviderRequest:
    """What a dynamic tool provider sees for one call."""

    memory_id: Any
    user_message: UserMessage


ToolProvider = Callable[[ToolProviderRequest], Union[Iterable[ToolLike], Awaitable[Iterable[ToolLike]]]]
"""Returns extra tools for one call; may be a coroutine function."""


async def provide_tools(provider: ToolProvider | None, request: ToolProviderRequest) -> list[ToolLike]:
    if provider is None:
        return []
    provided = provider(request)
    if inspect.isawaitable(provided):
        provided = await provided
    return list(provided or ())


# ---------------------------------------------------------------------------
# Tool loop
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolLoopResult:
    """Outcome of a tool loop run.

    Attributes:
        response: Final model response, with no tool requests.
        executions: Executed tool requests, in order.
        token_usage: Usage summed over every response in the loop,
            including the first one.
        messages: Round-trip messages added by the loop (AI tool requests
            and tool results), in conversation order.
        model_calls: Model invocations made by the loop itself.
    """

    response: ChatResponse
    executions: tuple[ToolExecution, ...] = ()
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    messages: tuple[ChatMessage, ...] = ()
    model_calls: int = 0


Invoke = Callable[[Sequence[ChatMessage]], Awaitable[ChatResponse]]
ToolListener = Callable[[ToolExecution], Any]


class ToolLoop:
    """Runs tool requests until the model answers without one.

    Args:
        max_sequential_invocations: Maximum number of tool rounds (model
            responses requesting tools) handled per run.
    """

    def __init__(self, max_sequential_invocations: int = 100):
        if max_sequential_invocations < 1:
            raise ValueError("max_sequential_invocations must be at least 1")
        self.max_sequential_invocations = max_sequential_invocations

    async def run(
        self,
        response: ChatResponse,
        messages: Sequence[ChatMessage],
        context: ToolExecutionContext,
        invoke: Invoke,
        *,
        on_tool_executed: ToolListener | None = None,
        log: CallExecutionLog | None = None,
    ) -> ToolLoopResult:
        """Execute requested tools and re-invoke the model until it stops asking.

        Args:
            response: First model response of the attempt.
            messages: The conversation that produced `response`.
            context: Tools visible to the model.
            invoke: Calls the model with a full conversation.
            on_tool_executed: Optional listener for each execution.
            log: Optional execution log receiving ToolCallLog entries.

        Raises:
            ToolLoopLimitError: If the model still requests tools after
                `max_sequential_invocations` rounds.
        """
        added: list[ChatMessage] = []
        executions: list[ToolExecution] = []
        usage = response.token_usage
        rounds = 0

        while response.message.has_tool_calls:
            if rounds >= self.max_sequential_invocations:
                raise ToolLoopLimitError(
                    f"Model requested tools more than {self.max_sequential_invocations} times in a row",
                    limit=self.max_sequential_invocations,
                )
            rounds += 1
            added.append(response.message)

            for request in response.message.tool_calls:
                execution = await context.execute(request)
                executions.append(execution)
                added.append(ToolResultMessage(request.id, request.name, execution.result))
                if log is not None:
                    log.tool_calls.append(
                        ToolCallLog(
                            tool_name=request.name,
                            arguments=request.arguments,
                            result=execution.result,
                            duration_ms=execution.duration_ms,
                            success=execution.succeeded,
                            error=execution.error,
                        )
                    )
                if on_tool_executed is not None:
                    notified = on_tool_executed(execution)
                    if inspect.isawaitable(notified):
                        await notified

            response = await invoke((*messages, *added))
            usage = usage + response.token_usage

        return ToolLoopResult(
            response=response,
            executions=tuple(executions),
            token_usage=usage,
            messages=tuple(added),
            model_calls=rounds,
        )


__all__ = [
    "Tool",
    "tool",
    "ToolLike",
    "as_tool",
    "ToolRegistry",
    "ToolExecution",
    "ToolExecutionContext",
    "ToolProviderRequest",
    "ToolProvider",
    "provide_tools",
    "ToolLoopResult",
    "ToolLoop",
]
