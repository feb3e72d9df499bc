"""Per-call invocation pipeline.

Internal API used by service.py and streaming.py. Not for external use.

A call moves through these stages, failing fast from any of them:

    BUILD -> AUGMENT -> INPUT_GUARDRAILS -> MODERATE (started, runs in
    parallel) -> INVOKE -> VERIFY_MODERATION -> TOOL_LOOP ->
    OUTPUT_GUARDRAILS -> SHAPE -> persist memory

`prepare_call` covers BUILD through INPUT_GUARDRAILS, `run_pipeline`
covers INVOKE through OUTPUT_GUARDRAILS, and `invoke_method` adds SHAPE,
memory and the execution log for non-streaming methods. The streaming
pipeline reuses the first two with a model call that streams tokens.

All per-call state (conversation, usage, executed tools, retry count) is
owned by the call. Chat memory is only written after the call succeeded.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Hashable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Protocol

from warded.augment import AugmentationMetadata, AugmentationResult, RetrievalAugmentor, run_augmentor
from warded.config import DEFAULT_TIMEOUT
from warded.exceptions import CallCancelledError, CallTimeoutError, ModelInvocationError, WardedError
from warded.executor import OutputGuardrailOutcome
from warded.guardrail import CommonGuardrailParams, InputGuardrailParams, OutputGuardrailParams
from warded.logging import CallExecutionLog, emit_log, new_execution_log, trace_context
from warded.memory import ChatMemoryStore
from warded.messages import (
    ChatMessage,
    ChatModel,
    ChatRequest,
    ChatResponse,
    SystemMessage,
    TokenUsage,
    UserMessage,
)
from warded.moderation import ModerationCheckerLike, ModerationTask
from warded.result import Result
from warded.template import DefaultTemplateRenderer, TemplateRenderer
from warded.tools import (
    ToolExecution,
    ToolExecutionContext,
    ToolLoop,
    ToolProvider,
    ToolProviderRequest,
    ToolRegistry,
    provide_tools,
)

if TYPE_CHECKING:
    from warded.service import BoundCall, CallDescriptor

_logger = logging.getLogger(__name__)

SystemMessageProvider = Callable[[Any], "str | None"]
"""Returns the system message text for a memory id, or None."""

ModelCall = Callable[[ChatRequest], Awaitable[ChatResponse]]


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ServiceContext:
    """Collaborators shared by every call of one service instance.

    Attributes:
        model: The chat model invoker.
        tools: Tools available to every method.
        tool_provider: Optional source of extra tools per call.
        memory: Optional chat memory store.
        augmentor: Optional retrieval augmentor.
        moderation: Optional moderation checker for `@moderate` methods.
        renderer: Template renderer for system and user messages.
        system_message_provider: Fallback system message per memory id.
        tool_loop: Tool loop with the configured invocation bound.
        timeout: Optional per-call timeout in seconds.
        moderation_timeout: Seconds to wait for the moderation verdict.
    """

    model: ChatModel
    tools: ToolRegistry = field(default_factory=ToolRegistry)
    tool_provider: ToolProvider | None = None
    memory: ChatMemoryStore | None = None
    augmentor: RetrievalAugmentor | None = None
    moderation: ModerationCheckerLike | None = None
    renderer: TemplateRenderer = field(default_factory=DefaultTemplateRenderer)
    system_message_provider: SystemMessageProvider | None = None
    tool_loop: ToolLoop = field(default_factory=ToolLoop)
    timeout: float | None = None
    moderation_timeout: float | None = None

    @property
    def model_name(self) -> str:
        return getattr(self.model, "model_name", None) or type(self.model).__name__


class CallListener(Protocol):
    """Progress notifications of one call (used by streaming)."""

    def on_retrieved(self, augmentation: AugmentationResult) -> Any: ...

    def on_tool_executed(self, execution: ToolExecution) -> Any: ...

    def on_retry(self, retry: int, result: Any) -> Any: ...


# ---------------------------------------------------------------------------
# BUILD, AUGMENT, INPUT_GUARDRAILS
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PreparedCall:
    """Everything fixed before the first model call.

    Attributes:
        memory_id: Conversation id of the call.
        system_message: System message of this call, if any.
        user_message: User message as sent, including format instructions.
        history: Memory snapshot taken before the call.
        messages: Full conversation of the first attempt.
        tool_context: Tools visible to the model during this call.
        augmentation: Retrieval result, when an augmentor ran.
        common: Shared guardrail params.
    """

    memory_id: Hashable | None
    system_message: SystemMessage | None
    user_message: UserMessage
    history: tuple[ChatMessage, ...]
    messages: tuple[ChatMessage, ...]
    tool_context: ToolExecutionContext
    augmentation: AugmentationResult | None
    common: CommonGuardrailParams

    @property
    def sources(self) -> tuple[Any, ...]:
        return self.augmentation.contents if self.augmentation is not None else ()


def _conversation(
    system: SystemMessage | None, history: Sequence[ChatMessage], user: UserMessage
) -> tuple[ChatMessage, ...]:
    if system is None:
        return (*history, user)
    return (system, *(m for m in history if not isinstance(m, SystemMessage)), user)


async def prepare_call(
    context: ServiceContext,
    descriptor: CallDescriptor,
    bound: BoundCall,
    log: CallExecutionLog,
    listener: CallListener | None = None,
) -> PreparedCall:
    """Build the messages of a call and run input guardrails.

    Raises:
        TemplateError: If a template variable is missing.
        InputGuardrailError: If an input guardrail rejects the message.
    """
    memory_id = bound.memory_id
    history: tuple[ChatMessage, ...] = ()
    if context.memory is not None:
        history = tuple(context.memory.messages(memory_id))

    system = descriptor.system_message(context.renderer, context.system_message_provider, bound)
    user = descriptor.user_message(context.renderer, bound)

    augmentation = None
    if context.augmentor is not None:
        augmentation = await run_augmentor(
            context.augmentor,
            user,
            AugmentationMetadata(memory_id=memory_id, history=history, method_name=descriptor.qualified_name),
        )
        user = augmentation.user_message
        if listener is not None:
            await _notify(listener.on_retrieved(augmentation))

    common = CommonGuardrailParams(
        method_name=descriptor.qualified_name,
        memory=history,
        augmentation=augmentation,
        user_message_template=descriptor.user_template or "",
        variables=bound.variables,
    )
    user = await descriptor.input_executor.execute(InputGuardrailParams(user, common), metrics=log.guardrails)

    output = descriptor.output
    if not (context.model.supports_json_schema and output.json_schema() is not None):
        instructions = output.format_instructions()
        if instructions:
            user = user.with_text(f"{user.text}\n{instructions}")

    extra_tools = await provide_tools(context.tool_provider, ToolProviderRequest(memory_id, user))
    tool_context = ToolExecutionContext.create(context.tools, extra_tools)

    return PreparedCall(
        memory_id=memory_id,
        system_message=system,
        user_message=user,
        history=history,
        messages=_conversation(system, history, user),
        tool_context=tool_context,
        augmentation=augmentation,
        common=common,
    )


# ---------------------------------------------------------------------------
# INVOKE, VERIFY_MODERATION, TOOL_LOOP, OUTPUT_GUARDRAILS
# ---------------------------------------------------------------------------


@dataclass
class CallState:
    """Mutable state of one call; never shared between calls."""

    token_usage: TokenUsage = field(default_factory=TokenUsage)
    executions: list[ToolExecution] = field(default_factory=list)
    round_trip: tuple[ChatMessage, ...] = ()
    model_calls: int = 0


@dataclass(frozen=True)
class CompletedCall:
    """A call that passed output guardrails, before shaping and memory."""

    prepared: PreparedCall
    outcome: OutputGuardrailOutcome
    state: CallState

    @property
    def response(self) -> ChatResponse:
        return self.outcome.response


async def _notify(result: Any) -> None:
    if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
        await result


async def _default_model_call(context: ServiceContext, request: ChatRequest) -> ChatResponse:
    return await context.model.chat(request)


async def run_pipeline(
    context: ServiceContext,
    descriptor: CallDescriptor,
    prepared: PreparedCall,
    log: CallExecutionLog,
    *,
    model_call: ModelCall | None = None,
    listener: CallListener | None = None,
) -> CompletedCall:
    """Invoke the model, run tools and apply output guardrails.

    Args:
        model_call: Replaces the plain `model.chat` call (streaming
            passes one that forwards tokens as they arrive).
        listener: Optional progress notifications.

    Raises:
        ModelInvocationError: If the model fails.
        ModerationError: If moderation flags the conversation.
        ToolLoopLimitError: If the tool loop bound is exceeded.
        OutputGuardrailError: If output guardrails reject the response.
    """
    state = CallState()
    schema = descriptor.output.json_schema() if context.model.supports_json_schema else None
    specifications = prepared.tool_context.specifications

    async def invoke(messages: Sequence[ChatMessage]) -> ChatResponse:
        request = ChatRequest(tuple(messages), specifications, schema)
        state.model_calls += 1
        log.model_calls = state.model_calls
        try:
            if model_call is not None:
                response = await model_call(request)
            else:
                response = await _default_model_call(context, request)
        except WardedError:
            raise
        except Exception as e:
            raise ModelInvocationError(
                f"Model call failed for {descriptor.qualified_name}: {type(e).__name__}: {e}", e
            ) from e
        state.token_usage = state.token_usage + response.token_usage
        log.token_usage = state.token_usage
        return response

    moderation: ModerationTask | None = None
    if descriptor.moderate and context.moderation is not None:
        moderation = ModerationTask.start(
            context.moderation,
            prepared.messages,
            timeout=context.moderation_timeout or context.timeout or DEFAULT_TIMEOUT,
        )

    async def attempt(extra: Sequence[ChatMessage], *, first: bool = False) -> ChatResponse:
        messages = (*prepared.messages, *extra)
        response = await invoke(messages)
        if first and moderation is not None:
            await moderation.verify(descriptor.qualified_name)
        if not response.message.has_tool_calls:
            state.round_trip = ()
            return response
        loop = await context.tool_loop.run(
            response,
            messages,
            prepared.tool_context,
            invoke,
            on_tool_executed=listener.on_tool_executed if listener is not None else None,
            log=log,
        )
        state.executions.extend(loop.executions)
        state.round_trip = loop.messages
        return loop.response

    try:
        response = await attempt((), first=True)
        outcome = await descriptor.output_executor.execute(
            OutputGuardrailParams(response=response, common=prepared.common),
            attempt,
            metrics=log.guardrails,
            on_retry=listener.on_retry if listener is not None else None,
        )
    finally:
        if moderation is not None:
            moderation.cancel()

    return CompletedCall(prepared=prepared, outcome=outcome, state=state)


def persist_memory(context: ServiceContext, completed: CompletedCall) -> None:
    """Append the accepted exchange to chat memory.

    Writes the system message when it differs from the stored one, the
    user message, the tool round trip of the accepted attempt and the
    final AI message. Reprompt instructions are not written.
    """
    if context.memory is None:
        return
    prepared = completed.prepared
    to_store: list[ChatMessage] = []
    stored_system = next((m for m in prepared.history if isinstance(m, SystemMessage)), None)
    if prepared.system_message is not None and prepared.system_message != stored_system:
        to_store.append(prepared.system_message)
    to_store.append(prepared.user_message)
    to_store.extend(completed.state.round_trip)
    to_store.append(completed.response.message)
    context.memory.append(prepared.memory_id, to_store)


# ---------------------------------------------------------------------------
# Non-streaming entry point
# ---------------------------------------------------------------------------


def shape(descriptor: CallDescriptor, completed: CompletedCall) -> Any:
    """Turn an accepted response into the value the caller receives.

    A replacement object set by an output guardrail is returned verbatim
    when it matches the declared return type.
    """
    output = descriptor.output
    replacement = completed.outcome.successful_result
    if replacement is not None and output.accepts(replacement):
        return replacement
    return output.parse(completed.response, descriptor.qualified_name)


async def with_timeout(awaitable: Awaitable[Any], timeout: float | None, qualified_name: str) -> Any:
    """Await `awaitable`, turning an expired timeout into CallTimeoutError."""
    if timeout is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError as e:
        raise CallTimeoutError(f"{qualified_name} timed out after {timeout}s") from e


async def invoke_method(
    context: ServiceContext,
    descriptor: CallDescriptor,
    args: tuple[Any, ...],
    kwargs: Mapping[str, Any],
) -> Any:
    """Run one non-streaming call end to end.

    Raises:
        WardedError: Any pipeline failure, see exceptions.py.
    """
    bound = descriptor.bind(args, kwargs)

    async def run(log: CallExecutionLog) -> tuple[Any, PreparedCall, CompletedCall]:
        prepared = await prepare_call(context, descriptor, bound, log)
        completed = await run_pipeline(context, descriptor, prepared, log)
        return shape(descriptor, completed), prepared, completed

    with trace_context() as trace:
        log = new_execution_log(
            descriptor.service_name,
            descriptor.method_name,
            trace,
            model=context.model_name,
            input_args=bound.arguments,
        )
        try:
            value, prepared, completed = await with_timeout(run(log), context.timeout, descriptor.qualified_name)
            persist_memory(context, completed)
            log.finalize(success=True, output=value)
            _logger.debug(
                "%s completed: %d model call(s), %d tool execution(s), %d retries",
                descriptor.qualified_name,
                completed.state.model_calls,
                len(completed.state.executions),
                completed.outcome.retries,
            )
            if descriptor.output.wrap_result:
                return Result.from_execution_log(
                    value,
                    log,
                    sources=prepared.sources,
                    finish_reason=completed.response.finish_reason,
                    tool_executions=tuple(completed.state.executions),
                )
            return value
        except asyncio.CancelledError:
            log.finalize(success=False, error=CallCancelledError(f"{descriptor.qualified_name} was cancelled"))
            raise
        except Exception as e:
            log.finalize(success=False, error=e)
            raise
        finally:
            emit_log(log)


__all__ = [
    "SystemMessageProvider",
    "ModelCall",
    "ServiceContext",
    "CallListener",
    "PreparedCall",
    "prepare_call",
    "CallState",
    "CompletedCall",
    "run_pipeline",
    "persist_memory",
    "shape",
    "with_timeout",
    "invoke_method",
]
