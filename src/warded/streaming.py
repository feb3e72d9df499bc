"""Streaming responses.

A service method annotated to return `TokenStream` returns immediately;
the call runs in a background task once the stream is consumed:

    class Assistant:
        def chat(self, message: str) -> TokenStream:
            '''You are a helpful assistant.'''
            ...

    stream = assistant.chat("Tell me a story")
    async for event in stream:
        if isinstance(event, PartialText):
            print(event.text, end="")
    response = await stream.result()

Tokens are delivered as they arrive and are never edited afterwards.
When the model requests tools, delivery pauses while they run and resumes
with a new model stream. Output guardrails see the fully assembled
response; if one asks for a retry, a `RetryStarted` event announces the
new attempt whose tokens follow.

Callbacks are an alternative to iterating events:

    stream.on_partial_text(print).on_complete(save).on_error(report)
    await stream.result()
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import AsyncIterator, Awaitable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Union

from warded.augment import AugmentationResult, Content
from warded.engine import (
    ServiceContext,
    persist_memory,
    prepare_call,
    run_pipeline,
    with_timeout,
)
from warded.exceptions import CallCancelledError, ModelInvocationError
from warded.guardrail import Failure, OutputGuardrailResult
from warded.logging import emit_log, new_execution_log, trace_context
from warded.messages import ChatRequest, ChatResponse, TextDelta
from warded.tools import ToolExecution

if TYPE_CHECKING:
    from warded.service import CallDescriptor

_logger = logging.getLogger(__name__)


class StreamOutcome(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PartialText:
    """A fragment of response text. `attempt` starts at 1."""

    text: str
    attempt: int = 1


@dataclass(frozen=True)
class ToolExecuted:
    execution: ToolExecution


@dataclass(frozen=True)
class RetryStarted:
    """Output guardrails rejected the previous attempt; a new one starts."""

    retry: int
    failures: tuple[Failure, ...] = ()
    reprompt: str | None = None


@dataclass(frozen=True)
class StreamCompleted:
    response: ChatResponse


StreamEvent = Union[PartialText, ToolExecuted, RetryStarted, StreamCompleted]

_END = object()


async def _call(callback: Callable[..., Any] | None, *args: Any) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


# ---------------------------------------------------------------------------
# TokenStream
# ---------------------------------------------------------------------------


StreamRunner = Callable[["TokenStream"], Awaitable[ChatResponse]]


class TokenStream:
    """Live response of a streaming service method.

    The call starts on first consumption: iteration, `result()` or
    `start()`. Register callbacks before that. A stream can be iterated
    once.

    Args:
        runner: Coroutine function running the call and reporting progress
            to this stream; returns the final response.
        name: Qualified method name, used in error messages.
    """

    def __init__(self, runner: StreamRunner, name: str = ""):
        self._runner = runner
        self.name = name
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None
        self._iterated = False
        self._discard_events = False
        self._attempt = 1
        self._response: ChatResponse | None = None
        self._error: BaseException | None = None
        self.outcome = StreamOutcome.PENDING
        self.sources: tuple[Content, ...] = ()

        self._on_partial_text: Callable[[str], Any] | None = None
        self._on_retrieved: Callable[[tuple[Content, ...]], Any] | None = None
        self._on_tool_executed: Callable[[ToolExecution], Any] | None = None
        self._on_retry: Callable[[RetryStarted], Any] | None = None
        self._on_complete: Callable[[ChatResponse], Any] | None = None
        self._on_error: Callable[[BaseException], Any] | None = None

    # -- callback registration ------------------------------------------------

    def on_partial_text(self, callback: Callable[[str], Any]) -> TokenStream:
        self._on_partial_text = callback
        return self

    def on_retrieved(self, callback: Callable[[tuple[Content, ...]], Any]) -> TokenStream:
        self._on_retrieved = callback
        return self

    def on_tool_executed(self, callback: Callable[[ToolExecution], Any]) -> TokenStream:
        self._on_tool_executed = callback
        return self

    def on_retry(self, callback: Callable[[RetryStarted], Any]) -> TokenStream:
        self._on_retry = callback
        return self

    def on_complete(self, callback: Callable[[ChatResponse], Any]) -> TokenStream:
        self._on_complete = callback
        return self

    def on_error(self, callback: Callable[[BaseException], Any]) -> TokenStream:
        self._on_error = callback
        return self

    # -- producer side ----------------------------------------------------------

    def _drop_queued_events(self) -> None:
        kept = []
        while not self._queue.empty():
            event = self._queue.get_nowait()
            if event is _END or isinstance(event, StreamCompleted):
                kept.append(event)
        for event in kept:
            self._queue.put_nowait(event)

    def _put(self, event: StreamEvent) -> None:
        if self._discard_events and not self._iterated:
            return
        self._queue.put_nowait(event)

    async def _emit_text(self, text: str) -> None:
        await _call(self._on_partial_text, text)
        self._put(PartialText(text, self._attempt))

    async def _emit_retrieved(self, augmentation: AugmentationResult) -> None:
        self.sources = augmentation.contents
        await _call(self._on_retrieved, augmentation.contents)

    async def _emit_tool(self, execution: ToolExecution) -> None:
        await _call(self._on_tool_executed, execution)
        self._put(ToolExecuted(execution))

    async def _emit_retry(self, retry: int, result: OutputGuardrailResult) -> None:
        self._attempt = retry + 1
        event = RetryStarted(retry, result.failures, result.reprompt_text)
        await _call(self._on_retry, event)
        self._put(event)

    async def _produce(self) -> None:
        try:
            response = await self._runner(self)
        except asyncio.CancelledError:
            self.outcome = StreamOutcome.CANCELLED
            self._error = CallCancelledError(f"Stream for {self.name} was cancelled")
            self._queue.put_nowait(_END)
            raise
        except Exception as e:
            self.outcome = StreamOutcome.FAILED
            self._error = e
            try:
                await _call(self._on_error, e)
            finally:
                self._queue.put_nowait(_END)
            return

        self._response = response
        self.outcome = StreamOutcome.COMPLETED
        try:
            await _call(self._on_complete, response)
        finally:
            self._queue.put_nowait(StreamCompleted(response))
            self._queue.put_nowait(_END)

    # -- consumer side ----------------------------------------------------------

    def start(self) -> TokenStream:
        """Start the call without consuming events.

        Must be called with a running event loop.
        """
        if self._task is None and self.outcome is StreamOutcome.PENDING:
            self._task = asyncio.get_running_loop().create_task(self._produce(), name=f"warded-stream:{self.name}")
        return self

    @property
    def done(self) -> bool:
        return self.outcome is not StreamOutcome.PENDING

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        if self._iterated:
            raise RuntimeError(f"Stream for {self.name} can only be iterated once")
        self._iterated = True
        return self._events()

    async def _events(self) -> AsyncIterator[StreamEvent]:
        self.start()
        try:
            while True:
                event = await self._queue.get()
                if event is _END:
                    break
                yield event
        finally:
            # Leaving the loop early unsubscribes and cancels the call.
            if self._task is not None and not self._task.done():
                self._task.cancel()
                _logger.debug("Stream for %s abandoned by its consumer", self.name)
        if self._error is not None:
            raise self._error

    async def text(self) -> AsyncIterator[str]:
        """Iterate over text fragments only."""
        async for event in self:
            if isinstance(event, PartialText):
                yield event.text

    async def result(self) -> ChatResponse:
        """Wait for the call to finish and return the final response.

        Until the stream is iterated, intermediate events are no longer
        queued once `result()` is awaited; callbacks still fire.

        Raises:
            CallCancelledError: If the stream was cancelled.
            WardedError: Whatever error ended the call.
        """
        if not self._iterated:
            self._discard_events = True
            self._drop_queued_events()
        self.start()
        if self._task is not None:
            try:
                await asyncio.shield(self._task)
            except asyncio.CancelledError:
                if self.outcome is not StreamOutcome.CANCELLED:
                    raise
        if self._error is not None:
            raise self._error
        if self._response is None:
            raise CallCancelledError(f"Stream for {self.name} was cancelled")
        return self._response

    async def cancel(self) -> None:
        """Cancel the call.

        Stops the model stream and the moderation check. Tools that already
        ran are not rolled back.
        """
        if self.done:
            return
        if self._task is None:
            self.outcome = StreamOutcome.CANCELLED
            self._error = CallCancelledError(f"Stream for {self.name} was cancelled")
            self._queue.put_nowait(_END)
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        _logger.debug("Stream for %s cancelled", self.name)

    async def aclose(self) -> None:
        await self.cancel()

    async def __aenter__(self) -> TokenStream:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.cancel()

    def __repr__(self) -> str:
        return f"TokenStream({self.name!r}, outcome={self.outcome.value})"


# ---------------------------------------------------------------------------
# Streaming pipeline
# ---------------------------------------------------------------------------


class _StreamListener:
    """Adapts engine progress notifications to stream events."""

    def __init__(self, stream: TokenStream):
        self.stream = stream

    async def on_retrieved(self, augmentation: AugmentationResult) -> None:
        await self.stream._emit_retrieved(augmentation)

    async def on_tool_executed(self, execution: ToolExecution) -> None:
        await self.stream._emit_tool(execution)

    async def on_retry(self, retry: int, result: OutputGuardrailResult) -> None:
        await self.stream._emit_retry(retry, result)


def stream_method(
    context: ServiceContext,
    descriptor: CallDescriptor,
    args: tuple[Any, ...],
    kwargs: Mapping[str, Any],
) -> TokenStream:
    """Bind the arguments and return a stream that runs the call when consumed."""
    bound = descriptor.bind(args, kwargs)
    name = descriptor.qualified_name

    async def run(stream: TokenStream) -> ChatResponse:
        listener = _StreamListener(stream)

        async def model_call(request: ChatRequest) -> ChatResponse:
            response: ChatResponse | None = None
            async for item in context.model.stream(request):
                if isinstance(item, TextDelta):
                    if item.text:
                        await stream._emit_text(item.text)
                else:
                    response = item
            if response is None:
                raise ModelInvocationError(f"Model stream for {name} ended without a response")
            return response

        with trace_context() as trace:
            log = new_execution_log(
                descriptor.service_name,
                descriptor.method_name,
                trace,
                model=context.model_name,
                input_args=bound.arguments,
                streaming=True,
            )

            async def body() -> Any:
                prepared = await prepare_call(context, descriptor, bound, log, listener)
                return await run_pipeline(
                    context, descriptor, prepared, log, model_call=model_call, listener=listener
                )

            try:
                completed = await with_timeout(body(), context.timeout, name)
                persist_memory(context, completed)
                log.finalize(success=True, output=completed.response.text)
                return completed.response
            except asyncio.CancelledError:
                log.finalize(success=False, error=CallCancelledError(f"Stream for {name} was cancelled"))
                raise
            except Exception as e:
                log.finalize(success=False, error=e)
                raise
            finally:
                emit_log(log)

    return TokenStream(run, name)


__all__ = [
    "StreamOutcome",
    "PartialText",
    "ToolExecuted",
    "RetryStarted",
    "StreamCompleted",
    "StreamEvent",
    "TokenStream",
    "stream_method",
]
