"""Result type for accessing call metadata alongside the returned value.

Design Note: Pydantic vs Dataclass Usage
----------------------------------------
Result uses a dataclass (not Pydantic) because:
- It's created by the engine, not parsed from user input
- Generic[T] support is cleaner with dataclasses

See config.py for contrast - it uses Pydantic for parsing user configuration
where validation and helpful error messages are important.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, TypeVar

from warded.messages import FinishReason, TokenUsage

if TYPE_CHECKING:
    from warded.augment import Content
    from warded.logging import CallExecutionLog
    from warded.tools import ToolExecution

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    """A method's return value together with call metadata.

    Declare `Result[T]` as the return type to receive it:

        class Assistant:
            def classify(self, text: str) -> Result[Category]:
                '''Classify the text.'''
                ...

        result = assistant.classify("some text")
        print(result.content)              # Category
        print(result.token_usage.total_tokens)
        print(result.tool_executions)      # tools the model ran
        print(result.retry_count)          # output guardrail retries
        print(result.trace_id)             # for log correlation

    Attributes:
        content: The parsed value (what a plain `T` method would return)
        token_usage: Usage summed over every model call of the call
        sources: Contents retrieved by the augmentor
        finish_reason: Finish reason of the accepted response
        tool_executions: Executed tool requests of every attempt
        retry_count: Model re-invocations requested by output guardrails
        model_used: Model that produced the accepted response
        duration_ms: Wall time of the call
        trace_id: Trace ID for correlation with logs
    """

    content: T
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    sources: tuple[Content, ...] = ()
    finish_reason: FinishReason | None = None
    tool_executions: tuple[ToolExecution, ...] = ()
    retry_count: int = 0
    model_used: str = ""
    duration_ms: float = 0.0
    trace_id: str | None = None

    @property
    def total_tokens(self) -> int:
        return self.token_usage.total_tokens

    @property
    def attempt_count(self) -> int:
        """Model responses validated by output guardrails (1 = no retries)."""
        return self.retry_count + 1

    def __repr__(self) -> str:
        content_repr = repr(self.content)
        if len(content_repr) > 100:
            content_repr = content_repr[:97] + "..."
        return (
            f"Result(content={content_repr}, "
            f"tokens={self.total_tokens}, "
            f"tools={len(self.tool_executions)}, "
            f"retries={self.retry_count}, "
            f"duration_ms={self.duration_ms:.1f})"
        )

    def content_eq(self, other: Result[T]) -> bool:
        """Compare content and model, ignoring timing and token counts.

        Useful in tests where duration and usage vary between runs.
        """
        return self.content == other.content and self.model_used == other.model_used

    @classmethod
    def from_execution_log(
        cls,
        content: T,
        log: CallExecutionLog,
        *,
        sources: tuple[Content, ...] = (),
        finish_reason: FinishReason | None = None,
        tool_executions: tuple[ToolExecution, ...] = (),
    ) -> Result[T]:
        """Create a Result from a finalized execution log."""
        return cls(
            content=content,
            token_usage=log.token_usage,
            sources=sources,
            finish_reason=finish_reason,
            tool_executions=tool_executions,
            retry_count=log.guardrails.retry_count,
            model_used=log.model,
            duration_ms=log.duration_ms or 0.0,
            trace_id=log.trace_id,
        )


__all__ = ["Result"]
