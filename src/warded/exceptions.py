"""Exception hierarchy for warded.

All warded exceptions inherit from WardedError, allowing users to catch
every call-level failure with a single except clause:

    from warded import WardedError

    try:
        answer = assistant.chat("hello")
    except WardedError as e:
        print(e.category, e)

For more specific handling, catch the individual exception types:

    from warded import InputGuardrailError, OutputGuardrailError, ModerationError

    try:
        answer = assistant.chat("hello")
    except InputGuardrailError:
        # Rejected before any model call
        ...
    except OutputGuardrailError as e:
        # Output rejected after exhausting retries
        print(e.failures, e.attempts)
    except ModerationError:
        # Flagged by the moderation checker
        ...

Every error carries an ErrorCategory so callers that only care about the
originating stage of the pipeline can branch on `e.category` instead of
the concrete type.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from warded.guardrail import Failure


class ErrorCategory(str, Enum):
    """Pipeline stage an error originated from."""

    CONFIGURATION = "configuration"
    INPUT_GUARDRAIL = "input_guardrail"
    OUTPUT_GUARDRAIL = "output_guardrail"
    TOOL = "tool"
    MODERATION = "moderation"
    MODEL = "model"
    OUTPUT_PARSING = "output_parsing"
    CANCELLED = "cancelled"


class WardedError(Exception):
    """Base exception for all warded errors.

    Catch this to handle any error surfaced by a service call.
    """

    category: ErrorCategory = ErrorCategory.CONFIGURATION


class WardedConfigError(WardedError):
    """Raised when configuration is invalid or missing.

    Reported at build time (or before any model call) and never retried.

    Examples:
        - No user message can be derived for a method
        - @moderate used without a moderation checker
        - MemoryId parameter without a chat memory store
        - Unknown model alias
    """

    category = ErrorCategory.CONFIGURATION


class TemplateError(WardedConfigError):
    """Raised when a template references a variable that was not bound."""

    def __init__(self, message: str, variable: str | None = None):
        super().__init__(message)
        self.variable = variable


class GuardrailError(WardedError):
    """Base class for guardrail violations.

    Attributes:
        failures: The failures reported by the guardrails, in order.
    """

    def __init__(self, message: str, failures: tuple[Failure, ...] = ()):
        super().__init__(message)
        self.message = message
        self.failures = failures

    def __str__(self) -> str:
        return self.message


class InputGuardrailError(GuardrailError):
    """Raised when an input guardrail rejects the outgoing user message.

    No model call is made after this error.
    """

    category = ErrorCategory.INPUT_GUARDRAIL


class OutputGuardrailError(GuardrailError):
    """Raised when output guardrails reject the model response.

    Attributes:
        failures: Failures of the final guardrail pass.
        attempts: Number of model responses that were validated.
    """

    category = ErrorCategory.OUTPUT_GUARDRAIL

    def __init__(self, message: str, failures: tuple[Failure, ...] = (), attempts: int = 1):
        super().__init__(message, failures)
        self.attempts = attempts


class ToolLoopLimitError(WardedError):
    """Raised when the model keeps requesting tools past the turn limit."""

    category = ErrorCategory.TOOL

    def __init__(self, message: str, limit: int):
        super().__init__(message)
        self.limit = limit


class ModerationError(WardedError):
    """Raised when the moderation checker flags the conversation.

    Attributes:
        flagged_text: The text the checker flagged (may be None).
    """

    category = ErrorCategory.MODERATION

    def __init__(self, message: str, flagged_text: str | None = None):
        super().__init__(message)
        self.flagged_text = flagged_text


class ModerationTimeoutError(ModerationError):
    """Raised when the moderation verdict does not arrive in time."""


class ModelInvocationError(WardedError):
    """Raised when the chat model fails.

    Wraps the provider exception. The engine never retries these; retry
    policy belongs to the model client.

    Attributes:
        original_error: The underlying provider exception.
    """

    category = ErrorCategory.MODEL

    def __init__(self, message: str, original_error: BaseException | None = None):
        super().__init__(message)
        self.message = message
        self.original_error = original_error

    def __str__(self) -> str:
        return self.message


class OutputParsingError(WardedError):
    """Raised when the response text cannot be parsed into the return type.

    Attributes:
        text: The text that failed to parse.
        target: The declared return type.
    """

    category = ErrorCategory.OUTPUT_PARSING

    def __init__(self, message: str, text: str = "", target: Any = None):
        super().__init__(message)
        self.text = text
        self.target = target


class CallCancelledError(WardedError):
    """Raised when a call is cancelled before it completes.

    A cancelled call is terminal and is never retried.
    """

    category = ErrorCategory.CANCELLED


class CallTimeoutError(CallCancelledError):
    """Raised when a call exceeds its configured timeout."""


__all__ = [
    "ErrorCategory",
    "WardedError",
    "WardedConfigError",
    "TemplateError",
    "GuardrailError",
    "InputGuardrailError",
    "OutputGuardrailError",
    "ToolLoopLimitError",
    "ModerationError",
    "ModerationTimeoutError",
    "ModelInvocationError",
    "OutputParsingError",
    "CallCancelledError",
    "CallTimeoutError",
]
