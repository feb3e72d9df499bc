"""Guardrails: result algebra, guardrail base classes and declaration decorators.

Guardrails are pluggable validators applied to the outgoing user message
(input guardrails) or to the model response (output guardrails). They do
not mutate call state; they return a result value and the executor
decides what happens next (see executor.py).

Design Note: Pydantic vs Dataclass Usage
----------------------------------------
Results, failures and params are frozen dataclasses. They are created by
guardrails and by the engine, never parsed from user input, and freezing
them means "block further retry" produces a new value instead of
patching a failure list that may be referenced elsewhere.

Declaring guardrails:

    from warded import guardrails, OutputGuardrail

    class MustBeJson(OutputGuardrail):
        def validate(self, params):
            try:
                json.loads(params.response.text)
            except ValueError:
                return self.reprompt("Invalid JSON", "Please answer in JSON")
            return self.success()

    @guardrails.output(MustBeJson(), max_retries=3)   # class level
    class Assistant:
        @guardrails.input(no_secrets)                  # method level
        def chat(self, text: str) -> str:
            ...

Method-level configuration wins over class-level configuration for the
kind it declares; the other kind still comes from the class. Levels are
never merged.

Plain functions work as guardrails too. They receive the params and
return a result, or None for success. Sync and async guardrails are
both supported; a guardrail that raises is recorded as a fatal failure.
"""

from __future__ import annotations

from collections.abc import Awaitable, Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Callable, TypeVar, Union

from warded.messages import ChatMessage, ChatResponse, UserMessage

if TYPE_CHECKING:
    from warded.augment import AugmentationResult

T = TypeVar("T")
R = TypeVar("R", bound="GuardrailResult")

# Appended to a failure message when its retry is blocked after a rewrite
RETRY_BLOCKED_NOTE = "retry or reprompt is not allowed after a rewritten output"


# ---------------------------------------------------------------------------
# Result algebra
# ---------------------------------------------------------------------------


class ResultKind(str, Enum):
    """Outcome of one guardrail validation."""

    SUCCESS = "success"
    SUCCESS_WITH_RESULT = "success_with_result"
    FAILURE = "failure"
    FATAL = "fatal"


@dataclass(frozen=True)
class Failure:
    """A single guardrail failure.

    Attributes:
        message: Human-readable description of the failure.
        cause: Exception behind the failure, if any.
        guardrail_name: Name of the guardrail that produced it.
        retry: Whether the failure asks for the model to be re-invoked.
            Only honored inside a fatal result.
        reprompt: Instruction appended to the conversation before the
            retry. Only honored inside a fatal result.
    """

    message: str
    cause: BaseException | None = None
    guardrail_name: str | None = None
    retry: bool = False
    reprompt: str | None = None

    def with_guardrail(self, name: str) -> Failure:
        if self.guardrail_name is not None:
            return self
        return replace(self, guardrail_name=name)

    def block_retry(self) -> Failure:
        """Copy of this failure that no longer requests a retry."""
        if not self.retry:
            return self
        return replace(self, message=f"{self.message} ({RETRY_BLOCKED_NOTE})", retry=False)

    def __str__(self) -> str:
        prefix = f"[{self.guardrail_name}] " if self.guardrail_name else ""
        return f"{prefix}{self.message}"


@dataclass(frozen=True)
class GuardrailResult:
    """Result of a guardrail validation.

    Use the class-level constructors rather than the raw fields:

        GuardrailResult.success()
        GuardrailResult.success_with("rewritten text")
        GuardrailResult.failure("not great")      # non-fatal, pass continues
        GuardrailResult.fatal("unacceptable")     # stops the pass

    A result with an empty failure tuple is a success.
    """

    kind: ResultKind = ResultKind.SUCCESS
    successful_text: str | None = None
    failures: tuple[Failure, ...] = ()

    @classmethod
    def success(cls: type[R]) -> R:
        return cls()

    @classmethod
    def success_with(cls: type[R], text: str | None) -> R:
        if text is None:
            return cls()
        return cls(kind=ResultKind.SUCCESS_WITH_RESULT, successful_text=text)

    @classmethod
    def failure(cls: type[R], message: str, cause: BaseException | None = None) -> R:
        return cls(kind=ResultKind.FAILURE, failures=(Failure(message, cause),))

    @classmethod
    def fatal(cls: type[R], message: str, cause: BaseException | None = None) -> R:
        return cls(kind=ResultKind.FATAL, failures=(Failure(message, cause),))

    @classmethod
    def from_failures(cls: type[R], failures: tuple[Failure, ...] | list[Failure], *, fatal: bool = False) -> R:
        if not failures:
            return cls()
        kind = ResultKind.FATAL if fatal else ResultKind.FAILURE
        return cls(kind=kind, failures=tuple(failures))

    @property
    def is_success(self) -> bool:
        return not self.failures

    @property
    def is_fatal(self) -> bool:
        return self.kind is ResultKind.FATAL

    @property
    def has_rewritten_result(self) -> bool:
        return self.kind is ResultKind.SUCCESS_WITH_RESULT

    @property
    def is_retry(self) -> bool:
        return not self.is_success and any(f.retry for f in self.failures)

    @property
    def reprompt_text(self) -> str | None:
        """First reprompt among the failures, or None."""
        if self.is_success:
            return None
        return next((f.reprompt for f in self.failures if f.reprompt is not None), None)

    @property
    def is_reprompt(self) -> bool:
        return self.reprompt_text is not None

    def block_retry(self: R) -> R:
        """Copy of this result whose failures no longer request a retry."""
        return replace(self, failures=tuple(f.block_retry() for f in self.failures))

    def with_guardrail(self: R, name: str) -> R:
        """Copy of this result with `name` recorded on unattributed failures."""
        if not self.failures:
            return self
        return replace(self, failures=tuple(f.with_guardrail(name) for f in self.failures))

    def __str__(self) -> str:
        if self.is_success:
            return f"{type(self).__name__}({self.kind.value})"
        details = "; ".join(str(f) for f in self.failures)
        return f"{type(self).__name__}({self.kind.value}): {details}"


@dataclass(frozen=True)
class InputGuardrailResult(GuardrailResult):
    """Result of an input guardrail. Input results have no retry semantics."""


@dataclass(frozen=True)
class OutputGuardrailResult(GuardrailResult):
    """Result of an output guardrail.

    Attributes:
        successful_result: Replacement object returned verbatim to the
            caller when it matches the declared return type.
    """

    successful_result: Any = None

    @classmethod
    def success_with(
        cls, text: str | None, result: Any = None
    ) -> OutputGuardrailResult:
        if text is None and result is None:
            return cls()
        return cls(
            kind=ResultKind.SUCCESS_WITH_RESULT,
            successful_text=text,
            successful_result=result,
        )

    @classmethod
    def retry(cls, message: str, cause: BaseException | None = None) -> OutputGuardrailResult:
        """Fatal failure asking for the model to be re-invoked unchanged."""
        return cls(kind=ResultKind.FATAL, failures=(Failure(message, cause, retry=True),))

    @classmethod
    def reprompt(
        cls, message: str, reprompt: str, cause: BaseException | None = None
    ) -> OutputGuardrailResult:
        """Fatal failure asking for a retry with `reprompt` appended."""
        return cls(
            kind=ResultKind.FATAL,
            failures=(Failure(message, cause, retry=True, reprompt=reprompt),),
        )


# ---------------------------------------------------------------------------
# Params
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CommonGuardrailParams:
    """Call data shared by input and output guardrails.

    All fields are read-only snapshots; guardrails cannot write to chat
    memory or to the augmentation result through them.

    Attributes:
        method_name: Qualified name of the service method being called.
        memory: Chat memory snapshot taken before the call.
        augmentation: Retrieval result, when an augmentor is configured.
        user_message_template: Raw user message template text.
        variables: Template variables bound from the call arguments.
    """

    method_name: str = ""
    memory: tuple[ChatMessage, ...] = ()
    augmentation: AugmentationResult | None = None
    user_message_template: str = ""
    variables: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    def __post_init__(self) -> None:
        if not isinstance(self.variables, MappingProxyType):
            object.__setattr__(self, "variables", MappingProxyType(dict(self.variables)))


@dataclass(frozen=True)
class InputGuardrailParams:
    """What an input guardrail may read."""

    user_message: UserMessage
    common: CommonGuardrailParams = field(default_factory=CommonGuardrailParams)

    def with_text(self, text: str) -> InputGuardrailParams:
        return replace(self, user_message=self.user_message.with_text(text))


@dataclass(frozen=True)
class OutputGuardrailParams:
    """What an output guardrail may read.

    Attributes:
        response: The model response under validation.
        common: Shared call data.
        attempt: 1-based number of the model response being validated.
    """

    response: ChatResponse
    common: CommonGuardrailParams = field(default_factory=CommonGuardrailParams)
    attempt: int = 1

    def with_text(self, text: str) -> OutputGuardrailParams:
        return replace(self, response=self.response.with_text(text))


# ---------------------------------------------------------------------------
# Guardrail base classes
# ---------------------------------------------------------------------------


class InputGuardrail:
    """Base class for input guardrails.

    Override `validate(params)` for access to memory, augmentation and
    template variables, or `validate_message(user_message)` when the
    message alone is enough. `validate` may be a coroutine function.
    """

    @property
    def name(self) -> str:
        return type(self).__name__

    def validate(self, params: InputGuardrailParams) -> InputGuardrailResult | Awaitable[InputGuardrailResult]:
        return self.validate_message(params.user_message)

    def validate_message(self, user_message: UserMessage) -> InputGuardrailResult:
        return self.failure("Validation not implemented")

    def success(self) -> InputGuardrailResult:
        return InputGuardrailResult.success()

    def success_with(self, text: str | None) -> InputGuardrailResult:
        return InputGuardrailResult.success_with(text)

    def failure(self, message: str, cause: BaseException | None = None) -> InputGuardrailResult:
        return InputGuardrailResult.failure(message, cause)

    def fatal(self, message: str, cause: BaseException | None = None) -> InputGuardrailResult:
        return InputGuardrailResult.fatal(message, cause)


class OutputGuardrail:
    """Base class for output guardrails.

    Override `validate(params)` or `validate_message(ai_message)`.
    Besides success and failure, output guardrails can ask for a retry
    (same conversation) or a reprompt (conversation plus an instruction).
    """

    @property
    def name(self) -> str:
        return type(self).__name__

    def validate(self, params: OutputGuardrailParams) -> OutputGuardrailResult | Awaitable[OutputGuardrailResult]:
        return self.validate_message(params.response.message)

    def validate_message(self, ai_message: Any) -> OutputGuardrailResult:
        return self.failure("Validation not implemented")

    def success(self) -> OutputGuardrailResult:
        return OutputGuardrailResult.success()

    def success_with(self, text: str | None, result: Any = None) -> OutputGuardrailResult:
        return OutputGuardrailResult.success_with(text, result)

    def failure(self, message: str, cause: BaseException | None = None) -> OutputGuardrailResult:
        return OutputGuardrailResult.failure(message, cause)

    def fatal(self, message: str, cause: BaseException | None = None) -> OutputGuardrailResult:
        return OutputGuardrailResult.fatal(message, cause)

    def retry(self, message: str, cause: BaseException | None = None) -> OutputGuardrailResult:
        return OutputGuardrailResult.retry(message, cause)

    def reprompt(
        self, message: str, reprompt: str, cause: BaseException | None = None
    ) -> OutputGuardrailResult:
        return OutputGuardrailResult.reprompt(message, reprompt, cause)


InputGuardrailLike = Union[InputGuardrail, Callable[[InputGuardrailParams], Any]]
"""An InputGuardrail instance or a function taking InputGuardrailParams."""

OutputGuardrailLike = Union[OutputGuardrail, Callable[[OutputGuardrailParams], Any]]
"""An OutputGuardrail instance or a function taking OutputGuardrailParams."""


def guardrail_name(guardrail: Any) -> str:
    """Human-readable name for a guardrail instance or function."""
    if isinstance(guardrail, (InputGuardrail, OutputGuardrail)):
        return guardrail.name
    return getattr(guardrail, "__name__", None) or getattr(guardrail, "__qualname__", None) or type(guardrail).__name__


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InputGuardrailsConfig:
    """Ordered input guardrails for one method."""

    guardrails: tuple[InputGuardrailLike, ...] = ()


@dataclass(frozen=True)
class OutputGuardrailsConfig:
    """Ordered output guardrails for one method.

    Attributes:
        guardrails: Guardrails in execution order.
        max_retries: Model re-invocations allowed per call. None means
            the engine default (see config.EngineDefaults).
    """

    guardrails: tuple[OutputGuardrailLike, ...] = ()
    max_retries: int | None = None

    def __post_init__(self) -> None:
        if self.max_retries is not None and self.max_retries < 0:
            raise ValueError(f"max_retries must be non-negative, got {self.max_retries}")


# Internal marker attribute names - use get_guardrails_config() for public access
_INPUT_MARKER = "_warded_input_guardrails"
_OUTPUT_MARKER = "_warded_output_guardrails"


def get_guardrails_config(
    target: Any,
) -> tuple[InputGuardrailsConfig | None, OutputGuardrailsConfig | None]:
    """Get the guardrails declared on a method or service class.

    Returns:
        (input_config, output_config); either is None when that kind is
        not declared on `target` itself.

    Example:
        @guardrails.input(no_secrets)
        def chat(self, text: str) -> str: ...

        input_config, output_config = get_guardrails_config(chat)
        assert output_config is None
    """
    if isinstance(target, type):
        namespace = target.__dict__
        return namespace.get(_INPUT_MARKER), namespace.get(_OUTPUT_MARKER)
    return getattr(target, _INPUT_MARKER, None), getattr(target, _OUTPUT_MARKER, None)


def _stored_config(target: Any, marker: str) -> Any:
    if isinstance(target, type):
        return target.__dict__.get(marker)
    return getattr(target, marker, None)


class _GuardrailsNamespace:
    """Namespace for guardrail declaration decorators.

    Usage:
        from warded import guardrails

        @guardrails.output(FormatCheck(), max_retries=2)
        class Assistant:
            @guardrails.input(LengthCheck())
            def chat(self, text: str) -> str:
                ...
    """

    @staticmethod
    def input(*guardrail_list: InputGuardrailLike) -> Callable[[T], T]:
        """Declare input guardrails on a method or service class.

        Execution Order:
            Guardrails run in the order given, and stacked decorators run
            top to bottom::

                @guardrails.input(first)    # Runs first
                @guardrails.input(second)   # Runs second
                def chat(self, text: str) -> str:
                    ...

        Args:
            *guardrail_list: InputGuardrail instances or functions taking
                InputGuardrailParams.

        Returns:
            Decorator that records the guardrails on its target.
        """
        if not guardrail_list:
            raise ValueError("guardrails.input() needs at least one guardrail")

        def decorator(target: T) -> T:
            existing: InputGuardrailsConfig | None = _stored_config(target, _INPUT_MARKER)
            current = existing.guardrails if existing else ()
            setattr(target, _INPUT_MARKER, InputGuardrailsConfig(guardrails=tuple(guardrail_list) + current))
            return target

        return decorator

    @staticmethod
    def output(
        *guardrail_list: OutputGuardrailLike,
        max_retries: int | None = None,
    ) -> Callable[[T], T]:
        """Declare output guardrails on a method or service class.

        Args:
            *guardrail_list: OutputGuardrail instances or functions taking
                OutputGuardrailParams.
            max_retries: Model re-invocations allowed when a guardrail
                requests a retry or reprompt. None uses the engine default.

        Returns:
            Decorator that records the guardrails on its target.
        """
        if not guardrail_list:
            raise ValueError("guardrails.output() needs at least one guardrail")
        if max_retries is not None and max_retries < 0:
            raise ValueError(f"max_retries must be non-negative, got {max_retries}")

        def decorator(target: T) -> T:
            existing: OutputGuardrailsConfig | None = _stored_config(target, _OUTPUT_MARKER)
            current = existing.guardrails if existing else ()
            retries = max_retries
            if retries is None and existing is not None:
                retries = existing.max_retries
            setattr(
                target,
                _OUTPUT_MARKER,
                OutputGuardrailsConfig(guardrails=tuple(guardrail_list) + current, max_retries=retries),
            )
            return target

        return decorator


guardrails = _GuardrailsNamespace()


__all__ = [
    "RETRY_BLOCKED_NOTE",
    "ResultKind",
    "Failure",
    "GuardrailResult",
    "InputGuardrailResult",
    "OutputGuardrailResult",
    "CommonGuardrailParams",
    "InputGuardrailParams",
    "OutputGuardrailParams",
    "InputGuardrail",
    "OutputGuardrail",
    "InputGuardrailLike",
    "OutputGuardrailLike",
    "guardrail_name",
    "InputGuardrailsConfig",
    "OutputGuardrailsConfig",
    "get_guardrails_config",
    "guardrails",
]
