"""Service declaration and construction.

A service is a plain class whose methods have no body. `build_service`
inspects it once, builds a call descriptor per method and returns an
instance whose methods run the call pipeline:

    from typing import Annotated
    from warded import MemoryId, build_service, guardrails, system_message

    class Assistant:
        @system_message("You are a polite assistant. Today is {{current_date}}.")
        def chat(self, session: Annotated[str, MemoryId], message: str) -> str:
            ...

        async def classify(self, text: str) -> Sentiment:
            '''Classify the sentiment of the text.'''
            ...

    assistant = build_service(Assistant, model="fast", memory=InMemoryChatMemoryStore())
    assistant.chat("user-1", "Hello!")

Everything that can be checked without calling the model (templates,
parameter markers, guardrail configuration, model alias) is checked in
`build_service`; calls never re-inspect the class.

Design Note: Pydantic vs Dataclass Usage
----------------------------------------
MethodConfig, CallDescriptor and BoundCall are dataclasses (not Pydantic)
because they are built by this module from Python objects (functions,
annotations, guardrail instances), never parsed from user input.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import logging
from collections.abc import Hashable, Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Annotated, Any, Callable, Protocol, TypeVar, get_args, get_origin, get_type_hints

from warded._pydantic_ai import PydanticAIChatModel
from warded.augment import RetrievalAugmentor
from warded.config import DEFAULT_ALIAS, get_engine_defaults, resolve_model_config
from warded.engine import ServiceContext, SystemMessageProvider, invoke_method
from warded.exceptions import WardedConfigError
from warded.executor import InputGuardrailExecutor, OutputGuardrailExecutor
from warded.guardrail import (
    InputGuardrailLike,
    InputGuardrailsConfig,
    OutputGuardrailLike,
    OutputGuardrailsConfig,
    get_guardrails_config,
)
from warded.memory import DEFAULT_MEMORY_ID, ChatMemoryStore
from warded.messages import ChatModel, SystemMessage, UserMessage
from warded.moderation import ModerationCheckerLike
from warded.output import OutputSpec, classify_output
from warded.streaming import TokenStream, stream_method
from warded.template import BUILTIN_VARIABLES, DefaultTemplateRenderer, TemplateRenderer, format_value, template_variables
from warded.tools import ToolLike, ToolLoop, ToolProvider, ToolRegistry

_logger = logging.getLogger(__name__)

S = TypeVar("S")
F = TypeVar("F", bound=Callable[..., Any])

# Internal marker attribute names
_SYSTEM_MARKER = "_warded_system_message"
_USER_MARKER = "_warded_user_message"
_MODERATE_MARKER = "_warded_moderate"

_SINGLE_PARAM_VARIABLE = "it"


# ---------------------------------------------------------------------------
# Declaration decorators and parameter markers
# ---------------------------------------------------------------------------


def system_message(template: str) -> Callable[[F], F]:
    """Set the system message template of a method, or of every method of a class.

    Example:
        @system_message("You answer in {{language}}.")
        def answer(self, question: str, language: str) -> str:
            ...
    """

    def decorator(target: F) -> F:
        setattr(target, _SYSTEM_MARKER, template)
        return target

    return decorator


def user_message(template: str) -> Callable[[F], F]:
    """Set the user message template of a method."""

    def decorator(target: F) -> F:
        setattr(target, _USER_MARKER, template)
        return target

    return decorator


def moderate(target: F) -> F:
    """Check the conversation of every call with the service's moderation checker."""
    setattr(target, _MODERATE_MARKER, True)
    return target


class _Marker:
    def __init__(self, name: str):
        self._name = name

    def __repr__(self) -> str:
        return self._name


MemoryId = _Marker("MemoryId")
"""Marks the parameter holding the conversation id: `Annotated[str, MemoryId]`."""

UserName = _Marker("UserName")
"""Marks the parameter holding the user's name: `Annotated[str, UserName]`."""


@dataclass(frozen=True)
class V:
    """Names the template variable of a parameter: `Annotated[str, V("topic")]`."""

    name: str


# ---------------------------------------------------------------------------
# Configuration resolution
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MethodConfig:
    """Guardrail configuration in effect for one method."""

    input_guardrails: InputGuardrailsConfig = field(default_factory=InputGuardrailsConfig)
    output_guardrails: OutputGuardrailsConfig = field(default_factory=OutputGuardrailsConfig)


class ConfigResolver(Protocol):
    def resolve(self, service_cls: type, method: Callable[..., Any]) -> MethodConfig:
        ...


def _class_config(service_cls: type) -> tuple[InputGuardrailsConfig | None, OutputGuardrailsConfig | None]:
    input_config: InputGuardrailsConfig | None = None
    output_config: OutputGuardrailsConfig | None = None
    for klass in service_cls.__mro__:
        declared_input, declared_output = get_guardrails_config(klass)
        input_config = input_config or declared_input
        output_config = output_config or declared_output
    return input_config, output_config


class DecoratorConfigResolver:
    """Reads `@guardrails.input` / `@guardrails.output` declarations.

    For each kind independently, the method declaration wins over the class
    declaration, which wins over the builder defaults. Levels are never
    merged: a method declaring output guardrails replaces the class's
    output guardrails entirely.
    """

    def __init__(
        self,
        input_defaults: InputGuardrailsConfig | None = None,
        output_defaults: OutputGuardrailsConfig | None = None,
    ):
        self.input_defaults = input_defaults or InputGuardrailsConfig()
        self.output_defaults = output_defaults or OutputGuardrailsConfig()

    def resolve(self, service_cls: type, method: Callable[..., Any]) -> MethodConfig:
        method_input, method_output = get_guardrails_config(method)
        class_input, class_output = _class_config(service_cls)
        return MethodConfig(
            input_guardrails=method_input or class_input or self.input_defaults,
            output_guardrails=method_output or class_output or self.output_defaults,
        )


# ---------------------------------------------------------------------------
# Call descriptors
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ParamBinding:
    """How one method parameter feeds the prompt."""

    name: str
    variable: str
    memory_id: bool = False
    user_name: bool = False
    user_message: bool = False

    @property
    def is_content(self) -> bool:
        return not (self.memory_id or self.user_name)


@dataclass(frozen=True)
class BoundCall:
    """Arguments of one call, bound to the method's parameters."""

    arguments: Mapping[str, Any]
    variables: Mapping[str, Any]
    memory_id: Hashable = DEFAULT_MEMORY_ID
    user_name: str | None = None


@dataclass(frozen=True)
class CallDescriptor:
    """Everything the pipeline needs to know about a method, built once.

    Attributes:
        service_name: Name of the declared service class.
        method_name: Name of the method.
        signature: Method signature without `self`.
        params: Prompt binding of each parameter, in order.
        output: Return type handling.
        is_async: Whether the method was declared `async def`.
        streaming: Whether the method returns a TokenStream.
        system_template: Explicit system message template, if any.
        user_template: Explicit user message template, if any.
        docstring: Method docstring, the last-resort system message.
        moderate: Whether calls are moderated.
        input_executor: Executor for the resolved input guardrails.
        output_executor: Executor for the resolved output guardrails.
    """

    service_name: str
    method_name: str
    signature: inspect.Signature
    params: tuple[ParamBinding, ...]
    output: OutputSpec
    is_async: bool = False
    streaming: bool = False
    system_template: str | None = None
    user_template: str | None = None
    docstring: str | None = None
    moderate: bool = False
    input_executor: InputGuardrailExecutor = field(default_factory=lambda: InputGuardrailExecutor(()))
    output_executor: OutputGuardrailExecutor = field(default_factory=lambda: OutputGuardrailExecutor((), 0))

    @property
    def qualified_name(self) -> str:
        return f"{self.service_name}.{self.method_name}"

    @property
    def variable_names(self) -> set[str]:
        names = {p.variable for p in self.params}
        if len(self.params) == 1:
            names.add(_SINGLE_PARAM_VARIABLE)
        return names

    def bind(self, args: Sequence[Any], kwargs: Mapping[str, Any]) -> BoundCall:
        """Bind call arguments.

        Raises:
            TypeError: If the arguments do not match the signature.
            ValueError: If the memory id argument is None.
        """
        bound = self.signature.bind(*args, **kwargs)
        bound.apply_defaults()
        arguments = dict(bound.arguments)

        variables: dict[str, Any] = {}
        memory_id: Hashable = DEFAULT_MEMORY_ID
        user_name = None
        for param in self.params:
            value = arguments[param.name]
            variables[param.variable] = value
            if param.memory_id:
                if value is None:
                    raise ValueError(f"The memory id argument '{param.name}' of {self.qualified_name} must not be None")
                memory_id = value
            if param.user_name and value is not None:
                user_name = str(value)
        if len(self.params) == 1:
            variables[_SINGLE_PARAM_VARIABLE] = arguments[self.params[0].name]

        return BoundCall(
            arguments=MappingProxyType(arguments),
            variables=MappingProxyType(variables),
            memory_id=memory_id,
            user_name=user_name,
        )

    def system_message(
        self,
        renderer: TemplateRenderer,
        provider: SystemMessageProvider | None,
        bound: BoundCall,
    ) -> SystemMessage | None:
        template = self.system_template
        if template is None and provider is not None:
            template = provider(bound.memory_id)
        if template is None:
            template = self.docstring
        if not template:
            return None
        return SystemMessage(renderer.render(template, bound.variables))

    def user_message(self, renderer: TemplateRenderer, bound: BoundCall) -> UserMessage:
        if self.user_template is not None:
            text = renderer.render(self.user_template, bound.variables)
        else:
            text = self._user_text(bound)
        return UserMessage(text, name=bound.user_name)

    def _user_text(self, bound: BoundCall) -> str:
        explicit = next((p for p in self.params if p.user_message), None)
        if explicit is not None:
            return format_value(bound.arguments[explicit.name])
        content = [p for p in self.params if p.is_content]
        if len(content) == 1:
            return format_value(bound.arguments[content[0].name])
        return "\n".join(f"{p.name}: {format_value(bound.arguments[p.name])}" for p in content)


def _markers(annotation: Any) -> tuple[Any, ...]:
    if get_origin(annotation) is Annotated:
        return tuple(annotation.__metadata__)
    return ()


def _unwrap_annotated(annotation: Any) -> Any:
    if get_origin(annotation) is Annotated:
        return get_args(annotation)[0]
    return annotation


def _declared(service_cls: type, func: Callable[..., Any], marker: str) -> Any:
    value = getattr(func, marker, None)
    if value is not None:
        return value
    for klass in service_cls.__mro__:
        if marker in klass.__dict__:
            return klass.__dict__[marker]
    return None


def _check_template(template: str | None, available: set[str], where: str) -> None:
    if template is None:
        return
    missing = template_variables(template) - available - BUILTIN_VARIABLES
    if missing:
        names = ", ".join(sorted(missing))
        raise WardedConfigError(f"Template of {where} uses undefined variable(s): {names}")


def build_descriptor(
    service_cls: type,
    name: str,
    func: Callable[..., Any],
    config: MethodConfig,
    *,
    default_max_retries: int,
    has_memory: bool,
    has_moderation: bool,
) -> CallDescriptor:
    """Inspect one declared method.

    Raises:
        WardedConfigError: On any declaration problem.
    """
    where = f"{service_cls.__name__}.{name}"
    try:
        hints = get_type_hints(func, include_extras=True)
    except (NameError, TypeError) as e:
        raise WardedConfigError(f"Could not resolve type hints of {where}: {e}") from e

    signature = inspect.signature(func)
    parameters = list(signature.parameters.values())[1:]

    params: list[ParamBinding] = []
    for parameter in parameters:
        if parameter.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
            raise WardedConfigError(f"{where} cannot declare *args or **kwargs")
        markers = _markers(hints.get(parameter.name))
        variable = next((m.name for m in markers if isinstance(m, V)), parameter.name)
        params.append(
            ParamBinding(
                name=parameter.name,
                variable=variable,
                memory_id=any(m is MemoryId for m in markers),
                user_name=any(m is UserName for m in markers),
                user_message=any(m is UserMessage for m in markers),
            )
        )

    if sum(p.memory_id for p in params) > 1:
        raise WardedConfigError(f"{where} has more than one MemoryId parameter")
    if any(p.memory_id for p in params) and not has_memory:
        raise WardedConfigError(f"{where} has a MemoryId parameter but the service has no chat memory store")

    return_type = hints.get("return", str)
    streaming = _unwrap_annotated(return_type) is TokenStream
    output = classify_output(str if streaming else return_type)

    moderated = bool(_declared(service_cls, func, _MODERATE_MARKER))
    if moderated and not has_moderation:
        raise WardedConfigError(f"{where} is marked @moderate but the service has no moderation checker")

    system_template = _declared(service_cls, func, _SYSTEM_MARKER)
    user_template = getattr(func, _USER_MARKER, None)
    docstring = inspect.getdoc(func) if system_template is None else None

    output_config = config.output_guardrails
    max_retries = output_config.max_retries if output_config.max_retries is not None else default_max_retries

    descriptor = CallDescriptor(
        service_name=service_cls.__name__,
        method_name=name,
        signature=signature.replace(parameters=parameters),
        params=tuple(params),
        output=output,
        is_async=inspect.iscoroutinefunction(func),
        streaming=streaming,
        system_template=system_template,
        user_template=user_template,
        docstring=docstring,
        moderate=moderated,
        input_executor=InputGuardrailExecutor(config.input_guardrails.guardrails),
        output_executor=OutputGuardrailExecutor(output_config.guardrails, max_retries),
    )

    available = descriptor.variable_names
    _check_template(system_template, available, where)
    _check_template(user_template, available, where)
    _check_template(docstring, available, where)
    if user_template is None and not any(p.is_content for p in params):
        raise WardedConfigError(
            f"{where} has no user message: add a parameter or a @user_message template"
        )
    return descriptor


# ---------------------------------------------------------------------------
# Service construction
# ---------------------------------------------------------------------------


def _stub(self):  # pragma: no cover
    ...


def _doc_stub(self):  # pragma: no cover
    """Doc."""
    ...


async def _async_stub(self):  # pragma: no cover
    ...


async def _async_doc_stub(self):  # pragma: no cover
    """Doc."""
    ...


_STUB_CODES = frozenset(f.__code__.co_code for f in (_stub, _doc_stub, _async_stub, _async_doc_stub))


def _is_stub(func: Any) -> bool:
    """Whether `func` is a function whose body is only `...` or `pass`."""
    return inspect.isfunction(func) and func.__code__.co_code in _STUB_CODES


def declared_methods(service_cls: type) -> dict[str, Callable[..., Any]]:
    """Public methods of `service_cls` (and its bases) that have no body."""
    methods: dict[str, Callable[..., Any]] = {}
    for klass in reversed(service_cls.__mro__[:-1]):
        for name, value in vars(klass).items():
            if name.startswith("_"):
                continue
            if _is_stub(value):
                methods[name] = value
            else:
                methods.pop(name, None)
    return methods


def _resolve_model(model: ChatModel | str | None) -> ChatModel:
    if model is None:
        model = DEFAULT_ALIAS
    if isinstance(model, str):
        return PydanticAIChatModel.from_config(resolve_model_config(model))
    if not isinstance(model, ChatModel):
        raise WardedConfigError(f"model must be a ChatModel, a 'provider:model' string or an alias, got {model!r}")
    return model


def _run_sync(descriptor: CallDescriptor, context: ServiceContext, args: tuple[Any, ...], kwargs: dict[str, Any]) -> Any:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(invoke_method(context, descriptor, args, kwargs))
    raise RuntimeError(
        f"{descriptor.qualified_name} is synchronous and cannot run inside a running event loop; "
        "declare it with 'async def'"
    )


def _implement(func: Callable[..., Any], descriptor: CallDescriptor, context: ServiceContext) -> Callable[..., Any]:
    if descriptor.streaming and descriptor.is_async:

        async def async_stream_method(self: Any, *args: Any, **kwargs: Any) -> TokenStream:
            return stream_method(context, descriptor, args, kwargs)

        method = async_stream_method
    elif descriptor.streaming:

        def sync_stream_method(self: Any, *args: Any, **kwargs: Any) -> TokenStream:
            return stream_method(context, descriptor, args, kwargs)

        method = sync_stream_method
    elif descriptor.is_async:

        async def async_method(self: Any, *args: Any, **kwargs: Any) -> Any:
            return await invoke_method(context, descriptor, args, kwargs)

        method = async_method
    else:

        def sync_method(self: Any, *args: Any, **kwargs: Any) -> Any:
            return _run_sync(descriptor, context, args, kwargs)

        method = sync_method

    wrapped = functools.wraps(func)(method)
    wrapped._warded_descriptor = descriptor  # type: ignore[attr-defined]
    return wrapped


def build_service(
    service_cls: type[S],
    *,
    model: ChatModel | str | None = None,
    tools: Sequence[ToolLike] = (),
    tool_provider: ToolProvider | None = None,
    memory: ChatMemoryStore | None = None,
    augmentor: RetrievalAugmentor | None = None,
    moderation: ModerationCheckerLike | None = None,
    input_guardrails: Sequence[InputGuardrailLike] = (),
    output_guardrails: Sequence[OutputGuardrailLike] = (),
    output_max_retries: int | None = None,
    system_message_provider: SystemMessageProvider | None = None,
    renderer: TemplateRenderer | None = None,
    timeout: float | None = None,
    moderation_timeout: float | None = None,
    max_sequential_tool_invocations: int | None = None,
    config_resolver: ConfigResolver | None = None,
) -> S:
    """Build an instance of `service_cls` whose bodiless methods call the model.

    Args:
        service_cls: Class declaring the service methods.
        model: A ChatModel, a literal 'provider:model' string or a model
            alias from configuration. None uses the 'default' alias.
        tools: Functions (or Tool objects) the model may call.
        tool_provider: Returns extra tools per call.
        memory: Chat memory store; required for MemoryId parameters.
        augmentor: Retrieval augmentor applied to every user message.
        moderation: Moderation checker; required for @moderate methods.
        input_guardrails: Input guardrails for methods and classes that
            declare none.
        output_guardrails: Output guardrails for methods and classes that
            declare none.
        output_max_retries: Re-invocations allowed by output guardrails
            when the declaration does not set max_retries.
        system_message_provider: System message per memory id for methods
            without a system message template.
        renderer: Template renderer (default: `{{name}}` substitution).
        timeout: Per-call timeout in seconds.
        moderation_timeout: Seconds to wait for a moderation verdict
            (default: `timeout`).
        max_sequential_tool_invocations: Bound on tool rounds per call.
        config_resolver: Source of per-method guardrail configuration.

    Raises:
        WardedConfigError: If a declaration is invalid, a model alias is
            unknown or tool names collide.

    Example:
        assistant = build_service(Assistant, model="openai:gpt-4o", tools=[get_weather])
        assistant.chat("What's the weather in Paris?")
    """
    defaults = get_engine_defaults()
    if output_max_retries is not None and output_max_retries < 0:
        raise ValueError(f"output_max_retries must be non-negative, got {output_max_retries}")

    resolver = config_resolver or DecoratorConfigResolver(
        InputGuardrailsConfig(tuple(input_guardrails)) if input_guardrails else None,
        OutputGuardrailsConfig(tuple(output_guardrails), output_max_retries) if output_guardrails else None,
    )
    default_max_retries = output_max_retries if output_max_retries is not None else defaults.output_max_retries

    methods = declared_methods(service_cls)
    if not methods:
        raise WardedConfigError(f"{service_cls.__name__} declares no service methods (methods whose body is '...')")

    context = ServiceContext(
        model=_resolve_model(model),
        tools=ToolRegistry(tools),
        tool_provider=tool_provider,
        memory=memory,
        augmentor=augmentor,
        moderation=moderation,
        renderer=renderer or DefaultTemplateRenderer(),
        system_message_provider=system_message_provider,
        tool_loop=ToolLoop(max_sequential_tool_invocations or defaults.max_sequential_tool_invocations),
        timeout=timeout,
        moderation_timeout=moderation_timeout if moderation_timeout is not None else defaults.moderation_timeout,
    )

    namespace: dict[str, Any] = {"__module__": service_cls.__module__, "__doc__": service_cls.__doc__}
    for name, func in methods.items():
        descriptor = build_descriptor(
            service_cls,
            name,
            func,
            resolver.resolve(service_cls, func),
            default_max_retries=default_max_retries,
            has_memory=memory is not None,
            has_moderation=moderation is not None,
        )
        namespace[name] = _implement(func, descriptor, context)
        _logger.debug(
            "Built %s (output=%s, streaming=%s, max_retries=%d)",
            descriptor.qualified_name,
            descriptor.output.kind.value,
            descriptor.streaming,
            descriptor.output_executor.max_retries,
        )

    implementation = type(service_cls.__name__, (service_cls,), namespace)
    implementation.__qualname__ = service_cls.__qualname__
    instance = implementation()
    instance._warded_context = context  # type: ignore[attr-defined]
    return instance


def get_descriptor(method: Any) -> CallDescriptor | None:
    """Descriptor of a built service method, or None for other callables."""
    return getattr(method, "_warded_descriptor", None)


__all__ = [
    "system_message",
    "user_message",
    "moderate",
    "MemoryId",
    "UserName",
    "V",
    "MethodConfig",
    "ConfigResolver",
    "DecoratorConfigResolver",
    "ParamBinding",
    "BoundCall",
    "CallDescriptor",
    "build_descriptor",
    "declared_methods",
    "build_service",
    "get_descriptor",
]
