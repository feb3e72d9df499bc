"""Warded - guarded language model services for Python.

Declare a service as a class with bodiless methods, and `build_service`
turns every method into a governed model round-trip: prompt building,
input guardrails, model and tool calls, output guardrails with bounded
retry, and parsing into the declared return type.

Import Guidelines:
    All public API is exported at the top level:
        from warded import build_service, guardrails, Config, Result, ...

    Engine internals are NOT exported at package level.
    Use explicit imports if needed:
        from warded.executor import OutputGuardrailExecutor
"""

from importlib.metadata import version, PackageNotFoundError

from warded.augment import (
    AugmentationMetadata,
    AugmentationResult,
    Content,
    ContentInjectingAugmentor,
    RetrievalAugmentor,
)
from warded.config import (
    Config,
    EngineDefaults,
    ModelConfig,
    ModelConfigDict,
    clear_config_cache,
    configure_engine_defaults,
    current_config,
    get_engine_defaults,
)
from warded.exceptions import (
    CallCancelledError,
    CallTimeoutError,
    ErrorCategory,
    GuardrailError,
    InputGuardrailError,
    ModelInvocationError,
    ModerationError,
    ModerationTimeoutError,
    OutputGuardrailError,
    OutputParsingError,
    TemplateError,
    ToolLoopLimitError,
    WardedConfigError,
    WardedError,
)
from warded.guardrail import (
    CommonGuardrailParams,
    Failure,
    InputGuardrail,
    InputGuardrailParams,
    InputGuardrailResult,
    InputGuardrailsConfig,
    OutputGuardrail,
    OutputGuardrailParams,
    OutputGuardrailResult,
    OutputGuardrailsConfig,
    get_guardrails_config,
    guardrails,
)
from warded.logging import (
    # Configuration
    LoggingConfig,
    LogLevel,
    configure_logging,
    get_logging_config,
    logging_context,
    setup_logging,
    # Tracing
    TraceContext,
    trace_context,
    current_trace,
    with_trace_id,
    # Handlers
    LogHandler,
    PythonLoggingHandler,
    JSONFileHandler,
    OpenTelemetryHandler,
    # Types (for custom handlers)
    CallExecutionLog,
    GuardrailMetrics,
    ToolCallLog,
)
from warded.memory import ChatMemoryStore, InMemoryChatMemoryStore
from warded.messages import (
    AiMessage,
    ChatMessage,
    ChatModel,
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
from warded.moderation import Moderation, ModerationChecker
from warded._pydantic_ai import PydanticAIChatModel
from warded.result import Result
from warded.service import (
    ConfigResolver,
    DecoratorConfigResolver,
    MemoryId,
    MethodConfig,
    UserName,
    V,
    build_service,
    moderate,
    system_message,
    user_message,
)
from warded.streaming import (
    PartialText,
    RetryStarted,
    StreamCompleted,
    StreamEvent,
    StreamOutcome,
    TokenStream,
    ToolExecuted,
)
from warded.template import DefaultTemplateRenderer, TemplateRenderer
from warded.tools import Tool, ToolExecution, ToolProviderRequest, ToolRegistry, tool

# Package metadata
try:
    __version__ = version("warded")
except PackageNotFoundError:
    __version__ = "0.1.0"  # Fallback for development/editable installs

__all__ = [
    # Package metadata
    "__version__",
    # Service construction
    "build_service",
    "system_message",
    "user_message",
    "moderate",
    "MemoryId",
    "UserName",
    "V",
    "MethodConfig",
    "ConfigResolver",
    "DecoratorConfigResolver",
    "Result",
    # Guardrails
    "guardrails",
    "get_guardrails_config",
    "InputGuardrail",
    "OutputGuardrail",
    "InputGuardrailParams",
    "OutputGuardrailParams",
    "CommonGuardrailParams",
    "InputGuardrailResult",
    "OutputGuardrailResult",
    "InputGuardrailsConfig",
    "OutputGuardrailsConfig",
    "Failure",
    # Tools
    "tool",
    "Tool",
    "ToolRegistry",
    "ToolExecution",
    "ToolProviderRequest",
    # Streaming
    "TokenStream",
    "StreamEvent",
    "StreamOutcome",
    "PartialText",
    "ToolExecuted",
    "RetryStarted",
    "StreamCompleted",
    # Messages and models
    "ChatModel",
    "PydanticAIChatModel",
    "ChatMessage",
    "SystemMessage",
    "UserMessage",
    "AiMessage",
    "ToolCall",
    "ToolResultMessage",
    "ToolSpecification",
    "ChatRequest",
    "ChatResponse",
    "TextDelta",
    "TokenUsage",
    "FinishReason",
    # Collaborators
    "ChatMemoryStore",
    "InMemoryChatMemoryStore",
    "RetrievalAugmentor",
    "ContentInjectingAugmentor",
    "AugmentationMetadata",
    "AugmentationResult",
    "Content",
    "ModerationChecker",
    "Moderation",
    "TemplateRenderer",
    "DefaultTemplateRenderer",
    # Configuration
    "Config",
    "ModelConfig",
    "ModelConfigDict",
    "current_config",
    "clear_config_cache",
    "EngineDefaults",
    "configure_engine_defaults",
    "get_engine_defaults",
    # Exceptions (all inherit from WardedError)
    "WardedError",
    "ErrorCategory",
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
    # Logging configuration
    "LoggingConfig",
    "LogLevel",
    "configure_logging",
    "get_logging_config",
    "logging_context",
    "setup_logging",
    # Distributed tracing
    "TraceContext",
    "trace_context",
    "current_trace",
    "with_trace_id",
    # Log handlers
    "LogHandler",
    "PythonLoggingHandler",
    "JSONFileHandler",
    "OpenTelemetryHandler",
    # Telemetry types
    "CallExecutionLog",
    "GuardrailMetrics",
    "ToolCallLog",
]
