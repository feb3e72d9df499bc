"""Execution logs and trace correlation for service calls.

Nothing is recorded unless logging is enabled. An enabled configuration
gets one CallExecutionLog per service call (streaming or not), handed to
every configured handler once the call has finished.

Design Note: Pydantic vs Dataclass Usage
----------------------------------------
The log records here are plain dataclasses. The engine builds and mutates
them while a call runs and nothing is ever parsed into them, so there is
no validation to do; `to_dict()` covers serialization.

config.py is the counterpart: user-written pyproject.toml tables go
through Pydantic there, where good validation errors matter.
"""

from __future__ import annotations

import json
import logging as stdlib_logging
import warnings
from collections.abc import Generator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Literal, Protocol
from uuid import uuid4

from warded._pyproject import get_warded_config
from warded.messages import TokenUsage

_logger = stdlib_logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Span ids are 8 bytes (16 hex chars) in W3C traceparent headers
SPAN_ID_LENGTH = 16

# Logs kept in memory by JSONFileHandler between writes
DEFAULT_BUFFER_SIZE = 100

DEFAULT_LOGGER_NAME = "warded"

REDACTED_MARKER = "[REDACTED]"
REDACTED = Literal["[REDACTED]"]

_PRIMITIVES = (str, int, float, bool, type(None))


class LogLevel(str, Enum):
    """Minimum severity of calls that reach the handlers.

    Only ERROR changes behavior today: it drops logs of successful calls.
    """

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"

    @classmethod
    def parse(cls, value: str | LogLevel) -> LogLevel:
        if isinstance(value, LogLevel):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            _logger.debug("Unknown log level %r; using info", value)
            return cls.INFO


def _jsonable(value: Any) -> Any:
    return value if isinstance(value, _PRIMITIVES) else repr(value)


# ---------------------------------------------------------------------------
# Log records
# ---------------------------------------------------------------------------


@dataclass
class ToolCallLog:
    """One tool request handled during a call."""

    tool_name: str
    arguments: str | REDACTED = "{}"
    result: str | REDACTED = ""
    duration_ms: float = 0.0
    success: bool = True
    error: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["timestamp"] = self.timestamp.isoformat()
        return data


@dataclass
class GuardrailMetrics:
    """Guardrail outcomes and retries recorded during one call.

    Names are recorded once per pass, so a guardrail that runs in three
    output passes appears three times.
    """

    input_guardrails_passed: list[str] = field(default_factory=list)
    input_guardrails_failed: list[str] = field(default_factory=list)
    output_guardrails_passed: list[str] = field(default_factory=list)
    output_guardrails_failed: list[str] = field(default_factory=list)

    # Model re-invocations requested by output guardrails
    retry_count: int = 0
    retry_reasons: list[str] = field(default_factory=list)
    reprompts: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class CallExecutionLog:
    """Everything recorded about one service call.

    The engine fills the log in while the call runs and calls finalize()
    exactly once at the end, whatever the outcome.

    Attributes:
        service_name: Name of the declared service class.
        method_name: Name of the service method.
        trace_id: Trace shared with enclosing spans.
        span_id: Span of this call.
        model: Name reported by the chat model.
        input_args: Bound call arguments, or the redaction marker.
        model_calls: Model invocations, retries and tool rounds included.
        tool_calls: Tool requests executed across all attempts.
        error_category: `ErrorCategory` value of a warded error.
    """

    service_name: str
    method_name: str
    trace_id: str
    span_id: str
    parent_span_id: str | None = None

    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    end_time: datetime | None = None
    duration_ms: float | None = None

    model: str = ""
    streaming: bool = False

    input_args: dict[str, Any] | str = field(default_factory=dict)
    output: Any = None
    output_type: str = ""

    token_usage: TokenUsage = field(default_factory=TokenUsage)
    model_calls: int = 0
    tool_calls: list[ToolCallLog] = field(default_factory=list)

    success: bool = True
    error: str | None = None
    error_type: str | None = None
    error_category: str | None = None

    tags: dict[str, str] = field(default_factory=dict)
    guardrails: GuardrailMetrics = field(default_factory=GuardrailMetrics)

    _finalized: bool = field(default=False, init=False, repr=False)

    @property
    def qualified_name(self) -> str:
        return f"{self.service_name}.{self.method_name}"

    def finalize(
        self,
        *,
        success: bool,
        error: BaseException | None = None,
        output: Any = None,
    ) -> None:
        """Record the outcome and stop the clock.

        Raises:
            RuntimeError: On a second call for the same log.
        """
        if self._finalized:
            raise RuntimeError(f"Execution log of {self.qualified_name} is already finalized")
        self._finalized = True

        self.end_time = datetime.now(timezone.utc)
        self.duration_ms = (self.end_time - self.start_time).total_seconds() * 1000
        self.success = success

        if error is not None:
            self.error = str(error)
            self.error_type = type(error).__name__
            category = getattr(error, "category", None)
            self.error_category = None if category is None else category.value
        if output is not None:
            self.output, self.output_type = output, type(output).__name__

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready dict; values that are not JSON primitives are repr'd."""
        data = {f.name: getattr(self, f.name) for f in fields(self) if not f.name.startswith("_")}
        data.update(
            start_time=self.start_time.isoformat(),
            end_time=self.end_time and self.end_time.isoformat(),
            output=_jsonable(self.output),
            token_usage=self.token_usage.to_dict(),
            tool_calls=[call.to_dict() for call in self.tool_calls],
            guardrails=self.guardrails.to_dict(),
        )
        if isinstance(self.input_args, Mapping):
            data["input_args"] = {name: _jsonable(value) for name, value in self.input_args.items()}
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


# ---------------------------------------------------------------------------
# Tracing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TraceContext:
    """Trace and span ids in W3C Trace Context format.

    trace_id is 32 hex chars and shared by nested calls; span_id is 16 hex
    chars and new for every call.
    """

    trace_id: str
    span_id: str
    parent_span_id: str | None = None

    @classmethod
    def new(cls, parent: TraceContext | None = None) -> TraceContext:
        """Start a span; a child of `parent` when given, else a new trace."""
        span_id = uuid4().hex[:SPAN_ID_LENGTH]
        if parent is None:
            return cls(trace_id=uuid4().hex, span_id=span_id)
        return cls(trace_id=parent.trace_id, span_id=span_id, parent_span_id=parent.span_id)

    def to_w3c_traceparent(self) -> str:
        """`traceparent` header value (version 00, sampled)."""
        return f"00-{self.trace_id}-{self.span_id}-01"


_trace_context: ContextVar[TraceContext | None] = ContextVar("warded_trace", default=None)


def current_trace() -> TraceContext | None:
    return _trace_context.get()


@contextmanager
def _activate(ctx: TraceContext) -> Generator[TraceContext, None, None]:
    token = _trace_context.set(ctx)
    try:
        yield ctx
    finally:
        _trace_context.reset(token)


@contextmanager
def trace_context(parent: TraceContext | None = None) -> Generator[TraceContext, None, None]:
    """Open a span below `parent` (default: the active span), or a new trace."""
    with _activate(TraceContext.new(parent or current_trace())) as ctx:
        yield ctx


@contextmanager
def with_trace_id(trace_id: str) -> Generator[TraceContext, None, None]:
    """Run the block in a trace with an externally supplied id.

    Example:
        with with_trace_id(request.headers["x-trace-id"]):
            result = assistant.chat("hi")  # declared -> Result[str]
        assert result.trace_id == request.headers["x-trace-id"]
    """
    with _activate(TraceContext(trace_id=trace_id, span_id=uuid4().hex[:SPAN_ID_LENGTH])) as ctx:
        yield ctx


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


class LogHandler(Protocol):
    """Receives finalized execution logs."""

    def handle(self, log: CallExecutionLog) -> None:
        ...

    def flush(self) -> None:
        ...


class PythonLoggingHandler:
    """Writes each log as one JSON line to a stdlib logger.

    Successful calls are logged at INFO, failed calls at ERROR.
    """

    def __init__(self, logger_name: str = DEFAULT_LOGGER_NAME):
        self.logger = stdlib_logging.getLogger(logger_name)

    def handle(self, log: CallExecutionLog) -> None:
        self.logger.log(
            stdlib_logging.INFO if log.success else stdlib_logging.ERROR,
            "%s",
            log.to_json(),
        )

    def flush(self) -> None:
        for handler in self.logger.handlers:
            handler.flush()


class JSONFileHandler:
    """Appends logs to a JSON Lines file, `buffer_size` at a time.

    Call flush() before exit to write what is still buffered.
    """

    def __init__(self, path: str | Path, buffer_size: int = DEFAULT_BUFFER_SIZE):
        self.path = Path(path)
        self.buffer_size = buffer_size
        self.buffer: list[CallExecutionLog] = []

    def handle(self, log: CallExecutionLog) -> None:
        self.buffer.append(log)
        if len(self.buffer) >= self.buffer_size:
            self.flush()

    def flush(self) -> None:
        if not self.buffer:
            return
        lines = "".join(f"{log.to_json()}\n" for log in self.buffer)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(lines)
        self.buffer.clear()


def _span_attributes(log: CallExecutionLog) -> dict[str, Any]:
    attributes: dict[str, Any] = {
        "warded.service": log.service_name,
        "warded.method": log.method_name,
        "warded.model": log.model,
        "warded.streaming": log.streaming,
        "warded.success": log.success,
        "warded.duration_ms": log.duration_ms or 0.0,
        "warded.model_calls": log.model_calls,
        "warded.retries": log.guardrails.retry_count,
        "warded.tools.count": len(log.tool_calls),
        "warded.tokens.input": log.token_usage.input_tokens,
        "warded.tokens.output": log.token_usage.output_tokens,
        "warded.tokens.total": log.token_usage.total_tokens,
    }
    if log.error_category:
        attributes["warded.error.category"] = log.error_category
    attributes.update({f"warded.tag.{key}": value for key, value in log.tags.items()})
    return attributes


class OpenTelemetryHandler:
    """Exports every call as an OpenTelemetry span.

    Needs the `otel` extra (`pip install warded[otel]`); without it the
    handler silently does nothing.
    """

    def __init__(self, service_name: str = DEFAULT_LOGGER_NAME):
        self.service_name = service_name
        self._tracer: Any = None
        try:
            from opentelemetry import trace
            from opentelemetry.sdk.trace import TracerProvider
        except ImportError:
            _logger.debug("opentelemetry is not installed; %s exports nothing", type(self).__name__)
            return

        if not isinstance(trace.get_tracer_provider(), TracerProvider):
            trace.set_tracer_provider(TracerProvider())
        self._tracer = trace.get_tracer(service_name)

    @property
    def available(self) -> bool:
        return self._tracer is not None

    def handle(self, log: CallExecutionLog) -> None:
        if not self.available:
            return
        try:
            from opentelemetry.trace import StatusCode

            with self._tracer.start_as_current_span(log.qualified_name, attributes=_span_attributes(log)) as span:
                if not log.success:
                    span.set_status(StatusCode.ERROR, log.error or log.error_type or "")
        except Exception as e:
            # An exporter problem must not fail the call being logged
            _logger.debug("Span export for %s failed: %s", log.qualified_name, e)

    def flush(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def _handler_from_table(kind: str, table: Mapping[str, Any]) -> LogHandler | None:
    if kind == "python":
        return PythonLoggingHandler(table.get("logger_name", DEFAULT_LOGGER_NAME))
    if kind == "json_file":
        if not table.get("path"):
            _logger.debug("json_file log handler has no path; skipped")
            return None
        return JSONFileHandler(table["path"], buffer_size=int(table.get("buffer_size", DEFAULT_BUFFER_SIZE)))
    if kind in ("otel", "opentelemetry"):
        return OpenTelemetryHandler(table.get("service_name", DEFAULT_LOGGER_NAME))
    _logger.debug("Unknown log handler type %r; skipped", kind)
    return None


@dataclass
class LoggingConfig:
    """How execution logs are produced and where they go.

    Attributes:
        enabled: Master switch; nothing is recorded when False.
        level: Minimum level; ERROR drops successful calls.
        handlers: Receivers of finalized logs.
        redact_content: Replace inputs, outputs and tool data with a marker.
        include_input: Record the bound call arguments.
        include_output: Record the returned value.
        default_tags: Tags added to every log (per-log tags win).
    """

    enabled: bool = False
    level: LogLevel = LogLevel.INFO
    handlers: list[LogHandler] = field(default_factory=list)
    redact_content: bool = False
    include_input: bool = True
    include_output: bool = True
    default_tags: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_table(cls, table: Mapping[str, Any]) -> LoggingConfig:
        """Build from a `[tool.warded.logging]` table.

        Handlers come from `[tool.warded.logging.handlers.<name>]`
        sub-tables whose `type` defaults to `<name>`. Enabling logging
        without handlers logs through the stdlib logger.
        """
        handlers: list[LogHandler] = []
        for name, settings in (table.get("handlers") or {}).items():
            if isinstance(settings, Mapping):
                handler = _handler_from_table(settings.get("type", name), settings)
                if handler is not None:
                    handlers.append(handler)

        enabled = bool(table.get("enabled", False))
        if enabled and not handlers:
            handlers.append(PythonLoggingHandler())

        tags = table.get("default_tags")
        return cls(
            enabled=enabled,
            level=LogLevel.parse(table.get("level", LogLevel.INFO)),
            handlers=handlers,
            redact_content=bool(table.get("redact_content", False)),
            include_input=bool(table.get("include_input", True)),
            include_output=bool(table.get("include_output", True)),
            default_tags={str(k): str(v) for k, v in tags.items()} if isinstance(tags, Mapping) else {},
        )


_logging_config: ContextVar[LoggingConfig | None] = ContextVar("warded_logging_config", default=None)
_process_logging_config: LoggingConfig | None = None
_file_logging_config_cache: LoggingConfig | None = None

# ids of handlers whose failure was already reported
_handler_failure_warned: set[int] = set()


def configure_logging(config: LoggingConfig) -> None:
    """Install `config` for the whole process.

    logging_context() still overrides it; it overrides pyproject.toml.

    Example:
        configure_logging(LoggingConfig(enabled=True, handlers=[PythonLoggingHandler()]))
    """
    global _process_logging_config
    _process_logging_config = config


def _load_logging_config_from_file() -> LoggingConfig | None:
    table = get_warded_config().get("logging")
    if not table or not isinstance(table, Mapping):
        return None
    return LoggingConfig.from_table(table)


def get_logging_config() -> LoggingConfig:
    """The logging configuration in effect here.

    The first of these wins: logging_context(), configure_logging(),
    `[tool.warded.logging]` (read once and cached). Without any of them
    logging is disabled.
    """
    global _file_logging_config_cache

    scoped = _logging_config.get()
    if scoped is not None:
        return scoped
    if _process_logging_config is not None:
        return _process_logging_config
    if _file_logging_config_cache is None:
        _file_logging_config_cache = _load_logging_config_from_file()
    return _file_logging_config_cache or LoggingConfig()


@contextmanager
def logging_context(config: LoggingConfig) -> Generator[None, None, None]:
    """Use `config` for calls made inside the block.

    Example:
        with logging_context(LoggingConfig(enabled=True, handlers=[handler])):
            assistant.chat("hello")
    """
    token = _logging_config.set(config)
    try:
        yield
    finally:
        _logging_config.reset(token)


def setup_logging(
    level: LogLevel = LogLevel.INFO,
    *,
    otel: bool = False,
    redact_content: bool = False,
    json_file: str | Path | None = None,
) -> None:
    """Enable logging for the process in one line.

    Logs always go to the stdlib `warded` logger; `json_file` and `otel`
    add a JSON Lines file and OpenTelemetry spans. Redaction also stops
    recording inputs and outputs.
    """
    handlers: list[LogHandler] = [PythonLoggingHandler()]
    if json_file:
        handlers.append(JSONFileHandler(json_file))
    if otel:
        handlers.append(OpenTelemetryHandler())

    configure_logging(
        LoggingConfig(
            enabled=True,
            level=LogLevel.parse(level),
            handlers=handlers,
            redact_content=redact_content,
            include_input=not redact_content,
            include_output=not redact_content,
        )
    )


def _reset_logging_state() -> None:
    """Forget process and file logging config. Used by the test suite."""
    global _process_logging_config, _file_logging_config_cache
    _process_logging_config = None
    _file_logging_config_cache = None
    _handler_failure_warned.clear()


# ---------------------------------------------------------------------------
# Emission
# ---------------------------------------------------------------------------


def new_execution_log(
    service_name: str,
    method_name: str,
    trace: TraceContext,
    *,
    model: str = "",
    input_args: Mapping[str, Any] | None = None,
    streaming: bool = False,
) -> CallExecutionLog:
    """Execution log for one call in span `trace`."""
    record_input = get_logging_config().include_input
    return CallExecutionLog(
        service_name=service_name,
        method_name=method_name,
        trace_id=trace.trace_id,
        span_id=trace.span_id,
        parent_span_id=trace.parent_span_id,
        model=model,
        streaming=streaming,
        input_args=dict(input_args or {}) if record_input else {},
    )


def _redact(log: CallExecutionLog) -> None:
    log.input_args = REDACTED_MARKER
    log.output = REDACTED_MARKER
    for call in log.tool_calls:
        call.arguments = call.result = REDACTED_MARKER


def _report_handler_failure(handler: LogHandler, error: Exception) -> None:
    name = type(handler).__name__
    if id(handler) not in _handler_failure_warned:
        _handler_failure_warned.add(id(handler))
        warnings.warn(
            f"Log handler {name} failed: {error}. Further failures of this handler are only logged at debug level.",
            stacklevel=3,
        )
    _logger.debug("Log handler %s failed: %s", name, error)


def emit_log(log: CallExecutionLog) -> None:
    """Pass a finalized log to the configured handlers.

    Redaction and default tags are applied first. A failing handler never
    fails the call: it is warned about once, then logged at debug level.
    """
    config = get_logging_config()
    if not config.enabled or (log.success and config.level is LogLevel.ERROR):
        return

    if config.redact_content:
        _redact(log)
    elif not config.include_output:
        log.output = None
    log.tags = {**config.default_tags, **log.tags}

    for handler in config.handlers:
        try:
            handler.handle(log)
        except Exception as e:
            _report_handler_failure(handler, e)


__all__ = [
    "LogLevel",
    "ToolCallLog",
    "GuardrailMetrics",
    "CallExecutionLog",
    "TraceContext",
    "current_trace",
    "trace_context",
    "with_trace_id",
    "LogHandler",
    "PythonLoggingHandler",
    "JSONFileHandler",
    "OpenTelemetryHandler",
    "LoggingConfig",
    "configure_logging",
    "get_logging_config",
    "logging_context",
    "setup_logging",
    "new_execution_log",
    "emit_log",
]
