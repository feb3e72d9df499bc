"""Tests for execution logs, tracing and log handlers."""

import json
import logging
from unittest.mock import MagicMock, patch

import pytest

import warded.logging as logging_module
from warded import (
    CallExecutionLog,
    GuardrailMetrics,
    InputGuardrailError,
    JSONFileHandler,
    LoggingConfig,
    LogLevel,
    OutputGuardrailResult,
    PythonLoggingHandler,
    Result,
    ToolCallLog,
    TokenUsage,
    TraceContext,
    build_service,
    configure_logging,
    current_trace,
    get_logging_config,
    logging_context,
    setup_logging,
    trace_context,
    with_trace_id,
)
from warded.guardrail import InputGuardrailResult
from warded.logging import emit_log, new_execution_log

from conftest import ScriptedChatModel, ai


def _log(**kwargs) -> CallExecutionLog:
    return CallExecutionLog(service_name="Assistant", method_name="chat", trace_id="abc", span_id="def", **kwargs)


class TestTokenUsage:
    """Tests for TokenUsage."""

    def test_default_values(self):
        usage = TokenUsage()
        assert usage.input_tokens == 0
        assert usage.total_tokens == 0

    def test_addition(self):
        total = TokenUsage(10, 5) + TokenUsage(3, 2)
        assert total == TokenUsage(13, 7)

    def test_to_dict(self):
        assert TokenUsage(100, 50).to_dict() == {"input_tokens": 100, "output_tokens": 50, "total_tokens": 150}


class TestCallExecutionLog:
    """Tests for CallExecutionLog."""

    def test_finalize_success(self):
        log = _log()
        log.finalize(success=True, output="hello")

        assert log.success
        assert log.end_time is not None
        assert log.duration_ms >= 0
        assert log.output_type == "str"

    def test_finalize_failure_records_category(self):
        log = _log()
        log.finalize(success=False, error=InputGuardrailError("too long"))

        assert not log.success
        assert log.error_type == "InputGuardrailError"
        assert log.error_category == "input_guardrail"

    def test_finalize_plain_exception_has_no_category(self):
        log = _log()
        log.finalize(success=False, error=ValueError("x"))
        assert log.error_category is None

    def test_finalize_twice_rejected(self):
        log = _log()
        log.finalize(success=True)
        with pytest.raises(RuntimeError, match="already finalized"):
            log.finalize(success=True)

    def test_to_json(self):
        log = _log(input_args={"text": "hi", "obj": object()})
        log.tool_calls.append(ToolCallLog(tool_name="search", arguments='{"q": "x"}', result="found"))
        log.finalize(success=True, output={"a": 1})

        parsed = json.loads(log.to_json())
        assert parsed["service_name"] == "Assistant"
        assert parsed["input_args"]["text"] == "hi"
        assert parsed["input_args"]["obj"].startswith("<object")
        assert parsed["output"] == "{'a': 1}"
        assert parsed["tool_calls"][0]["tool_name"] == "search"
        assert parsed["guardrails"]["retry_count"] == 0

    def test_qualified_name(self):
        assert _log().qualified_name == "Assistant.chat"


class TestTraceContext:
    """Tests for TraceContext and propagation."""

    def test_new_trace(self):
        ctx = TraceContext.new()
        assert len(ctx.trace_id) == 32
        assert len(ctx.span_id) == 16
        assert ctx.parent_span_id is None

    def test_child_trace(self):
        parent = TraceContext.new()
        child = TraceContext.new(parent)
        assert child.trace_id == parent.trace_id
        assert child.parent_span_id == parent.span_id

    def test_w3c_traceparent(self):
        ctx = TraceContext(trace_id="a" * 32, span_id="b" * 16)
        assert ctx.to_w3c_traceparent() == f"00-{'a' * 32}-{'b' * 16}-01"

    def test_nested_trace_contexts(self):
        assert current_trace() is None
        with trace_context() as outer:
            with trace_context() as inner:
                assert current_trace() is inner
                assert inner.parent_span_id == outer.span_id
            assert current_trace() is outer
        assert current_trace() is None

    def test_with_trace_id(self):
        with with_trace_id("external-id") as ctx:
            assert current_trace().trace_id == "external-id"
            assert ctx.parent_span_id is None

    def test_service_call_joins_external_trace(self):
        class Assistant:
            def chat(self, message: str) -> Result[str]:
                ...

        assistant = build_service(Assistant, model=ScriptedChatModel("hi"))
        with with_trace_id("f" * 32):
            result = assistant.chat("hello")
        assert result.trace_id == "f" * 32


class TestHandlers:
    """Tests for the bundled handlers."""

    def test_python_handler_levels(self):
        handler = PythonLoggingHandler("test_logger")
        ok, failed = _log(), _log()
        ok.finalize(success=True)
        failed.finalize(success=False, error=ValueError("x"))

        with patch.object(handler.logger, "log") as mock_log:
            handler.handle(ok)
            handler.handle(failed)
        assert [c.args[0] for c in mock_log.call_args_list] == [logging.INFO, logging.ERROR]

    def test_json_file_handler_buffers(self, tmp_path):
        path = tmp_path / "logs" / "calls.jsonl"
        handler = JSONFileHandler(path, buffer_size=2)

        for _ in range(3):
            log = _log()
            log.finalize(success=True)
            handler.handle(log)

        assert len(handler.buffer) == 1
        assert len(path.read_text().splitlines()) == 2

        handler.flush()
        lines = path.read_text().splitlines()
        assert len(lines) == 3
        assert json.loads(lines[0])["method_name"] == "chat"

    def test_json_file_handler_flush_empty(self, tmp_path):
        path = tmp_path / "calls.jsonl"
        JSONFileHandler(path).flush()
        assert not path.exists()


class TestLoggingConfig:
    """Tests for configuration resolution."""

    def test_default_disabled(self):
        config = get_logging_config()
        assert not config.enabled
        assert config.handlers == []

    def test_context_beats_process(self):
        configure_logging(LoggingConfig(enabled=True, level=LogLevel.DEBUG))
        with logging_context(LoggingConfig(enabled=False)):
            assert not get_logging_config().enabled
        assert get_logging_config().level is LogLevel.DEBUG

    def test_setup_logging(self, tmp_path):
        setup_logging(json_file=tmp_path / "log.jsonl", redact_content=True)
        config = get_logging_config()
        assert config.enabled
        assert config.redact_content
        assert not config.include_input
        assert [type(h) for h in config.handlers] == [PythonLoggingHandler, JSONFileHandler]

    def test_load_from_pyproject(self, tmp_path, monkeypatch):
        (tmp_path / "pyproject.toml").write_text("""
[tool.warded.logging]
enabled = true
level = "debug"
redact_content = true

[tool.warded.logging.default_tags]
env = "test"

[tool.warded.logging.handlers.file]
type = "json_file"
path = "calls.jsonl"
buffer_size = 5
""")
        monkeypatch.chdir(tmp_path)
        logging_module._file_logging_config_cache = None

        config = get_logging_config()
        assert config.enabled
        assert config.level is LogLevel.DEBUG
        assert config.default_tags == {"env": "test"}
        assert isinstance(config.handlers[0], JSONFileHandler)
        assert config.handlers[0].buffer_size == 5

    def test_enabled_without_handlers_uses_python_handler(self, tmp_path, monkeypatch):
        (tmp_path / "pyproject.toml").write_text("[tool.warded.logging]\nenabled = true\n")
        monkeypatch.chdir(tmp_path)
        logging_module._file_logging_config_cache = None

        assert isinstance(get_logging_config().handlers[0], PythonLoggingHandler)


class TestLogEmission:
    """Tests for emit_log."""

    def test_disabled_does_nothing(self):
        handler = MagicMock()
        with logging_context(LoggingConfig(enabled=False, handlers=[handler])):
            emit_log(_log())
        handler.handle.assert_not_called()

    def test_redaction(self):
        handler = MagicMock()
        log = _log(input_args={"secret": "password123"})
        log.tool_calls.append(ToolCallLog(tool_name="lookup", arguments='{"k": 1}', result="v"))
        log.finalize(success=True, output="sensitive")

        with logging_context(LoggingConfig(enabled=True, handlers=[handler], redact_content=True)):
            emit_log(log)

        emitted = handler.handle.call_args[0][0]
        assert emitted.input_args == "[REDACTED]"
        assert emitted.output == "[REDACTED]"
        assert emitted.tool_calls[0].arguments == "[REDACTED]"

    def test_exclude_output(self):
        handler = MagicMock()
        log = _log()
        log.finalize(success=True, output="answer")
        with logging_context(LoggingConfig(enabled=True, handlers=[handler], include_output=False)):
            emit_log(log)
        assert handler.handle.call_args[0][0].output is None

    def test_exclude_input(self):
        with logging_context(LoggingConfig(enabled=True, include_input=False)):
            log = new_execution_log("Assistant", "chat", TraceContext.new(), input_args={"text": "hi"})
        assert log.input_args == {}

    def test_default_tags_merged(self):
        handler = MagicMock()
        log = _log(tags={"request": "42"})
        with logging_context(LoggingConfig(enabled=True, handlers=[handler], default_tags={"env": "test"})):
            emit_log(log)
        assert handler.handle.call_args[0][0].tags == {"env": "test", "request": "42"}

    def test_error_level_skips_successes(self):
        handler = MagicMock()
        log = _log()
        log.finalize(success=True)
        with logging_context(LoggingConfig(enabled=True, level=LogLevel.ERROR, handlers=[handler])):
            emit_log(log)
        handler.handle.assert_not_called()

    def test_failing_handler_warns_once(self):
        broken = MagicMock()
        broken.handle.side_effect = OSError("disk full")
        with logging_context(LoggingConfig(enabled=True, handlers=[broken])):
            with pytest.warns(UserWarning, match="disk full"):
                emit_log(_log())
            emit_log(_log())
        assert broken.handle.call_count == 2


class TestServiceLogging:
    """Tests for logs produced by service calls."""

    @pytest.mark.asyncio
    async def test_input_guardrail_metrics_logged(self):
        handler = MagicMock()

        class Assistant:
            async def chat(self, message: str) -> str:
                ...

        def short(params):
            if len(params.user_message.text) > 5:
                return InputGuardrailResult.failure("too long")
            return None

        assistant = build_service(Assistant, model=ScriptedChatModel(), input_guardrails=[short])
        with logging_context(LoggingConfig(enabled=True, handlers=[handler])):
            with pytest.raises(InputGuardrailError):
                await assistant.chat("far too long")

        log = handler.handle.call_args[0][0]
        assert log.guardrails.input_guardrails_failed == ["short"]
        assert log.model_calls == 0

    def test_token_usage_summed(self):
        handler = MagicMock()

        class Assistant:
            def chat(self, message: str) -> str:
                ...

        def once(params):
            return OutputGuardrailResult.retry("again") if params.attempt == 1 else None

        model = ScriptedChatModel(ai("a", input_tokens=7, output_tokens=3), ai("b", input_tokens=8, output_tokens=2))
        assistant = build_service(Assistant, model=model, output_guardrails=[once])
        with logging_context(LoggingConfig(enabled=True, handlers=[handler])):
            assistant.chat("hi")

        log = handler.handle.call_args[0][0]
        assert log.token_usage == TokenUsage(15, 5)
        assert log.guardrails.retry_count == 1
        assert log.model == "scripted"
        assert isinstance(log.guardrails, GuardrailMetrics)
