"""Tests for tool declaration, execution and the tool loop."""

import json
from typing import Literal

import pytest

from warded import ToolLoopLimitError, WardedConfigError, tool
from warded.logging import CallExecutionLog
from warded.messages import AiMessage, ChatResponse, ToolCall, ToolResultMessage, UserMessage
from warded.tools import (
    Tool,
    ToolExecutionContext,
    ToolLoop,
    ToolProviderRequest,
    ToolRegistry,
    provide_tools,
)

from conftest import ai, tool_request


def get_weather(city: str, unit: Literal["C", "F"] = "C") -> str:
    """Current weather for a city."""
    return f"22 {unit} in {city}"


async def add(a: int, b: int) -> int:
    """Add two numbers."""
    return a + b


def explode() -> str:
    """Always fails."""
    raise RuntimeError("kaboom")


class TestToolDeclaration:
    """Tests for Tool.from_function and @tool."""

    def test_name_and_description_from_function(self):
        weather = Tool.from_function(get_weather)
        assert weather.name == "get_weather"
        assert weather.description == "Current weather for a city."

    def test_specification_schema(self):
        spec = Tool.from_function(get_weather).specification
        assert spec.parameters["required"] == ["city"]
        assert spec.parameters["properties"]["unit"]["enum"] == ["C", "F"]
        assert "title" not in spec.parameters

    def test_tool_decorator_overrides(self):
        @tool(name="lookup", description="Find things.")
        def search(query: str) -> list[str]:
            return [query]

        resolved = Tool.from_function(search)
        assert resolved.name == "lookup"
        assert resolved.description == "Find things."
        assert search("x") == ["x"]

    def test_lambda_rejected(self):
        with pytest.raises(WardedConfigError):
            Tool.from_function(lambda x: x)

    def test_varargs_rejected(self):
        def variadic(*values: int) -> int:
            return 0

        with pytest.raises(WardedConfigError, match="args"):
            Tool.from_function(variadic)

    @pytest.mark.asyncio
    async def test_call_validates_arguments(self):
        result = await Tool.from_function(add)('{"a": 2, "b": "3"}')
        assert result == 5

    @pytest.mark.asyncio
    async def test_sync_handler_runs(self):
        assert await Tool.from_function(get_weather)('{"city": "Oslo"}') == "22 C in Oslo"


class TestToolRegistry:
    """Tests for ToolRegistry and ToolExecutionContext."""

    def test_duplicate_names_rejected(self):
        with pytest.raises(WardedConfigError, match="Duplicate tool name 'get_weather'"):
            ToolRegistry([get_weather, get_weather])

    def test_lookup(self):
        registry = ToolRegistry([get_weather, add])
        assert "add" in registry
        assert len(registry) == 2
        assert registry.get("missing") is None

    def test_context_adds_provided_tools(self):
        context = ToolExecutionContext.create(ToolRegistry([get_weather]), [add])
        assert [s.name for s in context.specifications] == ["get_weather", "add"]

    def test_context_rejects_provided_duplicates(self):
        with pytest.raises(WardedConfigError):
            ToolExecutionContext.create(ToolRegistry([add]), [add])

    def test_empty_context_has_no_tools(self):
        assert not ToolExecutionContext().has_tools

    @pytest.mark.asyncio
    async def test_provide_tools_async(self):
        async def provider(request):
            assert request.memory_id == "user-1"
            return [add]

        provided = await provide_tools(provider, ToolProviderRequest("user-1", UserMessage("hi")))
        assert provided == [add]

    @pytest.mark.asyncio
    async def test_provide_tools_without_provider(self):
        assert await provide_tools(None, ToolProviderRequest(None, UserMessage("hi"))) == []


class TestToolExecution:
    """Tests for executing single tool requests."""

    @pytest.mark.asyncio
    async def test_result_rendered_as_text(self):
        context = ToolExecutionContext.create(ToolRegistry([add]))
        execution = await context.execute(ToolCall("1", "add", '{"a": 1, "b": 2}'))
        assert execution.result == "3"
        assert execution.succeeded

    @pytest.mark.asyncio
    async def test_unknown_tool_is_error_result(self):
        context = ToolExecutionContext.create(ToolRegistry([add]))
        execution = await context.execute(ToolCall("1", "nope", "{}"))
        assert execution.result == "Error: there is no tool called nope"
        assert not execution.succeeded

    @pytest.mark.asyncio
    async def test_handler_exception_is_error_result(self):
        context = ToolExecutionContext.create(ToolRegistry([explode]))
        execution = await context.execute(ToolCall("1", "explode", "{}"))
        assert execution.result == "Error: kaboom"
        assert execution.error == "Error: kaboom"

    @pytest.mark.asyncio
    async def test_invalid_arguments_is_error_result(self):
        context = ToolExecutionContext.create(ToolRegistry([add]))
        execution = await context.execute(ToolCall("1", "add", '{"a": "x"}'))
        assert execution.result.startswith("Error: invalid arguments for tool add")


class TestToolLoop:
    """Tests for ToolLoop.run."""

    @pytest.mark.asyncio
    async def test_single_round(self):
        """One tool request leads to one execution and one more model call."""
        context = ToolExecutionContext.create(ToolRegistry([get_weather]))
        requests = []

        async def invoke(messages):
            requests.append(messages)
            return ai("It is 22 C in Paris", input_tokens=20, output_tokens=7)

        first = tool_request(("get_weather", json.dumps({"city": "Paris"})))
        conversation = (UserMessage("Weather in Paris?"),)
        result = await ToolLoop().run(first, conversation, context, invoke)

        assert result.response.text == "It is 22 C in Paris"
        assert len(result.executions) == 1
        assert result.executions[0].result == "22 C in Paris"
        assert result.model_calls == 1
        assert result.token_usage.input_tokens == 30
        assert result.token_usage.output_tokens == 12
        assert requests[0] == (
            conversation[0],
            first.message,
            ToolResultMessage("call_0", "get_weather", "22 C in Paris"),
        )
        assert result.messages == requests[0][1:]

    @pytest.mark.asyncio
    async def test_no_tool_calls_returns_response(self):
        response = ai("done")

        async def invoke(messages):
            raise AssertionError("should not be called")

        result = await ToolLoop().run(response, (), ToolExecutionContext(), invoke)
        assert result.response is response
        assert result.executions == ()

    @pytest.mark.asyncio
    async def test_unknown_tool_recovery(self):
        """An unknown tool name is reported to the model and the loop continues."""
        context = ToolExecutionContext.create(ToolRegistry([add]))
        seen = []

        async def invoke(messages):
            seen.append(messages[-1])
            return ai("Sorry, I cannot do that")

        result = await ToolLoop().run(tool_request(("teleport", "{}")), (), context, invoke)
        assert result.response.text == "Sorry, I cannot do that"
        assert seen[0].text == "Error: there is no tool called teleport"

    @pytest.mark.asyncio
    async def test_requests_run_in_order(self):
        order = []

        def first() -> str:
            """First."""
            order.append("first")
            return "1"

        def second() -> str:
            """Second."""
            order.append("second")
            return "2"

        context = ToolExecutionContext.create(ToolRegistry([first, second]))

        async def invoke(messages):
            return ai("ok")

        result = await ToolLoop().run(tool_request(("second", "{}"), ("first", "{}")), (), context, invoke)
        assert order == ["second", "first"]
        assert [e.request.name for e in result.executions] == ["second", "first"]

    @pytest.mark.asyncio
    async def test_limit_exceeded(self):
        context = ToolExecutionContext.create(ToolRegistry([add]))

        async def invoke(messages):
            return tool_request(("add", '{"a": 1, "b": 1}'))

        with pytest.raises(ToolLoopLimitError) as exc_info:
            await ToolLoop(max_sequential_invocations=3).run(
                tool_request(("add", '{"a": 1, "b": 1}')), (), context, invoke
            )
        assert exc_info.value.limit == 3

    @pytest.mark.asyncio
    async def test_listener_and_log(self):
        context = ToolExecutionContext.create(ToolRegistry([add]))
        log = CallExecutionLog(service_name="Calc", method_name="add", trace_id="t" * 32, span_id="s" * 16)
        executed = []

        async def invoke(messages):
            return ai("3")

        await ToolLoop().run(
            tool_request(("add", '{"a": 1, "b": 2}')),
            (),
            context,
            invoke,
            on_tool_executed=executed.append,
            log=log,
        )
        assert [e.result for e in executed] == ["3"]
        assert log.tool_calls[0].tool_name == "add"
        assert log.tool_calls[0].success

    def test_invalid_limit(self):
        with pytest.raises(ValueError):
            ToolLoop(0)


def test_tool_response_message():
    """Tool requests are carried on the AI message."""
    response = tool_request(("add", "{}"))
    assert isinstance(response, ChatResponse)
    assert response.message == AiMessage(tool_calls=(ToolCall("call_0", "add", "{}"),))
