"""Tests for the guardrail executors and the bounded retry loop."""

import pytest

from warded import InputGuardrailError, OutputGuardrailError
from warded.executor import InputGuardrailExecutor, OutputGuardrailExecutor, run_pass
from warded.guardrail import (
    RETRY_BLOCKED_NOTE,
    CommonGuardrailParams,
    InputGuardrail,
    InputGuardrailParams,
    InputGuardrailResult,
    OutputGuardrail,
    OutputGuardrailParams,
    OutputGuardrailResult,
)
from warded.logging import GuardrailMetrics
from warded.messages import AiMessage, ChatResponse, UserMessage

COMMON = CommonGuardrailParams(method_name="Assistant.chat")


def _input(text: str) -> InputGuardrailParams:
    return InputGuardrailParams(UserMessage(text), COMMON)


def _output(text: str) -> OutputGuardrailParams:
    return OutputGuardrailParams(ChatResponse(AiMessage(text)), COMMON)


class Reinvoker:
    """Records re-invocations and answers from a list."""

    def __init__(self, *texts: str):
        self.texts = list(texts)
        self.calls: list[tuple] = []

    async def __call__(self, extra):
        self.calls.append(tuple(extra))
        return ChatResponse(AiMessage(self.texts.pop(0)))


class TestRunPass:
    """Tests for one guardrail pass."""

    @pytest.mark.asyncio
    async def test_identity_without_rewrites(self):
        """A pass of successful guardrails returns the params unchanged."""
        params = _input("hello")
        outcome = await run_pass([lambda p: None, lambda p: InputGuardrailResult.success()], params, InputGuardrailResult)
        assert outcome.result.is_success
        assert outcome.params is params
        assert not outcome.rewritten

    @pytest.mark.asyncio
    async def test_rewrite_visible_to_later_guardrails(self):
        seen = []

        def upper(params):
            return InputGuardrailResult.success_with(params.user_message.text.upper())

        def record(params):
            seen.append(params.user_message.text)

        outcome = await run_pass([upper, record], _input("hello"), InputGuardrailResult)
        assert seen == ["HELLO"]
        assert outcome.params.user_message.text == "HELLO"

    @pytest.mark.asyncio
    async def test_last_rewrite_wins(self):
        outcome = await run_pass(
            [
                lambda p: InputGuardrailResult.success_with("first"),
                lambda p: InputGuardrailResult.success_with("second"),
            ],
            _input("x"),
            InputGuardrailResult,
        )
        assert outcome.result.successful_text == "second"
        assert outcome.params.user_message.text == "second"

    @pytest.mark.asyncio
    async def test_fatal_short_circuits(self):
        calls = []

        def fatal(params):
            calls.append("fatal")
            return InputGuardrailResult.fatal("stop")

        def never(params):
            calls.append("never")

        outcome = await run_pass([fatal, never], _input("x"), InputGuardrailResult)
        assert calls == ["fatal"]
        assert outcome.result.is_fatal

    @pytest.mark.asyncio
    async def test_non_fatal_failures_accumulate(self):
        calls = []

        def first(params):
            calls.append(1)
            return InputGuardrailResult.failure("one")

        def second(params):
            calls.append(2)
            return InputGuardrailResult.failure("two")

        outcome = await run_pass([first, second], _input("x"), InputGuardrailResult)
        assert calls == [1, 2]
        assert [f.message for f in outcome.result.failures] == ["one", "two"]
        assert not outcome.result.is_fatal

    @pytest.mark.asyncio
    async def test_exception_becomes_fatal_failure(self):
        error = RuntimeError("boom")

        def broken(params):
            raise error

        outcome = await run_pass([broken], _input("x"), InputGuardrailResult)
        assert outcome.result.is_fatal
        assert outcome.result.failures[0].cause is error
        assert outcome.result.failures[0].guardrail_name == "broken"

    @pytest.mark.asyncio
    async def test_wrong_return_type_is_fatal(self):
        outcome = await run_pass([lambda p: "ok"], _input("x"), InputGuardrailResult)
        assert outcome.result.is_fatal
        assert "expected InputGuardrailResult" in outcome.result.failures[0].message

    @pytest.mark.asyncio
    async def test_async_guardrail(self):
        async def check(params):
            return InputGuardrailResult.success_with("async")

        outcome = await run_pass([check], _input("x"), InputGuardrailResult)
        assert outcome.params.user_message.text == "async"

    @pytest.mark.asyncio
    async def test_records_names(self):
        passed, failed = [], []

        class Good(InputGuardrail):
            def validate(self, params):
                return self.success()

        class Bad(InputGuardrail):
            def validate(self, params):
                return self.failure("bad")

        await run_pass([Good(), Bad()], _input("x"), InputGuardrailResult, passed=passed, failed=failed)
        assert passed == ["Good"]
        assert failed == ["Bad"]


class TestInputGuardrailExecutor:
    """Tests for the input executor."""

    @pytest.mark.asyncio
    async def test_no_guardrails_returns_message(self):
        message = UserMessage("hi")
        assert await InputGuardrailExecutor(()).execute(InputGuardrailParams(message, COMMON)) is message

    @pytest.mark.asyncio
    async def test_rewrite_returned(self):
        executor = InputGuardrailExecutor([lambda p: InputGuardrailResult.success_with("redacted")])
        assert (await executor.execute(_input("secret"))).text == "redacted"

    @pytest.mark.asyncio
    async def test_non_fatal_failure_raises(self):
        executor = InputGuardrailExecutor([lambda p: InputGuardrailResult.failure("too short")])
        with pytest.raises(InputGuardrailError, match="Assistant.chat") as exc_info:
            await executor.execute(_input("x"))
        assert exc_info.value.failures[0].message == "too short"

    @pytest.mark.asyncio
    async def test_metrics_recorded(self):
        metrics = GuardrailMetrics()

        def length(params):
            return None

        await InputGuardrailExecutor([length]).execute(_input("x"), metrics)
        assert metrics.input_guardrails_passed == ["length"]


class TestOutputGuardrailExecutor:
    """Tests for the retry/reprompt loop."""

    @pytest.mark.asyncio
    async def test_success_without_reinvocation(self):
        reinvoke = Reinvoker()
        outcome = await OutputGuardrailExecutor([lambda p: None], 2).execute(_output("fine"), reinvoke)
        assert outcome.response.text == "fine"
        assert outcome.retries == 0
        assert outcome.attempts == 1
        assert reinvoke.calls == []

    @pytest.mark.asyncio
    async def test_retry_exhaustion_makes_exactly_max_retries_reinvocations(self):
        """With max_retries=2 the model is re-invoked twice, then the call fails."""
        reinvoke = Reinvoker("again", "still")
        executor = OutputGuardrailExecutor([lambda p: OutputGuardrailResult.retry("always wrong")], 2)

        with pytest.raises(OutputGuardrailError) as exc_info:
            await executor.execute(_output("first"), reinvoke)

        assert len(reinvoke.calls) == 2
        assert exc_info.value.attempts == 3
        assert "max_retries=2" in str(exc_info.value)
        assert exc_info.value.failures[0].message == "always wrong"

    @pytest.mark.asyncio
    async def test_zero_max_retries_fails_on_first_retry(self):
        reinvoke = Reinvoker()
        executor = OutputGuardrailExecutor([lambda p: OutputGuardrailResult.retry("no")], 0)
        with pytest.raises(OutputGuardrailError):
            await executor.execute(_output("first"), reinvoke)
        assert reinvoke.calls == []

    @pytest.mark.asyncio
    async def test_retry_then_success(self):
        reinvoke = Reinvoker("good")

        def check(params):
            if params.response.text != "good":
                return OutputGuardrailResult.retry("not good")
            return None

        outcome = await OutputGuardrailExecutor([check], 2).execute(_output("bad"), reinvoke)
        assert outcome.response.text == "good"
        assert outcome.retries == 1
        assert reinvoke.calls == [()]

    @pytest.mark.asyncio
    async def test_reprompt_appends_response_and_instruction(self):
        reinvoke = Reinvoker('{"ok": true}')

        def json_only(params):
            if not params.response.text.startswith("{"):
                return OutputGuardrailResult.reprompt("not json", "Answer in JSON")
            return None

        outcome = await OutputGuardrailExecutor([json_only], 2).execute(_output("plain"), reinvoke)

        assert outcome.reprompts == ("Answer in JSON",)
        assert reinvoke.calls == [(AiMessage("plain"), UserMessage("Answer in JSON"))]

    @pytest.mark.asyncio
    async def test_pass_restarts_from_first_guardrail(self):
        order = []

        def first(params):
            order.append(("first", params.attempt))

        def second(params):
            order.append(("second", params.attempt))
            if params.attempt == 1:
                return OutputGuardrailResult.reprompt("bad", "fix")
            return None

        await OutputGuardrailExecutor([first, second], 2).execute(_output("v1"), Reinvoker("v2"))
        assert order == [("first", 1), ("second", 1), ("first", 2), ("second", 2)]

    @pytest.mark.asyncio
    async def test_non_fatal_failure_is_terminal(self):
        """A non-fatal failure never triggers a retry."""
        reinvoke = Reinvoker()
        executor = OutputGuardrailExecutor([lambda p: OutputGuardrailResult.failure("meh")], 5)
        with pytest.raises(OutputGuardrailError) as exc_info:
            await executor.execute(_output("x"), reinvoke)
        assert reinvoke.calls == []
        assert exc_info.value.attempts == 1

    @pytest.mark.asyncio
    async def test_fatal_without_retry_is_terminal(self):
        reinvoke = Reinvoker()
        with pytest.raises(OutputGuardrailError):
            await OutputGuardrailExecutor([lambda p: OutputGuardrailResult.fatal("no")], 5).execute(
                _output("x"), reinvoke
            )
        assert reinvoke.calls == []

    @pytest.mark.asyncio
    async def test_retry_after_rewrite_is_blocked(self):
        reinvoke = Reinvoker()

        class Rewrite(OutputGuardrail):
            def validate(self, params):
                return self.success_with("rewritten")

        class Retry(OutputGuardrail):
            def validate(self, params):
                return self.retry("retry please")

        with pytest.raises(OutputGuardrailError) as exc_info:
            await OutputGuardrailExecutor([Rewrite(), Retry()], 3).execute(_output("x"), reinvoke)

        assert reinvoke.calls == []
        assert RETRY_BLOCKED_NOTE in exc_info.value.failures[0].message

    @pytest.mark.asyncio
    async def test_rewritten_text_and_result_returned(self):
        executor = OutputGuardrailExecutor([lambda p: OutputGuardrailResult.success_with("clean", result=42)], 1)
        outcome = await executor.execute(_output("dirty"), Reinvoker())
        assert outcome.response.text == "clean"
        assert outcome.successful_result == 42

    @pytest.mark.asyncio
    async def test_metrics_and_listener(self):
        metrics = GuardrailMetrics()
        notified = []

        async def on_retry(retry, result):
            notified.append((retry, result.reprompt_text))

        def check(params):
            if params.attempt == 1:
                return OutputGuardrailResult.reprompt("bad", "fix it")
            return None

        await OutputGuardrailExecutor([check], 2).execute(
            _output("x"), Reinvoker("y"), metrics=metrics, on_retry=on_retry
        )
        assert notified == [(1, "fix it")]
        assert metrics.retry_count == 1
        assert metrics.reprompts == ["fix it"]
        assert metrics.output_guardrails_passed == ["check"]
        assert metrics.output_guardrails_failed == ["check"]

    def test_negative_max_retries_rejected(self):
        with pytest.raises(ValueError):
            OutputGuardrailExecutor((), -1)
