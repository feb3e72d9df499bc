"""Guardrail executors and the bounded output retry loop.

Internal API used by engine.py and streaming.py. Not for external use.

One *pass* runs every configured guardrail in order:

- a fatal result stops the pass immediately;
- a non-fatal failure is recorded and the pass continues;
- a successful rewrite (`success_with`) becomes the value seen by the
  following guardrails, and the last rewrite wins.

Input guardrails run a single pass; any failure raises
InputGuardrailError before the model is called.

Output guardrails may ask for the model to be re-invoked (retry) or to
be re-invoked with an extra instruction (reprompt). Each re-invocation
increments a counter and restarts the pass from the first guardrail. The
counter is bounded by `max_retries`, so a call makes at most
`1 + max_retries` model calls before OutputGuardrailError is raised.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Sequence
from dataclasses import dataclass
from typing import Any, Callable

from warded.exceptions import InputGuardrailError, OutputGuardrailError
from warded.guardrail import (
    Failure,
    GuardrailResult,
    InputGuardrail,
    InputGuardrailLike,
    InputGuardrailParams,
    InputGuardrailResult,
    OutputGuardrail,
    OutputGuardrailLike,
    OutputGuardrailParams,
    OutputGuardrailResult,
    guardrail_name,
)
from warded.logging import GuardrailMetrics
from warded.messages import AiMessage, ChatMessage, ChatResponse, UserMessage

_logger = logging.getLogger(__name__)

Reinvoke = Callable[[Sequence[ChatMessage]], Awaitable[ChatResponse]]
"""Re-runs the model (and tool loop) with extra conversation messages appended."""

RetryListener = Callable[[int, OutputGuardrailResult], Any]
"""Called with (retry_number, failed_result) before each re-invocation."""


# ---------------------------------------------------------------------------
# Single pass
# ---------------------------------------------------------------------------


async def _validate(guardrail: Any, params: Any, result_type: type[GuardrailResult]) -> GuardrailResult:
    """Run one guardrail; exceptions and bad return values become fatal results."""
    validate = guardrail.validate if isinstance(guardrail, (InputGuardrail, OutputGuardrail)) else guardrail
    try:
        result = validate(params)
        if inspect.isawaitable(result):
            result = await result
    except Exception as e:
        _logger.debug("Guardrail %s raised %s: %s", guardrail_name(guardrail), type(e).__name__, e)
        return result_type.fatal(f"Guardrail raised {type(e).__name__}: {e}", e)

    if result is None:
        return result_type.success()
    if not isinstance(result, result_type):
        return result_type.fatal(
            f"Guardrail returned {type(result).__name__}, expected {result_type.__name__} or None"
        )
    return result


@dataclass(frozen=True)
class PassResult:
    """Aggregate of one guardrail pass.

    Attributes:
        result: Combined result. Successful when every guardrail passed;
            fatal when a guardrail stopped the pass.
        params: Params after all rewrites of this pass.
        rewritten: Whether any guardrail rewrote the value.
    """

    result: GuardrailResult
    params: Any
    rewritten: bool


async def run_pass(
    guardrails: Sequence[Any],
    params: Any,
    result_type: type[GuardrailResult],
    *,
    passed: list[str] | None = None,
    failed: list[str] | None = None,
) -> PassResult:
    """Run one pass of `guardrails` over `params`.

    A retry requested after a rewrite earlier in the same pass is blocked
    (see GuardrailResult.block_retry), turning it into a terminal failure.
    """
    failures: list[Failure] = []
    current = params
    rewritten = False
    rewritten_result: GuardrailResult | None = None

    for guardrail in guardrails:
        name = guardrail_name(guardrail)
        result = (await _validate(guardrail, current, result_type)).with_guardrail(name)

        if result.is_fatal:
            if failed is not None:
                failed.append(name)
            if rewritten and result.is_retry:
                _logger.debug("Guardrail %s requested a retry after a rewrite; blocked", name)
                result = result.block_retry()
            return PassResult(
                result=result_type.from_failures([*failures, *result.failures], fatal=True),
                params=current,
                rewritten=rewritten,
            )

        if not result.is_success:
            if failed is not None:
                failed.append(name)
            failures.extend(result.failures)
            continue

        if passed is not None:
            passed.append(name)
        if result.has_rewritten_result:
            rewritten = True
            rewritten_result = result
            if result.successful_text is not None:
                current = current.with_text(result.successful_text)

    if failures:
        return PassResult(result_type.from_failures(failures), current, rewritten)
    if rewritten_result is not None:
        return PassResult(rewritten_result, current, rewritten)
    return PassResult(result_type.success(), current, rewritten)


def _describe(failures: Sequence[Failure]) -> str:
    return "; ".join(str(f) for f in failures) or "unknown failure"


# ---------------------------------------------------------------------------
# Input
# ---------------------------------------------------------------------------


class InputGuardrailExecutor:
    """Runs input guardrails over the outgoing user message."""

    def __init__(self, guardrails: Sequence[InputGuardrailLike]):
        self.guardrails = tuple(guardrails)

    async def execute(
        self,
        params: InputGuardrailParams,
        metrics: GuardrailMetrics | None = None,
    ) -> UserMessage:
        """Validate the user message and return it, possibly rewritten.

        Raises:
            InputGuardrailError: If any guardrail fails, fatal or not.
        """
        if not self.guardrails:
            return params.user_message

        outcome = await run_pass(
            self.guardrails,
            params,
            InputGuardrailResult,
            passed=metrics.input_guardrails_passed if metrics else None,
            failed=metrics.input_guardrails_failed if metrics else None,
        )
        if not outcome.result.is_success:
            failures = outcome.result.failures
            raise InputGuardrailError(
                f"Input validation failed for {params.common.method_name}: {_describe(failures)}",
                failures,
            )
        return outcome.params.user_message


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OutputGuardrailOutcome:
    """Accepted output of the output guardrail loop.

    Attributes:
        response: The accepted response, with any rewritten text applied.
        result: The successful aggregate result of the final pass.
        retries: Number of model re-invocations that were needed.
        reprompts: Reprompt instructions added, in order.
    """

    response: ChatResponse
    result: OutputGuardrailResult
    retries: int = 0
    reprompts: tuple[str, ...] = ()

    @property
    def attempts(self) -> int:
        return self.retries + 1

    @property
    def successful_result(self) -> Any:
        return self.result.successful_result


class OutputGuardrailExecutor:
    """Runs output guardrails with bounded retry and reprompt.

    Args:
        guardrails: Guardrails in execution order.
        max_retries: Re-invocations allowed per call.
    """

    def __init__(self, guardrails: Sequence[OutputGuardrailLike], max_retries: int):
        if max_retries < 0:
            raise ValueError(f"max_retries must be non-negative, got {max_retries}")
        self.guardrails = tuple(guardrails)
        self.max_retries = max_retries

    async def execute(
        self,
        params: OutputGuardrailParams,
        reinvoke: Reinvoke,
        *,
        metrics: GuardrailMetrics | None = None,
        on_retry: RetryListener | None = None,
    ) -> OutputGuardrailOutcome:
        """Validate the response, re-invoking the model as guardrails request.

        Args:
            params: Params carrying the first model response.
            reinvoke: Re-runs the model with extra messages appended to the
                original conversation. Retries pass the messages added so
                far; reprompts add the rejected response and the reprompt
                instruction first.
            metrics: Optional sink for guardrail names and retry counts.
            on_retry: Optional listener notified before each re-invocation.

        Raises:
            OutputGuardrailError: On a terminal failure or once the retry
                budget is exhausted.
        """
        if not self.guardrails:
            return OutputGuardrailOutcome(params.response, OutputGuardrailResult.success())

        retries = 0
        extra: list[ChatMessage] = []
        reprompts: list[str] = []
        current = params

        while True:
            outcome = await run_pass(
                self.guardrails,
                current,
                OutputGuardrailResult,
                passed=metrics.output_guardrails_passed if metrics else None,
                failed=metrics.output_guardrails_failed if metrics else None,
            )
            result = outcome.result

            if result.is_success:
                return OutputGuardrailOutcome(
                    response=outcome.params.response,
                    result=result,
                    retries=retries,
                    reprompts=tuple(reprompts),
                )

            failures = result.failures
            method = current.common.method_name
            if not (result.is_fatal and result.is_retry):
                raise OutputGuardrailError(
                    f"Output validation failed for {method}: {_describe(failures)}",
                    failures,
                    attempts=retries + 1,
                )
            if retries >= self.max_retries:
                raise OutputGuardrailError(
                    f"Output validation failed for {method} after {retries + 1} attempts "
                    f"(max_retries={self.max_retries}): {_describe(failures)}",
                    failures,
                    attempts=retries + 1,
                )

            retries += 1
            reprompt = result.reprompt_text
            if reprompt is not None:
                extra.append(AiMessage(text=current.response.text))
                extra.append(UserMessage(reprompt))
                reprompts.append(reprompt)
            _logger.debug(
                "%s for %s (%d/%d): %s",
                "Reprompting" if reprompt is not None else "Retrying",
                method,
                retries,
                self.max_retries,
                _describe(failures),
            )
            if metrics is not None:
                metrics.retry_count = retries
                metrics.retry_reasons.append(_describe(failures))
                if reprompt is not None:
                    metrics.reprompts.append(reprompt)
            if on_retry is not None:
                notified = on_retry(retries, result)
                if inspect.isawaitable(notified):
                    await notified

            response = await reinvoke(tuple(extra))
            current = OutputGuardrailParams(response=response, common=current.common, attempt=retries + 1)


__all__ = [
    "Reinvoke",
    "RetryListener",
    "PassResult",
    "run_pass",
    "InputGuardrailExecutor",
    "OutputGuardrailOutcome",
    "OutputGuardrailExecutor",
]
